import pytest

from voterid.errors import LedgerUnavailable, NotFound
from voterid.hasher import fingerprint_voter, identity_key_for
from voterid.keyderiv import KeyDeriver
from voterid.ledger import build_register_tx

from conftest import SALT


def test_status_from_cache(service, verified_voter):
    status = service.status(verified_voter)
    assert status == {
        "identityKey": verified_voter,
        "registered": True,
        "verified": True,
        "consumed": False,
        "onLedger": True,
        "source": "cache",
    }


def test_status_tracks_consumption(service, verified_voter):
    service.redeem(service.issue_credential(verified_voter))
    assert service.status(verified_voter)["consumed"] is True


def test_status_falls_back_to_ledger(service, chain):
    fps = fingerprint_voter("Meera Iyer", "777788889999")
    chain.submit(build_register_tx(fps, KeyDeriver(SALT).derive("777788889999"), 1))

    status = service.status(fps.identity_key)
    assert status["source"] == "ledger"
    assert status["registered"] and not status["verified"]


def test_resolver_never_writes(service, chain, store):
    fps = fingerprint_voter("Meera Iyer", "777788889999")
    chain.submit(build_register_tx(fps, KeyDeriver(SALT).derive("777788889999"), 1))
    service.status(fps.identity_key)
    assert store.get_voter(fps.identity_key) is None
    assert store.stats()["voters_count"] == 0


def test_cache_served_during_ledger_outage(service, registrar, ledger):
    key = registrar.register("Asha Verma", "123456789012").identity_key
    ledger.down = True
    assert service.status(key)["source"] == "cache"


def test_unknown_voter(service, ledger):
    with pytest.raises(NotFound):
        service.status(identity_key_for("000000000001"))
    ledger.down = True
    with pytest.raises(LedgerUnavailable):
        service.status(identity_key_for("000000000001"))
