import threading

import pytest

from voterid.errors import (
    AlreadyRegistered, AlreadyVerified, InvalidInput, LedgerUnavailable,
    NotFound, OrphanedLedgerEntry, StoreUnavailable,
)
from voterid.hasher import fingerprint_voter, identity_key_for
from voterid.keyderiv import KeyDeriver
from voterid.ledger import OP_REGISTER, OP_VERIFY, build_register_tx
from voterid.records import RegistrationOutcome, RegistrationState as S

from conftest import SALT

NAME = "Asha Verma"
NID = "1234 5678 9012"


def test_register_writes_both_stores(registrar, store, chain):
    result = registrar.register(NAME, NID, {"city": "Pune"})

    assert result.outcome == RegistrationOutcome.LEDGER_CONFIRMED
    assert result.to_dict()["registered"] is True
    assert result.to_dict()["onLedger"] is True
    assert result.trail[-1] == S.COMPLETE

    voter = store.get_voter(result.identity_key)
    assert voter.ledger_tx_ref == result.ledger_tx_ref
    assert voter.derived_address == result.address
    assert chain.read(result.identity_key).address == result.address


def test_pii_is_sealed_at_rest(registrar, store):
    result = registrar.register(NAME, NID, {"email": "asha@example.org"})
    voter = store.get_voter(result.identity_key)
    raw = repr(voter.encrypted_pii) + repr(voter.encrypted_private_key)
    assert "Asha" not in raw and "123456789012" not in raw
    pii = registrar.open_pii(voter)
    assert pii == {"name": NAME, "national_id": NID, "email": "asha@example.org"}


def test_second_registration_rejected(registrar):
    registrar.register(NAME, NID)
    with pytest.raises(AlreadyRegistered):
        registrar.register("Someone Else", "1234-5678-9012")


def test_duplicate_caught_by_ledger_when_vault_misses(registrar, chain):
    fps = fingerprint_voter(NAME, NID)
    kp = KeyDeriver(SALT).derive(NID)
    chain.submit(build_register_tx(fps, kp, 1))
    with pytest.raises(AlreadyRegistered):
        registrar.register(NAME, NID)


def test_duplicate_caught_by_vault_when_ledger_misses(registrar, ledger):
    ledger.down = True
    registrar.register(NAME, NID)
    ledger.down = False
    with pytest.raises(AlreadyRegistered):
        registrar.register(NAME, NID)


def test_concurrent_registrations_one_wins(registrar, chain):
    barrier = threading.Barrier(6)
    outcomes = []

    def attempt():
        barrier.wait()
        try:
            registrar.register(NAME, NID)
            outcomes.append("ok")
        except AlreadyRegistered:
            outcomes.append("dup")

    threads = [threading.Thread(target=attempt) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("dup") == 5
    assert chain.transaction_count(identity_key_for(NID), OP_REGISTER) == 1


@pytest.mark.parametrize("name,nid,profile", [
    ("", NID, None),
    (NAME, "", None),
    (NAME, NID, {"favourite_colour": "blue"}),
    (NAME, NID, {"city": 7}),
])
def test_invalid_input(registrar, name, nid, profile):
    with pytest.raises(InvalidInput):
        registrar.register(name, nid, profile)


def test_ledger_outage_degrades_to_offchain(registrar, store, ledger):
    ledger.down = True
    result = registrar.register(NAME, NID)

    assert result.outcome == RegistrationOutcome.LEDGER_FAILED
    assert result.registered and not result.on_ledger
    assert isinstance(result.error, LedgerUnavailable)
    assert S.LEDGER_FAILED in result.trail
    assert store.get_voter(result.identity_key).ledger_tx_ref is None


def test_ledger_timeout_degrades_to_offchain(registrar, store, ledger):
    ledger.stuck = True
    result = registrar.register(NAME, NID)
    assert result.outcome == RegistrationOutcome.LEDGER_FAILED
    assert result.to_dict()["error"] == "LEDGER_UNAVAILABLE"
    assert store.get_voter(result.identity_key).ledger_tx_ref is None


def test_vault_failure_after_ledger_write_is_orphan(registrar, store, chain, monkeypatch):
    def broken(record):
        raise StoreUnavailable("disk I/O error")

    monkeypatch.setattr(store, "insert_voter", broken)
    result = registrar.register(NAME, NID)

    assert result.outcome == RegistrationOutcome.ORPHANED_LEDGER_ENTRY
    assert not result.registered
    assert isinstance(result.error, OrphanedLedgerEntry)
    assert chain.read(result.identity_key) is not None


def test_vault_failure_without_ledger_write_raises(registrar, store, ledger, monkeypatch):
    def broken(record):
        raise StoreUnavailable("disk I/O error")

    ledger.down = True
    monkeypatch.setattr(store, "insert_voter", broken)
    with pytest.raises(StoreUnavailable):
        registrar.register(NAME, NID)


def test_verify_flips_both_stores(registrar, store, chain):
    key = registrar.register(NAME, NID).identity_key
    result = registrar.verify(key, verified_by="officer-7")

    assert result.verified and result.verify_tx_ref
    voter = store.get_voter(key)
    assert voter.verified and voter.verified_by == "officer-7"
    assert chain.read(key).verified


def test_second_verify_emits_no_transaction(registrar, chain):
    key = registrar.register(NAME, NID).identity_key
    registrar.verify(key)
    before = chain.transaction_count(key, OP_VERIFY)

    with pytest.raises(AlreadyVerified):
        registrar.verify(key)
    assert chain.transaction_count(key, OP_VERIFY) == before == 1


def test_verify_sees_ledger_verification_missing_from_vault(registrar, store, chain):
    from voterid.ledger import build_verify_tx
    key = registrar.register(NAME, NID).identity_key
    chain.submit(build_verify_tx(key, 5))

    with pytest.raises(AlreadyVerified):
        registrar.verify(key)
    assert store.get_voter(key).verified
    assert chain.transaction_count(key, OP_VERIFY) == 1


def test_verify_unknown_voter(registrar):
    with pytest.raises(NotFound):
        registrar.verify(identity_key_for("000000000000"))


def test_verify_ledger_only_voter_is_orphan(registrar, chain):
    fps = fingerprint_voter(NAME, NID)
    chain.submit(build_register_tx(fps, KeyDeriver(SALT).derive(NID), 1))
    with pytest.raises(OrphanedLedgerEntry):
        registrar.verify(fps.identity_key)


def test_verify_offchain_only_voter(registrar, store, ledger):
    ledger.down = True
    key = registrar.register(NAME, NID).identity_key
    ledger.down = False

    result = registrar.verify(key)
    assert result.verified and result.verify_tx_ref is None
    assert store.get_voter(key).verified


def test_concurrent_verify_one_wins(registrar, chain):
    key = registrar.register(NAME, NID).identity_key
    barrier = threading.Barrier(5)
    outcomes = []

    def attempt():
        barrier.wait()
        try:
            registrar.verify(key)
            outcomes.append("ok")
        except AlreadyVerified:
            outcomes.append("dup")

    threads = [threading.Thread(target=attempt) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert chain.transaction_count(key, OP_VERIFY) == 1
