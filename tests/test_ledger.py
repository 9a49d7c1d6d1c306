import json

import pytest

from voterid.errors import LedgerReverted, LedgerUnavailable
from voterid.hasher import fingerprint_voter
from voterid.keyderiv import KeyDeriver
from voterid.ledger import (
    HashChainLedger, LedgerClient, TxStatus, build_register_tx, build_verify_tx, verify_chain,
)

from conftest import SALT


def _register_tx(nid="123456789012", name="Asha Verma"):
    return build_register_tx(fingerprint_voter(name, nid), KeyDeriver(SALT).derive(nid), 1)


def test_register_and_verify(chain):
    tx = _register_tx()
    ref = chain.submit(tx)
    assert chain.confirm(ref) == TxStatus.CONFIRMED
    rec = chain.read(tx["identity_key"])
    assert rec.register_tx_ref == ref and not rec.verified

    vref = chain.submit(build_verify_tx(tx["identity_key"], 2))
    assert chain.confirm(vref) == TxStatus.CONFIRMED
    assert chain.read(tx["identity_key"]).verified


def test_invalid_transitions_revert(chain):
    tx = _register_tx()
    chain.submit(tx)
    dup = chain.submit(dict(tx, registered_at=2))
    assert chain.confirm(dup) == TxStatus.REVERTED

    unknown = chain.submit(build_verify_tx("0x" + "ab" * 32, 2))
    assert chain.revert_reason(unknown) == "NOT_REGISTERED"

    chain.submit(build_verify_tx(tx["identity_key"], 2))
    again = chain.submit(build_verify_tx(tx["identity_key"], 3))
    assert chain.revert_reason(again) == "ALREADY_VERIFIED"


def test_register_signature_checked(chain):
    tx = _register_tx()
    tx["name_fingerprint"] = "0x" + "00" * 32
    ref = chain.submit(tx)
    assert chain.revert_reason(ref) == "BAD_SIGNATURE"

    tx = _register_tx()
    tx["address"] = "0x" + "11" * 20
    assert chain.revert_reason(chain.submit(tx)) == "ADDRESS_MISMATCH"


def test_chain_detects_tampering(chain):
    chain.submit(_register_tx())
    chain.submit(_register_tx("999988887777", "Ravi Kumar"))
    entries = chain.export()
    assert verify_chain(entries) == (True, None)

    tampered = json.loads(json.dumps(entries))
    tx = json.loads(tampered[0]["tx_json"])
    tx["registered_at"] = 99
    tampered[0]["tx_json"] = json.dumps(tx, sort_keys=True)
    assert verify_chain(tampered) == (False, tampered[0]["seq"])

    relinked = json.loads(json.dumps(entries))
    relinked[1]["prev_entry_hash"] = None
    assert verify_chain(relinked) == (False, relinked[1]["seq"])


def test_client_waits_for_confirmation(tmp_path):
    ledger = HashChainLedger(str(tmp_path / "slow.db"), pending_polls=3)
    sleeps = []
    client = LedgerClient(ledger, timeout=10, poll_interval=0.5, sleep=sleeps.append)
    ref = client.submit_and_wait(_register_tx())
    assert ref.startswith("0x")
    assert sleeps == [0.5, 0.5, 0.5]


def test_confirmed_status_is_final(tmp_path):
    ledger = HashChainLedger(str(tmp_path / "slow.db"), pending_polls=2)
    ref = ledger.submit(_register_tx())
    assert [ledger.confirm(ref) for _ in range(4)] == [
        TxStatus.PENDING, TxStatus.PENDING, TxStatus.CONFIRMED, TxStatus.CONFIRMED,
    ]
    assert ledger._polls == {}


def test_client_times_out(tmp_path):
    ledger = HashChainLedger(str(tmp_path / "stuck.db"), pending_polls=1000)
    ticks = iter(range(100))
    client = LedgerClient(ledger, timeout=3, poll_interval=1, sleep=lambda s: None, clock=lambda: next(ticks))
    with pytest.raises(LedgerUnavailable):
        client.submit_and_wait(_register_tx())


def test_client_surfaces_revert_reason(chain):
    client = LedgerClient(chain, timeout=1, poll_interval=0.01)
    client.submit_and_wait(_register_tx())
    with pytest.raises(LedgerReverted) as e:
        client.submit_and_wait(_register_tx())
    assert e.value.reason == "ALREADY_REGISTERED"


def test_client_wraps_transport_errors(ledger):
    ledger.down = True
    client = LedgerClient(ledger, timeout=1, poll_interval=0.01)
    with pytest.raises(LedgerUnavailable):
        client.submit_and_wait(_register_tx())
    with pytest.raises(LedgerUnavailable):
        client.read("0x" + "00" * 32)
