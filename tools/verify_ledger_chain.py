"""Verify the hash chain of a ledger exported with ``HashChainLedger.export()``."""
import json, sys

from voterid.ledger import verify_chain


def main(path):
    with open(path, "r", encoding="utf-8") as f:
        entries = json.load(f)
    ok, bad_seq = verify_chain(entries)
    if not ok:
        print("FAIL: chain mismatch at seq", bad_seq)
        sys.exit(1)
    print(f"PASS: ledger chain valid ({len(entries)} entries)")

if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python tools/verify_ledger_chain.py <ledger_export.json>")
        raise SystemExit(2)
    main(sys.argv[1])
