"""Run one reconciliation pass between the off-chain store and the ledger."""
import argparse, json, sys

from voterid.logging_config import configure_logging
from voterid.service import VoterIDService


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--limit", type=int, default=100, help="rows to process per kind")
    parser.add_argument("--export-ledger", metavar="PATH", help="also write the ledger chain to PATH")
    args = parser.parse_args(argv)

    configure_logging()
    svc = VoterIDService.from_config()
    try:
        report = svc.reconcile(args.limit)
        if args.export_ledger:
            with open(args.export_ledger, "w", encoding="utf-8") as f:
                json.dump(svc.ledger.export(), f, indent=2)
    finally:
        svc.close()

    print(json.dumps(report.to_dict(), indent=2))
    return 1 if report.failed or report.orphans else 0

if __name__ == "__main__":
    sys.exit(main())
