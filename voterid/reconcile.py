"""
Background reconciliation between the off-chain store and the ledger.

One pass:

1. Every vault row with ``ledger_tx_ref IS NULL`` is replayed against the
   ledger. If the ledger already holds the identity key (a submission that
   confirmed after the registrar gave up), its transaction reference is
   adopted instead of submitting again.
2. Every verified row that is on the ledger but has no ``verify_tx_ref``
   gets its VERIFY transaction submitted.

Ledger entries with no vault row are reported by ``find_orphans`` and left
alone; they need an operator.
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List

from .errors import DecryptionFailed, LedgerReverted, LedgerUnavailable, OrphanedLedgerEntry
from .ledger import build_verify_tx
from .logging_config import audit_log
from .records import VaultRecord
from .registrar import DualLedgerRegistrar

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    retried: int = 0
    confirmed: int = 0
    failed: int = 0
    verify_backfilled: int = 0
    orphans: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Reconciler:
    def __init__(self, registrar: DualLedgerRegistrar):
        self.registrar = registrar
        self.store = registrar.store
        self.ledger = registrar.ledger

    def _adopt_existing(self, voter: VaultRecord) -> bool:
        record = self.ledger.read(voter.identity_key)
        if record is None:
            return False
        if record.id_fingerprint != voter.id_fingerprint:
            raise OrphanedLedgerEntry(voter.identity_key, record.register_tx_ref,
                                      message="ledger entry does not match vault fingerprint")
        self.store.set_ledger_tx_ref(voter.identity_key, record.register_tx_ref)
        return True

    def _replay(self, voter: VaultRecord, report: ReconcileReport) -> None:
        report.retried += 1
        with self.registrar.locks.hold(voter.identity_key):
            try:
                if self._adopt_existing(voter):
                    report.confirmed += 1
                    return
                tx_ref = self.registrar.replay_registration(voter)
            except LedgerReverted as e:
                try:
                    adopted = e.reason == "ALREADY_REGISTERED" and self._adopt_existing(voter)
                except LedgerUnavailable:
                    adopted = False
                if adopted:
                    report.confirmed += 1
                    return
                logger.warning("ledger reverted replay for %s: %s", voter.identity_key[:10], e.reason)
                report.failed += 1
                return
            except LedgerUnavailable as e:
                logger.warning("ledger still unavailable for %s: %s", voter.identity_key[:10], e.code)
                report.failed += 1
                return
            except (DecryptionFailed, OrphanedLedgerEntry) as e:
                audit_log.security_event(e.code, severity="high", voter=voter.identity_key[:10])
                report.failed += 1
                return

            self.store.set_ledger_tx_ref(voter.identity_key, tx_ref)
            report.confirmed += 1

    def _backfill_verify(self, voter: VaultRecord, report: ReconcileReport) -> None:
        with self.registrar.locks.hold(voter.identity_key):
            try:
                record = self.ledger.read(voter.identity_key)
                if record is not None and record.verified:
                    tx_ref = record.verify_tx_ref
                else:
                    tx_ref = self.ledger.submit_and_wait(
                        build_verify_tx(voter.identity_key, voter.verified_at, voter.verified_by))
            except LedgerUnavailable as e:
                logger.warning("verify backfill failed for %s: %s", voter.identity_key[:10], e.code)
                report.failed += 1
                return
            if tx_ref and self.store.set_verify_tx_ref(voter.identity_key, tx_ref):
                report.verify_backfilled += 1

    def run_once(self, limit: int = 100) -> ReconcileReport:
        """Run one reconciliation pass over at most ``limit`` rows of each kind."""
        report = ReconcileReport()
        for voter in self.store.pending_ledger_writes(limit):
            self._replay(voter, report)
        for voter in self.store.pending_verify_writes(limit):
            self._backfill_verify(voter, report)
        try:
            report.orphans = [o.identity_key for o in self.find_orphans()]
        except LedgerUnavailable as e:
            logger.warning("orphan scan skipped: %s", e.code)

        audit_log.reconciliation(
            retried=report.retried,
            confirmed=report.confirmed,
            failed=report.failed,
            verify_backfilled=report.verify_backfilled,
            orphans=len(report.orphans),
        )
        return report

    def find_orphans(self) -> List[OrphanedLedgerEntry]:
        """Ledger registrations with no vault row. Reported, never repaired."""
        orphans = []
        for key in self.ledger.identity_keys():
            if self.store.get_voter(key) is None:
                record = self.ledger.read(key)
                tx_ref = record.register_tx_ref if record else None
                audit_log.orphaned_ledger_entry(key, tx_ref)
                orphans.append(OrphanedLedgerEntry(key, tx_ref))
        return orphans
