"""
Logging for VoterID.

JSON-lines output through ``StructuredFormatter`` and a domain ``AuditLogger``
for the registration, verification and credential lifecycle. Audit records
carry masked identity keys; names, national identifiers, salts and keys are
never passed to a logger.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

from .util import mask_sensitive

request_id_var: ContextVar[str] = ContextVar("voterid_request_id", default="")

_SEVERITY_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.CRITICAL,
}


class StructuredFormatter(logging.Formatter):
    """One JSON object per record; audit fields are merged in at top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        rid = request_id_var.get()
        if rid:
            entry["request_id"] = rid
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(getattr(record, "extra_fields", {}))
        return json.dumps(entry, default=str)


def _voter(identity_key: Optional[str]) -> str:
    return mask_sensitive(identity_key, visible_chars=8)


class AuditLogger:
    """Voter lifecycle events."""

    def __init__(self, name: str = "voterid.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, message: str, **fields) -> None:
        record = self._logger.makeRecord(
            self._logger.name, level, "", 0, f"{event_type}: {message}", (), None)
        record.extra_fields = {"event_type": event_type, "request_id": request_id_var.get(), **fields}
        self._logger.handle(record)

    def registration_received(self, identity_key: str) -> None:
        self._log(logging.INFO, "REGISTRATION_RECEIVED", "registration received",
                  voter=_voter(identity_key))

    def registration_complete(self, identity_key: str, outcome: str, on_ledger: bool) -> None:
        self._log(logging.INFO if on_ledger else logging.WARNING, "REGISTRATION_COMPLETE",
                  f"registration ended {outcome}",
                  voter=_voter(identity_key), outcome=outcome, on_ledger=on_ledger)

    def ledger_degraded(self, identity_key: str, operation: str, error_code: str) -> None:
        """The ledger write failed and the off-chain write went ahead alone."""
        self._log(logging.WARNING, "LEDGER_DEGRADED",
                  f"ledger {operation} failed with {error_code}, left for reconciliation",
                  voter=_voter(identity_key), operation=operation, error_code=error_code)

    def orphaned_ledger_entry(self, identity_key: str, tx_ref: Optional[str]) -> None:
        self.security_event("ORPHANED_LEDGER_ENTRY", severity="high",
                            voter=_voter(identity_key), tx_ref=tx_ref)

    def verification(self, identity_key: str, verified_by: Optional[str], on_ledger: bool) -> None:
        self._log(logging.INFO, "VERIFICATION", "voter verified",
                  voter=_voter(identity_key), verified_by=verified_by, on_ledger=on_ledger)

    def credential_issued(self, identity_key: str, credential_id: str, expires_at: int) -> None:
        self._log(logging.INFO, "CREDENTIAL_ISSUED", f"credential {credential_id} issued",
                  voter=_voter(identity_key), credential_id=credential_id, expires_at=expires_at)

    def credential_redeemed(self, identity_key: str, credential_id: str) -> None:
        self._log(logging.INFO, "CREDENTIAL_REDEEMED", f"credential {credential_id} redeemed",
                  voter=_voter(identity_key), credential_id=credential_id)

    def redemption_rejected(self, credential_id: Optional[str], reason: str) -> None:
        self._log(logging.WARNING, "REDEMPTION_REJECTED", f"redemption refused ({reason})",
                  credential_id=credential_id, reason=reason)

    def reconciliation(self, **counts) -> None:
        self._log(logging.INFO, "RECONCILIATION", "reconciliation pass done", **counts)

    def security_event(self, event: str, severity: str = "medium", **details) -> None:
        self._log(_SEVERITY_LEVELS.get(severity, logging.WARNING), "SECURITY_EVENT", event,
                  security_event=event, severity=severity, **details)

    def rate_limit_exceeded(self, client_id: str, endpoint: str) -> None:
        self._log(logging.WARNING, "RATE_LIMIT_EXCEEDED", f"{endpoint} throttled",
                  client_id=client_id, endpoint=endpoint)


def configure_logging(level: str = "INFO", json_format: bool = True,
                      log_file: Optional[str] = None) -> None:
    """
    Replace the root handlers with stdout (and optionally a file).

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_format: emit JSON lines instead of plain text
        log_file: also append to this path
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = StructuredFormatter() if json_format else logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s: %(message)s")
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind a request id to the current context, minting one if none is given."""
    rid = request_id or uuid.uuid4().hex
    request_id_var.set(rid)
    return rid


audit_log = AuditLogger()
