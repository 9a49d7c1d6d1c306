"""
Ledger boundary for VoterID.

The core treats the ledger as an opaque, authoritative, append-only
key-value store reached through three calls: ``submit``, ``confirm`` and
``read``. ``HashChainLedger`` is the reference implementation used in
development and tests: every transaction is appended to a SHA-256 hash
chain, and the registration state it implies is folded into a state table.
Invalid transitions (double registration, double verification) are kept in
the chain but marked REVERTED, mirroring how a contract would reject them.
"""

import json
import threading
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .db import Database
from .errors import LedgerReverted, LedgerUnavailable, VoterIDError
from .keyderiv import address_for, verify_signature
from .records import LedgerRecord
from .util import canonicalize, now_epoch, sha256_hex

OP_REGISTER = "REGISTER"
OP_VERIFY = "VERIFY"


class TxStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    PENDING = "PENDING"
    REVERTED = "REVERTED"


class Ledger(ABC):
    """Abstract authoritative ledger."""

    @abstractmethod
    def submit(self, tx: Dict[str, Any]) -> str:
        """Submit a transaction and return its reference."""

    @abstractmethod
    def confirm(self, tx_ref: str) -> TxStatus:
        """Current status of a submitted transaction."""

    @abstractmethod
    def read(self, identity_key: str) -> Optional[LedgerRecord]:
        """Registration state for an identity key, or None."""

    @abstractmethod
    def identity_keys(self) -> List[str]:
        """Every identity key with a confirmed registration."""

    def revert_reason(self, tx_ref: str) -> Optional[str]:
        return None


# ============================================================
# Transactions
# ============================================================

def tx_signing_payload(tx: Dict[str, Any]) -> bytes:
    body = dict(tx)
    body.pop("signature_hex", None)
    return canonicalize(body)


def build_register_tx(fingerprints, keypair, registered_at: int) -> Dict[str, Any]:
    """REGISTER transaction signed by the voter's derived key."""
    tx = {
        "op": OP_REGISTER,
        "identity_key": fingerprints.identity_key,
        "name_fingerprint": fingerprints.name_hex,
        "id_fingerprint": fingerprints.id_hex,
        "address": keypair.address,
        "public_key_hex": keypair.public_key.hex(),
        "registered_at": registered_at,
    }
    tx["signature_hex"] = keypair.sign(tx_signing_payload(tx)).hex()
    return tx


def build_verify_tx(identity_key: str, verified_at: int, verified_by: Optional[str] = None) -> Dict[str, Any]:
    return {
        "op": OP_VERIFY,
        "identity_key": identity_key,
        "verified_at": verified_at,
        "verified_by": verified_by,
    }


def chain_entry_hash(prev_entry_hash: Optional[str], payload_hash: str) -> str:
    """SHA-256 of the previous entry hash concatenated with this payload hash."""
    data = (prev_entry_hash or "").encode("utf-8") + payload_hash.encode("utf-8")
    return sha256_hex(data)


# ============================================================
# Reference implementation
# ============================================================

class HashChainLedger(Ledger):
    """
    SQLite-backed hash-chained ledger.

    ``pending_polls`` makes ``confirm`` report PENDING that many times per
    transaction before the final status, to model confirmation latency.
    """

    def __init__(self, db_path: str, pending_polls: int = 0):
        self.db = Database(db_path)
        self._pending_polls = pending_polls
        # in-flight tx_ref -> PENDING answers given so far
        self._polls: Dict[str, int] = {}
        self._polls_lock = threading.Lock()
        self.init()

    def init(self) -> None:
        with self.db.transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS chain (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                tx_ref TEXT NOT NULL UNIQUE,
                op TEXT NOT NULL,
                identity_key TEXT NOT NULL,
                payload_hash TEXT NOT NULL,
                prev_entry_hash TEXT,
                entry_hash TEXT NOT NULL,
                tx_json TEXT NOT NULL,
                status TEXT NOT NULL,
                reason TEXT,
                submitted_at INTEGER NOT NULL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_chain_identity
            ON chain(identity_key);""")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS state (
                identity_key TEXT PRIMARY KEY,
                name_fingerprint TEXT NOT NULL,
                id_fingerprint TEXT NOT NULL UNIQUE,
                address TEXT NOT NULL,
                verified INTEGER NOT NULL DEFAULT 0,
                registered_at INTEGER NOT NULL,
                verified_at INTEGER,
                register_tx_ref TEXT NOT NULL,
                verify_tx_ref TEXT
            );""")

    def _check_register(self, conn, tx: Dict[str, Any]) -> Optional[str]:
        required = ("identity_key", "name_fingerprint", "id_fingerprint",
                    "address", "public_key_hex", "registered_at", "signature_hex")
        if any(k not in tx for k in required):
            return "MALFORMED"
        try:
            pub = bytes.fromhex(tx["public_key_hex"])
            sig = bytes.fromhex(tx["signature_hex"])
        except (TypeError, ValueError):
            return "MALFORMED"
        if len(pub) != 65 or address_for(pub) != tx["address"]:
            return "ADDRESS_MISMATCH"
        if not verify_signature(pub, tx_signing_payload(tx), sig):
            return "BAD_SIGNATURE"
        row = conn.execute(
            "SELECT 1 FROM state WHERE identity_key=? OR id_fingerprint=?",
            (tx["identity_key"], tx["id_fingerprint"]),
        ).fetchone()
        if row:
            return "ALREADY_REGISTERED"
        return None

    def _check_verify(self, conn, tx: Dict[str, Any]) -> Optional[str]:
        row = conn.execute(
            "SELECT verified FROM state WHERE identity_key=?", (tx.get("identity_key"),)
        ).fetchone()
        if row is None:
            return "NOT_REGISTERED"
        if row["verified"]:
            return "ALREADY_VERIFIED"
        return None

    def submit(self, tx: Dict[str, Any]) -> str:
        op = tx.get("op")
        if op not in (OP_REGISTER, OP_VERIFY) or not tx.get("identity_key"):
            raise VoterIDError(f"unsupported transaction: {op!r}", code="BAD_TRANSACTION")

        tx_json = json.dumps(tx, sort_keys=True)
        payload_hash = sha256_hex(canonicalize(tx))

        with self.db.transaction() as conn:
            prev = conn.execute(
                "SELECT entry_hash FROM chain ORDER BY seq DESC LIMIT 1"
            ).fetchone()
            prev_hash = prev["entry_hash"] if prev else None
            entry_hash = chain_entry_hash(prev_hash, payload_hash)
            tx_ref = "0x" + entry_hash

            if op == OP_REGISTER:
                reason = self._check_register(conn, tx)
            else:
                reason = self._check_verify(conn, tx)
            status = TxStatus.REVERTED if reason else TxStatus.CONFIRMED

            conn.execute(
                "INSERT INTO chain(tx_ref, op, identity_key, payload_hash, prev_entry_hash, "
                "entry_hash, tx_json, status, reason, submitted_at) VALUES(?,?,?,?,?,?,?,?,?,?)",
                (tx_ref, op, tx["identity_key"], payload_hash, prev_hash, entry_hash,
                 tx_json, status.value, reason, now_epoch()),
            )

            if status == TxStatus.CONFIRMED and op == OP_REGISTER:
                conn.execute(
                    "INSERT INTO state(identity_key, name_fingerprint, id_fingerprint, address, "
                    "verified, registered_at, register_tx_ref) VALUES(?,?,?,?,0,?,?)",
                    (tx["identity_key"], tx["name_fingerprint"], tx["id_fingerprint"],
                     tx["address"], int(tx["registered_at"]), tx_ref),
                )
            elif status == TxStatus.CONFIRMED and op == OP_VERIFY:
                conn.execute(
                    "UPDATE state SET verified=1, verified_at=?, verify_tx_ref=? "
                    "WHERE identity_key=? AND verified=0",
                    (int(tx.get("verified_at") or now_epoch()), tx_ref, tx["identity_key"]),
                )
        if self._pending_polls > 0:
            with self._polls_lock:
                self._polls[tx_ref] = 0
        return tx_ref

    def confirm(self, tx_ref: str) -> TxStatus:
        row = self.db.query_one("SELECT status FROM chain WHERE tx_ref=?", (tx_ref,))
        if row is None:
            raise LedgerUnavailable(f"unknown transaction {tx_ref}")
        with self._polls_lock:
            seen = self._polls.get(tx_ref)
            if seen is not None:
                if seen < self._pending_polls:
                    self._polls[tx_ref] = seen + 1
                    return TxStatus.PENDING
                del self._polls[tx_ref]
        return TxStatus(row["status"])

    def revert_reason(self, tx_ref: str) -> Optional[str]:
        row = self.db.query_one("SELECT reason FROM chain WHERE tx_ref=?", (tx_ref,))
        return row["reason"] if row else None

    def read(self, identity_key: str) -> Optional[LedgerRecord]:
        row = self.db.query_one("SELECT * FROM state WHERE identity_key=?", (identity_key,))
        if row is None:
            return None
        return LedgerRecord(
            identity_key=row["identity_key"],
            name_fingerprint=row["name_fingerprint"],
            id_fingerprint=row["id_fingerprint"],
            address=row["address"],
            verified=bool(row["verified"]),
            registered_at=row["registered_at"],
            verified_at=row["verified_at"],
            register_tx_ref=row["register_tx_ref"],
            verify_tx_ref=row["verify_tx_ref"],
        )

    def identity_keys(self) -> List[str]:
        return [r["identity_key"] for r in self.db.query("SELECT identity_key FROM state ORDER BY registered_at")]

    def transaction_count(self, identity_key: Optional[str] = None, op: Optional[str] = None) -> int:
        sql = "SELECT COUNT(*) AS cnt FROM chain WHERE 1=1"
        params: Tuple = ()
        if identity_key:
            sql += " AND identity_key=?"
            params += (identity_key,)
        if op:
            sql += " AND op=?"
            params += (op,)
        return self.db.query_one(sql, params)["cnt"]

    def export(self) -> List[Dict[str, Any]]:
        """Export the complete chain in order."""
        rows = self.db.query(
            "SELECT seq, tx_ref, op, identity_key, payload_hash, prev_entry_hash, "
            "entry_hash, tx_json, status, reason FROM chain ORDER BY seq ASC"
        )
        return [dict(r) for r in rows]

    def head(self) -> Dict[str, Any]:
        log = self.export()
        return {"entries": len(log), "head_entry_hash": log[-1]["entry_hash"] if log else None}

    def close(self) -> None:
        self.db.close()


def verify_chain(entries: List[Dict[str, Any]]) -> Tuple[bool, Optional[int]]:
    """
    Recompute every payload and entry hash of an exported chain.

    Returns:
        (True, None) if intact, else (False, seq of the first bad entry)
    """
    prev = None
    for entry in entries:
        payload_hash = sha256_hex(canonicalize(json.loads(entry["tx_json"])))
        if payload_hash != entry["payload_hash"]:
            return False, entry["seq"]
        if entry.get("prev_entry_hash") != prev:
            return False, entry["seq"]
        if chain_entry_hash(prev, payload_hash) != entry["entry_hash"]:
            return False, entry["seq"]
        prev = entry["entry_hash"]
    return True, None


# ============================================================
# Client with confirmation timeout
# ============================================================

class LedgerClient:
    """
    Submits transactions and waits for confirmation with a deadline.

    Every failure mode (transport error, revert, still pending at the
    deadline) surfaces as ``LedgerUnavailable`` so callers can degrade
    and leave the write to the reconciler.
    """

    def __init__(self, ledger: Ledger, timeout: float = 30.0, poll_interval: float = 0.25,
                 sleep=time.sleep, clock=time.monotonic):
        self.ledger = ledger
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    def submit_and_wait(self, tx: Dict[str, Any]) -> str:
        """
        Submit and block until the transaction is confirmed.

        Raises:
            LedgerReverted: the ledger rejected the transaction
            LedgerUnavailable: submission failed or confirmation timed out
        """
        try:
            tx_ref = self.ledger.submit(tx)
        except LedgerUnavailable:
            raise
        except Exception as e:
            raise LedgerUnavailable(f"submit failed: {e}") from e

        deadline = self._clock() + self.timeout
        while True:
            try:
                status = self.ledger.confirm(tx_ref)
            except LedgerUnavailable:
                raise
            except Exception as e:
                raise LedgerUnavailable(f"confirm failed for {tx_ref}: {e}") from e

            if status == TxStatus.CONFIRMED:
                return tx_ref
            if status == TxStatus.REVERTED:
                raise LedgerReverted(tx_ref=tx_ref, reason=self.ledger.revert_reason(tx_ref))
            if self._clock() >= deadline:
                raise LedgerUnavailable(f"transaction {tx_ref} not confirmed within {self.timeout}s")
            self._sleep(self.poll_interval)

    def read(self, identity_key: str) -> Optional[LedgerRecord]:
        """Read through the ledger, mapping transport errors to LedgerUnavailable."""
        try:
            return self.ledger.read(identity_key)
        except LedgerUnavailable:
            raise
        except Exception as e:
            raise LedgerUnavailable(f"read failed: {e}") from e

    def identity_keys(self) -> List[str]:
        try:
            return self.ledger.identity_keys()
        except LedgerUnavailable:
            raise
        except Exception as e:
            raise LedgerUnavailable(f"listing identity keys failed: {e}") from e
