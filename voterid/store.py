"""
Off-chain store for VoterID.

SQLite storage for voter vault rows and voting credentials. The unique
index on ``id_fingerprint`` is the source of truth for registration races,
and every state flip (ledger ref backfill, verification, credential
consumption) is a conditional UPDATE so that exactly one writer wins.
"""

import json
import sqlite3
from typing import Any, Dict, List, Optional

from .db import Database
from .errors import AlreadyRegistered, CredentialActive, NotFound, NotVerified, AlreadyConsumed
from .records import VaultRecord, VotingCredential


def _row_to_voter(row: sqlite3.Row) -> VaultRecord:
    return VaultRecord(
        identity_key=row["identity_key"],
        id_fingerprint=row["id_fingerprint"],
        name_fingerprint=row["name_fingerprint"],
        encrypted_pii=json.loads(row["encrypted_pii"]),
        derived_address=row["derived_address"],
        encrypted_private_key=json.loads(row["encrypted_private_key"]),
        created_at=row["created_at"],
        ledger_tx_ref=row["ledger_tx_ref"],
        verified=bool(row["verified"]),
        verified_at=row["verified_at"],
        verified_by=row["verified_by"],
        verify_tx_ref=row["verify_tx_ref"],
        has_voted=bool(row["has_voted"]),
        voted_at=row["voted_at"],
    )


def _row_to_credential(row: sqlite3.Row) -> VotingCredential:
    return VotingCredential(
        credential_id=row["credential_id"],
        identity_key=row["identity_key"],
        issued_at=row["issued_at"],
        expires_at=row["expires_at"],
        nonce=row["nonce"],
        consumed=bool(row["consumed"]),
        consumed_at=row["consumed_at"],
        payload_json=row["payload_json"],
    )


class OffchainStore:
    """Voter and credential storage keyed by identity key."""

    def __init__(self, db_path: str):
        self.db = Database(db_path)

    def init(self) -> None:
        """
        Initialize database schema with proper indexes.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        with self.db.transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS voters (
                identity_key TEXT PRIMARY KEY,
                id_fingerprint TEXT NOT NULL,
                name_fingerprint TEXT NOT NULL,
                encrypted_pii TEXT NOT NULL,
                derived_address TEXT NOT NULL,
                encrypted_private_key TEXT NOT NULL,
                ledger_tx_ref TEXT,
                created_at INTEGER NOT NULL,
                verified INTEGER NOT NULL DEFAULT 0,
                verified_at INTEGER,
                verified_by TEXT,
                verify_tx_ref TEXT,
                has_voted INTEGER NOT NULL DEFAULT 0,
                voted_at INTEGER
            );""")
            conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_voters_id_fingerprint
            ON voters(id_fingerprint);""")
            conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_voters_address
            ON voters(derived_address);""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_voters_pending_ledger
            ON voters(ledger_tx_ref) WHERE ledger_tx_ref IS NULL;""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS credentials (
                credential_id TEXT PRIMARY KEY,
                identity_key TEXT NOT NULL REFERENCES voters(identity_key),
                issued_at INTEGER NOT NULL,
                expires_at INTEGER NOT NULL,
                nonce TEXT NOT NULL UNIQUE,
                consumed INTEGER NOT NULL DEFAULT 0,
                consumed_at INTEGER,
                payload_json TEXT
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_credentials_identity
            ON credentials(identity_key, expires_at);""")

    # ============================================================
    # Voters
    # ============================================================

    def insert_voter(self, record: VaultRecord) -> None:
        """
        Insert a new vault row.

        Raises:
            AlreadyRegistered: if the identity key, fingerprint or address exists
        """
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    "INSERT INTO voters(identity_key, id_fingerprint, name_fingerprint, encrypted_pii, "
                    "derived_address, encrypted_private_key, ledger_tx_ref, created_at) "
                    "VALUES(?,?,?,?,?,?,?,?)",
                    (record.identity_key, record.id_fingerprint, record.name_fingerprint,
                     json.dumps(record.encrypted_pii, sort_keys=True), record.derived_address,
                     json.dumps(record.encrypted_private_key, sort_keys=True),
                     record.ledger_tx_ref, record.created_at),
                )
        except sqlite3.IntegrityError as e:
            raise AlreadyRegistered("voter already registered") from e

    def get_voter(self, identity_key: str) -> Optional[VaultRecord]:
        row = self.db.query_one("SELECT * FROM voters WHERE identity_key=?", (identity_key,))
        return _row_to_voter(row) if row else None

    def get_voter_by_id_fingerprint(self, id_fingerprint: str) -> Optional[VaultRecord]:
        row = self.db.query_one("SELECT * FROM voters WHERE id_fingerprint=?", (id_fingerprint,))
        return _row_to_voter(row) if row else None

    def set_ledger_tx_ref(self, identity_key: str, tx_ref: str) -> bool:
        """Backfill the ledger reference. Only succeeds while it is still NULL."""
        with self.db.transaction() as conn:
            cur = conn.execute(
                "UPDATE voters SET ledger_tx_ref=? WHERE identity_key=? AND ledger_tx_ref IS NULL",
                (tx_ref, identity_key),
            )
            return cur.rowcount == 1

    def mark_verified(self, identity_key: str, verified_at: int,
                      verified_by: Optional[str] = None, verify_tx_ref: Optional[str] = None) -> bool:
        """Flip verified 0 -> 1. Returns False if it was already verified or unknown."""
        with self.db.transaction() as conn:
            cur = conn.execute(
                "UPDATE voters SET verified=1, verified_at=?, verified_by=?, verify_tx_ref=? "
                "WHERE identity_key=? AND verified=0",
                (verified_at, verified_by, verify_tx_ref, identity_key),
            )
            return cur.rowcount == 1

    def set_verify_tx_ref(self, identity_key: str, tx_ref: str) -> bool:
        with self.db.transaction() as conn:
            cur = conn.execute(
                "UPDATE voters SET verify_tx_ref=? "
                "WHERE identity_key=? AND verified=1 AND verify_tx_ref IS NULL",
                (tx_ref, identity_key),
            )
            return cur.rowcount == 1

    def pending_ledger_writes(self, limit: int = 100) -> List[VaultRecord]:
        """Vault rows whose registration never reached the ledger."""
        rows = self.db.query(
            "SELECT * FROM voters WHERE ledger_tx_ref IS NULL ORDER BY created_at ASC LIMIT ?",
            (limit,),
        )
        return [_row_to_voter(r) for r in rows]

    def pending_verify_writes(self, limit: int = 100) -> List[VaultRecord]:
        """Verified rows that are on the ledger but whose verification is not."""
        rows = self.db.query(
            "SELECT * FROM voters WHERE verified=1 AND verify_tx_ref IS NULL "
            "AND ledger_tx_ref IS NOT NULL ORDER BY verified_at ASC LIMIT ?",
            (limit,),
        )
        return [_row_to_voter(r) for r in rows]

    # ============================================================
    # Credentials
    # ============================================================

    def insert_credential(self, credential: VotingCredential, now: int) -> None:
        """
        Store a new credential if the voter may receive one.

        The eligibility checks and the insert run in one write transaction,
        so two concurrent issues for the same voter cannot both succeed.

        Raises:
            NotFound, NotVerified, AlreadyConsumed, CredentialActive
        """
        with self.db.transaction() as conn:
            voter = conn.execute(
                "SELECT verified, has_voted FROM voters WHERE identity_key=?",
                (credential.identity_key,),
            ).fetchone()
            if voter is None:
                raise NotFound("voter not found")
            if not voter["verified"]:
                raise NotVerified("voter is not verified")
            if voter["has_voted"]:
                raise AlreadyConsumed("voter has already voted")
            live = conn.execute(
                "SELECT expires_at FROM credentials "
                "WHERE identity_key=? AND consumed=0 AND expires_at > ? "
                "ORDER BY expires_at DESC LIMIT 1",
                (credential.identity_key, now),
            ).fetchone()
            if live is not None:
                raise CredentialActive("a live credential already exists", expires_at=live["expires_at"])
            conn.execute(
                "INSERT INTO credentials(credential_id, identity_key, issued_at, expires_at, "
                "nonce, consumed, payload_json) VALUES(?,?,?,?,?,0,?)",
                (credential.credential_id, credential.identity_key, credential.issued_at,
                 credential.expires_at, credential.nonce, credential.payload_json),
            )

    def get_credential(self, credential_id: str) -> Optional[VotingCredential]:
        row = self.db.query_one("SELECT * FROM credentials WHERE credential_id=?", (credential_id,))
        return _row_to_credential(row) if row else None

    def live_credential(self, identity_key: str, now: int) -> Optional[VotingCredential]:
        row = self.db.query_one(
            "SELECT * FROM credentials WHERE identity_key=? AND consumed=0 AND expires_at > ? "
            "ORDER BY expires_at DESC LIMIT 1",
            (identity_key, now),
        )
        return _row_to_credential(row) if row else None

    def consume_credential(self, credential_id: str, now: int) -> bool:
        """
        Atomically mark a credential consumed and its voter as having voted.

        Returns True for exactly one caller; False if it was already
        consumed, has expired, or is unknown.
        """
        with self.db.transaction() as conn:
            cur = conn.execute(
                "UPDATE credentials SET consumed=1, consumed_at=? "
                "WHERE credential_id=? AND consumed=0 AND expires_at > ?",
                (now, credential_id, now),
            )
            if cur.rowcount != 1:
                return False
            conn.execute(
                "UPDATE voters SET has_voted=1, voted_at=? WHERE identity_key="
                "(SELECT identity_key FROM credentials WHERE credential_id=?) AND has_voted=0",
                (now, credential_id),
            )
            return True

    def has_voted(self, identity_key: str) -> bool:
        row = self.db.query_one("SELECT has_voted FROM voters WHERE identity_key=?", (identity_key,))
        return bool(row and row["has_voted"])

    # ============================================================
    # Metrics and Test Support
    # ============================================================

    def stats(self) -> Dict[str, Any]:
        stats = {}
        for table in ("voters", "credentials"):
            stats[f"{table}_count"] = self.db.query_one(f"SELECT COUNT(*) AS cnt FROM {table}")["cnt"]
        stats["pending_ledger_count"] = self.db.query_one(
            "SELECT COUNT(*) AS cnt FROM voters WHERE ledger_tx_ref IS NULL")["cnt"]
        return stats

    def reset(self) -> None:
        """Clear all tables but keep the schema."""
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM credentials")
            conn.execute("DELETE FROM voters")

    def close(self) -> None:
        self.db.close()
