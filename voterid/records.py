"""
Domain records shared by the ledger, the off-chain store, and the services.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class LedgerRecord:
    """Registration state as the authoritative ledger holds it."""
    identity_key: str
    name_fingerprint: str
    id_fingerprint: str
    address: str
    verified: bool
    registered_at: int
    verified_at: Optional[int] = None
    register_tx_ref: Optional[str] = None
    verify_tx_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class VaultRecord:
    """Off-chain voter row. ``ledger_tx_ref`` is None until the ledger confirms."""
    identity_key: str
    id_fingerprint: str
    name_fingerprint: str
    encrypted_pii: Dict[str, str]
    derived_address: str
    encrypted_private_key: Dict[str, str]
    created_at: int
    ledger_tx_ref: Optional[str] = None
    verified: bool = False
    verified_at: Optional[int] = None
    verified_by: Optional[str] = None
    verify_tx_ref: Optional[str] = None
    has_voted: bool = False
    voted_at: Optional[int] = None

    @property
    def on_ledger(self) -> bool:
        return self.ledger_tx_ref is not None


@dataclass
class VotingCredential:
    credential_id: str
    identity_key: str
    issued_at: int
    expires_at: int
    nonce: str
    consumed: bool = False
    consumed_at: Optional[int] = None
    payload_json: Optional[str] = None

    def is_live(self, now: int) -> bool:
        return not self.consumed and now < self.expires_at


class RegistrationState(str, Enum):
    RECEIVED = "RECEIVED"
    FINGERPRINTS_COMPUTED = "FINGERPRINTS_COMPUTED"
    LEDGER_SUBMITTED = "LEDGER_SUBMITTED"
    LEDGER_CONFIRMED = "LEDGER_CONFIRMED"
    LEDGER_FAILED = "LEDGER_FAILED"
    VAULT_WRITTEN = "VAULT_WRITTEN"
    COMPLETE = "COMPLETE"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"


class RegistrationOutcome(str, Enum):
    """How the dual write ended."""
    LEDGER_CONFIRMED = "LEDGER_CONFIRMED"            # both stores written
    LEDGER_FAILED = "LEDGER_FAILED"                  # vault written, ledger pending reconciliation
    ORPHANED_LEDGER_ENTRY = "ORPHANED_LEDGER_ENTRY"  # ledger written, vault write failed


@dataclass
class RegistrationResult:
    identity_key: str
    outcome: RegistrationOutcome
    address: str
    ledger_tx_ref: Optional[str] = None
    error: Optional[Exception] = None
    trail: List[RegistrationState] = field(default_factory=list)

    @property
    def registered(self) -> bool:
        """True when the off-chain record exists."""
        return self.outcome != RegistrationOutcome.ORPHANED_LEDGER_ENTRY

    @property
    def on_ledger(self) -> bool:
        return self.ledger_tx_ref is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identityKey": self.identity_key,
            "registered": self.registered,
            "onLedger": self.on_ledger,
            "outcome": self.outcome.value,
            "address": self.address,
            "ledgerTxRef": self.ledger_tx_ref,
            "error": getattr(self.error, "code", None),
        }


@dataclass
class VerificationResult:
    identity_key: str
    verified: bool
    verified_at: int
    verify_tx_ref: Optional[str] = None
    error: Optional[Exception] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identityKey": self.identity_key,
            "verified": self.verified,
            "verifiedAt": self.verified_at,
            "onLedger": self.verify_tx_ref is not None,
            "verifyTxRef": self.verify_tx_ref,
            "error": getattr(self.error, "code", None),
        }


@dataclass
class RedemptionResult:
    success: bool
    voter_ref: str
    credential_id: str
    redeemed_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "voterRef": self.voter_ref,
            "credentialId": self.credential_id,
            "redeemedAt": self.redeemed_at,
        }


@dataclass
class VoterStatus:
    identity_key: str
    registered: bool
    verified: bool
    consumed: bool
    on_ledger: bool
    source: str  # "cache" | "ledger"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identityKey": self.identity_key,
            "registered": self.registered,
            "verified": self.verified,
            "consumed": self.consumed,
            "onLedger": self.on_ledger,
            "source": self.source,
        }
