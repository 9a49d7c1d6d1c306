"""
Error taxonomy for VoterID.

Every error carries a stable string ``code`` that the HTTP layer returns
to callers. The four families decide how a failure is handled:

- ``ValidationError``: malformed input, fatal to the request, never retried.
- ``ConflictError``: terminal state conflicts, surfaced to the caller.
- ``UnavailableError``: a backing store is unreachable; the background
  reconciler retries, the request path does not.
- ``IntegrityError``: data-loss or cross-store inconsistency; logged as a
  security event and never silently repaired.

Credential checks that fail (bad signature, expiry, unverified voter,
unknown record) raise ``CredentialError`` subclasses.
"""

from typing import Optional


class VoterIDError(Exception):
    """Base class for all VoterID errors."""

    code = "VOTERID_ERROR"

    def __init__(self, message: str = "", code: Optional[str] = None):
        if code is not None:
            self.code = code
        self.message = message or self.code
        super().__init__(self.message)


# ============================================================
# Validation
# ============================================================

class ValidationError(VoterIDError):
    """Raised when input validation fails."""

    code = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")


class InvalidInput(ValidationError):
    code = "INVALID_INPUT"


# ============================================================
# Conflicts
# ============================================================

class ConflictError(VoterIDError):
    code = "CONFLICT"


class AlreadyRegistered(ConflictError):
    code = "ALREADY_REGISTERED"


class AlreadyVerified(ConflictError):
    code = "ALREADY_VERIFIED"


class AlreadyConsumed(ConflictError):
    code = "ALREADY_CONSUMED"


class CredentialActive(ConflictError):
    """A live (unexpired, unconsumed) credential already exists for the voter."""

    code = "CREDENTIAL_ACTIVE"

    def __init__(self, message: str = "", expires_at: Optional[int] = None):
        self.expires_at = expires_at
        super().__init__(message)


# ============================================================
# Availability
# ============================================================

class UnavailableError(VoterIDError):
    code = "UNAVAILABLE"


class LedgerUnavailable(UnavailableError):
    code = "LEDGER_UNAVAILABLE"


class LedgerReverted(LedgerUnavailable):
    """The ledger accepted the transaction but reverted it."""

    code = "LEDGER_REVERTED"

    def __init__(self, message: str = "", tx_ref: Optional[str] = None, reason: Optional[str] = None):
        self.tx_ref = tx_ref
        self.reason = reason
        super().__init__(message or f"transaction {tx_ref} reverted: {reason}")


class StoreUnavailable(UnavailableError):
    code = "STORE_UNAVAILABLE"


# ============================================================
# Integrity
# ============================================================

class IntegrityError(VoterIDError):
    code = "INTEGRITY_ERROR"


class OrphanedLedgerEntry(IntegrityError):
    """A ledger record exists with no matching vault record."""

    code = "ORPHANED_LEDGER_ENTRY"

    def __init__(self, identity_key: str, tx_ref: Optional[str] = None, message: str = ""):
        self.identity_key = identity_key
        self.tx_ref = tx_ref
        super().__init__(message or f"ledger entry without vault record (tx {tx_ref})")


class DecryptionFailed(IntegrityError):
    code = "DECRYPTION_FAILED"


# ============================================================
# Credentials and key material
# ============================================================

class CredentialError(VoterIDError):
    code = "CREDENTIAL_ERROR"


class SignatureInvalid(CredentialError):
    code = "SIGNATURE_INVALID"


class Expired(CredentialError):
    code = "EXPIRED"


class NotVerified(CredentialError):
    code = "NOT_VERIFIED"


class NotFound(CredentialError):
    code = "NOT_FOUND"


class KeyDerivationError(VoterIDError):
    code = "KEY_DERIVATION_ERROR"


class WeakSeed(KeyDerivationError):
    """No candidate scalar fell inside the valid key space."""

    code = "WEAK_SEED"
