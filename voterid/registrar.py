"""
Dual-ledger registrar for VoterID.

Registration writes the authoritative ledger first and the off-chain vault
second. The two writes cannot be made atomic, so the registrar returns an
explicit ``RegistrationOutcome`` instead of hiding partial failures:

- ``LEDGER_CONFIRMED``: both stores hold the voter.
- ``LEDGER_FAILED``: the ledger was unreachable, reverted, or did not
  confirm in time. The vault row is written with ``ledger_tx_ref = NULL``
  and the reconciler retries the ledger write later.
- ``ORPHANED_LEDGER_ENTRY``: the ledger confirmed but the vault write
  failed. This is an integrity alert and is never repaired automatically.

Availability of registration outranks strict mirroring, so a ledger
failure never aborts an otherwise valid registration.
"""

import logging
from typing import Any, Callable, Dict, Optional

from .concurrency import KeyedLocks
from .errors import (
    AlreadyRegistered, AlreadyVerified, InvalidInput, LedgerReverted,
    LedgerUnavailable, NotFound, OrphanedLedgerEntry, StoreUnavailable,
)
from .hasher import VoterFingerprint, fingerprint_voter, validate_identity_key
from .keyderiv import KeyDeriver
from .ledger import LedgerClient, build_register_tx, build_verify_tx
from .logging_config import audit_log
from .records import (
    RegistrationOutcome, RegistrationResult, RegistrationState as S,
    VaultRecord, VerificationResult,
)
from .store import OffchainStore
from .util import now_epoch
from .vault import PIIVault, SealedBox

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("gender", "dob", "city", "state", "phone_number", "email")


def _validate_profile(profile: Optional[Dict[str, Any]]) -> Dict[str, str]:
    if not profile:
        return {}
    if not isinstance(profile, dict):
        raise InvalidInput("profile", "must be an object")
    unknown = set(profile) - set(PROFILE_FIELDS)
    if unknown:
        raise InvalidInput("profile", f"unknown fields: {', '.join(sorted(unknown))}")
    cleaned = {}
    for key, value in profile.items():
        if value is None:
            continue
        if not isinstance(value, str):
            raise InvalidInput(f"profile.{key}", "must be a string")
        cleaned[key] = value
    return cleaned


class DualLedgerRegistrar:
    """Registers and verifies voters across the ledger and the off-chain store."""

    def __init__(
        self,
        store: OffchainStore,
        ledger: LedgerClient,
        deriver: KeyDeriver,
        vault: PIIVault,
        locks: Optional[KeyedLocks] = None,
        clock: Callable[[], int] = now_epoch,
    ):
        self.store = store
        self.ledger = ledger
        self.deriver = deriver
        self.vault = vault
        self.locks = locks or KeyedLocks()
        self.clock = clock

    # ============================================================
    # Registration
    # ============================================================

    def _check_unique(self, fps: VoterFingerprint) -> None:
        if self.store.get_voter_by_id_fingerprint(fps.id_hex) is not None:
            raise AlreadyRegistered("voter already registered")
        try:
            on_ledger = self.ledger.read(fps.identity_key)
        except LedgerUnavailable as e:
            # The vault's unique index still arbitrates the race.
            logger.warning("ledger read failed during uniqueness check: %s", e.code)
            return
        if on_ledger is not None:
            raise AlreadyRegistered("voter already registered on ledger")

    def register(self, name: str, national_id: str,
                 profile: Optional[Dict[str, Any]] = None) -> RegistrationResult:
        """
        Register a voter.

        Raises:
            InvalidInput: malformed name, identifier or profile
            AlreadyRegistered: either store already holds the identifier
            StoreUnavailable: the vault write failed and nothing reached the ledger
        """
        trail = [S.RECEIVED]
        fps = fingerprint_voter(name, national_id)
        extra = _validate_profile(profile)
        trail.append(S.FINGERPRINTS_COMPUTED)
        identity_key = fps.identity_key
        audit_log.registration_received(identity_key)

        with self.locks.hold(identity_key):
            self._check_unique(fps)

            keypair = self.deriver.derive(national_id)
            now = self.clock()

            trail.append(S.LEDGER_SUBMITTED)
            tx_ref = None
            ledger_error = None
            try:
                tx_ref = self.ledger.submit_and_wait(build_register_tx(fps, keypair, now))
                trail.append(S.LEDGER_CONFIRMED)
            except LedgerReverted as e:
                if e.reason == "ALREADY_REGISTERED":
                    raise AlreadyRegistered("voter already registered on ledger") from e
                ledger_error = e
            except LedgerUnavailable as e:
                ledger_error = e

            if ledger_error is not None:
                trail.append(S.LEDGER_FAILED)
                audit_log.ledger_degraded(identity_key, "register", ledger_error.code)

            pii = {"name": name, "national_id": national_id, **extra}
            record = VaultRecord(
                identity_key=identity_key,
                id_fingerprint=fps.id_hex,
                name_fingerprint=fps.name_hex,
                encrypted_pii=self.vault.seal_json(pii, aad=identity_key.encode("ascii")).to_dict(),
                derived_address=keypair.address,
                encrypted_private_key=self.deriver.seal_private_key(keypair, national_id, self.vault).to_dict(),
                created_at=now,
                ledger_tx_ref=tx_ref,
            )

            try:
                self.store.insert_voter(record)
            except StoreUnavailable as e:
                if tx_ref is None:
                    raise
                trail.append(S.PARTIAL_FAILURE)
                audit_log.orphaned_ledger_entry(identity_key, tx_ref)
                return RegistrationResult(
                    identity_key=identity_key,
                    outcome=RegistrationOutcome.ORPHANED_LEDGER_ENTRY,
                    address=keypair.address,
                    ledger_tx_ref=tx_ref,
                    error=OrphanedLedgerEntry(identity_key, tx_ref, message=str(e)),
                    trail=trail,
                )

            trail.append(S.VAULT_WRITTEN)
            if tx_ref is not None:
                outcome = RegistrationOutcome.LEDGER_CONFIRMED
                trail.append(S.COMPLETE)
            else:
                outcome = RegistrationOutcome.LEDGER_FAILED
                trail.append(S.PARTIAL_FAILURE)

        audit_log.registration_complete(identity_key, outcome.value, tx_ref is not None)
        return RegistrationResult(
            identity_key=identity_key,
            outcome=outcome,
            address=keypair.address,
            ledger_tx_ref=tx_ref,
            error=ledger_error,
            trail=trail,
        )

    # ============================================================
    # Verification
    # ============================================================

    def verify(self, identity_key: str, verified_by: Optional[str] = None) -> VerificationResult:
        """
        Flip a voter from unverified to verified.

        Raises:
            NotFound: neither store knows the identity key
            AlreadyVerified: either store already shows the voter verified;
                no ledger transaction is emitted
            OrphanedLedgerEntry: the ledger knows the voter but the vault does not
        """
        identity_key = validate_identity_key(identity_key)

        with self.locks.hold(identity_key):
            voter = self.store.get_voter(identity_key)
            ledger_rec = None
            ledger_error = None
            try:
                ledger_rec = self.ledger.read(identity_key)
            except LedgerUnavailable as e:
                ledger_error = e

            if voter is None and ledger_rec is None:
                raise NotFound("voter not found")
            if voter is not None and voter.verified:
                raise AlreadyVerified("voter already verified")
            if ledger_rec is not None and ledger_rec.verified:
                if voter is not None:
                    self.store.mark_verified(identity_key, ledger_rec.verified_at or self.clock(),
                                             verified_by, ledger_rec.verify_tx_ref)
                raise AlreadyVerified("voter already verified on ledger")
            if voter is None:
                audit_log.orphaned_ledger_entry(identity_key, ledger_rec.register_tx_ref)
                raise OrphanedLedgerEntry(identity_key, ledger_rec.register_tx_ref)

            now = self.clock()
            verify_tx_ref = None
            if ledger_rec is not None:
                try:
                    verify_tx_ref = self.ledger.submit_and_wait(
                        build_verify_tx(identity_key, now, verified_by))
                except LedgerReverted as e:
                    if e.reason == "ALREADY_VERIFIED":
                        raise AlreadyVerified("voter already verified on ledger") from e
                    ledger_error = e
                except LedgerUnavailable as e:
                    ledger_error = e

            if ledger_error is not None and voter.on_ledger:
                audit_log.ledger_degraded(identity_key, "verify", ledger_error.code)

            if not self.store.mark_verified(identity_key, now, verified_by, verify_tx_ref):
                raise AlreadyVerified("voter already verified")

        audit_log.verification(identity_key, verified_by, verify_tx_ref is not None)
        return VerificationResult(
            identity_key=identity_key,
            verified=True,
            verified_at=now,
            verify_tx_ref=verify_tx_ref,
            error=ledger_error,
        )

    # ============================================================
    # Vault access
    # ============================================================

    def open_pii(self, voter: VaultRecord) -> Dict[str, Any]:
        """
        Decrypt a voter's PII document.

        Raises:
            DecryptionFailed: the sealed document is corrupt or the key is wrong
        """
        return self.vault.open_json(voter.encrypted_pii, aad=voter.identity_key.encode("ascii"))

    def replay_registration(self, voter: VaultRecord) -> str:
        """
        Resubmit the REGISTER transaction for a vault row that never reached
        the ledger, keeping the registration time from the vault row.

        Raises:
            LedgerUnavailable, LedgerReverted, DecryptionFailed
        """
        pii = self.open_pii(voter)
        fps = fingerprint_voter(pii["name"], pii["national_id"])
        if fps.identity_key != voter.identity_key:
            raise OrphanedLedgerEntry(voter.identity_key, message="vault PII does not match its identity key")
        sealed_key = SealedBox.from_dict(voter.encrypted_private_key)
        keypair = self.deriver.recover(sealed_key, pii["national_id"], self.vault, address=voter.derived_address)
        return self.ledger.submit_and_wait(build_register_tx(fps, keypair, voter.created_at))
