"""
Single-use voting credentials.

A credential is a signed JSON document naming the voter's identity key and
a validity window. Issuing one requires a verified voter with no live
credential and no recorded vote. Redeeming one checks the signature and
expiry, then flips ``consumed`` with a conditional update so that exactly
one of any number of concurrent redemptions succeeds. Redemption is never
retried.
"""

import io
import json
import logging
from typing import Any, Callable, Dict, Optional

import qrcode

from .concurrency import KeyedLocks
from .errors import AlreadyConsumed, Expired, InvalidInput, NotFound, SignatureInvalid
from .hasher import validate_identity_key
from .keys import KeyProvider, verify_ed25519
from .logging_config import audit_log
from .objstore import ObjectStore
from .records import RedemptionResult, VotingCredential
from .store import OffchainStore
from .util import canonicalize, generate_id, generate_nonce, now_epoch

logger = logging.getLogger(__name__)

CREDENTIAL_VERSION = "1.0"
ARTIFACT_TYPE = "VOTING_CREDENTIAL"
SIGNATURE_ALG = "ed25519"
QR_BOX_SIZE = 8
QR_BORDER = 1


def credential_body_for_signing(payload: Dict[str, Any]) -> Dict[str, Any]:
    body = dict(payload)
    body.pop("signatures", None)
    return body


def artifact_path(identity_key: str) -> str:
    """Object store path of a voter's rendered credential."""
    return f"credentials/{identity_key[2:]}/credential.png"


def render_qr_png(payload: Dict[str, Any]) -> bytes:
    """QR code (PNG) whose text is the canonical signed credential."""
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M,
                       box_size=QR_BOX_SIZE, border=QR_BORDER)
    qr.add_data(canonicalize(payload).decode("utf-8"))
    qr.make(fit=True)
    buf = io.BytesIO()
    qr.make_image(fill_color="black", back_color="white").save(buf)
    return buf.getvalue()


class CredentialIssuer:
    """Issues, renders and redeems voting credentials."""

    def __init__(
        self,
        store: OffchainStore,
        keys: KeyProvider,
        objects: Optional[ObjectStore] = None,
        ttl_seconds: int = 1800,
        locks: Optional[KeyedLocks] = None,
        clock: Callable[[], int] = now_epoch,
    ):
        self.store = store
        self.keys = keys
        self.objects = objects
        self.ttl_seconds = ttl_seconds
        self.locks = locks or KeyedLocks()
        self.clock = clock

    # ============================================================
    # Issue
    # ============================================================

    def issue(self, identity_key: str, ttl_seconds: Optional[int] = None) -> Dict[str, Any]:
        """
        Issue a signed credential.

        Raises:
            NotFound: unknown voter
            NotVerified: voter has not been verified
            AlreadyConsumed: voter has already voted
            CredentialActive: an unexpired, unconsumed credential exists
        """
        identity_key = validate_identity_key(identity_key)
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise InvalidInput("ttl_seconds", "must be positive")

        now = self.clock()
        body = {
            "version": CREDENTIAL_VERSION,
            "artifact_type": ARTIFACT_TYPE,
            "credential_id": generate_id(),
            "identity_key": identity_key,
            "issued_at": now,
            "expires_at": now + ttl,
            "nonce": generate_nonce(),
        }
        kid, sig_b64 = self.keys.sign_credential(canonicalize(body))
        signed = dict(body)
        signed["signatures"] = [{"kid": kid, "alg": SIGNATURE_ALG, "sig_b64": sig_b64}]

        credential = VotingCredential(
            credential_id=body["credential_id"],
            identity_key=identity_key,
            issued_at=body["issued_at"],
            expires_at=body["expires_at"],
            nonce=body["nonce"],
            payload_json=json.dumps(signed, sort_keys=True),
        )
        with self.locks.hold(identity_key):
            self.store.insert_credential(credential, now)

        audit_log.credential_issued(identity_key, credential.credential_id, credential.expires_at)
        return signed

    # ============================================================
    # Redeem
    # ============================================================

    def _check_signature(self, payload: Dict[str, Any]) -> None:
        sigs = payload.get("signatures") or []
        if not isinstance(sigs, list) or not sigs or not isinstance(sigs[0], dict):
            raise SignatureInvalid("missing signature")
        s = sigs[0]
        if not all(isinstance(s.get(name), str) for name in ("kid", "alg", "sig_b64")):
            raise SignatureInvalid("malformed signature entry")
        if s["alg"] != SIGNATURE_ALG:
            raise SignatureInvalid("unsupported signature algorithm")
        pub = self.keys.public_key_for(s["kid"])
        if not pub:
            raise SignatureInvalid("unknown signing key")
        body = credential_body_for_signing(payload)
        if not verify_ed25519(s["sig_b64"], canonicalize(body), pub):
            raise SignatureInvalid("invalid signature")

    def _parse(self, payload: Any) -> Dict[str, Any]:
        if isinstance(payload, (str, bytes)):
            try:
                payload = json.loads(payload)
            except ValueError as e:
                raise InvalidInput("credential", "not valid JSON") from e
        if not isinstance(payload, dict):
            raise InvalidInput("credential", "must be an object")
        if payload.get("artifact_type") != ARTIFACT_TYPE:
            raise InvalidInput("credential", "not a voting credential")
        for name in ("credential_id", "identity_key", "nonce"):
            if not isinstance(payload.get(name), str) or not payload.get(name):
                raise InvalidInput(f"credential.{name}", "missing")
        for name in ("issued_at", "expires_at"):
            if not isinstance(payload.get(name), int) or isinstance(payload.get(name), bool):
                raise InvalidInput(f"credential.{name}", "must be an integer")
        return payload

    def redeem(self, payload: Any) -> RedemptionResult:
        """
        Consume a credential.

        Raises:
            InvalidInput: the payload is not a credential document
            SignatureInvalid: unknown key id or bad signature
            Expired: the validity window has passed
            NotFound: the credential was never issued here
            AlreadyConsumed: the credential (or the voter's vote) is spent
        """
        credential_id = payload.get("credential_id") if isinstance(payload, dict) else None
        try:
            payload = self._parse(payload)
            self._check_signature(payload)
            credential_id = payload["credential_id"]

            now = self.clock()
            if now >= payload["expires_at"]:
                raise Expired("credential expired")

            stored = self.store.get_credential(credential_id)
            if stored is None:
                raise NotFound("credential not found")
            if stored.identity_key != payload["identity_key"] or stored.nonce != payload["nonce"]:
                raise SignatureInvalid("credential does not match the issued record")

            with self.locks.hold(stored.identity_key):
                now = self.clock()
                if not self.store.consume_credential(credential_id, now):
                    current = self.store.get_credential(credential_id)
                    if current is not None and not current.consumed and now >= current.expires_at:
                        raise Expired("credential expired")
                    raise AlreadyConsumed("credential already used")
        except (InvalidInput, SignatureInvalid, Expired, NotFound, AlreadyConsumed) as e:
            audit_log.redemption_rejected(credential_id, e.code)
            raise

        voter = self.store.get_voter(stored.identity_key)
        voter_ref = voter.derived_address if voter is not None else stored.identity_key
        audit_log.credential_redeemed(stored.identity_key, credential_id)
        try:
            self.revoke_artifact(stored.identity_key)
        except Exception:
            # The vote is recorded; a stale artifact is unusable anyway.
            logger.exception("failed to delete rendered credential %s", credential_id)
        return RedemptionResult(
            success=True,
            voter_ref=voter_ref,
            credential_id=credential_id,
            redeemed_at=now,
        )

    # ============================================================
    # Rendering
    # ============================================================

    def render(self, payload: Dict[str, Any]) -> str:
        """Store the signed credential as a QR code PNG and return its URL."""
        if self.objects is None:
            raise RuntimeError("no object store configured")
        identity_key = validate_identity_key(payload["identity_key"])
        return self.objects.put(artifact_path(identity_key), render_qr_png(payload),
                                content_type="image/png")

    def revoke_artifact(self, identity_key: str) -> None:
        if self.objects is None:
            return
        self.objects.delete(artifact_path(identity_key))
