"""
Issuer keys for voting credentials.

Credentials are signed with Ed25519 (PyNaCl). Redeemers find the issuer's
public key by ``kid`` in a trust store document::

    {"trust_store_id": "...", "credential_keys": {"<kid>": "<public key b64>"}}
"""

import json
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .util import b64d, b64e


class KeyProvider(ABC):
    @abstractmethod
    def sign_credential(self, payload: bytes) -> Tuple[str, str]:
        """Return ``(kid, signature_b64)`` over the canonical credential body."""

    @abstractmethod
    def get_trust_store(self) -> Dict[str, Any]:
        ...

    @abstractmethod
    def get_kid(self) -> str:
        ...

    def public_key_for(self, kid: str) -> Optional[str]:
        """Trusted public key (base64) for ``kid``, or None when untrusted."""
        return self.get_trust_store().get("credential_keys", {}).get(kid)


class FileKeyProvider(KeyProvider):
    """
    Signing key from a JSON file (``kid``, ``private_key_b64``) and a trust
    store file that is re-read whenever its mtime moves forward.
    """

    def __init__(self, signing_key_path: str, trust_store_path: str):
        with open(signing_key_path, "r", encoding="utf-8") as f:
            key_doc = json.load(f)
        self._kid = key_doc["kid"]
        self._sk = SigningKey(b64d(key_doc["private_key_b64"]))

        self._trust_path = trust_store_path
        self._trust: Optional[Dict[str, Any]] = None
        self._trust_mtime = 0.0
        self._lock = threading.Lock()

    def sign_credential(self, payload: bytes) -> Tuple[str, str]:
        return self._kid, b64e(self._sk.sign(payload).signature)

    def get_trust_store(self) -> Dict[str, Any]:
        with self._lock:
            try:
                mtime = os.path.getmtime(self._trust_path)
            except FileNotFoundError:
                # keep serving the last good copy if the file is being replaced
                if self._trust is None:
                    raise
                return self._trust
            if self._trust is None or mtime > self._trust_mtime:
                with open(self._trust_path, "r", encoding="utf-8") as f:
                    self._trust = json.load(f)
                self._trust_mtime = mtime
            return self._trust

    def get_kid(self) -> str:
        return self._kid


class InMemoryKeyProvider(KeyProvider):
    """Ephemeral issuer key that trusts only itself."""

    def __init__(self, kid: str = "credential-issuer-01", signing_key: Optional[SigningKey] = None):
        self._kid = kid
        self._sk = signing_key or SigningKey.generate()

    def sign_credential(self, payload: bytes) -> Tuple[str, str]:
        return self._kid, b64e(self._sk.sign(payload).signature)

    def get_trust_store(self) -> Dict[str, Any]:
        return {
            "trust_store_id": "voterid-in-memory",
            "credential_keys": {self._kid: b64e(bytes(self._sk.verify_key))},
        }

    def get_kid(self) -> str:
        return self._kid


def verify_ed25519(signature_b64: str, payload: bytes, public_key_b64: str) -> bool:
    """True only for a well-formed signature that verifies under the key."""
    try:
        VerifyKey(b64d(public_key_b64)).verify(payload, b64d(signature_b64))
    except (BadSignatureError, ValueError, TypeError):
        return False
    return True


def get_key_provider(
    signer_type: str = "file",
    signing_key_path: str = "secrets/credential_signing_key.json",
    trust_store_path: str = "trust/trust_store.json",
) -> KeyProvider:
    """Build the configured provider: ``file`` (default) or ``memory``."""
    if signer_type == "file":
        return FileKeyProvider(signing_key_path, trust_store_path)
    if signer_type == "memory":
        return InMemoryKeyProvider()
    raise ValueError(f"unknown signer type: {signer_type}")
