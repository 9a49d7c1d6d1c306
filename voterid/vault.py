"""
PII vault for VoterID.

Symmetric authenticated encryption (AES-256-GCM) of sensitive fields at
rest. The master key is process-wide secret state loaded once at startup;
per-record keys are derived from it with HKDF so each voter's private key
material is sealed under a key bound to their national identifier.

``open`` never returns partially decrypted data. Any tag mismatch, wrong
key, or malformed box raises ``DecryptionFailed``, which callers treat as
data loss rather than a transient error.
"""

import json
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import DecryptionFailed, InvalidInput

KEY_SIZE = 32
IV_SIZE = 12

_MASTER_KEY_SALT = b"voterid-master-key"
_RECORD_KEY_SALT = b"voterid-record-key"


def _hkdf(material: bytes, salt: bytes, info: bytes) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=salt, info=info).derive(material)


@dataclass(frozen=True)
class SealedBox:
    """Ciphertext (with GCM tag appended) and IV, both hex encoded."""
    ciphertext: str
    iv: str

    def to_dict(self) -> Dict[str, str]:
        return {"ciphertext": self.ciphertext, "iv": self.iv}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SealedBox":
        try:
            return cls(ciphertext=data["ciphertext"], iv=data["iv"])
        except (KeyError, TypeError):
            raise DecryptionFailed("sealed box is missing ciphertext or iv") from None


class PIIVault:
    """
    Seals and opens PII under a single 32-byte key.

    Construct once per process with ``from_secret`` and derive per-record
    vaults with ``for_record``.
    """

    def __init__(self, key: bytes):
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
            raise ValueError(f"vault key must be {KEY_SIZE} bytes")
        self._key = bytes(key)
        self._aead = AESGCM(self._key)

    @classmethod
    def from_secret(cls, secret: bytes) -> "PIIVault":
        """Derive the vault key from configured secret material of any length."""
        if not secret:
            raise ValueError("encryption secret must not be empty")
        return cls(_hkdf(secret, _MASTER_KEY_SALT, b"voterid/pii"))

    def for_record(self, identifier: str) -> "PIIVault":
        """Vault keyed by HKDF(master key, info=identifier)."""
        if not isinstance(identifier, str) or not identifier:
            raise InvalidInput("identifier", "must be a non-empty string")
        return PIIVault(_hkdf(self._key, _RECORD_KEY_SALT, identifier.encode("utf-8")))

    def seal(self, plaintext: Union[str, bytes], aad: Optional[bytes] = None) -> SealedBox:
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        if not isinstance(plaintext, (bytes, bytearray)):
            raise InvalidInput("plaintext", "must be str or bytes")
        iv = os.urandom(IV_SIZE)
        ct = self._aead.encrypt(iv, bytes(plaintext), aad)
        return SealedBox(ciphertext=ct.hex(), iv=iv.hex())

    def open(self, box: Union[SealedBox, Dict[str, Any]], aad: Optional[bytes] = None) -> bytes:
        """
        Decrypt a sealed box.

        Raises:
            DecryptionFailed: on tampering, wrong key, or malformed input
        """
        if isinstance(box, dict):
            box = SealedBox.from_dict(box)
        try:
            iv = bytes.fromhex(box.iv)
            ct = bytes.fromhex(box.ciphertext)
        except (ValueError, TypeError, AttributeError):
            raise DecryptionFailed("sealed box is not valid hex") from None
        if len(iv) != IV_SIZE:
            raise DecryptionFailed("sealed box has an invalid iv")
        try:
            return self._aead.decrypt(iv, ct, aad)
        except InvalidTag:
            raise DecryptionFailed("authentication tag mismatch") from None

    def open_text(self, box: Union[SealedBox, Dict[str, Any]], aad: Optional[bytes] = None) -> str:
        try:
            return self.open(box, aad).decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionFailed("plaintext is not UTF-8") from None

    def seal_json(self, data: Dict[str, Any], aad: Optional[bytes] = None) -> SealedBox:
        return self.seal(json.dumps(data, sort_keys=True, separators=(",", ":")), aad)

    def open_json(self, box: Union[SealedBox, Dict[str, Any]], aad: Optional[bytes] = None) -> Dict[str, Any]:
        try:
            return json.loads(self.open_text(box, aad))
        except json.JSONDecodeError:
            raise DecryptionFailed("plaintext is not JSON") from None

    def __repr__(self) -> str:
        return "PIIVault(key=<redacted>)"
