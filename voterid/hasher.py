"""
Identity hashing for VoterID.

Fingerprints are SHA-256 digests over the UTF-8 encoding of a normalized
field. They are the on-ledger identity key and the off-chain uniqueness
key, so the output is always the full 32-byte digest.
"""

import hashlib
import re
import unicodedata
from dataclasses import dataclass

from .errors import InvalidInput
from .util import hex_prefixed

FINGERPRINT_SIZE = 32

_WHITESPACE = re.compile(r"\s+")
_ID_SEPARATORS = re.compile(r"[\s\-]+")


def normalize_field(field: str) -> str:
    """NFC-normalize, trim, and collapse internal whitespace."""
    if not isinstance(field, str):
        raise InvalidInput("field", "must be a string")
    normalized = _WHITESPACE.sub(" ", unicodedata.normalize("NFC", field)).strip()
    if not normalized:
        raise InvalidInput("field", "cannot be empty")
    return normalized


def normalize_national_id(national_id: str) -> str:
    """National identifiers are compared without spaces or hyphens."""
    normalized = normalize_field(national_id)
    compact = _ID_SEPARATORS.sub("", normalized)
    if not compact:
        raise InvalidInput("national_id", "cannot be empty")
    return compact


def fingerprint(field: str) -> bytes:
    """
    Compute the 32-byte fingerprint of a PII field.

    Raises:
        InvalidInput: if the field is not a string or is empty
    """
    return hashlib.sha256(normalize_field(field).encode("utf-8")).digest()


def fingerprint_hex(field: str) -> str:
    """Fingerprint rendered as a 0x-prefixed 64-character hex string."""
    return hex_prefixed(fingerprint(field))


@dataclass(frozen=True)
class VoterFingerprint:
    """Independent fingerprints of a voter's name and national identifier."""
    name_fp: bytes
    id_fp: bytes

    def __post_init__(self):
        if len(self.name_fp) != FINGERPRINT_SIZE or len(self.id_fp) != FINGERPRINT_SIZE:
            raise InvalidInput("fingerprint", f"must be {FINGERPRINT_SIZE} bytes")

    @property
    def identity_key(self) -> str:
        return hex_prefixed(self.id_fp)

    @property
    def name_hex(self) -> str:
        return hex_prefixed(self.name_fp)

    @property
    def id_hex(self) -> str:
        return hex_prefixed(self.id_fp)


def fingerprint_voter(name: str, national_id: str) -> VoterFingerprint:
    """Fingerprint both identity fields of a registration."""
    try:
        name_fp = fingerprint(name)
    except InvalidInput:
        raise InvalidInput("name", "must be a non-empty string") from None
    try:
        id_fp = fingerprint(normalize_national_id(national_id))
    except InvalidInput:
        raise InvalidInput("national_id", "must be a non-empty string") from None
    return VoterFingerprint(name_fp=name_fp, id_fp=id_fp)


def identity_key_for(national_id: str) -> str:
    """Identity key a national identifier maps to."""
    return hex_prefixed(fingerprint(normalize_national_id(national_id)))


def validate_identity_key(value: str) -> str:
    """Validate and lowercase a 0x-prefixed 32-byte hex identity key."""
    if not isinstance(value, str):
        raise InvalidInput("identity_key", "must be a string")
    value = value.strip().lower()
    if not re.fullmatch(r"0x[0-9a-f]{64}", value):
        raise InvalidInput("identity_key", "must be 0x followed by 64 hex characters")
    return value
