"""
Deterministic key derivation for VoterID.

Each voter gets a secp256k1 keypair computed as::

    seed = HMAC-SHA256(secret_salt, national_id)

with the seed read as a big-endian private scalar. The derivation is a pure
function of the salt and the identifier, so signing capability can be
reconstructed on demand instead of being stored; the salt is the secret.

A seed outside ``[1, n)`` is never reduced modulo ``n``. It is re-hashed
under a domain-separated tag until a valid scalar appears, and ``WeakSeed``
is raised if the retry budget runs out.
"""

import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Iterator, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .errors import DecryptionFailed, WeakSeed
from .hasher import normalize_national_id
from .vault import PIIVault, SealedBox

# Order of the secp256k1 group.
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

MAX_REHASH_ATTEMPTS = 8
_RETRY_TAG = b"voterid/keyderiv/retry/"


def address_for(public_key: bytes) -> str:
    return "0x" + hashlib.sha3_256(public_key[1:]).digest()[-20:].hex()


@dataclass(frozen=True)
class DerivedKeypair:
    """secp256k1 keypair derived from a national identifier."""
    private_scalar: int = field(repr=False)
    public_key: bytes
    address: str

    @classmethod
    def from_scalar(cls, scalar: int) -> "DerivedKeypair":
        sk = ec.derive_private_key(scalar, ec.SECP256K1())
        pub = sk.public_key().public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
        return cls(private_scalar=scalar, public_key=pub, address=address_for(pub))

    @property
    def private_bytes(self) -> bytes:
        return self.private_scalar.to_bytes(32, "big")

    def sign(self, message: bytes) -> bytes:
        """ECDSA-SHA256 signature (DER encoded)."""
        sk = ec.derive_private_key(self.private_scalar, ec.SECP256K1())
        return sk.sign(message, ec.ECDSA(hashes.SHA256()))

    def verify(self, message: bytes, signature: bytes) -> bool:
        return verify_signature(self.public_key, message, signature)


def verify_signature(public_key: bytes, message: bytes, signature: bytes) -> bool:
    """Verify an ECDSA-SHA256 signature against an uncompressed SEC1 public key."""
    try:
        pk = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), public_key)
        pk.verify(signature, message, ec.ECDSA(hashes.SHA256()))
        return True
    except (InvalidSignature, ValueError, TypeError):
        return False


def is_valid_scalar(scalar: int) -> bool:
    return 0 < scalar < SECP256K1_ORDER


class KeyDeriver:
    """
    Derives voter keypairs from a process-wide secret salt.

    The salt is held only in memory and never appears in ``repr``.
    """

    def __init__(self, secret_salt: bytes, max_attempts: int = MAX_REHASH_ATTEMPTS):
        if not secret_salt:
            raise ValueError("secret_salt must not be empty")
        self._salt = bytes(secret_salt)
        self._max_attempts = max_attempts

    def seed(self, national_id: str) -> bytes:
        ident = normalize_national_id(national_id)
        return hmac.new(self._salt, ident.encode("utf-8"), hashlib.sha256).digest()

    def candidate_scalars(self, national_id: str) -> Iterator[Tuple[int, int]]:
        """Yield ``(attempt, scalar)`` pairs, the first from the plain seed."""
        seed = self.seed(national_id)
        yield 0, int.from_bytes(seed, "big")
        for attempt in range(1, self._max_attempts):
            seed = hmac.new(
                self._salt, _RETRY_TAG + attempt.to_bytes(4, "big") + seed, hashlib.sha256
            ).digest()
            yield attempt, int.from_bytes(seed, "big")

    def derive(self, national_id: str) -> DerivedKeypair:
        """
        Derive the keypair for a national identifier.

        Raises:
            InvalidInput: if the identifier is empty or not a string
            WeakSeed: if no candidate scalar is in the valid key space
        """
        for _, scalar in self.candidate_scalars(national_id):
            if is_valid_scalar(scalar):
                return DerivedKeypair.from_scalar(scalar)
        raise WeakSeed(f"no valid scalar after {self._max_attempts} attempts")

    def seal_private_key(self, keypair: DerivedKeypair, national_id: str, vault: PIIVault) -> SealedBox:
        """Seal the private scalar under the identifier's per-record vault key."""
        record_vault = vault.for_record(normalize_national_id(national_id))
        return record_vault.seal(keypair.private_bytes, aad=keypair.address.encode("ascii"))

    def recover(self, sealed: SealedBox, national_id: str, vault: PIIVault,
                address: Optional[str] = None) -> DerivedKeypair:
        """
        Open a sealed private key and check it against a fresh derivation.

        Raises:
            DecryptionFailed: if the box cannot be opened or the key no
                longer matches what the current salt derives
        """
        expected = self.derive(national_id)
        record_vault = vault.for_record(normalize_national_id(national_id))
        aad = (address or expected.address).encode("ascii")
        raw = record_vault.open(sealed, aad=aad)
        if int.from_bytes(raw, "big") != expected.private_scalar:
            raise DecryptionFailed("sealed key does not match the re-derived key")
        return expected

    def __repr__(self) -> str:
        return "KeyDeriver(secret_salt=<redacted>)"
