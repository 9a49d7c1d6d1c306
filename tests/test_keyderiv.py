import pytest

from voterid.errors import DecryptionFailed, WeakSeed
from voterid.keyderiv import SECP256K1_ORDER, KeyDeriver, verify_signature
from voterid.vault import PIIVault

SALT = b"\x11" * 32


def test_derive_is_idempotent():
    a = KeyDeriver(SALT).derive("123456789012")
    b = KeyDeriver(SALT).derive("1234 5678 9012")
    assert a == b
    assert a.private_bytes == b.private_bytes
    assert a.address.startswith("0x") and len(a.address) == 42


def test_salt_changes_keypair():
    assert KeyDeriver(SALT).derive("123456789012") != KeyDeriver(b"\x12" * 32).derive("123456789012")


def test_salt_not_in_repr():
    d = KeyDeriver(SALT)
    assert SALT.hex() not in repr(d)
    assert "redacted" in repr(d)
    assert str(d.derive("123456789012").private_scalar) not in repr(d.derive("123456789012"))


def test_sign_and_verify():
    kp = KeyDeriver(SALT).derive("123456789012")
    sig = kp.sign(b"register")
    assert kp.verify(b"register", sig)
    assert verify_signature(kp.public_key, b"register", sig)
    assert not kp.verify(b"tampered", sig)


class _WeakFirst(KeyDeriver):
    def candidate_scalars(self, national_id):
        candidates = super().candidate_scalars(national_id)
        next(candidates)
        yield 0, SECP256K1_ORDER + 5
        yield from candidates


class _AlwaysWeak(KeyDeriver):
    def candidate_scalars(self, national_id):
        for attempt in range(self._max_attempts):
            yield attempt, 0 if attempt % 2 else SECP256K1_ORDER


def test_out_of_range_seed_is_rehashed_not_wrapped():
    kp = _WeakFirst(SALT).derive("123456789012")
    assert kp.private_scalar != 5
    assert 0 < kp.private_scalar < SECP256K1_ORDER
    assert kp == _WeakFirst(SALT).derive("123456789012")


def test_weak_seed_when_every_candidate_invalid():
    with pytest.raises(WeakSeed):
        _AlwaysWeak(SALT, max_attempts=4).derive("123456789012")


def test_seal_and_recover_private_key():
    deriver = KeyDeriver(SALT)
    vault = PIIVault.from_secret(b"\x22" * 32)
    kp = deriver.derive("123456789012")
    sealed = deriver.seal_private_key(kp, "123456789012", vault)
    assert kp.private_bytes.hex() not in sealed.ciphertext
    assert deriver.recover(sealed, "123456789012", vault) == kp


def test_recover_under_other_identifier_fails():
    deriver = KeyDeriver(SALT)
    vault = PIIVault.from_secret(b"\x22" * 32)
    sealed = deriver.seal_private_key(deriver.derive("123456789012"), "123456789012", vault)
    with pytest.raises(DecryptionFailed):
        deriver.recover(sealed, "999999999999", vault)
