import json
import sqlite3
import threading

import pytest

from voterid import config
from voterid.concurrency import KeyedLocks, RateLimiter
from voterid.db import Database
from voterid.errors import StoreUnavailable
from voterid.keys import FileKeyProvider, InMemoryKeyProvider, get_key_provider, verify_ed25519
from voterid.logging_config import AuditLogger
from voterid.objstore import FilesystemObjectStore, S3ObjectStore
from voterid.util import b64e, mask_sensitive


# ============================================================
# Object storage
# ============================================================

def test_filesystem_store_roundtrip(tmp_path):
    objects = FilesystemObjectStore(str(tmp_path))
    url = objects.put("credentials/ab/credential.json", b"{}")
    assert url.startswith("file://")
    assert objects.get("credentials/ab/credential.json") == b"{}"
    objects.delete("credentials/ab/credential.json")
    objects.delete("credentials/ab/credential.json")
    with pytest.raises(FileNotFoundError):
        objects.get("credentials/ab/credential.json")


@pytest.mark.parametrize("path", ["../escape.json", "/etc/passwd", "a/../../b", ""])
def test_filesystem_store_rejects_traversal(tmp_path, path):
    with pytest.raises(ValueError):
        FilesystemObjectStore(str(tmp_path)).put(path, b"x")


class _FakeS3:
    def __init__(self):
        self.objects = {}

    def put_object(self, Bucket, Key, Body, ContentType):
        self.objects[(Bucket, Key)] = Body

    def get_object(self, Bucket, Key):
        body = self.objects[(Bucket, Key)]

        class _Body:
            def read(self):
                return body
        return {"Body": _Body()}

    def delete_object(self, Bucket, Key):
        self.objects.pop((Bucket, Key), None)


def test_s3_store_uses_prefix():
    fake = _FakeS3()
    objects = S3ObjectStore("ballots", "voterid/credentials", client=fake)
    url = objects.put("credentials/ab/credential.json", b"{}")
    assert url == "s3://ballots/voterid/credentials/credentials/ab/credential.json"
    assert objects.get("credentials/ab/credential.json") == b"{}"
    objects.delete("credentials/ab/credential.json")
    assert fake.objects == {}


# ============================================================
# Signing keys
# ============================================================

def test_file_key_provider(tmp_path):
    source = InMemoryKeyProvider(kid="issuer-xyz")
    key_path = tmp_path / "key.json"
    trust_path = tmp_path / "trust.json"
    key_path.write_text(json.dumps({"kid": "issuer-xyz", "private_key_b64": b64e(bytes(source._sk))}))
    trust_path.write_text(json.dumps(source.get_trust_store()))

    provider = get_key_provider("file", str(key_path), str(trust_path))
    assert isinstance(provider, FileKeyProvider)
    kid, sig = provider.sign_credential(b"payload")
    assert kid == "issuer-xyz"
    assert verify_ed25519(sig, b"payload", provider.public_key_for(kid))
    assert not verify_ed25519(sig, b"other", provider.public_key_for(kid))
    assert provider.public_key_for("missing") is None


def test_verify_ed25519_rejects_garbage():
    provider = InMemoryKeyProvider()
    pub = provider.public_key_for(provider.get_kid())
    assert not verify_ed25519("%%%", b"payload", pub)
    assert not verify_ed25519(b64e(b"\x00" * 64), b"payload", pub)
    assert not verify_ed25519(5, b"payload", pub)


def test_unknown_signer_type():
    with pytest.raises(ValueError):
        get_key_provider("hsm")


# ============================================================
# Concurrency helpers
# ============================================================

def test_keyed_locks_serialize_same_key():
    locks = KeyedLocks()
    inside = []
    overlap = []
    barrier = threading.Barrier(4)

    def worker():
        barrier.wait()
        with locks.hold("0xabc"):
            if inside:
                overlap.append(1)
            inside.append(1)
            inside.pop()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert overlap == []
    assert len(locks) == 0


def test_rate_limiter_window():
    limiter = RateLimiter(2, window_seconds=60)
    assert limiter.allow("k", now=0)
    assert limiter.allow("k", now=1)
    assert not limiter.allow("k", now=2)
    assert limiter.allow("other", now=2)
    assert limiter.allow("k", now=61)


# ============================================================
# Configuration and logging
# ============================================================

def test_load_secrets_from_env(monkeypatch):
    monkeypatch.setenv("VOTERID_SECRET_SALT", "aa" * 32)
    monkeypatch.setenv("VOTERID_ENCRYPTION_KEY", "not hex at all")
    s = config.load_secrets()
    assert s.secret_salt == b"\xaa" * 32
    assert s.encryption_key == b"not hex at all"
    assert "aa" * 32 not in repr(s)


def test_load_secrets_from_file(monkeypatch, tmp_path):
    monkeypatch.delenv("VOTERID_SECRET_SALT", raising=False)
    monkeypatch.delenv("VOTERID_ENCRYPTION_KEY", raising=False)
    path = tmp_path / "secrets.json"
    path.write_text(json.dumps({"secret_salt_hex": "01" * 32, "encryption_key_hex": "02" * 32}))
    assert config.load_secrets(str(path)).encryption_key == b"\x02" * 32


def test_missing_secrets_are_an_error(monkeypatch, tmp_path):
    monkeypatch.delenv("VOTERID_SECRET_SALT", raising=False)
    monkeypatch.delenv("VOTERID_ENCRYPTION_KEY", raising=False)
    with pytest.raises(RuntimeError):
        config.load_secrets(str(tmp_path / "absent.json"))


def test_audit_log_masks_identity_key(caplog):
    key = "0x" + "ab" * 32
    with caplog.at_level("INFO", logger="voterid.audit"):
        AuditLogger().registration_received(key)
    record = caplog.records[-1]
    assert record.extra_fields["event_type"] == "REGISTRATION_RECEIVED"
    assert key not in record.extra_fields["voter"]
    assert record.extra_fields["voter"].endswith(key[-8:])


def test_mask_sensitive():
    assert mask_sensitive("123456789012") == "********9012"
    assert mask_sensitive("abc") == "***"
    assert mask_sensitive(None) == ""


# ============================================================
# Database
# ============================================================

def test_transaction_rolls_back_on_error(tmp_path):
    db = Database(str(tmp_path / "t.db"))
    with db.transaction() as conn:
        conn.execute("CREATE TABLE t (v INTEGER)")
    with pytest.raises(RuntimeError):
        with db.transaction() as conn:
            conn.execute("INSERT INTO t VALUES (1)")
            raise RuntimeError("boom")
    assert db.query("SELECT * FROM t") == []


def test_failed_commit_is_not_masked_by_rollback(tmp_path):
    db = Database(str(tmp_path / "t.db"))
    with pytest.raises(StoreUnavailable, match="disk I/O error"):
        with db.transaction() as conn:
            conn.execute("COMMIT")
            raise sqlite3.OperationalError("disk I/O error")
    with db.transaction() as conn:
        conn.execute("CREATE TABLE after (v INTEGER)")
