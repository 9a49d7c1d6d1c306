"""
Small helpers shared across VoterID: canonical JSON, digests, encodings,
clock and random identifiers.
"""

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Optional, Union

Bytesish = Union[bytes, str]


def _as_bytes(data: Bytesish) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else data


def canonicalize(obj: Any) -> bytes:
    """
    Canonical JSON used for everything that gets signed or hashed:
    sorted keys, no insignificant whitespace, UTF-8.
    """
    text = json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return text.encode("utf-8")


def sha256_hex(data: Bytesish) -> str:
    return hashlib.sha256(_as_bytes(data)).hexdigest()


def now_epoch() -> int:
    """Seconds since the epoch, truncated."""
    return int(time.time())


def b64e(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def b64d(text: str) -> bytes:
    """Strict standard base64; raises ValueError on stray characters."""
    if not isinstance(text, str):
        raise TypeError(f"expected base64 text, got {type(text).__name__}")
    return base64.b64decode(text.encode("ascii"), validate=True)


def hex_prefixed(raw: bytes) -> str:
    """Lowercase hex with a ``0x`` prefix, the form identity keys and addresses take."""
    return "0x" + raw.hex()


def constant_time_compare(a: Bytesish, b: Bytesish) -> bool:
    return hmac.compare_digest(_as_bytes(a), _as_bytes(b))


def generate_nonce(nbytes: int = 16) -> str:
    return secrets.token_hex(nbytes)


def generate_id(nbytes: int = 16) -> str:
    return secrets.token_hex(nbytes)


def mask_sensitive(value: Optional[str], visible_chars: int = 4) -> str:
    """Star out all but the trailing ``visible_chars`` characters, for logs."""
    if not value:
        return ""
    hidden = max(len(value) - visible_chars, 0)
    if hidden == 0:
        return "*" * len(value)
    return "*" * hidden + value[-visible_chars:]
