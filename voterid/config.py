"""
Configuration module for VoterID.

Centralizes all configuration with environment variable support.
Secrets (the key-derivation salt and the vault encryption key) are loaded
once at startup into an immutable ``Secrets`` value and are never mutated
or logged afterwards. Rotating either one requires re-deriving every stored
key, so there is deliberately no reload path.
"""

import os
import json
from dataclasses import dataclass, field
from typing import Dict, Optional
from pathlib import Path

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("VOTERID_ENV", "dev")  # dev|stage|prod

# Storage
DB_PATH = os.getenv("VOTERID_DB_PATH", "data/voterid.db")
LEDGER_DB_PATH = os.getenv("VOTERID_LEDGER_DB_PATH", "data/ledger.db")

# Ledger confirmation (seconds)
LEDGER_TIMEOUT_SECONDS = float(os.getenv("LEDGER_TIMEOUT_SECONDS", "30"))
LEDGER_POLL_INTERVAL = float(os.getenv("LEDGER_POLL_INTERVAL", "0.25"))

# Credentials
CREDENTIAL_TTL_SECONDS = int(os.getenv("CREDENTIAL_TTL_SECONDS", "1800"))
SIGNING_KEY_PATH = os.getenv("SIGNING_KEY_PATH", "secrets/credential_signing_key.json")
TRUST_STORE_PATH = os.getenv("TRUST_STORE_PATH", "trust/trust_store.json")

# Secrets
SECRETS_PATH = os.getenv("SECRETS_PATH", "secrets/voterid_secrets.json")

# Object storage for rendered credentials
OBJECT_STORE_BACKEND = os.getenv("OBJECT_STORE_BACKEND", "filesystem")  # filesystem|s3
OBJECT_STORE_ROOT = os.getenv("OBJECT_STORE_ROOT", "data/objects")
S3_BUCKET = os.getenv("S3_BUCKET", "")
S3_PREFIX = os.getenv("S3_PREFIX", "voterid/credentials/")

# Rate limits (requests per minute)
REGISTER_RPM = int(os.getenv("REGISTER_RPM", "120"))
REDEEM_RPM = int(os.getenv("REDEEM_RPM", "600"))

# Admin gate for verification
ADMIN_TOKEN = os.getenv("VOTERID_ADMIN_TOKEN", "")


# ============================================================
# Secrets
# ============================================================

@dataclass(frozen=True)
class Secrets:
    """
    Process-wide secret material.

    Frozen so nothing can swap a key at runtime. ``repr`` never shows
    the values.
    """
    secret_salt: bytes = field(repr=False)
    encryption_key: bytes = field(repr=False)

    def __post_init__(self):
        if not self.secret_salt:
            raise ValueError("secret_salt must not be empty")
        if not self.encryption_key:
            raise ValueError("encryption_key must not be empty")


def _decode_secret(value: str) -> bytes:
    """Secrets are given as hex (preferred) or as raw UTF-8 text."""
    try:
        return bytes.fromhex(value)
    except ValueError:
        return value.encode("utf-8")


def load_secrets(path: Optional[str] = None) -> Secrets:
    """
    Load secrets from the environment, falling back to a JSON file.

    Environment variables ``VOTERID_SECRET_SALT`` and
    ``VOTERID_ENCRYPTION_KEY`` take precedence. The JSON file holds
    ``secret_salt_hex`` and ``encryption_key_hex``.

    Raises:
        RuntimeError: if either secret is missing
    """
    salt = os.getenv("VOTERID_SECRET_SALT", "")
    key = os.getenv("VOTERID_ENCRYPTION_KEY", "")
    if salt and key:
        return Secrets(secret_salt=_decode_secret(salt), encryption_key=_decode_secret(key))

    path = path or SECRETS_PATH
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError:
        raise RuntimeError(
            "VOTERID_SECRET_SALT and VOTERID_ENCRYPTION_KEY must be set "
            f"or {path} must exist (see tools/gen_keys.py)"
        ) from None

    return Secrets(
        secret_salt=bytes.fromhex(raw["secret_salt_hex"]),
        encryption_key=bytes.fromhex(raw["encryption_key_hex"]),
    )


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Validate that all required configuration files exist.
    Returns dict of name -> exists.
    """
    paths = {
        "signing_key": SIGNING_KEY_PATH,
        "trust_store": TRUST_STORE_PATH,
    }
    if not (os.getenv("VOTERID_SECRET_SALT") and os.getenv("VOTERID_ENCRYPTION_KEY")):
        paths["secrets"] = SECRETS_PATH

    return {name: Path(path).exists() for name, path in paths.items()}


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("VOTERID_DEBUG", "").lower() in ("1", "true", "yes")
