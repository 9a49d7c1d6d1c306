
import os, json, secrets
from nacl.signing import SigningKey
from voterid.util import b64e

os.makedirs("secrets", exist_ok=True)
os.makedirs("trust", exist_ok=True)

sk = SigningKey.generate()

with open("secrets/credential_signing_key.json","w",encoding="utf-8") as f:
    json.dump({"kid":"credential-issuer-01", "private_key_b64": b64e(bytes(sk))}, f, indent=2)

if not os.path.exists("secrets/voterid_secrets.json"):
    with open("secrets/voterid_secrets.json","w",encoding="utf-8") as f:
        json.dump({
            "secret_salt_hex": secrets.token_hex(32),
            "encryption_key_hex": secrets.token_hex(32),
        }, f, indent=2)
    os.chmod("secrets/voterid_secrets.json", 0o600)

trust = {
  "trust_store_id":"voterid-trust-store-demo",
  "trust_store_version":"0.1.0",
  "credential_keys": {
    "credential-issuer-01": b64e(bytes(sk.verify_key))
  }
}

with open("trust/trust_store.json","w",encoding="utf-8") as f:
    json.dump(trust, f, indent=2)

print("Generated credential signing key, trust store and secrets.")
