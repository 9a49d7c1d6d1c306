"""
Caller-facing VoterID operations.

``VoterIDService`` wires the registrar, credential issuer, status resolver
and reconciler to one off-chain store, one ledger and one set of secrets,
and exposes the operations as plain dictionaries ready for any transport.
"""

import os
from typing import Any, Callable, Dict, Optional

from . import config
from .concurrency import KeyedLocks
from .credentials import CredentialIssuer
from .keyderiv import KeyDeriver
from .keys import KeyProvider, get_key_provider
from .ledger import HashChainLedger, Ledger, LedgerClient
from .objstore import ObjectStore, get_object_store
from .reconcile import ReconcileReport, Reconciler
from .registrar import DualLedgerRegistrar
from .resolver import StatusResolver
from .store import OffchainStore
from .util import now_epoch
from .vault import PIIVault


def _ensure_parent(path: str) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)


class VoterIDService:
    def __init__(
        self,
        store: OffchainStore,
        ledger: Ledger,
        secrets: config.Secrets,
        keys: KeyProvider,
        objects: Optional[ObjectStore] = None,
        ledger_timeout: float = config.LEDGER_TIMEOUT_SECONDS,
        poll_interval: float = config.LEDGER_POLL_INTERVAL,
        credential_ttl: int = config.CREDENTIAL_TTL_SECONDS,
        clock: Callable[[], int] = now_epoch,
    ):
        self.store = store
        self.ledger = ledger
        self.client = LedgerClient(ledger, timeout=ledger_timeout, poll_interval=poll_interval)
        locks = KeyedLocks()
        self.registrar = DualLedgerRegistrar(
            store=store,
            ledger=self.client,
            deriver=KeyDeriver(secrets.secret_salt),
            vault=PIIVault.from_secret(secrets.encryption_key),
            locks=locks,
            clock=clock,
        )
        self.issuer = CredentialIssuer(
            store=store,
            keys=keys,
            objects=objects,
            ttl_seconds=credential_ttl,
            locks=locks,
            clock=clock,
        )
        self.resolver = StatusResolver(store, self.client)
        self.reconciler = Reconciler(self.registrar)

    @classmethod
    def from_config(cls) -> "VoterIDService":
        """Build the service from environment configuration."""
        _ensure_parent(config.DB_PATH)
        _ensure_parent(config.LEDGER_DB_PATH)
        store = OffchainStore(config.DB_PATH)
        store.init()
        return cls(
            store=store,
            ledger=HashChainLedger(config.LEDGER_DB_PATH),
            secrets=config.load_secrets(),
            keys=get_key_provider(
                signer_type=os.getenv("VOTERID_SIGNER", "file"),
                signing_key_path=config.SIGNING_KEY_PATH,
                trust_store_path=config.TRUST_STORE_PATH,
            ),
            objects=get_object_store(),
        )

    def register(self, name: str, national_id: str, profile: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.registrar.register(name, national_id, profile).to_dict()

    def verify(self, identity_key: str, verified_by: Optional[str] = None) -> Dict[str, Any]:
        return self.registrar.verify(identity_key, verified_by).to_dict()

    def issue_credential(self, identity_key: str, ttl_seconds: Optional[int] = None) -> Dict[str, Any]:
        return self.issuer.issue(identity_key, ttl_seconds)

    def render_credential(self, payload: Dict[str, Any]) -> str:
        return self.issuer.render(payload)

    def redeem(self, payload: Any) -> Dict[str, Any]:
        return self.issuer.redeem(payload).to_dict()

    def status(self, identity_key: str) -> Dict[str, Any]:
        return self.resolver.resolve(identity_key).to_dict()

    def reconcile(self, limit: int = 100) -> ReconcileReport:
        return self.reconciler.run_once(limit)

    def ledger_proof(self) -> Dict[str, Any]:
        """Head of the ledger hash chain, when the ledger exposes one."""
        head = getattr(self.ledger, "head", None)
        proof = head() if head else {}
        proof.update(self.store.stats())
        return proof

    def close(self) -> None:
        self.store.close()
        close = getattr(self.ledger, "close", None)
        if close:
            close()
