import pytest
from typing import Any, Dict, List, Optional

from voterid.config import Secrets
from voterid.keys import InMemoryKeyProvider
from voterid.ledger import HashChainLedger, Ledger, TxStatus
from voterid.objstore import FilesystemObjectStore
from voterid.service import VoterIDService
from voterid.store import OffchainStore

SALT = bytes.fromhex("11" * 32)
ENCRYPTION_KEY = bytes.fromhex("22" * 32)
START = 1_700_000_000


class Clock:
    """Controllable epoch clock."""

    def __init__(self, now: int = START):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


class FlakyLedger(Ledger):
    """
    Wraps a real ledger and injects failures.

    ``down``: submit and read raise ConnectionError.
    ``stuck``: submissions land but confirm reports PENDING forever.
    ``lose_reads``: only read raises.
    """

    def __init__(self, inner: HashChainLedger):
        self.inner = inner
        self.down = False
        self.stuck = False
        self.lose_reads = False
        self.submitted: List[Dict[str, Any]] = []

    def submit(self, tx: Dict[str, Any]) -> str:
        if self.down:
            raise ConnectionError("ledger node unreachable")
        self.submitted.append(tx)
        return self.inner.submit(tx)

    def confirm(self, tx_ref: str) -> TxStatus:
        if self.down:
            raise ConnectionError("ledger node unreachable")
        if self.stuck:
            return TxStatus.PENDING
        return self.inner.confirm(tx_ref)

    def revert_reason(self, tx_ref: str) -> Optional[str]:
        return self.inner.revert_reason(tx_ref)

    def read(self, identity_key: str):
        if self.down or self.lose_reads:
            raise ConnectionError("ledger node unreachable")
        return self.inner.read(identity_key)

    def identity_keys(self) -> List[str]:
        if self.down:
            raise ConnectionError("ledger node unreachable")
        return self.inner.identity_keys()

    def __getattr__(self, name):
        return getattr(self.inner, name)


@pytest.fixture
def secrets():
    return Secrets(secret_salt=SALT, encryption_key=ENCRYPTION_KEY)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def keys():
    return InMemoryKeyProvider()


@pytest.fixture
def store(tmp_path):
    s = OffchainStore(str(tmp_path / "voterid.db"))
    s.init()
    yield s
    s.close()


@pytest.fixture
def chain(tmp_path):
    ledger = HashChainLedger(str(tmp_path / "ledger.db"))
    yield ledger
    ledger.close()


@pytest.fixture
def ledger(chain):
    return FlakyLedger(chain)


@pytest.fixture
def objects(tmp_path):
    return FilesystemObjectStore(str(tmp_path / "objects"))


@pytest.fixture
def service(store, ledger, secrets, keys, objects, clock):
    return VoterIDService(
        store=store,
        ledger=ledger,
        secrets=secrets,
        keys=keys,
        objects=objects,
        ledger_timeout=0.2,
        poll_interval=0.01,
        clock=clock,
    )


@pytest.fixture
def registrar(service):
    return service.registrar


@pytest.fixture
def issuer(service):
    return service.issuer


@pytest.fixture
def verified_voter(registrar):
    result = registrar.register("Asha Verma", "1234 5678 9012")
    registrar.verify(result.identity_key, verified_by="officer-7")
    return result.identity_key
