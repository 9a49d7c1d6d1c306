"""
Read-only voter status lookup.

The off-chain store is the fast path. Voters it does not know are looked up
on the ledger, which can only answer registration and verification.
"""

import logging

from .errors import NotFound
from .hasher import validate_identity_key
from .ledger import LedgerClient
from .records import VoterStatus
from .store import OffchainStore

logger = logging.getLogger(__name__)


class StatusResolver:
    def __init__(self, store: OffchainStore, ledger: LedgerClient):
        self.store = store
        self.ledger = ledger

    def resolve(self, identity_key: str) -> VoterStatus:
        """
        Raises:
            NotFound: neither store knows the identity key
            LedgerUnavailable: the store misses and the ledger cannot be read
        """
        identity_key = validate_identity_key(identity_key)

        voter = self.store.get_voter(identity_key)
        if voter is not None:
            return VoterStatus(
                identity_key=identity_key,
                registered=True,
                verified=voter.verified,
                consumed=voter.has_voted,
                on_ledger=voter.on_ledger,
                source="cache",
            )

        record = self.ledger.read(identity_key)
        if record is None:
            raise NotFound("voter not found")
        logger.debug("status for %s served from ledger", identity_key[:10])
        return VoterStatus(
            identity_key=identity_key,
            registered=True,
            verified=record.verified,
            consumed=False,
            on_ledger=True,
            source="ledger",
        )
