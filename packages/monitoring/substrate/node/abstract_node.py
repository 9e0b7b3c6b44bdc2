from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Sequence

from packages.monitoring.substrate.block_details.block_details import (
    AuthorMapping, Block, BlockHeader, ChainEvent, FeeQuote, IdentityRecord, PendingTransaction
)


class SubscriptionHandle(ABC):
    @abstractmethod
    def unsubscribe(self) -> None:
        """Stop delivering head notifications"""
        ...


HeadCallback = Callable[[BlockHeader], None]


class ChainNode(ABC):
    """Read-only chain access used by the block monitor.

    Absence is modelled with ``None`` (no identity, no author mapping);
    transport failures are raised unchanged.
    """

    @abstractmethod
    async def get_block(self, block_hash: Optional[str] = None) -> Block:
        """Get the block at ``block_hash``, or the current head when None"""
        ...

    @abstractmethod
    async def get_block_hash(self, block_number: int) -> str:
        ...

    @abstractmethod
    async def query_events_at(self, block_hash: str) -> List[ChainEvent]:
        ...

    @abstractmethod
    async def query_timestamp_at(self, block_hash: str) -> int:
        """Block timestamp in milliseconds"""
        ...

    @abstractmethod
    async def query_max_block_weight(self) -> int:
        ...

    @abstractmethod
    async def query_fee_quote(self, extrinsic_hex: str, parent_hash: str) -> FeeQuote:
        ...

    @abstractmethod
    async def query_identity_of(self, account: str) -> Optional[IdentityRecord]:
        ...

    @abstractmethod
    async def query_identities_batch(self, accounts: Sequence[str]) -> List[Optional[IdentityRecord]]:
        """One multi-key storage lookup, results in input order"""
        ...

    @abstractmethod
    async def query_author_mapping(self, author_id: str) -> Optional[AuthorMapping]:
        ...

    @abstractmethod
    async def subscribe_new_heads(self, callback: HeadCallback) -> SubscriptionHandle:
        ...

    @abstractmethod
    async def subscribe_finalized_heads(self, callback: HeadCallback) -> SubscriptionHandle:
        ...

    @abstractmethod
    async def get_pending_transactions(self) -> List[PendingTransaction]:
        ...
