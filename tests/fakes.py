"""In-memory chain node and builders shared by the test modules"""

import asyncio
from collections import Counter
from typing import Dict, List, Optional, Sequence

from packages.monitoring.substrate.block_details.block_details import (
    AuthorMapping, Block, BlockHeader, ChainEvent, DigestLog, Extrinsic, FeeQuote,
    IdentityRecord, PendingTransaction
)
from packages.monitoring.substrate.node.abstract_node import ChainNode, SubscriptionHandle


def block_hash_for(number: int) -> str:
    return f"0x{number:064x}"


def make_extrinsic(index: int, section: str = "Balances", method: str = "transfer", args=(), data: str = None) -> Extrinsic:
    return Extrinsic(
        index=index,
        hash=f"0x{index:064x}",
        section=section,
        method=method,
        args=tuple(args),
        data=data or f"0xext{index:02d}",
    )


def make_block(number: int, extrinsics: Sequence[Extrinsic] = (), digest_logs: Sequence[DigestLog] = ()) -> Block:
    return Block(
        header=BlockHeader(
            number=number,
            hash=block_hash_for(number),
            parent_hash=block_hash_for(number - 1),
            digest_logs=tuple(digest_logs),
        ),
        extrinsics=tuple(extrinsics),
    )


def success_event(index: int, weight: int, dispatch_class: str = "Normal", pays_fee: str = "Yes") -> ChainEvent:
    return ChainEvent(
        extrinsic_index=index,
        section="System",
        method="ExtrinsicSuccess",
        data=({'weight': {'ref_time': weight, 'proof_size': 0}, 'class': dispatch_class, 'pays_fee': pays_fee},),
    )


def failed_event(index: int, weight: int, error="BadOrigin") -> ChainEvent:
    return ChainEvent(
        extrinsic_index=index,
        section="System",
        method="ExtrinsicFailed",
        data=(error, {'weight': weight, 'class': 'Normal', 'pays_fee': 'Yes'}),
    )


def transfer_event(index: int, amount: int) -> ChainEvent:
    return ChainEvent(
        extrinsic_index=index,
        section="Balances",
        method="Transfer",
        data=("0xfrom", "0xto", amount),
    )


class FakeSubscription(SubscriptionHandle):
    def __init__(self):
        self.unsubscribed = False

    def unsubscribe(self) -> None:
        self.unsubscribed = True


class FakeChainNode(ChainNode):
    """In-memory chain recording every call made to it"""

    def __init__(self):
        self.blocks: Dict[str, Block] = {}
        self.events: Dict[str, List[ChainEvent]] = {}
        self.timestamps: Dict[str, int] = {}
        self.fee_quotes: Dict[str, FeeQuote] = {}
        self.identities: Dict[str, IdentityRecord] = {}
        self.author_mappings: Dict[str, AuthorMapping] = {}
        self.pending: List[PendingTransaction] = []
        self.max_block_weight = 1_000_000
        self.head_hash: Optional[str] = None

        self.calls = Counter()
        self.fee_quote_parents: List[str] = []
        self.failures: Dict[str, Exception] = {}
        self.failing_hashes: Dict[str, Exception] = {}
        self.log: List[str] = []

        self.in_flight = 0
        self.max_in_flight = 0

        self.head_callback = None
        self.subscription: Optional[FakeSubscription] = None
        self.subscribed_mode: Optional[str] = None

    def add_block(self, block: Block, events: Sequence[ChainEvent] = (), timestamp: int = 0) -> Block:
        self.blocks[block.header.hash] = block
        self.events[block.header.hash] = list(events)
        self.timestamps[block.header.hash] = timestamp
        return block

    def _enter(self, name: str):
        self.calls[name] += 1
        if name in self.failures:
            raise self.failures[name]

    async def get_block(self, block_hash: Optional[str] = None) -> Block:
        self._enter("get_block")
        block_hash = block_hash or self.head_hash
        if block_hash in self.failing_hashes:
            raise self.failing_hashes[block_hash]
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            block = self.blocks[block_hash]
            self.log.append(f"aggregate {block.header.number}")
            return block
        finally:
            self.in_flight -= 1

    async def get_block_hash(self, block_number: int) -> str:
        self._enter("get_block_hash")
        return block_hash_for(block_number)

    async def query_events_at(self, block_hash: str) -> List[ChainEvent]:
        self._enter("query_events_at")
        return list(self.events[block_hash])

    async def query_timestamp_at(self, block_hash: str) -> int:
        self._enter("query_timestamp_at")
        return self.timestamps[block_hash]

    async def query_max_block_weight(self) -> int:
        self._enter("query_max_block_weight")
        return self.max_block_weight

    async def query_fee_quote(self, extrinsic_hex: str, parent_hash: str) -> FeeQuote:
        self._enter("query_fee_quote")
        self.fee_quote_parents.append(parent_hash)
        return self.fee_quotes.get(extrinsic_hex, FeeQuote(weight=0, partial_fee=0))

    async def query_identity_of(self, account: str) -> Optional[IdentityRecord]:
        self._enter("query_identity_of")
        return self.identities.get(account)

    async def query_identities_batch(self, accounts: Sequence[str]) -> List[Optional[IdentityRecord]]:
        self._enter("query_identities_batch")
        self.log.append(f"identities {list(accounts)}")
        return [self.identities.get(account) for account in accounts]

    async def query_author_mapping(self, author_id: str) -> Optional[AuthorMapping]:
        self._enter("query_author_mapping")
        return self.author_mappings.get(author_id)

    async def subscribe_new_heads(self, callback) -> SubscriptionHandle:
        self._enter("subscribe_new_heads")
        return self._subscribe(callback, "best")

    async def subscribe_finalized_heads(self, callback) -> SubscriptionHandle:
        self._enter("subscribe_finalized_heads")
        return self._subscribe(callback, "finalized")

    def _subscribe(self, callback, mode: str) -> SubscriptionHandle:
        self.head_callback = callback
        self.subscribed_mode = mode
        self.subscription = FakeSubscription()
        return self.subscription

    def emit_head(self, block: Block):
        self.head_callback(block.header)

    async def get_pending_transactions(self) -> List[PendingTransaction]:
        self._enter("get_pending_transactions")
        return list(self.pending)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds
