from dataclasses import dataclass, field
from typing import Any, Optional, Tuple


@dataclass(frozen=True)
class DigestLog:
    kind: str
    engine: Optional[str] = None
    data: Optional[str] = None


@dataclass(frozen=True)
class BlockHeader:
    number: int
    hash: str
    parent_hash: str
    digest_logs: Tuple[DigestLog, ...] = ()


@dataclass(frozen=True)
class Extrinsic:
    """A decoded extrinsic; ``args`` keeps (name, value) pairs in call order."""
    index: int
    hash: Optional[str]
    section: str
    method: str
    args: Tuple[Tuple[str, Any], ...] = ()
    data: str = ""

    def is_call(self, section: str, method: str) -> bool:
        return self.section.lower() == section.lower() and self.method.lower() == method.lower()

    def arg(self, position: int, name: Optional[str] = None) -> Any:
        if name is not None:
            for arg_name, value in self.args:
                if arg_name == name:
                    return value
        if position < len(self.args):
            return self.args[position][1]
        return None


@dataclass(frozen=True)
class Block:
    header: BlockHeader
    extrinsics: Tuple[Extrinsic, ...] = ()


@dataclass(frozen=True)
class ChainEvent:
    """An event record; ``extrinsic_index`` is None for block-level events."""
    extrinsic_index: Optional[int]
    section: str
    method: str
    data: Tuple[Any, ...] = ()

    def is_event(self, section: str, method: str) -> bool:
        return self.section.lower() == section.lower() and self.method.lower() == method.lower()


@dataclass(frozen=True)
class FeeQuote:
    weight: int
    partial_fee: int
    pays_fee: bool = True
    dispatch_class: str = "Normal"


@dataclass(frozen=True)
class DispatchInfo:
    weight: int
    dispatch_class: str
    pays_fee: bool

    @property
    def is_mandatory(self) -> bool:
        return self.dispatch_class.lower() == "mandatory"


@dataclass(frozen=True)
class IdentityRecord:
    display_name_bytes: bytes


@dataclass(frozen=True)
class AuthorMapping:
    account_id: str


@dataclass(frozen=True)
class PendingTransaction:
    hash: str
    data: str = ""


@dataclass(frozen=True)
class TxWithEventAndFee:
    extrinsic: Extrinsic
    events: Tuple[ChainEvent, ...]
    dispatch_info: Optional[DispatchInfo]
    dispatch_error: Any
    fee: FeeQuote

    @property
    def succeeded(self) -> bool:
        return self.dispatch_error is None


@dataclass(frozen=True)
class BlockSnapshot:
    block: Block
    author_name: str
    block_time: int
    records: Tuple[ChainEvent, ...]
    tx_with_events: Tuple[TxWithEventAndFee, ...]
    weight_percentage: float
    total_fees: int = 0
    total_transferred: int = 0
    extrinsic_count: int = 0
    ethereum_tx_count: int = 0

    @property
    def number(self) -> int:
        return self.block.header.number

    @property
    def hash(self) -> str:
        return self.block.header.hash


@dataclass(frozen=True)
class RealtimeSnapshot(BlockSnapshot):
    elapsed_ms: int = 0
    pending_txs: Tuple[PendingTransaction, ...] = field(default_factory=tuple)

    @classmethod
    def from_snapshot(cls, snapshot: BlockSnapshot, elapsed_ms: int, pending_txs) -> "RealtimeSnapshot":
        return cls(
            block=snapshot.block,
            author_name=snapshot.author_name,
            block_time=snapshot.block_time,
            records=snapshot.records,
            tx_with_events=snapshot.tx_with_events,
            weight_percentage=snapshot.weight_percentage,
            total_fees=snapshot.total_fees,
            total_transferred=snapshot.total_transferred,
            extrinsic_count=snapshot.extrinsic_count,
            ethereum_tx_count=snapshot.ethereum_tx_count,
            elapsed_ms=elapsed_ms,
            pending_txs=tuple(pending_txs),
        )
