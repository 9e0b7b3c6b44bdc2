import asyncio
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from packages.monitoring.base.enhanced_logging import ErrorContextManager, classify_error
from packages.monitoring.base.metrics import MonitorMetrics
from packages.monitoring.substrate import WEIGHT_PER_GAS
from packages.monitoring.substrate.block_details.author_extraction import AUTHOR_STRATEGIES, AuthorStrategy, extract_author
from packages.monitoring.substrate.block_details.block_details import (
    BlockSnapshot, ChainEvent, DispatchInfo, Extrinsic, FeeQuote, TxWithEventAndFee
)
from packages.monitoring.substrate.errors import DecodeError, EventShapeError
from packages.monitoring.substrate.identity.identity_resolver import CacheWriteBatch, IdentityResolver
from packages.monitoring.substrate.node.abstract_node import ChainNode

ETHEREUM_PAYLOAD_VARIANTS = ("Legacy", "EIP2930", "EIP1559")


async def gather_all(*aws) -> List[Any]:
    """Wait for every awaitable, then raise the first failure if any"""
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return list(results)


def _to_int(value: Any) -> int:
    if isinstance(value, str) and value.startswith('0x'):
        return int(value, 16)
    return int(value)


def decode_dispatch_info(value: Any) -> DispatchInfo:
    if not isinstance(value, dict) or 'weight' not in value:
        raise EventShapeError(f"Unexpected dispatch info: {value}")

    weight = value['weight']
    if isinstance(weight, dict):
        weight = weight.get('ref_time', weight.get('refTime'))
        if weight is None:
            raise EventShapeError(f"Unexpected dispatch weight: {value['weight']}")

    pays_fee = value.get('pays_fee', value.get('paysFee', 'Yes'))
    return DispatchInfo(
        weight=_to_int(weight),
        dispatch_class=str(value.get('class', 'Normal')),
        pays_fee=pays_fee if isinstance(pays_fee, bool) else str(pays_fee).lower() == 'yes',
    )


def dispatch_outcome(events: Sequence[ChainEvent]) -> Tuple[Optional[DispatchInfo], Any]:
    """Dispatch info and error from the System.ExtrinsicSuccess / ExtrinsicFailed event"""
    for event in events:
        if event.is_event("System", "ExtrinsicSuccess"):
            if not event.data:
                raise EventShapeError("ExtrinsicSuccess without dispatch info")
            return decode_dispatch_info(event.data[0]), None
        if event.is_event("System", "ExtrinsicFailed"):
            if len(event.data) < 2:
                raise EventShapeError("ExtrinsicFailed without dispatch error/info")
            return decode_dispatch_info(event.data[1]), event.data[0]
    return None, None


def map_extrinsics(
        extrinsics: Sequence[Extrinsic],
        records: Sequence[ChainEvent],
        fees: Sequence[FeeQuote]
) -> Tuple[TxWithEventAndFee, ...]:
    if len(fees) != len(extrinsics):
        raise DecodeError(f"Got {len(fees)} fee quotes for {len(extrinsics)} extrinsics")

    events_by_index: Dict[int, List[ChainEvent]] = defaultdict(list)
    for record in records:
        if record.extrinsic_index is not None:
            events_by_index[record.extrinsic_index].append(record)

    txs = []
    for extrinsic, fee in zip(extrinsics, fees):
        events = tuple(events_by_index.get(extrinsic.index, ()))
        dispatch_info, dispatch_error = dispatch_outcome(events)
        txs.append(TxWithEventAndFee(
            extrinsic=extrinsic,
            events=events,
            dispatch_info=dispatch_info,
            dispatch_error=dispatch_error,
            fee=fee,
        ))
    return tuple(txs)


def is_ethereum_transact(extrinsic: Extrinsic) -> bool:
    return extrinsic.is_call("Ethereum", "transact")


def ethereum_payload(extrinsic: Extrinsic) -> Dict[str, Any]:
    payload = extrinsic.arg(0, name="transaction")
    if not isinstance(payload, dict):
        raise DecodeError(f"Ethereum transaction payload missing in extrinsic {extrinsic.index}")
    for variant in ETHEREUM_PAYLOAD_VARIANTS:
        if variant in payload:
            return payload[variant]
    return payload


def ethereum_gas_price(payload: Dict[str, Any]) -> int:
    for key in ('gas_price', 'max_fee_per_gas'):
        if payload.get(key) is not None:
            return _to_int(payload[key])
    raise DecodeError(f"Ethereum payload without gas price: {payload}")


def compute_weight_percentage(block_weight: int, max_block_weight: int) -> float:
    """Two-decimal percentage, integer arithmetic until the final division"""
    if max_block_weight <= 0:
        raise DecodeError(f"Invalid max block weight: {max_block_weight}")
    return (block_weight * 10000 // max_block_weight) / 100


def compute_total_fees(txs: Sequence[TxWithEventAndFee], weight_per_gas: int = WEIGHT_PER_GAS) -> int:
    """Fees paid in the block; Ethereum fees are derived from gas price and dispatched weight"""
    total = 0
    for tx in txs:
        info = tx.dispatch_info
        if info is None or not info.pays_fee or info.is_mandatory:
            continue
        if tx.extrinsic.section.lower() == "ethereum":
            total += ethereum_gas_price(ethereum_payload(tx.extrinsic)) * info.weight // weight_per_gas
        else:
            total += tx.fee.partial_fee
    return total


def compute_total_transferred(txs: Sequence[TxWithEventAndFee]) -> int:
    total = 0
    for tx in txs:
        if is_ethereum_transact(tx.extrinsic):
            total += _to_int(ethereum_payload(tx.extrinsic).get('value') or 0)
            continue
        for event in tx.events:
            if event.is_event("Balances", "Transfer"):
                if len(event.data) < 3:
                    raise EventShapeError(f"Balances.Transfer without amount: {event.data}")
                total += _to_int(event.data[2])
    return total


class BlockAggregator:
    """Builds one consistent BlockSnapshot per block hash"""

    def __init__(
            self,
            node: ChainNode,
            identity_resolver: IdentityResolver,
            weight_per_gas: int = WEIGHT_PER_GAS,
            author_strategies: Sequence[AuthorStrategy] = AUTHOR_STRATEGIES,
            metrics: Optional[MonitorMetrics] = None,
            service_name: str = "block-aggregator"
    ):
        self.node = node
        self.identity_resolver = identity_resolver
        self.weight_per_gas = weight_per_gas
        self.author_strategies = author_strategies
        self.metrics = metrics
        self.error_ctx = ErrorContextManager(service_name)

    async def _fetch_fees(self, extrinsics: Sequence[Extrinsic], parent_hash: str) -> List[FeeQuote]:
        # Quoted against the parent state, the block's own state is post-execution
        return await gather_all(*(
            self.node.query_fee_quote(extrinsic.data, parent_hash) for extrinsic in extrinsics
        ))

    async def aggregate(self, block_hash: str) -> BlockSnapshot:
        logger.debug(f"Querying {block_hash}")

        with self.error_ctx.start_operation("aggregate_block", block_hash=block_hash) as operation:
            try:
                block, max_block_weight, records, block_time = await gather_all(
                    self.node.get_block(block_hash),
                    self.node.query_max_block_weight(),
                    self.node.query_events_at(block_hash),
                    self.node.query_timestamp_at(block_hash),
                )

                author_id = extract_author(block, self.author_strategies)
                writes = CacheWriteBatch()
                fees, author_name = await gather_all(
                    self._fetch_fees(block.extrinsics, block.header.parent_hash),
                    self.identity_resolver.resolve_author(author_id, writes),
                )

                txs = map_extrinsics(block.extrinsics, records, fees)
                block_weight = sum(tx.dispatch_info.weight for tx in txs if tx.dispatch_info is not None)

                snapshot = BlockSnapshot(
                    block=block,
                    author_name=author_name,
                    block_time=int(block_time),
                    records=tuple(records),
                    tx_with_events=txs,
                    weight_percentage=compute_weight_percentage(block_weight, max_block_weight),
                    total_fees=compute_total_fees(txs, self.weight_per_gas),
                    total_transferred=compute_total_transferred(txs),
                    extrinsic_count=len(block.extrinsics),
                    ethereum_tx_count=sum(1 for ext in block.extrinsics if is_ethereum_transact(ext)),
                )
            except Exception as e:
                if self.metrics:
                    self.metrics.record_failed_aggregation(classify_error(e))
                raise

            writes.commit()

            if self.metrics:
                self.metrics.record_block_aggregated(snapshot.number, snapshot.extrinsic_count, operation.duration)
        return snapshot
