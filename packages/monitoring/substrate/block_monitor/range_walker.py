import inspect
import time
from typing import Any, Awaitable, Callable, Optional, Union

from loguru import logger

from packages.monitoring.substrate.block_details.block_aggregator import BlockAggregator, gather_all
from packages.monitoring.substrate.block_details.block_details import BlockSnapshot
from packages.monitoring.substrate.node.abstract_node import ChainNode

BlockCallback = Callable[[BlockSnapshot], Union[None, Awaitable[None]]]


async def invoke_callback(callback: Callable[..., Any], *args) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class RangeWalker:
    """Replays a closed block range in sequential batches of ``concurrency`` blocks.

    Blocks inside a batch are aggregated in parallel; callbacks run in
    increasing block order once the whole batch is done, before the next
    batch starts.
    """

    def __init__(self, node: ChainNode, aggregator: BlockAggregator, terminate_event=None):
        self.node = node
        self.aggregator = aggregator
        self.terminate_event = terminate_event

    async def _aggregate_number(self, block_number: int) -> BlockSnapshot:
        block_hash = await self.node.get_block_hash(block_number)
        return await self.aggregator.aggregate(block_hash)

    async def walk_range(self, from_block: int, to_block: int, concurrency: int, on_block: BlockCallback) -> Optional[int]:
        """Walk ``[from_block, to_block]``; returns the last block number delivered"""
        if from_block > to_block:
            raise ValueError(f"Invalid range: from_block {from_block} > to_block {to_block}")
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")

        start_time = time.time()
        last_delivered = None
        current = from_block
        while current <= to_block:
            if self.terminate_event is not None and self.terminate_event.is_set():
                logger.info(
                    "Block range walk terminated",
                    extra={"from_block": from_block, "to_block": to_block, "last_delivered": last_delivered}
                )
                break

            batch_end = min(current + concurrency - 1, to_block)
            snapshots = await gather_all(*(
                self._aggregate_number(number) for number in range(current, batch_end + 1)
            ))

            for snapshot in snapshots:
                await invoke_callback(on_block, snapshot)
                last_delivered = snapshot.number

            current = batch_end + 1

        elapsed = time.time() - start_time
        logger.info(
            f"Walked blocks {from_block} to {last_delivered} in {elapsed:.2f}s",
            extra={"from_block": from_block, "to_block": to_block, "concurrency": concurrency}
        )
        return last_delivered
