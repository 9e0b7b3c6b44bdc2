import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from loguru import logger

from packages.monitoring.base.metrics import MonitorMetrics
from packages.monitoring.substrate.block_details.block_aggregator import BlockAggregator, gather_all
from packages.monitoring.substrate.block_details.block_details import BlockHeader, RealtimeSnapshot
from packages.monitoring.substrate.block_monitor.range_walker import invoke_callback
from packages.monitoring.substrate.node.abstract_node import ChainNode, SubscriptionHandle

HeadCallback = Callable[[RealtimeSnapshot], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[Exception, BlockHeader], Union[None, Awaitable[None]]]

_STOP = object()


class FollowMode(Enum):
    BEST = "best"
    FINALIZED = "finalized"


class LiveSubscription:
    """Handle returned by LiveFollower.follow; the caller owns cancellation"""

    def __init__(self, handle: SubscriptionHandle, queue: asyncio.Queue, latest_block_time: int = 0):
        self.handle = handle
        self.queue = queue
        self.latest_block_time = latest_block_time
        self.task: Optional[asyncio.Task] = None
        self.stopped = False

    def unsubscribe(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        self.handle.unsubscribe()
        self.queue.put_nowait(_STOP)

    async def join(self) -> None:
        """Wait for the consumer loop; re-raises an unhandled failure"""
        await self.task


class LiveFollower:
    """Follows new or finalized heads, one notification at a time.

    Notifications land in a queue drained by a single consumer task, so the
    callback for head N returns before head N+1 is aggregated.
    """

    def __init__(self, node: ChainNode, aggregator: BlockAggregator, metrics: Optional[MonitorMetrics] = None):
        self.node = node
        self.aggregator = aggregator
        self.metrics = metrics

    async def _baseline_block_time(self) -> int:
        try:
            head = await self.node.get_block()
            return int(await self.node.query_timestamp_at(head.header.parent_hash))
        except Exception as e:
            # Expected at genesis, there is no parent to read
            logger.debug(f"No baseline block time available, starting from 0: {e}")
            return 0

    async def _realtime_snapshot(self, header: BlockHeader, latest_block_time: int) -> RealtimeSnapshot:
        block_hash = header.hash or await self.node.get_block_hash(header.number)
        snapshot, pending_txs = await gather_all(
            self.aggregator.aggregate(block_hash),
            self.node.get_pending_transactions(),
        )
        if self.metrics:
            self.metrics.update_pending_pool_size(len(pending_txs))
        return RealtimeSnapshot.from_snapshot(
            snapshot,
            elapsed_ms=snapshot.block_time - latest_block_time,
            pending_txs=pending_txs,
        )

    async def _consume(self, subscription: LiveSubscription, on_head: HeadCallback, on_error: Optional[ErrorCallback]):
        try:
            while True:
                header = await subscription.queue.get()
                if header is _STOP or subscription.stopped:
                    break

                try:
                    snapshot = await self._realtime_snapshot(header, subscription.latest_block_time)
                    await invoke_callback(on_head, snapshot)
                except Exception as e:
                    if on_error is None:
                        raise
                    await invoke_callback(on_error, e, header)
                    continue

                subscription.latest_block_time = snapshot.block_time
        finally:
            # A consumer that stopped must not leave the node pushing heads
            subscription.unsubscribe()

    async def follow(self, mode: FollowMode, on_head: HeadCallback, on_error: Optional[ErrorCallback] = None) -> LiveSubscription:
        baseline = await self._baseline_block_time()

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def enqueue(header: BlockHeader):
            # Subscriptions may deliver from a transport thread
            loop.call_soon_threadsafe(queue.put_nowait, header)

        if mode == FollowMode.FINALIZED:
            handle = await self.node.subscribe_finalized_heads(enqueue)
        else:
            handle = await self.node.subscribe_new_heads(enqueue)

        subscription = LiveSubscription(handle, queue, latest_block_time=baseline)
        subscription.task = asyncio.create_task(self._consume(subscription, on_head, on_error))
        logger.info(
            f"Following {mode.value} heads",
            extra={"mode": mode.value, "baseline_block_time": baseline}
        )
        return subscription


async def listen_best_blocks(follower: LiveFollower, on_head: HeadCallback, on_error: Optional[ErrorCallback] = None) -> LiveSubscription:
    return await follower.follow(FollowMode.BEST, on_head, on_error)


async def listen_finalized_blocks(follower: LiveFollower, on_head: HeadCallback, on_error: Optional[ErrorCallback] = None) -> LiveSubscription:
    return await follower.follow(FollowMode.FINALIZED, on_head, on_error)
