import argparse
import asyncio
import time
from typing import Optional

from loguru import logger

from packages.monitoring.base import (
    terminate_event, install_shutdown_handlers, setup_metrics, setup_enhanced_logger,
    ErrorContextManager, MonitorMetrics, log_service_start, log_service_stop, classify_error,
    shutdown_metrics_servers
)
from packages.monitoring.base.decimal_utils import get_native_network_asset
from packages.monitoring.substrate import Network, networks, get_monitor_settings, retry_with_backoff, MonitorSettings
from packages.monitoring.substrate.block_details.block_aggregator import BlockAggregator
from packages.monitoring.substrate.block_details.block_details import BlockHeader, BlockSnapshot
from packages.monitoring.substrate.block_monitor.live_follower import FollowMode, LiveFollower
from packages.monitoring.substrate.block_monitor.range_walker import RangeWalker
from packages.monitoring.substrate.block_monitor.snapshot_formatter import print_snapshot
from packages.monitoring.substrate.identity.identity_resolver import IdentityResolver
from packages.monitoring.substrate.node.abstract_node import ChainNode
from packages.monitoring.substrate.node.substrate_node import SubstrateNode


class BlockMonitorConsumer:
    """Prints one line per block, either for a historical range or for live heads"""

    def __init__(
            self,
            node: ChainNode,
            settings: MonitorSettings,
            terminate_event,
            service_name: str = None,
            metrics: Optional[MonitorMetrics] = None,
            colors: bool = True
    ):
        self.node = node
        self.settings = settings
        self.terminate_event = terminate_event
        self.service_name = service_name or f"substrate-{settings.network}-block-monitor"
        self.colors = colors
        self.metrics = metrics
        self.error_ctx = ErrorContextManager(self.service_name)
        self.previous: Optional[BlockSnapshot] = None
        self.last_head_at = time.time()

        self.identity_resolver = IdentityResolver(
            node,
            ttl_seconds=settings.identity_cache_ttl_seconds,
            max_entries=settings.identity_cache_max_entries,
            metrics=metrics
        )
        self.aggregator = BlockAggregator(
            node,
            self.identity_resolver,
            weight_per_gas=settings.weight_per_gas,
            metrics=metrics,
            service_name=self.service_name
        )

    def _print(self, snapshot: BlockSnapshot, prefix: Optional[str] = None):
        print_snapshot(
            snapshot,
            self.previous,
            prefix=prefix,
            colors=self.colors,
            token_decimals=self.settings.token_decimals
        )
        self.previous = snapshot
        self.last_head_at = time.time()

    def _record_error(self, error: Exception, component: str):
        if self.metrics:
            self.metrics.registry.record_error(classify_error(error), component)

    async def run_range(self, from_block: int, to_block: int, concurrency: Optional[int] = None) -> Optional[int]:
        concurrency = concurrency or self.settings.concurrency
        log_service_start(
            self.service_name,
            network=self.settings.network,
            native_asset=get_native_network_asset(self.settings.network),
            mode="range",
            from_block=from_block,
            to_block=to_block,
            concurrency=concurrency
        )

        walker = RangeWalker(self.node, self.aggregator, self.terminate_event)
        last_delivered = None
        try:
            last_delivered = await walker.walk_range(from_block, to_block, concurrency, self._print)
        except Exception as e:
            resume_from = self.previous.number + 1 if self.previous else from_block
            self.error_ctx.log_error(
                "Block range walk aborted",
                e,
                operation="walk_range",
                from_block=from_block,
                to_block=to_block,
                resume_from=resume_from,
                error_category=classify_error(e)
            )
            self._record_error(e, "range_walker")
            if self.metrics:
                self.metrics.registry.set_health_status(False)
            raise
        finally:
            log_service_stop(self.service_name, mode="range", last_delivered=last_delivered)
        return last_delivered

    async def run_live(self, finalized: bool = False):
        mode = FollowMode.FINALIZED if finalized else FollowMode.BEST
        log_service_start(
            self.service_name,
            network=self.settings.network,
            native_asset=get_native_network_asset(self.settings.network),
            mode=mode.value
        )
        stall_after = 5 * Network.get_block_time(self.settings.network)

        def on_error(error: Exception, header: BlockHeader):
            self.error_ctx.log_error(
                "Head aggregation failed",
                error,
                operation="follow_heads",
                block_number=header.number,
                block_hash=header.hash,
                error_category=classify_error(error)
            )
            self._record_error(error, "live_follower")

        follower = LiveFollower(self.node, self.aggregator, metrics=self.metrics)
        subscription = await follower.follow(
            mode,
            lambda snapshot: self._print(snapshot, prefix=mode.value),
            on_error
        )

        try:
            stalled = False
            while not self.terminate_event.is_set() and not subscription.task.done():
                await asyncio.sleep(1)
                silent_for = time.time() - self.last_head_at
                if silent_for > stall_after and not stalled:
                    logger.warning(f"No {mode.value} head for {silent_for:.0f}s", extra={"network": self.settings.network})
                stalled = silent_for > stall_after
        finally:
            subscription.unsubscribe()
            await subscription.join()
            log_service_stop(self.service_name, mode=mode.value)


@retry_with_backoff(retries=5, backoff_in_seconds=2)
def connect_node(settings: MonitorSettings) -> SubstrateNode:
    node = SubstrateNode(settings.network, settings.node_ws_url, max_workers=settings.executor_workers)
    try:
        node.test_connection()
    except Exception:
        node.close()
        raise
    return node


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description='Substrate Block Monitor')
    parser.add_argument(
        '--network',
        type=str,
        required=True,
        choices=networks,
        help='Network to monitor'
    )
    parser.add_argument('--from-block', type=int, help='First block of a historical range (inclusive)')
    parser.add_argument('--to-block', type=int, help='Last block of a historical range (inclusive)')
    parser.add_argument('--concurrency', type=int, help='Blocks aggregated in parallel during range replay')
    parser.add_argument('--finalized', action='store_true', help='Follow finalized heads instead of best heads')
    parser.add_argument('--no-colors', action='store_true', help='Disable colored output')
    parser.add_argument('--metrics', action='store_true', help='Expose Prometheus metrics')
    args = parser.parse_args()

    service_name = f'substrate-{args.network}-block-monitor'
    setup_enhanced_logger(service_name)
    install_shutdown_handlers()

    settings = get_monitor_settings(args.network)
    metrics = None
    if args.metrics:
        registry = setup_metrics(service_name, start_server=True)
        metrics = MonitorMetrics(registry, args.network, "range" if args.from_block is not None else "live")

    node = connect_node(settings)
    consumer = BlockMonitorConsumer(
        node,
        settings,
        terminate_event,
        service_name,
        metrics=metrics,
        colors=not args.no_colors
    )

    try:
        if args.from_block is not None:
            to_block = args.to_block if args.to_block is not None else args.from_block
            asyncio.run(consumer.run_range(args.from_block, to_block, args.concurrency))
        else:
            asyncio.run(consumer.run_live(args.finalized))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except Exception as e:
        ErrorContextManager(service_name).log_error(
            "Fatal monitor error",
            error=e,
            operation="main",
            error_category=classify_error(e)
        )
        raise SystemExit(1)
    finally:
        node.close()
        shutdown_metrics_servers()
