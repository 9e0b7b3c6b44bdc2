import threading

import pytest

from packages.monitoring.substrate.block_details.block_aggregator import BlockAggregator
from packages.monitoring.substrate.block_monitor.range_walker import RangeWalker
from packages.monitoring.substrate.identity.identity_resolver import IdentityResolver
from tests.fakes import make_block, make_extrinsic, success_event


def build_walker(node, terminate_event=None):
    aggregator = BlockAggregator(node, IdentityResolver(node))
    return RangeWalker(node, aggregator, terminate_event)


def add_blocks(node, numbers):
    for number in numbers:
        node.add_block(make_block(number, [make_extrinsic(0)]), [success_event(0, 10)], timestamp=number * 12000)


@pytest.mark.asyncio
@pytest.mark.parametrize("concurrency", [1, 2, 5, 10])
async def test_walk_range_delivers_in_order(node, concurrency):
    add_blocks(node, range(100, 105))
    delivered = []

    last = await build_walker(node).walk_range(100, 104, concurrency, lambda s: delivered.append(s.number))

    assert delivered == [100, 101, 102, 103, 104]
    assert last == 104
    assert node.max_in_flight <= concurrency


@pytest.mark.asyncio
async def test_walk_single_block(node):
    add_blocks(node, [7])
    delivered = []

    await build_walker(node).walk_range(7, 7, 3, lambda s: delivered.append(s.number))

    assert delivered == [7]


@pytest.mark.asyncio
async def test_async_callback(node):
    add_blocks(node, range(1, 4))
    delivered = []

    async def on_block(snapshot):
        delivered.append(snapshot.number)

    await build_walker(node).walk_range(1, 3, 2, on_block)

    assert delivered == [1, 2, 3]


@pytest.mark.asyncio
async def test_invalid_arguments(node):
    walker = build_walker(node)

    with pytest.raises(ValueError):
        await walker.walk_range(10, 9, 1, lambda s: None)
    with pytest.raises(ValueError):
        await walker.walk_range(1, 2, 0, lambda s: None)


@pytest.mark.asyncio
async def test_failure_aborts_walk(node):
    add_blocks(node, [1, 2, 4, 5])
    delivered = []

    with pytest.raises(KeyError):
        await build_walker(node).walk_range(1, 5, 2, lambda s: delivered.append(s.number))

    # Batch [3, 4] fails as a whole, nothing after it is aggregated
    assert delivered == [1, 2]
    assert "aggregate 5" not in node.log


@pytest.mark.asyncio
async def test_terminate_event_stops_between_batches(node):
    add_blocks(node, range(1, 7))
    terminate_event = threading.Event()
    delivered = []

    def on_block(snapshot):
        delivered.append(snapshot.number)
        if snapshot.number == 2:
            terminate_event.set()

    last = await build_walker(node, terminate_event).walk_range(1, 6, 2, on_block)

    assert delivered == [1, 2]
    assert last == 2
