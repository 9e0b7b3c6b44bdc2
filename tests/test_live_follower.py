import asyncio

import pytest

from packages.monitoring.substrate.block_details.block_aggregator import BlockAggregator
from packages.monitoring.substrate.block_details.block_details import BlockHeader, PendingTransaction, RealtimeSnapshot
from packages.monitoring.substrate.block_monitor.live_follower import (
    FollowMode, LiveFollower, listen_best_blocks, listen_finalized_blocks
)
from packages.monitoring.substrate.identity.identity_resolver import IdentityResolver
from tests.fakes import block_hash_for, make_block


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def chain(node):
    for number, timestamp in [(0, 500), (1, 1000), (2, 4000), (3, 9000)]:
        node.add_block(make_block(number), timestamp=timestamp)
    node.head_hash = block_hash_for(1)
    return node


def build_follower(node):
    return LiveFollower(node, BlockAggregator(node, IdentityResolver(node)))


@pytest.mark.asyncio
async def test_elapsed_between_heads(chain):
    snapshots = []
    subscription = await build_follower(chain).follow(FollowMode.BEST, snapshots.append)

    for number in (1, 2, 3):
        chain.emit_head(chain.blocks[block_hash_for(number)])
    await wait_until(lambda: len(snapshots) == 3)
    subscription.unsubscribe()
    await subscription.join()

    assert [s.number for s in snapshots] == [1, 2, 3]
    assert [s.elapsed_ms for s in snapshots] == [500, 3000, 5000]
    assert all(isinstance(s, RealtimeSnapshot) for s in snapshots)
    assert chain.subscribed_mode == "best"
    assert chain.subscription.unsubscribed


@pytest.mark.asyncio
async def test_baseline_failure_starts_from_zero(chain):
    chain.failures["query_timestamp_at"] = ConnectionError("closed")
    follower = build_follower(chain)

    subscription = await follower.follow(FollowMode.BEST, lambda s: None)

    assert subscription.latest_block_time == 0
    subscription.unsubscribe()
    await subscription.join()


@pytest.mark.asyncio
async def test_callback_finishes_before_next_head(chain):
    follower = build_follower(chain)

    async def on_head(snapshot):
        await asyncio.sleep(0.01)
        chain.log.append(f"deliver {snapshot.number}")

    subscription = await follower.follow(FollowMode.BEST, on_head)
    chain.log.clear()
    for number in (1, 2, 3):
        chain.emit_head(chain.blocks[block_hash_for(number)])
    await wait_until(lambda: "deliver 3" in chain.log)
    subscription.unsubscribe()
    await subscription.join()

    assert chain.log == [
        "aggregate 1", "deliver 1",
        "aggregate 2", "deliver 2",
        "aggregate 3", "deliver 3",
    ]


@pytest.mark.asyncio
async def test_error_handler_keeps_following(chain):
    chain.failing_hashes[block_hash_for(2)] = ConnectionError("node went away")
    snapshots, errors = [], []

    subscription = await build_follower(chain).follow(
        FollowMode.BEST,
        snapshots.append,
        lambda error, header: errors.append((error, header.number)),
    )
    for number in (1, 2, 3):
        chain.emit_head(chain.blocks[block_hash_for(number)])
    await wait_until(lambda: len(snapshots) == 2)
    subscription.unsubscribe()
    await subscription.join()

    assert [s.number for s in snapshots] == [1, 3]
    assert snapshots[1].elapsed_ms == 8000
    assert len(errors) == 1
    assert isinstance(errors[0][0], ConnectionError)
    assert errors[0][1] == 2


@pytest.mark.asyncio
async def test_error_without_handler_releases_node_subscription(chain):
    chain.failing_hashes[block_hash_for(1)] = ConnectionError("node went away")
    subscription = await build_follower(chain).follow(FollowMode.BEST, lambda s: None)

    chain.emit_head(chain.blocks[block_hash_for(1)])
    chain.emit_head(chain.blocks[block_hash_for(2)])

    with pytest.raises(ConnectionError):
        await asyncio.wait_for(subscription.join(), timeout=2)

    assert chain.subscription.unsubscribed
    assert subscription.stopped


@pytest.mark.asyncio
async def test_finalized_heads_and_pending_pool(chain):
    chain.pending = [PendingTransaction(hash="0x01"), PendingTransaction(hash="0x02")]
    snapshots = []

    subscription = await listen_finalized_blocks(build_follower(chain), snapshots.append)
    chain.emit_head(chain.blocks[block_hash_for(2)])
    await wait_until(lambda: len(snapshots) == 1)
    subscription.unsubscribe()
    await subscription.join()

    assert chain.subscribed_mode == "finalized"
    assert [tx.hash for tx in snapshots[0].pending_txs] == ["0x01", "0x02"]


@pytest.mark.asyncio
async def test_header_without_hash_is_looked_up(chain):
    snapshots = []

    subscription = await listen_best_blocks(build_follower(chain), snapshots.append)
    chain.head_callback(BlockHeader(number=3, hash="", parent_hash=block_hash_for(2)))
    await wait_until(lambda: len(snapshots) == 1)
    subscription.unsubscribe()
    await subscription.join()

    assert snapshots[0].hash == block_hash_for(3)
    assert chain.calls["get_block_hash"] == 1


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent(chain):
    subscription = await build_follower(chain).follow(FollowMode.BEST, lambda s: None)

    subscription.unsubscribe()
    subscription.unsubscribe()
    await subscription.join()

    assert subscription.stopped
    assert subscription.task.done()


@pytest.mark.asyncio
async def test_callback_error_goes_to_error_handler(chain):
    delivered, errors = [], []

    def on_head(snapshot):
        if snapshot.number == 1:
            raise RuntimeError("display failed")
        delivered.append(snapshot.number)

    subscription = await build_follower(chain).follow(
        FollowMode.BEST,
        on_head,
        lambda error, header: errors.append((str(error), header.number)),
    )
    for number in (1, 2):
        chain.emit_head(chain.blocks[block_hash_for(number)])
    await wait_until(lambda: delivered == [2])

    assert errors == [("display failed", 1)]
    assert not subscription.task.done()
    assert not chain.subscription.unsubscribed

    subscription.unsubscribe()
    await subscription.join()


@pytest.mark.asyncio
async def test_callback_error_without_handler_ends_following(chain):
    def on_head(snapshot):
        raise RuntimeError("display failed")

    subscription = await build_follower(chain).follow(FollowMode.BEST, on_head)
    chain.emit_head(chain.blocks[block_hash_for(1)])

    with pytest.raises(RuntimeError):
        await asyncio.wait_for(subscription.join(), timeout=2)
    assert chain.subscription.unsubscribed


@pytest.mark.asyncio
async def test_subscriptions_keep_their_own_elapsed_baseline(chain):
    follower = build_follower(chain)
    first, second = [], []

    first_subscription = await follower.follow(FollowMode.BEST, first.append)
    first_handle, first_callback = chain.subscription, chain.head_callback
    second_subscription = await follower.follow(FollowMode.FINALIZED, second.append)

    first_callback(chain.blocks[block_hash_for(3)].header)
    await wait_until(lambda: len(first) == 1)
    chain.emit_head(chain.blocks[block_hash_for(2)])
    await wait_until(lambda: len(second) == 1)

    assert first[0].elapsed_ms == 9000 - 500
    assert second[0].elapsed_ms == 4000 - 500
    assert first_subscription.latest_block_time == 9000
    assert second_subscription.latest_block_time == 4000

    first_subscription.unsubscribe()
    second_subscription.unsubscribe()
    await first_subscription.join()
    await second_subscription.join()
    assert first_handle.unsubscribed
