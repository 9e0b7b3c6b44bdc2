"""
One-line summary of a block snapshot.

Colours are emitted as loguru markup tags (``<red>...</red>``) so the line can
be printed through ``logger.opt(colors=True)``; with ``colors=False`` the line
is plain text.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple, Union

from loguru import logger

from packages.monitoring.base.decimal_utils import to_token_units, truncate_token_amount
from packages.monitoring.substrate.block_details.block_details import BlockSnapshot, RealtimeSnapshot

Snapshot = Union[BlockSnapshot, RealtimeSnapshot]


@dataclass(frozen=True)
class Band:
    color: str
    bound: float
    inclusive: bool = False

    def matches(self, value: float) -> bool:
        return value >= self.bound if self.inclusive else value > self.bound


# First matching band wins, ordered from most to least severe
THRESHOLDS: Dict[str, Tuple[Band, ...]] = {
    "weight_percentage": (Band("red", 60), Band("yellow", 30), Band("green", 10)),
    "fees": (Band("red", 0.1, True), Band("yellow", 0.01, True), Band("green", 0.001, True)),
    "extrinsics": (Band("red", 100, True), Band("yellow", 50, True), Band("green", 15)),
    "ethereum_txs": (Band("red", 97, True), Band("yellow", 47, True), Band("green", 12)),
    "transferred": (Band("red", 100, True), Band("yellow", 50, True), Band("green", 15)),
    "pool_size": (Band("red", 1000), Band("yellow", 100)),
    "pool_new": (Band("red", 80), Band("yellow", 30)),
    "elapsed_ms": (Band("red", 30000), Band("yellow", 14000)),
}

AUTHOR_MAX_LENGTH = 20


def band_color(metric: str, value: float) -> Optional[str]:
    for band in THRESHOLDS[metric]:
        if band.matches(value):
            return band.color
    return None


def escape_markup(text: str) -> str:
    return text.replace("<", r"\<")


def _colorize(text: str, metric: str, value: float, colors: bool) -> str:
    color = band_color(metric, value) if colors else None
    return f"<{color}>{text}</{color}>" if color else text


def shorten(text: str, head: int = 7, tail: int = 4) -> str:
    return f"{text[:head]}..{text[-tail:]}"


def format_snapshot(
        snapshot: Snapshot,
        previous: Optional[Snapshot] = None,
        prefix: Optional[str] = None,
        suffix: Optional[str] = None,
        colors: bool = False,
        token_decimals: int = 18,
        now: Optional[datetime] = None
) -> str:
    """Render ``snapshot`` as a single line, comparing against ``previous`` when given"""
    text = escape_markup if colors else (lambda s: s)

    elapsed_ms = None
    if previous is not None:
        elapsed_ms = snapshot.block_time - previous.block_time
    elif isinstance(snapshot, RealtimeSnapshot):
        elapsed_ms = snapshot.elapsed_ms

    seconds_text = ""
    if elapsed_ms is not None:
        seconds = f"{(elapsed_ms // 100) / 10:.1f}".rjust(5)
        seconds_text = f"[{_colorize(seconds, 'elapsed_ms', elapsed_ms, colors)}s]"

    weight = f"{snapshot.weight_percentage:.2f}".rjust(5)
    weight_text = _colorize(weight, "weight_percentage", snapshot.weight_percentage, colors)

    pool_text = ""
    if isinstance(snapshot, RealtimeSnapshot):
        pool_size = len(snapshot.pending_txs)
        pool_text = _colorize(str(pool_size).rjust(4), "pool_size", pool_size, colors)

        if isinstance(previous, RealtimeSnapshot):
            previous_hashes = {tx.hash for tx in previous.pending_txs}
            pool_new = sum(1 for tx in snapshot.pending_txs if tx.hash not in previous_hashes)
            pool_text += f"(+{_colorize(str(pool_new), 'pool_new', pool_new, colors)})"

        pool_text = f"[Pool:{pool_text}]"

    ext_text = _colorize(str(snapshot.extrinsic_count).rjust(3), "extrinsics", snapshot.extrinsic_count, colors)
    eth_text = _colorize(str(snapshot.ethereum_tx_count).rjust(3), "ethereum_txs", snapshot.ethereum_tx_count, colors)

    fees = truncate_token_amount(snapshot.total_fees, token_decimals, 3)
    fees_text = _colorize(f"{fees:.3f}".rjust(5), "fees", float(fees), colors)

    transferred = to_token_units(snapshot.total_transferred, token_decimals)
    transferred_text = _colorize(str(transferred).rjust(5), "transferred", transferred, colors)

    author = snapshot.author_name
    if len(author) > AUTHOR_MAX_LENGTH:
        author = shorten(author)

    time_text = (now or datetime.now()).strftime("%H:%M:%S")
    prefix_text = f"{text(prefix)} " if prefix else ""
    suffix_text = f" {text(suffix)}" if suffix else ""

    return (
        f"{time_text} {prefix_text}#{str(snapshot.number).ljust(7)} "
        f"[{weight_text}%, {fees_text} fees, {ext_text} Txs ({eth_text} Eth){text('(<->')}{transferred_text})]"
        f"{pool_text}{seconds_text}(hash: {shorten(snapshot.hash)}){suffix_text} by {text(author)}"
    )


def print_snapshot(
        snapshot: Snapshot,
        previous: Optional[Snapshot] = None,
        prefix: Optional[str] = None,
        suffix: Optional[str] = None,
        colors: bool = True,
        token_decimals: int = 18
) -> str:
    line = format_snapshot(snapshot, previous, prefix, suffix, colors=colors, token_decimals=token_decimals)
    logger.opt(colors=colors).info(line)
    return line
