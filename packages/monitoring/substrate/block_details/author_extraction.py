"""
Block author lookup.

Chains encode the block author either as the argument of an inherent call
(Moonbeam's ``AuthorInherent.set_author``) or as a PreRuntime digest log
tagged with the consensus engine id (``nmbs`` for Nimbus). Each strategy
returns the author id or None; the first hit wins.
"""

from typing import Callable, Optional, Sequence

from packages.monitoring.substrate.block_details.block_details import Block

AuthorStrategy = Callable[[Block], Optional[str]]

NIMBUS_ENGINE_ID = "nmbs"


def author_from_inherent(block: Block) -> Optional[str]:
    for extrinsic in block.extrinsics:
        if extrinsic.is_call("AuthorInherent", "set_author"):
            author = extrinsic.arg(0, name="author")
            if author:
                return str(author)
    return None


def author_from_pre_runtime_digest(engine_id: str = NIMBUS_ENGINE_ID) -> AuthorStrategy:
    def strategy(block: Block) -> Optional[str]:
        for log in block.header.digest_logs:
            if log.kind == "PreRuntime" and log.engine == engine_id and log.data:
                return str(log.data)
        return None

    strategy.__name__ = f"author_from_pre_runtime_digest[{engine_id}]"
    return strategy


AUTHOR_STRATEGIES: Sequence[AuthorStrategy] = (
    author_from_inherent,
    author_from_pre_runtime_digest(NIMBUS_ENGINE_ID),
)


def extract_author(block: Block, strategies: Sequence[AuthorStrategy] = AUTHOR_STRATEGIES) -> str:
    """Author id of ``block``, or an empty string when no strategy finds one"""
    for strategy in strategies:
        author = strategy(block)
        if author:
            return author
    return ""
