import time
from typing import Callable, List, Optional, Sequence, Tuple

from loguru import logger

from packages.monitoring.base.metrics import MonitorMetrics
from packages.monitoring.substrate import IDENTITY_CACHE_MAX_ENTRIES, IDENTITY_CACHE_TTL_SECONDS, ZERO_ACCOUNT
from packages.monitoring.substrate.block_details.block_details import IdentityRecord
from packages.monitoring.substrate.errors import DecodeError, IdentityDecodeError
from packages.monitoring.substrate.identity.lru_cache import CacheEntry, LRUCache
from packages.monitoring.substrate.node.abstract_node import ChainNode


class CacheWriteBatch:
    """Cache writes held back until ``commit``.

    Reads through the resolver see staged writes first, so a batch behaves
    like the cache itself for the operation that owns it.
    """

    def __init__(self):
        self._writes: List[Tuple[LRUCache, str, Optional[str], float]] = []

    def put(self, cache: LRUCache, key: str, value: Optional[str], last_update: float):
        self._writes.append((cache, key, value, last_update))

    def get(self, cache: LRUCache, key: str) -> Optional[CacheEntry]:
        for staged_cache, staged_key, value, last_update in reversed(self._writes):
            if staged_cache is cache and staged_key == key:
                return CacheEntry(value=value, last_update=last_update)
        return None

    def commit(self):
        for cache, key, value, last_update in self._writes:
            cache.put(key, value, last_update)
        self._writes.clear()

    def __len__(self):
        return len(self._writes)


class IdentityResolver:
    """Resolves accounts and block authors to on-chain display names.

    Two cache levels: author id -> mapped account, account -> display name.
    A cached value of None means "nothing registered" and is cached like any
    other answer. Entries older than ``ttl_seconds`` are refreshed.
    """

    def __init__(
            self,
            node: ChainNode,
            ttl_seconds: float = IDENTITY_CACHE_TTL_SECONDS,
            max_entries: int = IDENTITY_CACHE_MAX_ENTRIES,
            clock: Callable[[], float] = time.time,
            metrics: Optional[MonitorMetrics] = None
    ):
        self.node = node
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.metrics = metrics
        self.identity_cache: LRUCache[str, str] = LRUCache(max_entries)
        self.author_mapping_cache: LRUCache[str, str] = LRUCache(max_entries)

    def _lookup(self, cache: LRUCache, key: str, writes: Optional[CacheWriteBatch]) -> Optional[CacheEntry]:
        if writes is not None:
            staged = writes.get(cache, key)
            if staged is not None:
                return staged
        return cache.get(key)

    def _store(self, cache: LRUCache, key: str, value: Optional[str], writes: Optional[CacheWriteBatch]):
        now = self.clock()
        if writes is not None:
            writes.put(cache, key, value, now)
        else:
            cache.put(key, value, now)

    def _is_fresh(self, entry: Optional[CacheEntry]) -> bool:
        return entry is not None and entry.is_fresh(self.clock(), self.ttl_seconds)

    def _record_lookup(self, cache_name: str, hit: bool, count: int = 1):
        if self.metrics and count:
            self.metrics.record_cache_lookup(cache_name, hit, count)

    @staticmethod
    def decode_display_name(record: Optional[IdentityRecord]) -> Optional[str]:
        if record is None or not record.display_name_bytes:
            return None
        try:
            return record.display_name_bytes.decode('utf-8')
        except UnicodeDecodeError as e:
            raise IdentityDecodeError(
                f"Identity display is not valid UTF-8: 0x{record.display_name_bytes.hex()}"
            ) from e

    def _display(self, account: str, writes: Optional[CacheWriteBatch]) -> str:
        entry = self._lookup(self.identity_cache, account, writes)
        if entry is not None and entry.value:
            return entry.value
        return str(account)

    async def resolve_identity(self, account: str, writes: Optional[CacheWriteBatch] = None) -> str:
        """Display name of ``account``, or the account itself when no identity is registered"""
        if not account:
            return ""

        entry = self._lookup(self.identity_cache, account, writes)
        if self._is_fresh(entry):
            self._record_lookup("identity", hit=True)
        else:
            self._record_lookup("identity", hit=False)
            record = await self.node.query_identity_of(account)
            self._store(self.identity_cache, account, self.decode_display_name(record), writes)

        return self._display(account, writes)

    async def resolve_identities(self, accounts: Sequence[str], writes: Optional[CacheWriteBatch] = None) -> List[str]:
        """Batched resolve_identity: one multi-key query for every stale or missing account"""
        if not accounts:
            return []

        missing: List[str] = []
        for account in accounts:
            if account and account not in missing and not self._is_fresh(
                    self._lookup(self.identity_cache, account, writes)):
                missing.append(account)

        self._record_lookup("identity", hit=False, count=len(missing))
        self._record_lookup("identity", hit=True, count=len([a for a in accounts if a]) - len(missing))

        if missing:
            records = await self.node.query_identities_batch(missing)
            if len(records) != len(missing):
                raise DecodeError(
                    f"Identity batch returned {len(records)} records for {len(missing)} accounts"
                )
            for account, record in zip(missing, records):
                self._store(self.identity_cache, account, self.decode_display_name(record), writes)
            logger.debug(f"Refreshed {len(missing)} identities in one batch")

        return [self._display(account, writes) if account else "" for account in accounts]

    async def resolve_author(self, author_id: str, writes: Optional[CacheWriteBatch] = None) -> str:
        """Display name of the account mapped to a block author key"""
        if not author_id:
            return ZERO_ACCOUNT

        entry = self._lookup(self.author_mapping_cache, author_id, writes)
        if self._is_fresh(entry):
            self._record_lookup("author_mapping", hit=True)
            account = entry.value
        else:
            self._record_lookup("author_mapping", hit=False)
            mapping = await self.node.query_author_mapping(author_id)
            account = mapping.account_id if mapping is not None else None
            self._store(self.author_mapping_cache, author_id, account, writes)

        if account is None:
            return ZERO_ACCOUNT

        return await self.resolve_identity(account, writes)
