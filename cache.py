"""
Cache Module
============
Process-local TTL cache for order and transaction reads, plus the key
layout and invalidation groups the handlers rely on.

Writes never patch cached values; every mutation deletes the affected
keys and lets the next read repopulate them.
"""

import asyncio
import logging
import time
from typing import Dict, List, Any, Optional, Tuple, Callable, Awaitable, Iterable

from prometheus_client import Counter

from config import CacheConfig


logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

TTL_SHORT = 120      # orders, transactions
CHECK_PERIOD = 600   # expired-entry sweep interval
MAX_ENTRIES = 5000


# ============================================================================
# METRICS
# ============================================================================

cache_hits = Counter('cache_hits_total', 'Cache hits')
cache_misses = Counter('cache_misses_total', 'Cache misses')
cache_invalidations = Counter('cache_invalidations_total', 'Cache keys invalidated')


# ============================================================================
# KEYS
# ============================================================================

class CacheKeys:
    """
    Key layout.

    Group prefixes end with ':' so a pattern for user 1 never matches
    user 12.
    """

    @staticmethod
    def order(order_id: int) -> str:
        return f"custom_order:{order_id}"

    @staticmethod
    def orders_all(fragment: str = "") -> str:
        return f"custom_orders:all:{fragment}"

    @staticmethod
    def orders_user(user_id: int, fragment: str = "") -> str:
        return f"custom_orders:user:{user_id}:{fragment}"

    @staticmethod
    def transaction(transaction_id: int) -> str:
        return f"transaction:{transaction_id}"

    @staticmethod
    def transactions_all(fragment: str = "") -> str:
        return f"transactions:all:{fragment}"

    @staticmethod
    def transactions_user(user_id: int, fragment: str = "") -> str:
        return f"transactions:user:{user_id}:{fragment}"

    @staticmethod
    def transactions_order(order_id: int) -> str:
        return f"transactions:order:{order_id}"


# ============================================================================
# COORDINATOR
# ============================================================================

class CacheCoordinator:
    """
    In-memory TTL cache with an async interface.

    Entries are (value, expires_at) pairs on a monotonic clock. Expired
    entries are dropped lazily on read and by a periodic sweeper.
    """

    def __init__(
        self,
        default_ttl: int = TTL_SHORT,
        check_period: int = CHECK_PERIOD,
        max_entries: int = MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic
    ):
        self.default_ttl = default_ttl
        self.check_period = check_period
        self.max_entries = max_entries
        self._clock = clock
        self._store: Dict[str, Tuple[Any, float]] = {}

        # Background sweeper
        self.sweeper_task: Optional[asyncio.Task] = None
        self.is_running = False

        # Stats
        self.hit_count = 0
        self.miss_count = 0
        self.eviction_count = 0
        self.expired_count = 0

    @classmethod
    def from_config(cls, settings: CacheConfig) -> "CacheCoordinator":
        return cls(
            default_ttl=settings.ttl_short,
            check_period=settings.check_period,
            max_entries=settings.max_entries
        )

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self):
        """Start the expired-entry sweeper."""
        if self.is_running:
            return

        self.is_running = True
        self.sweeper_task = asyncio.create_task(self._sweeper_loop())
        logger.info(f"Cache sweeper started (period={self.check_period}s)")

    async def stop(self):
        """Stop the sweeper."""
        if not self.is_running:
            return

        self.is_running = False

        if self.sweeper_task and not self.sweeper_task.done():
            self.sweeper_task.cancel()
            try:
                await self.sweeper_task
            except asyncio.CancelledError:
                pass

        logger.info("Cache sweeper stopped")

    async def _sweeper_loop(self):
        try:
            while self.is_running:
                await asyncio.sleep(self.check_period)
                removed = self.sweep()
                if removed:
                    logger.debug(f"Cache sweep removed {removed} expired entries")
        except asyncio.CancelledError:
            pass

    def sweep(self) -> int:
        """Drop every expired entry. Returns number removed."""
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._store.items() if expires_at <= now]
        for key in expired:
            del self._store[key]
        self.expired_count += len(expired)
        return len(expired)

    # ========================================================================
    # OPERATIONS
    # ========================================================================

    async def get(self, key: str) -> Optional[Any]:
        """Get value if present and not expired."""
        entry = self._store.get(key)

        if entry is None:
            self.miss_count += 1
            cache_misses.inc()
            return None

        value, expires_at = entry
        if expires_at <= self._clock():
            del self._store[key]
            self.expired_count += 1
            self.miss_count += 1
            cache_misses.inc()
            return None

        self.hit_count += 1
        cache_hits.inc()
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None):
        """Store value for ttl seconds (default tier when omitted)."""
        if key not in self._store and len(self._store) >= self.max_entries:
            self.sweep()
            if len(self._store) >= self.max_entries:
                # Evict the entry closest to expiry
                oldest = min(self._store, key=lambda k: self._store[k][1])
                del self._store[oldest]
                self.eviction_count += 1

        self._store[key] = (value, self._clock() + (ttl or self.default_ttl))

    async def delete(self, key: str) -> int:
        """Delete one key. Returns number of keys removed (0 or 1)."""
        if self._store.pop(key, None) is None:
            return 0
        cache_invalidations.inc()
        return 1

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key containing `pattern`. Returns number removed."""
        matched = [key for key in self._store if pattern in key]
        for key in matched:
            del self._store[key]
        if matched:
            cache_invalidations.inc(len(matched))
        return len(matched)

    def keys(self) -> List[str]:
        return list(self._store.keys())

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        lookups = self.hit_count + self.miss_count
        return {
            "entries": len(self._store),
            "hits": self.hit_count,
            "misses": self.miss_count,
            "hit_rate": round(self.hit_count / lookups, 3) if lookups else 0.0,
            "evictions": self.eviction_count,
            "expired": self.expired_count,
            "sweeper_running": self.is_running,
        }

    def is_healthy(self) -> bool:
        return len(self._store) <= self.max_entries


# ============================================================================
# FAILURE-TOLERANT ACCESS
# ============================================================================

class ResponseCache:
    """
    Read-through and invalidation on top of any cache backend.

    Backend failures are logged and treated as a miss (reads) or a no-op
    (invalidation); they never fail the surrounding operation.
    """

    def __init__(self, backend: Any, enabled: bool = True, ttl: int = TTL_SHORT):
        self.backend = backend
        self.enabled = enabled
        self.ttl = ttl
        self.failure_count = 0

    async def read_through(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        encode: Callable[[Any], Any],
        decode: Callable[[Any], Any],
        ttl: Optional[int] = None
    ) -> Any:
        """
        Return the cached value for key, or load, store and return it.

        Args:
            key: Cache key
            loader: Coroutine factory reading from the gateway
            encode: Value -> cacheable form
            decode: Cached form -> value
            ttl: Override of the default tier
        """
        if not self.enabled:
            return await loader()

        try:
            cached = await self.backend.get(key)
        except Exception as e:
            self.failure_count += 1
            logger.warning(f"Cache read failed for {key}: {str(e)}")
            cached = None

        if cached is not None:
            return decode(cached)

        value = await loader()

        try:
            await self.backend.set(key, encode(value), ttl or self.ttl)
        except Exception as e:
            self.failure_count += 1
            logger.warning(f"Cache write failed for {key}: {str(e)}")

        return value

    async def invalidate(self, keys: Iterable[str] = (), patterns: Iterable[str] = ()) -> int:
        """Delete keys and key groups. Idempotent; never raises."""
        if not self.enabled:
            return 0

        removed = 0
        for key in keys:
            try:
                removed += await self.backend.delete(key)
            except Exception as e:
                self.failure_count += 1
                logger.warning(f"Cache delete failed for {key}: {str(e)}")

        for pattern in patterns:
            try:
                removed += await self.backend.delete_pattern(pattern)
            except Exception as e:
                self.failure_count += 1
                logger.warning(f"Cache pattern delete failed for {pattern}: {str(e)}")

        return removed

    async def invalidate_order(self, order_id: int, owner_id: Optional[int]) -> int:
        """Single order entry plus the all-orders and owner list groups."""
        patterns = [CacheKeys.orders_all()]
        if owner_id is not None:
            patterns.append(CacheKeys.orders_user(owner_id))
        return await self.invalidate([CacheKeys.order(order_id)], patterns)

    async def invalidate_transaction(
        self,
        transaction_id: Optional[int],
        owner_id: Optional[int],
        order_id: Optional[int] = None
    ) -> int:
        """
        Single transaction entry, the all-transactions and owner list
        groups, and the per-order list when linked.
        """
        keys = []
        if transaction_id is not None:
            keys.append(CacheKeys.transaction(transaction_id))
        if order_id is not None:
            keys.append(CacheKeys.transactions_order(order_id))
        patterns = [CacheKeys.transactions_all()]
        if owner_id is not None:
            patterns.append(CacheKeys.transactions_user(owner_id))
        return await self.invalidate(keys, patterns)
