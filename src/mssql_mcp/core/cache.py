"""Single-flight TTL cache for schema metadata."""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, NamedTuple, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 600.0


class MetadataKind(str, Enum):
    """Class of cached metadata."""

    SCHEMAS = "schemas"
    SCHEMA = "schema"
    TABLES = "tables"
    TABLE = "table"
    VIEWS = "views"
    VIEW = "view"
    PROCEDURES = "procedures"
    PROCEDURE = "procedure"


class CacheKey(NamedTuple):
    """Structured cache key, so a table and a view sharing a name never collide."""

    kind: MetadataKind
    schema_name: Optional[str] = None
    object_name: Optional[str] = None

    def __str__(self) -> str:
        parts = [self.kind.value]
        if self.schema_name is not None:
            parts.append(self.schema_name)
        if self.object_name is not None:
            parts.append(self.object_name)
        return "_".join(parts)


@dataclass(frozen=True)
class CacheEntry:
    """A cached value and its expiry bookkeeping."""

    value: Any
    inserted_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now > self.inserted_at + self.ttl


class ResourceCache:
    """Keyed cache with per-entry expiry and at most one population per key in flight.

    Concurrent callers that miss on the same key share a single call of the
    factory. A failing factory stores nothing, so the next call retries.
    Values are shared with callers and must not be mutated.
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.

        Args:
            default_ttl: Time-to-live in seconds for entries added without one
            clock: Monotonic time source in seconds
        """
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._inflight: dict[CacheKey, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    async def get_or_add(
        self,
        key: CacheKey,
        factory: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        """
        Return the cached value for key, computing it with factory on a miss.

        Args:
            key: Cache key
            factory: Coroutine function producing the value
            ttl: Time-to-live in seconds (default_ttl when None)

        Returns:
            Cached or freshly computed value

        Raises:
            Exception: Whatever the factory raised; nothing is cached
        """
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not entry.is_expired(self._clock()):
                logger.debug(f"Cache hit: {key}")
                return entry.value

            task = self._inflight.get(key)
            if task is None:
                logger.debug(f"Cache miss: {key}")
                task = asyncio.ensure_future(
                    self._populate(key, factory, self.default_ttl if ttl is None else ttl)
                )
                task.add_done_callback(self._discard_unobserved_error)
                self._inflight[key] = task

        # Shielded so a cancelled caller does not abort the population that
        # other callers are waiting on
        return await asyncio.shield(task)

    async def _populate(
        self, key: CacheKey, factory: Callable[[], Awaitable[Any]], ttl: float
    ) -> Any:
        try:
            value = await factory()
            self._entries[key] = CacheEntry(
                value=value, inserted_at=self._clock(), ttl=ttl
            )
            return value
        finally:
            self._inflight.pop(key, None)

    @staticmethod
    def _discard_unobserved_error(task: asyncio.Task) -> None:
        # Every waiter may have been cancelled; retrieve the error so asyncio
        # does not report it as never retrieved
        if not task.cancelled():
            task.exception()

    def invalidate(self, key: CacheKey) -> None:
        """Drop a single entry."""
        self._entries.pop(key, None)

    def clear(self) -> None:
        """Drop all entries."""
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[arg-type]
        return entry is not None and not entry.is_expired(self._clock())

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for entry in self._entries.values() if not entry.is_expired(now))
