import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Set, Tuple

from loguru import logger

_MISSING = object()


class CacheStore(ABC):
    """
    Shared mutable state behind the resolver: resolved URLs, job listings,
    stream selections and the in-flight map all sit behind this interface so
    each service instance (and each test) owns isolated storage.
    """

    @abstractmethod
    def get(self, key: Hashable, default: Any = None) -> Any:
        pass

    @abstractmethod
    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        pass

    @abstractmethod
    def reserve(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> Tuple[Any, bool]:
        """
        Atomic check-and-insert-if-absent.
        Returns (stored value, True) when ``value`` was inserted, or
        (existing value, False) when a live entry already held the key.
        """
        pass

    @abstractmethod
    def delete(self, key: Hashable) -> None:
        pass


class TTLCache(CacheStore):
    """
    In-process TTL cache. Expired entries are pruned opportunistically on
    every write, and lazily on read. ``ttl=None`` keeps an entry until it is
    deleted.
    """

    def __init__(self, default_ttl: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._data: Dict[Hashable, Tuple[Any, Optional[float]]] = {}

    def _expiry(self, ttl: Optional[float]) -> Optional[float]:
        ttl = self.default_ttl if ttl is None else ttl
        return None if ttl is None else self._clock() + ttl

    def _live(self, key: Hashable) -> Any:
        entry = self._data.get(key)
        if entry is None:
            return _MISSING
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return _MISSING
        return value

    def get(self, key: Hashable, default: Any = None) -> Any:
        value = self._live(key)
        return default if value is _MISSING else value

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        self.prune()
        self._data[key] = (value, self._expiry(ttl))

    def reserve(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> Tuple[Any, bool]:
        # No await between lookup and insert: atomic under a single event loop.
        existing = self._live(key)
        if existing is not _MISSING:
            return existing, False
        self.set(key, value, ttl)
        return value, True

    def delete(self, key: Hashable) -> None:
        self._data.pop(key, None)

    def prune(self) -> int:
        now = self._clock()
        expired = [k for k, (_, exp) in self._data.items() if exp is not None and exp <= now]
        for key in expired:
            del self._data[key]
        return len(expired)

    def __contains__(self, key: Hashable) -> bool:
        return self._live(key) is not _MISSING

    def __len__(self) -> int:
        self.prune()
        return len(self._data)


class RequestDeduplicator:
    """
    Collapses concurrent calls for the same key into one in-flight operation.

    The first caller reserves a future in the in-flight store and starts the
    work as a background task; later callers for the same key await that
    future. The entry is dropped when the work finishes, successfully or not,
    so the next call starts fresh. Waiters are shielded: a caller that goes
    away does not cancel the shared work.
    """

    def __init__(self, store: Optional[CacheStore] = None):
        self.store = store if store is not None else TTLCache()
        self._tasks: Set[asyncio.Task] = set()

    def in_flight(self, key: Hashable) -> bool:
        return self.store.get(key) is not None

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> Any:
        loop = asyncio.get_running_loop()
        future, owner = self.store.reserve(key, loop.create_future())
        if owner:
            task = loop.create_task(self._drive(key, future, factory))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            logger.debug(f"Joining in-flight resolution {key}")
        return await asyncio.shield(future)

    async def _drive(self, key: Hashable, future: asyncio.Future, factory: Callable[[], Awaitable[Any]]) -> None:
        try:
            result = await factory()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            if not future.done():
                future.set_exception(e)
                # Mark retrieved so an unobserved failure does not warn at GC.
                future.exception()
        else:
            if not future.done():
                future.set_result(result)
        finally:
            if self.store.get(key) is future:
                self.store.delete(key)
