"""Generic TTL cache with single-flight loads, subscribers and auto-refresh.

An entry lives from ``fetched_at`` until ``expires_at``. When a loader is
available, a timer fires ``refresh_threshold`` seconds before expiry and
refetches in the background. Failed refreshes are retried with backoff
while the stale value keeps being served; once the entry passes hard
expiry, reads return ``MISS``.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Generic, Hashable, Optional, TypeVar

from eduverse_engine.common.backoff import BackoffPolicy
from eduverse_engine.common.scheduling import ScheduledTask, Scheduler

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

Loader = Callable[[Any], Awaitable[Any]]
Subscriber = Callable[[Any], None]


class _Miss:
    """Sentinel returned by ``ExpiringCache.get`` for absent or expired keys."""

    _instance: Optional["_Miss"] = None

    def __new__(cls) -> "_Miss":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS = _Miss()


@dataclass
class CacheEntry(Generic[V]):
    value: V
    fetched_at: datetime
    expires_at: datetime
    refresh_threshold: Optional[float] = None  # seconds before expiry

    @property
    def refresh_at(self) -> Optional[datetime]:
        if self.refresh_threshold is None:
            return None
        return self.expires_at - timedelta(seconds=self.refresh_threshold)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def seconds_remaining(self, now: datetime) -> float:
        return max(0.0, (self.expires_at - now).total_seconds())


class ExpiringCache(Generic[K, V]):
    """TTL cache owned by a component and torn down with it.

    Args:
        scheduler: Source of time and of cancellable timers.
        default_ttl: Lifetime in seconds for entries set without a ttl.
        refresh_threshold: Seconds before expiry at which the background
            refresh fires. ``None`` disables auto-refresh.
        loader: Default async loader, ``await loader(key) -> value``.
        backoff: Retry policy for failed background refreshes.
        ttl_for: Derives an entry's ttl from a loaded value (for values
            that carry their own expiry).
        retry_after_expiry: Keep retrying a failed refresh after the entry
            expired (bounded by ``backoff.max_attempts``).
    """

    def __init__(
        self,
        scheduler: Scheduler,
        *,
        default_ttl: float,
        refresh_threshold: Optional[float] = None,
        loader: Optional[Loader] = None,
        backoff: Optional[BackoffPolicy] = None,
        ttl_for: Optional[Callable[[Any], float]] = None,
        retry_after_expiry: bool = False,
        name: str = "cache",
    ):
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        if refresh_threshold is not None and refresh_threshold <= 0:
            raise ValueError("refresh_threshold must be positive; use None to disable refresh")
        self.name = name
        self.default_ttl = default_ttl
        self.refresh_threshold = refresh_threshold
        self.retry_after_expiry = retry_after_expiry
        self._scheduler = scheduler
        self._loader = loader
        self._backoff = backoff or BackoffPolicy(base_delay=1.0, max_delay=60.0, max_attempts=5)
        self._ttl_for = ttl_for
        self._entries: dict[Any, CacheEntry] = {}
        self._timers: dict[Any, ScheduledTask] = {}
        self._inflight: dict[Any, asyncio.Task] = {}
        self._load_tokens: dict[Any, object] = {}
        self._subscribers: dict[Any, list[Subscriber]] = {}

    @property
    def clock(self):
        return self._scheduler.clock

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not MISS

    # ── Reads ──

    def get(self, key: K) -> Any:
        """Return the cached value, or ``MISS`` if absent or past hard expiry."""
        entry = self._entries.get(key)
        if entry is None or entry.is_expired(self.clock.now()):
            return MISS
        return entry.value

    def entry(self, key: K) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def keys(self) -> list:
        return list(self._entries)

    async def get_or_load(self, key: K, loader: Optional[Loader] = None) -> V:
        """Return the cached value, loading it on a miss.

        Concurrent misses for the same key share one loader call and all
        receive its value or its exception.
        """
        value = self.get(key)
        if value is not MISS:
            return value
        return await self._load_shared(key, loader)

    async def refresh(self, key: K, loader: Optional[Loader] = None) -> V:
        """Reload ``key`` now, joining an in-flight load if there is one."""
        return await self._load_shared(key, loader)

    # ── Writes ──

    def set(
        self,
        key: K,
        value: V,
        ttl: Optional[float] = None,
        refresh_threshold: Optional[float] = None,
    ) -> Optional[CacheEntry]:
        """Store ``value`` and synchronously notify the key's subscribers.

        A non-positive ttl stores nothing (the value is already stale) but
        subscribers are still notified.
        """
        ttl = self.default_ttl if ttl is None else ttl
        self._cancel_timer(key)
        entry = None
        if ttl > 0:
            now = self.clock.now()
            entry = CacheEntry(
                value=value,
                fetched_at=now,
                expires_at=now + timedelta(seconds=ttl),
                refresh_threshold=self._effective_threshold(ttl, refresh_threshold),
            )
            self._entries[key] = entry
            self._schedule_refresh(key, entry)
        else:
            self._entries.pop(key, None)
        self._notify(key, value)
        return entry

    def invalidate(self, key: K) -> bool:
        """Drop ``key`` and its refresh timer. In-flight loads will not repopulate it."""
        self._load_tokens.pop(key, None)
        self._inflight.pop(key, None)  # later loads must not join a stale fetch
        self._cancel_timer(key)
        return self._entries.pop(key, None) is not None

    def invalidate_where(self, predicate: Callable[[Any], bool]) -> int:
        """Invalidate every key matching ``predicate``. Returns the count dropped."""
        keys = [k for k in list(self._entries) if predicate(k)]
        keys += [k for k in list(self._inflight) if predicate(k) and k not in keys]
        return sum(1 for k in keys if self.invalidate(k))

    # ── Subscribers ──

    def subscribe(self, key: K, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback(value)`` for every future ``set`` of ``key``."""
        self._subscribers.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(key)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._subscribers[key]

        return unsubscribe

    def subscriber_count(self, key: K) -> int:
        return len(self._subscribers.get(key, ()))

    def _notify(self, key: K, value: V) -> None:
        for callback in list(self._subscribers.get(key, ())):
            try:
                callback(value)
            except Exception:
                logger.exception("%s: subscriber for %r failed", self.name, key)

    # ── Loading ──

    async def _load_shared(self, key: K, loader: Optional[Loader]) -> V:
        task = self._inflight.get(key)
        if task is None:
            loader = loader or self._loader
            if loader is None:
                raise ValueError(f"{self.name}: no loader for {key!r}")
            token = self._load_tokens[key] = object()
            task = asyncio.get_running_loop().create_task(self._fetch(key, loader, token))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._load_done(k, t))
        return await asyncio.shield(task)

    def _load_done(self, key: K, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            task.exception()  # mark retrieved; waiters re-raise it

    async def _fetch(self, key: K, loader: Loader, token: object) -> V:
        # ``invalidate`` drops the token, so a load it overtook stores nothing
        try:
            value = await loader(key)
        finally:
            current = self._load_tokens.get(key) is token
            if current:
                del self._load_tokens[key]
        if current:
            ttl = self._ttl_for(value) if self._ttl_for else None
            self.set(key, value, ttl)
        return value

    def pending_loads(self) -> int:
        return len(self._load_tokens)

    # ── Background refresh ──

    def _effective_threshold(self, ttl: float, override: Optional[float]) -> Optional[float]:
        threshold = self.refresh_threshold if override is None else override
        if threshold is None or self._loader is None:
            return None
        # refresh must fire strictly before expiry
        if threshold <= 0:
            raise ValueError("refresh_threshold must be positive")
        if threshold >= ttl:
            threshold = ttl / 2
        return threshold

    def _schedule_refresh(self, key: K, entry: CacheEntry) -> None:
        if entry.refresh_at is None or self._scheduler.closed:
            return
        delay = (entry.refresh_at - self.clock.now()).total_seconds()
        self._timers[key] = self._scheduler.call_later(
            delay,
            lambda k=key: self._background_refresh(k, 0),
            name=f"{self.name}:refresh",
        )

    def _cancel_timer(self, key: K) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def _retry_delay(self, attempt: int, urgent: bool) -> float:
        """Delay before retry number ``attempt`` (1-based) of a failed refresh."""
        return self._backoff.delay(attempt)

    async def _background_refresh(self, key: K, attempt: int) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        urgent = entry.is_expired(self.clock.now())
        if urgent and not self.retry_after_expiry:
            self._evict(key, entry)
            return
        try:
            await self._load_shared(key, self._loader)
        except Exception as exc:
            attempt += 1
            if self._entries.get(key) is not entry:
                return
            expired = entry.is_expired(self.clock.now())
            if expired and (not self.retry_after_expiry or self._backoff.exhausted(attempt)):
                logger.warning(
                    "%s: giving up refreshing %r after %d attempts: %s",
                    self.name, key, attempt, exc,
                )
                self._evict(key, entry)
                return
            delay = self._retry_delay(attempt, urgent)
            logger.warning(
                "%s: refresh of %r failed (attempt %d), retrying in %.2fs: %s",
                self.name, key, attempt, delay, exc,
            )
            self._timers[key] = self._scheduler.call_later(
                delay,
                lambda k=key, a=attempt: self._background_refresh(k, a),
                name=f"{self.name}:retry",
            )

    def _evict(self, key: K, entry: CacheEntry) -> None:
        if self._entries.get(key) is entry:
            del self._entries[key]
        self._cancel_timer(key)

    # ── Lifecycle ──

    async def teardown(self) -> None:
        """Cancel timers and in-flight loads and drop all state."""
        for timer in list(self._timers.values()):
            timer.cancel()
        self._timers.clear()
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()
        self._load_tokens.clear()
        self._entries.clear()
        self._subscribers.clear()
