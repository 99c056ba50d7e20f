"""ReconciliationCoordinator: write-then-refresh across ledger, index and caches.

For a mutation the coordinator

1. applies an optimistic patch to its local view so reads reflect it,
2. submits the operation through the LedgerGateway (rolling back to the
   exact pre-patch snapshot on rejection),
3. waits for confirmation (keeping the patch, flagged ``unconfirmed``,
   on timeout),
4. polls the index until its version marker reaches the confirmation's,
5. invalidates derived caches and swaps in the authoritative value, or
   keeps the patch flagged ``pending_index_lag`` and retries in the
   background.

Mutations for one subject+resource are serialised; reads never wait for
them and get the newest of the local view and the index.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from eduverse_engine.cache.expiring import ExpiringCache
from eduverse_engine.common.backoff import BackoffPolicy
from eduverse_engine.common.exceptions import (
    LedgerTransientError,
    OperationFailedError,
    OperationRejectedError,
)
from eduverse_engine.common.scheduling import ScheduledTask, Scheduler
from eduverse_engine.index.gateway import IndexGateway, IndexQuery, IndexView
from eduverse_engine.index.normalize import normalize
from eduverse_engine.ledger.gateway import LedgerGateway
from eduverse_engine.ledger.operations import (
    Confirmation,
    ConfirmationStatus,
    LedgerOperation,
    OperationHandle,
)
from eduverse_engine.reconciliation.views import Tracked, ViewKey

logger = logging.getLogger(__name__)

Listener = Callable[[Tracked], None]


class ReconciliationStatus(str, Enum):
    CONVERGED = "converged"
    PENDING_INDEX_LAG = "pending_index_lag"
    PENDING_CONFIRMATION = "pending_confirmation"
    UNCHANGED = "unchanged"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class Mutation:
    """What a plan function wants done: the ledger operation and its optimistic value."""

    operation: LedgerOperation
    value: Any


@dataclass(frozen=True)
class Reconciliation:
    status: ReconciliationStatus
    key: ViewKey
    view: Tracked
    handle: Optional[OperationHandle] = None
    version_marker: Optional[int] = None
    reason: Optional[str] = None

    @property
    def pending(self) -> bool:
        return self.status in (
            ReconciliationStatus.PENDING_CONFIRMATION,
            ReconciliationStatus.PENDING_INDEX_LAG,
        )


@dataclass
class _Ticket:
    """Per-call notification target; silenced when the caller walks away."""

    listener: Optional[Listener] = None
    abandoned: bool = False

    def deliver(self, view: Tracked) -> None:
        if self.listener is None or self.abandoned:
            return
        try:
            self.listener(view)
        except Exception:
            logger.exception("Reconciliation listener failed")


@dataclass
class _Patch:
    key: ViewKey
    patch_id: str
    operation: LedgerOperation
    snapshot: Optional[Tracked]
    ticket: _Ticket
    handle: Optional[OperationHandle] = None
    version_marker: Optional[int] = None
    background: Optional[ScheduledTask] = field(default=None, repr=False)


@dataclass
class _KeyLock:
    """Mutation lock for one subject+resource, dropped when nobody holds or awaits it."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ReconciliationCoordinator:
    def __init__(
        self,
        ledger: LedgerGateway,
        index: IndexGateway,
        scheduler: Scheduler,
        *,
        index_cache_ttl: float = 30.0,
        convergence_backoff: Optional[BackoffPolicy] = None,
        confirmation_timeout: Optional[float] = None,
        background_retry_delay: float = 30.0,
        ledger_fallback_on_degraded: bool = True,
    ):
        self._ledger = ledger
        self._index = index
        self._scheduler = scheduler
        self._convergence = convergence_backoff or BackoffPolicy(
            base_delay=1.0, max_delay=15.0, max_attempts=10,
        )
        self.confirmation_timeout = confirmation_timeout
        self.background_retry_delay = background_retry_delay
        self.ledger_fallback_on_degraded = ledger_fallback_on_degraded

        self._views: dict[ViewKey, Tracked] = {}
        self._patches: dict[ViewKey, list[_Patch]] = {}
        self._locks: dict[tuple[str, str], _KeyLock] = {}
        self._subscribers: dict[ViewKey, list[Listener]] = {}
        self._index_cache: ExpiringCache = ExpiringCache(
            scheduler,
            default_ttl=index_cache_ttl,
            ttl_for=lambda view: 0 if view.degraded else index_cache_ttl,
            name="index-views",
        )
        self._caches: list[ExpiringCache] = [self._index_cache]

    # ── Wiring ──

    def register_cache(self, cache: ExpiringCache) -> None:
        """Invalidate ``cache`` entries keyed by a subject+resource after mutations on it.

        Keys must be ``ViewKey``s or tuples starting with ``(subject_id, resource_id)``.
        """
        self._caches.append(cache)

    def subscribe(self, key: ViewKey, callback: Listener) -> Callable[[], None]:
        self._subscribers.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(key)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def local_view(self, key: ViewKey) -> Optional[Tracked]:
        return self._views.get(key)

    def pending_patches(self, key: Optional[ViewKey] = None) -> list[_Patch]:
        if key is not None:
            return list(self._patches.get(key, ()))
        return [p for patches in self._patches.values() for p in patches]

    @asynccontextmanager
    async def _locked(self, key: ViewKey):
        lock_key = key.lock_key
        entry = self._locks.get(lock_key)
        if entry is None:
            entry = self._locks[lock_key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(lock_key) is entry:
                del self._locks[lock_key]

    def held_locks(self) -> int:
        return len(self._locks)

    # ── Reads ──

    async def read(self, key: ViewKey) -> Tracked:
        """Newest of the local view and the index. Never waits on mutation locks."""
        view = await self._index_cache.get_or_load(key, self._load_index)
        base = await self._authoritative(key, view)
        return self._overlay(key, base)

    async def _load_index(self, key: ViewKey) -> IndexView:
        return await self._index.query(IndexQuery(key.subject_id, key.resource_id, key.kind))

    async def _authoritative(self, key: ViewKey, view: IndexView) -> Tracked:
        if not view.degraded:
            return Tracked.confirmed(view.data, view.version_marker)
        if self.ledger_fallback_on_degraded:
            try:
                current = await self._ledger.read_current(key.kind, key.subject_id, key.resource_id)
                value = normalize(key.kind, current.data, key.subject_id, key.resource_id)
            except (OperationFailedError, OperationRejectedError) as exc:
                logger.warning("Ledger fallback read failed for %s: %s", key, exc)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Malformed ledger state for %s: %s", key, exc)
            else:
                return Tracked.confirmed(value, current.version_marker)
        return Tracked.degraded(view.data, view.version_marker)

    def _overlay(self, key: ViewKey, base: Tracked) -> Tracked:
        local = self._views.get(key)
        if local is None:
            return base
        if local.version_marker is None:
            # in flight or unconfirmed: nothing authoritative to compare with yet
            return local
        if (
            base.is_confirmed
            and base.version_marker is not None
            and base.version_marker >= local.version_marker
        ):
            del self._views[key]
            return base
        return local

    # ── Mutations ──

    async def perform(
        self,
        key: ViewKey,
        plan: Callable[[Any], Optional[Mutation]],
        *,
        on_update: Optional[Listener] = None,
        confirmation_timeout: Optional[float] = None,
    ) -> Reconciliation:
        """Run one mutation through the reconciliation protocol.

        ``plan(current_value)`` runs under the key's mutation lock. It
        returns the ``Mutation`` to perform, ``None`` when there is
        nothing to do, or raises a ``DomainRejection``.

        Cancelling the caller does not stop the reconciliation: it runs
        to completion in the background and ``on_update`` is no longer
        called.
        """
        ticket = _Ticket(listener=on_update)
        task = self._scheduler.spawn(
            self._perform(key, plan, ticket, confirmation_timeout),
            name=f"perform:{key.kind.value}",
            report_errors=False,
        )
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            ticket.abandoned = True
            logger.info("Caller abandoned reconciliation for %s; continuing in background", key)
            raise

    async def _perform(
        self,
        key: ViewKey,
        plan: Callable[[Any], Optional[Mutation]],
        ticket: _Ticket,
        timeout: Optional[float],
    ) -> Reconciliation:
        async with self._locked(key):
            current = await self.read(key)
            mutation = plan(current.value)
            if mutation is None:
                return Reconciliation(ReconciliationStatus.UNCHANGED, key, current)

            patch = _Patch(
                key=key,
                patch_id=uuid.uuid4().hex,
                operation=mutation.operation,
                snapshot=self._views.get(key, current),
                ticket=ticket,
            )
            self._patches.setdefault(key, []).append(patch)
            self._apply(key, Tracked.optimistic(mutation.value, patch.patch_id), ticket)

            try:
                patch.handle = await self._ledger.submit(mutation.operation)
            except (OperationRejectedError, OperationFailedError):
                self._rollback(patch)
                raise

            result = await self._confirm(
                patch, timeout if timeout is not None else self.confirmation_timeout,
            )
            if result is not None:
                if result.status is ReconciliationStatus.ROLLED_BACK:
                    raise OperationRejectedError(result.reason or "Operation rejected by ledger")
                return result

        return await self._converge_or_defer(patch)

    async def _confirm(self, patch: _Patch, timeout: Optional[float]) -> Optional[Reconciliation]:
        """Wait for ``patch``'s operation and settle the outcome.

        A refusal seen while polling rolls back like a rejected receipt. A
        lookup that keeps failing leaves the patch unconfirmed, to be
        settled later by ``reconcile()``.
        """
        try:
            confirmation = await self._ledger.await_confirmation(patch.handle, timeout)
        except OperationRejectedError as exc:
            confirmation = Confirmation(ConfirmationStatus.REJECTED, patch.handle, reason=exc.reason)
        except (OperationFailedError, LedgerTransientError) as exc:
            logger.warning("Confirmation lookup for %s failed: %s", patch.handle.operation_id, exc)
            confirmation = Confirmation(ConfirmationStatus.TIMED_OUT, patch.handle)
        except Exception:
            self._flag(patch, unconfirmed=True)
            raise
        return self._settle(patch, confirmation)

    def _settle(self, patch: _Patch, confirmation: Confirmation) -> Optional[Reconciliation]:
        """Apply a confirmation outcome. Returns ``None`` when convergence should follow."""
        key = patch.key
        if confirmation.status is ConfirmationStatus.REJECTED:
            view = self._rollback(patch)
            return Reconciliation(
                ReconciliationStatus.ROLLED_BACK, key, view,
                handle=patch.handle, reason=confirmation.reason,
            )
        if confirmation.status is ConfirmationStatus.TIMED_OUT:
            view = self._flag(patch, unconfirmed=True)
            return Reconciliation(
                ReconciliationStatus.PENDING_CONFIRMATION, key, view, handle=patch.handle,
            )
        patch.version_marker = confirmation.version_marker
        self._flag(patch, unconfirmed=False, version_marker=confirmation.version_marker)
        return None

    async def _converge_or_defer(self, patch: _Patch) -> Reconciliation:
        key = patch.key
        view = await self._poll_index(patch)
        self._invalidate_caches(key.subject_id, key.resource_id)
        if view is not None:
            authoritative = self._converged(patch, view)
            return Reconciliation(
                ReconciliationStatus.CONVERGED, key, authoritative,
                handle=patch.handle, version_marker=patch.version_marker,
            )

        lagging = self._flag(patch, pending_index_lag=True)
        logger.warning(
            "Index has not reached version %s for %s; retrying in background",
            patch.version_marker, key,
        )
        self._schedule_background(patch)
        return Reconciliation(
            ReconciliationStatus.PENDING_INDEX_LAG, key, lagging,
            handle=patch.handle, version_marker=patch.version_marker,
        )

    async def _poll_index(self, patch: _Patch) -> Optional[IndexView]:
        key = patch.key
        target = patch.version_marker
        attempt = 0
        while True:
            view = await self._index.query(IndexQuery(key.subject_id, key.resource_id, key.kind))
            if (
                not view.degraded
                and view.version_marker is not None
                and (target is None or view.version_marker >= target)
            ):
                return view
            attempt += 1
            if self._convergence.exhausted(attempt):
                return None
            await self._scheduler.sleep(self._convergence.delay(attempt))

    def _converged(self, patch: _Patch, view: IndexView) -> Tracked:
        key = patch.key
        authoritative = Tracked.confirmed(view.data, view.version_marker)
        self._index_cache.set(key, view)
        self._discard(patch)
        local = self._views.get(key)
        if local is not None and local.patch_id == patch.patch_id:
            self._apply(key, authoritative, patch.ticket)
        logger.info("Converged %s at index version %s", key, view.version_marker)
        return authoritative

    def _schedule_background(self, patch: _Patch) -> None:
        if self._scheduler.closed:
            return
        patch.background = self._scheduler.call_later(
            self.background_retry_delay,
            lambda: self._background_converge(patch),
            name=f"converge:{patch.key.kind.value}",
        )

    async def _background_converge(self, patch: _Patch) -> None:
        patch.background = None
        local = self._views.get(patch.key)
        if local is None or local.patch_id != patch.patch_id:
            # superseded, or a read already saw the index catch up
            self._discard(patch)
            return
        view = await self._poll_index(patch)
        self._invalidate_caches(patch.key.subject_id, patch.key.resource_id)
        if view is not None:
            self._converged(patch, view)
        else:
            self._schedule_background(patch)

    async def reconcile(self, key: Optional[ViewKey] = None) -> list[Reconciliation]:
        """Re-attempt confirmation for patches whose confirmation timed out."""
        results = []
        for patch in self.pending_patches(key):
            if patch.handle is None or patch.version_marker is not None:
                continue
            async with self._locked(patch.key):
                result = await self._confirm(patch, self.confirmation_timeout)
            if result is None:
                result = await self._converge_or_defer(patch)
            results.append(result)
        return results

    # ── Local view bookkeeping ──

    def _apply(self, key: ViewKey, view: Tracked, ticket: Optional[_Ticket] = None) -> None:
        self._views[key] = view
        if ticket is not None:
            ticket.deliver(view)
        for callback in list(self._subscribers.get(key, ())):
            try:
                callback(view)
            except Exception:
                logger.exception("View subscriber for %s failed", key)

    def _flag(self, patch: _Patch, **changes: Any) -> Tracked:
        local = self._views.get(patch.key)
        if local is None or local.patch_id != patch.patch_id:
            return local if local is not None else Tracked.optimistic(None, patch.patch_id)
        flagged = local.evolve(**changes)
        self._apply(patch.key, flagged, patch.ticket)
        return flagged

    def _rollback(self, patch: _Patch) -> Tracked:
        key = patch.key
        self._discard(patch)
        local = self._views.get(key)
        if local is None or local.patch_id != patch.patch_id:
            logger.warning("Not rolling back %s: a newer patch is applied", key)
            return local
        snapshot = patch.snapshot
        if snapshot is None or (snapshot.patch_id is None and snapshot.version_marker is None):
            # the pre-patch value carried no version to pin; the source view is what was shown
            self._views.pop(key, None)
            if snapshot is not None:
                patch.ticket.deliver(snapshot)
        else:
            self._apply(key, snapshot, patch.ticket)
        logger.info("Rolled back optimistic patch on %s", key)
        return snapshot

    def _discard(self, patch: _Patch) -> None:
        patches = self._patches.get(patch.key)
        if patches and patch in patches:
            patches.remove(patch)
            if not patches:
                del self._patches[patch.key]
        if patch.background is not None:
            patch.background.cancel()

    def _invalidate_caches(self, subject_id: str, resource_id: str) -> None:
        def affected(cache_key: Any) -> bool:
            if isinstance(cache_key, ViewKey):
                return cache_key.affects(subject_id, resource_id)
            if isinstance(cache_key, tuple) and len(cache_key) >= 2:
                return cache_key[0] == subject_id and cache_key[1] == resource_id
            return False

        dropped = sum(cache.invalidate_where(affected) for cache in self._caches)
        logger.debug("Invalidated %d cache entries for %s/%s", dropped, subject_id, resource_id)

    async def teardown(self) -> None:
        for patch in self.pending_patches():
            if patch.background is not None:
                patch.background.cancel()
        for cache in self._caches:
            await cache.teardown()
        self._views.clear()
        self._patches.clear()
        self._subscribers.clear()
