"""Tests for the write-then-refresh reconciliation protocol."""

import asyncio
from datetime import timedelta

import pytest

from eduverse_engine.cache.expiring import MISS, ExpiringCache
from eduverse_engine.common.backoff import BackoffPolicy
from eduverse_engine.common.exceptions import OperationFailedError, OperationRejectedError
from eduverse_engine.index.gateway import IndexGateway
from eduverse_engine.ledger.gateway import LedgerGateway
from eduverse_engine.ledger.operations import LedgerOperation, OperationType, ViewKind
from eduverse_engine.licensing.models import License
from eduverse_engine.reconciliation.coordinator import (
    Mutation,
    ReconciliationCoordinator,
    ReconciliationStatus,
)
from eduverse_engine.reconciliation.views import Freshness, Tracked, ViewKey
from conftest import COURSE, FAST, SUBJECT
from fakes import T0

KEY = ViewKey(SUBJECT, COURSE, ViewKind.LICENSE)
ONE_SECOND = BackoffPolicy(base_delay=1.0, max_delay=1.0, jitter=0.0, max_attempts=None)


def build(ledger, index, scheduler, *, confirmation_timeout=5.0, poll_backoff=None,
          convergence=None, background_retry_delay=3600.0, **kwargs):
    gateway = LedgerGateway(
        ledger, scheduler,
        submit_backoff=FAST,
        poll_backoff=poll_backoff or FAST.with_attempts(None),
        confirmation_timeout=confirmation_timeout,
    )
    return ReconciliationCoordinator(
        gateway,
        IndexGateway(index, scheduler, backoff=FAST),
        scheduler,
        convergence_backoff=convergence or BackoffPolicy(base_delay=0, max_delay=0, jitter=0, max_attempts=5),
        background_retry_delay=background_retry_delay,
        **kwargs,
    )


def grant(units=1, seen=None):
    def plan(current):
        if seen is not None:
            seen.append(current)
        value = License(SUBJECT, COURSE, T0, units, T0 + timedelta(days=30 * units))
        operation = LedgerOperation.build(
            OperationType.PURCHASE_LICENSE, SUBJECT, COURSE,
            duration_units=units, price=0, previous_expiry=None,
        )
        return Mutation(operation, value)

    return plan


@pytest.fixture
async def coordinator(ledger, index, scheduler):
    coord = build(ledger, index, scheduler)
    yield coord
    await coord.teardown()


class TestTracked:
    def test_constructors(self):
        assert Tracked.optimistic(1, "p").is_optimistic
        assert Tracked.confirmed(1, 4).is_confirmed
        assert Tracked.degraded(1, None).freshness is Freshness.STALE_DEGRADED

    def test_evolve_keeps_patch(self):
        view = Tracked.optimistic(1, "p").evolve(unconfirmed=True)
        assert view.patch_id == "p"
        assert view.unconfirmed

    def test_lock_key_ignores_kind(self):
        progress = ViewKey(SUBJECT, COURSE, ViewKind.PROGRESS)
        assert progress.lock_key == KEY.lock_key


class TestReads:
    async def test_confirmed_read_is_cached(self, coordinator, index):
        first = await coordinator.read(KEY)
        await coordinator.read(KEY)
        assert first.is_confirmed
        assert first.version_marker == 4
        assert index.calls == 1

    async def test_degraded_index_falls_back_to_ledger(self, coordinator, ledger, index):
        ledger.seed_license(SUBJECT, COURSE, T0 + timedelta(days=30))
        index.degraded = True
        view = await coordinator.read(KEY)
        assert view.is_confirmed
        assert view.value.expires_at == T0 + timedelta(days=30)
        assert ledger.reads == 1

    async def test_degraded_without_fallback(self, ledger, index, scheduler):
        coordinator = build(ledger, index, scheduler, ledger_fallback_on_degraded=False)
        index.unavailable = True
        view = await coordinator.read(KEY)
        assert view.is_degraded
        assert view.value is None
        assert ledger.reads == 0

    async def test_degraded_views_are_not_cached(self, ledger, index, scheduler):
        coordinator = build(ledger, index, scheduler, ledger_fallback_on_degraded=False)
        index.degraded = True
        await coordinator.read(KEY)
        await coordinator.read(KEY)
        assert index.calls == 2

    async def test_failed_fallback_serves_degraded(self, coordinator, ledger, index):
        index.degraded = True
        ledger.read_failures = 10
        view = await coordinator.read(KEY)
        assert view.is_degraded


class TestPerform:
    async def test_converges_once_index_reaches_confirmed_version(self, coordinator, ledger, index):
        index.hold(3)
        result = await coordinator.perform(KEY, grant())

        assert result.status is ReconciliationStatus.CONVERGED
        assert result.version_marker == 5
        assert result.view.is_confirmed
        assert index.served[:3] == [4, 4, 4]
        assert index.served[-1] == 5
        assert coordinator.pending_patches() == []
        assert (await coordinator.read(KEY)).version_marker == 5

    async def test_unchanged_when_plan_returns_none(self, coordinator, ledger):
        result = await coordinator.perform(KEY, lambda current: None)
        assert result.status is ReconciliationStatus.UNCHANGED
        assert ledger.broadcasts == 0

    async def test_index_lag_keeps_optimistic_view(self, coordinator, index):
        index.lag = 1
        result = await coordinator.perform(KEY, grant())

        assert result.status is ReconciliationStatus.PENDING_INDEX_LAG
        assert result.view.pending_index_lag
        assert result.version_marker == 5
        view = await coordinator.read(KEY)
        assert view.is_optimistic
        assert view.value is not None
        assert len(coordinator.pending_patches(KEY)) == 1

    async def test_rejected_receipt_rolls_back(self, coordinator, ledger):
        ledger.mode = "reject"
        with pytest.raises(OperationRejectedError, match="execution reverted"):
            await coordinator.perform(KEY, grant())
        view = await coordinator.read(KEY)
        assert view.value is None
        assert view.is_confirmed
        assert coordinator.pending_patches() == []

    async def test_rejected_broadcast_rolls_back(self, coordinator, ledger):
        ledger.reject_broadcast = "insufficient funds"
        with pytest.raises(OperationRejectedError):
            await coordinator.perform(KEY, grant())
        assert (await coordinator.read(KEY)).value is None

    async def test_exhausted_submission_rolls_back(self, coordinator, ledger):
        ledger.transient_failures = 10
        with pytest.raises(OperationFailedError):
            await coordinator.perform(KEY, grant())
        assert (await coordinator.read(KEY)).value is None
        assert coordinator.pending_patches() == []

    async def test_plan_errors_propagate_without_patch(self, coordinator, ledger):
        def plan(current):
            raise ValueError("bad request")

        with pytest.raises(ValueError):
            await coordinator.perform(KEY, plan)
        assert coordinator.local_view(KEY) is None

    async def test_mutations_on_one_key_are_serialised(self, coordinator, ledger):
        seen = []
        first, second = await asyncio.gather(
            coordinator.perform(KEY, grant(1, seen)),
            coordinator.perform(KEY, grant(2, seen)),
        )
        assert seen[0] is None
        assert seen[1] is not None
        assert ledger.broadcasts == 2

    async def test_subscribers_see_every_transition(self, coordinator):
        seen = []
        coordinator.subscribe(KEY, seen.append)
        await coordinator.perform(KEY, grant())
        assert [v.freshness for v in seen][0] is Freshness.OPTIMISTIC
        assert seen[-1].is_confirmed

    async def test_related_caches_are_invalidated(self, coordinator, scheduler):
        cache = ExpiringCache(scheduler, default_ttl=60)
        coordinator.register_cache(cache)
        cache.set((SUBJECT, COURSE, "summary"), 1)
        cache.set((SUBJECT, "C2", "summary"), 2)

        await coordinator.perform(KEY, grant())

        assert cache.get((SUBJECT, COURSE, "summary")) is MISS
        assert cache.get((SUBJECT, "C2", "summary")) == 2


class TestConfirmationTimeout:
    async def test_timeout_then_reconcile(self, ledger, index, scheduler):
        coordinator = build(ledger, index, scheduler, confirmation_timeout=0)
        ledger.mode = "pending"

        result = await coordinator.perform(KEY, grant())
        assert result.status is ReconciliationStatus.PENDING_CONFIRMATION
        assert result.view.unconfirmed
        view = await coordinator.read(KEY)
        assert view.is_optimistic
        assert view.unconfirmed

        ledger.mode = "confirm"
        results = await coordinator.reconcile()
        assert [r.status for r in results] == [ReconciliationStatus.CONVERGED]
        assert coordinator.pending_patches() == []
        assert (await coordinator.read(KEY)).is_confirmed

    async def test_reconcile_still_pending(self, ledger, index, scheduler):
        coordinator = build(ledger, index, scheduler, confirmation_timeout=0)
        ledger.mode = "pending"
        await coordinator.perform(KEY, grant())

        results = await coordinator.reconcile(KEY)
        assert [r.status for r in results] == [ReconciliationStatus.PENDING_CONFIRMATION]
        assert len(coordinator.pending_patches()) == 1

    async def test_reconcile_rejection_rolls_back(self, ledger, index, scheduler):
        coordinator = build(ledger, index, scheduler, confirmation_timeout=0)
        ledger.mode = "pending"
        await coordinator.perform(KEY, grant())

        ledger.mode = "reject"
        results = await coordinator.reconcile()
        assert results[0].status is ReconciliationStatus.ROLLED_BACK
        assert (await coordinator.read(KEY)).value is None


class TestBackgroundWork:
    async def test_caller_cancellation_does_not_stop_reconciliation(self, ledger, index, manual_scheduler):
        coordinator = build(ledger, index, manual_scheduler, poll_backoff=ONE_SECOND)
        ledger.mode = "pending"
        listened, subscribed = [], []
        coordinator.subscribe(KEY, subscribed.append)

        caller = asyncio.create_task(coordinator.perform(KEY, grant(), on_update=listened.append))
        await manual_scheduler.advance(0)
        assert len(listened) == 1

        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        ledger.mode = "confirm"
        await manual_scheduler.advance(1)

        assert len(listened) == 1
        assert subscribed[-1].is_confirmed
        assert coordinator.pending_patches() == []
        assert (await coordinator.read(KEY)).value is not None
        await coordinator.teardown()
        await manual_scheduler.shutdown()

    async def test_background_convergence_after_index_catches_up(self, ledger, index, manual_scheduler):
        coordinator = build(
            ledger, index, manual_scheduler,
            convergence=BackoffPolicy(base_delay=1.0, max_delay=1.0, jitter=0.0, max_attempts=2),
            background_retry_delay=30.0,
        )
        index.lag = 1

        task = asyncio.create_task(coordinator.perform(KEY, grant()))
        await manual_scheduler.advance(1)
        result = await task
        assert result.status is ReconciliationStatus.PENDING_INDEX_LAG

        index.lag = 0
        await manual_scheduler.advance(30)

        assert coordinator.pending_patches() == []
        view = await coordinator.read(KEY)
        assert view.is_confirmed
        assert view.version_marker == 5
        await coordinator.teardown()
        await manual_scheduler.shutdown()

    async def test_teardown_cancels_background_retries(self, ledger, index, manual_scheduler):
        coordinator = build(
            ledger, index, manual_scheduler,
            convergence=BackoffPolicy(base_delay=0.0, max_delay=0.0, jitter=0.0, max_attempts=1),
            background_retry_delay=30.0,
        )
        index.lag = 1
        result = await coordinator.perform(KEY, grant())
        assert result.status is ReconciliationStatus.PENDING_INDEX_LAG
        calls = index.calls

        await coordinator.teardown()
        await manual_scheduler.advance(60)
        assert index.calls == calls
        await manual_scheduler.shutdown()


class TestConfirmationFailures:
    async def test_refused_receipt_lookup_rolls_back(self, coordinator, ledger, monkeypatch):
        async def refuse(operation_id):
            raise OperationRejectedError("unknown operation")

        monkeypatch.setattr(ledger, "receipt", refuse)
        with pytest.raises(OperationRejectedError, match="unknown operation"):
            await coordinator.perform(KEY, grant())

        view = await coordinator.read(KEY)
        assert view.value is None
        assert view.is_confirmed
        assert coordinator.pending_patches() == []

        monkeypatch.undo()
        result = await coordinator.perform(KEY, grant())
        assert result.status is ReconciliationStatus.CONVERGED

    async def test_failing_receipt_lookup_keeps_patch_unconfirmed(self, coordinator, ledger, monkeypatch):
        async def unreachable(operation_id):
            raise OperationFailedError("relay gone")

        monkeypatch.setattr(ledger, "receipt", unreachable)
        result = await coordinator.perform(KEY, grant())
        assert result.status is ReconciliationStatus.PENDING_CONFIRMATION
        view = await coordinator.read(KEY)
        assert view.is_optimistic
        assert view.unconfirmed
        assert len(coordinator.pending_patches(KEY)) == 1

        monkeypatch.undo()
        results = await coordinator.reconcile(KEY)
        assert [r.status for r in results] == [ReconciliationStatus.CONVERGED]
        assert (await coordinator.read(KEY)).is_confirmed

    async def test_unexpected_lookup_error_leaves_labelled_view(self, coordinator, ledger, monkeypatch):
        async def broken(operation_id):
            raise RuntimeError("bad receipt payload")

        monkeypatch.setattr(ledger, "receipt", broken)
        with pytest.raises(RuntimeError):
            await coordinator.perform(KEY, grant())
        view = await coordinator.read(KEY)
        assert view.unconfirmed
        assert len(coordinator.pending_patches(KEY)) == 1

        monkeypatch.undo()
        results = await coordinator.reconcile()
        assert [r.status for r in results] == [ReconciliationStatus.CONVERGED]
        assert coordinator.pending_patches() == []


class TestBookkeeping:
    async def test_locks_and_loads_released_after_mutations(self, coordinator, scheduler):
        cache = ExpiringCache(scheduler, default_ttl=60)
        coordinator.register_cache(cache)
        for resource_id in ("C1", "C2"):
            cache.set((SUBJECT, resource_id, "summary"), 1)

        await asyncio.gather(
            coordinator.perform(KEY, grant(1)),
            coordinator.perform(KEY, grant(2)),
            coordinator.perform(ViewKey(SUBJECT, "C2", ViewKind.PROGRESS), lambda current: None),
        )

        assert coordinator.held_locks() == 0
        assert cache.pending_loads() == 0

    async def test_lock_released_when_plan_fails(self, coordinator):
        def plan(current):
            raise ValueError("bad request")

        with pytest.raises(ValueError):
            await coordinator.perform(KEY, plan)
        assert coordinator.held_locks() == 0
