"""LedgerGateway: idempotent submission, confirmation polling, direct reads."""

import asyncio
import logging
from typing import Optional

from eduverse_engine.common.backoff import BackoffPolicy
from eduverse_engine.common.exceptions import (
    LedgerTransientError,
    OperationFailedError,
    OperationRejectedError,
)
from eduverse_engine.common.scheduling import Scheduler
from eduverse_engine.ledger.operations import (
    Confirmation,
    ConfirmationStatus,
    LedgerOperation,
    LedgerView,
    OperationHandle,
    ViewKind,
)
from eduverse_engine.ledger.transport import LedgerTransport

logger = logging.getLogger(__name__)


class LedgerGateway:
    """Submits operations to the ledger and waits for their confirmation.

    Submissions are idempotent per ``idempotency_key``: while an operation
    with the same key is unconfirmed, ``submit`` returns its existing
    handle instead of broadcasting again.
    """

    def __init__(
        self,
        transport: LedgerTransport,
        scheduler: Scheduler,
        submit_backoff: Optional[BackoffPolicy] = None,
        poll_backoff: Optional[BackoffPolicy] = None,
        confirmation_timeout: float = 60.0,
    ):
        self._transport = transport
        self._scheduler = scheduler
        self._submit_backoff = submit_backoff or BackoffPolicy(max_attempts=3)
        self._poll_backoff = poll_backoff or BackoffPolicy(base_delay=1.0, max_delay=10.0, max_attempts=None)
        self.confirmation_timeout = confirmation_timeout
        self._pending: dict[str, OperationHandle] = {}
        self._submitting: dict[str, asyncio.Task] = {}

    def pending_handle(self, idempotency_key: str) -> Optional[OperationHandle]:
        return self._pending.get(idempotency_key)

    @property
    def pending(self) -> list[OperationHandle]:
        return list(self._pending.values())

    # ── Submission ──

    async def submit(self, operation: LedgerOperation) -> OperationHandle:
        """Accept ``operation`` for broadcast and return its handle.

        Raises ``OperationRejectedError`` if the ledger refuses it and
        ``OperationFailedError`` once transient failures exhaust the
        retry budget.
        """
        key = operation.idempotency_key
        existing = self._pending.get(key)
        if existing is not None:
            logger.info("Reusing pending handle %s for %s", existing.operation_id, operation.op_type.value)
            return existing

        task = self._submitting.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._broadcast(operation))
            self._submitting[key] = task
            task.add_done_callback(lambda t, k=key: self._submit_done(k, t))
        return await asyncio.shield(task)

    def _submit_done(self, key: str, task: asyncio.Task) -> None:
        if self._submitting.get(key) is task:
            del self._submitting[key]
        if not task.cancelled():
            task.exception()

    async def _broadcast(self, operation: LedgerOperation) -> OperationHandle:
        attempt = 0
        while True:
            try:
                operation_id = await self._transport.broadcast(operation)
            except LedgerTransientError as exc:
                attempt += 1
                if self._submit_backoff.exhausted(attempt):
                    logger.error(
                        "Submitting %s for %s/%s failed after %d attempts",
                        operation.op_type.value, operation.subject_id, operation.resource_id, attempt,
                    )
                    raise OperationFailedError(
                        f"{operation.op_type.value} failed after {attempt} attempts: {exc.message}"
                    ) from exc
                delay = self._submit_backoff.delay(attempt)
                logger.warning("Broadcast failed (attempt %d), retrying in %.2fs: %s", attempt, delay, exc)
                await self._scheduler.sleep(delay)
                continue

            handle = OperationHandle(
                operation_id=operation_id,
                operation=operation,
                submitted_at=self._scheduler.clock.now(),
            )
            self._pending[operation.idempotency_key] = handle
            logger.info(
                "Submitted %s for %s/%s as %s",
                operation.op_type.value, operation.subject_id, operation.resource_id, operation_id,
            )
            return handle

    # ── Confirmation ──

    async def await_confirmation(
        self, handle: OperationHandle, timeout: Optional[float] = None,
    ) -> Confirmation:
        """Poll until ``handle`` is confirmed, rejected, or ``timeout`` elapses.

        Transient receipt failures are absorbed and a refused lookup is
        reported as ``REJECTED``; a timeout is reported as
        ``TIMED_OUT`` and leaves the handle pending so the caller can try
        again later.
        """
        clock = self._scheduler.clock
        budget = self.confirmation_timeout if timeout is None else timeout
        started = clock.now()
        attempt = 0
        while True:
            try:
                receipt = await self._transport.receipt(handle.operation_id)
            except LedgerTransientError as exc:
                logger.debug("Receipt lookup for %s failed: %s", handle.operation_id, exc)
                receipt = None
            except OperationRejectedError as exc:
                self._forget(handle)
                logger.warning("Receipt lookup for %s refused: %s", handle.operation_id, exc.reason)
                return Confirmation(ConfirmationStatus.REJECTED, handle, reason=exc.reason)

            if receipt is not None and receipt.status == "confirmed":
                self._forget(handle)
                logger.info("Operation %s confirmed at version %s", handle.operation_id, receipt.version_marker)
                return Confirmation(
                    ConfirmationStatus.CONFIRMED, handle, version_marker=receipt.version_marker,
                )
            if receipt is not None and receipt.status == "rejected":
                self._forget(handle)
                logger.warning("Operation %s rejected: %s", handle.operation_id, receipt.reason)
                return Confirmation(ConfirmationStatus.REJECTED, handle, reason=receipt.reason)

            remaining = budget - (clock.now() - started).total_seconds()
            if remaining <= 0:
                logger.info("Operation %s not confirmed within %.1fs", handle.operation_id, budget)
                return Confirmation(ConfirmationStatus.TIMED_OUT, handle)
            attempt += 1
            await self._scheduler.sleep(min(self._poll_backoff.delay(attempt), remaining))

    def _forget(self, handle: OperationHandle) -> None:
        if self._pending.get(handle.idempotency_key) is handle:
            del self._pending[handle.idempotency_key]

    # ── Reads ──

    async def read_current(self, kind: ViewKind, subject_id: str, resource_id: str) -> LedgerView:
        """Strongly consistent read, used when the index is suspected stale."""
        attempt = 0
        while True:
            try:
                return await self._transport.read_state(kind, subject_id, resource_id)
            except LedgerTransientError as exc:
                attempt += 1
                if self._submit_backoff.exhausted(attempt):
                    raise OperationFailedError(f"Ledger read failed: {exc.message}") from exc
                await self._scheduler.sleep(self._submit_backoff.delay(attempt))

    async def aclose(self) -> None:
        for task in list(self._submitting.values()):
            task.cancel()
        await self._transport.aclose()
