"""IndexGateway: query the index and normalise into domain views."""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from eduverse_engine.common.backoff import BackoffPolicy
from eduverse_engine.common.exceptions import IndexUnavailableError
from eduverse_engine.common.scheduling import Scheduler
from eduverse_engine.index.normalize import empty_value, normalize
from eduverse_engine.index.transport import IndexTransport
from eduverse_engine.ledger.operations import ViewKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexQuery:
    subject_id: str
    resource_id: str
    kind: ViewKind


@dataclass(frozen=True)
class IndexView:
    """Best-available index data.

    ``degraded`` is set when the index reported ingestion errors, returned
    partial data, or could not be reached at all (then ``data`` is the
    empty value for the kind and ``version_marker`` is ``None``).
    """

    query: IndexQuery
    data: Any
    version_marker: Optional[int]
    degraded: bool = False
    errors: tuple[str, ...] = ()


class IndexGateway:
    """Never raises for infrastructure problems; degrades instead."""

    def __init__(
        self,
        transport: IndexTransport,
        scheduler: Scheduler,
        backoff: Optional[BackoffPolicy] = None,
    ):
        self._transport = transport
        self._scheduler = scheduler
        self._backoff = backoff or BackoffPolicy(base_delay=0.25, max_delay=2.0, max_attempts=3)

    async def query(self, request: IndexQuery) -> IndexView:
        try:
            body = await self._execute(request)
        except IndexUnavailableError as exc:
            logger.warning("Index unavailable for %s %s/%s: %s",
                           request.kind.value, request.subject_id, request.resource_id, exc)
            return IndexView(
                request, empty_value(request.kind, request.subject_id, request.resource_id),
                version_marker=None, degraded=True, errors=(exc.message,),
            )

        data = body.get("data") or {}
        errors = tuple(
            e.get("message", "unknown error") if isinstance(e, dict) else str(e)
            for e in body.get("errors") or []
        )
        meta = data.get("_meta") or {}
        degraded = bool(errors) or bool(meta.get("hasIndexingErrors"))
        version = (meta.get("block") or {}).get("number")

        try:
            value = normalize(request.kind, data, request.subject_id, request.resource_id)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Malformed index data for %s: %s", request.kind.value, exc)
            value = empty_value(request.kind, request.subject_id, request.resource_id)
            degraded = True
            errors = errors + (f"malformed: {exc}",)

        if degraded:
            logger.info("Degraded index read for %s %s/%s: %s",
                        request.kind.value, request.subject_id, request.resource_id, errors or "indexing errors")
        return IndexView(
            request, value,
            version_marker=int(version) if version is not None else None,
            degraded=degraded,
            errors=errors,
        )

    async def _execute(self, request: IndexQuery) -> dict[str, Any]:
        attempt = 0
        while True:
            try:
                return await self._transport.execute(request.kind, request.subject_id, request.resource_id)
            except IndexUnavailableError:
                attempt += 1
                if self._backoff.exhausted(attempt):
                    raise
                await self._scheduler.sleep(self._backoff.delay(attempt))

    async def aclose(self) -> None:
        await self._transport.aclose()
