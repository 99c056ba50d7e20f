"""Ledger relay transports.

The engine never speaks a chain protocol directly; it talks to a relay
that accepts operations, reports receipts and serves current state.
"""

import logging
from typing import Any, Optional, Protocol

import httpx

from eduverse_engine.common.exceptions import LedgerTransientError, OperationRejectedError
from eduverse_engine.ledger.operations import LedgerOperation, LedgerView, Receipt, ViewKind

logger = logging.getLogger(__name__)


class LedgerTransport(Protocol):
    async def broadcast(self, operation: LedgerOperation) -> str:
        """Hand ``operation`` to the ledger and return its operation id.

        Raises ``OperationRejectedError`` when refused outright and
        ``LedgerTransientError`` on network failures.
        """

    async def receipt(self, operation_id: str) -> Receipt:
        """Report the current confirmation state of an operation."""

    async def read_state(self, kind: ViewKind, subject_id: str, resource_id: str) -> LedgerView:
        """Strongly consistent read of current on-ledger state."""

    async def aclose(self) -> None:
        ...


class HttpLedgerTransport:
    """JSON-over-HTTP transport for the ledger relay."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"X-Ledger-Api-Key": api_key} if api_key else {}
        self._http = http or httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, headers=headers,
        )

    async def _call(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            resp = await self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise LedgerTransientError(f"Ledger timeout on {path}") from exc
        except httpx.HTTPError as exc:
            raise LedgerTransientError(f"Ledger unreachable: {exc}") from exc

        if resp.status_code >= 500 or resp.status_code == 429:
            raise LedgerTransientError(f"Ledger error: HTTP {resp.status_code}")
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("reason") or resp.json().get("detail")
            except ValueError:
                detail = None
            raise OperationRejectedError(detail or f"Ledger refused request: HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as exc:
            raise LedgerTransientError("Invalid JSON from ledger relay") from exc

    async def broadcast(self, operation: LedgerOperation) -> str:
        data = await self._call("POST", "/operations", json=operation.to_payload())
        operation_id = data.get("operation_id")
        if not operation_id:
            raise LedgerTransientError("Ledger relay returned no operation id")
        return operation_id

    async def receipt(self, operation_id: str) -> Receipt:
        data = await self._call("GET", f"/operations/{operation_id}")
        return Receipt(
            status=data.get("status", "pending"),
            version_marker=data.get("version_marker"),
            reason=data.get("reason"),
        )

    async def read_state(self, kind: ViewKind, subject_id: str, resource_id: str) -> LedgerView:
        data = await self._call(
            "GET", f"/state/{kind.value}",
            params={"subject_id": subject_id, "resource_id": resource_id},
        )
        return LedgerView(
            kind=kind,
            data=data.get("data"),
            version_marker=data.get("version_marker"),
        )

    async def aclose(self) -> None:
        await self._http.aclose()
