"""GraphQL transport for the index (a subgraph-style indexer)."""

import logging
from typing import Any, Optional, Protocol

import httpx

from eduverse_engine.common.exceptions import IndexUnavailableError
from eduverse_engine.ledger.operations import ViewKind

logger = logging.getLogger(__name__)

_META = """
    _meta {
      block { number }
      hasIndexingErrors
    }
"""

QUERIES: dict[ViewKind, str] = {
    ViewKind.LICENSE: """
  query License($subject: String!, $resource: String!) {
    license: licenses(where: {student: $subject, courseId: $resource}, first: 1) {
      student
      courseId
      durationLicense
      expiryTimestamp
      isActive
      mintedAt
      totalPaid
      renewalCount
      lastRenewedAt
    }
""" + _META + "}",
    ViewKind.PROGRESS: """
  query Progress($subject: String!, $resource: String!) {
    course(id: $resource) {
      sections(orderBy: orderId, orderDirection: asc) {
        id
        orderId
        sequence
        title
      }
    }
    sectionProgresses(where: {student: $subject, courseId: $resource}) {
      sectionId
      startedAt
      completedAt
      viewCount
    }
""" + _META + "}",
    ViewKind.CREDENTIAL: """
  query Credential($subject: String!) {
    certificate: certificates(where: {recipientAddress: $subject}, first: 1) {
      recipientAddress
      issuedAt
      lastUpdated
      courses(orderBy: addedAt, orderDirection: asc) {
        courseId
      }
    }
""" + _META + "}",
}

# list-valued fields selected with ``first: 1`` that callers expect as a single entity
_SINGULAR = {ViewKind.LICENSE: "license", ViewKind.CREDENTIAL: "certificate"}


class IndexTransport(Protocol):
    async def execute(self, kind: ViewKind, subject_id: str, resource_id: str) -> dict[str, Any]:
        """Return ``{"data": {...}, "errors": [...]}`` for ``kind``.

        Raises ``IndexUnavailableError`` when the index cannot be reached.
        """

    async def aclose(self) -> None:
        ...


class GraphQLIndexTransport:
    """POSTs GraphQL queries to the index endpoint."""

    def __init__(
        self,
        endpoint: str,
        timeout: float = 30.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.endpoint = endpoint
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def execute(self, kind: ViewKind, subject_id: str, resource_id: str) -> dict[str, Any]:
        payload = {
            "query": QUERIES[kind],
            "variables": {"subject": subject_id.lower(), "resource": resource_id},
        }
        try:
            resp = await self._http.post(
                self.endpoint, json=payload, headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise IndexUnavailableError(f"Index unreachable: {exc}") from exc

        if resp.status_code >= 400:
            raise IndexUnavailableError(f"Index error: HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise IndexUnavailableError("Invalid JSON from index") from exc

        data = body.get("data") or {}
        field = _SINGULAR.get(kind)
        if field and isinstance(data.get(field), list):
            items = data[field]
            data[field] = items[0] if items else None
        return {"data": data, "errors": body.get("errors") or []}

    async def aclose(self) -> None:
        await self._http.aclose()
