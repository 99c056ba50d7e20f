"""
EduverseClient SDK: sync client for Eduverse-Engine.

Used by course front ends and back-office services to check access,
record progress and add courses to certificates.
"""

import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import httpx


@dataclass
class ClientLicenseStatus:
    """License status returned by the SDK."""

    subject_id: str
    resource_id: str
    status: str
    is_valid: bool = False
    expires_at: Optional[datetime] = None
    time_remaining: Optional[float] = None
    recommended_duration: int = 3
    freshness: str = ""
    degraded: bool = False
    pending: bool = False


@dataclass
class ClientCourseProgress:
    subject_id: str
    resource_id: str
    total_sections: int = 0
    completed_sections: int = 0
    percentage: int = 0
    is_fully_completed: bool = False
    next_section_id: Optional[str] = None
    freshness: str = ""


@dataclass
class ClientEligibility:
    resource_id: str
    eligible: bool
    reason: Optional[str] = None
    is_first_certificate: bool = False
    price: Optional[int] = None


@dataclass
class ClientChangeResult:
    """Outcome of any mutating call."""

    success: bool
    status: str = ""
    code: str = ""
    message: str = ""
    operation_id: Optional[str] = None
    reasons: dict[str, str] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def pending(self) -> bool:
        return self.status in ("pending_confirmation", "pending_index_lag")


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None


class EduverseClient:
    """
    Synchronous HTTP client for Eduverse-Engine.

    Failed calls never raise: they come back as structured
    ``{"error", "code"}`` dicts (or results with ``success=False``).
    """

    def __init__(
        self,
        server_url: str = "http://localhost:8080",
        api_key: Optional[str] = None,
        timeout: int = 30,
        max_retries: int = 3,
        retry_backoff_base: float = 0.5,
    ):
        self.server_url = server_url.rstrip("/")
        self.api_key = api_key
        self.max_retries = max_retries
        self.retry_backoff_base = retry_backoff_base
        self._http = httpx.Client(
            base_url=self.server_url,
            timeout=timeout,
        )

    def _headers(self) -> dict[str, str]:
        headers = {}
        if self.api_key:
            headers["X-Eduverse-Api-Key"] = self.api_key
        return headers

    def _request(
        self,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Central HTTP method with retry and structured error handling.

        Retries on timeouts, transport errors, 5xx and 429. Other 4xx
        responses return the server's error body without retrying.
        """
        last_error = None
        for attempt in range(self.max_retries):
            try:
                resp = getattr(self._http, method)(path, **kwargs)
                if resp.status_code >= 500 or resp.status_code == 429:
                    last_error = f"HTTP {resp.status_code}"
                    if attempt < self.max_retries - 1:
                        time.sleep(self.retry_backoff_base * (2 ** attempt))
                        continue
                    return {
                        "error": f"Server error: {resp.status_code}",
                        "code": "SERVER_ERROR",
                    }
                if resp.status_code >= 400:
                    return self._client_error(resp)
                return resp.json()
            except httpx.TimeoutException:
                last_error = "timeout"
                if attempt < self.max_retries - 1:
                    time.sleep(self.retry_backoff_base * (2 ** attempt))
                    continue
            except httpx.HTTPError as e:
                last_error = str(e)
                if attempt < self.max_retries - 1:
                    time.sleep(self.retry_backoff_base * (2 ** attempt))
                    continue
            except json.JSONDecodeError:
                return {"error": "Invalid JSON response", "code": "JSON_ERROR"}

        return {"error": f"All {self.max_retries} retries exhausted: {last_error}", "code": "CONNECTION_ERROR"}

    @staticmethod
    def _client_error(resp: httpx.Response) -> dict[str, Any]:
        try:
            body = resp.json()
        except json.JSONDecodeError:
            body = {}
        if isinstance(body, dict) and "code" in body:
            return {
                "error": body.get("detail") or body.get("error", ""),
                "code": body["code"],
                "reasons": body.get("reasons") or {},
                "status_code": resp.status_code,
            }
        return {
            "error": f"Client error: {resp.status_code}",
            "code": "CLIENT_ERROR",
            "status_code": resp.status_code,
        }

    @staticmethod
    def _change(data: dict[str, Any]) -> ClientChangeResult:
        if "error" in data:
            return ClientChangeResult(
                success=False,
                code=data.get("code", "ERROR"),
                message=data.get("error", ""),
                reasons=data.get("reasons") or {},
            )
        rec = data.get("reconciliation", {})
        return ClientChangeResult(
            success=True,
            status=rec.get("status", ""),
            operation_id=rec.get("operation_id"),
            data=data,
        )

    # ── Health ──

    def health(self) -> dict[str, Any]:
        return self._request("get", "/health")

    # ── Licenses ──

    def license_status(self, subject_id: str, resource_id: str) -> Optional[ClientLicenseStatus]:
        data = self._request(
            "get", "/license/status",
            params={"subject_id": subject_id, "resource_id": resource_id},
        )
        if "error" in data:
            return None
        return ClientLicenseStatus(
            subject_id=data.get("subject_id", subject_id),
            resource_id=data.get("resource_id", resource_id),
            status=data.get("status", "none"),
            is_valid=data.get("is_valid", False),
            expires_at=_parse_datetime(data.get("expires_at")),
            time_remaining=data.get("time_remaining"),
            recommended_duration=data.get("recommended_duration", 3),
            freshness=data.get("freshness", ""),
            degraded=data.get("degraded", False),
            pending=data.get("unconfirmed", False) or data.get("pending_index_lag", False),
        )

    def has_access(self, subject_id: str, resource_id: str) -> bool:
        status = self.license_status(subject_id, resource_id)
        return status is not None and status.is_valid

    def license_price(
        self, resource_id: str, duration_units: int = 1, currency: Optional[str] = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"resource_id": resource_id, "duration_units": duration_units}
        if currency:
            params["currency"] = currency
        return self._request("get", "/license/price", params=params)

    def purchase(self, subject_id: str, resource_id: str, duration_units: int = 1) -> ClientChangeResult:
        body = {"subject_id": subject_id, "resource_id": resource_id, "duration_units": duration_units}
        return self._change(self._request("post", "/license/purchase", json=body, headers=self._headers()))

    def renew(self, subject_id: str, resource_id: str, duration_units: int = 1) -> ClientChangeResult:
        body = {"subject_id": subject_id, "resource_id": resource_id, "duration_units": duration_units}
        return self._change(self._request("post", "/license/renew", json=body, headers=self._headers()))

    # ── Progress ──

    def course_progress(self, subject_id: str, resource_id: str) -> Optional[ClientCourseProgress]:
        data = self._request(
            "get", "/progress/course",
            params={"subject_id": subject_id, "resource_id": resource_id},
        )
        if "error" in data:
            return None
        nxt = data.get("next_section") or {}
        return ClientCourseProgress(
            subject_id=subject_id,
            resource_id=resource_id,
            total_sections=data.get("total_sections", 0),
            completed_sections=data.get("completed_sections", 0),
            percentage=data.get("percentage", 0),
            is_fully_completed=data.get("is_fully_completed", False),
            next_section_id=nxt.get("section_id"),
            freshness=data.get("freshness", ""),
        )

    def start_section(self, subject_id: str, resource_id: str, section_id: str) -> ClientChangeResult:
        body = {"subject_id": subject_id, "resource_id": resource_id, "section_id": section_id}
        return self._change(self._request("post", "/progress/section/start", json=body, headers=self._headers()))

    def complete_section(self, subject_id: str, resource_id: str, section_id: str) -> ClientChangeResult:
        body = {"subject_id": subject_id, "resource_id": resource_id, "section_id": section_id}
        return self._change(self._request("post", "/progress/section/complete", json=body, headers=self._headers()))

    # ── Certificates ──

    def eligibility(self, subject_id: str, resource_id: str) -> ClientEligibility:
        data = self._request(
            "get", "/certificate/eligibility",
            params={"subject_id": subject_id, "resource_id": resource_id},
        )
        if "error" in data:
            return ClientEligibility(resource_id=resource_id, eligible=False, reason=data.get("code"))
        return ClientEligibility(
            resource_id=data.get("resource_id", resource_id),
            eligible=data.get("eligible", False),
            reason=data.get("reason"),
            is_first_certificate=data.get("is_first_certificate", False),
            price=data.get("price"),
        )

    def add_to_credential(self, subject_id: str, resource_ids: list[str]) -> ClientChangeResult:
        body = {"subject_id": subject_id, "resource_ids": resource_ids}
        return self._change(self._request("post", "/certificate/add", json=body, headers=self._headers()))

    # ── Access ──

    def signed_url(self, content_id: str) -> Optional[str]:
        data = self._request("get", "/access/signed-url", params={"content_id": content_id})
        if "error" in data:
            return None
        return data.get("signed_url")

    # ── Reconciliation ──

    def reconcile(self) -> dict[str, Any]:
        return self._request("post", "/reconcile", json={}, headers=self._headers())

    # ── Lifecycle ──

    def close(self) -> None:
        """Close the HTTP client."""
        self._http.close()

    def __enter__(self) -> "EduverseClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
