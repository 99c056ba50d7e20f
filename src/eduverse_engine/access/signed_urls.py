"""Short-lived content access tokens with expiry-anticipating refresh."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

import httpx

from eduverse_engine.cache.expiring import MISS, ExpiringCache
from eduverse_engine.common.backoff import BackoffPolicy
from eduverse_engine.common.exceptions import EduverseError
from eduverse_engine.common.scheduling import Scheduler

logger = logging.getLogger(__name__)


class TokenIssueError(EduverseError):
    """Raised when the token issuer cannot produce a signed URL."""

    def __init__(self, message: str = "Token issuer unavailable"):
        super().__init__(message, code="TOKEN_ISSUER_ERROR")


@dataclass(frozen=True)
class AccessToken:
    content_id: str
    token: str
    expires_at: datetime

    def seconds_remaining(self, now: datetime) -> float:
        return max(0.0, (self.expires_at - now).total_seconds())


class TokenIssuer(Protocol):
    async def exchange(self, content_id: str) -> AccessToken:
        ...

    async def aclose(self) -> None:
        ...


class HttpTokenIssuer:
    """Exchanges content ids for signed URLs at ``POST /refresh-signed-url``."""

    def __init__(self, base_url: str, timeout: float = 30.0, http: Optional[httpx.AsyncClient] = None):
        self._http = http or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    async def exchange(self, content_id: str) -> AccessToken:
        try:
            resp = await self._http.post("/refresh-signed-url", json={"cid": content_id})
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as exc:
            raise TokenIssueError(f"Signed URL refresh failed: {exc}") from exc
        except ValueError as exc:
            raise TokenIssueError("Invalid JSON from token issuer") from exc

        url = data.get("signedUrl")
        expires_ms = data.get("expiresAt")
        if not url or expires_ms is None:
            raise TokenIssueError("Token issuer response missing signedUrl or expiresAt")
        return AccessToken(
            content_id=content_id,
            token=url,
            expires_at=datetime.fromtimestamp(int(expires_ms) / 1000, tz=timezone.utc),
        )

    async def aclose(self) -> None:
        await self._http.aclose()


class SignedResourceAccessManager(ExpiringCache):
    """ExpiringCache keyed by content id whose values are ``AccessToken``s.

    Each token's lifetime comes from its own ``expires_at``. The refresh
    timer fires ``refresh_threshold`` seconds before that. A failed refresh
    is retried once after ``retry_delay`` (immediately if the token has
    already expired), then with exponential backoff.
    """

    def __init__(
        self,
        issuer: TokenIssuer,
        scheduler: Scheduler,
        *,
        refresh_threshold: float = 60.0,
        retry_delay: float = 5.0,
        backoff: Optional[BackoffPolicy] = None,
        fallback_ttl: float = 3600.0,
    ):
        self._issuer = issuer
        self.retry_delay = retry_delay
        super().__init__(
            scheduler,
            default_ttl=fallback_ttl,
            refresh_threshold=refresh_threshold,
            loader=self._exchange,
            backoff=backoff or BackoffPolicy(base_delay=retry_delay, max_delay=60.0, max_attempts=6),
            ttl_for=self._ttl_for_token,
            retry_after_expiry=True,
            name="signed-urls",
        )

    async def _exchange(self, content_id: str) -> AccessToken:
        token = await self._issuer.exchange(content_id)
        logger.debug("Issued signed URL for %s, expires %s", content_id, token.expires_at.isoformat())
        return token

    def _ttl_for_token(self, token: AccessToken) -> float:
        return (token.expires_at - self.clock.now()).total_seconds()

    def _retry_delay(self, attempt: int, urgent: bool) -> float:
        if attempt <= 1:
            return 0.0 if urgent else self.retry_delay
        return self._backoff.delay(attempt - 1)

    async def get_token(self, content_id: str) -> AccessToken:
        """Cached token for ``content_id``, exchanging one on a miss."""
        return await self.get_or_load(content_id)

    def seed(self, token: AccessToken) -> None:
        """Store a token obtained elsewhere (e.g. with the page that embeds it)."""
        self.set(token.content_id, token, ttl=self._ttl_for_token(token))

    def time_until_expiry(self, content_id: str) -> float:
        token = self.get(content_id)
        if token is MISS:
            return 0.0
        return token.seconds_remaining(self.clock.now())

    def countdown(self, content_id: str) -> str:
        return format_time_until_expiry(self.time_until_expiry(content_id))

    async def teardown(self) -> None:
        await super().teardown()
        await self._issuer.aclose()


def format_time_until_expiry(seconds: float) -> str:
    """Human countdown: ``"1d 2h"``, ``"2h 5m"``, ``"3m 4s"``, ``"9s"`` or ``"Expired"``."""
    total = int(seconds)
    if total <= 0:
        return "Expired"
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
