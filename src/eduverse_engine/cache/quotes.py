"""ETH to fiat price quotes, cached with background refresh."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

import httpx

from eduverse_engine.cache.expiring import ExpiringCache
from eduverse_engine.common.backoff import BackoffPolicy
from eduverse_engine.common.exceptions import EduverseError
from eduverse_engine.common.scheduling import Scheduler

logger = logging.getLogger(__name__)

WEI_PER_ETH = 10**18


class PriceFeedError(EduverseError):
    def __init__(self, message: str = "Price feed unavailable"):
        super().__init__(message, code="PRICE_FEED_ERROR")


@dataclass(frozen=True)
class PriceQuote:
    currency: str
    rate: float  # fiat per 1 ETH
    fetched_at: datetime

    def convert_wei(self, amount_wei: int) -> float:
        return amount_wei / WEI_PER_ETH * self.rate


class PriceFeed(Protocol):
    async def fetch_rate(self, currency: str) -> float:
        ...

    async def aclose(self) -> None:
        ...


class HttpPriceFeed:
    """Simple-price endpoint: ``GET ?ids=ethereum&vs_currencies=<cur>``."""

    def __init__(self, url: str, timeout: float = 30.0, http: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def fetch_rate(self, currency: str) -> float:
        try:
            resp = await self._http.get(
                self.url, params={"ids": "ethereum", "vs_currencies": currency},
            )
            resp.raise_for_status()
            return float(resp.json()["ethereum"][currency])
        except httpx.HTTPError as exc:
            raise PriceFeedError(f"Price feed request failed: {exc}") from exc
        except (KeyError, TypeError, ValueError) as exc:
            raise PriceFeedError(f"Unexpected price feed response: {exc}") from exc

    async def aclose(self) -> None:
        await self._http.aclose()


class PriceQuoteService:
    def __init__(
        self,
        feed: PriceFeed,
        scheduler: Scheduler,
        *,
        ttl: float = 300.0,
        refresh_threshold: Optional[float] = 30.0,
        currency: str = "idr",
        backoff: Optional[BackoffPolicy] = None,
    ):
        self.feed = feed
        self.currency = currency.lower()
        self._scheduler = scheduler
        self._cache: ExpiringCache = ExpiringCache(
            scheduler,
            default_ttl=ttl,
            refresh_threshold=refresh_threshold,
            loader=self._load,
            backoff=backoff,
            name="price-quotes",
        )

    @property
    def cache(self) -> ExpiringCache:
        return self._cache

    async def _load(self, currency: str) -> PriceQuote:
        rate = await self.feed.fetch_rate(currency)
        logger.debug("ETH/%s rate %s", currency.upper(), rate)
        return PriceQuote(currency, rate, self._scheduler.clock.now())

    async def quote(self, currency: Optional[str] = None) -> PriceQuote:
        return await self._cache.get_or_load((currency or self.currency).lower())

    async def convert_wei(self, amount_wei: int, currency: Optional[str] = None) -> float:
        return (await self.quote(currency)).convert_wei(amount_wei)

    async def teardown(self) -> None:
        await self._cache.teardown()
        await self.feed.aclose()
