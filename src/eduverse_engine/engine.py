"""EduverseEngine: builds, owns and tears down every component."""

import logging
from typing import Optional

from eduverse_engine.access.signed_urls import HttpTokenIssuer, SignedResourceAccessManager, TokenIssuer
from eduverse_engine.cache.quotes import HttpPriceFeed, PriceFeed, PriceQuoteService
from eduverse_engine.certificates.eligibility import CertificateEligibilityEngine
from eduverse_engine.common.backoff import BackoffPolicy, policy_from_settings
from eduverse_engine.common.config import EduverseSettings
from eduverse_engine.common.scheduling import Scheduler
from eduverse_engine.index.gateway import IndexGateway
from eduverse_engine.index.transport import GraphQLIndexTransport, IndexTransport
from eduverse_engine.ledger.gateway import LedgerGateway
from eduverse_engine.ledger.transport import HttpLedgerTransport, LedgerTransport
from eduverse_engine.licensing.state import LicenseStateMachine
from eduverse_engine.progress.aggregator import ProgressAggregator
from eduverse_engine.reconciliation.coordinator import ReconciliationCoordinator

logger = logging.getLogger(__name__)


class EduverseEngine:
    """One engine per process (or per test). Nothing here is a module-level singleton."""

    def __init__(
        self,
        settings: EduverseSettings,
        *,
        ledger_transport: LedgerTransport,
        index_transport: IndexTransport,
        token_issuer: TokenIssuer,
        price_feed: PriceFeed,
        scheduler: Optional[Scheduler] = None,
        backoff: Optional[BackoffPolicy] = None,
    ):
        self.settings = settings
        self.scheduler = scheduler or Scheduler()
        clock = self.scheduler.clock
        backoff = backoff or policy_from_settings(settings)

        self.ledger = LedgerGateway(
            ledger_transport,
            self.scheduler,
            submit_backoff=backoff,
            poll_backoff=backoff.with_attempts(None),
            confirmation_timeout=settings.confirmation_timeout,
        )
        self.index = IndexGateway(index_transport, self.scheduler, backoff=backoff)
        self.coordinator = ReconciliationCoordinator(
            self.ledger,
            self.index,
            self.scheduler,
            index_cache_ttl=settings.index_cache_ttl,
            convergence_backoff=BackoffPolicy(
                base_delay=settings.convergence_base_delay,
                max_delay=settings.convergence_max_delay,
                jitter=backoff.jitter,
                max_attempts=settings.convergence_max_attempts,
            ),
            confirmation_timeout=settings.confirmation_timeout,
            background_retry_delay=settings.background_retry_delay,
            ledger_fallback_on_degraded=settings.ledger_fallback_on_degraded,
        )
        self.licenses = LicenseStateMachine(settings, self.coordinator, clock)
        self.progress = ProgressAggregator(self.coordinator, clock)
        self.certificates = CertificateEligibilityEngine(
            settings, self.coordinator, self.progress, self.licenses, clock,
        )
        self.signed_urls = SignedResourceAccessManager(
            token_issuer,
            self.scheduler,
            refresh_threshold=settings.signed_url_refresh_threshold,
            retry_delay=settings.signed_url_retry_delay,
            backoff=BackoffPolicy(
                base_delay=settings.signed_url_retry_delay,
                max_delay=settings.retry_max_delay,
                jitter=backoff.jitter,
            ),
        )
        self.quotes = PriceQuoteService(
            price_feed,
            self.scheduler,
            ttl=settings.price_quote_ttl,
            refresh_threshold=settings.price_quote_refresh_threshold,
            currency=settings.price_quote_currency,
            backoff=backoff.with_attempts(None),
        )
        self._closed = False

    @classmethod
    def from_settings(cls, settings: EduverseSettings, scheduler: Optional[Scheduler] = None) -> "EduverseEngine":
        """Engine wired to the HTTP collaborators named in ``settings``."""
        timeout = settings.http_timeout
        return cls(
            settings,
            ledger_transport=HttpLedgerTransport(settings.ledger_url, settings.ledger_api_key, timeout),
            index_transport=GraphQLIndexTransport(settings.index_url, timeout),
            token_issuer=HttpTokenIssuer(settings.token_issuer_url, timeout),
            price_feed=HttpPriceFeed(settings.price_feed_url, timeout),
            scheduler=scheduler,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    async def teardown(self) -> None:
        """Cancel every timer, background retry and in-flight fetch, then close transports."""
        if self._closed:
            return
        self._closed = True
        await self.coordinator.teardown()
        await self.signed_urls.teardown()
        await self.quotes.teardown()
        await self.scheduler.shutdown()
        await self.ledger.aclose()
        await self.index.aclose()
        logger.info("Engine torn down")

    async def __aenter__(self) -> "EduverseEngine":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.teardown()
