"""Eduverse-Engine configuration via pydantic-settings."""

import warnings
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

_INSECURE_DEFAULTS = {
    "api_key": "insecure-admin-key-change-me",
    "ledger_api_key": "insecure-ledger-key-change-me",
}


class EduverseSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="EDUVERSE_")

    environment: str = "development"
    log_level: str = "INFO"

    # Collaborators
    ledger_url: str = "http://localhost:8545"
    ledger_api_key: str = "insecure-ledger-key-change-me"
    index_url: str = "http://localhost:8000/subgraphs/eduverse/gn"
    token_issuer_url: str = "http://localhost:3000/api/ipfs"
    price_feed_url: str = "https://api.coingecko.com/api/v3/simple/price"
    http_timeout: float = 30.0

    # Licensing
    renewal_window_days: int = 7
    license_unit_days: int = 30
    min_duration_units: int = 1
    max_duration_units: int = 12
    platform_fee_bps: int = 200  # 2%
    # JSON, e.g. '{"C1": 1000000000000000}' (wei per unit)
    course_prices: dict[str, int] = {}
    default_course_price: int = 0

    # Certificates
    certificate_mint_price: int = 0
    certificate_add_price: int = 0
    allow_unlicensed_certificates: bool = False

    # Reconciliation
    confirmation_timeout: float = 60.0  # seconds
    convergence_max_attempts: int = 10
    convergence_base_delay: float = 1.0
    convergence_max_delay: float = 15.0
    background_retry_delay: float = 30.0
    ledger_fallback_on_degraded: bool = True
    index_cache_ttl: float = 30.0

    # Retry / backoff
    retry_base_delay: float = 0.5
    retry_max_delay: float = 30.0
    retry_jitter: float = 0.2
    submit_max_retries: int = 3

    # Signed content URLs
    signed_url_refresh_threshold: float = 60.0
    signed_url_retry_delay: float = 5.0

    # Price quotes
    price_quote_ttl: float = 300.0
    price_quote_refresh_threshold: float = 30.0
    price_quote_currency: str = "idr"

    # API
    api_title: str = "Eduverse-Engine"
    api_version: str = "0.1.0"
    api_key: str = "insecure-admin-key-change-me"
    host: str = "0.0.0.0"
    port: int = 8080
    api_prefix: str = ""
    cors_origins: list[str] = ["http://localhost:3000"]

    def price_per_unit(self, resource_id: str) -> int:
        """Return the configured per-unit price for a course, in wei."""
        return self.course_prices.get(resource_id, self.default_course_price)

    def validate_for_production(self) -> None:
        """Raise if insecure defaults are used in non-development environments."""
        insecure_fields = [
            field
            for field, default in _INSECURE_DEFAULTS.items()
            if getattr(self, field) == default
        ]

        if self.environment != "development" and insecure_fields:
            env_vars = ", ".join(f"EDUVERSE_{f.upper()}" for f in insecure_fields)
            raise RuntimeError(
                f"Insecure default values detected in '{self.environment}' environment. "
                f"Set these environment variables to secure values: {env_vars}."
            )

        if insecure_fields:
            warnings.warn(
                "Using insecure default keys, set EDUVERSE_API_KEY and "
                "EDUVERSE_LEDGER_API_KEY for production",
                UserWarning,
                stacklevel=2,
            )


@lru_cache
def get_settings() -> EduverseSettings:
    settings = EduverseSettings()
    settings.validate_for_production()
    return settings
