"""Pure license pricing and renewal helpers."""

from datetime import datetime, timedelta
from typing import Optional

from eduverse_engine.common.exceptions import InvalidDurationError
from eduverse_engine.licensing.models import License, LicensePrice

BPS_DENOMINATOR = 10_000
DEFAULT_RENEWAL_UNITS = 3
LAPSED_AFTER = timedelta(days=30)


def validate_duration(duration_units: int, min_units: int = 1, max_units: int = 12) -> int:
    if isinstance(duration_units, bool) or not isinstance(duration_units, int):
        raise InvalidDurationError(f"Duration must be an integer, got {duration_units!r}")
    if not min_units <= duration_units <= max_units:
        raise InvalidDurationError(
            f"Duration must be between {min_units} and {max_units} months, got {duration_units}"
        )
    return duration_units


def calculate_license_price(
    resource_id: str,
    price_per_unit: int,
    duration_units: int,
    fee_bps: int = 200,
    min_units: int = 1,
    max_units: int = 12,
) -> LicensePrice:
    """Total price for ``duration_units`` months, split into platform fee and creator revenue."""
    validate_duration(duration_units, min_units, max_units)
    if price_per_unit < 0:
        raise ValueError("price_per_unit must be non-negative")
    total = price_per_unit * duration_units
    fee = total * fee_bps // BPS_DENOMINATOR
    return LicensePrice(
        resource_id=resource_id,
        price_per_unit=price_per_unit,
        duration_units=duration_units,
        total_price=total,
        platform_fee=fee,
        creator_revenue=total - fee,
    )


def extended_expiry(current: Optional[datetime], now: datetime, duration_units: int, unit_days: int = 30) -> datetime:
    """New expiry for a renewal: extends from the later of now and the current expiry."""
    start = now if current is None else max(now, current)
    return start + timedelta(days=unit_days * duration_units)


def recommended_renewal_duration(
    license: Optional[License],
    now: datetime,
    min_units: int = 1,
    max_units: int = 12,
) -> int:
    """3 months for new or long-lapsed licenses, otherwise the last term again."""
    if license is None:
        return DEFAULT_RENEWAL_UNITS
    if now - license.expires_at > LAPSED_AFTER:
        return DEFAULT_RENEWAL_UNITS
    return min(max(license.duration_units, min_units), max_units)


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'s' if count > 1 else ''}"


def format_license_expiry(expires_at: datetime, now: Optional[datetime] = None, style: str = "full") -> str:
    """Render an expiry for display.

    ``full``: ``"January 1, 2025 at 12:00 AM"``; ``short``: ``"Jan 1, 2025"``;
    ``relative``: ``"in 2 days"`` / ``"3 hours ago"``.
    """
    if style == "full":
        hour = expires_at.strftime("%I").lstrip("0") or "12"
        return f"{expires_at.strftime('%B')} {expires_at.day}, {expires_at.year} at {hour}:{expires_at.strftime('%M %p')}"
    if style == "short":
        return f"{expires_at.strftime('%b')} {expires_at.day}, {expires_at.year}"
    if style != "relative":
        raise ValueError(f"Unknown expiry format: {style}")
    if now is None:
        raise ValueError("relative format needs 'now'")

    diff = (expires_at - now).total_seconds()
    seconds = int(abs(diff))
    minutes, hours, days = seconds // 60, seconds // 3600, seconds // 86400
    months = days // 30
    if months:
        text = _plural(months, "month")
    elif days:
        text = _plural(days, "day")
    elif hours:
        text = _plural(hours, "hour")
    elif minutes:
        text = _plural(minutes, "minute")
    else:
        text = _plural(seconds, "second")
    return f"in {text}" if diff > 0 else f"{text} ago"
