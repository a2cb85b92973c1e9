"""Small time and money helpers shared by services and jobs."""
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite returns naive values for timestamptz columns)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_cents(amount_cents: int, currency_symbol: str = "$") -> str:
    """Format integer cents as a currency string, e.g. 123456 -> "$1,234.56"."""
    sign = "-" if amount_cents < 0 else ""
    dollars = Decimal(abs(amount_cents)) / Decimal(100)
    return f"{sign}{currency_symbol}{dollars:,.2f}"


def percent_of(part: int, whole: int) -> float:
    """Share of ``whole`` as a percentage rounded to one decimal place."""
    if not whole:
        return 0.0
    share = Decimal(part) * Decimal(100) / Decimal(whole)
    return float(share.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))
