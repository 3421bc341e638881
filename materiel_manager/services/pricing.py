from __future__ import annotations

import math
from datetime import datetime

PRICING_DAY = "day"
PRICING_WEEK = "week"
PRICING_MONTH = "month"
PRICING_FLAT = "flat"
PRICING_TYPES = (PRICING_DAY, PRICING_WEEK, PRICING_MONTH, PRICING_FLAT)


def normalize_pricing_type(raw: str | None) -> str:
    value = (raw or PRICING_FLAT).strip().lower()
    if value not in PRICING_TYPES:
        raise ValueError(f"Unknown pricing type: {raw}")
    return value


def span_days(start: datetime, end: datetime) -> int:
    """Complete 24-hour periods between two timestamps plus one, at least 1."""
    return max(1, (end - start).days + 1)


def units_for_days(pricing_type: str, days: int) -> int:
    if pricing_type == PRICING_DAY:
        return days
    if pricing_type == PRICING_WEEK:
        return max(1, math.ceil(days / 7.0))
    if pricing_type == PRICING_MONTH:
        return max(1, math.ceil(days / 30.0))
    return 1


def units_for_quote(pricing_type: str, start: datetime, end: datetime) -> int:
    # Quotes count months on the calendar, settled prices on 30-day blocks.
    if pricing_type == PRICING_MONTH:
        months = (end.year - start.year) * 12 + (end.month - start.month)
        if end.day < start.day:
            months -= 1
        return max(1, months + 1)
    return units_for_days(pricing_type, span_days(start, end))


def quote_total(pricing_type: str, unit_price: float, start: datetime, end: datetime) -> float:
    return float(unit_price or 0) * units_for_quote(pricing_type, start, end)


def effective_total(record, now: datetime | None = None) -> float:
    """Price over the contracted period, or up to the actual return when known."""
    if record.PricingType == PRICING_FLAT:
        return float(record.TotalPrice or 0)
    end = record.ActualReturnDate or record.EndDate
    days = span_days(record.StartDate, end)
    return float(record.UnitPrice or 0) * units_for_days(record.PricingType, days)


def realized_total(record, now: datetime | None = None) -> float:
    """Price actually owed so far: up to the return, or up to today while open."""
    if record.PricingType == PRICING_FLAT:
        return float(record.TotalPrice or 0)
    current = now or datetime.now()
    end = record.ActualReturnDate or max(record.StartDate, current)
    days = span_days(record.StartDate, end)
    return float(record.UnitPrice or 0) * units_for_days(record.PricingType, days)


def close_priced_record(record, now: datetime | None = None) -> None:
    """Stamp the return of a Rental or MyRental and settle a unit-based price."""
    record.ActualReturnDate = now or datetime.now()
    if record.PricingType != PRICING_FLAT and float(record.UnitPrice or 0) > 0:
        record.TotalPrice = effective_total(record)


def is_overdue(end_date: datetime | None, returned_at: datetime | None, now: datetime | None = None) -> bool:
    if end_date is None or returned_at is not None:
        return False
    return (now or datetime.now()) > end_date


def days_late(end_date: datetime | None, returned_at: datetime | None, now: datetime | None = None) -> int:
    current = now or datetime.now()
    if not is_overdue(end_date, returned_at, current):
        return 0
    return (current - end_date).days
