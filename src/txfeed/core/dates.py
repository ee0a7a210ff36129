#!/usr/bin/env python3
"""
Date Helpers

Parsing for the API's ISO timestamps and the date-section grouping used when
a feed is listed ("Today", "Yesterday", "Mar 4").
"""

from collections.abc import Iterable
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Transaction


def parse_api_date(value: str | date | datetime) -> date:
    """
    Parse a date as sent by the API.

    Accepts plain ``YYYY-MM-DD`` strings as well as full ISO timestamps,
    including the trailing ``Z`` that JavaScript backends emit.

    Args:
        value: Date string, date, or datetime

    Returns:
        Calendar date

    Raises:
        ValueError: If the string is not an ISO date or timestamp
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = value.strip()
    if len(text) == 10:
        return date.fromisoformat(text)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text).date()


def parse_api_timestamp(value: str | None) -> datetime | None:
    """Parse an optional ISO timestamp (``createdAt``/``updatedAt``)."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def date_section_label(day: date, today: date | None = None) -> str:
    """
    Get the section header for a transaction date.

    Args:
        day: Transaction date
        today: Reference date (default: today)

    Returns:
        "Today", "Yesterday", "Mar 4", or "Mar 4, 2023" for other years
    """
    if today is None:
        today = date.today()

    if day == today:
        return "Today"
    if day == today - timedelta(days=1):
        return "Yesterday"

    label = f"{day.strftime('%b')} {day.day}"
    if day.year != today.year:
        label = f"{label}, {day.year}"
    return label


def group_by_date(
    transactions: Iterable["Transaction"], today: date | None = None
) -> dict[str, list["Transaction"]]:
    """
    Group transactions into date sections, preserving feed order.

    Args:
        transactions: Transactions in display order
        today: Reference date (default: today)

    Returns:
        Ordered mapping of section label to the transactions in it
    """
    grouped: dict[str, list["Transaction"]] = {}
    for transaction in transactions:
        key = date_section_label(transaction.date, today)
        grouped.setdefault(key, []).append(transaction)
    return grouped
