"""Ordinary-flow rows → :class:`~spending_insights.models.LineItem`.

Sign rule: a negative original amount is an ``expense`` of ``|amount|``; a
positive amount is a ``refund`` of ``amount``. Amounts are rounded to cents
first, so every later sum is cent-exact; rows that round to zero are dropped.
Ids are a dense sequence starting at 1 in input order (the caller supplies
rows already sorted by date then description).

Truncation policy: at most ``max_items`` line items are produced per request.
Rows past the cap are dropped silently (logged at WARNING) rather than failing
the request.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from .aggregate import money
from .logging_setup import get_logger
from .models import ItemKind, LineItem, RawTransaction

_logger = get_logger("spending_insights.normalize")

MERCHANT_MAX_LEN = 60

_WS_RE = re.compile(r"\s+")
_STORE_NUMBER_RE = re.compile(r"\s+#\d+.*$")
_LONG_DIGITS_RE = re.compile(r"\s+\d{4,}.*$")


def normalize_merchant(description: str | None) -> str:
    """Return a display merchant label derived from a raw description.

    >>> normalize_merchant("SHELL OIL 57444  SAN JOSE")
    'SHELL OIL'
    >>> normalize_merchant("TARGET   #1234 CUPERTINO")
    'TARGET'
    """

    if description is None:
        return "Unknown"
    s = _WS_RE.sub(" ", description.strip())
    if not s:
        return "Unknown"
    s = _STORE_NUMBER_RE.sub("", s)
    s = _LONG_DIGITS_RE.sub("", s)
    return s[:MERCHANT_MAX_LEN] or "Unknown"


@dataclass(frozen=True, slots=True)
class NormalizedItems:
    items: tuple[LineItem, ...]
    truncated: int


def build_line_items(rows: Iterable[RawTransaction], *, max_items: int) -> NormalizedItems:
    """Convert ordinary rows into line items with ids ``1..N``.

    Parameters
    ----------
    rows:
        Ordinary-flow rows in their final (date, description) order.
    max_items:
        Silent truncation cap. Must be positive.
    """

    if max_items <= 0:
        raise ValueError("max_items must be a positive integer")

    items: list[LineItem] = []
    dropped = 0
    for row in rows:
        amount = money(row.amount)
        if amount == 0:
            continue
        if len(items) >= max_items:
            dropped += 1
            continue
        if amount < 0:
            kind, value = ItemKind.EXPENSE, -amount
        else:
            kind, value = ItemKind.REFUND, amount
        items.append(
            LineItem(
                id=len(items) + 1,
                date=row.date,
                merchant=normalize_merchant(row.description),
                amount=value,
                kind=kind,
            )
        )

    if dropped:
        _logger.warning(
            "normalize:truncated kept=%d dropped=%d max_items=%d",
            len(items),
            dropped,
            max_items,
        )
    return NormalizedItems(items=tuple(items), truncated=dropped)
