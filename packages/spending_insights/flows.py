"""Flow classification of raw rows before categorization.

Payroll, internal transfers, investment contributions and bill payments are
not spending; they are removed from the categorization set and only their
totals are kept.

Precedence policy
-----------------
:data:`FLOW_RULES` is evaluated top to bottom and the first match wins:

1. payroll (positive amounts only)
2. transfer
3. investment
4. bill payment

Keywords are case-insensitive substring matches ("AUTOPAYMENT" is a bill
payment); only the short investment words in :data:`INVESTMENT_WORDS` must
stand alone. Anything unmatched is ``ordinary``. Because transfer runs before bill payment,
card-issuer settlement strings such as "credit card payment" count as
transfers. This ordering changes totals relative to a payment-first order and
is a deliberate policy, not incidental code order.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum
from typing import TypeAlias

from .logging_setup import get_logger
from .models import ZERO, FlowTotals, RawTransaction

_logger = get_logger("spending_insights.flows")


class FlowKind(StrEnum):
    PAYROLL = "payroll"
    TRANSFER = "transfer"
    INVESTMENT = "investment"
    BILL_PAYMENT = "bill_payment"
    ORDINARY = "ordinary"


PAYROLL_KEYWORDS: tuple[str, ...] = (
    "payroll",
    "salary",
    "direct deposit",
    "dir dep",
    "paycheck",
    "ach credit",
    "employer",
)

TRANSFER_KEYWORDS: tuple[str, ...] = (
    "transfer to",
    "transfer from",
    "online transfer",
    "internal transfer",
    "credit card payment",
    "card payment",
    "amex epayment",
    "american express ach pmt",
    "chase credit crd",
    "citi card online",
    "discover e-payment",
    "capital one crcardpmt",
    "applecard gsbank",
)

INVESTMENT_KEYWORDS: tuple[str, ...] = (
    "vanguard",
    "fidelity",
    "schwab",
    "robinhood",
    "e*trade",
    "etrade",
    "betterment",
    "wealthfront",
    "brokerage",
    "401k",
    "401(k)",
)

# Matched as whole words; as substrings they hit "MIRAGE" or "BROTHERS".
INVESTMENT_WORDS: tuple[str, ...] = (
    "ira",
    "roth",
)

BILL_PAYMENT_KEYWORDS: tuple[str, ...] = (
    "payment",
    "thank you",
    "autopay",
)


def _keyword_pattern(keywords: Sequence[str], words: Sequence[str] = ()) -> re.Pattern[str]:
    alternatives = [re.escape(k) for k in keywords]
    alternatives += [rf"(?<![a-z0-9]){re.escape(w)}(?![a-z0-9])" for w in words]
    return re.compile("|".join(alternatives), re.IGNORECASE)


_PAYROLL_RE = _keyword_pattern(PAYROLL_KEYWORDS)
_TRANSFER_RE = _keyword_pattern(TRANSFER_KEYWORDS)
_INVESTMENT_RE = _keyword_pattern(INVESTMENT_KEYWORDS, INVESTMENT_WORDS)
_BILL_PAYMENT_RE = _keyword_pattern(BILL_PAYMENT_KEYWORDS)

FlowPredicate: TypeAlias = Callable[[str, Decimal], bool]

FLOW_RULES: tuple[tuple[FlowPredicate, FlowKind], ...] = (
    (lambda d, a: a > 0 and _PAYROLL_RE.search(d) is not None, FlowKind.PAYROLL),
    (lambda d, a: _TRANSFER_RE.search(d) is not None, FlowKind.TRANSFER),
    (lambda d, a: _INVESTMENT_RE.search(d) is not None, FlowKind.INVESTMENT),
    (lambda d, a: _BILL_PAYMENT_RE.search(d) is not None, FlowKind.BILL_PAYMENT),
)


def classify_flow(description: str | None, amount: Decimal) -> FlowKind:
    """Return the flow kind for one row. Never raises."""

    text = description or ""
    for predicate, kind in FLOW_RULES:
        if predicate(text, amount):
            return kind
    return FlowKind.ORDINARY


@dataclass(frozen=True, slots=True)
class FlowSplit:
    ordinary: tuple[RawTransaction, ...]
    totals: FlowTotals


def split_flows(rows: Iterable[RawTransaction]) -> FlowSplit:
    """Separate ordinary rows from non-spend flows, summing the latter.

    Payroll is summed as the (positive) inflow; transfers, investments and bill
    payments accumulate absolute magnitudes regardless of direction.
    """

    ordinary: list[RawTransaction] = []
    payroll = transfers = investments = bill_payments = ZERO
    counts: dict[FlowKind, int] = dict.fromkeys(FlowKind, 0)

    for row in rows:
        kind = classify_flow(row.description, row.amount)
        counts[kind] += 1
        if kind is FlowKind.PAYROLL:
            payroll += row.amount
        elif kind is FlowKind.TRANSFER:
            transfers += abs(row.amount)
        elif kind is FlowKind.INVESTMENT:
            investments += abs(row.amount)
        elif kind is FlowKind.BILL_PAYMENT:
            bill_payments += abs(row.amount)
        else:
            ordinary.append(row)

    _logger.info(
        "flows:split ordinary=%d payroll=%d transfer=%d investment=%d bill_payment=%d",
        counts[FlowKind.ORDINARY],
        counts[FlowKind.PAYROLL],
        counts[FlowKind.TRANSFER],
        counts[FlowKind.INVESTMENT],
        counts[FlowKind.BILL_PAYMENT],
    )
    return FlowSplit(
        ordinary=tuple(ordinary),
        totals=FlowTotals(
            payroll=payroll,
            transfers=transfers,
            investments=investments,
            bill_payments=bill_payments,
        ),
    )
