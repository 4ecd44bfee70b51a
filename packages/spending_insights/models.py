"""Data models for ``spending_insights``.

Domain records are frozen dataclasses constructed fresh per request. Shapes
that arrive from a model reply or from a client are pydantic models so they are
validated once at the boundary and never inspected as untyped mappings.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, field_validator

ZERO = Decimal("0")

# ---------------------------------------------------------------------------
# Raw rows and line items
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RawTransaction:
    """One parsed export row: date, free-text description, signed amount.

    Negative amounts are outflows; positive amounts are inflows.
    """

    date: dt.date
    description: str
    amount: Decimal


class ItemKind(StrEnum):
    EXPENSE = "expense"
    REFUND = "refund"


@dataclass(frozen=True, slots=True)
class LineItem:
    """A normalized, categorizable transaction fact.

    ``amount`` is always a non-negative magnitude; ``kind`` records the sign of
    the original amount and never changes after construction.
    """

    id: int
    date: dt.date
    merchant: str
    amount: Decimal
    kind: ItemKind

    def to_prompt_dict(self) -> dict[str, object]:
        # Field order is fixed so prompts are deterministic.
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "merchant": self.merchant,
            "amount": float(self.amount),
            "kind": self.kind.value,
        }


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class FlowTotals:
    """Totals for rows removed from categorization by the flow classifier."""

    payroll: Decimal = ZERO
    transfers: Decimal = ZERO
    investments: Decimal = ZERO
    bill_payments: Decimal = ZERO


@dataclass(frozen=True, slots=True)
class MerchantTotal:
    merchant: str
    amount: Decimal


@dataclass(frozen=True, slots=True)
class CategoryAggregate:
    """Derived per-category breakdown; always recomputed, never persisted."""

    category: str
    total: Decimal
    txn_ids: tuple[int, ...]
    merchants: tuple[MerchantTotal, ...]


@dataclass(frozen=True, slots=True)
class RequestSummary:
    """Request-level figures, all derived sums.

    ``net_spend = gross_spend - refunds_total`` and
    ``net_cash_flow = payroll_total - net_spend``.
    """

    transaction_count: int
    gross_spend: Decimal
    refunds_total: Decimal
    net_spend: Decimal
    bill_payments_total: Decimal
    payroll_total: Decimal
    transfers_total: Decimal
    investments_total: Decimal
    net_cash_flow: Decimal
    period_start: dt.date | None = None
    period_end: dt.date | None = None


@dataclass(frozen=True, slots=True)
class Aggregate:
    categories: tuple[CategoryAggregate, ...]
    summary: RequestSummary

    def category(self, label: str) -> CategoryAggregate | None:
        for c in self.categories:
            if c.category == label:
                return c
        return None


# ---------------------------------------------------------------------------
# Model reply DTOs
# ---------------------------------------------------------------------------


class Insights(BaseModel):
    """Narrative insights produced from the aggregate summary.

    Every field is required; a reply missing any of them is rejected rather
    than passed through partially.
    """

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    highlights: list[str]
    topSpendingCategory: str
    topMerchant: str
    concentrationNotes: list[str]
    optimizationIdeas: list[str]
    anomalies: list[str]

    @field_validator("highlights", "concentrationNotes", "optimizationIdeas", "anomalies")
    @classmethod
    def _drop_blank_lines(cls, v: list[str]) -> list[str]:
        return [s.strip() for s in v if s.strip()]


@dataclass(frozen=True, slots=True)
class AnalysisResult:
    """Everything computed for one upload, ready to render."""

    filename: str
    items: tuple[LineItem, ...]
    assignment: Mapping[int, str]
    aggregate: Aggregate
    insights: Insights
    warnings: Sequence[str] = field(default_factory=tuple)

    @property
    def transaction_count(self) -> int:
        return len(self.items)
