"""Deterministic aggregation from line items and a category assignment.

Every figure here is recomputed from ground truth; numbers the model may have
produced are never read. Money stays in :class:`~decimal.Decimal` and is
quantized to cents (ROUND_HALF_UP) only when a total is materialized.

Ordering rules
--------------
- Categories: total descending; equal totals keep first appearance by id.
- Merchants within a category: amount descending, top ``top_merchants``;
  equal amounts keep first appearance by id.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType
from typing import Any

from .categories import REFUNDS, canonical_category, is_vocabulary_label, normalize_name, validate_name
from .models import (
    ZERO,
    Aggregate,
    CategoryAggregate,
    FlowTotals,
    ItemKind,
    LineItem,
    MerchantTotal,
    RequestSummary,
)

CENT = Decimal("0.01")
TENTH = Decimal("0.1")
HUNDRED = Decimal("100")


def money(value: Decimal) -> Decimal:
    """Quantize ``value`` to cents."""

    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(part: Decimal, whole: Decimal) -> Decimal:
    """``part`` as a percentage of ``whole`` with one decimal; ``0.0`` when ``whole <= 0``."""

    if whole <= 0:
        return Decimal("0.0")
    return (part * HUNDRED / whole).quantize(TENTH, rounding=ROUND_HALF_UP)


def aggregate(
    items: Sequence[LineItem],
    assignment: Mapping[int, str],
    flow_totals: FlowTotals | None = None,
    *,
    top_merchants: int = 5,
) -> Aggregate:
    """Build category breakdowns and request summary figures.

    Raises ``ValueError`` when ``assignment`` does not cover exactly the ids
    of ``items``.
    """

    flow_totals = flow_totals or FlowTotals()
    item_ids = {it.id for it in items}
    missing = sorted(item_ids - assignment.keys())
    if missing:
        raise ValueError(f"assignment is missing ids {missing}")
    unknown = sorted(assignment.keys() - item_ids)
    if unknown:
        raise ValueError(f"assignment references unknown ids {unknown}")

    members: dict[str, list[LineItem]] = {}
    for it in sorted(items, key=lambda i: i.id):
        members.setdefault(assignment[it.id], []).append(it)

    categories: list[CategoryAggregate] = []
    for label, group in members.items():
        merchant_totals: dict[str, Decimal] = {}
        for it in group:
            merchant_totals[it.merchant] = merchant_totals.get(it.merchant, ZERO) + it.amount
        ranked = sorted(merchant_totals.items(), key=lambda kv: kv[1], reverse=True)
        categories.append(
            CategoryAggregate(
                category=label,
                total=money(sum((it.amount for it in group), ZERO)),
                txn_ids=tuple(it.id for it in group),
                merchants=tuple(
                    MerchantTotal(merchant=m, amount=money(a)) for m, a in ranked[:top_merchants]
                ),
            )
        )
    # sort() is stable, so ties keep first-appearance order.
    categories.sort(key=lambda c: c.total, reverse=True)

    gross = sum((it.amount for it in items if it.kind is ItemKind.EXPENSE), ZERO)
    refunds = sum((it.amount for it in items if it.kind is ItemKind.REFUND), ZERO)
    net = gross - refunds
    dates = [it.date for it in items]

    summary = RequestSummary(
        transaction_count=len(items),
        gross_spend=money(gross),
        refunds_total=money(refunds),
        net_spend=money(net),
        bill_payments_total=money(flow_totals.bill_payments),
        payroll_total=money(flow_totals.payroll),
        transfers_total=money(flow_totals.transfers),
        investments_total=money(flow_totals.investments),
        net_cash_flow=money(flow_totals.payroll - net),
        period_start=min(dates) if dates else None,
        period_end=max(dates) if dates else None,
    )
    return Aggregate(categories=tuple(categories), summary=summary)


# ---- Insights summary --------------------------------------------------------


@dataclass(frozen=True, slots=True)
class MerchantStat:
    merchant: str
    total: Decimal
    count: int


def expense_merchant_stats(items: Iterable[LineItem]) -> list[MerchantStat]:
    """Expense totals and counts per merchant, largest total first."""

    totals: dict[str, Decimal] = {}
    counts: dict[str, int] = {}
    for it in sorted(items, key=lambda i: i.id):
        if it.kind is not ItemKind.EXPENSE:
            continue
        totals[it.merchant] = totals.get(it.merchant, ZERO) + it.amount
        counts[it.merchant] = counts.get(it.merchant, 0) + 1
    ranked = sorted(totals.items(), key=lambda kv: kv[1], reverse=True)
    return [MerchantStat(merchant=m, total=money(t), count=counts[m]) for m, t in ranked]


def build_insights_summary(
    agg: Aggregate,
    items: Sequence[LineItem] | None = None,
    *,
    limit: int = 10,
) -> dict[str, Any]:
    """Return the JSON-ready summary handed to the insights call.

    Only aggregated figures are included, never individual transactions;
    ``items`` is read for merchant totals and visit counts. When it is omitted
    (e.g., regenerating from a client-held aggregate), top merchants are
    derived from the per-category merchant lists and carry no counts.
    """

    s = agg.summary
    gross = s.gross_spend

    spend_categories = [c for c in agg.categories if c.category != REFUNDS and c.total > 0]
    top_categories = [
        {
            "category": c.category,
            "total": float(c.total),
            "percentageOfGrossSpend": float(percent_of(c.total, gross)),
            "topMerchants": [
                {"merchant": m.merchant, "amount": float(m.amount)} for m in c.merchants
            ],
        }
        for c in spend_categories[:limit]
    ]
    top3 = sum((c.total for c in spend_categories[:3]), ZERO)

    if items is None:
        derived: dict[str, Decimal] = {}
        for c in spend_categories:
            for m in c.merchants:
                derived[m.merchant] = derived.get(m.merchant, ZERO) + m.amount
        ranked = sorted(derived.items(), key=lambda kv: kv[1], reverse=True)
        top_merchants: list[dict[str, Any]] = [
            {"merchant": m, "total": float(money(t))} for m, t in ranked[:limit]
        ]
    else:
        top_merchants = [
            {"merchant": m.merchant, "total": float(m.total), "count": m.count}
            for m in expense_merchant_stats(items)[:limit]
        ]

    return {
        "periodStart": s.period_start.isoformat() if s.period_start else None,
        "periodEnd": s.period_end.isoformat() if s.period_end else None,
        "transactionCount": s.transaction_count,
        "grossSpend": float(s.gross_spend),
        "refundsTotal": float(s.refunds_total),
        "netSpend": float(s.net_spend),
        "billPaymentsTotal": float(s.bill_payments_total),
        "payrollTotal": float(s.payroll_total),
        "transfersTotal": float(s.transfers_total),
        "investmentsTotal": float(s.investments_total),
        "netCashFlow": float(s.net_cash_flow),
        "topMerchants": top_merchants,
        "topCategories": top_categories,
        "top3CategoriesTotal": float(money(top3)),
        "top3CategoriesPctOfGrossSpend": float(percent_of(top3, gross)),
    }


# ---- Client-side reassignment (pure reducer) ---------------------------------


@dataclass(frozen=True, slots=True)
class AnalysisSnapshot:
    """Immutable view of one analysis that reassignment operates on."""

    items: tuple[LineItem, ...]
    assignment: Mapping[int, str]
    flow_totals: FlowTotals
    aggregate: Aggregate
    top_merchants: int = 5


def make_snapshot(
    items: Sequence[LineItem],
    assignment: Mapping[int, str],
    flow_totals: FlowTotals | None = None,
    *,
    top_merchants: int = 5,
) -> AnalysisSnapshot:
    frozen = MappingProxyType(dict(assignment))
    flow_totals = flow_totals or FlowTotals()
    return AnalysisSnapshot(
        items=tuple(items),
        assignment=frozen,
        flow_totals=flow_totals,
        aggregate=aggregate(items, frozen, flow_totals, top_merchants=top_merchants),
        top_merchants=top_merchants,
    )


def move_merchant(
    snapshot: AnalysisSnapshot, merchant: str, from_category: str, to_category: str
) -> AnalysisSnapshot:
    """Return a new snapshot with ``merchant`` moved between categories.

    Only expense items currently in ``from_category`` move; refund items stay
    in ``Refunds``. ``to_category`` may be a vocabulary label (matched
    case-insensitively) or a caller-defined label. The input snapshot is never
    modified; when nothing matches it is returned as-is.
    """

    check = validate_name(to_category)
    if not check.ok:
        raise ValueError(f"Invalid category name {to_category!r}: {check.reason}")
    target = (
        canonical_category(to_category)
        if is_vocabulary_label(to_category)
        else normalize_name(to_category)
    )
    if target == REFUNDS:
        raise ValueError("Refunds is reserved for refund transactions")

    moved = [
        it.id
        for it in snapshot.items
        if it.kind is ItemKind.EXPENSE
        and it.merchant == merchant
        and snapshot.assignment.get(it.id) == from_category
    ]
    if not moved or target == from_category:
        return snapshot

    updated = dict(snapshot.assignment)
    for tid in moved:
        updated[tid] = target
    return make_snapshot(
        snapshot.items, updated, snapshot.flow_totals, top_merchants=snapshot.top_merchants
    )
