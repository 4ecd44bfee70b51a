"""Public API and request orchestration for ``spending_insights``.

Data flow for one analysis::

    rows ─► filter_to_month ─► split_flows ─► build_line_items
         ─► CategorizationReconciler.reconcile ─► aggregate
         ─► build_insights_summary ─► InsightsGenerator.generate

Functions named ``*_response`` are the outer boundary: they never raise and
render failures as ``{"ok": False, "error": {"message", "hint"}}``. The other
functions raise the typed errors from :mod:`spending_insights.errors`.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Iterable, Mapping, Sequence
from decimal import Decimal
from os import PathLike
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .aggregate import build_insights_summary, money
from .aggregate import aggregate as build_aggregate
from .categories import REFUNDS
from .config import Settings, load_settings
from .errors import InputError, error_hint
from .flows import split_flows
from .gateway import LLMGateway, create_gateway
from .ingest import filename_label, filter_to_month, merge_transactions, read_transactions_file
from .insights import InsightsGenerator
from .logging_setup import get_logger
from .models import (
    ZERO,
    Aggregate,
    AnalysisResult,
    CategoryAggregate,
    Insights,
    MerchantTotal,
    RawTransaction,
    RequestSummary,
)
from .normalize import build_line_items
from .reconcile import CategorizationReconciler
from .story_review import StoryReviewer, failure_payload

_logger = get_logger("spending_insights.api")


# ---- Analysis ----------------------------------------------------------------


def analyze_transactions(
    rows: Iterable[RawTransaction],
    *,
    settings: Settings,
    gateway: LLMGateway | None = None,
    filename: str = "",
    month: str | None = None,
) -> AnalysisResult:
    """Categorize, aggregate and narrate one set of raw rows.

    ``rows`` should already be merged and ordered (see
    :func:`~spending_insights.ingest.merge_transactions`); line item ids follow
    that order.
    """

    selected = filter_to_month(rows, month)
    split = split_flows(selected)
    normalized = build_line_items(split.ordinary, max_items=settings.max_items)
    if not normalized.items:
        raise InputError("No spending transactions to analyze after excluding payroll and payments")

    gateway = gateway or create_gateway(settings)
    items = normalized.items
    assignment = CategorizationReconciler(gateway, settings).reconcile(items)
    agg = build_aggregate(items, assignment, split.totals, top_merchants=settings.top_merchants)
    insights = InsightsGenerator(gateway, settings).generate(build_insights_summary(agg, items))

    warnings: list[str] = []
    if normalized.truncated:
        warnings.append(
            f"Only the first {settings.max_items} transactions were analyzed; "
            f"{normalized.truncated} were skipped."
        )
    _logger.info(
        "analyze:done filename=%r items=%d categories=%d truncated=%d",
        filename,
        len(items),
        len(agg.categories),
        normalized.truncated,
    )
    return AnalysisResult(
        filename=filename,
        items=items,
        assignment=assignment,
        aggregate=agg,
        insights=insights,
        warnings=tuple(warnings),
    )


def analyze_csv_files(
    paths: Sequence[str | PathLike[str]],
    *,
    settings: Settings,
    gateway: LLMGateway | None = None,
    month: str | None = None,
) -> AnalysisResult:
    """Read, merge and analyze one or more CSV exports."""

    if not paths:
        raise InputError("No files uploaded")
    rows = merge_transactions(read_transactions_file(p) for p in paths)
    return analyze_transactions(
        rows,
        settings=settings,
        gateway=gateway,
        filename=filename_label(Path(p).name for p in paths),
        month=month,
    )


def _iso(value: dt.date | None) -> str | None:
    return value.isoformat() if value else None


def aggregate_block(agg: Aggregate) -> dict[str, Any]:
    """Render an aggregate in the client-facing camelCase shape."""

    s = agg.summary
    return {
        "categories": [
            {
                "category": c.category,
                "total": float(c.total),
                "txnIds": list(c.txn_ids),
                "merchants": [
                    {"merchant": m.merchant, "amount": float(m.amount)} for m in c.merchants
                ],
            }
            for c in agg.categories
        ],
        "totalExpenses": float(s.net_spend),
        "grossSpend": float(s.gross_spend),
        "refundsTotal": float(s.refunds_total),
        "billPaymentsTotal": float(s.bill_payments_total),
        "payrollTotal": float(s.payroll_total),
        "transfersTotal": float(s.transfers_total),
        "investmentsTotal": float(s.investments_total),
        "netCashFlow": float(s.net_cash_flow),
        "periodStart": _iso(s.period_start),
        "periodEnd": _iso(s.period_end),
    }


def analysis_response(result: AnalysisResult) -> dict[str, Any]:
    ai = aggregate_block(result.aggregate)
    ai["insights"] = result.insights.model_dump()
    return {
        "ok": True,
        "filename": result.filename,
        "transactionCount": result.transaction_count,
        "ai": ai,
        "warnings": list(result.warnings),
    }


def failure_response(exc: BaseException) -> dict[str, Any]:
    return {"ok": False, "error": {"message": str(exc), "hint": error_hint(exc)}}


def analyze_response(
    paths: Sequence[str | PathLike[str]],
    *,
    settings: Settings | None = None,
    gateway: LLMGateway | None = None,
    month: str | None = None,
) -> dict[str, Any]:
    """Boundary wrapper around :func:`analyze_csv_files`. Never raises."""

    try:
        settings = settings or load_settings()
        result = analyze_csv_files(paths, settings=settings, gateway=gateway, month=month)
    except Exception as e:  # noqa: BLE001 - boundary converts every failure
        _logger.error("analyze:failed error=%s message=%s", e.__class__.__name__, e)
        return failure_response(e)
    return analysis_response(result)


# ---- Insights regeneration ---------------------------------------------------


class _MerchantIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    merchant: str
    amount: Decimal


class _CategoryIn(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    category: str = Field(min_length=1)
    total: Decimal
    txnIds: list[int] = Field(default_factory=list)
    merchants: list[_MerchantIn] = Field(default_factory=list)


class RegenerateInsightsRequest(BaseModel):
    """A client-held aggregate block (``ai`` from an analysis response).

    Spend figures are recomputed from ``categories``; only flow totals and the
    period, which cannot be derived from categories, are taken as sent.
    """

    model_config = ConfigDict(extra="ignore")

    categories: list[_CategoryIn]
    billPaymentsTotal: Decimal = ZERO
    payrollTotal: Decimal = ZERO
    transfersTotal: Decimal = ZERO
    investmentsTotal: Decimal = ZERO
    periodStart: dt.date | None = None
    periodEnd: dt.date | None = None

    def to_aggregate(self) -> Aggregate:
        categories = sorted(
            (
                CategoryAggregate(
                    category=c.category,
                    total=money(c.total),
                    txn_ids=tuple(c.txnIds),
                    merchants=tuple(
                        MerchantTotal(merchant=m.merchant, amount=money(m.amount))
                        for m in c.merchants
                    ),
                )
                for c in self.categories
            ),
            key=lambda c: c.total,
            reverse=True,
        )
        refunds = sum((c.total for c in categories if c.category == REFUNDS), ZERO)
        gross = sum((c.total for c in categories if c.category != REFUNDS), ZERO)
        net = gross - refunds
        txn_ids = {tid for c in categories for tid in c.txn_ids}
        summary = RequestSummary(
            transaction_count=len(txn_ids),
            gross_spend=money(gross),
            refunds_total=money(refunds),
            net_spend=money(net),
            bill_payments_total=money(self.billPaymentsTotal),
            payroll_total=money(self.payrollTotal),
            transfers_total=money(self.transfersTotal),
            investments_total=money(self.investmentsTotal),
            net_cash_flow=money(self.payrollTotal - net),
            period_start=self.periodStart,
            period_end=self.periodEnd,
        )
        return Aggregate(categories=tuple(categories), summary=summary)


def regenerate_insights(
    payload: Mapping[str, Any],
    *,
    settings: Settings,
    gateway: LLMGateway | None = None,
) -> Insights:
    """Produce fresh insights for a client-held (possibly edited) aggregate.

    Accepts either the ``ai`` block or a whole analysis response containing it.
    """

    block = payload.get("ai") if isinstance(payload.get("ai"), Mapping) else payload
    request = RegenerateInsightsRequest.model_validate(block)
    agg = request.to_aggregate()
    gateway = gateway or create_gateway(settings)
    return InsightsGenerator(gateway, settings).generate(build_insights_summary(agg))


def regenerate_insights_response(
    payload: Mapping[str, Any],
    *,
    settings: Settings | None = None,
    gateway: LLMGateway | None = None,
) -> dict[str, Any]:
    """Boundary wrapper around :func:`regenerate_insights`. Never raises."""

    try:
        settings = settings or load_settings()
        insights = regenerate_insights(payload, settings=settings, gateway=gateway)
    except Exception as e:  # noqa: BLE001 - boundary converts every failure
        _logger.error("regenerate:failed error=%s message=%s", e.__class__.__name__, e)
        return failure_response(e)
    return {"ok": True, "insights": insights.model_dump()}


# ---- Requirement review ------------------------------------------------------


def review_story(
    story: str,
    *,
    context: str = "",
    acceptance_criteria: str = "",
    settings: Settings | None = None,
    gateway: LLMGateway | None = None,
) -> dict[str, Any]:
    """Review a user story. Always returns a review-shaped dict."""

    if not (story or "").strip():
        return StoryReviewer.story_required()
    try:
        settings = settings or load_settings()
        gateway = gateway or create_gateway(settings)
    except Exception as e:  # noqa: BLE001 - reported in the payload
        _logger.error("review:setup_failed error=%s", e.__class__.__name__)
        return failure_payload(e)
    return StoryReviewer(gateway, settings).review(
        story, context=context, acceptance_criteria=acceptance_criteria
    )
