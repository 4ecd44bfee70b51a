# ruff: noqa: E402, I001
from __future__ import annotations

import datetime as dt
import json
import sys
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest

_ROOT = Path(__file__).resolve().parents[1]
_PKG_DIR = _ROOT / "packages"
sys.path[:0] = [p for p in [str(_PKG_DIR), str(_ROOT)] if p not in sys.path]

from spending_insights.api import (
    analysis_response,
    analyze_response,
    analyze_transactions,
    regenerate_insights,
    regenerate_insights_response,
    review_story,
)
from spending_insights.config import Settings
from spending_insights.errors import InputError
from spending_insights.models import RawTransaction
from spending_insights.prompting import (
    CATEGORIZE_SYSTEM,
    INSIGHTS_SYSTEM,
    SUMMARY_BEGIN,
    SUMMARY_END,
)

from tests.helpers.llm_stub import ScriptedGateway, insights_json, label_by

_LABELS = {"NETFLIX": "Subscriptions", "AMAZON": "Shopping", "UBER TRIP": "Transport"}

_CSV = (
    "Date,Description,Amount\n"
    "2024-01-03,NETFLIX,-15.00\n"
    "2024-01-05,AMAZON,5.00\n"
    "2024-01-09,UBER TRIP,-40.00\n"
    "2024-01-15,ACME PAYROLL,1500.00\n"
    "2024-01-20,CHASE CREDIT CARD PAYMENT,-200.00\n"
    "2024-02-02,NETFLIX,-15.00\n"
)


def _respond(system: str, user: str) -> str:
    if system == CATEGORIZE_SYSTEM:
        return label_by(lambda item: _LABELS.get(item["merchant"], "Other"))(system, user)
    if system == INSIGHTS_SYSTEM:
        return insights_json()
    raise AssertionError(f"unexpected system prompt: {system[:40]!r}")


def _gateway() -> ScriptedGateway:
    return ScriptedGateway(respond=_respond)


def _settings(**overrides: Any) -> Settings:
    return Settings(api_key="k", **overrides)


def _embedded_summary(user: str) -> dict[str, Any]:
    return json.loads(user[user.index(SUMMARY_BEGIN) + len(SUMMARY_BEGIN) : user.index(SUMMARY_END)])


def _write_csv(tmp_path: Path, name: str = "jan.csv", text: str = _CSV) -> Path:
    p = tmp_path / name
    p.write_text(text, encoding="utf-8")
    return p


def test_analyze_response_end_to_end(tmp_path: Path) -> None:
    gw = _gateway()

    out = analyze_response(
        [_write_csv(tmp_path)], settings=_settings(), gateway=gw, month="2024-01"
    )

    assert out["ok"] is True
    assert out["filename"] == "jan.csv"
    assert out["transactionCount"] == 3
    ai = out["ai"]
    assert [(c["category"], c["total"]) for c in ai["categories"]] == [
        ("Transport", 40.0),
        ("Subscriptions", 15.0),
        ("Refunds", 5.0),
    ]
    assert ai["grossSpend"] == 55.0
    assert ai["refundsTotal"] == 5.0
    assert ai["totalExpenses"] == 50.0
    assert ai["payrollTotal"] == 1500.0
    assert ai["transfersTotal"] == 200.0
    assert ai["billPaymentsTotal"] == 0.0
    assert ai["netCashFlow"] == 1450.0
    assert (ai["periodStart"], ai["periodEnd"]) == ("2024-01-03", "2024-01-09")
    assert ai["insights"]["topSpendingCategory"] == "Transport"
    assert out["warnings"] == []

    # One categorization call plus one insights call; the summary carries no line items.
    assert [c["system"] for c in gw.calls] == [CATEGORIZE_SYSTEM, INSIGHTS_SYSTEM]
    summary = _embedded_summary(gw.calls[1]["user"])
    assert summary["grossSpend"] == 55.0
    assert "txnIds" not in json.dumps(summary)


def test_analyze_transactions_records_truncation() -> None:
    rows = [
        RawTransaction(dt.date(2024, 1, i + 1), f"SHOP {i}", Decimal("-1.00")) for i in range(5)
    ]

    result = analyze_transactions(rows, settings=_settings(max_items=2), gateway=_gateway())

    assert result.transaction_count == 2
    assert result.warnings and "3 were skipped" in result.warnings[0]
    assert analysis_response(result)["warnings"] == list(result.warnings)


def test_analyze_transactions_requires_spending_rows() -> None:
    rows = [RawTransaction(dt.date(2024, 1, 1), "ACME PAYROLL", Decimal("1500"))]
    gw = _gateway()

    with pytest.raises(InputError):
        analyze_transactions(rows, settings=_settings(), gateway=gw)

    assert gw.calls == []


def test_analyze_response_reports_reconciliation_failure(tmp_path: Path) -> None:
    gw = ScriptedGateway(['{"categories": [{"category": "Dining", "txnIds": [1, 42]}]}'])

    out = analyze_response([_write_csv(tmp_path)], settings=_settings(), gateway=gw)

    assert out["ok"] is False
    assert "42" in out["error"]["message"]
    assert "exactly once" in out["error"]["hint"]


def test_analyze_response_without_api_key_fails_cleanly(tmp_path: Path) -> None:
    out = analyze_response([_write_csv(tmp_path)])

    assert out["ok"] is False
    assert "ANTHROPIC_API_KEY" in out["error"]["message"]


def test_analyze_response_with_bad_csv(tmp_path: Path) -> None:
    p = _write_csv(tmp_path, "bad.csv", "Foo,Bar\n1,2\n")

    out = analyze_response([p], settings=_settings(), gateway=_gateway())

    assert out["ok"] is False
    assert "missing date column" in out["error"]["message"]


# ---- Regenerate insights ---------------------------------------------------------


def test_regenerate_insights_recomputes_spend_from_categories(tmp_path: Path) -> None:
    first = analyze_response(
        [_write_csv(tmp_path)], settings=_settings(), gateway=_gateway(), month="2024-01"
    )
    first["ai"]["grossSpend"] = 999.0
    gw = ScriptedGateway([insights_json(topMerchant="NETFLIX")])

    insights = regenerate_insights(first, settings=_settings(), gateway=gw)

    assert insights.topMerchant == "NETFLIX"
    summary = _embedded_summary(gw.calls[0]["user"])
    assert summary["grossSpend"] == 55.0
    assert summary["refundsTotal"] == 5.0
    assert summary["payrollTotal"] == 1500.0
    assert summary["periodStart"] == "2024-01-03"


def test_regenerate_insights_response_rejects_bad_payload() -> None:
    out = regenerate_insights_response({"nope": []}, settings=_settings(), gateway=_gateway())

    assert out["ok"] is False
    assert out["error"]["message"]


# ---- Review ------------------------------------------------------------------------


def test_review_story_blank_needs_no_credentials() -> None:
    out = review_story("")
    assert out["rating"]["one_line_summary"] == "Story is required."


def test_review_story_without_credentials_returns_failure_payload() -> None:
    out = review_story("As a user I want to export my data")

    assert out["rating"]["label"] == "Not Passed (Unusable)"
    assert "ANTHROPIC_API_KEY" in out["error"]["message"]
