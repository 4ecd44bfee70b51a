# ruff: noqa: E402, I001
from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
from typer.testing import CliRunner

_ROOT = Path(__file__).resolve().parents[1]
_PKG_DIR = _ROOT / "packages"
sys.path[:0] = [p for p in [str(_PKG_DIR), str(_ROOT)] if p not in sys.path]

import spending_insights.api as api_mod
import spending_insights.cli as cli_mod
from spending_insights.prompting import CATEGORIZE_SYSTEM

from tests.helpers.llm_stub import ScriptedGateway, insights_json, label_by

runner = CliRunner()


@pytest.fixture(autouse=True)
def _quiet_cli(monkeypatch: pytest.MonkeyPatch) -> None:
    # The root callback would attach a stderr handler to the package logger for
    # the rest of the session.
    monkeypatch.setattr(cli_mod, "configure_logging", lambda *a, **k: None)


def _stub_gateway(monkeypatch: pytest.MonkeyPatch) -> None:
    def respond(system: str, user: str) -> str:
        if system == CATEGORIZE_SYSTEM:
            return label_by(lambda _item: "Dining")(system, user)
        return insights_json(topSpendingCategory="Dining")

    monkeypatch.setenv("ANTHROPIC_API_KEY", "k")
    monkeypatch.setattr(api_mod, "create_gateway", lambda settings: ScriptedGateway(respond=respond))


def test_analyze_json_output(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _stub_gateway(monkeypatch)
    csv_path = tmp_path / "jan.csv"
    csv_path.write_text("Date,Description,Amount\n2024-01-02,CAFE,-4.50\n", encoding="utf-8")

    result = runner.invoke(cli_mod.app, ["analyze", str(csv_path), "--json"])

    assert result.exit_code == 0, result.output
    body = json.loads(result.stdout)
    assert body["ok"] is True
    assert body["ai"]["categories"][0]["category"] == "Dining"


def test_analyze_table_output(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _stub_gateway(monkeypatch)
    csv_path = tmp_path / "jan.csv"
    csv_path.write_text("Date,Description,Amount\n2024-01-02,CAFE,-4.50\n", encoding="utf-8")

    result = runner.invoke(cli_mod.app, ["analyze", str(csv_path)])

    assert result.exit_code == 0, result.output
    assert "Dining" in result.output


def test_analyze_failure_exits_nonzero(tmp_path: Path) -> None:
    csv_path = tmp_path / "jan.csv"
    csv_path.write_text("Date,Description,Amount\n2024-01-02,CAFE,-4.50\n", encoding="utf-8")

    result = runner.invoke(cli_mod.app, ["analyze", str(csv_path), "--json"])

    assert result.exit_code == 1
    assert json.loads(result.stdout)["ok"] is False


def test_regenerate_insights_reads_payload_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _stub_gateway(monkeypatch)
    payload = tmp_path / "payload.json"
    payload.write_text(
        json.dumps({"categories": [{"category": "Dining", "total": 4.5, "merchants": []}]}),
        encoding="utf-8",
    )

    result = runner.invoke(cli_mod.app, ["regenerate-insights", str(payload), "--json"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["insights"]["topSpendingCategory"] == "Dining"


def test_review_story_without_key_exits_nonzero() -> None:
    result = runner.invoke(cli_mod.app, ["review-story", "--story", "As a user...", "--json"])

    assert result.exit_code == 1
    assert "error" in json.loads(result.stdout)
