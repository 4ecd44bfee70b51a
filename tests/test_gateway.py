# ruff: noqa: E402, I001
from __future__ import annotations

import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import anthropic
import httpx
import openai
import pytest

_ROOT = Path(__file__).resolve().parents[1]
_PKG_DIR = _ROOT / "packages"
sys.path[:0] = [p for p in [str(_PKG_DIR), str(_ROOT)] if p not in sys.path]

import spending_insights.gateway as gateway_mod
from spending_insights.config import Settings
from spending_insights.errors import (
    ConfigurationError,
    PromptBudgetExceeded,
    ProviderStatusError,
    ProviderTransportError,
    UnexpectedProviderResponse,
)
from spending_insights.gateway import (
    AnthropicGateway,
    OpenAIGateway,
    create_gateway,
    decode_json_object,
    strip_code_fences,
)

from tests.helpers.llm_stub import make_anthropic_stub, message

_REQUEST = httpx.Request("POST", "https://api.example.test/v1/messages")


def _anthropic_gateway(monkeypatch: pytest.MonkeyPatch, result: Any, **settings: Any):
    stub = make_anthropic_stub(result)
    monkeypatch.setattr(gateway_mod, "Anthropic", stub)
    return AnthropicGateway(Settings(api_key="k", **settings)), stub


# ---- Anthropic ---------------------------------------------------------------


def test_anthropic_complete_returns_stripped_text_and_sends_expected_request(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    gw, stub = _anthropic_gateway(monkeypatch, message('  {"ok": true}\n'))

    out = gw.complete("system text", "user text", 700)

    assert out == '{"ok": true}'
    (init,) = stub.init_kwargs
    assert init["api_key"] == "k"
    assert init["max_retries"] == 0
    assert isinstance(init["timeout"], httpx.Timeout)
    assert init["timeout"].connect == 20.0
    assert init["timeout"].read == 60.0
    (call,) = stub.calls
    assert call["model"] == "claude-3-5-sonnet-latest"
    assert call["max_tokens"] == 700
    assert call["system"] == "system text"
    assert call["messages"] == [{"role": "user", "content": "user text"}]


def test_anthropic_client_is_created_once(monkeypatch: pytest.MonkeyPatch) -> None:
    gw, stub = _anthropic_gateway(monkeypatch, message("x"))

    gw.complete("s", "u", 10)
    gw.complete("s", "u", 10)

    assert len(stub.init_kwargs) == 1
    assert len(stub.calls) == 2


@pytest.mark.parametrize(
    "envelope",
    [
        {"content": []},
        {"content": None},
        {"content": [{"type": "text", "text": "   "}]},
        {"content": [{"type": "tool_use"}]},
    ],
)
def test_anthropic_missing_text_is_unexpected_response(
    monkeypatch: pytest.MonkeyPatch, envelope: dict[str, Any]
) -> None:
    gw, _ = _anthropic_gateway(monkeypatch, envelope)

    with pytest.raises(UnexpectedProviderResponse):
        gw.complete("s", "u", 10)


@pytest.mark.parametrize(("status", "retryable"), [(429, True), (503, True), (400, False)])
def test_anthropic_status_errors_are_mapped(
    monkeypatch: pytest.MonkeyPatch, status: int, retryable: bool
) -> None:
    err = anthropic.APIStatusError(
        "boom",
        response=httpx.Response(status, request=_REQUEST, text="provider says no"),
        body=None,
    )
    gw, _ = _anthropic_gateway(monkeypatch, err)

    with pytest.raises(ProviderStatusError) as ei:
        gw.complete("s", "u", 10)

    assert ei.value.status_code == status
    assert ei.value.body == "provider says no"
    assert ei.value.retryable is retryable


def test_anthropic_timeout_is_transport_error(monkeypatch: pytest.MonkeyPatch) -> None:
    gw, _ = _anthropic_gateway(monkeypatch, anthropic.APITimeoutError(request=_REQUEST))

    with pytest.raises(ProviderTransportError) as ei:
        gw.complete("s", "u", 10)

    assert ei.value.retryable is True


# ---- Budget ------------------------------------------------------------------


def test_prompt_budget_is_checked_before_any_network_call(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    gw, stub = _anthropic_gateway(monkeypatch, message("x"), max_prompt_chars=50)

    with pytest.raises(PromptBudgetExceeded):
        gw.complete("s" * 20, "u" * 40, 10)

    assert stub.init_kwargs == []
    assert stub.calls == []


@pytest.mark.parametrize("max_tokens", [0, -1, 5000])
def test_output_budget_is_enforced(monkeypatch: pytest.MonkeyPatch, max_tokens: int) -> None:
    gw, stub = _anthropic_gateway(monkeypatch, message("x"), max_output_tokens=4096)

    with pytest.raises(PromptBudgetExceeded):
        gw.complete("s", "u", max_tokens)

    assert stub.calls == []


# ---- OpenAI ------------------------------------------------------------------


def _openai_gateway(monkeypatch: pytest.MonkeyPatch, result: Any):
    calls: list[dict[str, Any]] = []

    class _Responses:
        def create(self, **kwargs: Any) -> Any:
            calls.append(kwargs)
            if isinstance(result, BaseException):
                raise result
            return result

    class _Client:
        def __init__(self, **kwargs: Any) -> None:
            self.responses = _Responses()

    monkeypatch.setattr(gateway_mod, "OpenAI", _Client)
    return OpenAIGateway(Settings(provider="openai", api_key="k", model="gpt-test")), calls


def test_openai_prefers_output_text(monkeypatch: pytest.MonkeyPatch) -> None:
    gw, calls = _openai_gateway(monkeypatch, SimpleNamespace(output_text=' {"a": 1} '))

    assert gw.complete("sys", "usr", 100) == '{"a": 1}'
    (call,) = calls
    assert call == {
        "model": "gpt-test",
        "instructions": "sys",
        "input": "usr",
        "max_output_tokens": 100,
    }


def test_openai_falls_back_to_nested_output_value(monkeypatch: pytest.MonkeyPatch) -> None:
    resp = SimpleNamespace(
        output_text=None,
        output=[SimpleNamespace(content=[SimpleNamespace(text=SimpleNamespace(value="{}"))])],
    )
    gw, _ = _openai_gateway(monkeypatch, resp)

    assert gw.complete("s", "u", 10) == "{}"


def test_openai_unlocatable_text_is_unexpected(monkeypatch: pytest.MonkeyPatch) -> None:
    gw, _ = _openai_gateway(monkeypatch, SimpleNamespace(output_text="", output=[]))

    with pytest.raises(UnexpectedProviderResponse):
        gw.complete("s", "u", 10)


def test_openai_status_error_is_mapped(monkeypatch: pytest.MonkeyPatch) -> None:
    err = openai.APIStatusError(
        "boom", response=httpx.Response(500, request=_REQUEST, text="oops"), body=None
    )
    gw, _ = _openai_gateway(monkeypatch, err)

    with pytest.raises(ProviderStatusError) as ei:
        gw.complete("s", "u", 10)

    assert ei.value.status_code == 500
    assert ei.value.retryable is True


# ---- Factory and reply helpers -----------------------------------------------


def test_create_gateway_requires_key_for_selected_provider() -> None:
    with pytest.raises(ConfigurationError, match="ANTHROPIC_API_KEY"):
        create_gateway(Settings())
    with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
        create_gateway(Settings(provider="openai", model="gpt-test"))


def test_create_gateway_selects_provider() -> None:
    assert isinstance(create_gateway(Settings(api_key="k")), AnthropicGateway)
    assert isinstance(
        create_gateway(Settings(provider="openai", api_key="k", model="gpt-test")), OpenAIGateway
    )


def test_strip_code_fences_and_decode() -> None:
    fenced = '```json\n{"categories": []}\n```'
    assert strip_code_fences(fenced) == '{"categories": []}'
    assert decode_json_object(fenced) == {"categories": []}
    with pytest.raises(ValueError):
        decode_json_object("[1, 2]")
    with pytest.raises(ValueError):
        decode_json_object("not json")
