"""Single chokepoint for model calls.

Every caller goes through :meth:`LLMGateway.complete`, which:

- enforces the prompt size and output token budget before any network I/O,
- issues exactly one provider call with connect and overall timeouts,
- extracts the text completion from the provider envelope,
- maps failures onto :mod:`spending_insights.errors`:
  timeouts and connection failures → ``ProviderTransportError``,
  non-2xx → ``ProviderStatusError``, missing text → ``UnexpectedProviderResponse``.

The gateway never retries; repair strategies belong to callers. SDK-level
retries are disabled (``max_retries=0``) for the same reason.
"""

from __future__ import annotations

import json
import re
import time
from collections.abc import Mapping
from typing import Any

import anthropic
import httpx
import openai
from anthropic import Anthropic
from openai import OpenAI

from .config import Settings
from .errors import (
    ConfigurationError,
    PromptBudgetExceeded,
    ProviderStatusError,
    ProviderTransportError,
    UnexpectedProviderResponse,
)
from .logging_setup import get_logger

_logger = get_logger("spending_insights.gateway")

_FENCE_OPEN_RE = re.compile(r"^```[a-zA-Z]*\s*")
_FENCE_CLOSE_RE = re.compile(r"\s*```$")


# ---- Reply helpers shared by all callers ------------------------------------


def strip_code_fences(text: str) -> str:
    """Remove a surrounding Markdown code fence (```json ... ```) if present."""

    s = text.strip()
    if s.startswith("```"):
        s = _FENCE_OPEN_RE.sub("", s)
        s = _FENCE_CLOSE_RE.sub("", s)
        s = s.strip()
    return s


def decode_json_object(text: str) -> dict[str, Any]:
    """Decode ``text`` (optionally fenced) as a JSON object.

    Raises ``ValueError`` when the text is not JSON or not a JSON object.
    """

    try:
        decoded = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as e:
        raise ValueError(f"Model output was not valid JSON: {e.msg}") from e
    if not isinstance(decoded, dict):
        raise ValueError("Model output was JSON but not an object")
    return decoded


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


# ---- Gateways ----------------------------------------------------------------


class LLMGateway:
    """Provider-agnostic completion interface.

    Subclasses implement :meth:`_send`; budget checks, logging and error
    translation live here.
    """

    provider: str = "base"

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def complete(self, system_prompt: str, user_prompt: str, max_tokens: int) -> str:
        """Return the model's text completion for one system/user prompt pair."""

        self._check_budget(system_prompt, user_prompt, max_tokens)
        t0 = time.perf_counter()
        try:
            text = self._send(system_prompt, user_prompt, max_tokens)
        except Exception as e:
            dt_ms = (time.perf_counter() - t0) * 1000.0
            _logger.error(
                "llm:call_failed provider=%s model=%s latency_ms=%.2f error=%s",
                self.provider,
                self.settings.model,
                dt_ms,
                e.__class__.__name__,
            )
            raise
        dt_ms = (time.perf_counter() - t0) * 1000.0
        _logger.info(
            "llm:call_done provider=%s model=%s max_tokens=%d latency_ms=%.2f chars=%d",
            self.provider,
            self.settings.model,
            max_tokens,
            dt_ms,
            len(text),
        )
        return text

    def _check_budget(self, system_prompt: str, user_prompt: str, max_tokens: int) -> None:
        if isinstance(max_tokens, bool) or not isinstance(max_tokens, int) or max_tokens <= 0:
            raise PromptBudgetExceeded("max_tokens must be a positive integer")
        if max_tokens > self.settings.max_output_tokens:
            raise PromptBudgetExceeded(
                f"max_tokens {max_tokens} exceeds the configured limit "
                f"{self.settings.max_output_tokens}"
            )
        size = len(system_prompt) + len(user_prompt)
        if size > self.settings.max_prompt_chars:
            raise PromptBudgetExceeded(
                f"prompt of {size} characters exceeds the configured limit "
                f"{self.settings.max_prompt_chars}"
            )

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.settings.request_timeout, connect=self.settings.connect_timeout)

    def _send(self, system_prompt: str, user_prompt: str, max_tokens: int) -> str:
        raise NotImplementedError


class AnthropicGateway(LLMGateway):
    """Anthropic Messages API (``POST /v1/messages``)."""

    provider = "anthropic"

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self._client: Any = None

    def _create_client(self) -> Anthropic:
        return Anthropic(
            api_key=self.settings.api_key,
            timeout=self._timeout(),
            max_retries=0,
        )

    def _send(self, system_prompt: str, user_prompt: str, max_tokens: int) -> str:
        if self._client is None:
            self._client = self._create_client()
        try:
            message = self._client.messages.create(
                model=self.settings.model,
                max_tokens=max_tokens,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
            )
        except anthropic.APIConnectionError as e:
            # Includes APITimeoutError.
            raise ProviderTransportError(f"Anthropic request failed: {e}") from e
        except anthropic.APIStatusError as e:
            raise ProviderStatusError(e.status_code, _status_body(e)) from e
        return _extract_message_text(message)


class OpenAIGateway(LLMGateway):
    """OpenAI Responses API (``POST /v1/responses``)."""

    provider = "openai"

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self._client: Any = None

    def _create_client(self) -> OpenAI:
        return OpenAI(
            api_key=self.settings.api_key,
            timeout=self._timeout(),
            max_retries=0,
        )

    def _send(self, system_prompt: str, user_prompt: str, max_tokens: int) -> str:
        if self._client is None:
            self._client = self._create_client()
        try:
            resp = self._client.responses.create(
                model=self.settings.model,
                instructions=system_prompt,
                input=user_prompt,
                max_output_tokens=max_tokens,
            )
        except openai.APIConnectionError as e:
            raise ProviderTransportError(f"OpenAI request failed: {e}") from e
        except openai.APIStatusError as e:
            raise ProviderStatusError(e.status_code, _status_body(e)) from e
        return _extract_responses_text(resp)


def _status_body(exc: anthropic.APIStatusError | openai.APIStatusError) -> str:
    try:
        return exc.response.text
    except Exception:  # noqa: BLE001 - diagnostics only
        return str(exc)


def _extract_message_text(message: Any) -> str:
    """Return ``content[0].text`` from a Messages API result."""

    content = _field(message, "content")
    if not isinstance(content, (list, tuple)) or not content:
        raise UnexpectedProviderResponse("Unexpected provider response: missing content")
    text = _field(content[0], "text")
    if not isinstance(text, str) or not text.strip():
        raise UnexpectedProviderResponse("Unexpected provider response: missing content[0].text")
    return text.strip()


def _extract_responses_text(resp: Any) -> str:
    """Return the text of a Responses API result.

    Prefer ``resp.output_text``; fall back to ``resp.output[0].content[0].text``
    (some SDK versions expose the text as an object with a ``value`` string).
    """

    text = _field(resp, "output_text")
    if not isinstance(text, str) or not text:
        text = None
        output = _field(resp, "output")
        if isinstance(output, (list, tuple)) and output:
            content = _field(output[0], "content")
            if isinstance(content, (list, tuple)) and content:
                txt_obj = _field(content[0], "text")
                if isinstance(txt_obj, str):
                    text = txt_obj
                else:
                    maybe_val = _field(txt_obj, "value")
                    if isinstance(maybe_val, str):
                        text = maybe_val
    if not text or not text.strip():
        raise UnexpectedProviderResponse("Unexpected Responses API shape; unable to locate text output")
    return text.strip()


def create_gateway(settings: Settings) -> LLMGateway:
    """Build the gateway for ``settings.provider``."""

    if not settings.api_key:
        key_var = "OPENAI_API_KEY" if settings.provider == "openai" else "ANTHROPIC_API_KEY"
        raise ConfigurationError(f"{key_var} environment variable is required for model access")
    if settings.provider == "openai":
        return OpenAIGateway(settings)
    return AnthropicGateway(settings)
