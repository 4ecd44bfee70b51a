"""Runtime settings resolved once at process start.

All tunables that used to be read from the environment at individual call
sites live on a single immutable :class:`Settings` instance. Entrypoints call
:func:`load_settings` once and pass the result into the gateway, reconciler,
insights generator and story reviewer constructors.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

PROVIDERS: tuple[str, ...] = ("anthropic", "openai")

_DEFAULT_MODELS: dict[str, str] = {
    "anthropic": "claude-3-5-sonnet-latest",
    "openai": "gpt-5",
}


@dataclass(frozen=True, slots=True)
class Settings:
    """Immutable runtime configuration.

    Attributes
    ----------
    provider:
        ``"anthropic"`` (Messages API) or ``"openai"`` (Responses API).
    api_key:
        Credential for the selected provider. May be ``None`` for offline use;
        :func:`spending_insights.gateway.create_gateway` rejects that.
    model:
        Model identifier passed verbatim to the provider.
    batch_size:
        Maximum line items per categorization prompt.
    max_items:
        Hard cap on line items per request; extra rows are silently dropped.
    batch_concurrency:
        Number of batches categorized in parallel (``1`` = strictly sequential).
    connect_timeout, request_timeout:
        Seconds; a timeout is reported as a transport failure.
    max_prompt_chars:
        Upper bound on ``len(system) + len(user)`` for any single call.
    max_output_tokens:
        Upper bound on the ``max_tokens`` any caller may request.
    categorize_max_tokens, insights_max_tokens, review_max_tokens:
        Per-call output budgets.
    top_merchants:
        Merchants kept per category in the aggregate.
    """

    provider: str = "anthropic"
    api_key: str | None = None
    model: str = _DEFAULT_MODELS["anthropic"]
    batch_size: int = 25
    max_items: int = 2000
    batch_concurrency: int = 1
    connect_timeout: float = 20.0
    request_timeout: float = 60.0
    max_prompt_chars: int = 200_000
    max_output_tokens: int = 4096
    categorize_max_tokens: int = 700
    insights_max_tokens: int = 600
    review_max_tokens: int = 1400
    top_merchants: int = 5

    def __post_init__(self) -> None:
        if self.provider not in PROVIDERS:
            raise ValueError(
                f"Settings.provider must be one of {', '.join(PROVIDERS)}; got {self.provider!r}"
            )
        positive_ints = {
            "batch_size": self.batch_size,
            "max_items": self.max_items,
            "batch_concurrency": self.batch_concurrency,
            "max_prompt_chars": self.max_prompt_chars,
            "max_output_tokens": self.max_output_tokens,
            "categorize_max_tokens": self.categorize_max_tokens,
            "insights_max_tokens": self.insights_max_tokens,
            "review_max_tokens": self.review_max_tokens,
            "top_merchants": self.top_merchants,
        }
        for name, val in positive_ints.items():
            # Booleans are ints; disallow them explicitly.
            if isinstance(val, bool) or not isinstance(val, int) or val <= 0:
                raise ValueError(f"Settings.{name} must be a positive integer")
        for name, secs in (
            ("connect_timeout", self.connect_timeout),
            ("request_timeout", self.request_timeout),
        ):
            if secs <= 0:
                raise ValueError(f"Settings.{name} must be positive")


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer; got {raw!r}") from exc


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{key} must be a number; got {raw!r}") from exc


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Resolve :class:`Settings` from ``env`` (defaults to ``os.environ``)."""

    env = os.environ if env is None else env

    provider = (env.get("SI_LLM_PROVIDER") or "anthropic").strip().lower()
    if provider == "openai":
        api_key = env.get("OPENAI_API_KEY")
        model = env.get("OPENAI_MODEL")
    else:
        api_key = env.get("ANTHROPIC_API_KEY")
        model = env.get("ANTHROPIC_MODEL")
    api_key = api_key.strip() if api_key and api_key.strip() else None
    model = model.strip() if model and model.strip() else _DEFAULT_MODELS.get(provider, "")

    return Settings(
        provider=provider,
        api_key=api_key,
        model=model,
        batch_size=_env_int(env, "SI_BATCH_SIZE", 25),
        max_items=_env_int(env, "SI_MAX_ITEMS", 2000),
        batch_concurrency=_env_int(env, "SI_BATCH_CONCURRENCY", 1),
        connect_timeout=_env_float(env, "SI_CONNECT_TIMEOUT", 20.0),
        request_timeout=_env_float(env, "SI_REQUEST_TIMEOUT", 60.0),
        max_prompt_chars=_env_int(env, "SI_MAX_PROMPT_CHARS", 200_000),
        max_output_tokens=_env_int(env, "SI_MAX_OUTPUT_TOKENS", 4096),
    )
