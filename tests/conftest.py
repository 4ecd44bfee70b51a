"""Pytest configuration for test isolation.

Settings are resolved from the environment, and the CLI loads a local ``.env``.
A developer shell with real provider keys or tuning variables would otherwise
leak into tests (e.g., a different batch size changes call counts). An autouse
fixture removes every variable the package reads so each test starts from the
documented defaults.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parents[1]
_PKG_DIR = _ROOT / "packages"
sys.path[:0] = [p for p in [str(_PKG_DIR), str(_ROOT)] if p not in sys.path]

_SCRUBBED_ENV = (
    "SI_LLM_PROVIDER",
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_MODEL",
    "OPENAI_API_KEY",
    "OPENAI_MODEL",
    "SI_BATCH_SIZE",
    "SI_MAX_ITEMS",
    "SI_BATCH_CONCURRENCY",
    "SI_CONNECT_TIMEOUT",
    "SI_REQUEST_TIMEOUT",
    "SI_MAX_PROMPT_CHARS",
    "SI_MAX_OUTPUT_TOKENS",
    "SPENDING_INSIGHTS_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _scrub_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Unset package variables and run from an empty directory (no stray ``.env``)."""

    for key in _SCRUBBED_ENV:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
