"""Exception taxonomy for ``spending_insights``.

Provider failures derive from :class:`RuntimeError`; validation and input
failures derive from :class:`ValueError` so callers can treat the latter as
terminal without inspecting concrete types.
"""

from __future__ import annotations

from collections.abc import Iterable


class ConfigurationError(RuntimeError):
    """Required configuration (e.g., an API key) is missing or invalid."""


# ---------------------------------------------------------------------------
# Provider / transport
# ---------------------------------------------------------------------------


class LLMError(RuntimeError):
    """Base class for failures surfaced by the LLM gateway."""

    retryable: bool = False


class ProviderTransportError(LLMError):
    """Connection failure or timeout talking to the model provider."""

    retryable = True


class ProviderStatusError(LLMError):
    """The provider answered with a non-2xx HTTP status."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"LLM provider error {status_code}: {body}")
        self.status_code = status_code
        self.body = body
        self.retryable = status_code == 429 or 500 <= status_code < 600


class UnexpectedProviderResponse(LLMError):
    """The provider's response envelope lacks the expected text content."""


class PromptBudgetExceeded(ValueError):
    """A request exceeds the configured prompt size or output token budget."""


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class ReconciliationError(ValueError):
    """A model-provided category assignment violates a hard invariant."""

    def __init__(
        self,
        message: str,
        *,
        ids: Iterable[int] = (),
        batch_index: int | None = None,
    ) -> None:
        super().__init__(message)
        self.ids: tuple[int, ...] = tuple(ids)
        self.batch_index = batch_index


class AssignmentSchemaError(ReconciliationError):
    """The reply was not JSON or did not match ``{"categories": [...]}``."""


class OutOfScopeIdError(ReconciliationError):
    """The reply assigned an id that was not part of the batch."""


class DuplicateAssignmentError(ReconciliationError):
    """The same id was assigned to more than one category."""


class IncompleteAssignmentError(ReconciliationError):
    """Ids remained unassigned after the single repair attempt."""


# ---------------------------------------------------------------------------
# Input / narrative / review
# ---------------------------------------------------------------------------


class InputError(ValueError):
    """Uploaded data is unusable (missing column, bad value, nothing to analyze)."""


class InsightsError(ValueError):
    """The insights reply was malformed or did not match the expected shape."""


class ReviewError(ValueError):
    """The requirement review could not produce valid JSON within its attempts."""


_HINTS: tuple[tuple[type[BaseException], str], ...] = (
    (ConfigurationError, "Check the provider API key and model settings."),
    (ProviderTransportError, "The model provider could not be reached. Try again shortly."),
    (ProviderStatusError, "The model provider rejected the request. Check credentials and quotas."),
    (UnexpectedProviderResponse, "The model provider returned an unexpected response. Try again."),
    (PromptBudgetExceeded, "The request is too large. Upload fewer transactions."),
    (
        ReconciliationError,
        "The model did not assign every transaction exactly once. Try again.",
    ),
    (InputError, "Check that the CSV has date, description and amount columns."),
    (InsightsError, "The model returned malformed insights. Try regenerating them."),
    (
        ReviewError,
        "This usually means the model returned malformed/truncated JSON. Try again; if it "
        "repeats, shorten the requirement text.",
    ),
)


def error_hint(exc: BaseException) -> str:
    """Return a short, user-facing hint for ``exc``."""

    for cls, hint in _HINTS:
        if isinstance(exc, cls):
            return hint
    return "Unexpected failure. Try again."
