"""Requirement (user story) review through the shared gateway.

The reply is decoded into :class:`ReviewResult`. Invalid JSON is handled by a
bounded ladder of at most three calls:

1. ask for the review and parse the reply as-is;
2. re-ask with an explicit "your last response was invalid JSON" suffix;
3. hand the second reply back and ask the model to fix it.

Anything that still fails (or a provider error at any step) is reported with
:func:`failure_payload`, which has the same shape as a successful review.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from . import prompting
from .config import Settings
from .errors import ReviewError, error_hint
from .gateway import LLMGateway, decode_json_object
from .logging_setup import get_logger

_logger = get_logger("spending_insights.story_review")

UNUSABLE_LABEL = prompting.REVIEW_LABELS[-1]
MAX_ATTEMPTS = 3


class ReviewRating(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    score_1_to_5: int = Field(ge=1, le=5)
    label: str
    one_line_summary: str = ""
    critical: int = Field(default=0, ge=0)
    major: int = Field(default=0, ge=0)
    minor: int = Field(default=0, ge=0)


class ReviewData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    missing_acceptance_criteria: list[dict[str, Any]] = Field(default_factory=list)
    ambiguous_language: list[dict[str, Any]] = Field(default_factory=list)
    edge_cases: list[dict[str, Any]] = Field(default_factory=list)
    non_testable_or_weak_criteria: list[dict[str, Any]] = Field(default_factory=list)
    missing_context_questions: list[dict[str, Any]] = Field(default_factory=list)


class ReviewRewrite(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_story: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)


class ReviewResult(BaseModel):
    """A review reply. ``rating`` is required; the other sections default to empty."""

    model_config = ConfigDict(extra="ignore")

    rating: ReviewRating
    data: ReviewData = Field(default_factory=ReviewData)
    rewrite: ReviewRewrite = Field(default_factory=ReviewRewrite)
    jira_comment_md: str = ""


def _unusable(summary: str) -> ReviewResult:
    return ReviewResult(
        rating=ReviewRating(
            score_1_to_5=1,
            label=UNUSABLE_LABEL,
            one_line_summary=summary,
            critical=1,
        )
    )


def failure_payload(exc: BaseException) -> dict[str, Any]:
    """Render ``exc`` as a review-shaped result with an ``error`` block."""

    payload = _unusable("AI call failed or returned invalid JSON. See error.message.").model_dump()
    payload["error"] = {"message": str(exc), "hint": error_hint(exc)}
    return payload


def parse_review(text: str) -> ReviewResult:
    """Decode and validate one reply; raises ``ValueError`` when unusable."""

    return ReviewResult.model_validate(decode_json_object(text))


class StoryReviewer:
    def __init__(self, gateway: LLMGateway, settings: Settings) -> None:
        self.gateway = gateway
        self.settings = settings

    @staticmethod
    def story_required() -> dict[str, Any]:
        return _unusable("Story is required.").model_dump()

    def review(
        self, story: str, *, context: str = "", acceptance_criteria: str = ""
    ) -> dict[str, Any]:
        """Return the review as a plain dict; never raises for model failures."""

        story = (story or "").strip()
        if not story:
            return self.story_required()
        try:
            result = self._review_with_ladder(
                story=story,
                context=(context or "").strip(),
                acceptance_criteria=(acceptance_criteria or "").strip(),
            )
        except Exception as e:  # noqa: BLE001 - reported in the payload
            _logger.error("review:failed error=%s", e.__class__.__name__)
            return failure_payload(e)
        return result.model_dump()

    def _review_with_ladder(
        self, *, story: str, context: str, acceptance_criteria: str
    ) -> ReviewResult:
        prompt = prompting.build_review_prompt(
            context=context, story=story, acceptance_criteria=acceptance_criteria
        )
        attempts = (
            lambda _prev: prompt,
            lambda _prev: prompting.build_review_retry_prompt(prompt),
            prompting.build_review_fix_prompt,
        )
        previous = ""
        last_error: Exception | None = None
        for attempt, make_prompt in enumerate(attempts[:MAX_ATTEMPTS], start=1):
            previous = self._complete(make_prompt(previous))
            try:
                result = parse_review(previous)
            except (ValueError, ValidationError) as e:
                last_error = e
                _logger.warning("review:invalid_reply attempt=%d error=%s", attempt, e.__class__.__name__)
                continue
            _logger.info("review:done attempt=%d score=%d", attempt, result.rating.score_1_to_5)
            return result
        raise ReviewError(
            f"Model did not return valid review JSON after {MAX_ATTEMPTS} attempts: {last_error}"
        ) from last_error

    def _complete(self, user_prompt: str) -> str:
        return self.gateway.complete(
            prompting.REVIEW_SYSTEM, user_prompt, self.settings.review_max_tokens
        )
