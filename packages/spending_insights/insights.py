"""Narrative insights from the aggregated summary.

The model only ever sees :func:`spending_insights.aggregate.build_insights_summary`
output, never individual transactions. A malformed reply fails the call; there
is no repair round.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from . import prompting
from .config import Settings
from .errors import InsightsError
from .gateway import LLMGateway, decode_json_object
from .logging_setup import get_logger
from .models import Insights

_logger = get_logger("spending_insights.insights")


class InsightsGenerator:
    def __init__(self, gateway: LLMGateway, settings: Settings) -> None:
        self.gateway = gateway
        self.settings = settings

    def generate(self, summary: Mapping[str, Any]) -> Insights:
        """Return validated :class:`~spending_insights.models.Insights` for ``summary``.

        Raises :class:`~spending_insights.errors.InsightsError` when the reply is
        not a JSON object or is missing a required field.
        """

        text = self.gateway.complete(
            prompting.INSIGHTS_SYSTEM,
            prompting.build_insights_prompt(summary),
            self.settings.insights_max_tokens,
        )
        try:
            body = decode_json_object(text)
            insights = Insights.model_validate(body)
        except (ValueError, ValidationError) as e:
            _logger.error("insights:invalid_reply error=%s chars=%d", e.__class__.__name__, len(text))
            raise InsightsError(f"Model returned malformed insights: {e}") from e
        _logger.info(
            "insights:done highlights=%d ideas=%d anomalies=%d",
            len(insights.highlights),
            len(insights.optimizationIdeas),
            len(insights.anomalies),
        )
        return insights
