"""Prompt construction for categorization, repair, insights and review calls.

Structured payloads are embedded between ``BEGIN_*``/``END_*`` marker lines so
they can be located unambiguously (test doubles rely on this too).
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from .categories import CATEGORY_VOCABULARY, REFUNDS
from .models import LineItem

TXN_BEGIN = "BEGIN_TRANSACTIONS_JSON"
TXN_END = "END_TRANSACTIONS_JSON"
PREV_BEGIN = "BEGIN_PREVIOUS_JSON"
PREV_END = "END_PREVIOUS_JSON"
SUMMARY_BEGIN = "BEGIN_SUMMARY_JSON"
SUMMARY_END = "END_SUMMARY_JSON"


def _vocabulary_json() -> str:
    return json.dumps(list(CATEGORY_VOCABULARY))


def serialize_items_to_json(items: Sequence[LineItem]) -> str:
    """Serialize line items with fixed field order ``id, date, merchant, amount, kind``."""

    return json.dumps([it.to_prompt_dict() for it in items], ensure_ascii=False)


def _id_list(ids: Iterable[int]) -> str:
    return "[" + ", ".join(str(i) for i in sorted(ids)) + "]"


# ---- Categorization ----------------------------------------------------------

CATEGORIZE_SYSTEM = (
    "You are a financial categorization engine. Assign every transaction id to exactly "
    "one category from the allowed list. Never invent categories. Return STRICT JSON only: "
    "no markdown, no commentary."
)

_OUTPUT_SCHEMA = """{
  "categories": [
    {
      "category": string,
      "txnIds": [number]
    }
  ]
}"""


def build_categorize_prompt(items: Sequence[LineItem]) -> str:
    return f"""Task:
Given transactions, assign each transaction id to exactly one category.

Each transaction has:
- id: integer
- date: string (YYYY-MM-DD)
- merchant: string
- amount: number (always a positive magnitude)
- kind: "expense" or "refund"

Allowed categories (use these exact strings):
{_vocabulary_json()}

Rules (MUST follow all):
- Use only the allowed categories.
- CRITICAL: Each provided transaction id must appear in EXACTLY ONE category. Never duplicate ids.
- If kind == "refund", category MUST be "{REFUNDS}".
- If kind == "expense", choose the best category based on merchant.
- Return the top-level schema exactly.

Output schema (JSON):
{_OUTPUT_SCHEMA}

{TXN_BEGIN}
{serialize_items_to_json(items)}
{TXN_END}
"""


def build_repair_prompt(
    previous_text: str, *, expected_ids: Iterable[int], missing_ids: Iterable[int]
) -> str:
    return f"""You returned JSON but it is invalid because some transaction ids were not assigned.

Fix it and return STRICT JSON ONLY. Keep the same schema.

CRITICAL rules:
- Every provided transaction id must appear in EXACTLY ONE category.
- Do not duplicate any ids.
- Refunds (kind=="refund") MUST be in category "{REFUNDS}".
- Use only allowed categories: {_vocabulary_json()}

Provided transaction ids (scope): {_id_list(expected_ids)}
Missing ids that MUST be assigned: {_id_list(missing_ids)}

Output schema (JSON):
{_OUTPUT_SCHEMA}

Here is your previous JSON (repair it):
{PREV_BEGIN}
{previous_text.strip()}
{PREV_END}
"""


# ---- Insights ----------------------------------------------------------------

INSIGHTS_SYSTEM = (
    "You are a financial behavior analyst. Base every statement ONLY on the provided summary "
    "JSON. Return STRICT JSON only: no markdown, no commentary."
)


def build_insights_prompt(summary: Mapping[str, Any]) -> str:
    summary_json = json.dumps(summary, ensure_ascii=False, sort_keys=True)
    return f"""Generate insights based ONLY on the provided summary JSON.
Do NOT narrate individual transactions.
Do NOT invent context like vacations, locations, or reasons for spending.

Focus on:
- Where the most money is going (top categories)
- Which merchants receive the most money
- Spend concentration (percentages)
- Recurring behavior (merchant frequency)
- Practical optimization ideas
- Anomalies only if clearly indicated by the summary

Output schema:
{{
  "highlights": [string],
  "topSpendingCategory": string,
  "topMerchant": string,
  "concentrationNotes": [string],
  "optimizationIdeas": [string],
  "anomalies": [string]
}}

{SUMMARY_BEGIN}
{summary_json}
{SUMMARY_END}
"""


# ---- Requirement review ------------------------------------------------------

REVIEW_SYSTEM = """You are a senior Product Owner and QA reviewer.

Review the provided user story/requirement for clarity, completeness, and testability.
Base your analysis ONLY on the text provided. Do not invent domain rules.
If context is missing, ask clarifying questions rather than guessing.

Return ONLY valid JSON. No markdown. No extra text.
"""

REVIEW_LABELS: tuple[str, ...] = (
    "Pass (Excellent)",
    "Pass (Minor fixes)",
    "Acceptable (Needs improvements)",
    "Not Passed (High risk)",
    "Not Passed (Unusable)",
)


def build_review_prompt(*, context: str, story: str, acceptance_criteria: str) -> str:
    labels = " | ".join(REVIEW_LABELS)
    return f"""Review the following product requirement and return JSON in exactly this shape:

{{
  "rating": {{
    "score_1_to_5": 1-5,
    "label": "{labels}",
    "one_line_summary": "string",
    "critical": number,
    "major": number,
    "minor": number
  }},
  "data": {{
    "missing_acceptance_criteria": [{{"title":"", "details":"", "severity":"critical|major|minor"}}],
    "ambiguous_language": [{{"quote":"", "why_ambiguous":"", "suggested_rewrite":"", "severity":"critical|major|minor"}}],
    "edge_cases": [{{"title":"", "scenario":"", "expected_behavior_question":"", "severity":"critical|major|minor"}}],
    "non_testable_or_weak_criteria": [{{"quote":"", "issue":"", "testable_rewrite":"", "severity":"critical|major|minor"}}],
    "missing_context_questions": [{{"question":"", "why_needed":""}}]
  }},
  "rewrite": {{
    "user_story": "string",
    "acceptance_criteria": ["string"]
  }},
  "jira_comment_md": "string"
}}

Rules:
- Use empty arrays [] when none.
- Do NOT add extra keys beyond rating, data, rewrite, jira_comment_md.
- Rewrite must be realistic and directly usable (not generic).
- acceptance_criteria must be testable; use Given/When/Then where possible.
- jira_comment_md must be Jira Markdown and include:
  * Score + label
  * One-line summary
  * Top issues (critical/major)
  * Missing AC (if any)
  * Edge cases (if any)
  * Clarifying questions (if any)
- Do NOT output anything except valid JSON.
- Keep jira_comment_md under 1200 characters.

Context:
{context or "(none provided)"}

User Story / Requirement:
{story}

Acceptance Criteria:
{acceptance_criteria or "(not provided)"}
"""


def build_review_retry_prompt(review_prompt: str) -> str:
    return (
        review_prompt
        + "\n\nYour last response was invalid JSON. Return ONLY valid JSON for the exact shape "
        "specified. No extra text."
    )


def build_review_fix_prompt(broken_text: str) -> str:
    return f"""You returned invalid JSON. Fix it.

Rules:
- Return ONLY valid JSON (no markdown, no commentary).
- Keep the exact schema requested earlier.
- Preserve as much content as possible.
- Ensure all strings are properly quoted and escaped.
- Ensure the JSON is complete and closes all braces/brackets.

Here is the broken JSON to fix:
{PREV_BEGIN}
{broken_text.strip()}
{PREV_END}
"""
