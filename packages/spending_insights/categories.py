"""Category vocabulary and label helpers.

The model may only choose from :data:`CATEGORY_VOCABULARY`. Caller-defined
labels exist only through the client-side reassignment reducer
(:func:`spending_insights.aggregate.move_merchant`) and are checked with
:func:`validate_name` there.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

REFUNDS = "Refunds"
OTHER = "Other"

CATEGORY_VOCABULARY: tuple[str, ...] = (
    "Subscriptions",
    "Bills",
    "Dining",
    "Groceries",
    "Transport",
    "Shopping",
    "Health",
    "Travel",
    "Entertainment",
    "Fees",
    REFUNDS,
    OTHER,
)

_BY_FOLDED: dict[str, str] = {c.casefold(): c for c in CATEGORY_VOCABULARY}

_ALLOWED_RE = re.compile(r"^[A-Za-z0-9 &\-/]+$")


def normalize_name(name: str) -> str:
    """Return ``name`` trimmed with internal whitespace collapsed."""

    return " ".join(name.strip().split())


def canonical_category(label: str | None) -> str:
    """Map a model-provided label onto the vocabulary.

    Matching ignores case and surrounding/internal whitespace differences.
    Anything outside the vocabulary becomes ``"Other"``.
    """

    if label is None:
        return OTHER
    return _BY_FOLDED.get(normalize_name(label).casefold(), OTHER)


def is_vocabulary_label(label: str) -> bool:
    return normalize_name(label).casefold() in _BY_FOLDED


@dataclass(frozen=True, slots=True)
class NameValidation:
    ok: bool
    reason: str | None = None


def validate_name(name: str, *, min_len: int = 1, max_len: int = 64) -> NameValidation:
    """Validate a caller-defined category label.

    Rules
    -----
    - Trim whitespace; enforce length bounds 1..64.
    - Allowed characters: letters, numbers, spaces, and ``& - /``.
    """

    n = normalize_name(name)
    if len(n) < min_len:
        return NameValidation(False, "Name cannot be empty")
    if len(n) > max_len:
        return NameValidation(False, f"Name must be at most {max_len} characters")
    if not _ALLOWED_RE.match(n):
        return NameValidation(False, "Only letters, numbers, spaces, and & - / are allowed")
    return NameValidation(True, None)
