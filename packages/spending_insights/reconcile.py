"""Batch categorization with deterministic validation and a bounded repair.

Line items are sent to the model in fixed-size batches. Each reply is decoded
into a typed :class:`ParsedAssignment` (or a :class:`SchemaViolation`) and
checked against the batch's id set by code, never by the model:

- an id outside the batch → :class:`~spending_insights.errors.OutOfScopeIdError`
  (fatal, not retried);
- an id under two categories → :class:`~spending_insights.errors.DuplicateAssignmentError`
  (fatal, not retried);
- ids with no assignment → collected as *missing*.

Missing ids trigger exactly one repair call that embeds the previous JSON, the
batch scope and the missing list. If the repaired reply is still incomplete
the batch fails with :class:`~spending_insights.errors.IncompleteAssignmentError`.
At most two model calls are made per batch.

Per-batch states::

    sent → validated
    sent → repair_sent → repair_validated
    sent → repair_sent → failed

Successful batches are merged by the calling thread only, and every refund
line item is then forced into ``Refunds`` regardless of the model's label.
"""

from __future__ import annotations

import json
import time
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import StrEnum
from typing import TypeAlias

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError

from . import prompting
from .categories import REFUNDS, canonical_category, is_vocabulary_label
from .config import Settings
from .errors import (
    AssignmentSchemaError,
    DuplicateAssignmentError,
    IncompleteAssignmentError,
    OutOfScopeIdError,
    ReconciliationError,
)
from .gateway import LLMGateway, strip_code_fences
from .logging_setup import get_logger
from .models import ItemKind, LineItem

_logger = get_logger("spending_insights.reconcile")


class BatchState(StrEnum):
    SENT = "sent"
    VALIDATED = "validated"
    REPAIR_SENT = "repair_sent"
    REPAIR_VALIDATED = "repair_validated"
    FAILED = "failed"


# ---- Decode (tagged result) --------------------------------------------------


class _CategoryGroup(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True, populate_by_name=True)

    category: str
    # Strict: JSON true or "2" is a garbled reply, not id 1 or 2.
    txn_ids: list[StrictInt] = Field(alias="txnIds")


class _AssignmentBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    categories: list[_CategoryGroup]


@dataclass(frozen=True, slots=True)
class ParsedAssignment:
    """A schema-valid reply: ``(label, ids)`` groups in reply order."""

    groups: tuple[tuple[str, tuple[int, ...]], ...]
    raw_text: str


@dataclass(frozen=True, slots=True)
class SchemaViolation:
    """A reply that is not JSON or does not match the assignment schema."""

    reason: str
    raw_text: str


AssignmentDecode: TypeAlias = ParsedAssignment | SchemaViolation


def decode_assignment(text: str) -> AssignmentDecode:
    """Decode ``{"categories": [{"category", "txnIds"}]}`` from a model reply."""

    try:
        body = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as e:
        return SchemaViolation(reason=f"not valid JSON ({e.msg})", raw_text=text)
    if not isinstance(body, dict):
        return SchemaViolation(reason="top level is not a JSON object", raw_text=text)
    try:
        parsed = _AssignmentBody.model_validate(body)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()))
        return SchemaViolation(
            reason=f"schema mismatch at {loc or '<root>'}: {first.get('msg', 'invalid')}",
            raw_text=text,
        )
    groups = tuple((g.category, tuple(g.txn_ids)) for g in parsed.categories)
    return ParsedAssignment(groups=groups, raw_text=text)


def check_assignment(
    parsed: ParsedAssignment, expected_ids: Iterable[int], *, batch_index: int
) -> list[int]:
    """Validate ``parsed`` against ``expected_ids`` and return the missing ids.

    Raises :class:`OutOfScopeIdError` or :class:`DuplicateAssignmentError` on
    the first offending id.
    """

    expected = set(expected_ids)
    seen: set[int] = set()
    for _label, ids in parsed.groups:
        for tid in ids:
            if tid not in expected:
                raise OutOfScopeIdError(
                    f"Model returned txnId not in batch {batch_index + 1}: {tid}",
                    ids=[tid],
                    batch_index=batch_index,
                )
            if tid in seen:
                raise DuplicateAssignmentError(
                    f"Model assigned txnId {tid} to more than one category "
                    f"(batch {batch_index + 1})",
                    ids=[tid],
                    batch_index=batch_index,
                )
            seen.add(tid)
    return sorted(expected - seen)


# ---- Batches -----------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BatchOutcome:
    batch_index: int
    state: BatchState
    assignment: Mapping[int, str]
    llm_calls: int


def paginate(items: Sequence[LineItem], batch_size: int) -> list[tuple[LineItem, ...]]:
    """Split ``items`` into consecutive batches of at most ``batch_size``."""

    if batch_size <= 0:
        raise ValueError("batch_size must be a positive integer")
    return [tuple(items[i : i + batch_size]) for i in range(0, len(items), batch_size)]


class CategorizationReconciler:
    """Drives the gateway per batch and merges validated assignments.

    Parameters
    ----------
    gateway:
        The single model chokepoint.
    settings:
        Supplies ``batch_size``, ``batch_concurrency`` and
        ``categorize_max_tokens``.
    """

    def __init__(self, gateway: LLMGateway, settings: Settings) -> None:
        self.gateway = gateway
        self.settings = settings

    def reconcile(self, items: Sequence[LineItem]) -> dict[int, str]:
        """Return a complete, duplicate-free ``id -> category`` map for ``items``."""

        if not items:
            return {}
        batches = paginate(items, self.settings.batch_size)
        _logger.info(
            "reconcile:start items=%d batches=%d batch_size=%d concurrency=%d",
            len(items),
            len(batches),
            self.settings.batch_size,
            self.settings.batch_concurrency,
        )
        outcomes = self._run_batches(batches)
        merged = merge_batch_outcomes(outcomes, all_ids=[it.id for it in items])
        routed = enforce_refund_routing(items, merged)
        _logger.info(
            "reconcile:done items=%d llm_calls=%d repaired_batches=%d",
            len(routed),
            sum(o.llm_calls for o in outcomes),
            sum(1 for o in outcomes if o.state is BatchState.REPAIR_VALIDATED),
        )
        return routed

    def _run_batches(self, batches: list[tuple[LineItem, ...]]) -> list[BatchOutcome]:
        concurrency = min(self.settings.batch_concurrency, len(batches))
        if concurrency <= 1:
            return [self.categorize_batch(i, b) for i, b in enumerate(batches)]

        # Workers only compute outcomes; merging stays on this thread.
        outcomes: list[BatchOutcome] = []
        with ThreadPoolExecutor(max_workers=concurrency) as pool:
            futures = [pool.submit(self.categorize_batch, i, b) for i, b in enumerate(batches)]
            try:
                for fut in futures:
                    outcomes.append(fut.result())
            except Exception:
                pool.shutdown(wait=False, cancel_futures=True)
                raise
        return outcomes

    def categorize_batch(self, batch_index: int, batch: Sequence[LineItem]) -> BatchOutcome:
        """Run the send → validate → (repair → validate) cycle for one batch."""

        expected_ids = [it.id for it in batch]
        state = BatchState.SENT
        calls = 0
        t0 = time.perf_counter()
        _logger.info("reconcile:batch_sent batch_index=%d size=%d", batch_index, len(batch))
        try:
            text = self._complete(prompting.build_categorize_prompt(batch))
            calls += 1
            parsed = _require_parsed(decode_assignment(text), batch_index)
            missing = check_assignment(parsed, expected_ids, batch_index=batch_index)

            if not missing:
                state = BatchState.VALIDATED
            else:
                state = BatchState.REPAIR_SENT
                _logger.warning(
                    "reconcile:batch_repair batch_index=%d missing=%s", batch_index, missing
                )
                repair_prompt = prompting.build_repair_prompt(
                    text, expected_ids=expected_ids, missing_ids=missing
                )
                repaired = self._complete(repair_prompt)
                calls += 1
                parsed = _require_parsed(decode_assignment(repaired), batch_index)
                missing = check_assignment(parsed, expected_ids, batch_index=batch_index)
                if missing:
                    raise IncompleteAssignmentError(
                        f"Model did not assign all transactions exactly once "
                        f"(batch {batch_index + 1}). Missing ids: {missing}",
                        ids=missing,
                        batch_index=batch_index,
                    )
                state = BatchState.REPAIR_VALIDATED
        except ReconciliationError as e:
            _logger.error(
                "reconcile:batch_failed batch_index=%d from_state=%s error=%s ids=%s",
                batch_index,
                state,
                e.__class__.__name__,
                list(e.ids),
            )
            raise

        assignment: dict[int, str] = {}
        for label, ids in parsed.groups:
            if ids and not is_vocabulary_label(label):
                _logger.warning(
                    "reconcile:label_fallback batch_index=%d label=%r ids=%d",
                    batch_index,
                    label,
                    len(ids),
                )
            category = canonical_category(label)
            for tid in ids:
                assignment[tid] = category

        _logger.info(
            "reconcile:batch_done batch_index=%d state=%s calls=%d latency_ms=%.2f",
            batch_index,
            state,
            calls,
            (time.perf_counter() - t0) * 1000.0,
        )
        return BatchOutcome(
            batch_index=batch_index, state=state, assignment=assignment, llm_calls=calls
        )

    def _complete(self, user_prompt: str) -> str:
        return self.gateway.complete(
            prompting.CATEGORIZE_SYSTEM, user_prompt, self.settings.categorize_max_tokens
        )


def _require_parsed(decoded: AssignmentDecode, batch_index: int) -> ParsedAssignment:
    if isinstance(decoded, SchemaViolation):
        raise AssignmentSchemaError(
            f"Model reply for batch {batch_index + 1} is unusable: {decoded.reason}",
            batch_index=batch_index,
        )
    return decoded


# ---- Merge and post-merge policy --------------------------------------------


def merge_batch_outcomes(
    outcomes: Iterable[BatchOutcome], *, all_ids: Iterable[int]
) -> dict[int, str]:
    """Merge per-batch assignments into one map ordered by id.

    Asserts that no id appears in two batches and that every id in
    ``all_ids`` is assigned.
    """

    merged: dict[int, str] = {}
    for outcome in sorted(outcomes, key=lambda o: o.batch_index):
        for tid, label in outcome.assignment.items():
            if tid in merged:
                raise DuplicateAssignmentError(
                    f"Model duplicated transaction id across batches: {tid}",
                    ids=[tid],
                    batch_index=outcome.batch_index,
                )
            merged[tid] = label

    missing = sorted(set(all_ids) - merged.keys())
    if missing:
        raise IncompleteAssignmentError(
            f"Model did not assign all transactions exactly once. Missing ids: {missing}",
            ids=missing,
        )
    return {tid: merged[tid] for tid in sorted(merged)}


def enforce_refund_routing(
    items: Iterable[LineItem], assignment: Mapping[int, str]
) -> dict[int, str]:
    """Return a copy of ``assignment`` with every refund item mapped to ``Refunds``."""

    routed = dict(assignment)
    overridden = 0
    for it in items:
        if it.kind is ItemKind.REFUND and routed.get(it.id) != REFUNDS:
            routed[it.id] = REFUNDS
            overridden += 1
    if overridden:
        _logger.info("reconcile:refund_override count=%d", overridden)
    return routed
