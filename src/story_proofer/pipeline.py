"""Proofreading pipeline — normalize, deduplicate, dispatch, reconcile.

Data flows strictly forward::

    normalize_rows -> deduplicate -> dispatch -> (remote model) -> reconcile

Only :func:`dispatch` talks to the outside world, through a *processor*
callable, so every stage can be exercised with a deterministic stub.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from story_proofer import CHUNK_DELAY_SECONDS, CHUNK_SIZE, REQUIRED_COLUMNS
from story_proofer.errors import (
    NoDataError,
    RemoteEmptyResponseError,
    RemoteFormatError,
    SchemaError,
)
from story_proofer.models import (
    CanonicalEntry,
    ExpandedResult,
    Mode,
    RemoteReply,
    ResultEntry,
    Row,
    RunContext,
    RunReport,
    RunState,
    Source,
    coerce_id,
)

logger = logging.getLogger(__name__)

Processor = Callable[[str, Mode], RemoteReply]
"""Remote capability: serialized chunk + mode -> raw reply (or raises)."""

GroupIndex = dict[tuple[str, str], list[int]]

_CODE_FENCE_RE = re.compile(r"\A```(?:json)?[ \t]*\n?(.*?)\n?```\Z", re.IGNORECASE | re.DOTALL)

# ── Row normalisation ───────────────────────────────────────────


def _lower_keys(record: Mapping[Any, Any]) -> dict[str, str]:
    lowered: dict[str, str] = {}
    for key, value in record.items():
        # later keys win when two names collide after lowering
        lowered[str(key).lower()] = "" if value is None else str(value)
    return lowered


def normalize_rows(records: Sequence[Mapping[Any, Any]]) -> list[Row]:
    """Lower-case field names and assign ``id = index`` in input order.

    Only the first record is checked for the required columns.

    Raises
    ------
    SchemaError
        If the first record lacks ``story`` or ``sub-story``.
    """
    if not records:
        return []

    first = _lower_keys(records[0])
    missing = [name for name in REQUIRED_COLUMNS if name not in first]
    if missing:
        raise SchemaError(
            "Sheet must contain 'story' and 'sub-story' columns "
            f"(missing: {', '.join(missing)})."
        )
    return [Row(id=index, fields=_lower_keys(record)) for index, record in enumerate(records)]


# ── Deduplication ───────────────────────────────────────────────


def content_key(story: str, sub_story: str) -> tuple[str, str]:
    return (story, sub_story)


def deduplicate(rows: Sequence[Row]) -> tuple[list[CanonicalEntry], GroupIndex]:
    """Collapse rows with identical (story, sub-story) text.

    Returns the canonical entries in first-seen order (ids ``0..n-1``) and the
    group index mapping each content key to the ids of every row sharing it.
    Comparison is exact: case and whitespace are significant.
    """
    entries: list[CanonicalEntry] = []
    groups: GroupIndex = {}
    for row in rows:
        key = content_key(row.story, row.sub_story)
        bucket = groups.get(key)
        if bucket is None:
            entries.append(
                CanonicalEntry(canonical_id=len(entries), story=row.story, sub_story=row.sub_story)
            )
            bucket = groups[key] = []
        bucket.append(row.id)
    return entries, groups


# ── Dispatch ────────────────────────────────────────────────────


def chunk_entries(
    entries: Sequence[CanonicalEntry], size: int = CHUNK_SIZE
) -> list[list[CanonicalEntry]]:
    """Split *entries* into contiguous, in-order chunks of at most *size*."""
    if size < 1:
        raise ValueError(f"chunk size must be >= 1, got {size}")
    return [list(entries[start:start + size]) for start in range(0, len(entries), size)]


def serialize_chunk(chunk: Sequence[CanonicalEntry]) -> str:
    """Minified JSON array of ``{"id", "story", "sub-story"}`` records."""
    return json.dumps(
        [entry.to_record() for entry in chunk], ensure_ascii=False, separators=(",", ":")
    )


def _strip_code_fence(text: str) -> str:
    """Unwrap a reply that is one fenced block; fences inside the JSON stay."""
    stripped = text.strip()
    match = _CODE_FENCE_RE.match(stripped)
    return match.group(1).strip() if match else stripped


def parse_reply(text: str | None, mode: Mode, *, first_row: int = 1) -> list[ResultEntry]:
    """Decode one remote reply into result entries.

    Raises
    ------
    RemoteEmptyResponseError
        If *text* is empty or missing.
    RemoteFormatError
        If *text* is not decodable, not an array, or holds non-object items.
    """
    if text is None or not text.strip():
        raise RemoteEmptyResponseError(
            f"Model returned an empty response for the chunk starting at row {first_row}. "
            "The response might have been blocked."
        )

    cleaned = _strip_code_fence(text)
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise RemoteFormatError(
            f"Model returned undecodable data for the chunk starting at row {first_row}."
        ) from exc
    if not isinstance(payload, list):
        raise RemoteFormatError(
            f"Model returned invalid data for the chunk starting at row {first_row} "
            f"(expected a JSON array, got {type(payload).__name__})."
        )

    results: list[ResultEntry] = []
    for position, item in enumerate(payload):
        if not isinstance(item, Mapping):
            raise RemoteFormatError(
                f"Model returned a non-object item at position {position} "
                f"for the chunk starting at row {first_row}."
            )
        canonical_id = coerce_id(item.get("id"))
        if canonical_id is None:
            logger.warning(
                "Skipping item %d without a usable id (chunk starting at row %d)",
                position, first_row,
            )
            continue
        results.append(ResultEntry.from_record(canonical_id, item, mode))
    return results


def dispatch(
    entries: Sequence[CanonicalEntry],
    processor: Processor,
    ctx: RunContext,
    *,
    chunk_size: int = CHUNK_SIZE,
    delay: float = CHUNK_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> list[ResultEntry]:
    """Send *entries* to *processor* one chunk at a time.

    Calls are strictly sequential with a blocking *delay* after every chunk
    but the last. The first failure discards everything accumulated on *ctx*
    and re-raises; there is no retry.
    """
    if not entries:
        raise NoDataError("No data to process. Please upload a valid spreadsheet.")

    chunks = chunk_entries(entries, chunk_size)
    total = len(entries)
    ctx.chunks_total = len(chunks)
    ctx.chunks_done = 0
    try:
        for index, chunk in enumerate(chunks):
            start = index * chunk_size
            ctx.transition(RunState.DISPATCHING)
            ctx.report(
                f"Processing unique rows {start + 1} to {start + len(chunk)} of {total}...",
                ctx.chunks_done / ctx.chunks_total * 100,
            )
            logger.debug("Dispatching chunk %d/%d (%d entries)", index + 1, len(chunks), len(chunk))

            reply = processor(serialize_chunk(chunk), ctx.mode)
            ctx.results.extend(parse_reply(reply.text, ctx.mode, first_row=start + 1))
            ctx.add_sources(reply.sources)
            ctx.chunks_done += 1

            if index < len(chunks) - 1:
                ctx.transition(RunState.DELAYING)
                sleep(delay)
    except Exception:
        ctx.fail()
        raise
    return list(ctx.results)


# ── Reconciliation ──────────────────────────────────────────────


@dataclass
class Reconciliation:
    expanded: list[ExpandedResult] = field(default_factory=list)
    missing_canonical_ids: list[int] = field(default_factory=list)


def reconcile(
    entries: Sequence[CanonicalEntry],
    group_index: Mapping[tuple[str, str], Sequence[int]],
    results: Sequence[ResultEntry],
) -> Reconciliation:
    """Project each canonical result back onto every row that shares it.

    Duplicate ids in *results* resolve last-write-wins by position. Entries
    with no result yield no expanded rows; their ids are reported in
    ``missing_canonical_ids``.
    """
    by_id: dict[int, ResultEntry] = {}
    for result in results:
        by_id[result.canonical_id] = result

    outcome = Reconciliation()
    for entry in entries:
        row_ids = group_index.get(content_key(entry.story, entry.sub_story))
        result = by_id.get(entry.canonical_id)
        if result is None:
            outcome.missing_canonical_ids.append(entry.canonical_id)
            continue
        if not row_ids:
            continue
        outcome.expanded.extend(ExpandedResult.project(result, row_id) for row_id in row_ids)
    return outcome


# ── Orchestration ───────────────────────────────────────────────


@dataclass
class PipelineResult:
    rows: list[Row]
    entries: list[CanonicalEntry]
    group_index: GroupIndex
    results_received: int = 0
    expanded: list[ExpandedResult] = field(default_factory=list)
    missing_canonical_ids: list[int] = field(default_factory=list)
    sources: list[Source] = field(default_factory=list)


def run_pipeline(
    records: Sequence[Mapping[Any, Any]],
    processor: Processor,
    ctx: RunContext,
    *,
    chunk_size: int = CHUNK_SIZE,
    delay: float = CHUNK_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> PipelineResult:
    """Run one full pass over *records* and return the reconciled results.

    *ctx* must be fresh (``IDLE``); it ends in ``DONE`` or ``FAILED``.
    """
    try:
        ctx.transition(RunState.VALIDATING)
        ctx.report("Validating uploaded rows...", 0)
        rows = normalize_rows(records)
        if not rows:
            raise NoDataError("No data to process. Please upload a valid spreadsheet.")

        ctx.transition(RunState.DEDUPLICATING)
        ctx.report("Identifying unique rows...", 0)
        entries, group_index = deduplicate(rows)
        ctx.report(f"Found {len(entries)} unique rows to process.", 0)
        logger.info("%d rows collapse to %d unique entries", len(rows), len(entries))

        results = dispatch(
            entries, processor, ctx, chunk_size=chunk_size, delay=delay, sleep=sleep
        )

        ctx.transition(RunState.RECONCILING)
        ctx.report("Mapping results back to original rows...", 100)
        outcome = reconcile(entries, group_index, results)
        if outcome.missing_canonical_ids:
            unmatched = len(rows) - len(outcome.expanded)
            ctx.warnings.append(
                f"No result returned for {len(outcome.missing_canonical_ids)} unique entries "
                f"({unmatched} rows); original text kept"
            )

        ctx.transition(RunState.DONE)
        label = "Fact-check" if ctx.mode is Mode.FACT_CHECK else "Correction"
        ctx.report(
            f"{label} complete. {len(rows)} rows processed based on "
            f"{len(entries)} unique entries.",
            100,
        )
    except Exception:
        ctx.fail()
        raise

    return PipelineResult(
        rows=rows,
        entries=entries,
        group_index=group_index,
        results_received=len(results),
        expanded=outcome.expanded,
        missing_canonical_ids=outcome.missing_canonical_ids,
        sources=list(ctx.sources),
    )


def build_run_report(result: PipelineResult, ctx: RunContext) -> RunReport:
    """Summarize a finished run for ``run_report.json``."""
    rows_in = len(result.rows)
    rows_matched = len({expanded.row_id for expanded in result.expanded})
    return RunReport(
        rows_in=rows_in,
        unique_entries=len(result.entries),
        chunks=ctx.chunks_total,
        results_received=result.results_received,
        rows_matched=rows_matched,
        rows_unmatched=rows_in - rows_matched,
        missing_canonical_ids=list(result.missing_canonical_ids),
        warnings=list(ctx.warnings),
    )
