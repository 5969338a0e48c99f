"""Data models used across the package."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from numbers import Integral
from types import MappingProxyType
from typing import Any


def _to_non_negative_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, Integral):
        raise TypeError(f"{field_name} must be an integer")
    result = int(value)
    if result < 0:
        raise ValueError(f"{field_name} must be >= 0")
    return result


def _to_string_list(values: Sequence[Any] | None, field_name: str) -> list[str]:
    if values is None:
        return []
    if isinstance(values, str):
        raise TypeError(f"{field_name} must be a sequence of strings")
    normalized: list[str] = []
    for item in values:
        if not isinstance(item, str):
            raise TypeError(f"{field_name} items must be strings")
        normalized.append(item)
    return normalized


def _to_int_list(values: Sequence[Any] | None, field_name: str) -> list[int]:
    if values is None:
        return []
    return [_to_non_negative_int(item, f"{field_name} items") for item in values]


def coerce_id(value: Any) -> int | None:
    """Return *value* as an ``int`` id, or ``None`` when it is not one.

    Models occasionally echo ids back as strings (``"3"``) or floats (``3.0``).
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, Integral):
        return int(value)
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.isdigit():
            return int(stripped)
    return None


# ── Enums ────────────────────────────────────────────────────────


class Mode(str, Enum):
    """Which remote invocation (and result shape) a run uses."""

    CORRECT = "correct"
    FACT_CHECK = "fact-check"


class RunState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    DEDUPLICATING = "deduplicating"
    DISPATCHING = "dispatching"
    DELAYING = "delaying"
    RECONCILING = "reconciling"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.IDLE: frozenset({RunState.VALIDATING}),
    RunState.VALIDATING: frozenset({RunState.DEDUPLICATING}),
    RunState.DEDUPLICATING: frozenset({RunState.DISPATCHING}),
    RunState.DISPATCHING: frozenset({RunState.DELAYING, RunState.RECONCILING}),
    RunState.DELAYING: frozenset({RunState.DISPATCHING}),
    RunState.RECONCILING: frozenset({RunState.DONE}),
    RunState.DONE: frozenset(),
    RunState.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset({RunState.DONE, RunState.FAILED})


# ── Pipeline records ─────────────────────────────────────────────


@dataclass(frozen=True)
class Row:
    """One uploaded row: a stable id plus its lower-cased fields."""

    id: int
    fields: Mapping[str, str] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    @property
    def story(self) -> str:
        return self.fields.get("story") or ""

    @property
    def sub_story(self) -> str:
        return self.fields.get("sub-story") or ""


@dataclass(frozen=True)
class CanonicalEntry:
    """Unique representative of every row sharing one (story, sub-story) pair."""

    canonical_id: int
    story: str
    sub_story: str

    def to_record(self) -> dict[str, Any]:
        """Wire shape sent to the remote model."""
        return {"id": self.canonical_id, "story": self.story, "sub-story": self.sub_story}


@dataclass(frozen=True)
class ResultEntry:
    canonical_id: int
    corrected_story: str | None = None
    corrected_sub_story: str | None = None
    story_analysis: str | None = None
    sub_story_analysis: str | None = None

    @classmethod
    def from_record(cls, canonical_id: int, record: Mapping[str, Any], mode: Mode) -> ResultEntry:
        """Build a result from one decoded remote object."""

        def _text(key: str) -> str | None:
            value = record.get(key)
            return None if value is None else str(value)

        if mode is Mode.FACT_CHECK:
            return cls(
                canonical_id=canonical_id,
                story_analysis=_text("story_analysis"),
                sub_story_analysis=_text("sub-story_analysis"),
            )
        return cls(
            canonical_id=canonical_id,
            corrected_story=_text("story"),
            corrected_sub_story=_text("sub-story"),
        )


@dataclass(frozen=True)
class ExpandedResult:
    """A :class:`ResultEntry` projected onto one original row."""

    row_id: int
    canonical_id: int
    corrected_story: str | None = None
    corrected_sub_story: str | None = None
    story_analysis: str | None = None
    sub_story_analysis: str | None = None

    @classmethod
    def project(cls, result: ResultEntry, row_id: int) -> ExpandedResult:
        return cls(
            row_id=row_id,
            canonical_id=result.canonical_id,
            corrected_story=result.corrected_story,
            corrected_sub_story=result.corrected_sub_story,
            story_analysis=result.story_analysis,
            sub_story_analysis=result.sub_story_analysis,
        )


@dataclass(frozen=True)
class Source:
    """A web citation returned by a fact-check call."""

    title: str
    url: str

    def to_dict(self) -> dict[str, str]:
        return {"title": self.title, "url": self.url}


@dataclass
class RemoteReply:
    """Raw output of one remote call: response text plus any citations."""

    text: str | None
    sources: list[Source] = field(default_factory=list)


# ── Run context ──────────────────────────────────────────────────

ProgressCallback = Callable[[str, float], None]


@dataclass
class RunContext:
    """Per-run mutable state, owned by exactly one pipeline run.

    Holds the state machine, the progress channel and the accumulators the
    dispatcher fills. Nothing here outlives the run.
    """

    mode: Mode = Mode.CORRECT
    on_progress: ProgressCallback | None = None
    state: RunState = RunState.IDLE
    history: list[RunState] = field(default_factory=lambda: [RunState.IDLE])
    progress: float = 0.0
    message: str = ""
    chunks_total: int = 0
    chunks_done: int = 0
    results: list[ResultEntry] = field(default_factory=list)
    sources: list[Source] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def transition(self, state: RunState) -> None:
        allowed = _TRANSITIONS[self.state]
        if self.state not in TERMINAL_STATES:
            allowed = allowed | {RunState.FAILED}
        if state not in allowed:
            raise RuntimeError(
                f"Illegal run state transition: {self.state.value} -> {state.value}"
            )
        self.state = state
        self.history.append(state)

    def report(self, message: str, progress: float) -> None:
        self.message = message
        self.progress = max(0.0, min(100.0, float(progress)))
        if self.on_progress is not None:
            self.on_progress(self.message, self.progress)

    def add_sources(self, sources: Sequence[Source]) -> None:
        """Append *sources*, skipping URLs already collected."""
        seen = {s.url for s in self.sources}
        for source in sources:
            if source.url and source.url not in seen:
                seen.add(source.url)
                self.sources.append(source)

    def fail(self) -> None:
        """Discard everything accumulated so far and enter ``FAILED``."""
        if self.state in TERMINAL_STATES:
            return
        self.results.clear()
        self.sources.clear()
        self.chunks_done = 0
        self.transition(RunState.FAILED)
        self.report("", 0)


# ── Reports ──────────────────────────────────────────────────────


@dataclass
class RunReport:
    """Summary of one run, written as ``run_report.json``.

    Contract invariant: ``rows_unmatched == rows_in - rows_matched``.
    """

    rows_in: int = 0
    unique_entries: int = 0
    chunks: int = 0
    results_received: int = 0
    rows_matched: int = 0
    rows_unmatched: int = 0
    missing_canonical_ids: list[int] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.rows_in = _to_non_negative_int(self.rows_in, "rows_in")
        self.unique_entries = _to_non_negative_int(self.unique_entries, "unique_entries")
        self.chunks = _to_non_negative_int(self.chunks, "chunks")
        self.results_received = _to_non_negative_int(self.results_received, "results_received")
        self.rows_matched = _to_non_negative_int(self.rows_matched, "rows_matched")
        self.rows_unmatched = _to_non_negative_int(self.rows_unmatched, "rows_unmatched")
        self.missing_canonical_ids = _to_int_list(
            self.missing_canonical_ids, "missing_canonical_ids"
        )
        self.warnings = _to_string_list(self.warnings, "warnings")
        if self.unique_entries > self.rows_in:
            raise ValueError("unique_entries must be <= rows_in")
        if self.rows_matched > self.rows_in:
            raise ValueError("rows_matched must be <= rows_in")
        if self.rows_unmatched != self.rows_in - self.rows_matched:
            raise ValueError("rows_unmatched must equal rows_in - rows_matched")

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_in": self.rows_in,
            "unique_entries": self.unique_entries,
            "chunks": self.chunks,
            "results_received": self.results_received,
            "rows_matched": self.rows_matched,
            "rows_unmatched": self.rows_unmatched,
            "missing_canonical_ids": list(self.missing_canonical_ids),
            "warnings": list(self.warnings),
        }


@dataclass
class RunManifest:
    """Audit-trail manifest for a single pipeline run."""

    tool: str = "story-proofer"
    version: str = ""
    mode: str = ""
    model: str = ""
    input_path: str = ""
    output_dir: str = ""
    created_at_utc: str = ""
    sha256: str = ""
    rows_in: int = 0
    unique_entries: int = 0
    status: str = "success"
    error_code: int | None = None
    error_message: str = ""

    def __post_init__(self) -> None:
        self.rows_in = _to_non_negative_int(self.rows_in, "rows_in")
        self.unique_entries = _to_non_negative_int(self.unique_entries, "unique_entries")
        if self.status not in {"success", "failed"}:
            raise ValueError(f"status must be 'success' or 'failed', got {self.status!r}")
        if self.error_code is not None:
            self.error_code = _to_non_negative_int(self.error_code, "error_code")

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool,
            "version": self.version,
            "mode": self.mode,
            "model": self.model,
            "input_path": self.input_path,
            "output_dir": self.output_dir,
            "created_at_utc": self.created_at_utc,
            "sha256": self.sha256,
            "rows_in": self.rows_in,
            "unique_entries": self.unique_entries,
            "status": self.status,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }
