"""Targeted tests for the normalize → deduplicate → dispatch → reconcile pipeline."""

from __future__ import annotations

import json
import math

import pytest

from story_proofer import CHUNK_DELAY_SECONDS, CHUNK_SIZE
from story_proofer.errors import (
    NoDataError,
    RemoteEmptyResponseError,
    RemoteFormatError,
    SchemaError,
)
from story_proofer.export import build_export_frame
from story_proofer.models import (
    CanonicalEntry,
    Mode,
    RemoteReply,
    ResultEntry,
    Row,
    RunContext,
    RunState,
    Source,
)
from story_proofer.pipeline import (
    build_run_report,
    chunk_entries,
    content_key,
    deduplicate,
    dispatch,
    normalize_rows,
    parse_reply,
    reconcile,
    run_pipeline,
    serialize_chunk,
)

SCENARIO_RECORDS = [
    {"story": "Teh cat", "sub-story": "ran"},
    {"story": "Teh cat", "sub-story": "ran"},
    {"story": "The dog", "sub-story": "jumped"},
]
SCENARIO_REPLY = (
    '[{"id":0,"story":"The cat","sub-story":"ran"},'
    '{"id":1,"story":"The dog","sub-story":"jumped"}]'
)


class _SpellFixer:
    """Deterministic stand-in for the model: fixes 'Teh' and echoes everything else."""

    def __init__(self, fail_on_call: int | None = None) -> None:
        self.calls: list[list[dict[str, object]]] = []
        self.fail_on_call = fail_on_call

    def __call__(self, payload: str, mode: Mode) -> RemoteReply:
        records = json.loads(payload)
        self.calls.append(records)
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            return RemoteReply(text="")
        if mode is Mode.FACT_CHECK:
            out = [
                {
                    "id": r["id"],
                    "story_analysis": f"checked: {r['story']}",
                    "sub-story_analysis": f"checked: {r['sub-story']}",
                }
                for r in records
            ]
            sources = [
                Source(title="Wire", url="https://example.org/wire"),
                Source(title=f"Chunk {len(self.calls)}", url=f"https://example.org/{len(self.calls)}"),
            ]
            return RemoteReply(text=json.dumps(out), sources=sources)
        out = [
            {
                "id": r["id"],
                "story": str(r["story"]).replace("Teh", "The"),
                "sub-story": str(r["sub-story"]).replace("Teh", "The"),
            }
            for r in records
        ]
        return RemoteReply(text=json.dumps(out, separators=(",", ":")))


class _Canned:
    def __init__(self, *replies: str | None) -> None:
        self.replies = list(replies)
        self.payloads: list[str] = []

    def __call__(self, payload: str, mode: Mode) -> RemoteReply:
        self.payloads.append(payload)
        return RemoteReply(text=self.replies[len(self.payloads) - 1])


def _ready_ctx(mode: Mode = Mode.CORRECT, **kwargs: object) -> RunContext:
    ctx = RunContext(mode=mode, **kwargs)  # type: ignore[arg-type]
    ctx.transition(RunState.VALIDATING)
    ctx.transition(RunState.DEDUPLICATING)
    return ctx


def _entries(n: int) -> list[CanonicalEntry]:
    return [CanonicalEntry(canonical_id=i, story=f"story {i}", sub_story=f"sub {i}") for i in range(n)]


# ── Normalizer ───────────────────────────────────────────────────


def test_normalize_lowercases_headers_and_assigns_sequential_ids() -> None:
    rows = normalize_rows(
        [
            {"Story": "a", "SUB-STORY": "b", "Region": "North"},
            {"Story": "c", "SUB-STORY": "d", "Region": "South"},
        ]
    )

    assert [row.id for row in rows] == [0, 1]
    assert dict(rows[0].fields) == {"story": "a", "sub-story": "b", "region": "North"}
    assert rows[1].story == "c"
    assert rows[1].sub_story == "d"


def test_normalize_header_collision_is_last_write_wins() -> None:
    rows = normalize_rows([{"Story": "first", "STORY": "second", "sub-story": ""}])

    assert rows[0].story == "second"


def test_normalize_only_checks_first_record() -> None:
    rows = normalize_rows([{"story": "a", "sub-story": "b"}, {"story": "c"}])

    assert rows[1].sub_story == ""
    assert "sub-story" not in rows[1].fields


def test_normalize_first_row_without_sub_story_raises_schema_error() -> None:
    with pytest.raises(SchemaError, match="sub-story"):
        normalize_rows([{"story": "a"}, {"story": "b", "sub-story": "c"}])


def test_normalize_empty_input_returns_no_rows() -> None:
    assert normalize_rows([]) == []


def test_rows_are_immutable() -> None:
    row = normalize_rows([{"story": "a", "sub-story": "b"}])[0]

    with pytest.raises(TypeError):
        row.fields["story"] = "changed"  # type: ignore[index]


# ── Deduplicator ─────────────────────────────────────────────────


def test_deduplicate_scenario_collapses_identical_pairs() -> None:
    rows = normalize_rows(SCENARIO_RECORDS)

    entries, groups = deduplicate(rows)

    assert entries == [
        CanonicalEntry(canonical_id=0, story="Teh cat", sub_story="ran"),
        CanonicalEntry(canonical_id=1, story="The dog", sub_story="jumped"),
    ]
    assert groups == {
        content_key("Teh cat", "ran"): [0, 1],
        content_key("The dog", "jumped"): [2],
    }


def test_deduplicate_is_content_exact() -> None:
    rows = normalize_rows(
        [
            {"story": "cat", "sub-story": "ran"},
            {"story": "Cat", "sub-story": "ran"},
            {"story": "cat ", "sub-story": "ran"},
            {"story": "cat", "sub-story": "ran"},
        ]
    )

    entries, groups = deduplicate(rows)

    assert len(entries) == 3
    assert groups[content_key("cat", "ran")] == [0, 3]


def test_deduplicate_does_not_merge_across_the_field_boundary() -> None:
    rows = normalize_rows(
        [
            {"story": "a b", "sub-story": "c"},
            {"story": "a", "sub-story": "b c"},
        ]
    )

    entries, _groups = deduplicate(rows)

    assert len(entries) == 2


def test_deduplicate_separator_characters_in_text_do_not_collide() -> None:
    rows = normalize_rows(
        [
            {"story": "a\x1fb", "sub-story": "c"},
            {"story": "a", "sub-story": "b\x1fc"},
            {"story": "a|~|b", "sub-story": "c"},
            {"story": "a", "sub-story": "b|~|c"},
        ]
    )

    entries, groups = deduplicate(rows)

    assert len(entries) == 4
    assert all(len(ids) == 1 for ids in groups.values())


def test_deduplicate_ids_follow_first_seen_order() -> None:
    records = [
        {"story": "z", "sub-story": "1"},
        {"story": "a", "sub-story": "2"},
        {"story": "z", "sub-story": "1"},
        {"story": "m", "sub-story": "3"},
    ]

    first, _ = deduplicate(normalize_rows(records))
    second, _ = deduplicate(normalize_rows(records))

    assert [(e.canonical_id, e.story) for e in first] == [(0, "z"), (1, "a"), (2, "m")]
    assert first == second


def test_deduplicate_treats_missing_fields_as_empty() -> None:
    rows = [Row(id=0, fields={"story": "a", "sub-story": ""}), Row(id=1, fields={"story": "a"})]

    entries, groups = deduplicate(rows)

    assert len(entries) == 1
    assert groups[content_key("a", "")] == [0, 1]


# ── Chunking + parsing ───────────────────────────────────────────


def test_chunk_entries_preserves_order_and_sizes() -> None:
    entries = _entries(45)

    chunks = chunk_entries(entries, CHUNK_SIZE)

    assert [len(c) for c in chunks] == [20, 20, 5]
    assert [e for chunk in chunks for e in chunk] == entries


def test_chunk_entries_rejects_non_positive_size() -> None:
    with pytest.raises(ValueError, match="chunk size"):
        chunk_entries(_entries(3), 0)


def test_serialize_chunk_is_minified_wire_shape() -> None:
    payload = serialize_chunk([CanonicalEntry(canonical_id=3, story="Teh", sub_story="é")])

    assert payload == '[{"id":3,"story":"Teh","sub-story":"é"}]'


def test_parse_reply_strips_code_fences() -> None:
    results = parse_reply('```json\n[{"id": 0, "story": "A", "sub-story": "B"}]\n```', Mode.CORRECT)

    assert results == [ResultEntry(canonical_id=0, corrected_story="A", corrected_sub_story="B")]


def test_parse_reply_keeps_backticks_inside_strings() -> None:
    text = '[{"id": 0, "story": "use ```code``` here", "sub-story": "B"}]'

    results = parse_reply(text, Mode.CORRECT)

    assert results[0].corrected_story == "use ```code``` here"

    fenced = parse_reply("```json\n" + text + "\n```", Mode.CORRECT)

    assert fenced == results


@pytest.mark.parametrize(
    "text",
    [
        'Here is the result:\n[{"id": 1, "story_analysis": "ok", "sub-story_analysis": "no"}]',
        "I could not process this request [] sorry",
        '[{"id": 0, "story": "A", "sub-story": "B"}] oops truncated {"id": 1,',
    ],
)
def test_parse_reply_rejects_text_around_the_array(text: str) -> None:
    with pytest.raises(RemoteFormatError, match="row 1"):
        parse_reply(text, Mode.FACT_CHECK)


@pytest.mark.parametrize("text", [None, "", "   \n"])
def test_parse_reply_empty_raises(text: str | None) -> None:
    with pytest.raises(RemoteEmptyResponseError, match="row 21"):
        parse_reply(text, Mode.CORRECT, first_row=21)


@pytest.mark.parametrize(
    "text",
    ["not json at all", '{"id": 0, "story": "A"}', "[1, 2]", "[{\"id\": 0,"],
)
def test_parse_reply_malformed_raises(text: str) -> None:
    with pytest.raises(RemoteFormatError):
        parse_reply(text, Mode.CORRECT)


def test_parse_reply_skips_items_without_usable_id_and_coerces_strings() -> None:
    text = '[{"story": "x"}, {"id": "2", "story": "A", "sub-story": "B"}, {"id": true}]'

    results = parse_reply(text, Mode.CORRECT)

    assert [r.canonical_id for r in results] == [2]


# ── Dispatcher ───────────────────────────────────────────────────


def test_dispatch_calls_once_per_chunk_and_paces_between_chunks() -> None:
    entries = _entries(45)
    processor = _SpellFixer()
    sleeps: list[float] = []
    ctx = _ready_ctx()

    results = dispatch(entries, processor, ctx, sleep=sleeps.append)

    assert len(processor.calls) == math.ceil(45 / CHUNK_SIZE)
    assert sleeps == [CHUNK_DELAY_SECONDS, CHUNK_DELAY_SECONDS]
    sent = [record for call in processor.calls for record in call]
    assert sent == [entry.to_record() for entry in entries]
    assert [r.canonical_id for r in results] == list(range(45))
    assert ctx.chunks_done == ctx.chunks_total == 3


def test_dispatch_single_chunk_never_sleeps() -> None:
    sleeps: list[float] = []

    dispatch(_entries(CHUNK_SIZE), _SpellFixer(), _ready_ctx(), sleep=sleeps.append)

    assert sleeps == []


def test_dispatch_reports_progress_before_each_chunk() -> None:
    updates: list[tuple[str, float]] = []
    ctx = _ready_ctx(on_progress=lambda msg, pct: updates.append((msg, pct)))

    dispatch(_entries(45), _SpellFixer(), ctx, sleep=lambda _s: None)

    assert updates[0] == ("Processing unique rows 1 to 20 of 45...", 0.0)
    assert updates[1][0] == "Processing unique rows 21 to 40 of 45..."
    assert updates[1][1] == pytest.approx(100 / 3)
    assert updates[2][0] == "Processing unique rows 41 to 45 of 45..."


def test_dispatch_failure_discards_accumulated_results() -> None:
    processor = _SpellFixer(fail_on_call=2)
    sleeps: list[float] = []
    ctx = _ready_ctx()

    with pytest.raises(RemoteEmptyResponseError, match="row 21"):
        dispatch(_entries(45), processor, ctx, sleep=sleeps.append)

    assert len(processor.calls) == 2
    assert sleeps == [CHUNK_DELAY_SECONDS]
    assert ctx.results == []
    assert ctx.state is RunState.FAILED
    assert ctx.progress == 0
    assert ctx.message == ""


def test_dispatch_without_entries_raises_no_data() -> None:
    with pytest.raises(NoDataError):
        dispatch([], _SpellFixer(), _ready_ctx())


def test_dispatch_collects_sources_without_duplicates() -> None:
    ctx = _ready_ctx(Mode.FACT_CHECK)

    results = dispatch(_entries(25), _SpellFixer(), ctx, sleep=lambda _s: None)

    assert [s.url for s in ctx.sources] == [
        "https://example.org/wire",
        "https://example.org/1",
        "https://example.org/2",
    ]
    assert results[0].story_analysis == "checked: story 0"
    assert results[0].corrected_story is None


# ── Reconciler ───────────────────────────────────────────────────


def test_reconcile_scenario_expands_onto_every_original_row() -> None:
    rows = normalize_rows(SCENARIO_RECORDS)
    entries, groups = deduplicate(rows)

    outcome = reconcile(entries, groups, parse_reply(SCENARIO_REPLY, Mode.CORRECT))

    assert len(outcome.expanded) == 3
    by_row = {e.row_id: e for e in outcome.expanded}
    assert (by_row[0].corrected_story, by_row[0].corrected_sub_story) == ("The cat", "ran")
    assert (by_row[1].corrected_story, by_row[1].corrected_sub_story) == ("The cat", "ran")
    assert (by_row[2].corrected_story, by_row[2].corrected_sub_story) == ("The dog", "jumped")
    assert outcome.missing_canonical_ids == []


def test_missing_result_is_dropped_by_reconcile_but_kept_in_export() -> None:
    rows = normalize_rows(SCENARIO_RECORDS)
    entries, groups = deduplicate(rows)
    results = parse_reply('[{"id":0,"story":"The cat","sub-story":"ran"}]', Mode.CORRECT)

    outcome = reconcile(entries, groups, results)

    assert sorted(e.row_id for e in outcome.expanded) == [0, 1]
    assert outcome.missing_canonical_ids == [1]

    frame = build_export_frame(rows, outcome.expanded, Mode.CORRECT)
    assert len(frame) == 3
    assert frame.loc[0, "corrected_story"] == "The cat"
    assert frame.loc[2, "story"] == "The dog"
    assert frame.loc[2, "corrected_story"] == "The dog"
    assert frame.loc[2, "corrected_sub-story"] == "jumped"


def test_reconcile_duplicate_ids_last_write_wins() -> None:
    rows = normalize_rows(SCENARIO_RECORDS)
    entries, groups = deduplicate(rows)
    results = [
        ResultEntry(canonical_id=0, corrected_story="first", corrected_sub_story="x"),
        ResultEntry(canonical_id=1, corrected_story="dog", corrected_sub_story="y"),
        ResultEntry(canonical_id=0, corrected_story="second", corrected_sub_story="z"),
    ]

    outcome = reconcile(entries, groups, results)

    by_row = {e.row_id: e for e in outcome.expanded}
    assert by_row[0].corrected_story == "second"
    assert by_row[1].corrected_story == "second"


def test_reconcile_tolerates_reordered_and_unknown_ids() -> None:
    rows = normalize_rows(SCENARIO_RECORDS)
    entries, groups = deduplicate(rows)
    results = [
        ResultEntry(canonical_id=7, corrected_story="ghost", corrected_sub_story=""),
        ResultEntry(canonical_id=1, corrected_story="The dog", corrected_sub_story="jumped"),
        ResultEntry(canonical_id=0, corrected_story="The cat", corrected_sub_story="ran"),
    ]

    outcome = reconcile(entries, groups, results)

    assert sorted(e.row_id for e in outcome.expanded) == [0, 1, 2]
    assert all(e.corrected_story != "ghost" for e in outcome.expanded)


# ── Orchestration ────────────────────────────────────────────────


def test_run_pipeline_walks_the_state_machine() -> None:
    records = [{"story": f"Teh {i}", "sub-story": "x"} for i in range(25)]
    ctx = RunContext()

    result = run_pipeline(records, _SpellFixer(), ctx, sleep=lambda _s: None)

    assert ctx.history == [
        RunState.IDLE,
        RunState.VALIDATING,
        RunState.DEDUPLICATING,
        RunState.DISPATCHING,
        RunState.DELAYING,
        RunState.DISPATCHING,
        RunState.RECONCILING,
        RunState.DONE,
    ]
    assert ctx.progress == 100
    assert ctx.message == "Correction complete. 25 rows processed based on 25 unique entries."
    assert len(result.expanded) == 25
    assert result.expanded[0].corrected_story == "The 0"


def test_run_pipeline_schema_error_before_any_remote_call() -> None:
    processor = _SpellFixer()
    ctx = RunContext()

    with pytest.raises(SchemaError):
        run_pipeline([{"story": "a"}, {"story": "b", "sub-story": "c"}], processor, ctx)

    assert processor.calls == []
    assert ctx.state is RunState.FAILED
    assert ctx.history == [RunState.IDLE, RunState.VALIDATING, RunState.FAILED]


def test_run_pipeline_without_rows_raises_no_data() -> None:
    ctx = RunContext()

    with pytest.raises(NoDataError):
        run_pipeline([], _SpellFixer(), ctx)

    assert ctx.state is RunState.FAILED


def test_run_pipeline_malformed_reply_fails_the_run() -> None:
    ctx = RunContext()

    with pytest.raises(RemoteFormatError):
        run_pipeline(SCENARIO_RECORDS, _Canned('{"not": "an array"}'), ctx)

    assert ctx.state is RunState.FAILED
    assert ctx.results == []


def test_run_pipeline_context_cannot_be_reused() -> None:
    ctx = RunContext()
    run_pipeline(SCENARIO_RECORDS, _Canned(SCENARIO_REPLY), ctx)

    with pytest.raises(RuntimeError, match="Illegal run state transition"):
        run_pipeline(SCENARIO_RECORDS, _Canned(SCENARIO_REPLY), ctx)


def test_run_pipeline_is_idempotent_with_idempotent_processor() -> None:
    records = SCENARIO_RECORDS * 15

    first = run_pipeline(records, _SpellFixer(), RunContext(), sleep=lambda _s: None)
    second = run_pipeline(records, _SpellFixer(), RunContext(), sleep=lambda _s: None)

    assert first.expanded == second.expanded


def test_run_pipeline_sparse_reply_keeps_expanded_below_row_count() -> None:
    ctx = RunContext()

    result = run_pipeline(
        SCENARIO_RECORDS,
        _Canned('[{"id":1,"story":"The dog","sub-story":"jumped"}]'),
        ctx,
    )

    assert len(result.expanded) == 1 < len(result.rows)
    assert result.missing_canonical_ids == [0]
    assert ctx.warnings == ["No result returned for 1 unique entries (2 rows); original text kept"]

    report = build_run_report(result, ctx)
    assert report.rows_in == 3
    assert report.unique_entries == 2
    assert report.chunks == 1
    assert report.results_received == 1
    assert report.rows_matched == 1
    assert report.rows_unmatched == 2
    assert report.missing_canonical_ids == [0]


def test_run_pipeline_fact_check_collects_sources() -> None:
    ctx = RunContext(mode=Mode.FACT_CHECK)

    result = run_pipeline(SCENARIO_RECORDS, _SpellFixer(), ctx)

    assert ctx.message.startswith("Fact-check complete.")
    assert [s.title for s in result.sources] == ["Wire", "Chunk 1"]
    assert {e.story_analysis for e in result.expanded} == {"checked: Teh cat", "checked: The dog"}
