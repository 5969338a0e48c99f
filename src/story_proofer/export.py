"""Export formatting — merge original rows with their results into tables."""

from __future__ import annotations

from collections.abc import Sequence

import pandas as pd

from story_proofer.models import ExpandedResult, Mode, Row, Source

CORRECTED_STORY = "corrected_story"
CORRECTED_SUB_STORY = "corrected_sub-story"
STORY_ANALYSIS = "story_analysis"
SUBSTORY_ANALYSIS = "substory_analysis"

_CORRECTED_COLUMNS = frozenset({CORRECTED_STORY, CORRECTED_SUB_STORY})

CHANGES_COLUMNS = ["row", "story", CORRECTED_STORY, "sub-story", CORRECTED_SUB_STORY]
SOURCES_COLUMNS = ["title", "url"]

NO_CHANGES_MESSAGE = "No spelling corrections were found in the uploaded file."


def _or_original(value: str | None, original: str) -> str:
    return original if value is None else value


def _merge_row(row: Row, result: ExpandedResult | None, mode: Mode) -> dict[str, str]:
    merged: dict[str, str] = {}
    if mode is Mode.FACT_CHECK:
        merged.update(row.fields)
        merged[STORY_ANALYSIS] = (result.story_analysis if result else None) or ""
        merged[SUBSTORY_ANALYSIS] = (result.sub_story_analysis if result else None) or ""
        return merged

    for key, value in row.fields.items():
        if key in _CORRECTED_COLUMNS:
            # stale output of an earlier run; regenerated below
            continue
        merged[key] = value
        if key == "story":
            merged[CORRECTED_STORY] = _or_original(
                result.corrected_story if result else None, value
            )
        elif key == "sub-story":
            merged[CORRECTED_SUB_STORY] = _or_original(
                result.corrected_sub_story if result else None, value
            )
    return merged


def build_export_records(
    rows: Sequence[Row], expanded: Sequence[ExpandedResult], mode: Mode
) -> list[dict[str, str]]:
    """Merge every original row with its result (if any), in upload order.

    A row without a result keeps its original text in the corrected columns
    (analysis columns are left blank). The internal row id is never emitted.
    """
    by_row = {result.row_id: result for result in expanded}
    return [_merge_row(row, by_row.get(row.id), mode) for row in rows]


def build_export_frame(
    rows: Sequence[Row], expanded: Sequence[ExpandedResult], mode: Mode
) -> pd.DataFrame:
    records = build_export_records(rows, expanded, mode)
    columns: list[str] = []
    seen: set[str] = set()
    for record in records:
        for name in record:
            if name not in seen:
                seen.add(name)
                columns.append(name)
    return pd.DataFrame(records, columns=columns)


def changed_rows(rows: Sequence[Row], expanded: Sequence[ExpandedResult]) -> pd.DataFrame:
    """Rows whose corrected story or sub-story differs from the original.

    ``row`` is the 1-based position of the row in the upload.
    """
    by_row = {result.row_id: result for result in expanded}
    changes: list[dict[str, object]] = []
    for row in rows:
        result = by_row.get(row.id)
        if result is None:
            continue
        story = _or_original(result.corrected_story, row.story)
        sub_story = _or_original(result.corrected_sub_story, row.sub_story)
        if story == row.story and sub_story == row.sub_story:
            continue
        changes.append(
            {
                "row": row.id + 1,
                "story": row.story,
                CORRECTED_STORY: story,
                "sub-story": row.sub_story,
                CORRECTED_SUB_STORY: sub_story,
            }
        )
    return pd.DataFrame(changes, columns=CHANGES_COLUMNS)


def sources_frame(sources: Sequence[Source]) -> pd.DataFrame:
    return pd.DataFrame([source.to_dict() for source in sources], columns=SOURCES_COLUMNS)
