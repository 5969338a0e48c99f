"""Excel report writer — produces the corrected / fact-checked workbook."""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, cast

import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.table import Table, TableStyleInfo
from openpyxl.worksheet.worksheet import Worksheet

from story_proofer.export import NO_CHANGES_MESSAGE
from story_proofer.models import Mode, RunReport

# ── Style constants ──────────────────────────────────────────────

HEADER_FONT = Font(name="Calibri", bold=True, size=11, color="FFFFFF")
HEADER_FILL = PatternFill(start_color="5B2C87", end_color="5B2C87", fill_type="solid")
HEADER_ALIGN = Alignment(horizontal="center", vertical="center", wrap_text=True)
CELL_ALIGN = Alignment(vertical="top", wrap_text=True)

TITLE_FONT = Font(name="Calibri", bold=True, size=14, color="5B2C87")
SUBTITLE_FONT = Font(name="Calibri", bold=False, size=10, color="808080")
LABEL_FONT = Font(name="Calibri", bold=True, size=11)
VALUE_FONT = Font(name="Calibri", size=11)
WARN_FONT = Font(name="Calibri", italic=True, size=10, color="CC6600")

NOTE_FILL = PatternFill(start_color="FFF2CC", end_color="FFF2CC", fill_type="solid")
STAT_FILL = PatternFill(start_color="E4DFEC", end_color="E4DFEC", fill_type="solid")

REPORT_FILENAMES: dict[Mode, str] = {
    Mode.CORRECT: "corrected_spelling.xlsx",
    Mode.FACT_CHECK: "fact_check.xlsx",
}
DATA_SHEET_NAMES: dict[Mode, str] = {
    Mode.CORRECT: "Corrected_Data",
    Mode.FACT_CHECK: "Fact_Check",
}

_AUTO_WIDTH_SAMPLE_ROWS = 300
_MAX_COLUMN_WIDTH = 60
_FORMULA_PREFIX = "="


# ── Helpers ──────────────────────────────────────────────────────


def _style_header(ws: Worksheet, ncols: int) -> None:
    for c in range(1, ncols + 1):
        cell = ws.cell(row=1, column=c)
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = HEADER_ALIGN


def _auto_width(ws: Worksheet) -> None:
    max_row = min(ws.max_row, _AUTO_WIDTH_SAMPLE_ROWS + 1)  # include header row
    for c_idx in range(1, ws.max_column + 1):
        letter = get_column_letter(c_idx)
        width = 0
        for row in ws.iter_rows(min_row=1, max_row=max_row, min_col=c_idx, max_col=c_idx):
            cell = row[0]
            width = max(width, len(str(cell.value or "")))
        width += 4
        ws.column_dimensions[letter].width = min(width, _MAX_COLUMN_WIDTH)


def _sanitize_table_name(name: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9_]", "_", name)
    if not cleaned:
        cleaned = "Table"
    if not re.match(r"^[A-Za-z_]", cleaned):
        cleaned = f"_{cleaned}"
    return cleaned[:255]


def _unique_table_name(ws: Worksheet, base_name: str) -> str:
    parent = ws.parent
    if parent is None:
        return base_name

    existing: set[str] = set()
    for sheet in parent.worksheets:
        existing.update(cast(Iterable[str], sheet.tables.keys()))
    if base_name not in existing:
        return base_name

    suffix = 1
    while True:
        suffix_str = f"_{suffix}"
        candidate = f"{base_name[: 255 - len(suffix_str)]}{suffix_str}"
        if candidate not in existing:
            return candidate
        suffix += 1


def _add_excel_table(ws: Worksheet, name: str, ncols: int, nrows: int) -> None:
    """Turn the data range into a proper Excel Table object."""
    if nrows < 1 or ncols < 1:
        return
    end_col = get_column_letter(ncols)
    ref = f"A1:{end_col}{nrows + 1}"  # +1 for header
    table_name = _unique_table_name(ws, _sanitize_table_name(name))
    table = Table(displayName=table_name, ref=ref)
    table.tableStyleInfo = TableStyleInfo(
        name="TableStyleMedium12", showFirstColumn=False,
        showLastColumn=False, showRowStripes=True, showColumnStripes=False,
    )
    ws.add_table(table)


def _excel_value(val: Any) -> Any:
    try:
        if pd.isna(val):
            return None
    except (TypeError, ValueError):
        pass
    return val


def _write_cell(ws: Worksheet, row: int, column: int, val: Any) -> None:
    cell = ws.cell(row=row, column=column, value=_excel_value(val))
    # story text is data, never a formula; keep it verbatim
    if isinstance(cell.value, str) and cell.value.startswith(_FORMULA_PREFIX):
        cell.data_type = "s"
    cell.alignment = CELL_ALIGN


def _df_to_sheet(
    wb: Workbook,
    name: str,
    df: pd.DataFrame,
    *,
    as_table: bool = True,
    empty_message: str = "No data",
) -> Worksheet:
    ws = wb.create_sheet(title=name)
    col_names = [str(c) for c in df.columns]

    if not col_names or df.empty:
        ws.cell(row=1, column=1, value=empty_message).font = VALUE_FONT
        ws.column_dimensions["A"].width = max(18, len(empty_message) + 4)
        return ws

    for c_idx, col_name in enumerate(col_names, 1):
        ws.cell(row=1, column=c_idx, value=col_name)
    for r_idx, row_vals in enumerate(df.itertuples(index=False, name=None), 2):
        for c_idx, val in enumerate(row_vals, 1):
            _write_cell(ws, r_idx, c_idx, val)
    _style_header(ws, len(col_names))
    ws.freeze_panes = "A2"
    if not as_table:
        ws.auto_filter.ref = ws.dimensions
    _auto_width(ws)
    if as_table:
        _add_excel_table(ws, name, len(col_names), len(df))
    return ws


def _write_summary(wb: Workbook, mode: Mode, report: RunReport) -> None:
    ws = wb.create_sheet(title="Summary")

    title = "Fact-check" if mode is Mode.FACT_CHECK else "Spelling correction"
    ws.cell(row=1, column=1, value=f"story-proofer — {title}").font = TITLE_FONT
    ws.merge_cells("A1:D1")
    generated = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    ws.cell(row=2, column=1, value=f"Generated {generated}").font = SUBTITLE_FONT
    ws.merge_cells("A2:D2")

    row = 4
    stats: list[tuple[str, int]] = [
        ("Rows in", report.rows_in),
        ("Unique entries", report.unique_entries),
        ("Remote calls", report.chunks),
        ("Results received", report.results_received),
        ("Rows matched", report.rows_matched),
        ("Rows unmatched", report.rows_unmatched),
    ]
    for label, value in stats:
        lbl_cell = ws.cell(row=row, column=1, value=label)
        lbl_cell.font = LABEL_FONT
        lbl_cell.fill = STAT_FILL
        val_cell = ws.cell(row=row, column=2, value=value)
        val_cell.font = VALUE_FONT
        val_cell.fill = STAT_FILL
        val_cell.alignment = Alignment(horizontal="right")
        row += 1

    row += 1
    ws.cell(row=row, column=1, value="Notes").font = LABEL_FONT
    for c in range(1, 5):
        ws.cell(row=row, column=c).fill = NOTE_FILL
    row += 1
    notes = report.warnings or ["No warnings"]
    for note in notes:
        text = f"⚠ {note}" if report.warnings else note
        ws.cell(row=row, column=1, value=text).font = WARN_FONT if report.warnings else VALUE_FONT
        for c in range(1, 5):
            ws.cell(row=row, column=c).fill = NOTE_FILL
        row += 1

    ws.column_dimensions["A"].width = 22
    ws.column_dimensions["B"].width = 14
    ws.column_dimensions["C"].width = 18
    ws.column_dimensions["D"].width = 18


# ── Public API ───────────────────────────────────────────────────


def write_report(
    out_dir: Path,
    mode: Mode,
    export_df: pd.DataFrame,
    *,
    changes_df: pd.DataFrame | None = None,
    sources_df: pd.DataFrame | None = None,
    report: RunReport | None = None,
) -> Path:
    """Write the mode's workbook into *out_dir* and return the path.

    The merged data sheet always comes first so the file can be uploaded
    again as input.
    """
    if report is None:
        report = RunReport()

    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    report_path = out_dir / REPORT_FILENAMES[mode]

    wb = Workbook()
    active_sheet = wb.active
    if active_sheet is not None:
        wb.remove(active_sheet)  # remove default sheet

    _df_to_sheet(wb, DATA_SHEET_NAMES[mode], export_df)

    if mode is Mode.CORRECT and changes_df is not None:
        _df_to_sheet(wb, "Changes", changes_df, empty_message=NO_CHANGES_MESSAGE)

    if mode is Mode.FACT_CHECK and sources_df is not None and not sources_df.empty:
        _df_to_sheet(wb, "Sources", sources_df)

    _write_summary(wb, mode, report)

    tmp_path = out_dir / f"{report_path.stem}.tmp.xlsx"
    wb.save(tmp_path)
    tmp_path.replace(report_path)
    return report_path
