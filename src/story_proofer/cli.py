"""CLI entry point for story-proofer."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import NoReturn

import pandas as pd
import typer
from google.genai import errors as genai_errors
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table as RichTable

from story_proofer import (
    CHUNK_DELAY_SECONDS,
    CHUNK_SIZE,
    DEFAULT_MODEL,
    REQUIRED_COLUMNS,
    __version__,
)
from story_proofer.errors import (
    NoDataError,
    ProofreadError,
    RemoteEmptyResponseError,
    RemoteFormatError,
)
from story_proofer.export import (
    CORRECTED_STORY,
    CORRECTED_SUB_STORY,
    NO_CHANGES_MESSAGE,
    build_export_frame,
    changed_rows,
    sources_frame,
)
from story_proofer.io import frame_to_records, load_table, sha256_file, write_json
from story_proofer.models import Mode, Row, RunContext, RunManifest
from story_proofer.pipeline import (
    Processor,
    build_run_report,
    deduplicate,
    normalize_rows,
    run_pipeline,
)
from story_proofer.remote import GeminiProcessor
from story_proofer.report import write_report
from story_proofer.run_report import write_run_report

app = typer.Typer(
    name="sproof",
    help="story-proofer — Spell-check and fact-check spreadsheet stories with Gemini.",
    add_completion=False,
    no_args_is_help=True,
)
console = Console()

EXIT_INTERNAL = 1
EXIT_INPUT = 2
EXIT_REMOTE = 3


def _noop(*_args: object, **_kwargs: object) -> None:
    return None


def _printer(quiet: bool) -> Callable[..., None]:
    return _noop if quiet else console.print


def _err(msg: str) -> None:
    console.print(f"[red]x[/red] {msg}")


# ── Helpers ──────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"story-proofer v{__version__}")
        raise typer.Exit()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    # the SDK's HTTP stack is chatty at DEBUG
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _make_processor(model: str) -> Processor:
    return GeminiProcessor(model=model)


def _write_manifest(
    out_dir: Path,
    input_file: Path,
    created_at: str,
    *,
    mode: str,
    model: str = "",
    rows_in: int = 0,
    unique_entries: int = 0,
    status: str = "success",
    error_code: int | None = None,
    error_message: str = "",
) -> Path:
    sha256 = ""
    try:
        sha256 = sha256_file(input_file)
    except OSError:
        pass

    manifest = RunManifest(
        version=__version__,
        mode=mode,
        model=model,
        input_path=str(input_file.resolve()),
        output_dir=str(out_dir.resolve()),
        created_at_utc=created_at,
        sha256=sha256,
        rows_in=rows_in,
        unique_entries=unique_entries,
        status=status,
        error_code=error_code,
        error_message=error_message,
    )
    return write_json(out_dir / "run_manifest.json", manifest.to_dict())


def _fail(
    out_dir: Path,
    input_file: Path,
    created_at: str,
    *,
    message: str,
    error_code: int,
    mode: str,
    model: str = "",
    rows_in: int = 0,
    unique_entries: int = 0,
) -> NoReturn:
    manifest_path = _write_manifest(
        out_dir,
        input_file,
        created_at,
        mode=mode,
        model=model,
        rows_in=rows_in,
        unique_entries=unique_entries,
        status="failed",
        error_code=error_code,
        error_message=message,
    )
    _err(message)
    console.print(f"  Manifest -> {manifest_path}")
    raise typer.Exit(code=error_code)


def _load_rows(input_file: Path) -> list[Row]:
    """Load, flatten and validate *input_file*; raises ``ProofreadError``."""
    raw_df = load_table(input_file)
    return normalize_rows(frame_to_records(raw_df))


def _progress_printer(quiet: bool) -> Callable[[str, float], None] | None:
    if quiet:
        return None

    def _show(message: str, progress: float) -> None:
        if message:
            console.print(f"  [cyan]{progress:5.1f}%[/cyan] {message}")

    return _show


def _print_changes(changes_df: pd.DataFrame, limit: int) -> None:
    if changes_df.empty:
        console.print(f"  {NO_CHANGES_MESSAGE}")
        return
    tbl = RichTable(title=f"Corrections ({len(changes_df)} rows)", show_lines=True)
    tbl.add_column("Row", justify="right")
    tbl.add_column("Original Story", style="red")
    tbl.add_column("Corrected Story", style="green")
    tbl.add_column("Original Sub-Story", style="red")
    tbl.add_column("Corrected Sub-Story", style="green")
    for record in changes_df.head(limit).to_dict("records"):
        tbl.add_row(
            str(record["row"]),
            str(record["story"]),
            str(record[CORRECTED_STORY]),
            str(record["sub-story"]),
            str(record[CORRECTED_SUB_STORY]),
        )
    console.print(tbl)
    if len(changes_df) > limit:
        console.print(f"  … {len(changes_df) - limit} more in the Changes sheet")


# ── Callbacks ────────────────────────────────────────────────────


@app.callback()
def main(
    version: bool | None = typer.Option(
        None, "--version", "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """story-proofer CLI."""


# ── run command ──────────────────────────────────────────────────


@app.command()
def run(
    input_file: Path = typer.Option(
        ..., "--input", "-i",
        help="Path to XLSX, XLS or CSV input file.",
        exists=True, readable=True,
    ),
    out_dir: Path = typer.Option(
        Path("output"), "--out-dir", "-o",
        help="Output directory for workbook + run report + manifest.",
    ),
    mode: Mode = typer.Option(
        Mode.CORRECT, "--mode",
        help="correct: fix spelling only. fact-check: verify claims with web search.",
    ),
    model: str = typer.Option(
        DEFAULT_MODEL, "--model",
        help="Gemini model name.",
    ),
    preview: int = typer.Option(
        10, "--preview",
        min=0,
        help="Number of corrected rows to show in the console.",
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q",
        help="Suppress informational output; still writes all artifacts.",
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v",
        help="Enable debug logging.",
    ),
) -> None:
    """Proofread (or fact-check) the story columns of a spreadsheet."""
    _configure_logging(verbose)
    echo = _printer(quiet)
    created_at = _utcnow_iso()
    out_dir.mkdir(parents=True, exist_ok=True)

    if not quiet:
        console.print(Panel(
            f"[bold]story-proofer[/bold] v{__version__}\n"
            f"Input:  {input_file}\nOutput: {out_dir}\n"
            f"Mode:   {mode.value} ({model})",
            title="Pipeline Start", border_style="magenta",
        ))

    # ── Load + validate ──────────────────────────────────────────
    echo("[blue]>[/blue] Loading input file …")
    try:
        rows = _load_rows(input_file)
        if not rows:
            raise NoDataError("No data to process. Please upload a valid spreadsheet.")
        processor = _make_processor(model)
    except ProofreadError as exc:
        _fail(
            out_dir, input_file, created_at,
            message=str(exc), error_code=EXIT_INPUT, mode=mode.value, model=model,
        )
    echo(f"  {len(rows)} rows loaded")

    # ── Process ──────────────────────────────────────────────────
    echo("[blue]>[/blue] Processing …")
    ctx = RunContext(mode=mode, on_progress=_progress_printer(quiet))
    records = [dict(row.fields) for row in rows]
    try:
        result = run_pipeline(records, processor, ctx)
    except (RemoteEmptyResponseError, RemoteFormatError, genai_errors.APIError) as exc:
        _fail(
            out_dir, input_file, created_at,
            message=f"An error occurred: {exc}",
            error_code=EXIT_REMOTE, mode=mode.value, model=model, rows_in=len(rows),
        )
    except ProofreadError as exc:
        _fail(
            out_dir, input_file, created_at,
            message=str(exc), error_code=EXIT_INPUT, mode=mode.value, model=model,
            rows_in=len(rows),
        )
    except Exception as exc:
        _fail(
            out_dir, input_file, created_at,
            message=f"Unexpected internal error: {exc}",
            error_code=EXIT_INTERNAL, mode=mode.value, model=model, rows_in=len(rows),
        )

    # ── Export ───────────────────────────────────────────────────
    try:
        report = build_run_report(result, ctx)
        if not quiet:
            for warning in report.warnings:
                console.print(f"  [yellow]![/yellow] {warning}")

        echo("[blue]>[/blue] Writing workbook …")
        export_df = build_export_frame(result.rows, result.expanded, mode)
        changes_df = changed_rows(result.rows, result.expanded) if mode is Mode.CORRECT else None
        sources_df = sources_frame(result.sources) if mode is Mode.FACT_CHECK else None
        report_path = write_report(
            out_dir, mode, export_df,
            changes_df=changes_df, sources_df=sources_df, report=report,
        )
        echo(f"  Workbook   -> {report_path}")
        run_report_path = write_run_report(out_dir, report)
        echo(f"  Run report -> {run_report_path}")
        manifest_path = _write_manifest(
            out_dir, input_file, created_at,
            mode=mode.value, model=model,
            rows_in=report.rows_in, unique_entries=report.unique_entries,
        )
        echo(f"  Manifest   -> {manifest_path}")
    except Exception as exc:
        _fail(
            out_dir, input_file, created_at,
            message=f"Unexpected internal error: {exc}",
            error_code=EXIT_INTERNAL, mode=mode.value, model=model,
            rows_in=len(result.rows), unique_entries=len(result.entries),
        )

    if not quiet:
        if changes_df is not None and preview:
            _print_changes(changes_df, preview)
        if sources_df is not None:
            console.print(f"  {len(sources_df)} sources cited")
        console.print(Panel(
            f"[green]Done[/green] — {ctx.message}\n{report_path}",
            title="Pipeline Complete", border_style="green",
        ))


# ── validate command ─────────────────────────────────────────────


@app.command()
def validate(
    input_file: Path = typer.Option(
        ..., "--input", "-i",
        help="Path to XLSX, XLS or CSV input file.",
        exists=True, readable=True,
    ),
    out_dir: Path = typer.Option(
        Path("output"), "--out-dir", "-o",
        help="Output directory for the manifest.",
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q",
        help="Suppress informational output; still writes the manifest.",
    ),
) -> None:
    """Check a file and count its unique entries without calling the model.

    Writes run_manifest.json only.
    Exit 0 = OK, exit 2 = unreadable file, missing columns, or no rows.
    """
    created_at = _utcnow_iso()
    out_dir.mkdir(parents=True, exist_ok=True)

    try:
        rows = _load_rows(input_file)
        if not rows:
            raise NoDataError("No data to process. Please upload a valid spreadsheet.")
    except ProofreadError as exc:
        console.print(f"  Expected columns: {', '.join(REQUIRED_COLUMNS)}")
        _fail(
            out_dir, input_file, created_at,
            message=str(exc), error_code=EXIT_INPUT, mode="validate",
        )

    entries, _groups = deduplicate(rows)
    chunks = math.ceil(len(entries) / CHUNK_SIZE)
    manifest_path = _write_manifest(
        out_dir, input_file, created_at,
        mode="validate", rows_in=len(rows), unique_entries=len(entries),
    )

    if not quiet:
        tbl = RichTable(title="Validation Summary", show_lines=True)
        tbl.add_column("Check", style="bold")
        tbl.add_column("Result")
        tbl.add_row("Rows", str(len(rows)))
        tbl.add_row("Unique entries", str(len(entries)))
        tbl.add_row("Duplicate rows", str(len(rows) - len(entries)))
        tbl.add_row("Remote calls", str(chunks))
        tbl.add_row("Minimum pacing", f"{max(chunks - 1, 0) * CHUNK_DELAY_SECONDS:.1f}s")
        tbl.add_row("Status", "[green]PASS[/green]")
        console.print(tbl)
    console.print(f"  Manifest -> {manifest_path}")
