"""I/O helpers — load input files, flatten them to records, write JSON artifacts."""

from __future__ import annotations

import hashlib
import json
import zipfile
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Literal, cast

import pandas as pd

from story_proofer.errors import InputFormatError

EXCEL_SUFFIXES = (".xlsx", ".xlsm", ".xltx", ".xltm")

# ── Loading ──────────────────────────────────────────────────────


def load_table(path: Path, delimiter: str | None = None) -> pd.DataFrame:
    """Load a CSV or Excel file (first sheet) and return a raw DataFrame.

    Raises
    ------
    InputFormatError
        If *path* does not exist, is not a file, has an unsupported
        extension, or cannot be decoded/parsed.
    """
    path = Path(path)
    if not path.exists():
        raise InputFormatError(f"Input file not found: {path}")
    if not path.is_file():
        raise InputFormatError(f"Input path is not a file: {path}")

    suffix = path.suffix.lower()
    if suffix == ".csv":
        last_exc: Exception | None = None
        sep = delimiter if delimiter else None
        engine: Literal["c", "python"] = "c" if delimiter else "python"
        for encoding in ("utf-8-sig", "utf-8", "latin-1"):
            try:
                return pd.read_csv(
                    path,
                    dtype="string",
                    sep=sep,
                    engine=engine,
                    encoding=encoding,
                    encoding_errors="strict",
                    na_filter=True,
                    keep_default_na=False,
                    na_values=[""],
                )
            except (UnicodeDecodeError, pd.errors.ParserError) as exc:
                last_exc = exc
        raise InputFormatError(f"Could not read CSV {path} (decode or parse failed)") from last_exc

    read_excel = cast(Callable[..., pd.DataFrame], getattr(pd, "read_excel"))
    if suffix in EXCEL_SUFFIXES:
        try:
            return read_excel(path, engine="openpyxl", dtype="string")
        except (OSError, ValueError, KeyError, zipfile.BadZipFile) as exc:
            raise InputFormatError(
                f"Error reading Excel file {path}. Please ensure it is a valid format."
            ) from exc

    if suffix == ".xls":
        try:
            return read_excel(path, engine="xlrd", dtype="string")
        except ImportError as exc:
            raise InputFormatError(
                "Unsupported .xls input unless 'xlrd' is installed. "
                "Either convert to .xlsx or add dependency: pip install xlrd"
            ) from exc
        except (OSError, ValueError) as exc:
            raise InputFormatError(
                f"Error reading Excel file {path}. Please ensure it is a valid format."
            ) from exc

    raise InputFormatError(
        f"Unsupported file type: {suffix!r}. Use .xlsx, .xls, or .csv"
    )


def frame_to_records(df: pd.DataFrame) -> list[dict[str, str]]:
    """Flatten *df* into ordered ``{column: text}`` records.

    Missing cells become ``""``; every other value is rendered with ``str``.
    Column names are kept as-is (lower-casing happens in the normalizer).
    """
    columns = [str(c) for c in df.columns]
    records: list[dict[str, str]] = []
    for values in df.itertuples(index=False, name=None):
        record: dict[str, str] = {}
        for name, value in zip(columns, values):
            record[name] = _cell_text(value)
        records.append(record)
    return records


def _cell_text(value: Any) -> str:
    try:
        if pd.isna(value):
            return ""
    except (TypeError, ValueError):
        pass
    return str(value)


# ── Writing ──────────────────────────────────────────────────────


def sha256_file(path: Path, block_size: int = 1 << 16) -> str:
    """Return the hex SHA-256 digest of *path* (recorded in the run manifest)."""
    digest = hashlib.sha256()
    with Path(path).open("rb") as fh:
        while block := fh.read(block_size):
            digest.update(block)
    return digest.hexdigest()


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    item = getattr(obj, "item", None)
    if callable(item):
        converted = item()
        if isinstance(converted, (str, int, float, bool)) or converted is None:
            return converted
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def write_json(path: Path, data: Any) -> Path:
    """Write *data* as pretty-printed JSON to *path* (atomic + deterministic)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    payload = json.dumps(
        data,
        indent=2,
        sort_keys=True,
        ensure_ascii=False,
        default=_json_default,
    ) + "\n"
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(payload, encoding="utf-8")
    tmp_path.replace(path)
    return path
