"""story-proofer — Spell-check and fact-check spreadsheet stories with Gemini."""

__version__ = "0.2.0"

REQUIRED_COLUMNS: list[str] = ["story", "sub-story"]

CHUNK_SIZE = 20
"""Unique entries sent per remote call."""

CHUNK_DELAY_SECONDS = 1.5
"""Fixed pause between remote calls (static throughput cap)."""

DEFAULT_MODEL = "gemini-flash-lite-latest"
