"""Error kinds raised by the proofreading pipeline.

Every error aborts the current run; nothing is retried.
"""

from __future__ import annotations


class ProofreadError(Exception):
    """Base class for all pipeline failures."""


class InputFormatError(ProofreadError, ValueError):
    """Input file is missing, unreadable, or of an unsupported type."""


class SchemaError(ProofreadError, ValueError):
    """Required ``story`` / ``sub-story`` columns are absent."""


class NoDataError(ProofreadError, ValueError):
    """Processing was requested with no rows to process."""


class ConfigError(ProofreadError):
    """Remote processor cannot be configured (e.g. no API key)."""


class RemoteEmptyResponseError(ProofreadError):
    """The remote model returned no content for a chunk."""


class RemoteFormatError(ProofreadError):
    """The remote payload could not be decoded or is not an array."""
