"""
Exception hierarchy for the ingestion pipeline.

Each exception aborts processing of a single file; the poll cycle catches
`PipelineError` per file and carries on with the next one. Row-level
problems (malformed rows, send failures, reservation conflicts) are never
raised past the component that detects them.
"""

from typing import Optional


class PipelineError(Exception):
    """Base exception for file-level pipeline failures."""

    def __init__(
        self,
        message: str,
        *,
        path: Optional[str] = None,
        file_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        self.path = path
        self.file_id = file_id
        self.details = details or {}
        super().__init__(message)


class DownloadError(PipelineError):
    """The object could not be opened or fully read (not found, denied, network)."""

    def __init__(self, message: str, *, error_code: Optional[str] = None, **kwargs) -> None:
        self.error_code = error_code
        super().__init__(message, **kwargs)


class CsvStreamError(PipelineError):
    """The byte stream is not parseable as CSV."""


class ConfigurationError(PipelineError):
    """Setup is missing, e.g. a device without a sensor mapping."""
