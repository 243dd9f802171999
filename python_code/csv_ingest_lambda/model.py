"""
Data models for the CSV Ingestion Pipeline.

This module defines the data structures passed between the pipeline stages.
Storage metadata and outcomes are plain dataclasses; the validated CSV row is
a pydantic model so that it can only be constructed from cells that passed
schema validation.
"""

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

NUMERIC_TEXT = re.compile(r"[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")


@dataclass(frozen=True)
class StorageFile:
    """One object in the landing bucket, as reported by the lister."""

    path: str
    size: int
    last_modified: datetime


@dataclass(frozen=True)
class FileFingerprint:
    """
    Identity of one byte-for-byte version of a file.

    Attributes:
        path: The object key.
        size: Object size in bytes, from storage metadata.
        last_modified: Modification time, from storage metadata.
        fingerprint: `path:size:last_modified` joined as a string. Any edit to
                     the object yields a new fingerprint, even under the same key.
    """

    path: str
    size: int
    last_modified: datetime
    fingerprint: str

    @property
    def file_id(self) -> str:
        """Compact key for the reservation store, stable for this file version."""
        return hashlib.sha256(self.fingerprint.encode("utf-8")).hexdigest()[:32]


class CSVRow(BaseModel):
    """
    A data row that passed schema validation, tagged with its position.

    Metric cells stay raw strings here; converting them to numbers is the
    transformer's job because an unparseable optional metric is omitted
    rather than failing the row.
    """

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, extra="ignore", populate_by_name=True)

    row_index: int = Field(ge=1)
    file_id: str
    timestamp: datetime = Field(alias="Timestamp")
    pm25: str = Field(alias="PM2.5", min_length=1)
    pm1: Optional[str] = Field(default=None, alias="PM1")
    pm10: Optional[str] = Field(default=None, alias="PM10")
    temperature: Optional[str] = Field(default=None, alias="Temperature")
    humidity: Optional[str] = Field(default=None, alias="Humidity")

    @field_validator("timestamp", mode="before")
    @classmethod
    def _require_iso_text(cls, value: object) -> object:
        # pydantic would otherwise read "1704067200" as a Unix epoch.
        if isinstance(value, (int, float)) or (isinstance(value, str) and NUMERIC_TEXT.fullmatch(value.strip())):
            raise ValueError("Timestamp must be an ISO-8601 date-time, not a number")
        return value

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


@dataclass(frozen=True)
class Payload:
    """The canonical telemetry document sent to the ingestion API."""

    device_id: str
    mission_id: str
    ts: str
    metrics: Dict[str, float]

    def to_dict(self) -> Dict:
        return {
            "device_id": self.device_id,
            "mission_id": self.mission_id,
            "ts": self.ts,
            "metrics": dict(self.metrics),
        }


@dataclass(frozen=True)
class TransformedRow:
    """A payload ready for delivery plus the keys used to deliver it once."""

    row_index: int
    payload: Payload
    payload_hash: str
    idempotency_key: str


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    SUCCESS = "success"
    FAILED = "failed"


class RowOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class SenderState(str, Enum):
    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"
    DRAINING = "draining"
    FINALIZED = "finalized"


@dataclass(frozen=True)
class SendResult:
    """Outcome of one POST to the ingestion API."""

    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


@dataclass
class ProcessingStats:
    """
    Per-file counters for rows that reached the sender.

    Rows dropped during validation or transformation are not counted here;
    they are reported separately as `FileResult.dropped_rows`. Once a file is
    finalized, `total_rows == successful_rows + failed_rows + skipped_rows`.
    """

    total_rows: int = 0
    successful_rows: int = 0
    failed_rows: int = 0
    skipped_rows: int = 0

    def record(self, outcome: RowOutcome) -> None:
        self.total_rows += 1
        if outcome is RowOutcome.SUCCESS:
            self.successful_rows += 1
        elif outcome is RowOutcome.FAILED:
            self.failed_rows += 1
        else:
            self.skipped_rows += 1


class FileStatus(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class FileResult:
    """What happened to a single file during a poll cycle."""

    path: str
    status: FileStatus
    file_id: Optional[str] = None
    device_id: Optional[str] = None
    stats: ProcessingStats = field(default_factory=ProcessingStats)
    dropped_rows: int = 0
    reason: Optional[str] = None


@dataclass
class PollResult:
    """Summary of one polling cycle, used for the response body and metrics."""

    files: List[FileResult] = field(default_factory=list)

    def count(self, status: FileStatus) -> int:
        return sum(1 for f in self.files if f.status is status)

    def summary(self) -> Dict[str, int]:
        return {
            "files_seen": len(self.files),
            "files_processed": self.count(FileStatus.PROCESSED),
            "files_skipped": self.count(FileStatus.SKIPPED),
            "files_failed": self.count(FileStatus.FAILED),
            "rows_total": sum(f.stats.total_rows for f in self.files),
            "rows_sent": sum(f.stats.successful_rows for f in self.files),
            "rows_failed": sum(f.stats.failed_rows for f in self.files),
            "rows_skipped": sum(f.stats.skipped_rows for f in self.files),
            "rows_dropped": sum(f.dropped_rows for f in self.files),
        }
