"""
Row validation and payload transformation.

Both stages are generators so the pipeline stays pull-based: a row is only
decoded, validated, and transformed when the sender asks for the next one.
Nothing here holds more than one decoded chunk of the source stream.
"""

import codecs
import csv
import hashlib
import json
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from aws_lambda_powertools import Logger
from pydantic import ValidationError

from .errors import ConfigurationError, CsvStreamError, DownloadError
from .model import CSVRow, Payload, TransformedRow

READ_CHUNK_BYTES = 64 * 1024
MAX_LINE_CHARS = 1024 * 1024
LINE_END = re.compile(r"\r\n|\r|\n")

# Column header for each optional metric key.
OPTIONAL_METRIC_COLUMNS = {
    "pm1": "PM1",
    "pm10": "PM10",
    "temperature": "Temperature",
    "humidity": "Humidity",
}


def _split_lines(text: str, final: bool) -> Tuple[List[str], str]:
    """Splits off complete lines (`\\r\\n`, `\\r` or `\\n` terminated) and returns the rest."""
    lines: List[str] = []
    start = 0
    for match in LINE_END.finditer(text):
        # A trailing "\r" may be the first half of a "\r\n" split across chunks.
        if not final and match.group() == "\r" and match.end() == len(text):
            break
        lines.append(text[start : match.end()])
        start = match.end()
    return lines, text[start:]


def iter_text_lines(
    stream: Any,
    chunk_size: int = READ_CHUNK_BYTES,
    max_line_chars: int = MAX_LINE_CHARS,
) -> Iterator[str]:
    """
    Decodes a binary stream into lines, keeping line endings for the csv module.

    Reads `chunk_size` bytes at a time; a trailing partial line is carried into
    the next chunk. Raises `csv.Error` once a partial line grows beyond
    `max_line_chars`.
    """
    decoder = codecs.getincrementaldecoder("utf-8-sig")()
    pending = ""
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        lines, pending = _split_lines(pending + decoder.decode(chunk), final=False)
        yield from lines
        if len(pending) > max_line_chars:
            raise csv.Error(f"line exceeds {max_line_chars} characters without a line terminator")
    lines, pending = _split_lines(pending + decoder.decode(b"", final=True), final=True)
    yield from lines
    if pending:
        yield pending


class RowValidator:
    """
    Parses a CSV byte stream and yields validated, indexed rows.

    Every non-blank data row takes the next `row_index` before it is validated,
    so a row keeps its index across runs even if its neighbours are dropped.
    Invalid rows are logged and dropped; `dropped` counts them.
    """

    def __init__(self, file_id: str, logger: Logger, max_line_chars: int = MAX_LINE_CHARS):
        self.file_id = file_id
        self.logger = logger
        self.max_line_chars = max_line_chars
        self.rows_read = 0
        self.dropped = 0

    def validate(self, stream: Any) -> Iterator[CSVRow]:
        """
        Yields a `CSVRow` for each valid data row of `stream`.

        Raises:
            CsvStreamError: If the stream cannot be decoded or parsed as CSV.
            DownloadError: If reading the underlying object fails mid-stream.
        """
        reader = csv.reader(iter_text_lines(stream, max_line_chars=self.max_line_chars), strict=True)
        header: Optional[List[str]] = None
        try:
            for cells in reader:
                if not cells or all(not c.strip() for c in cells):
                    continue
                if header is None:
                    header = [c.strip() for c in cells]
                    continue
                self.rows_read += 1
                row = self._validate_row(self.rows_read, header, cells)
                if row is not None:
                    yield row
        except DownloadError as e:
            e.file_id = e.file_id or self.file_id
            raise
        except (csv.Error, UnicodeDecodeError) as e:
            raise CsvStreamError(
                f"Unparseable CSV near line {reader.line_num}: {e}",
                file_id=self.file_id,
                details={"line": reader.line_num},
            ) from e

    def _validate_row(self, row_index: int, header: List[str], cells: List[str]) -> Optional[CSVRow]:
        # Ragged rows: missing cells are absent, extra cells are ignored.
        record: Dict[str, Any] = {name: value.strip() for name, value in zip(header, cells) if value.strip()}
        record["row_index"] = row_index
        record["file_id"] = self.file_id
        try:
            row = CSVRow.model_validate(record)
        except ValidationError as e:
            self.dropped += 1
            self.logger.warning(
                "Invalid CSV row dropped.",
                extra={
                    "file_id": self.file_id,
                    "row_index": row_index,
                    "errors": [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
                },
            )
            return None
        self.logger.debug("Validated CSV row.", extra={"file_id": self.file_id, "row_index": row_index})
        return row


def format_ts(value: datetime) -> str:
    """Formats a timestamp as UTC ISO-8601 with milliseconds, e.g. `2024-01-01T00:00:00.000Z`."""
    utc = value.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def parse_number(raw: Optional[str]) -> Optional[float]:
    """Returns the finite float value of `raw`, or None."""
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def payload_hash(payload: Payload) -> str:
    """
    SHA-256 of the payload's canonical JSON.

    Keys are sorted at every level, so the same logical payload hashes the same
    regardless of how its metrics were inserted.
    """
    canonical = json.dumps(payload.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def idempotency_key(payload: Payload) -> str:
    return f"{payload.device_id}|{payload.mission_id}|{payload.ts}"


class PayloadTransformer:
    """
    Maps validated rows of one device's file to canonical payloads.

    Raises:
        ConfigurationError: On construction, if `device_id` has no sensor mapping.
    """

    def __init__(
        self,
        device_id: str,
        sensor_map: Mapping[str, int],
        enabled_metrics: Iterable[str],
        logger: Logger,
    ):
        if device_id not in sensor_map:
            raise ConfigurationError(f"No sensor mapping found for device: {device_id}", details={"device_id": device_id})
        self.device_id = device_id
        self.sensor_id = sensor_map[device_id]
        self.mission_id = f"mission-{self.sensor_id}"
        self.enabled_metrics = frozenset(enabled_metrics)
        self.logger = logger
        self.dropped = 0

    def transform_row(self, row: CSVRow) -> Optional[TransformedRow]:
        """Returns the transformed row, or None if it must be dropped."""
        pm25 = parse_number(row.pm25)
        if pm25 is None:
            self.dropped += 1
            self.logger.warning(
                "Invalid PM2.5 value; row dropped.",
                extra={"file_id": row.file_id, "row_index": row.row_index, "value": row.pm25},
            )
            return None

        metrics: Dict[str, float] = {"pm25": pm25}
        for metric in OPTIONAL_METRIC_COLUMNS:
            if metric not in self.enabled_metrics:
                continue
            value = parse_number(getattr(row, metric))
            if value is not None:
                metrics[metric] = value

        payload = Payload(
            device_id=self.device_id,
            mission_id=self.mission_id,
            ts=format_ts(row.timestamp),
            metrics=metrics,
        )
        return TransformedRow(
            row_index=row.row_index,
            payload=payload,
            payload_hash=payload_hash(payload),
            idempotency_key=idempotency_key(payload),
        )

    def transform(self, rows: Iterable[CSVRow]) -> Iterator[TransformedRow]:
        for row in rows:
            transformed = self.transform_row(row)
            if transformed is not None:
                yield transformed
