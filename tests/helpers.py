"""
tests/helpers.py

Test doubles and builders shared across the suite.
"""

import json
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import httpx
from botocore.exceptions import ClientError, ResponseStreamingError

from csv_ingest_lambda.model import Payload, ReservationStatus, TransformedRow
from csv_ingest_lambda.rows import idempotency_key, payload_hash

TEST_BUCKET = "landing-bucket"
RESERVATION_TABLE = "row-reservations"
FILE_STATS_TABLE = "file-stats"
API_URL = "https://ingest.example.com"
API_SECRET_ID = "ingest/api-key"


class InMemoryReservationStore:
    """Thread-safe stand-in for the durable reservation store."""

    def __init__(self):
        self._lock = threading.Lock()
        self.reservations: Dict[Tuple[str, int], dict] = {}
        self.file_stats: Dict[str, dict] = {}
        self.reserve_calls = 0

    def reserve(self, file_id: str, row_index: int, payload_hash: str) -> bool:
        with self._lock:
            self.reserve_calls += 1
            if (file_id, row_index) in self.reservations:
                return False
            self.reservations[(file_id, row_index)] = {
                "payload_hash": payload_hash,
                "status": ReservationStatus.RESERVED,
                "error": None,
            }
            return True

    def update_status(self, file_id, row_index, status, error_message=None) -> None:
        with self._lock:
            entry = self.reservations[(file_id, row_index)]
            entry["status"] = status
            entry["error"] = error_message

    def record_file_stats(self, file_id, total, successful, failed, skipped, completed_at, attributes=None) -> None:
        with self._lock:
            self.file_stats[file_id] = {
                "total": total,
                "successful": successful,
                "failed": failed,
                "skipped": skipped,
                "completed_at": completed_at,
                "attributes": dict(attributes or {}),
            }

    def is_file_completed(self, file_id: str) -> bool:
        return file_id in self.file_stats

    def status_of(self, file_id: str, row_index: int) -> Optional[ReservationStatus]:
        entry = self.reservations.get((file_id, row_index))
        return entry["status"] if entry else None


class RecordingApi:
    """An httpx MockTransport handler that records requests and answers 201 by default."""

    def __init__(self):
        self._lock = threading.Lock()
        self.requests: List[httpx.Request] = []
        self.responder: Optional[Callable[[httpx.Request], httpx.Response]] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
        if self.responder is not None:
            return self.responder(request)
        return httpx.Response(201, json={"status": "accepted"})

    @property
    def bodies(self) -> List[dict]:
        return [json.loads(r.content) for r in self.requests]

    @property
    def keys(self) -> List[str]:
        return [r.headers["Idempotency-Key"] for r in self.requests]


def make_row(index: int, pm25: float = 10.0, device_id: str = "dev1") -> TransformedRow:
    """A transformed row whose timestamp (minutes:seconds) encodes its index."""
    payload = Payload(
        device_id=device_id,
        mission_id="mission-7",
        ts=f"2024-01-01T00:{index // 60:02d}:{index % 60:02d}.000Z",
        metrics={"pm25": pm25},
    )
    return TransformedRow(
        row_index=index,
        payload=payload,
        payload_hash=payload_hash(payload),
        idempotency_key=idempotency_key(payload),
    )


def key_for(index: int) -> str:
    return make_row(index).idempotency_key


def csv_bytes(*lines: str) -> bytes:
    return ("\n".join(lines) + "\n").encode("utf-8")


def create_tables(dynamodb) -> None:
    dynamodb.create_table(
        TableName=RESERVATION_TABLE,
        KeySchema=[
            {"AttributeName": "FileID", "KeyType": "HASH"},
            {"AttributeName": "RowIndex", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "FileID", "AttributeType": "S"},
            {"AttributeName": "RowIndex", "AttributeType": "N"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )
    dynamodb.create_table(
        TableName=FILE_STATS_TABLE,
        KeySchema=[{"AttributeName": "FileID", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "FileID", "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )


def put_csv(s3_client, key: str, body: bytes) -> None:
    s3_client.put_object(Bucket=TEST_BUCKET, Key=key, Body=body)


def listed_object(key: str, size: int, last_modified: datetime) -> dict:
    return {"Key": key, "Size": size, "LastModified": last_modified}


class InterruptedBody:
    """A `StreamingBody` stand-in that serves `data` once, then fails like a dropped connection."""

    def __init__(self, data: bytes):
        self._chunks = [data]
        self.closed = False

    def read(self, amt=None) -> bytes:
        if self._chunks:
            return self._chunks.pop(0)
        raise ResponseStreamingError(error="connection reset")

    def close(self) -> None:
        self.closed = True


def throttled(operation: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "Rate exceeded"}},
        operation,
    )
