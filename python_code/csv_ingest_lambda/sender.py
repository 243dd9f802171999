"""
Delivery of transformed rows to the ingestion API.

`BatchedSender` is the pipeline's sink. It pulls rows from the transformer,
buffers at most one batch, and delivers each batch with a scatter/gather over
a thread pool: every row is reserved, posted, and recorded independently, and
the next batch is not started until the current one has fully settled.

Flow control comes from the pull: while a batch is being flushed the sender
does not ask upstream for more rows, so the validator and transformer never
run more than one batch ahead of delivery.
"""

from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Iterable, List, Mapping, Optional, Tuple

import httpx
from aws_lambda_powertools import Logger

from .model import (
    Payload,
    ProcessingStats,
    ReservationStatus,
    RowOutcome,
    SendResult,
    SenderState,
    TransformedRow,
)
from .reservations import ReservationStore

AUTH_FAILURE_STATUSES = {401, 403}


class IngestApiPoster:
    """Posts payloads to `POST {base_url}/payloads` with an `Idempotency-Key` header."""

    def __init__(self, http_client: httpx.Client, path: str = "/payloads"):
        self.http_client = http_client
        self.path = path
        self.auth_failed = False

    def post(self, payload: Payload, idempotency_key: str) -> SendResult:
        """
        Sends one payload.

        Returns a failed `SendResult` for non-2xx responses. Transport errors
        (`httpx.HTTPError`, including timeouts) are raised to the caller.
        """
        response = self.http_client.post(
            self.path,
            json=payload.to_dict(),
            headers={"Idempotency-Key": idempotency_key},
        )
        if response.is_success:
            return SendResult(success=True, status_code=response.status_code)
        if response.status_code in AUTH_FAILURE_STATUSES:
            self.auth_failed = True
        return SendResult(success=False, status_code=response.status_code, error=_error_message(response))


def _error_message(response: httpx.Response) -> str:
    """Prefers the API's machine-readable `error` field over the raw body."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        error = body["error"]
        if isinstance(error, dict):
            error = error.get("code") or error.get("message") or str(error)
        return f"HTTP {response.status_code}: {error}"
    text = response.text.strip()
    return f"HTTP {response.status_code}: {text[:500]}" if text else f"HTTP {response.status_code}"


class BatchedSender:
    """
    Delivers each row of one file at most once successfully.

    States: `accumulating -> flushing -> accumulating -> ... -> draining ->
    finalized`. `consume` may be called once; it returns the file's
    `ProcessingStats` after persisting them to the reservation store.

    Args:
        file_id: Reservation key of the file version being delivered.
        store: Durable reservation store.
        poster: Ingestion API poster.
        logger: The Powertools Logger instance for structured logging.
        batch_size: Maximum number of buffered rows.
        max_workers: Threads used to deliver one batch.
        file_attributes: Extra attributes stored alongside the file stats.
    """

    def __init__(
        self,
        file_id: str,
        store: ReservationStore,
        poster: IngestApiPoster,
        logger: Logger,
        batch_size: int = 100,
        max_workers: int = 10,
        file_attributes: Optional[Mapping[str, str]] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.file_id = file_id
        self.store = store
        self.poster = poster
        self.logger = logger
        self.batch_size = batch_size
        self.max_workers = max(1, min(max_workers, batch_size))
        self.file_attributes = dict(file_attributes or {})
        self.state = SenderState.ACCUMULATING
        self.stats = ProcessingStats()
        self.batches_flushed = 0
        self.peak_buffered = 0
        self._buffer: List[TransformedRow] = []
        self._consumed = False

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def consume(self, rows: Iterable[TransformedRow]) -> ProcessingStats:
        if self._consumed:
            raise RuntimeError(f"Sender for file {self.file_id} has already consumed a stream.")
        self._consumed = True

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="row-sender") as executor:
            for row in rows:
                self._buffer.append(row)
                self.peak_buffered = max(self.peak_buffered, len(self._buffer))
                if len(self._buffer) >= self.batch_size:
                    self._flush(executor)

            self.state = SenderState.DRAINING
            if self._buffer:
                self._flush(executor)

        completed_at = datetime.now(timezone.utc)
        self.store.record_file_stats(
            self.file_id,
            total=self.stats.total_rows,
            successful=self.stats.successful_rows,
            failed=self.stats.failed_rows,
            skipped=self.stats.skipped_rows,
            completed_at=completed_at,
            attributes=self.file_attributes,
        )
        self.state = SenderState.FINALIZED
        self.logger.info(
            "Payload delivery completed.",
            extra={
                "file_id": self.file_id,
                "total_rows": self.stats.total_rows,
                "successful_rows": self.stats.successful_rows,
                "failed_rows": self.stats.failed_rows,
                "skipped_rows": self.stats.skipped_rows,
                "batches": self.batches_flushed,
            },
        )
        return self.stats

    def _flush(self, executor: ThreadPoolExecutor) -> None:
        resume_state = self.state
        self.state = SenderState.FLUSHING
        batch = sorted(self._buffer[: self.batch_size], key=lambda r: r.row_index)
        del self._buffer[: self.batch_size]

        # Scatter in row order, then gather every outcome before returning.
        futures: List[Tuple[TransformedRow, Future]] = [(row, executor.submit(self._deliver, row)) for row in batch]
        for row, future in futures:
            try:
                outcome = future.result()
            except Exception:
                self.logger.exception("Unhandled error delivering row.", extra={"file_id": self.file_id, "row_index": row.row_index})
                outcome = RowOutcome.FAILED
            self.stats.record(outcome)

        self.batches_flushed += 1
        self.state = resume_state
        self.logger.debug("Batch settled.", extra={"file_id": self.file_id, "size": len(batch), "batch": self.batches_flushed})

    def _deliver(self, row: TransformedRow) -> RowOutcome:
        log_extra = {"file_id": self.file_id, "row_index": row.row_index, "idempotency_key": row.idempotency_key}
        try:
            reserved = self.store.reserve(self.file_id, row.row_index, row.payload_hash)
        except Exception as e:
            self.logger.error("Reservation failed; row not sent.", extra={**log_extra, "error": str(e)})
            return RowOutcome.FAILED

        if not reserved:
            self.logger.debug("Row already reserved, skipping.", extra=log_extra)
            return RowOutcome.SKIPPED

        try:
            result = self.poster.post(row.payload, row.idempotency_key)
        except Exception as e:
            result = SendResult(success=False, error=f"{type(e).__name__}: {e}")

        if result.success:
            self._set_status(row, ReservationStatus.SUCCESS)
            self.logger.debug("Payload sent.", extra={**log_extra, "status": result.status_code})
            return RowOutcome.SUCCESS

        self.logger.warning("Payload send failed.", extra={**log_extra, "status": result.status_code, "error": result.error})
        self._set_status(row, ReservationStatus.FAILED, result.error or "unknown error")
        return RowOutcome.FAILED

    def _set_status(self, row: TransformedRow, status: ReservationStatus, error: Optional[str] = None) -> None:
        # The delivery outcome is already decided; a bookkeeping failure must not change it.
        try:
            self.store.update_status(self.file_id, row.row_index, status, error)
        except Exception:
            self.logger.exception(
                "Could not update reservation status.",
                extra={"file_id": self.file_id, "row_index": row.row_index, "status": status.value},
            )
