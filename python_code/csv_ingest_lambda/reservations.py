"""
Durable work reservations for row delivery.

A reservation is an atomic claim on `(file_id, row_index)`. The sender only
posts a row after winning its claim, so two runs over the same file version
never deliver the same row twice. The DynamoDB implementation uses a
conditional `PutItem`, the same primitive used for S3 object deduplication.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Protocol

from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError
from mypy_boto3_dynamodb.service_resource import Table

from .model import ReservationStatus


class ReservationStore(Protocol):
    """The contract the pipeline relies on; implementations must be durable."""

    def reserve(self, file_id: str, row_index: int, payload_hash: str) -> bool:
        """Claims a row. Returns False, without side effects, if it is already claimed."""
        ...

    def update_status(
        self,
        file_id: str,
        row_index: int,
        status: ReservationStatus,
        error_message: Optional[str] = None,
    ) -> None:
        ...

    def record_file_stats(
        self,
        file_id: str,
        total: int,
        successful: int,
        failed: int,
        skipped: int,
        completed_at: datetime,
        attributes: Optional[Mapping[str, str]] = None,
    ) -> None:
        ...

    def is_file_completed(self, file_id: str) -> bool:
        ...


class DynamoReservationStore:
    """
    Reservation store backed by two DynamoDB tables.

    The reservation table is keyed by `FileID` (hash) and `RowIndex` (range);
    the file stats table is keyed by `FileID`.

    Failed reservations stay claimed unless the store is created with
    `reclaim_failed=True`, in which case a later `reserve` may atomically take
    over a row whose status is `failed`. The pipeline itself never demotes a
    reservation.
    """

    def __init__(
        self,
        reservation_table: Table,
        file_stats_table: Table,
        logger: Logger,
        reclaim_failed: bool = False,
    ):
        self.reservations = reservation_table
        self.file_stats = file_stats_table
        self.logger = logger
        self.reclaim_failed = reclaim_failed

    def reserve(self, file_id: str, row_index: int, payload_hash: str) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        put_args: Dict[str, Any] = {
            "Item": {
                "FileID": file_id,
                "RowIndex": row_index,
                "PayloadHash": payload_hash,
                "Status": ReservationStatus.RESERVED.value,
                "ReservedAt": now,
                "UpdatedAt": now,
            },
            "ConditionExpression": "attribute_not_exists(FileID)",
        }
        if self.reclaim_failed:
            put_args["ConditionExpression"] += " OR #status = :failed"
            put_args["ExpressionAttributeNames"] = {"#status": "Status"}
            put_args["ExpressionAttributeValues"] = {":failed": ReservationStatus.FAILED.value}

        try:
            self.reservations.put_item(**put_args)
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                self.logger.debug("Row already reserved.", extra={"file_id": file_id, "row_index": row_index})
                return False
            self.logger.exception("Unexpected DynamoDB error during row reservation.")
            raise

    def update_status(
        self,
        file_id: str,
        row_index: int,
        status: ReservationStatus,
        error_message: Optional[str] = None,
    ) -> None:
        update = "SET #status = :status, UpdatedAt = :now"
        values: Dict[str, Any] = {
            ":status": status.value,
            ":now": datetime.now(timezone.utc).isoformat(),
        }
        if error_message:
            update += ", ErrorMessage = :error"
            values[":error"] = error_message[:1000]
        else:
            update += " REMOVE ErrorMessage"

        self.reservations.update_item(
            Key={"FileID": file_id, "RowIndex": row_index},
            UpdateExpression=update,
            ExpressionAttributeNames={"#status": "Status"},
            ExpressionAttributeValues=values,
        )

    def record_file_stats(
        self,
        file_id: str,
        total: int,
        successful: int,
        failed: int,
        skipped: int,
        completed_at: datetime,
        attributes: Optional[Mapping[str, str]] = None,
    ) -> None:
        item: Dict[str, Any] = dict(attributes or {})
        item.update(
            {
                "FileID": file_id,
                "TotalRows": total,
                "SuccessfulRows": successful,
                "FailedRows": failed,
                "SkippedRows": skipped,
                "CompletedAt": completed_at.isoformat(),
            }
        )
        self.file_stats.put_item(Item=item)
        self.logger.info("Recorded file stats.", extra={"file_id": file_id, "total_rows": total})

    def is_file_completed(self, file_id: str) -> bool:
        response = self.file_stats.get_item(Key={"FileID": file_id}, ConsistentRead=True)
        return "CompletedAt" in response.get("Item", {})
