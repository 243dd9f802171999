"""
Core business logic for the CSV Ingestion Pipeline.

These functions contain no global state. They receive all dependencies,
including the Powertools logger and metrics, from the main handler in app.py,
allowing them to be unit-tested in isolation against mocked AWS services and
a mocked HTTP transport.
"""

from typing import Any, Dict, Mapping, Optional, Tuple

from aws_lambda_powertools import Logger, Metrics
from aws_lambda_powertools.metrics import MetricUnit
from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_s3 import S3Client

from . import storage
from .config import PipelineConfig
from .errors import ConfigurationError, PipelineError
from .model import FileResult, FileStatus, PollResult, ProcessingStats, StorageFile
from .reservations import ReservationStore
from .rows import PayloadTransformer, RowValidator
from .sender import BatchedSender, IngestApiPoster

# Metric name -> key in the cycle summary.
COUNT_METRICS = {
    "FilesProcessed": "files_processed",
    "FilesSkipped": "files_skipped",
    "FilesFailed": "files_failed",
    "RowsSent": "rows_sent",
    "RowsFailed": "rows_failed",
    "RowsSkipped": "rows_skipped",
    "RowsDropped": "rows_dropped",
}


def process_csv_stream(
    stream: Any,
    file_id: str,
    transformer: PayloadTransformer,
    store: ReservationStore,
    poster: IngestApiPoster,
    config: PipelineConfig,
    logger: Logger,
    file_attributes: Optional[Mapping[str, str]] = None,
) -> Tuple[ProcessingStats, int]:
    """
    Runs one file's byte stream through validate -> transform -> send.

    Returns:
        The file's `ProcessingStats` and the number of rows dropped before
        reaching the sender.

    Raises:
        CsvStreamError: If the stream is not parseable; stats are not recorded.
    """
    validator = RowValidator(file_id, logger)
    sender = BatchedSender(
        file_id,
        store,
        poster,
        logger,
        batch_size=config.batch_size,
        max_workers=config.max_send_workers,
        file_attributes=file_attributes,
    )
    stats = sender.consume(transformer.transform(validator.validate(stream)))

    dropped = validator.dropped + transformer.dropped
    if dropped:
        logger.warning(
            f"{dropped} rows dropped before delivery.",
            extra={"file_id": file_id, "validation_drops": validator.dropped, "transform_drops": transformer.dropped},
        )
    return stats, dropped


def process_file(
    storage_file: StorageFile,
    s3_client: S3Client,
    store: ReservationStore,
    poster: IngestApiPoster,
    sensor_map: Mapping[str, int],
    config: PipelineConfig,
    logger: Logger,
) -> FileResult:
    """
    Processes a single file version end to end.

    Download, parse, configuration, and reservation store failures abort this
    file only and are reported as a `failed` result; the file's stats are not
    recorded, so the next poll picks it up again.
    """
    fp = storage.fingerprint_file(storage_file)
    result = FileResult(path=fp.path, file_id=fp.file_id, status=FileStatus.SKIPPED)

    device_id = storage.device_id_from_path(fp.path)
    if not device_id:
        logger.warning("Cannot resolve device id from path, skipping.", extra={"path": fp.path})
        result.reason = "unresolved_device"
        return result
    result.device_id = device_id

    if config.allowed_device_ids and device_id not in config.allowed_device_ids:
        logger.warning("Device not in allow-list, skipping.", extra={"path": fp.path, "device_id": device_id})
        result.reason = "device_not_allowed"
        return result

    try:
        if config.skip_completed_files and store.is_file_completed(fp.file_id):
            logger.debug("File version already completed, skipping.", extra={"path": fp.path, "fingerprint": fp.fingerprint})
            result.reason = "already_completed"
            return result

        logger.info(
            "Processing file.",
            extra={"path": fp.path, "file_id": fp.file_id, "device_id": device_id, "size": fp.size},
        )
        transformer = PayloadTransformer(device_id, sensor_map, config.enabled_metrics, logger)
        with storage.open_stream(s3_client, config.landing_bucket, fp.path, logger) as stream:
            stats, dropped = process_csv_stream(
                stream,
                fp.file_id,
                transformer,
                store,
                poster,
                config,
                logger,
                file_attributes={"Path": fp.path, "Fingerprint": fp.fingerprint, "DeviceID": device_id},
            )
    except ConfigurationError as e:
        logger.error(f"Configuration error, file aborted: {e}", extra={"path": fp.path, "device_id": device_id, **e.details})
        result.status = FileStatus.FAILED
        result.reason = str(e)
        return result
    except PipelineError as e:
        logger.error(f"File aborted: {e}", extra={"path": fp.path, "file_id": fp.file_id, "error_type": type(e).__name__})
        result.status = FileStatus.FAILED
        result.reason = str(e)
        return result
    except (ClientError, BotoCoreError) as e:
        # Reservation store outages (throttling, timeouts) abort this file only.
        logger.error(f"AWS error, file aborted: {e}", extra={"path": fp.path, "file_id": fp.file_id, "error_type": type(e).__name__})
        result.status = FileStatus.FAILED
        result.reason = str(e)
        return result

    result.status = FileStatus.PROCESSED
    result.stats = stats
    result.dropped_rows = dropped
    return result


def run_poll_cycle(
    s3_client: S3Client,
    store: ReservationStore,
    poster: IngestApiPoster,
    config: PipelineConfig,
    logger: Logger,
) -> PollResult:
    """
    Lists the landing prefix and processes every candidate file, oldest first.

    Files are processed sequentially. A listing failure yields an empty result.
    """
    sensor_map = storage.load_sensor_map(s3_client, config.landing_bucket, config.sensor_map_key, logger)
    files = storage.list_files(s3_client, config.landing_bucket, config.landing_prefix, config.file_extensions, logger)

    result = PollResult()
    for storage_file in files:
        result.files.append(process_file(storage_file, s3_client, store, poster, sensor_map, config, logger))

    logger.info("Polling cycle completed.", extra=result.summary())
    return result


def emit_metrics(metrics: Metrics, environment: str, status: str, payload: Dict[str, Any]) -> None:
    """
    Publishes the cycle's counters in CloudWatch Embedded Metric Format.

    Dashboards and alarms should filter/group by the 'Environment' dimension.
    """
    metrics.add_dimension(name="Environment", value=environment)
    for name, key in COUNT_METRICS.items():
        metrics.add_metric(name=name, unit=MetricUnit.Count, value=payload.get(key, 0))
    if status == "Failure":
        metrics.add_metric(name="CycleFailures", unit=MetricUnit.Count, value=1)
    if "latency_ms" in payload:
        metrics.add_metric(name="ProcessingLatencyMs", unit=MetricUnit.Milliseconds, value=payload["latency_ms"])
    metrics.add_metadata(key="Status", value=status)
    metrics.flush_metrics()
