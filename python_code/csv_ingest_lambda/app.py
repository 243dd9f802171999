"""
Main AWS Lambda handler for the CSV Ingestion Pipeline.

This module serves as the primary entry point and orchestrator for the function.
Its responsibilities include:
  - Loading and validating configuration from environment variables.
  - Initializing and caching stateful clients (AWS clients, the API client).
  - Running one polling cycle per scheduled invocation.
  - Calling testable business logic functions from the 'core' module.
  - Managing the overall success/failure state and emitting the final metrics.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx
from aws_lambda_powertools import Logger, Metrics

from . import clients, core
from .config import load_config
from .reservations import DynamoReservationStore
from .sender import IngestApiPoster

# --- 1. SETUP: Configuration and Clients (loaded once at cold start) ---

CONFIG = load_config()

logger = Logger(service="csv-ingest", level=CONFIG.log_level)
metrics = Metrics(namespace="CsvIngestPipeline", service="csv-ingest")

S3, DDB, SECRETS = clients.get_boto_clients()

STORE = DynamoReservationStore(
    DDB.Table(CONFIG.reservation_table),
    DDB.Table(CONFIG.file_stats_table),
    logger,
    reclaim_failed=CONFIG.reclaim_failed_reservations,
)

API_CLIENT: Optional[httpx.Client] = None
API_SECRET_CACHE = {"timestamp": datetime.min.replace(tzinfo=timezone.utc)}

# --- 2. STATEFUL CLIENT CACHE ---


def get_api_client(force_refresh: bool = False) -> httpx.Client:
    """
    Retrieves the ingestion API client, using a time-based cache for the API key.

    Args:
        force_refresh: If True, bypasses the cache and fetches the key again.
                       Used after the API rejected the cached credentials.

    Returns:
        An httpx client with bearer authentication for the ingestion API.

    Raises:
        botocore.exceptions.ClientError: If retrieving the secret fails.
    """
    global API_CLIENT, API_SECRET_CACHE
    now = datetime.now(timezone.utc)
    cache_expiry = API_SECRET_CACHE["timestamp"] + timedelta(seconds=CONFIG.secret_cache_ttl_seconds)
    if API_CLIENT and not force_refresh and now < cache_expiry:
        return API_CLIENT

    logger.info(f"Refreshing ingestion API credentials. Force refresh: {force_refresh}")
    secret_value = SECRETS.get_secret_value(SecretId=CONFIG.ingest_api_secret_id)
    api_key = json.loads(secret_value["SecretString"])["api_key"]

    if API_CLIENT is not None:
        API_CLIENT.close()
    API_CLIENT = clients.build_http_client(CONFIG.ingest_api_url, api_key, CONFIG.api_timeout_seconds)
    API_SECRET_CACHE = {"timestamp": now}
    return API_CLIENT


def _build_response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    """Centralized helper to build the final Lambda response."""
    return {"statusCode": status_code, "body": json.dumps(body)}


# --- 3. LAMBDA HANDLER ---


def handler(event: Dict, context: Any):
    """
    Main Lambda entry point, invoked on a schedule.

    The event body is not used. Every invocation:
    1. Loads the sensor mapping and lists the landing prefix, oldest first.
    2. Processes each new file version through the streaming pipeline.
    3. Emits success or failure metrics and returns the cycle summary.

    File-level failures are reported in the summary and retried on the next
    invocation. Unexpected errors are re-raised so the invocation is marked
    as failed.
    """
    start_time = datetime.now(timezone.utc)
    logger.info("Polling cycle started.", extra={"bucket": CONFIG.landing_bucket, "prefix": CONFIG.landing_prefix})

    try:
        poster = IngestApiPoster(get_api_client())
        poll_result = core.run_poll_cycle(S3, STORE, poster, CONFIG, logger)

        if poster.auth_failed:
            # Expire the cached key so the next invocation fetches a fresh one.
            logger.warning("Ingestion API rejected credentials; API key will be refreshed.")
            API_SECRET_CACHE["timestamp"] = datetime.min.replace(tzinfo=timezone.utc)

        latency_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        log_payload = {**poll_result.summary(), "latency_ms": latency_ms}
        core.emit_metrics(metrics, CONFIG.environment, "Success", log_payload)
        return _build_response(200, log_payload)

    except Exception as e:
        latency_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        error_payload = {"error_type": type(e).__name__, "error_message": str(e), "latency_ms": latency_ms}
        core.emit_metrics(metrics, CONFIG.environment, "Failure", error_payload)
        logger.error(f"Processing failed: {json.dumps(error_payload)}", exc_info=True)
        raise
