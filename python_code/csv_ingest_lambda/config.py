"""
Configuration for the CSV Ingestion Pipeline.

All settings are read from environment variables once, at cold start, and
collected into an immutable `PipelineConfig`. The config object is passed
explicitly into every component; nothing in the pipeline reads the
environment on its own.
"""

import os
from dataclasses import dataclass
from typing import FrozenSet, Optional, Tuple

OPTIONAL_METRICS = ("pm1", "pm10", "temperature", "humidity")


def get_env_var(name: str, default: Optional[str] = None) -> str:
    """
    Gets an environment variable or raises a ValueError for fast-failure.

    Args:
        name: The name of the environment variable.
        default: An optional default value. If not provided, the variable is required.

    Returns:
        The value of the environment variable.

    Raises:
        ValueError: If the required environment variable is not set.
    """
    value = os.environ.get(name, default)
    if value is None:
        raise ValueError(f"FATAL: Environment variable '{name}' is not set.")
    return value


def _split_list(raw: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _as_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class PipelineConfig:
    """
    Immutable settings for one Lambda execution environment.

    Attributes:
        landing_bucket: Bucket holding the exported CSV files.
        landing_prefix: Key prefix polled for new files.
        file_extensions: Lower-cased suffixes accepted by the lister.
        sensor_map_key: S3 key of the `device_id,idSensor` mapping CSV.
        reservation_table: DynamoDB table holding per-row reservations.
        file_stats_table: DynamoDB table holding per-file processing stats.
        ingest_api_url: Base URL of the remote ingestion API.
        ingest_api_secret_id: Secrets Manager id of `{"api_key": ...}`.
        enabled_metrics: Optional metrics forwarded when present in a row.
        batch_size: Rows buffered before a flush.
        max_send_workers: Threads used to deliver one batch.
        api_timeout_seconds: Deadline for a single HTTP call.
        allowed_device_ids: Devices allowed through; empty means all.
        skip_completed_files: Skip file versions whose stats are recorded.
        reclaim_failed_reservations: Let the store hand failed rows out again.
    """

    landing_bucket: str
    reservation_table: str
    file_stats_table: str
    ingest_api_url: str
    ingest_api_secret_id: str
    landing_prefix: str = "exports/"
    file_extensions: Tuple[str, ...] = (".csv",)
    sensor_map_key: str = "config/sensor_map.csv"
    enabled_metrics: FrozenSet[str] = frozenset(OPTIONAL_METRICS)
    batch_size: int = 100
    max_send_workers: int = 10
    api_timeout_seconds: float = 10.0
    allowed_device_ids: FrozenSet[str] = frozenset()
    skip_completed_files: bool = True
    reclaim_failed_reservations: bool = False
    secret_cache_ttl_seconds: int = 300
    environment: str = "dev"
    log_level: str = "INFO"

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError(f"FATAL: BATCH_SIZE must be >= 1, got {self.batch_size}.")
        if self.max_send_workers < 1:
            raise ValueError(f"FATAL: MAX_SEND_WORKERS must be >= 1, got {self.max_send_workers}.")
        unknown = self.enabled_metrics - set(OPTIONAL_METRICS)
        if unknown:
            raise ValueError(f"FATAL: Unknown metrics in ENABLED_METRICS: {sorted(unknown)}")


def load_config() -> PipelineConfig:
    """Builds the pipeline configuration from environment variables."""
    return PipelineConfig(
        landing_bucket=get_env_var("LANDING_BUCKET"),
        landing_prefix=get_env_var("LANDING_PREFIX", "exports/"),
        file_extensions=tuple(ext.lower() for ext in _split_list(get_env_var("FILE_EXTENSIONS", ".csv"))),
        sensor_map_key=get_env_var("SENSOR_MAP_KEY", "config/sensor_map.csv"),
        reservation_table=get_env_var("RESERVATION_TABLE"),
        file_stats_table=get_env_var("FILE_STATS_TABLE"),
        ingest_api_url=get_env_var("INGEST_API_URL"),
        ingest_api_secret_id=get_env_var("INGEST_API_SECRET_ID"),
        enabled_metrics=frozenset(m.lower() for m in _split_list(get_env_var("ENABLED_METRICS", ",".join(OPTIONAL_METRICS)))),
        batch_size=int(get_env_var("BATCH_SIZE", "100")),
        max_send_workers=int(get_env_var("MAX_SEND_WORKERS", "10")),
        api_timeout_seconds=float(get_env_var("API_TIMEOUT_SECONDS", "10")),
        allowed_device_ids=frozenset(_split_list(get_env_var("ALLOWED_DEVICE_IDS", ""))),
        skip_completed_files=_as_bool(get_env_var("SKIP_COMPLETED_FILES", "true")),
        reclaim_failed_reservations=_as_bool(get_env_var("RECLAIM_FAILED_RESERVATIONS", "false")),
        secret_cache_ttl_seconds=int(get_env_var("SECRET_CACHE_TTL_SECONDS", "300")),
        environment=get_env_var("ENVIRONMENT", "dev"),
        log_level=get_env_var("LOG_LEVEL", "INFO").upper(),
    )
