"""
Object-storage access for the ingestion pipeline.

Lists candidate files in the landing bucket, derives a fingerprint for each
file version, and opens objects as streams. Listing never raises: a failed
listing returns no files and the next poll tries again. Opening a stream
raises `DownloadError` so a missing or unreadable object aborts only its file.
"""

import csv
import io
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError
from botocore.response import StreamingBody
from mypy_boto3_s3 import S3Client

from .errors import DownloadError
from .model import FileFingerprint, StorageFile


def list_files(
    s3_client: S3Client,
    bucket: str,
    prefix: str,
    extensions: Iterable[str],
    logger: Logger,
) -> List[StorageFile]:
    """
    Lists candidate files under a prefix, oldest to newest.

    Ordering is computed here from each object's `LastModified` rather than
    trusted to the storage API. Ties are broken by key so the order is total.

    Args:
        s3_client: The boto3 S3 client.
        bucket: The landing bucket.
        prefix: Key prefix to enumerate.
        extensions: Accepted suffixes, compared case-insensitively.
        logger: The Powertools Logger instance for structured logging.

    Returns:
        The matching files, or an empty list if the listing failed.
    """
    suffixes = tuple(ext.lower() for ext in extensions)
    files: List[StorageFile] = []
    try:
        paginator = s3_client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                key = obj["Key"]
                if key.endswith("/") or not key.lower().endswith(suffixes):
                    continue
                files.append(StorageFile(path=key, size=obj["Size"], last_modified=obj["LastModified"]))
    except (ClientError, BotoCoreError) as e:
        logger.error("Listing failed; will retry on next poll.", extra={"bucket": bucket, "prefix": prefix, "error": str(e)})
        return []

    files.sort(key=lambda f: (f.last_modified, f.path))
    logger.info(f"Found {len(files)} candidate files (sorted oldest to newest).", extra={"bucket": bucket, "prefix": prefix})
    return files


def fingerprint(path: str, size: int, last_modified: datetime) -> FileFingerprint:
    """Derives the identity of one version of a file from its storage metadata."""
    return FileFingerprint(
        path=path,
        size=size,
        last_modified=last_modified,
        fingerprint=f"{path}:{size}:{last_modified.isoformat()}",
    )


def fingerprint_file(storage_file: StorageFile) -> FileFingerprint:
    return fingerprint(storage_file.path, storage_file.size, storage_file.last_modified)


class ObjectStream:
    """
    Wraps an S3 `StreamingBody` so a failed `read` raises `DownloadError`.

    The connection can drop at any point of a long download; botocore then
    raises from `read` (`ResponseStreamingError`, `ReadTimeoutError`, ...),
    well after `get_object` returned.
    """

    def __init__(self, body: StreamingBody, path: str):
        self._body = body
        self.path = path

    def read(self, size: Optional[int] = None) -> bytes:
        try:
            return self._body.read(size)
        except (BotoCoreError, ClientError) as e:
            raise DownloadError(f"Download of {self.path} interrupted: {e}", path=self.path) from e

    def close(self) -> None:
        self._body.close()

    def __enter__(self) -> "ObjectStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def open_stream(s3_client: S3Client, bucket: str, path: str, logger: Logger) -> ObjectStream:
    """
    Opens an object for streaming without reading it into memory.

    Raises:
        DownloadError: If the object cannot be fetched, here or on any later
                       `read`. `error_code` carries the S3 error code (e.g.
                       `NoSuchKey`, `AccessDenied`) when known.
    """
    try:
        response = s3_client.get_object(Bucket=bucket, Key=path)
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code")
        logger.error("Could not open object.", extra={"path": path, "error_code": code})
        raise DownloadError(f"Could not download {path}: {code}", error_code=code, path=path) from e
    except BotoCoreError as e:
        logger.error("Network error opening object.", extra={"path": path, "error": str(e)})
        raise DownloadError(f"Could not download {path}: {e}", path=path) from e

    logger.debug("Opened object stream.", extra={"path": path, "content_length": response.get("ContentLength")})
    return ObjectStream(response["Body"], path)


def load_sensor_map(s3_client: S3Client, bucket: str, key: str, logger: Logger) -> Dict[str, int]:
    """
    Loads the `device_id -> sensor_id` mapping from a small CSV object.

    The file has a header row with `device_id` and `idSensor` columns. Invalid
    records are skipped. If the object cannot be read, an empty mapping is
    returned and every file fails later with a configuration error.
    """
    try:
        body = s3_client.get_object(Bucket=bucket, Key=key)["Body"]
        with body:
            text = body.read().decode("utf-8-sig")
    except (ClientError, BotoCoreError, UnicodeDecodeError) as e:
        logger.error("Failed to load sensor mapping.", extra={"bucket": bucket, "key": key, "error": str(e)})
        return {}

    mapping: Dict[str, int] = {}
    for record in csv.DictReader(io.StringIO(text), skipinitialspace=True):
        device_id = (record.get("device_id") or "").strip()
        try:
            sensor_id = int((record.get("idSensor") or "").strip())
        except ValueError:
            logger.warning("Invalid sensor mapping record.", extra={"record": record})
            continue
        if not device_id:
            logger.warning("Invalid sensor mapping record.", extra={"record": record})
            continue
        mapping[device_id] = sensor_id

    logger.info(f"Loaded {len(mapping)} sensor mappings.", extra={"key": key})
    return mapping


def device_id_from_path(path: str) -> Optional[str]:
    """
    Extracts the device id from a key like `exports/dev1_mission_2025-07-30.csv`.

    The device id is the first `_`-separated token of the basename without its
    extension. Returns None if no plausible id is found.
    """
    basename = path.rsplit("/", 1)[-1]
    stem = basename.rsplit(".", 1)[0] if "." in basename else basename
    candidate = stem.split("_", 1)[0].strip()
    if not candidate or "." in candidate:
        return None
    return candidate
