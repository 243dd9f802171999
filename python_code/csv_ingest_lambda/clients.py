"""
A factory module for creating and providing the pipeline's clients.

This module is the core of the Dependency Injection (DI) pattern for the
application. It allows the main handler to receive either real AWS clients
or mocked clients during testing, based on the presence of an environment
variable. The HTTP client for the ingestion API is built here as well so the
handler never constructs transport objects itself.
"""

import logging
import os
from typing import Optional, Tuple

import boto3
import botocore.config
import httpx

from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource
from mypy_boto3_s3 import S3Client
from mypy_boto3_secretsmanager import SecretsManagerClient

logger = logging.getLogger(__name__)

# A shared, robust retry configuration for boto3 clients that need to be
# resilient to transient network or server-side errors. Row delivery to the
# ingestion API is deliberately not retried; only the AWS control plane is.
BOTO_CONFIG_RETRYABLE = botocore.config.Config(
    retries={"max_attempts": 5, "mode": "adaptive"}
)


def get_boto_clients() -> Tuple[S3Client, DynamoDBServiceResource, SecretsManagerClient]:
    """
    Returns a tuple of essential AWS service clients.

    If `USE_MOTO` is present it's assumed that `moto` is active and will
    intercept the `boto3` calls to return mocked clients. Otherwise, it
    creates real AWS clients.

    Returns:
        A tuple containing initialized boto3 clients in the following order:
        (s3_client, dynamodb_resource, secretsmanager_client)
    """
    aws_region = os.environ.get("AWS_REGION")
    if not aws_region:
        logger.warning("AWS_REGION not set, boto3 will attempt to resolve it.")

    if os.environ.get("USE_MOTO"):
        logger.info("MOTO ENABLED: Returning mocked AWS clients.")

    s3_client: S3Client = boto3.client(
        "s3", region_name=aws_region, config=BOTO_CONFIG_RETRYABLE
    )
    dynamodb_resource: DynamoDBServiceResource = boto3.resource(
        "dynamodb", region_name=aws_region, config=BOTO_CONFIG_RETRYABLE
    )
    secretsmanager_client: SecretsManagerClient = boto3.client(
        "secretsmanager", region_name=aws_region
    )

    return s3_client, dynamodb_resource, secretsmanager_client


def build_http_client(
    base_url: str,
    api_key: str,
    timeout_seconds: float,
    transport: Optional[httpx.BaseTransport] = None,
) -> httpx.Client:
    """
    Returns an httpx client for the ingestion API.

    The timeout is the only deadline a row delivery has; a hung call blocks
    its batch until it expires.

    Args:
        base_url: Root URL of the ingestion API.
        api_key: Bearer token sent with every request.
        timeout_seconds: Connect/read/write/pool timeout for each call.
        transport: Optional transport override (e.g. `httpx.MockTransport`).
    """
    return httpx.Client(
        base_url=base_url,
        headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        timeout=httpx.Timeout(timeout_seconds),
        transport=transport,
    )
