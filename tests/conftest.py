"""
tests/conftest.py

Shared fixtures for the CSV ingestion pipeline test suite.

AWS services are mocked with moto's `mock_aws`; the ingestion API is mocked
with `httpx.MockTransport`, recording every request it receives.
"""

import boto3
import httpx
import pytest
from aws_lambda_powertools import Logger
from moto import mock_aws

from csv_ingest_lambda.config import PipelineConfig
from csv_ingest_lambda.sender import IngestApiPoster

from helpers import (
    API_SECRET_ID,
    API_URL,
    FILE_STATS_TABLE,
    RESERVATION_TABLE,
    TEST_BUCKET,
    InMemoryReservationStore,
    RecordingApi,
    create_tables,
)


@pytest.fixture
def logger() -> Logger:
    return Logger(service="csv-ingest-test", level="DEBUG")


@pytest.fixture
def config() -> PipelineConfig:
    return PipelineConfig(
        landing_bucket=TEST_BUCKET,
        reservation_table=RESERVATION_TABLE,
        file_stats_table=FILE_STATS_TABLE,
        ingest_api_url=API_URL,
        ingest_api_secret_id=API_SECRET_ID,
        batch_size=2,
        max_send_workers=2,
    )


@pytest.fixture
def store() -> InMemoryReservationStore:
    return InMemoryReservationStore()


@pytest.fixture
def api() -> RecordingApi:
    return RecordingApi()


@pytest.fixture
def poster(api):
    client = httpx.Client(base_url=API_URL, transport=httpx.MockTransport(api))
    yield IngestApiPoster(client)
    client.close()


@pytest.fixture
def aws_credentials_env(monkeypatch):
    """Set minimal fake AWS creds for moto / boto3."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.setenv("AWS_REGION", "us-east-1")


@pytest.fixture
def mock_aws_env(aws_credentials_env):
    """Combined S3 + DynamoDB + Secrets Manager mock context."""
    with mock_aws():
        yield


@pytest.fixture
def s3_client(mock_aws_env):
    """Yields a boto3 S3 client within a mocked AWS environment and creates the landing bucket."""
    client = boto3.client("s3", region_name="us-east-1")
    client.create_bucket(Bucket=TEST_BUCKET)
    yield client


@pytest.fixture
def dynamodb(mock_aws_env):
    """Yields a DynamoDB resource with the reservation and file stats tables created."""
    resource = boto3.resource("dynamodb", region_name="us-east-1")
    create_tables(resource)
    yield resource
