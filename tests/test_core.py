"""Tests for file processing, the polling cycle, and metrics emission."""

import json
from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from aws_lambda_powertools import Metrics
from botocore.exceptions import EndpointConnectionError

from csv_ingest_lambda import core, storage
from csv_ingest_lambda.model import FileStatus, StorageFile

from helpers import TEST_BUCKET, InterruptedBody, csv_bytes, put_csv, throttled

SENSOR_MAP = csv_bytes("device_id,idSensor", "dev1,7", "dev2,8")
GOOD_FILE = csv_bytes(
    "Timestamp,PM2.5",
    "2024-01-01T00:00:00Z,12.3",
    "bad,x",
)


@pytest.fixture
def landing(s3_client):
    put_csv(s3_client, "config/sensor_map.csv", SENSOR_MAP)
    return s3_client


def storage_file_for(s3_client, key):
    head = s3_client.head_object(Bucket=TEST_BUCKET, Key=key)
    return StorageFile(path=key, size=head["ContentLength"], last_modified=head["LastModified"])


def run_file(s3_client, key, store, poster, config, logger):
    sensor_map = storage.load_sensor_map(s3_client, TEST_BUCKET, config.sensor_map_key, logger)
    return core.process_file(storage_file_for(s3_client, key), s3_client, store, poster, sensor_map, config, logger)


class TestProcessFile:
    def test_delivers_valid_rows_and_reports_drops(self, landing, store, poster, api, config, logger):
        put_csv(landing, "exports/dev1_mission.csv", GOOD_FILE)

        result = run_file(landing, "exports/dev1_mission.csv", store, poster, config, logger)

        assert result.status is FileStatus.PROCESSED
        assert result.device_id == "dev1"
        assert result.dropped_rows == 1
        assert (result.stats.total_rows, result.stats.successful_rows) == (1, 1)
        assert api.bodies == [
            {
                "device_id": "dev1",
                "mission_id": "mission-7",
                "ts": "2024-01-01T00:00:00.000Z",
                "metrics": {"pm25": 12.3},
            }
        ]
        assert api.keys == ["dev1|mission-7|2024-01-01T00:00:00.000Z"]

        recorded = store.file_stats[result.file_id]
        assert recorded["total"] == 1
        assert recorded["attributes"]["Path"] == "exports/dev1_mission.csv"
        assert recorded["attributes"]["DeviceID"] == "dev1"

    def test_completed_file_version_is_skipped_on_the_next_poll(self, landing, store, poster, api, config, logger):
        put_csv(landing, "exports/dev1_mission.csv", GOOD_FILE)
        run_file(landing, "exports/dev1_mission.csv", store, poster, config, logger)

        again = run_file(landing, "exports/dev1_mission.csv", store, poster, config, logger)

        assert again.status is FileStatus.SKIPPED
        assert again.reason == "already_completed"
        assert len(api.requests) == 1

    def test_reprocessing_a_completed_file_sends_nothing(self, landing, store, poster, api, config, logger):
        config = replace(config, skip_completed_files=False)
        put_csv(landing, "exports/dev1_mission.csv", GOOD_FILE)
        run_file(landing, "exports/dev1_mission.csv", store, poster, config, logger)

        again = run_file(landing, "exports/dev1_mission.csv", store, poster, config, logger)

        assert again.status is FileStatus.PROCESSED
        assert (again.stats.total_rows, again.stats.skipped_rows) == (1, 1)
        assert len(api.requests) == 1

    def test_unmapped_device_fails_the_file(self, landing, store, poster, api, config, logger):
        put_csv(landing, "exports/dev9_mission.csv", GOOD_FILE)

        result = run_file(landing, "exports/dev9_mission.csv", store, poster, config, logger)

        assert result.status is FileStatus.FAILED
        assert "dev9" in result.reason
        assert api.requests == []
        assert store.file_stats == {}

    def test_device_outside_allow_list_is_skipped(self, landing, store, poster, api, config, logger):
        config = replace(config, allowed_device_ids=frozenset({"dev2"}))
        put_csv(landing, "exports/dev1_mission.csv", GOOD_FILE)

        result = run_file(landing, "exports/dev1_mission.csv", store, poster, config, logger)

        assert result.status is FileStatus.SKIPPED
        assert result.reason == "device_not_allowed"
        assert api.requests == []

    def test_unresolvable_device_is_skipped(self, landing, store, poster, config, logger):
        put_csv(landing, "exports/_orphan.csv", GOOD_FILE)
        result = run_file(landing, "exports/_orphan.csv", store, poster, config, logger)
        assert (result.status, result.reason) == (FileStatus.SKIPPED, "unresolved_device")

    def test_download_failure_fails_only_that_file(self, landing, store, poster, api, config, logger):
        missing = StorageFile(path="exports/dev1_gone.csv", size=10, last_modified=datetime(2024, 1, 1, tzinfo=timezone.utc))

        result = core.process_file(missing, landing, store, poster, {"dev1": 7}, config, logger)

        assert result.status is FileStatus.FAILED
        assert "NoSuchKey" in result.reason
        assert store.file_stats == {}

    def test_unparseable_stream_fails_without_recording_stats(self, landing, store, poster, config, logger):
        put_csv(landing, "exports/dev1_broken.csv", csv_bytes("Timestamp,PM2.5", '2024-01-01T00:00:00Z,"1"2'))

        result = run_file(landing, "exports/dev1_broken.csv", store, poster, config, logger)

        assert result.status is FileStatus.FAILED
        assert result.file_id not in store.file_stats

    def test_connection_lost_mid_stream_fails_only_that_file(self, store, poster, api, config, logger):
        body = InterruptedBody(csv_bytes("Timestamp,PM2.5", "2024-01-01T00:00:00Z,12.3"))
        s3 = MagicMock()
        s3.get_object.return_value = {"Body": body, "ContentLength": 100}
        sf = StorageFile(path="exports/dev1_a.csv", size=100, last_modified=datetime(2024, 1, 1, tzinfo=timezone.utc))

        result = core.process_file(sf, s3, store, poster, {"dev1": 7}, config, logger)

        assert result.status is FileStatus.FAILED
        assert "connection reset" in result.reason
        assert body.closed is True
        assert api.requests == []
        assert store.file_stats == {}

    def test_stats_write_failure_fails_the_file(self, landing, store, poster, config, logger):
        def rejected(*args, **kwargs):
            raise throttled("PutItem")

        store.record_file_stats = rejected
        put_csv(landing, "exports/dev1_mission.csv", GOOD_FILE)

        result = run_file(landing, "exports/dev1_mission.csv", store, poster, config, logger)

        assert result.status is FileStatus.FAILED
        assert "ProvisionedThroughputExceededException" in result.reason

    def test_unreachable_store_fails_the_file(self, landing, store, poster, api, config, logger):
        def unreachable(file_id):
            raise EndpointConnectionError(endpoint_url="https://dynamodb.us-east-1.amazonaws.com")

        store.is_file_completed = unreachable
        put_csv(landing, "exports/dev1_mission.csv", GOOD_FILE)

        result = run_file(landing, "exports/dev1_mission.csv", store, poster, config, logger)

        assert result.status is FileStatus.FAILED
        assert api.requests == []


def test_store_outage_on_one_file_does_not_stop_the_cycle(landing, store, poster, api, config, logger):
    put_csv(landing, "exports/dev1_a.csv", GOOD_FILE)
    put_csv(landing, "exports/dev2_b.csv", csv_bytes("Timestamp,PM2.5", "2024-01-02T00:00:00Z,1"))
    checked = []
    original = store.is_file_completed

    def throttled_once(file_id):
        checked.append(file_id)
        if len(checked) == 1:
            raise throttled("GetItem")
        return original(file_id)

    store.is_file_completed = throttled_once

    result = core.run_poll_cycle(landing, store, poster, config, logger)

    assert [f.status for f in result.files] == [FileStatus.FAILED, FileStatus.PROCESSED]
    assert "ProvisionedThroughputExceededException" in result.files[0].reason
    assert [b["device_id"] for b in api.bodies] == ["dev2"]


def test_run_poll_cycle_processes_files_oldest_first(landing, store, poster, api, config, logger):
    put_csv(landing, "exports/dev1_a.csv", GOOD_FILE)
    put_csv(landing, "exports/dev2_b.csv", csv_bytes("Timestamp,PM2.5", "2024-01-02T00:00:00Z,1", "2024-01-02T00:00:01Z,2", "2024-01-02T00:00:02Z,3"))
    put_csv(landing, "exports/dev9_c.csv", GOOD_FILE)
    put_csv(landing, "exports/notes.txt", b"ignored")

    result = core.run_poll_cycle(landing, store, poster, config, logger)

    assert [f.path for f in result.files] == ["exports/dev1_a.csv", "exports/dev2_b.csv", "exports/dev9_c.csv"]
    assert result.summary() == {
        "files_seen": 3,
        "files_processed": 2,
        "files_skipped": 0,
        "files_failed": 1,
        "rows_total": 4,
        "rows_sent": 4,
        "rows_failed": 0,
        "rows_skipped": 0,
        "rows_dropped": 1,
    }
    assert {b["mission_id"] for b in api.bodies} == {"mission-7", "mission-8"}


def test_run_poll_cycle_with_failed_listing_is_empty(s3_client, store, poster, config, logger):
    config = replace(config, landing_bucket="missing-bucket")
    result = core.run_poll_cycle(s3_client, store, poster, config, logger)
    assert result.summary()["files_seen"] == 0


def test_emit_metrics_publishes_counts_with_environment_dimension(capsys):
    metrics = Metrics(namespace="CsvIngestTest", service="csv-ingest-test")
    payload = {"files_processed": 2, "rows_sent": 10, "latency_ms": 42}

    core.emit_metrics(metrics, "test", "Success", payload)

    emitted = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    names = {m["Name"] for m in emitted["_aws"]["CloudWatchMetrics"][0]["Metrics"]}
    assert set(core.COUNT_METRICS) | {"ProcessingLatencyMs"} <= names
    assert "CycleFailures" not in names
    assert emitted["Environment"] == "test"
    assert emitted["Status"] == "Success"
