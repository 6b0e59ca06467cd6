"""Tests for the optional JSON-lines traffic file."""

import json

import pytest

import traffic_logger
from decision import Classifier


@pytest.fixture
def log_path(tmp_path):
    path = tmp_path / "traffic.log"
    yield path
    traffic_logger.shutdown_traffic_logger()


def _lines(path):
    return [line for line in path.read_text(encoding="utf-8").splitlines() if line]


def test_emit_is_noop_when_not_started(tmp_path):
    traffic_logger.emit_traffic_event({"ip": "1.2.3.4"})
    assert not traffic_logger.is_logger_ready()


def test_writes_timestamped_json_lines(log_path):
    traffic_logger.start_traffic_logger(str(log_path))
    traffic_logger.emit_traffic_event({"ip": "1.2.3.4", "status": "blocked"})
    traffic_logger.shutdown_traffic_logger()

    [line] = _lines(log_path)
    assert line.startswith("[")
    stamp, _, payload = line.partition("] ")
    assert json.loads(payload) == {"ip": "1.2.3.4", "status": "blocked"}


def test_classifier_writes_when_enabled(log_path, event_store, counter, make_config):
    traffic_logger.start_traffic_logger(str(log_path))
    classifier = Classifier(event_store, counter)

    classifier.classify(make_config(log_to_file=True), "1.2.3.4", "curl/8.0")
    classifier.classify(make_config(log_to_file=False), "1.2.3.4", "curl/8.0")
    traffic_logger.shutdown_traffic_logger()

    [line] = _lines(log_path)
    event = json.loads(line.partition("] ")[2])
    assert event["ip"] == "1.2.3.4"
    assert event["status"] == "allowed"


def test_rotates_by_size(log_path):
    traffic_logger.start_traffic_logger(str(log_path), max_bytes=200)
    for i in range(20):
        traffic_logger.emit_traffic_event({"ip": "1.2.3.4", "n": i})
    traffic_logger.shutdown_traffic_logger()

    assert (log_path.parent / "traffic.log.1").exists()
