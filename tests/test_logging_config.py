"""Tests for pipetrak.middleware.logging_config formatters."""

import json
import logging

from pipetrak.middleware.logging_config import JSONFormatter, ReadableFormatter


def _record(message="Milestone updated", **extra):
    record = logging.makeLogRecord({
        "name": "pipetrak.services.milestone_persistence_service",
        "levelname": "INFO",
        "levelno": logging.INFO,
        "msg": message,
    })
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_milestone_context_is_top_level(self):
        line = JSONFormatter().format(_record(project_id=1, component_id=7, milestone_id=31, duration_ms=12.5))
        entry = json.loads(line)
        assert entry["message"] == "Milestone updated"
        assert entry["level"] == "INFO"
        assert (entry["project_id"], entry["component_id"], entry["milestone_id"]) == (1, 7, 31)
        assert entry["duration_ms"] == 12.5

    def test_absent_context_is_omitted(self):
        entry = json.loads(JSONFormatter().format(_record()))
        assert "project_id" not in entry
        assert "batch" not in entry


class TestReadableFormatter:
    def test_context_appended_in_order(self):
        line = ReadableFormatter(use_color=False).format(
            _record("Bulk batch 2/3 failed in full", batch=2, project_id=9),
        )
        assert line.endswith("Bulk batch 2/3 failed in full [project=9 batch=2]")
        assert "\033[" not in line

    def test_duration_suffix(self):
        line = ReadableFormatter(use_color=False).format(_record("GET /x", duration_ms=41.7))
        assert line.endswith("GET /x [42ms]")
