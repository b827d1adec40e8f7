"""Tests for structured logging, metrics counters and the status endpoint."""

import asyncio
import json
import logging
import sys

import pytest

import movement_memory.handlers  # noqa: F401
from movement_memory.health import build_response, needs_database
from movement_memory.logging import (
    ContextFilter,
    JSONFormatter,
    current_context,
    log_context,
    setup_logging,
)
from movement_memory.metrics import get_metrics, record_job, record_recompute


def _record(msg="hello", exc_info=None, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="movement_memory.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def _filtered(record: logging.LogRecord) -> logging.LogRecord:
    assert ContextFilter().filter(record)
    return record


class TestJSONFormatter:
    def test_single_line_json(self):
        line = JSONFormatter().format(_record())
        entry = json.loads(line)
        assert entry["message"] == "hello"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "movement_memory.test"
        assert "\n" not in line

    def test_includes_prefixed_extras_only(self):
        entry = json.loads(JSONFormatter().format(
            _record(mm_exercise_id="squat", mm_duration_ms=1.5, other="ignored")
        ))
        assert entry["mm_exercise_id"] == "squat"
        assert entry["mm_duration_ms"] == 1.5
        assert "other" not in entry

    def test_includes_exception(self):
        try:
            raise ValueError("bad row")
        except ValueError:
            entry = json.loads(JSONFormatter().format(_record(exc_info=sys.exc_info())))
        assert "ValueError: bad row" in entry["exception"]


class TestLogContext:
    def test_fields_attached_inside_block_only(self):
        with log_context(user_id="u1", exercise_id="squat"):
            inside = _filtered(_record())
        outside = _filtered(_record())

        assert inside.mm_user_id == "u1"
        assert inside.mm_exercise_id == "squat"
        assert not hasattr(outside, "mm_user_id")
        assert outside.mm_context == ""

    def test_nested_blocks_merge(self):
        with log_context(job_id=7, user_id="u1"):
            with log_context(exercise_id="bench"):
                assert current_context() == {
                    "mm_job_id": 7,
                    "mm_user_id": "u1",
                    "mm_exercise_id": "bench",
                }
            assert "mm_exercise_id" not in current_context()

    def test_none_values_not_bound(self):
        with log_context(user_id=None, exercise_id="squat"):
            assert current_context() == {"mm_exercise_id": "squat"}

    def test_explicit_extra_wins(self):
        with log_context(exercise_id="squat"):
            record = _filtered(_record(mm_exercise_id="bench"))
        assert record.mm_exercise_id == "bench"

    def test_json_output_carries_context(self):
        with log_context(user_id="u1", exercise_id="squat"):
            entry = json.loads(JSONFormatter().format(_filtered(_record())))
        assert entry["mm_user_id"] == "u1"
        assert entry["mm_exercise_id"] == "squat"
        assert "mm_context" not in entry

    @pytest.mark.asyncio
    async def test_isolated_between_tasks(self):
        seen = {}

        async def job(name):
            with log_context(exercise_id=name):
                await asyncio.sleep(0)
                seen[name] = current_context()["mm_exercise_id"]

        await asyncio.gather(job("squat"), job("bench"))
        assert seen == {"squat": "squat", "bench": "bench"}


def test_setup_logging_replaces_handlers():
    root = logging.getLogger()
    saved = root.handlers[:]
    try:
        setup_logging("json")
        setup_logging("text")
        assert len(root.handlers) == 1
        assert not isinstance(root.handlers[0].formatter, JSONFormatter)
        assert any(isinstance(f, ContextFilter) for f in root.handlers[0].filters)

        with log_context(exercise_id="squat"):
            line = root.handlers[0].format(_filtered(_record()))
        assert line.endswith("hello exercise_id=squat")

        setup_logging("json")
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
    finally:
        for handler in root.handlers[:]:
            root.removeHandler(handler)
        for handler in saved:
            root.addHandler(handler)


class TestStatusResponse:
    def _body(self, response: str) -> dict:
        return json.loads(response.split("\r\n\r\n", 1)[1])

    def test_health_ok(self):
        response = build_response("GET", "/health", "ok")
        assert response.startswith("HTTP/1.1 200 OK")
        body = self._body(response)
        assert body["status"] == "ok"
        assert body["db"] == "ok"
        assert set(body["jobs"]) == {"completed", "superseded", "retried", "dead"}

    def test_health_degraded(self):
        response = build_response("GET", "/health", "error")
        assert response.startswith("HTTP/1.1 503 Service Unavailable")
        assert self._body(response)["status"] == "degraded"

    def test_metrics_route(self):
        record_recompute("deadlift", written=True, duration_ms=3.0)
        body = self._body(build_response("GET", "/metrics"))
        assert "deadlift" in body["recomputes"]["by_exercise"]
        assert body["subscriptions"]["set.logged"] == ["update_movement_memory"]

    def test_not_found(self):
        response = build_response("GET", "/nope")
        assert response.startswith("HTTP/1.1 404")
        assert self._body(response) == {"error": "not_found"}

    def test_method_not_allowed(self):
        response = build_response("POST", "/health")
        assert response.startswith("HTTP/1.1 405 Method Not Allowed")
        assert "Allow: GET" in response

    def test_only_health_checks_database(self):
        assert needs_database("GET", "/health")
        assert not needs_database("GET", "/metrics")
        assert not needs_database("POST", "/health")

    def test_content_length_matches_body(self):
        response = build_response("GET", "/health", "ok")
        headers, body = response.split("\r\n\r\n", 1)
        assert f"Content-Length: {len(body.encode())}" in headers


class TestMetrics:
    def test_recompute_timing_per_exercise(self):
        before = get_metrics()["recomputes"]
        record_recompute("timing_only_lift", written=True, duration_ms=4.0)
        record_recompute("timing_only_lift", written=False, duration_ms=2.0)

        after = get_metrics()["recomputes"]
        stats = after["by_exercise"]["timing_only_lift"]
        assert stats["count"] == 2
        assert stats["skipped"] == 1
        assert stats["max_duration_ms"] == 4.0
        assert stats["mean_duration_ms"] == 3.0
        assert after["total"] == before["total"] + 2
        assert after["skipped"] == before["skipped"] + 1

    def test_job_outcomes(self):
        before = get_metrics()["jobs"]["retried"]
        record_job("retried")
        assert get_metrics()["jobs"]["retried"] == before + 1

    def test_unknown_outcome_rejected(self):
        with pytest.raises(ValueError, match="Unknown job outcome"):
            record_job("lost")

    def test_snapshot_is_a_copy(self):
        record_recompute("row", written=True, duration_ms=1.0)
        get_metrics()["recomputes"]["by_exercise"]["row"]["count"] = 999
        assert get_metrics()["recomputes"]["by_exercise"]["row"]["count"] != 999
