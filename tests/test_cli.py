"""Tests for the replay/suggest command line."""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from movement_memory.cli import load_set_records, main, run
from movement_memory.models import LifetimeTotals, SetRecord

SETS = [
    {"exercise_id": "squat", "timestamp": "2026-03-02T18:00:00Z", "weight": 185, "reps": 5, "effort": 8},
    {"exercise_id": "squat", "timestamp": "2026-03-05T18:00:00Z", "weight": 190, "reps": 5, "effort": 8},
    {"exercise_id": "bench", "timestamp": "2026-03-05T18:30:00Z", "weight": 100, "reps": 5},
]


@pytest.fixture
def history_file(tmp_path):
    path = tmp_path / "sets.json"
    path.write_text(json.dumps(SETS), encoding="utf-8")
    return path


def test_load_set_records(history_file):
    records = load_set_records(history_file)
    assert [r.exercise_id for r in records] == ["squat", "squat", "bench"]


def test_load_set_records_rejects_non_list(tmp_path):
    path = tmp_path / "sets.json"
    path.write_text("{}", encoding="utf-8")
    with pytest.raises(ValueError, match="JSON list"):
        load_set_records(path)


def test_replay_first_exercise(history_file):
    result = run(["replay", str(history_file), "--as-of", "2026-03-05"])
    assert result["memory"]["exercise_id"] == "squat"
    assert result["memory"]["exposure_count"] == 2
    assert result["memory"]["trend"] == "progressing"
    assert result["suggestion"]["recommendation"]["weight"] == 195


def test_replay_selected_exercise(history_file):
    result = run([
        "replay", str(history_file), "--exercise-id", "bench", "--as-of", "2026-03-05",
    ])
    assert result["memory"]["exposure_count"] == 1
    assert result["suggestion"]["trend"] is None


def test_replay_with_context(history_file):
    result = run([
        "replay", str(history_file), "--as-of", "2026-03-05", "--context", "deloading",
    ])
    assert result["suggestion"]["recommendation"]["weight"] == 150


def test_replay_coach_context(history_file):
    result = run(["replay", str(history_file), "--as-of", "2026-03-05", "--coach"])
    assert set(result) == {"suggestion", "periodization"}
    assert result["suggestion"]["last_performance"] == "190 x 5 @ RPE 8"
    assert result["suggestion"]["trend"] == "progressing"
    assert result["suggestion"]["pr_weight"] == 190
    assert result["periodization"]["trend"] == "progressing"


def test_replay_unknown_exercise(history_file):
    result = run(["replay", str(history_file), "--exercise-id", "deadlift"])
    assert result == {"memory": None, "suggestion": None}


def test_replay_missing_file_is_usage_error(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        run(["replay", str(tmp_path / "missing.json")])
    assert excinfo.value.code == 2


def test_bad_date_is_usage_error(history_file):
    with pytest.raises(SystemExit) as excinfo:
        run(["replay", str(history_file), "--as-of", "yesterday"])
    assert excinfo.value.code == 2


def test_suggest_requires_database_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError, match="DATABASE_URL must be set"):
        run(["suggest", "--user-id", "u1", "--exercise-id", "squat"])


def test_main_prints_json(history_file, capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["replay", str(history_file), "--as-of", "2026-03-05"])
    assert excinfo.value.code == 0
    printed = json.loads(capsys.readouterr().out)
    assert printed["memory"]["user_id"] == "local"


def test_suggest_reads_window_and_lifetime_totals(monkeypatch):
    class _Conn:
        rollback = AsyncMock()

        async def __aenter__(self):
            return self

        async def __aexit__(self, *exc):
            return False

    window = [
        SetRecord.model_validate(s) for s in SETS if s["exercise_id"] == "squat"
    ]
    lifetime = LifetimeTotals(
        exposure_count=30,
        total_volume=50000.0,
        first_logged=datetime(2025, 6, 1, tzinfo=timezone.utc),
    )
    monkeypatch.setenv("DATABASE_URL", "postgresql://x")
    with (
        patch("movement_memory.cli.psycopg.AsyncConnection.connect", AsyncMock(return_value=_Conn())),
        patch("movement_memory.cli.load_set_history", AsyncMock(return_value=window)),
        patch("movement_memory.cli.load_lifetime_totals", AsyncMock(return_value=lifetime)) as totals,
        patch("movement_memory.cli.load_movement_memory", AsyncMock(return_value=None)),
    ):
        result = run([
            "suggest", "--user-id", "u1", "--exercise-id", "squat", "--as-of", "2026-03-05",
        ])

    totals.assert_awaited_once()
    assert result["memory"]["exposure_count"] == 30
    assert result["memory"]["total_lifetime_volume"] == 50000.0
    assert result["suggestion"]["recommendation"]["weight"] == 195
