from __future__ import annotations

import json
from pathlib import Path

import pytest

from ugc_motion import telemetry


def test_events_are_recorded_and_filtered() -> None:
    telemetry.emit_event("job.created", {"job_id": "j1"})
    telemetry.emit_event("job.status", {"job_id": "j1", "status": "planning"})
    telemetry.emit_event("job.status", {"job_id": "j2", "status": "planning"})
    telemetry.emit_event("job.status", {"job_id": "j1", "status": "planning_completed"})

    assert len(telemetry.get_events()) == 4
    assert [ev["payload"]["job_id"] for ev in telemetry.get_events("job.created")] == ["j1"]
    assert telemetry.status_history("j1") == ["planning", "planning_completed"]
    assert telemetry.status_history("j3") == []

    telemetry.clear_events()
    assert telemetry.get_events() == []


def test_events_append_to_log_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    log_path = tmp_path / "events.jsonl"
    monkeypatch.setenv("UGC_TELEMETRY_LOG", str(log_path))

    telemetry.emit_event("synthesis.request", {"call_id": "veo_1"})
    telemetry.emit_event("synthesis.completed")

    lines = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
    assert [line["name"] for line in lines] == ["synthesis.request", "synthesis.completed"]
    assert lines[0]["payload"] == {"call_id": "veo_1"}
    assert lines[1]["payload"] == {}


def test_unwritable_log_does_not_break_emit(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("UGC_TELEMETRY_LOG", str(tmp_path / "missing-dir" / "events.jsonl"))
    telemetry.emit_event("job.created", {"job_id": "j1"})
    assert len(telemetry.get_events("job.created")) == 1
