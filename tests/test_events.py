from __future__ import annotations

import json
import logging

import pytest

from cao.events import EventEmitter, EventType, RecordingEmitter


def test_subscribers_receive_events_and_can_unsubscribe() -> None:
    emitter = EventEmitter(telemetry=False)
    seen = []
    unsubscribe = emitter.subscribe(seen.append)

    emitter.emit(EventType.SESSION_CREATED, "s-1", task_description="t")
    unsubscribe()
    emitter.emit(EventType.ERROR, "s-1", error="boom")

    assert [event.type for event in seen] == [EventType.SESSION_CREATED]
    assert seen[0].payload == {"task_description": "t"}


def test_failing_subscriber_does_not_block_others(caplog: pytest.LogCaptureFixture) -> None:
    emitter = RecordingEmitter()

    def broken(_event) -> None:
        raise ValueError("listener bug")

    emitter.subscribe(broken)
    with caplog.at_level(logging.ERROR, logger="cao.events"):
        emitter.emit(EventType.ITERATION_COMPLETE, "s-1", iteration=2, status="in_progress")
        emitter.emit(EventType.ERROR, "s-1", iteration=2, error="x")

    assert emitter.types() == ["iteration_complete", "error"]
    assert "listener bug" in caplog.text


def test_sse_frame_serialises_payload() -> None:
    emitter = RecordingEmitter()

    event = emitter.emit(EventType.OPERATION_COMPLETE, "s-9", iteration=3, result={"success": True}, index=0)
    frame = event.to_sse()

    assert frame.startswith("data: ") and frame.endswith("\n\n")
    data = json.loads(frame[len("data: ") :])
    assert data == {
        "type": "operation_complete",
        "session_id": "s-9",
        "iteration": 3,
        "result": {"success": True},
        "index": 0,
    }


def test_telemetry_skips_streaming_chunks(caplog: pytest.LogCaptureFixture) -> None:
    emitter = EventEmitter()

    with caplog.at_level(logging.INFO, logger="cao.telemetry"):
        emitter.emit(EventType.LLM_STREAMING, "s", iteration=1, delta="abc", chars_received=3)
        emitter.emit(EventType.LLM_COMPLETE, "s", iteration=1, total_chars=3)

    records = [json.loads(record.getMessage()) for record in caplog.records if record.name == "cao.telemetry"]
    assert [record["event"] for record in records] == ["llm_complete"]
    assert records[0]["total_chars"] == 3
