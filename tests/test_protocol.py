import pytest

from tandem.core.timer import TimerPhase, TimerSnapshot
from tandem.net.protocol import (
    Message,
    MessageKind,
    ProtocolError,
    request,
    snapshot_from_wire,
    snapshot_to_wire,
    state_update,
)


def test_state_update_uses_camel_case_snapshot() -> None:
    snapshot = TimerSnapshot.initial()

    wire = state_update(snapshot).to_wire()

    assert wire["type"] == "STATE_UPDATE"
    assert wire["payload"] == {
        "phase": "Work",
        "timeLeft": 1500,
        "isRunning": False,
        "workDuration": 1500,
        "shortBreakDuration": 300,
        "longBreakDuration": 900,
        "longBreakInterval": 4,
        "cycleCount": 0,
        "justFinished": False,
    }


def test_snapshot_from_wire_restores_phase() -> None:
    payload = snapshot_to_wire(TimerSnapshot.initial())
    payload.update(phase="Long Break", timeLeft=900, isRunning=True)

    snapshot = snapshot_from_wire(payload)

    assert snapshot.phase == TimerPhase.LONG_BREAK
    assert snapshot.time_left == 900
    assert snapshot.is_running is True


def test_requests_carry_payloads() -> None:
    assert request(MessageKind.REQUEST_START).to_wire() == {"type": "REQUEST_START", "payload": None}
    assert request(MessageKind.REQUEST_SET_CYCLE_INFO, cycle_count=2, long_break_interval=4).payload == {
        "cycleCount": 2,
        "longBreakInterval": 4,
    }
    assert request(MessageKind.REQUEST_SET_TIME_LEFT, time_left=90).payload == {"timeLeft": 90}


def test_from_wire_accepts_request_without_payload_key() -> None:
    message = Message.from_wire({"type": "REQUEST_PAUSE"})

    assert message.kind == MessageKind.REQUEST_PAUSE
    assert message.payload is None


@pytest.mark.parametrize(
    "data",
    [
        "hello",
        {"type": "REQUEST_LAUNCH"},
        {"type": "REQUEST_SET_TIME_LEFT", "payload": {"timeLeft": "90"}},
        {"type": "REQUEST_SET_CYCLE_INFO", "payload": {"cycleCount": 1}},
        {"type": "STATE_UPDATE", "payload": {"phase": "Work"}},
        {"type": "STATE_UPDATE", "payload": None},
    ],
)
def test_from_wire_rejects_malformed_messages(data) -> None:
    with pytest.raises(ProtocolError):
        Message.from_wire(data)


def test_snapshot_rejects_bad_values() -> None:
    payload = snapshot_to_wire(TimerSnapshot.initial())

    with pytest.raises(ProtocolError):
        snapshot_from_wire({**payload, "phase": "Lunch"})
    with pytest.raises(ProtocolError):
        snapshot_from_wire({**payload, "timeLeft": -1})
    with pytest.raises(ProtocolError):
        snapshot_from_wire({**payload, "isRunning": 1})
