from __future__ import annotations

"""Application messages exchanged between a host and its guests.

Every message is a JSON object ``{"type": <kind>, "payload": <object|null>}``.
Snapshot fields travel under camelCase keys. ``REQUEST_SET_TIME_LEFT`` carries
its seconds as ``timeLeft``, the same key the snapshot uses, not ``timeLeftSeconds``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from tandem.core.timer import TimerPhase, TimerSnapshot


class ProtocolError(ValueError):
    """Raised for frames that are not valid application messages."""


class MessageKind(str, Enum):
    REQUEST_START = "REQUEST_START"
    REQUEST_PAUSE = "REQUEST_PAUSE"
    REQUEST_RESET = "REQUEST_RESET"
    REQUEST_SET_CYCLE_INFO = "REQUEST_SET_CYCLE_INFO"
    REQUEST_SET_TIME_LEFT = "REQUEST_SET_TIME_LEFT"
    STATE_UPDATE = "STATE_UPDATE"

    @property
    def is_request(self) -> bool:
        return self is not MessageKind.STATE_UPDATE


_SNAPSHOT_FIELDS = {
    "phase": "phase",
    "timeLeft": "time_left",
    "isRunning": "is_running",
    "workDuration": "work_duration",
    "shortBreakDuration": "short_break_duration",
    "longBreakDuration": "long_break_duration",
    "longBreakInterval": "long_break_interval",
    "cycleCount": "cycle_count",
    "justFinished": "just_finished",
}

_REQUEST_PAYLOAD_KEYS: dict[MessageKind, tuple[str, ...]] = {
    MessageKind.REQUEST_SET_CYCLE_INFO: ("cycleCount", "longBreakInterval"),
    MessageKind.REQUEST_SET_TIME_LEFT: ("timeLeft",),
}


@dataclass(frozen=True)
class Message:
    kind: MessageKind
    payload: dict[str, Any] | None = None

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.kind.value, "payload": self.payload}

    @classmethod
    def from_wire(cls, data: Any) -> Message:
        if not isinstance(data, dict):
            raise ProtocolError(f"Message must be an object, got {type(data).__name__}")
        try:
            kind = MessageKind(data.get("type"))
        except ValueError as exc:
            raise ProtocolError(f"Unknown message type: {data.get('type')!r}") from exc

        payload = data.get("payload")
        if payload is not None and not isinstance(payload, dict):
            raise ProtocolError(f"{kind.value} payload must be an object")

        if kind == MessageKind.STATE_UPDATE:
            snapshot_from_wire(payload)
        else:
            for key in _REQUEST_PAYLOAD_KEYS.get(kind, ()):
                if payload is None or not _is_int(payload.get(key)):
                    raise ProtocolError(f"{kind.value} requires integer {key!r}")
        return cls(kind=kind, payload=payload)


def request(kind: MessageKind, **values: int) -> Message:
    if kind == MessageKind.REQUEST_SET_CYCLE_INFO:
        return Message(
            kind,
            {"cycleCount": values["cycle_count"], "longBreakInterval": values["long_break_interval"]},
        )
    if kind == MessageKind.REQUEST_SET_TIME_LEFT:
        return Message(kind, {"timeLeft": values["time_left"]})
    return Message(kind)


def state_update(snapshot: TimerSnapshot) -> Message:
    return Message(MessageKind.STATE_UPDATE, snapshot_to_wire(snapshot))


def snapshot_to_wire(snapshot: TimerSnapshot) -> dict[str, Any]:
    payload = {wire: getattr(snapshot, attr) for wire, attr in _SNAPSHOT_FIELDS.items()}
    payload["phase"] = snapshot.phase.value
    return payload


def snapshot_from_wire(payload: dict[str, Any] | None) -> TimerSnapshot:
    if not isinstance(payload, dict):
        raise ProtocolError("STATE_UPDATE requires a snapshot payload")
    missing = [key for key in _SNAPSHOT_FIELDS if key not in payload]
    if missing:
        raise ProtocolError(f"Snapshot is missing {', '.join(missing)}")
    try:
        phase = TimerPhase(payload["phase"])
    except ValueError as exc:
        raise ProtocolError(f"Unknown phase: {payload['phase']!r}") from exc

    values: dict[str, Any] = {"phase": phase}
    for wire, attr in _SNAPSHOT_FIELDS.items():
        if wire == "phase":
            continue
        raw = payload[wire]
        if attr in {"is_running", "just_finished"}:
            if not isinstance(raw, bool):
                raise ProtocolError(f"{wire} must be a boolean")
        elif not _is_int(raw) or raw < 0:
            raise ProtocolError(f"{wire} must be a non-negative integer")
        values[attr] = raw
    return TimerSnapshot(**values)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
