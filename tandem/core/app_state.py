from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from PyQt6.QtCore import QObject, pyqtSignal

from tandem.core.timer import TimerSnapshot


class SessionRole(str, Enum):
    UNASSIGNED = "unassigned"
    CONNECTING = "connecting"
    HOST = "host"
    GUEST = "guest"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


@dataclass(frozen=True)
class SessionState:
    role: SessionRole = SessionRole.UNASSIGNED
    self_id: str | None = None
    session_id: str | None = None
    peers: tuple[str, ...] = ()
    last_error: str | None = None
    status: str = ""
    can_become_host: bool = False

    @property
    def is_authoritative(self) -> bool:
        """True when this process owns the timer (hosting, or not in any session)."""
        return self.role in {SessionRole.HOST, SessionRole.UNASSIGNED}


class TimerStore(QObject):
    """Per-process holder of the current timer snapshot."""

    changed = pyqtSignal(object)
    phase_completed = pyqtSignal(object, object)

    def __init__(self, snapshot: TimerSnapshot | None = None) -> None:
        super().__init__()
        self._snapshot = snapshot or TimerSnapshot.initial()

    @property
    def snapshot(self) -> TimerSnapshot:
        return self._snapshot

    def commit(self, snapshot: TimerSnapshot) -> bool:
        previous = self._snapshot
        if snapshot == previous:
            return False
        self._snapshot = snapshot
        self.changed.emit(snapshot)
        if snapshot.just_finished:
            self.phase_completed.emit(previous.phase, snapshot)
        return True

    def apply_remote(self, snapshot: TimerSnapshot) -> bool:
        return self.commit(replace(snapshot, just_finished=False))

    def reset_idle(self, snapshot: TimerSnapshot) -> bool:
        return self.commit(replace(snapshot, just_finished=False))


class SessionStore(QObject):
    changed = pyqtSignal(object)

    def __init__(self, state: SessionState | None = None) -> None:
        super().__init__()
        self._state = state or SessionState()

    @property
    def state(self) -> SessionState:
        return self._state

    def update(self, **changes: Any) -> SessionState:
        return self.replace(replace(self._state, **changes))

    def replace(self, state: SessionState) -> SessionState:
        if state != self._state:
            self._state = state
            self.changed.emit(state)
        return self._state
