from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import TextIO

from PyQt6.QtCore import QObject, QSocketNotifier, pyqtSignal

from tandem.core.app_state import SessionRole, SessionState
from tandem.core.replication import IntentDelivery, ReplicationLayer
from tandem.core.timer import TimerPhase, TimerSnapshot, format_clock


logger = logging.getLogger(__name__)

ROLE_LABELS = {
    SessionRole.UNASSIGNED: "Solo",
    SessionRole.CONNECTING: "Connecting",
    SessionRole.HOST: "Host",
    SessionRole.GUEST: "Guest",
    SessionRole.DISCONNECTED: "Disconnected",
    SessionRole.FAILED: "Failed",
}

HELP_TEXT = (
    "commands: start | pause | reset | cycle <count> <interval> | time <seconds|mm:ss> | "
    "host [session] | join <session> | leave | status | quit"
)


@dataclass(frozen=True)
class Command:
    name: str
    args: tuple[int | str, ...] = ()


def parse_seconds(text: str) -> int:
    """Accepts plain seconds (``90``) or ``mm:ss`` (``01:30``)."""
    text = text.strip()
    if ":" in text:
        minutes, _, seconds = text.partition(":")
        if not minutes.isdigit() or not seconds.isdigit() or int(seconds) >= 60:
            raise ValueError(f"Invalid time: {text}")
        return int(minutes) * 60 + int(seconds)
    if not text.isdigit():
        raise ValueError(f"Invalid time: {text}")
    return int(text)


def parse_command(line: str) -> Command:
    parts = line.split()
    if not parts:
        raise ValueError("Empty command")
    name, args = parts[0].lower(), parts[1:]

    if name in {"start", "pause", "reset", "leave", "status", "quit", "help"}:
        if args:
            raise ValueError(f"{name} takes no arguments")
        return Command(name)
    if name == "cycle":
        if len(args) != 2 or not all(arg.isdigit() for arg in args):
            raise ValueError("usage: cycle <count> <interval>")
        return Command(name, (int(args[0]), int(args[1])))
    if name == "time":
        if len(args) != 1:
            raise ValueError("usage: time <seconds|mm:ss>")
        return Command(name, (parse_seconds(args[0]),))
    if name == "host":
        if len(args) > 1:
            raise ValueError("usage: host [session]")
        return Command(name, tuple(args))
    if name == "join":
        if len(args) != 1:
            raise ValueError("usage: join <session>")
        return Command(name, (args[0],))
    raise ValueError(f"Unknown command: {name}")


def render_status(session: SessionState, snapshot: TimerSnapshot) -> str:
    label = ROLE_LABELS[session.role]
    if session.session_id:
        label = f"{label} {session.session_id}"
    running = "running" if snapshot.is_running else "paused"
    line = (
        f"[{label}] {snapshot.phase.value} {format_clock(snapshot.time_left)} {running}"
        f"  cycle {snapshot.cycle_count}/{snapshot.long_break_interval}"
        f"  {int(snapshot.progress * 100)}%"
    )
    if session.role == SessionRole.HOST and session.peers:
        line += f"  guests: {len(session.peers)}"
    if session.status:
        line += f"  ({session.status})"
    return line


class ConsoleView(QObject):
    """Prints the shared timer and turns typed commands into intents."""

    quit_requested = pyqtSignal()

    def __init__(self, layer: ReplicationLayer, stream: TextIO | None = None) -> None:
        super().__init__()
        self.layer = layer
        self.stream = stream or sys.stdout
        self._notifier: QSocketNotifier | None = None
        self._last_line = ""

        layer.timer.changed.connect(self._on_changed)
        layer.timer.phase_completed.connect(self._on_phase_completed)
        layer.session.changed.connect(self._on_session_changed)
        layer.intent_dropped.connect(lambda reason: self._print(f"! {reason}"))

    def attach_stdin(self) -> None:
        self._notifier = QSocketNotifier(sys.stdin.fileno(), QSocketNotifier.Type.Read, self)
        self._notifier.activated.connect(self._on_stdin)

    def handle_line(self, line: str) -> None:
        if not line.strip():
            return
        try:
            command = parse_command(line)
            self.execute(command)
        except ValueError as exc:
            self._print(f"! {exc}")

    def execute(self, command: Command) -> None:
        layer = self.layer
        if command.name == "start":
            self._report(layer.start())
        elif command.name == "pause":
            self._report(layer.pause())
        elif command.name == "reset":
            self._report(layer.reset())
        elif command.name == "cycle":
            count, interval = command.args
            self._report(layer.set_cycle_info(int(count), int(interval)))
        elif command.name == "time":
            self._report(layer.set_time_left(int(command.args[0])))
        elif command.name == "host":
            if command.args:
                layer.host_session(str(command.args[0]))
            elif layer.state.can_become_host:
                layer.become_host()
            else:
                layer.host_session()
        elif command.name == "join":
            layer.join_session(str(command.args[0]))
        elif command.name == "leave":
            layer.leave_session()
        elif command.name == "status":
            self._print(render_status(layer.state, layer.snapshot), force=True)
        elif command.name == "help":
            self._print(HELP_TEXT, force=True)
        elif command.name == "quit":
            self.quit_requested.emit()

    def refresh(self) -> None:
        self._print(render_status(self.layer.state, self.layer.snapshot))

    def _report(self, delivery: IntentDelivery) -> None:
        logger.debug("Intent %s", delivery.value)

    def _on_changed(self, _snapshot: TimerSnapshot) -> None:
        self.refresh()

    def _on_session_changed(self, state: SessionState) -> None:
        self.refresh()
        if state.last_error:
            self._print(f"! {state.last_error}")
        if state.can_become_host:
            self._print("No host is running this session. Type 'host' to become the host.")

    def _on_phase_completed(self, finished: TimerPhase, snapshot: TimerSnapshot) -> None:
        self._print(f"\a{finished.value} finished, next: {snapshot.phase.value}", force=True)

    def _on_stdin(self) -> None:
        line = sys.stdin.readline()
        if line == "":
            self.quit_requested.emit()
            return
        self.handle_line(line)

    def _print(self, text: str, force: bool = False) -> None:
        if not force and text == self._last_line:
            return
        self._last_line = text
        print(text, file=self.stream, flush=True)

