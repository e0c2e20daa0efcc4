from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum


DEFAULT_WORK_DURATION = 25 * 60
DEFAULT_SHORT_BREAK_DURATION = 5 * 60
DEFAULT_LONG_BREAK_DURATION = 15 * 60
DEFAULT_LONG_BREAK_INTERVAL = 4


class TimerPhase(str, Enum):
    WORK = "Work"
    SHORT_BREAK = "Short Break"
    LONG_BREAK = "Long Break"

    @property
    def is_break(self) -> bool:
        return self is not TimerPhase.WORK


@dataclass(frozen=True)
class TimerSnapshot:
    phase: TimerPhase
    time_left: int
    is_running: bool
    work_duration: int
    short_break_duration: int
    long_break_duration: int
    long_break_interval: int
    cycle_count: int = 0
    just_finished: bool = False

    @classmethod
    def initial(
        cls,
        work_duration: int = DEFAULT_WORK_DURATION,
        short_break_duration: int = DEFAULT_SHORT_BREAK_DURATION,
        long_break_duration: int = DEFAULT_LONG_BREAK_DURATION,
        long_break_interval: int = DEFAULT_LONG_BREAK_INTERVAL,
    ) -> TimerSnapshot:
        return cls(
            phase=TimerPhase.WORK,
            time_left=work_duration,
            is_running=False,
            work_duration=work_duration,
            short_break_duration=short_break_duration,
            long_break_duration=long_break_duration,
            long_break_interval=long_break_interval,
        )

    @property
    def phase_duration(self) -> int:
        if self.phase == TimerPhase.SHORT_BREAK:
            return self.short_break_duration
        if self.phase == TimerPhase.LONG_BREAK:
            return self.long_break_duration
        return self.work_duration

    @property
    def progress(self) -> float:
        total = self.phase_duration
        if total <= 0:
            return 0.0
        return max(0.0, min(1.0, (total - self.time_left) / total))


def format_clock(seconds: int) -> str:
    """Formats seconds as ``mm:ss``; minutes are not wrapped into hours."""
    seconds = max(0, int(seconds))
    minutes, rest = divmod(seconds, 60)
    return f"{minutes:02d}:{rest:02d}"


class TimerEngine:
    """Pomodoro phase rules over an immutable snapshot.

    Every operation replaces the held snapshot and returns it. The engine never
    schedules anything itself; the owner decides when ``tick`` is called.
    """

    def __init__(self, snapshot: TimerSnapshot | None = None) -> None:
        self._snapshot = snapshot or TimerSnapshot.initial()

    @property
    def snapshot(self) -> TimerSnapshot:
        return self._snapshot

    def load(self, snapshot: TimerSnapshot) -> TimerSnapshot:
        self._snapshot = snapshot
        return snapshot

    def tick(self) -> TimerSnapshot:
        state = self._snapshot
        if not state.is_running:
            if state.just_finished:
                return self._set(replace(state, just_finished=False))
            return state

        time_left = state.time_left - 1
        if time_left > 0:
            return self._set(replace(state, time_left=time_left, just_finished=False))

        advanced = self._advance(state)
        return self._set(replace(advanced, is_running=advanced.phase.is_break, just_finished=True))

    def start(self) -> TimerSnapshot:
        state = self._snapshot
        if state.time_left <= 0 and not state.is_running:
            state = self._advance(state)
        return self._set(replace(state, is_running=True, just_finished=False))

    def pause(self) -> TimerSnapshot:
        return self._set(replace(self._snapshot, is_running=False, just_finished=False))

    def reset(self) -> TimerSnapshot:
        state = self._snapshot
        return self._set(
            replace(
                state,
                phase=TimerPhase.WORK,
                time_left=state.work_duration,
                is_running=False,
                cycle_count=0,
                just_finished=False,
            )
        )

    def set_cycle_info(self, cycle_count: int, long_break_interval: int) -> TimerSnapshot:
        return self._set(
            replace(self._snapshot, cycle_count=cycle_count, long_break_interval=long_break_interval)
        )

    def set_time_left(self, seconds: int) -> TimerSnapshot:
        return self._set(replace(self._snapshot, time_left=seconds))

    def _set(self, snapshot: TimerSnapshot) -> TimerSnapshot:
        self._snapshot = snapshot
        return snapshot

    @staticmethod
    def _advance(state: TimerSnapshot) -> TimerSnapshot:
        # cycle_count only moves when a work phase is left
        if state.phase == TimerPhase.WORK:
            cycle_count = state.cycle_count + 1
            if cycle_count >= state.long_break_interval:
                return replace(
                    state,
                    phase=TimerPhase.LONG_BREAK,
                    time_left=state.long_break_duration,
                    cycle_count=0,
                )
            return replace(
                state,
                phase=TimerPhase.SHORT_BREAK,
                time_left=state.short_break_duration,
                cycle_count=cycle_count,
            )
        return replace(state, phase=TimerPhase.WORK, time_left=state.work_duration)
