from dataclasses import replace

from tandem.core.app_state import SessionRole, SessionState, SessionStore, TimerStore
from tandem.core.timer import TimerPhase, TimerSnapshot


def test_commit_notifies_only_on_change() -> None:
    store = TimerStore()
    seen = []
    store.changed.connect(seen.append)

    assert store.commit(store.snapshot) is False
    running = replace(store.snapshot, is_running=True)
    assert store.commit(running) is True

    assert seen == [running]
    assert store.snapshot == running


def test_phase_completed_emitted_for_finishing_snapshot() -> None:
    store = TimerStore()
    completed = []
    store.phase_completed.connect(lambda phase, snapshot: completed.append((phase, snapshot.phase)))

    finished = replace(
        store.snapshot,
        phase=TimerPhase.SHORT_BREAK,
        time_left=300,
        cycle_count=1,
        is_running=True,
        just_finished=True,
    )
    store.commit(finished)

    assert completed == [(TimerPhase.WORK, TimerPhase.SHORT_BREAK)]


def test_apply_remote_clears_just_finished() -> None:
    store = TimerStore()
    completed = []
    store.phase_completed.connect(lambda *args: completed.append(args))

    remote = replace(TimerSnapshot.initial(), phase=TimerPhase.SHORT_BREAK, time_left=300, just_finished=True)
    store.apply_remote(remote)

    assert store.snapshot.just_finished is False
    assert store.snapshot.phase == TimerPhase.SHORT_BREAK
    assert completed == []


def test_session_store_update_and_authority() -> None:
    store = SessionStore()
    seen = []
    store.changed.connect(seen.append)

    assert store.state.is_authoritative is True
    store.update(role=SessionRole.GUEST, session_id="room")
    store.update(role=SessionRole.GUEST, session_id="room")

    assert len(seen) == 1
    assert store.state == SessionState(role=SessionRole.GUEST, session_id="room")
    assert store.state.is_authoritative is False
