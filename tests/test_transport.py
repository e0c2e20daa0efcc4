import time

import pytest

from tandem.core.app_state import SessionRole
from tandem.core.replication import ReplicationLayer, tcp_peer_factory
from tandem.data.rendezvous import RendezvousRegistry
from tandem.net.transport import TcpPeer, TransportError, TransportErrorKind


@pytest.fixture
def registry(tmp_path) -> RendezvousRegistry:
    return RendezvousRegistry(tmp_path / "rendezvous.db")


@pytest.fixture
def peers(qapp):
    created: list[TcpPeer] = []
    yield created
    for peer in created:
        peer.destroy()


def open_peer(qtbot, registry, peers, peer_id=None) -> TcpPeer:
    peer = TcpPeer(registry, peer_id)
    peers.append(peer)
    with qtbot.waitSignal(peer.opened, timeout=2000):
        pass
    return peer


def test_invalid_id_is_rejected_immediately(qapp, registry) -> None:
    with pytest.raises(TransportError) as excinfo:
        TcpPeer(registry, "not a valid id")

    assert excinfo.value.kind == TransportErrorKind.INVALID_ID


def test_open_registers_peer(qtbot, registry, peers) -> None:
    peer = open_peer(qtbot, registry, peers, "focus-room")

    record = registry.resolve("focus-room")
    assert peer.open is True
    assert record is not None
    assert record.port > 0


def test_open_prunes_stale_records(qtbot, registry, peers) -> None:
    registry.init_db()
    registry.register("crashed-guest", "127.0.0.1", 40001, owner="gone", now=time.time() - 3600)

    open_peer(qtbot, registry, peers, "focus-room")

    assert registry.prune() == 0
    assert registry.resolve("focus-room") is not None


def test_generated_id_when_none_given(qtbot, registry, peers) -> None:
    peer = open_peer(qtbot, registry, peers)

    assert peer.id
    assert registry.resolve(peer.id) is not None


def test_taken_id_reports_unavailable(qtbot, registry, peers) -> None:
    open_peer(qtbot, registry, peers, "focus-room")
    second = TcpPeer(registry, "focus-room")
    peers.append(second)

    with qtbot.waitSignal(second.error, timeout=2000) as blocker:
        pass

    assert blocker.args[0].kind == TransportErrorKind.UNAVAILABLE_ID
    assert second.open is False


def test_channel_exchanges_messages_both_ways(qtbot, registry, peers) -> None:
    host = open_peer(qtbot, registry, peers, "focus-room")
    guest = open_peer(qtbot, registry, peers)
    inbound = []
    host.connection.connect(inbound.append)

    outbound = guest.connect("focus-room")
    qtbot.waitUntil(lambda: outbound.is_open and bool(inbound) and inbound[0].is_open, timeout=2000)
    remote = inbound[0]
    assert remote.peer == guest.id

    host_received, guest_received = [], []
    remote.message.connect(host_received.append)
    outbound.message.connect(guest_received.append)
    outbound.send({"type": "REQUEST_START", "payload": None})
    remote.send({"type": "STATE_UPDATE", "payload": {"timeLeft": 1}})

    qtbot.waitUntil(lambda: bool(host_received and guest_received), timeout=2000)
    assert host_received == [{"type": "REQUEST_START", "payload": None}]
    assert guest_received == [{"type": "STATE_UPDATE", "payload": {"timeLeft": 1}}]


def test_unknown_peer_reports_peer_unavailable(qtbot, registry, peers) -> None:
    guest = open_peer(qtbot, registry, peers)

    with qtbot.waitSignal(guest.error, timeout=2000) as blocker:
        channel = guest.connect("nobody-here")

    assert blocker.args[0].kind == TransportErrorKind.PEER_UNAVAILABLE
    assert channel.is_open is False


def test_send_on_unopened_channel_raises(qtbot, registry, peers) -> None:
    guest = open_peer(qtbot, registry, peers)
    channel = guest.connect("nobody-here")

    with pytest.raises(TransportError) as excinfo:
        channel.send({"type": "REQUEST_PAUSE"})

    assert excinfo.value.kind == TransportErrorKind.NOT_OPEN


def test_destroy_closes_remote_channel_and_unregisters(qtbot, registry, peers) -> None:
    host = open_peer(qtbot, registry, peers, "focus-room")
    guest = open_peer(qtbot, registry, peers)
    outbound = guest.connect("focus-room")
    qtbot.waitUntil(lambda: outbound.is_open, timeout=2000)

    with qtbot.waitSignal(outbound.closed, timeout=2000):
        host.destroy()

    assert host.is_destroyed is True
    assert registry.resolve("focus-room") is None


def test_lost_registration_is_reported_and_reopened(qtbot, registry, peers) -> None:
    peer = open_peer(qtbot, registry, peers, "focus-room")
    registry.unregister("focus-room", owner=peer._owner)  # noqa: SLF001

    with qtbot.waitSignal(peer.disconnected, timeout=2000):
        peer._refresh_registration()  # noqa: SLF001
    assert peer.open is False

    with qtbot.waitSignal(peer.opened, timeout=2000):
        peer.reconnect()
    assert registry.resolve("focus-room") is not None


def test_two_layers_share_a_timer_over_tcp(qtbot, settings) -> None:
    host = ReplicationLayer(settings, peer_factory=tcp_peer_factory(settings))
    guest = ReplicationLayer(settings, peer_factory=tcp_peer_factory(settings))
    try:
        host.host_session("desk")
        qtbot.waitUntil(lambda: host.state.role == SessionRole.HOST, timeout=3000)

        guest.join_session("desk")
        qtbot.waitUntil(lambda: guest.state.role == SessionRole.GUEST, timeout=3000)
        qtbot.waitUntil(lambda: host.state.peers == (guest.state.self_id,), timeout=3000)

        guest.set_time_left(120)
        guest.start()
        qtbot.waitUntil(lambda: guest.snapshot.is_running and guest.snapshot.time_left <= 120, timeout=3000)
        assert host.is_ticking is True
        assert guest.is_ticking is False

        guest.pause()
        qtbot.waitUntil(lambda: not host.snapshot.is_running and not guest.snapshot.is_running, timeout=3000)
        assert guest.snapshot.time_left == host.snapshot.time_left

        host.leave_session()
        qtbot.waitUntil(lambda: guest.state.role == SessionRole.DISCONNECTED, timeout=3000)
        assert guest.state.last_error is not None
    finally:
        guest.leave_session()
        host.leave_session()
