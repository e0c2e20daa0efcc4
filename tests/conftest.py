from __future__ import annotations

import copy
import os
from collections import deque
from typing import Any, Callable

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

import pytest
from PyQt6.QtCore import QObject, pyqtSignal

from tandem.core.config import TandemSettings
from tandem.core.replication import ReplicationLayer
from tandem.net.transport import TransportError, TransportErrorKind


class FakeChannel(QObject):
    opened = pyqtSignal()
    message = pyqtSignal(object)
    closed = pyqtSignal()
    error = pyqtSignal(object)

    def __init__(self, network: FakeNetwork, peer: str) -> None:
        super().__init__()
        self.network = network
        self.peer = peer
        self.remote: FakeChannel | None = None
        self.is_open = False
        self.sent: list[dict[str, Any]] = []

    def send(self, data: dict[str, Any]) -> None:
        if not self.is_open:
            raise TransportError(TransportErrorKind.NOT_OPEN, "closed")
        self.sent.append(data)
        remote = self.remote
        assert remote is not None
        self.network.schedule(lambda: remote.is_open and remote.message.emit(copy.deepcopy(data)))

    def close(self) -> None:
        for channel in (self, self.remote):
            if channel is not None and channel.is_open:
                channel.is_open = False
                self.network.schedule(channel.closed.emit)

    def fail(self, reason: str = "boom") -> None:
        self.is_open = False
        self.error.emit(TransportError(TransportErrorKind.SOCKET_ERROR, reason))
        self.closed.emit()


class FakePeer(QObject):
    opened = pyqtSignal(str)
    connection = pyqtSignal(object)
    disconnected = pyqtSignal()
    closed = pyqtSignal()
    error = pyqtSignal(object)

    def __init__(self, network: FakeNetwork, peer_id: str | None) -> None:
        super().__init__()
        self.network = network
        self.id = peer_id or network.next_id()
        self.is_destroyed = False
        self.reconnects = 0
        network.peers.append(self)
        if self.id in network.hosts and not network.hosts[self.id].is_destroyed:
            network.schedule(
                lambda: self.error.emit(TransportError(TransportErrorKind.UNAVAILABLE_ID, f'ID "{self.id}" is taken'))
            )
        else:
            network.hosts[self.id] = self
            network.schedule(lambda: not self.is_destroyed and self.opened.emit(self.id))

    def connect(self, peer_id: str) -> FakeChannel:
        local = FakeChannel(self.network, peer_id)
        target = self.network.hosts.get(peer_id)
        if peer_id in self.network.blackholes:
            return local
        if target is None or target.is_destroyed:
            self.network.schedule(
                lambda: self.error.emit(
                    TransportError(TransportErrorKind.PEER_UNAVAILABLE, f"Could not connect to peer {peer_id}")
                )
            )
            return local

        remote = FakeChannel(self.network, self.id)
        local.remote, remote.remote = remote, local

        def establish() -> None:
            if target.is_destroyed or self.is_destroyed:
                return
            target.connection.emit(remote)
            remote.is_open = True
            remote.opened.emit()
            local.is_open = True
            local.opened.emit()

        self.network.schedule(establish)
        self.network.channels.append(local)
        return local

    def reconnect(self) -> None:
        self.reconnects += 1
        self.network.schedule(lambda: self.opened.emit(self.id))

    def destroy(self) -> None:
        if self.is_destroyed:
            return
        self.is_destroyed = True
        if self.network.hosts.get(self.id) is self:
            del self.network.hosts[self.id]
        for channel in self.network.channels:
            if channel.remote is not None and self.id in (channel.peer, channel.remote.peer):
                channel.close()
        self.closed.emit()


class FakeNetwork:
    """In-memory stand-in for the rendezvous plus TCP transport.

    Events are queued and delivered in order by ``flush``, like an event loop.
    """

    def __init__(self) -> None:
        self.queue: deque[Callable[[], Any]] = deque()
        self.hosts: dict[str, FakePeer] = {}
        self.peers: list[FakePeer] = []
        self.channels: list[FakeChannel] = []
        self.blackholes: set[str] = set()
        self._counter = 0

    def next_id(self) -> str:
        self._counter += 1
        return f"guest-{self._counter}"

    def schedule(self, callback: Callable[[], Any]) -> None:
        self.queue.append(callback)

    def flush(self) -> None:
        while self.queue:
            self.queue.popleft()()

    def factory(self, peer_id: str | None) -> FakePeer:
        return FakePeer(self, peer_id)


@pytest.fixture
def settings(tmp_path) -> TandemSettings:
    return TandemSettings(
        work_duration=1500,
        short_break_duration=300,
        long_break_duration=900,
        long_break_interval=4,
        connect_timeout_ms=3000,
        max_rejoin_attempts=0,
        registry_path=tmp_path / "rendezvous.db",
    )


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def make_layer(qapp, settings, network) -> Callable[..., ReplicationLayer]:
    layers: list[ReplicationLayer] = []

    def build(**overrides: Any) -> ReplicationLayer:
        layer_settings = settings.model_copy(update=overrides) if overrides else settings
        layer = ReplicationLayer(layer_settings, peer_factory=network.factory)
        layers.append(layer)
        return layer

    yield build
    for layer in layers:
        layer.leave_session()
