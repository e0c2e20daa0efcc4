from __future__ import annotations

"""TCP peer transport on top of QtNetwork.

A ``TcpPeer`` listens on an ephemeral port and advertises itself in the
rendezvous registry under its id. ``connect(peer_id)`` looks the id up and
dials it; the dialing side introduces itself with a ``{"hello": <id>}`` frame.
Frames are newline-delimited JSON objects. All callbacks run on the Qt event
loop of the thread that owns the peer.
"""

import json
import logging
import re
import sqlite3
import uuid
from enum import Enum
from functools import partial
from typing import Any

from PyQt6.QtCore import QObject, QTimer, pyqtSignal
from PyQt6.QtNetwork import QAbstractSocket, QHostAddress, QTcpServer, QTcpSocket

from tandem.data.rendezvous import RendezvousRegistry


logger = logging.getLogger(__name__)

PEER_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")
MAX_FRAME_BYTES = 64 * 1024
MAX_BACKOFF_FACTOR = 8

_DIAL_FAILURES = {
    QAbstractSocket.SocketError.ConnectionRefusedError,
    QAbstractSocket.SocketError.HostNotFoundError,
    QAbstractSocket.SocketError.SocketTimeoutError,
    QAbstractSocket.SocketError.NetworkError,
}


class TransportErrorKind(str, Enum):
    INVALID_ID = "invalid-id"
    UNAVAILABLE_ID = "unavailable-id"
    PEER_UNAVAILABLE = "peer-unavailable"
    SERVER_ERROR = "server-error"
    NETWORK = "network"
    SOCKET_ERROR = "socket-error"
    NOT_OPEN = "not-open"


class TransportError(Exception):
    def __init__(self, kind: TransportErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __repr__(self) -> str:
        return f"TransportError({self.kind.value!r}, {self.message!r})"


class TcpDataChannel(QObject):
    """Reliable ordered channel to one remote peer.

    ``opened``/``closed``/``error`` are only emitted for channels that opened;
    a dial that never connects is reported by the owning peer instead.
    """

    opened = pyqtSignal()
    message = pyqtSignal(object)
    closed = pyqtSignal()
    error = pyqtSignal(object)

    dial_failed = pyqtSignal(object)
    introduced = pyqtSignal(object)
    discarded = pyqtSignal()

    def __init__(self, peer: str | None, parent: QObject | None = None) -> None:
        super().__init__(parent)
        self.peer = peer
        self._socket: QTcpSocket | None = None
        self._buffer = b""
        self._open = False
        self._finished = False
        self._local_id: str | None = None

    @property
    def is_open(self) -> bool:
        return self._open

    def attach_outbound(self, socket: QTcpSocket, local_id: str, host: str, port: int) -> None:
        self._local_id = local_id
        self._bind(socket)
        socket.connected.connect(self._on_connected)
        socket.connectToHost(host, port)

    def attach_inbound(self, socket: QTcpSocket) -> None:
        self._bind(socket)

    def send(self, data: dict[str, Any]) -> None:
        if not self._open or self._socket is None:
            raise TransportError(TransportErrorKind.NOT_OPEN, f"Channel to {self.peer} is not open")
        self._write(data)

    def close(self) -> None:
        if self._socket is not None and not self._finished:
            self._socket.disconnectFromHost()

    def abort(self) -> None:
        self._finished = True
        self._open = False
        if self._socket is not None:
            self._socket.abort()

    def _bind(self, socket: QTcpSocket) -> None:
        socket.setParent(self)
        self._socket = socket
        socket.readyRead.connect(self._on_ready_read)
        socket.disconnected.connect(self._on_disconnected)
        socket.errorOccurred.connect(self._on_socket_error)

    def _write(self, data: dict[str, Any]) -> None:
        assert self._socket is not None
        self._socket.write(json.dumps(data, separators=(",", ":")).encode("utf-8") + b"\n")

    def _on_connected(self) -> None:
        if self._finished:
            return
        self._write({"hello": self._local_id})
        self._open = True
        self.opened.emit()

    def _on_ready_read(self) -> None:
        if self._socket is None or self._finished:
            return
        self._buffer += bytes(self._socket.readAll())
        while b"\n" in self._buffer:
            line, self._buffer = self._buffer.split(b"\n", 1)
            if line.strip():
                self._handle_frame(line)
            if self._finished:
                return
        if len(self._buffer) > MAX_FRAME_BYTES:
            logger.warning("Dropping channel to %s: frame exceeds %d bytes", self.peer, MAX_FRAME_BYTES)
            self._fail(TransportError(TransportErrorKind.SOCKET_ERROR, "Frame too large"))

    def _handle_frame(self, line: bytes) -> None:
        try:
            data = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("Ignoring undecodable frame from %s", self.peer)
            return
        if not isinstance(data, dict):
            logger.warning("Ignoring non-object frame from %s", self.peer)
            return

        if not self._open:
            # inbound side: the first frame must introduce the remote peer
            remote_id = data.get("hello")
            if not isinstance(remote_id, str) or not PEER_ID_PATTERN.match(remote_id):
                logger.warning("Closing inbound connection without a valid hello frame")
                self.abort()
                return
            self.peer = remote_id
            self._open = True
            self.introduced.emit(self)
            self.opened.emit()
            return
        self.message.emit(data)

    def _on_disconnected(self) -> None:
        if self._finished:
            return
        self._finished = True
        was_open = self._open
        self._open = False
        if was_open:
            self.closed.emit()
        elif self._local_id is None:
            self.discarded.emit()

    def _on_socket_error(self, socket_error: QAbstractSocket.SocketError) -> None:
        if self._finished:
            return
        description = self._socket.errorString() if self._socket is not None else str(socket_error)
        if not self._open:
            if self._local_id is not None and socket_error in _DIAL_FAILURES:
                self._finished = True
                logger.debug("Dial to %s failed: %s", self.peer, description)
                self.dial_failed.emit(
                    TransportError(TransportErrorKind.PEER_UNAVAILABLE, f"Could not connect to peer {self.peer}")
                )
            return
        if socket_error == QAbstractSocket.SocketError.RemoteHostClosedError:
            return  # reported through disconnected
        self._fail(TransportError(TransportErrorKind.SOCKET_ERROR, description))

    def _fail(self, error: TransportError) -> None:
        was_open = self._open
        self.abort()
        if was_open:
            self.error.emit(error)
            self.closed.emit()


class TcpPeer(QObject):
    """One addressable endpoint in the rendezvous namespace."""

    opened = pyqtSignal(str)
    connection = pyqtSignal(object)
    disconnected = pyqtSignal()
    closed = pyqtSignal()
    error = pyqtSignal(object)

    def __init__(
        self,
        registry: RendezvousRegistry,
        peer_id: str | None = None,
        *,
        host: str = "127.0.0.1",
        refresh_interval_ms: int = 5000,
        reconnect_delay_ms: int = 500,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        if peer_id is not None and not PEER_ID_PATTERN.match(peer_id):
            raise TransportError(TransportErrorKind.INVALID_ID, f'ID "{peer_id}" is invalid')
        try:
            registry.init_db()
        except sqlite3.Error as exc:
            raise TransportError(TransportErrorKind.NETWORK, f"Rendezvous registry unavailable: {exc}") from exc

        self._registry = registry
        self._id = peer_id or uuid.uuid4().hex[:12]
        self._owner = uuid.uuid4().hex
        self._host = host
        self._registered = False
        self._destroyed = False
        self._channels: list[TcpDataChannel] = []
        self._base_reconnect_delay_ms = reconnect_delay_ms
        self._reconnect_delay_ms = reconnect_delay_ms

        self._server = QTcpServer(self)
        self._server.newConnection.connect(self._on_new_connection)

        self._refresh_timer = QTimer(self)
        self._refresh_timer.setInterval(refresh_interval_ms)
        self._refresh_timer.timeout.connect(self._refresh_registration)

        QTimer.singleShot(0, self._open)

    @property
    def id(self) -> str:
        return self._id

    @property
    def open(self) -> bool:
        return self._registered and not self._destroyed

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    def connect(self, peer_id: str) -> TcpDataChannel:
        channel = TcpDataChannel(peer_id, parent=self)
        self._track(channel)
        channel.dial_failed.connect(self._emit_error)
        try:
            record = self._registry.resolve(peer_id)
        except sqlite3.Error as exc:
            logger.error("Rendezvous lookup for %s failed: %s", peer_id, exc)
            error = TransportError(TransportErrorKind.NETWORK, f"Rendezvous lookup failed: {exc}")
            QTimer.singleShot(0, partial(self._fail_dial, channel, error))
            return channel
        if record is None:
            error = TransportError(TransportErrorKind.PEER_UNAVAILABLE, f"Could not connect to peer {peer_id}")
            QTimer.singleShot(0, partial(self._fail_dial, channel, error))
            return channel

        channel.attach_outbound(QTcpSocket(), self._id, record.host, record.port)
        logger.debug("Dialing %s at %s:%d", peer_id, record.host, record.port)
        return channel

    def reconnect(self) -> None:
        if self._destroyed:
            return
        delay = self._reconnect_delay_ms
        self._reconnect_delay_ms = min(delay * 2, self._base_reconnect_delay_ms * MAX_BACKOFF_FACTOR)
        QTimer.singleShot(delay, self._open)

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        self._refresh_timer.stop()
        for channel in list(self._channels):
            channel.abort()
        self._channels.clear()
        self._server.close()
        if self._registered:
            self._registered = False
            try:
                self._registry.unregister(self._id, self._owner)
            except sqlite3.Error as exc:
                logger.warning("Could not unregister %s: %s", self._id, exc)
        self.closed.emit()

    def _open(self) -> None:
        if self._destroyed or self._registered:
            return
        if not self._server.isListening() and not self._server.listen(QHostAddress(self._host), 0):
            self._emit_error(TransportError(TransportErrorKind.SERVER_ERROR, self._server.errorString()))
            return
        try:
            pruned = self._registry.prune()
            claimed = self._registry.register(self._id, self._host, self._server.serverPort(), self._owner)
        except sqlite3.Error as exc:
            self._emit_error(TransportError(TransportErrorKind.NETWORK, f"Rendezvous registry unavailable: {exc}"))
            return
        if not claimed:
            self._emit_error(TransportError(TransportErrorKind.UNAVAILABLE_ID, f'ID "{self._id}" is taken'))
            return

        if pruned:
            logger.debug("Pruned %d stale rendezvous records", pruned)
        self._registered = True
        self._reconnect_delay_ms = self._base_reconnect_delay_ms
        self._refresh_timer.start()
        logger.debug("Peer %s listening on %s:%d", self._id, self._host, self._server.serverPort())
        self.opened.emit(self._id)

    def _refresh_registration(self) -> None:
        if self._destroyed or not self._registered:
            return
        try:
            still_ours = self._registry.touch(self._id, self._owner)
        except sqlite3.Error as exc:
            logger.warning("Rendezvous refresh for %s failed: %s", self._id, exc)
            still_ours = False
        if not still_ours:
            self._registered = False
            self._refresh_timer.stop()
            self.disconnected.emit()

    def _on_new_connection(self) -> None:
        while self._server.hasPendingConnections():
            socket = self._server.nextPendingConnection()
            if socket is None:
                break
            if self._destroyed:
                socket.abort()
                continue
            channel = TcpDataChannel(None, parent=self)
            self._track(channel)
            channel.introduced.connect(self.connection.emit)
            channel.attach_inbound(socket)

    def _track(self, channel: TcpDataChannel) -> None:
        self._channels.append(channel)
        channel.closed.connect(lambda: self._forget(channel))
        channel.dial_failed.connect(lambda _err: self._forget(channel))
        channel.discarded.connect(lambda: self._forget(channel))

    def _forget(self, channel: TcpDataChannel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)
        channel.deleteLater()

    def _fail_dial(self, channel: TcpDataChannel, error: TransportError) -> None:
        if self._destroyed:
            return
        channel.dial_failed.emit(error)

    def _emit_error(self, error: TransportError) -> None:
        if self._destroyed:
            return
        logger.warning("Peer %s transport error: %s", self._id, error.message)
        self.error.emit(error)
