from __future__ import annotations

"""Host-authoritative replication of the timer across peers.

One ``ReplicationLayer`` lives in each process. The host applies every intent
to its ``TimerEngine`` and rebroadcasts the full snapshot; guests forward
intents and mirror ``STATE_UPDATE`` messages. Every asynchronous handler is
bound to the session generation it was registered in and does nothing once
that generation has been superseded.
"""

import logging
from enum import Enum
from functools import partial
from typing import Any, Callable

from PyQt6.QtCore import QObject, QTimer, pyqtSignal

from tandem.core.app_state import SessionRole, SessionState, SessionStore, TimerStore
from tandem.core.config import TandemSettings, get_settings
from tandem.core.timer import TimerEngine, TimerSnapshot
from tandem.data.rendezvous import RendezvousRegistry
from tandem.net.protocol import Message, MessageKind, ProtocolError, request, snapshot_from_wire, state_update
from tandem.net.transport import TcpPeer, TransportError, TransportErrorKind


logger = logging.getLogger(__name__)

NO_HOST_CONNECTION = "No open connection to host."


class InvalidIntent(ValueError):
    """Raised when an intent payload fails validation."""


class IntentDelivery(str, Enum):
    APPLIED = "applied"
    SENT = "sent"
    DROPPED = "dropped"


class _Intent(str, Enum):
    HOST = "host"
    JOIN = "join"


def tcp_peer_factory(settings: TandemSettings) -> Callable[[str | None], TcpPeer]:
    registry = RendezvousRegistry(settings.registry_path, ttl_seconds=settings.registry_ttl_seconds)

    def create(peer_id: str | None) -> TcpPeer:
        return TcpPeer(
            registry,
            peer_id,
            host=settings.bind_host,
            refresh_interval_ms=settings.registry_refresh_ms,
            reconnect_delay_ms=settings.reconnect_delay_ms,
        )

    return create


def validate_intent(kind: MessageKind, payload: dict[str, Any] | None = None) -> dict[str, int]:
    """Checks an intent payload and returns its integer values by snake_case name."""
    payload = payload or {}
    if not kind.is_request:
        raise InvalidIntent(f"{kind.value} is not an intent")

    if kind == MessageKind.REQUEST_SET_CYCLE_INFO:
        cycle_count = _require_int(payload, "cycle_count")
        interval = _require_int(payload, "long_break_interval")
        if interval < 1:
            raise InvalidIntent("long_break_interval must be at least 1")
        if not 0 <= cycle_count < interval:
            raise InvalidIntent("cycle_count must be in [0, long_break_interval)")
        return {"cycle_count": cycle_count, "long_break_interval": interval}
    if kind == MessageKind.REQUEST_SET_TIME_LEFT:
        time_left = _require_int(payload, "time_left")
        if time_left < 0:
            raise InvalidIntent("time_left must not be negative")
        return {"time_left": time_left}
    return {}


def _require_int(payload: dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if not isinstance(value, int) or isinstance(value, bool):
        raise InvalidIntent(f"{key} must be an integer")
    return value


class ReplicationLayer(QObject):
    intent_dropped = pyqtSignal(str)

    def __init__(
        self,
        settings: TandemSettings | None = None,
        peer_factory: Callable[[str | None], Any] | None = None,
        timer_store: TimerStore | None = None,
        session_store: SessionStore | None = None,
    ) -> None:
        super().__init__()
        self.settings = settings or get_settings()
        self._peer_factory = peer_factory or tcp_peer_factory(self.settings)
        self.timer = timer_store or TimerStore(self.settings.initial_snapshot())
        self.session = session_store or SessionStore()
        self._engine = TimerEngine(self.timer.snapshot)

        self._peer: Any = None
        self._connections: dict[str, Any] = {}
        self._generation = 0
        self._intent: _Intent | None = None
        self._broadcasting = False
        self._rejoin_attempts = 0

        self._tick_driver = QTimer(self)
        self._tick_driver.setInterval(self.settings.tick_interval_ms)
        self._tick_driver.timeout.connect(self._on_tick)

        self._connect_timeout = QTimer(self)
        self._connect_timeout.setSingleShot(True)
        self._connect_timeout.setInterval(self.settings.connect_timeout_ms)
        self._connect_timeout.timeout.connect(self._on_connect_timeout)

        self._rejoin_timer = QTimer(self)
        self._rejoin_timer.setSingleShot(True)
        self._rejoin_timer.setInterval(self.settings.rejoin_delay_ms)
        self._rejoin_timer.timeout.connect(self._on_rejoin)

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def snapshot(self) -> TimerSnapshot:
        return self.timer.snapshot

    @property
    def is_ticking(self) -> bool:
        return self._tick_driver.isActive()

    @property
    def holds_timer(self) -> bool:
        """True while this process owns the engine.

        A host keeps it while its rendezvous registration reconnects, since its
        channels to guests stay open.
        """
        return self.session.state.is_authoritative or (self._intent == _Intent.HOST and self._broadcasting)

    # -- session lifecycle -------------------------------------------------

    def host_session(self, session_id: str | None = None) -> None:
        self._teardown()
        self._intent = _Intent.HOST
        self._rejoin_attempts = 0
        generation = self._generation
        logger.info("Hosting session %s", session_id or "(auto id)")
        self.session.replace(SessionState(role=SessionRole.CONNECTING, session_id=session_id, status="Opening session"))

        peer = self._create_peer(session_id)
        if peer is None:
            return
        peer.opened.connect(partial(self._on_host_open, generation))
        peer.connection.connect(partial(self._on_host_connection, generation))
        peer.disconnected.connect(partial(self._on_peer_disconnected, generation))
        peer.closed.connect(partial(self._on_peer_closed, generation))
        peer.error.connect(partial(self._on_host_error, generation))

    def join_session(self, session_id: str) -> None:
        if not session_id or not session_id.strip():
            raise ValueError("Session id must not be empty")
        self._rejoin_attempts = 0
        self._join(session_id.strip())

    def become_host(self) -> None:
        """Hosts the session that a failed join was looking for."""
        self.host_session(self.session.state.session_id)

    def leave_session(self) -> None:
        logger.info("Leaving session")
        self._teardown()
        self._intent = None
        self.session.replace(SessionState())

    def _join(self, session_id: str) -> None:
        self._teardown()
        self._intent = _Intent.JOIN
        generation = self._generation
        logger.info("Joining session %s", session_id)
        self.session.replace(
            SessionState(role=SessionRole.CONNECTING, session_id=session_id, status=f"Looking for {session_id}")
        )

        peer = self._create_peer(None)
        if peer is None:
            return
        peer.opened.connect(partial(self._on_guest_peer_open, generation))
        peer.disconnected.connect(partial(self._on_peer_disconnected, generation))
        peer.closed.connect(partial(self._on_peer_closed, generation))
        peer.error.connect(partial(self._on_guest_error, generation))
        self._connect_timeout.start()

    def _create_peer(self, peer_id: str | None) -> Any:
        try:
            peer = self._peer_factory(peer_id)
        except TransportError as exc:
            logger.error("Could not create transport: %s", exc.message)
            self.session.update(role=SessionRole.FAILED, last_error=exc.message, status="")
            self._sync_tick_driver()
            return None
        self._peer = peer
        return peer

    def _teardown(self) -> None:
        previous = self.session.state.role
        self._generation += 1
        self._tick_driver.stop()
        self._connect_timeout.stop()
        self._rejoin_timer.stop()
        self._detach_broadcast()
        self._connections.clear()

        peer, self._peer = self._peer, None
        if peer is not None:
            peer.destroy()
        if previous != SessionRole.UNASSIGNED:
            self.timer.reset_idle(self.settings.initial_snapshot())
            self._engine.load(self.timer.snapshot)

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    # -- host side ---------------------------------------------------------

    def _on_host_open(self, generation: int, peer_id: str) -> None:
        if not self._is_current(generation):
            return
        logger.info("Hosting as %s", peer_id)
        self.session.update(
            role=SessionRole.HOST,
            self_id=peer_id,
            session_id=peer_id,
            last_error=None,
            status="Hosting",
            can_become_host=False,
        )
        self._engine.load(self.timer.snapshot)
        self._attach_broadcast()
        if self._connections:
            # re-open after a rendezvous loss
            self._broadcast_snapshot(self.timer.snapshot)
        self._sync_tick_driver()

    def _on_host_connection(self, generation: int, channel: Any) -> None:
        if not self._is_current(generation):
            channel.close()
            return
        logger.info("Incoming connection from %s", channel.peer)
        channel.opened.connect(partial(self._on_guest_channel_open, generation, channel))
        channel.message.connect(partial(self._on_host_message, generation, channel))
        channel.closed.connect(partial(self._on_guest_channel_closed, generation, channel))
        channel.error.connect(partial(self._on_guest_channel_error, generation, channel))

    def _on_guest_channel_open(self, generation: int, channel: Any) -> None:
        if not self._is_current(generation):
            return
        logger.info("Guest %s connected", channel.peer)
        self._connections[channel.peer] = channel
        self._publish_peers()
        self._send(channel, state_update(self.timer.snapshot))

    def _on_host_message(self, generation: int, channel: Any, data: Any) -> None:
        if not self._is_current(generation):
            return
        try:
            message = Message.from_wire(data)
        except ProtocolError as exc:
            logger.warning("Ignoring malformed message from %s: %s", channel.peer, exc)
            return
        if not message.kind.is_request:
            logger.warning("Ignoring %s from guest %s", message.kind.value, channel.peer)
            return

        payload = message.payload or {}
        values = {
            "cycle_count": payload.get("cycleCount"),
            "long_break_interval": payload.get("longBreakInterval"),
            "time_left": payload.get("timeLeft"),
        }
        try:
            checked = validate_intent(message.kind, values)
        except InvalidIntent as exc:
            logger.warning("Rejected %s from %s: %s", message.kind.value, channel.peer, exc)
            return
        logger.info("Applying %s from %s", message.kind.value, channel.peer)
        self._apply(message.kind, checked)

    def _on_guest_channel_closed(self, generation: int, channel: Any) -> None:
        if not self._is_current(generation):
            return
        if self._connections.get(channel.peer) is channel:
            logger.info("Guest %s left", channel.peer)
            del self._connections[channel.peer]
            self._publish_peers()

    def _on_guest_channel_error(self, generation: int, channel: Any, error: TransportError) -> None:
        if not self._is_current(generation):
            return
        logger.warning("Connection error with %s: %s", channel.peer, error.message)
        self._on_guest_channel_closed(generation, channel)

    def _on_host_error(self, generation: int, error: TransportError) -> None:
        if not self._is_current(generation):
            return
        logger.error("Host transport error: %s", error.message)
        session_id = self.session.state.session_id
        self._teardown()
        self._intent = None
        self.session.replace(SessionState(session_id=session_id, last_error=error.message))

    def _attach_broadcast(self) -> None:
        if not self._broadcasting:
            self.timer.changed.connect(self._broadcast_snapshot)
            self._broadcasting = True

    def _detach_broadcast(self) -> None:
        if self._broadcasting:
            self.timer.changed.disconnect(self._broadcast_snapshot)
            self._broadcasting = False

    def _broadcast_snapshot(self, snapshot: TimerSnapshot) -> None:
        message = state_update(snapshot)
        for peer_id, channel in list(self._connections.items()):
            if channel.is_open:
                self._send(channel, message)
            else:
                logger.warning("Skipping broadcast to closed connection %s", peer_id)

    # -- guest side --------------------------------------------------------

    def _on_guest_peer_open(self, generation: int, peer_id: str) -> None:
        if not self._is_current(generation):
            return
        self.session.update(self_id=peer_id)
        if self._connections:
            # signaling came back; the channel to the host is unaffected
            self.session.update(
                last_error=None,
                status="Connected" if self.session.state.role == SessionRole.GUEST else "",
            )
            return

        target = self.session.state.session_id
        if target is None:
            logger.warning("Guest endpoint opened without a target session")
            return
        channel = self._peer.connect(target)
        self._connections[target] = channel
        channel.opened.connect(partial(self._on_host_channel_open, generation))
        channel.message.connect(partial(self._on_guest_message, generation))
        channel.closed.connect(partial(self._on_host_channel_closed, generation))
        channel.error.connect(partial(self._on_host_channel_error, generation))

    def _on_host_channel_open(self, generation: int) -> None:
        if not self._is_current(generation):
            return
        self._connect_timeout.stop()
        self._rejoin_attempts = 0
        logger.info("Connected to host %s", self.session.state.session_id)
        self.session.update(role=SessionRole.GUEST, last_error=None, status="Connected", can_become_host=False)
        self._publish_peers()

    def _on_guest_message(self, generation: int, data: Any) -> None:
        if not self._is_current(generation):
            return
        try:
            message = Message.from_wire(data)
        except ProtocolError as exc:
            logger.warning("Ignoring malformed message from host: %s", exc)
            return
        if message.kind != MessageKind.STATE_UPDATE:
            logger.warning("Ignoring %s sent by host", message.kind.value)
            return
        self.timer.apply_remote(snapshot_from_wire(message.payload))

    def _on_host_channel_closed(self, generation: int) -> None:
        if not self._is_current(generation):
            return
        self._lose_host("Connection to host closed.")

    def _on_host_channel_error(self, generation: int, error: TransportError) -> None:
        if not self._is_current(generation):
            return
        self._lose_host(f"Connection error: {error.message}")

    def _on_guest_error(self, generation: int, error: TransportError) -> None:
        if not self._is_current(generation):
            return
        if error.kind == TransportErrorKind.PEER_UNAVAILABLE:
            self._offer_hosting(error.message)
        elif self.session.state.role == SessionRole.GUEST:
            # the open channel to the host does not depend on the rendezvous
            logger.warning("Transport error while connected to host: %s", error.message)
            self.session.update(last_error=error.message)
        else:
            self._lose_host(error.message)

    def _on_connect_timeout(self) -> None:
        if self._intent != _Intent.JOIN or self.session.state.role != SessionRole.CONNECTING:
            return
        session_id = self.session.state.session_id
        self._offer_hosting(f"No host found for session {session_id}.")

    def _offer_hosting(self, reason: str) -> None:
        """Holds in DISCONNECTED without retrying and offers to host the target id."""
        session_id = self.session.state.session_id
        logger.warning("Join of %s failed: %s", session_id, reason)
        self._teardown()
        self.session.replace(
            SessionState(
                role=SessionRole.DISCONNECTED,
                session_id=session_id,
                last_error=reason,
                status="No host found",
                can_become_host=True,
            )
        )

    def _lose_host(self, reason: str) -> None:
        session_id = self.session.state.session_id
        logger.warning("Lost host %s: %s", session_id, reason)
        self._teardown()
        retry = session_id is not None and self._rejoin_attempts < self.settings.max_rejoin_attempts
        self.session.replace(
            SessionState(
                role=SessionRole.DISCONNECTED,
                session_id=session_id,
                last_error=reason,
                status="Reconnecting" if retry else "Disconnected",
            )
        )
        if retry:
            self._rejoin_attempts += 1
            self._rejoin_timer.start()

    def _on_rejoin(self) -> None:
        state = self.session.state
        if state.role != SessionRole.DISCONNECTED or state.can_become_host or state.session_id is None:
            return
        logger.info("Rejoining %s (attempt %d)", state.session_id, self._rejoin_attempts)
        self._join(state.session_id)

    # -- shared transport events -------------------------------------------

    def _on_peer_disconnected(self, generation: int) -> None:
        if not self._is_current(generation):
            return
        state = self.session.state
        logger.warning("Lost contact with rendezvous, reconnecting")
        if state.role == SessionRole.GUEST:
            self.session.update(status="Rendezvous lost, reconnecting")
        else:
            self.session.update(role=SessionRole.CONNECTING, status="Reconnecting")
        self._sync_tick_driver()
        self._peer.reconnect()

    def _on_peer_closed(self, generation: int) -> None:
        if not self._is_current(generation):
            return
        if self._intent == _Intent.HOST:
            session_id = self.session.state.session_id
            logger.warning("Host transport closed")
            self._teardown()
            self._intent = None
            self.session.replace(SessionState(session_id=session_id, last_error="Transport closed."))
        else:
            self._lose_host("Transport closed.")

    def _publish_peers(self) -> None:
        peers = tuple(sorted(pid for pid, channel in self._connections.items() if channel.is_open))
        self.session.update(peers=peers)

    def _send(self, channel: Any, message: Message) -> bool:
        try:
            channel.send(message.to_wire())
        except TransportError as exc:
            logger.warning("Could not send %s to %s: %s", message.kind.value, channel.peer, exc.message)
            return False
        return True

    # -- intents -----------------------------------------------------------

    def send_intent(self, kind: MessageKind, payload: dict[str, Any] | None = None) -> IntentDelivery:
        """Routes one intent: applied locally when authoritative, else sent to the host.

        Intents that cannot be delivered are dropped, never queued.
        """
        values = validate_intent(kind, payload)
        state = self.session.state
        if self.holds_timer:
            self._apply(kind, values)
            return IntentDelivery.APPLIED

        if state.role == SessionRole.GUEST:
            channel = next(iter(self._connections.values()), None)
            if channel is not None and channel.is_open and self._send(channel, request(kind, **values)):
                return IntentDelivery.SENT

        logger.warning("Dropping %s: %s", kind.value, NO_HOST_CONNECTION)
        self.intent_dropped.emit(NO_HOST_CONNECTION)
        return IntentDelivery.DROPPED

    def start(self) -> IntentDelivery:
        return self.send_intent(MessageKind.REQUEST_START)

    def pause(self) -> IntentDelivery:
        return self.send_intent(MessageKind.REQUEST_PAUSE)

    def reset(self) -> IntentDelivery:
        return self.send_intent(MessageKind.REQUEST_RESET)

    def set_cycle_info(self, cycle_count: int, long_break_interval: int) -> IntentDelivery:
        return self.send_intent(
            MessageKind.REQUEST_SET_CYCLE_INFO,
            {"cycle_count": cycle_count, "long_break_interval": long_break_interval},
        )

    def set_time_left(self, seconds: int) -> IntentDelivery:
        return self.send_intent(MessageKind.REQUEST_SET_TIME_LEFT, {"time_left": seconds})

    def _apply(self, kind: MessageKind, values: dict[str, int]) -> None:
        self._engine.load(self.timer.snapshot)
        if kind == MessageKind.REQUEST_START:
            snapshot = self._engine.start()
        elif kind == MessageKind.REQUEST_PAUSE:
            snapshot = self._engine.pause()
        elif kind == MessageKind.REQUEST_RESET:
            snapshot = self._engine.reset()
        elif kind == MessageKind.REQUEST_SET_CYCLE_INFO:
            snapshot = self._engine.set_cycle_info(values["cycle_count"], values["long_break_interval"])
        else:
            snapshot = self._engine.set_time_left(values["time_left"])
        self._commit(snapshot)

    # -- tick driver -------------------------------------------------------

    def _on_tick(self) -> None:
        if not self.holds_timer:
            self._tick_driver.stop()
            return
        self._engine.load(self.timer.snapshot)
        self._commit(self._engine.tick())

    def _commit(self, snapshot: TimerSnapshot) -> None:
        self.timer.commit(snapshot)
        self._sync_tick_driver()

    def _sync_tick_driver(self) -> None:
        should_tick = self.holds_timer and self.timer.snapshot.is_running
        if should_tick and not self._tick_driver.isActive():
            self._tick_driver.start()
        elif not should_tick and self._tick_driver.isActive():
            self._tick_driver.stop()
