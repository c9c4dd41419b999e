from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Protocol

from .codec import decode, encode
from .constants import CHAT_PRIVATE
from .envelope import validate_envelope
from .errors import (
    AuthError,
    ChatError,
    InvalidRequestError,
    NotFoundError,
    PermissionDeniedError,
    TransportError,
)
from .events import (
    AckCursor,
    ErrorEvent,
    Hello,
    HistoryMessage,
    JoinRoom,
    LeaveRoom,
    NewMessage,
    Ping,
    PingOut,
    Pong,
    PongOut,
    ReplayDone,
    ReplayRequest,
    RoomJoined,
    RoomLeft,
    SendAck,
    SendMessage,
    Typing,
    UserStatusUpdate,
    UserTyping,
    Welcome,
    parse_event,
)
from .membership import BanScope, MembershipChange
from .message_log import Message
from .presence import PresenceTransition
from .router import DeliveryRouter

if TYPE_CHECKING:
    import RNS

    from .auth import AuthValidator
    from .config import HubRuntimeConfig
    from .events import InboundEvent, OutboundEvent
    from .membership import MembershipIndex
    from .message_log import MessageLog
    from .presence import PresenceRegistry
    from .stats import StatsManager


class Transport(Protocol):
    connection_id: str

    def send(self, payload: bytes) -> None: ...

    def teardown(self) -> None: ...


class LinkTransport:
    """A Reticulum Link as a connection transport."""

    def __init__(self, link: RNS.Link) -> None:
        self.link = link
        lid = getattr(link, "link_id", None)
        self.connection_id = bytes(lid).hex() if isinstance(lid, (bytes, bytearray)) else hex(id(link))

    def send(self, payload: bytes) -> None:
        import RNS

        RNS.Packet(self.link, payload).send()

    def teardown(self) -> None:
        self.link.teardown()


@dataclass(frozen=True)
class Session:
    connection_id: str
    user_id: str
    display_name: str
    device_id: str
    established_at: float


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


_CLOSE = object()


class Connection:
    """
    One physical connection and its writer worker.

    Outbound events go through an ordered outbox drained by a dedicated
    thread, so a slow peer only ever stalls itself. With ``threaded=False``
    events are written inline, which keeps tests deterministic.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        src: bytes | str,
        on_sent: Callable[[Connection, int, Message | None], None],
        on_failed: Callable[[Connection, str], None] | None = None,
        rate_per_min: int,
        outbox_max: int = 1024,
        threaded: bool = True,
    ) -> None:
        self.transport = transport
        self.connection_id = transport.connection_id
        self.src = src
        self.on_sent = on_sent
        self.on_failed = on_failed
        self.log = logging.getLogger("rchatd.gateway")
        self.lock = threading.Lock()
        self.session: Session | None = None
        self.closed = False
        self.awaiting_pong: float | None = None
        self.rate_per_min = max(1, int(rate_per_min))
        self._rate = _RateState(tokens=float(self.rate_per_min), last_refill=time.monotonic())
        self.threaded = threaded
        self.outbox: queue.Queue = queue.Queue(maxsize=max(1, int(outbox_max)))
        self._writer: threading.Thread | None = None
        # Once set nothing more is written, so what the peer received is
        # always a gapless prefix of what was queued.
        self._discard = False
        self.failed = False

    def start(self) -> None:
        if not self.threaded:
            return
        self._writer = threading.Thread(
            target=self._run, name=f"rchatd-conn-{self.connection_id[:8]}", daemon=True
        )
        self._writer.start()

    def send_event(self, event: OutboundEvent, *, message: Message | None = None) -> None:
        if self.closed or self._discard:
            raise TransportError("connection closed")
        payload = encode(event.to_envelope(self.src))
        if not self.threaded:
            if not self._transmit(payload, message):
                raise TransportError("send failed")
            return
        try:
            self.outbox.put_nowait((payload, message))
        except queue.Full as e:
            self._fail("outbox full")
            raise TransportError("outbox full") from e

    def mark_closed(self) -> Session | None:
        with self.lock:
            self.closed = True
            return self.session

    def stop(self, *, flush: bool = False) -> None:
        """
        Retire the writer.

        With ``flush`` everything queued so far is still written before the
        transport is torn down; otherwise queued output is discarded.
        """
        if not self.threaded:
            if flush:
                self.teardown()
            return
        if not flush:
            self._discard = True
        try:
            self.outbox.put(_CLOSE if flush else None, timeout=1.0)
        except queue.Full:
            self._discard = True
            self.teardown()

    def refill_and_take(self, cost: float = 1.0) -> bool:
        now = time.monotonic()
        per_min = float(self.rate_per_min)
        elapsed = max(0.0, now - self._rate.last_refill)
        self._rate.tokens = min(per_min, self._rate.tokens + elapsed * per_min / 60.0)
        self._rate.last_refill = now
        if self._rate.tokens < cost:
            return False
        self._rate.tokens -= cost
        return True

    def _run(self) -> None:
        while True:
            item = self.outbox.get()
            if item is None:
                return
            if item is _CLOSE:
                self.teardown()
                return
            payload, message = item
            self._transmit(payload, message)

    def _transmit(self, payload: bytes, message: Message | None) -> bool:
        if self._discard:
            return False
        try:
            self.transport.send(payload)
        except Exception as e:
            self.log.warning(
                "Send failed conn=%s bytes=%s err=%s", self.connection_id, len(payload), e
            )
            self._fail(f"send failed: {e}")
            return False
        self.on_sent(self, len(payload), message)
        return True

    def _fail(self, reason: str) -> None:
        """Stop writing for good and report the connection as broken."""
        with self.lock:
            if self.failed:
                return
            self.failed = True
            self._discard = True
        if self.on_failed is not None:
            self.on_failed(self, reason)

    def teardown(self) -> None:
        try:
            self.transport.teardown()
        except Exception:
            self.log.debug("Teardown failed conn=%s", self.connection_id, exc_info=True)


class ConnectionGateway:
    """
    Boundary between transports and the hub core.

    Owns the live connection table, runs the HELLO handshake, keeps
    PresenceRegistry in step with the table, and turns inbound events into
    router calls. It is also the router's delivery sink.
    """

    def __init__(
        self,
        config: HubRuntimeConfig,
        auth: AuthValidator,
        presence: PresenceRegistry,
        membership: MembershipIndex,
        message_log: MessageLog,
        *,
        stats: StatsManager,
        src: bytes | str = b"",
        threaded_writers: bool = True,
    ) -> None:
        self.config = config
        self.auth = auth
        self.presence = presence
        self.membership = membership
        self.stats = stats
        self.src = src
        self.threaded_writers = threaded_writers
        self.log = logging.getLogger("rchatd.gateway")
        self.router = DeliveryRouter(
            membership,
            presence,
            message_log,
            self,
            max_content_chars=config.max_content_chars,
            stats=stats,
        )
        self._conns: dict[str, Connection] = {}
        self._lock = threading.Lock()

    # Delivery sink

    def push(self, connection_id: str, message: Message) -> None:
        self._send(connection_id, NewMessage(message), message=message)

    def emit(self, connection_id: str, event: OutboundEvent) -> None:
        self._send(connection_id, event)

    def _send(self, connection_id: str, event: OutboundEvent, *, message: Message | None = None) -> None:
        conn = self._conns.get(connection_id)
        if conn is None:
            raise TransportError(f"no such connection: {connection_id}")
        conn.send_event(event, message=message)

    def _on_failed(self, conn: Connection, reason: str) -> None:
        if conn.closed:
            return
        self.stats.inc("conns_dropped")
        self.log.warning("Dropping connection conn=%s reason=%s", conn.connection_id, reason)
        # Callers may hold router locks; drop from a separate thread.
        threading.Thread(
            target=self.drop, args=(conn.connection_id,), name="rchatd-drop", daemon=True
        ).start()

    def _on_sent(self, conn: Connection, nbytes: int, message: Message | None) -> None:
        self.stats.inc("bytes_out", nbytes)
        session = conn.session
        if message is not None and session is not None:
            self.router.advance_cursor(
                session.user_id, session.device_id, message.partition, message.sequence
            )

    def _reply(self, conn: Connection, event: OutboundEvent) -> None:
        if isinstance(event, ErrorEvent):
            self.stats.inc("errors_sent")
        try:
            conn.send_event(event)
        except TransportError as e:
            self.log.debug("Reply dropped conn=%s err=%s", conn.connection_id, e)

    def emit_to_user(self, user_id: str, event: OutboundEvent) -> int:
        sent = 0
        for conn_id in self.presence.active_sessions_of(user_id):
            try:
                self.emit(conn_id, event)
                sent += 1
            except TransportError:
                continue
        return sent

    # Connection lifecycle

    def get_connection(self, connection_id: str) -> Connection | None:
        return self._conns.get(connection_id)

    def on_connect(self, transport: Transport) -> Connection:
        conn = Connection(
            transport,
            src=self.src,
            on_sent=self._on_sent,
            on_failed=self._on_failed,
            rate_per_min=self.config.rate_limit_msgs_per_minute,
            outbox_max=self.config.outbox_max,
            threaded=self.threaded_writers,
        )
        with self._lock:
            self._conns[conn.connection_id] = conn
        conn.start()
        self.log.info("Connection opened conn=%s", conn.connection_id)
        return conn

    def on_close(self, connection_id: str, *, flush: bool = False) -> None:
        """Forget the connection now. ``flush`` writes what is queued, then hangs up."""
        with self._lock:
            conn = self._conns.pop(connection_id, None)
        if conn is None:
            return

        session = conn.mark_closed()
        transition = None
        if session is not None:
            transition = self.presence.remove_session(connection_id)
            self.router.detach(connection_id)
        conn.stop(flush=flush)

        self.log.info(
            "Connection closed conn=%s user=%s",
            connection_id,
            session.user_id if session else "-",
        )
        if transition is not None:
            self._notify_status(transition)

    def drop(self, connection_id: str) -> None:
        """Remove the session now, then tear down its transport."""
        conn = self._conns.get(connection_id)
        self.on_close(connection_id)
        if conn is not None:
            conn.teardown()

    def disconnect_user(self, user_id: str, reason: str) -> int:
        conn_ids = list(self.presence.active_sessions_of(user_id))
        for conn_id in conn_ids:
            conn = self._conns.get(conn_id)
            if conn is None:
                continue
            self._reply(conn, ErrorEvent(PermissionDeniedError.code, reason))
            self.on_close(conn_id, flush=True)
        if conn_ids:
            self.log.warning("Disconnected user=%s sessions=%s reason=%s", user_id, len(conn_ids), reason)
        return len(conn_ids)

    def close_all(self) -> None:
        with self._lock:
            conn_ids = list(self._conns)
        for conn_id in conn_ids:
            self.drop(conn_id)

    def connection_count(self) -> int:
        return len(self._conns)

    def sweep_liveness(self, timeout_s: float) -> None:
        """Ping idle sessions and drop the ones that never answered."""
        now = time.monotonic()
        to_ping: list[Connection] = []
        to_drop: list[str] = []
        with self._lock:
            conns = list(self._conns.values())
        for conn in conns:
            if conn.session is None:
                continue
            if conn.awaiting_pong is not None:
                if timeout_s > 0 and now - conn.awaiting_pong > timeout_s:
                    to_drop.append(conn.connection_id)
                continue
            conn.awaiting_pong = now
            to_ping.append(conn)

        for conn_id in to_drop:
            self.log.info("Ping timeout conn=%s", conn_id)
            self.drop(conn_id)
        for conn in to_ping:
            self.stats.inc("pings_out")
            self._reply(conn, PingOut(now))

    # Inbound

    def on_packet(self, connection_id: str, data: bytes) -> None:
        conn = self._conns.get(connection_id)
        if conn is None or conn.closed:
            return

        self.stats.inc("pkts_in")
        self.stats.inc("bytes_in", len(data))

        if conn.session is not None and not conn.refill_and_take(1.0):
            self.stats.inc("rate_limited")
            self._reply(conn, ErrorEvent(InvalidRequestError.code, "rate limited"))
            return

        try:
            env = decode(data)
            validate_envelope(env)
            event = parse_event(env)
        except Exception as e:
            self.stats.inc("pkts_bad")
            self.log.debug("Bad packet conn=%s bytes=%s err=%s", connection_id, len(data), e)
            self._reply(conn, ErrorEvent(InvalidRequestError.code, f"bad message: {e}"))
            return

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug("RX conn=%s event=%s", connection_id, type(event).__name__)

        self.dispatch(conn, event)

    def dispatch(self, conn: Connection, event: InboundEvent) -> None:
        if isinstance(event, Pong):
            self.stats.inc("pongs_in")
            conn.awaiting_pong = None
            return
        if isinstance(event, Ping):
            self.stats.inc("pings_in")
            self.stats.inc("pongs_out")
            self._reply(conn, PongOut(event.body))
            return

        session = conn.session
        if session is None:
            if isinstance(event, Hello):
                self._handle_hello(conn, event)
            else:
                self._reply(conn, ErrorEvent(AuthError.code, "send HELLO first"))
            return

        try:
            if isinstance(event, SendMessage):
                self._handle_send(conn, session, event)
            elif isinstance(event, JoinRoom):
                rooms = self.router.rooms_of(conn.connection_id)
                limit = int(self.config.max_rooms_per_session)
                if limit > 0 and event.group_id not in rooms and len(rooms) >= limit:
                    raise InvalidRequestError("too many rooms")
                self.stats.inc("joins")
                self.router.join_room(conn.connection_id, event.group_id)
                self._reply(conn, RoomJoined(event.group_id))
            elif isinstance(event, LeaveRoom):
                self.stats.inc("parts")
                self.router.leave_room(conn.connection_id, event.group_id)
                self._reply(conn, RoomLeft(event.group_id))
            elif isinstance(event, Typing):
                self._handle_typing(session, event)
            elif isinstance(event, AckCursor):
                self._handle_ack(session, event)
            elif isinstance(event, ReplayRequest):
                self._handle_replay(conn, session, event)
            elif isinstance(event, Hello):
                self._reply(conn, ErrorEvent(InvalidRequestError.code, "already authenticated"))
        except ChatError as e:
            self._reply(conn, ErrorEvent(e.code, str(e)))

    def _handle_hello(self, conn: Connection, hello: Hello) -> None:
        self.stats.inc("handshakes")
        try:
            ident = self.auth.validate(hello.credential)
            if self.membership.is_banned(BanScope.GLOBAL, ident.user_id):
                raise PermissionDeniedError("banned")
        except ChatError as e:
            self.stats.inc("auth_failed")
            self.log.warning("Handshake refused conn=%s err=%s", conn.connection_id, e)
            code = e.code
            self._reply(conn, ErrorEvent(code, "auth failed" if isinstance(e, AuthError) else str(e)))
            self.on_close(conn.connection_id, flush=True)
            return

        self.membership.register_user(ident.user_id, ident.display_name)
        session = Session(
            connection_id=conn.connection_id,
            user_id=ident.user_id,
            display_name=ident.display_name,
            device_id=hello.device_id,
            established_at=time.time(),
        )

        with conn.lock:
            if conn.closed:
                return
            conn.session = session
            transition = self.presence.add_session(session.user_id, conn.connection_id)

        from . import __version__

        self._reply(
            conn,
            Welcome(self.config.hub_name, __version__, session.user_id, session.display_name),
        )

        rooms = self.router.attach(
            conn.connection_id, session.user_id, session.device_id, hello.cursors
        )
        if conn.closed:
            self.router.detach(conn.connection_id)
            return
        for group_id in rooms:
            self._reply(conn, RoomJoined(group_id))

        self.log.info(
            "Session established conn=%s user=%s device=%s rooms=%s",
            conn.connection_id,
            session.user_id,
            session.device_id,
            len(rooms),
        )
        if transition is not None:
            self._notify_status(transition)

    def _handle_send(self, conn: Connection, session: Session, ev: SendMessage) -> None:
        try:
            msg = self.router.send(session.user_id, ev.partition, ev.content)
        except ChatError as e:
            self.log.info(
                "Send rejected user=%s partition=%s err=%s", session.user_id, ev.partition, e
            )
            self._reply(conn, ErrorEvent(e.code, str(e), ev.temp_id))
            return
        self._reply(conn, SendAck(msg, ev.temp_id))

    def _handle_typing(self, session: Session, ev: Typing) -> None:
        target = ev.partition.target_id
        notice = UserTyping(session.user_id, ev.partition, ev.active)
        if ev.partition.chat_type == CHAT_PRIVATE:
            if not self.membership.user_exists(target):
                raise NotFoundError(f"no such user: {target}")
            self.emit_to_user(target, notice)
            return

        if not self.membership.is_member(target, session.user_id):
            raise PermissionDeniedError(f"not a member of {target}")
        for user_id in self.membership.members_of(target) - {session.user_id}:
            for conn_id in self.presence.active_sessions_of(user_id):
                if target in self.router.rooms_of(conn_id):
                    try:
                        self.emit(conn_id, notice)
                    except TransportError:
                        continue

    def _handle_ack(self, session: Session, ev: AckCursor) -> None:
        p = ev.partition
        if p.chat_type == CHAT_PRIVATE and p.target_id != session.user_id:
            raise PermissionDeniedError("cannot acknowledge another user's inbox")
        self.router.advance_cursor(session.user_id, session.device_id, p, ev.sequence)

    def _handle_replay(self, conn: Connection, session: Session, ev: ReplayRequest) -> None:
        # History travels as HISTORY so the NEW_MESSAGE stream stays ascending,
        # and it does not move the device cursor.
        last = ev.after
        for msg in self.router.replay(session.user_id, ev.partition, ev.after):
            conn.send_event(HistoryMessage(msg))
            last = msg.sequence
        self.stats.inc("replayed", max(0, last - ev.after))
        self._reply(conn, ReplayDone(ev.partition, last))

    # Presence and membership reactions

    def _notify_status(self, transition: PresenceTransition) -> None:
        update = UserStatusUpdate(transition.user_id, transition.status)
        notified = 0
        for user_id in self.membership.interested_parties(transition.user_id):
            notified += self.emit_to_user(user_id, update)
        self.stats.inc("status_updates", notified)
        self.log.info(
            "Presence user=%s status=%s notified=%s",
            transition.user_id,
            transition.status,
            notified,
        )

    def apply_membership_change(self, change: MembershipChange) -> None:
        """React to a mutation already applied to the MembershipIndex."""
        if change.banned_user is not None:
            self.disconnect_user(change.banned_user, "banned")

        self.router.on_membership_change(change)

        if change.group_id is None:
            return
        for user_id in change.removed:
            self.emit_to_user(user_id, RoomLeft(change.group_id))
        if not change.deleted:
            for user_id in change.added:
                self.emit_to_user(user_id, RoomJoined(change.group_id))

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            conns = list(self._conns.values())
        return {
            "connections": len(conns),
            "authenticated": sum(1 for c in conns if c.session is not None),
        }


__all__ = ["Connection", "ConnectionGateway", "LinkTransport", "Session"]
