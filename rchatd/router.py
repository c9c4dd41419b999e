from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterator, Protocol

from .constants import CHAT_GROUP, CHAT_PRIVATE
from .errors import ChatError, InvalidRequestError, NotFoundError, PermissionDeniedError
from .events import ReplayDone
from .membership import BanScope, MembershipChange, MembershipIndex
from .message_log import Message, MessageLog, PartitionKey
from .presence import PresenceRegistry

if TYPE_CHECKING:
    from .events import OutboundEvent
    from .stats import StatsManager


class DeliverySink(Protocol):
    """Where the router hands messages for a specific connection."""

    def push(self, connection_id: str, message: Message) -> None: ...

    def emit(self, connection_id: str, event: OutboundEvent) -> None: ...


@dataclass
class _Attachment:
    connection_id: str
    user_id: str
    device_id: str
    lock: threading.Lock = field(default_factory=threading.Lock)
    # Group rooms this connection receives live fan-out for.
    rooms: set[str] = field(default_factory=set)
    # Partitions being replayed; live messages for them are parked here.
    pending: dict[PartitionKey, list[Message]] = field(default_factory=dict)
    # Highest sequence handed to the sink per partition.
    pushed: dict[PartitionKey, int] = field(default_factory=dict)
    closed: bool = False


class DeliveryRouter:
    """
    Orchestrates a send: validate, persist, resolve recipients, fan out.

    It also owns reconnect replay. While a partition is being replayed to a
    connection, live fan-out for that partition is parked and drained after
    the replay, dropping anything the replay already covered, so a consumer
    never sees a partition out of order or twice.
    """

    def __init__(
        self,
        membership: MembershipIndex,
        presence: PresenceRegistry,
        message_log: MessageLog,
        sink: DeliverySink,
        *,
        max_content_chars: int = 4000,
        stats: StatsManager | None = None,
    ) -> None:
        self.membership = membership
        self.presence = presence
        self.message_log = message_log
        self.sink = sink
        self.max_content_chars = int(max_content_chars)
        self.stats = stats
        self.log = logging.getLogger("rchatd.router")

        self._attached: dict[str, _Attachment] = {}
        self._cursors: dict[tuple[str, str, PartitionKey], int] = {}
        # (user, group) -> partition head when the user was removed; replay cap.
        self._sealed: dict[tuple[str, str], int] = {}
        self._lock = threading.Lock()

    def _inc(self, key: str, delta: int = 1) -> None:
        if self.stats is not None:
            self.stats.inc(key, delta)

    # Sending

    def _validate(self, sender_id: str, partition: PartitionKey, content: str) -> None:
        if not isinstance(content, str) or not content.strip():
            raise InvalidRequestError("message content must not be empty")
        if self.max_content_chars > 0 and len(content) > self.max_content_chars:
            raise InvalidRequestError("message content too long")

        target = partition.target_id
        if partition.chat_type == CHAT_PRIVATE:
            if target == sender_id:
                raise InvalidRequestError("cannot send a private message to yourself")
            if not self.membership.user_exists(target):
                raise NotFoundError(f"no such user: {target}")
            if self.membership.is_banned(BanScope.GLOBAL, sender_id):
                raise PermissionDeniedError("sender is banned")
            if self.membership.is_banned(BanScope.GLOBAL, target):
                raise PermissionDeniedError("recipient is banned")
            return

        if not self.membership.has_group(target):
            raise NotFoundError(f"no such group: {target}")
        if self.membership.is_banned(BanScope.GLOBAL, sender_id):
            raise PermissionDeniedError("sender is banned")
        if self.membership.is_banned(BanScope.GROUP, sender_id, target):
            raise PermissionDeniedError(f"banned from {target}")
        if not self.membership.is_member(target, sender_id):
            raise PermissionDeniedError(f"not a member of {target}")

    def recipients_of(self, message: Message) -> set[str]:
        if message.chat_type == CHAT_PRIVATE:
            return {message.target_id}
        try:
            members = self.membership.members_of(message.target_id)
        except NotFoundError:
            return set()
        return set(members) - {message.sender_id}

    def send(self, sender_id: str, partition: PartitionKey, content: str) -> Message:
        """
        Persist and fan out one message.

        The sender's echo is the return value; the sender is never a fan-out
        recipient. Raises before anything is persisted if validation fails.
        """
        try:
            self._validate(sender_id, partition, content)
        except Exception:
            self._inc("msgs_rejected")
            raise

        msg = self.message_log.append(partition, sender_id, content, on_commit=self._fan_out)

        if partition.chat_type == CHAT_PRIVATE:
            self.membership.record_contact(sender_id, partition.target_id)
        self._inc("msgs_sent")
        return msg

    def _fan_out(self, message: Message) -> None:
        # Runs inside the partition lock, so enqueue order is sequence order.
        partition = message.partition
        pushed = 0
        for user_id in self.recipients_of(message):
            for conn_id in self.presence.active_sessions_of(user_id):
                att = self._attached.get(conn_id)
                if att is None:
                    # Not attached yet; its replay will pick this message up.
                    continue
                if self._offer(att, partition, message):
                    pushed += 1

        self._inc("fanout_pushes", pushed)
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Fan-out partition=%s seq=%s pushed=%s", partition, message.sequence, pushed
            )

    def _offer(self, att: _Attachment, partition: PartitionKey, message: Message) -> bool:
        with att.lock:
            if att.closed:
                return False
            if partition.chat_type == CHAT_GROUP and partition.target_id not in att.rooms:
                return False
            parked = att.pending.get(partition)
            if parked is not None:
                parked.append(message)
                return False
            return self._push(att, message)

    def _push(self, att: _Attachment, message: Message) -> bool:
        try:
            self.sink.push(att.connection_id, message)
            partition = message.partition
            if message.sequence > att.pushed.get(partition, 0):
                att.pushed[partition] = message.sequence
            return True
        except Exception:
            # Best effort: durability is already satisfied by the log.
            self._inc("fanout_dropped")
            self.log.warning(
                "Push failed conn=%s partition=%s seq=%s",
                att.connection_id,
                message.partition,
                message.sequence,
                exc_info=self.log.isEnabledFor(logging.DEBUG),
            )
            return False

    # Attachment and replay

    def visible_partitions(self, user_id: str) -> list[PartitionKey]:
        parts = [PartitionKey.private(user_id)]
        parts.extend(PartitionKey.group(g) for g in self.membership.groups_of(user_id))
        return parts

    def cursor(self, user_id: str, device_id: str, partition: PartitionKey) -> int:
        with self._lock:
            return self._cursors.get((user_id, device_id, partition), 0)

    def advance_cursor(
        self, user_id: str, device_id: str, partition: PartitionKey, sequence: int
    ) -> None:
        key = (user_id, device_id, partition)
        with self._lock:
            if sequence > self._cursors.get(key, 0):
                self._cursors[key] = int(sequence)

    def attach(
        self,
        connection_id: str,
        user_id: str,
        device_id: str,
        declared_cursors: dict[PartitionKey, int] | None = None,
    ) -> list[str]:
        """
        Replay everything the device missed, then go live.

        Client-declared cursors win over the server-tracked ones. Returns the
        group rooms the connection was subscribed to.
        """
        declared = declared_cursors or {}
        partitions = self.visible_partitions(user_id)
        att = _Attachment(connection_id, user_id, device_id)
        att.rooms = {p.target_id for p in partitions if p.chat_type == CHAT_GROUP}
        att.pending = {p: [] for p in partitions}
        self._attached[connection_id] = att

        for partition in partitions:
            after = declared.get(partition)
            if after is None:
                after = self.cursor(user_id, device_id, partition)
            self._replay_into(att, partition, after)

        self.log.info(
            "Attached conn=%s user=%s device=%s partitions=%s",
            connection_id,
            user_id,
            device_id,
            len(partitions),
        )
        return sorted(att.rooms)

    def _replay_into(self, att: _Attachment, partition: PartitionKey, after: int) -> None:
        # Never re-push what this connection already has queued.
        last = max(int(after), att.pushed.get(partition, 0))
        after = last
        count = 0
        try:
            for msg in self.message_log.replay(partition, after):
                if att.closed:
                    break
                self._push(att, msg)
                last = msg.sequence
                count += 1
        finally:
            with att.lock:
                for msg in att.pending.pop(partition, ()):
                    if msg.sequence > last:
                        self._push(att, msg)
                        last = msg.sequence
                if not att.closed:
                    self.sink.emit(att.connection_id, ReplayDone(partition, last))
        self._inc("replayed", count)

    def detach(self, connection_id: str) -> None:
        att = self._attached.pop(connection_id, None)
        if att is None:
            return
        with att.lock:
            att.closed = True
            att.pending.clear()

    def join_room(self, connection_id: str, group_id: str) -> None:
        att = self._attached.get(connection_id)
        if att is None:
            raise NotFoundError("connection is not attached")
        if self.membership.is_banned(BanScope.GROUP, att.user_id, group_id):
            raise PermissionDeniedError(f"banned from {group_id}")
        if not self.membership.is_member(group_id, att.user_id):
            raise PermissionDeniedError(f"not a member of {group_id}")

        partition = PartitionKey.group(group_id)
        with att.lock:
            if group_id in att.rooms:
                return
            att.rooms.add(group_id)
            att.pending[partition] = []
        self._replay_into(att, partition, self.cursor(att.user_id, att.device_id, partition))

    def leave_room(self, connection_id: str, group_id: str) -> bool:
        att = self._attached.get(connection_id)
        if att is None:
            return False
        with att.lock:
            att.pending.pop(PartitionKey.group(group_id), None)
            if group_id not in att.rooms:
                return False
            att.rooms.discard(group_id)
            return True

    def rooms_of(self, connection_id: str) -> set[str]:
        att = self._attached.get(connection_id)
        if att is None:
            return set()
        with att.lock:
            return set(att.rooms)

    def replay(self, user_id: str, partition: PartitionKey, after: int = 0) -> Iterator[Message]:
        """Explicit history request, checked against current or former membership."""
        if partition.chat_type == CHAT_PRIVATE:
            if partition.target_id != user_id:
                raise PermissionDeniedError("cannot replay another user's inbox")
            return self.message_log.replay(partition, after)

        group_id = partition.target_id
        if self.membership.has_group(group_id):
            banned = self.membership.is_banned(BanScope.GROUP, user_id, group_id)
            if not banned and self.membership.is_member(group_id, user_id):
                return self.message_log.replay(partition, after)
        else:
            with self._lock:
                known = any(g == group_id for (_u, g) in self._sealed)
            if not known:
                raise NotFoundError(f"no such group: {group_id}")

        with self._lock:
            cap = self._sealed.get((user_id, group_id))
        if cap is None:
            raise PermissionDeniedError(f"not a member of {group_id}")
        return self._capped(partition, after, cap)

    def _capped(self, partition: PartitionKey, after: int, cap: int) -> Iterator[Message]:
        for msg in self.message_log.replay(partition, after):
            if msg.sequence > cap:
                return
            yield msg

    # Membership reactions

    def on_membership_change(self, change: MembershipChange) -> None:
        if change.group_id is None:
            return
        group_id = change.group_id
        partition = PartitionKey.group(group_id)

        if change.deleted:
            self.message_log.drop_partition(partition)
            with self._lock:
                for key in [k for k in self._sealed if k[1] == group_id]:
                    self._sealed.pop(key, None)
                for key in [k for k in self._cursors if k[2] == partition]:
                    self._cursors.pop(key, None)
            for att in list(self._attached.values()):
                self._unsubscribe(att, group_id, forget=True)
            return

        if change.removed:
            # The cap is the partition head at removal, not a device cursor:
            # every message up to it was addressed to the user while still a
            # member, including ones no device had received yet.
            last = self.message_log.last_sequence(partition)
            with self._lock:
                for user_id in change.removed:
                    self._sealed[(user_id, group_id)] = last
            for att in list(self._attached.values()):
                if att.user_id in change.removed:
                    self._unsubscribe(att, group_id)

        for user_id in change.added:
            with self._lock:
                self._sealed.pop((user_id, group_id), None)
            for conn_id in self.presence.active_sessions_of(user_id):
                if conn_id not in self._attached:
                    continue
                try:
                    self.join_room(conn_id, group_id)
                except ChatError as e:
                    self.log.warning(
                        "Auto-join failed conn=%s group=%s err=%s", conn_id, group_id, e
                    )

    def _unsubscribe(self, att: _Attachment, group_id: str, *, forget: bool = False) -> None:
        with att.lock:
            att.rooms.discard(group_id)
            att.pending.pop(PartitionKey.group(group_id), None)
            if forget:
                att.pushed.pop(PartitionKey.group(group_id), None)

    def get_stats(self) -> dict[str, int]:
        return {
            "attached": len(self._attached),
            "cursors": len(self._cursors),
            "sealed": len(self._sealed),
        }
