import pytest

from rchatd.errors import InvalidRequestError, NotFoundError, PermissionDeniedError
from rchatd.events import ReplayDone
from rchatd.membership import Ban, BanScope, MembershipIndex
from rchatd.message_log import MemoryLogStore, MessageLog, PartitionKey
from rchatd.presence import PresenceRegistry
from rchatd.router import DeliveryRouter


class RecordingSink:
    def __init__(self) -> None:
        self.out: dict[str, list] = {}
        self.on_push = None

    def push(self, connection_id, message) -> None:
        self.out.setdefault(connection_id, []).append(message)
        if self.on_push is not None:
            self.on_push(connection_id, message)

    def emit(self, connection_id, event) -> None:
        self.out.setdefault(connection_id, []).append(event)

    def seqs(self, connection_id: str, partition: PartitionKey) -> list[int]:
        return [
            m.sequence
            for m in self.out.get(connection_id, [])
            if not isinstance(m, ReplayDone) and getattr(m, "partition", None) == partition
        ]

    def replay_done(self, connection_id: str) -> list[ReplayDone]:
        return [e for e in self.out.get(connection_id, []) if isinstance(e, ReplayDone)]


class Hub:
    def __init__(self) -> None:
        self.membership = MembershipIndex()
        for u in ("alice", "bob", "carol"):
            self.membership.register_user(u)
        self.presence = PresenceRegistry()
        self.log = MessageLog(MemoryLogStore())
        self.sink = RecordingSink()
        self.router = DeliveryRouter(self.membership, self.presence, self.log, self.sink)

    def connect(self, user: str, cid: str, device: str = "default", cursors=None) -> list[str]:
        self.presence.add_session(user, cid)
        return self.router.attach(cid, user, device, cursors)

    def disconnect(self, cid: str) -> None:
        self.presence.remove_session(cid)
        self.router.detach(cid)


@pytest.fixture
def hub() -> Hub:
    return Hub()


BOB_INBOX = PartitionKey.private("bob")
G1 = PartitionKey.group("g1")


def test_private_send_is_persisted_and_pushed(hub: Hub) -> None:
    hub.connect("bob", "b1")
    hub.connect("bob", "b2", device="laptop")

    msg = hub.router.send("alice", BOB_INBOX, "hi bob")

    assert msg.sequence == 1
    assert hub.sink.seqs("b1", BOB_INBOX) == [1]
    assert hub.sink.seqs("b2", BOB_INBOX) == [1]
    assert hub.membership.interested_parties("bob") == {"alice"}


def test_send_validation(hub: Hub) -> None:
    with pytest.raises(InvalidRequestError):
        hub.router.send("alice", BOB_INBOX, "   ")
    with pytest.raises(InvalidRequestError):
        hub.router.send("alice", PartitionKey.private("alice"), "me")
    with pytest.raises(NotFoundError):
        hub.router.send("alice", PartitionKey.private("nobody"), "hello?")
    with pytest.raises(NotFoundError):
        hub.router.send("alice", PartitionKey.group("nope"), "hello?")


def test_global_ban_blocks_private_send_before_persistence(hub: Hub) -> None:
    hub.membership.on_ban(Ban(BanScope.GLOBAL, "alice"))
    hub.connect("bob", "b1")

    with pytest.raises(PermissionDeniedError):
        hub.router.send("alice", BOB_INBOX, "let me in")

    assert hub.log.last_sequence(BOB_INBOX) == 0
    assert hub.sink.seqs("b1", BOB_INBOX) == []


def test_group_fan_out_skips_sender(hub: Hub) -> None:
    hub.membership.on_group_created("g1", "alice", members=["bob", "carol"])
    hub.connect("alice", "a1")
    hub.connect("bob", "b1")
    hub.connect("carol", "c1")

    hub.router.send("alice", G1, "hello group")

    assert hub.sink.seqs("a1", G1) == []
    assert hub.sink.seqs("b1", G1) == [1]
    assert hub.sink.seqs("c1", G1) == [1]


def test_left_room_gets_no_live_fan_out(hub: Hub) -> None:
    hub.membership.on_group_created("g1", "alice", members=["bob"])
    hub.connect("bob", "b1")
    assert hub.router.leave_room("b1", "g1")

    hub.router.send("alice", G1, "quiet")

    assert hub.sink.seqs("b1", G1) == []


def test_removed_member_cannot_send_but_can_replay_up_to_removal(hub: Hub) -> None:
    hub.membership.on_group_created("g1", "alice", members=["bob"])
    hub.connect("bob", "b1")
    hub.router.send("alice", G1, "one")
    hub.router.send("bob", G1, "two")

    hub.router.on_membership_change(hub.membership.on_leave("g1", "bob"))
    hub.router.send("alice", G1, "three")

    with pytest.raises(PermissionDeniedError):
        hub.router.send("bob", G1, "still here?")
    assert hub.sink.seqs("b1", G1) == [1]
    # Capped at the partition head at removal, independent of the device cursor.
    assert hub.router.cursor("bob", "default", G1) == 0
    assert [m.sequence for m in hub.router.replay("bob", G1, 0)] == [1, 2]
    with pytest.raises(PermissionDeniedError):
        list(hub.router.replay("carol", G1, 0))


def test_reconnect_replays_then_goes_live_without_duplicates(hub: Hub) -> None:
    for text in ("1", "2", "3"):
        hub.router.send("alice", BOB_INBOX, text)

    hub.connect("bob", "b1")
    hub.router.send("alice", BOB_INBOX, "4")

    assert hub.sink.seqs("b1", BOB_INBOX) == [1, 2, 3, 4]
    done = hub.sink.replay_done("b1")
    assert done == [ReplayDone(BOB_INBOX, 3)]


def test_live_message_during_replay_is_delivered_once_after_replay(hub: Hub) -> None:
    for text in ("1", "2", "3"):
        hub.router.send("alice", BOB_INBOX, text)

    sent = []

    def interleave(cid, message) -> None:
        if cid == "b1" and message.sequence == 1 and not sent:
            sent.append(hub.router.send("alice", BOB_INBOX, "4"))

    hub.sink.on_push = interleave
    hub.connect("bob", "b1")

    assert sent and sent[0].sequence == 4
    assert hub.sink.seqs("b1", BOB_INBOX) == [1, 2, 3, 4]
    assert hub.sink.replay_done("b1") == [ReplayDone(BOB_INBOX, 4)]


def test_declared_cursor_wins_over_tracked_cursor(hub: Hub) -> None:
    for text in ("1", "2", "3"):
        hub.router.send("alice", BOB_INBOX, text)
    hub.router.advance_cursor("bob", "phone", BOB_INBOX, 3)

    hub.connect("bob", "b1", device="phone")
    assert hub.sink.seqs("b1", BOB_INBOX) == []
    hub.disconnect("b1")

    hub.connect("bob", "b2", device="phone", cursors={BOB_INBOX: 1})
    assert hub.sink.seqs("b2", BOB_INBOX) == [2, 3]


def test_cursors_are_per_device(hub: Hub) -> None:
    hub.router.send("alice", BOB_INBOX, "1")
    hub.router.advance_cursor("bob", "phone", BOB_INBOX, 1)
    hub.router.advance_cursor("bob", "phone", BOB_INBOX, 0)

    assert hub.router.cursor("bob", "phone", BOB_INBOX) == 1
    assert hub.router.cursor("bob", "laptop", BOB_INBOX) == 0


def test_attach_subscribes_current_groups(hub: Hub) -> None:
    hub.membership.on_group_created("g2", "bob")
    hub.membership.on_group_created("g1", "alice", members=["bob"])
    assert hub.connect("bob", "b1") == ["g1", "g2"]
    assert hub.router.rooms_of("b1") == {"g1", "g2"}


def test_join_room_checks_membership_and_bans(hub: Hub) -> None:
    hub.membership.on_group_created("g1", "alice")
    hub.connect("carol", "c1")
    with pytest.raises(PermissionDeniedError):
        hub.router.join_room("c1", "g1")


def test_approval_auto_joins_attached_sessions(hub: Hub) -> None:
    hub.membership.on_group_created("g1", "alice")
    hub.router.send("alice", G1, "before carol")
    hub.connect("carol", "c1")

    hub.membership.on_join("g1", "carol")
    hub.router.on_membership_change(hub.membership.on_approve("g1", "carol"))
    hub.router.send("alice", G1, "welcome carol")

    assert "g1" in hub.router.rooms_of("c1")
    assert hub.sink.seqs("c1", G1) == [1, 2]


def test_rejoin_after_leave_does_not_duplicate(hub: Hub) -> None:
    hub.membership.on_group_created("g1", "alice", members=["bob"])
    hub.connect("bob", "b1")
    hub.router.send("alice", G1, "one")
    hub.router.leave_room("b1", "g1")
    hub.router.send("alice", G1, "two")
    hub.router.join_room("b1", "g1")

    assert hub.sink.seqs("b1", G1) == [1, 2]


def test_deleted_group_invalidates_replay(hub: Hub) -> None:
    hub.membership.on_group_created("g1", "alice", members=["bob"])
    hub.connect("bob", "b1")
    hub.router.send("alice", G1, "one")

    change = hub.membership.on_admin_transfer_or_delete("g1", delete=True)
    hub.router.on_membership_change(change)

    assert hub.router.rooms_of("b1") == set()
    assert hub.log.last_sequence(G1) == 0
    with pytest.raises(NotFoundError):
        list(hub.router.replay("bob", G1, 0))


def test_private_replay_is_owner_only(hub: Hub) -> None:
    hub.router.send("alice", BOB_INBOX, "secret")
    assert [m.content for m in hub.router.replay("bob", BOB_INBOX)] == ["secret"]
    with pytest.raises(PermissionDeniedError):
        hub.router.replay("carol", BOB_INBOX)


def test_push_to_detached_connection_is_discarded(hub: Hub) -> None:
    hub.connect("bob", "b1")
    hub.router.detach("b1")
    hub.router.send("alice", BOB_INBOX, "gone")
    assert hub.sink.seqs("b1", BOB_INBOX) == []
