import pytest

from rchatd.errors import NotFoundError, PermissionDeniedError
from rchatd.membership import Ban, BanScope, LastAdminRule, MembershipIndex


class Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _index(clock: Clock | None = None) -> MembershipIndex:
    idx = MembershipIndex(clock=clock or Clock())
    for u in ("alice", "bob", "carol"):
        idx.register_user(u)
    return idx


def test_join_request_needs_approval() -> None:
    idx = _index()
    idx.on_group_created("g1", "alice")

    idx.on_join("g1", "bob")
    assert not idx.is_member("g1", "bob")
    assert idx.pending_of("g1") == {"bob"}

    change = idx.on_approve("g1", "bob")
    assert change.added == ("bob",)
    assert idx.members_of("g1") == {"alice", "bob"}
    assert idx.pending_of("g1") == frozenset()

    with pytest.raises(NotFoundError):
        idx.on_approve("g1", "bob")


def test_reject_clears_request() -> None:
    idx = _index()
    idx.on_group_created("g1", "alice")
    idx.on_join("g1", "carol")
    idx.on_reject("g1", "carol")
    assert idx.pending_of("g1") == frozenset()
    assert not idx.is_member("g1", "carol")


def test_unknown_group_raises_not_found() -> None:
    idx = _index()
    with pytest.raises(NotFoundError):
        idx.is_member("nope", "alice")
    with pytest.raises(NotFoundError):
        idx.on_join("nope", "alice")


def test_last_admin_transfer_picks_longest_standing_member() -> None:
    idx = _index()
    idx.on_group_created("g1", "alice", members=["bob", "carol"])

    change = idx.on_leave("g1", "alice")

    assert change.removed == ("alice",)
    assert change.new_admin == "bob"
    assert not change.deleted
    assert idx.admin_of("g1") == "bob"


def test_last_admin_delete_rule_deletes_group() -> None:
    idx = _index()
    idx.on_group_created("g1", "alice", members=["bob"], last_admin_rule="delete")

    change = idx.on_leave("g1", "alice")

    assert change.deleted
    assert set(change.removed) == {"alice", "bob"}
    assert not idx.has_group("g1")


def test_transfer_with_no_members_left_deletes() -> None:
    idx = _index()
    idx.on_group_created("g1", "alice")
    change = idx.on_leave("g1", "alice")
    assert change.deleted
    assert not idx.has_group("g1")


def test_promote_is_accepted_as_transfer() -> None:
    assert LastAdminRule.parse("promote") is LastAdminRule.TRANSFER
    assert LastAdminRule.parse(None) is LastAdminRule.TRANSFER
    with pytest.raises(ValueError):
        LastAdminRule.parse("explode")


def test_group_ban_removes_member_and_blocks_join() -> None:
    idx = _index()
    idx.on_group_created("g1", "alice", members=["bob"])

    change = idx.on_ban(Ban(BanScope.GROUP, "bob", "g1", banned_by="alice"))

    assert change.removed == ("bob",)
    assert idx.is_banned(BanScope.GROUP, "bob", "g1")
    assert not idx.is_banned(BanScope.GLOBAL, "bob")
    with pytest.raises(PermissionDeniedError):
        idx.on_join("g1", "bob")


def test_global_ban_reports_banned_user() -> None:
    idx = _index()
    change = idx.on_ban(Ban(BanScope.GLOBAL, "carol"))
    assert change.banned_user == "carol"
    assert change.group_id is None
    assert idx.is_banned("global", "carol")

    assert idx.on_unban(BanScope.GLOBAL, "carol")
    assert not idx.is_banned(BanScope.GLOBAL, "carol")


def test_ban_expiry() -> None:
    clock = Clock(1000.0)
    idx = _index(clock)
    idx.on_ban(Ban(BanScope.GLOBAL, "bob", expires_at=1100.0))
    assert idx.is_banned(BanScope.GLOBAL, "bob")

    clock.now = 1100.0
    assert not idx.is_banned(BanScope.GLOBAL, "bob")
    expired = idx.expire_bans()
    assert [b.user_id for b in expired] == ["bob"]
    assert idx.bans_of("bob") == []


def test_group_deletion_drops_group_bans() -> None:
    idx = _index()
    idx.on_group_created("g1", "alice")
    idx.on_ban(Ban(BanScope.GROUP, "bob", "g1"))
    idx.on_admin_transfer_or_delete("g1", delete=True)
    idx.on_group_created("g1", "carol")
    assert not idx.is_banned(BanScope.GROUP, "bob", "g1")


def test_interested_parties_are_contacts_and_co_members() -> None:
    idx = _index()
    idx.on_group_created("g1", "alice", members=["bob"])
    idx.record_contact("alice", "carol")
    assert idx.interested_parties("alice") == {"bob", "carol"}
    assert idx.interested_parties("carol") == {"alice"}


def test_registry_round_trip(tmp_path) -> None:
    path = str(tmp_path / "membership.toml")
    idx = _index()
    idx.register_user("alice", "Alice")
    idx.record_contact("alice", "bob")
    idx.on_group_created("g1", "alice", name="General", members=["bob"], last_admin_rule="delete")
    idx.on_join("g1", "carol")
    idx.on_ban(Ban(BanScope.GLOBAL, "mallory", reason="spam", timestamp=5.0, expires_at=9999.0))
    idx.save_registry(path)

    loaded = MembershipIndex(clock=Clock())
    assert loaded.load_registry(path) is None

    assert loaded.display_name("alice") == "Alice"
    assert loaded.interested_parties("bob") == {"alice"}
    assert loaded.members_of("g1") == {"alice", "bob"}
    assert loaded.admin_of("g1") == "alice"
    assert loaded.pending_of("g1") == {"carol"}
    assert loaded.is_banned(BanScope.GLOBAL, "mallory")
    assert loaded.bans_of("mallory")[0].reason == "spam"

    # Member order survives, so admin succession does too.
    change = loaded.on_leave("g1", "alice")
    assert change.deleted


def test_missing_registry_is_not_an_error(tmp_path) -> None:
    idx = MembershipIndex()
    assert idx.load_registry(str(tmp_path / "absent.toml")) is None
