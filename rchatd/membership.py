"""Group membership, join requests and bans.

This module handles:
- The read side used for routing decisions (membership and ban checks)
- Mutation hooks fed by the membership-management surface
- Last-admin departure (transfer to the longest-standing member, or delete)
- Ban expiry
- Registry persistence to TOML
"""

from __future__ import annotations

import enum
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .errors import NotFoundError, PermissionDeniedError


class LastAdminRule(str, enum.Enum):
    TRANSFER = "transfer"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: Any) -> LastAdminRule:
        if isinstance(value, LastAdminRule):
            return value
        text = str(value or "").strip().lower()
        if text == "delete":
            return cls.DELETE
        # "promote" is what older registries call it.
        if text in ("", "transfer", "promote"):
            return cls.TRANSFER
        raise ValueError(f"unknown last admin rule {value!r}")


class BanScope(str, enum.Enum):
    GLOBAL = "global"
    GROUP = "group"


@dataclass
class Group:
    group_id: str
    admin_id: str
    name: str = ""
    # dict keeps join order; the oldest remaining member inherits admin.
    members: dict[str, None] = field(default_factory=dict)
    pending_requests: dict[str, None] = field(default_factory=dict)
    last_admin_rule: LastAdminRule = LastAdminRule.TRANSFER


@dataclass(frozen=True)
class Ban:
    scope: BanScope
    user_id: str
    group_id: str | None = None
    reason: str = ""
    banned_by: str = ""
    timestamp: float = 0.0
    expires_at: float | None = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.scope.value, self.user_id, self.group_id or "")

    def active_at(self, now: float) -> bool:
        return self.expires_at is None or self.expires_at > now


@dataclass(frozen=True)
class MembershipChange:
    """What a mutation did, for components that react to membership changes."""

    group_id: str | None
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    new_admin: str | None = None
    deleted: bool = False
    # Set for global bans: every session of this user must be dropped.
    banned_user: str | None = None


class MembershipIndex:
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self.log = logging.getLogger("rchatd.membership")
        self._lock = threading.RLock()
        self._groups: dict[str, Group] = {}
        self._bans: dict[tuple[str, str, str], Ban] = {}
        self._users: dict[str, str] = {}  # user id -> display name
        self._contacts: dict[str, set[str]] = {}
        self._registry_write_lock = threading.Lock()

    # Users and contacts

    def register_user(self, user_id: str, display_name: str | None = None) -> None:
        with self._lock:
            if display_name or user_id not in self._users:
                self._users[user_id] = display_name or user_id

    def user_exists(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._users

    def display_name(self, user_id: str) -> str:
        with self._lock:
            return self._users.get(user_id, user_id)

    def record_contact(self, a: str, b: str) -> None:
        if a == b:
            return
        with self._lock:
            self._contacts.setdefault(a, set()).add(b)
            self._contacts.setdefault(b, set()).add(a)

    def interested_parties(self, user_id: str) -> set[str]:
        """Users who should hear about ``user_id`` going on or offline."""
        with self._lock:
            out = set(self._contacts.get(user_id, ()))
            for g in self._groups.values():
                if user_id in g.members:
                    out.update(g.members)
            out.discard(user_id)
            return out

    # Read side

    def _group(self, group_id: str) -> Group:
        g = self._groups.get(group_id)
        if g is None:
            raise NotFoundError(f"no such group: {group_id}")
        return g

    def has_group(self, group_id: str) -> bool:
        with self._lock:
            return group_id in self._groups

    def is_member(self, group_id: str, user_id: str) -> bool:
        with self._lock:
            return user_id in self._group(group_id).members

    def members_of(self, group_id: str) -> frozenset[str]:
        with self._lock:
            return frozenset(self._group(group_id).members)

    def admin_of(self, group_id: str) -> str:
        with self._lock:
            return self._group(group_id).admin_id

    def pending_of(self, group_id: str) -> frozenset[str]:
        with self._lock:
            return frozenset(self._group(group_id).pending_requests)

    def groups_of(self, user_id: str) -> list[str]:
        with self._lock:
            return sorted(gid for gid, g in self._groups.items() if user_id in g.members)

    def is_banned(
        self, scope: BanScope | str, user_id: str, group_id: str | None = None
    ) -> bool:
        scope = BanScope(scope)
        if scope is BanScope.GROUP and not group_id:
            raise ValueError("group ban lookup requires a group id")
        key = (scope.value, user_id, (group_id or "") if scope is BanScope.GROUP else "")
        with self._lock:
            ban = self._bans.get(key)
            return ban is not None and ban.active_at(self.clock())

    def bans_of(self, user_id: str) -> list[Ban]:
        now = self.clock()
        with self._lock:
            return [b for b in self._bans.values() if b.user_id == user_id and b.active_at(now)]

    # Mutation hooks

    def on_group_created(
        self,
        group_id: str,
        admin_id: str,
        *,
        name: str = "",
        members: tuple[str, ...] | list[str] = (),
        last_admin_rule: LastAdminRule | str = LastAdminRule.TRANSFER,
    ) -> MembershipChange:
        with self._lock:
            if group_id in self._groups:
                raise ValueError(f"group already exists: {group_id}")
            g = Group(
                group_id=group_id,
                admin_id=admin_id,
                name=name or group_id,
                last_admin_rule=LastAdminRule.parse(last_admin_rule),
            )
            g.members[admin_id] = None
            for m in members:
                g.members.setdefault(m, None)
            self._groups[group_id] = g
            added = tuple(g.members)

        self.log.info("Group created group=%s admin=%s members=%s", group_id, admin_id, len(added))
        return MembershipChange(group_id, added=added, new_admin=admin_id)

    def on_join(self, group_id: str, user_id: str) -> MembershipChange:
        """Record a join request; it takes effect on approval."""
        with self._lock:
            g = self._group(group_id)
            if self._banned_locked(user_id, group_id):
                raise PermissionDeniedError(f"{user_id} is banned from {group_id}")
            if user_id in g.members:
                return MembershipChange(group_id)
            g.pending_requests[user_id] = None
        self.log.info("Join requested group=%s user=%s", group_id, user_id)
        return MembershipChange(group_id)

    def on_approve(self, group_id: str, user_id: str) -> MembershipChange:
        with self._lock:
            g = self._group(group_id)
            if user_id not in g.pending_requests:
                raise NotFoundError(f"no pending request from {user_id} for {group_id}")
            g.pending_requests.pop(user_id, None)
            if self._banned_locked(user_id, group_id):
                raise PermissionDeniedError(f"{user_id} is banned from {group_id}")
            g.members[user_id] = None
        self.log.info("Join approved group=%s user=%s", group_id, user_id)
        return MembershipChange(group_id, added=(user_id,))

    def on_reject(self, group_id: str, user_id: str) -> MembershipChange:
        with self._lock:
            g = self._group(group_id)
            if user_id not in g.pending_requests:
                raise NotFoundError(f"no pending request from {user_id} for {group_id}")
            g.pending_requests.pop(user_id, None)
        self.log.info("Join rejected group=%s user=%s", group_id, user_id)
        return MembershipChange(group_id)

    def on_ban(self, ban: Ban) -> MembershipChange:
        if ban.scope is BanScope.GROUP and not ban.group_id:
            raise ValueError("group ban requires a group id")

        with self._lock:
            if ban.scope is BanScope.GLOBAL:
                self._bans[ban.key] = ban
                self.log.warning("Global ban user=%s by=%s", ban.user_id, ban.banned_by)
                return MembershipChange(None, banned_user=ban.user_id)

            g = self._group(ban.group_id or "")
            self._bans[ban.key] = ban
            g.pending_requests.pop(ban.user_id, None)
            if ban.user_id not in g.members:
                return MembershipChange(g.group_id)
            change = self._remove_member_locked(g, ban.user_id)

        self.log.warning(
            "Group ban group=%s user=%s by=%s", ban.group_id, ban.user_id, ban.banned_by
        )
        return change

    def on_unban(
        self, scope: BanScope | str, user_id: str, group_id: str | None = None
    ) -> bool:
        scope = BanScope(scope)
        key = (scope.value, user_id, (group_id or "") if scope is BanScope.GROUP else "")
        with self._lock:
            removed = self._bans.pop(key, None) is not None
        if removed:
            self.log.info("Unban scope=%s user=%s group=%s", scope.value, user_id, group_id)
        return removed

    def on_leave(self, group_id: str, user_id: str) -> MembershipChange:
        with self._lock:
            g = self._group(group_id)
            if user_id not in g.members:
                raise NotFoundError(f"{user_id} is not a member of {group_id}")
            change = self._remove_member_locked(g, user_id)
        self.log.info("Left group=%s user=%s", group_id, user_id)
        return change

    def on_admin_transfer_or_delete(
        self, group_id: str, new_admin_id: str | None = None, *, delete: bool = False
    ) -> MembershipChange:
        with self._lock:
            g = self._group(group_id)
            if delete:
                return self._delete_locked(g)
            if new_admin_id is None or new_admin_id not in g.members:
                raise NotFoundError(f"{new_admin_id} is not a member of {group_id}")
            g.admin_id = new_admin_id
        self.log.info("Admin transferred group=%s admin=%s", group_id, new_admin_id)
        return MembershipChange(group_id, new_admin=new_admin_id)

    def expire_bans(self) -> list[Ban]:
        now = self.clock()
        with self._lock:
            expired = [b for b in self._bans.values() if not b.active_at(now)]
            for b in expired:
                self._bans.pop(b.key, None)
        for b in expired:
            self.log.info("Ban expired scope=%s user=%s", b.scope.value, b.user_id)
        return expired

    def _banned_locked(self, user_id: str, group_id: str) -> bool:
        now = self.clock()
        for key in (("global", user_id, ""), ("group", user_id, group_id)):
            ban = self._bans.get(key)
            if ban is not None and ban.active_at(now):
                return True
        return False

    def _remove_member_locked(self, g: Group, user_id: str) -> MembershipChange:
        g.members.pop(user_id, None)
        if user_id != g.admin_id:
            return MembershipChange(g.group_id, removed=(user_id,))

        # Last-admin departure: the group is never left without an admin.
        if g.last_admin_rule is LastAdminRule.TRANSFER and g.members:
            g.admin_id = next(iter(g.members))
            self.log.info("Admin departed group=%s new_admin=%s", g.group_id, g.admin_id)
            return MembershipChange(g.group_id, removed=(user_id,), new_admin=g.admin_id)

        change = self._delete_locked(g)
        return MembershipChange(
            g.group_id, removed=(user_id, *change.removed), deleted=True
        )

    def _delete_locked(self, g: Group) -> MembershipChange:
        self._groups.pop(g.group_id, None)
        for key in [k for k in self._bans if k[0] == "group" and k[2] == g.group_id]:
            self._bans.pop(key, None)
        self.log.info("Group deleted group=%s", g.group_id)
        return MembershipChange(g.group_id, removed=tuple(g.members), deleted=True)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "groups": len(self._groups),
                "memberships": sum(len(g.members) for g in self._groups.values()),
                "pending_requests": sum(len(g.pending_requests) for g in self._groups.values()),
                "bans": len(self._bans),
                "users": len(self._users),
            }

    # Registry persistence

    def load_registry(self, path: str) -> str | None:
        """Replace in-memory state with the TOML registry. Returns an error or None."""
        if not path or not os.path.exists(path):
            return None

        from tomlkit import parse

        try:
            with open(path, encoding="utf-8") as f:
                doc = parse(f.read()).unwrap()
        except Exception as e:
            return f"parse error: {e}"

        users: dict[str, str] = {}
        contacts: dict[str, set[str]] = {}
        for uid, data in (doc.get("users") or {}).items():
            if not isinstance(data, dict):
                continue
            users[str(uid)] = str(data.get("name") or uid)
            contacts[str(uid)] = {str(c) for c in data.get("contacts") or () if c}

        groups: dict[str, Group] = {}
        for gid, data in (doc.get("groups") or {}).items():
            if not isinstance(data, dict):
                continue
            members = [str(m) for m in data.get("members") or () if m]
            admin = str(data.get("admin") or (members[0] if members else ""))
            if not admin:
                self.log.warning("Skipping group without admin group=%s", gid)
                continue
            try:
                rule = LastAdminRule.parse(data.get("last_admin_rule"))
            except ValueError as e:
                return f"group {gid}: {e}"
            g = Group(group_id=str(gid), admin_id=admin, name=str(data.get("name") or gid),
                      last_admin_rule=rule)
            g.members[admin] = None
            for m in members:
                g.members.setdefault(m, None)
            for p in data.get("pending") or ():
                if p and p not in g.members:
                    g.pending_requests[str(p)] = None
            groups[g.group_id] = g

        bans: dict[tuple[str, str, str], Ban] = {}
        for data in doc.get("bans") or ():
            if not isinstance(data, dict) or not data.get("user"):
                continue
            try:
                scope = BanScope(str(data.get("scope") or "global"))
            except ValueError:
                continue
            expires = float(data.get("expires_at") or 0.0)
            ban = Ban(
                scope=scope,
                user_id=str(data["user"]),
                group_id=str(data.get("group") or "") or None,
                reason=str(data.get("reason") or ""),
                banned_by=str(data.get("banned_by") or ""),
                timestamp=float(data.get("timestamp") or 0.0),
                expires_at=expires if expires > 0 else None,
            )
            bans[ban.key] = ban

        with self._lock:
            self._users = users
            self._contacts = contacts
            self._groups = groups
            self._bans = bans

        self.log.info(
            "Loaded membership registry path=%s users=%s groups=%s bans=%s",
            path,
            len(users),
            len(groups),
            len(bans),
        )
        return None

    def save_registry(self, path: str) -> None:
        import tomlkit

        with self._lock:
            users = {
                uid: {"name": name, "contacts": sorted(self._contacts.get(uid, ()))}
                for uid, name in sorted(self._users.items())
            }
            groups = {
                gid: {
                    "name": g.name,
                    "admin": g.admin_id,
                    "members": list(g.members),
                    "pending": list(g.pending_requests),
                    "last_admin_rule": g.last_admin_rule.value,
                }
                for gid, g in sorted(self._groups.items())
            }
            bans = [
                {
                    "scope": b.scope.value,
                    "user": b.user_id,
                    "group": b.group_id or "",
                    "reason": b.reason,
                    "banned_by": b.banned_by,
                    "timestamp": float(b.timestamp),
                    "expires_at": float(b.expires_at or 0.0),
                }
                for b in self._bans.values()
            ]

        doc = tomlkit.document()
        doc.add(tomlkit.comment("rchatd membership registry; maintained by rchatd"))
        # Plain arrays must precede the tables in TOML output.
        doc["bans"] = bans
        doc["users"] = users
        doc["groups"] = groups

        tmp = f"{path}.tmp"
        with self._registry_write_lock:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(tomlkit.dumps(doc))
            os.replace(tmp, path)
