from __future__ import annotations

import logging
import os
import signal
import threading
import time

import RNS

from .auth import AuthValidator, load_issuer_public_key
from .codec import encode
from .config import HubRuntimeConfig
from .constants import RCHAT_VERSION
from .gateway import ConnectionGateway, LinkTransport
from .membership import Ban, BanScope, LastAdminRule, MembershipChange, MembershipIndex
from .message_log import FileLogStore, MemoryLogStore, MessageLog
from .presence import PresenceRegistry
from .stats import StatsManager
from .util import expand_path, fmt_hash, parse_hex


class HubService:
    """
    Hosts the hub on a Reticulum destination and runs its background loops.

    Also the entry point for the membership-management surface: every
    mutation goes through MembershipIndex first, then ``apply_membership_change``
    lets the router and gateway react and persists the registry.
    """

    def __init__(self, config: HubRuntimeConfig) -> None:
        self.config = config
        self.log = logging.getLogger("rchatd.hub")
        self._shutdown = threading.Event()

        self.stats = StatsManager()
        self.presence = PresenceRegistry()
        self.membership = MembershipIndex()

        if config.message_log_dir:
            store = FileLogStore(expand_path(config.message_log_dir))
        else:
            store = MemoryLogStore()
        self.message_log = MessageLog(store)

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None
        self.gateway: ConnectionGateway | None = None

        self._announce_thread: threading.Thread | None = None
        self._ping_thread: threading.Thread | None = None
        self._sweep_thread: threading.Thread | None = None

    def init_core(self, auth: AuthValidator, src: bytes | str = b"", **kwargs) -> ConnectionGateway:
        """Load the membership registry and build the gateway."""
        reg_path = self._registry_path()
        if reg_path:
            err = self.membership.load_registry(reg_path)
            if err:
                raise RuntimeError(f"membership registry {reg_path}: {err}")

        self.gateway = ConnectionGateway(
            self.config,
            auth,
            self.presence,
            self.membership,
            self.message_log,
            stats=self.stats,
            src=src,
            **kwargs,
        )
        return self.gateway

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        self.stats.set_start_time()
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

        issuer = self._load_issuer()
        self.init_core(AuthValidator(issuer), src=self.identity.hash)

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_thread = threading.Thread(
                target=self._announce_loop, name="rchatd-announce", daemon=True
            )
            self._announce_thread.start()

        if self.config.ping_interval_s and self.config.ping_interval_s > 0:
            self._ping_thread = threading.Thread(
                target=self._ping_loop, name="rchatd-ping", daemon=True
            )
            self._ping_thread.start()

        if self.config.ban_sweep_interval_s and self.config.ban_sweep_interval_s > 0:
            self._sweep_thread = threading.Thread(
                target=self._ban_sweep_loop, name="rchatd-ban-sweep", daemon=True
            )
            self._sweep_thread.start()

        self.log.info(
            "Hub running dest_name=%s dest_hash=%s issuer=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
            fmt_hash(issuer.hash),
        )
        self.log.info(
            "Policy max_content_chars=%s max_rooms=%s rate_limit_msgs_per_minute=%s",
            self.config.max_content_chars,
            self.config.max_rooms_per_session,
            self.config.rate_limit_msgs_per_minute,
        )

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()

        if self.gateway is not None:
            self.gateway.close_all()
        self._persist_registry()

        self.log.info("Hub stopped\n%s", self.format_stats())

    def format_stats(self) -> str:
        sections = {
            "presence": self.presence.get_stats,
            "membership": self.membership.get_stats,
        }
        if self.gateway is not None:
            sections["gateway"] = self.gateway.get_stats
            sections["router"] = self.gateway.router.get_stats
        return self.stats.format_stats(sections)

    # Identity and issuer

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    def _load_issuer(self) -> RNS.Identity:
        if self.config.issuer_public_key:
            return load_issuer_public_key(parse_hex(self.config.issuer_public_key))
        if self.config.issuer_identity_path:
            return self._load_identity(self.config.issuer_identity_path)
        raise RuntimeError("no credential issuer configured (issuer_public_key or issuer_identity_path)")

    # Reticulum callbacks

    def _on_link(self, link: RNS.Link) -> None:
        gateway = self.gateway
        if gateway is None:
            link.teardown()
            return
        conn = gateway.on_connect(LinkTransport(link))
        cid = conn.connection_id
        link.set_packet_callback(lambda data, pkt: gateway.on_packet(cid, data))
        link.set_link_closed_callback(lambda closed_link: gateway.on_close(cid))

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "rchat", "v": RCHAT_VERSION, "hub": self.config.hub_name})
            )
            self.stats.inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        while not self._shutdown.is_set():
            period = float(self.config.announce_period_s)
            if self._shutdown.wait(period if period > 0 else 1.0):
                break
            if period > 0:
                self._announce_once()

    def _ping_loop(self) -> None:
        while not self._shutdown.is_set():
            interval = float(self.config.ping_interval_s)
            if self._shutdown.wait(interval if interval > 0 else 1.0):
                break
            if interval > 0 and self.gateway is not None:
                self.gateway.sweep_liveness(float(self.config.ping_timeout_s))

    def _ban_sweep_loop(self) -> None:
        while not self._shutdown.is_set():
            if self._shutdown.wait(max(1.0, float(self.config.ban_sweep_interval_s))):
                break
            self.sweep_bans()

    def sweep_bans(self) -> int:
        expired = self.membership.expire_bans()
        if expired:
            self._persist_registry()
        return len(expired)

    # Membership management

    def apply_membership_change(self, change: MembershipChange) -> MembershipChange:
        if self.gateway is not None:
            self.gateway.apply_membership_change(change)
        self._persist_registry()
        return change

    def create_group(
        self,
        group_id: str,
        admin_id: str,
        *,
        name: str = "",
        members: tuple[str, ...] | list[str] = (),
        last_admin_rule: LastAdminRule | str = LastAdminRule.TRANSFER,
    ) -> MembershipChange:
        return self.apply_membership_change(
            self.membership.on_group_created(
                group_id, admin_id, name=name, members=members, last_admin_rule=last_admin_rule
            )
        )

    def request_join(self, group_id: str, user_id: str) -> MembershipChange:
        return self.apply_membership_change(self.membership.on_join(group_id, user_id))

    def approve_join(self, group_id: str, user_id: str) -> MembershipChange:
        return self.apply_membership_change(self.membership.on_approve(group_id, user_id))

    def reject_join(self, group_id: str, user_id: str) -> MembershipChange:
        return self.apply_membership_change(self.membership.on_reject(group_id, user_id))

    def leave_group(self, group_id: str, user_id: str) -> MembershipChange:
        return self.apply_membership_change(self.membership.on_leave(group_id, user_id))

    def ban(
        self,
        user_id: str,
        *,
        group_id: str | None = None,
        reason: str = "",
        banned_by: str = "",
        duration_s: float | None = None,
    ) -> MembershipChange:
        now = self.membership.clock()
        ban = Ban(
            scope=BanScope.GROUP if group_id else BanScope.GLOBAL,
            user_id=user_id,
            group_id=group_id,
            reason=reason,
            banned_by=banned_by,
            timestamp=now,
            expires_at=(now + float(duration_s)) if duration_s else None,
        )
        return self.apply_membership_change(self.membership.on_ban(ban))

    def unban(self, user_id: str, *, group_id: str | None = None) -> bool:
        scope = BanScope.GROUP if group_id else BanScope.GLOBAL
        removed = self.membership.on_unban(scope, user_id, group_id)
        if removed:
            self._persist_registry()
        return removed

    def transfer_admin(self, group_id: str, new_admin_id: str) -> MembershipChange:
        return self.apply_membership_change(
            self.membership.on_admin_transfer_or_delete(group_id, new_admin_id)
        )

    def delete_group(self, group_id: str) -> MembershipChange:
        return self.apply_membership_change(
            self.membership.on_admin_transfer_or_delete(group_id, delete=True)
        )

    def _registry_path(self) -> str | None:
        p = self.config.membership_registry_path
        return expand_path(p) if p else None

    def _persist_registry(self) -> None:
        path = self._registry_path()
        if not path:
            return
        try:
            self.membership.save_registry(path)
        except OSError:
            self.log.exception("Failed to persist membership registry path=%s", path)
