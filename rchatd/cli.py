from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

import RNS

from .auth import issue_credential
from .config import HubRuntimeConfig, apply_config_data, load_toml
from .logging_config import configure_logging
from .paths import (
    default_config_path,
    default_identity_path,
    default_issuer_identity_path,
    default_membership_registry_path,
    default_message_log_dir,
    ensure_private_dir,
)
from .service import HubService
from .util import expand_path, normalize_id


def _write_default_config(
    config_path: str,
    identity_path: str,
    issuer_identity_path: str,
    membership_registry_path: str,
) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    message_log_dir = str(default_message_log_dir())

    content = f"""# rchatd configuration (TOML)
#
# This file was created on first run.
# Edit it, then start rchatd again.

[hub]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Where rchatd stores its persistent identity (Reticulum Identity file).
identity_path = {identity_path!r}

# Credential issuer.
#
# Clients authenticate with a bearer credential signed by the issuer identity.
# The hub only needs the issuer's public key. Set issuer_public_key (hex) to
# verify credentials minted elsewhere, or point issuer_identity_path at the
# issuer identity file (rchatd-token uses the same file to mint credentials).
issuer_public_key = ""
issuer_identity_path = {issuer_identity_path!r}
credential_ttl_s = {24 * 3600}

# Groups, join requests, bans and known users. Maintained by rchatd.
membership_registry_path = {membership_registry_path!r}

# Append-only message log, one file per conversation partition.
# Leave empty to keep messages in memory only.
message_log_dir = {message_log_dir!r}

# Destination name to host the hub on.
dest_name = "rchat.hub"

# Announcing (Reticulum destination announces)
#
# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

# Hub identity fields.
hub_name = "rchat"

# Limits.
max_content_chars = 4000
max_rooms_per_session = 64
rate_limit_msgs_per_minute = 240

# Outbound events queued per connection before the peer is dropped as too slow.
outbox_max = 1024

# Hub-initiated liveness checks (0 disables).
ping_interval_s = 0.0
ping_timeout_s = 0.0

# How often expired bans are removed from the registry.
ban_sweep_interval_s = 60.0

[logging]

# Log level for rchatd itself.
level = "INFO"

# Log level for Reticulum/RNS Python logging (if used by your install).
rns_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""

# Per-component levels, overriding `level` for one part of the hub.
# Components: hub, gateway, router, presence, membership, message_log, auth.
[logging.components]
# router = "DEBUG"
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


def _write_identity(path: str) -> None:
    storage_dir = os.path.dirname(path)
    if storage_dir:
        ensure_private_dir(Path(storage_dir))
    ident = RNS.Identity()
    ident.to_file(path)
    try:
        os.chmod(path, 0o600)
    except OSError:
        pass


def _ensure_first_run_files(
    config_path: str,
    identity_path: str,
    issuer_identity_path: str,
    membership_registry_path: str,
) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(
            config_path, identity_path, issuer_identity_path, membership_registry_path
        )
        created_any = True

    if not os.path.exists(identity_path):
        _write_identity(identity_path)
        created_any = True

    if issuer_identity_path and not os.path.exists(issuer_identity_path):
        _write_identity(issuer_identity_path)
        created_any = True

    if membership_registry_path and not os.path.exists(membership_registry_path):
        storage_dir = os.path.dirname(membership_registry_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        content = """# rchatd membership registry (TOML)
#
# Known users, groups and bans. It is maintained by rchatd and rewritten while
# rchatd is running; stop the hub before editing it by hand.
#
# Schema
# ------
#
# [users."<user id>"]
# name = "Display name"
# contacts = ["<user id>", ...]      # private-chat peers, for presence
#
# [groups."<group id>"]
# name = "Group name"
# admin = "<user id>"
# members = ["<user id>", ...]       # join order; the oldest inherits admin
# pending = ["<user id>", ...]       # join requests awaiting approval
# last_admin_rule = "transfer"       # or "delete"
#
# [[bans]]
# scope = "global"                   # or "group"
# user = "<user id>"
# group = ""                         # group id for group bans
# reason = ""
# banned_by = ""
# timestamp = 0.0
# expires_at = 0.0                   # 0 means permanent
"""
        with open(membership_registry_path, "w", encoding="utf-8") as f:
            f.write(content)
        try:
            os.chmod(membership_registry_path, 0o600)
        except OSError:
            pass
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="rchatd", description="Run an rchat presence and messaging hub")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")

    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to hub identity file (created on first run)",
    )
    p.add_argument(
        "--issuer-identity",
        default=str(default_issuer_identity_path()),
        help="Path to the credential issuer identity (created on first run)",
    )
    p.add_argument(
        "--membership-registry",
        default=str(default_membership_registry_path()),
        help="Path to the membership registry TOML (created on first run)",
    )
    p.add_argument(
        "--message-log-dir",
        default=None,
        help="Message log directory (empty keeps messages in memory)",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: rchat.hub)"
    )

    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    p.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )

    p.add_argument("--hub-name", default=None, help="Hub name in WELCOME")

    p.add_argument("--max-rooms", type=int, default=None, help="Max rooms per session")
    p.add_argument(
        "--max-content-chars", type=int, default=None, help="Maximum message length"
    )
    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-connection message rate limit",
    )

    p.add_argument(
        "--ping-interval",
        type=float,
        default=None,
        help="Hub-initiated PING interval seconds (0 disables)",
    )
    p.add_argument(
        "--ping-timeout",
        type=float,
        default=None,
        help="Close link if PONG not received within this many seconds (0 disables)",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def build_config(args: argparse.Namespace) -> HubRuntimeConfig:
    cfg = HubRuntimeConfig(
        config_path=str(args.config),
        configdir=args.configdir,
        identity_path=str(args.identity),
        issuer_identity_path=str(args.issuer_identity),
        membership_registry_path=str(args.membership_registry),
    )

    if cfg.config_path and os.path.exists(cfg.config_path):
        cfg = apply_config_data(cfg, load_toml(cfg.config_path))

    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)
    if args.message_log_dir is not None:
        cfg = replace(cfg, message_log_dir=str(args.message_log_dir) or None)
    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)

    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))

    if args.hub_name is not None:
        cfg = replace(cfg, hub_name=args.hub_name)

    if args.max_rooms is not None:
        cfg = replace(cfg, max_rooms_per_session=int(args.max_rooms))
    if args.max_content_chars is not None:
        cfg = replace(cfg, max_content_chars=int(args.max_content_chars))
    if args.rate_limit_msgs_per_minute is not None:
        cfg = replace(
            cfg, rate_limit_msgs_per_minute=int(args.rate_limit_msgs_per_minute)
        )

    if args.ping_interval is not None:
        cfg = replace(cfg, ping_interval_s=float(args.ping_interval))
    if args.ping_timeout is not None:
        cfg = replace(cfg, ping_timeout_s=float(args.ping_timeout))

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)
    issuer_identity_path = str(args.issuer_identity)
    membership_registry_path = str(args.membership_registry)

    if _ensure_first_run_files(
        config_path, identity_path, issuer_identity_path, membership_registry_path
    ):
        print(
            "Created default rchatd files. Edit the configuration before starting:\n"
            f"- Config:     {config_path}\n"
            f"- Identity:   {identity_path}\n"
            f"- Issuer:     {issuer_identity_path}\n"
            f"- Membership: {membership_registry_path}\n"
            "\nThen re-run rchatd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)
    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = HubService(cfg)
    svc.start()
    svc.run_forever()


def _build_token_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="rchatd-token", description="Mint a bearer credential for an rchat user"
    )
    p.add_argument("user_id", help="User id the credential is issued to")
    p.add_argument("--name", default=None, help="Display name (default: the user id)")
    p.add_argument(
        "--issuer-identity",
        default=str(default_issuer_identity_path()),
        help="Path to the issuer identity file",
    )
    p.add_argument(
        "--ttl", type=float, default=24 * 3600.0, help="Credential lifetime in seconds"
    )
    p.add_argument(
        "--show-public-key",
        action="store_true",
        help="Also print the issuer public key for issuer_public_key",
    )
    return p


def token_main(argv: list[str] | None = None) -> None:
    args = _build_token_parser().parse_args(sys.argv[1:] if argv is None else argv)

    user_id = normalize_id(args.user_id)
    if user_id is None:
        print(f"invalid user id: {args.user_id!r}", file=sys.stderr)
        raise SystemExit(2)

    path = expand_path(str(args.issuer_identity))
    if not os.path.exists(path):
        print(f"issuer identity not found at {path}", file=sys.stderr)
        raise SystemExit(1)
    issuer = RNS.Identity.from_file(path)
    if issuer is None:
        print(f"failed to load issuer identity from {path}", file=sys.stderr)
        raise SystemExit(1)

    cred = issue_credential(issuer, user_id, args.name, ttl_s=float(args.ttl))
    if args.show_public_key:
        print(f"issuer_public_key = {issuer.get_public_key().hex()!r}", file=sys.stderr)
    print(cred.hex())


if __name__ == "__main__":
    main()
