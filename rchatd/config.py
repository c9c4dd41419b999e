from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    issuer_public_key: str | None = None
    issuer_identity_path: str | None = None
    membership_registry_path: str | None = None
    message_log_dir: str | None = None
    dest_name: str = "rchat.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "rchat"
    greeting: str | None = None
    credential_ttl_s: float = 24 * 3600.0
    max_content_chars: int = 4000
    max_rooms_per_session: int = 64
    rate_limit_msgs_per_minute: int = 240
    ping_interval_s: float = 0.0
    ping_timeout_s: float = 0.0
    ban_sweep_interval_s: float = 60.0
    outbox_max: int = 1024
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None
    # Component name (see logging_config.COMPONENT_LOGGERS) -> level.
    log_components: dict[str, str] = field(default_factory=dict)


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        return tomllib.load(f)


def apply_config_data(cfg: HubRuntimeConfig, data: dict) -> HubRuntimeConfig:
    """Merge a parsed config document into ``cfg``.

    Keys may live at the top level or inside ``[hub]``; the ``[logging]`` table
    maps onto the ``log_*`` fields.
    """
    if not isinstance(data, dict):
        return cfg

    hub = data.get("hub")
    if isinstance(hub, dict):
        data = {**data, **hub}

    log_table = data.get("logging")
    if isinstance(log_table, dict):
        mapped: dict[str, object] = {}
        for src, dst in (
            ("level", "log_level"),
            ("rns_level", "log_rns_level"),
            ("console", "log_console"),
            ("file", "log_file"),
            ("format", "log_format"),
            ("datefmt", "log_datefmt"),
            ("components", "log_components"),
        ):
            if src in log_table:
                mapped[dst] = log_table.get(src)
        data = {**data, **mapped}

    allowed = set(asdict(cfg).keys())
    # This identifies where the file came from; do not let the file override it.
    allowed.discard("config_path")
    updates = {k: v for k, v in data.items() if k in allowed}

    if "announce" in data and "announce_on_start" not in updates:
        updates["announce_on_start"] = bool(data["announce"])

    for key in (
        "configdir",
        "greeting",
        "log_file",
        "log_datefmt",
        "issuer_public_key",
        "issuer_identity_path",
    ):
        if key in updates and updates[key] == "":
            updates[key] = None

    return replace(cfg, **updates) if updates else cfg
