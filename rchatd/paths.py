from __future__ import annotations

import os
from pathlib import Path


def default_rchatd_dir() -> Path:
    override = os.environ.get("RCHATD_HOME")
    if override:
        return Path(override)
    return Path.home() / ".rchatd"


def default_config_path() -> Path:
    return default_rchatd_dir() / "rchatd.toml"


def default_identity_path() -> Path:
    return default_rchatd_dir() / "hub_identity"


def default_issuer_identity_path() -> Path:
    return default_rchatd_dir() / "issuer_identity"


def default_membership_registry_path() -> Path:
    return default_rchatd_dir() / "membership.toml"


def default_message_log_dir() -> Path:
    return default_rchatd_dir() / "messages"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except OSError:
        pass
