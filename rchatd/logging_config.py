from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from .config import HubRuntimeConfig

# [logging.components] keys and the loggers they control.
COMPONENT_LOGGERS: dict[str, str] = {
    "hub": "rchatd.hub",
    "gateway": "rchatd.gateway",
    "router": "rchatd.router",
    "presence": "rchatd.presence",
    "membership": "rchatd.membership",
    "message_log": "rchatd.log",
    "auth": "rchatd.auth",
}

_LEVELS: dict[str, int] = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "NOTSET": logging.NOTSET,
}

_DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def parse_level(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if not text:
        return default
    if text in _LEVELS:
        return _LEVELS[text]
    try:
        return int(text)
    except ValueError:
        return default


def component_levels(cfg: HubRuntimeConfig) -> dict[str, int]:
    """Resolve ``[logging.components]`` into logger name -> level."""
    table = cfg.log_components or {}
    if not isinstance(table, dict):
        raise ValueError("[logging.components] must be a table")
    out: dict[str, int] = {}
    for key, value in table.items():
        name = COMPONENT_LOGGERS.get(str(key).strip().lower())
        if name is None:
            known = ", ".join(sorted(COMPONENT_LOGGERS))
            raise ValueError(f"unknown log component {key!r} (known: {known})")
        out[name] = parse_level(value, logging.NOTSET)
    return out


def _log_file(cfg: HubRuntimeConfig, override_file: str | None) -> Path | None:
    # An explicit empty override disables file logging.
    raw = cfg.log_file if override_file is None else override_file
    if raw is None or not str(raw).strip():
        return None
    return Path(os.path.expanduser(str(raw)))


def _build_handlers(cfg: HubRuntimeConfig, override_file: str | None) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())

    path = _log_file(cfg, override_file)
    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
        try:
            os.chmod(path, 0o600)
        except OSError:
            pass

    formatter = logging.Formatter(
        fmt=str(cfg.log_format or "").strip() or _DEFAULT_FORMAT,
        datefmt=(cfg.log_datefmt or None),
    )
    for h in handlers:
        h.setFormatter(formatter)
    return handlers


def configure_logging(
    cfg: HubRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Configure Python logging for rchatd.

    The hub level applies to every ``rchatd.*`` logger; entries in
    ``[logging.components]`` then raise or lower single components, e.g.
    ``router = "DEBUG"`` to trace fan-out without the per-packet gateway noise.
    Reticulum gets its own level. Calling this again replaces the handlers.
    """
    level = parse_level(override_level or cfg.log_level, logging.INFO)
    overrides = component_levels(cfg)

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in _build_handlers(cfg, override_file):
        root.addHandler(h)
    root.setLevel(level)

    logging.getLogger("rchatd").setLevel(level)
    for name in COMPONENT_LOGGERS.values():
        logging.getLogger(name).setLevel(overrides.get(name, logging.NOTSET))

    logging.getLogger("RNS").setLevel(parse_level(cfg.log_rns_level, logging.WARNING))

    logging.captureWarnings(True)
