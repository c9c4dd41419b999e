import logging

import pytest

from rchatd.cli import _build_arg_parser, _ensure_first_run_files, build_config
from rchatd.config import HubRuntimeConfig, apply_config_data, load_toml
from rchatd.logging_config import COMPONENT_LOGGERS, component_levels, configure_logging, parse_level


def test_apply_config_data_merges_hub_and_logging_tables() -> None:
    data = {
        "hub": {"hub_name": "town square", "max_content_chars": 500, "greeting": ""},
        "logging": {"level": "DEBUG", "file": ""},
        "announce": False,
        "config_path": "/elsewhere.toml",
        "unknown_key": 1,
    }
    cfg = apply_config_data(HubRuntimeConfig(config_path="/etc/rchatd.toml"), data)

    assert cfg.hub_name == "town square"
    assert cfg.max_content_chars == 500
    assert cfg.greeting is None
    assert cfg.log_level == "DEBUG"
    assert cfg.log_file is None
    assert cfg.announce_on_start is False
    assert cfg.config_path == "/etc/rchatd.toml"


def test_first_run_files_produce_a_loadable_config(tmp_path) -> None:
    config_path = str(tmp_path / "rchatd.toml")
    identity_path = str(tmp_path / "hub_identity")
    issuer_path = str(tmp_path / "issuer_identity")
    registry_path = str(tmp_path / "membership.toml")

    assert _ensure_first_run_files(config_path, identity_path, issuer_path, registry_path)
    assert not _ensure_first_run_files(config_path, identity_path, issuer_path, registry_path)

    cfg = apply_config_data(HubRuntimeConfig(), load_toml(config_path))
    assert cfg.identity_path == identity_path
    assert cfg.issuer_identity_path == issuer_path
    assert cfg.membership_registry_path == registry_path
    assert cfg.issuer_public_key is None
    assert cfg.dest_name == "rchat.hub"


def test_flags_override_config_file(tmp_path) -> None:
    config_path = tmp_path / "rchatd.toml"
    config_path.write_text(
        '[hub]\nhub_name = "from-file"\nmax_rooms_per_session = 10\nping_interval_s = 5.0\n',
        encoding="utf-8",
    )
    args = _build_arg_parser().parse_args(
        [
            "--config",
            str(config_path),
            "--max-rooms",
            "3",
            "--no-announce",
            "--message-log-dir",
            "",
        ]
    )

    cfg = build_config(args)

    assert cfg.hub_name == "from-file"
    assert cfg.max_rooms_per_session == 3
    assert cfg.ping_interval_s == 5.0
    assert cfg.announce_on_start is False
    assert cfg.message_log_dir is None


def test_parse_level() -> None:
    assert parse_level("debug", logging.INFO) == logging.DEBUG
    assert parse_level("", logging.INFO) == logging.INFO
    assert parse_level("15", logging.INFO) == 15
    assert parse_level("nonsense", logging.WARNING) == logging.WARNING


def test_logging_components_table_is_loaded(tmp_path) -> None:
    config_path = tmp_path / "rchatd.toml"
    config_path.write_text(
        '[logging]\nlevel = "WARNING"\n\n[logging.components]\nrouter = "DEBUG"\n',
        encoding="utf-8",
    )

    cfg = apply_config_data(HubRuntimeConfig(), load_toml(str(config_path)))

    assert cfg.log_components == {"router": "DEBUG"}
    assert component_levels(cfg) == {"rchatd.router": logging.DEBUG}


def test_unknown_log_component_is_rejected() -> None:
    cfg = HubRuntimeConfig(log_components={"fanout": "DEBUG"})
    with pytest.raises(ValueError, match="unknown log component"):
        component_levels(cfg)


def test_configure_logging_applies_component_levels() -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    cfg = HubRuntimeConfig(
        log_console=False, log_level="WARNING", log_components={"router": "DEBUG"}
    )
    try:
        configure_logging(cfg)

        assert logging.getLogger("rchatd").level == logging.WARNING
        assert logging.getLogger("rchatd.router").isEnabledFor(logging.DEBUG)
        assert not logging.getLogger("rchatd.gateway").isEnabledFor(logging.INFO)
    finally:
        for h in list(root.handlers):
            root.removeHandler(h)
        for h in saved_handlers:
            root.addHandler(h)
        root.setLevel(saved_level)
        for name in ("rchatd", "RNS", *COMPONENT_LOGGERS.values()):
            logging.getLogger(name).setLevel(logging.NOTSET)
        logging.captureWarnings(False)
