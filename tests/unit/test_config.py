import os
from pathlib import Path

import pytest

from cardsync.config import AppConfig, load_config, merge_sections, read_env_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("CARDSYNC__"):
            monkeypatch.delenv(key)


def _write(tmp_path: Path, text: str) -> Path:
    p = tmp_path / "config.yaml"
    p.write_text(text, encoding="utf-8")
    return p


def test_defaults() -> None:
    cfg = load_config()

    assert isinstance(cfg, AppConfig)
    assert cfg.sync.batch_size == 50
    assert cfg.sync.request_timeout_seconds == 30.0
    assert cfg.sync.connection_test_timeout_seconds == 15.0
    assert cfg.sync.default_frequency_minutes == 180
    assert cfg.scheduler.interval_seconds == 300
    assert cfg.logging.level == "INFO"
    assert cfg.logging.as_json is True
    assert cfg.security.secret is None


def test_precedence_file_env_cli(tmp_path, monkeypatch) -> None:
    path = _write(
        tmp_path,
        "database:\n  path: /from/file.sqlite\nsync:\n  batch_size: 10\n  max_retries: 1\n",
    )
    monkeypatch.setenv("CARDSYNC__sync__batch_size", "20")
    monkeypatch.setenv("CARDSYNC__sync__verify_tls", "false")

    cfg = load_config(file_path=path, cli_overrides={"sync": {"batch_size": 30}})

    assert cfg.database.path == "/from/file.sqlite"
    assert cfg.sync.batch_size == 30
    assert cfg.sync.max_retries == 1
    assert cfg.sync.verify_tls is False


def test_missing_file_is_ignored(tmp_path) -> None:
    cfg = load_config(file_path=tmp_path / "absent.yaml")
    assert cfg.database.path == "/data/cardsync.sqlite"


def test_non_mapping_yaml_is_rejected(tmp_path) -> None:
    with pytest.raises(ValueError, match="mapping"):
        load_config(file_path=_write(tmp_path, "- a\n- b\n"))


def test_invalid_values_raise_value_error(tmp_path) -> None:
    with pytest.raises(ValueError, match="Invalid configuration"):
        load_config(cli_overrides={"sync": {"batch_size": 51}})
    with pytest.raises(ValueError):
        load_config(cli_overrides={"logging": {"level": "TRACE"}})


def test_logging_json_alias(tmp_path) -> None:
    cfg = load_config(file_path=_write(tmp_path, "logging:\n  level: debug\n  json: false\n"))

    assert cfg.logging.level == "DEBUG"
    assert cfg.logging.as_json is False


def test_env_values_are_parsed_by_field_type(monkeypatch) -> None:
    monkeypatch.setenv("CARDSYNC__security__secret", "12345")
    monkeypatch.setenv("CARDSYNC__scheduler__interval_seconds", "60")
    monkeypatch.setenv("CARDSYNC__sync__backoff_initial_sec", "0.25")

    env = read_env_config()
    cfg = load_config()

    assert env["security"]["secret"] == "12345"
    assert env["scheduler"]["interval_seconds"] == "60"
    assert cfg.security.require_secret() == "12345"
    assert cfg.scheduler.interval_seconds == 60
    assert cfg.sync.backoff_initial_sec == 0.25


def test_env_names_are_case_insensitive_and_accept_aliases() -> None:
    env = read_env_config(
        {
            "CARDSYNC__SYNC__VERIFY_TLS": "no",
            "CARDSYNC__logging__as_json": "false",
            "OTHER__sync__batch_size": "1",
        }
    )

    assert env == {"sync": {"verify_tls": "no"}, "logging": {"json": "false"}}
    cfg = load_config(environ={"CARDSYNC__LOGGING__JSON": "0", "CARDSYNC__Sync__Verify_Tls": "off"})
    assert cfg.logging.as_json is False
    assert cfg.sync.verify_tls is False


@pytest.mark.parametrize(
    "key",
    [
        "CARDSYNC__google__client_id",
        "CARDSYNC__sync__batchsize",
        "CARDSYNC__sync",
        "CARDSYNC__sync__retry__max",
    ],
)
def test_unknown_env_settings_are_rejected(key) -> None:
    with pytest.raises(ValueError, match=key):
        read_env_config({key: "1"})


def test_unknown_yaml_setting_is_rejected(tmp_path) -> None:
    with pytest.raises(ValueError, match="Invalid configuration"):
        load_config(file_path=_write(tmp_path, "sync:\n  batchsize: 10\n"))


def test_require_secret_without_secret() -> None:
    with pytest.raises(ValueError, match="security.secret"):
        load_config().security.require_secret()


def test_env_prefix_must_end_with_delimiter() -> None:
    with pytest.raises(ValueError):
        read_env_config({}, prefix="CARDSYNC")


def test_merge_sections_layers_settings() -> None:
    merged = merge_sections(
        {"sync": {"batch_size": 10, "verify_tls": True}},
        {"sync": {"batch_size": 20}, "logging": {"level": "DEBUG"}},
    )

    assert merged == {"sync": {"batch_size": 20, "verify_tls": True}, "logging": {"level": "DEBUG"}}


def test_scalar_section_is_rejected(tmp_path) -> None:
    with pytest.raises(ValueError, match="'sync' must be a mapping"):
        load_config(file_path=_write(tmp_path, "sync: fast\n"))
