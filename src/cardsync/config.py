"""Configuration loader for cardsync.

Sources, lowest precedence first:
- YAML file (sections below, all optional)
- ENV: CARDSYNC__<section>__<setting>, matched case-insensitively
- CLI overrides: nested mapping, e.g. {"logging": {"level": "DEBUG"}}

ENV values are passed to the models as strings; pydantic parses them against
the declared field types, so a numeric-looking secret stays a string and
"false" becomes False for verify_tls. Unknown sections or settings are an
error in every source.

  CARDSYNC__database__path=/data/cardsync.sqlite
  CARDSYNC__security__secret=change-me
  CARDSYNC__sync__request_timeout_seconds=30
  CARDSYNC__SCHEDULER__INTERVAL_SECONDS=300

Example:
  cfg = load_config("/data/config.yaml", cli_overrides={"logging": {"json": False}})
  print(cfg.database.path)
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

ENV_PREFIX = "CARDSYNC__"

# ----------------------------
# Pydantic models (typed config)
# ----------------------------


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class DatabaseConfig(_Section):
    path: str = "/data/cardsync.sqlite"


class SecurityConfig(_Section):
    # Server-wide secret; subscription passwords are sealed with a key derived from it.
    secret: str | None = None

    def require_secret(self) -> str:
        if not self.secret:
            raise ValueError(
                "security.secret is required (config file or CARDSYNC__security__secret)."
            )
        return self.secret


class SyncConfig(_Section):
    # Multiget batch size; servers commonly cap multiget at 50 hrefs.
    batch_size: int = Field(50, ge=1, le=50)
    request_timeout_seconds: float = Field(30.0, gt=0, le=300)
    connection_test_timeout_seconds: float = Field(15.0, gt=0, le=120)
    default_frequency_minutes: int = Field(180, ge=1)
    # Retry cap for transient HTTP failures inside a single operation (0..10)
    max_retries: int = Field(2, ge=0, le=10)
    backoff_initial_sec: float = Field(0.5, gt=0, le=60)
    verify_tls: bool = True


class SchedulerConfig(_Section):
    interval_seconds: int = Field(300, ge=1)
    tick_timeout_seconds: int = Field(240, ge=1)


class LoggingConfig(_Section):
    # Allow using alias "json" in config/env while avoiding BaseModel.json clash
    model_config = ConfigDict(populate_by_name=True, extra="forbid")
    level: str = "INFO"
    as_json: bool = Field(True, alias="json")

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, v: str) -> str:
        lv = (v or "INFO").upper()
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if lv not in allowed:
            raise ValueError(f"logging.level must be one of {sorted(allowed)}")
        return lv


def _default_logging_config() -> LoggingConfig:
    return LoggingConfig(json=True)


class RuntimeConfig(_Section):
    lock_path: str = "/tmp/cardsync.lock"


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    logging: LoggingConfig = Field(default_factory=_default_logging_config)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)


__all__ = [
    "ENV_PREFIX",
    "AppConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "RuntimeConfig",
    "SchedulerConfig",
    "SecurityConfig",
    "SyncConfig",
    "load_config",
    "merge_sections",
    "read_env_config",
    "read_yaml_config",
]


# ----------------------------
# Sources
# ----------------------------


def _section_models() -> dict[str, type[BaseModel]]:
    return {name: field.annotation for name, field in AppConfig.model_fields.items()}


def _setting_keys(model: type[BaseModel]) -> dict[str, str]:
    """Lower-cased field names and aliases of a section -> the key its model accepts."""
    keys: dict[str, str] = {}
    for name, field in model.model_fields.items():
        keys[name.lower()] = field.alias or name
        if field.alias:
            keys[field.alias.lower()] = field.alias
    return keys


def merge_sections(*sources: Mapping[str, Any]) -> dict[str, dict[str, Any]]:
    """Layer config sources setting by setting; later sources win."""
    merged: dict[str, dict[str, Any]] = {}
    for source in sources:
        for section, settings in source.items():
            if not isinstance(settings, Mapping):
                raise ValueError(f"config section {section!r} must be a mapping")
            merged.setdefault(section, {}).update(settings)
    return merged


def read_yaml_config(path: str | Path | None) -> dict[str, Any]:
    """Read the YAML file; a missing file or an empty document is an empty config."""
    if not path:
        return {}
    p = Path(path).expanduser()
    if not p.exists():
        return {}
    with p.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Top-level YAML must be a mapping of sections in {p}")
    return data


def read_env_config(
    environ: Mapping[str, str] | None = None, prefix: str = ENV_PREFIX
) -> dict[str, dict[str, str]]:
    """Collect CARDSYNC__<section>__<setting> variables into config sections.

    Section and setting names are resolved against AppConfig, so
    CARDSYNC__LOGGING__JSON and CARDSYNC__logging__as_json both land on
    logging.json. Values are left as strings for the models to parse.
    """
    if not prefix.endswith("__"):
        raise ValueError("prefix must end with '__' (default 'CARDSYNC__').")

    sections = _section_models()
    result: dict[str, dict[str, str]] = {}
    for key, raw in (os.environ if environ is None else environ).items():
        if not key.startswith(prefix):
            continue
        parts = key[len(prefix) :].lower().split("__")
        if len(parts) != 2:
            raise ValueError(f"{key}: expected {prefix}<section>__<setting>")
        section, setting = parts
        model = sections.get(section)
        if model is None:
            raise ValueError(f"{key}: unknown section {section!r}, expected one of {sorted(sections)}")
        keys = _setting_keys(model)
        if setting not in keys:
            raise ValueError(f"{key}: unknown setting {section}.{setting}")
        result.setdefault(section, {})[keys[setting]] = raw
    return result


# ----------------------------
# Loader (precedence: file < env < cli_overrides)
# ----------------------------


def load_config(
    file_path: str | Path | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """Load AppConfig with precedence: file < env < CLI overrides.

    Args:
        file_path: YAML path or None
        cli_overrides: nested mapping of overrides (e.g., from CLI args)
        environ: environment to read instead of os.environ

    Returns:
        AppConfig instance (validated)
    """
    if cli_overrides is not None and not isinstance(cli_overrides, Mapping):
        raise TypeError("cli_overrides must be a mapping (nested dict-like).")

    merged = merge_sections(
        read_yaml_config(file_path),
        read_env_config(environ),
        cli_overrides or {},
    )
    try:
        return AppConfig.model_validate(merged)
    except ValidationError as ve:
        raise ValueError(f"Invalid configuration: {ve}") from ve
