# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Configuration loading for the scriptpool host.

The engine itself takes an EngineConfig directly; this module only maps a
YAML file onto one for the command-line host.

Example config.yaml:

    engine:
      min_contexts: 2
      max_contexts: 10
      allow_unrestricted_execution: true
      startup_timeout: 30
    events_path: ~/.scriptpool/events.jsonl
    log_level: INFO
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from scriptpool.engine.models import ConfigError, EngineConfig

DEFAULT_CONFIG_PATH = Path("~/.scriptpool/config.yaml")
DEFAULT_EVENTS_PATH = Path("~/.scriptpool/events.jsonl")

_ENGINE_TYPES = {
    "min_contexts": (int, "an integer"),
    "max_contexts": (int, "an integer"),
    "allow_unrestricted_execution": (bool, "a boolean"),
    "python_executable": (str, "a string"),
    "startup_timeout": ((int, float), "a number"),
}


@dataclass
class AppConfig:
    """Host configuration: engine settings plus ambient concerns."""

    engine: EngineConfig = field(default_factory=EngineConfig)
    events_path: Path = field(default_factory=lambda: DEFAULT_EVENTS_PATH.expanduser())
    log_level: str = "WARNING"
    source: Optional[Path] = None

    def with_engine(self, **overrides: Any) -> "AppConfig":
        """Return a copy with engine fields overridden (None values ignored)."""
        values = {k: v for k, v in overrides.items() if v is not None}
        engine = replace(self.engine, **values)
        engine.validate()
        return replace(self, engine=engine)


def get_config_path(config_path: Optional[Union[str, Path]] = None) -> Path:
    """Resolve the config file location.

    Order:
    1. Explicit config_path argument
    2. $SCRIPTPOOL_CONFIG (if set)
    3. ~/.scriptpool/config.yaml
    """
    if config_path:
        return Path(config_path).expanduser()
    env_path = os.environ.get("SCRIPTPOOL_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH.expanduser()


def load_config(config_path: Optional[Union[str, Path]] = None) -> AppConfig:
    """
    Load host configuration from YAML.

    Args:
        config_path: Explicit config file. If given (directly or through
            $SCRIPTPOOL_CONFIG) it must exist.

    Returns:
        AppConfig; defaults when no file is named and the default is absent.

    Raises:
        FileNotFoundError: An explicitly named config file does not exist
        ConfigError: The file is not valid YAML or has invalid values
    """
    explicit = bool(config_path) or bool(os.environ.get("SCRIPTPOOL_CONFIG"))
    path = get_config_path(config_path)

    if not path.exists():
        if explicit:
            raise FileNotFoundError(f"Config file not found: {path}")
        return AppConfig()

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}")

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a YAML mapping")

    config = parse_config(data)
    config.source = path
    return config


def parse_config(data: Dict[str, Any]) -> AppConfig:
    """Build an AppConfig from an already-parsed mapping.

    Raises:
        ConfigError: Unknown keys or values of the wrong type.
    """
    unknown = set(data) - {"engine", "events_path", "log_level"}
    if unknown:
        raise ConfigError(f"unknown config keys: {', '.join(sorted(unknown))}")

    engine_data = data.get("engine") or {}
    if not isinstance(engine_data, dict):
        raise ConfigError("'engine' must be a mapping")

    engine = _parse_engine(engine_data)

    config = AppConfig(engine=engine)
    if data.get("events_path"):
        config.events_path = Path(str(data["events_path"])).expanduser()
    if data.get("log_level"):
        level = str(data["log_level"]).upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"invalid log_level: {data['log_level']}")
        config.log_level = level
    return config


def _parse_engine(engine_data: Dict[str, Any]) -> EngineConfig:
    known = {f.name for f in fields(EngineConfig)}
    unknown = set(engine_data) - known
    if unknown:
        raise ConfigError(f"unknown engine keys: {', '.join(sorted(unknown))}")

    for key, value in engine_data.items():
        expected, type_name = _ENGINE_TYPES[key]
        # bool is an int subclass; keep it out of the numeric fields
        bool_mismatch = isinstance(value, bool) and expected is not bool
        if bool_mismatch or not isinstance(value, expected):
            raise ConfigError(f"engine.{key} must be {type_name}, got: {value!r}")

    engine = EngineConfig(**engine_data)
    engine.validate()
    return engine
