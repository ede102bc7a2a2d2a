"""Reconciler configuration: YAML file plus NODECTL_* environment overrides."""

from __future__ import annotations

import os
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from nodectl.errors import ConfigurationError
from nodectl.state import HealthStateFilterFlags

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "nodectl.yaml"


@dataclass
class ReconcilerConfig:
    """Settings for talking to one cluster controller."""
    controller_url: str = "http://localhost:19080"
    api_version: str = "6.0"
    request_timeout_s: float = 10.0
    poll_interval_s: float = 15.0
    get_retries: int = 2
    max_workers: int = 8
    health_events_filter: int = int(HealthStateFilterFlags.DEFAULT)
    actions_enabled: bool = True
    advanced_actions_enabled: bool = True
    verify_tls: bool = True
    auth_token: Optional[str] = None
    discover: bool = False
    nodes: List[str] = field(default_factory=list)

    def validate(self) -> "ReconcilerConfig":
        if not self.controller_url:
            raise ConfigurationError("controller_url must be set")
        if self.request_timeout_s <= 0:
            raise ConfigurationError(
                "request_timeout_s must be positive",
                context={"request_timeout_s": self.request_timeout_s},
            )
        if self.poll_interval_s <= 0:
            raise ConfigurationError(
                "poll_interval_s must be positive",
                context={"poll_interval_s": self.poll_interval_s},
            )
        if self.get_retries < 0:
            raise ConfigurationError("get_retries cannot be negative", context={"get_retries": self.get_retries})
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1", context={"max_workers": self.max_workers})
        return self

    @property
    def events_filter(self) -> HealthStateFilterFlags:
        return HealthStateFilterFlags(self.health_events_filter)


_ENV_KEYS = {
    "NODECTL_CONTROLLER_URL": "controller_url",
    "NODECTL_API_VERSION": "api_version",
    "NODECTL_TIMEOUT_S": "request_timeout_s",
    "NODECTL_POLL_INTERVAL_S": "poll_interval_s",
    "NODECTL_GET_RETRIES": "get_retries",
    "NODECTL_MAX_WORKERS": "max_workers",
    "NODECTL_EVENTS_FILTER": "health_events_filter",
    "NODECTL_ACTIONS": "actions_enabled",
    "NODECTL_ADVANCED_ACTIONS": "advanced_actions_enabled",
    "NODECTL_VERIFY_TLS": "verify_tls",
    "NODECTL_AUTH_TOKEN": "auth_token",
    "NODECTL_DISCOVER": "discover",
    "NODECTL_NODES": "nodes",
}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _coerce(name: str, value: Any) -> Any:
    defaults = ReconcilerConfig()
    current = getattr(defaults, name)
    try:
        if name == "nodes":
            if isinstance(value, str):
                return [n.strip() for n in value.split(",") if n.strip()]
            return [str(n) for n in (value or [])]
        if name == "auth_token":
            return str(value) if value else None
        if isinstance(current, bool):
            return _parse_bool(value)
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
        return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for '{name}': {e}", context={"value": value}) from e


def _load_file(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    # Accept the settings either at the top level or under a 'reconciler' key.
    return data.get("reconciler", data)


def load_config(
    path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> ReconcilerConfig:
    """
    Build a ReconcilerConfig.

    Precedence, lowest first: defaults, YAML file, environment, keyword overrides.

    Args:
        path: YAML file (defaults to $NODECTL_CONFIG or ./nodectl.yaml; missing is fine)
        env: Environment mapping (defaults to os.environ)
        **overrides: Explicit values, e.g. from CLI flags; None values are ignored

    Returns:
        Validated ReconcilerConfig

    Raises:
        ConfigurationError: On unknown keys or unparseable values
    """
    env = os.environ if env is None else env
    known = {f.name for f in fields(ReconcilerConfig)}
    values: Dict[str, Any] = {}

    explicit = path is not None
    config_path = Path(path or env.get("NODECTL_CONFIG", DEFAULT_CONFIG_PATH))
    if config_path.exists():
        for key, value in _load_file(config_path).items():
            if key not in known:
                raise ConfigurationError(f"Unknown config key '{key}' in {config_path}")
            values[key] = _coerce(key, value)
        logger.info(f"Loaded reconciler config from {config_path}")
    elif explicit:
        raise ConfigurationError(f"Config file not found: {config_path}")

    for env_key, name in _ENV_KEYS.items():
        if env_key in env:
            values[name] = _coerce(name, env[env_key])

    for name, value in overrides.items():
        if value is None:
            continue
        if name not in known:
            raise ConfigurationError(f"Unknown config key '{name}'")
        values[name] = _coerce(name, value)

    return ReconcilerConfig(**values).validate()
