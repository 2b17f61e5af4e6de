"""
Relay configuration.

Precedence, lowest first: dataclass defaults, YAML file, environment
variables, explicit keyword overrides.

    config = load_config()                      # ./relay.yaml or $RELAY_CONFIG, then env
    config = load_config("prod.yaml", port=0)   # explicit file and override
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

import yaml

from shared.log import get_logger

logger = get_logger(__name__)

DEFAULT_JWT_SECRET = "your-secret-key"
DEFAULT_CONFIG_FILE = "relay.yaml"
LEDGER_BACKENDS = ("json", "memory")


class ConfigError(ValueError):
    """Raised when a configuration value cannot be used."""
    pass


@dataclass
class RelayConfig:
    host: str = "localhost"
    port: int = 5000

    # Token verification
    jwt_secret: Optional[str] = DEFAULT_JWT_SECRET
    jwt_algorithm: str = "HS256"
    jwt_public_key_path: Optional[str] = None

    # Message ledger
    ledger_backend: str = "json"
    storage_path: Path = field(default_factory=lambda: Path("~/.chat-relay"))

    # Connection handling
    handshake_timeout: float = 10.0
    ping_interval: float = 15.0
    ping_timeout: float = 45.0
    close_displaced: bool = True

    log_level: str = "INFO"

    def validate(self) -> "RelayConfig":
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"port out of range: {self.port}")
        if self.ledger_backend not in LEDGER_BACKENDS:
            raise ConfigError(f"ledger_backend must be one of {LEDGER_BACKENDS}, got {self.ledger_backend!r}")
        for name in ("handshake_timeout", "ping_interval", "ping_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.jwt_algorithm.upper().startswith(("RS", "PS", "ES")):
            if not self.jwt_public_key_path:
                raise ConfigError(f"{self.jwt_algorithm} requires jwt_public_key_path")
        elif not self.jwt_secret:
            raise ConfigError(f"{self.jwt_algorithm} requires jwt_secret")
        elif self.jwt_secret == DEFAULT_JWT_SECRET:
            logger.warning("Using the default JWT secret; set JWT_SECRET outside development")
        return self

    @property
    def ws_url(self) -> str:
        return f"ws://{self.host}:{self.port}"


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _optional_str(value: Any) -> Optional[str]:
    return None if value in (None, "") else str(value)


# field -> (environment variable, converter)
_FIELD_SOURCES: Dict[str, tuple[str, Callable[[Any], Any]]] = {
    "host": ("RELAY_HOST", str),
    "port": ("RELAY_PORT", int),
    "jwt_secret": ("JWT_SECRET", _optional_str),
    "jwt_algorithm": ("JWT_ALGORITHM", str),
    "jwt_public_key_path": ("JWT_PUBLIC_KEY_PATH", _optional_str),
    "ledger_backend": ("RELAY_LEDGER", lambda v: str(v).lower()),
    "storage_path": ("RELAY_STORAGE_PATH", lambda v: Path(str(v))),
    "handshake_timeout": ("RELAY_HANDSHAKE_TIMEOUT", float),
    "ping_interval": ("RELAY_PING_INTERVAL", float),
    "ping_timeout": ("RELAY_PING_TIMEOUT", float),
    "close_displaced": ("RELAY_CLOSE_DISPLACED", _parse_bool),
    "log_level": ("RELAY_LOG_LEVEL", lambda v: str(v).upper()),
}


def _convert(name: str, value: Any) -> Any:
    _, converter = _FIELD_SOURCES[name]
    try:
        return converter(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r} ({e})") from e


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def load_config(
    path: Optional[str | Path] = None,
    env: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> RelayConfig:
    """
    Build a validated RelayConfig.

    Args:
        path: YAML file; defaults to $RELAY_CONFIG, then ./relay.yaml if it exists
        env: Environment mapping (os.environ when omitted)
        **overrides: Field values that win over every other source

    Raises:
        ConfigError: unreadable file or a value that fails conversion/validation
    """
    env = os.environ if env is None else env
    known = {f.name for f in fields(RelayConfig)}
    values: Dict[str, Any] = {}

    if path is None:
        path = env.get("RELAY_CONFIG") or (DEFAULT_CONFIG_FILE if Path(DEFAULT_CONFIG_FILE).exists() else None)
    if path is not None:
        for key, value in _read_yaml(Path(path)).items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key {key!r} in {path}")
                continue
            values[key] = _convert(key, value)

    for name, (env_name, _) in _FIELD_SOURCES.items():
        if env_name in env:
            values[name] = _convert(name, env[env_name])

    for key, value in overrides.items():
        if key not in known:
            raise ConfigError(f"Unknown config field: {key}")
        if value is not None:
            values[key] = _convert(key, value)

    return replace(RelayConfig(), **values).validate()
