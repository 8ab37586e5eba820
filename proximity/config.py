"""
Proximity Configuration Management
==================================
Handles config loading from defaults, the YAML config file, environment
variables and command-line overrides. The result is frozen: nothing in the
proxy mutates it after startup.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from platformdirs import user_config_dir

from proximity.core.errors import ConfigError

APP_NAME = "proximity"

# ── paths ────────────────────────────────────────────────────────────────────

CONFIG_DIR = Path(user_config_dir(APP_NAME))
CONFIG_FILE = CONFIG_DIR / "config.yaml"

# Hop limit for redirect chains; not configurable.
MAX_REDIRECTS = 10

# Status written to the caller when the proxy itself fails.
PROXY_FAILURE_STATUS = 599


# ── default config ───────────────────────────────────────────────────────────

DEFAULT_CONFIG: Dict[str, Any] = {
    "listen": ":9999",
    "remote": "http://localhost:80",
    "cert_file": "cert.pem",
    "key_file": "key.pem",
    "no_verify": False,
    "verbosity": 0,
    "metrics_interval": 60,
    "timeout": 30.0,
}

# env var -> config key
ENV_OVERRIDES: Dict[str, str] = {
    "PROXIMITY_LISTEN": "listen",
    "PROXIMITY_REMOTE": "remote",
    "PROXIMITY_CERT": "cert_file",
    "PROXIMITY_KEY": "key_file",
    "PROXIMITY_NO_VERIFY": "no_verify",
    "PROXIMITY_VERBOSITY": "verbosity",
    "PROXIMITY_METRICS_INTERVAL": "metrics_interval",
    "PROXIMITY_TIMEOUT": "timeout",
}

_TRUE_STRINGS = ("1", "true", "yes", "on")
_FALSE_STRINGS = ("0", "false", "no", "off", "")


@dataclass(frozen=True)
class ProxyConfig:
    listen: str = ":9999"
    remote: str = "http://localhost:80"
    cert_file: str = "cert.pem"
    key_file: str = "key.pem"
    no_verify: bool = False
    verbosity: int = 0
    metrics_interval: int = 60
    timeout: float = 30.0
    max_redirects: int = MAX_REDIRECTS

    @property
    def listen_address(self) -> Tuple[str, int]:
        """``(host, port)`` tuple for the listener socket."""
        return parse_listen_address(self.listen)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parse_listen_address(value: str) -> Tuple[str, int]:
    """Split ``host:port`` (host may be empty, e.g. ``:9999``)."""
    host, sep, port = value.rpartition(":")
    if not sep:
        raise ConfigError(f"listen address '{value}' is missing a port")
    host = host.strip("[]")
    try:
        port_num = int(port)
    except ValueError:
        raise ConfigError(f"invalid port in listen address '{value}'") from None
    if not 0 <= port_num <= 65535:
        raise ConfigError(f"port out of range in listen address '{value}'")
    return host, port_num


def _coerce(key: str, value: Any) -> Any:
    """Convert a raw (file/env/CLI) value to the type of ``key``."""
    default = DEFAULT_CONFIG[key]
    try:
        if isinstance(default, bool):
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE_STRINGS:
                return True
            if text in _FALSE_STRINGS:
                return False
            raise ValueError(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
        return str(value)
    except (TypeError, ValueError):
        raise ConfigError(f"invalid value for '{key}': {value!r}") from None


def _validate(cfg: ProxyConfig) -> ProxyConfig:
    if not 0 <= cfg.verbosity <= 3:
        raise ConfigError(f"verbosity must be between 0 and 3, got {cfg.verbosity}")
    if cfg.metrics_interval <= 0:
        raise ConfigError("metrics interval must be a positive number of seconds")
    if cfg.timeout <= 0:
        raise ConfigError("timeout must be a positive number of seconds")
    parse_listen_address(cfg.listen)
    return cfg


def load_config(
    config_file: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> ProxyConfig:
    """Load configuration from defaults, disk, env vars and overrides.

    Later sources win: defaults < config file < environment < ``overrides``.
    ``None`` values in ``overrides`` are ignored so CLI options that were not
    given do not mask the other sources.
    """
    path = Path(config_file) if config_file else CONFIG_FILE
    raw: Dict[str, Any] = {}

    if path.exists():
        try:
            with open(path) as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"cannot read config file {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"config file {path} must contain a mapping")
    elif config_file:
        raise ConfigError(f"config file {path} does not exist")

    unknown = set(raw) - set(DEFAULT_CONFIG)
    if unknown:
        raise ConfigError(f"unknown config keys: {', '.join(sorted(unknown))}")

    merged = dict(DEFAULT_CONFIG)
    merged.update(raw)

    # Env-var overrides
    for env_name, key in ENV_OVERRIDES.items():
        if env_name in os.environ:
            merged[key] = os.environ[env_name]

    for key, value in (overrides or {}).items():
        if value is not None:
            merged[key] = value

    values = {key: _coerce(key, merged[key]) for key in DEFAULT_CONFIG}
    return _validate(ProxyConfig(**values))


def save_config(cfg: ProxyConfig, config_file: Optional[Path] = None) -> Path:
    """Persist the given configuration as YAML."""
    path = Path(config_file) if config_file else CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {f.name: getattr(cfg, f.name) for f in fields(cfg) if f.name in DEFAULT_CONFIG}
    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)
    return path
