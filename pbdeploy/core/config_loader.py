"""Configuration management for pbdeploy"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import dotenv_values

from pbdeploy import constants
from pbdeploy.exceptions import ConfigurationError
from pbdeploy.utils import get_project_root


@dataclass
class PoolSettings:
    """Connection pool limits and timers (seconds)"""

    max_connections: int = constants.POOL_MAX_CONNECTIONS
    max_idle_time: float = constants.POOL_MAX_IDLE_TIME
    max_lifetime: float = constants.POOL_MAX_LIFETIME
    health_check_interval: float = constants.POOL_HEALTH_CHECK_INTERVAL
    cleanup_interval: float = constants.POOL_CLEANUP_INTERVAL
    health_failure_threshold: int = constants.POOL_HEALTH_FAILURE_THRESHOLD
    connect_timeout: float = constants.SSH_CONNECT_TIMEOUT
    keepalive_interval: float = constants.SSH_KEEPALIVE_INTERVAL
    max_retries: int = constants.SSH_MAX_RETRIES
    retry_delay: float = constants.SSH_RETRY_DELAY
    strict_host_keys: bool = False


@dataclass
class ExecutorSettings:
    """Remote command defaults"""

    command_timeout: float = constants.SSH_COMMAND_TIMEOUT


@dataclass
class DeploymentSettings:
    """Deployment pipeline tuning"""

    health_probe_attempts: int = constants.HEALTH_PROBE_ATTEMPTS
    health_probe_delay: float = constants.HEALTH_PROBE_DELAY
    start_probe_attempts: int = constants.START_PROBE_ATTEMPTS
    start_probe_delay: float = constants.START_PROBE_DELAY
    stop_wait_seconds: float = constants.STOP_WAIT_SECONDS
    backup_retention: int = constants.BACKUP_RETENTION
    staging_max_age_minutes: int = constants.STAGING_MAX_AGE_MINUTES


@dataclass
class DiagnosticsSettings:
    """Diagnostics engine tuning"""

    dial_timeout: float = constants.DIAGNOSTIC_DIAL_TIMEOUT
    ban_detection_window: float = constants.BAN_DETECTION_WINDOW
    ssh_dir: str = "~/.ssh"


SECTIONS = {
    "pool": PoolSettings,
    "executor": ExecutorSettings,
    "deployment": DeploymentSettings,
    "diagnostics": DiagnosticsSettings,
}


@dataclass
class Settings:
    """Loaded and validated pbdeploy configuration"""

    pool: PoolSettings = field(default_factory=PoolSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    deployment: DeploymentSettings = field(default_factory=DeploymentSettings)
    diagnostics: DiagnosticsSettings = field(default_factory=DiagnosticsSettings)
    log_dir: Optional[str] = None
    database_url: Optional[str] = None

    @property
    def log_root(self) -> Path:
        if self.log_dir:
            return Path(self.log_dir).expanduser()
        return get_project_root() / "logs"

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{get_project_root() / constants.DATABASE_FILENAME}"


def _coerce(value: Any, current: Any, name: str) -> Any:
    """Coerce a YAML/env value to the type of the default it replaces."""
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("1", "true", "yes", "on")
    try:
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"Invalid value for '{name}': {value!r}",
            f"Expected {type(current).__name__}",
        )
    return value


def _apply_section(section: Any, values: Dict[str, Any], section_name: str) -> None:
    known = {f.name for f in fields(section)}
    for key, value in values.items():
        if key not in known:
            raise ConfigurationError(
                f"Unknown setting '{section_name}.{key}'",
                f"Valid keys: {', '.join(sorted(known))}",
            )
        setattr(section, key, _coerce(value, getattr(section, key), f"{section_name}.{key}"))


def _apply_mapping(settings: Settings, raw: Dict[str, Any]) -> None:
    for key, value in raw.items():
        if key in SECTIONS:
            if not isinstance(value, dict):
                raise ConfigurationError(f"Section '{key}' must be a mapping")
            _apply_section(getattr(settings, key), value, key)
        elif key in ("log_dir", "database_url"):
            setattr(settings, key, value)
        else:
            raise ConfigurationError(
                f"Unknown configuration key '{key}'",
                f"Valid sections: {', '.join(list(SECTIONS) + ['log_dir', 'database_url'])}",
            )


def _env_overrides(env: Dict[str, str]) -> Dict[str, Any]:
    """
    Translate PBDEPLOY_* variables into a settings mapping.

    PBDEPLOY_POOL__MAX_CONNECTIONS=4 -> {"pool": {"max_connections": "4"}}
    PBDEPLOY_LOG_DIR=/tmp/logs       -> {"log_dir": "/tmp/logs"}
    """
    overrides: Dict[str, Any] = {}
    for name, value in env.items():
        if not name.startswith(constants.ENV_PREFIX) or value is None:
            continue
        key = name[len(constants.ENV_PREFIX):].lower()
        if "__" in key:
            section, option = key.split("__", 1)
            if section in SECTIONS:
                overrides.setdefault(section, {})[option] = value
        elif key == "db_url":
            overrides["database_url"] = value
        elif key in ("log_dir", "database_url"):
            overrides[key] = value
    return overrides


def load_settings(
    config_path: Optional[Path] = None, env: Optional[Dict[str, str]] = None
) -> Settings:
    """
    Load settings from pbdeploy.yml, then .env, then the process environment.

    Args:
        config_path: Explicit YAML file (default: <root>/pbdeploy.yml if present)
        env: Environment mapping override (default: os.environ)

    Returns:
        Settings instance
    """
    settings = Settings()
    root = get_project_root()

    path = Path(config_path) if config_path else root / constants.CONFIG_FILENAME
    if config_path and not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")

    if path.exists():
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}", str(e))
        if not isinstance(raw, dict):
            raise ConfigurationError(f"{path} must contain a mapping")
        _apply_mapping(settings, raw)

    env_file = root / ".env"
    if env_file.exists():
        _apply_mapping(settings, _env_overrides(dotenv_values(env_file)))

    _apply_mapping(settings, _env_overrides(dict(os.environ if env is None else env)))
    return settings
