"""
Controller configuration.

Values come from three layers, highest priority first:
environment variables (a ``.env`` file is loaded first), ``config.yaml``,
and the dataclass defaults below. Out-of-range values are reset to their
defaults rather than rejected; per-target deployment settings under
``environments`` are validated lazily by ``config_schemas``.

Usage:
    from deployctl.config import load_config, get_environment_config

    config = load_config()
    config.controller.router_timeout

    production = get_environment_config("production")
    strategy = production.to_strategy()
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Tuple, Union

import yaml
from dotenv import load_dotenv

from .config_schemas import TargetDeploymentSchema, validate_target_config
from .core.exceptions import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"
CONFIG_FILE_ENV = "DEPLOYCTL_CONFIG_FILE"


# =============================================================================
# Sections
# =============================================================================


@dataclass
class GeneralConfig:
    log_level: str = "INFO"
    data_dir: str = "./data"
    json_logs: bool = False

    def __post_init__(self):
        level = str(self.log_level).upper()
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        self.log_level = level if level in valid_levels else "INFO"


@dataclass
class ControllerConfig:
    """Deadlines and retry backoff for external calls, in seconds."""

    router_timeout: float = 10.0
    metric_timeout: float = 10.0
    capacity_timeout: float = 10.0
    retry_backoff: float = 1.0
    persist_sessions: bool = True

    def __post_init__(self):
        for name in ("router_timeout", "metric_timeout", "capacity_timeout"):
            if getattr(self, name) <= 0:
                setattr(self, name, 10.0)
        if self.retry_backoff < 0:
            self.retry_backoff = 1.0


@dataclass
class AutoscalerConfig:
    """Warm pool loop settings."""

    tick_interval: float = 60.0
    hysteresis: float = 0.05

    def __post_init__(self):
        if self.tick_interval <= 0:
            self.tick_interval = 60.0
        if not 0 <= self.hysteresis < 1:
            self.hysteresis = 0.05


def _default_environments() -> Dict[str, Dict[str, Any]]:
    return {
        "development": {
            "deployment_preference": "ALL_AT_ONCE",
            "alarm": {"enabled": False},
        },
        "production": {
            "deployment_preference": "LINEAR_10PERCENT_EVERY_1MINUTE",
            "alarm": {"enabled": True, "error_rate_threshold": 0.05, "evaluation_periods": 2},
            "autoscaling": {
                "enabled": True,
                "min_capacity": 1,
                "max_capacity": 10,
                "utilization_target": 0.7,
            },
            "provisioned_concurrency": 1,
            "blue_green_enabled": True,
        },
    }


_SECTIONS = {
    "general": GeneralConfig,
    "controller": ControllerConfig,
    "autoscaler": AutoscalerConfig,
}


@dataclass
class AppConfig:
    general: GeneralConfig = field(default_factory=GeneralConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    autoscaler: AutoscalerConfig = field(default_factory=AutoscalerConfig)
    # Environment name -> raw target deployment config
    environments: Dict[str, Dict[str, Any]] = field(default_factory=_default_environments)

    def to_dict(self) -> Dict[str, Any]:
        data = {name: asdict(getattr(self, name)) for name in _SECTIONS}
        data["environments"] = {name: dict(env) for name, env in self.environments.items()}
        return data


# =============================================================================
# Environment variables
# =============================================================================

# ENV_VAR -> (section, key); the value type comes from the section dataclass
ENV_VAR_MAPPING: Dict[str, Tuple[str, str]] = {
    "LOG_LEVEL": ("general", "log_level"),
    "DATA_DIR": ("general", "data_dir"),
    "JSON_LOGS": ("general", "json_logs"),
    "ROUTER_TIMEOUT": ("controller", "router_timeout"),
    "METRIC_TIMEOUT": ("controller", "metric_timeout"),
    "CAPACITY_TIMEOUT": ("controller", "capacity_timeout"),
    "RETRY_BACKOFF": ("controller", "retry_backoff"),
    "PERSIST_SESSIONS": ("controller", "persist_sessions"),
    "AUTOSCALER_TICK_INTERVAL": ("autoscaler", "tick_interval"),
    "AUTOSCALER_HYSTERESIS": ("autoscaler", "hysteresis"),
}


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


# Field annotations are strings under postponed evaluation
_COERCERS: Dict[str, Callable[[Any], Any]] = {
    "str": str,
    "float": float,
    "int": lambda v: int(float(v)),
    "bool": _to_bool,
}


def _field_types(section: str) -> Dict[str, str]:
    return {f.name: str(f.type) for f in fields(_SECTIONS[section])}


def _apply_env_overrides(raw: Dict[str, Any]) -> Dict[str, Any]:
    for env_var, (section, key) in ENV_VAR_MAPPING.items():
        value = os.getenv(env_var)
        if value is None:
            continue
        coerce = _COERCERS[_field_types(section)[key]]
        try:
            parsed = coerce(value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring unparseable {env_var}={value!r}")
            continue
        section_values = raw.get(section) or {}
        raw[section] = {**section_values, key: parsed}
    return raw


# =============================================================================
# Loading
# =============================================================================


def _candidate_paths() -> Iterator[Path]:
    explicit = os.getenv(CONFIG_FILE_ENV)
    if explicit:
        yield Path(explicit)
    yield Path.cwd() / CONFIG_FILENAME
    yield Path(__file__).resolve().parent.parent / CONFIG_FILENAME
    yield Path.home() / ".deployctl" / CONFIG_FILENAME


def _read_yaml(config_path: Optional[Path]) -> Dict[str, Any]:
    if config_path is None:
        config_path = next((p for p in _candidate_paths() if p.is_file()), None)
    if config_path is None or not config_path.is_file():
        return {}

    try:
        content = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Could not read {config_path}, using defaults: {e}")
        return {}
    if not isinstance(content, dict):
        logger.warning(f"{config_path} does not contain a mapping, using defaults")
        return {}
    logger.debug(f"Loaded configuration from {config_path}")
    return content


def _build_section(section: str, values: Optional[Dict[str, Any]]) -> Any:
    """Section dataclass from raw values; unknown keys are logged and skipped."""
    types = _field_types(section)
    kwargs = {}
    for key, value in (values or {}).items():
        if key not in types:
            logger.warning(f"Unknown setting {section}.{key} ignored")
            continue
        try:
            kwargs[key] = _COERCERS[types[key]](value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid value for {section}.{key}: {value!r}, using default")
    return _SECTIONS[section](**kwargs)


def _dict_to_config(raw: Dict[str, Any]) -> AppConfig:
    sections = {name: _build_section(name, raw.get(name)) for name in _SECTIONS}
    environments = raw.get("environments") or _default_environments()
    return AppConfig(**sections, environments=dict(environments))


_cached_config: Optional[AppConfig] = None


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    use_cache: bool = True,
) -> AppConfig:
    """
    Load the controller configuration.

    Args:
        config_path: Explicit YAML file. Without one, ``$DEPLOYCTL_CONFIG_FILE``,
            ``./config.yaml``, the project root and ``~/.deployctl/config.yaml``
            are tried in that order.
        use_cache: Return the previously loaded config when there is one
    """
    global _cached_config

    if use_cache and _cached_config is not None:
        return _cached_config

    load_dotenv()
    raw = _read_yaml(Path(config_path) if config_path is not None else None)
    config = _dict_to_config(_apply_env_overrides(raw))

    if use_cache:
        _cached_config = config
    return config


def reload_config(config_path: Optional[Union[str, Path]] = None) -> AppConfig:
    global _cached_config
    _cached_config = None
    return load_config(config_path)


def get_config() -> AppConfig:
    return load_config()


def get_data_dir(config: Optional[AppConfig] = None) -> Path:
    """Absolute data directory of ``config`` (the loaded config when None)."""
    config = config or get_config()
    return Path(config.general.data_dir).expanduser().resolve()


def get_environment_config(
    name: str,
    config: Optional[AppConfig] = None,
) -> TargetDeploymentSchema:
    """
    Validated deployment configuration for a named environment.

    Raises:
        ConfigError: Unknown environment or invalid configuration
    """
    config = config or get_config()
    raw = config.environments.get(name)
    if raw is None:
        available = ", ".join(sorted(config.environments)) or "none"
        raise ConfigError(f"Unknown environment {name!r}. Available: {available}")
    return validate_target_config(raw)
