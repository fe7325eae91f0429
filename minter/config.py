"""
Minter Configuration System

Configuration management with YAML files, environment variables and
validation.

Configuration Sources (in order of precedence):
    1. Environment variables (MINTER_*)
    2. Runtime overrides (`ConfigManager.set`, CLI flags)
    3. User config file (~/.minter/config.yaml)
    4. Project config file (./minter.yaml or ./config/minter.yaml)
    5. Default values

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from minter.errors import ConfigError
from minter.observability import MintLayer, get_logger

logger = get_logger("config", MintLayer.CONFIG)

T = TypeVar("T")

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[T, T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value; the environment wins over everything else."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        value = self._normalize(value)
        if self.validator and not self.validator(value):
            raise ConfigError(f"Invalid value for config: {value!r}")

        old_value = self._value
        self._value = value
        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        self._value = None

    def _normalize(self, value: Any) -> Any:
        target_type = type(self.default)
        if target_type == float and isinstance(value, int) and not isinstance(value, bool):
            return float(value)
        if target_type == int and isinstance(value, bool):
            raise ConfigError(f"Expected an integer, got {value!r}")
        if target_type in (int, float, str, bool) and not isinstance(value, target_type):
            raise ConfigError(f"Expected {target_type.__name__}, got {value!r}")
        return value

    def _coerce(self, value: str) -> T:
        """Coerce an environment string to the default's type."""
        target_type = type(self.default)
        try:
            if target_type == bool:
                return value.lower() in ("true", "1", "yes", "on")  # type: ignore
            elif target_type == int:
                return int(value)  # type: ignore
            elif target_type == float:
                return float(value)  # type: ignore
            return value  # type: ignore
        except ValueError as ex:
            raise ConfigError(f"{self.env_var}: cannot parse {value!r} as {target_type.__name__}") from ex

    def on_change(self, callback: Callable[[T, T], None]) -> None:
        self._callbacks.append(callback)


@dataclass
class OrchestratorConfig:
    """Batch scheduling."""
    concurrency: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=4,
        env_var="MINTER_CONCURRENCY",
        description="Maximum mint calls in flight at once",
        validator=lambda x: 1 <= x <= 256,
    ))
    tick_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=0.05,
        env_var="MINTER_TICK_SECONDS",
        description="Scheduler wake-up interval while calls are in flight",
        validator=lambda x: 0 < x <= 5,
    ))
    resume: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="MINTER_RESUME",
        description="Skip entries already recorded as succeeded in the progress ledger",
    ))
    preflight: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="MINTER_PREFLIGHT",
        description="Check the canister advertises the Mint interface before dispatch",
    ))


@dataclass
class RetryConfig:
    """Backoff for transport failures."""
    max_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5,
        env_var="MINTER_MAX_ATTEMPTS",
        description="Attempts per entry, including the first",
        validator=lambda x: 1 <= x <= 100,
    ))
    base_backoff: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=0.5,
        env_var="MINTER_BASE_BACKOFF",
        description="Delay before the first retry, in seconds",
        validator=lambda x: x >= 0,
    ))
    max_backoff: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var="MINTER_MAX_BACKOFF",
        description="Upper bound on any retry delay, in seconds",
        validator=lambda x: x >= 0,
    ))
    backoff_multiplier: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=2.0,
        env_var="MINTER_BACKOFF_MULTIPLIER",
        description="Growth factor between consecutive retry delays",
        validator=lambda x: x >= 1.0,
    ))
    jitter_factor: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=0.5,
        env_var="MINTER_JITTER_FACTOR",
        description="Random jitter as a fraction of the exponential delay",
        validator=lambda x: 0.0 <= x <= 1.0,
    ))


@dataclass
class TransportConfig:
    """Ledger gateway."""
    network: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="ic",
        env_var="MINTER_NETWORK",
        description="Network alias (ic, local) or gateway URL",
        validator=lambda x: bool(x),
    ))
    canister_id: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="MINTER_CANISTER",
        description="Target DIP-721 canister (overrides the manifest)",
    ))
    per_call_timeout: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var="MINTER_CALL_TIMEOUT",
        description="Timeout for a single mint call, in seconds",
        validator=lambda x: x > 0,
    ))
    identity: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="MINTER_IDENTITY",
        description="Path to the operator identity (PEM or JWK); empty uses dfx's default",
    ))


@dataclass
class ObservabilityConfig:
    """Logging."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="MINTER_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in LOG_LEVELS,
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="MINTER_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class MinterConfig:
    """Root configuration."""
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)


def _walk_values(obj: Any, path: str = ""):
    if isinstance(obj, ConfigValue):
        yield path, obj
    elif hasattr(obj, "__dataclass_fields__"):
        for field_name in obj.__dataclass_fields__:
            field_path = f"{path}.{field_name}" if path else field_name
            yield from _walk_values(getattr(obj, field_name), field_path)


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = MinterConfig()
        self._config_paths: List[Path] = []
        self._initialized = True

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton so the next access starts from defaults."""
        with cls._lock:
            cls._instance = None

    @property
    def config(self) -> MinterConfig:
        return self._config

    @property
    def loaded_paths(self) -> List[Path]:
        return list(self._config_paths)

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as ex:
            raise ConfigError(f"Cannot parse configuration file {path}: {ex}") from ex

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file {path} must contain a mapping")
        self._apply_dict(data)
        self._config_paths.append(path)
        logger.debug("Loaded configuration file", path=str(path))

    def load_defaults(self, home: Optional[Path] = None) -> None:
        """Load the default configuration files that exist."""
        default_paths = [
            Path("minter.yaml"),
            Path("config/minter.yaml"),
            (home or Path.home()) / ".minter" / "config.yaml",
        ]

        for path in default_paths:
            if path.exists():
                try:
                    self.load_from_file(path)
                except ConfigError as ex:
                    logger.warning("Ignoring unusable configuration file", path=str(path), error=str(ex))

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown configuration key: {prefix}{key}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{prefix}{key}.")
                else:
                    raise ConfigError(f"Expected a mapping for section: {prefix}{key}")

        apply_to_config(self._config, data, "")

    def _lookup(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("retry.max_attempts", 3)
        """
        attr = self._lookup(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("orchestrator.concurrency")
        """
        obj = self._lookup(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def validate(self) -> List[str]:
        """Validate all configuration values, returning error messages."""
        errors: List[str] = []
        for path, value in _walk_values(self._config):
            try:
                current = value.get()
            except ConfigError as ex:
                errors.append(f"{path}: {ex}")
                continue
            if value.validator and not value.validator(current):
                errors.append(f"{path}: validation failed for value {current!r}")
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}
        for path, value in _walk_values(self._config):
            section, _, name = path.partition(".")
            props = schema["properties"].setdefault(section, {})
            entry = {
                "type": type(value.default).__name__,
                "default": value.default,
                "description": value.description,
            }
            if value.env_var:
                entry["env_var"] = value.env_var
            props[name] = entry
        return schema


def get_config() -> MinterConfig:
    """Get the current minter configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()


__all__ = [
    "ConfigValue",
    "OrchestratorConfig",
    "RetryConfig",
    "TransportConfig",
    "ObservabilityConfig",
    "MinterConfig",
    "ConfigManager",
    "get_config",
    "get_config_manager",
]
