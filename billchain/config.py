"""
billchain Configuration

Configuration management with YAML files and environment variables.

Configuration Sources (in order of precedence):
    1. Environment variables (BILLCHAIN_*)
    2. Runtime overrides / loaded YAML files
    3. Project config file (./billchain.yaml) via `load_defaults`, which the
       CLI uses when no --config is given
    4. Default values

Example billchain.yaml:

    deadlines:
      accept_seconds: 172800
      payment_seconds: 172800
    reconciler:
      tie_break_order: [length, earliest_timestamp, lowest_hash]
    sync:
      inbound_queue_size: 1024
    storage:
      data_dir: /var/lib/billchain
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from billchain.state import DAY_SECONDS, Deadlines

T = TypeVar("T")

FORK_CHOICE_CRITERIA = ("length", "earliest_timestamp", "lowest_hash")


class ConfigError(Exception):
    """Configuration error."""


class ValidationError(ConfigError):
    """Configuration validation error."""


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding and validation.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self.validator(value):
            raise ValidationError(f"Invalid value for config: {value}")
        self._value = value

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == float:
            return float(value)  # type: ignore
        elif target_type == list:
            return [v.strip() for v in value.split(",") if v.strip()]  # type: ignore
        else:
            return value  # type: ignore


def _valid_tie_break(order: Any) -> bool:
    return (
        isinstance(order, list)
        and len(order) > 0
        and order[0] == "length"
        and len(set(order)) == len(order)
        and all(c in FORK_CHOICE_CRITERIA for c in order)
    )


@dataclass
class DeadlineConfig:
    """How long requests stay answerable."""
    accept_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=2 * DAY_SECONDS,
        env_var="BILLCHAIN_ACCEPT_DEADLINE_SECONDS",
        description="Deadline for answering a request to accept",
        validator=lambda x: isinstance(x, int) and x > 0,
    ))
    payment_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=2 * DAY_SECONDS,
        env_var="BILLCHAIN_PAYMENT_DEADLINE_SECONDS",
        description="Deadline for paying a request to pay or an offer to sell",
        validator=lambda x: isinstance(x, int) and x > 0,
    ))
    recourse_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=2 * DAY_SECONDS,
        env_var="BILLCHAIN_RECOURSE_DEADLINE_SECONDS",
        description="Deadline for paying a recourse request",
        validator=lambda x: isinstance(x, int) and x > 0,
    ))


@dataclass
class ReconcilerConfig:
    tie_break_order: ConfigValue[list] = field(default_factory=lambda: ConfigValue(
        default=list(FORK_CHOICE_CRITERIA),
        env_var="BILLCHAIN_TIE_BREAK_ORDER",
        description="Fork-choice criteria in priority order",
        validator=_valid_tie_break,
    ))


@dataclass
class SyncConfig:
    inbound_queue_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1024,
        env_var="BILLCHAIN_INBOUND_QUEUE_SIZE",
        description="Maximum queued inbound payloads before refusing new ones",
        validator=lambda x: isinstance(x, int) and x > 0,
    ))
    storage_retry_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="BILLCHAIN_STORAGE_RETRY_ATTEMPTS",
        description="Attempts per storage write",
        validator=lambda x: isinstance(x, int) and x >= 1,
    ))
    storage_retry_base_delay: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=0.05,
        env_var="BILLCHAIN_STORAGE_RETRY_BASE_DELAY",
        description="Base backoff delay in seconds",
        validator=lambda x: x >= 0,
    ))
    storage_retry_max_delay: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=2.0,
        env_var="BILLCHAIN_STORAGE_RETRY_MAX_DELAY",
        description="Backoff ceiling in seconds",
        validator=lambda x: x >= 0,
    ))


@dataclass
class StorageConfig:
    data_dir: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="./billchain-data",
        env_var="BILLCHAIN_DATA_DIR",
        description="Directory for FileChainStore",
        validator=lambda x: isinstance(x, str) and bool(x.strip()),
    ))


@dataclass
class ObservabilityConfig:
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="BILLCHAIN_LOG_LEVEL",
        description="Log level (debug, info, warning, error, critical)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="BILLCHAIN_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class BillChainConfig:
    """Root configuration."""
    deadlines: DeadlineConfig = field(default_factory=DeadlineConfig)
    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
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
        return yaml.safe_dump(self.to_dict(), default_flow_style=False)

    def build_deadlines(self) -> Deadlines:
        return Deadlines(
            accept=self.deadlines.accept_seconds.get(),
            payment=self.deadlines.payment_seconds.get(),
            recourse=self.deadlines.recourse_seconds.get(),
        )


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

        self._config = BillChainConfig()
        self._initialized = True

    @property
    def config(self) -> BillChainConfig:
        return self._config

    def reset(self) -> None:
        """Drop loaded files and overrides; back to defaults."""
        self._config = BillChainConfig()

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as ex:
                raise ConfigError(f"Invalid YAML in {path}: {ex}") from ex

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration root must be a mapping: {path}")
        self._apply_dict(data)

    def load_defaults(self) -> None:
        """Load ./billchain.yaml or ./config/billchain.yaml if present."""
        for path in (Path("billchain.yaml"), Path("config/billchain.yaml")):
            if path.exists():
                self.load_from_file(path)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown config key: {prefix}{key}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{prefix}{key}.")
                else:
                    raise ConfigError(f"Config section {prefix}{key} must be a mapping")

        apply_to_config(self._config, data, "")

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("sync.inbound_queue_size", 64)
        """
        attr = self._resolve(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value}")
                except ValueError as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors


def get_config() -> BillChainConfig:
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    return ConfigManager()
