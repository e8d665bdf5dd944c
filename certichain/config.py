"""
CERTICHAIN Configuration System

Unified configuration management with YAML files, environment variables,
validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (CERTICHAIN_*)
    2. Runtime overrides
    3. User config file (~/.certichain/config.yaml)
    4. Project config file (./certichain.yaml)
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

from certichain.errors import ConfigError

T = TypeVar("T")


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass


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
    secret: bool = False  # Don't log if True
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[T, T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])

        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == float:
            return float(value)  # type: ignore
        elif target_type == dict:
            # KEY=VALUE pairs separated by commas
            pairs = [p.split("=", 1) for p in value.split(",") if "=" in p]
            return {k.strip(): v.strip() for k, v in pairs}  # type: ignore
        else:
            return value  # type: ignore

    def on_change(self, callback: Callable[[T, T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


DEFAULT_CREDENTIAL_TYPES = {
    "BUYER": "CERTICHAIN_BUYER",
    "SELLER": "CERTICHAIN_SELLER",
    "LABO": "CERTICHAIN_LABO",
    "TRANSPORTER": "CERTICHAIN_TRANSPORTER",
}


@dataclass
class LedgerConfig:
    """Ledger endpoint and result conventions."""
    endpoint: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="wss://s.altnet.rippletest.net:51233",
        env_var="CERTICHAIN_LEDGER_ENDPOINT",
        description="Ledger websocket endpoint used by the submitter",
        validator=lambda x: x.startswith(("ws://", "wss://", "http://", "https://")),
    ))
    network_id: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1,
        env_var="CERTICHAIN_LEDGER_NETWORK_ID",
        description="Ledger network id",
        validator=lambda x: x >= 0,
    ))
    success_code: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="tesSUCCESS",
        env_var="CERTICHAIN_LEDGER_SUCCESS_CODE",
        description="Native result code that denotes an applied transaction",
        validator=lambda x: bool(x),
    ))


@dataclass
class CredentialConfig:
    """Configuration for the credential gate and issuer."""
    issuer_address: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="CERTICHAIN_CREDENTIAL_ISSUER",
        description="Trusted credential issuer account",
    ))
    credential_types: ConfigValue[Dict[str, str]] = field(default_factory=lambda: ConfigValue(
        default=dict(DEFAULT_CREDENTIAL_TYPES),
        env_var="CERTICHAIN_CREDENTIAL_TYPES",
        description="Role to on-ledger credential type mapping",
        validator=lambda x: isinstance(x, dict) and all(isinstance(v, str) and v for v in x.values()),
    ))
    laboratory_role: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="LABO",
        env_var="CERTICHAIN_CREDENTIAL_LAB_ROLE",
        description="Role whose credential gates validation decisions",
    ))
    enforce: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="CERTICHAIN_CREDENTIAL_ENFORCE",
        description="Enforce credential checks (disable only in audited test setups)",
    ))
    default_expiration_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=31536000,  # one year
        env_var="CERTICHAIN_CREDENTIAL_EXPIRATION",
        description="Default credential validity in seconds",
        validator=lambda x: x > 0,
    ))


@dataclass
class SubmissionConfig:
    """Retry behaviour for ledger sequence conflicts."""
    max_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=4,
        env_var="CERTICHAIN_SUBMIT_MAX_ATTEMPTS",
        description="Maximum submission attempts on sequence conflict",
        validator=lambda x: x >= 1,
    ))
    base_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=0.5,
        env_var="CERTICHAIN_SUBMIT_BASE_DELAY",
        description="Base backoff delay in seconds",
        validator=lambda x: x >= 0,
    ))
    max_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=8.0,
        env_var="CERTICHAIN_SUBMIT_MAX_DELAY",
        description="Upper bound for a single backoff delay",
        validator=lambda x: x >= 0,
    ))


@dataclass
class LifecycleConfig:
    """Policy switches for the token lifecycle."""
    require_validation_before_transfer: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var="CERTICHAIN_REQUIRE_VALIDATION",
        description="Only allow transfers once a laboratory validated the lot",
    ))
    submit_decision_marker: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var="CERTICHAIN_DECISION_MARKER",
        description="Submit a memo marker transaction for laboratory decisions",
    ))
    default_quorum: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1,
        env_var="CERTICHAIN_DEFAULT_QUORUM",
        description="Signer quorum used for the single co-signer policy",
        validator=lambda x: x >= 1,
    ))
    laboratory_weight: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1,
        env_var="CERTICHAIN_LAB_WEIGHT",
        description="Signer weight granted to the laboratory",
        validator=lambda x: 1 <= x <= 65535,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="CERTICHAIN_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="CERTICHAIN_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class CertichainConfig:
    """
    Root configuration for CERTICHAIN.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    credentials: CredentialConfig = field(default_factory=CredentialConfig)
    submission: SubmissionConfig = field(default_factory=SubmissionConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.dump(self.to_dict(), default_flow_style=False)


def apply_dict(config: CertichainConfig, data: Dict[str, Any]) -> None:
    """Apply nested dictionary values onto a configuration tree."""
    def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
        for key, value in values.items():
            path = f"{prefix}{key}"
            if not hasattr(config_obj, key):
                raise ConfigError(f"Unknown config key: {path}")
            attr = getattr(config_obj, key)
            if isinstance(attr, ConfigValue):
                attr.set(value)
            elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                apply_to_config(attr, value, f"{path}.")
            else:
                raise ConfigError(f"Invalid config value at {path}")

    apply_to_config(config, data, "")


def load_config(path: Union[str, Path]) -> CertichainConfig:
    """Build a fresh configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    config = CertichainConfig()
    if data:
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration root must be a mapping: {path}")
        apply_dict(config, data)
    return config


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

        self._config = CertichainConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[CertichainConfig], None]] = []
        self._initialized = True

    @property
    def config(self) -> CertichainConfig:
        """Get the current configuration."""
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if data:
            apply_dict(self._config, data)
            if path not in self._config_paths:
                self._config_paths.append(path)

    def load_defaults(self) -> List[Path]:
        """Load default configuration files that exist; returns the loaded paths."""
        default_paths = [
            Path.home() / ".certichain" / "config.yaml",
            Path("config/certichain.yaml"),
            Path("certichain.yaml"),
        ]

        loaded: List[Path] = []
        for path in default_paths:
            if path.exists():
                self.load_from_file(path)
                loaded.append(path)
        return loaded

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("lifecycle.default_quorum", 2)
        """
        parts = path.split(".")
        obj = self._config

        for part in parts[:-1]:
            obj = getattr(obj, part)

        attr = getattr(obj, parts[-1], None)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("credentials.enforce")
        """
        obj: Any = self._config

        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)

        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def watch(self, callback: Callable[[CertichainConfig], None]) -> None:
        """Register a callback for configuration changes."""
        self._watchers.append(callback)

    def reload(self) -> None:
        """Reload configuration from all loaded files."""
        for path in list(self._config_paths):
            if path.exists():
                self.load_from_file(path)

        for watcher in self._watchers:
            watcher(self._config)

    def reset(self) -> None:
        """Drop loaded files and runtime overrides."""
        self._config = CertichainConfig()
        self._config_paths = []

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        return validate_config(self._config)


def validate_config(config: CertichainConfig) -> List[str]:
    """Run every value validator; returns a list of error strings."""
    errors: List[str] = []

    def visit(obj: Any, path: str = "") -> None:
        if isinstance(obj, ConfigValue):
            try:
                value = obj.get()
                if obj.validator and not obj.validator(value):
                    errors.append(f"{path}: validation failed for value {value}")
            except (TypeError, ValueError) as e:
                errors.append(f"{path}: {e}")
        elif hasattr(obj, "__dataclass_fields__"):
            for field_name in obj.__dataclass_fields__:
                field_path = f"{path}.{field_name}" if path else field_name
                visit(getattr(obj, field_name), field_path)

    visit(config)
    return errors


def get_config() -> CertichainConfig:
    """Get the current CERTICHAIN configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
