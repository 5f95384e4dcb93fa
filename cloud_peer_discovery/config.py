"""Frozen dataclasses for configuration and YAML loader with env-var interpolation."""

from __future__ import annotations

import enum
import os
import re
import types
import typing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .discovery.models import InstanceState
from .exceptions import ConfigError

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")

TAG_WILDCARD = "*"
WIRE_FORMATS = ("sdk", "query")


def _interpolate_env(value: str) -> str:
    """Replace ${ENV_VAR} placeholders with environment variable values."""

    def _replace(match: re.Match) -> str:
        env_key = match.group(1)
        env_val = os.environ.get(env_key)
        if env_val is None:
            raise ConfigError(f"Environment variable '{env_key}' is not set")
        return env_val

    return _ENV_PATTERN.sub(_replace, value)


def _walk_and_interpolate(obj: Any) -> Any:
    """Recursively interpolate env vars in strings throughout a nested structure."""
    if isinstance(obj, str):
        return _interpolate_env(obj)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(v) for v in obj]
    return obj


def _coerce_enum(enum_cls: type[enum.Enum], value: Any, option: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        choices = ", ".join(m.value for m in enum_cls)
        raise ConfigError(f"{option} must be one of: {choices} (got {value!r})") from None


class AddressPreference(str, enum.Enum):
    PREFER_PRIVATE = "prefer_private"
    PREFER_PUBLIC = "prefer_public"
    PRIVATE_ONLY = "private_only"
    PUBLIC_ONLY = "public_only"


class AddressType(str, enum.Enum):
    IP = "ip"
    DNS = "dns"


@dataclass(frozen=True)
class EC2Config:
    region: str = ""
    endpoint: str = ""  # empty = regional default
    wire_format: str = "sdk"  # "sdk" (boto3) or "query" (form-encoded POST, XML response)
    api_version: str = "2016-11-15"
    access_key: str = ""
    secret_key: str = ""
    session_token: str = ""
    credential_profile: str = ""  # empty = default boto3 credential chain
    timeout_seconds: float = 10.0
    verify_ssl: bool = True
    page_size: int | None = None

    @property
    def query_endpoint(self) -> str:
        """URL the query API is POSTed to."""
        if self.endpoint:
            return self.endpoint
        return f"https://ec2.{self.region}.amazonaws.com/"


@dataclass(frozen=True)
class DiscoveryFilterConfig:
    required_state: InstanceState = InstanceState.RUNNING
    tag_filters: dict[str, str | list[str]] = field(default_factory=dict)  # "*" accepts any value
    availability_zones: frozenset[str] = field(default_factory=frozenset)  # empty = any
    security_groups: frozenset[str] = field(default_factory=frozenset)  # empty = any; ids or names
    any_group: bool = True  # False = instance must belong to every configured group

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "required_state", _coerce_enum(InstanceState, self.required_state, "filters.required_state")
        )
        object.__setattr__(self, "availability_zones", frozenset(self.availability_zones or ()))
        object.__setattr__(self, "security_groups", frozenset(self.security_groups or ()))
        object.__setattr__(self, "tag_filters", dict(self.tag_filters or {}))


@dataclass(frozen=True)
class EndpointSelectionPolicy:
    preference: AddressPreference = AddressPreference.PREFER_PRIVATE
    port: int = 9300
    address_type: AddressType = AddressType.IP

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "preference", _coerce_enum(AddressPreference, self.preference, "endpoint.preference")
        )
        object.__setattr__(
            self, "address_type", _coerce_enum(AddressType, self.address_type, "endpoint.address_type")
        )


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    backoff_base_seconds: float = 0.5
    max_backoff_seconds: float = 10.0


@dataclass(frozen=True)
class RefreshConfig:
    interval_seconds: float = 30
    jitter_seconds: float = 5
    cycle_deadline_seconds: float = 60
    cache_seconds: float = 0  # 0 = every refresh() fetches
    backoff_base_seconds: float = 5
    max_backoff_seconds: float = 300


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "json"  # "json" or "text"


@dataclass(frozen=True)
class AppConfig:
    ec2: EC2Config = field(default_factory=EC2Config)
    filters: DiscoveryFilterConfig = field(default_factory=DiscoveryFilterConfig)
    endpoint: EndpointSelectionPolicy = field(default_factory=EndpointSelectionPolicy)
    retry: RetryConfig = field(default_factory=RetryConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _get_dataclass_type(ft: Any) -> type | None:
    """Return the underlying dataclass type from a type annotation (handles Optional/X|None)."""
    if isinstance(ft, type) and hasattr(ft, "__dataclass_fields__"):
        return ft
    if isinstance(ft, types.UnionType):
        args = [a for a in ft.__args__ if a is not type(None)]
        if len(args) == 1 and isinstance(args[0], type) and hasattr(args[0], "__dataclass_fields__"):
            return args[0]
    origin = getattr(ft, "__origin__", None)
    if origin is typing.Union:
        args = [a for a in ft.__args__ if a is not type(None)]
        if len(args) == 1 and isinstance(args[0], type) and hasattr(args[0], "__dataclass_fields__"):
            return args[0]
    return None


def _build_nested(cls: type, data: dict[str, Any]) -> Any:
    """Construct a frozen dataclass, recursively building nested dataclass fields."""
    if not isinstance(data, dict):
        return data
    field_types = {f.name: f.type for f in cls.__dataclass_fields__.values()}
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key not in field_types:
            continue
        ft = field_types[key]
        # Resolve string annotations to actual types in the module scope
        if isinstance(ft, str):
            ft = eval(ft, globals(), {cls.__name__: cls})  # noqa: S307
        dc_type = _get_dataclass_type(ft)
        if dc_type is not None and isinstance(value, dict):
            kwargs[key] = _build_nested(dc_type, value)
        elif dc_type is not None and value is None:
            continue
        else:
            kwargs[key] = value
    try:
        return cls(**kwargs)
    except TypeError as exc:
        raise ConfigError(f"Invalid '{cls.__name__}' section: {exc}") from exc


def load_config(path: str | Path) -> AppConfig:
    """Load and validate configuration from a YAML file."""
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Configuration file not found: {path}")

    with open(path) as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Configuration file is not valid YAML: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError("Configuration file must be a YAML mapping")

    raw = _walk_and_interpolate(raw)
    config = _build_nested(AppConfig, raw)
    validate(config)
    return config


def validate(config: AppConfig) -> None:
    """Validate configuration values."""
    if not config.ec2.region and not config.ec2.endpoint:
        raise ConfigError("ec2.region or ec2.endpoint must be set")

    if config.ec2.wire_format not in WIRE_FORMATS:
        raise ConfigError(f"ec2.wire_format must be one of: {', '.join(WIRE_FORMATS)}")

    if bool(config.ec2.access_key) != bool(config.ec2.secret_key):
        raise ConfigError("ec2.access_key and ec2.secret_key must be set together")

    if config.ec2.page_size is not None and not 5 <= config.ec2.page_size <= 1000:
        raise ConfigError("ec2.page_size must be between 5 and 1000")

    if not isinstance(config.endpoint.port, int) or not 1 <= config.endpoint.port <= 65535:
        raise ConfigError("endpoint.port must be an integer between 1 and 65535")

    for key, value in config.filters.tag_filters.items():
        if not isinstance(value, (str, list)) or (isinstance(value, list) and not value):
            raise ConfigError(f"filters.tag_filters.{key} must be a string or a non-empty list of strings")

    if config.retry.max_attempts < 1:
        raise ConfigError("retry.max_attempts must be >= 1")

    if config.refresh.interval_seconds <= 0:
        raise ConfigError("refresh.interval_seconds must be > 0")

    if config.refresh.cycle_deadline_seconds <= 0:
        raise ConfigError("refresh.cycle_deadline_seconds must be > 0")

    if config.logging.format not in ("json", "text"):
        raise ConfigError("logging.format must be 'json' or 'text'")
