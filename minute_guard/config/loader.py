"""
Configuration management and loading.

Handles per-tenant limit policies and environment-driven settings.
"""

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from minute_guard.core.errors import PeriodUnresolvable


class InvalidLimitConfig(ValueError):
    """Raised when a limit policy is malformed. Rejected at config-write time."""


class PolicyMode(Enum):
    """What happens once the included allotment is exhausted."""
    BLOCK = "block"
    CHARGE = "charge"
    NOTIFY_ONLY = "notify_only"


class AlertChannelKind(Enum):
    """Delivery channels an alert can be sent through."""
    IN_APP = "in_app"
    EMAIL = "email"
    WEBHOOK = "webhook"


DEFAULT_INCLUDED_MINUTES = 200
DEFAULT_OVERAGE_PRICE = Decimal("350")  # minor units per minute
DEFAULT_MAX_OVERAGE_CHARGE = 200000
DEFAULT_THRESHOLDS = (70, 85, 95, 100)
DEFAULT_COOLDOWN_MINUTES = 60


@dataclass(frozen=True)
class LimitConfig:
    """Per-tenant usage policy.

    Money is in minor currency units. A ``max_overage_charge`` of 0 means
    the overage charge is uncapped.
    """
    included_minutes: int = DEFAULT_INCLUDED_MINUTES
    overage_price: Decimal = DEFAULT_OVERAGE_PRICE
    policy: PolicyMode = PolicyMode.CHARGE
    max_overage_charge: int = DEFAULT_MAX_OVERAGE_CHARGE
    alert_thresholds: Tuple[int, ...] = DEFAULT_THRESHOLDS
    alert_channels: Tuple[AlertChannelKind, ...] = (AlertChannelKind.IN_APP,)
    cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES
    email_recipients: Tuple[str, ...] = field(default_factory=tuple)
    webhook_url: Optional[str] = None

    def __post_init__(self):
        """Validate limits, thresholds and channels."""
        if self.included_minutes < 0:
            raise InvalidLimitConfig("included_minutes must be >= 0")
        if self.overage_price < 0:
            raise InvalidLimitConfig("overage_price must be >= 0")
        if self.max_overage_charge < 0:
            raise InvalidLimitConfig("max_overage_charge must be >= 0")
        if self.cooldown_minutes < 0:
            raise InvalidLimitConfig("cooldown_minutes must be >= 0")
        if not isinstance(self.policy, PolicyMode):
            raise InvalidLimitConfig(f"policy must be a PolicyMode, got {self.policy!r}")

        previous = 0
        for threshold in self.alert_thresholds:
            if isinstance(threshold, bool) or not isinstance(threshold, int):
                raise InvalidLimitConfig(f"threshold {threshold!r} must be an integer")
            if not 0 < threshold <= 100:
                raise InvalidLimitConfig(f"threshold {threshold} must be in (0, 100]")
            if threshold <= previous:
                raise InvalidLimitConfig("alert_thresholds must be strictly increasing")
            previous = threshold

        if len(set(self.alert_channels)) != len(self.alert_channels):
            raise InvalidLimitConfig("alert_channels must not repeat")
        if AlertChannelKind.WEBHOOK in self.alert_channels and not self.webhook_url:
            raise InvalidLimitConfig("webhook channel requires webhook_url")
        if AlertChannelKind.EMAIL in self.alert_channels and not self.email_recipients:
            raise InvalidLimitConfig("email channel requires email_recipients")

    @property
    def has_charge_cap(self) -> bool:
        return self.max_overage_charge > 0


def update_limit_config(config: LimitConfig, **changes: Any) -> LimitConfig:
    """Apply a tenant admin's changes, returning a new validated config.

    Raw values (strings for enums, lists for tuples) are normalised the same
    way the YAML loader does.

    Raises:
        InvalidLimitConfig: If the resulting config is invalid
    """
    unknown = set(changes) - _ALLOWED_KEYS
    if unknown:
        raise InvalidLimitConfig(f"Unknown limit keys: {unknown}")
    return replace(config, **_normalise(changes, "update"))


_ALLOWED_KEYS = {
    'included_minutes', 'overage_price', 'policy', 'max_overage_charge',
    'alert_thresholds', 'alert_channels', 'cooldown_minutes',
    'email_recipients', 'webhook_url',
}


def _normalise(data: Mapping[str, Any], path: str) -> Dict[str, Any]:
    """Coerce raw YAML values into LimitConfig field types."""
    values: Dict[str, Any] = {}
    for key, raw in data.items():
        if key == 'policy':
            values[key] = _parse_enum(PolicyMode, raw, f"{path}.policy")
        elif key == 'alert_channels':
            if not isinstance(raw, (list, tuple)):
                raise InvalidLimitConfig(f"'{path}.alert_channels' must be a list")
            values[key] = tuple(
                _parse_enum(AlertChannelKind, item, f"{path}.alert_channels") for item in raw
            )
        elif key == 'alert_thresholds':
            if not isinstance(raw, (list, tuple)):
                raise InvalidLimitConfig(f"'{path}.alert_thresholds' must be a list")
            values[key] = tuple(raw)
        elif key == 'email_recipients':
            if not isinstance(raw, (list, tuple)):
                raise InvalidLimitConfig(f"'{path}.email_recipients' must be a list")
            values[key] = tuple(str(item) for item in raw)
        elif key == 'overage_price':
            try:
                values[key] = Decimal(str(raw))
            except InvalidOperation:
                raise InvalidLimitConfig(f"'{path}.overage_price' must be a number")
        elif key in ('included_minutes', 'max_overage_charge', 'cooldown_minutes'):
            if isinstance(raw, bool) or not isinstance(raw, int):
                raise InvalidLimitConfig(f"'{path}.{key}' must be an integer")
            values[key] = raw
        else:
            values[key] = raw
    return values


def _parse_enum(enum_cls, raw: Any, path: str):
    if isinstance(raw, enum_cls):
        return raw
    if not isinstance(raw, str):
        raise InvalidLimitConfig(f"'{path}' must be a string")
    try:
        return enum_cls(raw.lower())
    except ValueError:
        valid = [member.value for member in enum_cls]
        raise InvalidLimitConfig(f"'{path}' must be one of: {valid}")


def load_limit_configs(path: str) -> Dict[str, LimitConfig]:
    """Load and validate per-tenant limit configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could lead
    to over-billing or wrongly suspended tenants.

    The file has an optional ``defaults`` section merged into every entry
    under ``tenants``.

    Args:
        path: Path to YAML configuration file

    Returns:
        Mapping of tenant id to validated LimitConfig

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        InvalidLimitConfig: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Limit config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise InvalidLimitConfig("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise InvalidLimitConfig("Configuration root must be a dictionary")

    unknown_keys = set(raw_config.keys()) - {'defaults', 'tenants'}
    if unknown_keys:
        raise InvalidLimitConfig(f"Unknown configuration keys: {unknown_keys}")

    defaults_data = raw_config.get('defaults') or {}
    if not isinstance(defaults_data, dict):
        raise InvalidLimitConfig("'defaults' must be a dictionary")
    _check_keys(defaults_data, "defaults")

    if 'tenants' not in raw_config:
        raise InvalidLimitConfig("Missing required 'tenants' section")
    tenants_data = raw_config['tenants']
    if not isinstance(tenants_data, dict):
        raise InvalidLimitConfig("'tenants' must be a dictionary")

    configs = {}
    for tenant_id, tenant_data in tenants_data.items():
        tenant_data = tenant_data or {}
        if not isinstance(tenant_data, dict):
            raise InvalidLimitConfig(f"Tenant '{tenant_id}' must be a dictionary")
        _check_keys(tenant_data, f"tenants.{tenant_id}")
        merged = {**defaults_data, **tenant_data}
        configs[str(tenant_id)] = LimitConfig(**_normalise(merged, f"tenants.{tenant_id}"))

    return configs


def _check_keys(data: Dict, path: str) -> None:
    unknown_keys = set(data.keys()) - _ALLOWED_KEYS
    if unknown_keys:
        raise InvalidLimitConfig(f"Unknown keys in {path}: {unknown_keys}")


class StaticConfigProvider:
    """In-memory config provider keyed by tenant id."""

    def __init__(self, configs: Mapping[str, LimitConfig]):
        self._configs = dict(configs)

    def get_limit_config(self, tenant_id: str) -> LimitConfig:
        try:
            return self._configs[tenant_id]
        except KeyError:
            raise PeriodUnresolvable(tenant_id)

    def set_limit_config(self, tenant_id: str, config: LimitConfig) -> None:
        self._configs[tenant_id] = config

    def tenant_ids(self) -> Tuple[str, ...]:
        return tuple(self._configs)


class YamlConfigProvider(StaticConfigProvider):
    """Config provider backed by a limits YAML file, loaded once."""

    def __init__(self, path: str):
        super().__init__(load_limit_configs(path))
        self.path = path


@dataclass(frozen=True)
class Settings:
    """Process-level settings sourced from the environment."""
    db_path: str = "minute_guard.db"
    config_path: Optional[str] = None
    max_attempts: int = 3
    backoff_seconds: float = 0.05
    channel_timeout: float = 5.0
    log_level: str = "WARNING"

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must be >= 0")
        if self.channel_timeout <= 0:
            raise ValueError("channel_timeout must be > 0")


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from ``MINUTE_GUARD_*`` environment variables."""
    env = os.environ if environ is None else environ
    return Settings(
        db_path=env.get("MINUTE_GUARD_DB", "minute_guard.db"),
        config_path=env.get("MINUTE_GUARD_CONFIG") or None,
        max_attempts=int(env.get("MINUTE_GUARD_MAX_ATTEMPTS", "3")),
        backoff_seconds=float(env.get("MINUTE_GUARD_BACKOFF_SECONDS", "0.05")),
        channel_timeout=float(env.get("MINUTE_GUARD_CHANNEL_TIMEOUT", "5.0")),
        log_level=env.get("MINUTE_GUARD_LOG_LEVEL", "WARNING").upper(),
    )
