"""
Configuration management and loading.

Handles metering settings: cache lifetimes, message caps, default usage
limits, the model catalog and the credit ledger connection.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import yaml

from ai_credit_guard.core.credits import DEFAULT_PROVIDER_KEYS, FREE_MODEL_SUFFIX, WEB_SEARCH_COST
from ai_credit_guard.core.pricing import PER_MILLION, ModelInfo
from ai_credit_guard.storage.models import DEFAULT_USAGE_LIMIT, UsageLimit


class ConfigError(ValueError):
    """Configuration file is missing required data or has invalid values."""


@dataclass(frozen=True)
class CacheConfig:
    """Lifetimes of the process-wide caches, in seconds."""
    usage_ttl_seconds: float = 60.0
    message_ttl_seconds: float = 60.0
    sweep_interval_seconds: float = 300.0

    def __post_init__(self):
        """Validate durations are positive."""
        for name in ("usage_ttl_seconds", "message_ttl_seconds", "sweep_interval_seconds"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be > 0")


@dataclass(frozen=True)
class MessageLimitConfig:
    """Daily message caps for principals without credits."""
    anonymous_daily_limit: int = 10
    authenticated_daily_limit: int = 20
    credited_display_limit: int = 250
    fail_open_limit: int = 10

    def __post_init__(self):
        """Validate caps are positive."""
        for name in (
            "anonymous_daily_limit",
            "authenticated_daily_limit",
            "credited_display_limit",
            "fail_open_limit",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be > 0")


@dataclass(frozen=True)
class LedgerConfig:
    """Polar credit ledger connection."""
    server: str = "sandbox"
    meter_name: str = "Message Credits Used"
    timeout_seconds: float = 10.0
    access_token_env: str = "POLAR_ACCESS_TOKEN"

    def __post_init__(self):
        if self.server not in ("sandbox", "production"):
            raise ConfigError("ledger server must be 'sandbox' or 'production'")
        if self.timeout_seconds <= 0:
            raise ConfigError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class MeteringConfig:
    """Complete metering configuration."""
    cache: CacheConfig = field(default_factory=CacheConfig)
    messages: MessageLimitConfig = field(default_factory=MessageLimitConfig)
    default_limits: UsageLimit = DEFAULT_USAGE_LIMIT
    free_model_suffix: str = FREE_MODEL_SUFFIX
    provider_keys: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_PROVIDER_KEYS))
    web_search_cost: int = WEB_SEARCH_COST
    models: List[ModelInfo] = field(default_factory=list)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)


_TOP_LEVEL_KEYS = {
    "cache",
    "messages",
    "default_limits",
    "free_model_suffix",
    "provider_keys",
    "web_search_cost",
    "models",
    "ledger",
}


def load_metering_config(path: str) -> MeteringConfig:
    """Load and validate metering configuration from a YAML file.

    Every section is optional; anything left out keeps its built-in
    default. Unknown keys are rejected so typos never silently fall back
    to defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MeteringConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ConfigError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Metering config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return MeteringConfig()
    if not isinstance(raw_config, dict):
        raise ConfigError("Configuration root must be a dictionary")

    _reject_unknown(raw_config, _TOP_LEVEL_KEYS, "configuration")

    defaults = MeteringConfig()
    return MeteringConfig(
        cache=_parse_cache(_section(raw_config, "cache")),
        messages=_parse_messages(_section(raw_config, "messages")),
        default_limits=_parse_default_limits(_section(raw_config, "default_limits")),
        free_model_suffix=_parse_suffix(raw_config.get("free_model_suffix", defaults.free_model_suffix)),
        provider_keys=_parse_provider_keys(raw_config.get("provider_keys"), defaults.provider_keys),
        web_search_cost=_positive_int(raw_config.get("web_search_cost", defaults.web_search_cost), "web_search_cost"),
        models=_parse_models(_section(raw_config, "models")),
        ledger=_parse_ledger(_section(raw_config, "ledger")),
    )


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"'{name}' must be a dictionary")
    return data


def _reject_unknown(data: Dict, allowed: Set[str], path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ConfigError(f"Unknown keys in {path}: {unknown_keys}")


def _positive_number(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"'{name}' must be a number > 0")
    return float(value)


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"'{name}' must be an integer > 0")
    return value


def _decimal(value: Any, name: str, allow_zero: bool = False) -> Decimal:
    if isinstance(value, bool):
        raise ConfigError(f"'{name}' must be a number")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ConfigError(f"'{name}' must be a number")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ConfigError(f"'{name}' must be > 0")
    return amount


def _parse_cache(data: Dict) -> CacheConfig:
    _reject_unknown(data, {"usage_ttl_seconds", "message_ttl_seconds", "sweep_interval_seconds"}, "cache")
    return CacheConfig(**{
        key: _positive_number(value, f"cache.{key}") for key, value in data.items()
    })


def _parse_messages(data: Dict) -> MessageLimitConfig:
    _reject_unknown(
        data,
        {"anonymous_daily_limit", "authenticated_daily_limit", "credited_display_limit", "fail_open_limit"},
        "messages",
    )
    return MessageLimitConfig(**{
        key: _positive_int(value, f"messages.{key}") for key, value in data.items()
    })


def _parse_default_limits(data: Dict) -> UsageLimit:
    allowed = {"daily_tokens", "monthly_tokens", "daily_cost", "monthly_cost", "request_rate", "currency"}
    _reject_unknown(data, allowed, "default_limits")

    base = DEFAULT_USAGE_LIMIT
    currency = data.get("currency", base.currency)
    if not isinstance(currency, str) or len(currency) != 3:
        raise ConfigError("'default_limits.currency' must be a 3-letter code")

    return UsageLimit(
        daily_token_limit=_positive_int(data.get("daily_tokens", base.daily_token_limit), "default_limits.daily_tokens"),
        monthly_token_limit=_positive_int(data.get("monthly_tokens", base.monthly_token_limit), "default_limits.monthly_tokens"),
        daily_cost_limit=_decimal(data.get("daily_cost", base.daily_cost_limit), "default_limits.daily_cost"),
        monthly_cost_limit=_decimal(data.get("monthly_cost", base.monthly_cost_limit), "default_limits.monthly_cost"),
        request_rate_limit=_positive_int(data.get("request_rate", base.request_rate_limit), "default_limits.request_rate"),
        currency=currency.upper(),
    )


def _parse_suffix(value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise ConfigError("'free_model_suffix' must be a non-empty string")
    return value


def _parse_provider_keys(data: Any, defaults: Dict[str, str]) -> Dict[str, str]:
    if data is None:
        return dict(defaults)
    if not isinstance(data, dict):
        raise ConfigError("'provider_keys' must be a dictionary")
    provider_keys = {}
    for provider, key_name in data.items():
        if not isinstance(key_name, str) or not key_name.strip():
            raise ConfigError(f"'provider_keys.{provider}' must be a non-empty string")
        provider_keys[str(provider)] = key_name
    return provider_keys


def _parse_models(data: Dict) -> List[ModelInfo]:
    """Parse the model catalog.

    Prices are given per million tokens and stored per token.
    """
    allowed = {"premium", "input_price_per_million", "output_price_per_million", "name", "provider"}
    models = []
    for model_id, entry in data.items():
        path = f"models.{model_id}"
        if entry is None:
            entry = {}
        if not isinstance(entry, dict):
            raise ConfigError(f"'{path}' must be a dictionary")
        _reject_unknown(entry, allowed, path)

        premium = entry.get("premium", False)
        if not isinstance(premium, bool):
            raise ConfigError(f"'{path}.premium' must be true or false")

        input_price: Optional[Decimal] = None
        if entry.get("input_price_per_million") is not None:
            input_price = _decimal(entry["input_price_per_million"], f"{path}.input_price_per_million", allow_zero=True) / PER_MILLION
        output_price: Optional[Decimal] = None
        if entry.get("output_price_per_million") is not None:
            output_price = _decimal(entry["output_price_per_million"], f"{path}.output_price_per_million", allow_zero=True) / PER_MILLION

        models.append(ModelInfo(
            model_id=str(model_id),
            premium=premium,
            input_price=input_price,
            output_price=output_price,
            name=entry.get("name"),
            provider=entry.get("provider"),
        ))
    return models


def _parse_ledger(data: Dict) -> LedgerConfig:
    _reject_unknown(data, {"server", "meter_name", "timeout_seconds", "access_token_env"}, "ledger")
    defaults = LedgerConfig()

    for key in ("server", "meter_name", "access_token_env"):
        if key in data and (not isinstance(data[key], str) or not data[key].strip()):
            raise ConfigError(f"'ledger.{key}' must be a non-empty string")

    timeout = defaults.timeout_seconds
    if "timeout_seconds" in data:
        timeout = _positive_number(data["timeout_seconds"], "ledger.timeout_seconds")

    return LedgerConfig(
        server=data.get("server", defaults.server),
        meter_name=data.get("meter_name", defaults.meter_name),
        timeout_seconds=timeout,
        access_token_env=data.get("access_token_env", defaults.access_token_env),
    )
