"""
Per-key coercion of configuration values.

Each recognized key has an explicit coercer. Values arrive as plist scalars,
environment strings or CLI arguments; the coercer converts them to the
snapshot field type or raises ValidationError.
"""

from typing import Any, Callable, Dict, Tuple

from ..validation import (
    ValidationError,
    validate_bool,
    validate_enum_choice,
    validate_module_list,
    validate_non_empty_string,
    validate_positive_integer,
)
from .defaults import CONFIG_KEY_FIELDS, LOG_LEVELS


def _coerce_string(value: Any, field_name: str) -> str:
    return validate_non_empty_string(value, field_name=field_name)


def _coerce_url(value: Any, field_name: str) -> str:
    url = validate_non_empty_string(value, field_name=field_name)
    if not url.lower().startswith(("http://", "https://")):
        raise ValidationError(
            f"{field_name} must be an http(s) URL, got {url!r}",
            field_name=field_name,
            value=value,
        )
    return url.rstrip("/")


def _coerce_interval(value: Any, field_name: str) -> int:
    return validate_positive_integer(value, min_value=0, max_value=7 * 86400, field_name=field_name)


def _coerce_timeout(value: Any, field_name: str) -> int:
    return validate_positive_integer(value, min_value=1, max_value=86400, field_name=field_name)


def _coerce_log_level(value: Any, field_name: str) -> str:
    return validate_enum_choice(value, LOG_LEVELS, field_name=field_name, case_sensitive=False)


def _coerce_modules(value: Any, field_name: str) -> Tuple[str, ...]:
    return tuple(validate_module_list(value, field_name=field_name))


def _coerce_bool(value: Any, field_name: str) -> bool:
    return validate_bool(value, field_name=field_name)


KEY_COERCERS: Dict[str, Callable[[Any, str], Any]] = {
    "ApiUrl": _coerce_url,
    "DeviceId": _coerce_string,
    "ApiKey": _coerce_string,
    "CollectionInterval": _coerce_interval,
    "LogLevel": _coerce_log_level,
    "EnabledModules": _coerce_modules,
    "OsqueryPath": _coerce_string,
    "ExtensionEnabled": _coerce_bool,
    "OsqueryExtensionPath": _coerce_string,
    "ValidateSSL": _coerce_bool,
    "Timeout": _coerce_timeout,
}


def coerce_config_value(key: str, value: Any) -> Tuple[str, Any]:
    """
    Coerce one configuration value.

    Args:
        key: Canonical configuration key
        value: Raw value from a source

    Returns:
        Tuple of (snapshot field name, coerced value)

    Raises:
        ValidationError: If the value cannot be coerced or the key is unknown
    """
    if key not in KEY_COERCERS:
        raise ValidationError(f"Unknown configuration key: {key}", field_name=key, value=value)
    return CONFIG_KEY_FIELDS[key], KEY_COERCERS[key](value, key)
