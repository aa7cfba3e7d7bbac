"""
Value validation and coercion.

Configuration values arrive as plist scalars, environment strings or CLI
arguments. These helpers turn them into the types the snapshot expects and
raise ValidationError for anything that cannot be coerced.
"""

import re
from typing import Any, Iterable, List, Optional

from .exceptions import ValidationError

_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")

_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off"}


def validate_positive_integer(
    value: Any,
    min_value: int = 1,
    max_value: Optional[int] = None,
    field_name: str = "value"
) -> int:
    """
    Validate that a value is a positive integer.

    Booleans are rejected even though ``bool`` is an ``int`` subclass, and
    strings are parsed after stripping whitespace.

    Args:
        value: Value to validate
        min_value: Minimum allowed value (inclusive)
        max_value: Maximum allowed value (inclusive), None for no limit
        field_name: Name of the field being validated

    Returns:
        Validated integer value

    Raises:
        ValidationError: If validation fails
    """
    if isinstance(value, bool):
        raise ValidationError(
            f"{field_name} must be a valid integer, got {value}",
            field_name=field_name,
            value=value
        )
    try:
        if isinstance(value, str):
            int_value = int(value.strip())
        elif isinstance(value, float):
            if not value.is_integer():
                raise ValueError(value)
            int_value = int(value)
        else:
            int_value = int(value)
    except (ValueError, TypeError):
        raise ValidationError(
            f"{field_name} must be a valid integer, got {value}",
            field_name=field_name,
            value=value
        )
    if int_value < min_value:
        raise ValidationError(
            f"{field_name} must be >= {min_value}, got {int_value}",
            field_name=field_name,
            value=value
        )
    if max_value is not None and int_value > max_value:
        raise ValidationError(
            f"{field_name} must be <= {max_value}, got {int_value}",
            field_name=field_name,
            value=value
        )
    return int_value


def validate_bool(value: Any, field_name: str = "value") -> bool:
    """
    Validate a boolean, accepting the usual string spellings.

    Args:
        value: ``bool``, ``0``/``1`` or one of true/false/yes/no/on/off
        field_name: Name of the field being validated

    Returns:
        The boolean value

    Raises:
        ValidationError: If the value is not recognizably boolean
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ValidationError(
        f"{field_name} must be a boolean, got {value!r}",
        field_name=field_name,
        value=value
    )


def validate_non_empty_string(value: Any, field_name: str = "value") -> str:
    """Validate a non-empty string and return it stripped."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(
            f"{field_name} must be a non-empty string, got {value!r}",
            field_name=field_name,
            value=value
        )
    return value.strip()


def validate_identifier(value: Any, field_name: str = "identifier") -> str:
    """
    Validate a module or table identifier.

    Identifiers end up in file names and SQL text, so only letters, digits,
    underscore, dot and dash are allowed.
    """
    text = validate_non_empty_string(value, field_name=field_name)
    if not _IDENTIFIER_PATTERN.match(text):
        raise ValidationError(
            f"{field_name} contains invalid characters: {text!r}",
            field_name=field_name,
            value=value
        )
    return text


def validate_module_list(value: Any, field_name: str = "modules") -> List[str]:
    """
    Validate a module list.

    Accepts a comma-separated string or an iterable of strings. Names are
    stripped and lower-cased, empty entries dropped, and duplicates removed
    while keeping first-seen order.

    Args:
        value: Comma-separated string or list of module names
        field_name: Name of the field being validated

    Returns:
        Ordered list of unique module names

    Raises:
        ValidationError: If the value is neither form or contains bad names
    """
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = value
    else:
        raise ValidationError(
            f"{field_name} must be a list or comma-separated string, got {value!r}",
            field_name=field_name,
            value=value
        )

    modules: List[str] = []
    for i, item in enumerate(items):
        if not isinstance(item, str):
            raise ValidationError(
                f"{field_name} item {i} must be a string, got {item!r}",
                field_name=field_name,
                value=value
            )
        name = item.strip().lower()
        if not name:
            continue
        validate_identifier(name, field_name=f"{field_name} item {i}")
        if name not in modules:
            modules.append(name)

    if not modules:
        raise ValidationError(
            f"{field_name} cannot be empty",
            field_name=field_name,
            value=value
        )
    return modules


def validate_enum_choice(
    value: Any,
    choices: List[str],
    field_name: str = "value",
    case_sensitive: bool = True
) -> str:
    """
    Validate that a value is one of the allowed choices.

    Args:
        value: Value to validate
        choices: List of allowed choices
        field_name: Name of the field being validated
        case_sensitive: Whether the comparison should be case-sensitive

    Returns:
        Validated choice, in the spelling used by ``choices``

    Raises:
        ValidationError: If value is not in choices
    """
    str_value = str(value)

    if case_sensitive:
        if str_value not in choices:
            raise ValidationError(
                f"{field_name} must be one of {choices}, got {value}",
                field_name=field_name,
                value=value
            )
        return str_value

    lower_choices = [choice.lower() for choice in choices]
    lower_value = str_value.strip().lower()
    if lower_value not in lower_choices:
        raise ValidationError(
            f"{field_name} must be one of {choices}, got {value}",
            field_name=field_name,
            value=value
        )
    return choices[lower_choices.index(lower_value)]
