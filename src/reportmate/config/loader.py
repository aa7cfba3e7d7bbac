"""
Configuration source loading utilities.

This module handles the low-level reading of the individual configuration
layers: property-list files and the process environment. Each loader returns
a partial mapping keyed by canonical configuration key names; coercion and
merging happen in the manager.
"""

import logging
import plistlib
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
from xml.parsers.expat import ExpatError

from ..validation import ConfigurationError
from .defaults import CONFIG_KEY_ALIASES, CONFIG_KEY_FIELDS, ENVIRONMENT_KEYS

logger = logging.getLogger(__name__)


def canonical_key(name: str) -> Optional[str]:
    """
    Map a key name to its canonical configuration key.

    Accepts canonical names, aliases and snapshot field names, compared
    case-insensitively ("apiUrl", "ApiUrl" and "api_url" all map to "ApiUrl").

    Args:
        name: Key name from any source

    Returns:
        The canonical key, or None if the key is not recognized
    """
    if name in CONFIG_KEY_FIELDS:
        return name
    folded = name.replace("_", "").lower()
    for key, field_name in CONFIG_KEY_FIELDS.items():
        if folded == key.lower() or folded == field_name.replace("_", ""):
            return key
    for alias, target in CONFIG_KEY_ALIASES.items():
        if folded == alias.lower():
            return alias
    return None


def normalize_source(values: Mapping[str, Any], source_name: str) -> Dict[str, Any]:
    """
    Keep recognized keys and fold aliases into their target key.

    An alias only fills its target when the source does not also define the
    target itself.

    Args:
        values: Raw key/value mapping from one source
        source_name: Description used in log messages

    Returns:
        Mapping keyed by canonical configuration key
    """
    normalized: Dict[str, Any] = {}
    aliased: Dict[str, Any] = {}
    for name, value in values.items():
        key = canonical_key(str(name))
        if key is None:
            logger.debug(f"Ignoring unrecognized key '{name}' in {source_name}")
            continue
        if key in CONFIG_KEY_ALIASES:
            aliased[CONFIG_KEY_ALIASES[key]] = value
        else:
            normalized[key] = value
    for key, value in aliased.items():
        normalized.setdefault(key, value)
    return normalized


def load_plist_file(file_path: Path, description: str = "configuration file") -> Dict[str, Any]:
    """
    Load a property-list configuration file.

    A missing file is an empty source, not an error.

    Args:
        file_path: Path to the plist file
        description: Human-readable description for log messages

    Returns:
        Mapping keyed by canonical configuration key

    Raises:
        ConfigurationError: If the file exists but cannot be read or parsed
    """
    if not file_path.exists():
        logger.debug(f"{description} not found: {file_path}")
        return {}

    logger.debug(f"Loading {description} from: {file_path}")
    try:
        with open(file_path, "rb") as f:
            data = plistlib.load(f)
    except (plistlib.InvalidFileException, ExpatError, ValueError, OSError) as e:
        raise ConfigurationError(f"Cannot read {description} {file_path}: {e}", source=str(file_path)) from e

    if not isinstance(data, dict):
        raise ConfigurationError(
            f"{description} {file_path} must contain a dictionary, got {type(data).__name__}",
            source=str(file_path),
        )
    return normalize_source(data, description)


def load_environment(environ: Mapping[str, str]) -> Dict[str, Any]:
    """
    Collect configuration values from REPORTMATE_* environment variables.

    Empty variables are treated as unset.

    Args:
        environ: Environment mapping, usually ``os.environ``

    Returns:
        Mapping keyed by canonical configuration key, values still strings
    """
    values: Dict[str, Any] = {}
    for env_name, key in ENVIRONMENT_KEYS.items():
        value = environ.get(env_name)
        if value is None or not value.strip():
            continue
        values[key] = value
    return normalize_source(values, "environment")


def write_plist_file(file_path: Path, values: Mapping[str, Any]) -> None:
    """
    Write a property-list file atomically, creating parent directories.

    Args:
        file_path: Destination path
        values: Dictionary to serialize

    Raises:
        ConfigurationError: If the file cannot be written
    """
    tmp_path = file_path.with_name(f".{file_path.name}.tmp")
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "wb") as f:
            plistlib.dump(dict(values), f)
        tmp_path.replace(file_path)
    except (OSError, TypeError) as e:
        try:
            tmp_path.unlink()
        except OSError:
            pass
        raise ConfigurationError(f"Cannot write configuration file {file_path}: {e}", source=str(file_path)) from e
    logger.info(f"Wrote configuration to: {file_path}")
