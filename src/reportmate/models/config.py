"""
Configuration data models.

This module contains the immutable configuration snapshot handed to every
collaborator, and the enumeration of the sources it is merged from.
"""

from dataclasses import asdict, dataclass, field, replace
from enum import IntEnum
from typing import Any, Dict, Tuple

DEFAULT_ENABLED_MODULES: Tuple[str, ...] = (
    "hardware",
    "system",
    "network",
    "security",
    "applications",
    "management",
    "inventory",
)


class ConfigSource(IntEnum):
    """
    Configuration sources, in ascending precedence.

    The integer value is the merge order: a source with a higher value
    overwrites keys supplied by every source below it.
    """

    DEFAULTS = 0
    USER_FILE = 1
    SYSTEM_FILE = 2
    MANAGED_PROFILE = 3
    ENVIRONMENT = 4
    RUNTIME_OVERRIDE = 5


@dataclass(frozen=True)
class ConfigurationSnapshot:
    """
    One fully resolved configuration value.

    Every field always holds a value. String fields use ``""`` for "not
    configured" so collaborators never see a missing attribute. The field
    defaults are the built-in defaults layer.
    """

    # Collection endpoint base URL, e.g. https://reportmate.example.com
    api_url: str = ""
    # Explicit device identifier; empty means derive from the serial number.
    device_id: str = ""
    # Shared secret sent in the authentication headers.
    api_key: str = ""
    # Minimum seconds between two collections.
    collection_interval: int = 3600
    log_level: str = "info"
    enabled_modules: Tuple[str, ...] = field(default=DEFAULT_ENABLED_MODULES)
    osquery_path: str = "/usr/local/bin/osqueryi"
    extension_enabled: bool = True
    # Configured extension path; the query engine resolves fallbacks.
    extension_path: str = ""
    validate_ssl: bool = True
    # Seconds, applied to osquery simple-tier calls and HTTP requests.
    timeout: int = 300

    def with_values(self, **changes: Any) -> "ConfigurationSnapshot":
        """Return a new snapshot with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self, redact_secrets: bool = True) -> Dict[str, Any]:
        """
        Convert the snapshot to a plain dictionary.

        Args:
            redact_secrets: Replace a configured API key with ``"***"``

        Returns:
            Dictionary keyed by field name
        """
        data = asdict(self)
        data["enabled_modules"] = list(self.enabled_modules)
        if redact_secrets and data["api_key"]:
            data["api_key"] = "***"
        return data
