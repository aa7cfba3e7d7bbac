"""
Fixed locations and name mappings for configuration sources.
"""

import os
from pathlib import Path
from typing import Dict

PREFERENCES_DOMAIN = "com.github.reportmate"

USER_CONFIG_PATH = Path.home() / "Library" / "Preferences" / f"{PREFERENCES_DOMAIN}.plist"
SYSTEM_CONFIG_PATH = Path("/Library/Preferences") / f"{PREFERENCES_DOMAIN}.plist"
MANAGED_CONFIG_PATH = Path("/Library/Managed Preferences") / f"{PREFERENCES_DOMAIN}.plist"

# Recognized configuration keys, mapped to ConfigurationSnapshot fields.
CONFIG_KEY_FIELDS: Dict[str, str] = {
    "ApiUrl": "api_url",
    "DeviceId": "device_id",
    "ApiKey": "api_key",
    "CollectionInterval": "collection_interval",
    "LogLevel": "log_level",
    "EnabledModules": "enabled_modules",
    "OsqueryPath": "osquery_path",
    "ExtensionEnabled": "extension_enabled",
    "OsqueryExtensionPath": "extension_path",
    "ValidateSSL": "validate_ssl",
    "Timeout": "timeout",
}

# Older deployments call the shared secret a passphrase.
CONFIG_KEY_ALIASES: Dict[str, str] = {
    "Passphrase": "ApiKey",
}

ENVIRONMENT_KEYS: Dict[str, str] = {
    "REPORTMATE_API_URL": "ApiUrl",
    "REPORTMATE_DEVICE_ID": "DeviceId",
    "REPORTMATE_API_KEY": "ApiKey",
    "REPORTMATE_PASSPHRASE": "Passphrase",
    "REPORTMATE_COLLECTION_INTERVAL": "CollectionInterval",
    "REPORTMATE_LOG_LEVEL": "LogLevel",
    "REPORTMATE_ENABLED_MODULES": "EnabledModules",
    "REPORTMATE_OSQUERY_PATH": "OsqueryPath",
}

LOG_LEVELS = ["debug", "info", "warning", "error", "critical"]

# Values written by set_system_configuration in addition to the caller's.
SYSTEM_CONFIG_INTERVAL = 3600
SYSTEM_CONFIG_LOG_LEVEL = "info"

PACKAGE_VERSION = "2025.1.0"
VERSION_ENV_VAR = "REPORTMATE_VERSION"


def client_version() -> str:
    """Version reported in payload metadata; a build may set REPORTMATE_VERSION."""
    return os.environ.get(VERSION_ENV_VAR) or PACKAGE_VERSION
