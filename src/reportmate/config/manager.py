"""
Layered configuration resolution.

This module provides the ConfigurationManager, which merges the six
configuration sources into one immutable ConfigurationSnapshot and keeps the
current snapshot for the rest of the agent.

Precedence, lowest to highest:
    defaults < user plist < system plist < managed profile < environment < runtime overrides

Merging is key by key: a source only replaces the keys it defines.
"""

import logging
import os
import threading
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, NamedTuple, Optional, Sequence

from ..models.config import DEFAULT_ENABLED_MODULES, ConfigSource, ConfigurationSnapshot
from ..validation import (
    ConfigurationError,
    ErrorSeverity,
    ValidationError,
    handle_config_error,
    validate_non_empty_string,
)
from .defaults import (
    CONFIG_KEY_ALIASES,
    CONFIG_KEY_FIELDS,
    MANAGED_CONFIG_PATH,
    SYSTEM_CONFIG_INTERVAL,
    SYSTEM_CONFIG_LOG_LEVEL,
    SYSTEM_CONFIG_PATH,
    USER_CONFIG_PATH,
)
from .loader import canonical_key, load_environment, load_plist_file, normalize_source, write_plist_file
from .validators import coerce_config_value

logger = logging.getLogger(__name__)

_FIELD_TO_KEY = {field_name: key for key, field_name in CONFIG_KEY_FIELDS.items()}


class _Resolution(NamedTuple):
    snapshot: ConfigurationSnapshot
    provenance: Dict[str, ConfigSource]


@dataclass(frozen=True)
class SourcePaths:
    """File locations of the three plist layers."""

    user_file: Path = USER_CONFIG_PATH
    system_file: Path = SYSTEM_CONFIG_PATH
    managed_file: Path = MANAGED_CONFIG_PATH


class ConfigurationManager:
    """
    Resolves and holds the current configuration snapshot.

    The held snapshot is replaced by a single attribute assignment, so a
    reader always sees either the old or the new snapshot in full.
    """

    def __init__(
        self,
        paths: Optional[SourcePaths] = None,
        environ: Optional[Mapping[str, str]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ):
        """
        Initialize the manager and resolve the first snapshot.

        Args:
            paths: Plist file locations, defaults to the standard macOS paths
            environ: Environment mapping, defaults to ``os.environ`` read at resolve time
            overrides: Initial runtime overrides
        """
        self.paths = paths or SourcePaths()
        self._environ = environ
        self._overrides: Dict[str, Any] = {}
        self._lock = threading.Lock()
        for key, value in (overrides or {}).items():
            self._overrides[self._require_key(key)] = value
        self._resolved = self._resolve(self._overrides)

    @property
    def snapshot(self) -> ConfigurationSnapshot:
        """The current configuration snapshot."""
        return self._resolved.snapshot

    @property
    def overrides(self) -> Dict[str, Any]:
        return dict(self._overrides)

    def load_sources(self, overrides: Optional[Mapping[str, Any]] = None) -> Dict[ConfigSource, Dict[str, Any]]:
        """
        Read every configuration layer.

        Unreadable files are logged and contribute nothing.

        Args:
            overrides: Runtime override layer to include

        Returns:
            Raw (uncoerced) values per source, keyed by canonical key
        """
        environ = self._environ if self._environ is not None else os.environ
        layers: Dict[ConfigSource, Dict[str, Any]] = {
            ConfigSource.DEFAULTS: {},
            ConfigSource.USER_FILE: self._load_file(self.paths.user_file, "user configuration"),
            ConfigSource.SYSTEM_FILE: self._load_file(self.paths.system_file, "system configuration"),
            ConfigSource.MANAGED_PROFILE: self._load_file(self.paths.managed_file, "managed profile"),
            ConfigSource.ENVIRONMENT: load_environment(environ),
            ConfigSource.RUNTIME_OVERRIDE: normalize_source(overrides or {}, "runtime overrides"),
        }
        return layers

    def source_values(self) -> Dict[str, Dict[str, Any]]:
        """Raw values per non-empty source, secrets redacted, for diagnostics."""
        described: Dict[str, Dict[str, Any]] = {}
        for source, values in self.load_sources(self._overrides).items():
            if values:
                described[source.name.lower()] = {
                    key: ("***" if key in ("ApiKey", "Passphrase") else value) for key, value in values.items()
                }
        return described

    def resolve(self, overrides: Optional[Mapping[str, Any]] = None) -> ConfigurationSnapshot:
        """
        Build a fresh snapshot from all sources.

        Does not replace the held snapshot.

        Args:
            overrides: Runtime overrides to apply; defaults to the held override layer

        Returns:
            Fully populated ConfigurationSnapshot
        """
        return self._resolve(self._overrides if overrides is None else overrides).snapshot

    def set_override(self, key: str, value: Any) -> ConfigurationSnapshot:
        """
        Set or clear a runtime override and re-resolve.

        Args:
            key: Configuration key, alias or snapshot field name
            value: New value; None removes the override

        Returns:
            The new snapshot

        Raises:
            ValidationError: If the key is not a recognized configuration key
        """
        canonical = self._require_key(key)
        with self._lock:
            overrides = dict(self._overrides)
            if value is None:
                overrides.pop(canonical, None)
            else:
                overrides[canonical] = value
            resolved = self._resolve(overrides)
            self._overrides = overrides
            self._resolved = resolved
        logger.debug(f"Applied runtime override for {canonical}")
        return resolved.snapshot

    def clear_overrides(self) -> ConfigurationSnapshot:
        """Drop every runtime override and re-resolve."""
        with self._lock:
            self._overrides = {}
            self._resolved = self._resolve({})
        return self._resolved.snapshot

    def configuration_source(self, key: str = "ApiUrl") -> ConfigSource:
        """
        Report which source supplied the current value of a key.

        Args:
            key: Configuration key, alias or snapshot field name

        Returns:
            The winning ConfigSource (DEFAULTS when no source set the key)
        """
        canonical = self._require_key(key)
        canonical = CONFIG_KEY_ALIASES.get(canonical, canonical)
        return self._resolved.provenance.get(CONFIG_KEY_FIELDS[canonical], ConfigSource.DEFAULTS)

    def set_system_configuration(
        self,
        api_url: str,
        api_key: Optional[str] = None,
        device_id: Optional[str] = None,
        enabled_modules: Sequence[str] = DEFAULT_ENABLED_MODULES,
    ) -> Path:
        """
        Write the machine-wide configuration file.

        This is a write-only operation: it does not change the held snapshot.

        Args:
            api_url: Collection endpoint base URL
            api_key: Optional shared secret
            device_id: Optional explicit device identifier
            enabled_modules: Module list to enable

        Returns:
            Path of the written file

        Raises:
            ValidationError: If api_url is empty
            ConfigurationError: If the file cannot be written
        """
        values: Dict[str, Any] = {
            "ApiUrl": validate_non_empty_string(api_url, field_name="ApiUrl"),
            "CollectionInterval": SYSTEM_CONFIG_INTERVAL,
            "LogLevel": SYSTEM_CONFIG_LOG_LEVEL,
            "EnabledModules": list(enabled_modules),
        }
        if api_key:
            values["ApiKey"] = api_key
        if device_id:
            values["DeviceId"] = device_id
        write_plist_file(self.paths.system_file, values)
        return self.paths.system_file

    def _require_key(self, key: str) -> str:
        canonical = canonical_key(key)
        if canonical is None:
            raise ValidationError(f"Unknown configuration key: {key}", field_name=key)
        return canonical

    def _load_file(self, path: Path, description: str) -> Dict[str, Any]:
        try:
            return load_plist_file(path, description)
        except ConfigurationError as e:
            handle_config_error(
                error=e,
                context=f"loading {description}",
                severity=ErrorSeverity.WARNING,
                reraise=False,
                logger=logger,
            )
            return {}

    def _resolve(self, overrides: Mapping[str, Any]) -> _Resolution:
        layers = self.load_sources(overrides)
        values: Dict[str, Any] = {}
        provenance: Dict[str, ConfigSource] = {}

        for source in sorted(layers):
            for key, raw_value in layers[source].items():
                try:
                    field_name, value = coerce_config_value(key, raw_value)
                except ValidationError as e:
                    logger.warning(f"Ignoring {key} from {source.name.lower()}: {e}")
                    continue
                values[field_name] = value
                provenance[field_name] = source

        known_fields = {f.name for f in fields(ConfigurationSnapshot)}
        snapshot = ConfigurationSnapshot(**{k: v for k, v in values.items() if k in known_fields})
        return _Resolution(snapshot=snapshot, provenance=provenance)


def describe_snapshot(snapshot: ConfigurationSnapshot) -> Dict[str, Any]:
    """Snapshot values keyed by configuration key, with the API key redacted."""
    data = snapshot.to_dict(redact_secrets=True)
    return {_FIELD_TO_KEY.get(name, name): value for name, value in data.items()}
