"""
Default module catalogs and the module registry.
"""

import logging
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, NamedTuple, Optional, Tuple

from ..system.commands import ProcessRunner
from .base import ModuleProcessor, QueryModuleProcessor

logger = logging.getLogger(__name__)


class ModuleCatalog(NamedTuple):
    queries: Mapping[str, str]
    fallbacks: Mapping[str, str] = MappingProxyType({})
    single_row: Tuple[str, ...] = ()


DEFAULT_CATALOGS: Dict[str, ModuleCatalog] = {
    "hardware": ModuleCatalog(
        queries={
            "system": "SELECT hardware_vendor, hardware_model, hardware_serial, cpu_brand, "
                      "cpu_physical_cores, cpu_logical_cores, physical_memory, computer_name, "
                      "hardware_version, uuid FROM system_info;",
            "storage": "SELECT device, path, type, blocks, blocks_free, blocks_size, flags "
                       "FROM mounts WHERE type NOT LIKE 'autofs%' AND type != 'devfs';",
            "battery": "SELECT charged, charging, current_capacity, designed_capacity, "
                       "max_capacity, cycle_count, health, condition FROM battery;",
        },
        fallbacks={
            "system": "system_profiler SPHardwareDataType -json",
        },
        single_row=("system", "battery"),
    ),
    "system": ModuleCatalog(
        queries={
            "operatingSystem": "SELECT name, version, major, minor, patch, build, platform, arch "
                               "FROM os_version;",
            "systemInfo": "SELECT hostname, uuid, hardware_serial, computer_name, local_hostname "
                          "FROM system_info;",
            "uptime": "SELECT days, hours, minutes, seconds, total_seconds FROM uptime;",
        },
        fallbacks={
            "operatingSystem": "sw_vers",
        },
        single_row=("operatingSystem", "systemInfo", "uptime"),
    ),
    "network": ModuleCatalog(
        queries={
            "interfaces": "SELECT interface, address, mask, type FROM interface_addresses;",
            "routes": "SELECT destination, netmask, gateway, interface FROM routes "
                      "WHERE destination = '0.0.0.0';",
            "wifi": "SELECT ssid, bssid, network_name, rssi, noise, channel, security_type "
                    "FROM wifi_network LIMIT 1;",
        },
        fallbacks={
            "interfaces": "ifconfig -a",
        },
        single_row=("wifi",),
    ),
    "security": ModuleCatalog(
        queries={
            "sip": "SELECT config_flag, enabled, enabled_nvram FROM sip_config;",
            "gatekeeper": "SELECT assessments_enabled, dev_id_enabled, version FROM gatekeeper;",
            "firewall": "SELECT global_state, stealth_enabled, logging_enabled FROM alf;",
            "encryption": "SELECT name, uuid, encrypted, type, encryption_status FROM disk_encryption;",
            "filevaultUsers": "SELECT username, uuid FROM filevault_users;",
        },
        fallbacks={
            "gatekeeper": "spctl --status",
            "firewall": "/usr/libexec/ApplicationFirewall/socketfilterfw --getglobalstate",
        },
        single_row=("gatekeeper", "firewall"),
    ),
    "applications": ModuleCatalog(
        queries={
            "installedApps": "SELECT name, path, bundle_identifier, bundle_short_version, "
                             "bundle_version, last_opened_time FROM apps;",
            "startupItems": "SELECT name, path, type, status, source FROM startup_items;",
        },
    ),
    "management": ModuleCatalog(
        queries={
            "mdmEnrollment": "SELECT enrolled, server_url, checkin_url, dep_capable, "
                             "user_approved, installed_from_dep FROM mdm;",
            "profiles": "SELECT identifier, display_name, install_date, organization, "
                        "verification_state FROM macos_profiles;",
        },
        fallbacks={
            "mdmEnrollment": "profiles status -type enrollment",
        },
        single_row=("mdmEnrollment",),
    ),
    "inventory": ModuleCatalog(
        queries={
            "device": "SELECT uuid, hardware_serial, computer_name FROM system_info;",
        },
        single_row=("device",),
    ),
}


class ModuleRegistry:
    """Module processors by module id."""

    def __init__(self, processors: Iterable[ModuleProcessor] = ()):
        self._processors: Dict[str, ModuleProcessor] = {}
        for processor in processors:
            self.register(processor)

    @classmethod
    def with_defaults(cls, runner: Optional[ProcessRunner] = None,
                      catalogs: Optional[Mapping[str, ModuleCatalog]] = None) -> "ModuleRegistry":
        """Registry of QueryModuleProcessors built from the default catalogs."""
        registry = cls()
        for module_id, catalog in (catalogs or DEFAULT_CATALOGS).items():
            registry.register(QueryModuleProcessor(
                module_id,
                catalog.queries,
                fallbacks=catalog.fallbacks,
                single_row=catalog.single_row,
                runner=runner,
            ))
        return registry

    def register(self, processor: ModuleProcessor) -> None:
        module_id = processor.module_id.lower()
        if module_id in self._processors:
            logger.debug(f"Replacing module processor for '{module_id}'")
        self._processors[module_id] = processor

    def get(self, module_id: str) -> Optional[ModuleProcessor]:
        return self._processors.get(module_id.lower())

    def __contains__(self, module_id: str) -> bool:
        return module_id.lower() in self._processors

    @property
    def module_ids(self) -> List[str]:
        return list(self._processors)
