"""
Host identity lookups: serial number, device identifier and basic host facts.
"""

import logging
import os
import platform
import socket
import uuid
from pathlib import Path
from typing import Dict, Optional

from .commands import ProcessRunner

logger = logging.getLogger(__name__)

UNKNOWN_SERIAL = "UNKNOWN"

# Fixed namespace so the same serial always maps to the same device id.
DEVICE_ID_NAMESPACE = uuid.UUID("6ba7b811-9dad-11d1-80b4-00c04fd430c8")

_LINUX_SERIAL_PATH = Path("/sys/class/dmi/id/product_serial")


def _parse_ioreg_serial(output: str) -> Optional[str]:
    for line in output.splitlines():
        if "IOPlatformSerialNumber" in line and "=" in line:
            value = line.split("=", 1)[1].strip().strip('"')
            if value:
                return value
    return None


def _parse_profiler_serial(output: str) -> Optional[str]:
    for line in output.splitlines():
        if "Serial Number" in line and ":" in line:
            value = line.split(":", 1)[1].strip()
            if value:
                return value
    return None


def get_serial_number(runner: Optional[ProcessRunner] = None) -> str:
    """
    Read the hardware serial number.

    Tries ioreg, then system_profiler on macOS, and the DMI table on Linux.

    Returns:
        The serial number, or "UNKNOWN" if no source provided one
    """
    runner = runner or ProcessRunner()
    system = platform.system()

    if system == "Darwin":
        result = runner.run(["/usr/sbin/ioreg", "-rd1", "-c", "IOPlatformExpertDevice"], timeout=30)
        serial = _parse_ioreg_serial(result.stdout) if result.ok else None
        if serial:
            return serial
        result = runner.run(["/usr/sbin/system_profiler", "SPHardwareDataType"], timeout=60)
        serial = _parse_profiler_serial(result.stdout) if result.ok else None
        if serial:
            return serial
    elif system == "Linux":
        try:
            serial = _LINUX_SERIAL_PATH.read_text().strip()
            if serial:
                return serial
        except OSError as e:
            logger.debug(f"Cannot read {_LINUX_SERIAL_PATH}: {e}")

    logger.warning("Could not determine hardware serial number")
    return UNKNOWN_SERIAL


def derive_device_id(serial_number: str) -> str:
    """Deterministic device identifier for a serial number."""
    return str(uuid.uuid5(DEVICE_ID_NAMESPACE, serial_number.strip().upper())).upper()


def get_hardware_model(runner: Optional[ProcessRunner] = None) -> str:
    if platform.system() == "Darwin":
        result = (runner or ProcessRunner()).run(["/usr/sbin/sysctl", "-n", "hw.model"], timeout=10)
        if result.ok and result.stdout.strip():
            return result.stdout.strip()
    return platform.machine() or "unknown"


def get_host_facts(runner: Optional[ProcessRunner] = None) -> Dict[str, str]:
    """Device name, OS, architecture and model for payload metadata."""
    system = platform.system()
    if system == "Darwin":
        os_name = "macOS"
        os_version = platform.mac_ver()[0] or platform.release()
    else:
        os_name = system or "unknown"
        os_version = platform.release()
    return {
        "deviceName": socket.gethostname(),
        "osName": os_name,
        "osVersion": os_version,
        "architecture": platform.machine() or "unknown",
        "model": get_hardware_model(runner),
    }


def has_required_privileges() -> bool:
    """True when running as root."""
    return hasattr(os, "geteuid") and os.geteuid() == 0
