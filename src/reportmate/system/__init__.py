"""
System interaction utilities for the collection agent.

This module provides:

- Command execution and interactive process handles (ProcessRunner)
- Process tree termination for helper processes
- Host identity lookups (serial number, device id, host facts)
"""

# Command execution
from .commands import LAUNCH_FAILED, TIMED_OUT, CommandResult, ProcessHandle, ProcessRunner

# Process management
from .processes import terminate_process_tree

# Host identity
from .identity import (
    UNKNOWN_SERIAL,
    derive_device_id,
    get_hardware_model,
    get_host_facts,
    get_serial_number,
    has_required_privileges,
)

__all__ = [
    # Command execution
    "CommandResult",
    "LAUNCH_FAILED",
    "ProcessHandle",
    "ProcessRunner",
    "TIMED_OUT",
    # Process management
    "terminate_process_tree",
    # Host identity
    "UNKNOWN_SERIAL",
    "derive_device_id",
    "get_hardware_model",
    "get_host_facts",
    "get_serial_number",
    "has_required_privileges",
]
