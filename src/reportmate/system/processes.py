"""
Process tree termination.

Used to tear down long-lived helper processes (the interactive osquery shell
and the extension it loads) so no orphan outlives a collection run.
"""

import logging
import os
import signal
from typing import List

import psutil

logger = logging.getLogger(__name__)


class TerminationTimeouts:
    """Seconds to wait after each escalation phase."""

    GRACEFUL = 2.0
    INTERRUPT = 1.0
    FORCE = 1.0


_PHASES = [
    {"name": "graceful", "signal": "SIGTERM", "timeout": TerminationTimeouts.GRACEFUL, "force": False},
    {"name": "interrupt", "signal": "SIGINT", "timeout": TerminationTimeouts.INTERRUPT, "force": False},
    {"name": "force_kill", "signal": "SIGKILL", "timeout": TerminationTimeouts.FORCE, "force": True},
]


def terminate_process_tree(pid: int, name: str) -> None:
    """
    Terminate a process and all its descendants with escalating signals.

    Children are re-enumerated before each phase since an extension can be
    spawned while the shell is shutting down.

    Args:
        pid: Root process ID
        name: Description used in log messages
    """
    if pid <= 0:
        logger.warning(f"Invalid PID {pid} for {name}, skipping termination")
        return

    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        logger.debug(f"Process {name} (PID: {pid}) already terminated")
        return
    except psutil.AccessDenied:
        logger.warning(f"Access denied to process {name} (PID: {pid}), attempting force kill")
        _force_kill_process(pid)
        return

    logger.debug(f"Terminating {name} (PID: {pid}) and its process tree")
    for phase_idx, phase in enumerate(_PHASES):
        if not _is_process_alive(parent):
            break
        processes = [parent] + _get_process_children(parent)
        signaled = _apply_termination_signal(processes, phase)
        if not signaled:
            continue
        remaining = _wait_for_termination(signaled, phase["timeout"])
        if not remaining:
            logger.debug(f"{name} terminated in phase {phase['name']}")
            break
        logger.warning(f"Phase {phase['name']}: {len(remaining)} processes of {name} still alive")
        if phase_idx == len(_PHASES) - 1:
            for process in remaining:
                logger.error(f"Stubborn process: PID {process.pid} for {name}")

    _cleanup_process_group(pid, name)


def _is_process_alive(process: psutil.Process) -> bool:
    try:
        if not process.is_running():
            return False
        return process.status() not in (psutil.STATUS_ZOMBIE, psutil.STATUS_DEAD)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


def _get_process_children(parent: psutil.Process) -> List[psutil.Process]:
    try:
        return [child for child in parent.children(recursive=True) if _is_process_alive(child)]
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []


def _apply_termination_signal(processes: List[psutil.Process], phase: dict) -> List[psutil.Process]:
    signaled = []
    for process in processes:
        try:
            if not _is_process_alive(process):
                continue
            if phase["force"]:
                process.kill()
            elif phase["signal"] == "SIGTERM":
                process.terminate()
            else:
                process.send_signal(signal.SIGINT)
            signaled.append(process)
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.warning(f"Access denied sending {phase['signal']} to PID {process.pid}")
    return signaled


def _wait_for_termination(processes: List[psutil.Process], timeout: float) -> List[psutil.Process]:
    _, still_alive = psutil.wait_procs(processes, timeout=timeout)
    # Zombies count as terminated
    return [p for p in still_alive if _is_process_alive(p)]


def _cleanup_process_group(pid: int, name: str) -> None:
    """Kill the process group the root led, if any members remain."""
    try:
        os.killpg(pid, signal.SIGKILL)
        logger.debug(f"Sent SIGKILL to process group {pid} for {name}")
    except (ProcessLookupError, PermissionError):
        pass
    except OSError as e:
        logger.debug(f"Error cleaning process group {pid}: {e}")


def _force_kill_process(pid: int) -> None:
    try:
        os.kill(pid, signal.SIGKILL)
        logger.warning(f"Force killed process PID {pid}")
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.error(f"Failed to force kill PID {pid}: {e}")
