"""
Command execution and process handles.

This module provides the ProcessRunner used by the query engine and the
module processors to run external tools. It covers the two shapes of
process use in the agent:

- one-shot commands whose output is read to completion (``run``)
- long-lived interactive processes driven through stdin/stdout (``spawn``)

Tests replace the runner with a fake, so nothing above this layer touches
real OS processes directly.
"""

import logging
import queue
import subprocess
import threading
from dataclasses import dataclass
from typing import IO, List, Mapping, Optional, Sequence

from .processes import terminate_process_tree

logger = logging.getLogger(__name__)

# Return codes used when no process exit status exists.
LAUNCH_FAILED = -1
TIMED_OUT = -2


@dataclass
class CommandResult:
    """Outcome of a one-shot command."""

    args: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def launch_failed(self) -> bool:
        return self.returncode == LAUNCH_FAILED

    @property
    def timed_out(self) -> bool:
        return self.returncode == TIMED_OUT

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ProcessHandle:
    """
    A running interactive process with line-oriented stdin and
    background readers for stdout and stderr.

    Reader threads push decoded chunks into queues, so ``read`` can wait with
    a timeout without blocking on the pipe itself.
    """

    def __init__(self, process: subprocess.Popen):
        self.process = process
        self._stdout: "queue.Queue[Optional[str]]" = queue.Queue()
        self._stderr: "queue.Queue[Optional[str]]" = queue.Queue()
        self._readers = [
            self._start_reader(process.stdout, self._stdout, "stdout"),
            self._start_reader(process.stderr, self._stderr, "stderr"),
        ]

    @property
    def pid(self) -> int:
        return self.process.pid

    def _start_reader(self, stream: Optional[IO[str]], sink: "queue.Queue[Optional[str]]",
                      name: str) -> threading.Thread:
        def pump() -> None:
            if stream is None:
                sink.put(None)
                return
            try:
                for line in iter(stream.readline, ""):
                    sink.put(line)
            except (OSError, ValueError) as e:
                logger.debug(f"{name} reader for PID {self.pid} stopped: {e}")
            finally:
                sink.put(None)

        reader = threading.Thread(target=pump, name=f"proc-{self.pid}-{name}", daemon=True)
        reader.start()
        return reader

    def send(self, text: str) -> None:
        """
        Write text to the process's stdin and flush.

        Raises:
            BrokenPipeError: If the process has closed its stdin
        """
        if self.process.stdin is None:
            raise BrokenPipeError("process stdin is not a pipe")
        self.process.stdin.write(text)
        self.process.stdin.flush()

    def read(self, timeout: float) -> Optional[str]:
        """
        Wait for the next stdout chunk.

        Returns:
            The chunk, ``""`` if nothing arrived within ``timeout``, or None
            once stdout has reached end of file
        """
        try:
            return self._stdout.get(timeout=timeout)
        except queue.Empty:
            return ""

    def drain_stderr(self) -> str:
        """Return whatever stderr output has arrived so far without waiting."""
        chunks = []
        while True:
            try:
                chunk = self._stderr.get_nowait()
            except queue.Empty:
                break
            if chunk is not None:
                chunks.append(chunk)
        return "".join(chunks)

    def poll(self) -> Optional[int]:
        return self.process.poll()

    def close_stdin(self) -> None:
        if self.process.stdin and not self.process.stdin.closed:
            try:
                self.process.stdin.close()
            except OSError as e:
                logger.debug(f"Error closing stdin of PID {self.pid}: {e}")

    def wait(self, timeout: float) -> Optional[int]:
        """Wait for exit; return the exit code or None if still running."""
        try:
            return self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def terminate(self) -> None:
        """Terminate the process and any children it started."""
        terminate_process_tree(self.pid, "interactive process")
        try:
            self.process.wait(timeout=1)
        except subprocess.TimeoutExpired:
            logger.warning(f"PID {self.pid} did not exit after termination")


class ProcessRunner:
    """Starts external processes for the agent."""

    def run(self, args: Sequence[str], timeout: Optional[float] = None,
            env: Optional[Mapping[str, str]] = None) -> CommandResult:
        """
        Execute a command and capture its output.

        Launch failures and timeouts are reported through the return code
        rather than raised.

        Args:
            args: Program and arguments
            timeout: Seconds to wait before the process is killed
            env: Optional replacement environment

        Returns:
            CommandResult; returncode is LAUNCH_FAILED or TIMED_OUT when the
            command never produced an exit status
        """
        arg_list = [str(a) for a in args]
        logger.debug(f"Executing command: {arg_list[0]} ({len(arg_list) - 1} args)")
        try:
            process = subprocess.run(
                arg_list,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                env=dict(env) if env is not None else None,
                check=False,
            )
            return CommandResult(arg_list, process.returncode, process.stdout, process.stderr)
        except subprocess.TimeoutExpired as e:
            logger.warning(f"Command timed out after {timeout}s: {arg_list[0]}")
            stdout = e.stdout.decode("utf-8", "replace") if isinstance(e.stdout, bytes) else (e.stdout or "")
            stderr = e.stderr.decode("utf-8", "replace") if isinstance(e.stderr, bytes) else (e.stderr or "")
            return CommandResult(arg_list, TIMED_OUT, stdout, stderr or f"timed out after {timeout}s")
        except OSError as e:
            logger.error(f"Command could not be started: {arg_list[0]}: {type(e).__name__}: {e}")
            return CommandResult(arg_list, LAUNCH_FAILED, "", f"Error: cannot launch '{arg_list[0]}': {e}")

    def run_shell(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """Execute a command line through ``/bin/bash -c``."""
        return self.run(["/bin/bash", "-c", command], timeout=timeout)

    def spawn(self, args: Sequence[str], env: Optional[Mapping[str, str]] = None) -> ProcessHandle:
        """
        Start an interactive process with piped stdin, stdout and stderr.

        Raises:
            OSError: If the process cannot be started
        """
        arg_list = [str(a) for a in args]
        process = subprocess.Popen(
            arg_list,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
            env=dict(env) if env is not None else None,
            start_new_session=True,
        )
        logger.info(f"Started {arg_list[0]} with PID: {process.pid}")
        return ProcessHandle(process)
