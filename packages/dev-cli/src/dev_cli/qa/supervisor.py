"""
Process Supervisor - detached background processes tracked by PID file.

qa-start spawns the Firebase emulator suite and the OTel collector, writes
their PIDs to per-session files and exits; the processes keep running.
Later invocations only ever see a PID, so liveness is always re-checked
with signal 0 and never trusted from the file alone.

Each supervised process has:
- A PID file (``pids/<name>.pid``, PID followed by a newline)
- A log file (``logs/<name>.log``, stdout and stderr appended)
- A readiness probe (HTTP 2xx, or a TCP listener on a port)
"""

import logging
import os
import signal
import socket
import time
from collections import deque
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Protocol, Sequence

import httpx
from rich.console import Console

from dev_cli.qa.errors import ReadinessTimeoutError
from dev_cli.qa.runner import CommandRunner

logger = logging.getLogger(__name__)
console = Console()

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_STOP_GRACE = 10.0
STOP_POLL_INTERVAL = 0.25
WAIT_REPORT_EVERY = 10
LOG_TAIL_LINES = 40


# ============================================================================
# Readiness probes
# ============================================================================

class ReadinessProbe(Protocol):
    description: str

    def __call__(self) -> bool: ...


class HttpProbe:
    """Ready when a GET of ``url`` returns a 2xx status."""

    def __init__(self, url: str, timeout: float = 2.0):
        self.url = url
        self.timeout = timeout
        self.description = f"at {url}"

    def __call__(self) -> bool:
        try:
            response = httpx.get(self.url, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.debug(f"Health check {self.url} failed: {e}")
            return False
        return response.is_success


class PortProbe:
    """Ready when something accepts TCP connections on ``host:port``."""

    def __init__(self, port: int, host: str = "127.0.0.1", timeout: float = 1.0):
        self.port = port
        self.host = host
        self.timeout = timeout
        self.description = f"on port {port}"

    def __call__(self) -> bool:
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout):
                return True
        except OSError:
            return False


# ============================================================================
# PID helpers
# ============================================================================

def is_process_running(pid: int) -> bool:
    """Check if a process with given PID is running."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    except OSError:
        return False
    return not _is_zombie(pid)


def _is_zombie(pid: int) -> bool:
    # Exited but unreaped children still answer signal 0. Linux only.
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return False
    # The state field follows the parenthesised command name.
    return stat.rsplit(")", 1)[-1].split()[:1] == ["Z"]


def read_log_tail(path: Path, max_lines: int = LOG_TAIL_LINES) -> List[str]:
    """Last ``max_lines`` lines of a log file (empty if it does not exist)."""
    try:
        with open(path, "r", errors="replace") as f:
            return [line.rstrip("\n") for line in deque(f, maxlen=max_lines)]
    except FileNotFoundError:
        return []


class ProcessSupervisor:
    """
    Lifecycle of one detached, PID-file-tracked background process.

    The supervisor never holds a child handle: start writes the PID to disk
    and every other operation reads it back.
    """

    def __init__(
        self,
        label: str,
        pid_file: Path,
        log_file: Path,
        runner: Optional[CommandRunner] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            label: Human-readable name used in messages ("Firebase emulator")
            pid_file: Where the PID is persisted
            log_file: Where stdout/stderr are appended
            runner: Command runner used to spawn the process
            sleep: Injectable sleep (tests pass a no-op)
            clock: Injectable monotonic clock
        """
        self.label = label
        self.pid_file = Path(pid_file)
        self.log_file = Path(log_file)
        self.runner = runner or CommandRunner()
        self._sleep = sleep
        self._clock = clock

    def read_pid(self) -> Optional[int]:
        """Read PID from file, returns None if not found or invalid."""
        try:
            raw = self.pid_file.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.debug(f"Error reading PID file {self.pid_file}: {e}")
            return None

        if not raw:
            return None
        try:
            return int(raw)
        except ValueError:
            logger.debug(f"PID file {self.pid_file} holds non-numeric {raw!r}")
            return None

    def _write_pid(self, pid: int) -> None:
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(f"{pid}\n")

    def _remove_pid(self) -> None:
        try:
            self.pid_file.unlink()
        except FileNotFoundError:
            pass

    def is_running(self) -> bool:
        pid = self.read_pid()
        return pid is not None and is_process_running(pid)

    # =========================================================================
    # Start side
    # =========================================================================

    def ensure_started(
        self,
        session_id: str,
        command: Sequence[str],
        probe: ReadinessProbe,
        timeout_seconds: float,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        before_spawn: Optional[Callable[[], None]] = None,
    ) -> bool:
        """
        Make sure the process is running and has passed its readiness probe.

        Args:
            session_id: Owning session (for messages)
            command: argv to spawn when not already running
            probe: Readiness probe polled after spawning
            timeout_seconds: Readiness window
            cwd: Working directory for the child
            env: Extra environment for the child
            before_spawn: Hook run only when a spawn is about to happen

        Returns:
            True if a new process was spawned, False if one was already running.

        Raises:
            ReadinessTimeoutError: If the probe never succeeds in time
        """
        pid = self.read_pid()
        if pid is not None and is_process_running(pid):
            console.print(f"{self.label} already running for {session_id} (pid {pid}).")
            return False

        if before_spawn is not None:
            before_spawn()

        console.print(f"Starting {self.label} for {session_id}...")
        pid = self.runner.spawn_detached(command, self.log_file, cwd=cwd, env=env)
        self._write_pid(pid)

        self.wait_until_ready(probe, timeout_seconds)
        return True

    def wait_until_ready(
        self,
        probe: ReadinessProbe,
        timeout_seconds: float,
        interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        """
        Poll ``probe`` until it succeeds or ``timeout_seconds`` pass.

        On timeout the tail of the log file is printed before raising, so the
        operator sees why without looking the log up.
        """
        start = self._clock()
        last_report = None

        while True:
            if probe():
                console.print(f"  [green][ok][/green] {self.label} is ready {probe.description}")
                return

            elapsed = int(self._clock() - start)
            if elapsed >= timeout_seconds:
                self._print_log_tail()
                raise ReadinessTimeoutError(self.label, probe.description, timeout_seconds)

            bucket = elapsed // WAIT_REPORT_EVERY
            if bucket != last_report:
                last_report = bucket
                console.print(f"  [dim][wait] {self.label} not ready yet ({elapsed}s elapsed)[/dim]")

            self._sleep(interval)

    def _print_log_tail(self) -> None:
        lines = read_log_tail(self.log_file)
        if not lines:
            console.print(f"[yellow]No output in {self.log_file}[/yellow]")
            return
        console.print(f"[yellow]Last {self.label} log lines ({self.log_file}):[/yellow]")
        for line in lines:
            console.print(f"  {line}", markup=False, highlight=False)

    # =========================================================================
    # Stop side
    # =========================================================================

    def stop(self, grace_seconds: float = DEFAULT_STOP_GRACE) -> str:
        """
        Stop the process: SIGTERM its group, then SIGKILL after a grace period.

        The PID file is always removed. A PID that is no longer alive is a
        normal stale-state recovery, reported without sending any signal.
        A PID the kernel refuses to signal (reused by another user) is
        reported as left running.

        Returns:
            A one-line report prefixed with the label.
        """
        if not self.pid_file.exists():
            return f"{self.label}: no pid file at {self.pid_file}"

        pid = self.read_pid()
        if pid is None:
            self._remove_pid()
            return f"{self.label}: pid file was empty, removed."

        if not is_process_running(pid):
            self._remove_pid()
            logger.info(f"Removed stale PID file {self.pid_file} (process {pid} not running)")
            return f"{self.label}: process {pid} was already stopped"

        try:
            if not self._signal_group(pid, signal.SIGTERM):
                return f"{self.label}: not permitted to signal pid {pid}, left running"

            deadline = self._clock() + grace_seconds
            while self._clock() < deadline:
                if not is_process_running(pid):
                    return f"{self.label}: stopped pid {pid}"
                self._sleep(STOP_POLL_INTERVAL)

            if not is_process_running(pid):
                return f"{self.label}: stopped pid {pid}"

            if not self._signal_group(pid, signal.SIGKILL):
                return f"{self.label}: not permitted to kill pid {pid}, left running"
            return f"{self.label}: force killed pid {pid}"
        finally:
            self._remove_pid()

    def _signal_group(self, pid: int, sig: int) -> bool:
        """
        Send ``sig`` to the process group, then to the PID itself.

        Returns False only when both were refused with EPERM, i.e. the PID
        now belongs to a process this user may not signal.
        """
        refused = 0
        for send, target in ((os.killpg, "process group"), (os.kill, "pid")):
            try:
                send(pid, sig)
            except PermissionError as e:
                refused += 1
                logger.warning(f"Signal {sig} to {target} {pid} refused: {e}")
            except OSError as e:
                logger.debug(f"Signal {sig} to {target} {pid} failed: {e}")
        return refused < 2
