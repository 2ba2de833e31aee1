"""
External command execution for the QA orchestrator.

Everything qa-start / qa-stop runs outside Python (npm, firebase, npx,
xcrun simctl, lsof) goes through a CommandRunner so tests can substitute a
fake that records calls and returns canned results.
"""

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from dev_cli.qa.errors import ConfigurationError

logger = logging.getLogger(__name__)

COMMAND_NOT_FOUND = 127


@dataclass
class CommandResult:
    """Exit status and captured output of a finished command."""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Runs external commands with subprocess."""

    def run(
        self,
        args: Sequence[str],
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        """
        Run a command to completion and capture its output.

        A missing executable is reported as exit status 127 rather than
        raised, matching what a shell would return.
        """
        logger.debug(f"Running: {' '.join(args)}")
        try:
            completed = subprocess.run(
                list(args),
                cwd=str(cwd) if cwd else None,
                env=_merged_env(env),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError:
            logger.debug(f"Command not found: {args[0]}")
            return CommandResult(COMMAND_NOT_FOUND, "", f"command not found: {args[0]}")
        return CommandResult(completed.returncode, completed.stdout, completed.stderr)

    def run_streaming(
        self,
        args: Sequence[str],
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> int:
        """Run a command in the foreground with inherited stdio."""
        logger.debug(f"Running (streaming): {' '.join(args)}")
        try:
            completed = subprocess.run(
                list(args),
                cwd=str(cwd) if cwd else None,
                env=_merged_env(env),
            )
        except FileNotFoundError:
            logger.debug(f"Command not found: {args[0]}")
            return COMMAND_NOT_FOUND
        return completed.returncode

    def spawn_detached(
        self,
        args: Sequence[str],
        log_file: Path,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> int:
        """
        Start a background process that outlives this CLI invocation.

        The child gets its own session (so its PID is also its process group
        id), stdin from /dev/null, and stdout/stderr appended to log_file.
        No handle is kept; the returned PID is the only link to the process.

        Raises:
            ConfigurationError: If the executable is not on PATH
            OSError: If the executable cannot be started for another reason
        """
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        with open(log_file, "a") as log:
            log.write(f"\n{'=' * 60}\n")
            log.write(f"Starting at {time.strftime('%Y-%m-%d %H:%M:%S')}\n")
            log.write(f"Command: {' '.join(args)}\n")
            log.write(f"{'=' * 60}\n")
            log.flush()

            try:
                process = subprocess.Popen(
                    list(args),
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,  # Detach from parent
                    cwd=str(cwd) if cwd else None,
                    env=_merged_env(env),
                )
            except FileNotFoundError as e:
                log.write(f"Command not found: {args[0]}\n")
                raise ConfigurationError(f"Command not found: {args[0]}") from e

        logger.info(f"Spawned pid {process.pid}: {' '.join(args)}")
        return process.pid

    def kill_listeners(self, port: int) -> List[int]:
        """
        Terminate every process listening on a TCP port.

        Best effort: a missing lsof, no listeners, or processes that exit
        before they are signalled are all ignored.
        """
        result = self.run(["lsof", f"-tiTCP:{port}", "-sTCP:LISTEN"])
        if not result.ok:
            return []

        killed = []
        for token in result.stdout.split():
            try:
                pid = int(token)
            except ValueError:
                continue
            try:
                os.kill(pid, signal.SIGTERM)
                killed.append(pid)
            except OSError as e:
                logger.debug(f"Could not signal listener {pid} on port {port}: {e}")
        if killed:
            logger.info(f"Terminated listeners on port {port}: {killed}")
        return killed


def _merged_env(extra: Optional[Mapping[str, str]]) -> Optional[Dict[str, str]]:
    if not extra:
        return None
    env = dict(os.environ)
    env.update(extra)
    return env
