"""Shared fixtures for dev-cli tests."""

import subprocess
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from dev_cli.qa.runner import CommandResult, CommandRunner

# Above the kernel's pid_max, so signal 0 always reports "no such process".
UNUSED_PID_BASE = 4_194_304

SIMCTL_LISTING = """\
== Devices ==
-- iOS 17.5 --
    iPad Air (5th generation) (11111111-1111-1111-1111-111111111111) (Shutdown)
    iPhone 15 (AAAAAAAA-AAAA-AAAA-AAAA-AAAAAAAAAAAA) (Shutdown)
    iPhone 15 Pro (BBBBBBBB-BBBB-BBBB-BBBB-BBBBBBBBBBBB) (Booted)
-- iOS 16.4 --
    iPhone 14 (CCCCCCCC-CCCC-CCCC-CCCC-CCCCCCCCCCCC) (Shutdown)
-- watchOS 10.5 --
    Apple Watch Series 9 (45mm) (DDDDDDDD-DDDD-DDDD-DDDD-DDDDDDDDDDDD) (Shutdown)
"""


@dataclass
class CommandCall:
    """One invocation recorded by FakeCommandRunner."""

    args: List[str]
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)


class FakeCommandRunner(CommandRunner):
    """
    CommandRunner double that records calls instead of running anything.

    Results are matched by command prefix first (``respond``), then taken
    from the FIFO queue (``enqueue``), then default to success. Spawned
    processes get PIDs that are never alive.
    """

    def __init__(self, results: Optional[Sequence[CommandResult]] = None):
        self.calls: List[CommandCall] = []
        self.spawned: List[CommandCall] = []
        self.killed_ports: List[int] = []
        self._queue = deque(results or [])
        self._by_prefix: List[tuple] = []
        self._next_pid = UNUSED_PID_BASE

    def respond(self, prefix: Sequence[str], result: CommandResult) -> None:
        self._by_prefix.append((list(prefix), result))

    def enqueue(self, result: CommandResult) -> None:
        self._queue.append(result)

    def _result_for(self, args: Sequence[str]) -> CommandResult:
        for prefix, result in self._by_prefix:
            if list(args[: len(prefix)]) == prefix:
                return result
        if self._queue:
            return self._queue.popleft()
        return CommandResult(0)

    def _record(self, args, cwd, env) -> None:
        self.calls.append(CommandCall(list(args), str(cwd) if cwd else None, dict(env or {})))

    def run(self, args, cwd=None, env=None) -> CommandResult:
        self._record(args, cwd, env)
        return self._result_for(args)

    def run_streaming(self, args, cwd=None, env=None) -> int:
        self._record(args, cwd, env)
        return self._result_for(args).returncode

    def spawn_detached(self, args, log_file, cwd=None, env=None) -> int:
        self.spawned.append(CommandCall(list(args), str(cwd) if cwd else None, dict(env or {})))
        self._next_pid += 1
        return self._next_pid

    def kill_listeners(self, port: int) -> List[int]:
        self.killed_ports.append(port)
        return []

    def commands(self) -> List[List[str]]:
        return [call.args for call in self.calls]


class FakeClock:
    """Monotonic clock advanced only by the paired sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_runner() -> FakeCommandRunner:
    runner = FakeCommandRunner()
    runner.respond(
        ["xcrun", "simctl", "list", "devices", "available"],
        CommandResult(0, SIMCTL_LISTING),
    )
    return runner


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def qa_root(tmp_path) -> Path:
    root = tmp_path / "qa"
    root.mkdir()
    return root


@pytest.fixture
def worktree(tmp_path) -> Path:
    """A minimal repository checkout with a firebase.json template."""
    root = tmp_path / "brad-os"
    root.mkdir()
    (root / "firebase.json").write_text(
        '{"functions": {"source": "packages/functions"},'
        ' "hosting": {"public": "public", "rewrites": []},'
        ' "emulators": {"functions": {"port": 5001}, "ui": {"enabled": false}}}\n'
    )
    return root


@pytest.fixture
def sleeper():
    """
    Start real detached ``sleep`` processes; kills leftovers afterwards.

    Children are reaped on teardown so no zombies outlive the test.
    """
    processes: List[subprocess.Popen] = []

    def start(seconds: int = 60, ignore_term: bool = False) -> subprocess.Popen:
        if ignore_term:
            args = ["sh", "-c", f"trap '' TERM; sleep {seconds}"]
        else:
            args = ["sleep", str(seconds)]
        process = subprocess.Popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        processes.append(process)
        return process

    yield start

    for process in processes:
        if process.poll() is None:
            process.kill()
        process.wait(timeout=5)
