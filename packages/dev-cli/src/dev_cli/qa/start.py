"""
qa-start - bring one QA session online.

Order of operations:
1. Resolve and sanitize the session id
2. Create the session directories (and clear them with --fresh)
3. Point ``worktree-root`` at the invoking workspace
4. Load prior state and reuse its ports (or derive new ones)
5. Firebase emulator suite (unless --no-firebase)
6. OTel collector (unless --no-otel)
7. Simulator lease, boot and environment injection (unless --no-simulator)
8. Persist state.env and print a summary

Re-running for the same session is safe: running processes are left alone,
ports come from state.env, and a lease the session still holds is reused.
"""

import logging
import os
import shutil
import time
from pathlib import Path
from typing import Callable, Optional

from rich.console import Console

from dev_cli.config import PROJECT_ID_PREFIX, QaStartOptions, SessionPaths
from dev_cli.qa.errors import QAError
from dev_cli.qa.firebase import FirebaseConfigRequest, write_firebase_config
from dev_cli.qa.ports import Ports, resolve_session_id
from dev_cli.qa.runner import CommandRunner
from dev_cli.qa.simulator import (
    LeaseGuard,
    SimulatorLease,
    boot_and_inject,
    choose_simulator,
    list_available,
    reusable_lease,
)
from dev_cli.qa.state import QaState, resolve_ports
from dev_cli.qa.supervisor import HttpProbe, PortProbe, ProcessSupervisor

logger = logging.getLogger(__name__)
console = Console()

FIREBASE_LABEL = "Firebase emulator"
OTEL_LABEL = "OTel collector"
FUNCTIONS_BUILD = ["npm", "run", "build", "-w", "@brad-os/functions"]
OTEL_COLLECTOR = ["npx", "tsx", "scripts/otel-collector/index.ts"]


def functions_health_url(ports: Ports, project_id: str) -> str:
    return f"http://127.0.0.1:{ports.functions}/{project_id}/us-central1/devHealth"


def api_base_url(ports: Ports) -> str:
    return f"http://127.0.0.1:{ports.hosting}/api/dev"


def otel_base_url(ports: Ports) -> str:
    return f"http://127.0.0.1:{ports.otel}"


class QaStarter:
    """One qa-start invocation."""

    def __init__(
        self,
        options: QaStartOptions,
        runner: Optional[CommandRunner] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.options = options
        self.runner = runner or CommandRunner()
        self._sleep = sleep
        self._clock = clock

        self.session_id, generated = resolve_session_id(options.session_id, options.worktree_root)
        if generated:
            console.print(f"No --id provided. Using worktree session id: {self.session_id}")

        self.project_id = options.project_id or f"{PROJECT_ID_PREFIX}{self.session_id}"
        self.paths = SessionPaths(qa_state_root=options.qa_state_root, session_id=self.session_id)
        self.worktree_root = Path(options.worktree_root)

    def _supervisor(self, label: str, pid_file: Path, log_file: Path) -> ProcessSupervisor:
        return ProcessSupervisor(
            label,
            pid_file,
            log_file,
            runner=self.runner,
            sleep=self._sleep,
            clock=self._clock,
        )

    # =========================================================================
    # Session directories
    # =========================================================================

    def prepare_directories(self) -> None:
        paths = self.paths
        for directory in (
            paths.log_dir,
            paths.pid_dir,
            paths.data_dir,
            paths.otel_dir,
            paths.device_locks_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

        if self.options.fresh:
            for directory in (paths.data_dir, paths.otel_dir, paths.log_dir):
                clear_dir_contents(directory)

        link_worktree(self.worktree_root, paths.worktree_link)

    # =========================================================================
    # Services
    # =========================================================================

    def start_firebase(self, ports: Ports) -> None:
        probe = HttpProbe(functions_health_url(ports, self.project_id))
        supervisor = self._supervisor(FIREBASE_LABEL, self.paths.firebase_pid_file, self.paths.firebase_log)

        def prepare() -> None:
            if not probe():
                # Listeners left behind by a crashed emulator would block the new one.
                for port in ports.emulator_ports():
                    self.runner.kill_listeners(port)

            write_firebase_config(
                FirebaseConfigRequest(
                    template_path=self.worktree_root / "firebase.json",
                    output_path=self.paths.firebase_config,
                    data_dir=self.paths.data_dir,
                    ports=ports,
                )
            )

            console.print("Building functions...")
            code = self.runner.run_streaming(FUNCTIONS_BUILD, cwd=self.worktree_root)
            if code != 0:
                raise QAError(f"Functions build failed (exit {code})")

        supervisor.ensure_started(
            self.session_id,
            [
                "firebase",
                "emulators:start",
                "--only",
                "functions,firestore,hosting",
                "--config",
                str(self.paths.firebase_config),
                "--project",
                self.project_id,
            ],
            probe,
            self.options.timeout_seconds,
            cwd=self.worktree_root,
            before_spawn=prepare,
        )

    def start_otel(self, ports: Ports) -> None:
        supervisor = self._supervisor(OTEL_LABEL, self.paths.otel_pid_file, self.paths.otel_log)
        supervisor.ensure_started(
            self.session_id,
            OTEL_COLLECTOR,
            PortProbe(ports.otel),
            self.options.timeout_seconds,
            cwd=self.worktree_root,
            env={
                "OTEL_COLLECTOR_PORT": str(ports.otel),
                "OTEL_OUTPUT_DIR": str(self.paths.otel_dir),
            },
        )

    def lease_simulator(self, existing: QaState) -> SimulatorLease:
        listing = list_available(self.runner, cwd=self.worktree_root)

        lease = reusable_lease(
            listing,
            self.session_id,
            existing.simulator_udid,
            existing.simulator_lock_dir,
        )
        if lease is not None:
            logger.info(f"Reusing simulator {lease.udid} for {self.session_id}")
            return lease

        return choose_simulator(
            self.options.device_request,
            listing,
            self.paths.device_locks_dir,
            self.session_id,
        )

    # =========================================================================
    # Run
    # =========================================================================

    def run(self) -> QaState:
        """
        Start everything the options ask for and persist the session state.

        Raises:
            QAError: On any configuration, contention or readiness failure
        """
        self.prepare_directories()

        existing = QaState.load(self.paths.state_file)
        ports = resolve_ports(existing, self.session_id)

        with LeaseGuard(self.session_id) as guard:
            if self.options.start_firebase:
                self.start_firebase(ports)

            if self.options.start_otel:
                self.start_otel(ports)

            if self.options.setup_simulator:
                lease = self.lease_simulator(existing)
                guard.track(lease)
                boot_and_inject(
                    self.runner,
                    lease.udid,
                    self.session_id,
                    ports.hosting,
                    ports.otel,
                    cwd=self.worktree_root,
                )
                simulator = {
                    "simulator_udid": lease.udid,
                    "simulator_name": lease.name,
                    "simulator_lock_dir": str(lease.lock_dir),
                }
            else:
                simulator = {
                    "simulator_udid": existing.simulator_udid,
                    "simulator_name": existing.simulator_name,
                    "simulator_lock_dir": existing.simulator_lock_dir,
                }

            state = QaState(
                qa_state_root=str(self.options.qa_state_root),
                worktree_root=str(self.worktree_root),
                session_id=self.session_id,
                project_id=self.project_id,
                firebase_config=str(self.paths.firebase_config),
                firebase_log=str(self.paths.firebase_log),
                otel_log=str(self.paths.otel_log),
                firebase_pid_file=str(self.paths.firebase_pid_file),
                otel_pid_file=str(self.paths.otel_pid_file),
                **simulator,
            ).with_ports(ports)
            state.save(self.paths.state_file)
            guard.commit()

        self.print_summary(state, ports)
        return state

    def print_summary(self, state: QaState, ports: Ports) -> None:
        simulator_name = state.simulator_name or "n/a"
        simulator_udid = state.simulator_udid or "not configured"

        console.print()
        console.print("[bold green]QA environment ready:[/bold green]")
        console.print(f"  Session ID:    {self.session_id}")
        console.print(f"  Project ID:    {self.project_id}")
        console.print(f"  Functions URL: {functions_health_url(ports, self.project_id)}")
        console.print(f"  API Base URL:  {api_base_url(ports)}")
        console.print(f"  OTel Base URL: {otel_base_url(ports)}")
        console.print(f"  Simulator:     {simulator_name} ({simulator_udid})")
        console.print(f"  Shared state:  {self.options.qa_state_root}")
        console.print(f"  State file:    {self.paths.state_file}")
        console.print()
        console.print("Next commands:")
        console.print(f"  [dim]npm run qa:build -- --id {self.session_id}[/dim]")
        console.print(f"  [dim]npm run qa:launch -- --id {self.session_id}[/dim]")
        console.print(f"  [dim]qa-stop --id {self.session_id}[/dim]")


def start_session(
    options: QaStartOptions,
    runner: Optional[CommandRunner] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> QaState:
    """Run qa-start with the given options and return the persisted state."""
    return QaStarter(options, runner=runner, sleep=sleep, clock=clock).run()


def clear_dir_contents(path: Path) -> None:
    """Delete everything inside a directory, keeping the directory itself."""
    if not path.is_dir():
        return
    for entry in path.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()


def link_worktree(worktree_root: Path, link_path: Path) -> None:
    """Create or refresh the session's ``worktree-root`` symlink."""
    if link_path.is_symlink() or link_path.is_file():
        link_path.unlink()
    elif link_path.is_dir():
        shutil.rmtree(link_path)
    os.symlink(worktree_root, link_path, target_is_directory=True)
