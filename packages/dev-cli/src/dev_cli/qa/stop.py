"""
qa-stop - tear one QA session down.

Every step is best effort and reported; a session whose processes already
died (or that was never started) stops cleanly. Session data, logs and
state.env are left on disk for inspection.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from dev_cli.config import QaStopOptions, SessionPaths
from dev_cli.qa.ports import resolve_session_id
from dev_cli.qa.runner import CommandRunner
from dev_cli.qa.simulator import cleanup_simulator, release_lock, release_session_locks
from dev_cli.qa.start import FIREBASE_LABEL, OTEL_LABEL
from dev_cli.qa.state import QaState
from dev_cli.qa.supervisor import DEFAULT_STOP_GRACE, ProcessSupervisor

logger = logging.getLogger(__name__)


@dataclass
class QaStopReport:
    session_id: str
    messages: List[str] = field(default_factory=list)


def stop_session(
    options: QaStopOptions,
    runner: Optional[CommandRunner] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    grace_seconds: float = DEFAULT_STOP_GRACE,
) -> QaStopReport:
    """
    Stop the session's processes and release its simulator lease.

    Order: OTel collector, Firebase emulator, stray listeners on the recorded
    ports, simulator environment, lock directories.

    Raises:
        ConfigurationError: If the session id sanitizes to nothing
    """
    runner = runner or CommandRunner()
    session_id, generated = resolve_session_id(options.session_id, options.worktree_root)
    report = QaStopReport(session_id=session_id)
    if generated:
        report.messages.append(f"No --id provided. Using worktree session id: {session_id}")

    paths = SessionPaths(qa_state_root=options.qa_state_root, session_id=session_id)
    state = QaState.load(paths.state_file)

    for label, pid_file, log_file in (
        (OTEL_LABEL, state.otel_pid_file or paths.otel_pid_file, state.otel_log or paths.otel_log),
        (FIREBASE_LABEL, state.firebase_pid_file or paths.firebase_pid_file, state.firebase_log or paths.firebase_log),
    ):
        supervisor = ProcessSupervisor(
            label,
            Path(pid_file),
            Path(log_file),
            runner=runner,
            sleep=sleep,
            clock=clock,
        )
        report.messages.append(supervisor.stop(grace_seconds))

    for port in state.recorded_ports():
        runner.kill_listeners(port)

    if state.simulator_udid:
        report.messages.extend(
            cleanup_simulator(runner, state.simulator_udid, options.shutdown_simulator)
        )

    if state.simulator_lock_dir and release_lock(Path(state.simulator_lock_dir), session_id):
        report.messages.append(f"Simulator lease released: {state.simulator_lock_dir}")

    for lock_dir in release_session_locks(paths.device_locks_dir, session_id):
        report.messages.append(f"Simulator lease released: {lock_dir}")

    report.messages.append(f"QA session stopped: {session_id}")
    logger.info(f"Stopped QA session {session_id}")
    return report
