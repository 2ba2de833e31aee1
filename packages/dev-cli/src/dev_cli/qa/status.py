"""qa-status - read-only view of one QA session."""

from pathlib import Path
from typing import Any, Dict, Optional

from dev_cli.config import SessionPaths
from dev_cli.qa.simulator import read_lock_owner
from dev_cli.qa.start import api_base_url, functions_health_url, otel_base_url
from dev_cli.qa.state import QaState
from dev_cli.qa.supervisor import ProcessSupervisor


def session_status(qa_state_root: Path, session_id: str) -> Dict[str, Any]:
    """
    Collect the state of a session without changing anything.

    Returns a dict with the persisted state, liveness of both supervised
    processes, and whether the recorded simulator lease is still held.
    """
    paths = SessionPaths(qa_state_root=qa_state_root, session_id=session_id)
    state = QaState.load(paths.state_file)

    processes = {}
    for name, pid_file, log_file in (
        ("firebase", state.firebase_pid_file or paths.firebase_pid_file, state.firebase_log or paths.firebase_log),
        ("otel", state.otel_pid_file or paths.otel_pid_file, state.otel_log or paths.otel_log),
    ):
        supervisor = ProcessSupervisor(name, Path(pid_file), Path(log_file))
        processes[name] = {
            "pid": supervisor.read_pid(),
            "running": supervisor.is_running(),
            "log": str(log_file),
        }

    urls: Dict[str, str] = {}
    ports = state.persisted_ports()
    if ports is not None:
        if state.project_id:
            urls["functions"] = functions_health_url(ports, state.project_id)
        urls["api"] = api_base_url(ports)
        urls["otel"] = otel_base_url(ports)

    lease_owner: Optional[str] = None
    if state.simulator_lock_dir and Path(state.simulator_lock_dir).is_dir():
        lease_owner = read_lock_owner(Path(state.simulator_lock_dir))

    return {
        "session_id": session_id,
        "state_file": str(paths.state_file),
        "exists": paths.state_file.exists(),
        "project_id": state.project_id,
        "urls": urls,
        "state": state.model_dump(),
        "processes": processes,
        "simulator": {
            "udid": state.simulator_udid,
            "name": state.simulator_name,
            "lock_dir": state.simulator_lock_dir,
            "leased": lease_owner == session_id,
        },
    }
