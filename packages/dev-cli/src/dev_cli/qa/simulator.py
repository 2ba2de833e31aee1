"""
Device Lease Manager - exclusive simulator leases between QA sessions.

A lease is a directory ``<QA_STATE_ROOT>/device-locks/<udid>.lock`` holding
a ``session`` file with the owner's session id. ``mkdir`` either creates the
directory or fails because it exists, which makes it the mutual-exclusion
primitive shared by every qa-start on the machine. Only the owner (or a
cleanup matching the ``session`` contents on its behalf) removes a lock.

Candidates come from ``xcrun simctl list devices available``; only devices
in the first iOS runtime section are considered, phones before anything else.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from dev_cli.qa.errors import LeaseUnavailableError, NoMatchingSimulatorError
from dev_cli.qa.runner import CommandRunner

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"
SESSION_FILE = "session"

_DEVICE_LINE = re.compile(r"^\s*(.+?)\s+\(([A-Fa-f0-9-]+)\)")

# Variables injected into a leased simulator's launchd environment.
API_URL_VAR = "BRAD_OS_API_URL"
OTEL_URL_VAR = "BRAD_OS_OTEL_BASE_URL"
QA_ID_VAR = "BRAD_OS_QA_ID"
INJECTED_VARS = (API_URL_VAR, OTEL_URL_VAR, QA_ID_VAR)


@dataclass(frozen=True)
class SimulatorCandidate:
    name: str
    udid: str

    @property
    def is_phone(self) -> bool:
        return self.name.startswith("iPhone")


@dataclass(frozen=True)
class SimulatorLease:
    """A simulator held by a session, and whether this run created the lock."""

    name: str
    udid: str
    lock_dir: Path
    acquired: bool


# ============================================================================
# Listing
# ============================================================================

def parse_available_simulators(raw: str) -> List[SimulatorCandidate]:
    """
    Parse ``simctl list devices available`` text into candidates.

    Only the first ``-- iOS ... --`` section counts; any other ``--`` header
    (tvOS, watchOS, a second iOS runtime) ends it.
    """
    candidates = []
    in_ios = False
    saw_ios_header = False

    for line in raw.splitlines():
        if line.startswith("-- iOS"):
            in_ios = not saw_ios_header
            saw_ios_header = True
            continue

        if line.startswith("--"):
            in_ios = False
            continue

        if not in_ios or "(" not in line:
            continue

        match = _DEVICE_LINE.match(line)
        if match:
            name, udid = match.group(1).strip(), match.group(2)
            if name and udid:
                candidates.append(SimulatorCandidate(name=name, udid=udid))

    return candidates


def name_for_udid(listing: str, udid: str) -> Optional[str]:
    for candidate in parse_available_simulators(listing):
        if candidate.udid == udid:
            return candidate.name
    return None


def list_available(runner: CommandRunner, cwd: Optional[Path] = None) -> str:
    result = runner.run(["xcrun", "simctl", "list", "devices", "available"], cwd=cwd)
    if not result.ok:
        logger.warning(f"simctl list failed ({result.returncode}): {result.stderr.strip()}")
    return result.stdout


# ============================================================================
# Locks
# ============================================================================

def lock_dir_for(device_locks_dir: Path, udid: str) -> Path:
    return Path(device_locks_dir) / f"{udid}{LOCK_SUFFIX}"


def read_lock_owner(lock_dir: Path) -> Optional[str]:
    """Owner session id of a lock directory, or None if unreadable."""
    try:
        return (Path(lock_dir) / SESSION_FILE).read_text().strip()
    except OSError:
        return None


def is_owner_of_lock(lock_dir: Path, session_id: str) -> bool:
    return read_lock_owner(lock_dir) == session_id


def claim_lock(device_locks_dir: Path, udid: str, session_id: str) -> Optional[Tuple[Path, bool]]:
    """
    Try to lease one simulator for a session.

    Returns:
        (lock_dir, acquired) where acquired is True when this call created
        the lock and False when the session already owned it; None when
        another session holds it.
    """
    device_locks_dir = Path(device_locks_dir)
    device_locks_dir.mkdir(parents=True, exist_ok=True)
    lock_dir = lock_dir_for(device_locks_dir, udid)

    try:
        lock_dir.mkdir()
    except FileExistsError:
        if is_owner_of_lock(lock_dir, session_id):
            logger.debug(f"Re-claimed {lock_dir} for {session_id}")
            return lock_dir, False
        return None

    (lock_dir / SESSION_FILE).write_text(f"{session_id}\n")
    logger.info(f"Leased {udid} to {session_id}")
    return lock_dir, True


def release_lock(lock_dir: Path, session_id: str) -> bool:
    """Remove a lock directory if (and only if) session_id owns it."""
    lock_dir = Path(lock_dir)
    if not lock_dir.is_dir() or not is_owner_of_lock(lock_dir, session_id):
        return False
    return _remove_lock(lock_dir)


def release_session_locks(device_locks_dir: Path, session_id: str) -> List[Path]:
    """Release every lock under the root whose ``session`` file names session_id."""
    released = []
    for lock_dir in _iter_lock_dirs(device_locks_dir):
        if is_owner_of_lock(lock_dir, session_id) and _remove_lock(lock_dir):
            released.append(lock_dir)
    return released


def list_locks(device_locks_dir: Path) -> List[Tuple[str, str]]:
    """(udid, owner) for every lock directory; owner is 'unknown' if unreadable."""
    return [
        (lock_dir.name[: -len(LOCK_SUFFIX)], read_lock_owner(lock_dir) or "unknown")
        for lock_dir in _iter_lock_dirs(device_locks_dir)
    ]


def _iter_lock_dirs(device_locks_dir: Path) -> List[Path]:
    device_locks_dir = Path(device_locks_dir)
    if not device_locks_dir.is_dir():
        return []
    return sorted(
        entry
        for entry in device_locks_dir.iterdir()
        if entry.is_dir() and entry.name.endswith(LOCK_SUFFIX)
    )


def _remove_lock(lock_dir: Path) -> bool:
    try:
        (lock_dir / SESSION_FILE).unlink(missing_ok=True)
        lock_dir.rmdir()
    except OSError as e:
        logger.debug(f"Could not remove lock {lock_dir}: {e}")
        return False
    return True


# ============================================================================
# Choosing a simulator
# ============================================================================

def choose_simulator(
    device_request: Optional[str],
    listing: str,
    device_locks_dir: Path,
    session_id: str,
) -> SimulatorLease:
    """
    Lease the first claimable simulator matching the request.

    Raises:
        NoMatchingSimulatorError: Nothing in the listing matches the request
        LeaseUnavailableError: Every match is leased by another session
    """
    candidates = parse_available_simulators(listing)

    if device_request:
        candidates = [
            c for c in candidates
            if c.udid == device_request or device_request in c.name
        ]

    if not candidates:
        raise NoMatchingSimulatorError(device_request)

    phones = [c for c in candidates if c.is_phone]
    others = [c for c in candidates if not c.is_phone]

    for candidate in phones + others:
        claimed = claim_lock(device_locks_dir, candidate.udid, session_id)
        if claimed is not None:
            lock_dir, acquired = claimed
            return SimulatorLease(candidate.name, candidate.udid, lock_dir, acquired)

    raise LeaseUnavailableError(session_id, list_locks(device_locks_dir))


def reusable_lease(
    listing: str,
    session_id: str,
    udid: Optional[str],
    lock_dir: Optional[str],
) -> Optional[SimulatorLease]:
    """
    The lease recorded in a previous state, if it is still valid.

    Valid means the lock directory still exists, is owned by this session,
    and the device is still in the current listing.
    """
    if not udid or not lock_dir:
        return None
    if not Path(lock_dir).is_dir() or not is_owner_of_lock(Path(lock_dir), session_id):
        return None
    name = name_for_udid(listing, udid)
    if name is None:
        return None
    return SimulatorLease(name, udid, Path(lock_dir), acquired=False)


class LeaseGuard:
    """
    Releases a freshly acquired lease unless the run completes.

    Used around the part of qa-start between taking a new lease and
    persisting it in state.env; a failure in between must not leak the
    simulator to a session that never recorded it.

        with LeaseGuard(session_id) as guard:
            lease = choose_simulator(...)
            guard.track(lease)
            ...
            state.save(path)
            guard.commit()
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        self._lease: Optional[SimulatorLease] = None

    def track(self, lease: Optional[SimulatorLease]) -> None:
        if lease is not None and lease.acquired:
            self._lease = lease

    def commit(self) -> None:
        self._lease = None

    def __enter__(self) -> "LeaseGuard":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None and self._lease is not None:
            if release_lock(self._lease.lock_dir, self.session_id):
                logger.info(f"Released lease on {self._lease.udid} after failed start")
        self._lease = None


# ============================================================================
# simctl control
# ============================================================================

def boot_and_inject(
    runner: CommandRunner,
    udid: str,
    session_id: str,
    hosting_port: int,
    otel_port: int,
    cwd: Optional[Path] = None,
) -> None:
    """Boot the simulator and point the app at this session's services."""
    # Booting an already-booted device fails harmlessly.
    runner.run(["xcrun", "simctl", "boot", udid], cwd=cwd)
    runner.run(["xcrun", "simctl", "bootstatus", udid, "-b"], cwd=cwd)

    values = {
        API_URL_VAR: f"http://127.0.0.1:{hosting_port}/api/dev",
        OTEL_URL_VAR: f"http://127.0.0.1:{otel_port}",
        QA_ID_VAR: session_id,
    }
    for key, value in values.items():
        result = runner.run(
            ["xcrun", "simctl", "spawn", udid, "launchctl", "setenv", key, value],
            cwd=cwd,
        )
        if not result.ok:
            logger.warning(f"setenv {key} on {udid} failed: {result.stderr.strip()}")

    runner.run(["xcrun", "simctl", "spawn", udid, "launchctl", "unsetenv", "USE_EMULATOR"], cwd=cwd)


def cleanup_simulator(
    runner: CommandRunner,
    udid: str,
    shutdown: bool,
) -> List[str]:
    """Clear injected variables and optionally shut the simulator down."""
    messages = []
    for key in INJECTED_VARS:
        runner.run(["xcrun", "simctl", "spawn", udid, "launchctl", "unsetenv", key])
    messages.append(f"Simulator: cleared QA environment on {udid}")

    if shutdown:
        result = runner.run(["xcrun", "simctl", "shutdown", udid])
        if result.ok:
            messages.append(f"Simulator: shut down {udid}")
        else:
            messages.append(f"Simulator: shutdown of {udid} skipped (not booted?)")
    return messages
