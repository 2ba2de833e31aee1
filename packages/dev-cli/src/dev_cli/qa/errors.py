"""Exceptions raised by the QA session orchestrator."""

from typing import List, Tuple


class QAError(Exception):
    """Base class for every expected qa-start / qa-stop failure."""
    pass


class ConfigurationError(QAError):
    """Bad arguments, an unusable session id, or a broken template file."""
    pass


class NoMatchingSimulatorError(QAError):
    """No simulator in the current listing matches the device request."""

    def __init__(self, request: str | None):
        self.request = request
        super().__init__(
            f"No matching iOS simulators found for request: {request or '<auto>'}"
        )


class LeaseUnavailableError(QAError):
    """Every candidate simulator is leased by another session."""

    def __init__(self, session_id: str, owners: List[Tuple[str, str]]):
        self.session_id = session_id
        self.owners = owners
        lines = [f"  {udid} -> {owner}" for udid, owner in owners]
        super().__init__(
            f"No unlocked simulator is available for session '{session_id}'.\n"
            "Locked devices:\n" + "\n".join(lines)
        )


class ReadinessTimeoutError(QAError):
    """A supervised process did not pass its readiness probe in time."""

    def __init__(self, label: str, target: str, timeout_seconds: float):
        self.label = label
        self.target = target
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Timeout waiting for {label} {target}")
