"""
Session State Store - the ``state.env`` record of one QA session.

The file is a list of ``KEY="value"`` lines in a fixed order, every key
present even when empty, so shell tooling can ``source`` it directly:

    QA_STATE_ROOT="/tmp/brad-os-qa"
    SESSION_ID="demo"
    FUNCTIONS_PORT="18320"
    SIMULATOR_UDID=""
    ...

Values are written verbatim between the quotes and read back by stripping
the quotes; nothing is escaped. Internally the record is a typed QaState;
empty values load as None.
"""

import logging
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, field_validator

from dev_cli.qa.ports import Ports

logger = logging.getLogger(__name__)

# Field name -> state.env key, in file order.
STATE_KEYS: Dict[str, str] = {
    "qa_state_root": "QA_STATE_ROOT",
    "worktree_root": "WORKTREE_ROOT",
    "session_id": "SESSION_ID",
    "project_id": "PROJECT_ID",
    "functions_port": "FUNCTIONS_PORT",
    "hosting_port": "HOSTING_PORT",
    "firestore_port": "FIRESTORE_PORT",
    "ui_port": "UI_PORT",
    "otel_port": "OTEL_PORT",
    "hub_port": "HUB_PORT",
    "logging_port": "LOGGING_PORT",
    "simulator_udid": "SIMULATOR_UDID",
    "simulator_name": "SIMULATOR_NAME",
    "simulator_lock_dir": "SIMULATOR_LOCK_DIR",
    "firebase_config": "FIREBASE_CONFIG",
    "firebase_log": "FIREBASE_LOG",
    "otel_log": "OTEL_LOG",
    "firebase_pid_file": "FIREBASE_PID_FILE",
    "otel_pid_file": "OTEL_PID_FILE",
}


class QaState(BaseModel):
    """Typed view of ``state.env``."""

    qa_state_root: Optional[str] = None
    worktree_root: Optional[str] = None
    session_id: Optional[str] = None
    project_id: Optional[str] = None
    functions_port: Optional[int] = None
    hosting_port: Optional[int] = None
    firestore_port: Optional[int] = None
    ui_port: Optional[int] = None
    otel_port: Optional[int] = None
    hub_port: Optional[int] = None
    logging_port: Optional[int] = None
    simulator_udid: Optional[str] = None
    simulator_name: Optional[str] = None
    simulator_lock_dir: Optional[str] = None
    firebase_config: Optional[str] = None
    firebase_log: Optional[str] = None
    otel_log: Optional[str] = None
    firebase_pid_file: Optional[str] = None
    otel_pid_file: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def _empty_is_none(cls, value):
        if isinstance(value, str) and value == "":
            return None
        if isinstance(value, Path):
            return str(value)
        return value

    @field_validator(
        "functions_port",
        "hosting_port",
        "firestore_port",
        "ui_port",
        "otel_port",
        "hub_port",
        "logging_port",
        mode="before",
    )
    @classmethod
    def _lenient_port(cls, value):
        # Unparseable or out-of-range ports load as absent.
        if isinstance(value, str):
            try:
                value = int(value.strip())
            except ValueError:
                logger.debug(f"Ignoring unparseable port value: {value!r}")
                return None
        if isinstance(value, int) and not 0 < value < 65536:
            return None
        return value

    # =========================================================================
    # Load / save
    # =========================================================================

    @classmethod
    def parse(cls, raw: str) -> "QaState":
        """Parse ``KEY="value"`` text. Unknown keys and comments are ignored."""
        values = parse_env_lines(raw)
        fields = {
            field: values[key]
            for field, key in STATE_KEYS.items()
            if key in values
        }
        return cls(**fields)

    @classmethod
    def load(cls, path: Path) -> "QaState":
        """
        Load a state file.

        Returns an empty state when the file does not exist, which is how a
        session with no prior qa-start is represented.
        """
        try:
            raw = Path(path).read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug(f"No session state at {path}")
            return cls()
        return cls.parse(raw)

    def render(self) -> str:
        lines = []
        for field, key in STATE_KEYS.items():
            value = getattr(self, field)
            text = "" if value is None else str(value)
            lines.append(f'{key}="{text}"')
        return "\n".join(lines) + "\n"

    def save(self, path: Path) -> None:
        """Write the state file, replacing any previous contents."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.tmp")
        tmp_path.write_text(self.render(), encoding="utf-8")
        tmp_path.replace(path)

    # =========================================================================
    # Merge helpers
    # =========================================================================

    def persisted_ports(self) -> Optional[Ports]:
        """
        Ports recorded by a previous run, or None when there are none.

        FUNCTIONS_PORT anchors the block; any other missing port falls back
        to its fixed offset from it.
        """
        functions = self.functions_port
        if functions is None:
            return None
        return Ports(
            functions=functions,
            hosting=self.hosting_port or functions + 1,
            firestore=self.firestore_port or functions + 2,
            ui=self.ui_port or functions + 3,
            otel=self.otel_port or functions + 4,
            hub=self.hub_port or functions + 5,
            logging=self.logging_port or functions + 6,
        )

    def with_ports(self, ports: Ports) -> "QaState":
        return self.model_copy(
            update={
                "functions_port": ports.functions,
                "hosting_port": ports.hosting,
                "firestore_port": ports.firestore,
                "ui_port": ports.ui,
                "otel_port": ports.otel,
                "hub_port": ports.hub,
                "logging_port": ports.logging,
            }
        )

    def recorded_ports(self) -> list[int]:
        """Every non-empty port in the record (for listener cleanup)."""
        return [
            port
            for port in (
                self.functions_port,
                self.firestore_port,
                self.hosting_port,
                self.ui_port,
                self.hub_port,
                self.logging_port,
                self.otel_port,
            )
            if port is not None
        ]


def resolve_ports(existing: QaState, session_id: str) -> Ports:
    """Reuse the persisted port block, or derive one for a new session."""
    ports = existing.persisted_ports()
    if ports is not None:
        logger.debug(f"Reusing persisted ports for {session_id}: {ports}")
        return ports
    return Ports.derive(session_id)


def parse_env_lines(raw: str) -> Dict[str, str]:
    """Parse ``KEY="value"`` / ``KEY=value`` lines into a dict."""
    values: Dict[str, str] = {}
    for line in raw.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        values[key] = value
    return values
