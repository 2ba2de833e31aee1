"""
dev-cli Configuration

This module manages dev-cli configuration via environment variables and
per-invocation option records.

Configuration is loaded from (in order of precedence):
1. Command-line flags (merged into QaStartOptions / QaStopOptions)
2. Environment variables
3. Built-in defaults

Key settings:
- QA_STATE_ROOT: Shared directory for every QA session on this machine
  (default: /tmp/brad-os-qa)
- SESSION_ID: Session identifier used when --id is not given
- ROOT_DIR / BRAD_OS_REPO_ROOT: Workspace root override (default: current directory)
- DEV_CLI_LOG_LEVEL: Logging level for diagnostic output (default: WARNING)

Shared state layout:
    <QA_STATE_ROOT>/
    ├── device-locks/
    │   └── <udid>.lock/session     # Owning session id
    └── sessions/
        └── <session-id>/
            ├── state.env           # Session record (KEY="value" lines)
            ├── firebase.json       # Generated emulator config
            ├── worktree-root       # Symlink to the workspace root
            ├── logs/{firebase,otel}.log
            ├── pids/{firebase,otel}.pid
            ├── data/               # Emulator import/export
            └── otel/               # Collector output
"""

from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_QA_STATE_ROOT = Path("/tmp/brad-os-qa")
DEFAULT_TIMEOUT_SECONDS = 120
PROJECT_ID_PREFIX = "brad-os-"


class QASettings(BaseSettings):
    """
    dev-cli settings loaded from the environment.

    Settings are read once per invocation and merged with command-line flags
    into an options record; nothing below the CLI layer reads os.environ.
    """

    qa_state_root: Path = Field(
        default=DEFAULT_QA_STATE_ROOT,
        validation_alias=AliasChoices("QA_STATE_ROOT"),
    )
    session_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("SESSION_ID"),
    )
    root_dir: Optional[Path] = Field(
        default=None,
        validation_alias=AliasChoices("ROOT_DIR", "BRAD_OS_REPO_ROOT"),
    )
    log_level: str = Field(
        default="WARNING",
        validation_alias=AliasChoices("DEV_CLI_LOG_LEVEL"),
    )

    model_config = SettingsConfigDict(
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def worktree_root(self) -> Path:
        """Workspace root: explicit override, else the current directory."""
        if self.root_dir:
            return Path(self.root_dir).expanduser().resolve()
        return Path.cwd().resolve()


# Global settings instance - will be created lazily
_settings: Optional[QASettings] = None


def get_settings(force_reload: bool = False) -> QASettings:
    """
    Get the global QASettings instance.

    Args:
        force_reload: Re-read the environment (useful in tests)

    Returns:
        QASettings instance
    """
    global _settings

    if _settings is None or force_reload:
        _settings = QASettings()

    return _settings


def reload_settings() -> QASettings:
    """Reload settings from the current environment."""
    return get_settings(force_reload=True)


class SessionPaths(BaseModel):
    """Every on-disk location owned by (or shared with) one session."""

    model_config = ConfigDict(frozen=True)

    qa_state_root: Path
    session_id: str

    @property
    def session_dir(self) -> Path:
        return self.qa_state_root / "sessions" / self.session_id

    @property
    def device_locks_dir(self) -> Path:
        return self.qa_state_root / "device-locks"

    @property
    def log_dir(self) -> Path:
        return self.session_dir / "logs"

    @property
    def pid_dir(self) -> Path:
        return self.session_dir / "pids"

    @property
    def data_dir(self) -> Path:
        return self.session_dir / "data"

    @property
    def otel_dir(self) -> Path:
        return self.session_dir / "otel"

    @property
    def state_file(self) -> Path:
        return self.session_dir / "state.env"

    @property
    def worktree_link(self) -> Path:
        return self.session_dir / "worktree-root"

    @property
    def firebase_config(self) -> Path:
        return self.session_dir / "firebase.json"

    @property
    def firebase_log(self) -> Path:
        return self.log_dir / "firebase.log"

    @property
    def otel_log(self) -> Path:
        return self.log_dir / "otel.log"

    @property
    def firebase_pid_file(self) -> Path:
        return self.pid_dir / "firebase.pid"

    @property
    def otel_pid_file(self) -> Path:
        return self.pid_dir / "otel.pid"


class QaStartOptions(BaseModel):
    """Options for one qa-start invocation (CLI flags merged over settings)."""

    model_config = ConfigDict(frozen=True)

    qa_state_root: Path = DEFAULT_QA_STATE_ROOT
    worktree_root: Path
    session_id: Optional[str] = None
    project_id: Optional[str] = None
    device_request: Optional[str] = None
    timeout_seconds: int = Field(default=DEFAULT_TIMEOUT_SECONDS, ge=0)
    fresh: bool = False
    start_firebase: bool = True
    start_otel: bool = True
    setup_simulator: bool = True


class QaStopOptions(BaseModel):
    """Options for one qa-stop invocation."""

    model_config = ConfigDict(frozen=True)

    qa_state_root: Path = DEFAULT_QA_STATE_ROOT
    worktree_root: Path
    session_id: Optional[str] = None
    shutdown_simulator: bool = False
