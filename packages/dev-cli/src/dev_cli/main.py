import json
import logging
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich import print
from rich.markup import escape

from dev_cli.config import (
    DEFAULT_TIMEOUT_SECONDS,
    QaStartOptions,
    QaStopOptions,
    get_settings,
)
from dev_cli.qa.errors import QAError
from dev_cli.qa.ports import resolve_session_id
from dev_cli.qa.runner import CommandRunner

logger = logging.getLogger(__name__)

APP_HELP = """
dev-cli: per-worktree QA environments for brad-os.

Each QA session gets its own Firebase emulator suite, OTel collector and
iOS simulator, on a port block derived from the session id, so several
agents can run QA side by side on one machine.

CORE WORKFLOW:
1. START:  `qa-start --id <id>` brings the session online (safe to re-run).
2. CHECK:  `qa-status --id <id>` shows what is running.
3. STOP:   `qa-stop --id <id>` stops processes and releases the simulator.

Without --id the session id comes from SESSION_ID, else from the worktree
directory name and a checksum of its path.
"""

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}

app = typer.Typer(
    name="dev-cli",
    help=APP_HELP,
    no_args_is_help=True,
    context_settings=CONTEXT_SETTINGS,
)
start_app = typer.Typer(name="qa-start", add_completion=False, context_settings=CONTEXT_SETTINGS)
stop_app = typer.Typer(name="qa-stop", add_completion=False, context_settings=CONTEXT_SETTINGS)
status_app = typer.Typer(name="qa-status", add_completion=False, context_settings=CONTEXT_SETTINGS)

ID_HELP = "QA session id (--agent is accepted as an alias)."


_logging_state = {"verbose": False}


def configure_logging(verbose: bool = False) -> None:
    """Set up root logging from --verbose or DEV_CLI_LOG_LEVEL."""
    if verbose:
        _logging_state["verbose"] = True
    if _logging_state["verbose"]:
        level = logging.DEBUG
    else:
        level = getattr(logging, get_settings(force_reload=True).log_level.upper(), logging.WARNING)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show diagnostic logging."),
):
    """
    Brad OS developer tooling.
    """
    configure_logging(verbose)


def _fail(error: Exception) -> None:
    print(f"[red]{escape(str(error))}[/red]")
    raise typer.Exit(code=1)


# ============================================================================
# qa-start
# ============================================================================

def qa_start(
    session_id: Optional[str] = typer.Option(None, "--id", "--agent", help=ID_HELP),
    project_id: Optional[str] = typer.Option(
        None, "--project-id", help="Firebase project id (default: brad-os-<id>)."
    ),
    device: Optional[str] = typer.Option(
        None, "--device", metavar="NAME|UDID", help="Simulator name fragment or exact UDID."
    ),
    timeout: int = typer.Option(
        DEFAULT_TIMEOUT_SECONDS, "--timeout", min=0, help="Readiness timeout in seconds."
    ),
    fresh: bool = typer.Option(False, "--fresh", help="Clear emulator data, OTel output and logs first."),
    no_firebase: bool = typer.Option(False, "--no-firebase", help="Do not start the Firebase emulators."),
    no_otel: bool = typer.Option(False, "--no-otel", help="Do not start the OTel collector."),
    no_simulator: bool = typer.Option(False, "--no-simulator", help="Do not lease or configure a simulator."),
):
    """
    Start (or resume) an isolated QA environment.

    Brings up the Firebase emulators and OTel collector on the session's
    ports, leases a simulator and points the app at them. Re-running for a
    running session reuses what is already there.
    """
    from dev_cli.qa.start import start_session

    configure_logging()
    settings = get_settings()

    try:
        options = QaStartOptions(
            qa_state_root=settings.qa_state_root,
            worktree_root=settings.worktree_root,
            session_id=session_id or settings.session_id,
            project_id=project_id,
            device_request=device,
            timeout_seconds=timeout,
            fresh=fresh,
            start_firebase=not no_firebase,
            start_otel=not no_otel,
            setup_simulator=not no_simulator,
        )
        start_session(options, runner=CommandRunner())
    except QAError as e:
        _fail(e)
    except ValidationError as e:
        _fail(e)


# ============================================================================
# qa-stop
# ============================================================================

def qa_stop(
    session_id: Optional[str] = typer.Option(None, "--id", "--agent", help=ID_HELP),
    shutdown_simulator: bool = typer.Option(
        False, "--shutdown-simulator", help="Also shut the leased simulator down."
    ),
):
    """
    Stop a QA environment and release its simulator.

    Data, logs and state.env stay in the session directory.
    """
    from dev_cli.qa.stop import stop_session

    configure_logging()
    settings = get_settings()

    try:
        options = QaStopOptions(
            qa_state_root=settings.qa_state_root,
            worktree_root=settings.worktree_root,
            session_id=session_id or settings.session_id,
            shutdown_simulator=shutdown_simulator,
        )
        report = stop_session(options, runner=CommandRunner())
    except QAError as e:
        _fail(e)
        return

    for message in report.messages:
        print(escape(message))


# ============================================================================
# qa-status
# ============================================================================

def qa_status(
    session_id: Optional[str] = typer.Option(None, "--id", "--agent", help=ID_HELP),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """
    Show a QA session's state.

    Displays:
    - Project id and service URLs
    - Firebase emulator and OTel collector PIDs
    - Simulator lease
    """
    from dev_cli.qa.status import session_status

    configure_logging()
    settings = get_settings()

    try:
        resolved, _ = resolve_session_id(session_id or settings.session_id, settings.worktree_root)
    except QAError as e:
        _fail(e)
        return

    status = session_status(Path(settings.qa_state_root), resolved)

    if json_output:
        typer.echo(json.dumps(status, indent=2))
        return

    if not status["exists"]:
        print(f"[dim]No QA session state for {resolved}[/dim]")
        print(f"  Expected: {status['state_file']}")
        return

    print(f"[bold]QA session {resolved}[/bold]")
    print(f"  Project ID:    {status['project_id'] or 'n/a'}")
    urls = status["urls"]
    if urls.get("functions"):
        print(f"  Functions URL: {urls['functions']}")
    if urls.get("api"):
        print(f"  API Base URL:  {urls['api']}")
        print(f"  OTel Base URL: {urls['otel']}")

    for name, label in (("firebase", "Firebase"), ("otel", "OTel")):
        process = status["processes"][name]
        if process["pid"] is None:
            state = "[dim]no pid[/dim]"
        elif process["running"]:
            state = f"[green]running[/green] (pid {process['pid']})"
        else:
            state = f"[yellow]stopped[/yellow] (stale pid {process['pid']})"
        print(f"  {label + ':':<15}{state}")

    simulator = status["simulator"]
    if simulator["udid"]:
        lease = "[green]leased[/green]" if simulator["leased"] else "[yellow]lease not held[/yellow]"
        print(f"  Simulator:     {simulator['name'] or 'n/a'} ({simulator['udid']}) {lease}")
    else:
        print("  Simulator:     n/a (not configured)")


# Same functions, registered both under the umbrella group and as the
# single-command apps behind the qa-start / qa-stop / qa-status scripts.
app.command("qa-start")(qa_start)
app.command("qa-stop")(qa_stop)
app.command("qa-status")(qa_status)
start_app.command()(qa_start)
stop_app.command()(qa_stop)
status_app.command()(qa_status)


if __name__ == "__main__":
    app()
