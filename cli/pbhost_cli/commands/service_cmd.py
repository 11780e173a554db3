from __future__ import annotations

import typer
from questionary import Choice

from pbhost_core.controller import DEFAULT_LOG_LINES, ControlResult, ServiceController
from pbhost_core.errors import ValidationError

from .. import console, privileges
from ..config import load_config
from ..interactive import select_item

app = typer.Typer(help="Control the installed PocketBase service.")

CONTROL_FAILED_EXIT = 3

MENU_ITEMS = [
    ("status", "Show service status"),
    ("start", "Start service"),
    ("stop", "Stop service"),
    ("restart", "Restart service"),
    ("enable", "Enable service at boot"),
    ("disable", "Disable service at boot"),
    ("logs", "View recent logs"),
    ("follow-logs", "Follow logs (Ctrl+C to stop)"),
    ("clear-logs", "Clear all logs"),
    ("check", "Check accessibility"),
    ("nginx-config", "Show Nginx configuration"),
    ("run-binary", "Run PocketBase binary directly"),
    ("stop-binary", "Stop directly running binary"),
    ("restart-binary", "Restart directly running binary"),
]


def build_controller() -> ServiceController:
    return ServiceController(layout=load_config().layout())


def show_result(result: ControlResult) -> None:
    if result.output:
        console.print(result.output, markup=False, highlight=False)
    if result.ok:
        console.ok(result.message)
    else:
        console.err(result.message)


def run_verb(verb: str, arg: int | None = None) -> ControlResult:
    privileges.require_root()
    controller = build_controller()
    try:
        result = controller.dispatch(verb, arg)
    except ValidationError as exc:
        console.err(str(exc))
        raise typer.Exit(code=2)
    except OSError as exc:
        console.err(str(exc))
        raise typer.Exit(code=CONTROL_FAILED_EXIT)
    show_result(result)
    if not result.ok:
        raise typer.Exit(code=CONTROL_FAILED_EXIT)
    return result


def run_menu() -> None:
    privileges.require_root()
    controller = build_controller()
    choices = [Choice(title=title, value=verb) for verb, title in MENU_ITEMS]
    choices.append(Choice(title="Exit", value="__exit__"))
    while True:
        console.section("PocketBase Manager")
        verb = select_item("Choose an action", choices)
        if verb == "__exit__":
            return
        arg = None
        if verb == "logs":
            arg = typer.prompt("Number of lines", default=DEFAULT_LOG_LINES, type=int)
        try:
            show_result(controller.dispatch(verb, arg))
        except (ValidationError, OSError) as exc:
            console.err(str(exc))


@app.callback(invoke_without_command=True)
def service(ctx: typer.Context):
    """Run a service verb, or pick one from a menu when none is given."""
    if ctx.invoked_subcommand is None:
        run_menu()


@app.command("status")
def status_cmd():
    """Show service status."""
    run_verb("status")


@app.command("start")
def start_cmd():
    """Start the service (no-op when running)."""
    run_verb("start")


@app.command("stop")
def stop_cmd():
    """Stop the service, forcing it after a grace period."""
    run_verb("stop")


@app.command("restart")
def restart_cmd():
    """Stop, reset data permissions and start."""
    run_verb("restart")


@app.command("enable")
def enable_cmd():
    """Enable the service at boot."""
    run_verb("enable")


@app.command("disable")
def disable_cmd():
    """Disable the service at boot."""
    run_verb("disable")


@app.command("logs")
def logs_cmd(
        lines: int = typer.Option(DEFAULT_LOG_LINES, "--lines", "-n", min=1, help="Number of log lines."),
):
    """Show the last journal lines."""
    run_verb("logs", lines)


@app.command("follow-logs")
def follow_logs_cmd():
    """Stream logs until interrupted."""
    run_verb("follow-logs")


@app.command("clear-logs")
def clear_logs_cmd():
    """Purge journal, internal and Nginx logs for the service."""
    run_verb("clear-logs")


@app.command("check")
def check_cmd():
    """Check the service over HTTP on its local port."""
    run_verb("check")


@app.command("nginx-config")
def nginx_config_cmd():
    """Print the Nginx sites that proxy to the service."""
    run_verb("nginx-config")


@app.command("run-binary")
def run_binary_cmd():
    """Run the binary in the foreground, bypassing systemd."""
    run_verb("run-binary")


@app.command("stop-binary")
def stop_binary_cmd():
    """Stop a directly running binary."""
    run_verb("stop-binary")


@app.command("restart-binary")
def restart_binary_cmd():
    """Stop and rerun the binary in the foreground."""
    run_verb("restart-binary")
