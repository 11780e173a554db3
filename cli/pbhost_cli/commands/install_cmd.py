from __future__ import annotations

from typing import Callable

import typer
from rich.markup import escape
from rich.prompt import Confirm
from rich.table import Table

from pbhost_core.errors import ValidationError
from pbhost_core.model import DEFAULT_PORT, Configuration
from pbhost_core.reconciler import Reconciler, RunResult
from pbhost_core.runner import tail
from pbhost_core.steps import DEFAULT_STEPS, Step, StepState
from pbhost_core.validators import (
    MIN_PASSWORD_LENGTH,
    validate_domain,
    validate_email,
    validate_numeric,
    validate_port,
    validate_rate_limit,
    validate_subdomain,
)

from .. import console, privileges
from ..config import AppConfig, load_config

DEFAULT_RATE_LIMIT = "10r/s"
DEFAULT_BURST = 20


def _prompt_valid(text: str, check: Callable[[str], bool], error: str, *, default: str | None = None) -> str:
    while True:
        value = typer.prompt(text, default=default, show_default=default is not None)
        value = str(value).strip()
        if check(value):
            return value
        console.err(error)


def _ask(question: str, *, default: bool = False) -> bool:
    return Confirm.ask(question, default=default, console=console.console)


def _prompt_password() -> str:
    while True:
        first = typer.prompt("Admin password", hide_input=True)
        if len(first) < MIN_PASSWORD_LENGTH:
            console.err(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long. Please try again.")
            continue
        second = typer.prompt("Confirm admin password", hide_input=True)
        if first == second:
            return first
        console.err("Passwords do not match. Please try again.")


def collect_configuration() -> Configuration:
    """Ask for every install setting, re-asking until each value is valid."""
    domain = _prompt_valid(
        "Domain name for PocketBase (e.g. example.com)",
        validate_domain,
        "Invalid domain name. Please enter a valid domain name.",
    )
    subdomain = _prompt_valid(
        "Subdomain (e.g. www), leave blank for none",
        validate_subdomain,
        "Invalid subdomain.",
        default="",
    )
    port = int(
        _prompt_valid(
            "PocketBase port",
            validate_port,
            "Invalid port number. Please enter a number between 1 and 65535.",
            default=str(DEFAULT_PORT),
        )
    )
    enable_https = _ask("Set up HTTPS with Let's Encrypt?", default=True)

    rate_limit: str | None = None
    burst: int | None = None
    enable_rate_limiting = _ask("Enable rate limiting?", default=True)
    if enable_rate_limiting:
        rate_limit = _prompt_valid(
            "Requests per second (e.g. 10r/s)",
            validate_rate_limit,
            "Invalid rate limit. Use the format <number>r/s.",
            default=DEFAULT_RATE_LIMIT,
        )
        burst = int(
            _prompt_valid(
                "Burst size",
                lambda v: validate_numeric(v) and int(v) > 0,
                "Burst size must be a positive number.",
                default=str(DEFAULT_BURST),
            )
        )

    configure_security = _ask("Configure advanced security (fail2ban, security headers)?", default=True)
    block_agents = False
    if configure_security:
        block_agents = _ask("Block suspicious User-Agents?", default=True)
    enable_backups = _ask("Enable daily backups?", default=True)

    admin_email = _prompt_valid("Admin email", validate_email, "Invalid email address. Please try again.")
    admin_password = _prompt_password()

    return Configuration(
        domain=domain,
        subdomain=subdomain,
        port=port,
        enable_https=enable_https,
        enable_rate_limiting=enable_rate_limiting,
        rate_limit=rate_limit,
        rate_limit_burst=burst,
        configure_security=configure_security,
        block_suspicious_user_agents=block_agents,
        enable_backups=enable_backups,
        admin_email=admin_email,
        admin_password=admin_password,
    )


def render_summary(config: Configuration) -> Table:
    table = Table(title="Configuration summary", show_header=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in config.summary():
        table.add_row(key, escape(value))
    return table


def build_reconciler(cfg: AppConfig, observer) -> Reconciler:
    return Reconciler(
        DEFAULT_STEPS,
        layout=cfg.layout(),
        observer=observer,
        release_repo=cfg.release_repo,
        release_api_url=cfg.release_api_url,
        release_version=cfg.release_version or None,
    )


def _observe(step: Step, state: StepState, note: str | None) -> None:
    if state is StepState.APPLYING:
        console.info(f"{step.title}...")
    elif state is StepState.DONE:
        console.ok(step.title)
    elif state is StepState.SKIPPED:
        console.info(f"{step.title}: skipped ({note})")


def report_failure(result: RunResult) -> None:
    step = next((s for s in DEFAULT_STEPS if s.name == result.failed_step), None)
    title = step.title if step else result.failed_step
    console.err(f"{title} failed (step {result.failed_step}, exit code {result.exit_code}): {result.message}")
    stdout = tail(result.stdout or "")
    stderr = tail(result.stderr or "")
    if stdout:
        console.err(f"Last stdout:\n{stdout}")
    if stderr:
        console.err(f"Last stderr:\n{stderr}")
    console.info(f"Fix the cause and resume with: pbhost install --from-step {result.failed_step}")


def report_success(config: Configuration, result: RunResult, cfg: AppConfig) -> None:
    console.section("Installation Complete")
    console.ok(result.message or "PocketBase has been installed and configured.")
    for line in result.degraded:
        console.warn(line)
    layout = cfg.layout()
    console.section("Next Steps")
    console.print(f"1. Point the DNS records for {config.full_domain} to this server's IP address.")
    console.print(f"2. Open the PocketBase Admin UI at {config.admin_url} and log in as {config.admin_email}.")
    console.print("3. Keep the system and its packages up to date.")
    if config.enable_backups:
        console.print(f"4. Backups run daily at 02:00 and are stored in {layout.backups_dir}.")


def install(
        domain: str | None = typer.Option(None, "--domain", help="Domain name (e.g. example.com)."),
        subdomain: str = typer.Option("", "--subdomain", help="Optional subdomain (e.g. www)."),
        port: int = typer.Option(DEFAULT_PORT, "--port", help="Local PocketBase port."),
        https: bool = typer.Option(False, "--https/--no-https", help="Obtain a Let's Encrypt certificate."),
        rate_limit: str | None = typer.Option(None, "--rate-limit", help="Enable rate limiting, e.g. 10r/s."),
        burst: int = typer.Option(DEFAULT_BURST, "--burst", help="Rate limit burst size."),
        security: bool = typer.Option(False, "--security/--no-security", help="Configure fail2ban and headers."),
        block_agents: bool = typer.Option(
            False, "--block-agents/--no-block-agents", help="Block suspicious User-Agents (needs --security)."
        ),
        backups: bool = typer.Option(False, "--backups/--no-backups", help="Schedule daily backups."),
        admin_email: str | None = typer.Option(None, "--admin-email", help="Admin account email."),
        admin_password: str | None = typer.Option(
            None, "--admin-password", envvar="PBHOST_ADMIN_PASSWORD", help="Admin account password."
        ),
        non_interactive: bool = typer.Option(False, "--non-interactive", help="Take every value from flags."),
        yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
        from_step: str | None = typer.Option(None, "--from-step", help="Resume from the named step."),
):
    """Install PocketBase behind Nginx on this host.

    Examples:
      pbhost install
      pbhost install --non-interactive --domain example.com --admin-email admin@example.com --security --backups
    """
    privileges.require_root()
    cfg = load_config()

    if from_step is not None and from_step not in {s.name for s in DEFAULT_STEPS}:
        console.err(f"Unknown step: {from_step}. See `pbhost steps`.")
        raise typer.Exit(code=2)

    if non_interactive:
        config = Configuration(
            domain=(domain or "").strip(),
            subdomain=subdomain.strip(),
            port=port,
            enable_https=https,
            enable_rate_limiting=rate_limit is not None,
            rate_limit=rate_limit,
            rate_limit_burst=burst if rate_limit is not None else None,
            configure_security=security,
            block_suspicious_user_agents=block_agents,
            enable_backups=backups,
            admin_email=(admin_email or "").strip(),
            admin_password=admin_password or "",
        )
        bad = config.problems()
        if bad:
            console.err(f"Invalid or missing values: {', '.join(bad)}")
            raise typer.Exit(code=2)
    else:
        console.section("PocketBase Installation and Setup")
        config = collect_configuration()

    console.print(render_summary(config))
    if not yes and not _ask("Proceed with the installation?", default=True):
        console.err("Aborted by user.")
        raise typer.Exit(code=1)

    reconciler = build_reconciler(cfg, _observe)
    console.section("Installing")
    try:
        result = reconciler.run(config, start_at=from_step)
    except ValidationError as exc:
        console.err(str(exc))
        raise typer.Exit(code=2)

    if not result.ok:
        report_failure(result)
        raise typer.Exit(code=result.exit_code)
    report_success(config, result, cfg)


def list_steps():
    """List provisioning steps in order with their exit codes."""
    table = Table(title="Provisioning steps")
    table.add_column("#", justify="right")
    table.add_column("Step")
    table.add_column("Description")
    table.add_column("Exit code", justify="right")
    table.add_column("Runs when")
    conditions = {
        "configure-https": "--https",
        "configure-fail2ban": "--security",
        "schedule-backups": "--backups",
    }
    for idx, step in enumerate(DEFAULT_STEPS, start=1):
        table.add_row(str(idx), step.name, step.title, str(step.exit_code), conditions.get(step.name, "always"))
    console.print(table)
