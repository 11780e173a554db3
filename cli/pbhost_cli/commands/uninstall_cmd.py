from __future__ import annotations

import typer
from rich.markup import escape
from rich.prompt import Confirm
from rich.table import Table

from pbhost_core.decommission import DecommissionSummary, Decommissioner

from .. import console, privileges
from ..config import load_config


def build_decommissioner() -> Decommissioner:
    return Decommissioner(layout=load_config().layout())


def render_summary(summary: DecommissionSummary) -> Table:
    table = Table(title="Removed")
    table.add_column("Artifact")
    for item in summary.removed:
        table.add_row(escape(item))
    return table


def uninstall(
        keep_data: bool | None = typer.Option(
            None, "--keep-data/--delete-data", help="Move pb_data to a timestamped backup instead of deleting it."
        ),
        yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """Remove PocketBase and everything the installer configured."""
    privileges.require_root()
    console.section("PocketBase Uninstallation")
    if not yes:
        console.warn("This removes PocketBase, its service, Nginx sites, fail2ban rules and backups schedule.")
        if not Confirm.ask("Are you sure you want to uninstall PocketBase?", default=False, console=console.console):
            console.info("Uninstallation cancelled.")
            raise typer.Exit(code=1)
    if keep_data is None:
        if yes:
            keep_data = True
        else:
            keep_data = Confirm.ask("Keep a backup of the PocketBase data?", default=True, console=console.console)

    summary = build_decommissioner().run(keep_data=keep_data)

    if summary.removed:
        console.print(render_summary(summary))
    else:
        console.info("Nothing to remove; PocketBase does not appear to be installed.")
    for error in summary.errors:
        console.warn(error)
    if summary.data_backup:
        console.ok(f"PocketBase data was kept at {summary.data_backup}")
    console.section("Uninstallation Complete")
    if summary.errors:
        console.warn(f"Finished with {len(summary.errors)} problem(s); review the warnings above.")
    else:
        console.ok("PocketBase has been removed from this host.")
