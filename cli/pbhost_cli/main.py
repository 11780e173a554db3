from __future__ import annotations

import sys

import typer

from .commands import config_cmd, install_cmd, service_cmd, uninstall_cmd
from .logging_ import setup_logging


def _build_app() -> typer.Typer:
    app = typer.Typer(
        name="pbhost",
        help="Install, operate and remove PocketBase on an Ubuntu host.",
        no_args_is_help=False,
    )

    app.command("install")(install_cmd.install)
    app.command("steps")(install_cmd.list_steps)
    app.add_typer(service_cmd.app, name="service")
    app.command("uninstall")(uninstall_cmd.uninstall)
    app.add_typer(config_cmd.app, name="config")

    @app.callback(invoke_without_command=True)
    def _main(
            ctx: typer.Context,
            verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose logs."),
    ):
        setup_logging(verbose)
        if ctx.invoked_subcommand is None and len(sys.argv) == 1:
            from .interactive_menu import run_interactive_menu

            tokens = run_interactive_menu(app)
            if not tokens:
                raise typer.Exit(code=0)
            command = typer.main.get_command(app)
            command.main(
                args=tokens,
                prog_name=ctx.info_name or sys.argv[0],
                standalone_mode=True,
            )
            raise typer.Exit(code=0)

    return app


app = _build_app()
