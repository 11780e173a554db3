from __future__ import annotations

import os

import typer

from pbhost_core.errors import PreconditionError

from . import console


def is_root() -> bool:
    return os.geteuid() == 0


def require_root() -> None:
    """Exit with the precondition code unless running as root."""
    if is_root():
        return
    exc = PreconditionError("Please run this command as root or with sudo.")
    console.err(str(exc))
    raise typer.Exit(code=exc.exit_code)
