from __future__ import annotations

import sys

import questionary
import typer
from questionary import Choice, Style

from . import console

# Use questionary for inline, non-fullscreen selections.

_SELECT_STYLE = Style(
    [
        ("pointer", "ansiyellow bold"),
        ("selected", "ansicyan bold"),
        ("highlighted", "ansicyan bold"),
        ("instruction", "ansiblack"),
    ]
)


def select_item(message: str, choices: list[Choice], *, clear_after: bool = False) -> str | None:
    try:
        result = questionary.select(
            message,
            choices=choices,
            default=None,
            use_shortcuts=False,
            pointer="▶",
            style=_SELECT_STYLE,
        ).ask()
    except KeyboardInterrupt:
        _abort_interactive()
    if result is None:
        _abort_interactive()
    if clear_after:
        _clear_prompt(len(choices) + 1)
    return str(result)


def _abort_interactive() -> None:
    console.err("Aborted by user.")
    raise typer.Exit(code=1)


def _clear_prompt(lines: int) -> None:
    if not sys.stdout.isatty() or lines <= 0:
        return
    # Clear the prompt block so nested menus don't spam scrollback.
    for _ in range(lines):
        sys.stdout.write("\x1b[2K\x1b[1A")
    sys.stdout.write("\x1b[2K\r")
    sys.stdout.flush()
