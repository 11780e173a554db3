from __future__ import annotations

from dataclasses import dataclass, field

import click
import typer
from questionary import Choice, Separator

from .interactive import select_item


@dataclass
class CommandNode:
    name: str
    tokens: list[str]
    help_text: str
    is_group: bool
    children: list["CommandNode"] = field(default_factory=list)


def build_command_tree(app: typer.Typer) -> CommandNode:
    click_command = typer.main.get_command(app)
    root_name = click_command.name or "pbhost"
    return _build_node(click_command, root_name, [])


def _build_node(command: click.Command, name: str, tokens: list[str]) -> CommandNode:
    help_text = _clean_help(command.short_help or command.help or "")
    is_group = isinstance(command, click.Group)
    node = CommandNode(name=name, tokens=tokens, help_text=help_text, is_group=is_group)
    if is_group:
        for child_name, child_cmd in sorted(command.commands.items()):
            if getattr(child_cmd, "hidden", False):
                continue
            node.children.append(_build_node(child_cmd, child_name, tokens + [child_name]))
    return node


def _clean_help(text: str) -> str:
    first = (text or "").strip().splitlines()
    return first[0].strip().rstrip(".") if first else ""


def _label(node: CommandNode) -> str:
    name = f"{node.name}/" if node.is_group else node.name
    return f"{name} - {node.help_text}" if node.help_text else name


def menu_choices(node: CommandNode, *, nested: bool) -> list:
    choices: list = []
    if nested:
        choices.append(Choice(title=".. Back", value="__back__"))
    groups = [c for c in node.children if c.is_group]
    commands = [c for c in node.children if not c.is_group]
    if groups:
        choices.append(Separator("Groups"))
        choices.extend(Choice(title=_label(c), value=c.name) for c in groups)
    if commands:
        choices.append(Separator("Commands"))
        choices.extend(Choice(title=_label(c), value=c.name) for c in commands)
    if not nested:
        choices.append(Separator(" "))
        choices.append(Choice(title="Exit", value="__exit__"))
    return choices


def run_interactive_menu(app: typer.Typer) -> list[str] | None:
    """Walk the command tree and return the argv tokens of the chosen command."""
    stack: list[CommandNode] = [build_command_tree(app)]
    while True:
        current = stack[-1]
        picked = select_item(
            f"{' / '.join(n.name for n in stack)}",
            menu_choices(current, nested=len(stack) > 1),
            clear_after=True,
        )
        if picked == "__exit__":
            return None
        if picked == "__back__":
            stack.pop()
            continue
        node = next((c for c in current.children if c.name == picked), None)
        if node is None:
            return None
        if node.is_group:
            stack.append(node)
            continue
        return list(node.tokens)
