from __future__ import annotations

import os

import typer

from pbhost_core.release import normalize_version
from pbhost_core.semver import parse_semver

from .. import console
from ..config import PATH_KEYS, SETTING_KEYS, config_path, default_config, load_config, save_config

app = typer.Typer(help="Manage local settings (~/.config/pbhost/config.toml).")


def _normalize(key: str, value: str) -> str:
    value = value.strip()
    if key == "release_version" and value:
        value = normalize_version(value)
        if parse_semver(value) is None:
            console.err(f"Invalid version: {value}")
            raise typer.Exit(code=2)
    if key == "release_api_url":
        value = value.rstrip("/")
    if key in PATH_KEYS and value:
        if not value.startswith("/"):
            console.err(f"{key} must be an absolute path.")
            raise typer.Exit(code=2)
        value = value.rstrip("/") or "/"
    if key not in ("release_version", "data_backup_prefix") and not value:
        console.err(f"{key} cannot be empty.")
        raise typer.Exit(code=2)
    return value


def _check_key(key: str) -> str:
    k = key.strip().lower().replace("-", "_")
    if k not in SETTING_KEYS:
        console.err(f"Unknown setting: {key}. Known: {', '.join(SETTING_KEYS)}")
        raise typer.Exit(code=2)
    return k


@app.command("init")
def init_settings(
        force: bool = typer.Option(False, "--force", help="Overwrite existing config."),
):
    path = config_path()
    if os.path.exists(path) and not force:
        console.info(f"Config already exists: {path}")
        console.info("Use --force to overwrite.")
        return
    saved = save_config(default_config())
    console.ok(f"Config written: {saved}")


@app.command("show")
def show_settings():
    cfg = load_config()
    for key in SETTING_KEYS:
        value = getattr(cfg, key)
        if key == "release_version" and not value:
            value = "(latest)"
        console.console.print(f"{key}={value}", markup=False)


@app.command("get")
def get_setting(
        key: str = typer.Argument(..., help=f"Setting key ({', '.join(SETTING_KEYS)})."),
):
    cfg = load_config()
    console.console.print(getattr(cfg, _check_key(key)))


@app.command("set")
def set_setting(
        key: str = typer.Argument(..., help="Setting key."),
        value: str = typer.Argument(..., help="New value (empty release_version means latest)."),
):
    k = _check_key(key)
    cfg = load_config(env=False)
    setattr(cfg, k, _normalize(k, value))
    saved = save_config(cfg)
    console.ok(f"Settings updated: {saved}")


@app.command("path")
def show_path():
    console.console.print(config_path())
