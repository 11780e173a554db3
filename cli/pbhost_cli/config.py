from __future__ import annotations

import os
import tomllib
from dataclasses import asdict, dataclass, fields
from typing import Any

import tomli_w
from platformdirs import user_config_dir

from pbhost_core.model import DEFAULT_INSTALL_DIR, DEFAULT_SERVICE_NAME, HostLayout
from pbhost_core.release import DEFAULT_API_URL, DEFAULT_REPO

APP_NAME = "pbhost"
CONFIG_FILENAME = "config.toml"
ENV_INSTALL_DIR = "PBHOST_INSTALL_DIR"
ENV_RELEASE_VERSION = "PBHOST_RELEASE_VERSION"


@dataclass
class AppConfig:
    install_dir: str = DEFAULT_INSTALL_DIR
    service_name: str = DEFAULT_SERVICE_NAME
    service_user: str = DEFAULT_SERVICE_NAME
    release_repo: str = DEFAULT_REPO
    release_version: str = ""
    release_api_url: str = DEFAULT_API_URL
    systemd_dir: str = HostLayout.systemd_dir
    nginx_dir: str = HostLayout.nginx_dir
    nginx_log_dir: str = HostLayout.nginx_log_dir
    fail2ban_dir: str = HostLayout.fail2ban_dir
    cron_dir: str = HostLayout.cron_dir
    letsencrypt_live_dir: str = HostLayout.letsencrypt_live_dir
    data_backup_prefix: str = ""

    def layout(self) -> HostLayout:
        paths = {key: getattr(self, key).rstrip("/") or "/" for key in PATH_KEYS if getattr(self, key)}
        return HostLayout(
            service_name=self.service_name,
            service_user=self.service_user,
            **paths,
        )


SETTING_KEYS = tuple(f.name for f in fields(AppConfig))
PATH_KEYS = (
    "install_dir",
    "systemd_dir",
    "nginx_dir",
    "nginx_log_dir",
    "fail2ban_dir",
    "cron_dir",
    "letsencrypt_live_dir",
    "data_backup_prefix",
)


def config_path() -> str:
    return f"{user_config_dir(APP_NAME)}/{CONFIG_FILENAME}"


def default_config() -> AppConfig:
    return AppConfig()


def ensure_parent_dir(path: str) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)


def to_toml(cfg: AppConfig) -> dict[str, Any]:
    return {k: v for k, v in asdict(cfg).items() if v not in (None, "")}


def from_toml(data: dict[str, Any]) -> AppConfig:
    cfg = default_config()
    for key in SETTING_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            setattr(cfg, key, value.strip())
    return cfg


def apply_env(cfg: AppConfig) -> AppConfig:
    install_dir = os.getenv(ENV_INSTALL_DIR, "").strip()
    if install_dir:
        cfg.install_dir = install_dir
    version = os.getenv(ENV_RELEASE_VERSION, "").strip()
    if version:
        cfg.release_version = version
    return cfg


def load_config(*, env: bool = True) -> AppConfig:
    path = config_path()
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
        cfg = from_toml(data)
    except FileNotFoundError:
        cfg = default_config()
    return apply_env(cfg) if env else cfg


def save_config(cfg: AppConfig) -> str:
    path = config_path()
    ensure_parent_dir(path)
    with open(path, "wb") as f:
        f.write(tomli_w.dumps(to_toml(cfg)).encode("utf-8"))
    os.chmod(path, 0o600)
    return path
