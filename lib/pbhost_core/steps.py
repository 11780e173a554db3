"""Provisioning steps, in the order the reconciler runs them.

A step's ``check`` returns a reason string when the host already satisfies
it (the step is then skipped) and ``None`` otherwise. ``apply`` raises
``CollaboratorFailure`` (or ``OSError``) on failure; the reconciler stamps the
step name and exit code onto the error.
"""
from __future__ import annotations

import enum
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import httpx

from .credentials import create_admin_account, manual_admin_instructions
from .errors import CollaboratorFailure
from .model import Configuration, HostLayout
from .release import (
    DEFAULT_API_URL,
    DEFAULT_REPO,
    Release,
    detect_arch,
    download_release,
    extract_archive,
    fetch_checksums,
    installed_version,
    resolve_release,
    verify_archive,
    verify_checksum,
)
from .runner import CommandRunner
from .semver import same_version
from .templates import (
    render_backup_cron,
    render_backup_script,
    render_fail2ban_filter,
    render_fail2ban_jail,
    render_nginx_site,
    render_suspicious_agents_map,
    render_systemd_unit,
)

logger = logging.getLogger(__name__)

BASE_PACKAGES = ("curl", "unzip", "nginx", "ufw")
CERTBOT_PACKAGES = ("certbot", "python3-certbot-nginx")
FIREWALL_SERVICES = ("ssh", "http", "https")


class StepState(str, enum.Enum):
    PENDING = "pending"
    CHECKING = "checking"
    SKIPPED = "skipped"
    APPLYING = "applying"
    DONE = "done"
    FAILED = "failed"


@dataclass
class StepContext:
    config: Configuration
    layout: HostLayout
    runner: CommandRunner
    http: httpx.Client
    workdir: Path
    release_repo: str = DEFAULT_REPO
    release_api_url: str = DEFAULT_API_URL
    release_version: str | None = None
    machine: str | None = None
    sleep: Callable[[float], None] = time.sleep
    facts: dict[str, object] = field(default_factory=dict)
    degraded: list[str] = field(default_factory=list)

    @property
    def release(self) -> Release:
        release = self.facts.get("release")
        if not isinstance(release, Release):
            raise CollaboratorFailure("Release has not been resolved yet; run resolve-release first.")
        return release

    def chown(self, path: str, *, recursive: bool = True) -> None:
        owner = f"{self.layout.service_user}:{self.layout.service_user}"
        argv = ["chown", "-R", owner, path] if recursive else ["chown", owner, path]
        self.runner.check(argv, label=f"set ownership of {path}")


@dataclass(frozen=True)
class Step:
    name: str
    title: str
    exit_code: int
    apply: Callable[[StepContext], None]
    check: Callable[[StepContext], str | None] | None = None
    condition: Callable[[Configuration], bool] | None = None

    def enabled_for(self, config: Configuration) -> bool:
        return self.condition is None or self.condition(config)


def write_file(path: str, content: str, *, mode: int = 0o644) -> bool:
    """Write ``content`` to ``path``; returns False when it was already identical."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    if target.is_file() and not target.is_symlink():
        if target.read_text(encoding="utf-8") == content:
            os.chmod(target, mode)
            return False
    target.write_text(content, encoding="utf-8")
    os.chmod(target, mode)
    return True


def _apt_install(ctx: StepContext, packages: tuple[str, ...], *, label: str) -> None:
    ctx.runner.check(["apt-get", "install", "-y", *packages], label=label)


# --- package management ---------------------------------------------------

def update_package_index(ctx: StepContext) -> None:
    ctx.runner.check(["apt-get", "update", "-y"], label="update package lists")


def upgrade_packages(ctx: StepContext) -> None:
    ctx.runner.check(["apt-get", "upgrade", "-y"], label="upgrade packages")


def dependencies_installed(ctx: StepContext) -> str | None:
    for package in BASE_PACKAGES:
        if not ctx.runner.succeeds(["dpkg", "-s", package]):
            return None
    return f"{', '.join(BASE_PACKAGES)} already installed"


def install_dependencies(ctx: StepContext) -> None:
    _apt_install(ctx, BASE_PACKAGES, label="install dependencies")


# --- service user ---------------------------------------------------------

def service_user_exists(ctx: StepContext) -> str | None:
    user = ctx.layout.service_user
    if ctx.runner.succeeds(["id", "-u", user]):
        return f"User '{user}' already exists"
    return None


def create_service_user(ctx: StepContext) -> None:
    user = ctx.layout.service_user
    ctx.runner.check(["useradd", "-m", "-s", "/bin/bash", user], label=f"create '{user}' user")


# --- release --------------------------------------------------------------

def resolve_latest_release(ctx: StepContext) -> None:
    arch = detect_arch(ctx.machine)
    release = resolve_release(
        ctx.http,
        arch=arch,
        repo=ctx.release_repo,
        api_url=ctx.release_api_url,
        version=ctx.release_version,
    )
    ctx.facts["release"] = release
    ctx.facts["installed_version"] = installed_version(ctx.runner, ctx.layout.binary)


def release_already_installed(ctx: StepContext) -> str | None:
    current = ctx.facts.get("installed_version")
    if isinstance(current, str) and same_version(current, ctx.release.version):
        return f"PocketBase {current} is already installed"
    return None


def download_latest_release(ctx: StepContext) -> None:
    release = ctx.release
    dest = ctx.workdir / release.asset_name
    sha = download_release(ctx.http, release.download_url, dest)
    ctx.facts["archive"] = dest
    ctx.facts["archive_sha256"] = sha
    logger.info("downloaded %s sha256=%s", dest.name, sha)


def verify_downloaded_release(ctx: StepContext) -> None:
    archive = ctx.facts.get("archive")
    if not isinstance(archive, Path):
        raise CollaboratorFailure("No downloaded archive to verify.")
    ctx.facts["archive_size"] = verify_archive(archive)
    release = ctx.release
    checksums = fetch_checksums(ctx.http, release.checksums_url)
    if checksums is None:
        logger.warning("no checksums published for %s; relying on archive checks", release.version)
        return
    verify_checksum(str(ctx.facts.get("archive_sha256", "")), checksums, release.asset_name)


def install_release(ctx: StepContext) -> None:
    archive = ctx.facts.get("archive")
    if not isinstance(archive, Path):
        raise CollaboratorFailure("No verified archive to extract.")
    layout = ctx.layout
    extract_archive(archive, layout.install_dir)
    ctx.chown(layout.install_dir)
    ctx.runner.check(["chmod", "-R", "755", layout.install_dir], label="set permissions")
    if not os.path.isfile(layout.binary):
        raise CollaboratorFailure("PocketBase executable not found after extraction.")


# --- firewall -------------------------------------------------------------

def configure_firewall(ctx: StepContext) -> None:
    runner = ctx.runner
    if not runner.succeeds(["ufw", "version"]):
        _apt_install(ctx, ("ufw",), label="install UFW")
    for service in FIREWALL_SERVICES:
        runner.check(["ufw", "allow", service], label=f"allow {service.upper()} connections")
    status = runner.run(["ufw", "status"])
    if "Status: active" not in (status.stdout or ""):
        runner.check(["ufw", "--force", "enable"], label="enable UFW")


# --- nginx ----------------------------------------------------------------

def _link_site(site: str, link: str) -> None:
    if os.path.islink(link) or os.path.isfile(link):
        os.unlink(link)
    os.makedirs(os.path.dirname(link), exist_ok=True)
    os.symlink(site, link)


def configure_nginx(ctx: StepContext) -> None:
    config, layout = ctx.config, ctx.layout
    site = layout.site_path(config.full_domain)
    write_file(site, render_nginx_site(config))
    if config.block_suspicious_user_agents:
        write_file(layout.suspicious_agents_snippet, render_suspicious_agents_map())
    _link_site(site, layout.enabled_site_path(config.full_domain))
    default_site = os.path.join(layout.sites_enabled, "default")
    if os.path.lexists(default_site):
        os.unlink(default_site)
    ctx.runner.check(["nginx", "-t"], label="validate nginx configuration")
    ctx.runner.check(["systemctl", "reload-or-restart", "nginx"], label="reload nginx")


# --- https ----------------------------------------------------------------

def https_in_place(ctx: StepContext) -> str | None:
    """Skip only when the certificate exists and the site still serves it."""
    config, layout = ctx.config, ctx.layout
    fqdn = config.full_domain
    cert = layout.certificate_path(fqdn)
    if not os.path.isfile(cert):
        return None
    try:
        with open(layout.site_path(fqdn), encoding="utf-8") as f:
            site = f.read()
    except OSError:
        return None
    if f"ssl_certificate {cert}" not in site:
        return None
    return f"HTTPS for {fqdn} already configured"


def configure_https(ctx: StepContext) -> None:
    config, layout = ctx.config, ctx.layout
    fqdn = config.full_domain
    _apt_install(ctx, CERTBOT_PACKAGES, label="install Certbot")
    if os.path.isfile(layout.certificate_path(fqdn)):
        # certificate already issued; reattach it to the rewritten site
        ctx.runner.check(
            ["certbot", "install", "--nginx", "--cert-name", fqdn, "--non-interactive"],
            label="install existing Let's Encrypt certificate",
        )
        return
    ctx.runner.check(
        [
            "certbot",
            "--nginx",
            "-d",
            fqdn,
            "--non-interactive",
            "--agree-tos",
            "-m",
            config.admin_email,
        ],
        label="obtain Let's Encrypt certificate",
    )


# --- fail2ban -------------------------------------------------------------

def configure_fail2ban(ctx: StepContext) -> None:
    layout = ctx.layout
    _apt_install(ctx, ("fail2ban",), label="install fail2ban")
    write_file(layout.fail2ban_jail, render_fail2ban_jail(layout))
    write_file(layout.fail2ban_filter, render_fail2ban_filter())
    ctx.runner.check(["systemctl", "restart", "fail2ban"], label="restart fail2ban")


# --- systemd --------------------------------------------------------------

def configure_systemd(ctx: StepContext) -> None:
    layout = ctx.layout
    write_file(layout.unit_path, render_systemd_unit(ctx.config, layout))
    ctx.runner.check(["systemctl", "daemon-reload"], label="reload systemd daemon")
    ctx.runner.check(["systemctl", "enable", layout.unit_name], label="enable PocketBase service")
    ctx.runner.check(["systemctl", "restart", layout.unit_name], label="start PocketBase service")


# --- backups --------------------------------------------------------------

def schedule_backups(ctx: StepContext) -> None:
    layout = ctx.layout
    os.makedirs(layout.backups_dir, exist_ok=True)
    ctx.chown(layout.backups_dir, recursive=False)
    write_file(layout.backup_script, render_backup_script(layout), mode=0o755)
    ctx.chown(layout.backup_script, recursive=False)
    write_file(layout.cron_file, render_backup_cron(layout))


# --- admin ----------------------------------------------------------------

def create_admin(ctx: StepContext) -> None:
    try:
        outcome = create_admin_account(ctx)
    except (CollaboratorFailure, OSError) as exc:
        logger.warning("admin creation aborted: %s", exc)
        ctx.degraded.extend(manual_admin_instructions(ctx.layout))
        return
    if not outcome.created:
        ctx.degraded.extend(manual_admin_instructions(ctx.layout))


def _release_step_check(ctx: StepContext) -> str | None:
    return release_already_installed(ctx)


DEFAULT_STEPS: tuple[Step, ...] = (
    Step("update-package-index", "Updating package lists", 10, update_package_index),
    Step("upgrade-packages", "Upgrading packages", 11, upgrade_packages),
    Step("install-dependencies", "Installing dependencies", 12, install_dependencies, check=dependencies_installed),
    Step("create-service-user", "Creating PocketBase user", 13, create_service_user, check=service_user_exists),
    Step("resolve-release", "Resolving latest PocketBase release", 14, resolve_latest_release),
    Step("download-release", "Downloading PocketBase", 15, download_latest_release, check=_release_step_check),
    Step("verify-release", "Verifying downloaded archive", 16, verify_downloaded_release, check=_release_step_check),
    Step("install-release", "Installing PocketBase", 17, install_release, check=_release_step_check),
    Step("configure-firewall", "Configuring firewall", 18, configure_firewall),
    Step("configure-nginx", "Configuring Nginx", 19, configure_nginx),
    Step(
        "configure-https",
        "Configuring HTTPS with Let's Encrypt",
        20,
        configure_https,
        check=https_in_place,
        condition=lambda c: c.enable_https,
    ),
    Step(
        "configure-fail2ban",
        "Configuring fail2ban",
        21,
        configure_fail2ban,
        condition=lambda c: c.configure_security,
    ),
    Step("configure-systemd", "Creating systemd service", 22, configure_systemd),
    Step(
        "schedule-backups",
        "Creating backup cron job",
        23,
        schedule_backups,
        condition=lambda c: c.enable_backups,
    ),
    Step("create-admin", "Creating admin account", 24, create_admin),
)


def find_step(name: str, steps: tuple[Step, ...] = DEFAULT_STEPS) -> Step | None:
    for step in steps:
        if step.name == name:
            return step
    return None
