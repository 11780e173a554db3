"""Removal of everything an install may have left on the host.

No manifest is written at install time, so nginx sites are found by content:
a site is ours when it proxies to the service port or mentions the service
name. Every action tolerates its target being absent, and a failing action
is recorded without stopping the ones after it.
"""
from __future__ import annotations

import logging
import os
import re
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from .controller import read_unit_port, site_proxies_service
from .errors import CollaboratorFailure
from .model import RATE_LIMIT_ZONE, HostLayout, ProvisionedArtifact
from .runner import CommandRunner

logger = logging.getLogger(__name__)

PROCESS_GRACE_SECONDS = 2


@dataclass
class DecommissionSummary:
    removed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    data_backup: str | None = None

    @property
    def ok(self) -> bool:
        return not self.errors


def strip_ini_section(text: str, section: str) -> tuple[str, bool]:
    """Drop ``[section]`` and its body (up to the next blank line or section)."""
    out: list[str] = []
    dropping = False
    changed = False
    header = f"[{section}]"
    for line in text.splitlines(keepends=True):
        stripped = line.strip()
        if stripped == header:
            dropping = True
            changed = True
            continue
        if dropping and (not stripped or stripped.startswith("[")):
            dropping = False
            if not stripped:
                continue
        if not dropping:
            out.append(line)
    return "".join(out), changed


class Decommissioner:
    def __init__(
        self,
        *,
        runner: CommandRunner | None = None,
        layout: HostLayout | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.runner = runner or CommandRunner()
        self.layout = layout or HostLayout()
        self.sleep = sleep
        self.now = now

    def run(self, keep_data: bool) -> DecommissionSummary:
        summary = DecommissionSummary()
        port = read_unit_port(self.layout)
        unit_existed = os.path.exists(self.layout.unit_path)

        actions: list[tuple[str, Callable[[DecommissionSummary], None]]] = [
            (ProvisionedArtifact.SYSTEMD_UNIT.value, self._remove_unit),
            (ProvisionedArtifact.NGINX_SITE.value, lambda s: self._remove_sites(s, port)),
            (ProvisionedArtifact.NGINX_SNIPPET.value, self._remove_snippets),
            (ProvisionedArtifact.CERTIFICATE.value, self._keep_certificates),
            ("processes", self._stop_processes),
            ("logs", lambda s: self._clear_logs(s, unit_existed)),
            (ProvisionedArtifact.FAIL2BAN.value, self._remove_fail2ban),
            (ProvisionedArtifact.CRON_ENTRY.value, self._remove_cron),
            ("data", lambda s: self._handle_data(s, keep_data)),
            (ProvisionedArtifact.BACKUP_SCRIPT.value, self._remove_backup_script),
            (ProvisionedArtifact.INSTALL_DIR.value, self._remove_install_dir),
            (ProvisionedArtifact.SYSTEM_USER.value, self._remove_user),
            (ProvisionedArtifact.FIREWALL_RULE.value, lambda s: self._remove_firewall_rule(s, port)),
        ]
        for label, action in actions:
            try:
                action(summary)
            except (CollaboratorFailure, OSError) as exc:
                logger.warning("uninstall %s: %s", label, exc)
                summary.errors.append(f"{label}: {exc}")
        return summary

    def _call(self, argv: list[str], *, label: str, input: str | None = None) -> None:
        self.runner.check(argv, label=label, input=input)

    # --- systemd ----------------------------------------------------------

    def _remove_unit(self, s: DecommissionSummary) -> None:
        layout = self.layout
        if not os.path.exists(layout.unit_path):
            s.skipped.append(layout.unit_path)
            return
        # stop/disable of an already stopped or unknown unit is not an error
        self.runner.run(["systemctl", "stop", layout.unit_name])
        self.runner.run(["systemctl", "disable", layout.unit_name])
        os.remove(layout.unit_path)
        s.removed.append(layout.unit_path)
        self._call(["systemctl", "daemon-reload"], label="reload systemd daemon")

    # --- nginx ------------------------------------------------------------

    def _remove_sites(self, s: DecommissionSummary, port: int) -> None:
        layout = self.layout
        available = layout.sites_available
        matched: list[str] = []
        if os.path.isdir(available):
            for entry in sorted(os.listdir(available)):
                path = os.path.join(available, entry)
                if not os.path.isfile(path):
                    continue
                with open(path, encoding="utf-8", errors="replace") as f:
                    text = f.read()
                if site_proxies_service(text, port=port, service_name=layout.service_name):
                    matched.append(path)
        if not matched:
            s.skipped.append(available)
            return

        enabled = layout.sites_enabled
        targets = {os.path.normpath(p) for p in matched}
        names = {os.path.basename(p) for p in matched}
        for path in matched:
            os.remove(path)
            s.removed.append(path)
        if os.path.isdir(enabled):
            for entry in sorted(os.listdir(enabled)):
                link = os.path.join(enabled, entry)
                if not os.path.islink(link):
                    continue
                target = os.path.normpath(os.path.join(enabled, os.readlink(link)))
                if target in targets or entry in names:
                    os.unlink(link)
                    s.removed.append(link)
        self._reload_nginx()

    def _keep_certificates(self, s: DecommissionSummary) -> None:
        # certificates are left in place; a reinstall reattaches them
        prefix = self.layout.sites_available + os.sep
        for path in [p for p in s.removed if p.startswith(prefix)]:
            fqdn = os.path.basename(path)
            cert = self.layout.certificate_path(fqdn)
            if os.path.isfile(cert):
                s.skipped.append(os.path.dirname(cert))
                logger.info("keeping certificate for %s", fqdn)

    def _reload_nginx(self) -> None:
        if self.runner.succeeds(["nginx", "-t"]):
            self._call(["systemctl", "reload-or-restart", "nginx"], label="reload nginx")
        else:
            logger.warning("nginx configuration test failed; not reloading")

    def _remove_snippets(self, s: DecommissionSummary) -> None:
        layout = self.layout
        changed = False
        snippet = layout.suspicious_agents_snippet
        if os.path.isfile(snippet):
            os.remove(snippet)
            s.removed.append(snippet)
            changed = True
        else:
            s.skipped.append(snippet)

        nginx_conf = os.path.join(layout.nginx_dir, "nginx.conf")
        if os.path.isfile(nginx_conf):
            with open(nginx_conf, encoding="utf-8") as f:
                lines = f.readlines()
            zone_re = re.compile(rf"limit_req_zone.*{re.escape(RATE_LIMIT_ZONE)}")
            kept = [line for line in lines if not zone_re.search(line)]
            if len(kept) != len(lines):
                with open(nginx_conf, "w", encoding="utf-8") as f:
                    f.writelines(kept)
                s.removed.append(f"{nginx_conf}:limit_req_zone")
                changed = True
        if changed:
            self._reload_nginx()

    # --- processes and logs -----------------------------------------------

    def _stop_processes(self, s: DecommissionSummary) -> None:
        binary = self.layout.binary
        if not self.runner.succeeds(["pgrep", "-f", binary]):
            s.skipped.append("processes")
            return
        self.runner.run(["pkill", "-f", binary])
        self.sleep(PROCESS_GRACE_SECONDS)
        if self.runner.succeeds(["pgrep", "-f", binary]):
            self.runner.run(["pkill", "-9", "-f", binary])
        s.removed.append("processes")

    def _clear_logs(self, s: DecommissionSummary, unit_existed: bool) -> None:
        layout = self.layout
        if unit_existed:
            self.runner.run(["journalctl", "--vacuum-time=1s", f"--unit={layout.unit_name}"])
            s.removed.append("journal")
        log_dir = layout.nginx_log_dir
        if not os.path.isdir(log_dir):
            return
        for entry in sorted(os.listdir(log_dir)):
            path = os.path.join(log_dir, entry)
            if layout.service_name in entry and os.path.isfile(path):
                with open(path, "w", encoding="utf-8"):
                    pass
                s.removed.append(path)

    # --- fail2ban ---------------------------------------------------------

    def _remove_fail2ban(self, s: DecommissionSummary) -> None:
        layout = self.layout
        changed = False
        for path in (layout.fail2ban_filter, layout.fail2ban_jail):
            if os.path.isfile(path):
                os.remove(path)
                s.removed.append(path)
                changed = True
            else:
                s.skipped.append(path)
        jail_local = layout.fail2ban_jail_local
        if os.path.isfile(jail_local):
            with open(jail_local, encoding="utf-8") as f:
                text = f.read()
            stripped, hit = strip_ini_section(text, layout.service_name)
            if hit:
                with open(jail_local, "w", encoding="utf-8") as f:
                    f.write(stripped)
                s.removed.append(f"{jail_local}:[{layout.service_name}]")
                changed = True
        if changed:
            self._call(["systemctl", "restart", "fail2ban"], label="restart fail2ban")

    # --- cron -------------------------------------------------------------

    def _remove_cron(self, s: DecommissionSummary) -> None:
        layout = self.layout
        if os.path.isfile(layout.cron_file):
            os.remove(layout.cron_file)
            s.removed.append(layout.cron_file)
        else:
            s.skipped.append(layout.cron_file)

        res = self.runner.run(["crontab", "-l"])
        if res.returncode != 0:
            return
        lines = (res.stdout or "").splitlines()
        kept = [line for line in lines if layout.service_name not in line]
        if len(kept) != len(lines):
            body = "\n".join(kept) + "\n" if kept else ""
            self._call(["crontab", "-"], label="rewrite crontab", input=body)
            s.removed.append("crontab entries")

    # --- files, user, firewall --------------------------------------------

    def _handle_data(self, s: DecommissionSummary, keep_data: bool) -> None:
        data_dir = self.layout.data_dir
        if not os.path.isdir(data_dir):
            s.skipped.append(data_dir)
            return
        if keep_data:
            dest = f"{self.layout.backup_prefix}_{self.now().strftime('%Y%m%d%H%M%S')}"
            shutil.move(data_dir, dest)
            s.data_backup = dest
            logger.info("data moved to %s", dest)
        else:
            shutil.rmtree(data_dir)
            s.removed.append(data_dir)

    def _remove_backup_script(self, s: DecommissionSummary) -> None:
        script = self.layout.backup_script
        if not os.path.isfile(script):
            s.skipped.append(script)
            return
        os.remove(script)
        s.removed.append(script)

    def _remove_install_dir(self, s: DecommissionSummary) -> None:
        install_dir = self.layout.install_dir
        if not os.path.isdir(install_dir):
            s.skipped.append(install_dir)
            return
        shutil.rmtree(install_dir)
        s.removed.append(install_dir)

    def _remove_user(self, s: DecommissionSummary) -> None:
        user = self.layout.service_user
        if not self.runner.succeeds(["id", "-u", user]):
            s.skipped.append(f"user {user}")
            return
        self._call(["userdel", "-r", user], label=f"remove user '{user}'")
        s.removed.append(f"user {user}")

    def _remove_firewall_rule(self, s: DecommissionSummary, port: int) -> None:
        res = self.runner.run(["ufw", "status"])
        if res.returncode != 0 or not re.search(rf"\b{port}(/tcp)?\b", res.stdout or ""):
            s.skipped.append(f"ufw {port}/tcp")
            return
        self._call(["ufw", "delete", "allow", f"{port}/tcp"], label=f"delete firewall rule for port {port}")
        s.removed.append(f"ufw {port}/tcp")
