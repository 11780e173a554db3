from __future__ import annotations

import enum
import posixpath
from dataclasses import dataclass

from .errors import ValidationError
from .validators import (
    validate_domain,
    validate_email,
    validate_password,
    validate_port,
    validate_rate_limit,
    validate_subdomain,
)

DEFAULT_PORT = 8090
DEFAULT_SERVICE_NAME = "pocketbase"
DEFAULT_INSTALL_DIR = "/opt/pocketbase"
RATE_LIMIT_ZONE = "pocketbase_limit"


@dataclass(frozen=True)
class Configuration:
    """Everything the operator decides once per provisioning run."""

    domain: str
    port: int = DEFAULT_PORT
    subdomain: str = ""
    enable_https: bool = False
    enable_rate_limiting: bool = False
    rate_limit: str | None = None
    rate_limit_burst: int | None = None
    configure_security: bool = False
    block_suspicious_user_agents: bool = False
    enable_backups: bool = False
    admin_email: str = ""
    admin_password: str = ""

    @property
    def full_domain(self) -> str:
        if self.subdomain:
            return f"{self.subdomain}.{self.domain}"
        return self.domain

    @property
    def scheme(self) -> str:
        return "https" if self.enable_https else "http"

    @property
    def public_url(self) -> str:
        return f"{self.scheme}://{self.full_domain}"

    @property
    def admin_url(self) -> str:
        return f"{self.public_url}/_/"

    def problems(self) -> list[str]:
        bad: list[str] = []
        if not validate_domain(self.domain):
            bad.append("domain")
        if not validate_subdomain(self.subdomain):
            bad.append("subdomain")
        if isinstance(self.port, bool) or not isinstance(self.port, int) or not validate_port(str(self.port)):
            bad.append("port")
        if self.enable_rate_limiting:
            if not validate_rate_limit(self.rate_limit or ""):
                bad.append("rate_limit")
            burst = self.rate_limit_burst
            if isinstance(burst, bool) or not isinstance(burst, int) or burst <= 0:
                bad.append("rate_limit_burst")
        else:
            if self.rate_limit is not None:
                bad.append("rate_limit")
            if self.rate_limit_burst is not None:
                bad.append("rate_limit_burst")
        if self.block_suspicious_user_agents and not self.configure_security:
            bad.append("block_suspicious_user_agents")
        if not validate_email(self.admin_email):
            bad.append("admin_email")
        if not validate_password(self.admin_password):
            bad.append("admin_password")
        return bad

    def validate(self) -> "Configuration":
        bad = self.problems()
        if bad:
            raise ValidationError(f"Invalid configuration: {', '.join(bad)}", fields=bad)
        return self

    def summary(self) -> list[tuple[str, str]]:
        rows = [("Domain", self.domain)]
        if self.subdomain:
            rows.append(("Subdomain", self.subdomain))
        rows.extend(
            [
                ("PocketBase port", str(self.port)),
                ("Public URL", self.public_url),
                ("HTTPS enabled", _yn(self.enable_https)),
                ("Rate limiting enabled", _yn(self.enable_rate_limiting)),
            ]
        )
        if self.enable_rate_limiting:
            rows.append(("Rate limit", self.rate_limit or ""))
            rows.append(("Burst size", str(self.rate_limit_burst)))
        rows.append(("Advanced security", _yn(self.configure_security)))
        if self.configure_security:
            rows.append(("Block suspicious User-Agents", _yn(self.block_suspicious_user_agents)))
        rows.append(("Daily backups", _yn(self.enable_backups)))
        rows.append(("Admin email", self.admin_email))
        return rows


def _yn(value: bool) -> str:
    return "yes" if value else "no"


@dataclass(frozen=True)
class HostLayout:
    """On-disk conventions shared by install, service control and uninstall."""

    service_name: str = DEFAULT_SERVICE_NAME
    service_user: str = DEFAULT_SERVICE_NAME
    install_dir: str = DEFAULT_INSTALL_DIR
    systemd_dir: str = "/etc/systemd/system"
    nginx_dir: str = "/etc/nginx"
    nginx_log_dir: str = "/var/log/nginx"
    fail2ban_dir: str = "/etc/fail2ban"
    cron_dir: str = "/etc/cron.d"
    letsencrypt_live_dir: str = "/etc/letsencrypt/live"
    data_backup_prefix: str = ""

    @property
    def binary(self) -> str:
        return posixpath.join(self.install_dir, "pocketbase")

    @property
    def data_dir(self) -> str:
        return posixpath.join(self.install_dir, "pb_data")

    @property
    def backups_dir(self) -> str:
        return posixpath.join(self.install_dir, "backups")

    @property
    def backup_script(self) -> str:
        return posixpath.join(self.install_dir, "backup.sh")

    @property
    def logs_dir(self) -> str:
        return posixpath.join(self.install_dir, "logs")

    @property
    def unit_name(self) -> str:
        return f"{self.service_name}.service"

    @property
    def unit_path(self) -> str:
        return posixpath.join(self.systemd_dir, self.unit_name)

    @property
    def sites_available(self) -> str:
        return posixpath.join(self.nginx_dir, "sites-available")

    @property
    def sites_enabled(self) -> str:
        return posixpath.join(self.nginx_dir, "sites-enabled")

    @property
    def nginx_conf_d(self) -> str:
        return posixpath.join(self.nginx_dir, "conf.d")

    @property
    def suspicious_agents_snippet(self) -> str:
        return posixpath.join(self.nginx_conf_d, "suspicious_agents.conf")

    @property
    def nginx_access_log(self) -> str:
        return posixpath.join(self.nginx_log_dir, "access.log")

    @property
    def fail2ban_jail(self) -> str:
        return posixpath.join(self.fail2ban_dir, "jail.d", f"{self.service_name}.conf")

    @property
    def fail2ban_filter(self) -> str:
        return posixpath.join(self.fail2ban_dir, "filter.d", f"{self.service_name}.conf")

    @property
    def fail2ban_jail_local(self) -> str:
        return posixpath.join(self.fail2ban_dir, "jail.local")

    @property
    def cron_file(self) -> str:
        return posixpath.join(self.cron_dir, f"{self.service_name}-backup")

    @property
    def backup_prefix(self) -> str:
        return self.data_backup_prefix or f"{self.install_dir.rstrip('/')}_data_backup"

    def site_path(self, full_domain: str) -> str:
        return posixpath.join(self.sites_available, full_domain)

    def enabled_site_path(self, full_domain: str) -> str:
        return posixpath.join(self.sites_enabled, full_domain)

    def certificate_path(self, full_domain: str) -> str:
        return posixpath.join(self.letsencrypt_live_dir, full_domain, "fullchain.pem")


class ProvisionedArtifact(str, enum.Enum):
    SYSTEM_USER = "system-user"
    INSTALL_DIR = "install-dir"
    SYSTEMD_UNIT = "systemd-unit"
    NGINX_SITE = "nginx-site"
    NGINX_SNIPPET = "nginx-snippet"
    CERTIFICATE = "certificate"
    FAIL2BAN = "fail2ban"
    FIREWALL_RULE = "firewall-rule"
    CRON_ENTRY = "cron-entry"
    BACKUP_SCRIPT = "backup-script"
