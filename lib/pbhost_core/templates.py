"""Text of every file the installer writes.

Each renderer validates what it embeds and returns a string; writing the
result to disk is the caller's job.
"""
from __future__ import annotations

import shlex

from .errors import ValidationError
from .model import RATE_LIMIT_ZONE, Configuration, HostLayout

SUSPICIOUS_AGENT_PATTERNS = (
    "curl|wget|python|nikto|sqlmap|nmap|masscan|libwww|perl|go-http|java|ruby|php",
    "nessus|w3af|openvas|metasploit|burpsuite|ZAP|hydra|acunetix",
)

SECURITY_HEADERS = (
    ("X-Frame-Options", "SAMEORIGIN"),
    ("X-Content-Type-Options", "nosniff"),
    ("X-XSS-Protection", "1; mode=block"),
    ("Referrer-Policy", "strict-origin-when-cross-origin"),
)
HSTS_HEADER = ("Strict-Transport-Security", "max-age=31536000; includeSubDomains; preload")

BAN_MAX_RETRY = 5
BAN_FIND_TIME = 300
BAN_TIME = 3600

BACKUP_RETENTION_DAYS = 7
BACKUP_SCHEDULE = "0 2 * * *"

RESTART_DELAY = "5s"


def _checked(config: Configuration) -> Configuration:
    return config.validate()


def render_systemd_unit(config: Configuration, layout: HostLayout) -> str:
    config = _checked(config)
    return "\n".join(
        [
            "[Unit]",
            "Description=PocketBase service",
            "After=network.target",
            "",
            "[Service]",
            "Type=simple",
            f"User={layout.service_user}",
            f"Group={layout.service_user}",
            f"WorkingDirectory={layout.install_dir}",
            f'ExecStart={layout.binary} serve --http="0.0.0.0:{config.port}"',
            "Restart=on-failure",
            f"RestartSec={RESTART_DELAY}",
            "StandardOutput=journal",
            "StandardError=journal",
            "",
            "[Install]",
            "WantedBy=multi-user.target",
            "",
        ]
    )


def render_nginx_site(config: Configuration) -> str:
    config = _checked(config)
    lines: list[str] = []
    if config.enable_rate_limiting:
        lines.extend([render_rate_limit_zone(config).rstrip("\n"), ""])
    lines += [
        "server {",
        "    listen 80;",
        "    listen [::]:80;",
        f"    server_name {config.full_domain};",
        "",
        "    location / {",
        f"        proxy_pass http://localhost:{config.port};",
        "        proxy_http_version 1.1;",
        "        proxy_set_header Upgrade $http_upgrade;",
        "        proxy_set_header Connection 'upgrade';",
        "        proxy_set_header Host $host;",
        "        proxy_cache_bypass $http_upgrade;",
        "",
        "        proxy_set_header X-Real-IP $remote_addr;",
        "        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
        "        proxy_set_header X-Forwarded-Proto $scheme;",
    ]
    if config.enable_rate_limiting:
        lines.append(f"        limit_req zone={RATE_LIMIT_ZONE} burst={config.rate_limit_burst} nodelay;")
    if config.configure_security:
        lines.append("        # Security headers")
        headers = list(SECURITY_HEADERS)
        if config.enable_https:
            headers.append(HSTS_HEADER)
        for name, value in headers:
            lines.append(f'        add_header {name} "{value}";')
    if config.block_suspicious_user_agents:
        lines.extend(
            [
                "        # Block suspicious User-Agents",
                "        if ($suspicious_agent = 1) {",
                "            return 403;",
                "        }",
            ]
        )
    lines.extend(["    }", "}", ""])
    return "\n".join(lines)


def render_rate_limit_zone(config: Configuration) -> str:
    config = _checked(config)
    if not config.enable_rate_limiting:
        raise ValidationError("Rate limiting is disabled.", fields=["enable_rate_limiting"])
    return f"limit_req_zone $binary_remote_addr zone={RATE_LIMIT_ZONE}:10m rate={config.rate_limit};\n"


def render_suspicious_agents_map() -> str:
    lines = ["map $http_user_agent $suspicious_agent {", "    default 0;"]
    for pattern in SUSPICIOUS_AGENT_PATTERNS:
        lines.append(f"    ~*({pattern}) 1;")
    lines.extend(['    "" 1;', "}", ""])
    return "\n".join(lines)


def render_fail2ban_jail(layout: HostLayout) -> str:
    return "\n".join(
        [
            f"[{layout.service_name}]",
            "enabled = true",
            "port = http,https",
            f"filter = {layout.service_name}",
            f"logpath = {layout.nginx_access_log}",
            f"maxretry = {BAN_MAX_RETRY}",
            f"findtime = {BAN_FIND_TIME}",
            f"bantime = {BAN_TIME}",
            "",
        ]
    )


def render_fail2ban_filter() -> str:
    return "\n".join(
        [
            "[Definition]",
            'failregex = ^<HOST> - .* "(GET|POST|HEAD) .*(admin|_|api).* (401|403|404|429)',
            "ignoreregex =",
            "",
        ]
    )


def render_backup_script(layout: HostLayout) -> str:
    return "\n".join(
        [
            "#!/bin/bash",
            "",
            "# Backup script for PocketBase",
            "",
            f"BACKUP_DIR={shlex.quote(layout.backups_dir)}",
            "DATE=$(date +%Y-%m-%d_%H-%M-%S)",
            'BACKUP_FILE="$BACKUP_DIR/pocketbase_backup_$DATE.tar.gz"',
            "",
            f"systemctl stop {layout.service_name}",
            "",
            f'tar -czf "$BACKUP_FILE" -C {shlex.quote(layout.install_dir)} pb_data',
            "",
            f"systemctl start {layout.service_name}",
            "",
            f'find "$BACKUP_DIR" -name "pocketbase_backup_*" -type f -mtime +{BACKUP_RETENTION_DAYS} -delete',
            "",
        ]
    )


def render_backup_cron(layout: HostLayout) -> str:
    return f"{BACKUP_SCHEDULE} root {layout.backup_script}\n"
