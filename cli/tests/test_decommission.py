import os
from datetime import datetime

from pbhost_core.decommission import Decommissioner, strip_ini_section
from pbhost_core.model import Configuration
from pbhost_core.templates import render_fail2ban_jail, render_nginx_site, render_systemd_unit


def _decommissioner(fake_runner, layout) -> Decommissioner:
    return Decommissioner(
        runner=fake_runner,
        layout=layout,
        sleep=lambda _s: None,
        now=lambda: datetime(2024, 1, 2, 3, 4, 5),
    )


def _write(path: str, text: str) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)


def test_empty_host_is_a_clean_noop(fake_runner, layout) -> None:
    fake_runner.default_rc = 1
    fake_runner.respond(["ufw", "status"], (0, "Status: inactive\n"))

    summary = _decommissioner(fake_runner, layout).run(keep_data=True)

    assert summary.removed == []
    assert summary.errors == []
    assert summary.data_backup is None
    assert ["systemctl", "daemon-reload"] not in fake_runner.calls
    assert not any(call[0] == "userdel" for call in fake_runner.calls)


def test_full_removal_keeps_data_backup(fake_runner, layout) -> None:
    cfg = Configuration(
        domain="example.com",
        port=8090,
        configure_security=True,
        admin_email="a@example.com",
        admin_password="s3cretpass",
    )
    _write(layout.unit_path, render_systemd_unit(cfg, layout))
    site = layout.site_path("example.com")
    _write(site, render_nginx_site(cfg))
    _write(layout.site_path("other.org"), "server { location / { proxy_pass http://localhost:3000; } }\n")
    os.makedirs(layout.sites_enabled)
    os.symlink(site, layout.enabled_site_path("example.com"))
    _write(layout.suspicious_agents_snippet, "map {}\n")
    _write(layout.fail2ban_jail, render_fail2ban_jail(layout))
    _write(layout.fail2ban_filter, "[Definition]\n")
    _write(layout.cron_file, "0 2 * * * root /opt/pocketbase/backup.sh\n")
    _write(os.path.join(layout.data_dir, "data.db"), "sqlite")

    fake_runner.respond(["pgrep", "-f"], 1)
    fake_runner.respond(["ufw", "status"], (0, "8090/tcp ALLOW Anywhere\n"))
    fake_runner.respond(["crontab", "-l"], (0, "0 3 * * * /opt/pocketbase/backup.sh\n@daily /usr/bin/other\n"))

    summary = _decommissioner(fake_runner, layout).run(keep_data=True)

    assert summary.errors == []
    assert not os.path.exists(layout.unit_path)
    assert not os.path.exists(site)
    assert not os.path.lexists(layout.enabled_site_path("example.com"))
    assert os.path.exists(layout.site_path("other.org"))
    assert not os.path.exists(layout.suspicious_agents_snippet)
    assert not os.path.exists(layout.fail2ban_jail)
    assert not os.path.exists(layout.cron_file)
    assert not os.path.exists(layout.install_dir)

    backup = f"{layout.backup_prefix}_20240102030405"
    assert summary.data_backup == backup
    assert os.path.isfile(os.path.join(backup, "data.db"))

    assert fake_runner.ran("systemctl", "daemon-reload")
    assert fake_runner.ran("userdel", "-r", "pocketbase")
    assert fake_runner.ran("ufw", "delete", "allow", "8090/tcp")
    assert fake_runner.ran("systemctl", "restart", "fail2ban")
    assert fake_runner.inputs["crontab -"] == "@daily /usr/bin/other\n"


def test_failures_are_collected_and_cleanup_continues(fake_runner, layout) -> None:
    _write(os.path.join(layout.data_dir, "data.db"), "sqlite")
    fake_runner.respond(["userdel"], 1)
    fake_runner.respond(["ufw", "status"], (0, "8090/tcp ALLOW Anywhere\n"))

    summary = _decommissioner(fake_runner, layout).run(keep_data=False)

    assert len(summary.errors) == 1
    assert summary.errors[0].startswith("system-user")
    assert not os.path.exists(layout.install_dir)
    assert fake_runner.ran("ufw", "delete", "allow", "8090/tcp")


def test_legacy_rate_limit_zone_line_is_dropped(fake_runner, layout) -> None:
    conf = os.path.join(layout.nginx_dir, "nginx.conf")
    _write(conf, "http {\n    limit_req_zone $binary_remote_addr zone=pocketbase_limit:10m rate=10r/s;\n}\n")
    _decommissioner(fake_runner, layout).run(keep_data=False)
    assert open(conf, encoding="utf-8").read() == "http {\n}\n"


def test_strip_ini_section() -> None:
    text = "[sshd]\nenabled = true\n\n[pocketbase]\nenabled = true\nport = http\n\n[other]\nx = 1\n"
    stripped, changed = strip_ini_section(text, "pocketbase")
    assert changed
    assert stripped == "[sshd]\nenabled = true\n\n[other]\nx = 1\n"
    assert strip_ini_section(stripped, "pocketbase") == (stripped, False)


def test_lingering_processes_are_killed_after_grace(fake_runner, layout) -> None:
    naps = []
    fake_runner.respond(["pgrep", "-f", layout.binary], (0, "4242\n"), (0, "4242\n"), 1)
    decommissioner = Decommissioner(runner=fake_runner, layout=layout, sleep=naps.append)

    summary = decommissioner.run(keep_data=False)

    term = fake_runner.calls.index(["pkill", "-f", layout.binary])
    kill = fake_runner.calls.index(["pkill", "-9", "-f", layout.binary])
    assert term < kill
    assert naps and naps[0] > 0
    assert "processes" in summary.removed


def test_processes_that_exit_are_not_force_killed(fake_runner, layout) -> None:
    fake_runner.respond(["pgrep", "-f", layout.binary], (0, "4242\n"), 1)
    _decommissioner(fake_runner, layout).run(keep_data=False)
    assert fake_runner.ran("pkill", "-f", layout.binary)
    assert ["pkill", "-9", "-f", layout.binary] not in fake_runner.calls


def test_certificate_is_kept_and_backup_script_removed(fake_runner, layout) -> None:
    cfg = Configuration(domain="example.com", admin_email="a@example.com", admin_password="s3cretpass")
    _write(layout.site_path("example.com"), render_nginx_site(cfg))
    cert = layout.certificate_path("example.com")
    _write(cert, "-----BEGIN CERTIFICATE-----\n")
    _write(layout.backup_script, "#!/bin/bash\n")

    summary = _decommissioner(fake_runner, layout).run(keep_data=False)

    assert os.path.isfile(cert)
    assert os.path.dirname(cert) in summary.skipped
    assert layout.backup_script in summary.removed
    assert summary.errors == []
