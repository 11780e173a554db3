import hashlib
import io
import os
import zipfile

import httpx
import pytest

from pbhost_core.errors import ValidationError
from pbhost_core.model import Configuration
from pbhost_core.reconciler import Reconciler, ReconcilerState
from pbhost_core.steps import DEFAULT_STEPS, StepState, find_step

VERSION = "0.22.4"


def _zip_bytes() -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_STORED) as zf:
        zf.writestr("pocketbase", b"\x7fELF" + b"\0" * 4096)
        zf.writestr("CHANGELOG.md", "changes\n")
    return buf.getvalue()


def _http(checksum: str | None = None) -> httpx.Client:
    payload = _zip_bytes()
    asset = f"pocketbase_{VERSION}_linux_amd64.zip"
    sums = f"{checksum or hashlib.sha256(payload).hexdigest()}  {asset}\n"

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/releases/latest"):
            return httpx.Response(200, json={"tag_name": f"v{VERSION}"})
        if request.url.path.endswith(f"pocketbase_{VERSION}_linux_amd64.zip"):
            return httpx.Response(200, content=payload)
        if request.url.path.endswith("/checksums.txt"):
            return httpx.Response(200, text=sums)
        return httpx.Response(404)

    return httpx.Client(transport=httpx.MockTransport(handler))


def _scenario() -> Configuration:
    return Configuration(
        domain="example.com",
        subdomain="",
        port=8090,
        enable_https=False,
        enable_rate_limiting=True,
        rate_limit="10r/s",
        rate_limit_burst=20,
        configure_security=True,
        block_suspicious_user_agents=True,
        enable_backups=True,
        admin_email="admin@example.com",
        admin_password="s3cretpass",
    )


def _reconciler(fake_runner, layout, steps=DEFAULT_STEPS, http=None, **kwargs) -> Reconciler:
    return Reconciler(
        steps,
        runner=fake_runner,
        layout=layout,
        http=http or _http(),
        machine="x86_64",
        sleep=lambda _s: None,
        **kwargs,
    )


def test_end_to_end_install(fake_runner, layout) -> None:
    fake_runner.respond(["id", "-u", "pocketbase"], 1)
    fake_runner.respond(["ufw", "status"], (0, "Status: inactive\n"))
    seen = []
    reconciler = _reconciler(fake_runner, layout, observer=lambda step, state, note: seen.append((step.name, state)))

    result = reconciler.run(_scenario())

    assert result.failed_step is None
    assert result.exit_code == 0
    assert result.degraded == []
    assert reconciler.state is ReconcilerState.COMPLETED
    assert result.step_states["configure-https"] is StepState.SKIPPED
    assert "create-service-user" in result.completed_steps
    assert "install-release" in result.completed_steps

    site = open(layout.site_path("example.com"), encoding="utf-8").read()
    assert "proxy_pass http://localhost:8090;" in site
    assert "limit_req zone=pocketbase_limit burst=20 nodelay;" in site
    assert "rate=10r/s" in site
    assert "X-Frame-Options" in site
    assert "Strict-Transport-Security" not in site
    assert "if ($suspicious_agent = 1)" in site

    assert os.path.islink(layout.enabled_site_path("example.com"))
    assert os.path.isfile(layout.suspicious_agents_snippet)
    assert os.path.isfile(layout.binary)
    assert os.path.isfile(layout.unit_path)
    assert os.path.isfile(layout.fail2ban_jail)
    assert os.access(layout.backup_script, os.X_OK)
    assert open(layout.cron_file, encoding="utf-8").read().endswith(f"root {layout.backup_script}\n")

    assert fake_runner.ran("useradd", "-m", "-s", "/bin/bash", "pocketbase")
    assert fake_runner.ran("ufw", "--force", "enable")
    assert fake_runner.calls.index(["nginx", "-t"]) < fake_runner.calls.index(
        ["systemctl", "reload-or-restart", "nginx"]
    )
    assert ("create-admin", StepState.DONE) in seen


def test_existing_user_is_skipped(fake_runner, layout) -> None:
    reconciler = _reconciler(fake_runner, layout, steps=(find_step("create-service-user"),))
    result = reconciler.run(_scenario())
    assert result.ok
    assert result.skipped_steps == ["create-service-user"]
    assert "already exists" in result.notes["create-service-user"]
    assert not any(call[0] == "useradd" for call in fake_runner.calls)


def test_failure_aborts_with_step_exit_code(fake_runner, layout) -> None:
    fake_runner.respond(["nginx", "-t"], 1)
    reconciler = _reconciler(fake_runner, layout)

    result = reconciler.run(_scenario())

    assert result.failed_step == "configure-nginx"
    assert result.exit_code == 19
    assert result.stderr == "boom"
    assert reconciler.state is ReconcilerState.ABORTED
    assert "install-release" in result.completed_steps
    assert os.path.isfile(layout.binary)
    assert result.step_states["configure-systemd"] is StepState.PENDING
    assert not os.path.exists(layout.unit_path)
    assert ["systemctl", "reload-or-restart", "nginx"] not in fake_runner.calls


def test_exit_codes_are_unique() -> None:
    codes = [step.exit_code for step in DEFAULT_STEPS]
    assert len(codes) == len(set(codes))
    assert min(codes) > 2


def test_invalid_configuration_never_touches_host(fake_runner, layout) -> None:
    reconciler = _reconciler(fake_runner, layout)
    with pytest.raises(ValidationError):
        reconciler.run(Configuration(domain="bad_domain", admin_email="x@example.com", admin_password="s3cretpass"))
    assert fake_runner.calls == []


def test_resume_reresolves_release_and_skips_current_binary(fake_runner, layout) -> None:
    os.makedirs(layout.install_dir)
    open(layout.binary, "w").close()
    fake_runner.respond([layout.binary, "--version"], (0, f"pocketbase version {VERSION}\n"))
    release_steps = DEFAULT_STEPS[:8]

    result = _reconciler(fake_runner, layout, steps=release_steps).run(_scenario(), start_at="download-release")

    assert result.completed_steps == ["resolve-release"]
    assert result.notes["update-package-index"] == "before download-release"
    assert result.step_states["install-release"] is StepState.SKIPPED
    assert not any(call[:2] == ["apt-get", "update"] for call in fake_runner.calls)


def test_unknown_start_step(fake_runner, layout) -> None:
    with pytest.raises(ValidationError):
        _reconciler(fake_runner, layout).run(_scenario(), start_at="nope")


def test_admin_failure_is_degraded_success(fake_runner, layout) -> None:
    fake_runner.respond(["runuser"], 1)
    reconciler = Reconciler(
        (find_step("create-admin"),),
        runner=fake_runner,
        layout=layout,
        http=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(503))),
        sleep=lambda _s: None,
    )
    result = reconciler.run(_scenario())
    assert result.ok
    assert result.exit_code == 0
    assert result.is_degraded
    assert any("superuser upsert" in line for line in result.degraded)


def test_checksum_mismatch_fails_verification(fake_runner, layout) -> None:
    release_steps = DEFAULT_STEPS[4:8]
    reconciler = _reconciler(fake_runner, layout, steps=release_steps, http=_http(checksum="0" * 64))

    result = reconciler.run(_scenario())

    assert result.failed_step == "verify-release"
    assert result.exit_code == 16
    assert "Checksum mismatch" in result.message
    assert not os.path.exists(layout.binary)


def _https_scenario() -> Configuration:
    return Configuration(
        domain="example.com",
        enable_https=True,
        admin_email="admin@example.com",
        admin_password="s3cretpass",
    )


def _issue_certificate(layout) -> str:
    cert = layout.certificate_path("example.com")
    os.makedirs(os.path.dirname(cert))
    with open(cert, "w", encoding="utf-8") as f:
        f.write("-----BEGIN CERTIFICATE-----\n")
    return cert


def test_rerun_with_existing_certificate_reinstalls_it(fake_runner, layout) -> None:
    cert = _issue_certificate(layout)
    os.makedirs(layout.sites_available)
    with open(layout.site_path("example.com"), "w", encoding="utf-8") as f:
        f.write(
            "server {\n    listen 443 ssl;\n"
            f"    ssl_certificate {cert}; # managed by Certbot\n"
            "    location / { proxy_pass http://localhost:8090; }\n}\n"
        )
    steps = (find_step("configure-nginx"), find_step("configure-https"))

    result = _reconciler(fake_runner, layout, steps=steps).run(_https_scenario())

    assert result.ok
    assert result.skipped_steps == []
    assert "configure-https" in result.completed_steps
    assert fake_runner.ran(
        "certbot", "install", "--nginx", "--cert-name", "example.com", "--non-interactive"
    )
    assert not any(call[:2] == ["certbot", "--nginx"] for call in fake_runner.calls)


def test_https_step_skipped_when_site_serves_certificate(fake_runner, layout) -> None:
    cert = _issue_certificate(layout)
    os.makedirs(layout.sites_available)
    with open(layout.site_path("example.com"), "w", encoding="utf-8") as f:
        f.write(f"server {{\n    listen 443 ssl;\n    ssl_certificate {cert}; # managed by Certbot\n}}\n")

    result = _reconciler(fake_runner, layout, steps=(find_step("configure-https"),)).run(_https_scenario())

    assert result.skipped_steps == ["configure-https"]
    assert not any(call[0] == "certbot" for call in fake_runner.calls)


def test_first_https_run_obtains_certificate(fake_runner, layout) -> None:
    result = _reconciler(fake_runner, layout, steps=(find_step("configure-https"),)).run(_https_scenario())
    assert result.ok
    assert fake_runner.ran(
        "certbot", "--nginx", "-d", "example.com", "--non-interactive", "--agree-tos", "-m", "admin@example.com"
    )
