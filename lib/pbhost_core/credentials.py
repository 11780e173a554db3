"""Initial superuser creation.

The strategies are tried in order until one succeeds. When all of them fail the
install still succeeds; the operator gets manual instructions instead.
"""
from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from typing import Callable

import httpx

from .model import HostLayout
from .runner import as_service_user, tail

logger = logging.getLogger(__name__)

HEALTH_PATH = "/api/health"
HEALTH_ATTEMPTS = 10
HEALTH_INTERVAL = 1.0
SERVE_STOP_TIMEOUT = 10


@dataclass(frozen=True)
class Attempt:
    strategy: str
    ok: bool
    detail: str = ""


@dataclass
class CredentialOutcome:
    created: bool
    strategy: str | None = None
    attempts: list[Attempt] = field(default_factory=list)


def _upsert_argv(layout: HostLayout, email: str, password: str, *extra: str) -> list[str]:
    return as_service_user(layout.service_user, [layout.binary, "superuser", "upsert", email, password, *extra])


def upsert_superuser(ctx) -> Attempt:
    layout, config = ctx.layout, ctx.config
    res = ctx.runner.run(
        _upsert_argv(layout, config.admin_email, config.admin_password),
        cwd=layout.install_dir,
        secrets=[config.admin_password],
    )
    return Attempt("upsert", res.returncode == 0, tail(res.stderr or res.stdout or "", limit=3))


def upsert_with_data_dir(ctx) -> Attempt:
    layout, config = ctx.layout, ctx.config
    res = ctx.runner.run(
        _upsert_argv(layout, config.admin_email, config.admin_password, f"--dir={layout.data_dir}"),
        cwd=layout.install_dir,
        secrets=[config.admin_password],
    )
    return Attempt("upsert --dir", res.returncode == 0, tail(res.stderr or res.stdout or "", limit=3))


def wait_for_health(
    client: httpx.Client,
    url: str,
    *,
    sleep: Callable[[float], None],
    attempts: int = HEALTH_ATTEMPTS,
    interval: float = HEALTH_INTERVAL,
) -> bool:
    for _ in range(attempts):
        try:
            resp = client.get(url, timeout=2.0)
            if resp.status_code == 200:
                return True
        except httpx.RequestError:
            pass
        sleep(interval)
    return False


def _stop_process(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=SERVE_STOP_TIMEOUT)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def temporary_serve_then_create(ctx) -> Attempt:
    """Boot the binary once on loopback so migrations run, then create the superuser."""
    layout, config = ctx.layout, ctx.config
    address = f"127.0.0.1:{config.port}"
    try:
        proc = ctx.runner.spawn(
            as_service_user(layout.service_user, [layout.binary, "serve", f"--http={address}", f"--dir={layout.data_dir}"]),
            cwd=layout.install_dir,
        )
    except OSError as exc:
        return Attempt("temporary serve", False, str(exc))
    try:
        healthy = wait_for_health(ctx.http, f"http://{address}{HEALTH_PATH}", sleep=ctx.sleep)
    finally:
        _stop_process(proc)
    if not healthy:
        return Attempt("temporary serve", False, "health endpoint never answered")
    res = ctx.runner.run(
        as_service_user(
            layout.service_user,
            [layout.binary, "superuser", "create", config.admin_email, config.admin_password, f"--dir={layout.data_dir}"],
        ),
        cwd=layout.install_dir,
        secrets=[config.admin_password],
    )
    return Attempt("temporary serve", res.returncode == 0, tail(res.stderr or res.stdout or "", limit=3))


STRATEGIES = (upsert_superuser, upsert_with_data_dir, temporary_serve_then_create)


def _reset_data_dir(ctx) -> None:
    layout = ctx.layout
    owner = f"{layout.service_user}:{layout.service_user}"
    os.makedirs(layout.data_dir, exist_ok=True)
    for argv in (["chown", "-R", owner, layout.data_dir], ["chmod", "-R", "755", layout.data_dir]):
        res = ctx.runner.run(argv)
        if res.returncode != 0:
            logger.warning("%s failed: %s", argv[0], tail(res.stderr or "", limit=2))


def create_admin_account(ctx, strategies=STRATEGIES) -> CredentialOutcome:
    layout = ctx.layout
    ctx.runner.run(["systemctl", "stop", layout.unit_name])
    _reset_data_dir(ctx)

    outcome = CredentialOutcome(created=False)
    for strategy in strategies:
        attempt = strategy(ctx)
        outcome.attempts.append(attempt)
        logger.info("admin strategy %s: %s", attempt.strategy, "ok" if attempt.ok else "failed")
        if attempt.ok:
            outcome.created = True
            outcome.strategy = attempt.strategy
            break

    owner = f"{layout.service_user}:{layout.service_user}"
    if ctx.runner.run(["chown", "-R", owner, layout.install_dir]).returncode != 0:
        logger.warning("could not reset ownership of %s", layout.install_dir)
    restart = ctx.runner.run(["systemctl", "restart", layout.unit_name])
    if restart.returncode != 0:
        ctx.degraded.append(f"PocketBase did not restart cleanly; run: sudo systemctl restart {layout.service_name}")
    return outcome


def manual_admin_instructions(layout: HostLayout) -> list[str]:
    return [
        "Failed to create admin account automatically. Create it manually:",
        f"1. Stop the service: sudo systemctl stop {layout.service_name}",
        f"2. Create the admin: sudo -u {layout.service_user} {layout.binary} superuser upsert your@email.com yourpassword",
        f"3. Start the service: sudo systemctl start {layout.service_name}",
    ]
