from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Callable

import httpx

from .errors import ValidationError
from .model import DEFAULT_PORT, HostLayout
from .runner import CommandRunner, as_service_user, tail

logger = logging.getLogger(__name__)

DEFAULT_LOG_LINES = 50
STOP_GRACE_SECONDS = 2
START_SETTLE_SECONDS = 2
BINARY_STOP_POLLS = 5

_PORT_RE = re.compile(r'^ExecStart=.*--http="?0\.0\.0\.0:(\d+)', re.MULTILINE)


@dataclass(frozen=True)
class ControlResult:
    verb: str
    ok: bool
    message: str
    output: str = ""


def read_unit_port(layout: HostLayout) -> int:
    """Port the service listens on according to its unit file, or the default."""
    try:
        with open(layout.unit_path, encoding="utf-8") as f:
            text = f.read()
    except OSError:
        return DEFAULT_PORT
    m = _PORT_RE.search(text)
    if not m:
        return DEFAULT_PORT
    port = int(m.group(1))
    return port if 1 <= port <= 65535 else DEFAULT_PORT


def site_proxies_service(text: str, *, port: int, service_name: str) -> bool:
    if f":{port}" in text and "proxy_pass" in text:
        return True
    return service_name in text.lower()


class ServiceController:
    """Post-install operations on the PocketBase service, keyed by verb."""

    def __init__(
        self,
        *,
        runner: CommandRunner | None = None,
        layout: HostLayout | None = None,
        http: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.runner = runner or CommandRunner()
        self.layout = layout or HostLayout()
        self.http = http
        self.sleep = sleep
        self._verbs: dict[str, Callable[..., ControlResult]] = {
            "status": self.status,
            "start": self.start,
            "stop": self.stop,
            "restart": self.restart,
            "enable": self.enable,
            "disable": self.disable,
            "logs": self.logs,
            "follow-logs": self.follow_logs,
            "clear-logs": self.clear_logs,
            "check": self.check,
            "nginx-config": self.nginx_config,
            "run-binary": self.run_binary,
            "stop-binary": self.stop_binary,
            "restart-binary": self.restart_binary,
        }

    @property
    def verbs(self) -> list[str]:
        return list(self._verbs)

    def dispatch(self, verb: str, arg: int | None = None) -> ControlResult:
        handler = self._verbs.get(verb)
        if handler is None:
            raise ValidationError(f"Unknown verb: {verb}. Expected one of: {', '.join(self._verbs)}", fields=["verb"])
        if arg is not None:
            if verb != "logs":
                raise ValidationError(f"Verb '{verb}' takes no argument.", fields=["arg"])
            return handler(arg)
        return handler()

    # --- helpers ----------------------------------------------------------

    @property
    def _unit(self) -> str:
        return self.layout.unit_name

    def is_active(self) -> bool:
        return self.runner.succeeds(["systemctl", "is-active", "--quiet", self._unit])

    def _recent_journal(self, lines: int = 10) -> str:
        res = self.runner.run(["journalctl", "-u", self._unit, "-n", str(lines), "--no-pager"])
        return res.stdout or ""

    def reset_data_permissions(self) -> None:
        layout = self.layout
        if not os.path.isdir(layout.data_dir):
            return
        owner = f"{layout.service_user}:{layout.service_user}"
        for argv in (["chown", "-R", owner, layout.data_dir], ["chmod", "-R", "755", layout.data_dir]):
            res = self.runner.run(argv)
            if res.returncode != 0:
                logger.warning("%s on %s failed: %s", argv[0], layout.data_dir, tail(res.stderr or "", limit=2))

    def _binary_pids(self) -> list[int]:
        res = self.runner.run(["pgrep", "-f", self.layout.binary])
        if res.returncode != 0:
            return []
        pids = []
        for line in (res.stdout or "").split():
            if line.isdigit():
                pids.append(int(line))
        return pids

    # --- supervisor verbs -------------------------------------------------

    def status(self) -> ControlResult:
        res = self.runner.run(["systemctl", "status", self._unit, "--no-pager"])
        # systemctl status exits 3 for an inactive unit
        ok = res.returncode in (0, 3)
        state = "active" if res.returncode == 0 else "inactive"
        return ControlResult("status", ok, f"PocketBase service is {state}.", res.stdout or res.stderr or "")

    def start(self) -> ControlResult:
        if self.is_active():
            return ControlResult("start", True, "PocketBase service is already running.")
        self.reset_data_permissions()
        self.runner.run(["systemctl", "start", self._unit])
        self.sleep(START_SETTLE_SECONDS)
        if self.is_active():
            return ControlResult("start", True, "PocketBase service started successfully!")
        return ControlResult("start", False, "Failed to start PocketBase service.", self._recent_journal())

    def stop(self) -> ControlResult:
        if not self.is_active():
            return ControlResult("stop", True, "PocketBase service is already stopped.")
        self.runner.run(["systemctl", "stop", self._unit])
        self.sleep(STOP_GRACE_SECONDS)
        if not self.is_active():
            return ControlResult("stop", True, "PocketBase service stopped successfully!")
        logger.info("graceful stop timed out; sending kill")
        self.runner.run(["systemctl", "kill", self._unit])
        self.sleep(1)
        if not self.is_active():
            return ControlResult("stop", True, "PocketBase service force-stopped successfully!")
        return ControlResult("stop", False, "Failed to force-stop PocketBase service. You may need to reboot the system.")

    def restart(self) -> ControlResult:
        stopped = self.stop()
        if not stopped.ok:
            return ControlResult("restart", False, stopped.message)
        self.reset_data_permissions()
        self.runner.run(["systemctl", "start", self._unit])
        self.sleep(START_SETTLE_SECONDS + 1)
        if self.is_active():
            return ControlResult("restart", True, "PocketBase service restarted successfully!")
        return ControlResult("restart", False, "Failed to restart PocketBase service.", self._recent_journal())

    def enable(self) -> ControlResult:
        res = self.runner.run(["systemctl", "enable", self._unit])
        if res.returncode == 0:
            return ControlResult("enable", True, "PocketBase service enabled at boot.")
        return ControlResult("enable", False, "Failed to enable PocketBase service.", res.stderr or "")

    def disable(self) -> ControlResult:
        res = self.runner.run(["systemctl", "disable", self._unit])
        if res.returncode == 0:
            return ControlResult("disable", True, "PocketBase service disabled at boot.")
        return ControlResult("disable", False, "Failed to disable PocketBase service.", res.stderr or "")

    # --- logs -------------------------------------------------------------

    def logs(self, lines: int = DEFAULT_LOG_LINES) -> ControlResult:
        if lines <= 0:
            raise ValidationError("Number of log lines must be positive.", fields=["lines"])
        res = self.runner.run(["journalctl", "-u", self._unit, "-n", str(lines), "--no-pager"])
        if res.returncode != 0:
            return ControlResult("logs", False, "Failed to read journal.", res.stderr or "")
        return ControlResult("logs", True, f"Last {lines} log lines.", res.stdout or "")

    def follow_logs(self) -> ControlResult:
        rc = self.runner.stream(["journalctl", "-u", self._unit, "-f"])
        # 130 is Ctrl+C, the normal way to leave
        return ControlResult("follow-logs", rc in (0, 130), "Stopped following logs.")

    def _nginx_service_logs(self) -> list[str]:
        log_dir = self.layout.nginx_log_dir
        if not os.path.isdir(log_dir):
            return []
        name = self.layout.service_name
        found = []
        for entry in sorted(os.listdir(log_dir)):
            path = os.path.join(log_dir, entry)
            if name in entry and os.path.isfile(path):
                found.append(path)
        return found

    def _purge_logs(self) -> list[str]:
        cleared: list[str] = []
        self.runner.run(["journalctl", "--vacuum-time=1s", f"--unit={self._unit}"])
        cleared.append("journal")

        logs_dir = self.layout.logs_dir
        if os.path.isdir(logs_dir):
            for entry in sorted(os.listdir(logs_dir)):
                path = os.path.join(logs_dir, entry)
                if entry.endswith(".log") and os.path.isfile(path):
                    os.remove(path)
                    cleared.append(path)

        for path in self._nginx_service_logs():
            with open(path, "w", encoding="utf-8"):
                pass
            cleared.append(path)
        return cleared

    def clear_logs(self) -> ControlResult:
        was_active = self.is_active()
        if was_active:
            stopped = self.stop()
            if not stopped.ok:
                return ControlResult("clear-logs", False, stopped.message)

        error: OSError | None = None
        cleared: list[str] = []
        try:
            cleared = self._purge_logs()
        except OSError as exc:
            logger.warning("clearing logs failed: %s", exc)
            error = exc
        finally:
            started = self.start() if was_active else None

        if error is not None:
            return ControlResult("clear-logs", False, f"Failed to clear logs: {error}")
        if started is not None and not started.ok:
            return ControlResult("clear-logs", False, "Logs cleared but the service failed to start again.", started.output)
        return ControlResult("clear-logs", True, "All PocketBase logs have been cleared successfully!", "\n".join(cleared))

    # --- inspection -------------------------------------------------------

    def check(self) -> ControlResult:
        port = read_unit_port(self.layout)
        url = f"http://localhost:{port}"
        client = self.http or httpx.Client(timeout=5.0)
        try:
            resp = client.get(url)
            code = str(resp.status_code)
        except httpx.RequestError as exc:
            logger.debug("port check failed: %s", exc)
            code = "000"
        finally:
            if self.http is None:
                client.close()
        if code == "200":
            return ControlResult("check", True, f"PocketBase is accessible on port {port}!")
        return ControlResult("check", False, f"PocketBase is not accessible on port {port}. Response code: {code}")

    def nginx_config(self) -> ControlResult:
        port = read_unit_port(self.layout)
        sites = self.layout.sites_available
        blocks: list[str] = []
        if os.path.isdir(sites):
            for entry in sorted(os.listdir(sites)):
                path = os.path.join(sites, entry)
                if not os.path.isfile(path):
                    continue
                with open(path, encoding="utf-8", errors="replace") as f:
                    text = f.read()
                if "proxy_pass" in text and site_proxies_service(text, port=port, service_name=self.layout.service_name):
                    blocks.append(f"# {path}\n{text}")
        if not blocks:
            return ControlResult("nginx-config", False, "No Nginx configuration found for PocketBase.")
        return ControlResult("nginx-config", True, f"Found {len(blocks)} configuration file(s).", "\n".join(blocks))

    # --- direct binary ----------------------------------------------------

    def run_binary(self) -> ControlResult:
        if self._binary_pids():
            return ControlResult("run-binary", False, "PocketBase is already running directly.")
        self.reset_data_permissions()
        port = read_unit_port(self.layout)
        argv = as_service_user(self.layout.service_user, [self.layout.binary, "serve", f"--http=0.0.0.0:{port}"])
        rc = self.runner.stream(argv, cwd=self.layout.install_dir)
        return ControlResult("run-binary", rc in (0, 130), f"PocketBase exited with code {rc}.")

    def stop_binary(self) -> ControlResult:
        pids = self._binary_pids()
        if not pids:
            return ControlResult("stop-binary", True, "PocketBase binary is not running directly.")
        self.runner.run(["kill", *[str(p) for p in pids]])
        for _ in range(BINARY_STOP_POLLS):
            if not self._binary_pids():
                return ControlResult("stop-binary", True, "PocketBase binary stopped successfully!")
            self.sleep(1)
        self.runner.run(["pkill", "-9", "-f", self.layout.binary])
        if not self._binary_pids():
            return ControlResult("stop-binary", True, "PocketBase binary force-stopped successfully!")
        return ControlResult("stop-binary", False, "Failed to stop PocketBase binary.")

    def restart_binary(self) -> ControlResult:
        stopped = self.stop_binary()
        if not stopped.ok:
            return ControlResult("restart-binary", False, stopped.message)
        result = self.run_binary()
        return ControlResult("restart-binary", result.ok, result.message, result.output)
