from __future__ import annotations

import subprocess
from dataclasses import dataclass, field

import pytest

from pbhost_core.model import HostLayout
from pbhost_core.runner import CommandRunner


@dataclass
class FakeProc:
    argv: list[str]
    returncode: int | None = None
    terminated: bool = False

    def poll(self):
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.returncode = -15

    def kill(self) -> None:
        self.returncode = -9

    def wait(self, timeout=None):
        return self.returncode


@dataclass
class FakeRunner(CommandRunner):
    """Answers host commands from canned results, matched by argv prefix."""

    default_rc: int = 0
    calls: list[list[str]] = field(default_factory=list)
    inputs: dict[str, str] = field(default_factory=dict)
    streamed: list[list[str]] = field(default_factory=list)
    spawned: list[FakeProc] = field(default_factory=list)
    _rules: list[tuple[tuple[str, ...], list[subprocess.CompletedProcess]]] = field(default_factory=list)

    def respond(self, prefix, *results: tuple[int, str] | int) -> None:
        """Queue results for commands starting with ``prefix``; the last one repeats."""
        queue = []
        for item in results or (0,):
            rc, out = (item, "") if isinstance(item, int) else item
            queue.append(subprocess.CompletedProcess(list(prefix), rc, out, "boom" if rc else ""))
        self._rules.append((tuple(prefix), queue))

    def run(self, argv, *, env=None, input=None, cwd=None, secrets=()):
        argv = list(argv)
        self.calls.append(argv)
        if input is not None:
            self.inputs[" ".join(argv)] = input
        best = None
        for prefix, queue in self._rules:
            if tuple(argv[: len(prefix)]) == prefix and (best is None or len(prefix) > len(best[0])):
                best = (prefix, queue)
        if best is None:
            return subprocess.CompletedProcess(argv, self.default_rc, "", "" if self.default_rc == 0 else "boom")
        queue = best[1]
        res = queue.pop(0) if len(queue) > 1 else queue[0]
        return subprocess.CompletedProcess(argv, res.returncode, res.stdout, res.stderr)

    def stream(self, argv, *, cwd=None) -> int:
        self.streamed.append(list(argv))
        return 0

    def spawn(self, argv, *, cwd=None):
        proc = FakeProc(list(argv))
        self.spawned.append(proc)
        return proc

    def ran(self, *argv: str) -> bool:
        return list(argv) in self.calls


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def layout(tmp_path) -> HostLayout:
    return HostLayout(
        install_dir=str(tmp_path / "opt" / "pocketbase"),
        systemd_dir=str(tmp_path / "etc" / "systemd" / "system"),
        nginx_dir=str(tmp_path / "etc" / "nginx"),
        nginx_log_dir=str(tmp_path / "var" / "log" / "nginx"),
        fail2ban_dir=str(tmp_path / "etc" / "fail2ban"),
        cron_dir=str(tmp_path / "etc" / "cron.d"),
        letsencrypt_live_dir=str(tmp_path / "etc" / "letsencrypt" / "live"),
    )
