from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from .errors import CollaboratorFailure

logger = logging.getLogger(__name__)

MISSING_COMMAND_RC = 127


def redact_secret(value: str) -> str:
    if not value:
        return ""
    if len(value) <= 8:
        if len(value) <= 2:
            return "*" * len(value)
        return f"{value[0]}{'*' * (len(value) - 2)}{value[-1]}"
    return f"{value[:4]}...{value[-4:]}"


def format_command(argv: Sequence[str], *, secrets: Sequence[str] = ()) -> str:
    hidden = {s for s in secrets if s}
    return " ".join(shlex.quote(redact_secret(part) if part in hidden else part) for part in argv)


def tail(text: str, *, limit: int = 8) -> str:
    if not text:
        return ""
    lines = text.splitlines()
    if len(lines) <= limit:
        return text
    return "\n".join(lines[-limit:])


@dataclass
class CommandRunner:
    """Runs host tools (apt-get, systemctl, nginx, ...) on the local machine."""

    base_env: Mapping[str, str] = field(default_factory=lambda: {"DEBIAN_FRONTEND": "noninteractive"})

    def _env(self, extra: Mapping[str, str] | None) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self.base_env)
        if extra:
            env.update(extra)
        return env

    def run(
        self,
        argv: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        input: str | None = None,
        cwd: str | None = None,
        secrets: Sequence[str] = (),
    ) -> subprocess.CompletedProcess:
        logger.debug("run: %s", format_command(argv, secrets=secrets))
        try:
            res = subprocess.run(
                list(argv),
                input=input,
                text=True,
                capture_output=True,
                env=self._env(env),
                cwd=cwd,
                check=False,
            )
        except FileNotFoundError as exc:
            logger.debug("command not found: %s", argv[0])
            return subprocess.CompletedProcess(list(argv), MISSING_COMMAND_RC, "", str(exc))
        if res.returncode != 0:
            logger.debug("rc=%s stderr=%s", res.returncode, tail(res.stderr or "", limit=4))
        return res

    def stream(self, argv: Sequence[str], *, cwd: str | None = None) -> int:
        """Run attached to the terminal until the command exits or is interrupted."""
        logger.debug("stream: %s", format_command(argv))
        try:
            return subprocess.call(list(argv), env=self._env(None), cwd=cwd)
        except FileNotFoundError:
            return MISSING_COMMAND_RC
        except KeyboardInterrupt:
            return 130

    def spawn(self, argv: Sequence[str], *, cwd: str | None = None) -> subprocess.Popen:
        logger.debug("spawn: %s", format_command(argv))
        return subprocess.Popen(
            list(argv),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            env=self._env(None),
            cwd=cwd,
        )

    def succeeds(self, argv: Sequence[str]) -> bool:
        return self.run(argv).returncode == 0

    def check(
        self,
        argv: Sequence[str],
        *,
        label: str,
        env: Mapping[str, str] | None = None,
        input: str | None = None,
        cwd: str | None = None,
        secrets: Sequence[str] = (),
    ) -> subprocess.CompletedProcess:
        res = self.run(argv, env=env, input=input, cwd=cwd, secrets=secrets)
        if res.returncode != 0:
            raise CollaboratorFailure(f"Failed to {label}.", stdout=res.stdout, stderr=res.stderr)
        return res


def as_service_user(user: str, argv: Sequence[str]) -> list[str]:
    return ["runuser", "-u", user, "--", *argv]
