from __future__ import annotations

import enum
import logging
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

import httpx

from .errors import CollaboratorFailure, ValidationError
from .model import Configuration, HostLayout
from .release import DEFAULT_API_URL, DEFAULT_REPO
from .runner import CommandRunner
from .steps import DEFAULT_STEPS, Step, StepContext, StepState

logger = logging.getLogger(__name__)

RESOLVE_STEP = "resolve-release"
RELEASE_STEPS = frozenset({"download-release", "verify-release", "install-release"})

StepObserver = Callable[[Step, StepState, "str | None"], None]


class ReconcilerState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class RunResult:
    completed_steps: list[str] = field(default_factory=list)
    skipped_steps: list[str] = field(default_factory=list)
    failed_step: str | None = None
    exit_code: int = 0
    message: str = ""
    degraded: list[str] = field(default_factory=list)
    notes: dict[str, str] = field(default_factory=dict)
    step_states: dict[str, StepState] = field(default_factory=dict)
    stdout: str | None = None
    stderr: str | None = None

    @property
    def ok(self) -> bool:
        return self.failed_step is None

    @property
    def is_degraded(self) -> bool:
        return self.ok and bool(self.degraded)


class Reconciler:
    """Drives a host through the ordered provisioning steps.

    The first failing step aborts the run; steps already applied stay applied.
    """

    def __init__(
        self,
        steps: Sequence[Step] = DEFAULT_STEPS,
        *,
        runner: CommandRunner | None = None,
        layout: HostLayout | None = None,
        http: httpx.Client | None = None,
        observer: StepObserver | None = None,
        release_repo: str = DEFAULT_REPO,
        release_api_url: str = DEFAULT_API_URL,
        release_version: str | None = None,
        machine: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        names = [s.name for s in steps]
        if len(set(names)) != len(names):
            raise ValueError("step names must be unique")
        codes = [s.exit_code for s in steps]
        if len(set(codes)) != len(codes):
            raise ValueError("step exit codes must be unique")
        self.steps = tuple(steps)
        self.runner = runner or CommandRunner()
        self.layout = layout or HostLayout()
        self.http = http
        self.observer = observer
        self.release_repo = release_repo
        self.release_api_url = release_api_url
        self.release_version = release_version
        self.machine = machine
        self.sleep = sleep
        self.state = ReconcilerState.IDLE

    def _emit(self, result: RunResult, step: Step, state: StepState, note: str | None = None) -> None:
        result.step_states[step.name] = state
        if note:
            result.notes[step.name] = note
        logger.debug("step %s -> %s%s", step.name, state.value, f" ({note})" if note else "")
        if self.observer is not None:
            self.observer(step, state, note)

    def _start_index(self, start_at: str | None) -> int:
        if start_at is None:
            return 0
        for idx, step in enumerate(self.steps):
            if step.name == start_at:
                return idx
        raise ValidationError(f"Unknown step: {start_at}", fields=["start_at"])

    def _must_run(self, idx: int, start: int, config: Configuration) -> bool:
        if idx >= start:
            return True
        step = self.steps[idx]
        if step.name != RESOLVE_STEP:
            return False
        return any(s.name in RELEASE_STEPS and s.enabled_for(config) for s in self.steps[start:])

    def run(self, config: Configuration, *, start_at: str | None = None) -> RunResult:
        config.validate()
        start = self._start_index(start_at)
        result = RunResult()
        for step in self.steps:
            result.step_states[step.name] = StepState.PENDING

        self.state = ReconcilerState.RUNNING
        owns_http = self.http is None
        http = self.http or httpx.Client(timeout=httpx.Timeout(30.0, read=300.0), follow_redirects=True)
        try:
            with tempfile.TemporaryDirectory(prefix="pbhost-") as workdir:
                ctx = StepContext(
                    config=config,
                    layout=self.layout,
                    runner=self.runner,
                    http=http,
                    workdir=Path(workdir),
                    release_repo=self.release_repo,
                    release_api_url=self.release_api_url,
                    release_version=self.release_version,
                    machine=self.machine,
                    sleep=self.sleep,
                )
                for idx, step in enumerate(self.steps):
                    if not self._must_run(idx, start, config):
                        result.skipped_steps.append(step.name)
                        self._emit(result, step, StepState.SKIPPED, f"before {start_at}")
                        continue
                    if not step.enabled_for(config):
                        result.skipped_steps.append(step.name)
                        self._emit(result, step, StepState.SKIPPED, "not enabled")
                        continue
                    if not self._run_step(step, ctx, result):
                        self.state = ReconcilerState.ABORTED
                        return result
                result.degraded = list(ctx.degraded)
        finally:
            if owns_http:
                http.close()

        self.state = ReconcilerState.COMPLETED
        result.message = "PocketBase has been installed and configured."
        return result

    def _run_step(self, step: Step, ctx: StepContext, result: RunResult) -> bool:
        try:
            if step.check is not None:
                self._emit(result, step, StepState.CHECKING)
                reason = step.check(ctx)
                if reason:
                    result.skipped_steps.append(step.name)
                    self._emit(result, step, StepState.SKIPPED, reason)
                    return True
            self._emit(result, step, StepState.APPLYING)
            step.apply(ctx)
        except (CollaboratorFailure, OSError) as exc:
            message = str(exc) if isinstance(exc, CollaboratorFailure) else f"{step.title} failed: {exc}"
            if isinstance(exc, CollaboratorFailure):
                exc.step = step.name
                exc.exit_code = step.exit_code
                result.stdout = exc.stdout
                result.stderr = exc.stderr
            result.failed_step = step.name
            result.exit_code = step.exit_code
            result.message = message
            self._emit(result, step, StepState.FAILED, message)
            logger.debug("aborted at %s (exit %s)", step.name, step.exit_code)
            return False
        result.completed_steps.append(step.name)
        self._emit(result, step, StepState.DONE)
        return True
