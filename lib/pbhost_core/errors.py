from __future__ import annotations


class PbHostError(Exception):
    """Base library error."""


class ValidationError(PbHostError):
    def __init__(self, message: str, fields: list[str] | None = None):
        super().__init__(message)
        self.fields = list(fields or [])


class PreconditionError(PbHostError):
    """Host is not in a state where provisioning may run (e.g. not root)."""

    exit_code = 1


class CollaboratorFailure(PbHostError):
    """An external tool (apt, systemctl, nginx, ...) reported failure."""

    def __init__(
        self,
        message: str,
        *,
        step: str | None = None,
        exit_code: int | None = None,
        stdout: str | None = None,
        stderr: str | None = None,
    ):
        super().__init__(message)
        self.step = step
        self.exit_code = exit_code
        self.stdout = stdout or ""
        self.stderr = stderr or ""


class ReleaseError(CollaboratorFailure):
    """Release discovery, download or archive verification failed."""
