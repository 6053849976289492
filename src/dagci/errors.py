# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the per-job diagnostic in the run report
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: Optional[str] = None
    step: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigurationError(CIError):
    """Invalid workflow declaration. Raised before anything is dispatched."""

    def __init__(self, message: str, *, job: str | None = None, details: dict | None = None):
        super().__init__(
            kind="ConfigurationError",
            message=message,
            job=job,
            details=details or {},
        )


class StepError(CIError):
    """Nonzero exit, spawn failure or timeout of a single step."""

    def __init__(
        self,
        message: str,
        *,
        job: str,
        step: str | None,
        exit_code: int | None = None,
        timed_out: bool = False,
        log_tail: str = "",
    ):
        details: Dict[str, Any] = {}
        if exit_code is not None:
            details["exit_code"] = exit_code
        if timed_out:
            details["timeout"] = True
        super().__init__(kind="StepError", message=message, job=job, step=step, details=details)
        self.exit_code = exit_code
        self.timed_out = timed_out
        self.log_tail = log_tail


class ArtifactError(CIError):
    """Base for artifact store failures. Surfaced to the requesting step."""

    def __init__(self, message: str, *, job: str, name: str):
        super().__init__(
            kind=type(self).__name__,
            message=message,
            job=job,
            details={"artifact": f"{job}.{name}"},
        )
        self.name = name


class ArtifactNotFound(ArtifactError):
    pass


class ArtifactNotReady(ArtifactError):
    pass


class DuplicateArtifact(ArtifactError):
    pass


class ArtifactWriteRejected(ArtifactError):
    """put() called while the owning job is not running."""


class SchedulerInvariantError(CIError):
    """Internal-consistency fault. Aborts the whole run."""

    def __init__(self, message: str, *, job: str | None = None):
        super().__init__(kind="SchedulerInvariantError", message=message, job=job)
