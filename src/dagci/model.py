# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union


class JobStatus(str, Enum):
    PENDING = "pending"
    SKIPPED = "skipped"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.SKIPPED, JobStatus.SUCCESS, JobStatus.FAILURE, JobStatus.CANCELLED}
)


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    condition: str | None = None
    timeout: float | None = None

    # output name -> glob of files published as a FileSet on success
    artifacts: Dict[str, str] = field(default_factory=dict)

    # ENV var -> "<job>.<output>"
    consumes: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CacheSpec:
    """Directories restored before a job and saved after it succeeds."""
    paths: List[str]
    key_files: List[str] = field(default_factory=list)
    key_prefix: str = ""


@dataclass
class Job:
    """
    A CI job declaration: steps + dependencies + run condition.

    `condition` defaults to `all_success(needs)` when left empty.
    """
    name: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)
    condition: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    timeout: float | None = None
    cache: Optional[CacheSpec] = None
    display_name: str | None = None

    @property
    def id(self) -> str:
        return self.name

    @property
    def title(self) -> str:
        return self.display_name or self.name


DEFAULT_CONDITION = "all_success(needs)"


@dataclass(frozen=True)
class Trigger:
    """
    Workflow-level trigger filter.

    Empty lists mean "any". `paths` are globs matched against the ChangeSet.
    """
    events: List[str] = field(default_factory=list)
    branches: List[str] = field(default_factory=list)
    paths: List[str] = field(default_factory=list)


@dataclass
class Workflow:
    jobs: List[Job]
    categories: Dict[str, List[str]] = field(default_factory=dict)
    trigger: Optional[Trigger] = None
    env: Dict[str, str] = field(default_factory=dict)
    name: str = "workflow"


CONTEXT_FIELDS = ("event", "branch", "ref", "actor", "sha")


@dataclass(frozen=True)
class RunContext:
    """Metadata of the triggering event. Read-only for the whole run."""
    event: str = "push"
    branch: str = ""
    actor: str = ""
    sha: str = ""
    ref: str = ""

    def __post_init__(self) -> None:
        if not self.ref and self.branch:
            object.__setattr__(self, "ref", f"refs/heads/{self.branch}")

    def get(self, name: str) -> str:
        if name not in CONTEXT_FIELDS:
            raise KeyError(name)
        return getattr(self, name)


@dataclass(frozen=True)
class FileSet:
    """Reference to files a job published (paths relative to repo root)."""
    root: str
    paths: Tuple[str, ...]

    def __str__(self) -> str:
        return " ".join(self.paths)


ArtifactValue = Union[str, FileSet]


@dataclass(frozen=True)
class ArtifactRecord:
    job: str
    name: str
    value: ArtifactValue


@dataclass
class JobResult:
    """Terminal status plus an optional diagnostic."""
    status: JobStatus
    diagnostic: str | None = None
    failed_step: str | None = None
    duration: float | None = None
    steps_run: int = 0
