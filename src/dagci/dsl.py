# src/dagci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .model import CacheSpec, Job, Step, Trigger, Workflow


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, Any]] = None,
    when: str | None = None,
    timeout: float | None = None,
    artifacts: Optional[Dict[str, str]] = None,
    consumes: Optional[Dict[str, str]] = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        env={k: str(v) for k, v in (env or {}).items()},
        condition=when,
        timeout=timeout,
        artifacts=dict(artifacts or {}),
        consumes=dict(consumes or {}),
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    when: str | None = None,
    env: Optional[Dict[str, Any]] = None,
    timeout: float | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    cache: Optional[CacheSpec] = None,
    display_name: str | None = None,
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        condition=when,
        env={k: str(v) for k, v in (env or {}).items()},
        timeout=timeout,
        cache=cache,
        display_name=display_name,
    )


def cache(*paths: str, key_files: Sequence[str] = (), prefix: str = "") -> CacheSpec:
    """cache("node_modules", key_files=["package-lock.json"])"""
    return CacheSpec(paths=list(paths), key_files=list(key_files), key_prefix=prefix)


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._condition: str | None = None
        self._timeout: float | None = None
        self._cache: Optional[CacheSpec] = None
        self._display_name: str | None = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def run_if(self, expression: str):
        self._condition = expression
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def named(self, display_name: str):
        self._display_name = display_name
        return self

    def cache_dirs(self, *dirs: str, key_files: Sequence[str] = ()):
        self._cache = cache(*dirs, key_files=key_files)
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            condition=self._condition,
            env=dict(self._env),
            timeout=self._timeout,
            cache=self._cache,
            display_name=self._display_name,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.10","3.11"]).jobs(
            lambda v: job(f"test-py{v}", sh(...))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow-level helpers
# ---------------------------------------------------------------------

def categories(**globs: Sequence[str]) -> Dict[str, List[str]]:
    """categories(backend=["backend/**"], frontend=["frontend/**"])"""
    return {name: list(patterns) for name, patterns in globs.items()}


def on(
    *events: str,
    branches: Sequence[str] = (),
    paths: Sequence[str] = (),
) -> Trigger:
    """on("push", "pull_request", branches=["main"], paths=["backend/**"])"""
    return Trigger(events=list(events), branches=list(branches), paths=list(paths))


def wf(
    *jobs: Job | List[Job],
    categories: Optional[Dict[str, List[str]]] = None,
    trigger: Optional[Trigger] = None,
    env: Optional[Dict[str, Any]] = None,
    name: str = "workflow",
) -> Workflow:
    """
    Workflow definition helper. Lists (e.g. from matrix) are flattened.

        from dagci import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
                categories={...},
            )

    Or use JOBS directly:
        JOBS = [job(...), job(...)]
    """
    flat: List[Job] = []
    for item in jobs:
        if isinstance(item, list):
            flat.extend(item)
        else:
            flat.append(item)
    return Workflow(
        jobs=flat,
        categories=dict(categories or {}),
        trigger=trigger,
        env={k: str(v) for k, v in (env or {}).items()},
        name=name,
    )


workflow = wf  # alias (avoid naming your function workflow if you use it)
