# runner.py
from __future__ import annotations

import os
import runpy
import tarfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Set

from .artifacts import ArtifactStore
from .cache import CacheStore
from .changes import CategoryFlags, compile_categories, detect_changes, trigger_matches, validate_trigger
from .conditions import Scope, evaluate
from .dag import JobGraph, build_graph
from .errors import ArtifactError, ConfigurationError, SchedulerInvariantError, StepError
from .executor import ShellStepRunner, StepInvocation, StepOutcome, StepRunner
from .model import Job, JobResult, JobStatus, RunContext, Step, Workflow
from .report import RunReport, SkippedPolicy, aggregate, not_triggered_report
from .ui.console import Console, get_console


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass
class RunOptions:
    """Explicit run configuration. Nothing in the engine reads globals."""
    repo_root: Path = Path(".")
    max_workers: Optional[int] = None
    fail_fast: bool = False
    step_runner: Optional[StepRunner] = None
    cache_root: Optional[Path] = None
    cache_keep: int = 3
    watch: Optional[str] = None
    on_skipped: SkippedPolicy = SkippedPolicy.NEUTRAL


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file.

    The file must define either:
      - workflow() -> Workflow | List[Job]
      - JOBS = [Job, ...]
    and, when jobs are given as a list, may define CATEGORIES, TRIGGER
    and ENV next to them.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"dagci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    loaded = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        loaded = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        loaded = globals_dict["JOBS"]

    if isinstance(loaded, Workflow):
        return loaded

    if not isinstance(loaded, list) or not all(isinstance(j, Job) for j in loaded):
        raise TypeError(
            "Workflow must return/define a Workflow or a List[Job]. "
            "Define workflow() -> Workflow or JOBS = [Job, ...]."
        )

    return Workflow(
        jobs=loaded,
        categories=dict(globals_dict.get("CATEGORIES") or {}),
        trigger=globals_dict.get("TRIGGER"),
        env=dict(globals_dict.get("ENV") or {}),
        name=wf_path.stem,
    )


@dataclass
class Plan:
    graph: JobGraph
    flags: CategoryFlags
    triggered: bool
    reason: str


def plan_run(
    workflow: Workflow,
    context: RunContext,
    change_set: Iterable[str],
) -> Plan:
    """
    Validate the whole declaration and compute category flags.

    Raises ConfigurationError before anything runs.
    """
    compiled = compile_categories(workflow.categories)
    validate_trigger(workflow.trigger)
    graph = build_graph(workflow.jobs, categories=list(compiled))
    changed = list(change_set)
    triggered, reason = trigger_matches(workflow.trigger, context, changed)
    flags = detect_changes(changed, compiled)
    return Plan(graph=graph, flags=flags, triggered=triggered, reason=reason)


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

class _JobFailed(Exception):
    def __init__(self, diagnostic: str, step: Optional[str] = None, log_tail: str = ""):
        super().__init__(diagnostic)
        self.diagnostic = diagnostic
        self.step = step
        self.log_tail = log_tail


class Scheduler:
    """
    Walks a JobGraph and runs it.

    The dispatch loop sleeps on a condition variable and is woken only when
    a job reaches a terminal state. A job becomes a candidate once all its
    direct dependencies are terminal; its condition then decides between
    `skipped` and `running`. Candidates start in topological-then-
    declaration order, at most `max_workers` at a time.
    """

    def __init__(
        self,
        graph: JobGraph,
        *,
        context: RunContext,
        flags: CategoryFlags,
        options: Optional[RunOptions] = None,
        env: Optional[Mapping[str, str]] = None,
        console: Optional[Console] = None,
    ):
        self.graph = graph
        self.context = context
        self.flags = flags
        self.options = options or RunOptions()
        self.env = dict(env or {})
        self.console = console or get_console()

        self.max_workers = self.options.max_workers or default_workers()
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.repo_root = Path(self.options.repo_root).resolve()
        self.step_runner: StepRunner = self.options.step_runner or ShellStepRunner()
        self.cache = CacheStore(self.options.cache_root) if self.options.cache_root else None

        self.store = ArtifactStore()
        self.statuses: Dict[str, JobStatus] = {n: JobStatus.PENDING for n in graph.order}
        self.results: Dict[str, JobResult] = {}

        self._cond = threading.Condition()
        self._approved: Set[str] = set()
        self._running = 0
        self._fatal: Optional[BaseException] = None

    # ---- state transitions (caller holds self._cond) ----

    def _finish(self, name: str, result: JobResult) -> None:
        current = self.statuses[name]
        if current.terminal:
            raise SchedulerInvariantError(
                f"Job already finished with {current.value}", job=name
            )
        if not result.status.terminal:
            raise SchedulerInvariantError(
                f"Attempted to finish with non-terminal status {result.status.value}", job=name
            )
        self.statuses[name] = result.status
        self.results[name] = result
        self._approved.discard(name)
        self.store.close(name, result.status)
        self._cond.notify_all()

    def _is_candidate(self, name: str) -> bool:
        return self.statuses[name] is JobStatus.PENDING and all(
            self.statuses[d].terminal for d in self.graph.jobs[name].needs
        )

    def _scope(self, name: str) -> Scope:
        return Scope(
            flags=self.flags,
            context=self.context,
            needs={d: self.statuses[d] for d in self.graph.jobs[name].needs},
            output=self._output_text,
        )

    def _output_text(self, job: str, output: str) -> Optional[str]:
        value = self.store.peek(job, output)
        return None if value is None else str(value)

    def _dispatch(self, pool: ThreadPoolExecutor) -> None:
        progressed = True
        while progressed:
            progressed = False
            for name in self.graph.order:
                if name not in self._approved:
                    if not self._is_candidate(name):
                        continue
                    if not evaluate(self.graph.conditions[name], self._scope(name), job=name):
                        self.console.print_job_skipped(
                            name, f"condition false: {self.graph.conditions[name].source}"
                        )
                        self._finish(name, JobResult(status=JobStatus.SKIPPED, diagnostic="condition false"))
                        progressed = True
                        continue
                    self._approved.add(name)

                if self._running >= self.max_workers:
                    continue
                self._approved.discard(name)
                self.statuses[name] = JobStatus.RUNNING
                self.store.open(name)
                self._running += 1
                pool.submit(self._run_job_thread, name)

    def _cancel_after_failure(self, failed: str) -> None:
        # direct dependents only; cancelling one of them cascades to its own
        stack = [failed]
        while stack:
            upstream = stack.pop()
            for name in self.graph.dependents(upstream):
                if self.statuses[name] is not JobStatus.PENDING:
                    continue
                if not self.graph.conditions[name].cannot_hold(self._scope(name)):
                    continue
                reason = f"upstream '{failed}' failed (fail-fast)"
                self.console.print_job_cancelled(name, reason)
                self._finish(name, JobResult(status=JobStatus.CANCELLED, diagnostic=reason))
                stack.append(name)

    def run(self) -> Dict[str, JobResult]:
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="dagci") as pool:
            with self._cond:
                while True:
                    if self._fatal is not None:
                        break
                    self._dispatch(pool)
                    if all(s.terminal for s in self.statuses.values()):
                        break
                    if self._running == 0 and not self._approved:
                        stuck = [n for n, s in self.statuses.items() if not s.terminal]
                        raise SchedulerInvariantError(f"No runnable jobs left but unfinished: {stuck}")
                    self._cond.wait()

        if self._fatal is not None:
            raise self._fatal
        return {name: self.results[name] for name in self.graph.order}

    # ---- job execution (worker threads) ----

    def _run_job_thread(self, name: str) -> None:
        try:
            result = self._execute(name)
        except SchedulerInvariantError as e:
            with self._cond:
                self._fatal = e
                self._running -= 1
                self._cond.notify_all()
            return
        except Exception as e:
            # unexpected errors are contained to the job that raised them
            result = JobResult(status=JobStatus.FAILURE, diagnostic=f"{type(e).__name__}: {e}")
            self.console.print_exception(e)

        with self._cond:
            self._running -= 1
            self._finish(name, result)
            if result.status is JobStatus.FAILURE and self.options.fail_fast:
                self._cancel_after_failure(name)

    def _base_env(self, job: Job) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self.env)
        env.update(job.env)
        env.update(
            {
                "CI": "true",
                "DAGCI_JOB": job.name,
                "DAGCI_EVENT": self.context.event,
                "DAGCI_BRANCH": self.context.branch,
                "DAGCI_REF": self.context.ref,
                "DAGCI_SHA": self.context.sha,
                "DAGCI_ACTOR": self.context.actor,
            }
        )
        for flag, value in self.flags.items():
            env[f"DAGCI_FLAG_{flag.upper().replace('-', '_')}"] = "true" if value else "false"
        return env

    def _execute(self, name: str) -> JobResult:
        job = self.graph.jobs[name]
        started = time.monotonic()
        deadline = started + job.timeout if job.timeout else None
        self.console.print_job_start(job.title)

        self._restore_cache(job)

        steps_run = 0
        try:
            base_env = self._base_env(job)
            scope = self._scope(name)
            for i, step in enumerate(job.steps):
                step_condition = self.graph.step_conditions.get((name, i))
                if step_condition is not None and not evaluate(step_condition, scope, job=name):
                    self.console.print_step_skipped(name, step.name)
                    continue
                self.console.print_step(name, step.name)
                self._run_step(job, step, base_env, deadline)
                steps_run += 1
        except _JobFailed as f:
            duration = time.monotonic() - started
            self.console.print_failure(name, f.diagnostic, step=f.step, log_tail=f.log_tail)
            diagnostic = f.diagnostic if not f.log_tail else f"{f.diagnostic}\n{f.log_tail}"
            return JobResult(
                status=JobStatus.FAILURE,
                diagnostic=diagnostic,
                failed_step=f.step,
                duration=duration,
                steps_run=steps_run,
            )

        self._save_cache(job)
        duration = time.monotonic() - started
        self.console.print_job_success(name, duration)
        return JobResult(status=JobStatus.SUCCESS, duration=duration, steps_run=steps_run)

    def _step_timeout(self, job: Job, step: Step, deadline: Optional[float]) -> Optional[float]:
        timeout = step.timeout
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise _JobFailed(f"timeout: job exceeded {job.timeout}s", step=step.name)
            timeout = remaining if timeout is None else min(timeout, remaining)
        return timeout

    def _run_step(
        self,
        job: Job,
        step: Step,
        base_env: Dict[str, str],
        deadline: Optional[float],
    ) -> None:
        env = dict(base_env)
        env.update(step.env)
        try:
            for env_name, ref in step.consumes.items():
                producer, _, output = ref.partition(".")
                env[env_name] = str(self.store.get(producer, output))
        except ArtifactError as e:
            raise _JobFailed(f"{e.kind}: {e.message}", step=step.name) from e

        timeout = self._step_timeout(job, step, deadline)
        inv = StepInvocation(
            job=job,
            step=step,
            env=env,
            cwd=(self.repo_root / (step.cwd or ".")).resolve(),
            repo_root=self.repo_root,
            timeout=timeout,
        )
        try:
            outcome: StepOutcome = self.step_runner(inv)
        except StepError as e:
            raise _JobFailed(e.message, step=step.name, log_tail=e.log_tail) from e

        if outcome.timed_out:
            job_expired = deadline is not None and time.monotonic() >= deadline
            limit = f"job exceeded {job.timeout}s" if job_expired else f"step exceeded {timeout}s"
            raise _JobFailed(f"timeout: {limit}", step=step.name, log_tail=outcome.log_tail)
        if outcome.exit_code != 0:
            raise _JobFailed(
                f"Command exited with code {outcome.exit_code}",
                step=step.name,
                log_tail=outcome.log_tail,
            )

        try:
            for out_name, value in outcome.outputs.items():
                self.store.put(job.name, out_name, value)
            for out_name, files in outcome.artifacts.items():
                if not files.paths:
                    self.console.print_warning(
                        f"[{job.name}] artifact '{out_name}' matched no files; not published"
                    )
                    continue
                self.store.put(job.name, out_name, files)
        except ArtifactError as e:
            raise _JobFailed(f"{e.kind}: {e.message}", step=step.name) from e

    # ---- cache ----

    def _restore_cache(self, job: Job) -> None:
        if self.cache is None or job.cache is None:
            return
        try:
            hit = self.cache.restore(job, self.repo_root)
        except (OSError, tarfile.TarError) as e:
            self.console.print_warning(f"[{job.name}] cache restore failed: {e}")
            return
        self.console.print_cache(job.name, f"{hit.reason} ({hit.key[:12]})")

    def _save_cache(self, job: Job) -> None:
        if self.cache is None or job.cache is None:
            return
        try:
            key = self.cache.save(job, self.repo_root)
            self.cache.prune(job.name, keep=self.options.cache_keep)
        except (OSError, tarfile.TarError) as e:
            self.console.print_warning(f"[{job.name}] cache save failed: {e}")
            return
        self.console.print_cache(job.name, f"saved ({key[:12]}...)")


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_workflow(
    workflow: Workflow,
    *,
    context: RunContext,
    change_set: Iterable[str] = (),
    options: Optional[RunOptions] = None,
    console: Optional[Console] = None,
) -> RunReport:
    """
    Validate, plan and execute a workflow, returning the aggregated report.

    ConfigurationError is raised before any job starts; step and job
    errors end up in the report; SchedulerInvariantError aborts the run.
    """
    options = options or RunOptions()
    console = console or get_console()

    plan = plan_run(workflow, context, change_set)
    if options.watch is not None and options.watch not in plan.graph:
        raise ConfigurationError(
            f"Watched job '{options.watch}' is not in the workflow",
            details={"jobs": list(plan.graph.order)},
        )
    if not plan.triggered:
        console.print_not_triggered(plan.reason)
        return not_triggered_report(workflow.name, plan.reason, context)

    console.print_run_started(
        workflow=workflow.name,
        job_count=len(plan.graph),
        context={"event": context.event, "branch": context.branch},
    )
    console.print_flags(plan.flags)

    scheduler = Scheduler(
        plan.graph,
        context=context,
        flags=plan.flags,
        options=options,
        env=workflow.env,
        console=console,
    )
    results = scheduler.run()

    return aggregate(
        plan.graph.order,
        results,
        workflow=workflow.name,
        titles={n: j.title for n, j in plan.graph.jobs.items()},
        outputs={n: scheduler.store.outputs(n) for n in plan.graph.order},
        context=context,
        flags=plan.flags,
        watch=options.watch,
        on_skipped=options.on_skipped,
    )


def run_dag(jobs: List[Job], **kwargs) -> RunReport:
    """Convenience wrapper: run bare jobs with no categories or trigger."""
    context = kwargs.pop("context", None) or RunContext()
    return run_workflow(Workflow(jobs=list(jobs)), context=context, **kwargs)
