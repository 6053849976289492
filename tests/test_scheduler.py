"""
Scheduler tests.

Covers:
1. Condition-driven skip / run decisions (all_success, always)
2. Aggregate status rules (failure wins, all-skipped is success)
3. Global concurrency bound and dispatch order
4. Fail-fast cancellation
5. Step sequencing, step conditions, timeouts
6. Outputs published by one job and consumed by another
7. Environment exposed to steps

Jobs run through a fake step runner; one test at the end uses the real shell.

Run with:
    pytest tests/test_scheduler.py -v
"""

import io
import sys
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple, Union

import pytest

from dagci.dsl import job, on, sh, wf
from dagci.errors import ConfigurationError, StepError
from dagci.executor import StepInvocation, StepOutcome
from dagci.model import FileSet, RunContext
from dagci.dag import build_graph
from dagci.runner import RunOptions, Scheduler, run_workflow
from dagci.ui.console import Console

Behavior = Union[StepOutcome, Callable[[StepInvocation], StepOutcome]]


class FakeRunner:
    """Step runner double: per-(job, step) or per-job behaviors, success by default."""

    def __init__(self, behaviors: Optional[Dict[object, Behavior]] = None, delay: float = 0.0):
        self.behaviors = behaviors or {}
        self.delay = delay
        self.calls: List[Tuple[str, str]] = []
        self.invocations: List[StepInvocation] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def __call__(self, inv: StepInvocation) -> StepOutcome:
        with self._lock:
            self.calls.append((inv.job.name, inv.step.name))
            self.invocations.append(inv)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            b = self.behaviors.get((inv.job.name, inv.step.name), self.behaviors.get(inv.job.name))
            if b is None:
                return StepOutcome(exit_code=0)
            if isinstance(b, StepOutcome):
                return b
            return b(inv)
        finally:
            with self._lock:
                self.active -= 1

    def jobs_called(self) -> List[str]:
        return list(dict.fromkeys(j for j, _ in self.calls))


FAIL = StepOutcome(exit_code=1, log_tail="something broke")


def _job(name, needs=(), when=None, steps=1, **kwargs):
    step_list = [sh(f"step{i + 1}", "true") for i in range(steps)]
    return job(name, *step_list, needs=list(needs), when=when, **kwargs)


def _run(workflow, runner, *, context=None, changed=(), **options):
    console = Console(stream=io.StringIO(), err_stream=io.StringIO())
    return run_workflow(
        workflow,
        context=context or RunContext(event="push", branch="main", actor="dev", sha="abc123"),
        change_set=list(changed),
        options=RunOptions(step_runner=runner, max_workers=options.pop("max_workers", 4), **options),
        console=console,
    )


# ============================================================================
# CONDITIONS AND STATUS
# ============================================================================

def test_failed_dependency_skips_all_success_but_runs_always():
    runner = FakeRunner({"A": FAIL})
    report = _run(
        wf(_job("A"), _job("B", needs=["A"]), _job("C", needs=["A"], when="always()")),
        runner,
    )
    assert report.table() == {"A": "failure", "B": "skipped", "C": "success"}
    assert report.status == "failure"
    assert report.failed_jobs == ["A"]
    assert report.exit_code == 1
    assert "B" not in runner.jobs_called()


def test_always_runs_when_every_dependency_failed():
    runner = FakeRunner({"A": FAIL, "B": FAIL})
    report = _run(wf(_job("A"), _job("B"), _job("N", needs=["A", "B"], when="always()")), runner)
    assert report.table()["N"] == "success"


def test_all_skipped_is_success_with_zero_executed():
    runner = FakeRunner()
    report = _run(
        wf(_job("a", when="flags.backend"), _job("b", when="flags.backend"), categories={"backend": ["back/**"]}),
        runner,
        changed=["README.md"],
    )
    assert report.status == "success"
    assert report.executed_jobs == 0
    assert report.counts["skipped"] == 2
    assert runner.calls == []


def test_skipped_dependency_does_not_block_all_success():
    runner = FakeRunner()
    report = _run(
        wf(
            _job("backend", when="flags.backend"),
            _job("sonar", needs=["backend"]),
            categories={"backend": ["back/**"]},
        ),
        runner,
        changed=["front/app.ts"],
    )
    assert report.table() == {"backend": "skipped", "sonar": "success"}


def test_category_flags_drive_conditions():
    runner = FakeRunner()
    report = _run(
        wf(
            _job("backend-tests", when="flags.backend || flags.workflows"),
            _job("frontend-tests", when="flags.frontend || flags.workflows"),
            categories={"backend": ["back/**"], "frontend": ["front/**"], "workflows": [".github/**"]},
        ),
        runner,
        changed=["back/pom.xml"],
    )
    assert report.table() == {"backend-tests": "success", "frontend-tests": "skipped"}
    assert report.flags == {"backend": True, "frontend": False, "workflows": False}


def test_context_condition():
    runner = FakeRunner()
    deploy = _job("deploy", when="context.ref == 'refs/heads/main' && context.event == 'push'")
    assert _run(wf(deploy), runner).table() == {"deploy": "success"}
    pr = RunContext(event="pull_request", branch="main")
    assert _run(wf(deploy), FakeRunner(), context=pr).table() == {"deploy": "skipped"}


def test_condition_sees_dependency_output():
    runner = FakeRunner({"changes": StepOutcome(exit_code=0, outputs={"backend": "true"})})
    report = _run(
        wf(
            _job("changes"),
            _job("bt", needs=["changes"], when="needs.changes.outputs.backend == 'true'"),
            _job("ft", needs=["changes"], when="needs.changes.outputs.frontend == 'true'"),
        ),
        runner,
    )
    assert report.table() == {"changes": "success", "bt": "success", "ft": "skipped"}
    assert report.jobs[0].outputs == {"backend": "true"}


# ============================================================================
# CONCURRENCY AND ORDER
# ============================================================================

def test_concurrency_bound_is_respected():
    runner = FakeRunner(delay=0.05)
    report = _run(wf(*[_job(f"j{i}") for i in range(6)]), runner, max_workers=2)
    assert report.status == "success"
    assert runner.max_active <= 2
    assert len(runner.calls) == 6


def test_independent_jobs_run_in_parallel():
    runner = FakeRunner(delay=0.1)
    _run(wf(*[_job(f"j{i}") for i in range(3)]), runner, max_workers=3)
    assert runner.max_active >= 2


def test_single_worker_dispatches_in_topological_then_declaration_order():
    runner = FakeRunner()
    jobs = wf(
        _job("deploy", needs=["build", "test"]),
        _job("lint"),
        _job("build"),
        _job("test", needs=["build"]),
    )
    _run(jobs, runner, max_workers=1)
    assert runner.jobs_called() == ["lint", "build", "test", "deploy"]


def test_no_job_starts_before_dependencies_finish():
    finished = set()
    lock = threading.Lock()

    def track(inv):
        for dep in inv.job.needs:
            assert dep in finished
        time.sleep(0.02)
        with lock:
            finished.add(inv.job.name)
        return StepOutcome(exit_code=0)

    runner = FakeRunner({name: track for name in "abcde"})
    report = _run(
        wf(_job("a"), _job("b", needs=["a"]), _job("c", needs=["a"]), _job("d", needs=["b", "c"]), _job("e")),
        runner,
    )
    assert report.status == "success"


def test_invalid_worker_count():
    graph = build_graph([_job("a")])
    with pytest.raises(ValueError):
        Scheduler(graph, context=RunContext(), flags={}, options=RunOptions(max_workers=-1))


# ============================================================================
# FAIL-FAST
# ============================================================================

def _fail_fast_workflow():
    return wf(
        _job("A"),
        _job("B", needs=["A"]),
        _job("C", needs=["A"], when="always()"),
        _job("D", needs=["B"]),
    )


def test_fail_fast_cancels_dependents_that_need_success():
    runner = FakeRunner({"A": FAIL})
    report = _run(_fail_fast_workflow(), runner, fail_fast=True)
    assert report.table() == {"A": "failure", "B": "cancelled", "C": "success", "D": "cancelled"}
    assert report.status == "failure"


def test_without_fail_fast_skips_instead():
    runner = FakeRunner({"A": FAIL})
    report = _run(_fail_fast_workflow(), runner, fail_fast=False)
    assert report.table()["B"] == "skipped"
    # skipped counts as "did not fail" for all_success
    assert report.table()["D"] == "success"


def test_fail_fast_does_not_reach_past_a_job_that_ran():
    runner = FakeRunner({"A": FAIL})
    jobs = wf(_job("A"), _job("B", needs=["A"], when="always()"), _job("D", needs=["B"]))
    report = _run(jobs, runner, fail_fast=True)
    assert report.table() == {"A": "failure", "B": "success", "D": "success"}


def test_fail_fast_keeps_failure_handlers():
    runner = FakeRunner({"A": FAIL})
    jobs = wf(
        _job("A"),
        _job("N", needs=["A"], when="!all_success(needs)"),
        _job("R", needs=["A"], when="failure()"),
    )
    report = _run(jobs, runner, fail_fast=True)
    assert report.table() == {"A": "failure", "N": "success", "R": "success"}


def test_fail_fast_waits_on_an_open_alternative():
    def slow(inv):
        time.sleep(0.1)
        return FAIL

    runner = FakeRunner({"A": FAIL, "B": slow})
    jobs = wf(
        _job("A"),
        _job("B"),
        _job("C", needs=["A", "B"], when="needs.A.result == 'success' || needs.B.result == 'failure'"),
    )
    report = _run(jobs, runner, fail_fast=True)
    assert report.table()["C"] == "success"


def test_fail_fast_lets_running_jobs_finish():
    def slow(inv):
        time.sleep(0.2)
        return StepOutcome(exit_code=0)

    runner = FakeRunner({"A": FAIL, "slow": slow})
    report = _run(wf(_job("slow"), _job("A")), runner, fail_fast=True)
    assert report.table() == {"slow": "success", "A": "failure"}


# ============================================================================
# STEPS
# ============================================================================

def test_failing_step_abandons_the_rest():
    runner = FakeRunner({("a", "step2"): FAIL})
    report = _run(wf(_job("a", steps=3)), runner)
    assert runner.calls == [("a", "step1"), ("a", "step2")]
    row = report.jobs[0]
    assert row.status == "failure"
    assert row.failed_step == "step2"
    assert "exited with code 1" in row.diagnostic
    assert "something broke" in row.diagnostic


def test_step_condition_false_skips_only_that_step():
    runner = FakeRunner()
    j = job(
        "sonar",
        sh("frontend coverage", "true", when="flags.frontend"),
        sh("backend coverage", "true", when="flags.backend"),
        sh("scan", "true"),
    )
    report = _run(wf(j, categories={"backend": ["back/**"], "frontend": ["front/**"]}), runner, changed=["back/x"])
    assert report.table() == {"sonar": "success"}
    assert [s for _, s in runner.calls] == ["backend coverage", "scan"]


def test_notify_steps_branch_on_upstream_result():
    runner = FakeRunner({"deploy": FAIL})
    notify = job(
        "notify",
        sh("success", "true", when="needs.deploy.result == 'success'"),
        sh("failure", "exit 1", when="needs.deploy.result == 'failure'"),
        needs=["deploy"],
        when="always()",
    )
    _run(wf(_job("deploy"), notify), runner)
    assert ("notify", "failure") in runner.calls
    assert ("notify", "success") not in runner.calls


def test_step_error_from_runner_fails_job():
    def boom(inv):
        raise StepError("Could not start step: no shell", job=inv.job.name, step=inv.step.name)

    report = _run(wf(_job("a"), _job("b")), FakeRunner({"a": boom}))
    assert report.table() == {"a": "failure", "b": "success"}
    assert "Could not start step" in report.jobs[0].diagnostic


def test_unexpected_runner_exception_is_contained():
    def crash(inv):
        raise RuntimeError("kaboom")

    report = _run(wf(_job("a"), _job("b")), FakeRunner({"a": crash}))
    assert report.table() == {"a": "failure", "b": "success"}
    assert "kaboom" in report.jobs[0].diagnostic


def test_step_timeout_reported():
    runner = FakeRunner({"a": StepOutcome(exit_code=-9, timed_out=True)})
    report = _run(wf(job("a", sh("s", "sleep 100", timeout=1))), runner)
    assert report.table() == {"a": "failure"}
    assert report.jobs[0].diagnostic.startswith("timeout")


def test_job_timeout_caps_step_timeout():
    runner = FakeRunner()
    _run(wf(job("a", sh("s", "true", timeout=100), timeout=5)), runner)
    assert runner.invocations[0].timeout is not None
    assert runner.invocations[0].timeout <= 5


def test_job_timeout_exhausted_before_next_step():
    def slow(inv):
        time.sleep(0.15)
        return StepOutcome(exit_code=0)

    runner = FakeRunner({("a", "first"): slow})
    report = _run(wf(job("a", sh("first", "true"), sh("second", "true"), timeout=0.1)), runner)
    assert report.table() == {"a": "failure"}
    assert report.jobs[0].failed_step == "second"
    assert "timeout" in report.jobs[0].diagnostic
    assert ("a", "second") not in runner.calls


# ============================================================================
# OUTPUTS
# ============================================================================

def test_consumed_output_is_exposed_as_env():
    runner = FakeRunner({"build": StepOutcome(exit_code=0, outputs={"image": "app:1.2"})})
    deploy = job("deploy", sh("push", "true", consumes={"IMAGE": "build.image"}), needs=["build"])
    report = _run(wf(_job("build"), deploy), runner)
    assert report.status == "success"
    push = [inv for inv in runner.invocations if inv.job.name == "deploy"][0]
    assert push.env["IMAGE"] == "app:1.2"


def test_consuming_missing_output_fails_consumer():
    runner = FakeRunner()
    deploy = job("deploy", sh("push", "true", consumes={"IMAGE": "build.image"}), needs=["build"])
    report = _run(wf(_job("build"), deploy), runner)
    assert report.table() == {"build": "success", "deploy": "failure"}
    assert "ArtifactNotFound" in report.jobs[1].diagnostic
    assert ("deploy", "push") not in runner.calls


def test_output_written_twice_fails_job():
    runner = FakeRunner({"a": StepOutcome(exit_code=0, outputs={"x": "1"})})
    report = _run(wf(_job("a", steps=2)), runner)
    assert report.table() == {"a": "failure"}
    assert "DuplicateArtifact" in report.jobs[0].diagnostic


def test_empty_fileset_is_not_published():
    empty = FileSet(root="/tmp", paths=())
    runner = FakeRunner({"a": StepOutcome(exit_code=0, artifacts={"coverage": empty})})
    report = _run(wf(_job("a")), runner)
    assert report.status == "success"
    assert report.jobs[0].outputs == {}


# ============================================================================
# ENVIRONMENT
# ============================================================================

def test_step_environment():
    runner = FakeRunner()
    j = job("a", sh("s", "true", env={"LEVEL": "step"}), env={"LEVEL": "job", "JOB_ONLY": 1})
    workflow = wf(j, categories={"backend": ["back/**"]}, env={"LEVEL": "workflow", "WF": "yes"})
    _run(workflow, runner, changed=["back/x"])
    env = runner.invocations[0].env
    assert env["LEVEL"] == "step"
    assert env["JOB_ONLY"] == "1"
    assert env["WF"] == "yes"
    assert env["DAGCI_JOB"] == "a"
    assert env["DAGCI_EVENT"] == "push"
    assert env["DAGCI_BRANCH"] == "main"
    assert env["DAGCI_REF"] == "refs/heads/main"
    assert env["DAGCI_SHA"] == "abc123"
    assert env["DAGCI_FLAG_BACKEND"] == "true"


# ============================================================================
# RUN LEVEL
# ============================================================================

def test_not_triggered_runs_nothing():
    runner = FakeRunner()
    workflow = wf(_job("a"), trigger=on("push", branches=["main"], paths=["back/**"]))
    report = _run(workflow, runner, changed=["docs/readme.md"])
    assert report.triggered is False
    assert report.status == "success"
    assert report.exit_code == 0
    assert runner.calls == []


def test_configuration_error_before_any_step():
    runner = FakeRunner()
    with pytest.raises(ConfigurationError):
        _run(wf(_job("a", needs=["b"]), _job("b", needs=["a"])), runner)
    assert runner.calls == []


def test_bad_category_glob_fails_before_dispatch():
    runner = FakeRunner()
    with pytest.raises(ConfigurationError):
        _run(wf(_job("a"), categories={"backend": ["back/{x"]}), runner)
    assert runner.calls == []


def test_unknown_watched_job_fails_before_dispatch():
    runner = FakeRunner()
    with pytest.raises(ConfigurationError) as exc:
        _run(wf(_job("a"), _job("b", needs=["a"])), runner, watch="deploy")
    assert "deploy" in str(exc.value)
    assert runner.calls == []


@pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX shell")
def test_shell_end_to_end(tmp_path):
    console = Console(stream=io.StringIO(), err_stream=io.StringIO())
    workflow = wf(
        job("build", sh("tag", 'echo "image=app:$DAGCI_SHA" >> "$DAGCI_OUTPUT"')),
        job(
            "deploy",
            sh("push", 'test "$IMAGE" = "app:abc" && echo "pushed=$IMAGE" >> "$DAGCI_OUTPUT"',
               consumes={"IMAGE": "build.image"}),
            needs=["build"],
        ),
    )
    report = run_workflow(
        workflow,
        context=RunContext(branch="main", sha="abc"),
        options=RunOptions(repo_root=tmp_path, max_workers=2),
        console=console,
    )
    assert report.table() == {"build": "success", "deploy": "success"}
    assert report.jobs[1].outputs == {"pushed": "app:abc"}
