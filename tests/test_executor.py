"""
Shell step runner tests. These spawn real shell processes.

Run with:
    pytest tests/test_executor.py -v
"""

import os
import sys
import time
from pathlib import Path

import pytest

from dagci.errors import StepError
from dagci.executor import LOG_TAIL_LINES, ShellStepRunner, StepInvocation, collect_files, parse_output_file
from dagci.model import Job, Step

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX shell")


def _inv(tmp_path, run, *, timeout=None, artifacts=None, cwd=None):
    step = Step(name="s", run=run, artifacts=artifacts or {})
    return StepInvocation(
        job=Job(name="j", steps=[step]),
        step=step,
        env=dict(os.environ),
        cwd=cwd or tmp_path,
        repo_root=tmp_path,
        timeout=timeout,
    )


# ============================================================================
# OUTPUT FILE PROTOCOL
# ============================================================================

def test_parse_output_file_simple():
    assert parse_output_file("a=1\nb=x=y\n\n") == {"a": "1", "b": "x=y"}


def test_parse_output_file_heredoc():
    text = "notes<<EOF\nline 1\nline 2\nEOF\nimage=app:1\n"
    assert parse_output_file(text) == {"notes": "line 1\nline 2", "image": "app:1"}


def test_parse_output_file_ignores_lines_without_separator():
    assert parse_output_file("garbage\nk=v") == {"k": "v"}


# ============================================================================
# RUNNER
# ============================================================================

def test_success_with_outputs(tmp_path):
    out = ShellStepRunner()(_inv(tmp_path, 'echo hello; echo "image=app:1" >> "$DAGCI_OUTPUT"'))
    assert out.ok
    assert out.outputs == {"image": "app:1"}
    assert "hello" in out.log_tail


def test_nonzero_exit(tmp_path):
    out = ShellStepRunner()(_inv(tmp_path, "echo boom >&2; exit 3"))
    assert out.exit_code == 3
    assert not out.ok
    assert "boom" in out.log_tail


def test_log_tail_is_bounded(tmp_path):
    out = ShellStepRunner()(_inv(tmp_path, "for i in $(seq 1 100); do echo line$i; done"))
    lines = out.log_tail.splitlines()
    assert len(lines) == LOG_TAIL_LINES
    assert lines[-1] == "line100"


def test_timeout_kills_process(tmp_path):
    start = time.monotonic()
    out = ShellStepRunner()(_inv(tmp_path, "sleep 30", timeout=0.3))
    assert out.timed_out
    assert not out.ok
    assert time.monotonic() - start < 10


def test_missing_cwd_is_step_error(tmp_path):
    with pytest.raises(StepError):
        ShellStepRunner()(_inv(tmp_path, "true", cwd=tmp_path / "nope"))


def test_artifacts_collected_on_success(tmp_path):
    run = "mkdir -p dist && echo x > dist/a.whl && echo y > dist/b.whl"
    out = ShellStepRunner()(_inv(tmp_path, run, artifacts={"wheels": "dist/*.whl"}))
    assert out.artifacts["wheels"].paths == ("dist/a.whl", "dist/b.whl")


def test_artifacts_not_collected_on_failure(tmp_path):
    run = "mkdir -p dist && echo x > dist/a.whl && exit 1"
    out = ShellStepRunner()(_inv(tmp_path, run, artifacts={"wheels": "dist/*.whl"}))
    assert out.artifacts == {}


def test_collect_files_directory(tmp_path):
    (tmp_path / "cov" / "sub").mkdir(parents=True)
    (tmp_path / "cov" / "index.html").write_text("x")
    (tmp_path / "cov" / "sub" / "a.css").write_text("y")
    files = collect_files(tmp_path, "cov")
    assert files.paths == ("cov/index.html", "cov/sub/a.css")
    assert Path(files.root) == tmp_path.resolve()
