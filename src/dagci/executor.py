# executor.py
"""
Step invocation boundary.

The scheduler hands each step to a StepRunner:

    (command, env) -> StepOutcome(exit_code, outputs, artifacts)

ShellStepRunner is the default. Tests and embedders can pass any callable
with the same signature.
"""
from __future__ import annotations

import os
import signal
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .errors import StepError
from .model import FileSet, Job, Step

LOG_TAIL_LINES = 30


@dataclass(frozen=True)
class StepInvocation:
    job: Job
    step: Step
    env: Dict[str, str]
    cwd: Path
    repo_root: Path
    timeout: Optional[float] = None


@dataclass
class StepOutcome:
    exit_code: int
    outputs: Dict[str, str] = field(default_factory=dict)
    artifacts: Dict[str, FileSet] = field(default_factory=dict)
    log_tail: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


StepRunner = Callable[[StepInvocation], StepOutcome]


def parse_output_file(text: str) -> Dict[str, str]:
    """
    Parse `name=value` lines, plus multi-line values written as

        name<<EOF
        line 1
        line 2
        EOF
    """
    outputs: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            name, _, marker = line.partition("<<")
            body: List[str] = []
            while i < len(lines) and lines[i] != marker:
                body.append(lines[i])
                i += 1
            i += 1  # closing marker
            outputs[name.strip()] = "\n".join(body)
            continue
        name, sep, value = line.partition("=")
        if sep:
            outputs[name.strip()] = value
    return outputs


def collect_files(repo_root: Path, pattern: str) -> FileSet:
    """Expand a glob relative to the repo root into a FileSet (files only)."""
    root = repo_root.resolve()
    found: List[str] = []
    candidate = root / pattern
    if candidate.is_file():
        found.append(pattern)
    elif candidate.is_dir():
        found.extend(
            str(p.relative_to(root)).replace("\\", "/")
            for p in sorted(candidate.rglob("*"))
            if p.is_file()
        )
    else:
        found.extend(
            str(p.relative_to(root)).replace("\\", "/")
            for p in sorted(root.glob(pattern))
            if p.is_file()
        )
    return FileSet(root=str(root), paths=tuple(dict.fromkeys(found)))


def _tail(text: str) -> str:
    return "\n".join(text.strip().splitlines()[-LOG_TAIL_LINES:])


def _terminate(proc: subprocess.Popen) -> None:
    """Kill the step's whole process group, not just the shell."""
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


class ShellStepRunner:
    """Runs `step.run` through the shell in its own process group."""

    def __call__(self, inv: StepInvocation) -> StepOutcome:
        if not inv.cwd.exists():
            raise StepError(
                f"Step cwd does not exist: {inv.cwd}",
                job=inv.job.name,
                step=inv.step.name,
            )

        fd, output_path = tempfile.mkstemp(prefix="dagci-output-")
        os.close(fd)
        env = dict(inv.env)
        env["DAGCI_OUTPUT"] = output_path

        try:
            try:
                proc = subprocess.Popen(
                    inv.step.run,
                    shell=True,
                    cwd=str(inv.cwd),
                    env=env,
                    text=True,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    start_new_session=(os.name == "posix"),
                )
            except OSError as e:
                raise StepError(
                    f"Could not start step: {e}",
                    job=inv.job.name,
                    step=inv.step.name,
                ) from e

            timed_out = False
            try:
                out, _ = proc.communicate(timeout=inv.timeout)
            except subprocess.TimeoutExpired:
                timed_out = True
                _terminate(proc)
                out, _ = proc.communicate()

            outputs = parse_output_file(Path(output_path).read_text(encoding="utf-8"))
        finally:
            Path(output_path).unlink(missing_ok=True)

        artifacts: Dict[str, FileSet] = {}
        if proc.returncode == 0 and not timed_out:
            for name, pattern in inv.step.artifacts.items():
                artifacts[name] = collect_files(inv.repo_root, pattern)

        return StepOutcome(
            exit_code=proc.returncode,
            outputs=outputs,
            artifacts=artifacts,
            log_tail=_tail(out or ""),
            timed_out=timed_out,
        )
