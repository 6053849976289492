# report.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from enum import Enum
from typing import Dict, List, Mapping, Optional, Protocol

from pydantic import BaseModel, Field

from .model import JobResult, JobStatus, RunContext
from .ui.console import Console, get_console


class SkippedPolicy(str, Enum):
    """How a skipped watched job is reported by the notifier."""
    NEUTRAL = "neutral"
    SUCCESS = "success"
    FAILURE = "failure"


# -------------------- Schemas --------------------

class JobReport(BaseModel):
    job: str
    name: str
    status: str
    diagnostic: Optional[str] = None
    failed_step: Optional[str] = None
    duration: Optional[float] = None
    outputs: Dict[str, str] = Field(default_factory=dict)


class Notification(BaseModel):
    level: str  # success | failure | skipped
    message: str
    watched_job: Optional[str] = None


class RunReport(BaseModel):
    workflow: str
    status: str  # success | failure
    triggered: bool = True
    reason: Optional[str] = None
    executed_jobs: int = 0
    counts: Dict[str, int] = Field(default_factory=dict)
    failed_jobs: List[str] = Field(default_factory=list)
    jobs: List[JobReport] = Field(default_factory=list)
    context: Dict[str, str] = Field(default_factory=dict)
    flags: Dict[str, bool] = Field(default_factory=dict)
    notification: Optional[Notification] = None

    @property
    def exit_code(self) -> int:
        return 0 if self.status == "success" else 1

    def table(self) -> Dict[str, str]:
        return {row.job: row.status for row in self.jobs}


# -------------------- Aggregation --------------------

def _context_dict(context: RunContext) -> Dict[str, str]:
    return {
        "event": context.event,
        "branch": context.branch,
        "ref": context.ref,
        "actor": context.actor,
        "sha": context.sha,
    }


def _notification(
    status: str,
    failed: List[str],
    watched: Optional[str],
    watched_status: Optional[JobStatus],
    policy: SkippedPolicy,
) -> Notification:
    if watched_status is JobStatus.SKIPPED:
        if policy is SkippedPolicy.SUCCESS and status == "success":
            return Notification(level="success", message="Pipeline completed successfully", watched_job=watched)
        if policy is SkippedPolicy.FAILURE:
            return Notification(
                level="failure",
                message=f"Pipeline failed: '{watched}' was skipped",
                watched_job=watched,
            )
        if status == "success":
            return Notification(level="skipped", message=f"'{watched}' was skipped", watched_job=watched)

    if status == "success":
        return Notification(level="success", message="Pipeline completed successfully", watched_job=watched)
    return Notification(
        level="failure",
        message=f"Pipeline failed: {', '.join(failed) or 'see job table'}",
        watched_job=watched,
    )


def aggregate(
    order: List[str],
    results: Mapping[str, JobResult],
    *,
    workflow: str = "workflow",
    titles: Optional[Mapping[str, str]] = None,
    outputs: Optional[Mapping[str, Mapping[str, object]]] = None,
    context: Optional[RunContext] = None,
    flags: Optional[Mapping[str, bool]] = None,
    watch: Optional[str] = None,
    on_skipped: SkippedPolicy = SkippedPolicy.NEUTRAL,
) -> RunReport:
    """
    Overall status is success iff every job that was not skipped reached
    success. Under SkippedPolicy.FAILURE a skipped watched job also fails
    the run.
    """
    counts = {s.value: 0 for s in JobStatus}
    rows: List[JobReport] = []
    failed: List[str] = []

    for name in order:
        res = results[name]
        counts[res.status.value] += 1
        if res.status is JobStatus.FAILURE:
            failed.append(name)
        rows.append(
            JobReport(
                job=name,
                name=(titles or {}).get(name, name),
                status=res.status.value,
                diagnostic=res.diagnostic,
                failed_step=res.failed_step,
                duration=res.duration,
                outputs={k: str(v) for k, v in ((outputs or {}).get(name) or {}).items()},
            )
        )

    ok = all(
        results[n].status in (JobStatus.SUCCESS, JobStatus.SKIPPED) for n in order
    )
    status = "success" if ok else "failure"

    watched = watch if watch is not None else (order[-1] if order else None)
    watched_status = results[watched].status if watched in results else None
    reason = None
    if watched_status is JobStatus.SKIPPED and on_skipped is SkippedPolicy.FAILURE:
        status = "failure"
        reason = f"watched job '{watched}' was skipped"

    executed = sum(
        1 for n in order if results[n].status in (JobStatus.SUCCESS, JobStatus.FAILURE)
    )

    return RunReport(
        workflow=workflow,
        status=status,
        reason=reason,
        executed_jobs=executed,
        counts=counts,
        failed_jobs=failed,
        jobs=rows,
        context=_context_dict(context) if context else {},
        flags=dict(flags or {}),
        notification=_notification(status, failed, watched, watched_status, on_skipped),
    )


def not_triggered_report(
    workflow: str,
    reason: str,
    context: Optional[RunContext] = None,
) -> RunReport:
    return RunReport(
        workflow=workflow,
        status="success",
        triggered=False,
        reason=reason,
        context=_context_dict(context) if context else {},
    )


# -------------------- Notifiers --------------------

class Notifier(Protocol):
    def notify(self, report: RunReport) -> None: ...


class ConsoleNotifier:
    def __init__(self, console: Optional[Console] = None):
        self.console = console

    def notify(self, report: RunReport) -> None:
        console = self.console or get_console()
        console.print_results(report)
        if report.notification is not None:
            console.print_notification(report.notification.level, report.notification.message)


class NotificationError(Exception):
    """Raised when a webhook notification cannot be delivered."""
    pass


class WebhookNotifier:
    """POSTs the run report as JSON to a URL."""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    def notify(self, report: RunReport) -> None:
        body = report.model_dump_json().encode("utf-8")
        req = urllib.request.Request(
            self.url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response.read()
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise NotificationError(f"Webhook failed: {e.code} {e.reason}. {error_body}") from e
        except urllib.error.URLError as e:
            raise NotificationError(f"Network error: {e.reason}") from e


def write_report(report: RunReport, path: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(report.model_dump(mode="json"), f, indent=2)
