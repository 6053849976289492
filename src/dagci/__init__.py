from .dsl import JobBuilder, build, cache, categories, job, matrix, on, sh, wf, workflow
from .errors import CIError, ConfigurationError
from .model import CacheSpec, Job, JobStatus, RunContext, Step, Trigger, Workflow
from .runner import RunOptions, run_dag, run_workflow

__all__ = [
    "job",
    "sh",
    "cache",
    "categories",
    "on",
    "matrix",
    "wf",
    "workflow",
    "JobBuilder",
    "build",
    "run_dag",
    "run_workflow",
    "RunOptions",
    "Job",
    "Step",
    "CacheSpec",
    "Trigger",
    "Workflow",
    "RunContext",
    "JobStatus",
    "CIError",
    "ConfigurationError",
]
