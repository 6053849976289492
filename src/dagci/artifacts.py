# artifacts.py
from __future__ import annotations

import threading
import time
from typing import Dict, List, Optional, Tuple

from .errors import (
    ArtifactNotFound,
    ArtifactNotReady,
    ArtifactWriteRejected,
    DuplicateArtifact,
)
from .model import ArtifactRecord, ArtifactValue, JobStatus


class ArtifactStore:
    """
    Namespaced, write-once output store shared by all jobs of a run.

    Keys are (producing job, output name). Only the owning job writes its
    keys, and only while it is running; readers see a value once the
    producer has finished successfully.

      store.open("build")
      store.put("build", "image", "app:1.2")
      store.close("build", JobStatus.SUCCESS)
      store.get("build", "image")  -> "app:1.2"
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._records: Dict[Tuple[str, str], ArtifactRecord] = {}
        self._running: set[str] = set()
        self._finished: Dict[str, JobStatus] = {}

    # ---- lifecycle (driven by the scheduler) ----

    def open(self, job: str) -> None:
        with self._cond:
            self._running.add(job)

    def close(self, job: str, status: JobStatus) -> None:
        with self._cond:
            self._running.discard(job)
            self._finished[job] = status
            self._cond.notify_all()

    # ---- writes ----

    def put(self, job: str, name: str, value: ArtifactValue) -> ArtifactRecord:
        if not name:
            raise ArtifactWriteRejected("Output name must not be empty", job=job, name=name)
        with self._cond:
            if job not in self._running:
                raise ArtifactWriteRejected(
                    f"Job '{job}' is not running and cannot publish '{name}'",
                    job=job,
                    name=name,
                )
            key = (job, name)
            if key in self._records:
                raise DuplicateArtifact(
                    f"Output '{name}' of job '{job}' was already written",
                    job=job,
                    name=name,
                )
            record = ArtifactRecord(job=job, name=name, value=value)
            self._records[key] = record
            return record

    # ---- reads ----

    def get(self, producer: str, name: str, *, wait: Optional[float] = None) -> ArtifactValue:
        """
        Read an output.

        While the producer is unfinished this raises ArtifactNotReady, or,
        with `wait`, blocks up to `wait` seconds for it to finish first.
        """
        deadline = None if wait is None else time.monotonic() + wait
        with self._cond:
            while producer not in self._finished:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is None or remaining <= 0:
                    raise ArtifactNotReady(
                        f"Job '{producer}' has not finished; '{name}' is not readable yet",
                        job=producer,
                        name=name,
                    )
                self._cond.wait(remaining)

            status = self._finished[producer]
            if status is not JobStatus.SUCCESS:
                raise ArtifactNotFound(
                    f"Job '{producer}' finished with {status.value}; its outputs are unavailable",
                    job=producer,
                    name=name,
                )
            record = self._records.get((producer, name))
            if record is None:
                raise ArtifactNotFound(
                    f"Job '{producer}' never published '{name}'",
                    job=producer,
                    name=name,
                )
            return record.value

    def peek(self, producer: str, name: str) -> Optional[ArtifactValue]:
        """Lenient read for conditions: None instead of an error."""
        try:
            return self.get(producer, name)
        except (ArtifactNotFound, ArtifactNotReady):
            return None

    def outputs(self, job: str) -> Dict[str, ArtifactValue]:
        with self._cond:
            return {n: r.value for (j, n), r in self._records.items() if j == job}

    def records(self) -> List[ArtifactRecord]:
        with self._cond:
            return list(self._records.values())
