from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Optional

from .errors import AlreadyRunning
from .models import IngestionSummary, JobState, JobStatus


logger = logging.getLogger(__name__)


class JobStateMachine:
    """
    Lifecycle of the ingestion job: IDLE -> RUNNING -> COMPLETED | FAILED,
    and back to RUNNING on the next ``begin``.

    One instance is shared by everything that starts or observes ingestion;
    it is passed around explicitly rather than living in a module global.
    Status is read from other threads (e.g. a Streamlit script polling), so
    every field is guarded by a lock and ``status()`` returns a snapshot.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = JobState.IDLE
        self._progress = 0.0
        self._message = "Idle"
        self._job_id: Optional[str] = None
        self._started_at: Optional[datetime] = None
        self._finished_at: Optional[datetime] = None
        self._summary: Optional[IngestionSummary] = None

    def begin(self, message: str = "Starting ingestion") -> str:
        """
        Atomically move to RUNNING and return the new job id.

        Raises AlreadyRunning (leaving the running job untouched) when a
        job is in progress.
        """
        with self._lock:
            if self._state is JobState.RUNNING:
                raise AlreadyRunning(f"Ingestion job {self._job_id} is already running")
            self._state = JobState.RUNNING
            self._progress = 0.0
            self._message = message
            self._job_id = uuid.uuid4().hex
            self._started_at = datetime.now(timezone.utc)
            self._finished_at = None
            self._summary = None
            job_id = self._job_id
        logger.info("Ingestion job %s started", job_id)
        return job_id

    def advance(self, completed: int, total: int, message: Optional[str] = None) -> None:
        """Record progress; a value lower than the current one is ignored."""
        fraction = 1.0 if total <= 0 else min(1.0, max(0.0, completed / total))
        with self._lock:
            if self._state is not JobState.RUNNING:
                return
            if fraction > self._progress:
                self._progress = fraction
            if message is not None:
                self._message = message

    def set_message(self, message: str) -> None:
        with self._lock:
            if self._state is JobState.RUNNING:
                self._message = message

    def complete(self, summary: IngestionSummary) -> None:
        with self._lock:
            self._require_running("complete")
            self._state = JobState.COMPLETED
            self._progress = 1.0
            self._summary = summary
            self._message = f"Completed: {summary}"
            self._finished_at = datetime.now(timezone.utc)
            job_id = self._job_id
        logger.info("Ingestion job %s completed: %s", job_id, summary)

    def fail(self, message: str, summary: Optional[IngestionSummary] = None) -> None:
        """Move to FAILED, keeping the last progress for diagnostics."""
        with self._lock:
            self._require_running("fail")
            self._state = JobState.FAILED
            self._summary = summary
            self._message = f"Failed: {message}"
            self._finished_at = datetime.now(timezone.utc)
            job_id = self._job_id
        logger.error("Ingestion job %s failed: %s", job_id, message)

    def _require_running(self, action: str) -> None:
        if self._state is not JobState.RUNNING:
            raise RuntimeError(f"Cannot {action} a job in state {self._state.value}")

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._state is JobState.RUNNING

    def status(self) -> JobStatus:
        with self._lock:
            return JobStatus(
                state=self._state,
                progress=self._progress,
                message=self._message,
                job_id=self._job_id,
                started_at=self._started_at,
                finished_at=self._finished_at,
                summary=self._summary,
            )


__all__ = ["JobStateMachine"]
