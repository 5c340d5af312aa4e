"""Workflow job status tracking fed by callbacks from the automation service.

Jobs are created implicitly by their first notification and updated by every
later one (last notification wins, except ``created_at``). Terminal jobs stay
visible for a grace period, longer for failures than for completions, and then
expire from the in-memory table. Durable mirroring and completion hooks run as
detached tasks whose failures are logged and never reach the caller.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, List, Mapping, Optional

from .errors import NotFoundError, ValidationError
from .job_store import JobStatusRepository
from .observability import MetricsRecorder
from .store import Clock, ExpiringStore

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    STARTED = "started"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


_VALID_STATUSES = ", ".join(status.value for status in JobStatus)


@dataclass(slots=True)
class StatusNotification:
    workflow_id: str
    status: JobStatus
    progress: float | None = None
    result: Any = None
    error: str | None = None
    metadata: dict[str, Any] | None = None

    @classmethod
    def parse(cls, data: Any) -> "StatusNotification":
        """Validate a decoded callback body."""

        if not isinstance(data, Mapping):
            raise ValidationError("Notification body must be a JSON object")

        workflow_id = data.get("workflowId")
        raw_status = data.get("status")
        if not workflow_id or not raw_status:
            raise ValidationError("workflowId and status are required")
        if not isinstance(workflow_id, str):
            raise ValidationError("workflowId must be a string")
        try:
            status = JobStatus(raw_status)
        except ValueError:
            raise ValidationError(f"Invalid status. Must be one of: {_VALID_STATUSES}") from None

        progress = data.get("progress")
        if progress is not None:
            if isinstance(progress, bool) or not isinstance(progress, (int, float)) or not math.isfinite(progress):
                raise ValidationError("progress must be a number between 0 and 100")
            if progress < 0 or progress > 100:
                raise ValidationError("progress must be a number between 0 and 100")

        error = data.get("error")
        if error is not None and not isinstance(error, str):
            raise ValidationError("error must be a string")

        metadata = data.get("metadata")
        if metadata is not None and not isinstance(metadata, Mapping):
            raise ValidationError("metadata must be an object")

        return cls(
            workflow_id=workflow_id,
            status=status,
            progress=progress,
            result=data.get("result"),
            error=error or None,
            metadata=dict(metadata) if metadata is not None else None,
        )


@dataclass(slots=True)
class WorkflowJob:
    id: str
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    progress: float = 0
    result: Any = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def workflow_id(self) -> str:
        return self.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.id,
            "status": self.status.value,
            "progress": self.progress,
            "result": self.result,
            "error": self.error,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


JobHook = Callable[[WorkflowJob], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatusTracker:
    """Own the per-job lifecycle table and its best-effort side effects."""

    def __init__(
        self,
        *,
        completed_retention: float = 5 * 60,
        failed_retention: float = 10 * 60,
        repository: JobStatusRepository | None = None,
        metrics: MetricsRecorder | None = None,
        on_completed: JobHook | None = None,
        on_failed: JobHook | None = None,
        clock: Clock = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._jobs: ExpiringStore[str, WorkflowJob] = ExpiringStore(clock=clock)
        self._retention = {
            JobStatus.COMPLETED: completed_retention,
            JobStatus.FAILED: failed_retention,
        }
        self._repository = repository
        self._metrics = metrics
        self._hooks = {JobStatus.COMPLETED: on_completed, JobStatus.FAILED: on_failed}
        self._now = now
        self._background: set[asyncio.Task] = set()

    async def handle(self, payload: Any) -> dict[str, Any]:
        """Validate and apply a callback body, returning the acknowledgement."""

        start = time.perf_counter()
        notification = StatusNotification.parse(payload)
        job = self.apply(notification)

        if self._repository is not None:
            self._detach(self._mirror(self._repository, job), name=f"job-mirror-{job.id}")
        hook = self._hooks.get(job.status)
        if hook is not None:
            self._detach(self._run_hook(hook, job), name=f"job-hook-{job.id}")

        return {
            "success": True,
            "message": "Webhook processed successfully",
            "workflowId": job.id,
            "status": job.status.value,
            "processingTimeMs": int(round((time.perf_counter() - start) * 1000)),
        }

    def apply(self, notification: StatusNotification) -> WorkflowJob:
        """Upsert the job record for ``notification`` and schedule its expiry."""

        now = self._now()

        def merge(existing: Optional[WorkflowJob]) -> WorkflowJob:
            return WorkflowJob(
                id=notification.workflow_id,
                status=notification.status,
                progress=notification.progress or 0,
                result=copy.deepcopy(notification.result),
                error=notification.error,
                metadata=copy.deepcopy(dict(notification.metadata or {})),
                created_at=existing.created_at if existing is not None else now,
                updated_at=now,
            )

        job = self._jobs.update(
            notification.workflow_id,
            merge,
            ttl=self._retention.get(notification.status),
        )

        log = logger.error if job.status is JobStatus.FAILED else logger.info
        log(
            "jobs.status workflow_id=%s status=%s progress=%s has_result=%s error=%s",
            job.id,
            job.status.value,
            job.progress,
            job.result is not None,
            job.error,
        )
        if self._metrics:
            self._metrics.increment("jobs.notification", status=job.status.value)
            self._metrics.set_gauge("jobs.tracked", float(len(self._jobs)))
        return copy.deepcopy(job)

    def get(self, workflow_id: str) -> WorkflowJob:
        job = self._jobs.get(workflow_id)
        if job is None:
            raise NotFoundError("Job not found", details={"workflowId": workflow_id})
        return copy.deepcopy(job)

    def list(self) -> List[WorkflowJob]:
        return [copy.deepcopy(job) for job in self._jobs.values()]

    def sweep(self) -> int:
        removed = self._jobs.sweep()
        if removed:
            logger.info("jobs.evicted count=%s", removed)
            if self._metrics:
                self._metrics.increment("jobs.evicted", value=removed)
                self._metrics.set_gauge("jobs.tracked", float(len(self._jobs)))
        return removed

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "service": "workflow-webhook-handler",
            "timestamp": _utcnow().isoformat(),
            "activeJobs": len(self._jobs),
        }

    def __len__(self) -> int:
        return len(self._jobs)

    async def drain(self) -> None:
        """Wait for outstanding mirror writes and hooks to finish."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # Internal helpers -------------------------------------------------

    def _detach(self, coro: Awaitable[None], *, name: str) -> None:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _mirror(self, repository: JobStatusRepository, job: WorkflowJob) -> None:
        try:
            await asyncio.to_thread(repository.upsert, job)
        except Exception as exc:
            logger.warning("jobs.persist.failed workflow_id=%s error=%s", job.id, exc)

    async def _run_hook(self, hook: JobHook, job: WorkflowJob) -> None:
        try:
            await hook(job)
        except Exception as exc:
            logger.error(
                "jobs.hook.failed workflow_id=%s status=%s error=%s",
                job.id,
                job.status.value,
                exc,
            )


__all__ = [
    "JobStatus",
    "JobStatusTracker",
    "StatusNotification",
    "WorkflowJob",
    "JobHook",
]
