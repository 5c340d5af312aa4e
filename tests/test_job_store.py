from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

from compintel.job_store import JobStatusRepository
from compintel.jobs import JobStatus, WorkflowJob

T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def _job(workflow_id: str, status: JobStatus, *, created: datetime, updated: datetime, **kwargs) -> WorkflowJob:
    return WorkflowJob(id=workflow_id, status=status, created_at=created, updated_at=updated, **kwargs)


def test_upsert_inserts_then_updates_preserving_created_at(tmp_path: Path) -> None:
    repo = JobStatusRepository(tmp_path / "nested" / "jobs.sqlite")

    repo.upsert(_job("wf-1", JobStatus.STARTED, created=T0, updated=T0))
    repo.upsert(
        _job(
            "wf-1",
            JobStatus.COMPLETED,
            created=T0 + timedelta(minutes=5),
            updated=T0 + timedelta(minutes=5),
            progress=100,
            result={"chunksCreated": 7},
            metadata={"competitor": "Acme"},
        )
    )

    row = repo.get("wf-1")
    assert row == {
        "workflow_id": "wf-1",
        "status": "completed",
        "progress": 100,
        "result": {"chunksCreated": 7},
        "error": None,
        "metadata": {"competitor": "Acme"},
        "created_at": T0.isoformat(),
        "updated_at": (T0 + timedelta(minutes=5)).isoformat(),
    }


def test_stale_write_does_not_roll_back_a_newer_row(tmp_path: Path) -> None:
    repo = JobStatusRepository(tmp_path / "jobs.sqlite")
    repo.upsert(_job("wf-1", JobStatus.FAILED, created=T0, updated=T0 + timedelta(seconds=30), error="boom"))

    repo.upsert(_job("wf-1", JobStatus.PROCESSING, created=T0, updated=T0 + timedelta(seconds=10)))

    row = repo.get("wf-1")
    assert row is not None
    assert row["status"] == "failed"
    assert row["error"] == "boom"


def test_list_recent_orders_by_last_update(tmp_path: Path) -> None:
    repo = JobStatusRepository(tmp_path / "jobs.sqlite")
    for offset, workflow_id in enumerate(["a", "b", "c"]):
        stamp = T0 + timedelta(seconds=offset)
        repo.upsert(_job(workflow_id, JobStatus.PROCESSING, created=stamp, updated=stamp))

    assert [row["workflow_id"] for row in repo.list_recent(2)] == ["c", "b"]
    assert repo.get("missing") is None
