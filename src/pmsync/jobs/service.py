"""Background sync jobs on a fixed worker pool, polled by id.

Each job is owned by the worker that runs it: only that worker replaces its
snapshot, readers always see a complete immutable ``JobSnapshot``.
"""
from __future__ import annotations
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from pmsync.errors import error_payload
from pmsync.sync.summary import ProgressListener, SyncSummary

log = logging.getLogger("jobs")

RUNNING = "RUNNING"
DONE = "DONE"
ERROR = "ERROR"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class JobSnapshot:
    id: str
    kind: str
    status: str = RUNNING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Any = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    total_repos: Optional[int] = None
    processed_repos: int = 0
    current_repo_id: Optional[int] = None


class JobRegistry:
    def __init__(self) -> None:
        self._jobs: Dict[str, JobSnapshot] = {}
        self._lock = threading.Lock()

    def create(self, kind: str) -> JobSnapshot:
        snap = JobSnapshot(id=str(uuid.uuid4()), kind=kind, started_at=_utcnow())
        with self._lock:
            self._jobs[snap.id] = snap
        return snap

    def get(self, job_id: str) -> Optional[JobSnapshot]:
        with self._lock:
            return self._jobs.get(job_id)

    def update(self, job_id: str, **changes: Any) -> JobSnapshot:
        with self._lock:
            snap = replace(self._jobs[job_id], **changes)
            self._jobs[job_id] = snap
        return snap


class JobProgress(ProgressListener):
    """Publishes repository progress of one job into the registry."""

    def __init__(self, registry: JobRegistry, job_id: str) -> None:
        self.registry = registry
        self.job_id = job_id

    def on_start(self, total_repos: int) -> None:
        self.registry.update(self.job_id, total_repos=total_repos, processed_repos=0)

    def on_repo_start(self, gitlab_repo_id: int | None) -> None:
        self.registry.update(self.job_id, current_repo_id=gitlab_repo_id)

    def on_repo_done(self, processed_repos: int, gitlab_repo_id: int | None, summary: SyncSummary) -> None:
        self.registry.update(self.job_id, processed_repos=processed_repos, current_repo_id=gitlab_repo_id)


Operation = Callable[[ProgressListener], SyncSummary]


class SyncJobService:
    def __init__(self, runner=None, workers: int = 2, registry: JobRegistry | None = None) -> None:
        self.runner = runner
        self.registry = registry or JobRegistry()
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sync-job")

    def start_job(self, kind: str, operation: Operation) -> str:
        snap = self.registry.create(kind)
        log.info("Job %s started kind=%s", snap.id, kind)
        self._executor.submit(self._run, snap.id, operation)
        return snap.id

    def _run(self, job_id: str, operation: Operation) -> None:
        try:
            result = operation(JobProgress(self.registry, job_id))
        except Exception as exc:
            payload = error_payload(exc)
            self.registry.update(job_id, status=ERROR, finished_at=_utcnow(),
                                 error_code=payload["code"], error_message=payload["message"])
            log.warning("Job %s failed code=%s: %s", job_id, payload["code"], exc)
            return
        self.registry.update(job_id, status=DONE, finished_at=_utcnow(), result=result)
        log.info("Job %s done", job_id)

    def get_job(self, job_id: str) -> Optional[JobSnapshot]:
        return self.registry.get(job_id)

    def start_issues_all(self, full: bool = False, assigned_only: bool = False) -> str:
        return self.start_job(
            "issues-all",
            lambda progress: self.runner.issues_all(full=full, assigned_only=assigned_only, progress=progress),
        )

    def start_project_reports(
        self,
        project_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
        since_last: bool = False,
    ) -> str:
        return self.start_job(
            "reports",
            lambda progress: self.runner.reports_project(project_id, start=start, end=end,
                                                         since_last=since_last, progress=progress),
        )

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def job_payload(snap: JobSnapshot) -> Dict[str, Any]:
    """Polling body for a job."""
    payload: Dict[str, Any] = {
        "job_id": snap.id,
        "kind": snap.kind,
        "status": snap.status,
        "started_at": snap.started_at.isoformat() if snap.started_at else None,
        "finished_at": snap.finished_at.isoformat() if snap.finished_at else None,
        "total_repos": snap.total_repos,
        "processed_repos": snap.processed_repos,
        "current_repo_id": snap.current_repo_id,
        "result": snap.result.as_dict() if isinstance(snap.result, SyncSummary) else snap.result,
        "error": None,
    }
    if snap.status == ERROR:
        payload["error"] = {"code": snap.error_code, "message": snap.error_message}
    return payload
