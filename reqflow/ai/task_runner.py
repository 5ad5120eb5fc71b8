"""
Reqflow
Async Task Engine.

Runs long AI operations (multi-document stage suites) off the request
path. ``submit`` persists a pending Job and returns it at once; one
daemon thread per job then drives it through

    pending → running → completed | failed

while the executor streams progress into the job record and into the
StageProgress rows it owns, held below 100 until the job completes.
Completed jobs recompute the rows they touched; failed or cancelled
jobs mark those rows failed. A worker never raises: every error becomes a
failed job carrying ``str(exc)`` as its message.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Callable

from flask import Flask, current_app

from reqflow.ai.entities import DIAGRAM_TYPES, STAGES, Job, ProjectProgress, RequirementAnalysis, new_id, utcnow
from reqflow.ai.orchestrator import AIOrchestrator
from reqflow.ai.stage_progress import StageProgressTracker
from reqflow.core.cancellation import CancellationToken
from reqflow.core.exceptions import Cancelled, InvalidInput
from reqflow.persistence.repository import Repository

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "cancelled"
ORPHANED_MESSAGE = "orphaned by restart"

_ALLOWED_TRANSITIONS = {
    "pending": {"running"},
    "running": {"completed", "failed"},
}


def stages_for(job_type: str, params: dict) -> list[int]:
    """StageProgress rows a job of ``job_type`` owns."""
    if job_type == "stage_documents":
        return [params["stage"]]
    if job_type == "complete_project_documents":
        return list(STAGES)
    return []


@dataclass
class JobContext:
    """What an executor sees of the job it runs."""

    job: Job
    params: dict
    token: CancellationToken
    orchestrator: AIOrchestrator
    repository: Repository
    report_progress: Callable[[int], None]
    produced: dict = field(default_factory=dict)

    @property
    def provider(self) -> str | None:
        return self.params.get("provider")

    def analysis(self) -> RequirementAnalysis:
        """The analysis named in params, else the project's latest one."""
        analysis_id = self.params.get("analysis_id")
        if analysis_id:
            return self.repository.get_analysis(analysis_id, token=self.token)
        return self.repository.latest_analysis(self.job.project_id, token=self.token)

    def report(self, completed: int, total: int) -> None:
        """Record that ``completed`` of ``total`` sub-steps are done."""
        self.report_progress(100 * completed // total if total else 100)


Executor = Callable[[JobContext], dict]


@dataclass
class _Worker:
    thread: threading.Thread
    token: CancellationToken


class TaskEngine:
    """Registers executors, persists jobs and runs them in background threads."""

    def __init__(self, repository: Repository, orchestrator: AIOrchestrator,
                 tracker: StageProgressTracker, app: Flask | None = None):
        self.repository = repository
        self.orchestrator = orchestrator
        self.tracker = tracker
        self._app = app
        self._executors: dict[str, Executor] = {}
        self._workers: dict[str, _Worker] = {}
        self._lock = threading.Lock()
        self._progress_lock = threading.Lock()

    # ── Executor registry ─────────────────────────────────────────────────

    def register(self, job_type: str, executor: Executor) -> None:
        self._executors[job_type] = executor

    def job_types(self) -> list[str]:
        return sorted(self._executors)

    # ── Submission ────────────────────────────────────────────────────────

    def submit(self, user_id: str, project_id: str, job_type: str, params: dict | None = None, *,
               name: str | None = None) -> Job:
        """
        Persist a pending job and start its worker.

        Args:
            user_id: Owner of the job.
            project_id: Project the job works on; must exist.
            job_type: Registered executor name. Unknown types are accepted
                      here and fail at dispatch.
            params: Executor parameters (stored as the job's metadata).
            name: Human label; defaults to the job type.

        Returns:
            The Job snapshot with status=pending, progress=0.
        """
        params = dict(params or {})
        if not user_id:
            raise InvalidInput("user id must not be empty")
        if not project_id:
            raise InvalidInput("project id must not be empty")
        self._validate_params(job_type, params)
        self.repository.get_project(project_id)

        job = self.repository.create_job(Job(
            id=new_id(),
            user_id=user_id,
            project_id=project_id,
            job_type=job_type,
            name=name or job_type,
            status="pending",
            progress=0,
            metadata=params,
            created_at=utcnow(),
        ))
        self.tracker.stages(project_id)
        for stage in stages_for(job_type, params):
            self.tracker.start(project_id, stage, job.id)

        app = self._app or current_app._get_current_object()
        token = CancellationToken()
        thread = threading.Thread(
            target=self._execute_in_background,
            args=(app, job.id, token),
            name=f"reqflow-job-{job.id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._workers[job.id] = _Worker(thread=thread, token=token)
        thread.start()

        logger.info("Submitted %s job", job_type,
                    extra={"job_id": job.id, "job_type": job_type, "project_id": project_id})
        return job

    @staticmethod
    def _validate_params(job_type: str, params: dict) -> None:
        if job_type == "stage_documents" and params.get("stage") not in STAGES:
            raise InvalidInput(f"stage must be one of 1, 2, 3 (got {params.get('stage')!r})")
        if job_type == "puml_generation" and params.get("diagram_type") not in DIAGRAM_TYPES:
            raise InvalidInput(f"unknown diagram type: {params.get('diagram_type')}")
        if job_type == "requirement_analysis" and not (params.get("text") or "").strip():
            raise InvalidInput("requirement text must not be empty")
        stage = params.get("stage")
        if stage is not None and stage not in STAGES:
            raise InvalidInput(f"stage must be one of 1, 2, 3 (got {stage!r})")

    # ── Queries ───────────────────────────────────────────────────────────

    def get(self, job_id: str) -> Job:
        return self.repository.get_job(job_id)

    def list_jobs(self, project_id: str | None = None, job_type: str | None = None, *,
                  user_id: str | None = None, status: str | None = None, limit: int = 50) -> list[Job]:
        return self.repository.list_jobs(
            project_id, job_type, user_id=user_id, status=status, limit=limit,
        )

    def stage_progress(self, project_id: str) -> ProjectProgress:
        return self.tracker.overview(project_id)

    def is_running(self, job_id: str) -> bool:
        with self._lock:
            worker = self._workers.get(job_id)
        return worker is not None and worker.thread.is_alive()

    def join(self, job_id: str, timeout: float | None = None) -> Job:
        """Wait for the job's worker to finish, then return the job."""
        with self._lock:
            worker = self._workers.get(job_id)
        if worker is not None:
            worker.thread.join(timeout)
        return self.repository.get_job(job_id)

    # ── Control ───────────────────────────────────────────────────────────

    def cancel(self, job_id: str) -> Job:
        """
        Cancel a job.

        A live worker stops at its next I/O boundary and fails the job with
        "cancelled". A job with no live worker in this process is failed
        directly. Finished jobs are returned unchanged.
        """
        job = self.repository.get_job(job_id)
        if job.finished:
            return job

        with self._lock:
            worker = self._workers.get(job_id)
        if worker is not None and worker.thread.is_alive():
            worker.token.cancel()
            logger.info("Cancellation requested", extra={"job_id": job_id})
            return job

        return self._fail(job_id, CANCELLED_MESSAGE, keep_progress=True)

    def reap_orphans(self, older_than: timedelta = timedelta(minutes=60)) -> list[Job]:
        """Fail pending/running jobs older than ``older_than`` with no live worker here."""
        reaped = []
        for job in self.repository.list_stale_jobs(utcnow() - older_than):
            if self.is_running(job.id):
                continue
            reaped.append(self._fail(job.id, ORPHANED_MESSAGE, keep_progress=False))
        if reaped:
            logger.warning("Reaped %d orphaned jobs", len(reaped))
        return reaped

    # ── Internal ──────────────────────────────────────────────────────────

    def _execute_in_background(self, app: Flask, job_id: str, token: CancellationToken) -> None:
        """Run one job to completion in its own thread."""
        with app.app_context():
            try:
                job = self._transition(self.repository.get_job(job_id), "running", started_at=utcnow())
                executor = self._executors.get(job.job_type)
                if executor is None:
                    raise InvalidInput(f"unsupported job type: {job.job_type}")

                token.raise_if_cancelled()
                ctx = JobContext(
                    job=job,
                    params=dict(job.metadata),
                    token=token,
                    orchestrator=self.orchestrator,
                    repository=self.repository,
                    report_progress=lambda pct: self._set_progress(job_id, pct),
                )
                result = executor(ctx)
                self._complete(job, result)
            except Cancelled:
                logger.info("Job cancelled", extra={"job_id": job_id})
                self._fail_quietly(job_id, CANCELLED_MESSAGE, keep_progress=True)
            except Exception as exc:
                logger.error("Job failed: %s", exc, extra={"job_id": job_id}, exc_info=True)
                self._fail_quietly(job_id, str(exc) or exc.__class__.__name__, keep_progress=False)
            finally:
                with self._lock:
                    self._workers.pop(job_id, None)

    def _transition(self, job: Job, status: str, **changes) -> Job:
        if status not in _ALLOWED_TRANSITIONS.get(job.status, set()):
            raise InvalidInput(f"illegal job transition {job.status} → {status}")
        job = self.repository.update_job(replace(job, status=status, **changes))
        logger.info("Job %s", status, extra={"job_id": job.id, "status": status})
        return job

    def _set_progress(self, job_id: str, progress: int) -> None:
        progress = max(0, min(progress, 100))
        with self._progress_lock:
            job = self.repository.get_job(job_id)
            if job.status != "running" or progress <= job.progress:
                return
            self.repository.update_job(replace(job, progress=progress))
            for stage in stages_for(job.job_type, job.metadata):
                self.tracker.advance(job.project_id, stage, job_id, progress)

    def _complete(self, job: Job, result: dict) -> None:
        for stage in stages_for(job.job_type, job.metadata):
            self.tracker.complete(job.project_id, stage, job.id)
        current = self.repository.get_job(job.id)
        self._transition(current, "completed", progress=100, result=result, completed_at=utcnow())

    def _fail(self, job_id: str, message: str, *, keep_progress: bool) -> Job:
        job = self.repository.get_job(job_id)
        if job.finished:
            return job
        if job.status == "pending":
            job = self._transition(job, "running", started_at=utcnow())
        job = self._transition(
            job, "failed",
            progress=job.progress if keep_progress else 0,
            error_message=message,
            completed_at=utcnow(),
        )
        for stage in stages_for(job.job_type, job.metadata):
            self.tracker.fail(job.project_id, stage, job.id)
        return job

    def _fail_quietly(self, job_id: str, message: str, *, keep_progress: bool) -> None:
        try:
            self._fail(job_id, message, keep_progress=keep_progress)
        except Exception:
            logger.exception("Could not record failure", extra={"job_id": job_id})
