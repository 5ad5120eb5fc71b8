"""
Reqflow
Stage Progress Tracker.

Thin wrapper over StageProgress rows. Reads for a project always return
exactly three rows (stages 1, 2, 3); missing rows are materialised as
``not_started`` / 0% on first read. All writes go through the
persistence port.
"""

import logging
import threading
from dataclasses import replace

from reqflow.ai.entities import STAGES, ProjectProgress, StageProgress, utcnow
from reqflow.core.cancellation import CancellationToken
from reqflow.core.exceptions import InvalidInput, NotFound, StorageError
from reqflow.persistence.repository import Repository

logger = logging.getLogger(__name__)


def rollup(rows: list[StageProgress]) -> tuple[str, float]:
    """Overall (status, completion_rate) of the three stage rows."""
    statuses = [r.status for r in rows]
    rate = round(sum(r.completion_rate for r in rows) / len(rows), 2) if rows else 0.0
    if "failed" in statuses:
        status = "failed"
    elif all(s == "completed" for s in statuses):
        status = "completed"
    elif all(s == "not_started" for s in statuses):
        status = "not_started"
    else:
        status = "in_progress"
    return status, rate


class StageProgressTracker:
    """Per-project stage rows with lazy materialisation."""

    def __init__(self, repository: Repository):
        self.repository = repository
        self._materialise_lock = threading.Lock()

    @staticmethod
    def _check_stage(stage: int) -> None:
        if stage not in STAGES:
            raise InvalidInput(f"stage must be one of 1, 2, 3 (got {stage!r})")

    # ── Reads ─────────────────────────────────────────────────────────────

    def get(self, project_id: str, stage: int,
            token: CancellationToken | None = None) -> StageProgress:
        self._check_stage(stage)
        try:
            return self.repository.get_stage_progress(project_id, stage, token=token)
        except NotFound:
            return self._materialise(project_id, stage, token)

    def stages(self, project_id: str, token: CancellationToken | None = None) -> list[StageProgress]:
        """Always three rows, ordered by stage."""
        existing = {r.stage: r for r in self.repository.list_stage_progress(project_id, token=token)}
        return [
            existing.get(stage) or self._materialise(project_id, stage, token)
            for stage in STAGES
        ]

    def overview(self, project_id: str,
                 token: CancellationToken | None = None) -> ProjectProgress:
        rows = self.stages(project_id, token)
        status, rate = rollup(rows)
        return ProjectProgress(project_id=project_id, stages=rows, status=status, completion_rate=rate)

    # ── Writes ────────────────────────────────────────────────────────────

    def start(self, project_id: str, stage: int, job_id: str,
              token: CancellationToken | None = None) -> StageProgress:
        """Move the row to ``in_progress`` for ``job_id``."""
        row = self.get(project_id, stage, token)
        row = StageProgress(
            project_id=project_id,
            stage=stage,
            status="in_progress",
            completion_rate=0,
            document_count=row.document_count,
            diagram_count=row.diagram_count,
            last_job_id=job_id,
            started_at=utcnow(),
            completed_at=None,
        )
        return self.repository.update_stage_progress(row, token=token)

    def advance(self, project_id: str, stage: int, job_id: str, rate: int,
                token: CancellationToken | None = None) -> StageProgress:
        """
        Raise an in-progress row's completion rate while ``job_id`` runs.

        Capped at 99; only ``complete`` reports 100. Rows owned by another
        job, rows not in progress and lower rates are left as they are.
        """
        row = self.get(project_id, stage, token)
        rate = min(max(rate, 0), 99)
        if row.status != "in_progress" or row.last_job_id != job_id or rate <= row.completion_rate:
            return row
        return self.repository.update_stage_progress(replace(row, completion_rate=rate), token=token)

    def complete(self, project_id: str, stage: int, job_id: str,
                 token: CancellationToken | None = None) -> StageProgress:
        """Mark the stage completed and recount its artifacts."""
        row = self.get(project_id, stage, token)
        row = StageProgress(
            project_id=project_id,
            stage=stage,
            status="completed",
            completion_rate=100,
            document_count=self.repository.count_documents(project_id, stage, token=token),
            diagram_count=self.repository.count_diagrams(project_id, stage, token=token),
            last_job_id=job_id,
            started_at=row.started_at,
            completed_at=utcnow(),
        )
        logger.info(
            "Stage %d completed (%d documents, %d diagrams)",
            stage, row.document_count, row.diagram_count,
            extra={"project_id": project_id, "stage": stage, "job_id": job_id},
        )
        return self.repository.update_stage_progress(row, token=token)

    def fail(self, project_id: str, stage: int, job_id: str) -> StageProgress:
        """Mark the stage failed."""
        row = self.get(project_id, stage)
        row = StageProgress(
            project_id=project_id,
            stage=stage,
            status="failed",
            completion_rate=0,
            document_count=row.document_count,
            diagram_count=row.diagram_count,
            last_job_id=job_id,
            started_at=row.started_at,
            completed_at=None,
        )
        return self.repository.update_stage_progress(row)

    # ── Internal ──────────────────────────────────────────────────────────

    def _materialise(self, project_id: str, stage: int,
                     token: CancellationToken | None) -> StageProgress:
        with self._materialise_lock:
            try:
                return self.repository.get_stage_progress(project_id, stage, token=token)
            except NotFound:
                pass
            try:
                return self.repository.create_stage_progress(
                    StageProgress(project_id=project_id, stage=stage), token=token,
                )
            except StorageError:
                # Another process created the row first
                return self.repository.get_stage_progress(project_id, stage, token=token)
