"""
Reqflow
Job & stage progress models.

Models:
    - JobRecord: asynchronous job with status, progress and result blob
    - StageProgressRecord: per-(project, stage) completion state
"""

from datetime import datetime, timezone

from reqflow.ai.entities import Job, StageProgress
from reqflow.models import db
from reqflow.models._helpers import dumps, loads, utc


class JobRecord(db.Model):
    """Asynchronous AI job tracked by the task engine."""
    __tablename__ = "jobs"

    id = db.Column(db.String(36), primary_key=True)
    user_id = db.Column(db.String(36), nullable=False, index=True)
    project_id = db.Column(
        db.String(36), db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    job_type = db.Column(db.String(60), nullable=False, index=True)
    name = db.Column(db.String(200), default="")
    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    progress = db.Column(db.Integer, nullable=False, default=0)

    metadata_json = db.Column(db.Text, nullable=True)
    result_json = db.Column(db.Text, nullable=True)
    error_message = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc), index=True)
    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending','running','completed','failed')",
            name="ck_job_status",
        ),
        db.CheckConstraint("progress BETWEEN 0 AND 100", name="ck_job_progress"),
    )

    @classmethod
    def from_entity(cls, entity: Job) -> "JobRecord":
        record = cls(
            id=entity.id,
            user_id=entity.user_id,
            project_id=entity.project_id,
            job_type=entity.job_type,
            name=entity.name,
            metadata_json=dumps(entity.metadata),
            created_at=entity.created_at or datetime.now(timezone.utc),
        )
        record.apply(entity)
        return record

    def apply(self, entity: Job) -> None:
        """Copy the mutable lifecycle fields from ``entity``."""
        self.status = entity.status
        self.progress = entity.progress
        self.result_json = dumps(entity.result)
        self.error_message = entity.error_message
        self.started_at = entity.started_at
        self.completed_at = entity.completed_at

    def to_entity(self) -> Job:
        return Job(
            id=self.id,
            user_id=self.user_id,
            project_id=self.project_id,
            job_type=self.job_type,
            name=self.name or "",
            status=self.status,
            progress=self.progress,
            metadata=loads(self.metadata_json, {}),
            result=loads(self.result_json),
            error_message=self.error_message,
            created_at=utc(self.created_at),
            started_at=utc(self.started_at),
            completed_at=utc(self.completed_at),
        )

    def __repr__(self):
        return f"<JobRecord id={self.id} type={self.job_type} status={self.status}>"


class StageProgressRecord(db.Model):
    __tablename__ = "stage_progress"

    project_id = db.Column(
        db.String(36), db.ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True,
    )
    stage = db.Column(db.Integer, primary_key=True)
    status = db.Column(db.String(20), nullable=False, default="not_started")
    completion_rate = db.Column(db.Integer, nullable=False, default=0)
    document_count = db.Column(db.Integer, nullable=False, default=0)
    diagram_count = db.Column(db.Integer, nullable=False, default=0)
    last_job_id = db.Column(db.String(36), nullable=True)
    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.CheckConstraint("stage IN (1,2,3)", name="ck_stage_progress_stage"),
        db.CheckConstraint(
            "status IN ('not_started','in_progress','completed','failed')",
            name="ck_stage_progress_status",
        ),
    )

    @classmethod
    def from_entity(cls, entity: StageProgress) -> "StageProgressRecord":
        record = cls(project_id=entity.project_id, stage=entity.stage)
        record.apply(entity)
        return record

    def apply(self, entity: StageProgress) -> None:
        self.status = entity.status
        self.completion_rate = entity.completion_rate
        self.document_count = entity.document_count
        self.diagram_count = entity.diagram_count
        self.last_job_id = entity.last_job_id
        self.started_at = entity.started_at
        self.completed_at = entity.completed_at

    def to_entity(self) -> StageProgress:
        return StageProgress(
            project_id=self.project_id,
            stage=self.stage,
            status=self.status,
            completion_rate=self.completion_rate,
            document_count=self.document_count,
            diagram_count=self.diagram_count,
            last_job_id=self.last_job_id,
            started_at=utc(self.started_at),
            completed_at=utc(self.completed_at),
        )

    def __repr__(self):
        return f"<StageProgressRecord project={self.project_id} stage={self.stage} status={self.status}>"
