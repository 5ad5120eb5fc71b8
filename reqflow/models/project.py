"""
Reqflow
Project model.

The project is the ownership root: deleting it cascade-deletes its
analyses, questions, diagrams, documents, jobs, stage rows and chat
sessions.
"""

from datetime import datetime, timezone

from reqflow.ai.entities import Project
from reqflow.models import db
from reqflow.models._helpers import utc


class ProjectRecord(db.Model):
    __tablename__ = "projects"

    id = db.Column(db.String(36), primary_key=True)
    owner_id = db.Column(db.String(36), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    analyses = db.relationship(
        "AnalysisRecord", backref="project", cascade="all, delete-orphan", passive_deletes=True,
    )
    questions = db.relationship(
        "QuestionRecord", backref="project", cascade="all, delete-orphan", passive_deletes=True,
    )
    diagrams = db.relationship(
        "DiagramRecord", backref="project", cascade="all, delete-orphan", passive_deletes=True,
    )
    documents = db.relationship(
        "DocumentRecord", backref="project", cascade="all, delete-orphan", passive_deletes=True,
    )
    jobs = db.relationship(
        "JobRecord", backref="project", cascade="all, delete-orphan", passive_deletes=True,
    )
    stage_rows = db.relationship(
        "StageProgressRecord", backref="project", cascade="all, delete-orphan", passive_deletes=True,
    )
    chat_sessions = db.relationship(
        "ChatSessionRecord", backref="project", cascade="all, delete-orphan", passive_deletes=True,
    )

    @classmethod
    def from_entity(cls, entity: Project) -> "ProjectRecord":
        return cls(
            id=entity.id,
            owner_id=entity.owner_id,
            name=entity.name,
            description=entity.description,
            created_at=entity.created_at or datetime.now(timezone.utc),
        )

    def to_entity(self) -> Project:
        return Project(
            id=self.id,
            owner_id=self.owner_id,
            name=self.name,
            description=self.description or "",
            created_at=utc(self.created_at),
        )

    def __repr__(self):
        return f"<ProjectRecord id={self.id} name={self.name!r}>"
