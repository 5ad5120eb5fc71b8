"""
Reqflow
Flask-SQLAlchemy implementation of the Persistence Port.

Each call is its own unit of work: writes commit before returning, so a
job record is durable before its worker thread starts. Any
``SQLAlchemyError`` rolls the session back and surfaces as
``StorageError``. Requires an active Flask app context.
"""

import logging
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from reqflow.ai.entities import (
    ChatMessage,
    ChatSession,
    DevelopmentDocument,
    Job,
    PUMLDiagram,
    Project,
    Question,
    RequirementAnalysis,
    StageProgress,
    utcnow,
)
from reqflow.core.cancellation import check
from reqflow.core.exceptions import NotFound, StorageError
from reqflow.models import db
from reqflow.models.artifacts import AnalysisRecord, DiagramRecord, DocumentRecord, QuestionRecord
from reqflow.models.chat import ChatMessageRecord, ChatSessionRecord
from reqflow.models.jobs import JobRecord, StageProgressRecord
from reqflow.models.project import ProjectRecord
from reqflow.persistence.repository import Repository, Token

logger = logging.getLogger(__name__)


class SQLAlchemyRepository(Repository):
    """Persistence port over ``db.session``."""

    @contextmanager
    def _storage(self, token: Token = None, *, commit: bool = False):
        check(token)
        try:
            yield db.session
            if commit:
                db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Storage failure: %s", exc)
            raise StorageError(f"storage failure: {exc.__class__.__name__}: {exc}") from exc

    @staticmethod
    def _get(model, ident, resource: str, *, fresh: bool = False):
        record = db.session.get(model, ident, populate_existing=fresh)
        if record is None:
            raise NotFound(resource, ident if not isinstance(ident, tuple) else "/".join(map(str, ident)))
        return record

    def _require_project(self, project_id: str) -> None:
        if db.session.get(ProjectRecord, project_id) is None:
            raise NotFound("Project", project_id)

    # ── Projects ──────────────────────────────────────────────────────────

    def create_project(self, project, token=None) -> Project:
        with self._storage(token, commit=True) as session:
            record = ProjectRecord.from_entity(project)
            session.add(record)
        return record.to_entity()

    def get_project(self, project_id, token=None) -> Project:
        with self._storage(token):
            return self._get(ProjectRecord, project_id, "Project").to_entity()

    def delete_project(self, project_id, token=None) -> None:
        with self._storage(token, commit=True) as session:
            session.delete(self._get(ProjectRecord, project_id, "Project"))
        logger.info("Deleted project %s", project_id, extra={"project_id": project_id})

    # ── Requirement analyses ──────────────────────────────────────────────

    def create_analysis(self, analysis, token=None) -> RequirementAnalysis:
        with self._storage(token, commit=True) as session:
            self._require_project(analysis.project_id)
            record = AnalysisRecord.from_entity(analysis)
            session.add(record)
        return record.to_entity()

    def get_analysis(self, analysis_id, token=None) -> RequirementAnalysis:
        with self._storage(token):
            return self._get(AnalysisRecord, analysis_id, "RequirementAnalysis").to_entity()

    def list_analyses(self, project_id, token=None) -> list[RequirementAnalysis]:
        with self._storage(token):
            rows = (AnalysisRecord.query.filter_by(project_id=project_id)
                    .order_by(AnalysisRecord.created_at.desc()).all())
            return [r.to_entity() for r in rows]

    def latest_analysis(self, project_id, token=None) -> RequirementAnalysis:
        with self._storage(token):
            record = (AnalysisRecord.query.filter_by(project_id=project_id)
                      .order_by(AnalysisRecord.created_at.desc()).first())
            if record is None:
                raise NotFound("RequirementAnalysis", f"project={project_id}")
            return record.to_entity()

    def update_analysis_score(self, analysis_id, score, token=None) -> RequirementAnalysis:
        with self._storage(token, commit=True):
            record = self._get(AnalysisRecord, analysis_id, "RequirementAnalysis")
            record.completeness_score = score
            record.updated_at = utcnow()
        return record.to_entity()

    # ── Questions ─────────────────────────────────────────────────────────

    def create_questions(self, questions, token=None) -> list[Question]:
        with self._storage(token, commit=True) as session:
            records = [QuestionRecord.from_entity(q) for q in questions]
            session.add_all(records)
        return [r.to_entity() for r in records]

    def get_question(self, question_id, token=None) -> Question:
        with self._storage(token):
            return self._get(QuestionRecord, question_id, "Question").to_entity()

    def list_questions(self, project_id, token=None) -> list[Question]:
        with self._storage(token):
            rows = (QuestionRecord.query.filter_by(project_id=project_id)
                    .order_by(QuestionRecord.created_at.desc()).all())
            return [r.to_entity() for r in rows]

    def list_questions_by_analysis(self, analysis_id, token=None) -> list[Question]:
        with self._storage(token):
            rows = (QuestionRecord.query.filter_by(analysis_id=analysis_id)
                    .order_by(QuestionRecord.created_at.desc()).all())
            return [r.to_entity() for r in rows]

    def update_question(self, question, token=None) -> Question:
        with self._storage(token, commit=True):
            record = self._get(QuestionRecord, question.id, "Question")
            record.apply(question)
        return record.to_entity()

    # ── Diagrams ──────────────────────────────────────────────────────────

    def create_diagram(self, diagram, token=None) -> PUMLDiagram:
        with self._storage(token, commit=True) as session:
            self._require_project(diagram.project_id)
            record = DiagramRecord.from_entity(diagram)
            session.add(record)
        return record.to_entity()

    def get_diagram(self, diagram_id, token=None) -> PUMLDiagram:
        with self._storage(token):
            return self._get(DiagramRecord, diagram_id, "PUMLDiagram").to_entity()

    def list_diagrams(self, project_id, stage=None, token=None) -> list[PUMLDiagram]:
        with self._storage(token):
            q = DiagramRecord.query.filter_by(project_id=project_id)
            if stage is not None:
                q = q.filter_by(stage=stage)
            return [r.to_entity() for r in q.order_by(DiagramRecord.created_at.desc()).all()]

    def update_diagram(self, diagram, token=None) -> PUMLDiagram:
        with self._storage(token, commit=True):
            record = self._get(DiagramRecord, diagram.id, "PUMLDiagram")
            record.apply(diagram)
        return record.to_entity()

    def count_diagrams(self, project_id, stage, token=None) -> int:
        with self._storage(token):
            return DiagramRecord.query.filter_by(project_id=project_id, stage=stage).count()

    # ── Documents ─────────────────────────────────────────────────────────

    def create_document(self, document, token=None) -> DevelopmentDocument:
        with self._storage(token, commit=True) as session:
            self._require_project(document.project_id)
            record = DocumentRecord.from_entity(document)
            session.add(record)
        return record.to_entity()

    def get_document(self, document_id, token=None) -> DevelopmentDocument:
        with self._storage(token):
            return self._get(DocumentRecord, document_id, "DevelopmentDocument").to_entity()

    def list_documents(self, project_id, stage=None, token=None) -> list[DevelopmentDocument]:
        with self._storage(token):
            q = DocumentRecord.query.filter_by(project_id=project_id)
            if stage is not None:
                q = q.filter_by(stage=stage)
            return [r.to_entity() for r in q.order_by(DocumentRecord.created_at.desc()).all()]

    def update_document(self, document, token=None) -> DevelopmentDocument:
        with self._storage(token, commit=True):
            record = self._get(DocumentRecord, document.id, "DevelopmentDocument")
            record.apply(document)
        return record.to_entity()

    def count_documents(self, project_id, stage, token=None) -> int:
        with self._storage(token):
            return DocumentRecord.query.filter_by(project_id=project_id, stage=stage).count()

    # ── Jobs ──────────────────────────────────────────────────────────────

    def create_job(self, job, token=None) -> Job:
        with self._storage(token, commit=True) as session:
            self._require_project(job.project_id)
            record = JobRecord.from_entity(job)
            session.add(record)
        return record.to_entity()

    def get_job(self, job_id, token=None) -> Job:
        with self._storage(token):
            return self._get(JobRecord, job_id, "Job", fresh=True).to_entity()

    def update_job(self, job, token=None) -> Job:
        with self._storage(token, commit=True):
            record = self._get(JobRecord, job.id, "Job", fresh=True)
            record.apply(job)
        return record.to_entity()

    def list_jobs(self, project_id=None, job_type=None, *, user_id=None, status=None,
                  limit=50, token=None) -> list[Job]:
        with self._storage(token):
            q = JobRecord.query
            if project_id:
                q = q.filter_by(project_id=project_id)
            if job_type:
                q = q.filter_by(job_type=job_type)
            if user_id:
                q = q.filter_by(user_id=user_id)
            if status:
                q = q.filter_by(status=status)
            q = q.order_by(JobRecord.created_at.desc()).limit(limit)
            return [r.to_entity() for r in q.populate_existing().all()]

    def list_stale_jobs(self, before: datetime, token=None) -> list[Job]:
        with self._storage(token):
            rows = (JobRecord.query
                    .filter(JobRecord.status.in_(("pending", "running")))
                    .filter(JobRecord.created_at < before)
                    .order_by(JobRecord.created_at.asc())
                    .populate_existing()
                    .all())
            return [r.to_entity() for r in rows]

    # ── Stage progress ────────────────────────────────────────────────────

    def create_stage_progress(self, row, token=None) -> StageProgress:
        with self._storage(token, commit=True) as session:
            self._require_project(row.project_id)
            record = StageProgressRecord.from_entity(row)
            session.add(record)
        return record.to_entity()

    def get_stage_progress(self, project_id, stage, token=None) -> StageProgress:
        with self._storage(token):
            return self._get(
                StageProgressRecord, (project_id, stage), "StageProgress", fresh=True,
            ).to_entity()

    def update_stage_progress(self, row, token=None) -> StageProgress:
        with self._storage(token, commit=True):
            record = self._get(StageProgressRecord, (row.project_id, row.stage), "StageProgress",
                               fresh=True)
            record.apply(row)
        return record.to_entity()

    def list_stage_progress(self, project_id, token=None) -> list[StageProgress]:
        with self._storage(token):
            rows = (StageProgressRecord.query.filter_by(project_id=project_id)
                    .order_by(StageProgressRecord.stage.asc())
                    .populate_existing()
                    .all())
            return [r.to_entity() for r in rows]

    # ── Chat sessions ─────────────────────────────────────────────────────

    def create_chat_session(self, chat_session, token=None) -> ChatSession:
        with self._storage(token, commit=True) as session:
            self._require_project(chat_session.project_id)
            record = ChatSessionRecord.from_entity(chat_session)
            session.add(record)
        return record.to_entity()

    def get_chat_session(self, session_id, token=None) -> ChatSession:
        with self._storage(token):
            return self._get(ChatSessionRecord, session_id, "ChatSession", fresh=True).to_entity()

    def list_chat_sessions(self, project_id, *, user_id=None, token=None) -> list[ChatSession]:
        with self._storage(token):
            q = ChatSessionRecord.query.filter_by(project_id=project_id)
            if user_id:
                q = q.filter_by(user_id=user_id)
            q = q.order_by(ChatSessionRecord.updated_at.desc())
            return [r.to_entity() for r in q.populate_existing().all()]

    def set_chat_session_status(self, session_id, status, token=None) -> ChatSession:
        with self._storage(token, commit=True):
            record = self._get(ChatSessionRecord, session_id, "ChatSession", fresh=True)
            record.status = status
            record.updated_at = utcnow()
        return record.to_entity()

    def append_chat_messages(self, session_id, messages, token=None) -> list[ChatMessage]:
        with self._storage(token, commit=True) as session:
            chat = self._get(ChatSessionRecord, session_id, "ChatSession", fresh=True)
            records = []
            for offset, message in enumerate(messages, start=1):
                record = ChatMessageRecord.from_entity(message)
                record.session_id = session_id
                record.seq = chat.message_count + offset
                records.append(record)
            session.add_all(records)
            chat.message_count += len(records)
            chat.updated_at = utcnow()
        return [r.to_entity() for r in records]

    def list_chat_messages(self, session_id, *, limit=None, token=None) -> list[ChatMessage]:
        with self._storage(token):
            self._get(ChatSessionRecord, session_id, "ChatSession")
            q = ChatMessageRecord.query.filter_by(session_id=session_id)
            if limit is not None:
                rows = q.order_by(ChatMessageRecord.seq.desc()).limit(limit).all()
                rows.reverse()
            else:
                rows = q.order_by(ChatMessageRecord.seq.asc()).all()
            return [r.to_entity() for r in rows]
