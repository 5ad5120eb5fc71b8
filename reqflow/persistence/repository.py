"""
Reqflow
Persistence Port.

Abstract interface the orchestration layer requires from storage. Every
method accepts an optional cancellation token, checked before the I/O
happens. Implementations raise ``NotFound`` for missing entities and
``StorageError`` for internal failures; listings are newest first,
except chat turns, which come back in conversation order.
"""

from abc import ABC, abstractmethod
from datetime import datetime

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
)
from reqflow.core.cancellation import CancellationToken

Token = CancellationToken | None


class Repository(ABC):
    """Storage collaborator used by the orchestrator, task engine and stage tracker."""

    # ── Projects ──────────────────────────────────────────────────────────

    @abstractmethod
    def create_project(self, project: Project, token: Token = None) -> Project: ...

    @abstractmethod
    def get_project(self, project_id: str, token: Token = None) -> Project: ...

    @abstractmethod
    def delete_project(self, project_id: str, token: Token = None) -> None:
        """Delete the project and cascade to everything it owns."""

    # ── Requirement analyses ──────────────────────────────────────────────

    @abstractmethod
    def create_analysis(self, analysis: RequirementAnalysis, token: Token = None) -> RequirementAnalysis: ...

    @abstractmethod
    def get_analysis(self, analysis_id: str, token: Token = None) -> RequirementAnalysis: ...

    @abstractmethod
    def list_analyses(self, project_id: str, token: Token = None) -> list[RequirementAnalysis]: ...

    @abstractmethod
    def latest_analysis(self, project_id: str, token: Token = None) -> RequirementAnalysis:
        """Newest analysis of the project; ``NotFound`` if it has none."""

    @abstractmethod
    def update_analysis_score(self, analysis_id: str, score: float,
                              token: Token = None) -> RequirementAnalysis: ...

    # ── Questions ─────────────────────────────────────────────────────────

    @abstractmethod
    def create_questions(self, questions: list[Question], token: Token = None) -> list[Question]: ...

    @abstractmethod
    def get_question(self, question_id: str, token: Token = None) -> Question: ...

    @abstractmethod
    def list_questions(self, project_id: str, token: Token = None) -> list[Question]: ...

    @abstractmethod
    def list_questions_by_analysis(self, analysis_id: str, token: Token = None) -> list[Question]: ...

    @abstractmethod
    def update_question(self, question: Question, token: Token = None) -> Question: ...

    # ── Diagrams ──────────────────────────────────────────────────────────

    @abstractmethod
    def create_diagram(self, diagram: PUMLDiagram, token: Token = None) -> PUMLDiagram: ...

    @abstractmethod
    def get_diagram(self, diagram_id: str, token: Token = None) -> PUMLDiagram: ...

    @abstractmethod
    def list_diagrams(self, project_id: str, stage: int | None = None,
                      token: Token = None) -> list[PUMLDiagram]: ...

    @abstractmethod
    def update_diagram(self, diagram: PUMLDiagram, token: Token = None) -> PUMLDiagram: ...

    @abstractmethod
    def count_diagrams(self, project_id: str, stage: int, token: Token = None) -> int: ...

    # ── Documents ─────────────────────────────────────────────────────────

    @abstractmethod
    def create_document(self, document: DevelopmentDocument, token: Token = None) -> DevelopmentDocument: ...

    @abstractmethod
    def get_document(self, document_id: str, token: Token = None) -> DevelopmentDocument: ...

    @abstractmethod
    def list_documents(self, project_id: str, stage: int | None = None,
                       token: Token = None) -> list[DevelopmentDocument]: ...

    @abstractmethod
    def update_document(self, document: DevelopmentDocument, token: Token = None) -> DevelopmentDocument: ...

    @abstractmethod
    def count_documents(self, project_id: str, stage: int, token: Token = None) -> int: ...

    # ── Jobs ──────────────────────────────────────────────────────────────

    @abstractmethod
    def create_job(self, job: Job, token: Token = None) -> Job: ...

    @abstractmethod
    def get_job(self, job_id: str, token: Token = None) -> Job: ...

    @abstractmethod
    def update_job(self, job: Job, token: Token = None) -> Job: ...

    @abstractmethod
    def list_jobs(self, project_id: str | None = None, job_type: str | None = None, *,
                  user_id: str | None = None, status: str | None = None,
                  limit: int = 50, token: Token = None) -> list[Job]: ...

    @abstractmethod
    def list_stale_jobs(self, before: datetime, token: Token = None) -> list[Job]:
        """Pending or running jobs created before ``before``."""

    # ── Stage progress ────────────────────────────────────────────────────

    @abstractmethod
    def create_stage_progress(self, row: StageProgress, token: Token = None) -> StageProgress: ...

    @abstractmethod
    def get_stage_progress(self, project_id: str, stage: int, token: Token = None) -> StageProgress: ...

    @abstractmethod
    def update_stage_progress(self, row: StageProgress, token: Token = None) -> StageProgress: ...

    @abstractmethod
    def list_stage_progress(self, project_id: str, token: Token = None) -> list[StageProgress]:
        """Rows for the project ordered by stage; may hold fewer than three."""

    # ── Chat sessions ─────────────────────────────────────────────────────

    @abstractmethod
    def create_chat_session(self, chat_session: ChatSession, token: Token = None) -> ChatSession: ...

    @abstractmethod
    def get_chat_session(self, session_id: str, token: Token = None) -> ChatSession: ...

    @abstractmethod
    def list_chat_sessions(self, project_id: str, *, user_id: str | None = None,
                           token: Token = None) -> list[ChatSession]: ...

    @abstractmethod
    def set_chat_session_status(self, session_id: str, status: str,
                                token: Token = None) -> ChatSession: ...

    @abstractmethod
    def append_chat_messages(self, session_id: str, messages: list[ChatMessage],
                             token: Token = None) -> list[ChatMessage]:
        """
        Append ``messages`` to the session in one unit of work.

        Sequence numbers continue from the session's message count; the
        ``seq`` carried by the given messages is ignored.
        """

    @abstractmethod
    def list_chat_messages(self, session_id: str, *, limit: int | None = None,
                           token: Token = None) -> list[ChatMessage]:
        """Turns in conversation order (oldest first); ``limit`` keeps the most recent."""
