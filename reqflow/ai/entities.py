"""
Reqflow
AI domain entities.

Plain, immutable dataclasses passed between the provider clients, the
orchestrator, the task engine and the persistence port. SQLAlchemy
records in ``reqflow.models`` convert to and from these; nothing above
the persistence adapter ever sees a ``db.Model``.

Entities:
    - RequirementAnalysis (+ BusinessProcess, DataEntity, DataAttribute, DataRelation)
    - Question
    - PUMLDiagram
    - DevelopmentDocument
    - Job
    - StageProgress / ProjectProgress
    - ChatReply
    - ChatSession / ChatMessage
    - Project
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone


# ── Constants ────────────────────────────────────────────────────────────────

PROVIDER_OPENAI = "openai"
PROVIDER_GEMINI = "gemini"
PROVIDER_CLAUDE = "claude"
PROVIDER_LOCAL = "local"
KNOWN_PROVIDERS = (PROVIDER_OPENAI, PROVIDER_GEMINI, PROVIDER_CLAUDE, PROVIDER_LOCAL)

QUESTION_CATEGORIES = (
    "business_rule",
    "exception_handling",
    "data_structure",
    "external_interface",
    "performance_requirement",
    "security_requirement",
)
ANSWER_STATUSES = ("pending", "answered", "skipped")

DIAGRAM_TYPES = ("business_flow", "architecture", "sequence", "class", "data_model")

DOCUMENT_TYPES = (
    "requirements",
    "technical_spec",
    "api_design",
    "database_design",
    "development_process",
    "test_cases",
    "deployment",
)

RELATION_KINDS = ("1-1", "1-N", "N-N")

STAGES = (1, 2, 3)

JOB_STATUSES = ("pending", "running", "completed", "failed")
JOB_TYPES = (
    "stage_documents",
    "complete_project_documents",
    "puml_generation",
    "document_generation",
    "requirement_analysis",
)

STAGE_STATUSES = ("not_started", "in_progress", "completed", "failed")

CHAT_SESSION_STATUSES = ("active", "closed")
CHAT_ROLES = ("user", "assistant", "system")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _serialise(entity) -> dict:
    data = asdict(entity)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    return data


# ── Requirement analysis ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class DataAttribute:
    name: str
    type: str = "string"
    required: bool = False
    description: str = ""


@dataclass(frozen=True)
class DataRelation:
    target: str
    kind: str = "1-N"
    description: str = ""


@dataclass(frozen=True)
class DataEntity:
    name: str
    description: str = ""
    attributes: list[DataAttribute] = field(default_factory=list)
    relations: list[DataRelation] = field(default_factory=list)


@dataclass(frozen=True)
class BusinessProcess:
    name: str
    description: str = ""
    steps: list[str] = field(default_factory=list)
    actors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RequirementAnalysis:
    """Structured reading of one free-text business requirement."""

    id: str
    project_id: str
    requirement_text: str
    core_functions: list[str] = field(default_factory=list)
    roles: list[str] = field(default_factory=list)
    business_processes: list[BusinessProcess] = field(default_factory=list)
    data_entities: list[DataEntity] = field(default_factory=list)
    missing_info: list[str] = field(default_factory=list)
    completeness_score: float = 0.0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def content_fields(self) -> dict:
        """Everything except identity and timestamps."""
        data = asdict(self)
        for key in ("id", "project_id", "created_at", "updated_at"):
            data.pop(key)
        return data

    def to_dict(self) -> dict:
        return _serialise(self)


# ── Questions ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Question:
    """A supplementary question raised by an analysis."""

    id: str
    category: str
    text: str
    project_id: str | None = None
    analysis_id: str | None = None
    options: list[str] = field(default_factory=list)
    priority: int = 3
    target_info: str = ""
    answer: str = ""
    answer_status: str = "pending"
    answered_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict:
        return _serialise(self)


# ── Diagrams & documents ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class PUMLDiagram:
    id: str
    project_id: str
    diagram_type: str
    title: str
    content: str
    description: str = ""
    analysis_id: str | None = None
    version: int = 1
    stage: int = 1
    job_id: str | None = None
    validated: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict:
        return _serialise(self)


@dataclass(frozen=True)
class DevelopmentDocument:
    id: str
    project_id: str
    document_type: str
    title: str
    content: str
    analysis_id: str | None = None
    version: int = 1
    stage: int = 1
    job_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict:
        return _serialise(self)


# ── Chat ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ChatReply:
    message: str
    should_update_analysis: bool = False
    related_questions: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    analysis_updates: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ChatSession:
    """A persisted conversation about one project."""

    id: str
    project_id: str
    user_id: str
    title: str = ""
    status: str = "active"
    message_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def active(self) -> bool:
        return self.status == "active"

    def to_dict(self) -> dict:
        return _serialise(self)


@dataclass(frozen=True)
class ChatMessage:
    """One turn of a ChatSession; ``seq`` is 1-based and dense per session."""

    id: str
    session_id: str
    role: str
    content: str
    seq: int = 0
    provider: str | None = None
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None

    def to_dict(self) -> dict:
        return _serialise(self)


# ── Jobs & stage progress ────────────────────────────────────────────────────

@dataclass(frozen=True)
class Job:
    """Snapshot of one asynchronous job record."""

    id: str
    user_id: str
    project_id: str
    job_type: str
    name: str = ""
    status: str = "pending"
    progress: int = 0
    metadata: dict = field(default_factory=dict)
    result: dict | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def finished(self) -> bool:
        return self.status in ("completed", "failed")

    def to_dict(self) -> dict:
        return _serialise(self)


@dataclass(frozen=True)
class StageProgress:
    project_id: str
    stage: int
    status: str = "not_started"
    completion_rate: int = 0
    document_count: int = 0
    diagram_count: int = 0
    last_job_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict:
        return _serialise(self)


@dataclass(frozen=True)
class ProjectProgress:
    """The three stage rows of a project plus their roll-up."""

    project_id: str
    stages: list[StageProgress]
    status: str
    completion_rate: float

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "stages": [s.to_dict() for s in self.stages],
            "overall": {"status": self.status, "completion_rate": self.completion_rate},
        }


# ── Projects ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Project:
    id: str
    owner_id: str
    name: str
    description: str = ""
    created_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "created_at": _iso(self.created_at),
        }

