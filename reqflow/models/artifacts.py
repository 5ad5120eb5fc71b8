"""
Reqflow
Artifact models.

Models:
    - AnalysisRecord: RequirementAnalysis (structured lists stored as JSON text)
    - QuestionRecord: supplementary questions raised by an analysis
    - DiagramRecord: PlantUML diagrams, versioned, tagged with a stage
    - DocumentRecord: markdown development documents, versioned, tagged with a stage
"""

from datetime import datetime, timezone

from reqflow.ai.entities import (
    BusinessProcess,
    DataAttribute,
    DataEntity,
    DataRelation,
    DevelopmentDocument,
    PUMLDiagram,
    Question,
    RequirementAnalysis,
)
from reqflow.models import db
from reqflow.models._helpers import dumps, loads, utc


def _now():
    return datetime.now(timezone.utc)


def _project_fk():
    return db.Column(
        db.String(36), db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )


class AnalysisRecord(db.Model):
    """Requirement analysis produced by a provider."""
    __tablename__ = "requirement_analyses"

    id = db.Column(db.String(36), primary_key=True)
    project_id = _project_fk()
    requirement_text = db.Column(db.Text, nullable=False)
    core_functions_json = db.Column(db.Text, nullable=True)
    roles_json = db.Column(db.Text, nullable=True)
    business_processes_json = db.Column(db.Text, nullable=True)
    data_entities_json = db.Column(db.Text, nullable=True)
    missing_info_json = db.Column(db.Text, nullable=True)
    completeness_score = db.Column(db.Float, nullable=False, default=0.0)
    created_at = db.Column(db.DateTime, default=_now, index=True)
    updated_at = db.Column(db.DateTime, default=_now, onupdate=_now)

    __table_args__ = (
        db.CheckConstraint(
            "completeness_score >= 0 AND completeness_score <= 1",
            name="ck_analysis_score_range",
        ),
    )

    @classmethod
    def from_entity(cls, entity: RequirementAnalysis) -> "AnalysisRecord":
        data = entity.content_fields()
        return cls(
            id=entity.id,
            project_id=entity.project_id,
            requirement_text=entity.requirement_text,
            core_functions_json=dumps(data["core_functions"]),
            roles_json=dumps(data["roles"]),
            business_processes_json=dumps(data["business_processes"]),
            data_entities_json=dumps(data["data_entities"]),
            missing_info_json=dumps(data["missing_info"]),
            completeness_score=entity.completeness_score,
            created_at=entity.created_at or _now(),
            updated_at=entity.updated_at or entity.created_at or _now(),
        )

    def to_entity(self) -> RequirementAnalysis:
        entities = [
            DataEntity(
                name=e["name"],
                description=e.get("description", ""),
                attributes=[DataAttribute(**a) for a in e.get("attributes", [])],
                relations=[DataRelation(**r) for r in e.get("relations", [])],
            )
            for e in loads(self.data_entities_json, [])
        ]
        return RequirementAnalysis(
            id=self.id,
            project_id=self.project_id,
            requirement_text=self.requirement_text,
            core_functions=loads(self.core_functions_json, []),
            roles=loads(self.roles_json, []),
            business_processes=[BusinessProcess(**p) for p in loads(self.business_processes_json, [])],
            data_entities=entities,
            missing_info=loads(self.missing_info_json, []),
            completeness_score=self.completeness_score,
            created_at=utc(self.created_at),
            updated_at=utc(self.updated_at),
        )

    def __repr__(self):
        return f"<AnalysisRecord id={self.id} project={self.project_id}>"


class QuestionRecord(db.Model):
    __tablename__ = "questions"

    id = db.Column(db.String(36), primary_key=True)
    project_id = _project_fk()
    analysis_id = db.Column(
        db.String(36), db.ForeignKey("requirement_analyses.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    category = db.Column(db.String(40), nullable=False)
    text = db.Column(db.Text, nullable=False)
    options_json = db.Column(db.Text, nullable=True)
    priority = db.Column(db.Integer, nullable=False, default=3)
    target_info = db.Column(db.String(200), default="")
    answer = db.Column(db.Text, default="")
    answer_status = db.Column(db.String(20), nullable=False, default="pending")
    answered_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=_now, index=True)
    updated_at = db.Column(db.DateTime, default=_now, onupdate=_now)

    __table_args__ = (
        db.CheckConstraint(
            "answer_status IN ('pending','answered','skipped')",
            name="ck_question_answer_status",
        ),
        db.CheckConstraint("priority BETWEEN 1 AND 5", name="ck_question_priority"),
    )

    @classmethod
    def from_entity(cls, entity: Question) -> "QuestionRecord":
        return cls(
            id=entity.id,
            project_id=entity.project_id,
            analysis_id=entity.analysis_id,
            category=entity.category,
            text=entity.text,
            options_json=dumps(list(entity.options)),
            priority=entity.priority,
            target_info=entity.target_info,
            answer=entity.answer,
            answer_status=entity.answer_status,
            answered_at=entity.answered_at,
            created_at=entity.created_at or _now(),
            updated_at=entity.updated_at or _now(),
        )

    def apply(self, entity: Question) -> None:
        """Copy the mutable answer fields from ``entity``."""
        self.answer = entity.answer
        self.answer_status = entity.answer_status
        self.answered_at = entity.answered_at
        self.updated_at = entity.updated_at or _now()

    def to_entity(self) -> Question:
        return Question(
            id=self.id,
            project_id=self.project_id,
            analysis_id=self.analysis_id,
            category=self.category,
            text=self.text,
            options=loads(self.options_json, []),
            priority=self.priority,
            target_info=self.target_info or "",
            answer=self.answer or "",
            answer_status=self.answer_status,
            answered_at=utc(self.answered_at),
            created_at=utc(self.created_at),
            updated_at=utc(self.updated_at),
        )

    def __repr__(self):
        return f"<QuestionRecord id={self.id} category={self.category} status={self.answer_status}>"


class DiagramRecord(db.Model):
    __tablename__ = "puml_diagrams"

    id = db.Column(db.String(36), primary_key=True)
    project_id = _project_fk()
    analysis_id = db.Column(db.String(36), nullable=True, index=True)
    diagram_type = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    content = db.Column(db.Text, nullable=False)
    description = db.Column(db.Text, default="")
    version = db.Column(db.Integer, nullable=False, default=1)
    stage = db.Column(db.Integer, nullable=False, default=1, index=True)
    job_id = db.Column(db.String(36), nullable=True, index=True)
    validated = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=_now, index=True)
    updated_at = db.Column(db.DateTime, default=_now, onupdate=_now)

    __table_args__ = (
        db.CheckConstraint(
            "diagram_type IN ('business_flow','architecture','sequence','class','data_model')",
            name="ck_diagram_type",
        ),
        db.CheckConstraint("stage IN (1,2,3)", name="ck_diagram_stage"),
    )

    @classmethod
    def from_entity(cls, entity: PUMLDiagram) -> "DiagramRecord":
        record = cls(id=entity.id, project_id=entity.project_id,
                     created_at=entity.created_at or _now())
        record.apply(entity)
        return record

    def apply(self, entity: PUMLDiagram) -> None:
        self.analysis_id = entity.analysis_id
        self.diagram_type = entity.diagram_type
        self.title = entity.title
        self.content = entity.content
        self.description = entity.description
        self.version = entity.version
        self.stage = entity.stage
        self.job_id = entity.job_id
        self.validated = entity.validated
        self.updated_at = entity.updated_at or _now()

    def to_entity(self) -> PUMLDiagram:
        return PUMLDiagram(
            id=self.id,
            project_id=self.project_id,
            analysis_id=self.analysis_id,
            diagram_type=self.diagram_type,
            title=self.title,
            content=self.content,
            description=self.description or "",
            version=self.version,
            stage=self.stage,
            job_id=self.job_id,
            validated=bool(self.validated),
            created_at=utc(self.created_at),
            updated_at=utc(self.updated_at),
        )

    def __repr__(self):
        return f"<DiagramRecord id={self.id} type={self.diagram_type} v{self.version}>"


class DocumentRecord(db.Model):
    __tablename__ = "development_documents"

    id = db.Column(db.String(36), primary_key=True)
    project_id = _project_fk()
    analysis_id = db.Column(db.String(36), nullable=True, index=True)
    document_type = db.Column(db.String(60), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    content = db.Column(db.Text, nullable=False)
    version = db.Column(db.Integer, nullable=False, default=1)
    stage = db.Column(db.Integer, nullable=False, default=1, index=True)
    job_id = db.Column(db.String(36), nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=_now, index=True)
    updated_at = db.Column(db.DateTime, default=_now, onupdate=_now)

    __table_args__ = (
        db.CheckConstraint("stage IN (1,2,3)", name="ck_document_stage"),
    )

    @classmethod
    def from_entity(cls, entity: DevelopmentDocument) -> "DocumentRecord":
        record = cls(id=entity.id, project_id=entity.project_id,
                     created_at=entity.created_at or _now())
        record.apply(entity)
        return record

    def apply(self, entity: DevelopmentDocument) -> None:
        self.analysis_id = entity.analysis_id
        self.document_type = entity.document_type
        self.title = entity.title
        self.content = entity.content
        self.version = entity.version
        self.stage = entity.stage
        self.job_id = entity.job_id
        self.updated_at = entity.updated_at or _now()

    def to_entity(self) -> DevelopmentDocument:
        return DevelopmentDocument(
            id=self.id,
            project_id=self.project_id,
            analysis_id=self.analysis_id,
            document_type=self.document_type,
            title=self.title,
            content=self.content,
            version=self.version,
            stage=self.stage,
            job_id=self.job_id,
            created_at=utc(self.created_at),
            updated_at=utc(self.updated_at),
        )

    def __repr__(self):
        return f"<DocumentRecord id={self.id} type={self.document_type} v{self.version}>"
