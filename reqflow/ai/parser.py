"""
Reqflow
Artifact Parser.

Single conversion point between free-form model output and domain
entities. The JSON object is taken from the first ``{`` to the last
``}`` of the raw text and parsed as-is; there is no repair step.
Unknown fields are ignored, optional fields default, and a missing
required field raises ``ArtifactParseError``. Ids and timestamps are
always freshly minted here.
"""

import json
import logging

from reqflow.ai.entities import (
    QUESTION_CATEGORIES,
    RELATION_KINDS,
    BusinessProcess,
    ChatReply,
    DataAttribute,
    DataEntity,
    DataRelation,
    DevelopmentDocument,
    PUMLDiagram,
    Question,
    RequirementAnalysis,
    new_id,
    utcnow,
)
from reqflow.core.exceptions import ArtifactParseError

logger = logging.getLogger(__name__)

_RELATION_ALIASES = {
    "1:1": "1-1", "one-to-one": "1-1", "one_to_one": "1-1",
    "1:n": "1-N", "1-n": "1-N", "one-to-many": "1-N", "one_to_many": "1-N",
    "n:n": "N-N", "n-n": "N-N", "m:n": "N-N", "m-n": "N-N",
    "many-to-many": "N-N", "many_to_many": "N-N",
}


def extract_json(raw: str) -> dict:
    """Return the JSON object embedded in ``raw``.

    Raises:
        ArtifactParseError: no ``{...}`` span, or the span is not valid JSON.
    """
    raw = raw or ""
    start = raw.find("{")
    end = raw.rfind("}")
    if start == -1 or end < start:
        raise ArtifactParseError("no JSON object found in model output", excerpt=raw)
    try:
        return json.loads(raw[start:end + 1])
    except json.JSONDecodeError as exc:
        raise ArtifactParseError(f"invalid JSON in model output: {exc.msg}", excerpt=raw) from exc


def _require(data: dict, key: str, raw: str, *aliases: str):
    """First present value among ``key`` and its aliases; an empty list counts as present."""
    for name in (key, *aliases):
        value = data.get(name)
        if value is not None and value != "":
            return value
    raise ArtifactParseError(f"missing required field: {key}", excerpt=raw)


def _as_list(value, field_name: str, raw: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ArtifactParseError(f"field {field_name} must be a list", excerpt=raw)
    return value


def _label(item, *keys: str) -> str:
    """A list item is either a plain string or an object carrying its label."""
    if isinstance(item, str):
        return item
    if isinstance(item, dict):
        for key in keys:
            if item.get(key):
                return str(item[key])
    return str(item)


def _labels(items: list, *keys: str) -> list[str]:
    return [_label(item, *keys) for item in items if item not in (None, "")]


# ── Requirement analysis ─────────────────────────────────────────────────────

def _parse_process(item, raw: str) -> BusinessProcess:
    if isinstance(item, str):
        return BusinessProcess(name=item)
    if not isinstance(item, dict):
        raise ArtifactParseError("business process must be an object", excerpt=raw)

    steps, step_actors = [], []
    for step in _as_list(item.get("steps"), "steps", raw):
        steps.append(_label(step, "step_name", "name", "description"))
        if isinstance(step, dict) and step.get("actor"):
            step_actors.append(str(step["actor"]))

    actors = []
    for actor in _labels(_as_list(item.get("actors"), "actors", raw), "name") + step_actors:
        if actor not in actors:
            actors.append(actor)

    return BusinessProcess(
        name=str(_require(item, "name", raw, "process_name")),
        description=str(item.get("description", "")),
        steps=steps,
        actors=actors,
    )


def _parse_relation(item, raw: str) -> DataRelation:
    if isinstance(item, str):
        return DataRelation(target=item)
    kind = str(item.get("kind") or item.get("type") or "1-N")
    kind = _RELATION_ALIASES.get(kind.lower(), kind)
    if kind not in RELATION_KINDS:
        logger.debug("Unknown relation kind %r, defaulting to 1-N", kind)
        kind = "1-N"
    return DataRelation(
        target=str(_require(item, "target", raw, "entity", "name")),
        kind=kind,
        description=str(item.get("description", "")),
    )


def _parse_entity(item, raw: str) -> DataEntity:
    if isinstance(item, str):
        return DataEntity(name=item)
    attributes = []
    for attr in _as_list(item.get("attributes") or item.get("fields"), "attributes", raw):
        if isinstance(attr, str):
            attributes.append(DataAttribute(name=attr))
            continue
        attributes.append(DataAttribute(
            name=str(_require(attr, "name", raw)),
            type=str(attr.get("type", "string")),
            required=bool(attr.get("required", False)),
            description=str(attr.get("description", "")),
        ))
    relations = [
        _parse_relation(rel, raw)
        for rel in _as_list(item.get("relations") or item.get("relationships"), "relations", raw)
    ]
    return DataEntity(
        name=str(_require(item, "name", raw, "entity_name")),
        description=str(item.get("description", "")),
        attributes=attributes,
        relations=relations,
    )


def parse_analysis(raw: str, *, project_id: str, requirement_text: str) -> RequirementAnalysis:
    """Map model output to a RequirementAnalysis.

    Accepts the flat schema (``core_functions: [str]``, ``roles: [str]``)
    and the rich one (``core_functions: [{name}]``, ``user_roles: [{name}]``,
    ``missing_info: [{description}]``).
    """
    data = extract_json(raw)

    core_functions = _as_list(_require(data, "core_functions", raw), "core_functions", raw)
    score = _require(data, "completion_score", raw, "completeness_score")
    try:
        score = float(score)
    except (TypeError, ValueError) as exc:
        raise ArtifactParseError("completion_score must be a number", excerpt=raw) from exc

    roles = _as_list(data.get("roles") or data.get("user_roles"), "roles", raw)
    now = utcnow()
    return RequirementAnalysis(
        id=new_id(),
        project_id=project_id,
        requirement_text=requirement_text,
        core_functions=_labels(core_functions, "name", "description"),
        roles=_labels(roles, "name", "role"),
        business_processes=[
            _parse_process(p, raw)
            for p in _as_list(data.get("business_processes"), "business_processes", raw)
        ],
        data_entities=[
            _parse_entity(e, raw)
            for e in _as_list(data.get("data_entities"), "data_entities", raw)
        ],
        missing_info=_labels(
            _as_list(data.get("missing_info"), "missing_info", raw), "description", "name",
        ),
        completeness_score=min(max(score, 0.0), 1.0),
        created_at=now,
        updated_at=now,
    )


# ── Questions ────────────────────────────────────────────────────────────────

def parse_questions(raw: str, *, project_id: str | None = None,
                    analysis_id: str | None = None) -> list[Question]:
    data = extract_json(raw)
    items = _as_list(_require(data, "questions", raw), "questions", raw)

    now = utcnow()
    questions = []
    for item in items:
        if not isinstance(item, dict):
            raise ArtifactParseError("question must be an object", excerpt=raw)
        category = str(_require(item, "category", raw))
        if category not in QUESTION_CATEGORIES:
            raise ArtifactParseError(f"unknown question category: {category}", excerpt=raw)
        try:
            priority = int(item.get("priority", 3))
        except (TypeError, ValueError):
            priority = 3
        questions.append(Question(
            id=new_id(),
            project_id=project_id,
            analysis_id=analysis_id,
            category=category,
            text=str(_require(item, "content", raw, "text", "question")),
            options=[str(o) for o in _as_list(item.get("options"), "options", raw)],
            priority=min(max(priority, 1), 5),
            target_info=str(item.get("target_info", "")),
            created_at=now,
            updated_at=now,
        ))
    return questions


# ── Diagrams & documents ─────────────────────────────────────────────────────

def parse_diagram(raw: str, *, project_id: str, diagram_type: str, stage: int = 1,
                  analysis_id: str | None = None, job_id: str | None = None) -> PUMLDiagram:
    data = extract_json(raw)
    now = utcnow()
    return PUMLDiagram(
        id=new_id(),
        project_id=project_id,
        analysis_id=analysis_id,
        diagram_type=diagram_type,
        title=str(data.get("title") or f"{diagram_type} diagram"),
        content=str(_require(data, "content", raw)),
        description=str(data.get("description", "")),
        version=1,
        stage=stage,
        job_id=job_id,
        validated=False,
        created_at=now,
        updated_at=now,
    )


def _parse_version(value) -> int:
    """``2`` → 2, ``"1.0"`` → 1; anything unreadable → 1."""
    if isinstance(value, bool):
        return 1
    if isinstance(value, int):
        return max(value, 1)
    try:
        return max(int(str(value).split(".")[0]), 1)
    except (TypeError, ValueError):
        return 1


def parse_document(raw: str, *, project_id: str, document_type: str, stage: int = 1,
                   analysis_id: str | None = None, job_id: str | None = None) -> DevelopmentDocument:
    data = extract_json(raw)
    now = utcnow()
    return DevelopmentDocument(
        id=new_id(),
        project_id=project_id,
        analysis_id=analysis_id,
        document_type=document_type,
        title=str(data.get("title") or document_type.replace("_", " ").title()),
        content=str(_require(data, "content", raw)),
        version=_parse_version(data.get("version", 1)),
        stage=stage,
        job_id=job_id,
        created_at=now,
        updated_at=now,
    )


# ── Chat ─────────────────────────────────────────────────────────────────────

def parse_chat(raw: str) -> ChatReply:
    data = extract_json(raw)
    updates = data.get("analysis_updates") or {}
    if not isinstance(updates, dict):
        raise ArtifactParseError("analysis_updates must be an object", excerpt=raw)
    return ChatReply(
        message=str(_require(data, "message", raw)),
        should_update_analysis=bool(data.get("should_update_analysis", False)),
        related_questions=_labels(
            _as_list(data.get("related_questions"), "related_questions", raw), "content", "text",
        ),
        suggestions=_labels(_as_list(data.get("suggestions"), "suggestions", raw), "content", "text"),
        analysis_updates=updates,
    )
