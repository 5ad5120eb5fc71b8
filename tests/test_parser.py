"""
Reqflow
Tests: Artifact Parser.

Covers:
    - JSON extraction (first ``{`` to last ``}``, no repair)
    - analysis in flat and rich schemas, score clamping
    - questions, diagrams, documents, chat replies
    - ArtifactParseError with a raw excerpt
"""

import json

import pytest

from reqflow.ai import parser
from reqflow.core.exceptions import ArtifactParseError


def _analysis_payload(**overrides):
    payload = {
        "core_functions": ["register", "log in", "book room"],
        "roles": ["guest", "admin"],
        "business_processes": [
            {"name": "Booking", "description": "Guest books a room",
             "steps": ["search", "select", "pay"], "actors": ["guest"]},
        ],
        "data_entities": [
            {"name": "Booking", "attributes": [{"name": "id", "type": "uuid", "required": True}],
             "relations": [{"target": "Room", "kind": "one-to-many"}]},
        ],
        "missing_info": ["payment provider"],
        "completion_score": 0.6,
    }
    payload.update(overrides)
    return payload


# ═════════════════════════════════════════════════════════════════════════════
# EXTRACTION
# ═════════════════════════════════════════════════════════════════════════════

class TestExtractJson:
    """Embedded-object extraction."""

    def test_prose_and_fences_around_object(self):
        raw = 'Sure! Here it is:\n```json\n{"a": {"b": 1}}\n```\nAnything else?'
        assert parser.extract_json(raw) == {"a": {"b": 1}}

    def test_no_braces(self):
        with pytest.raises(ArtifactParseError) as exc_info:
            parser.extract_json("I cannot help with that.")
        assert exc_info.value.excerpt == "I cannot help with that."

    def test_invalid_json_is_not_repaired(self):
        with pytest.raises(ArtifactParseError):
            parser.extract_json('{"a": 1,}')

    def test_excerpt_is_truncated(self):
        raw = "x" * 1000
        with pytest.raises(ArtifactParseError) as exc_info:
            parser.extract_json(raw)
        assert len(exc_info.value.excerpt) == 200

    def test_empty_input(self):
        with pytest.raises(ArtifactParseError):
            parser.extract_json("")


# ═════════════════════════════════════════════════════════════════════════════
# ANALYSIS
# ═════════════════════════════════════════════════════════════════════════════

class TestParseAnalysis:
    """RequirementAnalysis mapping."""

    def test_flat_schema(self):
        result = parser.parse_analysis(
            json.dumps(_analysis_payload()), project_id="p1", requirement_text="book rooms",
        )
        assert result.project_id == "p1"
        assert result.requirement_text == "book rooms"
        assert result.core_functions == ["register", "log in", "book room"]
        assert result.roles == ["guest", "admin"]
        assert result.business_processes[0].steps == ["search", "select", "pay"]
        assert result.data_entities[0].relations[0].kind == "1-N"
        assert result.completeness_score == 0.6
        assert result.id and result.created_at is not None

    def test_rich_schema(self):
        payload = {
            "core_functions": [{"name": "Register", "description": "Sign up"}],
            "user_roles": [{"name": "Guest"}],
            "business_processes": [{
                "process_name": "Checkout",
                "steps": [{"step_name": "Pay", "actor": "Guest"}, {"step_name": "Confirm", "actor": "Guest"}],
            }],
            "missing_info": [{"description": "refund policy"}],
            "completeness_score": 0.4,
        }
        result = parser.parse_analysis(json.dumps(payload), project_id="p1", requirement_text="t")
        assert result.core_functions == ["Register"]
        assert result.roles == ["Guest"]
        assert result.business_processes[0].name == "Checkout"
        assert result.business_processes[0].steps == ["Pay", "Confirm"]
        assert result.business_processes[0].actors == ["Guest"]
        assert result.missing_info == ["refund policy"]

    def test_score_is_clamped(self):
        high = parser.parse_analysis(
            json.dumps(_analysis_payload(completion_score=1.7)), project_id="p", requirement_text="t",
        )
        low = parser.parse_analysis(
            json.dumps(_analysis_payload(completion_score=-2)), project_id="p", requirement_text="t",
        )
        assert high.completeness_score == 1.0
        assert low.completeness_score == 0.0

    def test_missing_core_functions(self):
        payload = _analysis_payload()
        del payload["core_functions"]
        with pytest.raises(ArtifactParseError, match="core_functions"):
            parser.parse_analysis(json.dumps(payload), project_id="p", requirement_text="t")

    def test_missing_score(self):
        payload = _analysis_payload()
        del payload["completion_score"]
        with pytest.raises(ArtifactParseError, match="completion_score"):
            parser.parse_analysis(json.dumps(payload), project_id="p", requirement_text="t")

    def test_non_numeric_score(self):
        with pytest.raises(ArtifactParseError):
            parser.parse_analysis(
                json.dumps(_analysis_payload(completion_score="high")), project_id="p", requirement_text="t",
            )

    def test_unknown_fields_ignored(self):
        result = parser.parse_analysis(
            json.dumps(_analysis_payload(model_mood="cheerful")), project_id="p", requirement_text="t",
        )
        assert result.core_functions

    def test_optional_fields_default(self):
        payload = {"core_functions": ["a"], "completion_score": 0.1}
        result = parser.parse_analysis(json.dumps(payload), project_id="p", requirement_text="t")
        assert result.roles == []
        assert result.business_processes == []
        assert result.data_entities == []
        assert result.missing_info == []

    def test_empty_core_functions_accepted(self):
        result = parser.parse_analysis(
            json.dumps(_analysis_payload(core_functions=[])), project_id="p", requirement_text="t",
        )
        assert result.core_functions == []
        assert result.completeness_score == pytest.approx(0.6)


# ═════════════════════════════════════════════════════════════════════════════
# QUESTIONS / DIAGRAMS / DOCUMENTS / CHAT
# ═════════════════════════════════════════════════════════════════════════════

class TestParseQuestions:

    def test_questions(self):
        raw = json.dumps({"questions": [
            {"category": "business_rule", "content": "Max nights?", "priority": 9},
            {"category": "security_requirement", "text": "MFA?", "options": ["yes", "no"]},
        ]})
        questions = parser.parse_questions(raw, project_id="p", analysis_id="a")
        assert [q.text for q in questions] == ["Max nights?", "MFA?"]
        assert questions[0].priority == 5
        assert questions[1].priority == 3
        assert questions[1].options == ["yes", "no"]
        assert all(q.answer_status == "pending" for q in questions)
        assert all(q.analysis_id == "a" for q in questions)

    def test_unknown_category(self):
        raw = json.dumps({"questions": [{"category": "vibes", "content": "?"}]})
        with pytest.raises(ArtifactParseError, match="category"):
            parser.parse_questions(raw)

    def test_empty_question_list(self):
        assert parser.parse_questions(json.dumps({"questions": []}), project_id="p") == []

    def test_null_questions_is_missing(self):
        with pytest.raises(ArtifactParseError, match="questions"):
            parser.parse_questions('{"questions": null}')

    def test_missing_questions_key(self):
        with pytest.raises(ArtifactParseError, match="questions"):
            parser.parse_questions('{"items": []}')


class TestParseDiagram:

    def test_diagram(self):
        raw = 'Here:\n{"title": "Flow", "content": "@startuml\\nA -> B: x\\n@enduml"}'
        diagram = parser.parse_diagram(raw, project_id="p", diagram_type="sequence", stage=2, job_id="j")
        assert diagram.title == "Flow"
        assert diagram.content.startswith("@startuml")
        assert diagram.version == 1
        assert diagram.stage == 2
        assert diagram.job_id == "j"
        assert diagram.validated is False

    def test_missing_content(self):
        with pytest.raises(ArtifactParseError, match="content"):
            parser.parse_diagram('{"title": "x"}', project_id="p", diagram_type="class")


class TestParseDocument:

    def test_version_string(self):
        raw = json.dumps({"title": "API", "content": "# API", "version": "2.1"})
        doc = parser.parse_document(raw, project_id="p", document_type="api_design", stage=2)
        assert doc.version == 2
        assert doc.document_type == "api_design"

    def test_default_title(self):
        doc = parser.parse_document('{"content": "x"}', project_id="p", document_type="test_cases")
        assert doc.title == "Test Cases"
        assert doc.version == 1


class TestParseChat:

    def test_chat(self):
        raw = json.dumps({
            "message": "Consider refunds.",
            "should_update_analysis": True,
            "related_questions": [{"content": "Refund window?"}],
            "suggestions": ["Add refund flow"],
            "analysis_updates": {"missing_info": ["refunds"]},
        })
        reply = parser.parse_chat(raw)
        assert reply.message == "Consider refunds."
        assert reply.should_update_analysis is True
        assert reply.related_questions == ["Refund window?"]
        assert reply.analysis_updates == {"missing_info": ["refunds"]}

    def test_missing_message(self):
        with pytest.raises(ArtifactParseError):
            parser.parse_chat('{"suggestions": []}')
