"""
Reqflow
Tests: SQLAlchemy persistence port.

Covers:
    - entity ↔ record round-trips (analysis, questions, diagrams, documents, jobs)
    - NotFound / StorageError mapping
    - listing filters and ordering
    - project delete cascades
    - stale job query
    - chat sessions: sequence numbering, recent-turn window, status
"""

from dataclasses import replace
from datetime import timedelta

import pytest

from reqflow.ai.entities import (
    BusinessProcess,
    ChatMessage,
    ChatSession,
    DataAttribute,
    DataEntity,
    DataRelation,
    DevelopmentDocument,
    Job,
    PUMLDiagram,
    Question,
    RequirementAnalysis,
    new_id,
    utcnow,
)
from reqflow.core.cancellation import CancellationToken
from reqflow.core.exceptions import Cancelled, NotFound, StorageError


def _analysis(project_id, **overrides):
    fields = dict(
        id=new_id(),
        project_id=project_id,
        requirement_text="Guests book rooms",
        core_functions=["search", "book"],
        roles=["guest"],
        business_processes=[BusinessProcess(name="Booking", steps=["search", "pay"], actors=["guest"])],
        data_entities=[DataEntity(
            name="Booking",
            attributes=[DataAttribute(name="id", type="uuid", required=True)],
            relations=[DataRelation(target="Room", kind="N-N")],
        )],
        missing_info=["refunds"],
        completeness_score=0.7,
        created_at=utcnow(),
        updated_at=utcnow(),
    )
    fields.update(overrides)
    return RequirementAnalysis(**fields)


def _job(project_id, **overrides):
    fields = dict(id=new_id(), user_id="user-1", project_id=project_id,
                  job_type="stage_documents", name="Stage 2", metadata={"stage": 2},
                  created_at=utcnow())
    fields.update(overrides)
    return Job(**fields)


# ═════════════════════════════════════════════════════════════════════════════
# PROJECTS & ANALYSES
# ═════════════════════════════════════════════════════════════════════════════

class TestProjectsAndAnalyses:

    def test_project_round_trip(self, repo, project):
        loaded = repo.get_project(project.id)
        assert loaded.name == "Booking portal"
        assert loaded.owner_id == "user-1"

    def test_missing_project(self, repo):
        with pytest.raises(NotFound) as exc_info:
            repo.get_project("nope")
        assert str(exc_info.value) == "Project id=nope not found"

    def test_analysis_round_trip(self, repo, project):
        original = _analysis(project.id)
        repo.create_analysis(original)

        loaded = repo.get_analysis(original.id)

        assert loaded.content_fields() == original.content_fields()
        assert loaded.data_entities[0].relations[0].kind == "N-N"
        assert loaded.created_at.tzinfo is not None

    def test_analysis_requires_project(self, repo):
        with pytest.raises(NotFound):
            repo.create_analysis(_analysis("missing-project"))

    def test_latest_analysis(self, repo, project):
        older = _analysis(project.id, created_at=utcnow() - timedelta(minutes=5))
        newer = _analysis(project.id)
        repo.create_analysis(older)
        repo.create_analysis(newer)

        assert repo.latest_analysis(project.id).id == newer.id
        assert [a.id for a in repo.list_analyses(project.id)] == [newer.id, older.id]

    def test_latest_analysis_none(self, repo, project):
        with pytest.raises(NotFound):
            repo.latest_analysis(project.id)

    def test_update_score(self, repo, project):
        analysis = repo.create_analysis(_analysis(project.id))
        assert repo.update_analysis_score(analysis.id, 0.9).completeness_score == 0.9

    def test_score_out_of_range_is_storage_error(self, repo, project):
        analysis = repo.create_analysis(_analysis(project.id))
        with pytest.raises(StorageError):
            repo.update_analysis_score(analysis.id, 1.5)

    def test_cancelled_token(self, repo, project):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(Cancelled):
            repo.get_project(project.id, token=token)


# ═════════════════════════════════════════════════════════════════════════════
# ARTIFACTS
# ═════════════════════════════════════════════════════════════════════════════

class TestArtifacts:

    def test_questions(self, repo, project):
        analysis = repo.create_analysis(_analysis(project.id))
        questions = repo.create_questions([
            Question(id=new_id(), category="business_rule", text="Max nights?",
                     project_id=project.id, analysis_id=analysis.id, options=["7", "14"]),
        ])
        answered = replace(questions[0], answer="14", answer_status="answered", answered_at=utcnow())
        repo.update_question(answered)

        loaded = repo.get_question(questions[0].id)
        assert loaded.answer == "14"
        assert loaded.answer_status == "answered"
        assert loaded.options == ["7", "14"]
        assert len(repo.list_questions_by_analysis(analysis.id)) == 1

    def test_diagrams_by_stage(self, repo, project):
        for stage in (1, 1, 3):
            repo.create_diagram(PUMLDiagram(
                id=new_id(), project_id=project.id, diagram_type="class",
                title="Classes", content="@startuml\n@enduml", stage=stage,
            ))
        assert repo.count_diagrams(project.id, 1) == 2
        assert repo.count_diagrams(project.id, 2) == 0
        assert len(repo.list_diagrams(project.id, stage=3)) == 1
        assert len(repo.list_diagrams(project.id)) == 3

    def test_document_update(self, repo, project):
        document = repo.create_document(DevelopmentDocument(
            id=new_id(), project_id=project.id, document_type="api_design",
            title="API", content="# API", stage=2,
        ))
        repo.update_document(replace(document, content="# API v2", version=2))

        loaded = repo.get_document(document.id)
        assert loaded.content == "# API v2"
        assert loaded.version == 2
        assert repo.count_documents(project.id, 2) == 1


# ═════════════════════════════════════════════════════════════════════════════
# JOBS & CASCADE
# ═════════════════════════════════════════════════════════════════════════════

class TestJobs:

    def test_job_round_trip(self, repo, project):
        job = repo.create_job(_job(project.id))
        repo.update_job(replace(job, status="running", progress=33, started_at=utcnow()))

        loaded = repo.get_job(job.id)
        assert loaded.status == "running"
        assert loaded.progress == 33
        assert loaded.metadata == {"stage": 2}

    def test_invalid_status_rejected(self, repo, project):
        job = repo.create_job(_job(project.id))
        with pytest.raises(StorageError):
            repo.update_job(replace(job, status="paused"))

    def test_list_filters(self, repo, project):
        repo.create_job(_job(project.id))
        repo.create_job(_job(project.id, job_type="puml_generation", user_id="user-2"))

        assert len(repo.list_jobs(project.id)) == 2
        assert len(repo.list_jobs(project.id, "puml_generation")) == 1
        assert len(repo.list_jobs(user_id="user-2")) == 1
        assert repo.list_jobs(status="completed") == []

    def test_stale_jobs(self, repo, project):
        old = repo.create_job(_job(project.id, created_at=utcnow() - timedelta(hours=3)))
        repo.create_job(_job(project.id))

        stale = repo.list_stale_jobs(utcnow() - timedelta(hours=1))
        assert [j.id for j in stale] == [old.id]


class TestChatSessions:

    def _session(self, repo, project_id, **overrides):
        fields = dict(id=new_id(), project_id=project_id, user_id="user-1", title="Scope")
        fields.update(overrides)
        return repo.create_chat_session(ChatSession(**fields))

    def _turn(self, role, content):
        return ChatMessage(id=new_id(), session_id="", role=role, content=content)

    def test_messages_are_numbered_across_appends(self, repo, project):
        chat = self._session(repo, project.id)

        repo.append_chat_messages(chat.id, [self._turn("user", "hi"), self._turn("assistant", "hello")])
        stored = repo.append_chat_messages(chat.id, [self._turn("user", "refunds?")])

        assert stored[0].seq == 3
        assert stored[0].session_id == chat.id
        messages = repo.list_chat_messages(chat.id)
        assert [(m.seq, m.role, m.content) for m in messages] == [
            (1, "user", "hi"), (2, "assistant", "hello"), (3, "user", "refunds?"),
        ]
        assert repo.get_chat_session(chat.id).message_count == 3

    def test_limit_keeps_most_recent_in_order(self, repo, project):
        chat = self._session(repo, project.id)
        repo.append_chat_messages(chat.id, [self._turn("user", str(i)) for i in range(5)])

        assert [m.content for m in repo.list_chat_messages(chat.id, limit=2)] == ["3", "4"]

    def test_metadata_round_trip(self, repo, project):
        chat = self._session(repo, project.id)
        turn = replace(self._turn("assistant", "ok"), provider="local",
                       metadata={"suggestions": ["Add refunds"]})

        stored, = repo.append_chat_messages(chat.id, [turn])

        assert stored.provider == "local"
        assert repo.list_chat_messages(chat.id)[0].metadata == {"suggestions": ["Add refunds"]}

    def test_list_by_project_and_user(self, repo, project):
        mine = self._session(repo, project.id)
        self._session(repo, project.id, user_id="user-2")

        assert len(repo.list_chat_sessions(project.id)) == 2
        assert [s.id for s in repo.list_chat_sessions(project.id, user_id="user-1")] == [mine.id]

    def test_status_change(self, repo, project):
        chat = self._session(repo, project.id)
        closed = repo.set_chat_session_status(chat.id, "closed")
        assert closed.status == "closed"
        assert closed.active is False

    def test_unknown_session(self, repo):
        with pytest.raises(NotFound):
            repo.get_chat_session("missing")
        with pytest.raises(NotFound):
            repo.list_chat_messages("missing")
        with pytest.raises(NotFound):
            repo.append_chat_messages("missing", [self._turn("user", "x")])

    def test_session_requires_project(self, repo):
        with pytest.raises(NotFound):
            self._session(repo, "no-such-project")


class TestCascade:

    def test_delete_project_removes_everything(self, repo, project):
        analysis = repo.create_analysis(_analysis(project.id))
        diagram = repo.create_diagram(PUMLDiagram(
            id=new_id(), project_id=project.id, diagram_type="sequence",
            title="Seq", content="@startuml\n@enduml", analysis_id=analysis.id,
        ))
        job = repo.create_job(_job(project.id))
        chat = repo.create_chat_session(ChatSession(id=new_id(), project_id=project.id, user_id="user-1"))
        repo.append_chat_messages(chat.id, [ChatMessage(id=new_id(), session_id=chat.id, role="user", content="hi")])

        repo.delete_project(project.id)

        with pytest.raises(NotFound):
            repo.get_analysis(analysis.id)
        with pytest.raises(NotFound):
            repo.get_diagram(diagram.id)
        with pytest.raises(NotFound):
            repo.get_job(job.id)
        with pytest.raises(NotFound):
            repo.get_chat_session(chat.id)
