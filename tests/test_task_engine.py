"""
Reqflow
Tests: Async Task Engine.

Covers:
    - stage_documents job: lifecycle, progress sequence, stage roll-up
    - complete_project_documents: three stages, weighted progress
    - puml_generation / document_generation / requirement_analysis jobs
    - cancellation mid-run, provider failure, unsupported job type
    - submit validation
    - orphan reaper + CLI commands
"""

import threading
from dataclasses import replace
from datetime import timedelta
from unittest.mock import patch

import pytest

from reqflow.ai.entities import Job, new_id, utcnow
from reqflow.ai.executors import STAGE_ARTIFACTS
from reqflow.ai.providers import LocalStubClient
from reqflow.core.exceptions import InvalidInput, NotFound, ProviderHttpError


class GatedStub(LocalStubClient):
    """Blocks inside the ``block_on``-th completion until released."""

    def __init__(self, block_on):
        super().__init__(provider="gated")
        self.block_on = block_on
        self.entered = threading.Event()
        self.release = threading.Event()

    def complete(self, messages, *, operation="", token=None):
        if len(self.calls) + 1 == self.block_on:
            self.entered.set()
            self.release.wait(5)
        return super().complete(messages, operation=operation, token=token)


class FailingStub(LocalStubClient):
    """Raises ProviderHttpError on the ``fail_on``-th completion."""

    def __init__(self, fail_on):
        super().__init__(provider="failing")
        self.fail_on = fail_on

    def complete(self, messages, *, operation="", token=None):
        if len(self.calls) + 1 == self.fail_on:
            raise ProviderHttpError(503, "busy")
        return super().complete(messages, operation=operation, token=token)


@pytest.fixture()
def engine(services):
    return services.tasks


@pytest.fixture()
def extra_client(services):
    """Register a client for one test and remove it afterwards."""
    registered = []

    def _register(client):
        services.orchestrator.register(client)
        registered.append(client.provider_id())
        return client

    yield _register
    for provider_id in registered:
        services.orchestrator.unregister(provider_id)


def _progress_writes(spy):
    return [call.args[0].progress for call in spy.call_args_list]


# ═════════════════════════════════════════════════════════════════════════════
# STAGE JOBS
# ═════════════════════════════════════════════════════════════════════════════

class TestStageDocuments:
    """stage_documents end to end."""

    def test_stage_two(self, engine, services, analysis, project):
        repo = services.repository
        with patch.object(repo, "update_job", wraps=repo.update_job) as spy:
            job = engine.submit("user-1", project.id, "stage_documents", {"stage": 2})
            assert job.status == "pending"
            assert job.progress == 0
            finished = engine.join(job.id, timeout=10)

        assert finished.status == "completed"
        assert finished.progress == 100
        assert finished.started_at is not None
        assert finished.completed_at is not None
        assert _progress_writes(spy) == [0, 16, 33, 50, 66, 83, 100, 100]
        assert len(finished.result["document_ids"]) == 6
        assert finished.result["diagram_ids"] == []

        row = services.tracker.get(project.id, 2)
        assert row.status == "completed"
        assert row.completion_rate == 100
        assert row.document_count == 6
        assert row.diagram_count == 0
        assert row.last_job_id == job.id

        documents = repo.list_documents(project.id, stage=2)
        assert sorted(d.document_type for d in documents) == sorted(
            artifact_type for _, artifact_type in STAGE_ARTIFACTS[2]
        )
        assert all(d.job_id == job.id for d in documents)

    def test_stage_one_mixes_documents_and_diagrams(self, engine, services, analysis, project):
        job = engine.submit("user-1", project.id, "stage_documents", {"stage": 1})
        finished = engine.join(job.id, timeout=10)

        assert finished.status == "completed"
        row = services.tracker.get(project.id, 1)
        assert (row.document_count, row.diagram_count) == (1, 3)

    def test_stage_marked_in_progress_on_submit(self, engine, services, analysis, project, extra_client):
        gated = extra_client(GatedStub(block_on=1))
        job = engine.submit("user-1", project.id, "stage_documents", {"stage": 3, "provider": "gated"})
        try:
            assert gated.entered.wait(5)
            assert engine.is_running(job.id)
            assert services.tracker.get(project.id, 3).status == "in_progress"
        finally:
            gated.release.set()
        engine.join(job.id, timeout=10)
        assert services.tracker.get(project.id, 3).status == "completed"

    def test_stage_row_follows_job_progress(self, engine, services, analysis, project, extra_client):
        gated = extra_client(GatedStub(block_on=2))
        job = engine.submit("user-1", project.id, "stage_documents", {"stage": 3, "provider": "gated"})
        try:
            assert gated.entered.wait(5)
            row = services.tracker.get(project.id, 3)
            assert row.status == "in_progress"
            assert row.completion_rate == 100 * 1 // len(STAGE_ARTIFACTS[3])
            assert engine.get(job.id).progress == row.completion_rate
        finally:
            gated.release.set()
        engine.join(job.id, timeout=10)
        assert services.tracker.get(project.id, 3).completion_rate == 100

    def test_stage_overview_always_three_rows(self, engine, analysis, project):
        job = engine.submit("user-1", project.id, "stage_documents", {"stage": 2})
        engine.join(job.id, timeout=10)

        overview = engine.stage_progress(project.id)

        assert [r.stage for r in overview.stages] == [1, 2, 3]
        assert [r.status for r in overview.stages] == ["not_started", "completed", "not_started"]


class TestCompleteProject:

    def test_all_stages(self, engine, services, analysis, project):
        repo = services.repository
        with patch.object(repo, "update_job", wraps=repo.update_job) as spy:
            job = engine.submit("user-1", project.id, "complete_project_documents")
            finished = engine.join(job.id, timeout=20)

        assert finished.status == "completed"
        assert sorted(finished.result["stages"]) == ["1", "2", "3"]
        writes = _progress_writes(spy)
        assert writes == sorted(writes)
        assert writes[-1] == 100

        rows = services.tracker.stages(project.id)
        assert all(r.status == "completed" for r in rows)
        assert [(r.document_count, r.diagram_count) for r in rows] == [(1, 3), (6, 0), (3, 2)]
        assert services.tracker.overview(project.id).status == "completed"


class TestSingleArtifactJobs:

    def test_puml_generation(self, engine, services, analysis, project):
        job = engine.submit("user-1", project.id, "puml_generation", {"diagram_type": "class"})
        finished = engine.join(job.id, timeout=10)

        assert finished.status == "completed"
        diagram = services.repository.get_diagram(finished.result["diagram_id"])
        assert diagram.diagram_type == "class"
        assert diagram.job_id == job.id

    def test_document_generation(self, engine, services, analysis, project):
        job = engine.submit("user-1", project.id, "document_generation",
                            {"document_type": "deployment", "stage": 3})
        finished = engine.join(job.id, timeout=10)

        document = services.repository.get_document(finished.result["document_id"])
        assert document.document_type == "deployment"
        assert document.stage == 3

    def test_requirement_analysis_with_questions(self, engine, services, project):
        job = engine.submit("user-1", project.id, "requirement_analysis",
                            {"text": "Admins approve bookings", "generate_questions": True})
        finished = engine.join(job.id, timeout=10)

        assert finished.status == "completed"
        analysis = services.repository.get_analysis(finished.result["analysis_id"])
        assert analysis.project_id == project.id
        assert len(finished.result["question_ids"]) == 2

    def test_explicit_analysis_id(self, engine, services, analysis, project):
        newer = services.orchestrator.analyse_requirement(project.id, "Admins export reports")
        job = engine.submit("user-1", project.id, "puml_generation",
                            {"diagram_type": "sequence", "analysis_id": analysis.id})
        finished = engine.join(job.id, timeout=10)

        diagram = services.repository.get_diagram(finished.result["diagram_id"])
        assert diagram.analysis_id == analysis.id != newer.id


# ═════════════════════════════════════════════════════════════════════════════
# FAILURE & CANCELLATION
# ═════════════════════════════════════════════════════════════════════════════

class TestFailures:

    def test_cancel_mid_run_freezes_progress(self, engine, services, analysis, project, extra_client):
        gated = extra_client(GatedStub(block_on=2))
        job = engine.submit("user-1", project.id, "stage_documents", {"stage": 2, "provider": "gated"})
        try:
            assert gated.entered.wait(5)
            engine.cancel(job.id)
        finally:
            gated.release.set()
        finished = engine.join(job.id, timeout=10)

        assert finished.status == "failed"
        assert finished.error_message == "cancelled"
        assert finished.progress == 16
        assert services.tracker.get(project.id, 2).status == "failed"
        assert len(services.repository.list_documents(project.id, stage=2)) == 1

    def test_provider_error_fails_job(self, engine, services, analysis, project, extra_client):
        extra_client(FailingStub(fail_on=3))
        job = engine.submit("user-1", project.id, "stage_documents", {"stage": 2, "provider": "failing"})
        finished = engine.join(job.id, timeout=10)

        assert finished.status == "failed"
        assert finished.progress == 0
        assert finished.error_message == "provider returned HTTP 503: busy"
        row = services.tracker.get(project.id, 2)
        assert row.status == "failed"
        assert row.last_job_id == job.id

    def test_unsupported_job_type(self, engine, project):
        job = engine.submit("user-1", project.id, "video_generation")
        finished = engine.join(job.id, timeout=10)

        assert finished.status == "failed"
        assert finished.error_message == "unsupported job type: video_generation"

    def test_missing_analysis_fails_job(self, engine, project):
        job = engine.submit("user-1", project.id, "stage_documents", {"stage": 1})
        finished = engine.join(job.id, timeout=10)

        assert finished.status == "failed"
        assert "not found" in finished.error_message

    def test_cancel_finished_job_is_noop(self, engine, analysis, project):
        job = engine.submit("user-1", project.id, "puml_generation", {"diagram_type": "class"})
        engine.join(job.id, timeout=10)
        assert engine.cancel(job.id).status == "completed"

    def test_cancel_job_without_worker(self, engine, services, project):
        job = services.repository.create_job(Job(
            id=new_id(), user_id="user-1", project_id=project.id,
            job_type="stage_documents", metadata={"stage": 1}, created_at=utcnow(),
        ))
        cancelled = engine.cancel(job.id)
        assert cancelled.status == "failed"
        assert cancelled.error_message == "cancelled"
        assert services.tracker.get(project.id, 1).status == "failed"


class TestSubmitValidation:

    def test_stage_required(self, engine, project):
        with pytest.raises(InvalidInput):
            engine.submit("user-1", project.id, "stage_documents")
        with pytest.raises(InvalidInput):
            engine.submit("user-1", project.id, "stage_documents", {"stage": 4})

    def test_diagram_type_required(self, engine, project):
        with pytest.raises(InvalidInput):
            engine.submit("user-1", project.id, "puml_generation", {"diagram_type": "gantt"})

    def test_unknown_project(self, engine):
        with pytest.raises(NotFound):
            engine.submit("user-1", "missing", "stage_documents", {"stage": 1})

    def test_empty_user(self, engine, project):
        with pytest.raises(InvalidInput):
            engine.submit("", project.id, "stage_documents", {"stage": 1})

    def test_list_jobs(self, engine, analysis, project):
        job = engine.submit("user-1", project.id, "puml_generation", {"diagram_type": "class"})
        engine.join(job.id, timeout=10)
        assert [j.id for j in engine.list_jobs(project.id)] == [job.id]
        assert engine.list_jobs(project.id, status="failed") == []


# ═════════════════════════════════════════════════════════════════════════════
# ORPHANS & CLI
# ═════════════════════════════════════════════════════════════════════════════

def _stale_job(repo, project_id, status="pending", hours=2):
    job = repo.create_job(Job(
        id=new_id(), user_id="user-1", project_id=project_id, job_type="stage_documents",
        metadata={"stage": 1}, created_at=utcnow() - timedelta(hours=hours),
    ))
    if status == "running":
        job = repo.update_job(replace(job, status="running", started_at=utcnow()))
    return job


class TestReaper:

    def test_reap_orphans(self, engine, services, project):
        pending = _stale_job(services.repository, project.id)
        running = _stale_job(services.repository, project.id, status="running")
        recent = _stale_job(services.repository, project.id, hours=0)

        reaped = engine.reap_orphans(timedelta(hours=1))

        assert sorted(j.id for j in reaped) == sorted([pending.id, running.id])
        for job in reaped:
            assert job.status == "failed"
            assert job.error_message == "orphaned by restart"
        assert engine.get(recent.id).status == "pending"

    def test_cli_reap_jobs(self, app, services, project):
        _stale_job(services.repository, project.id)
        result = app.test_cli_runner().invoke(args=["reap-jobs", "--older-than", "60"])
        assert result.exit_code == 0
        assert "Reaped 1 orphaned jobs." in result.output

    def test_cli_ai_providers(self, app):
        result = app.test_cli_runner().invoke(args=["ai-providers"])
        assert result.exit_code == 0
        assert "* local" in result.output
