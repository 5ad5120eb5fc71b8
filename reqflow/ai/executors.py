"""
Reqflow
Job executors for the task engine.

Each executor takes a JobContext, drives the orchestrator, reports
progress as ``100 * done // total`` after every sub-step and returns the
result blob stored on the completed job.
"""

import logging

from reqflow.ai.entities import RequirementAnalysis
from reqflow.ai.task_runner import JobContext, TaskEngine

logger = logging.getLogger(__name__)

# (artifact kind, type) generated for each stage, in order.
STAGE_ARTIFACTS = {
    1: (
        ("document", "requirements"),
        ("diagram", "business_flow"),
        ("diagram", "architecture"),
        ("diagram", "sequence"),
    ),
    2: (
        ("document", "technical_spec"),
        ("document", "api_design"),
        ("document", "database_design"),
        ("document", "development_process"),
        ("document", "test_cases"),
        ("document", "deployment"),
    ),
    3: (
        ("document", "development_process"),
        ("document", "test_cases"),
        ("document", "deployment"),
        ("diagram", "class"),
        ("diagram", "data_model"),
    ),
}


def _generate(ctx: JobContext, analysis: RequirementAnalysis, stage: int, kind: str, artifact_type: str):
    orchestrator = ctx.orchestrator
    common = {"stage": stage, "job_id": ctx.job.id, "provider": ctx.provider, "token": ctx.token}
    if kind == "diagram":
        return orchestrator.generate_diagram(analysis, artifact_type, **common)
    if artifact_type == "requirements":
        return orchestrator.generate_document(analysis, **common)
    return orchestrator.generate_stage_document(analysis, artifact_type, **common)


def _run_stage(ctx: JobContext, analysis: RequirementAnalysis, stage: int,
               done: int, total: int) -> tuple[dict, int]:
    produced = {"stage": stage, "document_ids": [], "diagram_ids": []}
    for kind, artifact_type in STAGE_ARTIFACTS[stage]:
        artifact = _generate(ctx, analysis, stage, kind, artifact_type)
        produced[f"{kind}_ids"].append(artifact.id)
        done += 1
        ctx.report(done, total)
    return produced, done


def run_stage_documents(ctx: JobContext) -> dict:
    """Generate every artifact of one stage."""
    stage = ctx.params["stage"]
    analysis = ctx.analysis()
    produced, _ = _run_stage(ctx, analysis, stage, 0, len(STAGE_ARTIFACTS[stage]))
    return produced


def run_complete_project_documents(ctx: JobContext) -> dict:
    """Generate stages 1, 2 and 3 in sequence, progress weighted by artifact count."""
    analysis = ctx.analysis()
    total = sum(len(items) for items in STAGE_ARTIFACTS.values())
    done = 0
    stages = {}
    for stage in sorted(STAGE_ARTIFACTS):
        produced, done = _run_stage(ctx, analysis, stage, done, total)
        stages[str(stage)] = {"document_ids": produced["document_ids"], "diagram_ids": produced["diagram_ids"]}
        logger.info("Stage %d generated", stage, extra={"job_id": ctx.job.id, "stage": stage})
    return {"stages": stages}


def run_puml_generation(ctx: JobContext) -> dict:
    analysis = ctx.analysis()
    diagram = ctx.orchestrator.generate_diagram(
        analysis, ctx.params["diagram_type"],
        stage=ctx.params.get("stage"), job_id=ctx.job.id,
        provider=ctx.provider, token=ctx.token,
    )
    ctx.report(1, 1)
    return {"diagram_id": diagram.id}


def run_document_generation(ctx: JobContext) -> dict:
    analysis = ctx.analysis()
    document_type = ctx.params.get("document_type") or "requirements"
    stage = ctx.params.get("stage")
    common = {"stage": stage, "job_id": ctx.job.id, "provider": ctx.provider, "token": ctx.token}
    if document_type == "requirements":
        document = ctx.orchestrator.generate_document(analysis, **common)
    else:
        document = ctx.orchestrator.generate_stage_document(analysis, document_type, **common)
    ctx.report(1, 1)
    return {"document_id": document.id}


def run_requirement_analysis(ctx: JobContext) -> dict:
    """Analyse ``params["text"]``; with ``generate_questions`` also derive questions."""
    with_questions = bool(ctx.params.get("generate_questions"))
    total = 2 if with_questions else 1
    analysis = ctx.orchestrator.analyse_requirement(
        ctx.job.project_id, ctx.params["text"], provider=ctx.provider, token=ctx.token,
    )
    ctx.report(1, total)
    result = {"analysis_id": analysis.id}
    if with_questions:
        questions = ctx.orchestrator.generate_questions(analysis, provider=ctx.provider, token=ctx.token)
        ctx.report(2, total)
        result["question_ids"] = [q.id for q in questions]
    return result


DEFAULT_EXECUTORS = {
    "stage_documents": run_stage_documents,
    "complete_project_documents": run_complete_project_documents,
    "puml_generation": run_puml_generation,
    "document_generation": run_document_generation,
    "requirement_analysis": run_requirement_analysis,
}


def register_default_executors(engine: TaskEngine) -> None:
    for job_type, executor in DEFAULT_EXECUTORS.items():
        engine.register(job_type, executor)
