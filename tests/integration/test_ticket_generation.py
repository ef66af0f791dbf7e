"""End-to-end runs of the ticket generation pipeline."""

import pytest

from conftest import MISSING, READY, FakeGenerator, FakeStatusProvider
from ticketflow.channels import InMemoryStateChannel
from ticketflow.contracts import Finding, Question, StepStatus, WorkflowStatus
from ticketflow.generation import build_ticket_generation_steps
from ticketflow.persistence import SQLiteWorkflowRepository
from ticketflow.readiness import ReadinessGate
from ticketflow.workflow import WorkflowEngine


def _engine(generator, provider, fast_policy, tmp_path):
    return WorkflowEngine(
        build_ticket_generation_steps(generator),
        repository=SQLiteWorkflowRepository(tmp_path / "wf.db"),
        channel=InMemoryStateChannel(),
        gate=ReadinessGate(provider, fast_policy),
        retry_policy=fast_policy,
    )


@pytest.mark.asyncio
async def test_review_points_then_completion(fast_policy, tmp_path):
    generator = FakeGenerator(
        findings=[
            Finding(category="security", severity="critical", description="Secrets in export"),
            Finding(category="style", severity="info", description="Naming"),
        ],
        questions=[Question(id="q1", text="Which format?", default_answer="CSV")],
    )
    engine = _engine(generator, FakeStatusProvider(READY), fast_policy, tmp_path)

    wf = await engine.wait((await engine.start("TCK-1", resource_id="idx-1")).id)
    assert wf.status is WorkflowStatus.SUSPENDED_FINDINGS
    assert wf.current_step.id == "preflight_validation"
    assert len(wf.findings) == 2
    assert wf.context["type"] == "FEATURE"

    await engine.resume_from_findings(wf.id, "proceed")
    wf = await engine.wait(wf.id)
    assert wf.status is WorkflowStatus.SUSPENDED_QUESTIONS
    assert wf.current_step.id == "generate_questions"
    assert "src/export.py" in wf.context["repo_context"]

    await engine.submit_answers(wf.id, {"q1": "JSON"})
    wf = await engine.wait(wf.id)
    assert wf.status is WorkflowStatus.COMPLETE
    assert all(step.status is StepStatus.COMPLETE for step in wf.steps)

    content = generator.finalized["TCK-1"]
    assert content["answers"] == {"q1": "JSON"}
    assert content["assumptions"] == ["q1: JSON"]
    assert len(content["findings"]) == 2

    stored = await engine._repository.get_workflow(wf.id)
    assert stored.status is WorkflowStatus.COMPLETE
    assert stored.revision == wf.revision


@pytest.mark.asyncio
async def test_non_critical_findings_do_not_stop_the_run(fast_policy, tmp_path):
    generator = FakeGenerator(
        findings=[Finding(category="style", severity="warning", description="Long title")]
    )
    engine = _engine(generator, FakeStatusProvider(READY), fast_policy, tmp_path)
    wf = await engine.wait((await engine.start("TCK-1", resource_id="idx-1")).id)
    assert wf.status is WorkflowStatus.COMPLETE
    assert wf.findings == []
    assert generator.calls[-1] == "finalize"


@pytest.mark.asyncio
async def test_index_deleted_midflight_continues_without_repo_context(fast_policy, tmp_path):
    generator = FakeGenerator()
    provider = FakeStatusProvider(READY, MISSING)
    engine = _engine(generator, provider, fast_policy, tmp_path)

    wf = await engine.wait((await engine.start("TCK-1", resource_id="idx-1")).id)
    assert wf.status is WorkflowStatus.COMPLETE
    assert "validate" not in generator.calls
    assert "query_repository" not in generator.calls
    assert wf.context["repo_context"] == ""
    assert wf.context["repo_paths"] == []
    assert wf.get_step("gather_repo_context").detail.startswith("Skipped:")


@pytest.mark.asyncio
async def test_without_index_the_run_skips_repository_steps(fast_policy, tmp_path):
    generator = FakeGenerator()
    provider = FakeStatusProvider(READY)
    engine = _engine(generator, provider, fast_policy, tmp_path)

    wf = await engine.wait((await engine.start("TCK-1")).id)
    assert wf.status is WorkflowStatus.COMPLETE
    assert provider.calls == []
    assert "query_repository" not in generator.calls


@pytest.mark.asyncio
async def test_api_context_failure_degrades(fast_policy, tmp_path):
    generator = FakeGenerator(fail={"gather_api_context": TimeoutError("API catalog down")})
    engine = _engine(generator, FakeStatusProvider(READY), fast_policy, tmp_path)

    wf = await engine.wait((await engine.start("TCK-1", resource_id="idx-1")).id)
    assert wf.status is WorkflowStatus.COMPLETE
    assert generator.calls.count("gather_api_context") == 3
    assert wf.context["api_context"] == ""


@pytest.mark.asyncio
async def test_draft_timeouts_halt_for_retry(fast_policy, tmp_path):
    generator = FakeGenerator(fail={"generate_draft": TimeoutError("model timed out")})
    engine = _engine(generator, FakeStatusProvider(READY), fast_policy, tmp_path)

    wf = await engine.wait((await engine.start("TCK-1", resource_id="idx-1")).id)
    assert wf.is_halted
    assert wf.current_step.id == "draft_ticket"
    assert "retries exhausted" in wf.current_step.error

    del generator.fail["generate_draft"]
    await engine.retry_step(wf.id, "draft_ticket")
    wf = await engine.wait(wf.id)
    assert wf.status is WorkflowStatus.COMPLETE
    assert generator.calls.count("extract_intent") == 1
