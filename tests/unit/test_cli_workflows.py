import asyncio

from typer.testing import CliRunner

import ticketflow.cli as cli
from ticketflow.cli import app
from ticketflow.contracts import (
    Finding,
    ProgressEvent,
    StepStatus,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowStep,
)
from ticketflow.errors import StreamTimeoutError
from ticketflow.persistence import InMemoryWorkflowRepository


def _setup_repo(monkeypatch) -> InMemoryWorkflowRepository:
    repo = InMemoryWorkflowRepository()
    monkeypatch.setattr(cli, "get_repository", lambda config=None: repo)
    return repo


def test_workflows_command_lists_workflows(monkeypatch):
    repo = _setup_repo(monkeypatch)
    done = WorkflowInstance(subject_id="TCK-1", status=WorkflowStatus.COMPLETE)
    waiting = WorkflowInstance(subject_id="TCK-2", status=WorkflowStatus.SUSPENDED_QUESTIONS)
    asyncio.run(repo.save_workflow(done))
    asyncio.run(repo.save_workflow(waiting))

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0, result.stdout
    assert done.id in result.stdout
    assert waiting.id in result.stdout
    assert "suspended_questions" in result.stdout


def test_workflow_command_shows_details_and_missing(monkeypatch):
    repo = _setup_repo(monkeypatch)
    wf = WorkflowInstance(
        subject_id="TCK-1",
        status=WorkflowStatus.SUSPENDED_FINDINGS,
        steps=[
            WorkflowStep(id="extract_intent", title="Extract intent", status=StepStatus.COMPLETE),
            WorkflowStep(
                id="preflight_validation",
                title="Validate",
                status=StepStatus.COMPLETE,
                detail="1 finding(s), 1 critical",
            ),
        ],
        current_step_index=1,
        findings=[Finding(category="security", severity="critical", description="Token in logs")],
    )
    asyncio.run(repo.save_workflow(wf))

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "show", wf.id])
    assert result.exit_code == 0, result.stdout
    assert "suspended_findings" in result.stdout
    assert "> preflight_validation: complete (1 finding(s), 1 critical)" in result.stdout
    assert "[critical] security: Token in logs" in result.stdout

    result_missing = runner.invoke(app, ["workflow", "show", "missing-id"])
    assert result_missing.exit_code == 1
    assert "Workflow not found" in result_missing.stdout


class FakeStreamClient:
    final = ProgressEvent(type="complete", message="Processed 2 item(s): 1 completed, 1 failed")
    error = None

    def __init__(self, base_url, idle_timeout=60.0):
        self.base_url = base_url

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    async def enrich(self, item_ids, on_event=None):
        if self.error is not None:
            raise self.error
        on_event(
            ProgressEvent(
                type="progress",
                item_id=item_ids[0],
                item_title="Export CSV",
                agent_slot=1,
                status="completed",
                message="Generated 2 question(s)",
            )
        )
        on_event(self.final)
        return self.final


def test_bulk_enrich_prints_progress_and_errors(monkeypatch):
    FakeStreamClient.final = ProgressEvent(
        type="complete",
        message="Processed 2 item(s): 1 completed, 1 failed",
        metadata={"errors": {"T-2": "Ticket T-2 has no description"}},
    )
    FakeStreamClient.error = None
    monkeypatch.setattr(cli, "ProgressStreamClient", FakeStreamClient)

    result = CliRunner().invoke(app, ["bulk", "enrich", "T-1", "T-2"])
    assert "[agent 1] Export CSV: completed - Generated 2 question(s)" in result.stdout
    assert "Processed 2 item(s)" in result.stdout
    assert "T-2: Ticket T-2 has no description" in result.stdout
    assert result.exit_code == 1


def test_bulk_enrich_reports_timeout(monkeypatch):
    FakeStreamClient.error = StreamTimeoutError(60)
    monkeypatch.setattr(cli, "ProgressStreamClient", FakeStreamClient)

    result = CliRunner().invoke(app, ["bulk", "enrich", "T-1"])
    assert result.exit_code == 1
    assert "No response within 60 seconds" in result.stdout
    FakeStreamClient.error = None


def test_bulk_finalize_rejects_missing_file(tmp_path):
    result = CliRunner().invoke(app, ["bulk", "finalize", str(tmp_path / "answers.json")])
    assert result.exit_code == 1
    assert "does not exist" in result.stdout
