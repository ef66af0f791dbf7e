"""Workflow state machine tests."""

import pydantic
import pytest

from conftest import INDEXING, MISSING, READY, FakeStatusProvider
from ticketflow.channels import InMemoryStateChannel
from ticketflow.contracts import (
    Finding,
    Question,
    StepStatus,
    WorkflowInstance,
    WorkflowStatus,
)
from ticketflow.errors import (
    ActiveRunExistsError,
    InvalidTransitionError,
    ResourceNotFoundError,
    ResourceNotReadyError,
    ValidationError,
    WorkflowNotFoundError,
)
from ticketflow.persistence import InMemoryWorkflowRepository
from ticketflow.readiness import ReadinessGate
from ticketflow.steps import StepResult, StepSpec
from ticketflow.workflow import WorkflowEngine


class RecordingChannel(InMemoryStateChannel):
    def __init__(self):
        super().__init__()
        self.published = []

    async def publish(self, snapshot):
        self.published.append(snapshot.snapshot())
        await super().publish(snapshot)


class Step:
    """Configurable step handler that counts its calls."""

    def __init__(self, result=None, errors=()):
        self.result = result
        self.errors = list(errors)
        self.calls = 0
        self.seen_answers = None

    async def __call__(self, ctx):
        self.calls += 1
        self.seen_answers = dict(ctx.answers)
        if self.errors:
            raise self.errors.pop(0)
        return self.result or StepResult(output={f"call_{self.calls}": True})


def _finding(severity="critical"):
    return Finding(category="security", severity=severity, description="Token stored in plain text")


def _questions():
    return [
        Question(id="q1", text="Which format?", default_answer="CSV"),
        Question(id="q2", text="Who can export?", default_answer="Admins"),
    ]


def _engine(steps, fast_policy, gate=None, channel=None):
    return WorkflowEngine(
        steps,
        repository=InMemoryWorkflowRepository(),
        channel=channel or RecordingChannel(),
        gate=gate,
        retry_policy=fast_policy,
    )


@pytest.mark.asyncio
async def test_runs_all_steps_to_completion(fast_policy):
    handlers = [Step(), Step(), Step()]
    engine = _engine([StepSpec(f"s{i}", f"Step {i}", h) for i, h in enumerate(handlers)], fast_policy)

    started = await engine.start("TCK-1")
    assert started.status is WorkflowStatus.RUNNING

    wf = await engine.wait(started.id)
    assert wf.status is WorkflowStatus.COMPLETE
    assert wf.current_step_index == 3
    assert all(step.status is StepStatus.COMPLETE for step in wf.steps)
    assert [h.calls for h in handlers] == [1, 1, 1]


@pytest.mark.asyncio
async def test_every_transition_is_published_in_order(fast_policy):
    channel = RecordingChannel()
    engine = _engine([StepSpec("a", "A", Step()), StepSpec("b", "B", Step())], fast_policy, channel=channel)
    wf = await engine.start("TCK-1")
    await engine.wait(wf.id)

    revisions = [s.revision for s in channel.published]
    assert revisions == sorted(revisions)
    assert len(set(revisions)) == len(revisions)
    assert channel.published[0].status is WorkflowStatus.IDLE
    assert channel.published[-1].status is WorkflowStatus.COMPLETE


@pytest.mark.asyncio
async def test_findings_suspend_and_proceed(fast_policy):
    after = Step()
    engine = _engine(
        [
            StepSpec("validate", "Validate", Step(StepResult(findings=[_finding()]))),
            StepSpec("after", "After", after),
        ],
        fast_policy,
    )
    wf = await engine.wait((await engine.start("TCK-1")).id)
    assert wf.status is WorkflowStatus.SUSPENDED_FINDINGS
    assert wf.current_step_index == 0
    assert len(wf.findings) == 1
    assert after.calls == 0

    resumed = await engine.resume_from_findings(wf.id, "proceed")
    assert resumed.findings == []
    assert resumed.current_step_index == 1

    wf = await engine.wait(wf.id)
    assert wf.status is WorkflowStatus.COMPLETE
    assert after.calls == 1


@pytest.mark.asyncio
async def test_second_proceed_is_rejected(fast_policy):
    engine = _engine(
        [
            StepSpec("validate", "Validate", Step(StepResult(findings=[_finding()]))),
            StepSpec("after", "After", Step()),
        ],
        fast_policy,
    )
    wf = await engine.wait((await engine.start("TCK-1")).id)
    await engine.resume_from_findings(wf.id, "proceed")
    with pytest.raises(InvalidTransitionError) as excinfo:
        await engine.resume_from_findings(wf.id, "proceed")
    assert "suspended_findings" not in excinfo.value.current


@pytest.mark.asyncio
async def test_edit_keeps_findings_for_another_round(fast_policy):
    engine = _engine([StepSpec("validate", "Validate", Step(StepResult(findings=[_finding()])))], fast_policy)
    wf = await engine.wait((await engine.start("TCK-1")).id)

    edited = await engine.resume_from_findings(wf.id, "edit")
    assert edited.status is WorkflowStatus.SUSPENDED_FINDINGS
    assert edited.findings == wf.findings
    assert edited.current_step_index == wf.current_step_index
    assert edited.revision > wf.revision


@pytest.mark.asyncio
async def test_cancel_at_findings_fails_with_reviewer_reason(fast_policy):
    engine = _engine([StepSpec("validate", "Validate", Step(StepResult(findings=[_finding()])))], fast_policy)
    wf = await engine.wait((await engine.start("TCK-1")).id)

    cancelled = await engine.resume_from_findings(wf.id, "cancel")
    assert cancelled.status is WorkflowStatus.FAILED
    assert cancelled.failure_reason == "cancelled by reviewer"

    with pytest.raises(InvalidTransitionError):
        await engine.resume_from_findings(wf.id, "proceed")


@pytest.mark.asyncio
async def test_unknown_findings_action(fast_policy):
    engine = _engine([StepSpec("a", "A", Step())], fast_policy)
    wf = await engine.start("TCK-1")
    with pytest.raises(ValidationError):
        await engine.resume_from_findings(wf.id, "approve")


@pytest.mark.asyncio
async def test_submit_answers_merges_defaults(fast_policy):
    refine = Step()
    engine = _engine(
        [
            StepSpec("questions", "Questions", Step(StepResult(questions=_questions()))),
            StepSpec("refine", "Refine", refine),
        ],
        fast_policy,
    )
    wf = await engine.wait((await engine.start("TCK-1")).id)
    assert wf.status is WorkflowStatus.SUSPENDED_QUESTIONS

    resumed = await engine.submit_answers(wf.id, {"q1": "JSON"})
    assert resumed.questions == []
    assert resumed.answers == {"q1": "JSON", "q2": "Admins"}

    wf = await engine.wait(wf.id)
    assert wf.status is WorkflowStatus.COMPLETE
    assert refine.seen_answers == {"q1": "JSON", "q2": "Admins"}


@pytest.mark.asyncio
async def test_submit_answers_rejects_unknown_question(fast_policy):
    engine = _engine([StepSpec("questions", "Questions", Step(StepResult(questions=_questions())))], fast_policy)
    wf = await engine.wait((await engine.start("TCK-1")).id)

    with pytest.raises(ValidationError):
        await engine.submit_answers(wf.id, {"q9": "?"})
    unchanged = await engine.get(wf.id)
    assert unchanged.status is WorkflowStatus.SUSPENDED_QUESTIONS
    assert unchanged.revision == wf.revision


@pytest.mark.asyncio
async def test_skip_questions_uses_defaults(fast_policy):
    engine = _engine(
        [
            StepSpec("questions", "Questions", Step(StepResult(questions=_questions()))),
            StepSpec("refine", "Refine", Step()),
        ],
        fast_policy,
    )
    wf = await engine.wait((await engine.start("TCK-1")).id)
    await engine.skip_questions(wf.id)
    wf = await engine.wait(wf.id)
    assert wf.status is WorkflowStatus.COMPLETE
    assert wf.answers == {"q1": "CSV", "q2": "Admins"}


@pytest.mark.asyncio
async def test_question_intents_rejected_outside_question_review(fast_policy):
    engine = _engine([StepSpec("validate", "Validate", Step(StepResult(findings=[_finding()])))], fast_policy)
    wf = await engine.wait((await engine.start("TCK-1")).id)
    with pytest.raises(InvalidTransitionError):
        await engine.submit_answers(wf.id, {})
    with pytest.raises(InvalidTransitionError):
        await engine.skip_questions(wf.id)


@pytest.mark.asyncio
async def test_one_active_run_per_subject(fast_policy):
    engine = _engine([StepSpec("validate", "Validate", Step(StepResult(findings=[_finding()])))], fast_policy)
    wf = await engine.wait((await engine.start("TCK-1")).id)

    with pytest.raises(ActiveRunExistsError):
        await engine.start("TCK-1")

    other = await engine.start("TCK-2")
    assert other.subject_id == "TCK-2"

    await engine.cancel(wf.id)
    again = await engine.start("TCK-1")
    assert again.id != wf.id


@pytest.mark.asyncio
async def test_exhausted_transient_failure_halts_and_retry_step_resumes(fast_policy):
    first, flaky, last = Step(), Step(errors=[TimeoutError("slow")] * 3), Step()
    engine = _engine(
        [StepSpec("first", "First", first), StepSpec("flaky", "Flaky", flaky), StepSpec("last", "Last", last)],
        fast_policy,
    )
    wf = await engine.wait((await engine.start("TCK-1")).id)
    assert wf.status is WorkflowStatus.RUNNING
    assert wf.is_halted
    assert wf.steps[1].status is StepStatus.FAILED
    assert "retries exhausted" in wf.steps[1].error
    assert wf.failure_reason is None
    assert flaky.calls == 3

    await engine.retry_step(wf.id, "flaky")
    wf = await engine.wait(wf.id)
    assert wf.status is WorkflowStatus.COMPLETE
    assert first.calls == 1
    assert flaky.calls == 4
    assert last.calls == 1
    assert "call_1" in wf.context


@pytest.mark.asyncio
async def test_permanent_failure_is_terminal(fast_policy):
    engine = _engine(
        [StepSpec("a", "Draft", Step(errors=[ValidationError("empty description")])), StepSpec("b", "B", Step())],
        fast_policy,
    )
    wf = await engine.wait((await engine.start("TCK-1")).id)
    assert wf.status is WorkflowStatus.FAILED
    assert wf.failure_reason == "Draft failed: empty description"

    with pytest.raises(InvalidTransitionError):
        await engine.retry_step(wf.id, "a")


@pytest.mark.asyncio
async def test_retry_step_rejected_unless_step_failed(fast_policy):
    engine = _engine(
        [StepSpec("a", "A", Step()), StepSpec("questions", "Questions", Step(StepResult(questions=_questions())))],
        fast_policy,
    )
    wf = await engine.wait((await engine.start("TCK-1")).id)
    with pytest.raises(InvalidTransitionError):
        await engine.retry_step(wf.id, "a")
    with pytest.raises(InvalidTransitionError):
        await engine.retry_step(wf.id, "questions")
    with pytest.raises(ValidationError):
        await engine.retry_step(wf.id, "nope")


@pytest.mark.asyncio
async def test_cancel_halted_run(fast_policy):
    engine = _engine([StepSpec("flaky", "Flaky", Step(errors=[TimeoutError()] * 3))], fast_policy)
    wf = await engine.wait((await engine.start("TCK-1")).id)
    cancelled = await engine.cancel(wf.id, "gave up")
    assert cancelled.status is WorkflowStatus.FAILED
    assert cancelled.failure_reason == "gave up"


@pytest.mark.asyncio
async def test_cancel_rejected_on_terminal_run(fast_policy):
    engine = _engine([StepSpec("a", "A", Step())], fast_policy)
    wf = await engine.wait((await engine.start("TCK-1")).id)
    with pytest.raises(InvalidTransitionError):
        await engine.cancel(wf.id)


@pytest.mark.asyncio
async def test_unknown_workflow(fast_policy):
    engine = _engine([StepSpec("a", "A", Step())], fast_policy)
    with pytest.raises(WorkflowNotFoundError):
        await engine.get("missing")
    with pytest.raises(WorkflowNotFoundError):
        await engine.skip_questions("missing")


@pytest.mark.asyncio
async def test_start_fails_when_resource_missing(fast_policy):
    step = Step()
    gate = ReadinessGate(FakeStatusProvider(MISSING), fast_policy)
    engine = _engine([StepSpec("a", "A", step)], fast_policy, gate=gate)

    with pytest.raises(ResourceNotFoundError) as excinfo:
        await engine.start("TCK-1", resource_id="idx-1")
    assert "not found" in excinfo.value.message
    assert "Settings" in excinfo.value.message
    assert step.calls == 0

    [wf] = await engine.list_workflows()
    assert wf.status is WorkflowStatus.FAILED
    assert all(s.status is StepStatus.PENDING for s in wf.steps)


@pytest.mark.asyncio
async def test_start_fails_when_resource_still_indexing(fast_policy):
    step = Step()
    gate = ReadinessGate(FakeStatusProvider(INDEXING), fast_policy)
    engine = _engine([StepSpec("a", "A", step)], fast_policy, gate=gate)

    with pytest.raises(ResourceNotReadyError) as excinfo:
        await engine.start("TCK-1", resource_id="idx-1")
    assert "wait" in excinfo.value.message and "try again" in excinfo.value.message
    assert step.calls == 0

    # The failed attempt does not count as an active run.
    with pytest.raises(ResourceNotReadyError):
        await engine.start("TCK-1", resource_id="idx-1")
    assert len(await engine.list_workflows()) == 2


@pytest.mark.asyncio
async def test_start_proceeds_when_resource_ready(fast_policy):
    after = Step()
    gate = ReadinessGate(FakeStatusProvider(READY), fast_policy)
    engine = _engine(
        [StepSpec("repo", "Repo", Step(), requires_resource=True), StepSpec("after", "After", after)],
        fast_policy,
        gate=gate,
    )
    wf = await engine.wait((await engine.start("TCK-1", resource_id="idx-1")).id)
    assert wf.status is WorkflowStatus.COMPLETE
    assert after.calls == 1


@pytest.mark.asyncio
async def test_resource_lost_midflight_degrades_and_completes(fast_policy):
    repo_step = Step()
    provider = FakeStatusProvider(READY, MISSING)
    gate = ReadinessGate(provider, fast_policy)
    engine = _engine(
        [
            StepSpec(
                "repo",
                "Repo",
                repo_step,
                requires_resource=True,
                degraded=lambda: StepResult(output={"repo_context": ""}),
            ),
            StepSpec("after", "After", Step()),
        ],
        fast_policy,
        gate=gate,
    )
    wf = await engine.wait((await engine.start("TCK-1", resource_id="idx-1")).id)
    assert wf.status is WorkflowStatus.COMPLETE
    assert repo_step.calls == 0
    assert wf.context["repo_context"] == ""
    assert wf.steps[0].detail.startswith("Skipped:")


def test_findings_and_questions_are_exclusive():
    with pytest.raises(pydantic.ValidationError):
        WorkflowInstance(subject_id="TCK-1", findings=[_finding()], questions=_questions())


def test_failure_reason_only_on_failed():
    with pytest.raises(pydantic.ValidationError):
        WorkflowInstance(subject_id="TCK-1", status=WorkflowStatus.RUNNING, failure_reason="boom")
