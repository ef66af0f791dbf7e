"""Suspendable workflow engine.

The engine owns every :class:`~ticketflow.contracts.WorkflowInstance` it
drives. Callers never mutate an instance; they submit intents (resume,
answer, skip, retry, cancel) that the engine validates against the current
state and turns into transitions. After every transition the instance is
saved to the repository and a full snapshot is published on the state
channel.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Literal, Mapping, Optional, Sequence

from .channels import BaseStateChannel, InMemoryStateChannel
from .constants import CANCELLED_BY_REVIEWER
from .contracts import StepStatus, WorkflowInstance, WorkflowStatus, WorkflowStep
from .errors import (
    ActiveRunExistsError,
    InvalidTransitionError,
    ValidationError,
    WorkflowNotFoundError,
)
from .execute import StepExecutor, StepOutcome
from .persistence import WorkflowRepository, get_repository
from .readiness import ReadinessGate
from .steps import StepContext, StepSpec
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

FindingsAction = Literal["proceed", "edit", "cancel"]
_FINDINGS_ACTIONS = ("proceed", "edit", "cancel")


class WorkflowEngine:
    """Sequences a fixed list of steps and parks at review points."""

    def __init__(
        self,
        steps: Sequence[StepSpec],
        repository: WorkflowRepository | None = None,
        channel: BaseStateChannel | None = None,
        gate: ReadinessGate | None = None,
        retry_policy: RetryPolicy | None = None,
        executor: StepExecutor | None = None,
    ) -> None:
        if not steps:
            raise ValueError("A workflow needs at least one step")
        ids = [spec.id for spec in steps]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate step ids in workflow definition: {ids}")

        self._steps: List[StepSpec] = list(steps)
        self._repository = repository or get_repository()
        self._channel = channel or InMemoryStateChannel()
        self._gate = gate
        self._executor = executor or StepExecutor(gate=gate, retry_policy=retry_policy)
        self._workflows: Dict[str, WorkflowInstance] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._subject_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._drivers: Dict[str, asyncio.Task] = {}

    @property
    def channel(self) -> BaseStateChannel:
        return self._channel

    @property
    def step_specs(self) -> List[StepSpec]:
        return list(self._steps)

    # ------------------------------------------------------------------
    # Queries
    async def get(self, workflow_id: str) -> WorkflowInstance:
        """Return a snapshot of the workflow."""
        wf = await self._owned(workflow_id)
        return wf.snapshot()

    async def list_workflows(self) -> list[WorkflowInstance]:
        return await self._repository.list_workflows()

    async def wait(self, workflow_id: str) -> WorkflowInstance:
        """Wait until the workflow stops moving (suspended, halted or terminal)."""
        task = self._drivers.get(workflow_id)
        if task is not None:
            await asyncio.shield(task)
        return await self.get(workflow_id)

    # ------------------------------------------------------------------
    # Intents
    async def start(
        self, subject_id: str, resource_id: Optional[str] = None
    ) -> WorkflowInstance:
        """Create a run for ``subject_id`` and begin executing step 0.

        Raises:
            ValidationError: ``subject_id`` is blank.
            ActiveRunExistsError: The subject already has a running or
                suspended workflow.
            ResourceNotFoundError, ResourceNotReadyError: The preflight
                readiness check failed; the run is recorded as failed.
        """
        if not subject_id or not subject_id.strip():
            raise ValidationError("subject_id is required")

        async with self._subject_locks[subject_id]:
            active = await self._find_active(subject_id)
            if active is not None:
                raise ActiveRunExistsError(subject_id, active.status.value)

            wf = WorkflowInstance(
                subject_id=subject_id,
                resource_id=resource_id,
                steps=[WorkflowStep(id=spec.id, title=spec.title) for spec in self._steps],
            )
            self._workflows[wf.id] = wf

            async with self._locks[wf.id]:
                await self._commit(wf)

                if resource_id and self._gate is not None:
                    readiness = await self._gate.check_preflight(resource_id)
                    if readiness.fatal:
                        wf.status = WorkflowStatus.FAILED
                        wf.failure_reason = readiness.message
                        await self._commit(wf)
                        logger.error(
                            f"Workflow {wf.id} for subject {subject_id} not started: "
                            f"{readiness.message}"
                        )
                        readiness.raise_if_fatal()
                elif resource_id:
                    logger.warning(
                        f"No readiness gate configured; skipping preflight for {resource_id}"
                    )

                wf.status = WorkflowStatus.RUNNING
                await self._commit(wf)
                logger.info(f"Workflow {wf.id} started for subject {subject_id}")
                snapshot = wf.snapshot()

        self._launch(wf.id)
        return snapshot

    async def resume_from_findings(
        self, workflow_id: str, action: FindingsAction
    ) -> WorkflowInstance:
        """Act on the findings a reviewer has looked at."""
        if action not in _FINDINGS_ACTIONS:
            raise ValidationError(
                f"Unknown findings action {action!r}; expected one of {', '.join(_FINDINGS_ACTIONS)}"
            )

        wf = await self._owned(workflow_id)
        async with self._locks[workflow_id]:
            if wf.status is not WorkflowStatus.SUSPENDED_FINDINGS:
                raise InvalidTransitionError(
                    self._describe(wf), f"resume from findings ({action})"
                )

            if action == "edit":
                # Findings stay up for another review round.
                await self._commit(wf)
                return wf.snapshot()

            if action == "cancel":
                wf.status = WorkflowStatus.FAILED
                wf.failure_reason = CANCELLED_BY_REVIEWER
                await self._commit(wf)
                logger.info(f"Workflow {wf.id} cancelled by reviewer at findings review")
                return wf.snapshot()

            wf.findings = []
            self._advance(wf)
            await self._commit(wf)
            logger.info(f"Workflow {wf.id} resumed after findings review")
            snapshot = wf.snapshot()

        self._launch(workflow_id)
        return snapshot

    async def submit_answers(
        self, workflow_id: str, answers: Mapping[str, str]
    ) -> WorkflowInstance:
        """Record the reviewer's answers and resume.

        Questions left unanswered take their default answer.
        """
        if not isinstance(answers, Mapping):
            raise ValidationError("answers must map question ids to answer text")
        for question_id, answer in answers.items():
            if not isinstance(question_id, str) or not isinstance(answer, str):
                raise ValidationError("answers must map question ids to answer text")

        wf = await self._owned(workflow_id)
        async with self._locks[workflow_id]:
            if wf.status is not WorkflowStatus.SUSPENDED_QUESTIONS:
                raise InvalidTransitionError(self._describe(wf), "submit answers")

            known = {q.id for q in wf.questions}
            unknown = sorted(set(answers) - known)
            if unknown:
                raise ValidationError(f"Unknown question ids: {', '.join(unknown)}")

            merged = {q.id: q.default_answer for q in wf.questions}
            merged.update(answers)
            self._resume_from_questions(wf, merged)
            await self._commit(wf)
            logger.info(f"Workflow {wf.id} resumed with {len(answers)} answer(s)")
            snapshot = wf.snapshot()

        self._launch(workflow_id)
        return snapshot

    async def skip_questions(self, workflow_id: str) -> WorkflowInstance:
        """Resume using each question's default answer."""
        wf = await self._owned(workflow_id)
        async with self._locks[workflow_id]:
            if wf.status is not WorkflowStatus.SUSPENDED_QUESTIONS:
                raise InvalidTransitionError(self._describe(wf), "skip questions")

            self._resume_from_questions(
                wf, {q.id: q.default_answer for q in wf.questions}
            )
            await self._commit(wf)
            logger.info(f"Workflow {wf.id} resumed with default answers")
            snapshot = wf.snapshot()

        self._launch(workflow_id)
        return snapshot

    async def retry_step(self, workflow_id: str, step_id: str) -> WorkflowInstance:
        """Re-run a failed step of a halted workflow, then carry on."""
        wf = await self._owned(workflow_id)
        async with self._locks[workflow_id]:
            step = wf.get_step(step_id)
            if step is None:
                raise ValidationError(f"Unknown step {step_id!r}")
            if step.status is not StepStatus.FAILED or not wf.is_halted:
                raise InvalidTransitionError(
                    self._describe(wf),
                    f"retry step {step_id}",
                    f"step is {step.status.value}",
                )

            step.status = StepStatus.PENDING
            step.error = None
            await self._commit(wf)
            logger.info(f"Retrying step {step_id} of workflow {wf.id}")
            snapshot = wf.snapshot()

        self._launch(workflow_id)
        return snapshot

    async def cancel(
        self, workflow_id: str, reason: str = "cancelled"
    ) -> WorkflowInstance:
        """Abort a suspended or halted run."""
        wf = await self._owned(workflow_id)
        async with self._locks[workflow_id]:
            if not (wf.status.is_suspended or wf.is_halted):
                raise InvalidTransitionError(self._describe(wf), "cancel")

            wf.status = WorkflowStatus.FAILED
            wf.failure_reason = reason
            await self._commit(wf)
            logger.info(f"Workflow {wf.id} cancelled: {reason}")
            return wf.snapshot()

    # ------------------------------------------------------------------
    # Driver
    def _launch(self, workflow_id: str) -> None:
        task = asyncio.create_task(self._drive(workflow_id))
        self._drivers[workflow_id] = task

        def _forget(done: asyncio.Task) -> None:
            if self._drivers.get(workflow_id) is done:
                del self._drivers[workflow_id]

        task.add_done_callback(_forget)

    async def _drive(self, workflow_id: str) -> None:
        try:
            while await self._run_next_step(workflow_id):
                pass
        except Exception as exc:
            logger.exception(f"Workflow {workflow_id} driver crashed")
            wf = self._workflows[workflow_id]
            async with self._locks[workflow_id]:
                if not wf.status.is_terminal:
                    wf.status = WorkflowStatus.FAILED
                    wf.failure_reason = f"Internal error while generating: {exc}"
                    await self._commit(wf)

    async def _run_next_step(self, workflow_id: str) -> bool:
        """Execute the current step; return whether the driver should go on."""
        wf = self._workflows[workflow_id]
        async with self._locks[workflow_id]:
            if wf.status is not WorkflowStatus.RUNNING:
                return False
            if wf.current_step_index >= len(self._steps):
                wf.status = WorkflowStatus.COMPLETE
                await self._commit(wf)
                logger.info(f"Workflow {wf.id} complete")
                return False

            spec = self._steps[wf.current_step_index]
            step = wf.steps[wf.current_step_index]
            step.status = StepStatus.IN_PROGRESS
            step.detail = None
            step.error = None
            await self._commit(wf)
            ctx = StepContext(workflow=wf.snapshot())

        logger.debug(f"Workflow {workflow_id}: executing step {spec.id}")
        outcome = await self._executor.run(spec, ctx)

        async with self._locks[workflow_id]:
            return await self._apply_outcome(wf, step, outcome)

    async def _apply_outcome(
        self, wf: WorkflowInstance, step: WorkflowStep, outcome: StepOutcome
    ) -> bool:
        if not outcome.success:
            step.status = StepStatus.FAILED
            step.error = outcome.error
            if outcome.permanent:
                wf.status = WorkflowStatus.FAILED
                wf.failure_reason = outcome.error
                await self._commit(wf)
                logger.error(f"Workflow {wf.id} failed at step {step.id}: {outcome.error}")
            else:
                await self._commit(wf)
                logger.error(
                    f"Workflow {wf.id} halted at step {step.id}; awaiting retry: {outcome.error}"
                )
            return False

        result = outcome.result
        step.status = StepStatus.COMPLETE
        step.detail = outcome.detail
        wf.context.update(result.output)

        if result.findings:
            wf.findings = list(result.findings)
            wf.status = WorkflowStatus.SUSPENDED_FINDINGS
            await self._commit(wf)
            logger.info(
                f"Workflow {wf.id} suspended for review of {len(result.findings)} finding(s)"
            )
            return False

        if result.questions:
            wf.questions = list(result.questions)
            wf.status = WorkflowStatus.SUSPENDED_QUESTIONS
            await self._commit(wf)
            logger.info(
                f"Workflow {wf.id} suspended for {len(result.questions)} question(s)"
            )
            return False

        wf.current_step_index += 1
        await self._commit(wf)
        return True

    # ------------------------------------------------------------------
    # Helpers
    @staticmethod
    def _advance(wf: WorkflowInstance) -> None:
        wf.status = WorkflowStatus.RUNNING
        wf.current_step_index += 1

    def _resume_from_questions(self, wf: WorkflowInstance, answers: Dict[str, str]) -> None:
        wf.answers.update(answers)
        wf.questions = []
        self._advance(wf)

    @staticmethod
    def _describe(wf: WorkflowInstance) -> str:
        if wf.is_halted:
            return f"{wf.status.value} (halted at step {wf.current_step.id})"
        return wf.status.value

    async def _commit(self, wf: WorkflowInstance) -> None:
        wf.revision += 1
        wf.updated_at = datetime.now(timezone.utc)
        await self._repository.save_workflow(wf)
        await self._channel.publish(wf.snapshot())

    async def _owned(self, workflow_id: str) -> WorkflowInstance:
        wf = self._workflows.get(workflow_id)
        if wf is not None:
            return wf
        stored = await self._repository.get_workflow(workflow_id)
        if stored is None:
            raise WorkflowNotFoundError(workflow_id)
        return self._workflows.setdefault(workflow_id, stored)

    async def _find_active(self, subject_id: str) -> Optional[WorkflowInstance]:
        for wf in self._workflows.values():
            if wf.subject_id == subject_id and wf.status.is_active:
                return wf
        return await self._repository.find_active(subject_id)
