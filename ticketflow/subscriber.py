"""Observer side of the state synchronization channel."""

from __future__ import annotations

import logging
from contextlib import aclosing
from typing import AsyncIterator, Dict, Iterator, Optional, Tuple

from .channels import BaseStateChannel
from .contracts import ProgressEvent, StepStatus, WorkflowInstance, WorkflowStatus

logger = logging.getLogger(__name__)

_STEP_EVENT_STATUS = {
    StepStatus.IN_PROGRESS: "in_progress",
    StepStatus.COMPLETE: "completed",
    StepStatus.FAILED: "failed",
}


def is_settled(wf: WorkflowInstance) -> bool:
    """Whether the run is waiting on someone (or finished)."""
    return wf.status.is_terminal or wf.status.is_suspended or wf.is_halted


class WorkflowSubscriber:
    """Keeps the latest snapshot of one workflow.

    Observers never modify what they receive; intents go to the engine.
    """

    def __init__(self, channel: BaseStateChannel, workflow_id: str) -> None:
        self._channel = channel
        self.workflow_id = workflow_id
        self.latest: Optional[WorkflowInstance] = None

    async def watch(
        self, lifespan: Optional[float] = None, until_settled: bool = False
    ) -> AsyncIterator[WorkflowInstance]:
        async with aclosing(self._channel.subscribe(self.workflow_id, lifespan)) as snapshots:
            async for snapshot in snapshots:
                self.latest = snapshot
                yield snapshot
                if until_settled and is_settled(snapshot):
                    return

    async def wait_until_settled(
        self, lifespan: Optional[float] = None
    ) -> Optional[WorkflowInstance]:
        """Return the first settled snapshot, or the latest seen if ``lifespan`` ran out."""
        async with aclosing(self.watch(lifespan, until_settled=True)) as snapshots:
            async for snapshot in snapshots:
                if is_settled(snapshot):
                    return snapshot
        return self.latest


def _step_events(
    wf: WorkflowInstance, seen: Dict[str, Tuple[StepStatus, Optional[str], Optional[str]]]
) -> Iterator[ProgressEvent]:
    for index, step in enumerate(wf.steps):
        key = (step.status, step.detail, step.error)
        if seen.get(step.id) == key:
            continue
        seen[step.id] = key
        status = _STEP_EVENT_STATUS.get(step.status)
        if status is None:
            continue
        yield ProgressEvent(
            type="progress",
            item_id=step.id,
            item_title=step.title,
            phase=step.id,
            status=status,
            message=step.error or step.detail or step.title,
            metadata={"workflowId": wf.id, "stepIndex": index, "revision": wf.revision},
        )


def _closing_event(wf: WorkflowInstance) -> ProgressEvent:
    base = {"workflowId": wf.id, "status": wf.status.value, "revision": wf.revision}
    if wf.status is WorkflowStatus.FAILED:
        return ProgressEvent(
            type="error",
            message=wf.failure_reason or "Workflow failed",
            metadata={**base, "retryable": False},
        )
    if wf.is_halted:
        step = wf.current_step
        return ProgressEvent(
            type="error",
            message=step.error or f"{step.title} failed",
            metadata={**base, "retryable": True, "stepId": step.id},
        )
    if wf.status is WorkflowStatus.SUSPENDED_FINDINGS:
        return ProgressEvent(
            type="complete",
            message=f"Waiting for review of {len(wf.findings)} finding(s)",
            metadata={**base, "findingCount": len(wf.findings)},
        )
    if wf.status is WorkflowStatus.SUSPENDED_QUESTIONS:
        return ProgressEvent(
            type="complete",
            message=f"Waiting for answers to {len(wf.questions)} question(s)",
            metadata={**base, "questionCount": len(wf.questions)},
        )
    return ProgressEvent(type="complete", message="Workflow complete", metadata=base)


async def workflow_progress(
    channel: BaseStateChannel, workflow_id: str, lifespan: Optional[float] = None
) -> AsyncIterator[ProgressEvent]:
    """Turn a workflow's snapshots into a progress stream.

    One ``progress`` event per step change, then a closing ``complete`` (run
    finished or waiting for review) or ``error`` (run failed or halted on a
    failed step).
    """
    seen: Dict[str, Tuple[StepStatus, Optional[str], Optional[str]]] = {}
    subscriber = WorkflowSubscriber(channel, workflow_id)
    async with aclosing(subscriber.watch(lifespan, until_settled=True)) as snapshots:
        async for wf in snapshots:
            for event in _step_events(wf, seen):
                yield event
            if is_settled(wf):
                yield _closing_event(wf)
                return
    logger.debug(f"Progress stream for workflow {workflow_id} ended before the run settled")
