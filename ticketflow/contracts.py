"""Core data contracts for ticketflow workflows and batches."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUSPENDED_FINDINGS = "suspended_findings"
    SUSPENDED_QUESTIONS = "suspended_questions"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.COMPLETE, WorkflowStatus.FAILED)

    @property
    def is_suspended(self) -> bool:
        return self in (
            WorkflowStatus.SUSPENDED_FINDINGS,
            WorkflowStatus.SUSPENDED_QUESTIONS,
        )

    @property
    def is_active(self) -> bool:
        return self is WorkflowStatus.RUNNING or self.is_suspended


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


class WorkflowStep(BaseModel):
    """One entry of a workflow's ordered step list."""

    id: str
    title: str
    status: StepStatus = StepStatus.PENDING
    detail: Optional[str] = None
    error: Optional[str] = None


class Finding(BaseModel):
    """Observation presented to a reviewer before the run may continue."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    category: str
    severity: Literal["critical", "warning", "info"]
    description: str
    location: Optional[str] = None
    suggestion: str = ""
    confidence: int = Field(default=50, ge=0, le=100)
    evidence: str = ""


class Question(BaseModel):
    """Clarifying question the reviewer may answer or skip."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    text: str
    context: str = ""
    default_answer: str = ""


class WorkflowInstance(BaseModel):
    """One generation run for one subject document.

    Owned by :class:`~ticketflow.workflow.WorkflowEngine`; everyone else only
    sees copies.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    subject_id: str
    resource_id: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.IDLE
    current_step_index: int = 0
    steps: List[WorkflowStep] = Field(default_factory=list)
    findings: List[Finding] = Field(default_factory=list)
    questions: List[Question] = Field(default_factory=list)
    answers: Dict[str, str] = Field(default_factory=dict)
    failure_reason: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    revision: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _check_review_exclusivity(self) -> "WorkflowInstance":
        if self.findings and self.questions:
            raise ValueError("findings and questions cannot be pending review together")
        if self.failure_reason and self.status is not WorkflowStatus.FAILED:
            raise ValueError("failure_reason is only set on failed workflows")
        return self

    @property
    def current_step(self) -> Optional[WorkflowStep]:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    @property
    def is_halted(self) -> bool:
        """Running, but parked on a step that failed after retries."""
        step = self.current_step
        return (
            self.status is WorkflowStatus.RUNNING
            and step is not None
            and step.status is StepStatus.FAILED
        )

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        return next((step for step in self.steps if step.id == step_id), None)

    def snapshot(self) -> "WorkflowInstance":
        """Detached deep copy for observers."""
        return self.model_copy(deep=True)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "WorkflowInstance":
        return cls.model_validate_json(data)


# ---------------------------------------------------------------------------
# Batches and progress events
# ---------------------------------------------------------------------------

EventType = Literal["progress", "complete", "error"]
ItemStatus = Literal["started", "in_progress", "completed", "failed"]


class ProgressEvent(BaseModel):
    """Unit of the progress stream protocol."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="ignore")

    type: EventType
    item_id: Optional[str] = None
    item_title: Optional[str] = None
    agent_slot: Optional[int] = None
    phase: Optional[str] = None
    status: Optional[ItemStatus] = None
    message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.type in ("complete", "error")

    def to_wire(self) -> Dict[str, Any]:
        """Camel-cased payload, omitting unset fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "ProgressEvent":
        return cls.model_validate(data)


class BatchItem(BaseModel):
    item_id: str
    title: str = ""


class ItemState(BaseModel):
    """Latest known state of one batch item."""

    agent_slot: int
    phase: Optional[str] = None
    status: ItemStatus = "started"
    message: str = ""
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")


class ItemOutcome(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    item_id: str
    item_title: str = ""
    success: bool
    result: Any = None
    error: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        """``{itemId, itemTitle, success, error?}``; the raw result stays server-side."""
        return self.model_dump(
            mode="json", by_alias=True, exclude_none=True, exclude={"result"}
        )


class BatchJob(BaseModel):
    """A fixed set of independent items processed in parallel."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    items: List[BatchItem]
    per_item_state: Dict[str, ItemState] = Field(default_factory=dict)
    outcomes: Dict[str, ItemOutcome] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _assign_slots(self) -> "BatchJob":
        for position, item in enumerate(self.items):
            self.per_item_state.setdefault(
                item.item_id, ItemState(agent_slot=position + 1)
            )
        return self

    @property
    def completed_count(self) -> int:
        return sum(1 for s in self.per_item_state.values() if s.status == "completed")

    @property
    def failed_count(self) -> int:
        return sum(1 for s in self.per_item_state.values() if s.status == "failed")

    @property
    def is_finished(self) -> bool:
        return self.completed_count + self.failed_count == len(self.items)

    def record_event(self, event: ProgressEvent) -> None:
        """Fold a progress event into the per-item state."""
        if event.item_id is None or event.item_id not in self.per_item_state:
            return
        state = self.per_item_state[event.item_id]
        if state.is_terminal:
            return
        if event.phase is not None:
            state.phase = event.phase
        if event.status is not None:
            state.status = event.status
        if event.message is not None:
            state.message = event.message
        if event.status == "failed" and event.metadata:
            state.error = event.metadata.get("error")

    def record_outcome(self, outcome: ItemOutcome) -> None:
        self.outcomes[outcome.item_id] = outcome
