"""Step definitions consumed by the workflow engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .contracts import Finding, Question, WorkflowInstance
from .readiness import ReadinessResult
from .utils.retry import RetryPolicy


@dataclass
class StepResult:
    """What a step hands back to the engine.

    ``output`` is merged into the workflow context. Non-empty ``findings`` or
    ``questions`` suspend the run for review.
    """

    output: Dict[str, Any] = field(default_factory=dict)
    findings: List[Finding] = field(default_factory=list)
    questions: List[Question] = field(default_factory=list)
    detail: Optional[str] = None


@dataclass
class StepContext:
    """Read-only view handed to a step handler."""

    workflow: WorkflowInstance
    readiness: Optional[ReadinessResult] = None

    @property
    def subject_id(self) -> str:
        return self.workflow.subject_id

    @property
    def resource_id(self) -> Optional[str]:
        return self.workflow.resource_id

    @property
    def state(self) -> Dict[str, Any]:
        return self.workflow.context

    @property
    def answers(self) -> Dict[str, str]:
        return self.workflow.answers


StepHandler = Callable[[StepContext], Awaitable[StepResult]]


@dataclass
class StepSpec:
    """A named unit of work in a workflow's fixed step list."""

    id: str
    title: str
    handler: StepHandler
    requires_resource: bool = False
    degraded: Optional[Callable[[], StepResult]] = None
    retry_policy: Optional[RetryPolicy] = None

    @property
    def degradable(self) -> bool:
        return self.degraded is not None

    def degraded_result(self) -> StepResult:
        return self.degraded() if self.degraded is not None else StepResult()
