"""Step execution with bounded retry and mid-flight readiness checks."""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict

from .config import load_config
from .errors import ErrorKind, FailureClass, TicketflowError, error_kind_of
from .readiness import ReadinessGate
from .steps import StepContext, StepResult, StepSpec
from .utils.retry import RetryPolicy, execute_with_retry

logger = logging.getLogger(__name__)


class StepOutcome(BaseModel):
    """Final result of one step; retry history stays inside the executor."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    result: Optional[StepResult] = None
    degraded: bool = False
    detail: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    attempts: int = 0

    @property
    def permanent(self) -> bool:
        return not self.success and self.error_kind is not ErrorKind.TRANSIENT_DEPENDENCY


class StepExecutor:
    """Runs a single workflow step."""

    def __init__(
        self,
        gate: Optional[ReadinessGate] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._gate = gate
        self._retry_policy = retry_policy or load_config().retry

    async def run(self, spec: StepSpec, ctx: StepContext) -> StepOutcome:
        if spec.requires_resource:
            degraded = await self._check_dependency(spec, ctx)
            if degraded is not None:
                return degraded

        outcome = await execute_with_retry(
            lambda: spec.handler(ctx),
            policy=spec.retry_policy or self._retry_policy,
            label=f"step:{spec.id}",
        )
        if outcome.success:
            return StepOutcome(
                success=True,
                result=outcome.data or StepResult(),
                detail=(outcome.data.detail if outcome.data else None),
                attempts=outcome.attempts,
            )

        exc = outcome.error
        reason = exc.message if isinstance(exc, TicketflowError) else str(exc)
        if spec.degradable:
            logger.warning(
                f"Step {spec.id} failed for workflow {ctx.workflow.id}; "
                f"continuing with a degraded result: {reason}"
            )
            return StepOutcome(
                success=True,
                result=spec.degraded_result(),
                degraded=True,
                detail=f"Skipped: {reason}",
                attempts=outcome.attempts,
            )

        if outcome.failure_class is FailureClass.TRANSIENT:
            message = (
                f"{spec.title} failed after {outcome.attempts} attempts "
                f"(retries exhausted): {reason}"
            )
        else:
            message = f"{spec.title} failed: {reason}"
        return StepOutcome(
            success=False,
            error=message,
            error_kind=error_kind_of(exc),
            attempts=outcome.attempts,
        )

    async def _check_dependency(
        self, spec: StepSpec, ctx: StepContext
    ) -> Optional[StepOutcome]:
        """Return a degraded outcome when the step's dependency is unusable."""
        if self._gate is None:
            readiness = None
            reason = "no readiness gate configured"
        else:
            readiness = await self._gate.check_midflight(ctx.resource_id)
            ctx.readiness = readiness
            if readiness.proceed:
                return None
            reason = readiness.message

        logger.warning(
            f"Dependency unavailable for step {spec.id} of workflow {ctx.workflow.id}; "
            f"continuing without it: {reason}"
        )
        return StepOutcome(
            success=True,
            result=spec.degraded_result(),
            degraded=True,
            detail=f"Skipped: {reason}",
        )
