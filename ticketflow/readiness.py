"""Readiness gate for external dependencies such as a repository index.

The gate is consulted twice: once before a run starts (preflight), where an
unusable dependency is fatal, and again right before a dependent step
(midflight), where the same condition only degrades that step.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Literal, Optional, Protocol

from pydantic import BaseModel

from .config import load_config
from .errors import (
    ErrorKind,
    ResourceFailedError,
    ResourceNotFoundError,
    ResourceNotReadyError,
    TicketflowError,
)
from .utils.retry import RetryPolicy, execute_with_retry

logger = logging.getLogger(__name__)


class ResourceStatus(BaseModel):
    """Answer of the dependency's status lookup."""

    exists: bool
    status: Literal["pending", "indexing", "completed", "failed", "unknown"] = "unknown"
    ready: bool = False
    message: str = ""

    @property
    def usable(self) -> bool:
        # completed is the only usable status, whatever ``ready`` claims
        return self.exists and self.status == "completed"


class ResourceStatusProvider(Protocol):
    """Looks up the status of a dependency by id."""

    async def get_status(self, resource_id: str) -> ResourceStatus:
        """Return the current status of ``resource_id``."""


class Readiness(str, Enum):
    READY = "ready"
    NOT_FOUND = "not_found"
    NOT_READY = "not_ready"
    FAILED = "failed"
    SKIPPED = "skipped"
    UNAVAILABLE = "unavailable"


class ReadinessResult(BaseModel):
    """Classified outcome of a readiness check."""

    readiness: Readiness
    fatal: bool = False
    message: str = ""
    status_message: str = ""
    attempts: int = 0
    resource_id: Optional[str] = None

    @property
    def proceed(self) -> bool:
        """Whether dependent work may use the resource."""
        return self.readiness is Readiness.READY

    def raise_if_fatal(self) -> None:
        if not self.fatal:
            return
        if self.readiness is Readiness.NOT_FOUND:
            raise ResourceNotFoundError(self.resource_id or "")
        if self.readiness is Readiness.NOT_READY:
            raise ResourceNotReadyError(self.resource_id or "", self.status_message)
        if self.readiness is Readiness.FAILED:
            raise ResourceFailedError(self.resource_id or "", self.status_message)
        raise TicketflowError(self.message, kind=ErrorKind.TRANSIENT_DEPENDENCY)


class ReadinessGate:
    """Classify a dependency as ready, missing, or not yet usable."""

    def __init__(
        self,
        provider: ResourceStatusProvider,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._provider = provider
        self._retry_policy = retry_policy or load_config().retry

    async def check_preflight(self, resource_id: Optional[str]) -> ReadinessResult:
        """Check before starting work; missing or unready resources are fatal."""
        return await self._check(resource_id, fatal=True)

    async def check_midflight(self, resource_id: Optional[str]) -> ReadinessResult:
        """Re-check before a dependent step; nothing here fails the run."""
        return await self._check(resource_id, fatal=False)

    async def _check(self, resource_id: Optional[str], fatal: bool) -> ReadinessResult:
        if not resource_id:
            return ReadinessResult(
                readiness=Readiness.SKIPPED,
                message="No dependency configured; continuing without it",
            )

        stage = "preflight" if fatal else "midflight"
        outcome = await execute_with_retry(
            lambda: self._provider.get_status(resource_id),
            policy=self._retry_policy,
            label=f"readiness:{stage}:{resource_id}",
        )

        if not outcome.success:
            logger.error(
                f"Readiness {stage} check for {resource_id} failed after "
                f"{outcome.attempts} attempt(s): {outcome.error}"
            )
            return ReadinessResult(
                readiness=Readiness.UNAVAILABLE,
                fatal=fatal,
                message=(
                    f"Could not check the status of {resource_id} after "
                    f"{outcome.attempts} attempt(s) ({outcome.error}). "
                    "Check connectivity and try again."
                ),
                attempts=outcome.attempts,
                resource_id=resource_id,
            )

        status: ResourceStatus = outcome.data
        if not status.exists:
            result = ReadinessResult(
                readiness=Readiness.NOT_FOUND,
                fatal=fatal,
                message=ResourceNotFoundError(resource_id).message,
                attempts=outcome.attempts,
                resource_id=resource_id,
            )
        elif status.status == "failed":
            result = ReadinessResult(
                readiness=Readiness.FAILED,
                fatal=fatal,
                message=ResourceFailedError(resource_id, status.message).message,
                status_message=status.message,
                attempts=outcome.attempts,
                resource_id=resource_id,
            )
        elif not status.usable:
            result = ReadinessResult(
                readiness=Readiness.NOT_READY,
                fatal=fatal,
                message=(
                    ResourceNotReadyError(resource_id, status.message).message
                    if fatal
                    else status.message
                ),
                status_message=status.message,
                attempts=outcome.attempts,
                resource_id=resource_id,
            )
        else:
            result = ReadinessResult(
                readiness=Readiness.READY,
                message=status.message,
                attempts=outcome.attempts,
                resource_id=resource_id,
            )

        if not result.proceed:
            log = logger.error if fatal else logger.warning
            log(f"Readiness {stage} for {resource_id}: {result.readiness.value} - {result.message}")
        return result
