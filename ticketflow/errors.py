"""Exception hierarchy and failure classification for ticketflow.

Every failure raised by ticketflow carries an :class:`ErrorKind` tag set at
the point of failure. Retry decisions are made from that tag (or from the
exception type for untagged library errors), never from message text.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional

import httpx


class ErrorKind(str, Enum):
    """What went wrong, independent of which component noticed it."""

    VALIDATION = "validation"
    PERMANENT_DEPENDENCY = "permanent_dependency"
    TRANSIENT_DEPENDENCY = "transient_dependency"
    CANCELLED = "cancelled"


class FailureClass(str, Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"


class TicketflowError(Exception):
    """Base exception for all ticketflow errors."""

    kind: ErrorKind = ErrorKind.PERMANENT_DEPENDENCY

    def __init__(self, message: str, kind: Optional[ErrorKind] = None) -> None:
        if kind is not None:
            self.kind = kind
        self.message = message
        super().__init__(message)


class ValidationError(TicketflowError):
    """Malformed input, rejected before any state change."""

    kind = ErrorKind.VALIDATION


class WorkflowNotFoundError(TicketflowError):
    """No workflow instance with the requested id."""

    kind = ErrorKind.VALIDATION

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} not found")


class InvalidTransitionError(TicketflowError):
    """An intent was submitted from a state that does not accept it."""

    kind = ErrorKind.VALIDATION

    def __init__(self, current: str, attempted: str, detail: str = "") -> None:
        self.current = current
        self.attempted = attempted
        message = f"Invalid transition: cannot {attempted} while workflow is {current}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ActiveRunExistsError(InvalidTransitionError):
    """A subject already has a running or suspended workflow."""

    def __init__(self, subject_id: str, current: str) -> None:
        self.subject_id = subject_id
        super().__init__(current, "start", f"subject {subject_id} already has an active run")


class ResourceNotFoundError(TicketflowError):
    """A required dependency does not exist."""

    kind = ErrorKind.PERMANENT_DEPENDENCY

    def __init__(self, resource_id: str, message: Optional[str] = None) -> None:
        self.resource_id = resource_id
        super().__init__(
            message
            or (
                f"Repository index {resource_id} not found. "
                "Re-index the repository in Settings, then start generation again."
            )
        )


class ResourceNotReadyError(TicketflowError):
    """A required dependency exists but cannot be used yet."""

    kind = ErrorKind.PERMANENT_DEPENDENCY

    def __init__(self, resource_id: str, status_message: str = "") -> None:
        self.resource_id = resource_id
        detail = f" ({status_message})" if status_message else ""
        super().__init__(
            f"Repository index {resource_id} is not ready yet{detail}. "
            "Please wait for indexing to finish and try again."
        )


class ResourceFailedError(TicketflowError):
    """A required dependency ended in a failed state and has to be rebuilt."""

    kind = ErrorKind.PERMANENT_DEPENDENCY

    def __init__(self, resource_id: str, status_message: str = "") -> None:
        self.resource_id = resource_id
        detail = f": {status_message}" if status_message else ""
        super().__init__(
            f"Repository index {resource_id} failed{detail}. "
            "Please retry indexing in Settings."
        )


class TransientDependencyError(TicketflowError):
    """Timing or availability problem that may clear on its own."""

    kind = ErrorKind.TRANSIENT_DEPENDENCY


class RunCancelledError(TicketflowError):
    """A human decided to abort the run."""

    kind = ErrorKind.CANCELLED


class StreamTimeoutError(TicketflowError):
    """No chunk arrived on a progress stream within the idle timeout."""

    kind = ErrorKind.TRANSIENT_DEPENDENCY

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(
            f"No response within {timeout:g} seconds. Check your network connectivity and try again."
        )


class StreamConnectionError(TicketflowError):
    """The progress stream could not be opened or was cut off."""

    kind = ErrorKind.TRANSIENT_DEPENDENCY


class RemoteStreamError(TicketflowError):
    """The server reported a ``type: error`` event on the progress stream."""

    def __init__(self, message: str, metadata: Optional[dict] = None) -> None:
        self.metadata = metadata or {}
        super().__init__(message)


_TRANSIENT_STATUS_CODES = {408, 429}


def classify_failure(exc: BaseException) -> FailureClass:
    """Return whether ``exc`` is worth retrying."""
    if isinstance(exc, TicketflowError):
        if exc.kind is ErrorKind.TRANSIENT_DEPENDENCY:
            return FailureClass.TRANSIENT
        return FailureClass.PERMANENT

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status >= 500 or status in _TRANSIENT_STATUS_CODES:
            return FailureClass.TRANSIENT
        return FailureClass.PERMANENT

    if isinstance(
        exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, OSError, httpx.TransportError)
    ):
        return FailureClass.TRANSIENT

    # Unknown failures are retried.
    return FailureClass.TRANSIENT


def error_kind_of(exc: BaseException) -> ErrorKind:
    """Tag for ``exc``, inferring one for untagged exceptions."""
    if isinstance(exc, TicketflowError):
        return exc.kind
    if classify_failure(exc) is FailureClass.TRANSIENT:
        return ErrorKind.TRANSIENT_DEPENDENCY
    return ErrorKind.PERMANENT_DEPENDENCY
