"""HTTP surface: workflow intents, state, and streaming bulk operations.

Endpoints:
    POST /workflows                          Start a run (202)
    GET  /workflows                          List runs
    GET  /workflows/{id}                     Current snapshot
    GET  /workflows/{id}/progress            Progress stream of one run
    POST /workflows/{id}/resume-findings     proceed | edit | cancel
    POST /workflows/{id}/submit-answers      Answers keyed by question id
    POST /workflows/{id}/skip-questions      Resume with default answers
    POST /workflows/{id}/retry-step          Re-run a failed step
    POST /workflows/{id}/cancel              Abort a suspended or halted run
    POST /bulk/enrich                        Progress stream
    POST /bulk/finalize                      Progress stream
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Literal, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .bulk import AnswerEntry, BulkEnrichmentService, BulkFinalizationService
from .contracts import ProgressEvent, WorkflowInstance
from .errors import (
    ErrorKind,
    InvalidTransitionError,
    ResourceFailedError,
    ResourceNotFoundError,
    ResourceNotReadyError,
    TicketflowError,
    ValidationError,
    WorkflowNotFoundError,
)
from .stream import MEDIA_TYPE, encode_stream
from .subscriber import workflow_progress
from .workflow import WorkflowEngine

logger = logging.getLogger(__name__)

_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# ------------------------------------------------------------------ #
# Request bodies
# ------------------------------------------------------------------ #


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class StartRequest(_Body):
    subject_id: str
    resource_id: Optional[str] = None


class ResumeFindingsRequest(_Body):
    action: Literal["proceed", "edit", "cancel"]


class SubmitAnswersRequest(_Body):
    answers: Dict[str, str]


class RetryStepRequest(_Body):
    step_id: str


class CancelRequest(_Body):
    reason: str = "cancelled"


class BulkEnrichRequest(_Body):
    item_ids: List[str]


class BulkFinalizeRequest(_Body):
    answers: List[AnswerEntry] = Field(default_factory=list)


# ------------------------------------------------------------------ #
# Errors
# ------------------------------------------------------------------ #


def status_for(exc: TicketflowError) -> int:
    """HTTP status for a ticketflow error."""
    if isinstance(exc, WorkflowNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, InvalidTransitionError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, (ResourceNotFoundError, ResourceNotReadyError, ResourceFailedError)):
        return status.HTTP_424_FAILED_DEPENDENCY
    if exc.kind is ErrorKind.TRANSIENT_DEPENDENCY:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if exc.kind is ErrorKind.VALIDATION:
        return 422
    return status.HTTP_424_FAILED_DEPENDENCY


def _dump(wf: WorkflowInstance) -> Dict[str, Any]:
    return wf.model_dump(mode="json")


def _stream(events: AsyncIterator[ProgressEvent]) -> StreamingResponse:
    return StreamingResponse(
        encode_stream(events), media_type=MEDIA_TYPE, headers=_STREAM_HEADERS
    )


# ------------------------------------------------------------------ #
# Application
# ------------------------------------------------------------------ #


def create_app(
    engine: WorkflowEngine,
    enrichment: Optional[BulkEnrichmentService] = None,
    finalization: Optional[BulkFinalizationService] = None,
) -> FastAPI:
    """Create the FastAPI application around an engine and bulk services."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await engine.channel.connect()
        try:
            yield
        finally:
            await engine.channel.disconnect()

    app = FastAPI(title="ticketflow", version="0.1.0", lifespan=lifespan)
    app.state.engine = engine

    @app.exception_handler(TicketflowError)
    async def handle_ticketflow_error(request: Request, exc: TicketflowError) -> JSONResponse:
        code = status_for(exc)
        if code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(
            status_code=code,
            content={"error": exc.kind.value, "message": exc.message},
        )

    @app.post("/workflows", status_code=status.HTTP_202_ACCEPTED)
    async def start_workflow(body: StartRequest) -> Dict[str, Any]:
        wf = await engine.start(body.subject_id, body.resource_id)
        return _dump(wf)

    @app.get("/workflows")
    async def list_workflows() -> List[Dict[str, Any]]:
        return [_dump(wf) for wf in await engine.list_workflows()]

    @app.get("/workflows/{workflow_id}")
    async def get_workflow(workflow_id: str) -> Dict[str, Any]:
        return _dump(await engine.get(workflow_id))

    @app.get("/workflows/{workflow_id}/progress")
    async def stream_workflow_progress(workflow_id: str) -> StreamingResponse:
        await engine.get(workflow_id)
        return _stream(workflow_progress(engine.channel, workflow_id))

    @app.post("/workflows/{workflow_id}/resume-findings")
    async def resume_findings(workflow_id: str, body: ResumeFindingsRequest) -> Dict[str, Any]:
        return _dump(await engine.resume_from_findings(workflow_id, body.action))

    @app.post("/workflows/{workflow_id}/submit-answers")
    async def submit_answers(workflow_id: str, body: SubmitAnswersRequest) -> Dict[str, Any]:
        return _dump(await engine.submit_answers(workflow_id, body.answers))

    @app.post("/workflows/{workflow_id}/skip-questions")
    async def skip_questions(workflow_id: str) -> Dict[str, Any]:
        return _dump(await engine.skip_questions(workflow_id))

    @app.post("/workflows/{workflow_id}/retry-step")
    async def retry_step(workflow_id: str, body: RetryStepRequest) -> Dict[str, Any]:
        return _dump(await engine.retry_step(workflow_id, body.step_id))

    @app.post("/workflows/{workflow_id}/cancel")
    async def cancel_workflow(
        workflow_id: str, body: Optional[CancelRequest] = None
    ) -> Dict[str, Any]:
        reason = body.reason if body is not None else "cancelled"
        return _dump(await engine.cancel(workflow_id, reason))

    if enrichment is not None:

        @app.post("/bulk/enrich")
        async def bulk_enrich(body: BulkEnrichRequest) -> StreamingResponse:
            run = await enrichment.enrich(body.item_ids)
            return _stream(run.events())

    if finalization is not None:

        @app.post("/bulk/finalize")
        async def bulk_finalize(body: BulkFinalizeRequest) -> StreamingResponse:
            run = await finalization.finalize(body.answers)
            return _stream(run.events())

    return app
