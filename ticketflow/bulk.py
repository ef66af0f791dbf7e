"""Bulk enrichment and finalization of tickets.

Both services validate the whole request up front, then hand one pipeline
per ticket to the :class:`~ticketflow.batch.BatchOrchestrator`. The final
``complete`` event carries the service-specific summary in its metadata.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .batch import BatchOrchestrator, BatchRun, ItemReporter
from .config import load_config
from .contracts import BatchItem, BatchJob, Question
from .errors import ValidationError
from .utils.retry import RetryPolicy, execute_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TicketSource(Protocol):
    async def get_title(self, item_id: str) -> str:
        """Return the ticket's title."""


class EnrichmentBackend(TicketSource, Protocol):
    """Port to the analysis and question-generation agents."""

    async def analyze(self, item_id: str) -> Dict[str, Any]:
        """Deep analysis of one ticket."""

    async def generate_questions(
        self, item_id: str, analysis: Dict[str, Any]
    ) -> List[Question]:
        """Clarifying questions derived from the analysis."""


class FinalizationBackend(TicketSource, Protocol):
    """Port to the specification generator and ticket store."""

    async def generate_spec(self, item_id: str, answers: Dict[str, str]) -> Dict[str, Any]:
        """Technical specification built from the ticket and its answers."""

    async def save(self, item_id: str, spec: Dict[str, Any]) -> None:
        """Persist the specification onto the ticket."""


class AnswerEntry(BaseModel):
    """One answer of a bulk finalize request."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    item_id: str
    question_id: str
    answer: str


async def _call(
    fn: Callable[[], Awaitable[T]], policy: Optional[RetryPolicy], label: str
) -> T:
    outcome = await execute_with_retry(fn, policy=policy, label=label)
    if not outcome.success:
        raise outcome.error
    return outcome.data


async def _resolve_items(source: TicketSource, item_ids: Sequence[str]) -> List[BatchItem]:
    """Attach titles; an unresolvable title falls back to the id."""

    async def one(item_id: str) -> BatchItem:
        try:
            title = await source.get_title(item_id)
        except Exception as e:
            logger.warning(f"Could not load title for {item_id}: {e}")
            title = item_id
        return BatchItem(item_id=item_id, title=title or item_id)

    return list(await asyncio.gather(*(one(item_id) for item_id in item_ids)))


class BulkEnrichmentService:
    """Analyze tickets and generate clarifying questions in parallel."""

    def __init__(
        self,
        backend: EnrichmentBackend,
        orchestrator: Optional[BatchOrchestrator] = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_items: Optional[int] = None,
    ) -> None:
        settings = load_config()
        self._backend = backend
        self._retry_policy = retry_policy or settings.retry
        self._max_items = max_items or settings.stream.max_batch_items
        self._orchestrator = orchestrator or BatchOrchestrator(max_items=self._max_items)

    def validate(self, item_ids: Sequence[str]) -> List[str]:
        if not isinstance(item_ids, (list, tuple)) or not item_ids:
            raise ValidationError("itemIds must be a non-empty list")
        cleaned = []
        for item_id in item_ids:
            if not isinstance(item_id, str) or not item_id.strip():
                raise ValidationError("itemIds must not contain empty ids")
            cleaned.append(item_id.strip())
        if len(set(cleaned)) != len(cleaned):
            raise ValidationError("itemIds must not contain duplicates")
        if len(cleaned) > self._max_items:
            raise ValidationError(
                f"Too many tickets: {len(cleaned)} (maximum {self._max_items})"
            )
        return cleaned

    async def enrich(self, item_ids: Sequence[str]) -> BatchRun:
        """Validate and launch; iterate the returned run for progress."""
        ids = self.validate(item_ids)
        items = await _resolve_items(self._backend, ids)
        questions: Dict[str, List[Dict[str, Any]]] = {}
        backend, policy = self._backend, self._retry_policy

        async def pipeline(item: BatchItem, reporter: ItemReporter) -> int:
            slot, title = reporter.agent_slot, reporter.title
            reporter.emit("deep_analysis", f"Agent {slot} analyzing {title}")
            analysis = await _call(
                lambda: backend.analyze(item.item_id), policy, f"analyze:{item.item_id}"
            )
            reporter.emit(
                "question_generation",
                f"Agent {slot} generating clarification questions for {title}",
            )
            generated = await _call(
                lambda: backend.generate_questions(item.item_id, analysis),
                policy,
                f"questions:{item.item_id}",
            )
            questions[item.item_id] = [
                q.model_dump(mode="json", by_alias=True) for q in generated
            ]
            reporter.complete(
                f"Generated {len(generated)} question(s) for {title}",
                {"questionCount": len(generated)},
            )
            return len(generated)

        def summarize(job: BatchJob) -> Dict[str, Any]:
            errors = {
                item_id: outcome.error or "Unknown error"
                for item_id, outcome in job.outcomes.items()
                if not outcome.success
            }
            return {"questions": questions, "errors": errors}

        return self._orchestrator.start(items, pipeline, summarize)


class BulkFinalizationService:
    """Generate and save specifications for many tickets in parallel."""

    def __init__(
        self,
        backend: FinalizationBackend,
        orchestrator: Optional[BatchOrchestrator] = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_items: Optional[int] = None,
        max_answers: Optional[int] = None,
    ) -> None:
        settings = load_config()
        self._backend = backend
        self._retry_policy = retry_policy or settings.retry
        self._max_items = max_items or settings.stream.max_batch_items
        self._max_answers = max_answers or settings.stream.max_batch_answers
        self._orchestrator = orchestrator or BatchOrchestrator(max_items=self._max_items)

    def validate(self, answers: Sequence[Any]) -> "OrderedDict[str, Dict[str, str]]":
        """Group answers by ticket, preserving first-seen ticket order."""
        if not isinstance(answers, (list, tuple)) or not answers:
            raise ValidationError("answers must be a non-empty list")
        if len(answers) > self._max_answers:
            raise ValidationError(
                f"Too many answers: {len(answers)} (maximum {self._max_answers})"
            )

        grouped: "OrderedDict[str, Dict[str, str]]" = OrderedDict()
        for raw in answers:
            try:
                entry = raw if isinstance(raw, AnswerEntry) else AnswerEntry.model_validate(raw)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid answer entry: {e.errors()[0]['msg']}") from e
            if not entry.item_id.strip() or not entry.question_id.strip():
                raise ValidationError("Each answer needs a non-empty itemId and questionId")
            grouped.setdefault(entry.item_id.strip(), {})[entry.question_id.strip()] = entry.answer

        if len(grouped) > self._max_items:
            raise ValidationError(
                f"Too many tickets: {len(grouped)} (maximum {self._max_items})"
            )
        return grouped

    async def finalize(self, answers: Sequence[Any]) -> BatchRun:
        """Validate and launch; iterate the returned run for progress."""
        grouped = self.validate(answers)
        items = await _resolve_items(self._backend, list(grouped))
        backend, policy = self._backend, self._retry_policy

        async def pipeline(item: BatchItem, reporter: ItemReporter) -> None:
            slot, title = reporter.agent_slot, reporter.title
            reporter.emit("generating_spec", f"Agent {slot} generating specification for {title}")
            spec = await _call(
                lambda: backend.generate_spec(item.item_id, grouped[item.item_id]),
                policy,
                f"spec:{item.item_id}",
            )
            reporter.emit("saving", f"Agent {slot} saving specification for {title}")
            await _call(lambda: backend.save(item.item_id, spec), policy, f"save:{item.item_id}")
            reporter.complete(f"Finalized {title}")

        def summarize(job: BatchJob) -> Dict[str, Any]:
            return {
                "results": [
                    job.outcomes[item.item_id].to_wire()
                    for item in job.items
                    if item.item_id in job.outcomes
                ]
            }

        return self._orchestrator.start(items, pipeline, summarize)
