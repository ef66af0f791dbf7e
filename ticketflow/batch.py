"""Parallel batch orchestration with per-item progress events."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from .config import load_config
from .contracts import BatchItem, BatchJob, ItemOutcome, ItemStatus, ProgressEvent
from .errors import TicketflowError, ValidationError

logger = logging.getLogger(__name__)

_TERMINAL_STATUSES = ("completed", "failed")


class ItemReporter:
    """Handle an item pipeline uses to report its progress."""

    def __init__(
        self,
        item: BatchItem,
        agent_slot: int,
        sink: Callable[[ProgressEvent], None],
    ) -> None:
        self.item = item
        self.agent_slot = agent_slot
        self._sink = sink
        self._closed = False
        self.completion_message: Optional[str] = None
        self.completion_metadata: Optional[Dict[str, Any]] = None

    @property
    def item_id(self) -> str:
        return self.item.item_id

    @property
    def title(self) -> str:
        return self.item.title or self.item.item_id

    def emit(
        self,
        phase: Optional[str],
        message: str,
        status: ItemStatus = "in_progress",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Report intermediate progress.

        ``completed`` and ``failed`` are not accepted here: an item finishes
        when its pipeline returns or raises.
        """
        if status in _TERMINAL_STATUSES:
            raise ValueError(
                f"Item {self.item_id} cannot report {status!r}; return or raise instead"
            )
        self._send(phase, message, status, metadata)

    def complete(
        self, message: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Set what the item's ``completed`` event will say."""
        self.completion_message = message
        self.completion_metadata = metadata

    def _send(
        self,
        phase: Optional[str],
        message: str,
        status: ItemStatus,
        metadata: Optional[Dict[str, Any]],
    ) -> None:
        if self._closed:
            logger.debug(f"Dropping progress for finished item {self.item_id}: {message}")
            return
        self._sink(
            ProgressEvent(
                type="progress",
                item_id=self.item_id,
                item_title=self.title,
                agent_slot=self.agent_slot,
                phase=phase,
                status=status,
                message=message,
                metadata=metadata,
            )
        )
        if status in _TERMINAL_STATUSES:
            self._closed = True


ItemPipeline = Callable[[BatchItem, ItemReporter], Awaitable[Any]]
Summarizer = Callable[[BatchJob], Dict[str, Any]]


class BatchRun:
    """A launched batch: the event sequence plus the job it updates.

    Iterating yields every event in emission order and stops after the final
    ``complete`` event, or an ``error`` event if the summary could not be built. Leaving the iteration early does not stop the items.
    """

    def __init__(self, job: BatchJob, queue: "asyncio.Queue[ProgressEvent]", tasks: List[asyncio.Task]):
        self.job = job
        self._queue = queue
        self._tasks = tasks

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self.events()

    async def events(self) -> AsyncIterator[ProgressEvent]:
        finished = False
        try:
            while True:
                event = await self._queue.get()
                yield event
                if event.is_terminal:
                    finished = True
                    return
        finally:
            if not finished:
                pending = sum(1 for task in self._tasks if not task.done())
                logger.info(
                    f"Consumer of batch {self.job.id} left early; "
                    f"{pending} item(s) keep running"
                )

    async def wait(self) -> BatchJob:
        """Wait for every item to reach a terminal state."""
        await asyncio.gather(*self._tasks)
        return self.job


class BatchOrchestrator:
    """Run one pipeline per item, all at once, and aggregate the results."""

    def __init__(self, max_items: Optional[int] = None) -> None:
        self._max_items = max_items or load_config().stream.max_batch_items
        # Item tasks stay referenced here until done, even if nobody is listening.
        self._tasks: Set[asyncio.Task] = set()

    @property
    def running(self) -> int:
        return len(self._tasks)

    def start(
        self,
        items: Sequence[BatchItem],
        pipeline: ItemPipeline,
        summarize: Optional[Summarizer] = None,
    ) -> BatchRun:
        """Validate ``items`` and launch every item pipeline.

        Raises:
            ValidationError: No items, too many items, or duplicate ids.
        """
        if not items:
            raise ValidationError("At least one item is required")
        if len(items) > self._max_items:
            raise ValidationError(
                f"Too many items: {len(items)} (maximum {self._max_items} per batch)"
            )
        ids = [item.item_id for item in items]
        if len(set(ids)) != len(ids):
            raise ValidationError("Duplicate item ids in batch")

        job = BatchJob(items=list(items))
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        remaining = len(items)

        def publish(event: ProgressEvent) -> None:
            job.record_event(event)
            queue.put_nowait(event)

        def finish_item() -> None:
            nonlocal remaining
            remaining -= 1
            if remaining == 0:
                queue.put_nowait(self._summary_event(job, summarize))

        logger.info(f"Starting batch {job.id} with {len(items)} item(s)")
        tasks = []
        for item in job.items:
            reporter = ItemReporter(item, job.per_item_state[item.item_id].agent_slot, publish)
            task = asyncio.create_task(self._run_item(job, reporter, pipeline, finish_item))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            tasks.append(task)
        return BatchRun(job, queue, tasks)

    async def run_batch(
        self,
        items: Sequence[BatchItem],
        pipeline: ItemPipeline,
        summarize: Optional[Summarizer] = None,
    ) -> AsyncIterator[ProgressEvent]:
        """Launch the batch and yield its events through the final summary."""
        run = self.start(items, pipeline, summarize)
        async for event in run:
            yield event

    async def _run_item(
        self,
        job: BatchJob,
        reporter: ItemReporter,
        pipeline: ItemPipeline,
        finish_item: Callable[[], None],
    ) -> None:
        item = reporter.item
        try:
            reporter.emit(None, f"Agent {reporter.agent_slot} starting {reporter.title}", status="started")
            try:
                result = await pipeline(item, reporter)
            except asyncio.CancelledError:
                self._fail_item(job, reporter, "Cancelled before finishing")
            except Exception as exc:
                error = exc.message if isinstance(exc, TicketflowError) else str(exc)
                self._fail_item(job, reporter, error or type(exc).__name__)
            else:
                job.record_outcome(
                    ItemOutcome(
                        item_id=item.item_id, item_title=item.title, success=True, result=result
                    )
                )
                reporter._send(
                    None,
                    reporter.completion_message or f"Finished {reporter.title}",
                    "completed",
                    reporter.completion_metadata,
                )
        finally:
            finish_item()

    @staticmethod
    def _fail_item(job: BatchJob, reporter: ItemReporter, error: str) -> None:
        item = reporter.item
        logger.error(f"Batch {job.id}: item {item.item_id} failed: {error}")
        job.record_outcome(
            ItemOutcome(item_id=item.item_id, item_title=item.title, success=False, error=error)
        )
        reporter._send(None, f"Failed: {error}", "failed", {"error": error})

    @staticmethod
    def _summary_event(job: BatchJob, summarize: Optional[Summarizer]) -> ProgressEvent:
        completed, failed = job.completed_count, job.failed_count
        metadata: Dict[str, Any] = {
            "completedCount": completed,
            "failedCount": failed,
            "outcomes": {
                item_id: outcome.to_wire() for item_id, outcome in job.outcomes.items()
            },
        }
        if summarize is not None:
            try:
                metadata.update(summarize(job))
            except Exception as exc:
                logger.exception(f"Batch {job.id}: summarizing results failed")
                return ProgressEvent(
                    type="error",
                    message=f"Processed {len(job.items)} item(s) but the summary failed: {exc}",
                    metadata={"completedCount": completed, "failedCount": failed},
                )
        logger.info(
            f"Batch {job.id} finished: {completed} completed, {failed} failed"
        )
        return ProgressEvent(
            type="complete",
            message=f"Processed {len(job.items)} item(s): {completed} completed, {failed} failed",
            metadata=metadata,
        )
