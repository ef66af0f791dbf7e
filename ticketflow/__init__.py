"""ticketflow: suspendable ticket-generation workflows with streamed batch progress."""

from .batch import BatchOrchestrator, BatchRun, ItemReporter
from .bulk import BulkEnrichmentService, BulkFinalizationService
from .channels import get_channel
from .contracts import (
    BatchItem,
    BatchJob,
    Finding,
    ProgressEvent,
    Question,
    WorkflowInstance,
    WorkflowStatus,
)
from .execute import StepExecutor
from .persistence import get_repository
from .readiness import ReadinessGate, ResourceStatus
from .steps import StepContext, StepResult, StepSpec
from .workflow import WorkflowEngine

__version__ = "0.1.0"
__all__ = [
    "BatchItem",
    "BatchJob",
    "BatchOrchestrator",
    "BatchRun",
    "BulkEnrichmentService",
    "BulkFinalizationService",
    "Finding",
    "ItemReporter",
    "ProgressEvent",
    "Question",
    "ReadinessGate",
    "ResourceStatus",
    "StepContext",
    "StepExecutor",
    "StepResult",
    "StepSpec",
    "WorkflowEngine",
    "WorkflowInstance",
    "WorkflowStatus",
    "get_channel",
    "get_repository",
]
