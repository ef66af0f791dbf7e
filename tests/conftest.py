"""Shared fakes for ticketflow tests."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from ticketflow.contracts import Finding, Question
from ticketflow.readiness import ResourceStatus
from ticketflow.utils.retry import RetryPolicy

READY = ResourceStatus(
    exists=True, status="completed", ready=True, message="Index ready (150 files indexed)"
)
INDEXING = ResourceStatus(
    exists=True, status="indexing", ready=False, message="Indexing in progress (75/150 files)"
)
MISSING = ResourceStatus(exists=False, status="failed", ready=False, message="Index not found")


class FakeStatusProvider:
    """Returns queued statuses (the last one repeats) or raises queued errors."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses) or [READY]
        self.calls: List[str] = []

    async def get_status(self, resource_id: str) -> ResourceStatus:
        self.calls.append(resource_id)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, BaseException):
            raise response
        return response


class FakeGenerator:
    """In-memory stand-in for the content generation backend."""

    def __init__(
        self,
        findings: Optional[List[Finding]] = None,
        questions: Optional[List[Question]] = None,
        fail: Optional[Dict[str, BaseException]] = None,
    ) -> None:
        self.findings = findings or []
        self.questions = questions or []
        self.fail = fail or {}
        self.calls: List[str] = []
        self.finalized: Dict[str, Dict[str, Any]] = {}

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail:
            raise self.fail[name]

    async def extract_intent(self, subject_id):
        self._record("extract_intent")
        return {"intent": f"Add export for {subject_id}", "keywords": ["export", "csv"]}

    async def detect_type(self, intent):
        self._record("detect_type")
        return "FEATURE"

    async def validate(self, subject_id, resource_id):
        self._record("validate")
        return list(self.findings)

    async def query_repository(self, resource_id, query):
        self._record("query_repository")
        return [{"path": "src/export.py", "snippet": "def export_csv(): ..."}]

    async def gather_api_context(self, subject_id, intent):
        self._record("gather_api_context")
        return "No external APIs"

    async def generate_draft(self, intent, ticket_type, repo_context, api_context):
        self._record("generate_draft")
        return {
            "acceptance_criteria": ["Exports a CSV file"],
            "assumptions": [],
            "repo_paths": ["src/export.py"] if repo_context else [],
        }

    async def generate_questions(self, findings, draft):
        self._record("generate_questions")
        return list(self.questions)

    async def refine_draft(self, draft, answers):
        self._record("refine_draft")
        refined = dict(draft)
        refined["assumptions"] = [f"{qid}: {answer}" for qid, answer in sorted(answers.items())]
        return refined

    async def finalize(self, subject_id, content):
        self._record("finalize")
        self.finalized[subject_id] = content


class FakeBulkBackend:
    """Enrichment and finalization backend keyed by ticket id."""

    def __init__(self, fail: Optional[Dict[str, BaseException]] = None, titles=None) -> None:
        self.fail = fail or {}
        self.titles = titles or {}
        self.analyzed: List[str] = []
        self.specs: Dict[str, Dict[str, str]] = {}
        self.saved: List[str] = []

    async def get_title(self, item_id):
        if item_id in self.titles and isinstance(self.titles[item_id], BaseException):
            raise self.titles[item_id]
        return self.titles.get(item_id, f"Ticket {item_id}")

    async def analyze(self, item_id):
        self.analyzed.append(item_id)
        if item_id in self.fail:
            raise self.fail[item_id]
        return {"summary": f"analysis of {item_id}"}

    async def generate_questions(self, item_id, analysis):
        return [
            Question(id=f"{item_id}-q1", text="Which format?", default_answer="CSV"),
            Question(id=f"{item_id}-q2", text="Who can export?", default_answer="Admins"),
        ]

    async def generate_spec(self, item_id, answers):
        if item_id in self.fail:
            raise self.fail[item_id]
        self.specs[item_id] = dict(answers)
        return {"answers": dict(answers)}

    async def save(self, item_id, spec):
        self.saved.append(item_id)


@pytest.fixture
def fast_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, delay_seconds=0.0)
