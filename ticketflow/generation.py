"""Ticket generation pipeline.

The AI work itself sits behind :class:`ContentGenerator`; this module only
decides the order of steps, which ones pause for a reviewer, which ones
need the repository index, and what a step falls back to when it cannot
run.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from .contracts import Finding, Question
from .steps import StepContext, StepResult, StepSpec


class ContentGenerator(Protocol):
    """Port to the content-generation backend."""

    async def extract_intent(self, subject_id: str) -> Dict[str, Any]:
        """Return ``{"intent": str, "keywords": list[str]}`` for the ticket."""

    async def detect_type(self, intent: str) -> str:
        """Classify the ticket (FEATURE, BUG, REFACTOR, CHORE, SPIKE)."""

    async def validate(self, subject_id: str, resource_id: Optional[str]) -> List[Finding]:
        """Run code-aware validation against the indexed repository."""

    async def query_repository(self, resource_id: str, query: str) -> List[Dict[str, str]]:
        """Return ``[{"path": ..., "snippet": ...}]`` relevant to ``query``."""

    async def gather_api_context(self, subject_id: str, intent: str) -> str:
        """Collect context about external APIs the ticket touches."""

    async def generate_draft(
        self, intent: str, ticket_type: str, repo_context: str, api_context: str
    ) -> Dict[str, List[str]]:
        """Return acceptance criteria, assumptions and repo paths."""

    async def generate_questions(
        self, findings: List[Finding], draft: Dict[str, List[str]]
    ) -> List[Question]:
        """Turn gaps in the draft into clarifying questions."""

    async def refine_draft(
        self, draft: Dict[str, List[str]], answers: Dict[str, str]
    ) -> Dict[str, List[str]]:
        """Fold the reviewer's answers back into the draft."""

    async def finalize(self, subject_id: str, content: Dict[str, Any]) -> None:
        """Persist the generated content onto the ticket."""


_DRAFT_KEYS = ("acceptance_criteria", "assumptions", "repo_paths")


def _draft_from(state: Dict[str, Any]) -> Dict[str, List[str]]:
    return {key: list(state.get(key) or []) for key in _DRAFT_KEYS}


def build_ticket_generation_steps(generator: ContentGenerator) -> List[StepSpec]:
    """Return the ordered steps of the ticket generation workflow."""

    async def extract_intent(ctx: StepContext) -> StepResult:
        result = await generator.extract_intent(ctx.subject_id)
        return StepResult(
            output={
                "intent": result.get("intent", ""),
                "keywords": list(result.get("keywords") or []),
            }
        )

    async def detect_type(ctx: StepContext) -> StepResult:
        ticket_type = await generator.detect_type(ctx.state.get("intent", ""))
        return StepResult(output={"type": ticket_type}, detail=f"Detected {ticket_type}")

    async def preflight_validation(ctx: StepContext) -> StepResult:
        findings = await generator.validate(ctx.subject_id, ctx.resource_id)
        critical = [f for f in findings if f.severity == "critical"]
        return StepResult(
            output={"findings": [f.model_dump(mode="json") for f in findings]},
            # Only critical findings stop the run for review.
            findings=findings if critical else [],
            detail=f"{len(findings)} finding(s), {len(critical)} critical",
        )

    async def gather_repo_context(ctx: StepContext) -> StepResult:
        state = ctx.state
        query = " ".join(state.get("keywords") or []) or state.get("intent") or ctx.subject_id
        results = await generator.query_repository(ctx.resource_id, query)
        repo_context = "\n\n".join(f"{r['path']}:\n{r['snippet']}" for r in results)
        return StepResult(
            output={"repo_context": repo_context},
            detail=f"{len(results)} relevant file(s)",
        )

    async def gather_api_context(ctx: StepContext) -> StepResult:
        api_context = await generator.gather_api_context(
            ctx.subject_id, ctx.state.get("intent", "")
        )
        return StepResult(output={"api_context": api_context})

    async def draft_ticket(ctx: StepContext) -> StepResult:
        state = ctx.state
        draft = await generator.generate_draft(
            state.get("intent", ""),
            state.get("type") or "FEATURE",
            state.get("repo_context", ""),
            state.get("api_context", ""),
        )
        return StepResult(output=_draft_from(draft))

    async def generate_questions(ctx: StepContext) -> StepResult:
        findings = [Finding.model_validate(f) for f in ctx.state.get("findings") or []]
        questions = await generator.generate_questions(findings, _draft_from(ctx.state))
        return StepResult(
            output={"question_count": len(questions)},
            questions=questions,
        )

    async def refine_draft(ctx: StepContext) -> StepResult:
        if not ctx.answers:
            return StepResult(detail="No answers to apply")
        refined = await generator.refine_draft(_draft_from(ctx.state), dict(ctx.answers))
        return StepResult(output=_draft_from(refined))

    async def finalize(ctx: StepContext) -> StepResult:
        state = ctx.state
        content = {
            "type": state.get("type"),
            **_draft_from(state),
            "findings": state.get("findings") or [],
            "answers": dict(ctx.answers),
        }
        await generator.finalize(ctx.subject_id, content)
        return StepResult(detail="Saved generated content")

    return [
        StepSpec("extract_intent", "Extract intent", extract_intent),
        StepSpec("detect_type", "Detect ticket type", detect_type),
        StepSpec(
            "preflight_validation",
            "Validate against the codebase",
            preflight_validation,
            requires_resource=True,
            degraded=lambda: StepResult(output={"findings": []}),
        ),
        StepSpec(
            "gather_repo_context",
            "Gather repository context",
            gather_repo_context,
            requires_resource=True,
            degraded=lambda: StepResult(output={"repo_context": ""}),
        ),
        StepSpec(
            "gather_api_context",
            "Gather API context",
            gather_api_context,
            degraded=lambda: StepResult(output={"api_context": ""}),
        ),
        StepSpec("draft_ticket", "Draft acceptance criteria", draft_ticket),
        StepSpec(
            "generate_questions",
            "Generate clarifying questions",
            generate_questions,
            degraded=lambda: StepResult(output={"question_count": 0}),
        ),
        StepSpec("refine_draft", "Refine draft with answers", refine_draft),
        StepSpec("finalize", "Save ticket", finalize),
    ]
