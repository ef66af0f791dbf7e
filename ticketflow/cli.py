"""Command line interface for inspecting workflows and running bulk jobs."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer

from ticketflow import get_channel, get_repository
from ticketflow.config import load_config
from ticketflow.contracts import ProgressEvent
from ticketflow.errors import TicketflowError
from ticketflow.stream import ProgressStreamClient
from ticketflow.subscriber import WorkflowSubscriber

app = typer.Typer(help="CLI for ticketflow workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for inspecting workflows")
bulk_app = typer.Typer(help="Commands for bulk ticket operations")

app.add_typer(workflow_app, name="workflow")
app.add_typer(bulk_app, name="bulk")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level (DEBUG, INFO, WARNING, ERROR)"),
) -> None:
    """ticketflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@workflow_app.command("list")
def workflow_list() -> None:
    """
    List all workflows with their current status.

    Example:
        ticketflow workflow list
        # Output: 3f0c...    TCK-12    suspended_questions
    """
    repo = get_repository(load_config())
    workflows = asyncio.run(repo.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.subject_id}\t{wf.status.value}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """
    Show detailed information for a specific workflow.

    Displays the run status, each step with its status, and anything
    waiting for review (findings or questions).

    Args:
        workflow_id: Workflow ID to inspect (get from 'workflow list')
    """
    repo = get_repository(load_config())
    wf = asyncio.run(repo.get_workflow(workflow_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.id} ({wf.subject_id}): {wf.status.value}")
    if wf.failure_reason:
        typer.echo(f"Failure: {wf.failure_reason}")
    for index, step in enumerate(wf.steps):
        marker = ">" if index == wf.current_step_index else "-"
        note = step.error or step.detail
        typer.echo(f"{marker} {step.id}: {step.status.value}" + (f" ({note})" if note else ""))
    for finding in wf.findings:
        typer.echo(f"  [{finding.severity}] {finding.category}: {finding.description}")
    for question in wf.questions:
        typer.echo(f"  ? {question.text} (default: {question.default_answer or '-'})")


@workflow_app.command("watch")
def workflow_watch(
    workflow_id: str,
    lifespan: Optional[float] = typer.Option(None, help="Stop watching after this many seconds"),
) -> None:
    """Print each published snapshot until the run settles."""

    async def _watch() -> None:
        channel = get_channel(load_config())
        await channel.connect()
        try:
            subscriber = WorkflowSubscriber(channel, workflow_id)
            async for wf in subscriber.watch(lifespan, until_settled=True):
                step = wf.current_step
                current = f" at {step.id}" if step is not None else ""
                typer.echo(f"rev {wf.revision}: {wf.status.value}{current}")
        finally:
            await channel.disconnect()

    asyncio.run(_watch())


def _print_event(event: ProgressEvent) -> None:
    if event.type == "progress":
        slot = f"[agent {event.agent_slot}] " if event.agent_slot else ""
        typer.echo(f"{slot}{event.item_title or event.item_id}: {event.status} - {event.message}")
    elif event.type == "complete":
        typer.secho(event.message or "Done", fg=typer.colors.GREEN)


def _run_stream(coro_factory, analysis: bool = False) -> ProgressEvent:
    config = load_config()
    idle_timeout = (
        config.stream.analysis_idle_timeout if analysis else config.stream.batch_idle_timeout
    )

    async def _run() -> ProgressEvent:
        async with ProgressStreamClient(config.api_url, idle_timeout=idle_timeout) as client:
            return await coro_factory(client)

    try:
        return asyncio.run(_run())
    except TicketflowError as exc:
        typer.secho(exc.message, fg=typer.colors.RED)
        raise typer.Exit(code=1)


@bulk_app.command("enrich")
def bulk_enrich(item_ids: List[str]) -> None:
    """
    Analyze tickets and generate clarifying questions in parallel.

    Example:
        ticketflow bulk enrich TCK-1 TCK-2 TCK-3
    """
    final = _run_stream(
        lambda client: client.enrich(item_ids, on_event=_print_event), analysis=True
    )
    errors = (final.metadata or {}).get("errors") or {}
    for item_id, error in errors.items():
        typer.secho(f"{item_id}: {error}", fg=typer.colors.RED)
    if errors:
        raise typer.Exit(code=1)


@bulk_app.command("finalize")
def bulk_finalize(answers_path: Path) -> None:
    """
    Generate and save specifications from a JSON file of answers.

    The file holds a list of ``{"itemId", "questionId", "answer"}`` objects.
    """
    if not answers_path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        answers = json.loads(answers_path.read_text())
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON in {answers_path}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    final = _run_stream(lambda client: client.finalize(answers, on_event=_print_event))
    failed = [r for r in (final.metadata or {}).get("results", []) if not r.get("success")]
    for result in failed:
        typer.secho(f"{result.get('itemId')}: {result.get('error')}", fg=typer.colors.RED)
    if failed:
        raise typer.Exit(code=1)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
