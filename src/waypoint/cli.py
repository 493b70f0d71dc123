"""Waypoint CLI."""

import asyncio
import uuid
from pathlib import Path

import click
import structlog
import yaml
from pydantic import TypeAdapter, ValidationError
from rich.console import Console
from rich.table import Table

from waypoint.config import get_settings
from waypoint.context import ContextBuilder, SqlEmbeddingPipeline
from waypoint.core.models import TaskDependency
from waypoint.database import crud, get_session_factory, init_db, session_scope
from waypoint.engines import HybridEngine, LegacyEngine
from waypoint.generation import GenerationClient
from waypoint.orchestrator import OrchestrationOutcome, OrchestrationRequest, Orchestrator
from waypoint.tools import build_default_registry
from waypoint.utils.log_setup import configure_logging

console = Console()
logger = structlog.get_logger(__name__)

_overrides_adapter = TypeAdapter(list[TaskDependency])


def load_overrides(path: Path) -> list[TaskDependency]:
    """Read dependency overrides from a YAML or JSON file.

    The file holds either a list of edges or a mapping with a ``dependencies`` list.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or []
    if isinstance(data, dict):
        data = data.get("dependencies") or []
    return _overrides_adapter.validate_python(data)


def build_orchestrator(hybrid: bool | None = None) -> Orchestrator:
    """Wire settings, store, registry, engines and orchestrator together."""
    settings = get_settings()
    if hybrid is not None:
        settings = settings.model_copy(update={"enable_hybrid_loop": hybrid})

    session_factory = get_session_factory(settings.database_url)
    registry = build_default_registry()
    client = GenerationClient(settings=settings)

    return Orchestrator(
        session_factory=session_factory,
        context_builder=ContextBuilder(
            session_factory,
            embedding_pipeline=SqlEmbeddingPipeline(session_factory),
            settings=settings,
        ),
        legacy_engine=LegacyEngine(client, registry, settings),
        hybrid_engine=HybridEngine(client, registry, settings),
        settings=settings,
    )


def print_outcome(outcome: OrchestrationOutcome) -> None:
    style = "green" if outcome.status.value == "completed" else "red"
    console.print(f"[bold]Session:[/bold] {outcome.session_id}")
    console.print(f"[bold]Status:[/bold] [{style}]{outcome.status.value}[/{style}]")
    if outcome.primary_engine:
        fallback = " (fallback)" if outcome.used_fallback else ""
        console.print(f"[bold]Engine:[/bold] {outcome.primary_engine}{fallback}")
    if outcome.status_note:
        console.print(f"[bold]Note:[/bold] {outcome.status_note}")
    if outcome.persistence_error:
        console.print(f"[red]✗ Session was not saved: {outcome.persistence_error}[/red]")

    if outcome.plan is None:
        return

    console.print(f"\n{outcome.plan.synthesis_summary}\n")
    table = Table(title="Prioritized Tasks")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Task ID", style="cyan")
    table.add_column("Confidence", justify="right")
    for rank, task_id in enumerate(outcome.plan.ordered_task_ids, start=1):
        confidence = outcome.plan.confidence_scores.get(task_id)
        table.add_row(str(rank), task_id, f"{confidence:.2f}" if confidence is not None else "-")
    console.print(table)


@click.group()
@click.version_option(package_name="waypoint")
def main():
    """Waypoint - outcome-aligned task prioritization."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)


@main.command(name="init-db")
def init_db_command():
    """Create the database tables."""
    init_db(get_settings().database_url)
    console.print("[green]✓[/green] Database initialized")


@main.command()
@click.argument("outcome_id")
@click.option("--user", "user_id", required=True, help="Owner of the outcome")
@click.option("--reflection", "reflection_ids", multiple=True, help="Active reflection id (repeatable)")
@click.option("--exclude-doc", "excluded_documents", multiple=True, help="Document id to leave out (repeatable)")
@click.option(
    "--overrides",
    "overrides_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML or JSON file with dependency overrides",
)
@click.option("--hybrid/--no-hybrid", default=None, help="Override the hybrid loop feature flag")
def prioritize(
    outcome_id: str,
    user_id: str,
    reflection_ids: tuple[str, ...],
    excluded_documents: tuple[str, ...],
    overrides_file: Path | None,
    hybrid: bool | None,
):
    """Prioritize tasks against OUTCOME_ID and print the plan."""
    try:
        overrides = load_overrides(overrides_file) if overrides_file else []
    except (OSError, yaml.YAMLError, ValidationError) as e:
        console.print(f"[red]✗ Invalid overrides file: {e}[/red]")
        raise SystemExit(1)

    orchestrator = build_orchestrator(hybrid)
    session_id = str(uuid.uuid4())
    with session_scope(orchestrator.session_factory) as session:
        crud.create_agent_session(session, session_id, user_id, outcome_id)

    request = OrchestrationRequest(
        session_id=session_id,
        user_id=user_id,
        outcome_id=outcome_id,
        active_reflection_ids=list(reflection_ids) or None,
        excluded_document_ids=list(excluded_documents),
        dependency_overrides=overrides,
    )

    console.print(f"[bold green]Prioritizing outcome {outcome_id}...[/bold green]")
    try:
        outcome = asyncio.run(orchestrator.orchestrate(request))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        raise SystemExit(130)

    print_outcome(outcome)
    if outcome.status.value != "completed":
        raise SystemExit(1)


@main.command(name="show-session")
@click.argument("session_id")
def show_session(session_id: str):
    """Print the status, note and plan of SESSION_ID."""
    factory = get_session_factory(get_settings().database_url)
    with session_scope(factory) as session:
        record = crud.get_agent_session(session, session_id)
        if record is None:
            console.print(f"[red]✗ Session not found: {session_id}[/red]")
            raise SystemExit(1)
        status, note, plan = record.status, record.status_note, record.prioritized_plan

    console.print(f"[bold]Session:[/bold] {session_id}")
    console.print(f"[bold]Status:[/bold] {status}")
    if note:
        console.print(f"[bold]Note:[/bold] {note}")
    if not plan:
        console.print("[yellow]No plan stored for this session.[/yellow]")
        return

    table = Table(title="Prioritized Tasks")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Task ID", style="cyan")
    for rank, task_id in enumerate(plan.get("ordered_task_ids", []), start=1):
        table.add_row(str(rank), task_id)
    console.print(table)


if __name__ == "__main__":
    main()
