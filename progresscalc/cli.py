"""ProgressCalc CLI - operator commands for templates and recalculation.

Commands:
- init: Initialize database schema
- seed-templates: Load system templates from YAML
- show-template: Show the effective template for a component type
- preview: Count components an apply-to-existing update would touch
- update-template: Change milestone weights for a project
- recalculate: Recompute percent complete for a component type
- clone-templates: Copy system templates into a project
- history: Show template change history
- summary: Show a project's template overview
- web serve: Run the JSON API
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from progresscalc.config import get_config
from progresscalc.core.logging import configure_logging
from progresscalc.db.connection import close_db, get_session, init_db
from progresscalc.exceptions import ProgressCalcError, WeightValidationError
from progresscalc.models import Actor, MilestoneWeight, Template
from progresscalc.templates.seed import seed_system_templates
from progresscalc.templates.service import TemplateService

app = typer.Typer(
    name="progresscalc",
    help="ProgressCalc - Milestone weight templates and component progress",
    no_args_is_help=True,
)
web_cli = typer.Typer(help="Web UI / API")
app.add_typer(web_cli, name="web")

console = Console()

T = TypeVar("T")

ACTOR_OPTION = typer.Option("cli", "--actor", help="User id recorded in the audit log")
ROLE_OPTION = typer.Option("admin", "--role", help="Role of the acting user")


@app.callback()
def setup():
    config = get_config()
    configure_logging(config.log_level, config.log_format)


def _run(work: Callable[[], Awaitable[T]]) -> T:
    """Run an async command body, reporting domain errors and closing the engine."""

    async def _wrapped() -> T:
        try:
            return await work()
        finally:
            await close_db()

    try:
        return asyncio.run(_wrapped())
    except WeightValidationError as e:
        console.print(f"[red]✗[/red] Invalid weights: {e}")
        raise typer.Exit(code=1) from e
    except ProgressCalcError as e:
        label = "retry" if e.retryable else "error"
        console.print(f"[red]✗[/red] {e} [dim]({label})[/dim]")
        raise typer.Exit(code=1) from e


def _parse_weights(values: list[str]) -> list[MilestoneWeight]:
    weights = []
    for value in values:
        name, sep, weight = value.rpartition("=")
        if not sep or not name.strip():
            raise typer.BadParameter(f"expected NAME=WEIGHT, got {value!r}")
        try:
            parsed: Any = int(weight)
        except ValueError:
            raise typer.BadParameter(f"weight for {name!r} must be an integer") from None
        weights.append(MilestoneWeight(milestone_name=name.strip(), weight=parsed))
    return weights


def _print_template(template: Template) -> None:
    scope = template.scope.value
    title = f"{template.component_type} ({scope} v{template.version}, {template.workflow_type.value})"
    table = Table(title=title)
    table.add_column("#", justify="right")
    table.add_column("Milestone")
    table.add_column("Weight", justify="right")
    table.add_column("Partial")
    table.add_column("Welder")

    for m in template.milestones:
        table.add_row(
            str(m.order),
            m.name,
            str(m.weight),
            "yes" if m.is_partial else "",
            "yes" if m.requires_welder else "",
        )
    console.print(table)
    console.print(f"Total weight: {template.total_weight}  Revision: {template.revision}")


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables"),
):
    """Initialize database schema."""
    config = get_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")
    if drop:
        console.print("[yellow]Dropping existing tables...[/yellow]")

    _run(lambda: init_db(drop=drop))
    console.print("[bold green]✓[/bold green] Database initialized")


@app.command(name="seed-templates")
def seed_templates_cmd(
    path: Path | None = typer.Option(None, "--file", "-f", help="Seed YAML file"),
):
    """Load system templates from YAML (types already present are skipped)."""
    seed_path = path or get_config().seed_templates_path
    console.print(f"[bold]Seeding system templates:[/bold] {seed_path}")

    async def _seed():
        async with get_session() as session:
            return await seed_system_templates(session, seed_path)

    result = _run(_seed)
    for component_type in result.created:
        console.print(f"  [green]✓[/green] {component_type}")
    if result.skipped:
        console.print(f"  [dim]{len(result.skipped)} already present: {', '.join(result.skipped)}[/dim]")
    console.print(f"\n[bold green]✓[/bold green] {len(result.created)} template(s) created")


@app.command(name="show-template")
def show_template_cmd(
    project_id: str = typer.Argument(..., help="Project ID"),
    component_type: str = typer.Argument(..., help="Component type"),
):
    """Show the effective template for a component type."""

    async def _show():
        async with get_session() as session:
            service = TemplateService(session)
            template = await service.get_effective_template(project_id, component_type)
            last = await service.get_last_change(project_id, component_type)
            return template, last

    template, last = _run(_show)
    _print_template(template)
    if last is not None:
        console.print(f"Last modified by {last.actor} at {last.timestamp:%Y-%m-%d %H:%M}")


@app.command()
def preview(
    project_id: str = typer.Argument(..., help="Project ID"),
    component_type: str = typer.Argument(..., help="Component type"),
):
    """Count components an apply-to-existing update would recalculate."""

    async def _preview():
        async with get_session() as session:
            return await TemplateService(session).preview_affected_count(project_id, component_type)

    count = _run(_preview)
    console.print(f"{count} {component_type} component(s) in {project_id} would be recalculated")


@app.command(name="update-template")
def update_template_cmd(
    project_id: str = typer.Argument(..., help="Project ID"),
    component_type: str = typer.Argument(..., help="Component type"),
    weight: list[str] = typer.Option(..., "--weight", "-w", help="NAME=WEIGHT (repeat per milestone)"),
    apply_to_existing: bool = typer.Option(
        False, "--apply-to-existing", help="Recalculate existing components"
    ),
    expected_version: int = typer.Option(
        ..., "--expected-version", help="Revision shown by show-template; fails if it has moved"
    ),
    actor_id: str = ACTOR_OPTION,
    role: str = ROLE_OPTION,
):
    """Change milestone weights for a project."""
    weights = _parse_weights(weight)
    actor = Actor(user_id=actor_id, role=role)

    async def _update():
        async with get_session() as session:
            return await TemplateService(session).update_template(
                project_id,
                component_type,
                weights,
                actor,
                apply_to_existing=apply_to_existing,
                expected_version=expected_version,
            )

    result = _run(_update)
    _print_template(result.template)
    console.print(
        f"\n[bold green]✓[/bold green] v{result.previous_version} -> v{result.template.version}"
        f" (audit #{result.audit_id})"
    )
    if result.applied_to_existing:
        console.print(f"  {result.affected_count} component(s) recalculated")


@app.command()
def recalculate(
    project_id: str = typer.Argument(..., help="Project ID"),
    component_type: str = typer.Argument(..., help="Component type"),
):
    """Recompute percent complete for every component of a type."""

    async def _recalculate():
        async with get_session() as session:
            return await TemplateService(session).recalculate_for_template(
                project_id, component_type
            )

    count = _run(_recalculate)
    console.print(f"[bold green]✓[/bold green] {count} component(s) recalculated")


@app.command(name="clone-templates")
def clone_templates_cmd(
    project_id: str = typer.Argument(..., help="Project ID"),
    force: bool = typer.Option(False, "--force", help="Replace existing project templates"),
    actor_id: str = ACTOR_OPTION,
    role: str = ROLE_OPTION,
):
    """Copy system templates into a project."""
    actor = Actor(user_id=actor_id, role=role)

    async def _clone():
        async with get_session() as session:
            return await TemplateService(session).clone_system_templates(
                project_id, actor, force=force
            )

    result = _run(_clone)
    if result.skipped:
        console.print(f"[yellow]⚠[/yellow] {project_id} already has templates (use --force)")
        return
    console.print(
        f"[bold green]✓[/bold green] Cloned {len(result.cloned_types)} template(s): "
        f"{', '.join(result.cloned_types)}"
    )


@app.command()
def history(
    project_id: str = typer.Argument(..., help="Project ID"),
    component_type: str | None = typer.Option(None, "--type", "-t", help="Component type"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries"),
):
    """Show template change history, newest first."""

    async def _history():
        async with get_session() as session:
            return await TemplateService(session).get_history(project_id, component_type, limit)

    changes = _run(_history)
    if not changes:
        console.print("[yellow]No template changes recorded[/yellow]")
        return

    table = Table(title=f"Template changes: {project_id}")
    table.add_column("#", justify="right")
    table.add_column("When")
    table.add_column("Type")
    table.add_column("By")
    table.add_column("Version")
    table.add_column("Applied", justify="right")

    for change in changes:
        table.add_row(
            str(change.id),
            f"{change.timestamp:%Y-%m-%d %H:%M}",
            change.component_type,
            change.actor,
            f"v{change.old_version} -> v{change.new_version}",
            str(change.affected_component_count) if change.applied_to_existing else "-",
        )
    console.print(table)


@app.command()
def summary(
    project_id: str = typer.Argument(..., help="Project ID"),
):
    """Show the effective template for every component type."""

    async def _summary():
        async with get_session() as session:
            return await TemplateService(session).get_template_summary(project_id)

    result = _run(_summary)
    table = Table(title=f"Templates: {project_id}")
    table.add_column("Type")
    table.add_column("Scope")
    table.add_column("Version", justify="right")
    table.add_column("Milestones", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Workflow")

    for line in result.component_types:
        table.add_row(
            line.component_type,
            line.scope.value,
            str(line.version),
            str(line.milestone_count),
            str(line.total_weight),
            line.workflow_type.value,
        )
    console.print(table)
    if not result.has_templates:
        console.print("[dim]No project overrides; using system templates[/dim]")


@web_cli.command("serve")
def web_serve(
    host: str = typer.Option("0.0.0.0", help="Host to bind"),
    port: int = typer.Option(8001, help="Port to bind"),
    reload: bool = typer.Option(False, help="Enable autoreload (dev only)"),
):
    """Run the ProgressCalc JSON API."""
    import uvicorn

    typer.echo(f"Starting ProgressCalc API on http://{host}:{port}")
    uvicorn.run(
        "progresscalc.web.app:create_app", host=host, port=port, reload=reload, factory=True
    )


def main():
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
