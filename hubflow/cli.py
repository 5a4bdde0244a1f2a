"""Command line interface for inspecting hubflow definitions and instances."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from pydantic import ValidationError

from hubflow.config import HubflowConfig, load_config
from hubflow.contracts import WorkflowStatus
from hubflow.errors import HubflowError
from hubflow.persistence import export_instance, get_store, import_instance
from hubflow.registry import (
    WorkflowDefinitionRegistry,
    definition_problems,
    load_definitions,
    register_catalog,
    register_default_workflows,
)
from hubflow.reporting import instance_statistics

app = typer.Typer(help="CLI for hubflow workflows")

# Command groups
definitions_app = typer.Typer(help="Commands for browsing workflow definitions")
instances_app = typer.Typer(help="Commands for inspecting stored workflow instances")

app.add_typer(definitions_app, name="definitions")
app.add_typer(instances_app, name="instances")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to a hubflow YAML config file"
    ),
) -> None:
    """hubflow CLI entry point."""
    settings = load_config(str(config) if config else None)
    logging.basicConfig(level=settings.engine.log_level.upper())
    ctx.obj = settings


def _settings(ctx: typer.Context) -> HubflowConfig:
    return ctx.obj if isinstance(ctx.obj, HubflowConfig) else load_config()


def _registry(settings: HubflowConfig) -> WorkflowDefinitionRegistry:
    registry = WorkflowDefinitionRegistry()
    if settings.load_default_workflows:
        register_default_workflows(registry)
    for path in settings.catalog_paths:
        register_catalog(registry, path)
    return registry


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# Definitions


@definitions_app.command("list")
def definitions_list(
    ctx: typer.Context,
    category: Optional[str] = typer.Option(None, help="Only show this category"),
) -> None:
    """
    List registered workflow definitions.

    Example:
        hubflow definitions list
        hubflow definitions list --category provider
        # Output: provider_setup    provider    Email Provider Setup
    """
    registry = _registry(_settings(ctx))
    definitions = registry.list_by_category(category) if category else registry.list()
    if not definitions:
        typer.echo("No workflow definitions found")
        return
    for definition in definitions:
        typer.echo(f"{definition.id}\t{definition.category}\t{definition.name}")


@definitions_app.command("show")
def definitions_show(ctx: typer.Context, definition_id: str) -> None:
    """Show a definition and its steps with their dependencies."""

    registry = _registry(_settings(ctx))
    try:
        definition = registry.get(definition_id)
    except HubflowError as exc:
        _fail(exc.message)
    typer.echo(f"{definition.name} ({definition.id}, v{definition.version})")
    if definition.description:
        typer.echo(definition.description)
    typer.echo(
        f"Category: {definition.category}  Priority: {definition.priority}  "
        f"Automation: {definition.automation_level}  "
        f"Estimated: {definition.estimated_time_minutes} min"
    )
    for step in definition.steps:
        deps = f" <- {', '.join(step.dependencies)}" if step.dependencies else ""
        entry = " (entry)" if step.id == definition.entry_step_id else ""
        typer.echo(f"- {step.id} [{step.type.value}] {step.label}{deps}{entry}")


@definitions_app.command("suggest")
def definitions_suggest(
    ctx: typer.Context,
    context: str = typer.Option("{}", help="JSON object describing the current context"),
) -> None:
    """
    Suggest workflows for a context, highest priority first.

    Example:
        hubflow definitions suggest --context '{"provider": {"connected": false}}'
    """
    try:
        snapshot = json.loads(context)
    except json.JSONDecodeError as exc:
        _fail(f"Invalid context JSON: {exc}")
    if not isinstance(snapshot, dict):
        _fail("Context must be a JSON object")
    registry = _registry(_settings(ctx))
    suggestions = registry.suggest(snapshot)
    if not suggestions:
        typer.echo("No matching workflows")
        return
    for definition in suggestions:
        typer.echo(
            f"{definition.id}\tpriority={definition.priority}\t"
            f"{definition.estimated_time_minutes} min"
        )


@definitions_app.command("validate")
def definitions_validate(path: Path) -> None:
    """Check a YAML workflow catalog for structural problems."""

    if not path.exists():
        _fail("Specified path does not exist")
    try:
        definitions = load_definitions(path)
    except (yaml.YAMLError, ValidationError, ValueError) as exc:
        _fail(f"Could not parse {path}: {exc}")

    failed = False
    seen: set[str] = set()
    for definition in definitions:
        problems = definition_problems(definition)
        if definition.id in seen:
            problems.append("duplicate definition id")
        seen.add(definition.id)
        if problems:
            failed = True
            typer.secho(f"{definition.id}: INVALID", fg=typer.colors.RED)
            for problem in problems:
                typer.echo(f"  - {problem}")
        else:
            typer.echo(f"{definition.id}: ok")
    if failed:
        raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# Instances


@instances_app.command("list")
def instances_list(
    ctx: typer.Context,
    status: Optional[WorkflowStatus] = typer.Option(None, help="Filter by status"),
    user: Optional[str] = typer.Option(None, help="Only this user's instances"),
) -> None:
    """
    List stored workflow instances with their status.

    Example:
        hubflow instances list --status active
        # Output: wf-3f2a...    provider_setup    active    verify_connection
    """
    store = get_store(config=_settings(ctx))
    if user is not None:
        instances = asyncio.run(store.load_for_user(user))
        if status is not None:
            instances = [i for i in instances if i.status == status]
    else:
        instances = asyncio.run(store.list_instances(status))
    if not instances:
        typer.echo("No workflow instances found")
        return
    for instance in instances:
        typer.echo(
            f"{instance.id}\t{instance.definition_id}\t{instance.status.value}\t"
            f"{instance.current_step_id}"
        )


@instances_app.command("show")
def instances_show(ctx: typer.Context, instance_id: str) -> None:
    """Show an instance's status and step-by-step progress."""

    store = get_store(config=_settings(ctx))
    try:
        instance = asyncio.run(store.load(instance_id))
    except HubflowError as exc:
        _fail(exc.message)
    typer.echo(f"Workflow {instance.id} ({instance.definition_id}): {instance.status.value}")
    if instance.user_id:
        typer.echo(f"User: {instance.user_id}")
    if instance.error:
        typer.echo(f"Error: {instance.error.code} {instance.error.message}")
    if instance.result:
        typer.echo(f"Result: {instance.result.type} {instance.result.message}")
    for step in instance.steps:
        marker = "*" if step.id == instance.current_step_id else "-"
        typer.echo(
            f"{marker} {step.id}: {step.status.value}"
            + (f" (retries: {step.retry_count})" if step.retry_count else "")
            + (
                f" ({step.started_at} -> {step.completed_at})"
                if step.started_at or step.completed_at
                else ""
            )
        )


@instances_app.command("stats")
def instances_stats(ctx: typer.Context) -> None:
    """Print aggregate statistics for stored instances as JSON."""

    store = get_store(config=_settings(ctx))
    instances = asyncio.run(store.list_instances())
    typer.echo(json.dumps(instance_statistics(instances), indent=2))


@instances_app.command("cleanup")
def instances_cleanup(
    ctx: typer.Context,
    days: Optional[int] = typer.Option(
        None, help="Retention in days (defaults to completed_retention_days)"
    ),
) -> None:
    """Delete finished instances older than the retention period."""

    settings = _settings(ctx)
    retention = days if days is not None else settings.engine.completed_retention_days
    store = get_store(config=settings)
    removed = asyncio.run(store.delete_older_than(timedelta(days=retention)))
    typer.echo(f"Removed {removed} workflow instance(s)")


@instances_app.command("export")
def instances_export(
    ctx: typer.Context,
    instance_id: str,
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to file"),
) -> None:
    """Export one instance as a JSON document."""

    store = get_store(config=_settings(ctx))
    try:
        document = asyncio.run(export_instance(store, instance_id))
    except HubflowError as exc:
        _fail(exc.message)
    text = json.dumps(document, indent=2)
    if output is None:
        typer.echo(text)
    else:
        output.write_text(text, encoding="utf-8")
        typer.echo(f"Exported {instance_id} to {output}")


@instances_app.command("import")
def instances_import(ctx: typer.Context, paths: List[Path]) -> None:
    """Import instances from JSON export documents."""

    store = get_store(config=_settings(ctx))
    for path in paths:
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
            instance = asyncio.run(import_instance(store, document))
        except (OSError, json.JSONDecodeError, ValidationError, ValueError) as exc:
            _fail(f"Could not import {path}: {exc}")
        typer.echo(f"Imported {instance.id}")


if __name__ == "__main__":
    app()
