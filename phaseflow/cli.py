"""Command line interface for inspecting and managing phaseflow state."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer

from phaseflow.cli_utils.definitions import load_definition, looks_like_definition
from phaseflow.cli_utils.fs import _format_path, _iter_definition_files
from phaseflow.errors import ConfigurationError, InvalidTransitionError, VersionLockedError
from phaseflow.graph import validate
from phaseflow.persistence import (
    Checkpoint,
    InstanceStatus,
    Transition,
    get_repository,
)

app = typer.Typer(help="CLI for phaseflow workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
instance_app = typer.Typer(help="Commands for inspecting workflow instances")

app.add_typer(workflow_app, name="workflow")
app.add_typer(instance_app, name="instance")


@app.callback()
def main() -> None:
    """phaseflow CLI entry point."""
    pass


@workflow_app.command("validate")
def workflow_validate(path: Path) -> None:
    """
    Validate a workflow definition file without storing it.

    Checks for dangling edges, cycles outside loop-back edges, unreachable
    phases, malformed conditions and a missing start phase.

    Example:
        phaseflow workflow validate ./workflows/article.yaml
        # Output: article@1.0.0 is valid (5 phases, 6 edges)
        #         Start phases: outline
    """
    try:
        definition = load_definition(path)
        index = validate(definition)
    except ConfigurationError as exc:
        typer.secho(f"Invalid: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except OSError as exc:
        typer.secho(f"Cannot read {path}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    typer.echo(
        f"{definition.id}@{definition.version} is valid "
        f"({len(definition.phases)} phases, {len(definition.edges)} edges)"
    )
    typer.echo(f"Start phases: {', '.join(index.start)}")


@workflow_app.command("register")
def workflow_register(path: Path) -> None:
    """
    Validate a workflow definition file and store it in the repository.

    Fails when the same version is locked by a running instance and the
    content differs.

    Example:
        phaseflow workflow register ./workflows/article.yaml
    """
    try:
        definition = load_definition(path)
        validate(definition)
    except ConfigurationError as exc:
        typer.secho(f"Invalid: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    repo = get_repository()
    try:
        asyncio.run(repo.save_definition(definition))
    except VersionLockedError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Registered {definition.id}@{definition.version}")


@workflow_app.command("list")
def workflow_list() -> None:
    """
    List stored workflow definitions.

    Example:
        phaseflow workflow list
        # Output: article    1.0.0    Article pipeline
    """
    repo = get_repository()
    definitions = asyncio.run(repo.list_definitions())
    if not definitions:
        typer.echo("No workflow definitions found")
        return
    for definition in definitions:
        typer.echo(f"{definition.id}\t{definition.version}\t{definition.name}")


@workflow_app.command("discover")
def workflow_discover(
    path: Optional[Path] = None,
    respect_gitignore: bool = typer.Option(
        True, help="Skip files and directories specified in .gitignore files"
    ),
) -> None:
    """
    Find workflow definition files (YAML or JSON) below a directory.

    Example:
        phaseflow workflow discover --path ./workflows
        # Output: ./article.yaml - article@1.0.0 (valid)
    """
    search_path = (path or Path.cwd()).expanduser().resolve()
    typer.echo(f"Discovering workflow definitions in: {search_path}")

    if not search_path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    found = 0
    for candidate in _iter_definition_files(search_path, respect_gitignore=respect_gitignore):
        if not looks_like_definition(candidate):
            continue
        found += 1
        display_path = _format_path(candidate, search_path)
        try:
            definition = load_definition(candidate)
            validate(definition)
        except ConfigurationError as exc:
            typer.secho(f"{display_path} - invalid: {exc}", fg=typer.colors.RED)
            continue
        typer.echo(f"{display_path} - {definition.id}@{definition.version} (valid)")

    if not found:
        typer.echo("No workflow definitions discovered.")


@instance_app.command("list")
def instance_list(
    status: Optional[InstanceStatus] = typer.Option(None, help="Only show this status"),
) -> None:
    """
    List workflow instances with their status.

    Example:
        phaseflow instance list --status paused
        # Output: 3f2c...    article@1.0.0    paused
    """
    repo = get_repository()
    instances = asyncio.run(repo.list_instances(status=status))
    if not instances:
        typer.echo("No instances found")
        return
    for instance in instances:
        typer.echo(
            f"{instance.id}\t{instance.workflow_id}@{instance.workflow_version}\t"
            f"{instance.status.value}"
        )


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """
    Show an instance with its phase executions and gate results.

    Example:
        phaseflow instance show 3f2c...
        # Output: Instance 3f2c... (article@1.0.0): paused
        #         Blocked: review
        #         - outline #1: complete (attempts=1)
        #         - review #1: blocked
    """

    async def _load():
        repo = get_repository()
        instance = await repo.get_instance(instance_id)
        if instance is None:
            return None, [], []
        executions = await repo.list_phase_executions(instance_id)
        gates = await repo.list_gate_results(instance_id)
        return instance, executions, gates

    instance, executions, gates = asyncio.run(_load())
    if instance is None:
        typer.echo("Instance not found")
        raise typer.Exit(code=1)

    typer.echo(
        f"Instance {instance.id} ({instance.workflow_id}@{instance.workflow_version}): "
        f"{instance.status.value}"
    )
    if instance.parent_instance_id:
        typer.echo(f"Parent: {instance.parent_instance_id} (phase {instance.parent_phase_id})")
    if instance.active_phases:
        typer.echo(f"Active: {', '.join(instance.active_phases)}")
    if instance.blocked_phases:
        typer.echo(f"Blocked: {', '.join(instance.blocked_phases)}")
    if instance.error:
        typer.secho(f"Error: {instance.error}", fg=typer.colors.RED)
    for execution in executions:
        typer.echo(
            f"- {execution.phase_id} #{execution.iteration}: {execution.status.value}"
            + (f" (attempts={execution.attempts})" if execution.attempts else "")
            + (f" error={execution.error}" if execution.error else "")
        )
    for gate in gates:
        score = f" score={gate.score}" if gate.score is not None else ""
        typer.echo(f"  gate {gate.phase_id}: {gate.result.value}{score}")


@instance_app.command("checkpoints")
def instance_checkpoints(
    instance_id: str,
    show_context: bool = typer.Option(False, help="Print the context snapshot of each checkpoint"),
) -> None:
    """
    List the checkpoints recorded for an instance in sequence order.

    Example:
        phaseflow instance checkpoints 3f2c... --show-context
    """
    repo = get_repository()
    checkpoints = asyncio.run(repo.list_checkpoints(instance_id))
    if not checkpoints:
        typer.echo("No checkpoints found")
        return
    for checkpoint in checkpoints:
        typer.echo(
            f"{checkpoint.sequence}\t{checkpoint.status.value}\t{checkpoint.phase_id or '-'}\t"
            f"active={','.join(checkpoint.active_phases)}"
        )
        if show_context:
            typer.echo(json.dumps(checkpoint.context, indent=2, default=str))


@instance_app.command("cancel")
def instance_cancel(instance_id: str) -> None:
    """
    Mark an instance cancelled in the repository and release its version locks.

    This only updates stored state; an engine driving the instance in another
    process notices the change on its next commit.

    Example:
        phaseflow instance cancel 3f2c...
    """

    async def _cancel():
        repo = get_repository()
        instance = await repo.get_instance(instance_id)
        if instance is None:
            return None
        if instance.is_terminal:
            raise InvalidTransitionError(
                instance.status.value, InstanceStatus.CANCELLED.value, instance.id
            )
        expected = instance.revision
        instance.transition(InstanceStatus.CANCELLED)
        latest = await repo.latest_checkpoint(instance_id)
        checkpoint = Checkpoint(
            instance_id=instance.id,
            sequence=(latest.sequence if latest else 0) + 1,
            status=instance.status,
            context=instance.context.snapshot(),
            context_sequence=instance.context.last_sequence,
            active_phases=instance.active_phases,
            blocked_phases=instance.blocked_phases,
        )
        await repo.commit_transition(
            Transition(instance=instance, expected_revision=expected, checkpoint=checkpoint)
        )
        await repo.release_locks(instance.id)
        return instance

    try:
        instance = asyncio.run(_cancel())
    except InvalidTransitionError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if instance is None:
        typer.echo("Instance not found")
        raise typer.Exit(code=1)
    typer.echo(f"Instance {instance.id} cancelled")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
