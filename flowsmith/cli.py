"""Command line interface for validating and running flowsmith workflows."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, List, Optional

import typer
import yaml

from flowsmith import EngineService, load_config
from flowsmith.agents import MockAgentInvoker
from flowsmith.config import FlowsmithConfig
from flowsmith.contracts import WorkflowInstance, WorkflowStatus
from flowsmith.definition import DefinitionLibrary, load_yaml
from flowsmith.errors import FlowsmithError
from flowsmith.events import get_event_sink
from flowsmith.graph import StepGraph
from flowsmith.persistence import get_state_store

app = typer.Typer(help="CLI for flowsmith workflows")

workflow_app = typer.Typer(help="Commands for workflow definitions")
instance_app = typer.Typer(help="Commands for workflow instances")

app.add_typer(workflow_app, name="workflow")
app.add_typer(instance_app, name="instance")

_state: dict[str, Any] = {}


@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to a flowsmith.yaml configuration file"
    ),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
) -> None:
    """Flowsmith CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["config_path"] = str(config) if config else None


def _config() -> FlowsmithConfig:
    return load_config(_state.get("config_path"))


def _store(config: FlowsmithConfig):
    if _state.get("config_path"):
        return get_state_store(config=config)
    return get_state_store()


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _parse_pairs(pairs: Optional[List[str]], option: str) -> dict[str, Any]:
    """Turn ``key=value`` options into a dict. Values are read as YAML scalars or lists."""
    values: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            _fail(f"{option} expects key=value, got '{pair}'")
        try:
            values[key] = load_yaml(raw) if raw else ""
        except yaml.YAMLError:
            values[key] = raw
    return values


def _build_service(
    config: FlowsmithConfig, mock: bool, library: Optional[DefinitionLibrary] = None
) -> EngineService:
    if mock:
        invoker = MockAgentInvoker()
    elif config.agents:
        from flowsmith.agents.llm import PydanticAgentInvoker

        invoker = PydanticAgentInvoker.from_config(config.agents)
    else:
        _fail("No agents configured; add an 'agents' section or pass --mock")

    service = EngineService.from_config(
        config,
        invoker,
        _store(config),
        event_sink=get_event_sink(config=config),
    )
    if library is not None:
        service.definitions = library
    return service


def _echo_instance(instance: WorkflowInstance, verbose: bool = True) -> None:
    color = {
        WorkflowStatus.COMPLETED: typer.colors.GREEN,
        WorkflowStatus.FAILED: typer.colors.RED,
        WorkflowStatus.PAUSED: typer.colors.YELLOW,
    }.get(instance.status)
    typer.secho(
        f"Instance {instance.instance_id} ({instance.definition_id}): "
        f"{instance.status.value.upper()}",
        fg=color,
    )
    if not verbose:
        return
    typer.echo(f"Current step: {instance.current_step_index}")
    for entry in instance.history:
        label = entry.step_name
        if entry.iteration is not None:
            label += f"[{entry.iteration}]"
        detail = ""
        if entry.route_taken:
            detail = f" -> {entry.route_taken}"
        elif entry.error:
            detail = f" ({entry.error})"
        elif entry.artifacts:
            detail = f" creates {', '.join(entry.artifacts)}"
        typer.echo(
            f"- {label} [{entry.agent_id}]: {entry.status.value} "
            f"attempt {entry.attempt}{detail}"
        )
    if instance.context.artifacts:
        typer.echo(f"Artifacts: {', '.join(instance.context.artifacts)}")
    for issue in instance.issues:
        typer.echo(f"! {issue.severity.value} {issue.kind}: {issue.message}")


@workflow_app.command("validate")
def workflow_validate(path: Path) -> None:
    """
    Parse a workflow definition file and report warnings.

    Example:
        flowsmith workflow validate workflows/greenfield.yaml
        # Output: greenfield: 6 step(s)
        #         warning: unknown agent 'writer' in step 2
    """
    library = DefinitionLibrary.from_config(_config())
    try:
        definition = library.load_file(path)
        graph = StepGraph(definition)
    except FlowsmithError as exc:
        _fail(f"Invalid workflow: {exc}")

    typer.echo(f"{definition.id}: {len(definition.steps)} step(s)")
    for step in definition.steps:
        typer.echo(f"  {step.index}. {step.name} [{step.kind}] agent={step.agent_id}")
    for warning in (*definition.warnings, *graph.warnings):
        typer.secho(f"warning: {warning}", fg=typer.colors.YELLOW)


@workflow_app.command("list")
def workflow_list() -> None:
    """List workflow definitions available in the configured workflows directory."""
    library = DefinitionLibrary.from_config(_config())
    available = library.list_available()
    if not available:
        typer.echo("No workflows found")
        return
    for definition_id in available:
        typer.echo(definition_id)


@workflow_app.command("run")
def workflow_run(
    path: Path,
    inputs: Optional[List[str]] = typer.Option(
        None, "--input", "-i", help="Workflow input as key=value"
    ),
    variables: Optional[List[str]] = typer.Option(
        None, "--var", help="Initial context variable as key=value"
    ),
    mock: bool = typer.Option(False, help="Use deterministic mock agents"),
) -> None:
    """
    Run a workflow definition file to completion (or until it pauses).

    Example:
        flowsmith workflow run workflows/greenfield.yaml --mock -i prompt="todo app"
        flowsmith workflow run cycle.yaml --mock --var stories="[a, b]"
    """
    config = _config()
    parsed_inputs = _parse_pairs(inputs, "--input")
    parsed_vars = _parse_pairs(variables, "--var")
    library = DefinitionLibrary.from_config(config)
    try:
        definition = library.load_file(path)
    except FlowsmithError as exc:
        _fail(f"Invalid workflow: {exc}")

    async def _run() -> WorkflowInstance:
        service = _build_service(config, mock, library)
        instance_id = await service.start_workflow(
            definition.id, parsed_inputs, parsed_vars
        )
        return await service.wait(instance_id)

    try:
        instance = asyncio.run(_run())
    except FlowsmithError as exc:
        _fail(f"Workflow could not run: {exc}")

    _echo_instance(instance)
    if instance.status == WorkflowStatus.FAILED:
        raise typer.Exit(code=1)


@instance_app.command("list")
def instance_list(
    status: Optional[WorkflowStatus] = typer.Option(None, help="Filter by status"),
) -> None:
    """List persisted workflow instances with their status."""
    store = _store(_config())
    instances = asyncio.run(store.list_instances())
    if status is not None:
        instances = [i for i in instances if i.status == status]
    if not instances:
        typer.echo("No instances found")
        return
    for instance in instances:
        typer.echo(
            f"{instance.instance_id}\t{instance.definition_id}\t{instance.status.value}"
        )


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """Show status, timeline, artifacts and issues of one instance."""
    store = _store(_config())
    instance = asyncio.run(store.load(instance_id))
    if instance is None:
        _fail("Instance not found")
    _echo_instance(instance)


@instance_app.command("cancel")
def instance_cancel(instance_id: str) -> None:
    """Cancel a paused or interrupted instance. Terminal instances are left as they are."""
    config = _config()

    async def _cancel() -> WorkflowInstance:
        service = _build_service(config, mock=True)
        return await service.cancel(instance_id)

    try:
        instance = asyncio.run(_cancel())
    except FlowsmithError as exc:
        _fail(str(exc))
    _echo_instance(instance, verbose=False)


@instance_app.command("resume")
def instance_resume(
    instance_id: str,
    definition: Optional[Path] = typer.Option(
        None, "--definition", "-d", help="Workflow file the instance was started from"
    ),
    mock: bool = typer.Option(False, help="Use deterministic mock agents"),
) -> None:
    """Resume a paused instance and run it until it stops again."""
    config = _config()
    library = DefinitionLibrary.from_config(config)

    async def _resume() -> WorkflowInstance:
        if definition is not None:
            library.load_file(definition)
        service = _build_service(config, mock, library)
        await service.resume(instance_id)
        return await service.wait(instance_id)

    try:
        instance = asyncio.run(_resume())
    except FlowsmithError as exc:
        _fail(str(exc))

    _echo_instance(instance)
    if instance.status == WorkflowStatus.FAILED:
        raise typer.Exit(code=1)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
