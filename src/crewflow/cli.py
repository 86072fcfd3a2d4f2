from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from crewflow.agents import ArchitectAgent, BuilderAgent, CoordinatorAgent, ValidatorPool
from crewflow.backends import AgentBackend, BackendExecutionError, CommandBackend, ResilientBackend
from crewflow.composer import CompositionConstraints, TeamAutoComposer
from crewflow.config import CrewflowConfig, load_config, save_config
from crewflow.cycle import VerificationCycle
from crewflow.errors import CrewflowError
from crewflow.executor import WorkflowExecutor, verification_task_executor
from crewflow.models import MODEL_TIERS, VALIDATION_TYPES, Decomposition, TaskAnalysis, utcnow_iso
from crewflow.prompts import render_member_prompt
from crewflow.report import format_execution_report_markdown, generate_execution_report
from crewflow.store import StateStore
from crewflow.team import TEAM_TEMPLATES, TeamDefinition, create_team_from_template
from crewflow.workflow import (
    WorkflowState,
    create_workflow,
    generate_execution_plan,
    get_workflow_progress,
    parse_workflow,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "crewflow.toml"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: CrewflowConfig
    store: StateStore


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except CrewflowError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=StateStore(repo_root, state_directory=Path(config.state.directory)),
    )


def _record_backend_event(store: StateStore, event: dict[str, Any]) -> None:
    def _updater(payload: Any) -> dict[str, Any]:
        metrics = payload if isinstance(payload, dict) else {}
        events = metrics.get("backend_events", [])
        if not isinstance(events, list):
            events = []
        events.append({**event, "at": utcnow_iso()})
        metrics["backend_events"] = events[-200:]
        if event.get("event") == "backend_retry":
            metrics["backend_retry_count"] = int(metrics.get("backend_retry_count", 0)) + 1
        if event.get("event") == "backend_fallback_success":
            metrics["backend_fallback_count"] = int(metrics.get("backend_fallback_count", 0)) + 1
        return metrics

    store.update_json("metrics", _updater, default={})


def _build_backend(runtime: Runtime) -> AgentBackend:
    section = runtime.config.backend
    primary = CommandBackend(
        section.command,
        output_format=section.output_format,
        working_directory=runtime.repo_root,
    )
    fallback = (
        CommandBackend(
            section.fallback_command,
            output_format=section.output_format,
            working_directory=runtime.repo_root,
        )
        if section.fallback_command
        else None
    )
    return ResilientBackend(
        primary,
        runtime.config.to_retry_policy(),
        fallback_backend=fallback,
        event_hook=lambda event: _record_backend_event(runtime.store, event),
    )


def _build_cycle(runtime: Runtime) -> VerificationCycle:
    backend = _build_backend(runtime)
    return VerificationCycle(
        BuilderAgent(backend),
        ValidatorPool(backend),
        {"coordinator": CoordinatorAgent(backend), "architect": ArchitectAgent(backend)},
        policy=runtime.config.to_escalation_policy(),
    )


def _load_workflow(runtime: Runtime, workflow_id: str | None) -> WorkflowState:
    try:
        workflow = runtime.store.load_workflow(workflow_id)
    except CrewflowError as exc:
        raise click.ClickException(str(exc)) from exc
    if workflow is None:
        target = workflow_id or "any workflow"
        raise click.ClickException(f"No stored workflow found for {target}.")
    return workflow


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Crewflow CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def init_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    save_config(runtime.config_path, runtime.config)
    click.echo(f"Initialized crewflow in {runtime.repo_root}")
    click.echo(f"Config: {runtime.config_path}")
    click.echo(f"State: {runtime.store.state_dir}")


@cli.command("compose")
@click.argument("task")
@click.option("--type", "task_type", default="feature", show_default=True)
@click.option("--complexity", type=click.FloatRange(0.0, 1.0), default=0.5, show_default=True)
@click.option("--area", "areas", multiple=True)
@click.option("--tech", "technologies", multiple=True)
@click.option("--components", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--parallel", is_flag=True, default=False)
@click.option("--template", type=click.Choice(TEAM_TEMPLATES), default=None)
@click.option("--max-members", type=click.IntRange(min=1), default=None)
@click.option("--min-members", type=click.IntRange(min=0), default=None)
@click.option("--validation", type=click.Choice(VALIDATION_TYPES), default=None)
@click.option("--max-tier", type=click.Choice(MODEL_TIERS), default=None)
@click.option("--save", is_flag=True, default=False, help="Store the composed team.")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def compose_command(
    task: str,
    task_type: str,
    complexity: float,
    areas: tuple[str, ...],
    technologies: tuple[str, ...],
    components: int,
    parallel: bool,
    template: str | None,
    max_members: int | None,
    min_members: int | None,
    validation: str | None,
    max_tier: str | None,
    save: bool,
    as_json: bool,
    config_value: str,
) -> None:
    analysis = TaskAnalysis(
        task=task,
        type=task_type,
        complexity=complexity,
        areas=areas,
        technologies=technologies,
        estimated_components=components,
        is_parallelizable=parallel,
    )
    try:
        constraints = None
        if any(value is not None for value in (max_members, min_members, validation, max_tier)):
            constraints = CompositionConstraints(
                max_members=max_members,
                min_members=min_members,
                validation_type=validation,
                max_model_tier=max_tier,
            )
        composer = TeamAutoComposer(prompt_generator=render_member_prompt)
        result = composer.compose_team(
            analysis, preferred_template=template, constraints=constraints
        )
    except CrewflowError as exc:
        raise click.ClickException(str(exc)) from exc

    if save:
        _load_runtime(config_value).store.save_team(result.team)

    if as_json:
        _echo_json(result.to_dict())
        return

    click.echo(f"Team: {result.team.id} ({len(result.team.members)} members)")
    click.echo(f"Template: {result.template_used}")
    click.echo(f"Validation: {result.team.default_validation_type}")
    click.echo(f"Score: {result.score:.2f}")
    for member in result.team.members:
        click.echo(f"  {member.id:<18} {member.role:<11} {member.agent_type} [{member.model_tier}]")
    for warning in result.warnings:
        click.echo(f"Warning: {warning}")
    click.echo(f"Reasoning: {result.reasoning}")


@cli.command("create")
@click.argument("decomposition_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--workflow-id", default=None, help="Defaults to a timestamped id.")
@click.option("--team-id", default=None, help="Stored team to use; defaults to the latest one.")
@click.option("--template", type=click.Choice(TEAM_TEMPLATES), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def create_command(
    decomposition_file: Path,
    workflow_id: str | None,
    team_id: str | None,
    template: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    try:
        payload = json.loads(decomposition_file.read_text(encoding="utf-8"))
        decomposition = Decomposition.from_dict(payload)
    except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid decomposition file: {exc}") from exc

    try:
        team: TeamDefinition | None
        if template:
            team = create_team_from_template(template, f"team-{template}", f"{template} team")
        else:
            team = runtime.store.load_team(team_id)
        if team is None:
            raise click.ClickException("No team available. Run `crewflow compose --save` first.")
        workflow = create_workflow(
            workflow_id or f"wf-{int(time.time() * 1000)}",
            team,
            decomposition,
            runtime.config.to_workflow_config(),
        )
        runtime.store.save_workflow(workflow)
    except CrewflowError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Created workflow {workflow.id} with {len(workflow.tasks)} tasks")
    click.echo(f"Team: {team.id}")


@cli.command("plan")
@click.argument(
    "workflow_file", required=False, type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
@click.option("--workflow-id", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def plan_command(workflow_file: Path | None, workflow_id: str | None, config_value: str) -> None:
    if workflow_file is not None:
        workflow = parse_workflow(workflow_file.read_text(encoding="utf-8"))
        if workflow is None:
            raise click.ClickException(f"Invalid workflow file: {workflow_file}")
    else:
        workflow = _load_workflow(_load_runtime(config_value), workflow_id)

    plan = generate_execution_plan(workflow)
    for phase in plan.phases:
        marker = " (parallel)" if phase.can_parallelize else ""
        click.echo(f"Phase {phase.phase_number}{marker}: {', '.join(phase.tasks)}")
    click.echo(f"Critical path: {' -> '.join(plan.critical_path) or '-'}")
    if plan.cycle:
        raise click.ClickException(f"Dependency cycle among tasks: {', '.join(plan.cycle)}")


@cli.command("status")
@click.option("--workflow-id", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def status_command(workflow_id: str | None, config_value: str) -> None:
    workflow = _load_workflow(_load_runtime(config_value), workflow_id)
    _echo_json(
        {
            "workflow_id": workflow.id,
            "status": workflow.status,
            "reason": workflow.reason,
            "progress": get_workflow_progress(workflow).to_dict(),
            "tasks": [
                {
                    "id": task.id,
                    "status": task.status,
                    "retry_count": task.retry_count,
                    "member": task.assignment.member_id if task.assignment else None,
                    "failure_reason": task.failure_reason,
                }
                for task in workflow.tasks
            ],
        }
    )


@cli.command("run")
@click.option("--workflow-id", default=None)
@click.option("--markdown", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def run_command(workflow_id: str | None, markdown: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    workflow = _load_workflow(runtime, workflow_id)
    executor = WorkflowExecutor(
        workflow,
        verification_task_executor(_build_cycle(runtime)),
        store=runtime.store,
        poll_interval_seconds=runtime.config.workflow.poll_interval_seconds,
        max_poll_interval_seconds=runtime.config.workflow.max_poll_interval_seconds,
        fail_fast=runtime.config.workflow.fail_fast,
    )

    async def _run() -> WorkflowState:
        if workflow.status == "paused":
            return await executor.resume()
        return await executor.run()

    try:
        asyncio.run(_run())
    except (CrewflowError, BackendExecutionError) as exc:
        raise click.ClickException(str(exc)) from exc

    report = generate_execution_report(executor.context)
    runtime.store.save_report(report)
    runtime.store.record_event_metrics(report.workflow_id, report.event_log)
    click.echo(format_execution_report_markdown(report) if markdown else report.summary)


@cli.command("report")
@click.option("--workflow-id", default=None)
@click.option("--markdown", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def report_command(workflow_id: str | None, markdown: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        report = runtime.store.load_report(workflow_id)
    except CrewflowError as exc:
        raise click.ClickException(str(exc)) from exc
    if report is None:
        click.echo("No execution reports found.")
        return
    if markdown:
        click.echo(format_execution_report_markdown(report))
        return
    _echo_json(report.to_dict())
