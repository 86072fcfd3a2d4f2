"""Workflow state and its transitions.

Every function here takes a ``WorkflowState`` and returns a new one; nothing
is mutated in place. The executor drives these transitions, but they are
usable on their own for planning, inspection and tests.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from typing import Any, Literal, assert_never

from crewflow.cycle import TaskResult
from crewflow.errors import ConfigurationError, CrewflowError, DeadlockError, WorkflowError
from crewflow.models import (
    VALIDATION_TYPES,
    BVTaskConfig,
    Decomposition,
    Subtask,
    ValidationType,
    elapsed_seconds,
    utcnow_iso,
)
from crewflow.retry import EscalationDecision, RetryState
from crewflow.team import (
    TeamDefinition,
    TeamMember,
    assign_task_to_member,
    find_available_member,
    release_task_from_member,
)

logger = logging.getLogger(__name__)

WorkflowStatus = Literal["pending", "running", "paused", "completed", "failed"]
TaskStatus = Literal[
    "pending", "assigned", "running", "validating", "completed", "failed", "blocked"
]
AssignmentStatus = Literal["pending", "in_progress", "completed", "failed"]
EscalationMode = Literal["pause", "skip", "force-continue"]

WORKFLOW_STATUSES: tuple[str, ...] = ("pending", "running", "paused", "completed", "failed")
TASK_STATUSES: tuple[str, ...] = (
    "pending",
    "assigned",
    "running",
    "validating",
    "completed",
    "failed",
    "blocked",
)
ASSIGNMENT_STATUSES: tuple[str, ...] = ("pending", "in_progress", "completed", "failed")
ESCALATION_MODES: tuple[str, ...] = ("pause", "skip", "force-continue")

ACTIVE_STATUSES: tuple[str, ...] = ("assigned", "running", "validating")
TERMINAL_STATUSES: tuple[str, ...] = ("completed", "failed")
ASSIGNABLE_ROLES = ("builder", "specialist")


def _checked(value: Any, allowed: tuple[str, ...], label: str) -> Any:
    if value not in allowed:
        raise ValueError(f"Invalid {label}: {value!r}")
    return value


@dataclass(frozen=True, slots=True)
class WorkflowConfig:
    parallel_execution: bool = True
    max_parallel_tasks: int = 3
    default_validation_type: ValidationType | None = None
    auto_assign: bool = True
    continue_on_failure: bool = False
    max_retries: int = 3
    task_timeout_seconds: float = 300.0
    escalation_mode: EscalationMode = "pause"

    def __post_init__(self) -> None:
        if self.max_parallel_tasks < 1:
            raise ConfigurationError("max_parallel_tasks must be >= 1")
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must be >= 0")
        if self.task_timeout_seconds <= 0:
            raise ConfigurationError("task_timeout_seconds must be positive")
        if self.escalation_mode not in ESCALATION_MODES:
            raise ConfigurationError(f"Unknown escalation mode: {self.escalation_mode}")
        if (
            self.default_validation_type is not None
            and self.default_validation_type not in VALIDATION_TYPES
        ):
            raise ConfigurationError(f"Unknown validation type: {self.default_validation_type}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowConfig:
        return cls(
            parallel_execution=bool(data.get("parallel_execution", True)),
            max_parallel_tasks=int(data.get("max_parallel_tasks", 3)),
            default_validation_type=data.get("default_validation_type") or None,
            auto_assign=bool(data.get("auto_assign", True)),
            continue_on_failure=bool(data.get("continue_on_failure", False)),
            max_retries=int(data.get("max_retries", 3)),
            task_timeout_seconds=float(data.get("task_timeout_seconds", 300.0)),
            escalation_mode=data.get("escalation_mode", "pause"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "parallel_execution": self.parallel_execution,
            "max_parallel_tasks": self.max_parallel_tasks,
            "default_validation_type": self.default_validation_type,
            "auto_assign": self.auto_assign,
            "continue_on_failure": self.continue_on_failure,
            "max_retries": self.max_retries,
            "task_timeout_seconds": self.task_timeout_seconds,
            "escalation_mode": self.escalation_mode,
        }


DEFAULT_WORKFLOW_CONFIG = WorkflowConfig()


@dataclass(frozen=True, slots=True)
class TaskAssignment:
    task_id: str
    member_id: str
    assigned_at: str
    status: AssignmentStatus = "pending"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskAssignment:
        return cls(
            task_id=str(data["task_id"]),
            member_id=str(data["member_id"]),
            assigned_at=str(data["assigned_at"]),
            status=_checked(
                data.get("status", "pending"), ASSIGNMENT_STATUSES, "assignment status"
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "member_id": self.member_id,
            "assigned_at": self.assigned_at,
            "status": self.status,
        }


@dataclass(frozen=True, slots=True)
class WorkflowTask:
    id: str
    subtask: Subtask
    bv_config: BVTaskConfig
    status: TaskStatus = "pending"
    blocked_by: tuple[str, ...] = ()
    blocks: tuple[str, ...] = ()
    retry_count: int = 0
    assignment: TaskAssignment | None = None
    retry_state: RetryState | None = None
    result: TaskResult | None = None
    escalation: EscalationDecision | None = None
    failure_reason: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowTask:
        assignment = data.get("assignment")
        retry_state = data.get("retry_state")
        result = data.get("result")
        escalation = data.get("escalation")
        return cls(
            id=str(data["id"]),
            subtask=Subtask.from_dict(data["subtask"]),
            bv_config=BVTaskConfig.from_dict(data["bv_config"]),
            status=_checked(data.get("status", "pending"), TASK_STATUSES, "task status"),
            blocked_by=tuple(str(item) for item in data.get("blocked_by") or ()),
            blocks=tuple(str(item) for item in data.get("blocks") or ()),
            retry_count=int(data.get("retry_count", 0)),
            assignment=TaskAssignment.from_dict(assignment) if assignment else None,
            retry_state=RetryState.from_dict(retry_state) if retry_state else None,
            result=TaskResult.from_dict(result) if result else None,
            escalation=EscalationDecision.from_dict(escalation) if escalation else None,
            failure_reason=data.get("failure_reason"),
            created_at=str(data["created_at"]),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subtask": self.subtask.to_dict(),
            "bv_config": self.bv_config.to_dict(),
            "status": self.status,
            "blocked_by": list(self.blocked_by),
            "blocks": list(self.blocks),
            "retry_count": self.retry_count,
            "assignment": self.assignment.to_dict() if self.assignment else None,
            "retry_state": self.retry_state.to_dict() if self.retry_state else None,
            "result": self.result.to_dict() if self.result else None,
            "escalation": self.escalation.to_dict() if self.escalation else None,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


@dataclass(frozen=True, slots=True)
class WorkflowMetrics:
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    total_retries: int = 0
    total_duration_seconds: float = 0.0
    average_task_duration_seconds: float = 0.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowMetrics:
        return cls(
            total_tasks=int(data.get("total_tasks", 0)),
            completed_tasks=int(data.get("completed_tasks", 0)),
            failed_tasks=int(data.get("failed_tasks", 0)),
            total_retries=int(data.get("total_retries", 0)),
            total_duration_seconds=float(data.get("total_duration_seconds", 0.0)),
            average_task_duration_seconds=float(data.get("average_task_duration_seconds", 0.0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "failed_tasks": self.failed_tasks,
            "total_retries": self.total_retries,
            "total_duration_seconds": self.total_duration_seconds,
            "average_task_duration_seconds": self.average_task_duration_seconds,
        }


@dataclass(frozen=True, slots=True)
class EscalationRecord:
    task_id: str
    decision: EscalationDecision
    mode: EscalationMode
    timestamp: str = field(default_factory=utcnow_iso)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EscalationRecord:
        return cls(
            task_id=str(data["task_id"]),
            decision=EscalationDecision.from_dict(data["decision"]),
            mode=_checked(data["mode"], ESCALATION_MODES, "escalation mode"),
            timestamp=str(data["timestamp"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "decision": self.decision.to_dict(),
            "mode": self.mode,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class WorkflowState:
    id: str
    team: TeamDefinition
    tasks: tuple[WorkflowTask, ...]
    config: WorkflowConfig = field(default_factory=lambda: DEFAULT_WORKFLOW_CONFIG)
    status: WorkflowStatus = "pending"
    metrics: WorkflowMetrics = field(default_factory=WorkflowMetrics)
    reason: str | None = None
    escalations: tuple[EscalationRecord, ...] = ()
    started_at: str | None = None
    completed_at: str | None = None

    def task(self, task_id: str) -> WorkflowTask:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise WorkflowError(f"Unknown task: {task_id}")

    def tasks_with_status(self, *statuses: TaskStatus) -> tuple[WorkflowTask, ...]:
        return tuple(task for task in self.tasks if task.status in statuses)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowState:
        return cls(
            id=str(data["id"]),
            team=TeamDefinition.from_dict(data["team"]),
            tasks=tuple(WorkflowTask.from_dict(item) for item in data["tasks"]),
            config=WorkflowConfig.from_dict(data.get("config") or {}),
            status=_checked(data.get("status", "pending"), WORKFLOW_STATUSES, "workflow status"),
            metrics=WorkflowMetrics.from_dict(data.get("metrics") or {}),
            reason=data.get("reason"),
            escalations=tuple(
                EscalationRecord.from_dict(item) for item in data.get("escalations") or ()
            ),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "team": self.team.to_dict(),
            "tasks": [task.to_dict() for task in self.tasks],
            "config": self.config.to_dict(),
            "status": self.status,
            "metrics": self.metrics.to_dict(),
            "reason": self.reason,
            "escalations": [record.to_dict() for record in self.escalations],
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


@dataclass(frozen=True, slots=True)
class WorkflowProgress:
    total: int
    completed: int
    failed: int
    running: int
    pending: int
    blocked: int
    percent_complete: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "running": self.running,
            "pending": self.pending,
            "blocked": self.blocked,
            "percent_complete": self.percent_complete,
        }


@dataclass(frozen=True, slots=True)
class ExecutionPhase:
    phase_number: int
    tasks: tuple[str, ...]

    @property
    def can_parallelize(self) -> bool:
        return len(self.tasks) > 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase_number": self.phase_number,
            "tasks": list(self.tasks),
            "can_parallelize": self.can_parallelize,
        }


@dataclass(frozen=True, slots=True)
class ExecutionPlan:
    phases: tuple[ExecutionPhase, ...]
    critical_path: tuple[str, ...]
    cycle: tuple[str, ...] = ()

    @property
    def estimated_phases(self) -> int:
        return len(self.phases)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phases": [phase.to_dict() for phase in self.phases],
            "critical_path": list(self.critical_path),
            "cycle": list(self.cycle),
            "estimated_phases": self.estimated_phases,
        }


def _bv_config_for(
    subtask: Subtask, config: WorkflowConfig, validation: ValidationType
) -> BVTaskConfig:
    overrides = subtask.validation
    max_retries = config.max_retries
    if overrides is not None and overrides.max_retries is not None:
        max_retries = overrides.max_retries
    return BVTaskConfig(
        task_id=subtask.id,
        task_description=subtask.prompt,
        requirements=subtask.acceptance_criteria,
        acceptance_criteria=subtask.verification,
        validation_type=(
            overrides.validation_type
            if overrides is not None and overrides.validation_type
            else validation
        ),
        builder_agent=subtask.agent_type,
        validator_agents=(
            (overrides.validator_agent,)
            if overrides is not None and overrides.validator_agent
            else ()
        ),
        max_retries=max_retries,
        timeout_seconds=config.task_timeout_seconds,
        complexity=subtask.model_tier,
    )


def create_workflow(
    workflow_id: str,
    team: TeamDefinition,
    decomposition: Decomposition,
    config: WorkflowConfig | None = None,
) -> WorkflowState:
    config = config or DEFAULT_WORKFLOW_CONFIG
    validation = config.default_validation_type or team.default_validation_type
    config = replace(config, default_validation_type=validation)

    ids = [subtask.id for subtask in decomposition.subtasks]
    if len(set(ids)) != len(ids):
        duplicates = sorted({task_id for task_id in ids if ids.count(task_id) > 1})
        raise ConfigurationError(f"Duplicate subtask ids: {', '.join(duplicates)}")
    known = set(ids)
    for subtask in decomposition.subtasks:
        unknown = [dep for dep in subtask.blocked_by if dep not in known]
        if unknown:
            raise ConfigurationError(
                f"Subtask {subtask.id} depends on unknown tasks: {', '.join(unknown)}"
            )

    tasks = tuple(
        WorkflowTask(
            id=subtask.id,
            subtask=subtask,
            bv_config=_bv_config_for(subtask, config, validation),
            status="blocked" if subtask.blocked_by else "pending",
            blocked_by=subtask.blocked_by,
            blocks=tuple(
                other.id for other in decomposition.subtasks if subtask.id in other.blocked_by
            ),
        )
        for subtask in decomposition.subtasks
    )
    workflow = WorkflowState(id=workflow_id, team=team, tasks=tasks, config=config)
    return replace(workflow, metrics=calculate_metrics(workflow))


def _replace_task(workflow: WorkflowState, task: WorkflowTask) -> WorkflowState:
    return replace(
        workflow,
        tasks=tuple(task if existing.id == task.id else existing for existing in workflow.tasks),
    )


def _require_status(task: WorkflowTask, allowed: Iterable[str], action: str) -> None:
    allowed = tuple(allowed)
    if task.status not in allowed:
        raise WorkflowError(f"Cannot {action} task {task.id} while it is {task.status}")


def _retry_state_of(task: WorkflowTask, result: TaskResult | None) -> RetryState | None:
    return result.retry_state if result and result.retry_state else task.retry_state


def _release(workflow: WorkflowState, task: WorkflowTask) -> WorkflowState:
    if task.assignment is None:
        return workflow
    return replace(
        workflow, team=release_task_from_member(workflow.team, task.id, task.assignment.member_id)
    )


def active_task_count(workflow: WorkflowState) -> int:
    return sum(1 for task in workflow.tasks if task.is_active)


def get_available_tasks(workflow: WorkflowState) -> tuple[WorkflowTask, ...]:
    active = active_task_count(workflow)
    if workflow.config.parallel_execution:
        slots = workflow.config.max_parallel_tasks - active
    else:
        slots = 1 if active == 0 else 0
    if slots <= 0:
        return ()
    return workflow.tasks_with_status("pending")[:slots]


def assign_task(workflow: WorkflowState, task_id: str, member_id: str) -> WorkflowState:
    task = workflow.task(task_id)
    _require_status(task, ("pending",), "assign")
    if workflow.team.member(member_id) is None:
        raise WorkflowError(f"Unknown team member: {member_id}")

    now = utcnow_iso()
    updated = _replace_task(
        replace(workflow, team=assign_task_to_member(workflow.team, task_id, member_id)),
        replace(task, status="assigned", assignment=TaskAssignment(task_id, member_id, now)),
    )
    return replace(
        updated,
        status="running" if workflow.status == "pending" else workflow.status,
        started_at=workflow.started_at or now,
    )


def find_member_for_task(workflow: WorkflowState) -> TeamMember | None:
    candidates = [
        member
        for role in ASSIGNABLE_ROLES
        if (member := find_available_member(workflow.team, role)) is not None
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda member: len(member.assigned_tasks))


def auto_assign_tasks(workflow: WorkflowState) -> WorkflowState:
    if not workflow.config.auto_assign:
        return workflow
    current = workflow
    for task in get_available_tasks(workflow):
        member = find_member_for_task(current)
        if member is None:
            break
        current = assign_task(current, task.id, member.id)
    return current


def start_task(workflow: WorkflowState, task_id: str) -> WorkflowState:
    task = workflow.task(task_id)
    _require_status(task, ("assigned",), "start")
    updated = _replace_task(
        workflow,
        replace(
            task,
            status="running",
            started_at=utcnow_iso(),
            assignment=replace(task.assignment, status="in_progress") if task.assignment else None,
        ),
    )
    if workflow.status == "pending":
        updated = replace(updated, status="running")
    return updated


def mark_validating(workflow: WorkflowState, task_id: str) -> WorkflowState:
    task = workflow.task(task_id)
    _require_status(task, ("running",), "validate")
    return _replace_task(workflow, replace(task, status="validating"))


def update_dependencies(workflow: WorkflowState) -> WorkflowState:
    completed = {task.id for task in workflow.tasks if task.status == "completed"}
    unblocked = [
        task
        for task in workflow.tasks
        if task.status == "blocked" and all(dep in completed for dep in task.blocked_by)
    ]
    for task in unblocked:
        logger.debug("Task %s unblocked", task.id)
        workflow = _replace_task(workflow, replace(task, status="pending"))
    return workflow


def is_workflow_complete(workflow: WorkflowState) -> bool:
    return all(task.is_terminal for task in workflow.tasks)


def _finish_if_complete(workflow: WorkflowState) -> WorkflowState:
    workflow = replace(workflow, metrics=calculate_metrics(workflow))
    if workflow.status in ("failed", "completed") or not is_workflow_complete(workflow):
        return workflow
    finished = replace(workflow, status="completed", completed_at=utcnow_iso())
    return replace(finished, metrics=calculate_metrics(finished))


def complete_task(
    workflow: WorkflowState, task_id: str, result: TaskResult | None = None
) -> WorkflowState:
    task = workflow.task(task_id)
    _require_status(task, ACTIVE_STATUSES, "complete")
    updated = _release(workflow, task)
    updated = _replace_task(
        updated,
        replace(
            task,
            status="completed",
            result=result,
            retry_state=_retry_state_of(task, result),
            completed_at=utcnow_iso(),
            assignment=replace(task.assignment, status="completed") if task.assignment else None,
        ),
    )
    return _finish_if_complete(update_dependencies(updated))


def _dependents(workflow: WorkflowState, task_id: str) -> list[str]:
    order: list[str] = []
    stack = list(workflow.task(task_id).blocks)
    while stack:
        current = stack.pop(0)
        if current in order:
            continue
        order.append(current)
        stack.extend(workflow.task(current).blocks)
    return order


def fail_task(
    workflow: WorkflowState,
    task_id: str,
    reason: str,
    *,
    retryable: bool = True,
    result: TaskResult | None = None,
) -> WorkflowState:
    task = workflow.task(task_id)
    _require_status(task, ACTIVE_STATUSES, "fail")
    updated = _release(workflow, task)
    retry_state = _retry_state_of(task, result)

    if retryable and task.retry_count < task.bv_config.max_retries:
        logger.debug(
            "Task %s re-queued (%d/%d): %s",
            task_id,
            task.retry_count + 1,
            task.bv_config.max_retries,
            reason,
        )
        updated = _replace_task(
            updated,
            replace(
                task,
                status="pending",
                retry_count=task.retry_count + 1,
                assignment=None,
                result=result,
                retry_state=retry_state,
                failure_reason=reason,
            ),
        )
        return replace(updated, metrics=calculate_metrics(updated))

    now = utcnow_iso()
    updated = _replace_task(
        updated,
        replace(
            task,
            status="failed",
            result=result,
            retry_state=retry_state,
            failure_reason=reason,
            completed_at=now,
            assignment=replace(task.assignment, status="failed") if task.assignment else None,
        ),
    )
    for dependent_id in _dependents(updated, task_id):
        dependent = updated.task(dependent_id)
        if dependent.is_terminal:
            continue
        updated = _replace_task(
            updated,
            replace(
                dependent,
                status="failed",
                failure_reason=f"Dependency {task_id} failed",
                completed_at=now,
            ),
        )

    if not workflow.config.continue_on_failure and updated.status != "failed":
        updated = replace(
            updated,
            status="failed",
            reason=f"Task {task_id} failed: {reason}",
            completed_at=now,
        )
    return _finish_if_complete(updated)


def escalate_task(
    workflow: WorkflowState,
    task_id: str,
    decision: EscalationDecision,
    result: TaskResult | None = None,
) -> WorkflowState:
    task = workflow.task(task_id)
    _require_status(task, ACTIVE_STATUSES, "escalate")
    mode = workflow.config.escalation_mode
    record = EscalationRecord(task_id=task_id, decision=decision, mode=mode)
    description = f"Escalated to {decision.level}: {decision.reason}"

    match mode:
        case "pause":
            updated = _release(workflow, task)
            updated = _replace_task(
                updated,
                replace(
                    task,
                    status="pending",
                    assignment=None,
                    result=result,
                    retry_state=_retry_state_of(task, result),
                    escalation=decision,
                    failure_reason=description,
                ),
            )
            updated = replace(
                updated,
                status="failed" if workflow.status == "failed" else "paused",
                reason=f"Task {task_id} escalated to {decision.level}: {decision.reason}",
            )
        case "skip":
            updated = fail_task(workflow, task_id, description, retryable=False, result=result)
            updated = _replace_task(updated, replace(updated.task(task_id), escalation=decision))
        case "force-continue":
            updated = complete_task(workflow, task_id, result)
            updated = _replace_task(updated, replace(updated.task(task_id), escalation=decision))
        case _:
            assert_never(mode)

    return replace(updated, escalations=(*updated.escalations, record))


def pause_workflow(workflow: WorkflowState, reason: str | None = None) -> WorkflowState:
    if workflow.status in ("completed", "failed"):
        raise WorkflowError(f"Cannot pause workflow {workflow.id} while it is {workflow.status}")
    return replace(workflow, status="paused", reason=reason or workflow.reason)


def resume_workflow(workflow: WorkflowState) -> WorkflowState:
    if workflow.status != "paused":
        raise WorkflowError(f"Cannot resume workflow {workflow.id} while it is {workflow.status}")
    return replace(workflow, status="running", reason=None)


def cancel_workflow(workflow: WorkflowState) -> WorkflowState:
    if workflow.status in ("completed", "failed"):
        return workflow
    cancelled = replace(
        workflow, status="failed", reason="Workflow cancelled", completed_at=utcnow_iso()
    )
    return replace(cancelled, metrics=calculate_metrics(cancelled))


def get_workflow_progress(workflow: WorkflowState) -> WorkflowProgress:
    counts = {status: 0 for status in TASK_STATUSES}
    for task in workflow.tasks:
        counts[task.status] += 1
    total = len(workflow.tasks)
    done = counts["completed"] + counts["failed"]
    return WorkflowProgress(
        total=total,
        completed=counts["completed"],
        failed=counts["failed"],
        running=counts["assigned"] + counts["running"] + counts["validating"],
        pending=counts["pending"],
        blocked=counts["blocked"],
        percent_complete=round(done / total * 100) if total else 0,
    )


def _task_retries(task: WorkflowTask) -> int:
    cycle_retries = max(0, task.retry_state.current_attempt - 1) if task.retry_state else 0
    return max(task.retry_count, cycle_retries)


def calculate_metrics(workflow: WorkflowState) -> WorkflowMetrics:
    completed = workflow.tasks_with_status("completed")
    failed = workflow.tasks_with_status("failed")
    durations = [
        elapsed_seconds(task.started_at, task.completed_at)
        for task in completed
        if task.started_at and task.completed_at
    ]
    total_duration = 0.0
    if workflow.started_at:
        total_duration = elapsed_seconds(workflow.started_at, workflow.completed_at or utcnow_iso())
    return WorkflowMetrics(
        total_tasks=len(workflow.tasks),
        completed_tasks=len(completed),
        failed_tasks=len(failed),
        total_retries=sum(_task_retries(task) for task in workflow.tasks),
        total_duration_seconds=total_duration,
        average_task_duration_seconds=sum(durations) / len(durations) if durations else 0.0,
    )


def _kahn_layers(workflow: WorkflowState) -> tuple[list[list[str]], list[str]]:
    remaining = [task.id for task in workflow.tasks]
    dependencies = {task.id: set(task.blocked_by) for task in workflow.tasks}
    processed: set[str] = set()
    layers: list[list[str]] = []
    while remaining:
        ready = [task_id for task_id in remaining if dependencies[task_id] <= processed]
        if not ready:
            break
        layers.append(ready)
        processed.update(ready)
        remaining = [task_id for task_id in remaining if task_id not in processed]
    return layers, remaining


def find_cycle(workflow: WorkflowState) -> tuple[str, ...]:
    """Ids of tasks that can never become ready; empty when the graph is acyclic."""
    _, remaining = _kahn_layers(workflow)
    return tuple(remaining)


def ensure_acyclic(workflow: WorkflowState) -> None:
    cycle = find_cycle(workflow)
    if cycle:
        raise DeadlockError(
            f"Dependency cycle detected among tasks: {', '.join(cycle)}", task_ids=cycle
        )


def _critical_path(workflow: WorkflowState, excluded: set[str]) -> tuple[str, ...]:
    blocks = {
        task.id: [child for child in task.blocks if child not in excluded]
        for task in workflow.tasks
    }
    memo: dict[str, tuple[str, ...]] = {}

    def longest_from(task_id: str) -> tuple[str, ...]:
        if task_id not in memo:
            best: tuple[str, ...] = ()
            for child in blocks[task_id]:
                candidate = longest_from(child)
                if len(candidate) > len(best):
                    best = candidate
            memo[task_id] = (task_id, *best)
        return memo[task_id]

    longest: tuple[str, ...] = ()
    for task in workflow.tasks:
        if task.id in excluded or task.blocked_by:
            continue
        path = longest_from(task.id)
        if len(path) > len(longest):
            longest = path
    return longest


def generate_execution_plan(workflow: WorkflowState) -> ExecutionPlan:
    layers, remaining = _kahn_layers(workflow)
    phases = tuple(
        ExecutionPhase(phase_number=index, tasks=tuple(layer))
        for index, layer in enumerate(layers, start=1)
    )
    return ExecutionPlan(
        phases=phases,
        critical_path=_critical_path(workflow, set(remaining)),
        cycle=tuple(remaining),
    )


def serialize_workflow(workflow: WorkflowState) -> str:
    return json.dumps(workflow.to_dict(), indent=2)


def parse_workflow(raw: str) -> WorkflowState | None:
    try:
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            return None
        return WorkflowState.from_dict(payload)
    except (
        json.JSONDecodeError,
        AttributeError,
        KeyError,
        TypeError,
        ValueError,
        CrewflowError,
    ):
        return None
