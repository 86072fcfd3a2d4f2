from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Literal, assert_never

from crewflow.cycle import TaskResult, VerificationCycle
from crewflow.errors import WorkflowError
from crewflow.models import utcnow_iso
from crewflow.retry import EscalationDecision
from crewflow.workflow import (
    WorkflowState,
    WorkflowTask,
    active_task_count,
    auto_assign_tasks,
    calculate_metrics,
    cancel_workflow,
    complete_task,
    escalate_task,
    fail_task,
    find_cycle,
    is_workflow_complete,
    pause_workflow,
    resume_workflow,
    start_task,
)

if TYPE_CHECKING:
    from crewflow.store import StateStore

logger = logging.getLogger(__name__)

ExecutionEventType = Literal[
    "workflow_started",
    "task_assigned",
    "task_started",
    "task_completed",
    "task_failed",
    "task_retried",
    "task_escalated",
    "workflow_paused",
    "workflow_resumed",
    "workflow_completed",
    "workflow_failed",
    "workflow_cancelled",
]

EXECUTION_EVENT_TYPES: tuple[str, ...] = (
    "workflow_started",
    "task_assigned",
    "task_started",
    "task_completed",
    "task_failed",
    "task_retried",
    "task_escalated",
    "workflow_paused",
    "workflow_resumed",
    "workflow_completed",
    "workflow_failed",
    "workflow_cancelled",
)

_WARNING_EVENTS = {"task_failed", "task_escalated", "workflow_failed"}

TaskExecutor = Callable[[WorkflowTask], Awaitable[TaskResult]]
ExecutionEventHook = Callable[["ExecutionEvent"], None]


@dataclass(frozen=True, slots=True)
class ExecutionEvent:
    type: ExecutionEventType
    timestamp: str = field(default_factory=utcnow_iso)
    task_id: str | None = None
    member_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionEvent:
        event_type = data["type"]
        if event_type not in EXECUTION_EVENT_TYPES:
            raise ValueError(f"Invalid execution event type: {event_type!r}")
        return cls(
            type=event_type,
            timestamp=str(data["timestamp"]),
            task_id=data.get("task_id"),
            member_id=data.get("member_id"),
            details=dict(data.get("details") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "timestamp": self.timestamp,
            "task_id": self.task_id,
            "member_id": self.member_id,
            "details": dict(self.details),
        }


@dataclass(slots=True)
class ExecutionContext:
    """Mutable run state owned by one executor."""

    workflow: WorkflowState
    event_log: list[ExecutionEvent] = field(default_factory=list)
    started_at: str = field(default_factory=utcnow_iso)
    started_monotonic: float = field(default_factory=time.monotonic)
    is_paused: bool = False
    is_cancelled: bool = False

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_monotonic


class WorkflowExecutor:
    """Runs a workflow to completion in batches of ready tasks.

    Each pass assigns ready tasks, starts them, awaits the whole batch and then
    applies the results in order. The loop ends when the workflow completes,
    fails, pauses or is cancelled.
    """

    def __init__(
        self,
        workflow: WorkflowState,
        task_executor: TaskExecutor,
        *,
        event_hook: ExecutionEventHook | None = None,
        store: StateStore | None = None,
        poll_interval_seconds: float = 0.05,
        max_poll_interval_seconds: float = 1.0,
        fail_fast: bool = False,
    ) -> None:
        self.context = ExecutionContext(workflow)
        self.task_executor = task_executor
        self.event_hook = event_hook
        self.store = store
        self.poll_interval_seconds = poll_interval_seconds
        self.max_poll_interval_seconds = max(max_poll_interval_seconds, poll_interval_seconds)
        self.fail_fast = fail_fast
        self._inflight: dict[str, asyncio.Task[TaskResult]] = {}

    @property
    def workflow(self) -> WorkflowState:
        return self.context.workflow

    @workflow.setter
    def workflow(self, value: WorkflowState) -> None:
        self.context.workflow = value

    def _log_event(
        self,
        event_type: ExecutionEventType,
        *,
        task_id: str | None = None,
        member_id: str | None = None,
        **details: Any,
    ) -> ExecutionEvent:
        event = ExecutionEvent(
            type=event_type, task_id=task_id, member_id=member_id, details=details
        )
        self.context.event_log.append(event)
        level = logging.WARNING if event_type in _WARNING_EVENTS else logging.INFO
        logger.log(
            level, "Workflow %s: %s %s %s", self.workflow.id, event_type, task_id or "-", details
        )
        if self.event_hook:
            self.event_hook(event)
        return event

    def _checkpoint(self) -> None:
        if self.store is not None:
            self.store.save_workflow(self.workflow)

    async def _execute(self, task: WorkflowTask) -> TaskResult:
        started = time.monotonic()
        try:
            return await self.task_executor(task)
        except Exception as exc:
            logger.warning("Task executor raised for %s: %s", task.id, exc)
            return TaskResult(
                task_id=task.id,
                success=False,
                action="retry",
                summary=str(exc) or type(exc).__name__,
                issues=(str(exc) or type(exc).__name__,),
                duration_seconds=time.monotonic() - started,
            )

    def _apply(self, task_id: str, result: TaskResult) -> None:
        if self.context.is_cancelled:
            logger.debug("Dropping result for %s after cancellation", task_id)
            return
        task = self.workflow.task(task_id)
        if not task.is_active:
            logger.debug("Ignoring result for %s in status %s", task_id, task.status)
            return
        member_id = task.assignment.member_id if task.assignment else None

        if result.success:
            self.workflow = complete_task(self.workflow, task_id, result)
            self._log_event(
                "task_completed",
                task_id=task_id,
                member_id=member_id,
                duration_seconds=result.duration_seconds,
            )
            return

        reason = result.summary or "; ".join(result.issues) or "Task failed"
        match result.action:
            case "escalate":
                decision = result.escalation or EscalationDecision(
                    should_escalate=True, level="human", reason=reason
                )
                self.workflow = escalate_task(self.workflow, task_id, decision, result)
                self._log_event(
                    "task_escalated",
                    task_id=task_id,
                    member_id=member_id,
                    level=decision.level,
                    reason=decision.reason,
                    mode=self.workflow.config.escalation_mode,
                )
                if self.workflow.status == "paused" and not self.context.is_paused:
                    self.context.is_paused = True
                    self._log_event("workflow_paused", reason=self.workflow.reason)
            case "fail" | "success":
                self.workflow = fail_task(
                    self.workflow, task_id, reason, retryable=False, result=result
                )
                self._log_event(
                    "task_failed", task_id=task_id, member_id=member_id, issues=list(result.issues)
                )
            case "retry":
                self.workflow = fail_task(self.workflow, task_id, reason, result=result)
                self._log_event(
                    "task_failed", task_id=task_id, member_id=member_id, issues=list(result.issues)
                )
                updated = self.workflow.task(task_id)
                if updated.status == "pending":
                    self._log_event("task_retried", task_id=task_id, attempt=updated.retry_count)
            case _:
                assert_never(result.action)

    def _start_batch(self) -> list[WorkflowTask]:
        self.workflow = auto_assign_tasks(self.workflow)
        batch: list[WorkflowTask] = []
        for task in self.workflow.tasks_with_status("assigned"):
            member_id = task.assignment.member_id if task.assignment else None
            self._log_event("task_assigned", task_id=task.id, member_id=member_id)
            self.workflow = start_task(self.workflow, task.id)
            self._log_event("task_started", task_id=task.id, member_id=member_id)
            batch.append(self.workflow.task(task.id))
        return batch

    async def _await_in_order(self, batch: Sequence[WorkflowTask]) -> int:
        results = await asyncio.gather(
            *(self._inflight[task.id] for task in batch), return_exceptions=True
        )
        applied = 0
        for task, result in zip(batch, results, strict=True):
            if isinstance(result, BaseException):
                if self.context.is_cancelled:
                    continue
                result = TaskResult(
                    task_id=task.id, success=False, action="retry", issues=(str(result),)
                )
            self._apply(task.id, result)
            applied += 1
        return applied

    async def _await_fail_fast(self, batch: Sequence[WorkflowTask]) -> int:
        by_future = {self._inflight[task.id]: task for task in batch}
        pending = set(by_future)
        applied = 0
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for future in done:
                if future.cancelled():
                    continue
                self._apply(by_future[future].id, future.result())
                applied += 1
            if pending and self.workflow.status == "failed" and not self.context.is_cancelled:
                for future in pending:
                    future.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                for future in pending:
                    task = self.workflow.task(by_future[future].id)
                    if task.is_active:
                        self.workflow = fail_task(
                            self.workflow,
                            task.id,
                            "Cancelled after workflow failure",
                            retryable=False,
                        )
                        self._log_event("task_failed", task_id=task.id, cancelled=True)
                break
        return applied

    async def run_next_batch(self) -> int:
        """Run one scheduling pass and return the number of results applied."""
        if self.context.is_paused or self.context.is_cancelled:
            return 0
        batch = self._start_batch()
        if not batch:
            return 0
        self._inflight = {task.id: asyncio.create_task(self._execute(task)) for task in batch}
        try:
            if self.fail_fast:
                applied = await self._await_fail_fast(batch)
            else:
                applied = await self._await_in_order(batch)
        finally:
            self._inflight = {}
        self._checkpoint()
        return applied

    def _fail_workflow(self, reason: str, **details: Any) -> None:
        self.workflow = replace(
            self.workflow, status="failed", reason=reason, completed_at=utcnow_iso()
        )
        logger.warning("Workflow %s failed: %s", self.workflow.id, reason)
        if details:
            logger.debug("Failure details for %s: %s", self.workflow.id, details)

    async def run(self) -> WorkflowState:
        if self.workflow.status in ("completed", "failed"):
            return self.workflow

        cycle = find_cycle(self.workflow)
        if cycle:
            self._fail_workflow(
                f"Dependency cycle detected among tasks: {', '.join(cycle)}", task_ids=cycle
            )
            return self._finalize()

        if self.workflow.status == "pending":
            self._log_event("workflow_started", total_tasks=len(self.workflow.tasks))
            self.workflow = replace(
                self.workflow,
                status="running",
                started_at=self.workflow.started_at or utcnow_iso(),
            )

        delay = self.poll_interval_seconds
        while True:
            workflow = self.workflow
            if self.context.is_cancelled or self.context.is_paused:
                break
            if workflow.status != "running" or is_workflow_complete(workflow):
                break

            if await self.run_next_batch():
                delay = self.poll_interval_seconds
                continue

            workflow = self.workflow
            if workflow.status != "running" or is_workflow_complete(workflow):
                continue
            if active_task_count(workflow):
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_poll_interval_seconds)
                continue

            pending = [task.id for task in workflow.tasks_with_status("pending")]
            blocked = [task.id for task in workflow.tasks_with_status("blocked")]
            if pending and not workflow.config.auto_assign:
                self.workflow = pause_workflow(
                    workflow, f"Pending tasks require manual assignment: {', '.join(pending)}"
                )
                self.context.is_paused = True
                self._log_event("workflow_paused", reason=self.workflow.reason)
            elif pending:
                self._fail_workflow(
                    f"No eligible team member available for pending tasks: {', '.join(pending)}"
                )
            elif blocked:
                self._fail_workflow(
                    "Deadlock detected - blocked tasks cannot proceed: " + ", ".join(blocked),
                    task_ids=tuple(blocked),
                )
            break

        return self._finalize()

    def _finalize(self) -> WorkflowState:
        workflow = replace(self.workflow, metrics=calculate_metrics(self.workflow))
        if not self.context.is_cancelled:
            if workflow.status == "failed":
                self._log_event("workflow_failed", reason=workflow.reason)
            elif workflow.status != "paused" and is_workflow_complete(workflow):
                if workflow.status != "completed":
                    workflow = replace(workflow, status="completed", completed_at=utcnow_iso())
                    workflow = replace(workflow, metrics=calculate_metrics(workflow))
                self.workflow = workflow
                self._log_event("workflow_completed", metrics=workflow.metrics.to_dict())
        self.workflow = workflow
        self._checkpoint()
        return workflow

    def pause(self) -> None:
        if self.context.is_paused or self.workflow.status in ("completed", "failed"):
            return
        self.context.is_paused = True
        self.workflow = pause_workflow(self.workflow)
        self._log_event("workflow_paused")

    async def resume(self) -> WorkflowState:
        if self.context.is_cancelled:
            raise WorkflowError(f"Workflow {self.workflow.id} was cancelled")
        if not self.context.is_paused and self.workflow.status != "paused":
            raise WorkflowError(f"Workflow {self.workflow.id} is not paused")
        self.context.is_paused = False
        self.workflow = resume_workflow(self.workflow)
        self._log_event("workflow_resumed")
        return await self.run()

    def cancel(self) -> None:
        if self.context.is_cancelled:
            return
        # In-flight executions finish on their own; _apply drops their results.
        self.context.is_cancelled = True
        self.workflow = cancel_workflow(self.workflow)
        self._log_event("workflow_cancelled")
        self._checkpoint()


def verification_task_executor(cycle: VerificationCycle) -> TaskExecutor:
    """Run one builder-validator attempt per scheduling of a task.

    The task's retry state carries over between attempts, so a ``retry``
    result re-queues the task and the next attempt sees the validator feedback.
    """

    async def execute(task: WorkflowTask) -> TaskResult:
        return await cycle.run_attempt(task.bv_config, task.retry_state)

    return execute
