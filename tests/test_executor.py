import asyncio
import json
from collections.abc import AsyncIterator
from dataclasses import replace
from pathlib import Path
from typing import Any

from crewflow.agents import BuilderAgent, ValidatorPool
from crewflow.backends.base import AgentBackend
from crewflow.cycle import TaskResult, VerificationCycle
from crewflow.executor import (
    ExecutionEvent,
    WorkflowExecutor,
    verification_task_executor,
)
from crewflow.models import Decomposition, Subtask
from crewflow.retry import EscalationDecision
from crewflow.store import StateStore
from crewflow.team import TeamDefinition, create_team, create_team_member
from crewflow.workflow import WorkflowConfig, WorkflowState, WorkflowTask, create_workflow


def _team(builders: int = 2) -> TeamDefinition:
    members = [
        create_team_member(f"builder-{index}", "executor", "builder")
        for index in range(1, builders + 1)
    ]
    members.append(create_team_member("validator-1", "validator-syntax", "validator"))
    return create_team("team-1", "Team", "", members)


def _workflow(
    *edges: tuple[str, tuple[str, ...]], team: TeamDefinition | None = None, **config: Any
) -> WorkflowState:
    decomposition = Decomposition(
        subtasks=tuple(
            Subtask(task_id, task_id.upper(), f"Implement {task_id}", blocked_by=deps)
            for task_id, deps in edges
        )
    )
    return create_workflow("wf-1", team or _team(), decomposition, WorkflowConfig(**config))


def _ok(task: WorkflowTask) -> TaskResult:
    return TaskResult(task.id, True, "success", summary=f"{task.id} done")


def _executor(workflow: WorkflowState, task_executor: Any, **kwargs: Any) -> WorkflowExecutor:
    return WorkflowExecutor(workflow, task_executor, poll_interval_seconds=0.001, **kwargs)


def test_runs_dependency_chain_to_completion(tmp_path: Path) -> None:
    calls: list[str] = []
    seen: list[ExecutionEvent] = []

    async def run_task(task: WorkflowTask) -> TaskResult:
        calls.append(task.id)
        return _ok(task)

    store = StateStore(tmp_path)
    executor = _executor(
        _workflow(("a", ()), ("b", ("a",)), ("c", ())),
        run_task,
        event_hook=seen.append,
        store=store,
    )

    workflow = asyncio.run(executor.run())

    assert workflow.status == "completed"
    assert calls == ["a", "c", "b"]
    assert workflow.metrics.completed_tasks == 3
    assert workflow.task("b").result.summary == "b done"

    events = [event.type for event in executor.context.event_log]
    assert events[0] == "workflow_started"
    assert events[-1] == "workflow_completed"
    assert events.count("task_completed") == 3
    assert seen == executor.context.event_log

    stored = store.load_workflow("wf-1")
    assert stored is not None
    assert stored.status == "completed"


def test_retry_result_requeues_task() -> None:
    attempts: dict[str, int] = {}

    async def flaky(task: WorkflowTask) -> TaskResult:
        attempts[task.id] = attempts.get(task.id, 0) + 1
        if attempts[task.id] == 1:
            return TaskResult(task.id, False, "retry", issues=("syntax error",))
        return _ok(task)

    executor = _executor(_workflow(("a", ())), flaky)
    workflow = asyncio.run(executor.run())

    assert workflow.status == "completed"
    assert attempts == {"a": 2}
    assert workflow.task("a").retry_count == 1
    assert workflow.metrics.total_retries == 1
    retried = [event for event in executor.context.event_log if event.type == "task_retried"]
    assert retried[0].details == {"attempt": 1}


def test_executor_exception_counts_as_retry() -> None:
    calls = 0

    async def explode_once(task: WorkflowTask) -> TaskResult:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("backend fell over")
        return _ok(task)

    executor = _executor(_workflow(("a", ())), explode_once)
    workflow = asyncio.run(executor.run())

    assert workflow.status == "completed"
    failed = [event for event in executor.context.event_log if event.type == "task_failed"]
    assert failed[0].details["issues"] == ["backend fell over"]


def test_exhausted_retries_fail_workflow() -> None:
    async def always_retry(task: WorkflowTask) -> TaskResult:
        return TaskResult(task.id, False, "retry", summary="nope")

    executor = _executor(_workflow(("a", ()), ("b", ("a",)), max_retries=1), always_retry)
    workflow = asyncio.run(executor.run())

    assert workflow.status == "failed"
    assert workflow.reason == "Task a failed: nope"
    assert workflow.task("b").status == "failed"
    assert executor.context.event_log[-1].type == "workflow_failed"


def test_dependency_cycle_fails_before_running() -> None:
    async def never(task: WorkflowTask) -> TaskResult:
        raise AssertionError(f"{task.id} should not run")

    workflow = asyncio.run(_executor(_workflow(("x", ("y",)), ("y", ("x",))), never).run())

    assert workflow.status == "failed"
    assert workflow.reason == "Dependency cycle detected among tasks: x, y"


def test_blocked_tasks_without_progress_deadlock() -> None:
    workflow = _workflow(("a", ()), ("b", ("a",)))
    stale = replace(
        workflow,
        tasks=(replace(workflow.task("a"), status="completed"), workflow.task("b")),
    )

    result = asyncio.run(_executor(stale, _ok_async).run())

    assert result.status == "failed"
    assert result.reason == "Deadlock detected - blocked tasks cannot proceed: b"


async def _ok_async(task: WorkflowTask) -> TaskResult:
    return _ok(task)


def test_no_eligible_member_fails_workflow() -> None:
    team = create_team(
        "team-1", "Reviewers", "", [create_team_member("v-1", "validator-logic", "validator")]
    )

    result = asyncio.run(_executor(_workflow(("a", ()), team=team), _ok_async).run())

    assert result.status == "failed"
    assert result.reason == "No eligible team member available for pending tasks: a"


def test_manual_assignment_pauses() -> None:
    executor = _executor(_workflow(("a", ()), auto_assign=False), _ok_async)

    result = asyncio.run(executor.run())

    assert result.status == "paused"
    assert result.reason == "Pending tasks require manual assignment: a"
    assert executor.context.is_paused is True


def test_escalation_pauses_and_resume_finishes() -> None:
    decision = EscalationDecision(True, "architect", "Critical security issue detected")
    escalated = False

    async def escalate_once(task: WorkflowTask) -> TaskResult:
        nonlocal escalated
        if not escalated:
            escalated = True
            return TaskResult(task.id, False, "escalate", escalation=decision)
        return _ok(task)

    executor = _executor(_workflow(("a", ()), ("b", ())), escalate_once)

    async def scenario() -> tuple[WorkflowState, WorkflowState]:
        paused = await executor.run()
        return paused, await executor.resume()

    paused, finished = asyncio.run(scenario())

    assert paused.status == "paused"
    assert paused.task("a").status == "pending"
    assert paused.task("b").status == "completed"
    assert paused.escalations[0].decision == decision
    assert finished.status == "completed"
    events = [event.type for event in executor.context.event_log]
    assert "task_escalated" in events
    assert events.index("workflow_paused") < events.index("workflow_resumed")


def test_cancel_drops_inflight_results() -> None:
    finished: list[str] = []

    async def scenario() -> tuple[WorkflowExecutor, WorkflowState]:
        gate = asyncio.Event()

        async def wait_for_gate(task: WorkflowTask) -> TaskResult:
            await gate.wait()
            await asyncio.sleep(0.05)
            finished.append(task.id)
            return _ok(task)

        executor = _executor(_workflow(("a", ())), wait_for_gate)
        runner = asyncio.create_task(executor.run())
        await asyncio.sleep(0.01)
        executor.cancel()
        gate.set()
        return executor, await runner

    executor, workflow = asyncio.run(scenario())

    assert finished == ["a"]
    assert workflow.status == "failed"
    assert workflow.reason == "Workflow cancelled"
    assert workflow.task("a").status != "completed"
    assert executor.context.event_log[-1].type == "workflow_cancelled"


def test_fail_fast_cancels_rest_of_batch() -> None:
    async def fail_a(task: WorkflowTask) -> TaskResult:
        if task.id == "a":
            return TaskResult(task.id, False, "fail", summary="broken build")
        await asyncio.sleep(10)
        return _ok(task)

    executor = _executor(_workflow(("a", ()), ("b", ())), fail_a, fail_fast=True)
    workflow = asyncio.run(executor.run())

    assert workflow.status == "failed"
    assert workflow.reason == "Task a failed: broken build"
    assert workflow.task("b").status == "failed"
    assert workflow.task("b").failure_reason == "Cancelled after workflow failure"


class ApprovingBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt
        yield json.dumps(
            {
                "status": "success",
                "summary": f"built {context['task_id']}",
                "files_modified": ["app.py"],
                "self_validation": {"passed": True},
            }
        )


def test_verification_task_executor_runs_one_attempt() -> None:
    backend = ApprovingBackend()
    cycle = VerificationCycle(BuilderAgent(backend), ValidatorPool(backend))
    workflow = _workflow(("a", ()), default_validation_type="self-only")

    result = asyncio.run(_executor(workflow, verification_task_executor(cycle)).run())

    task = result.task("a")
    assert result.status == "completed"
    assert task.result is not None
    assert task.result.summary == "built a"
    assert task.retry_state is not None
    assert task.retry_state.current_attempt == 1


def test_execution_event_round_trip() -> None:
    event = ExecutionEvent("task_started", task_id="a", member_id="builder-1")

    assert ExecutionEvent.from_dict(event.to_dict()) == event
