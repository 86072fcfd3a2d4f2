import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

from crewflow.agents import ArchitectAgent, BuilderAgent, ValidatorPool
from crewflow.backends.base import AgentBackend, BackendExecutionError
from crewflow.cycle import (
    TaskResult,
    VerificationCycle,
    format_bv_report_markdown,
    generate_bv_report,
    handle_cycle_completion,
)
from crewflow.models import AgentOutput, BVTaskConfig, SelfValidation
from crewflow.retry import create_retry_state, record_attempt


def builder_reply(status: str = "success", *, passed: bool = True, summary: str = "done") -> str:
    return json.dumps(
        {
            "status": status,
            "summary": summary,
            "files_modified": ["src/app.py"],
            "evidence": [{"type": "test_pass", "passed": passed, "content": "pytest: 3 passed"}],
            "self_validation": {"passed": passed, "checks_run": ["pytest"], "retry_count": 0},
        }
    )


def verdict(validator_type: str, status: str, *issues: str) -> str:
    return json.dumps(
        {
            "validatorType": validator_type,
            "taskId": "task-1",
            "status": status,
            "checks": [],
            "issues": list(issues),
            "recommendations": [],
        }
    )


class ScriptedBackend(AgentBackend):
    """Replies from per-agent queues; the last reply repeats once a queue runs dry."""

    def __init__(
        self,
        builder: list[str],
        validators: dict[str, list[str]] | None = None,
        escalation: dict[str, list[str]] | None = None,
    ) -> None:
        self.builder = builder
        self.validators = validators or {}
        self.escalation = escalation or {}
        self.builder_prompts: list[str] = []
        self.validator_calls: list[str] = []

    @staticmethod
    def _next(queue: list[str]) -> str:
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt
        validator_type = context.get("validator_type")
        if validator_type:
            self.validator_calls.append(validator_type)
            yield self._next(self.validators[validator_type])
            return
        agent_type = context.get("agent_type")
        if agent_type in self.escalation:
            yield self._next(self.escalation[agent_type])
            return
        self.builder_prompts.append(user_prompt)
        yield self._next(self.builder)


class BrokenBackend(AgentBackend):
    def __init__(self) -> None:
        self.calls = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        self.calls += 1
        raise BackendExecutionError("agent crashed", backend="fake", retriable=False)
        yield ""  # pragma: no cover


def _config(**overrides: Any) -> BVTaskConfig:
    values: dict[str, Any] = {
        "task_id": "task-1",
        "task_description": "Add a health endpoint",
        "validation_type": "validator",
        "complexity": "low",
        "max_retries": 3,
        "timeout_seconds": 5.0,
    }
    values.update(overrides)
    return BVTaskConfig(**values)


def _cycle(backend: AgentBackend, **kwargs: Any) -> VerificationCycle:
    return VerificationCycle(BuilderAgent(backend), ValidatorPool(backend), **kwargs)


def test_first_attempt_success() -> None:
    backend = ScriptedBackend([builder_reply()], {"syntax": [verdict("syntax", "APPROVED")]})

    result = asyncio.run(_cycle(backend).execute(_config()))

    assert result.success is True
    assert result.action == "success"
    assert result.retry_state is not None
    assert result.retry_state.current_attempt == 1
    assert backend.validator_calls == ["syntax"]
    assert {item.type for item in result.evidence} == {"test_pass", "syntax_clean"}


def test_retry_then_success_sends_feedback_to_builder() -> None:
    backend = ScriptedBackend(
        [builder_reply(summary="first"), builder_reply(summary="second")],
        {
            "syntax": [
                verdict("syntax", "REJECTED", "Syntax error: unexpected token in app.py"),
                verdict("syntax", "APPROVED"),
            ]
        },
    )

    result = asyncio.run(_cycle(backend).execute(_config()))

    assert result.success is True
    assert result.summary == "second"
    assert result.retry_state is not None
    assert result.retry_state.current_attempt == 2
    assert [attempt.action for attempt in result.retry_state.history] == ["retry", "success"]
    assert backend.builder_prompts[0].startswith("# BUILDER TASK")
    assert backend.builder_prompts[1].startswith("# RETRY REQUEST (Attempt 2)")
    assert "unexpected token" in backend.builder_prompts[1]


def test_needs_review_escalates_without_agent() -> None:
    backend = ScriptedBackend([builder_reply()], {"syntax": [verdict("syntax", "NEEDS_REVIEW")]})

    result = asyncio.run(_cycle(backend).execute(_config()))

    assert result.success is False
    assert result.action == "escalate"
    assert result.escalation is not None
    assert result.escalation.should_escalate is True
    assert result.failure_report is not None
    assert result.failure_report.final_status == "escalated"
    assert len(backend.builder_prompts) == 1


def test_escalation_agent_fix_is_reverified() -> None:
    backend = ScriptedBackend(
        [builder_reply()],
        {
            "syntax": [
                verdict("syntax", "REJECTED", "Security vulnerability: token written to log"),
                verdict("syntax", "APPROVED"),
            ]
        },
        escalation={"architect": [builder_reply(summary="moved token to vault")]},
    )
    cycle = _cycle(backend, escalation_agents={"architect": ArchitectAgent(backend)})

    result = asyncio.run(cycle.execute(_config()))

    assert result.success is True
    assert result.action == "success"
    assert result.summary == "Resolved by architect: moved token to vault"
    assert result.escalation is not None
    assert result.escalation.level == "architect"
    assert backend.validator_calls == ["syntax", "syntax"]


def test_backend_errors_consume_the_retry_budget() -> None:
    backend = BrokenBackend()

    result = asyncio.run(_cycle(backend).execute(_config(max_retries=2)))

    assert backend.calls == 3
    assert result.action == "fail"
    assert result.failure_report is not None
    assert result.failure_report.total_attempts == 3
    assert "agent crashed" in result.summary


def test_builder_timeout_is_a_failed_attempt() -> None:
    class SlowBackend(AgentBackend):
        async def execute(
            self,
            system_prompt: str,
            user_prompt: str,
            context: dict[str, Any],
        ) -> AsyncIterator[str]:
            _ = system_prompt, user_prompt, context
            await asyncio.sleep(1.0)
            yield builder_reply()

    result = asyncio.run(
        _cycle(SlowBackend()).execute(_config(max_retries=0, timeout_seconds=0.05))
    )

    assert result.action == "fail"
    assert "timed out" in result.summary


def test_validator_backend_error_becomes_rejection() -> None:
    class ValidatorDown(ScriptedBackend):
        async def execute(
            self,
            system_prompt: str,
            user_prompt: str,
            context: dict[str, Any],
        ) -> AsyncIterator[str]:
            if context.get("validator_type"):
                raise BackendExecutionError("validator offline", backend="fake")
            async for chunk in super().execute(system_prompt, user_prompt, context):
                yield chunk

    backend = ValidatorDown([builder_reply()])
    output = AgentOutput(
        "executor",
        "task-1",
        "success",
        files_modified=("a.py",),
        self_validation=SelfValidation(passed=True),
    )

    cycle_result = asyncio.run(_cycle(backend).verify(output, "validator", _config()))

    assert cycle_result.success is False
    assert cycle_result.validator_outputs[0].status == "REJECTED"
    assert "Validator syntax failed: validator offline" in cycle_result.issues


def test_self_only_trusts_builder_self_check() -> None:
    backend = ScriptedBackend([builder_reply(passed=True)])

    result = asyncio.run(_cycle(backend).execute(_config(validation_type="self-only")))

    assert result.success is True
    assert backend.validator_calls == []


def test_failed_builder_short_circuits_validation() -> None:
    backend = ScriptedBackend([builder_reply()], {"syntax": [verdict("syntax", "APPROVED")]})
    output = AgentOutput("executor", "task-1", "blocked", summary="missing credentials")

    cycle_result = asyncio.run(_cycle(backend).verify(output, "validator", _config()))

    assert cycle_result.success is False
    assert cycle_result.issues == ("Builder phase blocked: missing credentials",)
    assert backend.validator_calls == []


def test_completion_steps_and_bv_report() -> None:
    state = record_attempt(create_retry_state(3), None, None, "retry", issues=("flaky",))
    pending = TaskResult("task-1", False, "retry", issues=("flaky",), retry_state=state)
    done = TaskResult("task-2", True, "success", retry_state=state, duration_seconds=2.0)

    assert handle_cycle_completion(done, state).action == "complete"
    step = handle_cycle_completion(pending, state)
    assert step.action == "retry"
    assert step.next_step == "Address issues: flaky"

    report = generate_bv_report([done, pending])
    assert report.total_tasks == 2
    assert report.successful == 1
    assert report.failed == 1

    markdown = format_bv_report_markdown(report)
    assert "**Success Rate:** 50.0%" in markdown
    assert "| task-2 | success | 1 | 2.00s |" in markdown
