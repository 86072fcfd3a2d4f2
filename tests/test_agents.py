import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from crewflow.agents import ArchitectAgent, BuilderAgent, ValidatorPool
from crewflow.backends.base import AgentBackend
from crewflow.errors import ConfigurationError
from crewflow.models import AgentOutput, BVTaskConfig, Evidence, SelfValidation
from crewflow.prompts import render_prompt
from crewflow.retry import (
    EscalationDecision,
    create_retry_state,
    generate_failure_report,
    record_attempt,
)
from crewflow.team import create_team_from_template


class FakeBackend(AgentBackend):
    def __init__(self, reply: str = "plain prose reply") -> None:
        self.reply = reply
        self.calls: list[dict[str, Any]] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        self.calls.append({"system": system_prompt, "user": user_prompt, "context": context})
        yield self.reply


def _config() -> BVTaskConfig:
    return BVTaskConfig(
        task_id="task-1",
        task_description="Add rate limiting to the login endpoint",
        requirements=("Limit to 5 attempts per minute",),
        acceptance_criteria=("Sixth attempt returns 429",),
        validation_type="architect",
    )


def test_builder_agent_passes_agent_context() -> None:
    backend = FakeBackend()
    builder = BuilderAgent(backend, model_tier="high")

    output = asyncio.run(builder.build("do it", task_id="task-1", agent_type="executor-high"))

    assert output is not None
    assert output.status == "partial"
    assert output.summary == "plain prose reply"
    assert output.agent_id == "executor-high"
    context = backend.calls[0]["context"]
    assert context == {"task_id": "task-1", "agent_type": "executor-high", "model_tier": "high"}
    assert backend.calls[0]["system"].startswith("You are the Builder specialist.")


def test_empty_reply_gives_no_output() -> None:
    output = asyncio.run(BuilderAgent(FakeBackend("   ")).build("do it", task_id="task-1"))

    assert output is None


def test_escalation_agent_identifies_itself() -> None:
    backend = FakeBackend()
    response = asyncio.run(ArchitectAgent(backend).run("review", {"task_id": "task-1"}))

    assert response.role == "architect"
    assert backend.calls[0]["context"]["agent_type"] == "architect"


def test_validator_pool_uses_type_defaults_and_overrides() -> None:
    shared = FakeBackend()
    dedicated = FakeBackend()
    pool = ValidatorPool(shared, {"security": dedicated})

    syntax = pool.get("syntax")
    security = pool.get("security")
    custom = pool.get("performance")

    assert (syntax.agent_type, syntax.model_tier, syntax.backend) == (
        "validator-syntax",
        "low",
        shared,
    )
    assert security.backend is dedicated
    assert custom.agent_type == "validator-performance"

    verdict = asyncio.run(security.validate("check it", task_id="task-1"))
    assert verdict.status == "NEEDS_REVIEW"
    assert dedicated.calls[0]["context"]["validator_type"] == "security"


def test_builder_and_validator_prompts() -> None:
    config = _config()
    builder_prompt = render_prompt({"kind": "builder", "config": config})

    assert builder_prompt.startswith("# BUILDER TASK")
    assert "1. Limit to 5 attempts per minute" in builder_prompt
    assert "- **Validation Level:** architect" in builder_prompt

    output = AgentOutput(
        "executor",
        "task-1",
        "success",
        summary="added limiter",
        files_modified=("auth.py",),
        evidence=(Evidence(type="test_pass", passed=True, content="x" * 600),),
        self_validation=SelfValidation(passed=True),
    )
    validator_prompt = render_prompt(
        {
            "kind": "validator",
            "validator_type": "security",
            "builder_output": output,
            "config": config,
        }
    )

    assert validator_prompt.startswith("# SECURITY VALIDATION REQUEST")
    assert "- Files Modified: auth.py" in validator_prompt
    assert "2. Sixth attempt returns 429" in validator_prompt
    assert "x" * 500 + "..." in validator_prompt
    assert "1. Check for security vulnerabilities" in validator_prompt
    assert '"validatorType": "security"' in validator_prompt


def test_escalation_and_member_prompts() -> None:
    state = record_attempt(create_retry_state(3), None, None, "retry", issues=("timeout",))
    decision = EscalationDecision(
        True,
        "coordinator",
        "Persistent issues",
        persistent_issues=("timeout",),
        suggested_action="Re-plan the approach",
    )

    prompt = render_prompt(
        {
            "kind": "escalation",
            "config": _config(),
            "retry_state": state,
            "escalation": decision,
            "failure_report": generate_failure_report("task-1", state),
        }
    )

    assert prompt.startswith("# ESCALATION REVIEW REQUEST")
    assert "failed validation after 1 attempts" in prompt
    assert "- Issues: timeout" in prompt
    assert "- timeout" in prompt
    assert "Re-plan the approach" in prompt

    team = create_team_from_template("standard", "team-1", "Standard")
    member_prompt = render_prompt({"kind": "member", "member": team.members[0], "team": team})
    assert member_prompt.splitlines()[0] == "# BUILDER: builder-1"
    assert "Team: Standard (validation: validator)" in member_prompt

    with pytest.raises(ConfigurationError):
        render_prompt({"kind": "poem"})
