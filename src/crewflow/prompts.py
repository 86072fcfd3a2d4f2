"""Default prompt renderer.

The verification cycle never formats text itself; it hands a context dict to a
renderer. ``context["kind"]`` selects the prompt:

- ``builder``: ``config``
- ``retry``: ``config``, ``previous_output``, ``feedback``, ``attempt_number``
- ``validator``: ``config``, ``validator_type``, ``builder_output``
- ``escalation``: ``config``, ``retry_state``, ``escalation``, ``failure_report``
- ``member``: ``member``, optionally ``team``

Values are the typed objects from :mod:`crewflow.models`, :mod:`crewflow.retry`
and :mod:`crewflow.team`.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

from crewflow.errors import ConfigurationError
from crewflow.models import AgentOutput, BVTaskConfig
from crewflow.retry import EscalationDecision, FailureReport, RetryState, create_retry_prompt

PromptRenderer = Callable[[dict[str, Any]], str]

EVIDENCE_PREVIEW_CHARS = 500

VALIDATION_INSTRUCTIONS: dict[str, tuple[str, ...]] = {
    "syntax": (
        "Check for syntax errors in all modified files",
        "Verify code compiles/parses without errors",
        "Check for obvious typos or malformed constructs",
    ),
    "logic": (
        "Verify the implementation logic is correct",
        "Check for edge cases and error handling",
        "Ensure the code does what it claims to do",
    ),
    "security": (
        "Check for security vulnerabilities",
        "Verify input validation and sanitization",
        "Check for sensitive data exposure",
        "Review authentication/authorization if applicable",
    ),
    "integration": (
        "Verify changes integrate with existing code",
        "Check for breaking changes to APIs",
        "Verify imports and dependencies are correct",
        "Test cross-component interactions",
    ),
    "architect": (
        "Review the overall design against the requirements",
        "Check module boundaries and long-term maintainability",
        "Confirm the change fits the existing architecture",
    ),
}


def _numbered(items: tuple[str, ...] | list[str]) -> list[str]:
    return [f"{index}. {item}" for index, item in enumerate(items, start=1)]


def render_builder_prompt(config: BVTaskConfig) -> str:
    lines = ["# BUILDER TASK", "", f"**Task ID:** {config.task_id}", ""]
    lines += ["## Task Description", config.task_description, ""]
    if config.requirements:
        lines += ["## Requirements", *_numbered(config.requirements), ""]
    if config.acceptance_criteria:
        lines += ["## Acceptance Criteria", *_numbered(config.acceptance_criteria), ""]
    lines += ["## Validation", f"- **Validation Level:** {config.validation_type}"]
    if config.validator_agents:
        lines.append(f"- **Validators:** {', '.join(config.validator_agents)}")
    lines += [f"- **Max Retries:** {config.max_retries}", ""]
    lines += [
        "## Instructions",
        "",
        "1. Implement the task according to the requirements",
        "2. Ensure all acceptance criteria are met",
        "3. Run self-validation before submitting",
        "4. Provide evidence of successful completion",
        "",
        "**Important:** Your output will be validated. Reply with a JSON object containing",
        "`status` (success | partial | failed | blocked), `summary`, `files_modified`,",
        "`evidence` (list of {type, passed, content}) and `self_validation`",
        "({passed, checks_run, checks_passed, checks_failed, retry_count}).",
    ]
    return "\n".join(lines)


def render_validator_prompt(
    validator_type: str, builder_output: AgentOutput, config: BVTaskConfig
) -> str:
    lines = [f"# {validator_type.upper()} VALIDATION REQUEST", ""]
    lines += [
        "## Task Context",
        f"- Task ID: {config.task_id}",
        f"- Files Modified: {', '.join(builder_output.files_modified) or 'None'}",
        "",
    ]
    lines.append("## Requirements to Verify")
    requirements = (*config.requirements, *config.acceptance_criteria)
    lines += _numbered(requirements) if requirements else ["- No specific requirements provided"]
    lines.append("")
    lines += [
        "## Builder Output",
        f"- Status: {builder_output.status}",
        f"- Summary: {builder_output.summary}",
        "",
    ]
    if builder_output.evidence:
        lines.append("### Builder Evidence")
        for index, item in enumerate(builder_output.evidence, start=1):
            preview = item.content[:EVIDENCE_PREVIEW_CHARS]
            if len(item.content) > EVIDENCE_PREVIEW_CHARS:
                preview += "..."
            lines += [
                f"#### Evidence {index} ({item.type})",
                f"- Passed: {item.passed}",
                "```",
                preview,
                "```",
            ]
        lines.append("")
    if builder_output.self_validation is not None:
        lines += [
            "### Builder Self-Validation",
            f"- Passed: {builder_output.self_validation.passed}",
            f"- Retry Count: {builder_output.self_validation.retry_count}",
        ]
        if builder_output.self_validation.last_error:
            lines.append(f"- Last Error: {builder_output.self_validation.last_error}")
        lines.append("")

    lines += ["## Validation Instructions", ""]
    steps = VALIDATION_INSTRUCTIONS.get(validator_type)
    if steps:
        lines.append(f"Perform {validator_type.upper()} validation:")
        lines += _numbered(steps)
    else:
        lines.append(f"Perform {validator_type.upper()} validation based on standard practices.")
    lines.append("")

    schema = {
        "validatorType": validator_type,
        "taskId": config.task_id,
        "status": "APPROVED | REJECTED | NEEDS_REVIEW",
        "checks": [
            {
                "name": "Check name",
                "passed": True,
                "evidence": "Evidence description",
                "severity": "critical | major | minor",
            }
        ],
        "issues": ["List of issues found"],
        "recommendations": ["List of recommendations"],
    }
    lines += [
        "## Required Output Format",
        "",
        "Respond with a JSON block in the following format:",
        "```json",
        json.dumps(schema, indent=2),
        "```",
    ]
    return "\n".join(lines)


def render_escalation_prompt(
    config: BVTaskConfig,
    retry_state: RetryState,
    escalation: EscalationDecision,
    failure_report: FailureReport,
) -> str:
    lines = [
        "# ESCALATION REVIEW REQUEST",
        "",
        "You are reviewing a task that failed validation after "
        f"{failure_report.total_attempts} attempts.",
        "",
        "## Original Task",
        config.task_description,
        "",
    ]
    if config.requirements:
        lines += ["## Requirements", *_numbered(config.requirements), ""]
    if config.acceptance_criteria:
        lines += ["## Acceptance Criteria", *_numbered(config.acceptance_criteria), ""]
    lines.append("## Failure History")
    for index, attempt in enumerate(retry_state.history, start=1):
        builder = attempt.builder_output
        verdict = attempt.validator_output
        recommendations = verdict.recommendations if verdict else ()
        lines += [
            f"**Attempt {index}:**",
            f"- Builder Agent: {builder.agent_id if builder else 'unknown'}",
            f"- Status: {builder.status if builder else 'unknown'}",
            f"- Issues: {'; '.join(attempt.issues) or 'No validator feedback'}",
            f"- Recommendations: {'; '.join(recommendations) or 'None'}",
            "",
        ]
    lines += ["## Root Cause Analysis", failure_report.root_cause_analysis, ""]
    lines.append("## Persistent Issues")
    if escalation.persistent_issues:
        lines += [f"- {issue}" for issue in escalation.persistent_issues]
    else:
        lines.append("No clear patterns detected")
    lines += [
        "",
        "## Suggested Action",
        escalation.suggested_action,
        "",
        "## Your Task",
        "",
        "1. **Analyze** why previous attempts failed despite validator feedback",
        "2. **Identify** the root cause (architectural issue, missing context, incorrect approach)",
        "3. **Either** fix the issue directly or provide specific guidance for the builder",
        "4. **Ensure** all validators would pass after your changes",
        "",
        "Reply with the same JSON object a builder would produce.",
    ]
    return "\n".join(lines)


def render_member_prompt(member: Any, team: Any = None) -> str:
    """Short briefing for a team member, used as a composer prompt generator."""
    lines = [f"# {member.role.upper()}: {member.id}", "", f"Agent type: {member.agent_type}"]
    lines.append(f"Model tier: {member.model_tier}")
    if member.capabilities:
        lines.append(f"Capabilities: {', '.join(member.capabilities)}")
    if team is not None:
        lines.append(f"Team: {team.name} (validation: {team.default_validation_type})")
    return "\n".join(lines)


def render_prompt(context: dict[str, Any]) -> str:
    kind = context.get("kind")
    if kind == "builder":
        return render_builder_prompt(context["config"])
    if kind == "retry":
        config: BVTaskConfig = context["config"]
        return create_retry_prompt(
            config.task_description,
            context["previous_output"],
            context["feedback"],
            context["attempt_number"],
        )
    if kind == "validator":
        return render_validator_prompt(
            context["validator_type"], context["builder_output"], context["config"]
        )
    if kind == "escalation":
        return render_escalation_prompt(
            context["config"],
            context["retry_state"],
            context["escalation"],
            context["failure_report"],
        )
    if kind == "member":
        return render_member_prompt(context["member"], context.get("team"))
    raise ConfigurationError(f"Unknown prompt kind: {kind!r}")
