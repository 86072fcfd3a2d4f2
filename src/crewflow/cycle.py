from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any, Literal, assert_never

from crewflow.agents.builder import BuilderAgent
from crewflow.agents.validator import ValidatorPool
from crewflow.backends.base import BackendExecutionError
from crewflow.models import (
    AgentOutput,
    BVTaskConfig,
    CycleAction,
    Evidence,
    ValidationType,
    ValidatorOutput,
)
from crewflow.prompts import PromptRenderer, render_prompt
from crewflow.retry import (
    CYCLE_ACTIONS,
    DEFAULT_ESCALATION_POLICY,
    EscalationDecision,
    EscalationPolicy,
    FailureReport,
    RetryState,
    create_retry_state,
    determine_escalation,
    generate_failure_report,
    record_attempt,
    should_retry,
)
from crewflow.validation import (
    AggregatedVerdict,
    aggregate_validator_results,
    check_builder_self_validation,
    estimate_complexity,
    select_validators,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CycleResult:
    success: bool
    builder_passed: bool
    validator_passed: bool
    evidence: tuple[Evidence, ...] = ()
    issues: tuple[str, ...] = ()
    validator_outputs: tuple[ValidatorOutput, ...] = ()
    aggregated: AggregatedVerdict | None = None

    def feedback(self, task_id: str) -> ValidatorOutput:
        """Collapse the cycle into the single verdict the retry engine decides on."""
        if self.aggregated is None:
            return ValidatorOutput(
                validator_type="self",
                task_id=task_id,
                status="APPROVED" if self.success else "REJECTED",
                issues=self.issues,
            )
        issues: list[str] = []
        for output in self.validator_outputs:
            if output.status == "APPROVED":
                continue
            issues.extend(issue for issue in output.issues if issue not in issues)
        return ValidatorOutput(
            validator_type="+".join(output.validator_type for output in self.validator_outputs),
            task_id=task_id,
            status=self.aggregated.status,
            checks=tuple(check for output in self.validator_outputs for check in output.checks),
            issues=tuple(issues),
            recommendations=tuple(
                item for output in self.validator_outputs for item in output.recommendations
            ),
        )


@dataclass(frozen=True, slots=True)
class TaskResult:
    """Outcome of running one task, as reported back to the workflow engine."""

    task_id: str
    success: bool
    action: CycleAction
    summary: str = ""
    evidence: tuple[Evidence, ...] = ()
    issues: tuple[str, ...] = ()
    retry_state: RetryState | None = None
    escalation: EscalationDecision | None = None
    failure_report: FailureReport | None = None
    duration_seconds: float = 0.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskResult:
        action = data["action"]
        if action not in CYCLE_ACTIONS:
            raise ValueError(f"Invalid task action: {action!r}")
        retry_state = data.get("retry_state")
        escalation = data.get("escalation")
        failure_report = data.get("failure_report")
        return cls(
            task_id=str(data["task_id"]),
            success=bool(data["success"]),
            action=action,
            summary=str(data.get("summary", "")),
            evidence=tuple(Evidence.from_dict(item) for item in data.get("evidence") or ()),
            issues=tuple(str(item) for item in data.get("issues") or ()),
            retry_state=RetryState.from_dict(retry_state) if retry_state else None,
            escalation=EscalationDecision.from_dict(escalation) if escalation else None,
            failure_report=FailureReport.from_dict(failure_report) if failure_report else None,
            duration_seconds=float(data.get("duration_seconds", 0.0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "success": self.success,
            "action": self.action,
            "summary": self.summary,
            "evidence": [item.to_dict() for item in self.evidence],
            "issues": list(self.issues),
            "retry_state": self.retry_state.to_dict() if self.retry_state else None,
            "escalation": self.escalation.to_dict() if self.escalation else None,
            "failure_report": self.failure_report.to_dict() if self.failure_report else None,
            "duration_seconds": self.duration_seconds,
        }


def _validator_type_for(agent: str) -> str:
    return agent.removeprefix("validator-")


class VerificationCycle:
    """Builder-validator loop for a single task.

    ``run_attempt`` performs exactly one build and verification and asks the
    retry engine what to do next; the workflow engine owns the retry budget
    and calls it again while the answer is ``retry``. ``execute`` is the
    standalone loop for callers without a workflow.
    """

    def __init__(
        self,
        builder: BuilderAgent,
        validators: ValidatorPool,
        escalation_agents: Mapping[str, BuilderAgent] | None = None,
        *,
        policy: EscalationPolicy = DEFAULT_ESCALATION_POLICY,
        renderer: PromptRenderer = render_prompt,
    ) -> None:
        self.builder = builder
        self.validators = validators
        self.escalation_agents = dict(escalation_agents or {})
        self.policy = policy
        self.renderer = renderer

    async def _run_validator(
        self, validator_type: str, builder_output: AgentOutput, config: BVTaskConfig
    ) -> ValidatorOutput:
        agent = self.validators.get(validator_type)
        prompt = self.renderer(
            {
                "kind": "validator",
                "validator_type": validator_type,
                "builder_output": builder_output,
                "config": config,
            }
        )
        try:
            return await agent.validate(prompt, task_id=config.task_id)
        except BackendExecutionError as exc:
            logger.warning("Validator %s failed for %s: %s", validator_type, config.task_id, exc)
            return ValidatorOutput(
                validator_type=validator_type,
                task_id=config.task_id,
                status="REJECTED",
                issues=(f"Validator {validator_type} failed: {exc}",),
            )

    async def verify(
        self,
        builder_output: AgentOutput,
        validation_type: ValidationType,
        config: BVTaskConfig,
    ) -> CycleResult:
        evidence = list(builder_output.evidence)
        builder_passed = builder_output.status == "success"
        if builder_output.status in ("failed", "blocked"):
            return CycleResult(
                success=False,
                builder_passed=False,
                validator_passed=False,
                evidence=tuple(evidence),
                issues=(f"Builder phase {builder_output.status}: {builder_output.summary}",),
            )

        issues: list[str] = []
        self_check = check_builder_self_validation(builder_output)
        if not self_check.passed:
            issues.append(
                f"Builder self-validation failed: {self_check.last_error or 'Unknown error'}"
            )

        if config.validator_agents:
            validator_types = tuple(_validator_type_for(agent) for agent in config.validator_agents)
        else:
            complexity = config.complexity or estimate_complexity(builder_output)
            validator_types = select_validators(validation_type, complexity)

        if validation_type == "self-only" or not validator_types:
            return CycleResult(
                success=self_check.passed and builder_passed,
                builder_passed=builder_passed,
                validator_passed=self_check.passed,
                evidence=tuple(evidence),
                issues=tuple(issues),
            )

        outputs = tuple(
            await asyncio.gather(
                *(self._run_validator(kind, builder_output, config) for kind in validator_types)
            )
        )
        aggregated = aggregate_validator_results(outputs)
        evidence.extend(aggregated.evidence)
        approved = aggregated.status == "APPROVED"
        if not approved:
            issues.extend(aggregated.critical_issues)
        return CycleResult(
            success=approved,
            builder_passed=builder_passed,
            validator_passed=approved,
            evidence=tuple(evidence),
            issues=tuple(issues),
            validator_outputs=outputs,
            aggregated=aggregated,
        )

    def _builder_prompt(self, config: BVTaskConfig, state: RetryState) -> str:
        previous = state.last_attempt
        if (
            previous is not None
            and previous.action == "retry"
            and previous.builder_output is not None
            and previous.validator_output is not None
        ):
            return self.renderer(
                {
                    "kind": "retry",
                    "config": config,
                    "previous_output": previous.builder_output,
                    "feedback": previous.validator_output,
                    "attempt_number": state.current_attempt + 1,
                }
            )
        return self.renderer({"kind": "builder", "config": config})

    async def _build(
        self, agent: BuilderAgent, prompt: str, config: BVTaskConfig, agent_type: str | None
    ) -> tuple[AgentOutput | None, str | None]:
        try:
            output = await asyncio.wait_for(
                agent.build(prompt, task_id=config.task_id, agent_type=agent_type),
                timeout=config.timeout_seconds,
            )
        except TimeoutError:
            logger.warning("Agent call timed out for %s", config.task_id)
            return None, f"timed out after {config.timeout_seconds:.1f}s"
        except BackendExecutionError as exc:
            logger.warning("Agent call failed for %s: %s", config.task_id, exc)
            return None, str(exc)
        if output is None:
            return None, "agent returned no output"
        return output, None

    async def run_attempt(
        self, config: BVTaskConfig, retry_state: RetryState | None = None
    ) -> TaskResult:
        started = time.monotonic()
        state = retry_state or create_retry_state(config.max_retries)
        attempt_number = state.current_attempt + 1

        prompt = self._builder_prompt(config, state)
        builder_output, error = await self._build(
            self.builder, prompt, config, config.builder_agent
        )
        if builder_output is None:
            issue = f"Builder failed on attempt {attempt_number}: {error}"
            action: CycleAction = "retry" if state.current_attempt < state.max_attempts else "fail"
            state = record_attempt(state, None, None, action, issues=(issue,))
            return TaskResult(
                task_id=config.task_id,
                success=False,
                action=action,
                summary=issue,
                issues=(issue,),
                retry_state=state,
                failure_report=(
                    generate_failure_report(config.task_id, state, policy=self.policy)
                    if action == "fail"
                    else None
                ),
                duration_seconds=time.monotonic() - started,
            )

        cycle = await self.verify(builder_output, config.validation_type, config)
        feedback = cycle.feedback(config.task_id)
        if cycle.success:
            state = record_attempt(state, builder_output, feedback, "success")
            return self._result(config, state, "success", started, cycle, builder_output.summary)

        decision = should_retry(state, feedback, self.policy)
        match decision.action:
            case "success":
                state = record_attempt(state, builder_output, feedback, "success")
                return self._result(
                    config, state, "success", started, cycle, builder_output.summary
                )
            case "retry":
                state = record_attempt(state, builder_output, feedback, "retry")
                return self._result(config, state, "retry", started, cycle, decision.reason)
            case "fail":
                state = record_attempt(state, builder_output, feedback, "fail")
                return self._result(
                    config,
                    state,
                    "fail",
                    started,
                    cycle,
                    decision.reason,
                    failure_report=generate_failure_report(
                        config.task_id, state, feedback, self.policy
                    ),
                )
            case "escalate":
                return await self._escalate(
                    config, state, builder_output, cycle, feedback, decision.reason, started
                )
            case _:
                assert_never(decision.action)

    async def _escalate(
        self,
        config: BVTaskConfig,
        state: RetryState,
        builder_output: AgentOutput,
        cycle: CycleResult,
        feedback: ValidatorOutput,
        reason: str,
        started: float,
    ) -> TaskResult:
        escalation = determine_escalation(state, feedback, self.policy)
        if not escalation.should_escalate:
            escalation = replace(escalation, should_escalate=True, reason=reason)
        logger.info(
            "Escalating %s to %s: %s", config.task_id, escalation.level, escalation.reason
        )

        evidence = list(cycle.evidence)
        agent = self.escalation_agents.get(escalation.level)
        if agent is not None:
            prompt = self.renderer(
                {
                    "kind": "escalation",
                    "config": config,
                    "retry_state": state,
                    "escalation": escalation,
                    "failure_report": generate_failure_report(
                        config.task_id, state, feedback, self.policy
                    ),
                }
            )
            fix, _error = await self._build(agent, prompt, config, None)
            if fix is not None and fix.status == "success":
                recheck = await self.verify(fix, config.validation_type, config)
                evidence.extend(recheck.evidence)
                if recheck.success:
                    state = record_attempt(state, fix, recheck.feedback(config.task_id), "success")
                    return TaskResult(
                        task_id=config.task_id,
                        success=True,
                        action="success",
                        summary=f"Resolved by {escalation.level}: {fix.summary}",
                        evidence=tuple(evidence),
                        retry_state=state,
                        escalation=escalation,
                        duration_seconds=time.monotonic() - started,
                    )

        state = record_attempt(state, builder_output, feedback, "escalate")
        return TaskResult(
            task_id=config.task_id,
            success=False,
            action="escalate",
            summary=escalation.reason,
            evidence=tuple(evidence),
            issues=cycle.issues or feedback.issues,
            retry_state=state,
            escalation=escalation,
            failure_report=generate_failure_report(config.task_id, state, feedback, self.policy),
            duration_seconds=time.monotonic() - started,
        )

    def _result(
        self,
        config: BVTaskConfig,
        state: RetryState,
        action: CycleAction,
        started: float,
        cycle: CycleResult,
        summary: str,
        *,
        failure_report: FailureReport | None = None,
    ) -> TaskResult:
        return TaskResult(
            task_id=config.task_id,
            success=action == "success",
            action=action,
            summary=summary,
            evidence=cycle.evidence,
            issues=cycle.issues,
            retry_state=state,
            failure_report=failure_report,
            duration_seconds=time.monotonic() - started,
        )

    async def execute(self, config: BVTaskConfig) -> TaskResult:
        started = time.monotonic()
        state = create_retry_state(config.max_retries)
        evidence: list[Evidence] = []
        while True:
            result = await self.run_attempt(config, state)
            evidence.extend(result.evidence)
            if result.action != "retry":
                return replace(
                    result,
                    evidence=tuple(evidence),
                    duration_seconds=time.monotonic() - started,
                )
            assert result.retry_state is not None
            state = result.retry_state


CompletionAction = Literal["complete", "retry", "escalate"]


@dataclass(frozen=True, slots=True)
class CompletionStep:
    action: CompletionAction
    next_step: str | None = None


def handle_cycle_completion(result: TaskResult, retry_state: RetryState) -> CompletionStep:
    if result.success:
        return CompletionStep("complete")
    if retry_state.status == "escalated":
        return CompletionStep(
            "escalate", "Review escalation decision and delegate to appropriate agent"
        )
    if retry_state.status == "failed":
        return CompletionStep("escalate", "Generate failure report and notify coordinator")
    if retry_state.current_attempt < retry_state.max_attempts:
        return CompletionStep("retry", f"Address issues: {', '.join(result.issues)}")
    return CompletionStep("escalate", "Maximum retries reached, escalate for human review")


@dataclass(frozen=True, slots=True)
class BVReportDetail:
    task_id: str
    status: str
    attempts: int
    duration_seconds: float


@dataclass(frozen=True, slots=True)
class BVReport:
    total_tasks: int = 0
    successful: int = 0
    failed: int = 0
    escalated: int = 0
    total_retries: int = 0
    average_cycle_seconds: float = 0.0
    details: tuple[BVReportDetail, ...] = ()


def generate_bv_report(results: Sequence[TaskResult]) -> BVReport:
    if not results:
        return BVReport()

    details: list[BVReportDetail] = []
    successful = failed = escalated = total_retries = 0
    for result in results:
        attempts = result.retry_state.current_attempt if result.retry_state else 1
        total_retries += max(0, attempts - 1)
        if result.success:
            successful += 1
            status = "success"
        elif result.escalation is not None and result.escalation.should_escalate:
            escalated += 1
            status = f"escalated:{result.escalation.level}"
        else:
            failed += 1
            status = "failed"
        details.append(BVReportDetail(result.task_id, status, attempts, result.duration_seconds))

    return BVReport(
        total_tasks=len(results),
        successful=successful,
        failed=failed,
        escalated=escalated,
        total_retries=total_retries,
        average_cycle_seconds=sum(result.duration_seconds for result in results) / len(results),
        details=tuple(details),
    )


def format_bv_report_markdown(report: BVReport) -> str:
    lines = [
        "# Builder-Validator Report",
        "",
        "## Summary",
        "",
        f"- **Total Tasks:** {report.total_tasks}",
        f"- **Successful:** {report.successful}",
        f"- **Failed:** {report.failed}",
        f"- **Escalated:** {report.escalated}",
        f"- **Total Retries:** {report.total_retries}",
        f"- **Average Cycle Time:** {report.average_cycle_seconds:.2f}s",
        "",
    ]
    if report.total_tasks:
        lines += [f"**Success Rate:** {report.successful / report.total_tasks * 100:.1f}%", ""]
    if report.details:
        lines += [
            "## Task Details",
            "",
            "| Task ID | Status | Attempts | Duration |",
            "|---------|--------|----------|----------|",
        ]
        for detail in report.details:
            lines.append(
                f"| {detail.task_id} | {detail.status} | {detail.attempts} "
                f"| {detail.duration_seconds:.2f}s |"
            )
        lines.append("")
    return "\n".join(lines)
