"""Retry bookkeeping, retry/escalate decisions and failure reports for builder attempts."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Literal, assert_never

from crewflow.errors import ConfigurationError
from crewflow.models import (
    AgentOutput,
    CycleAction,
    Evidence,
    ValidatorOutput,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

RetryStatus = Literal["in_progress", "success", "failed", "escalated"]
EscalationLevel = Literal["coordinator", "architect", "human"]
IssueClass = Literal["retryable", "non_retryable", "unknown"]

DEFAULT_MAX_ATTEMPTS = 3
HUMAN_ESCALATION_CEILING = 5

CYCLE_ACTIONS: tuple[str, ...] = ("retry", "escalate", "success", "fail")
RETRY_STATUSES: tuple[str, ...] = ("in_progress", "success", "failed", "escalated")
ESCALATION_LEVELS: tuple[str, ...] = ("coordinator", "architect", "human")

NON_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "security",
    "vulnerability",
    "sensitive data",
    "sql injection",
    "xss",
    "authentication",
    "authorization",
    "missing dependency",
    "module not found",
    "cannot find module",
    "package not installed",
    "missing configuration",
    "config file not found",
    "architectural",
    "design flaw",
    "fundamental issue",
    "requires manual",
    "human review",
    "cannot proceed",
)

RETRYABLE_PATTERNS: tuple[str, ...] = (
    "syntax error",
    "parse error",
    "unexpected token",
    "missing semicolon",
    "missing bracket",
    "indentation",
    "type error",
    "type mismatch",
    "cannot assign",
    "incompatible type",
    "undefined variable",
    "logic error",
    "incorrect implementation",
    "edge case",
    "boundary condition",
    "null check",
    "error handling",
)

_SECURITY_RE = re.compile(r"security|vulnerability|sensitive data", re.IGNORECASE)
_DEPENDENCY_RE = re.compile(
    r"missing dependency|module not found|package not installed|config file not found",
    re.IGNORECASE,
)
_NORMALIZE_RE = re.compile(r"[^a-z0-9]")


@dataclass(frozen=True, slots=True)
class EscalationPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    human_ceiling: int = HUMAN_ESCALATION_CEILING
    persistent_issue_attempts: int = 2
    coordinator_threshold: int = 3
    auto_escalate_on_security: bool = True

    def __post_init__(self) -> None:
        for name in (
            "max_attempts",
            "human_ceiling",
            "persistent_issue_attempts",
            "coordinator_threshold",
        ):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"Escalation policy {name} must be >= 1")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EscalationPolicy:
        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "human_ceiling": self.human_ceiling,
            "persistent_issue_attempts": self.persistent_issue_attempts,
            "coordinator_threshold": self.coordinator_threshold,
            "auto_escalate_on_security": self.auto_escalate_on_security,
        }


DEFAULT_ESCALATION_POLICY = EscalationPolicy()


@dataclass(frozen=True, slots=True)
class RetryAttempt:
    attempt_number: int
    action: CycleAction
    timestamp: str = field(default_factory=utcnow_iso)
    builder_output: AgentOutput | None = None
    validator_output: ValidatorOutput | None = None
    issues: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryAttempt:
        action = data["action"]
        if action not in CYCLE_ACTIONS:
            raise ValueError(f"Invalid attempt action: {action!r}")
        builder = data.get("builder_output")
        validator = data.get("validator_output")
        return cls(
            attempt_number=int(data["attempt_number"]),
            action=action,
            timestamp=str(data.get("timestamp") or utcnow_iso()),
            builder_output=AgentOutput.from_dict(builder) if builder else None,
            validator_output=ValidatorOutput.from_dict(validator) if validator else None,
            issues=tuple(str(item) for item in data.get("issues") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_number": self.attempt_number,
            "action": self.action,
            "timestamp": self.timestamp,
            "builder_output": self.builder_output.to_dict() if self.builder_output else None,
            "validator_output": (
                self.validator_output.to_dict() if self.validator_output else None
            ),
            "issues": list(self.issues),
        }


@dataclass(frozen=True, slots=True)
class RetryState:
    max_attempts: int
    current_attempt: int = 0
    history: tuple[RetryAttempt, ...] = ()
    status: RetryStatus = "in_progress"

    @property
    def last_attempt(self) -> RetryAttempt | None:
        return self.history[-1] if self.history else None

    @property
    def remaining_attempts(self) -> int:
        return max(0, self.max_attempts - self.current_attempt)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryState:
        status = data.get("status", "in_progress")
        if status not in RETRY_STATUSES:
            raise ValueError(f"Invalid retry status: {status!r}")
        return cls(
            max_attempts=int(data["max_attempts"]),
            current_attempt=int(data.get("current_attempt", 0)),
            history=tuple(RetryAttempt.from_dict(item) for item in data.get("history") or ()),
            status=status,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "current_attempt": self.current_attempt,
            "history": [attempt.to_dict() for attempt in self.history],
            "status": self.status,
        }


@dataclass(frozen=True, slots=True)
class RetryDecision:
    should_retry: bool
    action: CycleAction
    reason: str


@dataclass(frozen=True, slots=True)
class EscalationDecision:
    should_escalate: bool
    level: EscalationLevel
    reason: str
    persistent_issues: tuple[str, ...] = ()
    suggested_action: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EscalationDecision:
        level = data["level"]
        if level not in ESCALATION_LEVELS:
            raise ValueError(f"Invalid escalation level: {level!r}")
        return cls(
            should_escalate=bool(data["should_escalate"]),
            level=level,
            reason=str(data.get("reason", "")),
            persistent_issues=tuple(str(item) for item in data.get("persistent_issues") or ()),
            suggested_action=str(data.get("suggested_action", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "should_escalate": self.should_escalate,
            "level": self.level,
            "reason": self.reason,
            "persistent_issues": list(self.persistent_issues),
            "suggested_action": self.suggested_action,
        }


@dataclass(frozen=True, slots=True)
class AttemptSummary:
    attempt: int
    action: CycleAction
    issues: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AttemptSummary:
        return cls(
            attempt=int(data["attempt"]),
            action=data["action"],
            issues=tuple(str(item) for item in data.get("issues") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"attempt": self.attempt, "action": self.action, "issues": list(self.issues)}


@dataclass(frozen=True, slots=True)
class FailureReport:
    task_id: str
    total_attempts: int
    final_status: Literal["failed", "escalated"]
    root_cause_analysis: str
    recommended_action: str
    persistent_issues: tuple[str, ...] = ()
    attempt_summary: tuple[AttemptSummary, ...] = ()
    evidence: tuple[Evidence, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailureReport:
        final_status = data["final_status"]
        if final_status not in ("failed", "escalated"):
            raise ValueError(f"Invalid final status: {final_status!r}")
        return cls(
            task_id=str(data["task_id"]),
            total_attempts=int(data["total_attempts"]),
            final_status=final_status,
            root_cause_analysis=str(data.get("root_cause_analysis", "")),
            recommended_action=str(data.get("recommended_action", "")),
            persistent_issues=tuple(str(item) for item in data.get("persistent_issues") or ()),
            attempt_summary=tuple(
                AttemptSummary.from_dict(item) for item in data.get("attempt_summary") or ()
            ),
            evidence=tuple(Evidence.from_dict(item) for item in data.get("evidence") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "total_attempts": self.total_attempts,
            "final_status": self.final_status,
            "root_cause_analysis": self.root_cause_analysis,
            "recommended_action": self.recommended_action,
            "persistent_issues": list(self.persistent_issues),
            "attempt_summary": [item.to_dict() for item in self.attempt_summary],
            "evidence": [item.to_dict() for item in self.evidence],
        }


def create_retry_state(max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> RetryState:
    if max_attempts < 0:
        raise ConfigurationError("max_attempts must be >= 0")
    return RetryState(max_attempts=max_attempts)


def _status_for(action: CycleAction) -> RetryStatus:
    match action:
        case "success":
            return "success"
        case "escalate":
            return "escalated"
        case "fail":
            return "failed"
        case "retry":
            return "in_progress"
        case _:
            assert_never(action)


def record_attempt(
    state: RetryState,
    builder_output: AgentOutput | None,
    validator_output: ValidatorOutput | None,
    action: CycleAction,
    *,
    issues: tuple[str, ...] | None = None,
) -> RetryState:
    attempt = RetryAttempt(
        attempt_number=state.current_attempt,
        action=action,
        builder_output=builder_output,
        validator_output=validator_output,
        issues=(
            issues
            if issues is not None
            else (validator_output.issues if validator_output else ())
        ),
    )
    return replace(
        state,
        current_attempt=state.current_attempt + 1,
        history=(*state.history, attempt),
        status=_status_for(action),
    )


def classify_issue(issue: str) -> IssueClass:
    lowered = issue.lower()
    if any(pattern in lowered for pattern in NON_RETRYABLE_PATTERNS):
        return "non_retryable"
    if any(pattern in lowered for pattern in RETRYABLE_PATTERNS):
        return "retryable"
    return "unknown"


def is_retryable_issue(issue: str) -> bool:
    return classify_issue(issue) == "retryable"


def _normalize_issue(issue: str) -> str:
    return _NORMALIZE_RE.sub("", issue.lower())


def are_similar_issues(first: str, second: str) -> bool:
    left = _normalize_issue(first)
    right = _normalize_issue(second)
    if left == right:
        return True
    if len(left) > 20 and len(right) > 20:
        return left in right or right in left
    return False


def detect_persistent_issues(state: RetryState, output: ValidatorOutput) -> tuple[str, ...]:
    """Earlier issues that resurface (fuzzily) in ``output``, in first-seen order."""
    persistent: list[str] = []
    for attempt in state.history:
        if attempt.validator_output is None:
            continue
        for issue in attempt.validator_output.issues:
            if issue in persistent:
                continue
            if any(are_similar_issues(issue, current) for current in output.issues):
                persistent.append(issue)
    return tuple(persistent)


def should_retry(
    state: RetryState,
    output: ValidatorOutput,
    policy: EscalationPolicy = DEFAULT_ESCALATION_POLICY,
) -> RetryDecision:
    if state.current_attempt >= state.max_attempts:
        decision = RetryDecision(
            False, "fail", f"Maximum retry attempts ({state.max_attempts}) reached"
        )
    else:
        match output.status:
            case "APPROVED":
                decision = RetryDecision(False, "success", "Validation passed")
            case "NEEDS_REVIEW":
                decision = RetryDecision(False, "escalate", "Manual review required - escalating")
            case "REJECTED":
                decision = _decide_rejected(state, output, policy)
            case _:
                assert_never(output.status)
    logger.debug(
        "Retry decision for %s at attempt %d: %s (%s)",
        output.task_id,
        state.current_attempt,
        decision.action,
        decision.reason,
    )
    return decision


def _decide_rejected(
    state: RetryState, output: ValidatorOutput, policy: EscalationPolicy
) -> RetryDecision:
    if any(not is_retryable_issue(issue) for issue in output.issues):
        return RetryDecision(False, "escalate", "Non-retryable issue detected - escalating")
    if output.has_critical_failure:
        return RetryDecision(False, "escalate", "Critical validation failure - escalating")
    persistent = detect_persistent_issues(state, output)
    if persistent and state.current_attempt >= policy.persistent_issue_attempts:
        return RetryDecision(
            False,
            "escalate",
            f"Persistent issues detected after {state.current_attempt} attempts",
        )
    return RetryDecision(True, "retry", "Retryable issues found - attempting fix")


def determine_escalation(
    state: RetryState,
    output: ValidatorOutput,
    policy: EscalationPolicy = DEFAULT_ESCALATION_POLICY,
) -> EscalationDecision:
    """Pick who should look at a stuck task. Same inputs always give the same decision."""
    persistent = detect_persistent_issues(state, output)

    def decide(
        should_escalate: bool, level: EscalationLevel, reason: str, action: str
    ) -> EscalationDecision:
        return EscalationDecision(
            should_escalate=should_escalate,
            level=level,
            reason=reason,
            persistent_issues=persistent,
            suggested_action=action,
        )

    if policy.auto_escalate_on_security and any(
        _SECURITY_RE.search(issue) for issue in output.issues
    ):
        return decide(
            True,
            "architect",
            "Critical security issue detected",
            "Security architect review required for vulnerability assessment "
            "and remediation guidance",
        )
    if state.current_attempt >= policy.human_ceiling:
        return decide(
            True,
            "human",
            f"Exceeded reasonable retry limit ({state.current_attempt} attempts)",
            "Manual intervention needed - automated retries are not resolving the issues",
        )
    if any(_DEPENDENCY_RE.search(issue) for issue in output.issues):
        return decide(
            True,
            "human",
            "Missing dependencies or configuration files",
            "Install required dependencies or update configuration files manually",
        )
    if persistent and state.current_attempt >= policy.coordinator_threshold:
        return decide(
            True,
            "coordinator",
            f"Persistent issues detected after {state.current_attempt} attempts",
            "Coordinator should re-evaluate approach or delegate to specialized agent",
        )
    if output.has_critical_failure:
        return decide(
            True,
            "architect",
            "Critical validation check failed",
            "Architect review needed to address fundamental design or implementation issues",
        )
    return decide(False, "coordinator", "No escalation needed", "Continue with retry logic")


def _root_cause(state: RetryState, persistent: tuple[str, ...]) -> str:
    if persistent:
        return (
            f"The following issues persisted across {len(state.history)} attempts: "
            f"{'; '.join(persistent)}. This suggests either a misunderstanding of the "
            "requirements or a limitation in the builder's ability to address these issues."
        )
    last = state.last_attempt
    if last is None:
        return "No retry attempts were made - builder phase may have failed immediately."
    if not last.issues:
        return (
            "Last attempt had no specific issues recorded - failure may be due to "
            "timeout or system error."
        )
    return (
        f"Last attempt failed with the following issues: {'; '.join(last.issues)}. "
        "The builder was unable to resolve these within the retry limit."
    )


def _recommended_action(
    state: RetryState,
    persistent: tuple[str, ...],
    final_output: ValidatorOutput | None,
    policy: EscalationPolicy,
) -> str:
    if final_output is not None:
        escalation = determine_escalation(state, final_output, policy)
        if escalation.should_escalate:
            return escalation.suggested_action
    if any(re.search(r"security|vulnerability", issue, re.IGNORECASE) for issue in persistent):
        return (
            "Escalate to security architect for vulnerability assessment and "
            "secure coding guidance."
        )
    if any(
        re.search(r"missing dependency|module not found", issue, re.IGNORECASE)
        for issue in persistent
    ):
        return "Install missing dependencies or update the project's dependency manifest."
    if any(re.search(r"type error|type mismatch", issue, re.IGNORECASE) for issue in persistent):
        return "Review type definitions and ensure proper type annotations throughout the codebase."
    if len(state.history) >= policy.human_ceiling:
        return (
            "Consider breaking the task into smaller, more manageable subtasks "
            "or seeking human guidance."
        )
    return (
        "Review the issues from the last attempt and consider alternative "
        "implementation approaches."
    )


def generate_failure_report(
    task_id: str,
    state: RetryState,
    final_output: ValidatorOutput | None = None,
    policy: EscalationPolicy = DEFAULT_ESCALATION_POLICY,
) -> FailureReport:
    persistent = detect_persistent_issues(state, final_output) if final_output else ()
    evidence: list[Evidence] = []
    for attempt in state.history:
        if attempt.builder_output is None:
            continue
        for item in attempt.builder_output.evidence:
            evidence.append(
                Evidence(
                    type=item.type,
                    passed=item.passed,
                    content=item.content,
                    timestamp=attempt.timestamp,
                    metadata={"attempt_number": attempt.attempt_number},
                )
            )
    return FailureReport(
        task_id=task_id,
        total_attempts=len(state.history),
        final_status="escalated" if state.status == "escalated" else "failed",
        root_cause_analysis=_root_cause(state, persistent),
        recommended_action=_recommended_action(state, persistent, final_output, policy),
        persistent_issues=persistent,
        attempt_summary=tuple(
            AttemptSummary(attempt.attempt_number, attempt.action, attempt.issues)
            for attempt in state.history
        ),
        evidence=tuple(evidence),
    )


def create_retry_prompt(
    original_task: str,
    previous_output: AgentOutput,
    feedback: ValidatorOutput,
    attempt_number: int,
) -> str:
    lines = [
        f"# RETRY REQUEST (Attempt {attempt_number})",
        "",
        "## Original Task",
        original_task,
        "",
        "## Previous Attempt Summary",
        f"- Status: {previous_output.status}",
        f"- Summary: {previous_output.summary}",
        "",
        "## Validation Feedback",
        f"**Validator Status:** {feedback.status}",
        "",
    ]
    if feedback.failed_checks:
        lines.append("### Failed Checks")
        for check in feedback.failed_checks:
            lines.append(f"- **{check.name}** ({check.severity}): {check.evidence}")
        lines.append("")
    if feedback.issues:
        lines.append("### Issues to Fix")
        lines.extend(f"{index}. {issue}" for index, issue in enumerate(feedback.issues, start=1))
        lines.append("")
    if feedback.recommendations:
        lines.append("### Recommendations")
        lines.extend(
            f"{index}. {item}" for index, item in enumerate(feedback.recommendations, start=1)
        )
        lines.append("")
    lines.extend(
        [
            "## Instructions",
            "",
            f"This is attempt {attempt_number}. "
            "Focus on fixing the specific issues identified above.",
            "",
            "**Priority Actions:**",
            "1. Address all failed validation checks, starting with critical severity",
            "2. Fix the issues listed above in order",
            "3. Follow the recommendations provided by the validator",
            "4. Run self-validation before submitting",
            "",
            "**Important:** Do not introduce new issues while fixing existing ones. "
            "Test thoroughly.",
        ]
    )
    return "\n".join(lines)
