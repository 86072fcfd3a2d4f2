import pytest

from crewflow.errors import ConfigurationError
from crewflow.models import AgentOutput, Evidence, ValidatorCheck, ValidatorOutput
from crewflow.retry import (
    EscalationPolicy,
    are_similar_issues,
    classify_issue,
    create_retry_prompt,
    create_retry_state,
    detect_persistent_issues,
    determine_escalation,
    generate_failure_report,
    record_attempt,
    should_retry,
)


def _rejected(*issues: str) -> ValidatorOutput:
    return ValidatorOutput("logic", "task-1", "REJECTED", issues=issues)


def _builder(summary: str = "attempted") -> AgentOutput:
    return AgentOutput(
        "executor",
        "task-1",
        "success",
        summary=summary,
        evidence=(Evidence(type="test_pass", passed=False, content="1 failing"),),
    )


def test_needs_review_escalates_immediately() -> None:
    state = create_retry_state(3)
    output = ValidatorOutput("logic", "task-1", "NEEDS_REVIEW")

    decision = should_retry(state, output)

    assert decision.should_retry is False
    assert decision.action == "escalate"


def test_retryable_rejection_retries() -> None:
    decision = should_retry(create_retry_state(3), _rejected("Syntax error on line 4"))

    assert decision.should_retry is True
    assert decision.action == "retry"


def test_non_retryable_or_critical_rejection_escalates() -> None:
    state = create_retry_state(3)

    assert should_retry(state, _rejected("SQL injection in query builder")).action == "escalate"
    assert should_retry(state, _rejected("weird flaky output")).action == "escalate"

    critical = ValidatorOutput(
        "logic",
        "task-1",
        "REJECTED",
        checks=(ValidatorCheck("null check", False, "crash", "critical"),),
        issues=("null check missing",),
    )
    decision = should_retry(state, critical)
    assert decision.action == "escalate"
    assert "Critical" in decision.reason


def test_exhausted_budget_fails() -> None:
    state = create_retry_state(1)
    state = record_attempt(state, _builder(), _rejected("type error in handler"), "retry")

    decision = should_retry(state, _rejected("type error in handler"))

    assert decision.action == "fail"
    assert "Maximum retry attempts (1)" in decision.reason


def test_persistent_issues_escalate_after_threshold() -> None:
    issue = "Type error in request handler: expected str"
    state = create_retry_state(5)
    state = record_attempt(state, _builder(), _rejected(issue), "retry")
    assert should_retry(state, _rejected(issue)).action == "retry"

    state = record_attempt(state, _builder(), _rejected(issue), "retry")
    decision = should_retry(state, _rejected(issue))

    assert decision.action == "escalate"
    assert detect_persistent_issues(state, _rejected(issue)) == (issue,)


def test_record_attempt_tracks_history_and_status() -> None:
    state = create_retry_state(3)
    state = record_attempt(state, None, None, "retry", issues=("builder crashed",))
    state = record_attempt(state, _builder(), _rejected("bad"), "escalate")

    assert state.current_attempt == 2
    assert state.remaining_attempts == 1
    assert state.status == "escalated"
    assert [attempt.attempt_number for attempt in state.history] == [0, 1]
    assert state.history[0].issues == ("builder crashed",)
    assert state.last_attempt is not None
    assert state.last_attempt.issues == ("bad",)


def test_determine_escalation_levels_are_deterministic() -> None:
    state = create_retry_state(10)

    security = determine_escalation(state, _rejected("Security: secret written to logs"))
    assert security.level == "architect"
    assert security.should_escalate is True
    assert security == determine_escalation(state, _rejected("Security: secret written to logs"))

    dependency = determine_escalation(state, _rejected("Module not found: requests"))
    assert dependency.level == "human"

    for _ in range(5):
        state = record_attempt(state, _builder(), _rejected("edge case"), "retry")
    ceiling = determine_escalation(state, _rejected("edge case"))
    assert ceiling.level == "human"
    assert "5 attempts" in ceiling.reason

    nothing = determine_escalation(create_retry_state(3), _rejected("edge case"))
    assert nothing.should_escalate is False


def test_escalation_policy_overrides_thresholds() -> None:
    policy = EscalationPolicy(human_ceiling=2, auto_escalate_on_security=False)
    state = create_retry_state(5)
    state = record_attempt(state, _builder(), _rejected("security hole"), "retry")

    decision = determine_escalation(state, _rejected("security hole"), policy)
    assert decision.should_escalate is False
    assert decision.persistent_issues == ("security hole",)

    state = record_attempt(state, _builder(), _rejected("security hole"), "retry")
    assert determine_escalation(state, _rejected("security hole"), policy).level == "human"

    with pytest.raises(ConfigurationError):
        EscalationPolicy(max_attempts=0)


def test_issue_classification_and_similarity() -> None:
    assert classify_issue("Missing dependency: numpy") == "non_retryable"
    assert classify_issue("Unexpected token at 3:4") == "retryable"
    assert classify_issue("it just looks off") == "unknown"

    assert are_similar_issues("Missing null check!", "missing null-check")
    assert are_similar_issues(
        "the parser does not handle empty input", "Error: the parser does not handle empty input"
    )
    assert not are_similar_issues("short one", "short two")


def test_failure_report_summarizes_attempts() -> None:
    state = create_retry_state(2)
    state = record_attempt(state, _builder("first"), _rejected("type error in handler"), "retry")
    state = record_attempt(state, _builder("second"), _rejected("type error in handler"), "fail")

    report = generate_failure_report("task-1", state, _rejected("type error in handler"))

    assert report.total_attempts == 2
    assert report.final_status == "failed"
    assert report.persistent_issues == ("type error in handler",)
    assert "persisted across 2 attempts" in report.root_cause_analysis
    assert report.recommended_action.startswith("Review type definitions")
    assert [item.action for item in report.attempt_summary] == ["retry", "fail"]
    assert len(report.evidence) == 2
    assert report.evidence[1].metadata == {"attempt_number": 1}


def test_failure_report_without_attempts() -> None:
    report = generate_failure_report("task-1", create_retry_state(3))

    assert report.total_attempts == 0
    assert "No retry attempts" in report.root_cause_analysis


def test_retry_prompt_carries_feedback() -> None:
    feedback = ValidatorOutput(
        "logic",
        "task-1",
        "REJECTED",
        checks=(ValidatorCheck("bounds", False, "off by one", "major"),),
        issues=("off by one in pager",),
        recommendations=("use range(len(items))",),
    )

    prompt = create_retry_prompt("Add pagination", _builder(), feedback, 2)

    assert prompt.startswith("# RETRY REQUEST (Attempt 2)")
    assert "Add pagination" in prompt
    assert "**bounds** (major): off by one" in prompt
    assert "1. off by one in pager" in prompt
    assert "1. use range(len(items))" in prompt
