from dataclasses import replace

from crewflow.cycle import TaskResult
from crewflow.executor import ExecutionContext, ExecutionEvent
from crewflow.models import Decomposition, Subtask
from crewflow.report import (
    ExecutionReport,
    format_duration,
    format_execution_report_markdown,
    generate_execution_report,
)
from crewflow.retry import (
    EscalationDecision,
    create_retry_state,
    generate_failure_report,
    record_attempt,
)
from crewflow.team import create_team_from_template
from crewflow.workflow import (
    EscalationRecord,
    WorkflowConfig,
    WorkflowState,
    assign_task,
    complete_task,
    create_workflow,
    fail_task,
    start_task,
)


def _finished_workflow() -> WorkflowState:
    team = create_team_from_template("fullstack", "team-1", "Fullstack")
    decomposition = Decomposition(
        subtasks=(Subtask("a", "A", "Build a"), Subtask("b", "B", "Build b"))
    )
    workflow = create_workflow(
        "wf-1", team, decomposition, WorkflowConfig(continue_on_failure=True)
    )
    workflow = complete_task(start_task(assign_task(workflow, "a", "builder-1"), "a"), "a")

    state = record_attempt(create_retry_state(1), None, None, "fail", issues=("crash",))
    result = TaskResult("b", False, "fail", failure_report=generate_failure_report("b", state))
    workflow = start_task(assign_task(workflow, "b", "builder-2"), "b")
    workflow = fail_task(workflow, "b", "crash", retryable=False, result=result)

    decision = EscalationDecision(True, "coordinator", "Persistent issues detected")
    return replace(workflow, escalations=(EscalationRecord("b", decision, "skip"),))


def _context() -> ExecutionContext:
    return ExecutionContext(
        _finished_workflow(),
        event_log=[
            ExecutionEvent("workflow_started"),
            ExecutionEvent("task_assigned", task_id="a", member_id="builder-1"),
            ExecutionEvent("task_completed", task_id="a"),
            ExecutionEvent("workflow_completed"),
        ],
    )


def test_format_duration() -> None:
    assert format_duration(0.25) == "250ms"
    assert format_duration(5.9) == "5s"
    assert format_duration(125) == "2m 5s"


def test_generate_execution_report() -> None:
    report = generate_execution_report(_context())

    assert report.workflow_id == "wf-1"
    assert report.status == "completed"
    assert report.tasks_completed == 1
    assert report.tasks_failed == 1
    assert report.success_rate == 50.0
    assert report.summary.startswith("Workflow wf-1 | Status: COMPLETED | Duration: ")
    assert report.summary.endswith("Tasks: 1/2 completed | Failed: 1")
    assert [failure.task_id for failure in report.failure_reports] == ["b"]
    assert len(report.event_log) == 4

    assert ExecutionReport.from_dict(report.to_dict()) == report


def test_markdown_sections() -> None:
    markdown = format_execution_report_markdown(generate_execution_report(_context()))

    assert markdown.startswith("# Workflow Execution Report")
    assert "**Workflow ID:** wf-1" in markdown
    assert "- **Total Tasks:** 2" in markdown
    assert "**Success Rate:** 50.0%" in markdown
    assert "task_completed (a)" in markdown
    assert "task_assigned" not in markdown
    assert "- **b** -> coordinator (skip): Persistent issues detected" in markdown
    assert "## Failures" in markdown
    assert "- **b** after 1 attempts:" in markdown


def test_empty_workflow_report_has_no_success_rate() -> None:
    team = create_team_from_template("minimal", "team-1", "Minimal")
    workflow = create_workflow("wf-empty", team, Decomposition(subtasks=()))

    report = generate_execution_report(ExecutionContext(workflow))
    markdown = format_execution_report_markdown(report)

    assert report.success_rate is None
    assert "Success Rate" not in markdown
    assert "## Escalations" not in markdown
