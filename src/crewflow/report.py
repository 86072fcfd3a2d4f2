from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from crewflow.executor import ExecutionContext, ExecutionEvent
from crewflow.retry import FailureReport
from crewflow.workflow import EscalationRecord, WorkflowMetrics, calculate_metrics

TIMELINE_EVENTS: tuple[str, ...] = (
    "workflow_started",
    "task_completed",
    "task_failed",
    "task_escalated",
    "workflow_paused",
    "workflow_completed",
    "workflow_failed",
    "workflow_cancelled",
)


@dataclass(frozen=True, slots=True)
class ExecutionReport:
    workflow_id: str
    status: str
    duration_seconds: float
    tasks_completed: int
    tasks_failed: int
    total_retries: int
    summary: str
    metrics: WorkflowMetrics
    event_log: tuple[ExecutionEvent, ...] = ()
    escalations: tuple[EscalationRecord, ...] = ()
    failure_reports: tuple[FailureReport, ...] = ()

    @property
    def success_rate(self) -> float | None:
        if self.metrics.total_tasks == 0:
            return None
        return self.tasks_completed / self.metrics.total_tasks * 100

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionReport:
        return cls(
            workflow_id=str(data["workflow_id"]),
            status=str(data["status"]),
            duration_seconds=float(data.get("duration_seconds", 0.0)),
            tasks_completed=int(data.get("tasks_completed", 0)),
            tasks_failed=int(data.get("tasks_failed", 0)),
            total_retries=int(data.get("total_retries", 0)),
            summary=str(data.get("summary", "")),
            metrics=WorkflowMetrics.from_dict(data.get("metrics") or {}),
            event_log=tuple(ExecutionEvent.from_dict(item) for item in data.get("event_log") or ()),
            escalations=tuple(
                EscalationRecord.from_dict(item) for item in data.get("escalations") or ()
            ),
            failure_reports=tuple(
                FailureReport.from_dict(item) for item in data.get("failure_reports") or ()
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "status": self.status,
            "duration_seconds": self.duration_seconds,
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "total_retries": self.total_retries,
            "summary": self.summary,
            "metrics": self.metrics.to_dict(),
            "event_log": [event.to_dict() for event in self.event_log],
            "escalations": [record.to_dict() for record in self.escalations],
            "failure_reports": [report.to_dict() for report in self.failure_reports],
        }


def format_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{round(seconds * 1000)}ms"
    whole = int(seconds)
    if whole < 60:
        return f"{whole}s"
    minutes, remainder = divmod(whole, 60)
    return f"{minutes}m {remainder}s"


def generate_execution_report(context: ExecutionContext) -> ExecutionReport:
    workflow = context.workflow
    metrics = calculate_metrics(workflow)
    duration = context.elapsed_seconds

    parts = [
        f"Workflow {workflow.id}",
        f"Status: {workflow.status.upper()}",
        f"Duration: {format_duration(duration)}",
        f"Tasks: {metrics.completed_tasks}/{metrics.total_tasks} completed",
    ]
    if metrics.failed_tasks:
        parts.append(f"Failed: {metrics.failed_tasks}")
    if metrics.total_retries:
        parts.append(f"Retries: {metrics.total_retries}")

    return ExecutionReport(
        workflow_id=workflow.id,
        status=workflow.status,
        duration_seconds=duration,
        tasks_completed=metrics.completed_tasks,
        tasks_failed=metrics.failed_tasks,
        total_retries=metrics.total_retries,
        summary=" | ".join(parts),
        metrics=metrics,
        event_log=tuple(context.event_log),
        escalations=workflow.escalations,
        failure_reports=tuple(
            task.result.failure_report
            for task in workflow.tasks
            if task.result is not None and task.result.failure_report is not None
        ),
    )


def format_execution_report_markdown(report: ExecutionReport) -> str:
    lines = [
        "# Workflow Execution Report",
        "",
        f"**Workflow ID:** {report.workflow_id}",
        f"**Status:** {report.status}",
        f"**Duration:** {format_duration(report.duration_seconds)}",
        "",
        "## Metrics",
        "",
        f"- **Total Tasks:** {report.metrics.total_tasks}",
        f"- **Completed:** {report.tasks_completed}",
        f"- **Failed:** {report.tasks_failed}",
        f"- **Total Retries:** {report.total_retries}",
        "- **Average Task Duration:** "
        f"{format_duration(report.metrics.average_task_duration_seconds)}",
        "",
    ]

    if report.success_rate is not None:
        lines += [f"**Success Rate:** {report.success_rate:.1f}%", ""]

    lines += ["## Event Timeline", ""]
    for event in report.event_log:
        if event.type not in TIMELINE_EVENTS:
            continue
        label = f"{event.type} ({event.task_id})" if event.task_id else event.type
        lines.append(f"- `{event.timestamp}` {label}")
    lines.append("")

    if report.escalations:
        lines += ["## Escalations", ""]
        for record in report.escalations:
            lines.append(
                f"- **{record.task_id}** -> {record.decision.level} ({record.mode}): "
                f"{record.decision.reason}"
            )
        lines.append("")

    if report.failure_reports:
        lines += ["## Failures", ""]
        for failure in report.failure_reports:
            lines.append(
                f"- **{failure.task_id}** after {failure.total_attempts} attempts: "
                f"{failure.root_cause_analysis}"
            )
        lines.append("")

    lines += ["---", "", f"*{report.summary}*"]
    return "\n".join(lines)
