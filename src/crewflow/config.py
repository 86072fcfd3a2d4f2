from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from crewflow.backends.command import OutputFormat
from crewflow.backends.resilient import RetryPolicy
from crewflow.errors import ConfigurationError
from crewflow.models import VALIDATION_TYPES
from crewflow.retry import DEFAULT_MAX_ATTEMPTS, HUMAN_ESCALATION_CEILING, EscalationPolicy
from crewflow.team import TeamConfig
from crewflow.workflow import ESCALATION_MODES, EscalationMode, WorkflowConfig

OUTPUT_FORMATS: tuple[str, ...] = ("text", "stream-json")


@dataclass(frozen=True, slots=True)
class TeamSection:
    max_retries: int = 3
    task_timeout_seconds: float = 300.0
    parallel_execution: bool = True
    max_parallel_tasks: int = 3

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigurationError("team.max_retries must be >= 0")
        if self.task_timeout_seconds <= 0:
            raise ConfigurationError("team.task_timeout_seconds must be positive")
        if self.max_parallel_tasks < 1:
            raise ConfigurationError("team.max_parallel_tasks must be >= 1")


@dataclass(frozen=True, slots=True)
class WorkflowSection:
    continue_on_failure: bool = False
    auto_assign: bool = True
    escalation_mode: EscalationMode = "pause"
    # empty means the team's own validation type
    default_validation_type: str = ""
    poll_interval_seconds: float = 0.05
    max_poll_interval_seconds: float = 1.0
    fail_fast: bool = False

    def __post_init__(self) -> None:
        if self.escalation_mode not in ESCALATION_MODES:
            raise ConfigurationError(f"Unknown escalation mode: {self.escalation_mode}")
        if self.default_validation_type and self.default_validation_type not in VALIDATION_TYPES:
            raise ConfigurationError(f"Unknown validation type: {self.default_validation_type}")
        if self.poll_interval_seconds <= 0 or self.max_poll_interval_seconds <= 0:
            raise ConfigurationError("workflow poll intervals must be positive")


@dataclass(frozen=True, slots=True)
class EscalationSection:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    human_ceiling: int = HUMAN_ESCALATION_CEILING
    persistent_issue_attempts: int = 2
    coordinator_threshold: int = 3
    auto_escalate_on_security: bool = True


@dataclass(frozen=True, slots=True)
class BackendSection:
    command: tuple[str, ...] = ("claude", "-p")
    fallback_command: tuple[str, ...] = ()
    output_format: OutputFormat = "text"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 300.0

    def __post_init__(self) -> None:
        if not self.command:
            raise ConfigurationError("backend.command must not be empty")
        if self.output_format not in OUTPUT_FORMATS:
            raise ConfigurationError(f"Unknown backend output format: {self.output_format}")
        if self.max_retries < 0:
            raise ConfigurationError("backend.max_retries must be >= 0")
        if self.timeout_seconds <= 0:
            raise ConfigurationError("backend.timeout_seconds must be positive")


@dataclass(frozen=True, slots=True)
class StateSection:
    directory: str = ".crewflow/state"


def _section(section_type: type, data: Any, name: str) -> Any:
    if data is None:
        return section_type()
    if not isinstance(data, dict):
        raise ConfigurationError(f"[{name}] must be a table")
    known = {item.name for item in fields(section_type)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"Unknown keys in [{name}]: {', '.join(unknown)}")
    values = {
        key: tuple(value) if isinstance(value, list) else value for key, value in data.items()
    }
    try:
        return section_type(**values)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid [{name}] section: {exc}") from exc


@dataclass(frozen=True, slots=True)
class CrewflowConfig:
    team: TeamSection = field(default_factory=TeamSection)
    workflow: WorkflowSection = field(default_factory=WorkflowSection)
    escalation: EscalationSection = field(default_factory=EscalationSection)
    backend: BackendSection = field(default_factory=BackendSection)
    state: StateSection = field(default_factory=StateSection)

    @classmethod
    def default(cls) -> CrewflowConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CrewflowConfig:
        config = cls(
            team=_section(TeamSection, data.get("team"), "team"),
            workflow=_section(WorkflowSection, data.get("workflow"), "workflow"),
            escalation=_section(EscalationSection, data.get("escalation"), "escalation"),
            backend=_section(BackendSection, data.get("backend"), "backend"),
            state=_section(StateSection, data.get("state"), "state"),
        )
        config.to_escalation_policy()
        return config

    def to_dict(self) -> dict[str, Any]:
        return {
            "team": {
                "max_retries": self.team.max_retries,
                "task_timeout_seconds": self.team.task_timeout_seconds,
                "parallel_execution": self.team.parallel_execution,
                "max_parallel_tasks": self.team.max_parallel_tasks,
            },
            "workflow": {
                "continue_on_failure": self.workflow.continue_on_failure,
                "auto_assign": self.workflow.auto_assign,
                "escalation_mode": self.workflow.escalation_mode,
                "default_validation_type": self.workflow.default_validation_type,
                "poll_interval_seconds": self.workflow.poll_interval_seconds,
                "max_poll_interval_seconds": self.workflow.max_poll_interval_seconds,
                "fail_fast": self.workflow.fail_fast,
            },
            "escalation": {
                "max_attempts": self.escalation.max_attempts,
                "human_ceiling": self.escalation.human_ceiling,
                "persistent_issue_attempts": self.escalation.persistent_issue_attempts,
                "coordinator_threshold": self.escalation.coordinator_threshold,
                "auto_escalate_on_security": self.escalation.auto_escalate_on_security,
            },
            "backend": {
                "command": list(self.backend.command),
                "fallback_command": list(self.backend.fallback_command),
                "output_format": self.backend.output_format,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "state": {
                "directory": self.state.directory,
            },
        }

    def to_escalation_policy(self) -> EscalationPolicy:
        return EscalationPolicy(
            max_attempts=self.escalation.max_attempts,
            human_ceiling=self.escalation.human_ceiling,
            persistent_issue_attempts=self.escalation.persistent_issue_attempts,
            coordinator_threshold=self.escalation.coordinator_threshold,
            auto_escalate_on_security=self.escalation.auto_escalate_on_security,
        )

    def to_team_config(self) -> TeamConfig:
        return TeamConfig(
            max_retries=self.team.max_retries,
            task_timeout_seconds=self.team.task_timeout_seconds,
            parallel_execution=self.team.parallel_execution,
            max_parallel_tasks=self.team.max_parallel_tasks,
            escalation_policy=self.to_escalation_policy(),
        )

    def to_workflow_config(self) -> WorkflowConfig:
        return WorkflowConfig(
            parallel_execution=self.team.parallel_execution,
            max_parallel_tasks=self.team.max_parallel_tasks,
            default_validation_type=self.workflow.default_validation_type or None,
            auto_assign=self.workflow.auto_assign,
            continue_on_failure=self.workflow.continue_on_failure,
            max_retries=self.team.max_retries,
            task_timeout_seconds=self.team.task_timeout_seconds,
            escalation_mode=self.workflow.escalation_mode,
        )

    def to_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.backend.max_retries,
            backoff_seconds=self.backend.retry_backoff_seconds,
            timeout_seconds=self.backend.timeout_seconds,
        )


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: CrewflowConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("team", "workflow", "escalation", "backend", "state"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> CrewflowConfig:
    if not path.exists():
        return CrewflowConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Invalid config file {path}: {exc}") from exc
    return CrewflowConfig.from_dict(data)


def save_config(path: Path, config: CrewflowConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
