from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

Severity = Literal["critical", "major", "minor"]
VerdictStatus = Literal["APPROVED", "REJECTED", "NEEDS_REVIEW"]
ValidationType = Literal["self-only", "validator", "architect"]
Complexity = Literal["low", "medium", "high"]
ModelTier = Literal["low", "medium", "high"]
AgentStatus = Literal["success", "partial", "failed", "blocked"]
CycleAction = Literal["retry", "escalate", "success", "fail"]

VALIDATION_TYPES: tuple[str, ...] = ("self-only", "validator", "architect")
MODEL_TIERS: tuple[str, ...] = ("low", "medium", "high")
AGENT_STATUSES: tuple[str, ...] = ("success", "partial", "failed", "blocked")
VERDICT_STATUSES: tuple[str, ...] = ("APPROVED", "REJECTED", "NEEDS_REVIEW")
SEVERITIES: tuple[str, ...] = ("critical", "major", "minor")

_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def elapsed_seconds(start: str | None, end: str | None) -> float:
    if not start or not end:
        return 0.0
    try:
        delta = datetime.fromisoformat(end) - datetime.fromisoformat(start)
    except ValueError:
        return 0.0
    return max(0.0, delta.total_seconds())


def _pick(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _choice(value: Any, allowed: tuple[str, ...], label: str) -> Any:
    if value not in allowed:
        raise ValueError(f"Invalid {label}: {value!r}")
    return value


def extract_json_object(raw: str, required_key: str | None = None) -> dict[str, Any] | None:
    """Pull the first JSON object out of agent text (fenced block first, then bare braces)."""
    candidates: list[str] = [match.group(1).strip() for match in _JSON_FENCE_RE.finditer(raw)]
    start = raw.find("{")
    end = raw.rfind("}")
    if start != -1 and end > start:
        candidates.append(raw[start : end + 1])
    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict):
            continue
        if required_key is None or required_key in payload:
            return payload
    return None


@dataclass(frozen=True, slots=True)
class Evidence:
    type: str
    passed: bool
    content: str = ""
    timestamp: str = field(default_factory=utcnow_iso)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Evidence:
        return cls(
            type=str(data["type"]),
            passed=bool(data["passed"]),
            content=str(data.get("content", "")),
            timestamp=str(data.get("timestamp") or utcnow_iso()),
            metadata=dict(data.get("metadata") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "passed": self.passed,
            "content": self.content,
            "timestamp": self.timestamp,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True, slots=True)
class SelfValidation:
    passed: bool
    checks_run: tuple[str, ...] = ()
    checks_passed: tuple[str, ...] = ()
    checks_failed: tuple[str, ...] = ()
    retry_count: int = 0
    last_error: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SelfValidation:
        return cls(
            passed=bool(data["passed"]),
            checks_run=tuple(
                str(item) for item in _pick(data, "checks_run", "checksRun", default=())
            ),
            checks_passed=tuple(
                str(item) for item in _pick(data, "checks_passed", "checksPassed", default=())
            ),
            checks_failed=tuple(
                str(item) for item in _pick(data, "checks_failed", "checksFailed", default=())
            ),
            retry_count=int(_pick(data, "retry_count", "retryCount", default=0)),
            last_error=_pick(data, "last_error", "lastError"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "checks_run": list(self.checks_run),
            "checks_passed": list(self.checks_passed),
            "checks_failed": list(self.checks_failed),
            "retry_count": self.retry_count,
            "last_error": self.last_error,
        }


@dataclass(frozen=True, slots=True)
class AgentOutput:
    """Structured result an agent reports back for one unit of work."""

    agent_id: str
    task_id: str
    status: AgentStatus
    summary: str = ""
    evidence: tuple[Evidence, ...] = ()
    timestamp: str = field(default_factory=utcnow_iso)
    files_modified: tuple[str, ...] = ()
    self_validation: SelfValidation | None = None
    next_steps: tuple[str, ...] = ()
    learnings: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentOutput:
        self_validation = _pick(data, "self_validation", "selfValidation")
        return cls(
            agent_id=str(_pick(data, "agent_id", "agentId", default="agent")),
            task_id=str(_pick(data, "task_id", "taskId", default="")),
            status=_choice(data["status"], AGENT_STATUSES, "agent status"),
            summary=str(data.get("summary", "")),
            evidence=tuple(Evidence.from_dict(item) for item in data.get("evidence") or ()),
            timestamp=str(data.get("timestamp") or utcnow_iso()),
            files_modified=tuple(
                str(item) for item in _pick(data, "files_modified", "filesModified", default=())
            ),
            self_validation=(
                SelfValidation.from_dict(self_validation) if self_validation is not None else None
            ),
            next_steps=tuple(
                str(item) for item in _pick(data, "next_steps", "nextSteps", default=())
            ),
            learnings=tuple(str(item) for item in data.get("learnings") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "task_id": self.task_id,
            "status": self.status,
            "summary": self.summary,
            "evidence": [item.to_dict() for item in self.evidence],
            "timestamp": self.timestamp,
            "files_modified": list(self.files_modified),
            "self_validation": self.self_validation.to_dict() if self.self_validation else None,
            "next_steps": list(self.next_steps),
            "learnings": list(self.learnings),
        }


def parse_agent_output(raw: str, *, agent_id: str, task_id: str) -> AgentOutput | None:
    """Read an agent reply; plain prose becomes a ``partial`` output carrying the text."""
    text = raw.strip()
    if not text:
        return None
    payload = extract_json_object(text, required_key="status")
    if payload is not None:
        payload.setdefault("agent_id", agent_id)
        payload.setdefault("task_id", task_id)
        try:
            return AgentOutput.from_dict(payload)
        except (KeyError, TypeError, ValueError):
            pass
    return AgentOutput(agent_id=agent_id, task_id=task_id, status="partial", summary=text[:2000])


@dataclass(frozen=True, slots=True)
class ValidatorCheck:
    name: str
    passed: bool
    evidence: str = ""
    severity: Severity = "major"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidatorCheck:
        return cls(
            name=str(data["name"]),
            passed=bool(data["passed"]),
            evidence=str(data.get("evidence", "")),
            severity=_choice(data.get("severity", "major"), SEVERITIES, "severity"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "evidence": self.evidence,
            "severity": self.severity,
        }


@dataclass(frozen=True, slots=True)
class ValidatorOutput:
    validator_type: str
    task_id: str
    status: VerdictStatus
    checks: tuple[ValidatorCheck, ...] = ()
    issues: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()

    @property
    def failed_checks(self) -> tuple[ValidatorCheck, ...]:
        return tuple(check for check in self.checks if not check.passed)

    @property
    def has_critical_failure(self) -> bool:
        return any(check.severity == "critical" for check in self.failed_checks)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidatorOutput:
        return cls(
            validator_type=str(_pick(data, "validator_type", "validatorType")),
            task_id=str(_pick(data, "task_id", "taskId", default="")),
            status=_choice(data["status"], VERDICT_STATUSES, "validator status"),
            checks=tuple(ValidatorCheck.from_dict(item) for item in data.get("checks") or ()),
            issues=tuple(str(item) for item in data.get("issues") or ()),
            recommendations=tuple(str(item) for item in data.get("recommendations") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "validator_type": self.validator_type,
            "task_id": self.task_id,
            "status": self.status,
            "checks": [check.to_dict() for check in self.checks],
            "issues": list(self.issues),
            "recommendations": list(self.recommendations),
        }


@dataclass(frozen=True, slots=True)
class TaskAnalysis:
    task: str
    type: str = "feature"
    complexity: float = 0.5
    areas: tuple[str, ...] = ()
    technologies: tuple[str, ...] = ()
    estimated_components: int = 1
    is_parallelizable: bool = False

    def __post_init__(self) -> None:
        if not 0.0 <= self.complexity <= 1.0:
            raise ValueError(f"complexity must be within [0, 1], got {self.complexity}")
        if self.estimated_components < 1:
            raise ValueError("estimated_components must be >= 1")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskAnalysis:
        return cls(
            task=str(data["task"]),
            type=str(data.get("type", "feature")),
            complexity=float(data.get("complexity", 0.5)),
            areas=tuple(str(item) for item in data.get("areas") or ()),
            technologies=tuple(str(item) for item in data.get("technologies") or ()),
            estimated_components=int(
                _pick(data, "estimated_components", "estimatedComponents", default=1)
            ),
            is_parallelizable=bool(
                _pick(data, "is_parallelizable", "isParallelizable", default=False)
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task,
            "type": self.type,
            "complexity": self.complexity,
            "areas": list(self.areas),
            "technologies": list(self.technologies),
            "estimated_components": self.estimated_components,
            "is_parallelizable": self.is_parallelizable,
        }


@dataclass(frozen=True, slots=True)
class SubtaskValidation:
    validation_type: ValidationType | None = None
    validator_agent: str | None = None
    max_retries: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SubtaskValidation:
        validation_type = _pick(data, "validation_type", "validationType")
        max_retries = _pick(data, "max_retries", "maxRetries")
        return cls(
            validation_type=(
                _choice(validation_type, VALIDATION_TYPES, "validation type")
                if validation_type is not None
                else None
            ),
            validator_agent=_pick(data, "validator_agent", "validatorAgent"),
            max_retries=int(max_retries) if max_retries is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "validation_type": self.validation_type,
            "validator_agent": self.validator_agent,
            "max_retries": self.max_retries,
        }


@dataclass(frozen=True, slots=True)
class Subtask:
    id: str
    name: str
    prompt: str
    agent_type: str = "executor"
    model_tier: ModelTier = "medium"
    blocked_by: tuple[str, ...] = ()
    acceptance_criteria: tuple[str, ...] = ()
    verification: tuple[str, ...] = ()
    component_role: str = ""
    validation: SubtaskValidation | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Subtask:
        validation = data.get("validation")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            prompt=str(data.get("prompt", "")),
            agent_type=str(_pick(data, "agent_type", "agentType", default="executor")),
            model_tier=_choice(
                _pick(data, "model_tier", "modelTier", default="medium"), MODEL_TIERS, "model tier"
            ),
            blocked_by=tuple(
                str(item) for item in _pick(data, "blocked_by", "blockedBy", default=())
            ),
            acceptance_criteria=tuple(
                str(item)
                for item in _pick(data, "acceptance_criteria", "acceptanceCriteria", default=())
            ),
            verification=tuple(str(item) for item in data.get("verification") or ()),
            component_role=str(_pick(data, "component_role", "componentRole", default="")),
            validation=SubtaskValidation.from_dict(validation) if validation else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "prompt": self.prompt,
            "agent_type": self.agent_type,
            "model_tier": self.model_tier,
            "blocked_by": list(self.blocked_by),
            "acceptance_criteria": list(self.acceptance_criteria),
            "verification": list(self.verification),
            "component_role": self.component_role,
            "validation": self.validation.to_dict() if self.validation else None,
        }


@dataclass(frozen=True, slots=True)
class Decomposition:
    subtasks: tuple[Subtask, ...]
    strategy: str = "sequential"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Decomposition:
        return cls(
            subtasks=tuple(Subtask.from_dict(item) for item in data["subtasks"]),
            strategy=str(data.get("strategy", "sequential")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "subtasks": [subtask.to_dict() for subtask in self.subtasks],
            "strategy": self.strategy,
        }


@dataclass(frozen=True, slots=True)
class BVTaskConfig:
    """One unit of builder-validator work."""

    task_id: str
    task_description: str
    requirements: tuple[str, ...] = ()
    acceptance_criteria: tuple[str, ...] = ()
    validation_type: ValidationType = "validator"
    builder_agent: str = "executor"
    validator_agents: tuple[str, ...] = ()
    max_retries: int = 3
    timeout_seconds: float = 300.0
    complexity: Complexity | None = None

    def __post_init__(self) -> None:
        if self.validation_type not in VALIDATION_TYPES:
            raise ValueError(f"Invalid validation type: {self.validation_type!r}")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BVTaskConfig:
        complexity = data.get("complexity")
        return cls(
            task_id=str(data["task_id"]),
            task_description=str(data.get("task_description", "")),
            requirements=tuple(str(item) for item in data.get("requirements") or ()),
            acceptance_criteria=tuple(str(item) for item in data.get("acceptance_criteria") or ()),
            validation_type=data.get("validation_type", "validator"),
            builder_agent=str(data.get("builder_agent", "executor")),
            validator_agents=tuple(str(item) for item in data.get("validator_agents") or ()),
            max_retries=int(data.get("max_retries", 3)),
            timeout_seconds=float(data.get("timeout_seconds", 300.0)),
            complexity=(
                _choice(complexity, MODEL_TIERS, "complexity") if complexity is not None else None
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_description": self.task_description,
            "requirements": list(self.requirements),
            "acceptance_criteria": list(self.acceptance_criteria),
            "validation_type": self.validation_type,
            "builder_agent": self.builder_agent,
            "validator_agents": list(self.validator_agents),
            "max_retries": self.max_retries,
            "timeout_seconds": self.timeout_seconds,
            "complexity": self.complexity,
        }
