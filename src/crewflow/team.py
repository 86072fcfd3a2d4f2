from __future__ import annotations

import json
import re
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from typing import Any, Literal

from crewflow.errors import ConfigurationError
from crewflow.models import MODEL_TIERS, VALIDATION_TYPES, ModelTier, ValidationType
from crewflow.retry import DEFAULT_ESCALATION_POLICY, EscalationPolicy

TeamRole = Literal["builder", "validator", "specialist", "coordinator", "orchestrator"]
MemberStatus = Literal["idle", "busy", "blocked", "offline"]
TeamTemplate = Literal["minimal", "standard", "robust", "secure", "fullstack"]

TEAM_ROLES: tuple[str, ...] = ("builder", "validator", "specialist", "coordinator", "orchestrator")
MEMBER_STATUSES: tuple[str, ...] = ("idle", "busy", "blocked", "offline")
TEAM_TEMPLATES: tuple[str, ...] = ("minimal", "standard", "robust", "secure", "fullstack")

AGENT_CAPABILITIES: dict[str, tuple[str, ...]] = {
    "executor": ("code_modification", "exploration"),
    "executor-low": ("code_modification",),
    "executor-high": ("code_modification", "exploration"),
    "validator-syntax": ("code_review", "testing"),
    "validator-logic": ("code_review", "testing"),
    "validator-security": ("code_review", "security_analysis"),
    "validator-integration": ("code_review", "testing"),
    "architect": ("exploration", "planning", "code_review"),
    "designer": ("design", "code_modification"),
    "writer": ("documentation",),
    "security-reviewer": ("security_analysis", "code_review"),
    "explore": ("exploration",),
    "qa-tester": ("testing", "code_review"),
}

AGENT_MODEL_TIERS: dict[str, ModelTier] = {
    "executor-low": "low",
    "executor": "medium",
    "executor-high": "high",
    "validator-syntax": "low",
    "validator-logic": "medium",
    "validator-security": "high",
    "validator-integration": "medium",
    "architect": "high",
    "designer": "medium",
    "designer-high": "high",
    "writer": "low",
    "security-reviewer": "high",
    "security-reviewer-low": "low",
    "explore": "low",
    "explore-medium": "medium",
    "explore-high": "high",
    "qa-tester": "medium",
    "qa-tester-high": "high",
}

_TIER_SUFFIX_RE = re.compile(r"-(low|medium|high)$")


@dataclass(frozen=True, slots=True)
class TeamMember:
    id: str
    agent_type: str
    role: TeamRole
    model_tier: ModelTier = "medium"
    capabilities: tuple[str, ...] = ()
    max_concurrent_tasks: int = 1
    status: MemberStatus = "idle"
    assigned_tasks: tuple[str, ...] = ()

    @property
    def has_capacity(self) -> bool:
        return len(self.assigned_tasks) < self.max_concurrent_tasks

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TeamMember:
        role = data["role"]
        status = data.get("status", "idle")
        model_tier = data.get("model_tier", "medium")
        if role not in TEAM_ROLES:
            raise ValueError(f"Invalid team role: {role!r}")
        if status not in MEMBER_STATUSES:
            raise ValueError(f"Invalid member status: {status!r}")
        if model_tier not in MODEL_TIERS:
            raise ValueError(f"Invalid model tier: {model_tier!r}")
        return cls(
            id=str(data["id"]),
            agent_type=str(data["agent_type"]),
            role=role,
            model_tier=model_tier,
            capabilities=tuple(str(item) for item in data.get("capabilities") or ()),
            max_concurrent_tasks=int(data.get("max_concurrent_tasks", 1)),
            status=status,
            assigned_tasks=tuple(str(item) for item in data.get("assigned_tasks") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_type": self.agent_type,
            "role": self.role,
            "model_tier": self.model_tier,
            "capabilities": list(self.capabilities),
            "max_concurrent_tasks": self.max_concurrent_tasks,
            "status": self.status,
            "assigned_tasks": list(self.assigned_tasks),
        }


@dataclass(frozen=True, slots=True)
class TeamConfig:
    max_retries: int = 3
    task_timeout_seconds: float = 300.0
    parallel_execution: bool = True
    max_parallel_tasks: int = 3
    escalation_policy: EscalationPolicy = field(default_factory=lambda: DEFAULT_ESCALATION_POLICY)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must be >= 0")
        if self.max_parallel_tasks < 1:
            raise ConfigurationError("max_parallel_tasks must be >= 1")
        if self.task_timeout_seconds <= 0:
            raise ConfigurationError("task_timeout_seconds must be positive")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TeamConfig:
        policy = data.get("escalation_policy")
        return cls(
            max_retries=int(data.get("max_retries", 3)),
            task_timeout_seconds=float(data.get("task_timeout_seconds", 300.0)),
            parallel_execution=bool(data.get("parallel_execution", True)),
            max_parallel_tasks=int(data.get("max_parallel_tasks", 3)),
            escalation_policy=(
                EscalationPolicy.from_dict(policy) if policy else DEFAULT_ESCALATION_POLICY
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "task_timeout_seconds": self.task_timeout_seconds,
            "parallel_execution": self.parallel_execution,
            "max_parallel_tasks": self.max_parallel_tasks,
            "escalation_policy": self.escalation_policy.to_dict(),
        }


DEFAULT_TEAM_CONFIG = TeamConfig()


@dataclass(frozen=True, slots=True)
class TeamDefinition:
    id: str
    name: str
    members: tuple[TeamMember, ...]
    description: str = ""
    default_validation_type: ValidationType = "validator"
    config: TeamConfig = field(default_factory=lambda: DEFAULT_TEAM_CONFIG)

    def member(self, member_id: str) -> TeamMember | None:
        for member in self.members:
            if member.id == member_id:
                return member
        return None

    def members_with_role(self, role: TeamRole) -> tuple[TeamMember, ...]:
        return tuple(member for member in self.members if member.role == role)

    def capabilities(self) -> set[str]:
        return {capability for member in self.members for capability in member.capabilities}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TeamDefinition:
        validation_type = data.get("default_validation_type", "validator")
        if validation_type not in VALIDATION_TYPES:
            raise ValueError(f"Invalid validation type: {validation_type!r}")
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            members=tuple(TeamMember.from_dict(item) for item in data["members"]),
            description=str(data.get("description", "")),
            default_validation_type=validation_type,
            config=TeamConfig.from_dict(data.get("config") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "members": [member.to_dict() for member in self.members],
            "default_validation_type": self.default_validation_type,
            "config": self.config.to_dict(),
        }


def default_capabilities(agent_type: str) -> tuple[str, ...]:
    if agent_type in AGENT_CAPABILITIES:
        return AGENT_CAPABILITIES[agent_type]
    base_type = _TIER_SUFFIX_RE.sub("", agent_type)
    if base_type in AGENT_CAPABILITIES:
        return AGENT_CAPABILITIES[base_type]
    return ("code_modification",)


def recommended_model_tier(agent_type: str) -> ModelTier:
    return AGENT_MODEL_TIERS.get(agent_type, "medium")


def create_team_member(
    member_id: str,
    agent_type: str,
    role: TeamRole,
    *,
    model_tier: ModelTier | None = None,
    capabilities: Iterable[str] | None = None,
    max_concurrent_tasks: int = 1,
) -> TeamMember:
    if max_concurrent_tasks < 1:
        raise ConfigurationError("max_concurrent_tasks must be >= 1")
    return TeamMember(
        id=member_id,
        agent_type=agent_type,
        role=role,
        model_tier=model_tier or recommended_model_tier(agent_type),
        capabilities=(
            tuple(capabilities) if capabilities is not None else default_capabilities(agent_type)
        ),
        max_concurrent_tasks=max_concurrent_tasks,
    )


def infer_validation_type(members: Iterable[TeamMember]) -> ValidationType:
    members = tuple(members)
    if any(member.agent_type == "architect" for member in members):
        return "architect"
    if any(member.role == "validator" for member in members):
        return "validator"
    return "self-only"


def create_team(
    team_id: str,
    name: str,
    description: str,
    members: Iterable[TeamMember],
    config: TeamConfig | None = None,
) -> TeamDefinition:
    members = tuple(members)
    return TeamDefinition(
        id=team_id,
        name=name,
        description=description,
        members=members,
        default_validation_type=infer_validation_type(members),
        config=config or DEFAULT_TEAM_CONFIG,
    )


def create_team_from_template(template: str, team_id: str, team_name: str) -> TeamDefinition:
    match template:
        case "minimal":
            description = "Minimal team with single builder and basic validation"
            members = (
                create_team_member("builder-1", "executor-low", "builder"),
                create_team_member("validator-1", "validator-syntax", "validator"),
            )
            validation: ValidationType = "validator"
            parallel = 1
        case "standard":
            description = "Standard team with builder and syntax validator"
            members = (
                create_team_member("builder-1", "executor", "builder"),
                create_team_member("validator-1", "validator-syntax", "validator"),
            )
            validation = "validator"
            parallel = 2
        case "robust":
            description = "Robust team with builder and dual validators (syntax + logic)"
            members = (
                create_team_member("builder-1", "executor", "builder"),
                create_team_member("validator-1", "validator-syntax", "validator"),
                create_team_member("validator-2", "validator-logic", "validator"),
            )
            validation = "validator"
            parallel = 3
        case "secure":
            description = "Secure team with builder and syntax, logic and security validators"
            members = (
                create_team_member("builder-1", "executor-high", "builder"),
                create_team_member("validator-1", "validator-syntax", "validator"),
                create_team_member("validator-2", "validator-logic", "validator"),
                create_team_member("validator-3", "validator-security", "validator"),
            )
            validation = "architect"
            parallel = 4
        case "fullstack":
            description = "Full-stack team with multiple builders and comprehensive validation"
            members = (
                create_team_member("builder-1", "executor", "builder", max_concurrent_tasks=2),
                create_team_member("builder-2", "executor", "builder", max_concurrent_tasks=2),
                create_team_member("designer-1", "designer", "specialist"),
                create_team_member("validator-1", "validator-syntax", "validator"),
                create_team_member("validator-2", "validator-logic", "validator"),
                create_team_member("validator-3", "validator-integration", "validator"),
            )
            validation = "architect"
            parallel = 5
        case _:
            raise ConfigurationError(f"Unknown team template: {template}")

    return TeamDefinition(
        id=team_id,
        name=team_name,
        description=description,
        members=members,
        default_validation_type=validation,
        config=replace(DEFAULT_TEAM_CONFIG, max_parallel_tasks=parallel),
    )


def find_available_member(
    team: TeamDefinition,
    role: TeamRole,
    capabilities: Iterable[str] | None = None,
) -> TeamMember | None:
    required = set(capabilities or ())
    candidates = [
        member
        for member in team.members
        if member.role == role
        and member.status in ("idle", "busy")
        and member.has_capacity
        and required.issubset(member.capabilities)
    ]
    candidates.sort(key=lambda member: len(member.assigned_tasks))
    return candidates[0] if candidates else None


def _replace_member(team: TeamDefinition, member: TeamMember) -> TeamDefinition:
    return replace(
        team,
        members=tuple(
            member if existing.id == member.id else existing for existing in team.members
        ),
    )


def assign_task_to_member(team: TeamDefinition, task_id: str, member_id: str) -> TeamDefinition:
    member = team.member(member_id)
    if member is None:
        raise ConfigurationError(f"Unknown team member: {member_id}")
    if not member.has_capacity:
        raise ConfigurationError(
            f"Member {member_id} is at capacity ({member.max_concurrent_tasks} tasks)"
        )
    return _replace_member(
        team, replace(member, status="busy", assigned_tasks=(*member.assigned_tasks, task_id))
    )


def release_task_from_member(team: TeamDefinition, task_id: str, member_id: str) -> TeamDefinition:
    member = team.member(member_id)
    if member is None:
        return team
    remaining = tuple(item for item in member.assigned_tasks if item != task_id)
    return _replace_member(
        team,
        replace(member, assigned_tasks=remaining, status=member.status if remaining else "idle"),
    )


def team_status(team: TeamDefinition) -> dict[str, Any]:
    return {
        "total_members": len(team.members),
        "idle_members": sum(1 for member in team.members if member.status == "idle"),
        "busy_members": sum(1 for member in team.members if member.status == "busy"),
        "total_assigned_tasks": sum(len(member.assigned_tasks) for member in team.members),
        "members": [
            {"id": member.id, "status": member.status, "tasks": len(member.assigned_tasks)}
            for member in team.members
        ],
    }


def serialize_team(team: TeamDefinition) -> str:
    return json.dumps(team.to_dict(), indent=2)


def parse_team(raw: str) -> TeamDefinition | None:
    try:
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            return None
        return TeamDefinition.from_dict(payload)
    except (
        json.JSONDecodeError,
        AttributeError,
        KeyError,
        TypeError,
        ValueError,
        ConfigurationError,
    ):
        return None
