"""Automatic team composition from a task analysis.

The composer picks a template roster, adds specialists for keyword signals in
the task, applies caller constraints, trims overlapping members and scores
the result.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from crewflow.errors import ConfigurationError
from crewflow.models import (
    MODEL_TIERS,
    VALIDATION_TYPES,
    Decomposition,
    ModelTier,
    Subtask,
    TaskAnalysis,
    ValidationType,
)
from crewflow.team import (
    TEAM_ROLES,
    TeamDefinition,
    TeamMember,
    TeamRole,
    create_team_from_template,
    create_team_member,
)

logger = logging.getLogger(__name__)

PromptGenerator = Callable[[TeamMember], str]

DESIGNER_KEYWORDS: tuple[str, ...] = (
    "ui",
    "ux",
    "frontend",
    "component",
    "design",
    "style",
    "css",
    "layout",
    "responsive",
    "visual",
    "interface",
    "react",
    "vue",
    "svelte",
    "angular",
)

DESIGNER_TECHNOLOGIES: tuple[str, ...] = ("react", "vue", "svelte", "angular", "css", "tailwind")

SECURITY_KEYWORDS: tuple[str, ...] = (
    "security",
    "auth",
    "authentication",
    "authorization",
    "encrypt",
    "password",
    "token",
    "jwt",
    "oauth",
    "permission",
    "access control",
    "vulnerability",
    "sanitize",
    "xss",
    "csrf",
    "sql injection",
)

ARCHITECT_KEYWORDS: tuple[str, ...] = (
    "architecture",
    "refactor",
    "restructure",
    "redesign",
    "migrate",
    "scalab",
    "performance",
    "optimize",
    "system design",
    "infrastructure",
    "microservice",
    "monolith",
    "pattern",
)

DOCUMENTATION_KEYWORDS: tuple[str, ...] = (
    "document",
    "readme",
    "api docs",
    "docstring",
    "comment",
    "wiki",
    "guide",
    "tutorial",
    "specification",
)

TASK_TYPE_TEMPLATE_MAP: dict[str, str] = {
    "fullstack-app": "fullstack",
    "bug-fix": "standard",
    "optimization": "standard",
    "refactoring": "robust",
    "migration": "robust",
    "feature": "standard",
    "testing": "standard",
    "documentation": "minimal",
    "infrastructure": "secure",
    "unknown": "standard",
}

TEMPLATE_EXPECTED_COMPLEXITY: dict[str, float] = {
    "minimal": 0.2,
    "standard": 0.4,
    "robust": 0.6,
    "secure": 0.8,
    "fullstack": 0.9,
}

TIER_ORDER: dict[str, int] = {"low": 1, "medium": 2, "high": 3}

DEDUPLICATION_THRESHOLD = 5
MAX_PARALLEL_COMPONENTS = 5


@dataclass(frozen=True, slots=True)
class CompositionConstraints:
    max_members: int | None = None
    min_members: int | None = None
    required_capabilities: tuple[str, ...] = ()
    required_roles: tuple[TeamRole, ...] = ()
    excluded_agents: tuple[str, ...] = ()
    validation_type: ValidationType | None = None
    max_model_tier: ModelTier | None = None

    def __post_init__(self) -> None:
        if self.max_members is not None and self.max_members < 1:
            raise ConfigurationError("max_members must be >= 1")
        if self.min_members is not None and self.min_members < 0:
            raise ConfigurationError("min_members must be >= 0")
        if (
            self.max_members is not None
            and self.min_members is not None
            and self.min_members > self.max_members
        ):
            raise ConfigurationError(
                f"min_members ({self.min_members}) exceeds max_members ({self.max_members})"
            )
        if self.validation_type is not None and self.validation_type not in VALIDATION_TYPES:
            raise ConfigurationError(f"Unknown validation type: {self.validation_type}")
        if self.max_model_tier is not None and self.max_model_tier not in MODEL_TIERS:
            raise ConfigurationError(f"Unknown model tier: {self.max_model_tier}")
        for role in self.required_roles:
            if role not in TEAM_ROLES:
                raise ConfigurationError(f"Unknown team role: {role}")


@dataclass(frozen=True, slots=True)
class RequirementsAnalysis:
    needs_designer: bool
    needs_security_review: bool
    needs_architect: bool
    needs_documentation: bool
    estimated_team_size: int
    recommended_validation: ValidationType


@dataclass(frozen=True, slots=True)
class TemplateRecommendation:
    template: str
    score: float
    reasoning: str


@dataclass(frozen=True, slots=True)
class CompositionCheck:
    valid: bool
    violations: tuple[str, ...] = ()
    suggestions: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class AgentMapping:
    agent_type: str
    model_tier: ModelTier
    role: TeamRole


@dataclass(frozen=True, slots=True)
class CompositionResult:
    team: TeamDefinition
    template_used: str
    reasoning: str
    score: float
    member_prompts: dict[str, str] = field(default_factory=dict)
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "team": self.team.to_dict(),
            "template_used": self.template_used,
            "reasoning": self.reasoning,
            "score": self.score,
            "member_prompts": dict(self.member_prompts),
            "warnings": list(self.warnings),
        }


def _mentions(text: str, keywords: Iterable[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def analyze_requirements(analysis: TaskAnalysis) -> RequirementsAnalysis:
    task = analysis.task.lower()
    areas = [area.lower() for area in analysis.areas]
    technologies = [tech.lower() for tech in analysis.technologies]

    needs_designer = (
        _mentions(task, DESIGNER_KEYWORDS)
        or any(_mentions(area, DESIGNER_KEYWORDS) for area in areas)
        or any(tech in DESIGNER_TECHNOLOGIES for tech in technologies)
    )
    needs_security = _mentions(task, SECURITY_KEYWORDS) or any(
        _mentions(area, SECURITY_KEYWORDS) for area in areas
    )
    needs_architect = (
        analysis.complexity >= 0.7
        or _mentions(task, ARCHITECT_KEYWORDS)
        or analysis.type in ("refactoring", "migration")
    )
    needs_documentation = analysis.type == "documentation" or _mentions(
        task, DOCUMENTATION_KEYWORDS
    )

    size = 1
    size += analysis.complexity >= 0.3
    size += analysis.complexity >= 0.6
    size += needs_designer + needs_security + needs_architect + needs_documentation

    if analysis.complexity >= 0.7 or needs_architect or needs_security:
        recommended: ValidationType = "architect"
    elif analysis.complexity >= 0.3:
        recommended = "validator"
    else:
        recommended = "self-only"

    return RequirementsAnalysis(
        needs_designer=needs_designer,
        needs_security_review=needs_security,
        needs_architect=needs_architect,
        needs_documentation=needs_documentation,
        estimated_team_size=int(size),
        recommended_validation=recommended,
    )


def extract_required_capabilities(analysis: TaskAnalysis) -> tuple[str, ...]:
    task = analysis.task.lower()
    areas = " ".join(area.lower() for area in analysis.areas)

    def signalled(keywords: Iterable[str]) -> bool:
        return any(keyword in task or keyword in areas for keyword in keywords)

    capabilities = ["code_modification"]
    if signalled(DESIGNER_KEYWORDS):
        capabilities.append("design")
    if signalled(SECURITY_KEYWORDS):
        capabilities.append("security_analysis")
    if signalled(DOCUMENTATION_KEYWORDS):
        capabilities.append("documentation")
    if analysis.type == "testing" or "test" in task or "test" in areas:
        capabilities.append("testing")
    if analysis.complexity >= 0.5:
        capabilities.append("code_review")
    if analysis.complexity >= 0.7 or analysis.type == "refactoring":
        capabilities += ["planning", "exploration"]
    return tuple(capabilities)


def select_template_by_complexity(complexity: float) -> str:
    if complexity < 0.3:
        return "minimal"
    if complexity < 0.5:
        return "standard"
    if complexity < 0.7:
        return "robust"
    if complexity < 0.9:
        return "secure"
    return "fullstack"


def select_template_by_task_type(task_type: str) -> str:
    return TASK_TYPE_TEMPLATE_MAP.get(task_type, "standard")


def select_template_by_capabilities(capabilities: Sequence[str]) -> str:
    if "security_analysis" in capabilities:
        return "secure"
    if "design" in capabilities:
        return "fullstack"
    if len(capabilities) >= 5:
        return "fullstack"
    if len(capabilities) >= 3:
        return "robust"
    if len(capabilities) >= 2:
        return "standard"
    return "minimal"


def _unique_id(team_members: Iterable[TeamMember], prefix: str, start: int) -> str:
    taken = {member.id for member in team_members}
    index = start
    while f"{prefix}-{index}" in taken:
        index += 1
    return f"{prefix}-{index}"


def determine_builders(subtasks: Sequence[Subtask]) -> tuple[TeamMember, ...]:
    """One builder per distinct agent type, at the highest tier any of its subtasks asks for."""
    builders: list[TeamMember] = []
    agent_types = list(dict.fromkeys(subtask.agent_type for subtask in subtasks))
    for index, agent_type in enumerate(agent_types, start=1):
        relevant = [subtask for subtask in subtasks if subtask.agent_type == agent_type]
        tier = max((subtask.model_tier for subtask in relevant), key=TIER_ORDER.__getitem__)
        builders.append(
            create_team_member(
                f"builder-{index}",
                agent_type,
                "builder",
                model_tier=tier,
                max_concurrent_tasks=2 if len(relevant) > 1 else 1,
            )
        )
    return tuple(builders)


def determine_validators(validation_type: ValidationType) -> tuple[TeamMember, ...]:
    match validation_type:
        case "self-only":
            return ()
        case "validator":
            return (
                create_team_member("validator-1", "validator-syntax", "validator"),
                create_team_member("validator-2", "validator-logic", "validator"),
            )
        case "architect":
            return (
                create_team_member("validator-1", "validator-syntax", "validator"),
                create_team_member("validator-2", "validator-logic", "validator"),
                create_team_member("architect-1", "architect", "validator", model_tier="high"),
            )
    raise ConfigurationError(f"Unknown validation type: {validation_type}")


def map_subtask_to_agent(subtask: Subtask) -> AgentMapping:
    prompt = subtask.prompt.lower()
    tier: ModelTier = subtask.model_tier
    match subtask.component_role:
        case "frontend" | "ui":
            if "style" in prompt or "css" in prompt:
                return AgentMapping("designer", tier, "specialist")
            return AgentMapping("executor", tier, "builder")
        case "backend" | "api":
            if "security" in prompt or "auth" in prompt:
                tier = "high"
            return AgentMapping("executor", tier, "builder")
        case "database":
            return AgentMapping("executor", "medium" if tier == "low" else tier, "builder")
        case "testing":
            return AgentMapping("qa-tester", tier, "validator")
        case "docs":
            return AgentMapping("writer", "low", "specialist")
        case "config":
            return AgentMapping("executor-low", "low", "builder")
        case _:
            return AgentMapping(subtask.agent_type or "executor", tier, "builder")


def add_specialists(team: TeamDefinition, analysis: TaskAnalysis) -> TeamDefinition:
    requirements = analyze_requirements(analysis)
    members = list(team.members)

    has_designer = any(
        "designer" in member.agent_type or "design" in member.capabilities for member in members
    )
    has_security = any(
        "security" in member.agent_type or "security_analysis" in member.capabilities
        for member in members
    )
    has_writer = any(
        "writer" in member.agent_type or "documentation" in member.capabilities
        for member in members
    )

    if requirements.needs_designer and not has_designer:
        members.append(
            create_team_member(
                _unique_id(members, "designer", len(members) + 1), "designer", "specialist"
            )
        )
    if requirements.needs_security_review and not has_security:
        members.append(
            create_team_member(
                _unique_id(members, "security", len(members) + 1),
                "security-reviewer",
                "specialist",
            )
        )
    if requirements.needs_documentation and not has_writer:
        members.append(
            create_team_member(
                _unique_id(members, "writer", len(members) + 1), "writer", "specialist"
            )
        )

    validation = "architect" if requirements.needs_architect else team.default_validation_type
    if len(members) == len(team.members) and validation == team.default_validation_type:
        return team
    return replace(team, members=tuple(members), default_validation_type=validation)


def cover_subtasks(team: TeamDefinition, decomposition: Decomposition) -> TeamDefinition:
    """Add members for subtask agent types the roster does not already provide."""
    members = list(team.members)
    present = {member.agent_type for member in members}
    builder_subtasks: list[Subtask] = []
    for subtask in decomposition.subtasks:
        mapping = map_subtask_to_agent(subtask)
        if mapping.agent_type in present:
            continue
        if mapping.role == "builder":
            builder_subtasks.append(
                replace(subtask, agent_type=mapping.agent_type, model_tier=mapping.model_tier)
            )
            continue
        members.append(
            create_team_member(
                _unique_id(members, mapping.agent_type, 1),
                mapping.agent_type,
                mapping.role,
                model_tier=mapping.model_tier,
            )
        )
        present.add(mapping.agent_type)
    for builder in determine_builders(builder_subtasks):
        members.append(replace(builder, id=_unique_id(members, "builder", 1)))
    if len(members) == len(team.members):
        return team
    return replace(team, members=tuple(members))


def balance_team(team: TeamDefinition, constraints: CompositionConstraints) -> TeamDefinition:
    members = [
        member for member in team.members if member.agent_type not in constraints.excluded_agents
    ]

    if constraints.max_members is not None and len(members) > constraints.max_members:
        limit = constraints.max_members
        builders = [member for member in members if member.role == "builder"]
        validators = [member for member in members if member.role == "validator"]
        others = [member for member in members if member.role not in ("builder", "validator")]
        kept = builders[: max(1, limit - 1)]
        kept += validators[: max(0, limit - len(kept))]
        kept += others[: max(0, limit - len(kept))]
        members = kept

    if constraints.min_members is not None and len(members) < constraints.min_members:
        for index in range(1, constraints.min_members - len(members) + 1):
            members.append(
                create_team_member(
                    _unique_id(members, "validator-extra", index), "validator-syntax", "validator"
                )
            )

    return replace(team, members=tuple(members))


def validate_composition(
    team: TeamDefinition, constraints: CompositionConstraints | None
) -> CompositionCheck:
    if constraints is None:
        return CompositionCheck(valid=True)

    violations: list[str] = []
    suggestions: list[str] = []
    size = len(team.members)
    if constraints.max_members is not None and size > constraints.max_members:
        violations.append(f"Team has {size} members, exceeds max of {constraints.max_members}")
        suggestions.append("Consider using a simpler template or removing specialists")
    if constraints.min_members is not None and size < constraints.min_members:
        violations.append(f"Team has {size} members, below min of {constraints.min_members}")
        suggestions.append("Consider adding more builders or validators")

    capabilities = team.capabilities()
    for required in constraints.required_capabilities:
        if required not in capabilities:
            violations.append(f"Missing required capability: {required}")
            suggestions.append(f"Add an agent with {required} capability")

    roles = {member.role for member in team.members}
    for required_role in constraints.required_roles:
        if required_role not in roles:
            violations.append(f"Missing required role: {required_role}")
            suggestions.append(f"Add a team member with {required_role} role")

    for member in team.members:
        if member.agent_type in constraints.excluded_agents:
            violations.append(f"Team contains excluded agent type: {member.agent_type}")
            suggestions.append(f"Replace {member.agent_type} with an alternative")

    return CompositionCheck(
        valid=not violations, violations=tuple(violations), suggestions=tuple(suggestions)
    )


def apply_model_tier_limit(team: TeamDefinition, max_tier: ModelTier) -> TeamDefinition:
    ceiling = TIER_ORDER[max_tier]
    return replace(
        team,
        members=tuple(
            (
                replace(member, model_tier=max_tier)
                if TIER_ORDER[member.model_tier] > ceiling
                else member
            )
            for member in team.members
        ),
    )


def _deduplicate_capabilities(team: TeamDefinition) -> TeamDefinition:
    covered: set[str] = set()
    kept: list[TeamMember] = []
    optional: list[TeamMember] = []
    has_validator = False
    for member in team.members:
        if member.role == "builder" or (member.role == "validator" and not has_validator):
            has_validator = has_validator or member.role == "validator"
            kept.append(member)
            covered.update(member.capabilities)
        else:
            optional.append(member)
    for member in optional:
        if set(member.capabilities) - covered or len(kept) < 3:
            kept.append(member)
            covered.update(member.capabilities)
    return replace(team, members=tuple(kept))


def optimize_team(team: TeamDefinition, analysis: TaskAnalysis) -> TeamDefinition:
    optimized = team
    if len(optimized.members) > DEDUPLICATION_THRESHOLD:
        optimized = _deduplicate_capabilities(optimized)
    if analysis.complexity < 0.3:
        optimized = replace(
            optimized,
            members=tuple(
                replace(member, model_tier="medium")
                if member.role == "validator" and member.model_tier == "high"
                else member
                for member in optimized.members
            ),
        )
    if analysis.estimated_components > 1:
        optimized = replace(
            optimized,
            config=replace(
                optimized.config,
                parallel_execution=True,
                max_parallel_tasks=min(analysis.estimated_components, MAX_PARALLEL_COMPONENTS),
            ),
        )
    return optimized


def calculate_template_score(template: str, analysis: TaskAnalysis) -> float:
    score = 0.5
    expected = TEMPLATE_EXPECTED_COMPLEXITY[template]
    score += 0.3 * (1 - abs(analysis.complexity - expected))
    if select_template_by_task_type(analysis.type) == template:
        score += 0.2
    return min(1.0, score)


def calculate_fitness_score(team: TeamDefinition, analysis: TaskAnalysis) -> float:
    required = extract_required_capabilities(analysis)
    capabilities = team.capabilities()
    covered = [capability for capability in required if capability in capabilities]
    coverage = len(covered) / len(required) if required else 1.0
    requirements = analyze_requirements(analysis)

    score = 1.0
    if coverage < 1.0:
        score -= 0.2 * (1 - coverage)
    if team.default_validation_type != requirements.recommended_validation:
        if team.default_validation_type == "self-only":
            score -= 0.15
        elif (
            team.default_validation_type == "architect"
            and requirements.recommended_validation == "self-only"
        ):
            score -= 0.05

    ratio = len(team.members) / requirements.estimated_team_size
    if ratio < 0.5:
        score -= 0.15
    elif ratio > 2.0:
        score -= 0.10

    if coverage == 1.0:
        score += 0.05
    if team.config.parallel_execution and analysis.is_parallelizable:
        score += 0.03
    return max(0.0, min(1.0, score))


_COMPLEXITY_REASONS: dict[str, str] = {
    "fullstack": "Very high complexity ({complexity:.2f}) requires fullstack team",
    "secure": "High complexity ({complexity:.2f}) with {count} capabilities",
    "robust": "Medium complexity ({complexity:.2f}) benefits from dual validation",
    "standard": "Low-medium complexity ({complexity:.2f}) suitable for standard team",
    "minimal": "Low complexity ({complexity:.2f}) suitable for minimal team",
}


def recommend_template(analysis: TaskAnalysis) -> TemplateRecommendation:
    capabilities = extract_required_capabilities(analysis)
    if analysis.type == "fullstack-app":
        template, reasoning = "fullstack", "Task type fullstack-app requires fullstack team"
    elif analysis.type == "documentation":
        template, reasoning = "minimal", "Documentation tasks require minimal team"
    else:
        band = select_template_by_complexity(analysis.complexity)
        reasoning = _COMPLEXITY_REASONS[band].format(
            complexity=analysis.complexity, count=len(capabilities)
        )
        template = band
        # High complexity only earns the secure team when security work is required.
        if band == "secure" and select_template_by_capabilities(capabilities) != "secure":
            template = "robust"
    return TemplateRecommendation(template, calculate_template_score(template, analysis), reasoning)


def _build_reasoning(
    template: str,
    recommendation: TemplateRecommendation,
    requirements: RequirementsAnalysis,
    constraints: CompositionConstraints | None,
) -> str:
    parts = [f"Selected template: {template}", recommendation.reasoning]
    if requirements.needs_designer:
        parts.append("Added designer for UI/frontend work")
    if requirements.needs_security_review:
        parts.append("Added security reviewer for security-sensitive code")
    if requirements.needs_architect:
        parts.append("Architect review recommended for complex changes")
    if requirements.needs_documentation:
        parts.append("Writer included for documentation tasks")
    if constraints is not None:
        applied: list[str] = []
        if constraints.max_members is not None:
            applied.append(f"max {constraints.max_members} members")
        if constraints.validation_type:
            applied.append(f"{constraints.validation_type} validation")
        if applied:
            parts.append(f"Constraints applied: {', '.join(applied)}")
    return ". ".join(parts) + "."


class TeamAutoComposer:
    def __init__(self, prompt_generator: PromptGenerator | None = None) -> None:
        self.prompt_generator = prompt_generator

    def generate_member_prompts(self, team: TeamDefinition) -> dict[str, str]:
        if self.prompt_generator is None:
            return {}
        return {member.id: self.prompt_generator(member) for member in team.members}

    def compose_team(
        self,
        analysis: TaskAnalysis,
        decomposition: Decomposition | None = None,
        preferred_template: str | None = None,
        constraints: CompositionConstraints | None = None,
        *,
        team_id: str | None = None,
    ) -> CompositionResult:
        warnings: list[str] = []
        recommendation = recommend_template(analysis)
        template = preferred_template or recommendation.template
        team = create_team_from_template(
            template,
            team_id or f"team-{int(time.time() * 1000)}",
            f"Auto-composed team for {analysis.type}",
        )
        requirements = analyze_requirements(analysis)
        team = add_specialists(team, analysis)
        if decomposition is not None:
            team = cover_subtasks(team, decomposition)

        if constraints is not None:
            check = validate_composition(team, constraints)
            if not check.valid:
                team = balance_team(team, constraints)
                warnings.extend(check.violations)
            if constraints.validation_type:
                team = replace(team, default_validation_type=constraints.validation_type)
            if constraints.max_model_tier:
                team = apply_model_tier_limit(team, constraints.max_model_tier)

        team = optimize_team(team, analysis)
        score = calculate_fitness_score(team, analysis)
        logger.info(
            "Composed team %s from template %s with %d members (score %.2f)",
            team.id,
            template,
            len(team.members),
            score,
        )
        return CompositionResult(
            team=team,
            template_used=template,
            reasoning=_build_reasoning(template, recommendation, requirements, constraints),
            score=score,
            member_prompts=self.generate_member_prompts(team),
            warnings=tuple(warnings),
        )
