import pytest

from crewflow.composer import (
    CompositionConstraints,
    TeamAutoComposer,
    analyze_requirements,
    balance_team,
    determine_builders,
    determine_validators,
    map_subtask_to_agent,
    recommend_template,
    select_template_by_complexity,
    validate_composition,
)
from crewflow.errors import ConfigurationError
from crewflow.models import Decomposition, Subtask, TaskAnalysis
from crewflow.team import create_team_from_template


def test_fullstack_task_gets_specialists() -> None:
    analysis = TaskAnalysis(
        "Build authentication UI",
        type="fullstack-app",
        complexity=0.95,
        areas=("frontend", "backend"),
    )

    result = TeamAutoComposer().compose_team(analysis, team_id="team-1")

    assert result.template_used == "fullstack"
    assert result.team.id == "team-1"
    assert len(result.team.members) > 2
    assert {"design", "security_analysis"} <= result.team.capabilities()
    assert result.team.default_validation_type == "architect"
    assert "Added security reviewer" in result.reasoning
    assert 0.0 <= result.score <= 1.0
    assert result.warnings == ()


def test_analyze_requirements_reads_keywords() -> None:
    requirements = analyze_requirements(
        TaskAnalysis("Write README guide for the CLI", type="documentation", complexity=0.1)
    )

    assert requirements.needs_documentation is True
    assert requirements.needs_security_review is False
    assert requirements.recommended_validation == "self-only"

    risky = analyze_requirements(TaskAnalysis("Rotate JWT signing keys", complexity=0.4))
    assert risky.needs_security_review is True
    assert risky.recommended_validation == "architect"


def test_balance_team_trims_and_pads() -> None:
    fullstack = create_team_from_template("fullstack", "team-1", "Fullstack")

    trimmed = balance_team(fullstack, CompositionConstraints(max_members=2))
    assert [member.id for member in trimmed.members] == ["builder-1", "validator-1"]

    no_designer = CompositionConstraints(excluded_agents=("designer",))
    without_designer = balance_team(fullstack, no_designer)
    assert "designer" not in {member.agent_type for member in without_designer.members}

    standard = create_team_from_template("standard", "team-2", "Standard")
    padded = balance_team(standard, CompositionConstraints(min_members=4))
    padded_ids = [member.id for member in padded.members]
    assert padded_ids[-2:] == ["validator-extra-1", "validator-extra-2"]
    assert padded.members[-1].agent_type == "validator-syntax"


def test_constraints_are_validated() -> None:
    with pytest.raises(ConfigurationError):
        CompositionConstraints(max_members=0)
    with pytest.raises(ConfigurationError, match="exceeds max_members"):
        CompositionConstraints(max_members=2, min_members=3)
    with pytest.raises(ConfigurationError):
        CompositionConstraints(validation_type="bogus")  # type: ignore[arg-type]
    with pytest.raises(ConfigurationError):
        CompositionConstraints(max_model_tier="ultra")  # type: ignore[arg-type]
    with pytest.raises(ConfigurationError):
        CompositionConstraints(required_roles=("boss",))  # type: ignore[arg-type]


def test_validate_composition_reports_violations() -> None:
    team = create_team_from_template("standard", "team-1", "Standard")
    constraints = CompositionConstraints(
        required_capabilities=("design",),
        required_roles=("coordinator",),
        excluded_agents=("executor",),
    )

    check = validate_composition(team, constraints)

    assert check.valid is False
    assert check.violations == (
        "Missing required capability: design",
        "Missing required role: coordinator",
        "Team contains excluded agent type: executor",
    )
    assert validate_composition(team, None).valid is True


@pytest.mark.parametrize(
    ("analysis", "template"),
    [
        (TaskAnalysis("Write docs", type="documentation", complexity=0.9), "minimal"),
        (TaskAnalysis("Rename a variable", complexity=0.2), "minimal"),
        (TaskAnalysis("Add pagination", complexity=0.4), "standard"),
        (TaskAnalysis("Add caching layer", complexity=0.6), "robust"),
        (TaskAnalysis("Harden password storage", complexity=0.8), "secure"),
        (TaskAnalysis("Refactor the scheduler", complexity=0.8), "robust"),
        (TaskAnalysis("Rebuild everything", complexity=0.95), "fullstack"),
    ],
)
def test_recommend_template(analysis: TaskAnalysis, template: str) -> None:
    recommendation = recommend_template(analysis)

    assert recommendation.template == template
    assert 0.0 < recommendation.score <= 1.0


def test_recommendation_reasoning_follows_complexity_band() -> None:
    assert recommend_template(TaskAnalysis("Add pagination", complexity=0.4)).reasoning == (
        "Low-medium complexity (0.40) suitable for standard team"
    )
    high = recommend_template(TaskAnalysis("Refactor the scheduler", complexity=0.8))
    assert high.template == "robust"
    assert high.reasoning.startswith("High complexity (0.80) with ")
    assert select_template_by_complexity(0.3) == "standard"
    assert select_template_by_complexity(0.9) == "fullstack"


def test_determine_builders_and_validators() -> None:
    subtasks = [
        Subtask("a", "A", "do a", agent_type="executor", model_tier="low"),
        Subtask("b", "B", "do b", agent_type="executor", model_tier="high"),
        Subtask("c", "C", "do c", agent_type="designer"),
    ]

    builders = determine_builders(subtasks)

    assert [(member.id, member.agent_type) for member in builders] == [
        ("builder-1", "executor"),
        ("builder-2", "designer"),
    ]
    assert builders[0].model_tier == "high"
    assert builders[0].max_concurrent_tasks == 2
    assert builders[1].max_concurrent_tasks == 1

    assert determine_validators("self-only") == ()
    assert len(determine_validators("validator")) == 2
    architect = determine_validators("architect")[-1]
    assert architect.agent_type == "architect"
    assert architect.model_tier == "high"


def test_map_subtask_to_agent() -> None:
    def mapping(role: str, prompt: str = "do it", tier: str = "medium") -> tuple[str, str, str]:
        subtask = Subtask("s", "S", prompt, component_role=role, model_tier=tier)  # type: ignore
        result = map_subtask_to_agent(subtask)
        return result.agent_type, result.model_tier, result.role

    assert mapping("frontend", "Style the navbar with css") == ("designer", "medium", "specialist")
    assert mapping("ui") == ("executor", "medium", "builder")
    assert mapping("api", "Add auth middleware") == ("executor", "high", "builder")
    assert mapping("database", tier="low") == ("executor", "medium", "builder")
    assert mapping("testing") == ("qa-tester", "medium", "validator")
    assert mapping("docs", tier="high") == ("writer", "low", "specialist")
    assert mapping("config") == ("executor-low", "low", "builder")
    assert mapping("other") == ("executor", "medium", "builder")


def test_compose_applies_constraints_with_warnings() -> None:
    analysis = TaskAnalysis("Add pagination to list endpoint", complexity=0.4)
    constraints = CompositionConstraints(
        max_members=1, max_model_tier="low", validation_type="self-only"
    )

    result = TeamAutoComposer().compose_team(analysis, constraints=constraints, team_id="team-x")

    assert result.template_used == "standard"
    assert [member.id for member in result.team.members] == ["builder-1"]
    assert result.team.members[0].model_tier == "low"
    assert result.team.default_validation_type == "self-only"
    assert result.warnings == ("Team has 2 members, exceeds max of 1",)
    assert "Constraints applied: max 1 members, self-only validation" in result.reasoning


def test_compose_covers_decomposition_agents() -> None:
    analysis = TaskAnalysis("Add pagination to list endpoint", complexity=0.4)
    decomposition = Decomposition(
        subtasks=(
            Subtask("api", "API", "Add page params", component_role="backend"),
            Subtask("tests", "Tests", "Cover edge pages", component_role="testing"),
        )
    )

    result = TeamAutoComposer().compose_team(analysis, decomposition, team_id="team-y")

    qa = result.team.member("qa-tester-1")
    assert qa is not None
    assert qa.role == "validator"
    assert len(result.team.members_with_role("builder")) == 1


def test_preferred_template_and_member_prompts() -> None:
    composer = TeamAutoComposer(prompt_generator=lambda member: f"You are {member.agent_type}")

    result = composer.compose_team(
        TaskAnalysis("Add pagination", complexity=0.4),
        preferred_template="robust",
        team_id="team-z",
    )

    assert result.template_used == "robust"
    assert result.member_prompts == {
        "builder-1": "You are executor",
        "validator-1": "You are validator-syntax",
        "validator-2": "You are validator-logic",
    }
    assert result.to_dict()["team"]["id"] == "team-z"
