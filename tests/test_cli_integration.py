import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from crewflow.backends.base import AgentBackend
from crewflow.cli import cli
from crewflow.store import StateStore


class FakeBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt
        validator_type = context.get("validator_type")
        if validator_type:
            yield json.dumps(
                {
                    "validatorType": validator_type,
                    "taskId": context["task_id"],
                    "status": "APPROVED",
                    "checks": [{"name": "tests", "passed": True, "evidence": "all green"}],
                    "issues": [],
                    "recommendations": [],
                }
            )
            return
        yield json.dumps(
            {
                "status": "success",
                "summary": f"implemented {context['task_id']}",
                "files_modified": ["src/app.py"],
                "self_validation": {"passed": True, "checks_run": ["pytest"]},
            }
        )


def _write_decomposition(path: Path, *subtasks: dict[str, Any]) -> Path:
    path.write_text(json.dumps({"subtasks": list(subtasks)}), encoding="utf-8")
    return path


@pytest.fixture
def repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("crewflow.cli._build_backend", lambda runtime: FakeBackend())
    return tmp_path


def test_cli_full_lifecycle_commands(repo: Path) -> None:
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0
    assert (repo / "crewflow.toml").exists()

    compose_result = runner.invoke(
        cli, ["compose", "Add pagination to list endpoint", "--complexity", "0.4", "--save"]
    )
    assert compose_result.exit_code == 0
    assert "Template: standard" in compose_result.output
    assert StateStore(repo).load_team() is not None

    decomposition = _write_decomposition(
        repo / "decomposition.json",
        {"id": "api", "prompt": "Add page and size params"},
        {"id": "tests", "prompt": "Cover edge pages", "blockedBy": ["api"]},
    )
    create_result = runner.invoke(
        cli, ["create", str(decomposition), "--workflow-id", "wf-test"]
    )
    assert create_result.exit_code == 0
    assert "Created workflow wf-test with 2 tasks" in create_result.output

    plan_result = runner.invoke(cli, ["plan"])
    assert plan_result.exit_code == 0
    assert "Phase 1: api" in plan_result.output
    assert "Phase 2: tests" in plan_result.output
    assert "Critical path: api -> tests" in plan_result.output

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    assert '"status": "pending"' in status_result.output

    run_result = runner.invoke(cli, ["run", "--workflow-id", "wf-test"])
    assert run_result.exit_code == 0, run_result.output
    assert "Status: COMPLETED" in run_result.output
    assert "Tasks: 2/2 completed" in run_result.output

    status_result = runner.invoke(cli, ["status", "--workflow-id", "wf-test"])
    assert '"status": "completed"' in status_result.output

    report_result = runner.invoke(cli, ["report"])
    assert report_result.exit_code == 0
    assert '"workflow_id": "wf-test"' in report_result.output

    markdown_result = runner.invoke(cli, ["report", "--markdown"])
    assert "# Workflow Execution Report" in markdown_result.output

    metrics = StateStore(repo).get_metrics()
    assert metrics["event_counts"]["task_completed"] == 2


def test_compose_json_reports_constraint_warnings(repo: Path) -> None:
    result = CliRunner().invoke(
        cli,
        [
            "compose",
            "Add pagination to list endpoint",
            "--complexity",
            "0.4",
            "--max-members",
            "1",
            "--json",
        ],
    )

    assert result.exit_code == 0
    payload = json.loads(result.output)
    assert payload["template_used"] == "standard"
    assert len(payload["team"]["members"]) == 1
    assert payload["warnings"] == ["Team has 2 members, exceeds max of 1"]
    assert set(payload["member_prompts"]) == {"builder-1"}


def test_create_with_template_and_plan_file_with_cycle(repo: Path) -> None:
    runner = CliRunner()
    decomposition = _write_decomposition(
        repo / "cycle.json",
        {"id": "x", "prompt": "x", "blocked_by": ["y"]},
        {"id": "y", "prompt": "y", "blocked_by": ["x"]},
    )

    create_result = runner.invoke(
        cli, ["create", str(decomposition), "--template", "minimal", "--workflow-id", "wf-cycle"]
    )
    assert create_result.exit_code == 0
    assert "Team: team-minimal" in create_result.output

    plan_result = runner.invoke(cli, ["plan", "--workflow-id", "wf-cycle"])
    assert plan_result.exit_code != 0
    assert "Dependency cycle among tasks: x, y" in plan_result.output


def test_commands_fail_cleanly_without_state(repo: Path) -> None:
    runner = CliRunner()
    decomposition = _write_decomposition(repo / "one.json", {"id": "a", "prompt": "a"})

    create_result = runner.invoke(cli, ["create", str(decomposition)])
    assert create_result.exit_code != 0
    assert "No team available" in create_result.output

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code != 0
    assert "No stored workflow found" in status_result.output

    report_result = runner.invoke(cli, ["report"])
    assert report_result.exit_code == 0
    assert "No execution reports found." in report_result.output

    (repo / "bad.json").write_text("{}", encoding="utf-8")
    bad_result = runner.invoke(cli, ["create", str(repo / "bad.json")])
    assert bad_result.exit_code != 0
    assert "Invalid decomposition file" in bad_result.output
