from __future__ import annotations

import json
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, assert_never

from crewflow.models import (
    AgentOutput,
    Complexity,
    Evidence,
    Severity,
    ValidationType,
    ValidatorCheck,
    ValidatorOutput,
    VerdictStatus,
    extract_json_object,
)

VALIDATOR_AGENTS: dict[str, tuple[str, str]] = {
    "syntax": ("validator-syntax", "low"),
    "logic": ("validator-logic", "medium"),
    "security": ("validator-security", "high"),
    "integration": ("validator-integration", "medium"),
    "architect": ("architect", "high"),
}

_STATUS_SYNONYMS: dict[str, VerdictStatus] = {
    "APPROVED": "APPROVED",
    "APPROVE": "APPROVED",
    "PASS": "APPROVED",
    "PASSED": "APPROVED",
    "SUCCESS": "APPROVED",
    "REJECTED": "REJECTED",
    "REJECT": "REJECTED",
    "FAIL": "REJECTED",
    "FAILED": "REJECTED",
    "FAILURE": "REJECTED",
    "NEEDS_REVIEW": "NEEDS_REVIEW",
    "NEEDS REVIEW": "NEEDS_REVIEW",
    "REVIEW": "NEEDS_REVIEW",
    "PENDING": "NEEDS_REVIEW",
    "UNKNOWN": "NEEDS_REVIEW",
}

_SEVERITY_SYNONYMS: dict[str, Severity] = {
    "critical": "critical",
    "blocker": "critical",
    "high": "critical",
    "major": "major",
    "medium": "major",
    "warning": "major",
    "minor": "minor",
    "low": "minor",
    "info": "minor",
}

_VERDICT_RE = re.compile(
    r"(?:VERDICT|STATUS|RESULT)\s*:\s*(APPROVED|REJECTED|NEEDS_REVIEW)", re.IGNORECASE
)
_ISSUE_RE = re.compile(r"(?:ISSUE|ERROR|PROBLEM)\s*:\s*(.+)", re.IGNORECASE)
_RECOMMENDATION_RE = re.compile(r"(?:RECOMMENDATION|SUGGESTION|FIX)\s*:\s*(.+)", re.IGNORECASE)
_CHECK_RE = re.compile(r"\[([✓✗X])\]\s*(.+)")


@dataclass(frozen=True, slots=True)
class AggregatedVerdict:
    status: VerdictStatus
    critical_issues: tuple[str, ...] = ()
    evidence: tuple[Evidence, ...] = ()


@dataclass(frozen=True, slots=True)
class SelfCheck:
    passed: bool
    retry_count: int = 0
    last_error: str | None = None


def select_validators(validation_type: ValidationType, complexity: Complexity) -> tuple[str, ...]:
    match validation_type:
        case "self-only":
            return ()
        case "validator":
            match complexity:
                case "low":
                    return ("syntax",)
                case "medium":
                    return ("syntax", "logic")
                case "high":
                    return ("syntax", "logic", "security")
                case _:
                    assert_never(complexity)
        case "architect":
            return ("syntax", "logic", "security", "integration", "architect")
        case _:
            assert_never(validation_type)


def normalize_status(value: Any) -> VerdictStatus | None:
    if not isinstance(value, str):
        return None
    return _STATUS_SYNONYMS.get(value.strip().upper())


def normalize_severity(value: Any) -> Severity:
    if not isinstance(value, str):
        return "major"
    return _SEVERITY_SYNONYMS.get(value.strip().lower(), "major")


def _checks_from(raw_checks: Any, *, lenient: bool) -> tuple[ValidatorCheck, ...]:
    if not isinstance(raw_checks, list):
        return ()
    checks: list[ValidatorCheck] = []
    for item in raw_checks:
        if not isinstance(item, dict):
            continue
        severity = item.get("severity")
        checks.append(
            ValidatorCheck(
                name=str(item.get("name") or "Unknown check"),
                passed=bool(item.get("passed")),
                evidence=str(item.get("evidence") or ""),
                severity=(
                    normalize_severity(severity)
                    if lenient
                    else (severity if severity in ("critical", "major", "minor") else "major")
                ),
            )
        )
    return tuple(checks)


def _strings(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(item) for item in value)


def _first_json_block(raw: str) -> str | None:
    fenced = re.search(r"```(?:json)?\s*([\s\S]*?)```", raw)
    if fenced:
        return fenced.group(1).strip()
    bare = re.search(r"\{[\s\S]*\"validatorType\"[\s\S]*\}", raw) or re.search(
        r"\{[\s\S]*\"validator_type\"[\s\S]*\}", raw
    )
    return bare.group(0) if bare else None


def parse_validator_output(raw: str) -> ValidatorOutput | None:
    """Strict parse of a JSON verdict with validator type, task id and known status.

    Returns ``None`` for anything else.
    """
    if not raw or not isinstance(raw, str):
        return None
    block = _first_json_block(raw)
    if block is None:
        return None
    try:
        payload = json.loads(block)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    validator_type = payload.get("validatorType") or payload.get("validator_type")
    task_id = payload.get("taskId") or payload.get("task_id")
    status = payload.get("status")
    if not validator_type or not task_id or not isinstance(status, str):
        return None
    status = status.upper()
    if status not in ("APPROVED", "REJECTED", "NEEDS_REVIEW"):
        return None
    return ValidatorOutput(
        validator_type=str(validator_type),
        task_id=str(task_id),
        status=status,
        checks=_checks_from(payload.get("checks"), lenient=False),
        issues=_strings(payload.get("issues")),
        recommendations=_strings(payload.get("recommendations")),
    )


def _unparseable(validator_type: str, task_id: str) -> ValidatorOutput:
    return ValidatorOutput(
        validator_type=validator_type,
        task_id=task_id,
        status="NEEDS_REVIEW",
        issues=("Could not parse validator response",),
        recommendations=("Manually review the validator output",),
    )


def _parse_markers(raw: str, validator_type: str, task_id: str) -> ValidatorOutput:
    verdict = _VERDICT_RE.search(raw)
    status = normalize_status(verdict.group(1)) if verdict else None
    issues = tuple(match.group(1).strip() for match in _ISSUE_RE.finditer(raw))
    recommendations = tuple(match.group(1).strip() for match in _RECOMMENDATION_RE.finditer(raw))
    checks = tuple(
        ValidatorCheck(
            name=match.group(2).strip(),
            passed=match.group(1) == "✓",
            evidence="Extracted from structured output",
            severity="major",
        )
        for match in _CHECK_RE.finditer(raw)
    )
    if not issues and not checks and verdict is None:
        return _unparseable(validator_type, task_id)
    return ValidatorOutput(
        validator_type=validator_type,
        task_id=task_id,
        status=status or "NEEDS_REVIEW",
        checks=checks,
        issues=issues,
        recommendations=recommendations,
    )


def parse_validator_response(raw: str, validator_type: str, task_id: str) -> ValidatorOutput:
    """Lenient parse of whatever a validator agent said. Never raises.

    JSON is preferred; status and severity synonyms are normalized. Without JSON,
    ``VERDICT:``/``ISSUE:``/``RECOMMENDATION:`` lines and ``[✓]``/``[✗]`` check
    markers are read. Anything else becomes a NEEDS_REVIEW verdict.
    """
    if not raw or not isinstance(raw, str):
        return _unparseable(validator_type, task_id)
    payload = extract_json_object(raw, required_key="status")
    if payload is None:
        return _parse_markers(raw, validator_type, task_id)
    status = normalize_status(payload.get("status"))
    if status is None:
        return _unparseable(validator_type, task_id)
    return ValidatorOutput(
        validator_type=str(
            payload.get("validatorType") or payload.get("validator_type") or validator_type
        ),
        task_id=str(payload.get("taskId") or payload.get("task_id") or task_id),
        status=status,
        checks=_checks_from(payload.get("checks"), lenient=True),
        issues=_strings(payload.get("issues")),
        recommendations=_strings(payload.get("recommendations")),
    )


def validator_output_to_evidence(output: ValidatorOutput) -> Evidence:
    match output.validator_type:
        case "syntax":
            evidence_type = "syntax_clean"
        case "integration":
            evidence_type = "integration_pass"
        case _:
            evidence_type = "validator_approval"
    passed = output.status == "APPROVED"
    critical = [check for check in output.failed_checks if check.severity == "critical"]
    return Evidence(
        type=evidence_type,
        passed=passed,
        content="" if passed else "; ".join(output.issues),
        metadata={
            "validator_type": output.validator_type,
            "task_id": output.task_id,
            "status": output.status,
            "checks_performed": len(output.checks),
            "checks_passed": sum(1 for check in output.checks if check.passed),
            "critical_failures": len(critical),
            "recommendations": list(output.recommendations),
        },
    )


def aggregate_validator_results(outputs: Sequence[ValidatorOutput]) -> AggregatedVerdict:
    if not outputs:
        return AggregatedVerdict(status="APPROVED")

    critical_issues: list[str] = []
    for output in outputs:
        if output.status == "REJECTED":
            critical_issues.extend(output.issues)
        for check in output.failed_checks:
            if check.severity == "critical":
                critical_issues.append(f"[{output.validator_type}] {check.name}: {check.evidence}")

    statuses = {output.status for output in outputs}
    if "REJECTED" in statuses or any(output.has_critical_failure for output in outputs):
        status: VerdictStatus = "REJECTED"
    elif "NEEDS_REVIEW" in statuses:
        status = "NEEDS_REVIEW"
    else:
        status = "APPROVED"
    return AggregatedVerdict(
        status=status,
        critical_issues=tuple(critical_issues),
        evidence=tuple(validator_output_to_evidence(output) for output in outputs),
    )


def check_builder_self_validation(output: AgentOutput) -> SelfCheck:
    if output.self_validation is None:
        return SelfCheck(passed=False, last_error="No self-validation data provided by builder")
    return SelfCheck(
        passed=output.self_validation.passed,
        retry_count=output.self_validation.retry_count,
        last_error=output.self_validation.last_error,
    )


def estimate_complexity(output: AgentOutput) -> Complexity:
    modified = len(output.files_modified)
    if modified <= 1:
        return "low"
    if modified <= 3:
        return "medium"
    return "high"
