from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from crewflow.agents.base import SpecialistAgent
from crewflow.backends.base import AgentBackend
from crewflow.models import ValidatorOutput
from crewflow.validation import VALIDATOR_AGENTS, parse_validator_response


class ValidatorAgent(SpecialistAgent):
    role = "validator"
    default_agent_type = "validator-logic"
    fallback_prompt = """
You are a Validator.
Independently verify the builder's work. Classify every failed check as
critical, major, or minor and return a single JSON verdict.
""".strip()

    def __init__(self, backend: AgentBackend, validator_type: str, **kwargs: Any) -> None:
        agent_type, tier = VALIDATOR_AGENTS.get(
            validator_type, (f"validator-{validator_type}", "medium")
        )
        kwargs.setdefault("agent_type", agent_type)
        kwargs.setdefault("model_tier", tier)
        super().__init__(backend, **kwargs)
        self.validator_type = validator_type

    async def validate(self, prompt: str, *, task_id: str) -> ValidatorOutput:
        response = await self.run(
            prompt, {"task_id": task_id, "validator_type": self.validator_type}
        )
        return parse_validator_response(response.content, self.validator_type, task_id)


class ValidatorPool:
    """Hands out a validator agent per validator type, with optional per-type backends."""

    def __init__(
        self,
        backend: AgentBackend,
        overrides: Mapping[str, AgentBackend] | None = None,
    ) -> None:
        self.backend = backend
        self.overrides = dict(overrides or {})

    def get(self, validator_type: str) -> ValidatorAgent:
        return ValidatorAgent(self.overrides.get(validator_type, self.backend), validator_type)
