from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from crewflow.backends.base import AgentBackend
from crewflow.models import ModelTier


@dataclass(slots=True)
class AgentResponse:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class SpecialistAgent:
    role: str = "specialist"
    default_agent_type: str = "executor"
    fallback_prompt: str = "You are a software specialist."

    def __init__(
        self,
        backend: AgentBackend,
        *,
        agent_type: str | None = None,
        model_tier: ModelTier | None = None,
        system_prompt: str | None = None,
    ) -> None:
        self.backend = backend
        self.agent_type = agent_type or self.default_agent_type
        self.model_tier = model_tier
        self.system_prompt = (system_prompt or self.fallback_prompt).strip()

    async def run(self, instruction: str, context: dict[str, Any]) -> AgentResponse:
        run_context = dict(context)
        run_context.setdefault("agent_type", self.agent_type)
        if self.model_tier:
            run_context["model_tier"] = self.model_tier

        chunks: list[str] = []
        async for chunk in self.backend.execute(
            system_prompt=self.system_prompt,
            user_prompt=instruction,
            context=run_context,
        ):
            chunks.append(chunk)
        return AgentResponse(
            role=self.role,
            content="".join(chunks).strip(),
            metadata={"instruction": instruction, "agent_type": self.agent_type},
        )
