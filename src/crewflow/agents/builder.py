from __future__ import annotations

from typing import Any

from crewflow.agents.base import SpecialistAgent
from crewflow.models import AgentOutput, parse_agent_output


class BuilderAgent(SpecialistAgent):
    role = "builder"
    default_agent_type = "executor"
    fallback_prompt = """
You are the Builder specialist.
Implement the requested change, run your own checks, and report the result
as a JSON object with status, summary, files_modified, evidence and
self_validation.
""".strip()

    async def build(
        self, prompt: str, *, task_id: str, agent_type: str | None = None
    ) -> AgentOutput | None:
        context: dict[str, Any] = {"task_id": task_id}
        if agent_type:
            context["agent_type"] = agent_type
        response = await self.run(prompt, context)
        return parse_agent_output(
            response.content, agent_id=agent_type or self.agent_type, task_id=task_id
        )
