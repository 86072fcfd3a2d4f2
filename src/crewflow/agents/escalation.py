from __future__ import annotations

from crewflow.agents.builder import BuilderAgent


class ArchitectAgent(BuilderAgent):
    role = "architect"
    default_agent_type = "architect"
    fallback_prompt = """
You are the Architect.
A task has failed repeated validation. Find the root cause, then either fix it
directly or give the builder specific guidance. Report the result in the same
JSON shape a builder uses.
""".strip()


class CoordinatorAgent(BuilderAgent):
    role = "coordinator"
    default_agent_type = "coordinator"
    fallback_prompt = """
You are the Coordinator.
Re-evaluate the approach for a task whose issues keep recurring. Re-plan or
delegate, and report the outcome in the same JSON shape a builder uses.
""".strip()
