from crewflow.agents.base import AgentResponse, SpecialistAgent
from crewflow.agents.builder import BuilderAgent
from crewflow.agents.escalation import ArchitectAgent, CoordinatorAgent
from crewflow.agents.validator import ValidatorAgent, ValidatorPool

__all__ = [
    "AgentResponse",
    "ArchitectAgent",
    "BuilderAgent",
    "CoordinatorAgent",
    "SpecialistAgent",
    "ValidatorAgent",
    "ValidatorPool",
]
