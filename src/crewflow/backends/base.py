from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


class BackendExecutionError(RuntimeError):
    """Raised when an agent backend fails to produce a reply."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when an agent call exceeds its per-attempt timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when the agent process cannot be started or talked to."""


class AgentBackend(ABC):
    """An agent is opaque to the orchestrator: prompt in, streamed text out."""

    name: str = "agent"

    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Run the agent and stream textual chunks."""
