from __future__ import annotations


class CrewflowError(RuntimeError):
    """Base class for orchestration errors."""


class ConfigurationError(CrewflowError):
    """Raised synchronously for unknown templates, invalid constraints or bad config values."""


class WorkflowError(CrewflowError):
    """Raised for unknown tasks or members and for transitions invalid in the current status."""


class DeadlockError(CrewflowError):
    """Raised when the dependency graph contains tasks that can never become ready."""

    def __init__(self, message: str, *, task_ids: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.task_ids = task_ids


class StateError(CrewflowError):
    """Raised when persisted-state operations fail."""


class StaleRevisionError(StateError):
    """Raised when a write names a revision that another writer already replaced."""

    def __init__(self, namespace: str, *, expected: int, found: int) -> None:
        super().__init__(
            f"Stale revision for {namespace!r} state: expected {expected}, found {found}"
        )
        self.namespace = namespace
        self.expected = expected
        self.found = found
