"""Homespun error hierarchy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    """Category of error for classification and handling."""

    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_STATE = "invalid_state"
    START_FAILED = "start_failed"
    TIMEOUT = "timeout"
    PROCESS = "process"
    UNAVAILABLE = "unavailable"
    INVALID_ARGUMENT = "invalid_argument"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class HomespunError(Exception):
    """Base error for all homespun exceptions."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, category={self.category!r})"


class NotFoundError(HomespunError):
    """Unknown agent or entity."""

    def __init__(self, message: str, *, agent_id: str | None = None) -> None:
        super().__init__(message, category=ErrorCategory.NOT_FOUND)
        self.agent_id = agent_id


class ConflictError(HomespunError):
    """An agent is already live for the entity and continuation was not requested."""

    def __init__(self, entity_id: str, agent_id: str) -> None:
        super().__init__(
            f"Agent {agent_id} is already active for entity {entity_id}",
            category=ErrorCategory.CONFLICT,
            details={"entity_id": entity_id, "agent_id": agent_id},
        )
        self.entity_id = entity_id
        self.agent_id = agent_id


class InvalidStateError(HomespunError):
    """Operation is not valid for the agent's current status."""

    def __init__(self, message: str, *, agent_id: str | None = None, status: str | None = None) -> None:
        super().__init__(
            message,
            category=ErrorCategory.INVALID_STATE,
            details={"agent_id": agent_id, "status": status},
        )
        self.agent_id = agent_id
        self.status = status


class StartFailedError(HomespunError):
    """Launching an agent or waiting for its readiness failed."""

    def __init__(self, message: str, *, agent_id: str | None = None, retryable: bool = True) -> None:
        super().__init__(message, category=ErrorCategory.START_FAILED, retryable=retryable)
        self.agent_id = agent_id


class StartTimeoutError(StartFailedError):
    """Agent did not become ready within the start timeout."""

    def __init__(self, agent_id: str, timeout: float) -> None:
        super().__init__(f"Agent {agent_id} did not become ready within {timeout}s", agent_id=agent_id)
        self.category = ErrorCategory.TIMEOUT
        self.timeout = timeout


class PromptTimeoutError(HomespunError):
    """No correlated response arrived within the prompt timeout."""

    def __init__(self, agent_id: str, timeout: float) -> None:
        super().__init__(
            f"Agent {agent_id} did not answer within {timeout}s",
            category=ErrorCategory.TIMEOUT,
            retryable=True,
        )
        self.agent_id = agent_id
        self.timeout = timeout


class ProcessError(HomespunError):
    """Non-zero exit, crash or transport failure after a successful start."""

    def __init__(
        self,
        message: str,
        *,
        agent_id: str | None = None,
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(
            message,
            category=ErrorCategory.PROCESS,
            details={"exit_code": exit_code, "stderr": stderr[-2000:]},
        )
        self.agent_id = agent_id
        self.exit_code = exit_code


class UnavailableError(HomespunError):
    """Requested harness variant is not registered."""

    def __init__(self, harness_type: str, available: list[str]) -> None:
        super().__init__(
            f"Unknown harness type: {harness_type}. Available types: {', '.join(available)}",
            category=ErrorCategory.UNAVAILABLE,
        )
        self.harness_type = harness_type
        self.available = available


class InvalidArgumentError(HomespunError, ValueError):
    """A pure function was called with an item it cannot handle."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.INVALID_ARGUMENT)


class ConfigurationError(HomespunError):
    """Invalid or missing configuration."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION)
