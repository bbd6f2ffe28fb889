"""Request/result records exchanged with the tool invoker."""

import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Protocol, runtime_checkable

from autoheal.cancellation import CancellationToken


def _correlation_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class InvocationRequest:
    """A named operation with its parameters."""
    tool_name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    correlation_id: str = field(default_factory=_correlation_id)
    reasoning: str | None = None


@dataclass(frozen=True)
class InvocationResult:
    """Outcome of a request after all of its attempts."""
    success: bool
    tool_name: str
    result: Any = None
    error: str | None = None
    error_type: str | None = None
    duration_ms: float = 0.0
    attempt_count: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.attempt_count < 1:
            raise ValueError(f"attempt_count must be at least 1, got {self.attempt_count}")

    @property
    def was_retried(self) -> bool:
        return self.attempt_count > 1

    def with_metadata(self, **entries: Any) -> "InvocationResult":
        return replace(self, metadata={**self.metadata, **entries})

    @classmethod
    def succeeded(cls, tool_name: str, result: Any, duration_ms: float, attempt_count: int = 1,
                  metadata: dict[str, Any] | None = None) -> "InvocationResult":
        return cls(
            success=True,
            tool_name=tool_name,
            result=result,
            duration_ms=duration_ms,
            attempt_count=attempt_count,
            metadata=dict(metadata or {}),
        )

    @classmethod
    def failed(cls, tool_name: str, error: str, error_type: str, duration_ms: float, attempt_count: int = 1,
               metadata: dict[str, Any] | None = None) -> "InvocationResult":
        return cls(
            success=False,
            tool_name=tool_name,
            error=error,
            error_type=error_type,
            duration_ms=duration_ms,
            attempt_count=attempt_count,
            metadata={**(metadata or {}), "error_type": error_type, "error_message": error},
        )


@dataclass(frozen=True)
class ToolOutcome:
    """What an execution capability reports for a single call."""
    success: bool
    result: Any = None
    error: str | None = None


@runtime_checkable
class ExecutionCapability(Protocol):
    """Performs named operations, e.g. a browser driver.

    Implementations should observe *cancellation*; the invoker additionally
    abandons the call once the token trips.  Raising is equivalent to
    returning a failed :class:`ToolOutcome`, except that ``ValueError``,
    ``TypeError`` and ``NotImplementedError`` are treated as terminal and
    never retried.
    """

    async def execute(self, tool_name: str, parameters: dict[str, Any],
                      cancellation: CancellationToken) -> ToolOutcome:
        ...
