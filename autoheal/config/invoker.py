from pydantic import BaseModel, Field, model_validator
from typing_extensions import Annotated, Self

# Upper bound for a single invocation including every retry and delay.
MAX_TOTAL_EXECUTION_MS = 600_000


class InvokerConfig(BaseModel):
    """Retry, timeout and history options of the tool invoker."""

    max_retries: Annotated[int, Field(
        description="Retries after the first failed attempt",
        default=3, ge=0, le=10,
    )]
    initial_retry_delay_ms: Annotated[int, Field(
        description="Delay before the first retry in milliseconds",
        default=500, ge=100, le=5000,
    )]
    max_retry_delay_ms: Annotated[int, Field(
        description="Upper bound for a single retry delay in milliseconds",
        default=10_000, ge=1000, le=60_000,
    )]
    use_exponential_backoff: Annotated[bool, Field(
        description="Double the delay after each retry instead of keeping it constant",
        default=True,
    )]
    jitter: Annotated[float, Field(
        description="Relative random spread applied to each retry delay",
        default=0.25, ge=0.0, le=1.0,
    )]
    timeout_per_tool_ms: Annotated[int, Field(
        description="Timeout of a single attempt in milliseconds",
        default=30_000, ge=5000, le=300_000,
    )]
    max_history_size: Annotated[int, Field(
        description="Results kept per correlation id",
        default=100, ge=10, le=1000,
    )]
    enable_detailed_logging: Annotated[bool, Field(
        description="Log every attempt at INFO instead of DEBUG",
        default=True,
    )]

    @model_validator(mode='after')
    def check_bounds(self) -> Self:
        if self.max_retry_delay_ms < self.initial_retry_delay_ms:
            raise ValueError(
                f"max_retry_delay_ms ({self.max_retry_delay_ms}) must not be less than "
                f"initial_retry_delay_ms ({self.initial_retry_delay_ms})"
            )
        if self.max_total_execution_ms > MAX_TOTAL_EXECUTION_MS:
            raise ValueError(
                f"Worst case execution time {self.max_total_execution_ms}ms exceeds "
                f"{MAX_TOTAL_EXECUTION_MS}ms; reduce max_retries or timeout_per_tool_ms"
            )
        return self

    @property
    def max_total_execution_ms(self) -> int:
        attempts = self.max_retries + 1
        return attempts * self.timeout_per_tool_ms + self.max_retries * self.max_retry_delay_ms
