import logging
import random
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Sequence

from autoheal.cancellation import CancellationToken, sleep
from autoheal.config.invoker import InvokerConfig
from autoheal.exceptions import OperationCancelledError, ToolValidationError
from autoheal.tracer import get_current_span, trace_tool
from .registry import ToolRegistry
from .types import ExecutionCapability, InvocationRequest, InvocationResult, ToolOutcome

logger = logging.getLogger(__name__)

# Errors that signal a broken call rather than a flaky environment.
TERMINAL_ERRORS: tuple[type[Exception], ...] = (ValueError, TypeError, NotImplementedError)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int
    initial_delay_ms: int
    max_delay_ms: int
    exponential: bool = True
    jitter: float = 0.0

    @classmethod
    def from_config(cls, config: InvokerConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            initial_delay_ms=config.initial_retry_delay_ms,
            max_delay_ms=config.max_retry_delay_ms,
            exponential=config.use_exponential_backoff,
            jitter=config.jitter,
        )

    def with_overrides(self, max_retries: int | None = None, initial_delay_ms: int | None = None) -> "RetryPolicy":
        policy = self
        if max_retries is not None:
            policy = replace(policy, max_retries=max(0, max_retries))
        if initial_delay_ms is not None:
            policy = replace(policy, initial_delay_ms=initial_delay_ms,
                             max_delay_ms=max(policy.max_delay_ms, initial_delay_ms))
        return policy

    def delay_ms(self, retry_index: int, rng: random.Random | None = None) -> int:
        """Delay before the retry following failed attempt number ``retry_index + 1``."""
        delay = float(self.initial_delay_ms)
        if self.exponential:
            delay = min(self.initial_delay_ms * (2 ** retry_index), self.max_delay_ms)
        if self.jitter > 0:
            spread = delay * self.jitter
            delay += (rng or random).uniform(-spread, spread)
        return int(min(max(delay, self.initial_delay_ms), max(self.max_delay_ms, self.initial_delay_ms)))


class ToolInvoker:
    """Runs invocation requests against an execution capability.

    Every request is validated against the :class:`ToolRegistry` first;
    contract violations fail immediately without touching the capability.
    Operation failures are retried per :class:`RetryPolicy` and every result
    is kept in a bounded per-correlation-id history.
    """

    def __init__(
            self,
            capability: ExecutionCapability,
            registry: ToolRegistry | None = None,
            config: InvokerConfig | None = None,
            rng: random.Random | None = None,
    ):
        self.capability = capability
        self.registry = registry or ToolRegistry.browser_defaults()
        self.config = config or InvokerConfig()
        self._rng = rng or random.Random()
        self._history: dict[str, deque[InvocationResult]] = {}

    @property
    def default_policy(self) -> RetryPolicy:
        return RetryPolicy.from_config(self.config)

    def validate(self, request: InvocationRequest) -> bool:
        try:
            self.registry.check(request.tool_name, request.parameters)
        except ToolValidationError as e:
            logger.debug("Request for '%s' is invalid: %s", request.tool_name, e)
            return False
        return True

    @trace_tool(name_from=lambda args: args["request"].tool_name)
    async def invoke(
            self,
            request: InvocationRequest,
            cancellation: CancellationToken | None = None,
            policy: RetryPolicy | None = None,
    ) -> InvocationResult:
        """Validate and run *request*, retrying operation failures.

        Raises:
            OperationCancelledError: If *cancellation* trips before the
                request completes, including during a retry delay.
        """
        started = time.perf_counter()
        base_metadata: dict[str, Any] = {"correlation_id": request.correlation_id}
        if request.reasoning:
            base_metadata["reasoning"] = request.reasoning

        try:
            self.registry.check(request.tool_name, request.parameters)
        except ToolValidationError as e:
            logger.warning("Rejected request for tool '%s': %s", request.tool_name, e)
            result = InvocationResult.failed(
                request.tool_name, str(e), type(e).__name__, _elapsed_ms(started), 1,
                {**base_metadata, "validation_error": e.validation_error},
            )
            return self._record(request.correlation_id, result)

        policy = policy or self.default_policy
        max_attempts = policy.max_retries + 1
        retry_reasons: list[str] = []
        retry_delays: list[int] = []
        error, error_type = "", ""
        attempt = 0

        while attempt < max_attempts:
            attempt += 1
            if cancellation is not None:
                cancellation.raise_if_cancelled()
            self._log(logging.INFO, "Invoking '%s' (attempt %d/%d, correlation %s)",
                      request.tool_name, attempt, max_attempts, request.correlation_id)
            try:
                outcome = await self._attempt(request, cancellation)
            except OperationCancelledError:
                raise
            except TERMINAL_ERRORS as e:
                error, error_type = str(e) or type(e).__name__, type(e).__name__
                logger.error("Tool '%s' failed with non-retryable %s: %s", request.tool_name, error_type, error)
                break
            except Exception as e:
                error, error_type = str(e) or type(e).__name__, type(e).__name__
            else:
                if outcome.success:
                    metadata = _with_retries(base_metadata, attempt, retry_reasons, retry_delays)
                    result = InvocationResult.succeeded(
                        request.tool_name, outcome.result, _elapsed_ms(started), attempt, metadata,
                    )
                    self._log(logging.INFO, "Tool '%s' succeeded after %d attempt(s)", request.tool_name, attempt)
                    return self._record(request.correlation_id, result)
                error = outcome.error or f"Tool '{request.tool_name}' reported failure"
                error_type = "ToolExecutionError"

            if attempt < max_attempts:
                delay_ms = policy.delay_ms(attempt - 1, self._rng)
                retry_reasons.append(error)
                retry_delays.append(delay_ms)
                logger.warning("Tool '%s' attempt %d/%d failed: %s; retrying in %dms",
                               request.tool_name, attempt, max_attempts, error, delay_ms)
                await sleep(delay_ms / 1000, cancellation)

        logger.error("Tool '%s' failed after %d attempt(s): %s", request.tool_name, attempt, error)
        metadata = _with_retries(base_metadata, attempt, retry_reasons, retry_delays)
        result = InvocationResult.failed(request.tool_name, error, error_type, _elapsed_ms(started), attempt, metadata)
        return self._record(request.correlation_id, result)

    async def invoke_sequence(
            self,
            requests: Sequence[InvocationRequest],
            cancellation: CancellationToken | None = None,
    ) -> list[InvocationResult]:
        """Run *requests* in order, stopping after the first failure."""
        if not requests:
            raise ValueError("Request sequence cannot be empty")
        results: list[InvocationResult] = []
        for index, request in enumerate(requests):
            if cancellation is not None:
                cancellation.raise_if_cancelled()
            result = await self.invoke(request, cancellation)
            results.append(result)
            if not result.success:
                logger.warning("Sequence stopped at request %d/%d ('%s'): %s",
                               index + 1, len(requests), request.tool_name, result.error)
                break
        return results

    async def invoke_with_fallback(
            self,
            primary: InvocationRequest,
            fallbacks: Sequence[InvocationRequest],
            cancellation: CancellationToken | None = None,
    ) -> InvocationResult:
        """Run *primary*, then each fallback in order until one succeeds.

        Every request gets its full retry budget.  A successful fallback is
        annotated with the primary's error; if everything fails the primary
        result is returned with a summary of the attempted fallbacks.
        """
        primary_result = await self.invoke(primary, cancellation)
        if primary_result.success or not fallbacks:
            return primary_result

        logger.info("Primary tool '%s' failed, trying %d fallback(s)", primary.tool_name, len(fallbacks))
        for index, fallback in enumerate(fallbacks):
            if cancellation is not None:
                cancellation.raise_if_cancelled()
            result = await self.invoke(fallback, cancellation)
            if result.success:
                logger.info("Fallback %d ('%s') succeeded", index, fallback.tool_name)
                return result.with_metadata(
                    fallback_used=True,
                    fallback_index=index,
                    primary_tool=primary.tool_name,
                    primary_error=primary_result.error,
                )
            logger.warning("Fallback %d ('%s') failed: %s", index, fallback.tool_name, result.error)

        return primary_result.with_metadata(
            fallback_attempted=True,
            fallback_count=len(fallbacks),
            all_fallbacks_failed=True,
        )

    def history(self, correlation_id: str) -> list[InvocationResult]:
        return list(self._history.get(correlation_id, ()))

    def clear_history(self, correlation_id: str | None = None):
        if correlation_id is None:
            self._history.clear()
        else:
            self._history.pop(correlation_id, None)

    async def _attempt(self, request: InvocationRequest, cancellation: CancellationToken | None) -> ToolOutcome:
        timeout_ms = self.config.timeout_per_tool_ms
        with CancellationToken.linked(cancellation, timeout_ms / 1000) as token:
            try:
                outcome = await token.run(
                    self.capability.execute(request.tool_name, dict(request.parameters), token)
                )
            except OperationCancelledError:
                if token.timed_out:
                    raise TimeoutError(f"Tool '{request.tool_name}' timed out after {timeout_ms}ms")
                raise
        if not isinstance(outcome, ToolOutcome):
            return ToolOutcome(success=True, result=outcome)
        return outcome

    def _record(self, correlation_id: str, result: InvocationResult) -> InvocationResult:
        entries = self._history.get(correlation_id)
        if entries is None:
            entries = self._history[correlation_id] = deque(maxlen=self.config.max_history_size)
        entries.append(result)
        span = get_current_span()
        if span is not None:
            span.set_attribute("success", result.success)
            span.set_attribute("attempt_count", result.attempt_count)
        return result

    def _log(self, level: int, msg: str, *args: Any):
        if level == logging.INFO and not self.config.enable_detailed_logging:
            level = logging.DEBUG
        logger.log(level, msg, *args)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


def _with_retries(metadata: dict[str, Any], attempt_count: int,
                  retry_reasons: list[str], retry_delays: list[int]) -> dict[str, Any]:
    metadata = {**metadata, "attempt_count": attempt_count}
    if retry_reasons:
        metadata["retry_reasons"] = list(retry_reasons)
        metadata["retry_delays_ms"] = list(retry_delays)
    return metadata
