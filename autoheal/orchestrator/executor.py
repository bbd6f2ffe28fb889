import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from autoheal.cancellation import CancellationToken
from autoheal.exceptions import (
    InvalidTaskStateError,
    OperationCancelledError,
    StepTimeoutError,
    StepValidationError,
    TaskAlreadyRunningError,
    TaskNotFoundError,
)
from autoheal.invoker import InvocationRequest, InvocationResult, RetryPolicy, ToolInvoker
from autoheal.tracer import get_current_span, trace_step, trace_task
from .models import (
    ActionType,
    ExecutionContext,
    ExecutionPlan,
    ExecutionStatistics,
    Step,
    StepResult,
    TaskResult,
    TaskStatus,
    ValidationResult,
)
from .state import EnvironmentStateCapability
from .validation import StateValidationEvaluator, ValidationRuleEvaluator

logger = logging.getLogger(__name__)

ACTION_TOOLS: dict[ActionType, str] = {
    ActionType.Navigate: "navigate",
    ActionType.Click: "click",
    ActionType.Type: "type",
    ActionType.Fill: "type",
    ActionType.Select: "select_option",
    ActionType.Check: "check",
    ActionType.Uncheck: "uncheck",
    ActionType.Hover: "hover",
    ActionType.Press: "press_key",
    ActionType.Scroll: "scroll",
    ActionType.WaitForElement: "wait_for_element",
    ActionType.Wait: "wait",
    ActionType.Screenshot: "take_screenshot",
    ActionType.ExtractText: "get_text",
    ActionType.Verify: "verify_element_exists",
    ActionType.ExecuteScript: "execute_script",
}

# Parameter receiving ``action.value``; anything else uses "value".
VALUE_PARAMETERS: dict[ActionType, str] = {
    ActionType.Navigate: "url",
    ActionType.Type: "text",
    ActionType.Fill: "text",
    ActionType.ExecuteScript: "script",
    ActionType.Press: "key",
}

# Step metadata copied onto its results so statistics can see healing.
HEALING_METADATA_KEYS = ("healing_applied", "healing_strategy", "healing_confidence", "original_step_id")


def build_request(step: Step, context: ExecutionContext) -> InvocationRequest:
    """Translate the step's action into an invocation request.

    Raises:
        StepValidationError: If the step has no action.
    """
    action = step.action
    if action is None:
        raise StepValidationError(step.step_number, "step has no action")
    parameters: dict[str, Any] = dict(action.options)
    if action.target is not None:
        parameters["selector"] = action.target.to_selector()
    if action.value is not None:
        parameters[VALUE_PARAMETERS.get(action.type, "value")] = action.value
    parameters["timeout_ms"] = step.effective_timeout_ms
    if action.wait_for_navigation:
        parameters["wait_for_navigation"] = True
    return InvocationRequest(
        tool_name=ACTION_TOOLS[action.type],
        parameters=parameters,
        correlation_id=context.session_id,
        reasoning=step.reasoning or None,
    )


@dataclass
class _TaskState:
    cancellation: CancellationToken
    status: TaskStatus = TaskStatus.Executing
    resumed: asyncio.Event = field(default_factory=asyncio.Event)

    def __post_init__(self):
        self.resumed.set()


class PlanExecutor:
    """Runs execution plans step by step and tracks their lifecycle.

    Lifecycle state of each running task lives in ``self._tasks`` and is only
    mutated here.  ``pause``/``resume``/``cancel`` may be called from any
    coroutine on the same event loop while ``execute_plan`` is running; pause
    and cancellation are observed at step boundaries.
    """

    def __init__(
            self,
            invoker: ToolInvoker,
            state: EnvironmentStateCapability | None = None,
            validator: ValidationRuleEvaluator | None = None,
    ):
        self.invoker = invoker
        self.state = state
        self.validator = validator or StateValidationEvaluator(invoker, state)
        self._tasks: dict[str, _TaskState] = {}

    # -- Lifecycle control --------------------------------------------------

    def pause(self, task_id: str):
        state = self._tasks.get(task_id)
        if state is None:
            raise InvalidTaskStateError(task_id, "pause", "not running")
        if state.status != TaskStatus.Executing:
            raise InvalidTaskStateError(task_id, "pause", state.status.value)
        state.status = TaskStatus.Paused
        state.resumed.clear()
        logger.info("Task %s paused", task_id)

    def resume(self, task_id: str):
        state = self._tasks.get(task_id)
        if state is None:
            raise InvalidTaskStateError(task_id, "resume", "not running")
        if state.status != TaskStatus.Paused:
            raise InvalidTaskStateError(task_id, "resume", state.status.value)
        state.status = TaskStatus.Executing
        state.resumed.set()
        logger.info("Task %s resumed", task_id)

    def cancel(self, task_id: str):
        state = self._tasks.get(task_id)
        if state is None:
            raise TaskNotFoundError(task_id)
        if state.status == TaskStatus.Cancelled:
            return
        logger.info("Cancelling task %s", task_id)
        state.status = TaskStatus.Cancelled
        state.cancellation.cancel(f"task {task_id} cancelled")
        state.resumed.set()

    def status(self, task_id: str) -> TaskStatus | None:
        state = self._tasks.get(task_id)
        return state.status if state else None

    def running_tasks(self) -> list[str]:
        return list(self._tasks)

    # -- Execution ----------------------------------------------------------

    @trace_step(name_from=lambda args: f"step_{args['step'].step_number}")
    async def execute_step(
            self,
            step: Step,
            context: ExecutionContext,
            cancellation: CancellationToken | None = None,
    ) -> StepResult:
        """Run a single step and build its result.

        Execution and validation failures are returned as a failed
        :class:`StepResult`; a step timeout is a failure as well.

        Raises:
            OperationCancelledError: If *cancellation* trips while the step runs.
        """
        started = time.perf_counter()
        try:
            request = build_request(step, context)
        except StepValidationError as e:
            logger.error("%s", e)
            return self._result(step, started, error=str(e), error_type=type(e).__name__,
                                screenshot=await self._capture_screenshot(step.step_number))

        timeout_ms = step.effective_timeout_ms
        logger.info("Executing step %d: %s (%s)", step.step_number, step.action.type.value, request.tool_name)
        invocation: InvocationResult | None = None
        with CancellationToken.linked(cancellation, timeout_ms / 1000) as step_token:
            try:
                invocation = await self.invoker.invoke(request, step_token, self._policy_for(step))
            except OperationCancelledError:
                if not step_token.timed_out:
                    raise
                timeout_error = StepTimeoutError(step.step_number, timeout_ms)
                logger.warning("%s", timeout_error)
                error, error_type = str(timeout_error), type(timeout_error).__name__
            else:
                error, error_type = (None, None) if invocation.success else (invocation.error, invocation.error_type)

        extracted: dict[str, Any] = {}
        if invocation is not None and invocation.success and invocation.result is not None:
            extracted["result"] = invocation.result
            context.extracted_data[step.id] = invocation.result

        validation_results = await self._validate(step, context, extracted, cancellation)
        failed_rules = [v for v, rule in zip(validation_results, step.validation_rules)
                        if not v.passed and rule.is_required]
        if error is None and failed_rules:
            error = "Validation failed: " + "; ".join(f"{v.rule_name}: {v.message}" for v in failed_rules)
            error_type = "ValidationFailure"

        screenshot = None
        if error is not None:
            logger.warning("Step %d failed: %s", step.step_number, error)
            screenshot = await self._capture_screenshot(step.step_number)

        return self._result(
            step, started,
            error=error,
            error_type=error_type,
            attempt_count=invocation.attempt_count if invocation else 1,
            validation_results=tuple(validation_results),
            screenshot=screenshot,
            extracted_data=extracted,
            metadata=self._step_metadata(step, request, invocation),
        )

    @trace_task(name_from=lambda args: args["plan"].task_id)
    async def execute_plan(
            self,
            plan: ExecutionPlan,
            context: ExecutionContext | None = None,
            cancellation: CancellationToken | None = None,
    ) -> TaskResult:
        """Run every step of *plan* in ascending step number.

        A failed required step stops the run with status ``Failed``; a failed
        optional step is logged and skipped.  Cancellation is reported through
        a ``Cancelled`` task result rather than raised.

        Raises:
            TaskAlreadyRunningError: If a task with the same id is running.
        """
        task_id = plan.task_id
        if task_id in self._tasks:
            raise TaskAlreadyRunningError(task_id)
        context = context or ExecutionContext.for_plan(plan)
        state = _TaskState(cancellation=CancellationToken.linked(cancellation))
        self._tasks[task_id] = state

        result = TaskResult(task_id=task_id, success=False, status=TaskStatus.Executing, metadata={
            "plan_id": plan.id,
            "session_id": plan.session_id,
            "estimated_duration_ms": plan.estimated_duration_ms,
            "plan_confidence": plan.confidence,
        })
        steps = plan.ordered_steps()
        logger.info("Starting task %s with %d step(s)", task_id, len(steps))
        try:
            for step in steps:
                await self._checkpoint(task_id, state)
                step_result = await self.execute_step(step, context, state.cancellation)
                result.step_results.append(step_result)
                context.previous_steps.append(step_result)
                if step_result.success:
                    continue
                if step.is_optional:
                    logger.warning("Optional step %d failed, continuing: %s", step.step_number, step_result.error)
                    continue
                result.error_message = f"Step {step.step_number} failed: {step_result.error}"
                logger.error("Task %s stopped. %s", task_id, result.error_message)
                break
            state.cancellation.raise_if_cancelled()
            state.status = TaskStatus.Failed if result.error_message else TaskStatus.Completed
        except OperationCancelledError as e:
            logger.info("Task %s cancelled: %s", task_id, e)
            state.status = TaskStatus.Cancelled
            result.error_message = str(e)
        except Exception as e:
            logger.exception("Task %s failed unexpectedly", task_id)
            state.status = TaskStatus.Failed
            result.error_message = f"Unexpected error: {e}"
        finally:
            self._tasks.pop(task_id, None)
            state.cancellation.close()

        result.status = state.status
        result.success = state.status == TaskStatus.Completed
        result.statistics = ExecutionStatistics.from_results(result.step_results)
        result.screenshots = [r.screenshot for r in result.step_results if r.screenshot]
        if state.status != TaskStatus.Cancelled:
            final_screenshot = await self._capture_screenshot("final")
            if final_screenshot:
                result.screenshots.append(final_screenshot)
        result.completed_at = datetime.now()

        span = get_current_span()
        if span is not None:
            span.set_attribute("status", result.status.value)
            span.set_attribute("steps", result.statistics.total_steps)
        logger.info("Task %s finished with status %s (%d/%d steps succeeded)", task_id, result.status.value,
                    result.statistics.successful_steps, result.statistics.total_steps)
        return result

    # -- Helpers ------------------------------------------------------------

    async def _checkpoint(self, task_id: str, state: _TaskState):
        state.cancellation.raise_if_cancelled()
        while state.status == TaskStatus.Paused:
            logger.info("Task %s waiting for resume", task_id)
            await state.cancellation.run(state.resumed.wait())
        state.cancellation.raise_if_cancelled()

    def _policy_for(self, step: Step) -> RetryPolicy | None:
        if step.retry_config is None:
            return None
        return self.invoker.default_policy.with_overrides(
            max_retries=step.retry_config.max_retries,
            initial_delay_ms=step.retry_config.delay_ms,
        )

    async def _validate(self, step: Step, context: ExecutionContext, extracted: dict[str, Any],
                        cancellation: CancellationToken | None) -> list[ValidationResult]:
        results = []
        for rule in step.validation_rules:
            outcome = await self.validator.evaluate(rule, context, extracted, cancellation)
            if not outcome.passed:
                logger.info("Validation '%s' of step %d failed: %s", rule.name, step.step_number, outcome.message)
            results.append(outcome)
        return results

    async def _capture_screenshot(self, label: int | str) -> str | None:
        """Best-effort evidence capture; failures are logged and yield ``None``."""
        if self.state is None:
            return None
        try:
            return await self.state.capture_screenshot()
        except Exception as e:
            logger.warning("Failed to capture screenshot (%s): %s", label, e)
            return None

    @staticmethod
    def _step_metadata(step: Step, request: InvocationRequest, invocation: InvocationResult | None) -> dict[str, Any]:
        metadata: dict[str, Any] = {"tool_name": request.tool_name, "correlation_id": request.correlation_id}
        metadata.update({k: step.metadata[k] for k in HEALING_METADATA_KEYS if k in step.metadata})
        wait_time_ms = 0
        if invocation is not None:
            wait_time_ms += sum(invocation.metadata.get("retry_delays_ms", ()))
            for key in ("retry_reasons", "fallback_used", "primary_error"):
                if key in invocation.metadata:
                    metadata[key] = invocation.metadata[key]
        if step.action is not None and step.action.type == ActionType.Wait and step.action.value:
            try:
                wait_time_ms += int(step.action.value)
            except ValueError:
                logger.debug("Wait step %d has a non-numeric duration '%s'", step.step_number, step.action.value)
        if wait_time_ms:
            metadata["wait_time_ms"] = wait_time_ms
        return metadata

    @staticmethod
    def _result(step: Step, started: float, error: str | None = None, error_type: str | None = None,
                **fields: Any) -> StepResult:
        return StepResult(
            step_id=step.id,
            step_number=step.step_number,
            success=error is None,
            action_type=step.action.type if step.action else None,
            duration_ms=(time.perf_counter() - started) * 1000,
            error=error,
            error_type=error_type,
            **fields,
        )
