import logging
import re
from typing import Any, Protocol

from autoheal.cancellation import CancellationToken
from autoheal.exceptions import OperationCancelledError
from autoheal.invoker import InvocationRequest, RetryPolicy, ToolInvoker
from .models import ExecutionContext, ValidationResult, ValidationRule, ValidationType
from .state import EnvironmentStateCapability

logger = logging.getLogger(__name__)

ELEMENT_WAIT_TIMEOUT_MS = 5000


class ValidationRuleEvaluator(Protocol):
    async def evaluate(
            self,
            rule: ValidationRule,
            context: ExecutionContext,
            step_data: dict[str, Any],
            cancellation: CancellationToken | None = None,
    ) -> ValidationResult:
        ...


class StateValidationEvaluator:
    """Checks validation rules through the invoker and the state capability.

    Element checks run as single-attempt tool calls so that a missing element
    is reported quickly instead of going through the retry budget.
    """

    def __init__(self, invoker: ToolInvoker, state: EnvironmentStateCapability | None = None):
        self.invoker = invoker
        self.state = state
        self._single_attempt = RetryPolicy(max_retries=0, initial_delay_ms=0, max_delay_ms=0)

    async def evaluate(
            self,
            rule: ValidationRule,
            context: ExecutionContext,
            step_data: dict[str, Any],
            cancellation: CancellationToken | None = None,
    ) -> ValidationResult:
        try:
            match rule.type:
                case ValidationType.ElementExists:
                    return await self._element_exists(rule, context, cancellation)
                case ValidationType.ElementText:
                    return await self._element_text(rule, context, cancellation)
                case ValidationType.PageTitle:
                    return await self._page_title(rule)
                case ValidationType.UrlPattern:
                    return await self._url_pattern(rule)
                case ValidationType.DataExtracted:
                    return self._data_extracted(rule, context, step_data)
                case _:
                    return _failed(rule, f"Validation type '{rule.type.value}' is not supported")
        except OperationCancelledError:
            raise
        except Exception as e:
            logger.warning("Validation rule '%s' raised: %s", rule.name, e)
            return _failed(rule, f"Validation error: {e}")

    async def _element_exists(self, rule: ValidationRule, context: ExecutionContext,
                              cancellation: CancellationToken | None) -> ValidationResult:
        selector = rule.selector or rule.expected_value
        if not selector:
            return _failed(rule, "No selector given for element check")
        result = await self.invoker.invoke(
            InvocationRequest(
                "wait_for_element",
                {"selector": selector, "state": "attached", "timeout_ms": ELEMENT_WAIT_TIMEOUT_MS},
                correlation_id=context.session_id,
            ),
            cancellation,
            self._single_attempt,
        )
        if result.success:
            return ValidationResult(rule.name, True, actual_value="found", expected_value=selector)
        return ValidationResult(rule.name, False, actual_value="not found", expected_value=selector,
                                message=f"Element '{selector}' not found: {result.error}")

    async def _element_text(self, rule: ValidationRule, context: ExecutionContext,
                            cancellation: CancellationToken | None) -> ValidationResult:
        if not rule.selector:
            return _failed(rule, "No selector given for text check")
        result = await self.invoker.invoke(
            InvocationRequest("get_text", {"selector": rule.selector}, correlation_id=context.session_id),
            cancellation,
            self._single_attempt,
        )
        if not result.success:
            return _failed(rule, f"Could not read text of '{rule.selector}': {result.error}")
        text = "" if result.result is None else str(result.result)
        passed = bool(text) and (not rule.expected_value or rule.expected_value in text)
        return ValidationResult(rule.name, passed, actual_value=text, expected_value=rule.expected_value,
                                message=None if passed else f"Text '{text}' does not contain '{rule.expected_value}'")

    async def _page_title(self, rule: ValidationRule) -> ValidationResult:
        if self.state is None:
            return _failed(rule, "No state capability configured")
        state = await self.state.capture_state()
        expected = rule.expected_value or ""
        passed = expected.lower() in state.title.lower()
        return ValidationResult(rule.name, passed, actual_value=state.title, expected_value=expected,
                                message=None if passed else f"Title '{state.title}' does not contain '{expected}'")

    async def _url_pattern(self, rule: ValidationRule) -> ValidationResult:
        if self.state is None:
            return _failed(rule, "No state capability configured")
        state = await self.state.capture_state()
        pattern = rule.expected_value or ""
        passed = re.search(pattern, state.url) is not None
        return ValidationResult(rule.name, passed, actual_value=state.url, expected_value=pattern,
                                message=None if passed else f"URL '{state.url}' does not match '{pattern}'")

    @staticmethod
    def _data_extracted(rule: ValidationRule, context: ExecutionContext, step_data: dict[str, Any]) -> ValidationResult:
        key = rule.expected_value or "result"
        passed = key in step_data or key in context.extracted_data
        return ValidationResult(rule.name, passed, expected_value=key,
                                message=None if passed else f"No data extracted under '{key}'")


def _failed(rule: ValidationRule, message: str) -> ValidationResult:
    return ValidationResult(rule.name, False, expected_value=rule.expected_value, message=message)
