"""Strategy handlers that turn a failed step into a healed copy.

One handler per :class:`HealingStrategyType`; types without a dedicated
handler fall back to :func:`_double_timeout`.  Handlers mutate the fresh
copy produced by :func:`apply_strategy`, never the original step.
"""

import logging
import uuid
from typing import Callable

from autoheal.orchestrator.models import ActionType, ElementLocator, LocatorStrategy, RetryConfiguration, Step
from .types import HealingStrategy, HealingStrategyType

logger = logging.getLogger(__name__)

DEFAULT_MAX_TIMEOUT_MS = 60_000

LOCATOR_TYPES: dict[str, LocatorStrategy] = {
    "text": LocatorStrategy.Text,
    "xpath": LocatorStrategy.XPath,
    "role": LocatorStrategy.Role,
    "testid": LocatorStrategy.TestId,
    "test_id": LocatorStrategy.TestId,
    "id": LocatorStrategy.Id,
    "label": LocatorStrategy.Label,
    "placeholder": LocatorStrategy.Placeholder,
}

StrategyHandler = Callable[[Step, HealingStrategy, int], None]


def healing_root_id(step: Step) -> str:
    """Identity shared by a step and every step healed from it."""
    return step.metadata.get("healing_root_id") or step.id


def _scaled(timeout_ms: int, multiplier: float, cap_ms: int) -> int:
    return min(int(timeout_ms * multiplier), cap_ms)


def _double_timeout(step: Step, strategy: HealingStrategy, max_timeout_ms: int):
    step.timeout_ms = _scaled(step.timeout_ms, 2.0, max_timeout_ms)
    if step.action is not None and step.action.timeout_ms:
        step.action.timeout_ms = _scaled(step.action.timeout_ms, 2.0, max_timeout_ms)


def _alternative_locator(step: Step, strategy: HealingStrategy, max_timeout_ms: int):
    value = strategy.parameters.get("locator_value") or strategy.parameters.get("selector")
    if step.action is None or not value:
        logger.warning("Strategy '%s' carries no locator, extending the timeout instead", strategy.name)
        _double_timeout(step, strategy, max_timeout_ms)
        return
    locator_type = str(strategy.parameters.get("locator_type", "css")).lower()
    step.action.target = ElementLocator(
        strategy=LOCATOR_TYPES.get(locator_type, LocatorStrategy.Css),
        value=str(value),
    )


def _extended_wait(step: Step, strategy: HealingStrategy, max_timeout_ms: int):
    multiplier = float(strategy.parameters.get("timeout_multiplier", 2.0))
    step.timeout_ms = _scaled(step.timeout_ms, multiplier, max_timeout_ms)
    if step.action is not None and step.action.timeout_ms:
        step.action.timeout_ms = _scaled(step.action.timeout_ms, multiplier, max_timeout_ms)


def _retry_with_delay(step: Step, strategy: HealingStrategy, max_timeout_ms: int):
    delay_ms = int(strategy.parameters.get("retry_delay_ms", 2000))
    if step.retry_config is None:
        step.retry_config = RetryConfiguration(max_retries=3, delay_ms=delay_ms)
    else:
        step.retry_config = RetryConfiguration(
            max_retries=max(step.retry_config.max_retries, 2),
            delay_ms=delay_ms,
        )


def _set_option(name: str, only_for: ActionType | None = None) -> StrategyHandler:
    def handler(step: Step, strategy: HealingStrategy, max_timeout_ms: int):
        if step.action is None:
            return
        if only_for is not None and step.action.type != only_for:
            logger.debug("Strategy '%s' does not apply to %s actions", strategy.name, step.action.type.value)
            return
        step.action.options[name] = True
    return handler


HANDLERS: dict[HealingStrategyType, StrategyHandler] = {
    HealingStrategyType.AlternativeLocator: _alternative_locator,
    HealingStrategyType.ExtendedWait: _extended_wait,
    HealingStrategyType.RetryWithDelay: _retry_with_delay,
    HealingStrategyType.ScrollToElement: _set_option("scroll_before_action"),
    HealingStrategyType.InteractionMethodChange: _set_option("use_javascript", only_for=ActionType.Click),
    HealingStrategyType.PageRefresh: _set_option("refresh_before_action"),
}


def apply_strategy(step: Step, strategy: HealingStrategy, max_timeout_ms: int = DEFAULT_MAX_TIMEOUT_MS) -> Step:
    """Return a healed copy of *step* with a new identity."""
    healed = step.model_copy(deep=True, update={"id": str(uuid.uuid4())})
    healed.reasoning = f"{step.reasoning} [Healed: {strategy.name}]"
    HANDLERS.get(strategy.strategy_type, _double_timeout)(healed, strategy, max_timeout_ms)
    healed.metadata.update({
        "healing_applied": True,
        "healing_strategy": strategy.name,
        "healing_strategy_type": strategy.strategy_type.value,
        "healing_confidence": strategy.confidence,
        "original_step_id": step.id,
        "healing_root_id": healing_root_id(step),
    })
    return healed
