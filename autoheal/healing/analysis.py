"""Local, deterministic error classification.

Classification is a text-pattern match over the error message and type, in
a fixed order; the first matching category wins.
"""

import asyncio
from typing import Any

from autoheal.exceptions import StepTimeoutError
from .types import ErrorAnalysis, ErrorSeverity, ErrorType, HealingStrategy, HealingStrategyType

ErrorInput = BaseException | str

CLASSIFICATION_PATTERNS: list[tuple[ErrorType, tuple[str, ...]]] = [
    (ErrorType.ElementNotFound, ("not found", "could not find")),
    (ErrorType.Timeout, ("timeout", "timed out")),
    (ErrorType.ElementNotInteractable, ("not interactable", "not visible", "not attached")),
    (ErrorType.NavigationFailure, ("navigation", "navigate")),
    (ErrorType.JavaScriptError, ("javascript", "script")),
    (ErrorType.NetworkError, ("network", "connection")),
    (ErrorType.AuthenticationRequired, ("auth", "login", "unauthorized")),
    (ErrorType.PageStructureChanged, ("changed", "stale")),
]

# healable, severity, root cause
ERROR_PROFILES: dict[ErrorType, tuple[bool, ErrorSeverity, str]] = {
    ErrorType.ElementNotFound: (True, ErrorSeverity.Medium, "Element could not be found with the specified selector"),
    ErrorType.Timeout: (True, ErrorSeverity.Medium, "Operation timed out waiting for element or condition"),
    ErrorType.ElementNotInteractable: (True, ErrorSeverity.Low, "Element exists but is not visible or interactable"),
    ErrorType.PageStructureChanged: (True, ErrorSeverity.High, "Page structure changed, selectors may be stale"),
    ErrorType.NavigationFailure: (False, ErrorSeverity.High, "Navigation to URL failed"),
    ErrorType.JavaScriptError: (False, ErrorSeverity.Medium, "JavaScript execution error"),
    ErrorType.NetworkError: (False, ErrorSeverity.High, "Network connection error"),
    ErrorType.AuthenticationRequired: (False, ErrorSeverity.Critical, "Authentication or authorization required"),
    ErrorType.Unknown: (False, ErrorSeverity.Medium, ""),
}

TIMEOUT_ERRORS = (TimeoutError, asyncio.TimeoutError, StepTimeoutError)


def _strategy(type_: HealingStrategyType, name: str, description: str, confidence: float, priority: int,
              **parameters: Any) -> HealingStrategy:
    return HealingStrategy(strategy_type=type_, name=name, description=description,
                           confidence=confidence, priority=priority, parameters=parameters)


def suggest_strategies(error_type: ErrorType) -> list[HealingStrategy]:
    """Heuristic strategies for an error category, best first."""
    match error_type:
        case ErrorType.ElementNotFound:
            return [
                _strategy(HealingStrategyType.AlternativeLocator, "Try Alternative Selector",
                          "Locate the element with a different selector strategy", 0.8, 9),
                _strategy(HealingStrategyType.ExtendedWait, "Wait Longer",
                          "Give the element more time to appear", 0.7, 7, timeout_multiplier=2.0),
            ]
        case ErrorType.Timeout:
            return [
                _strategy(HealingStrategyType.ExtendedWait, "Increase Timeout",
                          "Double the step timeout", 0.75, 8, timeout_multiplier=2.0),
            ]
        case ErrorType.ElementNotInteractable:
            return [
                _strategy(HealingStrategyType.ScrollToElement, "Scroll to Element",
                          "Scroll the element into view before interacting", 0.85, 9),
                _strategy(HealingStrategyType.InteractionMethodChange, "Use JavaScript Click",
                          "Dispatch the click through JavaScript", 0.75, 7),
            ]
        case ErrorType.PageStructureChanged:
            return [
                _strategy(HealingStrategyType.PageRefresh, "Refresh Page",
                          "Reload the page before retrying the action", 0.6, 5),
            ]
        case _:
            return [
                _strategy(HealingStrategyType.RetryWithDelay, "Retry with Delay",
                          "Retry the step after a short delay", 0.5, 4, retry_delay_ms=2000),
            ]


def classify_error(error: ErrorInput, error_type_name: str | None = None) -> ErrorType:
    message = str(error).lower()
    type_name = (error_type_name or (type(error).__name__ if isinstance(error, BaseException) else "")).lower()
    is_timeout = isinstance(error, TIMEOUT_ERRORS) or "timeout" in type_name
    for category, patterns in CLASSIFICATION_PATTERNS:
        if category == ErrorType.Timeout and is_timeout:
            return category
        if any(pattern in message for pattern in patterns):
            return category
    return ErrorType.Unknown


def analyze_error(error: ErrorInput, error_type_name: str | None = None) -> ErrorAnalysis:
    """Classify *error* and describe how it could be repaired; no side effects."""
    category = classify_error(error, error_type_name)
    healable, severity, root_cause = ERROR_PROFILES[category]
    message = str(error)
    if category == ErrorType.Unknown:
        type_name = error_type_name or (type(error).__name__ if isinstance(error, BaseException) else "Error")
        root_cause = f"{type_name}: {message}"
    return ErrorAnalysis(
        error_type=category,
        is_healable=healable,
        root_cause=root_cause,
        severity=severity,
        error_message=message,
        suggested_strategies=suggest_strategies(category),
    )
