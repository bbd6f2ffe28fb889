import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field
from typing_extensions import Annotated

from autoheal.orchestrator.models import Step


class ErrorType(str, Enum):
    ElementNotFound = "element_not_found"
    Timeout = "timeout"
    ElementNotInteractable = "element_not_interactable"
    PageStructureChanged = "page_structure_changed"
    NavigationFailure = "navigation_failure"
    JavaScriptError = "javascript_error"
    NetworkError = "network_error"
    AuthenticationRequired = "authentication_required"
    Unknown = "unknown"


class ErrorSeverity(str, Enum):
    Low = "low"
    Medium = "medium"
    High = "high"
    Critical = "critical"


class HealingStrategyType(str, Enum):
    RetryWithDelay = "retry_with_delay"
    AlternativeLocator = "alternative_locator"
    ExtendedWait = "extended_wait"
    ScrollToElement = "scroll_to_element"
    PageRefresh = "page_refresh"
    AIElementDiscovery = "ai_element_discovery"
    InteractionMethodChange = "interaction_method_change"
    PopupHandling = "popup_handling"
    TaskReplanning = "task_replanning"
    SimpleFallback = "simple_fallback"
    ManualBaselineApproval = "manual_baseline_approval"
    Custom = "custom"

    @classmethod
    def parse(cls, value: Any) -> "HealingStrategyType":
        """Accept snake_case or CamelCase names; anything unknown is ``Custom``."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip()
        normalized = re.sub(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])", "_", text)
        normalized = normalized.replace("-", "_").replace(" ", "_").lower()
        try:
            return cls(normalized)
        except ValueError:
            return cls.Custom


class HealingStrategy(BaseModel):
    strategy_type: Annotated[HealingStrategyType, Field(description="Kind of repair to apply")]
    name: Annotated[str, Field(description="Short human readable label")]
    description: Annotated[str, Field(description="What the repair does and why it should help", default="")]
    confidence: Annotated[float, Field(description="Estimated chance of success", default=0.5, ge=0.0, le=1.0)]
    priority: Annotated[int, Field(description="Higher wins ties between strategies", default=5)]
    parameters: Annotated[dict[str, Any], Field(
        description="Strategy specific data, e.g. locator_type/locator_value, timeout_multiplier, retry_delay_ms",
        default_factory=dict,
    )]


@dataclass(frozen=True)
class ErrorAnalysis:
    error_type: ErrorType
    is_healable: bool
    root_cause: str
    severity: ErrorSeverity
    error_message: str = ""
    suggested_strategies: list[HealingStrategy] = field(default_factory=list)


@dataclass(frozen=True)
class HealingResult:
    success: bool
    explanation: str
    healed_step: Step | None = None
    strategy: HealingStrategy | None = None
    confidence: float = 0.0
    analysis: ErrorAnalysis | None = None

    @classmethod
    def failed(cls, explanation: str, analysis: ErrorAnalysis | None = None) -> "HealingResult":
        return cls(success=False, explanation=explanation, analysis=analysis)
