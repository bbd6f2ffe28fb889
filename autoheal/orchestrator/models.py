"""Plan, step and result models of the plan orchestrator.

Plan-side models are pydantic so that plans can be loaded from YAML or JSON
produced by an external planner.  Results are immutable dataclasses built
by the orchestrator.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from typing_extensions import Annotated


def _new_id() -> str:
    return str(uuid.uuid4())


class ActionType(str, Enum):
    Navigate = "navigate"
    Click = "click"
    Type = "type"
    Fill = "fill"
    Select = "select"
    Check = "check"
    Uncheck = "uncheck"
    Hover = "hover"
    WaitForElement = "wait_for_element"
    Wait = "wait"
    Screenshot = "screenshot"
    ExecuteScript = "execute_script"
    Scroll = "scroll"
    Press = "press"
    ExtractText = "extract_text"
    Verify = "verify"


class LocatorStrategy(str, Enum):
    Css = "css"
    XPath = "xpath"
    Text = "text"
    Id = "id"
    Role = "role"
    Label = "label"
    Placeholder = "placeholder"
    TestId = "testid"
    Title = "title"
    AltText = "alt_text"


class ValidationType(str, Enum):
    UrlPattern = "url_pattern"
    ElementExists = "element_exists"
    ElementText = "element_text"
    PageTitle = "page_title"
    DataExtracted = "data_extracted"
    Custom = "custom"


class TaskStatus(str, Enum):
    Pending = "pending"
    Planning = "planning"
    Executing = "executing"
    Paused = "paused"
    Completed = "completed"
    Failed = "failed"
    Cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.Completed, TaskStatus.Failed, TaskStatus.Cancelled)


class ElementLocator(BaseModel):
    strategy: Annotated[LocatorStrategy, Field(description="How the value locates the element", default=LocatorStrategy.Css)]
    value: Annotated[str, Field(description="Selector, text or role to match")]

    def to_selector(self) -> str:
        """Render the locator as a single selector string understood by the driver."""
        if self.strategy == LocatorStrategy.Css:
            return self.value
        return f"{self.strategy.value}={self.value}"


class BrowserAction(BaseModel):
    type: Annotated[ActionType, Field(description="Operation to perform")]
    target: Annotated[ElementLocator | None, Field(description="Element the action applies to", default=None)]
    value: Annotated[str | None, Field(description="Text, URL, key or option value", default=None)]
    options: Annotated[dict[str, Any], Field(description="Driver specific action flags", default_factory=dict)]
    timeout_ms: Annotated[int | None, Field(description="Overrides the step timeout when set", default=None, gt=0)]
    wait_for_navigation: Annotated[bool, Field(description="Await navigation completion after the action", default=False)]
    description: Annotated[str | None, Field(default=None)]


class RetryConfiguration(BaseModel):
    max_retries: Annotated[int, Field(description="Retries after the first failed attempt", default=3, ge=0, le=10)]
    delay_ms: Annotated[int, Field(description="Delay before the first retry", default=1000, ge=0)]


class ValidationRule(BaseModel):
    name: Annotated[str, Field(description="Rule label reported in the results")]
    type: Annotated[ValidationType, Field(description="What the rule checks")]
    expected_value: Annotated[str | None, Field(
        description="Selector, expected text, title fragment or data key depending on the type",
        default=None,
    )]
    selector: Annotated[str | None, Field(description="Element selector for text checks", default=None)]
    is_required: Annotated[bool, Field(description="Failing required rules fail the step", default=True)]


class Step(BaseModel):
    id: Annotated[str, Field(default_factory=_new_id)]
    step_number: Annotated[int, Field(description="Position in the plan, unique and 1-based", ge=1)]
    action: Annotated[BrowserAction | None, Field(default=None)]
    reasoning: Annotated[str, Field(description="Why the planner chose this step", default="")]
    expected_outcome: Annotated[str, Field(default="")]
    dependencies: Annotated[list[str], Field(description="Ids of steps this one relies on", default_factory=list)]
    timeout_ms: Annotated[int, Field(description="Step timeout in milliseconds", default=30_000, gt=0)]
    is_optional: Annotated[bool, Field(description="Failures of optional steps do not stop the plan", default=False)]
    retry_config: Annotated[RetryConfiguration | None, Field(default=None)]
    validation_rules: Annotated[list[ValidationRule], Field(default_factory=list)]
    metadata: Annotated[dict[str, Any], Field(default_factory=dict)]

    @property
    def effective_timeout_ms(self) -> int:
        if self.action is not None and self.action.timeout_ms:
            return self.action.timeout_ms
        return self.timeout_ms


class ExecutionPlan(BaseModel):
    id: Annotated[str, Field(default_factory=_new_id)]
    task_id: Annotated[str, Field(default_factory=_new_id)]
    session_id: Annotated[str, Field(default_factory=_new_id)]
    goal: Annotated[str, Field(default="")]
    steps: Annotated[list[Step], Field(default_factory=list)]
    estimated_duration_ms: Annotated[int | None, Field(default=None)]
    confidence: Annotated[float | None, Field(default=None, ge=0.0, le=1.0)]

    @field_validator('steps')
    @classmethod
    def unique_step_numbers(cls, steps: list[Step]) -> list[Step]:
        seen: set[int] = set()
        for step in steps:
            if step.step_number in seen:
                raise ValueError(f"Duplicate step number {step.step_number}")
            seen.add(step.step_number)
        return steps

    def ordered_steps(self) -> list[Step]:
        return sorted(self.steps, key=lambda s: s.step_number)


@dataclass(frozen=True)
class ValidationResult:
    rule_name: str
    passed: bool
    actual_value: str | None = None
    expected_value: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class StepResult:
    step_id: str
    step_number: int
    success: bool
    action_type: ActionType | None = None
    duration_ms: float = 0.0
    attempt_count: int = 1
    error: str | None = None
    error_type: str | None = None
    validation_results: tuple[ValidationResult, ...] = ()
    screenshot: str | None = None
    extracted_data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def retry_attempts(self) -> int:
        return max(self.attempt_count - 1, 0)


@dataclass
class ExecutionContext:
    """Mutable run context shared by the steps of one plan run."""
    task_id: str
    session_id: str
    goal: str = ""
    previous_steps: list[StepResult] = field(default_factory=list)
    extracted_data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_plan(cls, plan: ExecutionPlan) -> "ExecutionContext":
        return cls(task_id=plan.task_id, session_id=plan.session_id, goal=plan.goal)

    def recent_steps(self, count: int = 3) -> list[StepResult]:
        return self.previous_steps[-count:]


@dataclass(frozen=True)
class ExecutionStatistics:
    total_steps: int = 0
    successful_steps: int = 0
    failed_steps: int = 0
    retried_steps: int = 0
    healed_steps: int = 0
    total_retries: int = 0
    total_wait_time_ms: float = 0.0
    average_step_duration_ms: float = 0.0
    success_rate: float = 0.0

    @classmethod
    def from_results(cls, results: list[StepResult]) -> "ExecutionStatistics":
        total = len(results)
        if total == 0:
            return cls()
        successful = sum(1 for r in results if r.success)
        return cls(
            total_steps=total,
            successful_steps=successful,
            failed_steps=total - successful,
            retried_steps=sum(1 for r in results if r.retry_attempts > 0),
            healed_steps=sum(1 for r in results if r.metadata.get("healing_applied")),
            total_retries=sum(r.retry_attempts for r in results),
            total_wait_time_ms=float(sum(r.metadata.get("wait_time_ms", 0) for r in results)),
            average_step_duration_ms=sum(r.duration_ms for r in results) / total,
            success_rate=successful / total,
        )


@dataclass
class TaskResult:
    task_id: str
    success: bool
    status: TaskStatus
    step_results: list[StepResult] = field(default_factory=list)
    statistics: ExecutionStatistics = field(default_factory=ExecutionStatistics)
    screenshots: list[str] = field(default_factory=list)
    error_message: str | None = None
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def duration_ms(self) -> float | None:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds() * 1000
