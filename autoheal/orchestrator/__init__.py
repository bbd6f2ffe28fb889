"""Plan orchestration: runs ordered steps through the tool invoker.

Core components:
- PlanExecutor: executes steps and plans, owns the task lifecycle
  (pause/resume/cancel)
- StateValidationEvaluator: default evaluator for step validation rules

Collaborator contracts:
- EnvironmentStateCapability: page snapshots and screenshots
- ValidationRuleEvaluator: pass/fail checks after a step
"""

from .executor import ACTION_TOOLS, PlanExecutor, build_request
from .models import (
    ActionType,
    BrowserAction,
    ElementLocator,
    ExecutionContext,
    ExecutionPlan,
    ExecutionStatistics,
    LocatorStrategy,
    RetryConfiguration,
    Step,
    StepResult,
    TaskResult,
    TaskStatus,
    ValidationResult,
    ValidationRule,
    ValidationType,
)
from .state import ElementInfo, EnvironmentState, EnvironmentStateCapability
from .validation import StateValidationEvaluator, ValidationRuleEvaluator
