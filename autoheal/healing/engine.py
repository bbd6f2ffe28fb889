import logging
from typing import Sequence

from autoheal.cancellation import CancellationToken, run
from autoheal.config.autoheal import HealingConfig
from autoheal.exceptions import HealingError, OperationCancelledError
from autoheal.orchestrator.models import ExecutionContext, Step, StepResult
from autoheal.orchestrator.state import EnvironmentState, EnvironmentStateCapability
from autoheal.tracer import get_current_span, trace_healing
from .advisor import DiagnosticAdvisor, DiagnosticRequest, parse_strategy
from .analysis import ErrorInput, analyze_error, classify_error, suggest_strategies
from .strategies import apply_strategy, healing_root_id
from .types import ErrorAnalysis, HealingResult, HealingStrategy

logger = logging.getLogger(__name__)


class HealingEngine:
    """Repairs failed steps.

    Each call to :meth:`heal_step` consumes one attempt of the step's healing
    budget.  Steps healed from one another share a budget, so a chain of
    healed replacements can not loop forever.

    Without a :class:`DiagnosticAdvisor` the best locally suggested strategy
    is applied.
    """

    def __init__(
            self,
            advisor: DiagnosticAdvisor | None = None,
            state: EnvironmentStateCapability | None = None,
            config: HealingConfig | None = None,
    ):
        self.advisor = advisor
        self.state = state
        self.config = config or HealingConfig()
        self._attempts: dict[str, int] = {}

    @property
    def max_attempts(self) -> int:
        return self.config.max_healing_attempts

    def attempts(self, step: Step) -> int:
        return self._attempts.get(healing_root_id(step), 0)

    def reset_attempts(self, step: Step | None = None):
        if step is None:
            self._attempts.clear()
        else:
            self._attempts.pop(healing_root_id(step), None)

    def analyze_error(self, error: ErrorInput, error_type_name: str | None = None) -> ErrorAnalysis:
        return analyze_error(error, error_type_name)

    @trace_healing(name_from=lambda args: f"heal_step_{args['step'].step_number}")
    async def heal_step(
            self,
            step: Step,
            error: ErrorInput,
            context: ExecutionContext | None = None,
            cancellation: CancellationToken | None = None,
            error_type_name: str | None = None,
    ) -> HealingResult:
        """Produce a replacement for a failed step.

        Failures are reported through ``HealingResult.success``; only
        cancellation is raised.

        Raises:
            OperationCancelledError: If *cancellation* trips while waiting on
                the state capability or the diagnostic advisor.
        """
        key = healing_root_id(step)
        attempts = self._attempts.get(key, 0)
        if attempts >= self.max_attempts:
            logger.warning("Step %d reached the healing limit of %d", step.step_number, self.max_attempts)
            return HealingResult.failed(f"Maximum healing attempts ({self.max_attempts}) exceeded for this step")
        self._attempts[key] = attempts + 1

        try:
            analysis = analyze_error(error, error_type_name)
            logger.info("Step %d failure classified as %s (healable: %s)",
                        step.step_number, analysis.error_type.value, analysis.is_healable)
            if not analysis.is_healable:
                return HealingResult.failed(f"Error is not healable: {analysis.root_cause}", analysis)

            strategy = await self._choose_strategy(step, error, analysis, context, cancellation)
            healed = apply_strategy(step, strategy, self.config.max_timeout_ms)
        except OperationCancelledError:
            raise
        except HealingError as e:
            logger.warning("Healing of step %d failed: %s", step.step_number, e)
            return HealingResult.failed(f"Healing failed: {e}")
        except Exception as e:
            logger.exception("Unexpected error while healing step %d", step.step_number)
            return HealingResult.failed(f"Healing failed: {e}")

        span = get_current_span()
        if span is not None:
            span.set_attribute("strategy", strategy.name)
            span.set_attribute("confidence", strategy.confidence)
        logger.info("Healed step %d with '%s' (confidence %.2f)", step.step_number, strategy.name, strategy.confidence)
        return HealingResult(
            success=True,
            explanation=strategy.description,
            healed_step=healed,
            strategy=strategy,
            confidence=strategy.confidence,
            analysis=analysis,
        )

    def suggest_alternatives(self, failed_attempts: Sequence[StepResult]) -> list[HealingStrategy]:
        """Local strategies for every distinct failure category, best first."""
        seen = set()
        strategies: list[HealingStrategy] = []
        for result in failed_attempts:
            if result.success or not result.error:
                continue
            category = classify_error(result.error, result.error_type)
            if category in seen:
                continue
            seen.add(category)
            strategies.extend(suggest_strategies(category))
        return sorted(strategies, key=lambda s: (s.priority, s.confidence), reverse=True)

    async def _choose_strategy(
            self,
            step: Step,
            error: ErrorInput,
            analysis: ErrorAnalysis,
            context: ExecutionContext | None,
            cancellation: CancellationToken | None,
    ) -> HealingStrategy:
        if self.advisor is None:
            return analysis.suggested_strategies[0]
        request = DiagnosticRequest(
            step=step,
            error=str(error),
            analysis=analysis,
            state=await self._capture_state(cancellation),
            recent_steps=context.recent_steps(3) if context else [],
            goal=context.goal if context else "",
        )
        try:
            raw = await run(self.advisor.advise(request), cancellation)
        except OperationCancelledError:
            raise
        except Exception as e:
            raise HealingError(f"diagnostic advisor error: {e}") from e
        return parse_strategy(raw)

    async def _capture_state(self, cancellation: CancellationToken | None) -> EnvironmentState | None:
        """Best-effort snapshot; failures are logged and yield ``None``."""
        if self.state is None:
            return None
        try:
            return await run(self.state.capture_state(), cancellation)
        except OperationCancelledError:
            raise
        except Exception as e:
            logger.warning("Could not capture environment state for healing: %s", e)
            return None
