import logging
from dataclasses import replace
from datetime import datetime
from typing import Any

from autoheal.cancellation import CancellationToken
from autoheal.exceptions import OperationCancelledError, TaskAlreadyRunningError, TaskNotFoundError
from autoheal.healing import HealingEngine
from autoheal.orchestrator import (
    ExecutionContext,
    ExecutionPlan,
    ExecutionStatistics,
    PlanExecutor,
    StepResult,
    TaskResult,
    TaskStatus,
)
from autoheal.tracer import trace_task

logger = logging.getLogger(__name__)


class HealingPlanRunner:
    """Runs a plan and heals failed required steps until it completes.

    After a failed run the failing step is handed to the healing engine; the
    healed step and every later step are re-submitted as a new run of the
    same task.  The merged task result lists the latest result per step
    number, and ``metadata["healing_history"]`` records every healing round.

    :meth:`cancel` stops a run by task id at any point of the loop, including
    while a step is being healed and the executor is not tracking the task.
    """

    def __init__(self, executor: PlanExecutor, healer: HealingEngine, max_heal_rounds: int = 3):
        self.executor = executor
        self.healer = healer
        self.max_heal_rounds = max_heal_rounds
        self._runs: dict[str, CancellationToken] = {}

    def cancel(self, task_id: str):
        token = self._runs.get(task_id)
        if token is None:
            raise TaskNotFoundError(task_id)
        logger.info("Cancelling healing run of task %s", task_id)
        token.cancel(f"task {task_id} cancelled")

    def running_tasks(self) -> list[str]:
        return list(self._runs)

    @trace_task(name_from=lambda args: f"heal_{args['plan'].task_id}")
    async def run(
            self,
            plan: ExecutionPlan,
            context: ExecutionContext | None = None,
            cancellation: CancellationToken | None = None,
    ) -> TaskResult:
        if plan.task_id in self._runs:
            raise TaskAlreadyRunningError(plan.task_id)
        token = CancellationToken.linked(cancellation)
        self._runs[plan.task_id] = token
        try:
            return await self._run(plan, context or ExecutionContext.for_plan(plan), token)
        finally:
            self._runs.pop(plan.task_id, None)
            token.close()

    async def _run(self, plan: ExecutionPlan, context: ExecutionContext, cancellation: CancellationToken) -> TaskResult:
        started_at = datetime.now()
        result = await self.executor.execute_plan(plan, context, cancellation)
        results_by_number: dict[int, StepResult] = {r.step_number: r for r in result.step_results}
        screenshots = list(result.screenshots)
        history: list[dict[str, Any]] = []
        current = plan
        rounds = 0

        while result.status == TaskStatus.Failed and rounds < self.max_heal_rounds:
            failed = result.step_results[-1] if result.step_results else None
            if failed is None or failed.success:
                break
            step = next((s for s in current.steps if s.id == failed.step_id), None)
            if step is None:
                break

            try:
                healing = await self.healer.heal_step(step, failed.error or "", context, cancellation,
                                                      error_type_name=failed.error_type)
            except OperationCancelledError as e:
                logger.info("Healing of task %s cancelled: %s", plan.task_id, e)
                result = replace(result, status=TaskStatus.Cancelled, success=False, error_message=str(e))
                break

            history.append({
                "step_number": step.step_number,
                "failed_step_id": step.id,
                "error": failed.error,
                "success": healing.success,
                "strategy": healing.strategy.name if healing.strategy else None,
                "healed_step_id": healing.healed_step.id if healing.healed_step else None,
                "explanation": healing.explanation,
            })
            if not healing.success or healing.healed_step is None:
                logger.warning("Could not heal step %d: %s", step.step_number, healing.explanation)
                break

            rounds += 1
            remaining = [s for s in current.ordered_steps() if s.step_number > step.step_number]
            current = current.model_copy(update={"steps": [healing.healed_step, *remaining]})
            logger.info("Re-running task %s from step %d after healing round %d",
                        plan.task_id, step.step_number, rounds)
            result = await self.executor.execute_plan(current, context, cancellation)
            results_by_number.update({r.step_number: r for r in result.step_results})
            screenshots.extend(result.screenshots)

        step_results = [results_by_number[n] for n in sorted(results_by_number)]
        return replace(
            result,
            step_results=step_results,
            statistics=ExecutionStatistics.from_results(step_results),
            screenshots=screenshots,
            started_at=started_at,
            metadata={**result.metadata, "healing_rounds": rounds, "healing_history": history},
        )
