"""Tests for the heal-and-resubmit plan runner."""

import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest

from autoheal.cancellation import CancellationToken
from autoheal.config.autoheal import HealingConfig
from autoheal.exceptions import TaskNotFoundError
from autoheal.healing import HealingEngine, HealingResult
from autoheal.invoker import ToolInvoker, ToolOutcome
from autoheal.orchestrator import (
    BrowserAction,
    ElementLocator,
    ExecutionPlan,
    PlanExecutor,
    RetryConfiguration,
    Step,
    StepResult,
    TaskResult,
    TaskStatus,
)
from autoheal.runner import HealingPlanRunner


def make_plan() -> ExecutionPlan:
    steps = [
        Step(step_number=n,
             action=BrowserAction(type="click", target=ElementLocator(value=f"#s{n}")),
             retry_config=RetryConfiguration(max_retries=0, delay_ms=0))
        for n in (1, 2, 3)
    ]
    return ExecutionPlan(task_id="task-heal", goal="Submit the form", steps=steps)


def make_runner(capability, healer: HealingEngine | None = None, max_heal_rounds: int = 3) -> HealingPlanRunner:
    executor = PlanExecutor(ToolInvoker(capability))
    return HealingPlanRunner(executor, healer or HealingEngine(), max_heal_rounds=max_heal_rounds)


def not_found() -> ToolOutcome:
    return ToolOutcome(success=False, error="Element not found: #s2")


class TestHealingPlanRunner:
    @pytest.mark.asyncio
    async def test_heals_and_resumes(self, capability):
        capability.script("#s2", not_found())
        result = await make_runner(capability).run(make_plan())

        assert result.success
        assert result.status == TaskStatus.Completed
        assert [r.step_number for r in result.step_results] == [1, 2, 3]
        assert capability.selectors_called == ["#s1", "#s2", "#s2", "#s3"]
        assert result.step_results[1].metadata["healing_applied"] is True
        assert result.statistics.healed_steps == 1
        assert result.statistics.total_steps == 3
        assert result.metadata["healing_rounds"] == 1
        history = result.metadata["healing_history"]
        assert len(history) == 1
        assert history[0]["step_number"] == 2
        assert history[0]["success"]
        assert history[0]["strategy"] == "Try Alternative Selector"

    @pytest.mark.asyncio
    async def test_success_without_failures_skips_healing(self, capability):
        healer = HealingEngine()
        result = await make_runner(capability, healer).run(make_plan())

        assert result.success
        assert result.metadata["healing_rounds"] == 0
        assert result.metadata["healing_history"] == []

    @pytest.mark.asyncio
    async def test_unhealable_failure(self, capability):
        capability.script("#s2", ToolOutcome(success=False, error="Network connection lost"))
        result = await make_runner(capability).run(make_plan())

        assert result.status == TaskStatus.Failed
        assert [r.step_number for r in result.step_results] == [1, 2]
        assert result.metadata["healing_rounds"] == 0
        assert not result.metadata["healing_history"][0]["success"]

    @pytest.mark.asyncio
    async def test_round_limit(self, capability):
        capability.script("#s2", *[not_found() for _ in range(5)])
        result = await make_runner(capability, max_heal_rounds=2).run(make_plan())

        assert result.status == TaskStatus.Failed
        assert result.metadata["healing_rounds"] == 2
        assert capability.selectors_called.count("#s2") == 3
        assert "#s3" not in capability.selectors_called
        assert result.step_results[-1].metadata["healing_applied"] is True

    @pytest.mark.asyncio
    async def test_healing_ceiling_stops_rounds(self, capability):
        capability.script("#s2", *[not_found() for _ in range(5)])
        healer = HealingEngine(config=HealingConfig(max_healing_attempts=2))
        result = await make_runner(capability, healer, max_heal_rounds=5).run(make_plan())

        history = result.metadata["healing_history"]
        assert result.status == TaskStatus.Failed
        assert [h["success"] for h in history] == [True, True, False]
        assert history[-1]["explanation"] == "Maximum healing attempts (2) exceeded for this step"

    @pytest.mark.asyncio
    async def test_cancel_during_healing(self, capability):
        capability.script("#s2", not_found())
        advised = asyncio.Event()

        async def slow_advice(request):
            advised.set()
            await asyncio.sleep(10)

        advisor = MagicMock()
        advisor.advise = slow_advice
        token = CancellationToken()
        runner = make_runner(capability, HealingEngine(advisor=advisor))

        task = asyncio.create_task(runner.run(make_plan(), cancellation=token))
        await asyncio.wait_for(advised.wait(), 1)
        token.cancel("operator stop")
        result = await asyncio.wait_for(task, 1)

        assert result.status == TaskStatus.Cancelled
        assert not result.success
        assert "operator stop" in result.error_message
        assert [r.step_number for r in result.step_results] == [1, 2]

    @pytest.mark.asyncio
    async def test_cancel_by_task_id_while_healing(self, capability):
        capability.script("#s2", not_found())
        advised = asyncio.Event()

        async def slow_advice(request):
            advised.set()
            await asyncio.sleep(10)

        advisor = MagicMock()
        advisor.advise = slow_advice
        runner = make_runner(capability, HealingEngine(advisor=advisor))
        plan = make_plan()

        task = asyncio.create_task(runner.run(plan))
        await asyncio.wait_for(advised.wait(), 1)
        assert runner.executor.status(plan.task_id) is None
        assert runner.running_tasks() == [plan.task_id]
        runner.cancel(plan.task_id)
        result = await asyncio.wait_for(task, 1)

        assert result.status == TaskStatus.Cancelled
        assert f"task {plan.task_id} cancelled" in result.error_message
        assert runner.running_tasks() == []
        with pytest.raises(TaskNotFoundError):
            runner.cancel(plan.task_id)

    @pytest.mark.asyncio
    async def test_cancel_by_task_id_during_execution(self, capability):
        started, release = asyncio.Event(), asyncio.Event()

        async def block(parameters, cancellation):
            started.set()
            await release.wait()
            return ToolOutcome(success=True)

        capability.script("#s2", block)
        runner = make_runner(capability)
        plan = make_plan()

        task = asyncio.create_task(runner.run(plan))
        await asyncio.wait_for(started.wait(), 1)
        runner.cancel(plan.task_id)
        result = await asyncio.wait_for(task, 1)

        assert result.status == TaskStatus.Cancelled
        assert result.metadata["healing_rounds"] == 0
        assert "#s3" not in capability.selectors_called


def step_result(step: Step, success: bool, error: str | None = None) -> StepResult:
    return StepResult(step_id=step.id, step_number=step.step_number, success=success,
                      error=error, error_type=None if success else "ToolExecutionError")


class HealingPlanRunnerTestCase(unittest.IsolatedAsyncioTestCase):
    """Runner behaviour against mocked executor and healer"""

    async def asyncSetUp(self):
        self.plan = make_plan()
        self.step1, self.step2, self.step3 = self.plan.ordered_steps()
        self.healed = self.step2.model_copy(update={"id": "healed-2", "metadata": {"healing_applied": True}})

        self.executor = Mock(spec=PlanExecutor)
        self.executor.execute_plan = AsyncMock()
        self.healer = Mock(spec=HealingEngine)
        self.healer.heal_step = AsyncMock()
        self.runner = HealingPlanRunner(self.executor, self.healer, max_heal_rounds=3)

    def task_result(self, status: TaskStatus, *results: StepResult) -> TaskResult:
        return TaskResult(task_id=self.plan.task_id, success=status == TaskStatus.Completed, status=status,
                          step_results=list(results), screenshots=[f"shot-{len(results)}.png"])

    async def test_resubmits_healed_step_with_remaining_steps(self):
        """The second run starts at the healed step and keeps later steps"""
        self.executor.execute_plan.side_effect = [
            self.task_result(TaskStatus.Failed, step_result(self.step1, True),
                             step_result(self.step2, False, "Element not found")),
            self.task_result(TaskStatus.Completed, step_result(self.healed, True), step_result(self.step3, True)),
        ]
        self.healer.heal_step.return_value = HealingResult(success=True, explanation="retarget",
                                                           healed_step=self.healed)
        token = CancellationToken()

        result = await self.runner.run(self.plan, cancellation=token)

        self.healer.heal_step.assert_awaited_once()
        args, kwargs = self.healer.heal_step.await_args
        self.assertIs(args[0], self.step2)
        self.assertEqual(args[1], "Element not found")
        self.assertIsInstance(args[3], CancellationToken)
        self.assertIs(self.executor.execute_plan.await_args_list[0].args[2], args[3])
        self.assertEqual(kwargs["error_type_name"], "ToolExecutionError")

        resubmitted = self.executor.execute_plan.await_args_list[1].args[0]
        self.assertEqual([s.id for s in resubmitted.steps], ["healed-2", self.step3.id])

        self.assertTrue(result.success)
        self.assertEqual([r.step_id for r in result.step_results], [self.step1.id, "healed-2", self.step3.id])
        self.assertEqual(result.statistics.total_steps, 3)
        self.assertEqual(result.screenshots, ["shot-2.png", "shot-2.png"])
        self.assertEqual(result.metadata["healing_history"][0]["healed_step_id"], "healed-2")

    async def test_failed_healing_keeps_failed_result(self):
        """A failed heal ends the loop without another run"""
        failed = self.task_result(TaskStatus.Failed, step_result(self.step1, False, "401 Unauthorized"))
        self.executor.execute_plan.return_value = failed
        self.healer.heal_step.return_value = HealingResult.failed("Error is not healable")

        result = await self.runner.run(self.plan)

        self.executor.execute_plan.assert_awaited_once()
        self.assertEqual(result.status, TaskStatus.Failed)
        self.assertEqual(result.metadata["healing_rounds"], 0)
        self.assertFalse(result.metadata["healing_history"][0]["success"])

    async def test_cancelled_run_is_not_healed(self):
        """Cancelled runs are returned as they are"""
        self.executor.execute_plan.return_value = self.task_result(TaskStatus.Cancelled)

        result = await self.runner.run(self.plan)

        self.healer.heal_step.assert_not_awaited()
        self.assertEqual(result.status, TaskStatus.Cancelled)
