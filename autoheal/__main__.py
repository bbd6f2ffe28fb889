import asyncio
import importlib
import logging
import sys
from argparse import ArgumentParser
from pathlib import Path
from typing import Any

import yaml
from pyaml_env import parse_config as parse_config_with_env

from autoheal.config.autoheal import AutoHealConfig
from autoheal.exceptions import AutoHealError, CapabilityImportError, ConfigError
from autoheal.healing import HealingEngine, LLMDiagnosticAdvisor, analyze_error
from autoheal.invoker import ExecutionCapability, ToolInvoker
from autoheal.llm import ChatLLMFactory
from autoheal.orchestrator import EnvironmentStateCapability, ExecutionPlan, PlanExecutor, TaskResult
from autoheal.runner import HealingPlanRunner
from autoheal.tracer import Tracer, YAMLExporter

logger = logging.getLogger(__name__)


def setup_logging(verbosity: int | None):
    verbosity = verbosity or 0
    if verbosity == 0:
        level = logging.WARNING
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if verbosity < 2:
        logging.getLogger('httpx').setLevel(logging.WARNING)
        logging.getLogger('openai').setLevel(logging.WARNING)


def load_config(config_path: str) -> AutoHealConfig:
    with open(config_path, 'r', encoding='utf-8') as f:
        data = parse_config_with_env(data=f, tag=None) or {}
    config = AutoHealConfig.model_validate(data)
    logger.debug("Loaded config: %s", config)
    return config


def load_plan(plan_path: str) -> ExecutionPlan:
    with open(plan_path, 'r', encoding='utf-8') as f:
        data = parse_config_with_env(data=f, tag=None)
    return ExecutionPlan.model_validate(data)


def load_capability(path: str) -> Any:
    """Import ``module:attr`` and call it when it is a factory."""
    module_name, _, attr = path.partition(':')
    if not module_name or not attr:
        raise CapabilityImportError(path, "expected 'module:attr'")
    try:
        target = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise CapabilityImportError(path, str(e)) from e
    if isinstance(target, type) or (callable(target) and not isinstance(target, ExecutionCapability)):
        target = target()
    return target


def build_runner(config: AutoHealConfig, capability: Any) -> HealingPlanRunner:
    if not isinstance(capability, ExecutionCapability):
        raise ConfigError(f"Capability {capability!r} does not provide 'execute'")
    state = capability if isinstance(capability, EnvironmentStateCapability) else None
    invoker = ToolInvoker(capability, config=config.invoker)
    executor = PlanExecutor(invoker, state=state)
    advisor = None
    if config.chat_llm is not None:
        advisor = LLMDiagnosticAdvisor(ChatLLMFactory.build(config.chat_llm), lang=config.language)
    healer = HealingEngine(advisor=advisor, state=state, config=config.healing)
    return HealingPlanRunner(executor, healer, max_heal_rounds=config.healing.max_heal_rounds)


def summarize(result: TaskResult) -> dict[str, Any]:
    stats = result.statistics
    return {
        'task_id': result.task_id,
        'status': result.status.value,
        'success': result.success,
        'error': result.error_message,
        'duration_ms': round(result.duration_ms or 0.0, 1),
        'statistics': {
            'total_steps': stats.total_steps,
            'successful_steps': stats.successful_steps,
            'failed_steps': stats.failed_steps,
            'retried_steps': stats.retried_steps,
            'healed_steps': stats.healed_steps,
            'total_retries': stats.total_retries,
            'success_rate': round(stats.success_rate, 3),
        },
        'steps': [
            {
                'step_number': r.step_number,
                'success': r.success,
                'attempts': r.attempt_count,
                'error': r.error,
                'healed': bool(r.metadata.get('healing_applied')),
            }
            for r in result.step_results
        ],
        'healing_history': result.metadata.get('healing_history', []),
    }


async def run_plan(config_path: str, plan_path: str) -> TaskResult:
    config = load_config(config_path)
    tracer = Tracer(exporter=YAMLExporter(config.trace_dir)) if config.trace_dir else None
    tracer_token = tracer.activate() if tracer else None
    try:
        # The tracer must be active before the chat model is built so the
        # callback handler gets attached.
        capability = load_capability(config.capability) if config.capability else None
        if capability is None:
            raise ConfigError("No capability configured; set 'capability: module:factory'")
        runner = build_runner(config, capability)
        plan = load_plan(plan_path)
        return await runner.run(plan)
    finally:
        if tracer is not None:
            tracer.deactivate(tracer_token)


def main(argv: list[str] | None = None) -> int:
    parser = ArgumentParser('autoheal', description="Run browser automation plans with self-healing")
    parser.add_argument('-v', action='count', help="Verbosity level. -v for INFO, -vv for DEBUG")
    commands = parser.add_subparsers(dest='command', required=True)

    run_parser = commands.add_parser('run', help="Execute a plan file")
    run_parser.add_argument('--config', required=True, help="Path to the configuration file")
    run_parser.add_argument('plan', help="Path to the YAML or JSON plan file")

    analyze_parser = commands.add_parser('analyze', help="Classify an error message")
    analyze_parser.add_argument('message', help="Error message to classify")
    analyze_parser.add_argument('--type', dest='error_type', help="Exception type name of the error")

    ns = parser.parse_args(argv)
    setup_logging(ns.v)

    if ns.command == 'analyze':
        analysis = analyze_error(ns.message, ns.error_type)
        yaml.safe_dump({
            'error_type': analysis.error_type.value,
            'healable': analysis.is_healable,
            'severity': analysis.severity.value,
            'root_cause': analysis.root_cause,
            'strategies': [s.model_dump(mode='json') for s in analysis.suggested_strategies],
        }, sys.stdout, sort_keys=False, allow_unicode=True)
        return 0

    if not Path(ns.plan).is_file():
        parser.error(f"Plan file not found: {ns.plan}")
    try:
        result = asyncio.run(run_plan(ns.config, ns.plan))
    except AutoHealError as e:
        logger.error("%s", e)
        return 2
    yaml.safe_dump(summarize(result), sys.stdout, sort_keys=False, allow_unicode=True)
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
