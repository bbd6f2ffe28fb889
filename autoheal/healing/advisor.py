import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import ValidationError as PydanticValidationError

from autoheal.orchestrator.models import Step, StepResult
from autoheal.orchestrator.state import EnvironmentState
from autoheal.template import TemplateEnvironment
from autoheal.tracer import trace_llm
from .types import ErrorAnalysis, HealingStrategy, HealingStrategyType

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


@dataclass(frozen=True)
class DiagnosticRequest:
    """Everything the diagnostic collaborator gets to see about a failure."""
    step: Step
    error: str
    analysis: ErrorAnalysis
    state: EnvironmentState | None = None
    recent_steps: list[StepResult] = field(default_factory=list)
    goal: str = ""


class DiagnosticAdvisor(Protocol):
    async def advise(self, request: DiagnosticRequest) -> str:
        """Return a JSON strategy description for the failure."""
        ...


class LLMDiagnosticAdvisor:
    SYSTEM_TEMPLATE_NAME = "healing_system.jinja2"
    TEMPLATE_NAME = "diagnose_step_failure.jinja2"

    def __init__(self, chat_llm: BaseChatModel, lang: str = "en"):
        self.chat_llm = chat_llm
        template_env = TemplateEnvironment(package_name="autoheal.healing", default_lang=lang)
        self.system_template = template_env.load_template(self.SYSTEM_TEMPLATE_NAME)
        self.template = template_env.load_template(self.TEMPLATE_NAME)

    @trace_llm("diagnose_step_failure")
    async def advise(self, request: DiagnosticRequest) -> str:
        system_prompt = self.system_template.render(strategy_types=[t.value for t in HealingStrategyType])
        prompt = self.template.render(
            step=request.step,
            error=request.error,
            analysis=request.analysis,
            state=request.state,
            elements=request.state.interactive_elements(10) if request.state else [],
            recent_steps=request.recent_steps[-3:],
            goal=request.goal,
        )
        response = await self.chat_llm.ainvoke([
            SystemMessage(content=system_prompt),
            HumanMessage(content=prompt),
        ])
        content = response.content
        if isinstance(content, list):
            content = "".join(part if isinstance(part, str) else part.get("text", "") for part in content)
        logger.debug("Diagnostic response: %s", content)
        return content


def fallback_strategy() -> HealingStrategy:
    return HealingStrategy(
        strategy_type=HealingStrategyType.SimpleFallback,
        name="Fallback Strategy",
        description="Failed to parse LLM response, using simple fallback",
        confidence=0.3,
        priority=1,
    )


def _extract_json(raw: str) -> Any:
    match = _FENCED_JSON.search(raw)
    if match:
        return json.loads(match.group(1))
    start, end = raw.find("{"), raw.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("No JSON object in response")
    return json.loads(raw[start:end + 1])


def parse_strategy(raw: str | None) -> HealingStrategy:
    """Parse a diagnostic response; malformed input yields :func:`fallback_strategy`."""
    if not raw:
        logger.warning("Empty diagnostic response, using fallback strategy")
        return fallback_strategy()
    try:
        data = _extract_json(raw)
        if not isinstance(data, dict):
            raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
        parameters = data.get("changes") or data.get("parameters") or {}
        if not isinstance(parameters, dict):
            raise ValueError("Strategy parameters must be an object")
        confidence = data.get("confidence")
        priority = data.get("priority")
        return HealingStrategy(
            strategy_type=HealingStrategyType.parse(data.get("strategy_type")),
            name=data.get("strategy_name") or data.get("name") or "Unknown Strategy",
            description=data.get("description") or "",
            confidence=min(max(float(confidence if confidence is not None else 0.5), 0.0), 1.0),
            priority=int(priority if priority is not None else 5),
            parameters=parameters,
        )
    except (ValueError, TypeError, PydanticValidationError) as e:
        logger.warning("Could not parse diagnostic response (%s), using fallback strategy", e)
        return fallback_strategy()
