"""Shared collaborator fakes for the autoheal test-suite."""

from unittest.mock import AsyncMock

import pytest

from autoheal.invoker import ToolOutcome
from autoheal.orchestrator import ElementInfo, EnvironmentState


class ScriptedCapability:
    """Execution capability replaying scripted outcomes.

    Outcomes are queued per selector or per tool name; an entry may be a
    ``ToolOutcome``, an exception to raise, or an async callable receiving
    ``(parameters, cancellation)``.  Unscripted calls succeed.
    """

    def __init__(self):
        self.scripts: dict[str, list] = {}
        self.calls: list[tuple[str, dict]] = []

    def script(self, key: str, *outcomes) -> "ScriptedCapability":
        self.scripts.setdefault(key, []).extend(outcomes)
        return self

    async def execute(self, tool_name, parameters, cancellation):
        self.calls.append((tool_name, dict(parameters)))
        selector = parameters.get("selector")
        key = selector if selector in self.scripts else tool_name
        queue = self.scripts.get(key)
        outcome = queue.pop(0) if queue else ToolOutcome(success=True, result=f"{tool_name} ok")
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            outcome = await outcome(parameters, cancellation)
        return outcome

    @property
    def tools_called(self) -> list[str]:
        return [name for name, _ in self.calls]

    @property
    def selectors_called(self) -> list[str | None]:
        return [params.get("selector") for _, params in self.calls]


class FakeState:
    """Environment-state capability with switchable failures."""

    def __init__(self, title: str = "Example Domain", url: str = "https://example.com/"):
        self.snapshot = EnvironmentState(url=url, title=title, elements=[
            ElementInfo(tag="button", selector="#submit", text="Submit"),
            ElementInfo(tag="input", selector="#email", text=""),
        ])
        self.screenshots = 0
        self.fail_screenshots = False
        self.fail_state = False

    async def capture_state(self) -> EnvironmentState:
        if self.fail_state:
            raise RuntimeError("browser disconnected")
        return self.snapshot

    async def capture_screenshot(self) -> str:
        if self.fail_screenshots:
            raise RuntimeError("screenshot failed")
        self.screenshots += 1
        return f"screenshot-{self.screenshots}.png"


@pytest.fixture
def capability() -> ScriptedCapability:
    return ScriptedCapability()


@pytest.fixture
def state() -> FakeState:
    return FakeState()


@pytest.fixture
def no_retry_delay(monkeypatch) -> AsyncMock:
    """Replace the invoker's retry sleep so retries run instantly."""
    sleep = AsyncMock()
    monkeypatch.setattr("autoheal.invoker.invoker.sleep", sleep)
    return sleep
