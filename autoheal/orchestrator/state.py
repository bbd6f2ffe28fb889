from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class ElementInfo:
    tag: str
    selector: str
    text: str = ""
    visible: bool = True


@dataclass(frozen=True)
class EnvironmentState:
    """Snapshot of the page a plan is running against."""
    url: str = ""
    title: str = ""
    elements: list[ElementInfo] = field(default_factory=list)

    def interactive_elements(self, limit: int = 10) -> list[ElementInfo]:
        return self.elements[:limit]


@runtime_checkable
class EnvironmentStateCapability(Protocol):
    """Reads the current environment; may fail independently of any step."""

    async def capture_state(self) -> EnvironmentState:
        ...

    async def capture_screenshot(self) -> str:
        """Capture visual evidence and return a reference to it (path, URL or data URI)."""
        ...
