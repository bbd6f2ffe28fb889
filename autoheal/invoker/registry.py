from dataclasses import dataclass, field
from typing import Any, Iterable

from autoheal.exceptions import MissingParametersError, ToolNotFoundError


@dataclass(frozen=True)
class ParameterDefinition:
    type: str
    required: bool = False
    description: str = ""
    default: Any = None


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: dict[str, ParameterDefinition] = field(default_factory=dict)

    @property
    def required_parameters(self) -> list[str]:
        return [name for name, definition in self.parameters.items() if definition.required]


def _required(type_: str, description: str) -> ParameterDefinition:
    return ParameterDefinition(type=type_, required=True, description=description)


def _optional(type_: str, description: str, default: Any = None) -> ParameterDefinition:
    return ParameterDefinition(type=type_, required=False, description=description, default=default)


BROWSER_TOOLS: list[ToolDefinition] = [
    ToolDefinition("navigate", "Navigate the page to a URL", {
        "url": _required("string", "Absolute URL to open"),
        "wait_until": _optional("string", "Load state to wait for", "load"),
        "timeout_ms": _optional("integer", "Navigation timeout"),
    }),
    ToolDefinition("click", "Click an element", {
        "selector": _required("string", "Element selector"),
        "button": _optional("string", "Mouse button", "left"),
        "click_count": _optional("integer", "Number of clicks", 1),
        "force": _optional("boolean", "Skip actionability checks", False),
        "timeout_ms": _optional("integer", "Action timeout"),
    }),
    ToolDefinition("type", "Type text into an input element", {
        "selector": _required("string", "Element selector"),
        "text": _required("string", "Text to type"),
        "delay_ms": _optional("integer", "Delay between key strokes", 0),
        "clear_first": _optional("boolean", "Clear the input before typing", True),
        "timeout_ms": _optional("integer", "Action timeout"),
    }),
    ToolDefinition("clear_input", "Clear an input element", {
        "selector": _required("string", "Element selector"),
    }),
    ToolDefinition("select_option", "Select an option of a select element", {
        "selector": _required("string", "Element selector"),
        "value": _required("string", "Option value or label"),
        "timeout_ms": _optional("integer", "Action timeout"),
    }),
    ToolDefinition("check", "Check a checkbox or radio button", {
        "selector": _required("string", "Element selector"),
        "timeout_ms": _optional("integer", "Action timeout"),
    }),
    ToolDefinition("uncheck", "Uncheck a checkbox", {
        "selector": _required("string", "Element selector"),
        "timeout_ms": _optional("integer", "Action timeout"),
    }),
    ToolDefinition("hover", "Move the pointer over an element", {
        "selector": _required("string", "Element selector"),
        "timeout_ms": _optional("integer", "Action timeout"),
    }),
    ToolDefinition("press_key", "Press a keyboard key", {
        "key": _required("string", "Key name, e.g. Enter"),
        "selector": _optional("string", "Element to focus first"),
    }),
    ToolDefinition("scroll", "Scroll the page or an element", {
        "selector": _optional("string", "Element to scroll into view"),
        "value": _optional("string", "Scroll direction or offset", "down"),
    }),
    ToolDefinition("wait_for_element", "Wait until an element reaches a state", {
        "selector": _required("string", "Element selector"),
        "state": _optional("string", "attached, detached, visible or hidden", "visible"),
        "timeout_ms": _optional("integer", "Wait timeout", 30000),
    }),
    ToolDefinition("wait", "Wait for a fixed duration", {
        "value": _optional("integer", "Duration in milliseconds", 1000),
    }),
    ToolDefinition("get_text", "Extract text content of elements", {
        "selector": _required("string", "Element selector"),
        "all_matches": _optional("boolean", "Return text of every match", False),
        "include_hidden": _optional("boolean", "Include hidden elements", False),
    }),
    ToolDefinition("get_page_state", "Capture URL, title and interactive elements", {
        "include_hidden": _optional("boolean", "Include hidden elements", False),
    }),
    ToolDefinition("take_screenshot", "Capture a screenshot", {
        "selector": _optional("string", "Element to capture"),
        "full_page": _optional("boolean", "Capture the full scrollable page", False),
        "quality": _optional("integer", "JPEG quality"),
    }),
    ToolDefinition("execute_script", "Evaluate a script in the page", {
        "script": _required("string", "Script source"),
    }),
    ToolDefinition("verify_element_exists", "Check that an element is present", {
        "selector": _required("string", "Element selector"),
        "timeout_ms": _optional("integer", "Wait timeout", 5000),
    }),
]


class ToolRegistry:
    """Names and parameter contracts of the operations a capability supports."""

    def __init__(self, tools: Iterable[ToolDefinition] = ()):
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools:
            self.register(tool)

    @classmethod
    def browser_defaults(cls) -> "ToolRegistry":
        return cls(BROWSER_TOOLS)

    def register(self, tool: ToolDefinition):
        self._tools[tool.name] = tool

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return sorted(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def check(self, tool_name: str, parameters: dict[str, Any]):
        """Raise a :class:`ToolValidationError` if the call violates the tool contract."""
        tool = self._tools.get(tool_name)
        if tool is None:
            raise ToolNotFoundError(tool_name, self.names())
        missing = [name for name in tool.required_parameters if parameters.get(name) is None]
        if missing:
            raise MissingParametersError(tool_name, missing)
