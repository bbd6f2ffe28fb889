"""Tool invocation layer.

Runs one named operation against an :class:`ExecutionCapability` with
validation, bounded retries, backoff and ordered fallbacks.  Knows nothing
about plans or steps.
"""

from .invoker import RetryPolicy, ToolInvoker, TERMINAL_ERRORS
from .registry import BROWSER_TOOLS, ParameterDefinition, ToolDefinition, ToolRegistry
from .types import ExecutionCapability, InvocationRequest, InvocationResult, ToolOutcome
