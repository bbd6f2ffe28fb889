class AutoHealError(Exception):
    """Base exception for AutoHeal errors"""
    def __init__(self, msg: str):
        self.msg = msg

    def __str__(self):
        return self.msg

class LLMError(AutoHealError):
    pass

class NoChatLLMConfigError(LLMError):
    def __init__(self, msg: str | None = None):
        super().__init__(msg or "Can not find available Chat LLM Config")

class ConfigError(AutoHealError):
    pass

class CapabilityImportError(ConfigError):
    """Raised when the configured capability factory can not be imported"""
    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(f"Can not load capability '{path}': {reason}")


class ValidationError(AutoHealError):
    """Contract violation detected before any external call; never retried"""
    pass

class StepValidationError(ValidationError):
    def __init__(self, step_number: int, reason: str):
        self.step_number = step_number
        super().__init__(f"Step {step_number} is invalid: {reason}")

class ToolValidationError(ValidationError):
    def __init__(self, tool_name: str, validation_error: str, msg: str):
        self.tool_name = tool_name
        self.validation_error = validation_error
        super().__init__(msg)

class ToolNotFoundError(ToolValidationError):
    def __init__(self, tool_name: str, available_tools: list[str]):
        self.available_tools = available_tools
        super().__init__(
            tool_name,
            "tool_not_found",
            f"Tool '{tool_name}' not found in registry.\n"
            f"Available tools: {', '.join(available_tools)}",
        )

class MissingParametersError(ToolValidationError):
    def __init__(self, tool_name: str, missing: list[str]):
        self.missing = missing
        super().__init__(
            tool_name,
            "missing_required_parameters",
            f"Missing required parameters for tool '{tool_name}': {', '.join(missing)}",
        )


class OperationCancelledError(AutoHealError):
    """Raised at a cooperative check point once cancellation was requested"""
    def __init__(self, reason: str | None = None):
        self.reason = reason
        super().__init__(f"Operation cancelled: {reason}" if reason else "Operation cancelled")

class StepTimeoutError(AutoHealError):
    def __init__(self, step_number: int, timeout_ms: int):
        self.step_number = step_number
        self.timeout_ms = timeout_ms
        super().__init__(f"Step {step_number} timed out after {timeout_ms}ms")


class OrchestrationError(AutoHealError):
    pass

class TaskNotFoundError(OrchestrationError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' is not running")

class InvalidTaskStateError(OrchestrationError):
    def __init__(self, task_id: str, operation: str, status: str):
        self.task_id = task_id
        self.operation = operation
        self.status = status
        super().__init__(f"Can not {operation} task '{task_id}' in status '{status}'")

class TaskAlreadyRunningError(OrchestrationError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' is already executing")


class HealingError(AutoHealError):
    pass
