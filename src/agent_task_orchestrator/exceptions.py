"""Custom exceptions for the agent task orchestrator."""


class OrchestratorError(Exception):
    """Base exception for agent task orchestrator errors."""

    pass


class InvalidTaskType(OrchestratorError):
    """Raised when a task type has no registered step template."""

    def __init__(self, task_type: str):
        self.task_type = task_type
        super().__init__(f"Unknown task type: {task_type!r}")


class TaskNotFound(OrchestratorError):
    """Raised when a task id is not known to the orchestrator."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class InvalidTransition(OrchestratorError):
    """Raised when a lifecycle operation is attempted from an incompatible state."""

    def __init__(self, task_id: str, operation: str, status: str):
        self.task_id = task_id
        self.operation = operation
        self.status = status
        super().__init__(f"Cannot {operation} task {task_id}: task is {status}")


class ExecutorNotFound(OrchestratorError):
    """Raised when a step's action has no registered executor."""

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"ExecutorNotFound: no executor registered for action {action!r}")


class StepExecutionError(OrchestratorError):
    """Raised by step executors when the step's own work fails."""

    pass


class StepTimeout(StepExecutionError):
    """Raised when a step exceeds the configured step timeout."""

    pass


class StoreUnavailable(OrchestratorError):
    """Raised when the task store cannot be reached."""

    pass
