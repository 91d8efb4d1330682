"""Orchestrator for long-running, multi-step agent tasks with performance telemetry."""

from .config import get_settings
from .exceptions import (
    ExecutorNotFound,
    InvalidTaskType,
    InvalidTransition,
    OrchestratorError,
    StepExecutionError,
    StepTimeout,
    StoreUnavailable,
    TaskNotFound,
)
from .tasks import (
    AgentStep,
    AgentTask,
    ExecutorRegistry,
    Orchestrator,
    StepContext,
    StepStatus,
    TaskStatus,
    create_task_store,
    default_catalog,
)
from .telemetry import AgentPerformanceMetrics, get_metrics

__all__ = [
    "AgentPerformanceMetrics",
    "AgentStep",
    "AgentTask",
    "ExecutorNotFound",
    "ExecutorRegistry",
    "InvalidTaskType",
    "InvalidTransition",
    "Orchestrator",
    "OrchestratorError",
    "StepContext",
    "StepExecutionError",
    "StepStatus",
    "StepTimeout",
    "StoreUnavailable",
    "TaskNotFound",
    "TaskStatus",
    "create_task_store",
    "default_catalog",
    "get_metrics",
    "get_settings",
]
