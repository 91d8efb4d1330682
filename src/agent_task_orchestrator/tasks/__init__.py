"""Agent tasks: models, templates, executor registry, task store and orchestrator."""

from .models import (
    AgentStep,
    AgentTask,
    StepStatus,
    StoredStepResult,
    StoredTaskResult,
    TaskStatus,
    TaskTelemetry,
)
from .orchestrator import Orchestrator, TaskEvent
from .registry import ExecutorRegistry, StepContext, StepExecutor, demo_registry
from .store import InMemoryTaskStore, SQLiteTaskStore, TaskStore, create_task_store
from .templates import BUILTIN_TEMPLATES, StepTemplate, TaskTemplate, TemplateCatalog, default_catalog

__all__ = [
    "AgentStep",
    "AgentTask",
    "BUILTIN_TEMPLATES",
    "ExecutorRegistry",
    "InMemoryTaskStore",
    "Orchestrator",
    "SQLiteTaskStore",
    "StepContext",
    "StepExecutor",
    "StepStatus",
    "StepTemplate",
    "StoredStepResult",
    "StoredTaskResult",
    "TaskEvent",
    "TaskStatus",
    "TaskStore",
    "TaskTelemetry",
    "TaskTemplate",
    "TemplateCatalog",
    "create_task_store",
    "default_catalog",
    "demo_registry",
]
