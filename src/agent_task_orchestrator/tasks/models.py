"""Data models for agent tasks, their steps, and their stored projections.

Attributes are snake_case in Python; ``model_dump(by_alias=True)`` produces the
camelCase field names (``durationMs``, ``retryCount``, ...) that API layers and
dashboards consume.
"""

import random
import string
import time
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ERROR_MAX_CHARS = 2000


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_task_id() -> str:
    """Generate a task id like ``task_1717171717171_k3j9x0a1b``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"task_{int(time.time() * 1000)}_{suffix}"


def elapsed_ms(started_at: datetime, completed_at: datetime) -> int:
    return int(round((completed_at - started_at).total_seconds() * 1000))


def truncate_error(error: str | None) -> str | None:
    if error is None:
        return None
    return error[:ERROR_MAX_CHARS]


class TaskStatus(str, Enum):
    """Agent task lifecycle status."""

    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


class StepStatus(str, Enum):
    """Agent step execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# Statuses that let the next step start
SETTLED_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED})


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AgentStep(CamelModel):
    """One ordered unit of work within a task, bound to an action executor."""

    id: str
    name: str
    description: str = ""
    action: str
    params: dict[str, Any] = Field(default_factory=dict)
    max_retries: int = Field(default=0, ge=0)

    status: StepStatus = StepStatus.PENDING
    result: Any = None
    error: str | None = None

    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    retry_count: int = 0

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_STEP_STATUSES


class TaskTelemetry(CamelModel):
    """Per-task execution telemetry kept alongside the task."""

    task_duration_ms: int | None = None
    step_retries: dict[str, int] = Field(default_factory=dict)
    error_tags: list[str] = Field(default_factory=list)
    last_heartbeat: datetime | None = None

    def tag_error(self, action: str) -> None:
        tag = f"step_{action}_failed"
        if tag not in self.error_tags:
            self.error_tags.append(tag)


class AgentTask(CamelModel):
    """One invocation of a multi-step procedure, scoped to a workspace."""

    id: str = Field(default_factory=new_task_id)
    workspace_id: int
    type: str
    description: str = ""
    status: TaskStatus = TaskStatus.QUEUED
    steps: list[AgentStep] = Field(default_factory=list)
    params: dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None

    telemetry: TaskTelemetry = Field(default_factory=TaskTelemetry)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    @property
    def duration_ms(self) -> int | None:
        """Wall-clock duration so far; measured to now while the task is unfinished."""
        if not self.started_at:
            return None
        return elapsed_ms(self.started_at, self.completed_at or utc_now())

    @property
    def running_step(self) -> AgentStep | None:
        for step in self.steps:
            if step.status == StepStatus.RUNNING:
                return step
        return None

    def next_step_index(self) -> int | None:
        """Index of the first step that has not completed or been skipped."""
        for index, step in enumerate(self.steps):
            if not step.is_settled:
                return index
        return None

    def previous_results(self, index: int) -> dict[str, Any]:
        """Results of completed steps before ``index``, keyed by action."""
        results: dict[str, Any] = {}
        for step in self.steps[:index]:
            if step.status == StepStatus.COMPLETED and step.result is not None:
                results[step.action] = step.result
        return results

    def result_summary(self) -> dict[str, Any]:
        """Summary of step outcomes plus the results of completed steps."""
        completed = [s for s in self.steps if s.status == StepStatus.COMPLETED]
        failed = [s for s in self.steps if s.status == StepStatus.FAILED]
        total = len(self.steps)

        summary: dict[str, Any] = {
            "totalSteps": total,
            "completedSteps": len(completed),
            "failedSteps": len(failed),
            "completionRate": (len(completed) / total * 100) if total else 0,
        }
        for step in completed:
            if step.result is not None:
                summary[step.action] = step.result
        return summary

    def snapshot(self) -> "AgentTask":
        return self.model_copy(deep=True)


class StoredTaskResult(CamelModel):
    """Durable projection of an AgentTask as read back from the task store."""

    task_id: str
    workspace_id: int
    task_type: str
    task_description: str = ""
    status: TaskStatus
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    error: str | None = None
    result_summary: dict[str, Any] | None = None


class StoredStepResult(CamelModel):
    """Durable projection of an AgentStep as read back from the task store."""

    task_id: str
    step_id: str
    position: int = 0
    step_name: str
    step_description: str = ""
    action: str
    status: StepStatus
    result: Any = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    retry_count: int = 0
