"""Per-task telemetry drill-down."""

from datetime import datetime

from pydantic import Field

from ..tasks.models import AgentTask, CamelModel, StepStatus, TaskStatus


class StepMetric(CamelModel):
    step_id: str
    name: str
    status: StepStatus
    duration_ms: int | None = None
    retry_count: int = 0
    error_message: str | None = None


class TaskTelemetrySummary(CamelModel):
    task_id: str
    status: TaskStatus
    task_duration_ms: int | None = None
    last_heartbeat: datetime | None = None
    error_tags: list[str] = Field(default_factory=list)
    step_metrics: list[StepMetric] = Field(default_factory=list)
    total_retries: int = 0
    failed_steps: int = 0


def summarize_task(task: AgentTask) -> TaskTelemetrySummary:
    return TaskTelemetrySummary(
        task_id=task.id,
        status=task.status,
        task_duration_ms=task.telemetry.task_duration_ms,
        last_heartbeat=task.telemetry.last_heartbeat,
        error_tags=list(task.telemetry.error_tags),
        step_metrics=[
            StepMetric(
                step_id=step.id,
                name=step.name,
                status=step.status,
                duration_ms=step.duration_ms,
                retry_count=step.retry_count,
                error_message=step.error,
            )
            for step in task.steps
        ],
        total_retries=sum(task.telemetry.step_retries.values()),
        failed_steps=sum(1 for step in task.steps if step.status == StepStatus.FAILED),
    )
