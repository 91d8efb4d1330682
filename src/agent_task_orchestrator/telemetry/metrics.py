"""Aggregate performance metrics computed from stored task history."""

import logging
import math
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

from pydantic import Field

from ..exceptions import StoreUnavailable
from ..tasks.models import CamelModel, StepStatus, StoredStepResult, StoredTaskResult, TaskStatus

logger = logging.getLogger(__name__)

DEFAULT_PERIOD_HOURS = 720
TOP_N = 8
ERROR_KEY_MAX_CHARS = 120

_DAY = timedelta(days=1)
_ROLLING_WINDOW = timedelta(days=30)


class StepSuccessRate(CamelModel):
    success: int = 0
    total: int = 0
    rate: float = 0


class SlowStep(CamelModel):
    action: str
    avg_duration_ms: int


class FailedStep(CamelModel):
    action: str
    failure_count: int


class AgentPerformanceMetrics(CamelModel):
    """Summary of a workspace's agent task history over a time window."""

    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    success_rate: float = 0

    average_duration_ms: int = 0
    p50_duration_ms: int = 0
    p95_duration_ms: int = 0
    p99_duration_ms: int = 0

    step_success_rates: dict[str, StepSuccessRate] = Field(default_factory=dict)
    slowest_steps: list[SlowStep] = Field(default_factory=list)
    errors_by_type: dict[str, int] = Field(default_factory=dict)
    most_failed_steps: list[FailedStep] = Field(default_factory=list)

    tasks_last_24h: int = Field(default=0, alias="tasksLast24h")
    tasks_last_7d: int = Field(default=0, alias="tasksLast7d")
    tasks_last_30d: int = Field(default=0, alias="tasksLast30d")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def percentile(values: Iterable[int | float], p: float) -> int | float:
    """Nearest-rank percentile: ``sorted[floor(p/100 * n)]`` clamped to the list.

    No interpolation; dashboards key off this exact rounding.
    """
    ordered = sorted(values)
    if not ordered:
        return 0
    index = min(len(ordered) - 1, max(0, math.floor((p / 100) * len(ordered))))
    return ordered[index]


def average(values: Iterable[int | float]) -> int:
    items = list(values)
    if not items:
        return 0
    return _round_half_up(sum(items) / len(items))


def error_type(error: str | None) -> str:
    """Group key for an error message: text before the first ':' (max 120 chars)."""
    if not error or not error.strip():
        return "Unknown"
    return error.split(":")[0][:ERROR_KEY_MAX_CHARS]


def compute_metrics(
    tasks: Iterable[StoredTaskResult],
    steps: Iterable[StoredStepResult],
    now: datetime | None = None,
    period_hours: float = DEFAULT_PERIOD_HOURS,
    top_n: int = TOP_N,
) -> AgentPerformanceMetrics:
    """Compute metrics from task and step records.

    ``tasks`` may reach further back than ``period_hours``; older records only
    feed the rolling 24h/7d/30d counts.
    """
    now = now or datetime.now(UTC)
    since = now - timedelta(hours=period_hours)
    all_tasks = list(tasks)

    period_tasks = [t for t in all_tasks if t.created_at >= since]
    period_ids = {t.task_id for t in period_tasks}
    period_steps = [s for s in steps if s.task_id in period_ids]

    total_tasks = len(period_tasks)
    completed_tasks = sum(1 for t in period_tasks if t.status == TaskStatus.COMPLETED)
    failed_tasks = sum(1 for t in period_tasks if t.status == TaskStatus.FAILED)
    success_rate = (completed_tasks / total_tasks * 100) if total_tasks > 0 else 0

    durations = [t.duration_ms for t in period_tasks if t.duration_ms and t.duration_ms > 0]

    # Per-action totals: [total, success, duration sum, duration count]
    totals: dict[str, list[int]] = {}
    for step in period_steps:
        entry = totals.setdefault(step.action or "unknown", [0, 0, 0, 0])
        entry[0] += 1
        if step.status == StepStatus.COMPLETED:
            entry[1] += 1
        if step.duration_ms and step.duration_ms > 0:
            entry[2] += step.duration_ms
            entry[3] += 1

    step_success_rates: dict[str, StepSuccessRate] = {}
    slowest: list[SlowStep] = []
    for action, (total, success, sum_ms, count_ms) in totals.items():
        rate = (success / total * 100) if total > 0 else 0
        step_success_rates[action] = StepSuccessRate(success=success, total=total, rate=rate)
        avg_ms = _round_half_up(sum_ms / count_ms) if count_ms > 0 else 0
        slowest.append(SlowStep(action=action, avg_duration_ms=avg_ms))
    slowest.sort(key=lambda s: s.avg_duration_ms, reverse=True)

    errors_by_type: dict[str, int] = {}
    failed_by_action: dict[str, int] = {}
    for step in period_steps:
        if step.status != StepStatus.FAILED:
            continue
        action = step.action or "unknown"
        failed_by_action[action] = failed_by_action.get(action, 0) + 1
        key = error_type(step.error)
        errors_by_type[key] = errors_by_type.get(key, 0) + 1

    most_failed = [FailedStep(action=action, failure_count=count) for action, count in failed_by_action.items()]
    most_failed.sort(key=lambda s: s.failure_count, reverse=True)

    def created_within(window: timedelta) -> int:
        return sum(1 for t in all_tasks if t.created_at >= now - window)

    return AgentPerformanceMetrics(
        total_tasks=total_tasks,
        completed_tasks=completed_tasks,
        failed_tasks=failed_tasks,
        success_rate=success_rate,
        average_duration_ms=average(durations),
        p50_duration_ms=percentile(durations, 50),
        p95_duration_ms=percentile(durations, 95),
        p99_duration_ms=percentile(durations, 99),
        step_success_rates=step_success_rates,
        slowest_steps=slowest[:top_n],
        errors_by_type=errors_by_type,
        most_failed_steps=most_failed[:top_n],
        tasks_last_24h=created_within(_DAY),
        tasks_last_7d=created_within(7 * _DAY),
        tasks_last_30d=created_within(_ROLLING_WINDOW),
    )


async def get_metrics(
    store,
    workspace_id: int,
    period_hours: float = DEFAULT_PERIOD_HOURS,
    now: datetime | None = None,
    top_n: int = TOP_N,
) -> AgentPerformanceMetrics:
    """Read a workspace's history from ``store`` and aggregate it.

    Never raises: with no store, or a store that cannot be read, the result
    is an all-zero metrics value.
    """
    if store is None:
        logger.info("No task store configured, returning empty agent metrics")
        return AgentPerformanceMetrics()

    now = now or datetime.now(UTC)
    lookback = max(timedelta(hours=period_hours), _ROLLING_WINDOW)

    try:
        tasks = await store.query_tasks(workspace_id, now - lookback)
        steps = await store.query_steps(t.task_id for t in tasks) if tasks else []
    except StoreUnavailable as e:
        logger.warning(f"Task store unavailable, returning empty agent metrics: {e}")
        return AgentPerformanceMetrics()
    except Exception as e:
        logger.error(f"Failed to read task history for metrics: {e}", exc_info=True)
        return AgentPerformanceMetrics()

    return compute_metrics(tasks, steps, now=now, period_hours=period_hours, top_n=top_n)
