"""Telemetry: aggregate metrics over stored task history and per-task summaries."""

from .metrics import (
    AgentPerformanceMetrics,
    FailedStep,
    SlowStep,
    StepSuccessRate,
    average,
    compute_metrics,
    error_type,
    get_metrics,
    percentile,
)
from .summary import StepMetric, TaskTelemetrySummary, summarize_task

__all__ = [
    "AgentPerformanceMetrics",
    "FailedStep",
    "SlowStep",
    "StepMetric",
    "StepSuccessRate",
    "TaskTelemetrySummary",
    "average",
    "compute_metrics",
    "error_type",
    "get_metrics",
    "percentile",
    "summarize_task",
]
