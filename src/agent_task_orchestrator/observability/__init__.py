"""Observability helpers: structured per-task logging."""

from .logging import (
    TaskContextFilter,
    bind_task_context,
    clear_task_context,
    get_current_task_id,
    get_current_task_type,
    get_task_logger,
    setup_structured_logging,
)

__all__ = [
    "TaskContextFilter",
    "bind_task_context",
    "clear_task_context",
    "get_current_task_id",
    "get_current_task_type",
    "get_task_logger",
    "setup_structured_logging",
]
