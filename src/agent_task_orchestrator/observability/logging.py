"""Structured logging with per-task context using structlog and contextvars."""

import logging
from contextvars import ContextVar

import structlog

# Context variables for the task currently executing in this asyncio task
current_task_id: ContextVar[str | None] = ContextVar("current_task_id", default=None)
current_task_type: ContextVar[str | None] = ContextVar("current_task_type", default=None)

_configured = False


class TaskContextFilter(logging.Filter):
    """Stamp stdlib log records with the task bound to the current context.

    Lets plain ``logging`` output (``%(task_id)s``, ``%(task_type)s``) carry the
    same task identity that structlog merges into its events.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.task_id = get_current_task_id() or "-"
        record.task_type = get_current_task_type() or "-"
        return True


def setup_structured_logging(level: str = "INFO") -> None:
    """Configure structlog with JSON output and per-task context.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
    """
    global _configured
    if _configured:
        return

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,  # Inject task context
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.addFilter(TaskContextFilter())
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s [%(task_id)s] %(message)s"))
    logging.basicConfig(
        handlers=[handler],
        level=getattr(logging, level.upper(), logging.INFO),
    )

    _configured = True


def bind_task_context(task_id: str, task_type: str) -> None:
    """Bind task context for all subsequent logs in this async context.

    Args:
        task_id: Agent task identifier
        task_type: Task type being executed (e.g. thesis-validation)
    """
    current_task_id.set(task_id)
    current_task_type.set(task_type)
    structlog.contextvars.bind_contextvars(task_id=task_id, task_type=task_type)


def clear_task_context() -> None:
    """Clear task context after the task run stops."""
    current_task_id.set(None)
    current_task_type.set(None)
    structlog.contextvars.clear_contextvars()


def get_task_logger(name: str = "agent_task_orchestrator") -> structlog.stdlib.BoundLogger:
    """Get a structlog logger carrying the bound task context."""
    return structlog.get_logger(name)


def get_current_task_id() -> str | None:
    return current_task_id.get()


def get_current_task_type() -> str | None:
    return current_task_type.get()
