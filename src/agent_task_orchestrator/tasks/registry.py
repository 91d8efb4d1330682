"""Step executor registry: maps an action name to the callable that performs it."""

import inspect
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from functools import partial
from types import MappingProxyType
from typing import Any

from anyio import to_thread

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepContext:
    """Everything an executor may read while performing one step.

    ``previous_results`` is a read-only view of the results of the steps that
    completed before this one, keyed by their action.
    """

    workspace_id: int
    task_id: str
    task_type: str
    step_id: str
    action: str
    params: Mapping[str, Any] = field(default_factory=dict)
    task_params: Mapping[str, Any] = field(default_factory=dict)
    previous_results: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    attempt: int = 1


# Executors return the step result or raise to report failure.
StepExecutor = Callable[[StepContext], Any]


def _is_async(fn: Callable[..., Any]) -> bool:
    return inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(getattr(fn, "__call__", None))


async def invoke_executor(executor: StepExecutor, ctx: StepContext) -> Any:
    """Run an executor; synchronous executors run in a worker thread."""
    if _is_async(executor):
        return await executor(ctx)

    result = await to_thread.run_sync(partial(executor, ctx))
    if inspect.isawaitable(result):
        return await result
    return result


class ExecutorRegistry:
    """Lookup from ``action`` to step executor.

    Built by the host application at start-up and handed to the orchestrator.
    """

    def __init__(self, executors: Mapping[str, StepExecutor] | None = None):
        self._executors: dict[str, StepExecutor] = {}
        for action, fn in (executors or {}).items():
            self.register(action, fn)

    def register(self, action: str, fn: StepExecutor | None = None, *, replace: bool = False):
        """Register ``fn`` for ``action``. Without ``fn`` this returns a decorator."""
        if fn is None:

            def decorator(func: StepExecutor) -> StepExecutor:
                self.register(action, func, replace=replace)
                return func

            return decorator

        if not action:
            raise ValueError("Action name must be non-empty")
        if action in self._executors and not replace:
            raise ValueError(f"Executor already registered for action: {action}")
        self._executors[action] = fn
        logger.debug(f"Registered executor for action: {action}")
        return fn

    def resolve(self, action: str) -> StepExecutor | None:
        return self._executors.get(action)

    def actions(self) -> list[str]:
        return list(self._executors)

    def missing(self, actions: Iterable[str]) -> list[str]:
        """Actions from ``actions`` with no registered executor."""
        return [action for action in actions if action not in self._executors]

    def __contains__(self, action: object) -> bool:
        return action in self._executors

    def __len__(self) -> int:
        return len(self._executors)


def _echo_executor(action: str) -> StepExecutor:
    async def execute(ctx: StepContext) -> dict[str, Any]:
        return {
            "action": action,
            "params": dict(ctx.params),
            "inputs": sorted(ctx.previous_results),
        }

    return execute


def demo_registry(actions: Iterable[str]) -> ExecutorRegistry:
    """Registry where every action echoes its params and the inputs it saw.

    Used when no host executors are available (demo/offline mode).
    """
    registry = ExecutorRegistry()
    for action in actions:
        if action not in registry:
            registry.register(action, _echo_executor(action))
    return registry
