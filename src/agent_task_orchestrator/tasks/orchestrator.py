"""Agent task orchestrator: drives multi-step tasks through their lifecycle.

Each started task runs in its own asyncio task. Steps within a task run one at
a time in declaration order; different tasks run concurrently. Pause and
cancel are cooperative: they are requested at any time and honored at the next
step boundary, so a step is never interrupted mid-flight.

Every state transition is checkpointed to the task store before execution
moves on. A store outage is logged and the task keeps running in memory.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from ..config import OrchestratorSettings, get_settings
from ..exceptions import (
    ExecutorNotFound,
    InvalidTaskType,
    InvalidTransition,
    StepTimeout,
    StoreUnavailable,
    TaskNotFound,
)
from ..observability import bind_task_context, clear_task_context, get_task_logger
from ..telemetry import AgentPerformanceMetrics, TaskTelemetrySummary, get_metrics, summarize_task
from .models import AgentStep, AgentTask, StepStatus, TaskStatus, elapsed_ms, truncate_error, utc_now
from .registry import ExecutorRegistry, StepContext, invoke_executor
from .store import InMemoryTaskStore, TaskStore
from .templates import TemplateCatalog, default_catalog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskEvent:
    """Lifecycle notification. ``task`` and ``step`` are snapshots."""

    type: str
    task: AgentTask
    step: AgentStep | None = None


TaskListener = Callable[[TaskEvent], Awaitable[None] | None]


@dataclass
class _TaskRun:
    """Live state of one task plus its pending control requests."""

    task: AgentTask
    pause_requested: bool = False
    cancel_requested: bool = False
    runner: asyncio.Task | None = None
    # Serializes checkpoint writes for this task so a later write never lands first
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def _error_message(error: BaseException) -> str:
    message = str(error)
    return message if message.strip() else type(error).__name__


class Orchestrator:
    """Runs agent tasks and exposes their lifecycle controls.

    Args:
        registry: Executors for step actions
        store: Durable task store. Defaults to an in-memory store.
        catalog: Task type templates. Defaults to the built-in templates.
        settings: Retry/timeout behavior. Defaults to application settings.
    """

    def __init__(
        self,
        registry: ExecutorRegistry,
        store: TaskStore | None = None,
        catalog: TemplateCatalog | None = None,
        settings: OrchestratorSettings | None = None,
    ):
        self.registry = registry
        self.store: TaskStore = store if store is not None else InMemoryTaskStore()
        self.catalog = catalog if catalog is not None else default_catalog()
        self.settings = settings if settings is not None else get_settings().orchestrator
        self._runs: dict[str, _TaskRun] = {}
        self._listeners: list[TaskListener] = []

    # --- Events ---

    def subscribe(self, listener: TaskListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: TaskListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _emit(self, event_type: str, task: AgentTask, step: AgentStep | None = None) -> None:
        if not self._listeners:
            return
        event = TaskEvent(
            type=event_type,
            task=task.snapshot(),
            step=step.model_copy(deep=True) if step is not None else None,
        )
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Listener failed on {event_type} for task {task.id}: {e}", exc_info=True)

    # --- Checkpoints ---

    async def _checkpoint(self, run: _TaskRun, *steps: AgentStep) -> None:
        """Write the task (and the given steps) to the store.

        Writes the state as it is when the lock is acquired, so queued writes
        never roll a record back.
        """
        task = run.task
        async with run.write_lock:
            try:
                await self.store.upsert_task(task)
                for step in steps:
                    await self.store.upsert_step(task.id, step)
            except StoreUnavailable as e:
                logger.warning(f"Checkpoint for task {task.id} not persisted, continuing in memory: {e}")

    # --- Lookup ---

    def _get_run(self, task_id: str) -> _TaskRun:
        run = self._runs.get(task_id)
        if run is None:
            raise TaskNotFound(task_id)
        return run

    async def get_task(self, task_id: str) -> AgentTask:
        """Point-in-time snapshot of a task."""
        return self._get_run(task_id).task.snapshot()

    async def get_task_steps(self, task_id: str) -> list[AgentStep]:
        return [step.model_copy(deep=True) for step in self._get_run(task_id).task.steps]

    async def list_workspace_tasks(self, workspace_id: int) -> list[AgentTask]:
        return [run.task.snapshot() for run in self._runs.values() if run.task.workspace_id == workspace_id]

    async def get_task_telemetry(self, task_id: str) -> TaskTelemetrySummary:
        return summarize_task(self._get_run(task_id).task)

    async def get_metrics(self, workspace_id: int, period_hours: float | None = None) -> AgentPerformanceMetrics:
        """Aggregate metrics for a workspace from the task store; never raises."""
        telemetry = get_settings().telemetry
        hours = period_hours if period_hours is not None else telemetry.default_period_hours
        return await get_metrics(self.store, workspace_id, hours, top_n=telemetry.top_n)

    # --- Lifecycle ---

    async def create_task(self, workspace_id: int, task_type: str, params: dict[str, Any] | None = None) -> AgentTask:
        """Create a queued task from the template for ``task_type``.

        Raises:
            InvalidTaskType: If no template exists for ``task_type``
        """
        template = self.catalog.get(task_type)
        if template is None:
            raise InvalidTaskType(task_type)

        params = dict(params or {})
        task = AgentTask(
            workspace_id=workspace_id,
            type=task_type,
            description=template.describe(params),
            steps=template.build_steps(params, self.settings.default_max_retries),
            params=params,
        )
        task.telemetry.last_heartbeat = utc_now()

        missing = self.registry.missing(dict.fromkeys(step.action for step in task.steps))
        if missing:
            logger.warning(f"Task {task.id} ({task_type}) uses actions with no executor: {', '.join(missing)}")

        run = _TaskRun(task=task)
        self._runs[task.id] = run
        await self._checkpoint(run, *task.steps)

        get_task_logger().info("task_created", task_id=task.id, task_type=task_type, workspace_id=workspace_id)
        logger.info(f"Created task {task.id} ({task_type}) for workspace {workspace_id} with {len(task.steps)} steps")
        await self._emit("task:created", task)
        return task.snapshot()

    async def start(self, task_id: str) -> None:
        """Start a queued task in the background. No-op if already running.

        Raises:
            TaskNotFound: If the task is unknown
            InvalidTransition: If the task is paused or terminal
        """
        run = self._get_run(task_id)
        task = run.task
        if task.status == TaskStatus.RUNNING:
            return
        if task.status != TaskStatus.QUEUED:
            raise InvalidTransition(task_id, "start", task.status.value)

        task.status = TaskStatus.RUNNING
        task.started_at = utc_now()
        task.telemetry.last_heartbeat = task.started_at
        self._launch(run)

        await self._checkpoint(run)
        logger.info(f"Started task {task_id}")
        await self._emit("task:started", task)

    async def pause(self, task_id: str) -> None:
        """Request a pause at the next step boundary. No-op if already paused.

        Raises:
            TaskNotFound: If the task is unknown
            InvalidTransition: If the task is not running
        """
        run = self._get_run(task_id)
        status = run.task.status
        if status == TaskStatus.PAUSED:
            return
        if status != TaskStatus.RUNNING:
            raise InvalidTransition(task_id, "pause", status.value)
        if run.pause_requested or run.cancel_requested:
            return

        run.pause_requested = True
        logger.info(f"Pause requested for task {task_id}")

    async def resume(self, task_id: str) -> None:
        """Continue a paused task from its first unfinished step.

        No-op if the task is running. A pause requested on a running task stays
        pending, and the task still pauses at its next step boundary.

        Raises:
            TaskNotFound: If the task is unknown
            InvalidTransition: If the task is neither paused nor running
        """
        run = self._get_run(task_id)
        task = run.task
        if task.status == TaskStatus.RUNNING:
            return
        if task.status != TaskStatus.PAUSED:
            raise InvalidTransition(task_id, "resume", task.status.value)

        task.status = TaskStatus.RUNNING
        task.telemetry.last_heartbeat = utc_now()
        self._launch(run)

        await self._checkpoint(run)
        logger.info(f"Resumed task {task_id}")
        await self._emit("task:resumed", task)

    async def cancel(self, task_id: str) -> None:
        """Cancel a task.

        Queued and paused tasks are cancelled at once. A running task finishes
        its in-flight step first and starts no further steps.

        Raises:
            TaskNotFound: If the task is unknown
            InvalidTransition: If the task is already terminal
        """
        run = self._get_run(task_id)
        task = run.task
        if task.is_terminal:
            raise InvalidTransition(task_id, "cancel", task.status.value)

        if task.status == TaskStatus.RUNNING:
            if not run.cancel_requested:
                run.cancel_requested = True
                logger.info(f"Cancel requested for task {task_id}")
            return

        await self._finish_cancelled(run)

    async def wait(self, task_id: str, timeout: float | None = None) -> AgentTask:
        """Wait until the task stops running (terminal or paused) and return a snapshot.

        Raises:
            TaskNotFound: If the task is unknown
            TimeoutError: If the task is still running after ``timeout`` seconds
        """
        run = self._get_run(task_id)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        while run.runner is not None and not run.runner.done():
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            done, _ = await asyncio.wait({run.runner}, timeout=remaining)
            if not done:
                raise TimeoutError(f"Task {task_id} still {run.task.status.value} after {timeout}s")
        return run.task.snapshot()

    async def restore_task(self, task_id: str) -> AgentTask:
        """Load a checkpointed task from the store into this orchestrator.

        A task that was running when its process died comes back ``paused``
        with its interrupted step reset to ``pending``, ready for ``resume``.

        Raises:
            TaskNotFound: If the store has no such task
        """
        if task_id in self._runs:
            return self._runs[task_id].task.snapshot()

        try:
            task = await self.store.load_task(task_id)
        except StoreUnavailable as e:
            raise TaskNotFound(task_id) from e
        if task is None:
            raise TaskNotFound(task_id)

        run = _TaskRun(task=task)
        self._runs[task_id] = run
        if task.status == TaskStatus.RUNNING:
            interrupted = [step for step in task.steps if step.status == StepStatus.RUNNING]
            for step in interrupted:
                step.status = StepStatus.PENDING
                step.started_at = None
            task.status = TaskStatus.PAUSED
            await self._checkpoint(run, *interrupted)
            logger.info(f"Restored interrupted task {task_id} as paused")
        return task.snapshot()

    async def shutdown(self) -> None:
        """Cancel all background runners."""
        runners = [run.runner for run in self._runs.values() if run.runner is not None and not run.runner.done()]
        for runner in runners:
            runner.cancel()
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)

    # --- Execution ---

    def _launch(self, run: _TaskRun) -> None:
        run.runner = asyncio.create_task(self._run(run), name=f"agent-task-{run.task.id}")

    async def _run(self, run: _TaskRun) -> None:
        """Execute steps until the task finishes, fails, or is paused/cancelled."""
        task = run.task
        bind_task_context(task.id, task.type)
        try:
            while True:
                index = task.next_step_index()
                if index is None:
                    await self._finish_completed(run)
                    return
                if run.cancel_requested:
                    await self._finish_cancelled(run)
                    return
                if run.pause_requested:
                    await self._finish_paused(run)
                    return
                if not await self._execute_step(run, index):
                    return
        except asyncio.CancelledError:
            logger.info(f"Runner for task {task.id} cancelled during shutdown")
            raise
        except Exception as e:
            logger.error(f"Task {task.id} aborted by an internal error: {e}", exc_info=True)
            if not task.is_terminal:
                await self._finish_failed(run, f"Internal error: {_error_message(e)}")
        finally:
            clear_task_context()

    def _step_context(self, task: AgentTask, index: int) -> StepContext:
        step = task.steps[index]
        return StepContext(
            workspace_id=task.workspace_id,
            task_id=task.id,
            task_type=task.type,
            step_id=step.id,
            action=step.action,
            params=MappingProxyType(dict(step.params)),
            task_params=MappingProxyType(dict(task.params)),
            previous_results=MappingProxyType(task.previous_results(index)),
            attempt=step.retry_count + 1,
        )

    async def _call_executor(self, step: AgentStep, ctx: StepContext) -> Any:
        executor = self.registry.resolve(step.action)
        if executor is None:
            raise ExecutorNotFound(step.action)

        timeout = self.settings.step_timeout_seconds
        if timeout is None:
            return await invoke_executor(executor, ctx)
        try:
            return await asyncio.wait_for(invoke_executor(executor, ctx), timeout)
        except TimeoutError as e:
            raise StepTimeout(f"Timeout: step {step.id} exceeded {timeout}s") from e

    async def _execute_step(self, run: _TaskRun, index: int) -> bool:
        """Run one step, retrying per its policy. Returns False if the task failed."""
        task = run.task
        step = task.steps[index]
        task_logger = get_task_logger()

        while True:
            step.status = StepStatus.RUNNING
            step.started_at = utc_now()
            step.completed_at = None
            step.duration_ms = None
            step.error = None
            task.telemetry.last_heartbeat = step.started_at
            await self._checkpoint(run, step)
            task_logger.info("step_started", step_id=step.id, action=step.action, attempt=step.retry_count + 1)
            await self._emit("step:started", task, step)

            try:
                result = await self._call_executor(step, self._step_context(task, index))
            except ExecutorNotFound as e:
                # Configuration error: no retry
                await self._fail_step(run, step, _error_message(e))
                return False
            except Exception as e:
                message = _error_message(e)
                if step.retry_count < step.max_retries:
                    step.retry_count += 1
                    step.status = StepStatus.FAILED
                    step.error = truncate_error(message)
                    task.telemetry.step_retries[step.id] = step.retry_count
                    await self._checkpoint(run, step)
                    task_logger.warning(
                        "step_retrying", step_id=step.id, action=step.action, retry=step.retry_count, error=message
                    )
                    await self._emit("step:retrying", task, step)
                    if self.settings.retry_delay_seconds:
                        await asyncio.sleep(self.settings.retry_delay_seconds)
                    continue

                await self._fail_step(run, step, message)
                return False

            step.result = result
            step.status = StepStatus.COMPLETED
            step.completed_at = utc_now()
            step.duration_ms = elapsed_ms(step.started_at, step.completed_at)
            task.telemetry.last_heartbeat = step.completed_at
            await self._checkpoint(run, step)
            task_logger.info("step_completed", step_id=step.id, action=step.action, duration_ms=step.duration_ms)
            await self._emit("step:completed", task, step)
            return True

    async def _fail_step(self, run: _TaskRun, step: AgentStep, message: str) -> None:
        task = run.task
        step.status = StepStatus.FAILED
        step.error = truncate_error(message)
        step.completed_at = utc_now()
        if step.started_at:
            step.duration_ms = elapsed_ms(step.started_at, step.completed_at)
        task.telemetry.tag_error(step.action)
        await self._checkpoint(run, step)
        get_task_logger().error("step_failed", step_id=step.id, action=step.action, error=message)
        await self._emit("step:failed", task, step)
        await self._finish_failed(run, step.error)

    # --- Terminal / suspended states ---

    def _stamp_completion(self, task: AgentTask) -> None:
        task.completed_at = utc_now()
        task.telemetry.last_heartbeat = task.completed_at
        if task.started_at:
            task.telemetry.task_duration_ms = elapsed_ms(task.started_at, task.completed_at)

    async def _finish_completed(self, run: _TaskRun) -> None:
        task = run.task
        task.status = TaskStatus.COMPLETED
        self._stamp_completion(task)
        run.pause_requested = run.cancel_requested = False
        await self._checkpoint(run)
        get_task_logger().info("task_completed", duration_ms=task.telemetry.task_duration_ms)
        logger.info(f"Task {task.id} completed")
        await self._emit("task:completed", task)

    async def _finish_failed(self, run: _TaskRun, error: str | None) -> None:
        task = run.task
        task.status = TaskStatus.FAILED
        task.error = error
        self._stamp_completion(task)
        run.pause_requested = run.cancel_requested = False
        await self._checkpoint(run)
        get_task_logger().error("task_failed", error=error)
        logger.error(f"Task {task.id} failed: {error}")
        await self._emit("task:failed", task)

    async def _finish_cancelled(self, run: _TaskRun) -> None:
        task = run.task
        task.status = TaskStatus.CANCELLED
        self._stamp_completion(task)
        run.pause_requested = run.cancel_requested = False
        await self._checkpoint(run)
        get_task_logger().info("task_cancelled")
        logger.info(f"Task {task.id} cancelled")
        await self._emit("task:cancelled", task)

    async def _finish_paused(self, run: _TaskRun) -> None:
        task = run.task
        task.status = TaskStatus.PAUSED
        task.telemetry.last_heartbeat = utc_now()
        run.pause_requested = False
        # A resume may land while the checkpoint is awaited
        paused = task.snapshot()
        await self._checkpoint(run)
        get_task_logger().info("task_paused")
        logger.info(f"Task {task.id} paused")
        await self._emit("task:paused", paused)
