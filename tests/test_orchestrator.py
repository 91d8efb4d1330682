"""Tests for the agent task orchestrator lifecycle, retries and checkpoints."""

import asyncio

import pytest
from conftest import THESIS_ACTIONS, Gate, ok_executor, ok_registry

from agent_task_orchestrator.config import OrchestratorSettings
from agent_task_orchestrator.exceptions import (
    InvalidTaskType,
    InvalidTransition,
    StepExecutionError,
    StoreUnavailable,
    TaskNotFound,
)
from agent_task_orchestrator.tasks.models import AgentStep, AgentTask, StepStatus, TaskStatus
from agent_task_orchestrator.tasks.orchestrator import Orchestrator
from agent_task_orchestrator.tasks.registry import ExecutorRegistry, StepContext
from agent_task_orchestrator.tasks.store import InMemoryTaskStore
from agent_task_orchestrator.tasks.templates import StepTemplate, TaskTemplate, TemplateCatalog


def two_step_catalog(max_retries: int | None = None) -> TemplateCatalog:
    return TemplateCatalog(
        [
            TaskTemplate(
                type="two-step",
                description="Two step task",
                steps=(
                    StepTemplate(id="s1", name="First", action="first", max_retries=max_retries),
                    StepTemplate(id="s2", name="Second", action="second"),
                ),
            )
        ]
    )


def make_orchestrator(registry=None, store=None, catalog=None, **settings) -> Orchestrator:
    return Orchestrator(
        registry if registry is not None else ok_registry(),
        store=store if store is not None else InMemoryTaskStore(),
        catalog=catalog,
        settings=OrchestratorSettings(**settings),
    )


class _HeldPauseStore(InMemoryTaskStore):
    """Holds the first paused checkpoint until released."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self._held = False

    async def upsert_task(self, task: AgentTask) -> None:
        if task.status == TaskStatus.PAUSED and not self._held:
            self._held = True
            self.entered.set()
            await self.release.wait()
        await super().upsert_task(task)


class TestCreateTask:
    """Tests for task creation."""

    @pytest.mark.asyncio
    async def test_steps_follow_template(self):
        """Created task has the template's steps in order, all pending."""
        orchestrator = make_orchestrator()
        task = await orchestrator.create_task(7, "thesis-validation")

        assert task.status == TaskStatus.QUEUED
        assert task.workspace_id == 7
        assert task.description == "Validate investment thesis"
        assert [s.action for s in task.steps] == THESIS_ACTIONS
        assert all(s.status == StepStatus.PENDING for s in task.steps)
        assert task.started_at is None
        assert task.id.startswith("task_")

    @pytest.mark.asyncio
    async def test_description_uses_params(self):
        orchestrator = make_orchestrator(registry=ExecutorRegistry())
        task = await orchestrator.create_task(1, "analyze-10k", {"ticker": "BRK"})
        assert task.description == "Analyze 10-K filing for BRK"
        assert task.steps[0].description == "Download latest 10-K filing for BRK"
        assert task.params == {"ticker": "BRK"}

    @pytest.mark.asyncio
    async def test_unknown_type_creates_nothing(self, memory_store):
        """Unknown task types are rejected before any state is created."""
        orchestrator = make_orchestrator(store=memory_store)

        with pytest.raises(InvalidTaskType, match="no-such-type"):
            await orchestrator.create_task(1, "no-such-type")

        assert await orchestrator.list_workspace_tasks(1) == []
        assert await memory_store.list_task_results(1) == []

    @pytest.mark.asyncio
    async def test_initial_checkpoint(self, memory_store):
        orchestrator = make_orchestrator(store=memory_store)
        task = await orchestrator.create_task(1, "thesis-validation")

        stored = await memory_store.get_task_result(task.id)
        assert stored is not None
        assert stored.status == TaskStatus.QUEUED
        steps = await memory_store.get_step_results(task.id)
        assert [s.step_id for s in steps] == [s.id for s in task.steps]

    @pytest.mark.asyncio
    async def test_snapshots_are_isolated(self):
        """Mutating a returned snapshot does not affect orchestrator state."""
        orchestrator = make_orchestrator()
        task = await orchestrator.create_task(1, "thesis-validation")
        task.steps[0].status = StepStatus.COMPLETED

        fresh = await orchestrator.get_task(task.id)
        assert fresh.steps[0].status == StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_task_id(self):
        orchestrator = make_orchestrator()
        with pytest.raises(TaskNotFound):
            await orchestrator.get_task("task_missing")
        with pytest.raises(TaskNotFound):
            await orchestrator.start("task_missing")


class TestExecution:
    """Tests for sequential step execution."""

    @pytest.mark.asyncio
    async def test_runs_to_completion(self, memory_store):
        orchestrator = make_orchestrator(store=memory_store)
        task = await orchestrator.create_task(1, "thesis-validation")
        await orchestrator.start(task.id)
        done = await orchestrator.wait(task.id, timeout=5)

        assert done.status == TaskStatus.COMPLETED
        assert done.error is None
        assert done.completed_at is not None
        assert done.telemetry.task_duration_ms is not None
        for step in done.steps:
            assert step.status == StepStatus.COMPLETED
            assert step.result == {"action": step.action, "attempt": 1}
            assert step.duration_ms is not None and step.duration_ms >= 0
            assert step.completed_at >= step.started_at

        stored = await memory_store.get_task_result(task.id)
        assert stored.status == TaskStatus.COMPLETED
        assert stored.result_summary["completedSteps"] == 5
        assert stored.result_summary["completionRate"] == 100

    @pytest.mark.asyncio
    async def test_steps_run_in_order_with_prior_results(self):
        """Each step sees the results of exactly the steps before it."""
        seen: list[tuple[str, list[str]]] = []
        registry = ExecutorRegistry()
        for action in THESIS_ACTIONS:

            async def execute(ctx: StepContext, action=action):
                seen.append((action, sorted(ctx.previous_results)))
                return action.upper()

            registry.register(action, execute)

        orchestrator = make_orchestrator(registry=registry)
        task = await orchestrator.create_task(1, "thesis-validation", {"ticker": "KO"})
        await orchestrator.start(task.id)
        await orchestrator.wait(task.id, timeout=5)

        assert [action for action, _ in seen] == THESIS_ACTIONS
        for index, (_, previous) in enumerate(seen):
            assert previous == sorted(THESIS_ACTIONS[:index])

    @pytest.mark.asyncio
    async def test_context_carries_params(self):
        captured: list[StepContext] = []

        async def capture(ctx: StepContext):
            captured.append(ctx)
            return None

        registry = ExecutorRegistry({"first": capture, "second": ok_executor("second")})
        orchestrator = make_orchestrator(registry=registry, catalog=two_step_catalog())
        task = await orchestrator.create_task(3, "two-step", {"ticker": "MSFT"})
        await orchestrator.start(task.id)
        await orchestrator.wait(task.id, timeout=5)

        ctx = captured[0]
        assert ctx.workspace_id == 3
        assert ctx.task_id == task.id
        assert ctx.step_id == "s1"
        assert ctx.task_params["ticker"] == "MSFT"
        assert ctx.attempt == 1

    @pytest.mark.asyncio
    async def test_sync_executor(self):
        def blocking(ctx: StepContext):
            return {"sync": True}

        registry = ExecutorRegistry({"first": blocking, "second": ok_executor("second")})
        orchestrator = make_orchestrator(registry=registry, catalog=two_step_catalog())
        task = await orchestrator.create_task(1, "two-step")
        await orchestrator.start(task.id)
        done = await orchestrator.wait(task.id, timeout=5)

        assert done.status == TaskStatus.COMPLETED
        assert done.steps[0].result == {"sync": True}

    @pytest.mark.asyncio
    async def test_start_is_idempotent_while_running(self):
        gate = Gate()
        registry = ExecutorRegistry({"first": gate, "second": ok_executor("second")})
        orchestrator = make_orchestrator(registry=registry, catalog=two_step_catalog())
        task = await orchestrator.create_task(1, "two-step")

        await orchestrator.start(task.id)
        await gate.entered.wait()
        await orchestrator.start(task.id)
        gate.release.set()
        done = await orchestrator.wait(task.id, timeout=5)

        assert done.status == TaskStatus.COMPLETED
        assert gate.calls == 1

    @pytest.mark.asyncio
    async def test_start_terminal_task_rejected(self):
        orchestrator = make_orchestrator()
        task = await orchestrator.create_task(1, "thesis-validation")
        await orchestrator.start(task.id)
        await orchestrator.wait(task.id, timeout=5)

        with pytest.raises(InvalidTransition, match="completed"):
            await orchestrator.start(task.id)

    @pytest.mark.asyncio
    async def test_concurrent_tasks(self):
        orchestrator = make_orchestrator()
        tasks = [await orchestrator.create_task(1, "thesis-validation") for _ in range(5)]
        for task in tasks:
            await orchestrator.start(task.id)
        results = await asyncio.gather(*(orchestrator.wait(t.id, timeout=5) for t in tasks))

        assert all(r.status == TaskStatus.COMPLETED for r in results)
        assert len(await orchestrator.list_workspace_tasks(1)) == 5
        assert await orchestrator.list_workspace_tasks(2) == []


class TestRetries:
    """Tests for step retry policy."""

    @pytest.mark.asyncio
    async def test_transient_failure_recovers(self):
        attempts: list[int] = []

        async def flaky(ctx: StepContext):
            attempts.append(ctx.attempt)
            if len(attempts) < 2:
                raise StepExecutionError("Rate limited: try again")
            return "ok"

        registry = ExecutorRegistry({"first": flaky, "second": ok_executor("second")})
        orchestrator = make_orchestrator(registry=registry, catalog=two_step_catalog(max_retries=2))
        task = await orchestrator.create_task(1, "two-step")
        await orchestrator.start(task.id)
        done = await orchestrator.wait(task.id, timeout=5)

        assert done.status == TaskStatus.COMPLETED
        assert attempts == [1, 2]
        step = done.steps[0]
        assert step.status == StepStatus.COMPLETED
        assert step.retry_count == 1
        assert step.error is None
        assert step.result == "ok"
        assert done.telemetry.step_retries == {"s1": 1}

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        """maxRetries=n allows n retries; the step then fails the task."""
        calls = 0

        async def broken(ctx: StepContext):
            nonlocal calls
            calls += 1
            raise RuntimeError("Upstream error: 503")

        registry = ExecutorRegistry({"first": broken, "second": ok_executor("second")})
        orchestrator = make_orchestrator(registry=registry, catalog=two_step_catalog(max_retries=2))
        task = await orchestrator.create_task(1, "two-step")
        await orchestrator.start(task.id)
        done = await orchestrator.wait(task.id, timeout=5)

        assert calls == 3
        assert done.status == TaskStatus.FAILED
        assert done.error == "Upstream error: 503"
        assert done.steps[0].status == StepStatus.FAILED
        assert done.steps[0].retry_count == 2
        assert done.steps[0].completed_at is not None
        assert done.steps[0].duration_ms is not None
        assert done.steps[1].status == StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_no_retries_by_default(self):
        calls = 0

        async def broken(ctx: StepContext):
            nonlocal calls
            calls += 1
            raise RuntimeError("boom")

        registry = ExecutorRegistry({"first": broken, "second": ok_executor("second")})
        orchestrator = make_orchestrator(registry=registry, catalog=two_step_catalog())
        task = await orchestrator.create_task(1, "two-step")
        await orchestrator.start(task.id)
        done = await orchestrator.wait(task.id, timeout=5)

        assert calls == 1
        assert done.steps[0].retry_count == 0
        assert done.status == TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_default_max_retries_setting(self):
        calls = 0

        async def broken(ctx: StepContext):
            nonlocal calls
            calls += 1
            raise RuntimeError("boom")

        registry = ExecutorRegistry({"first": broken, "second": ok_executor("second")})
        orchestrator = make_orchestrator(registry=registry, catalog=two_step_catalog(), default_max_retries=1)
        task = await orchestrator.create_task(1, "two-step")
        await orchestrator.start(task.id)
        done = await orchestrator.wait(task.id, timeout=5)

        assert calls == 2
        assert done.steps[0].max_retries == 1
        assert done.steps[0].retry_count == 1

    @pytest.mark.asyncio
    async def test_empty_error_message_uses_exception_name(self):
        async def broken(ctx: StepContext):
            raise ValueError()

        registry = ExecutorRegistry({"first": broken, "second": ok_executor("second")})
        orchestrator = make_orchestrator(registry=registry, catalog=two_step_catalog())
        task = await orchestrator.create_task(1, "two-step")
        await orchestrator.start(task.id)
        done = await orchestrator.wait(task.id, timeout=5)

        assert done.error == "ValueError"

    @pytest.mark.asyncio
    async def test_step_timeout(self):
        async def hangs(ctx: StepContext):
            await asyncio.sleep(10)

        registry = ExecutorRegistry({"first": hangs, "second": ok_executor("second")})
        orchestrator = make_orchestrator(registry=registry, catalog=two_step_catalog(), step_timeout_seconds=0.05)
        task = await orchestrator.create_task(1, "two-step")
        await orchestrator.start(task.id)
        done = await orchestrator.wait(task.id, timeout=5)

        assert done.status == TaskStatus.FAILED
        assert done.steps[0].error.startswith("Timeout: step s1")


class TestFailure:
    """Tests for step failure propagation."""

    @pytest.mark.asyncio
    async def test_thesis_validation_evidence_failure(self, memory_store):
        """A failing step 2 fails the task and leaves later steps pending."""

        async def no_data(ctx: StepContext):
            raise StepExecutionError("Data source unavailable")

        registry = ok_registry()
        registry.register("gather_evidence", no_data, replace=True)
        orchestrator = make_orchestrator(registry=registry, store=memory_store)
        task = await orchestrator.create_task(1, "thesis-validation")
        await orchestrator.start(task.id)
        done = await orchestrator.wait(task.id, timeout=5)

        assert [s.status for s in done.steps] == [
            StepStatus.COMPLETED,
            StepStatus.FAILED,
            StepStatus.PENDING,
            StepStatus.PENDING,
            StepStatus.PENDING,
        ]
        assert done.status == TaskStatus.FAILED
        assert done.error == "Data source unavailable"
        assert done.steps[1].error == "Data source unavailable"
        assert done.telemetry.error_tags == ["step_gather_evidence_failed"]

        stored = await memory_store.get_task_result(task.id)
        assert stored.status == TaskStatus.FAILED
        assert stored.error == "Data source unavailable"

    @pytest.mark.asyncio
    async def test_missing_executor_fails_without_retry(self):
        registry = ExecutorRegistry({a: ok_executor(a) for a in THESIS_ACTIONS if a != "gather_evidence"})
        orchestrator = make_orchestrator(registry=registry, default_max_retries=3)
        task = await orchestrator.create_task(1, "thesis-validation")
        await orchestrator.start(task.id)
        done = await orchestrator.wait(task.id, timeout=5)

        step = done.steps[1]
        assert step.status == StepStatus.FAILED
        assert step.error.startswith("ExecutorNotFound")
        assert step.retry_count == 0
        assert step.started_at is not None
        assert done.status == TaskStatus.FAILED
        assert done.error == step.error

    @pytest.mark.asyncio
    async def test_long_errors_truncated(self):
        async def verbose(ctx: StepContext):
            raise RuntimeError("x" * 5000)

        registry = ExecutorRegistry({"first": verbose, "second": ok_executor("second")})
        orchestrator = make_orchestrator(registry=registry, catalog=two_step_catalog())
        task = await orchestrator.create_task(1, "two-step")
        await orchestrator.start(task.id)
        done = await orchestrator.wait(task.id, timeout=5)

        assert len(done.steps[0].error) == 2000


class TestPauseResume:
    """Tests for cooperative pause and resume."""

    @pytest.mark.asyncio
    async def test_pause_takes_effect_after_current_step(self):
        gate = Gate()
        second_calls = 0

        async def second(ctx: StepContext):
            nonlocal second_calls
            second_calls += 1
            return "second"

        registry = ExecutorRegistry({"first": gate, "second": second})
        orchestrator = make_orchestrator(registry=registry, catalog=two_step_catalog())
        task = await orchestrator.create_task(1, "two-step")
        await orchestrator.start(task.id)
        await gate.entered.wait()

        await orchestrator.pause(task.id)
        # Still running until the in-flight step finishes
        assert (await orchestrator.get_task(task.id)).status == TaskStatus.RUNNING

        gate.release.set()
        paused = await orchestrator.wait(task.id, timeout=5)

        assert paused.status == TaskStatus.PAUSED
        assert paused.steps[0].status == StepStatus.COMPLETED
        assert paused.steps[1].status == StepStatus.PENDING
        assert paused.running_step is None
        assert second_calls == 0

        await orchestrator.resume(task.id)
        done = await orchestrator.wait(task.id, timeout=5)

        assert done.status == TaskStatus.COMPLETED
        assert second_calls == 1
        assert gate.calls == 1

    @pytest.mark.asyncio
    async def test_idempotent_pause_and_resume(self):
        gate = Gate()
        registry = ExecutorRegistry({"first": gate, "second": ok_executor("second")})
        orchestrator = make_orchestrator(registry=registry, catalog=two_step_catalog())
        task = await orchestrator.create_task(1, "two-step")
        await orchestrator.start(task.id)
        await gate.entered.wait()

        # Resume on a running task changes nothing
        await orchestrator.resume(task.id)
        assert (await orchestrator.get_task(task.id)).status == TaskStatus.RUNNING

        await orchestrator.pause(task.id)
        await orchestrator.pause(task.id)
        gate.release.set()
        await orchestrator.wait(task.id, timeout=5)

        before = await orchestrator.get_task(task.id)
        await orchestrator.pause(task.id)
        after = await orchestrator.get_task(task.id)
        assert before.status == after.status == TaskStatus.PAUSED
        assert before.model_dump() == after.model_dump()

    @pytest.mark.asyncio
    async def test_paused_event_reports_paused_when_resumed_mid_checkpoint(self):
        """A resume that lands during the pause checkpoint does not leak into the paused event."""
        gate = Gate()
        store = _HeldPauseStore()
        events: list[TaskStatus] = []

        def listener(event):
            if event.type == "task:paused":
                events.append(event.task.status)

        registry = ExecutorRegistry({"first": gate, "second": ok_executor("second")})
        orchestrator = make_orchestrator(registry=registry, store=store, catalog=two_step_catalog())
        orchestrator.subscribe(listener)
        task = await orchestrator.create_task(1, "two-step")
        await orchestrator.start(task.id)
        await gate.entered.wait()
        await orchestrator.pause(task.id)
        gate.release.set()

        await store.entered.wait()
        resume_call = asyncio.create_task(orchestrator.resume(task.id))
        await asyncio.sleep(0)
        store.release.set()
        await resume_call
        done = await orchestrator.wait(task.id, timeout=5)

        assert events == [TaskStatus.PAUSED]
        assert done.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_resume_while_running_leaves_pause_pending(self):
        gate = Gate()
        registry = ExecutorRegistry({"first": gate, "second": ok_executor("second")})
        orchestrator = make_orchestrator(registry=registry, catalog=two_step_catalog())
        task = await orchestrator.create_task(1, "two-step")
        await orchestrator.start(task.id)
        await gate.entered.wait()

        await orchestrator.pause(task.id)
        await orchestrator.resume(task.id)
        gate.release.set()
        result = await orchestrator.wait(task.id, timeout=5)

        assert result.status == TaskStatus.PAUSED
        assert result.steps[1].status == StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_invalid_transitions(self):
        orchestrator = make_orchestrator()
        task = await orchestrator.create_task(1, "thesis-validation")

        with pytest.raises(InvalidTransition):
            await orchestrator.pause(task.id)
        with pytest.raises(InvalidTransition):
            await orchestrator.resume(task.id)

        await orchestrator.start(task.id)
        await orchestrator.wait(task.id, timeout=5)

        with pytest.raises(InvalidTransition):
            await orchestrator.pause(task.id)
        with pytest.raises(InvalidTransition):
            await orchestrator.resume(task.id)

    @pytest.mark.asyncio
    async def test_start_on_paused_task_rejected(self):
        gate = Gate()
        registry = ExecutorRegistry({"first": gate, "second": ok_executor("second")})
        orchestrator = make_orchestrator(registry=registry, catalog=two_step_catalog())
        task = await orchestrator.create_task(1, "two-step")
        await orchestrator.start(task.id)
        await gate.entered.wait()
        await orchestrator.pause(task.id)
        gate.release.set()
        await orchestrator.wait(task.id, timeout=5)

        with pytest.raises(InvalidTransition, match="paused"):
            await orchestrator.start(task.id)

    @pytest.mark.asyncio
    async def test_pause_during_last_step_completes(self):
        """With no step left, the task completes even if a pause is pending."""
        gate = Gate()
        registry = ExecutorRegistry({"first": ok_executor("first"), "second": gate})
        orchestrator = make_orchestrator(registry=registry, catalog=two_step_catalog())
        task = await orchestrator.create_task(1, "two-step")
        await orchestrator.start(task.id)
        await gate.entered.wait()
        await orchestrator.pause(task.id)
        gate.release.set()
        done = await orchestrator.wait(task.id, timeout=5)

        assert done.status == TaskStatus.COMPLETED


class TestCancel:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_lets_running_step_finish(self):
        gate = Gate()
        registry = ok_registry()
        registry.register("gather_evidence", gate, replace=True)
        orchestrator = make_orchestrator(registry=registry)
        task = await orchestrator.create_task(1, "thesis-validation")
        await orchestrator.start(task.id)
        await gate.entered.wait()

        await orchestrator.cancel(task.id)
        await orchestrator.cancel(task.id)
        assert (await orchestrator.get_task(task.id)).status == TaskStatus.RUNNING

        gate.release.set()
        done = await orchestrator.wait(task.id, timeout=5)

        assert done.status == TaskStatus.CANCELLED
        assert [s.status for s in done.steps] == [
            StepStatus.COMPLETED,
            StepStatus.COMPLETED,
            StepStatus.PENDING,
            StepStatus.PENDING,
            StepStatus.PENDING,
        ]
        assert done.error is None
        assert done.completed_at is not None

    @pytest.mark.asyncio
    async def test_cancel_queued_task(self, memory_store):
        orchestrator = make_orchestrator(store=memory_store)
        task = await orchestrator.create_task(1, "thesis-validation")
        await orchestrator.cancel(task.id)

        cancelled = await orchestrator.get_task(task.id)
        assert cancelled.status == TaskStatus.CANCELLED
        assert all(s.status == StepStatus.PENDING for s in cancelled.steps)
        assert (await memory_store.get_task_result(task.id)).status == TaskStatus.CANCELLED

        with pytest.raises(InvalidTransition):
            await orchestrator.start(task.id)

    @pytest.mark.asyncio
    async def test_cancel_paused_task(self):
        gate = Gate()
        registry = ExecutorRegistry({"first": gate, "second": ok_executor("second")})
        orchestrator = make_orchestrator(registry=registry, catalog=two_step_catalog())
        task = await orchestrator.create_task(1, "two-step")
        await orchestrator.start(task.id)
        await gate.entered.wait()
        await orchestrator.pause(task.id)
        gate.release.set()
        await orchestrator.wait(task.id, timeout=5)

        await orchestrator.cancel(task.id)
        cancelled = await orchestrator.get_task(task.id)
        assert cancelled.status == TaskStatus.CANCELLED
        assert cancelled.steps[1].status == StepStatus.PENDING

        with pytest.raises(InvalidTransition):
            await orchestrator.resume(task.id)

    @pytest.mark.asyncio
    async def test_cancel_terminal_task_rejected(self):
        orchestrator = make_orchestrator()
        task = await orchestrator.create_task(1, "thesis-validation")
        await orchestrator.start(task.id)
        await orchestrator.wait(task.id, timeout=5)

        with pytest.raises(InvalidTransition, match="Cannot cancel"):
            await orchestrator.cancel(task.id)


class TestEvents:
    """Tests for lifecycle event listeners."""

    @pytest.mark.asyncio
    async def test_event_sequence(self):
        events: list[tuple[str, str | None]] = []

        async def listener(event):
            events.append((event.type, event.step.id if event.step else None))

        orchestrator = make_orchestrator(registry=ok_registry(["first", "second"]), catalog=two_step_catalog())
        orchestrator.subscribe(listener)
        task = await orchestrator.create_task(1, "two-step")
        await orchestrator.start(task.id)
        await orchestrator.wait(task.id, timeout=5)

        assert events == [
            ("task:created", None),
            ("task:started", None),
            ("step:started", "s1"),
            ("step:completed", "s1"),
            ("step:started", "s2"),
            ("step:completed", "s2"),
            ("task:completed", None),
        ]

    @pytest.mark.asyncio
    async def test_retry_events(self):
        events: list[str] = []

        async def broken(ctx: StepContext):
            raise RuntimeError("nope")

        registry = ExecutorRegistry({"first": broken, "second": ok_executor("second")})
        orchestrator = make_orchestrator(registry=registry, catalog=two_step_catalog(max_retries=1))
        orchestrator.subscribe(lambda event: events.append(event.type))
        task = await orchestrator.create_task(1, "two-step")
        await orchestrator.start(task.id)
        await orchestrator.wait(task.id, timeout=5)

        assert events.count("step:started") == 2
        assert events.count("step:retrying") == 1
        assert events[-2:] == ["step:failed", "task:failed"]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_execution(self):
        received: list[str] = []

        def bad_listener(event):
            raise RuntimeError("listener bug")

        orchestrator = make_orchestrator()
        orchestrator.subscribe(bad_listener)
        orchestrator.subscribe(lambda event: received.append(event.type))
        task = await orchestrator.create_task(1, "thesis-validation")
        await orchestrator.start(task.id)
        done = await orchestrator.wait(task.id, timeout=5)

        assert done.status == TaskStatus.COMPLETED
        assert received[-1] == "task:completed"

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        received: list[str] = []

        def listener(event):
            received.append(event.type)

        orchestrator = make_orchestrator()
        orchestrator.subscribe(listener)
        await orchestrator.create_task(1, "thesis-validation")
        orchestrator.unsubscribe(listener)
        await orchestrator.create_task(1, "thesis-validation")

        assert received == ["task:created"]


class _UnavailableStore(InMemoryTaskStore):
    async def upsert_task(self, task: AgentTask) -> None:
        raise StoreUnavailable("database is locked")

    async def upsert_step(self, task_id: str, step: AgentStep) -> None:
        raise StoreUnavailable("database is locked")


class TestCheckpoints:
    """Tests for durable checkpoints."""

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_round_trip_through_sqlite(self, sqlite_store):
        """Stored records reproduce status, retry count and duration."""
        attempts = 0

        async def flaky(ctx: StepContext):
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise RuntimeError("Transient: retry me")
            return {"evidence": ["a", "b"]}

        catalog = TemplateCatalog(
            [
                TaskTemplate(
                    type="evidence",
                    description="Evidence run",
                    steps=(
                        StepTemplate(id="s1", name="Extract", action="extract_thesis"),
                        StepTemplate(id="s2", name="Gather", action="gather_evidence", max_retries=1),
                    ),
                )
            ]
        )
        registry = ok_registry()
        registry.register("gather_evidence", flaky, replace=True)
        orchestrator = make_orchestrator(registry=registry, store=sqlite_store, catalog=catalog)
        task = await orchestrator.create_task(1, "evidence")
        await orchestrator.start(task.id)
        done = await orchestrator.wait(task.id, timeout=5)

        stored_steps = await sqlite_store.get_step_results(task.id)
        assert [s.step_id for s in stored_steps] == ["s1", "s2"]
        for live, stored in zip(done.steps, stored_steps):
            assert stored.status == live.status
            assert stored.retry_count == live.retry_count
            assert stored.duration_ms == live.duration_ms
        assert stored_steps[1].retry_count == 1
        assert stored_steps[1].result == {"evidence": ["a", "b"]}
        assert stored_steps[1].error is None

        loaded = await sqlite_store.load_task(task.id)
        assert loaded.status == TaskStatus.COMPLETED
        assert loaded.telemetry.step_retries == {"s2": 1}
        assert loaded.duration_ms == done.duration_ms

    @pytest.mark.asyncio
    async def test_store_outage_does_not_stop_execution(self):
        orchestrator = make_orchestrator(store=_UnavailableStore())
        task = await orchestrator.create_task(1, "thesis-validation")
        await orchestrator.start(task.id)
        done = await orchestrator.wait(task.id, timeout=5)

        assert done.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_restore_interrupted_task(self, memory_store):
        """A task checkpointed mid-step comes back paused and can be resumed."""
        first = make_orchestrator(store=memory_store)
        task = await first.create_task(1, "thesis-validation")

        crashed = await first.get_task(task.id)
        crashed.status = TaskStatus.RUNNING
        crashed.started_at = crashed.created_at
        crashed.steps[0].status = StepStatus.COMPLETED
        crashed.steps[0].result = {"thesis": "moat"}
        crashed.steps[1].status = StepStatus.RUNNING
        crashed.steps[1].started_at = crashed.created_at
        await memory_store.upsert_task(crashed)
        for step in crashed.steps:
            await memory_store.upsert_step(crashed.id, step)

        second = make_orchestrator(store=memory_store)
        restored = await second.restore_task(task.id)
        assert restored.status == TaskStatus.PAUSED
        assert restored.steps[1].status == StepStatus.PENDING
        assert restored.steps[1].started_at is None

        await second.resume(task.id)
        done = await second.wait(task.id, timeout=5)
        assert done.status == TaskStatus.COMPLETED
        assert done.steps[0].result == {"thesis": "moat"}

    @pytest.mark.asyncio
    async def test_restore_unknown_task(self, memory_store):
        orchestrator = make_orchestrator(store=memory_store)
        with pytest.raises(TaskNotFound):
            await orchestrator.restore_task("task_missing")


class TestWaitAndShutdown:
    """Tests for waiting on and shutting down background runs."""

    @pytest.mark.asyncio
    async def test_wait_timeout(self):
        gate = Gate()
        registry = ExecutorRegistry({"first": gate, "second": ok_executor("second")})
        orchestrator = make_orchestrator(registry=registry, catalog=two_step_catalog())
        task = await orchestrator.create_task(1, "two-step")
        await orchestrator.start(task.id)

        with pytest.raises(TimeoutError):
            await orchestrator.wait(task.id, timeout=0.05)

        gate.release.set()
        done = await orchestrator.wait(task.id, timeout=5)
        assert done.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_shutdown_stops_runners(self):
        gate = Gate()
        registry = ExecutorRegistry({"first": gate, "second": ok_executor("second")})
        orchestrator = make_orchestrator(registry=registry, catalog=two_step_catalog())
        task = await orchestrator.create_task(1, "two-step")
        await orchestrator.start(task.id)
        await gate.entered.wait()

        await orchestrator.shutdown()
        snapshot = await orchestrator.wait(task.id, timeout=1)
        assert snapshot.status == TaskStatus.RUNNING


class TestTaskTelemetry:
    """Tests for per-task telemetry summaries and workspace metrics."""

    @pytest.mark.asyncio
    async def test_task_telemetry_summary(self):
        async def broken(ctx: StepContext):
            raise RuntimeError("Timeout: evidence source")

        registry = ok_registry()
        registry.register("gather_evidence", broken, replace=True)
        orchestrator = make_orchestrator(registry=registry, default_max_retries=1)
        task = await orchestrator.create_task(1, "thesis-validation")
        await orchestrator.start(task.id)
        await orchestrator.wait(task.id, timeout=5)

        summary = await orchestrator.get_task_telemetry(task.id)
        assert summary.status == TaskStatus.FAILED
        assert summary.total_retries == 1
        assert summary.failed_steps == 1
        assert summary.error_tags == ["step_gather_evidence_failed"]
        assert [m.step_id for m in summary.step_metrics] == [s.id for s in task.steps]
        assert summary.model_dump(by_alias=True)["taskDurationMs"] is not None

    @pytest.mark.asyncio
    async def test_workspace_metrics(self, memory_store):
        async def broken(ctx: StepContext):
            raise RuntimeError("Timeout: evidence source")

        registry = ok_registry()
        orchestrator = make_orchestrator(registry=registry, store=memory_store)
        ok_task = await orchestrator.create_task(1, "thesis-validation")
        await orchestrator.start(ok_task.id)
        await orchestrator.wait(ok_task.id, timeout=5)

        registry.register("gather_evidence", broken, replace=True)
        bad_task = await orchestrator.create_task(1, "thesis-validation")
        await orchestrator.start(bad_task.id)
        await orchestrator.wait(bad_task.id, timeout=5)

        metrics = await orchestrator.get_metrics(1)
        assert metrics.total_tasks == 2
        assert metrics.completed_tasks == 1
        assert metrics.failed_tasks == 1
        assert metrics.success_rate == 50
        assert metrics.errors_by_type == {"Timeout": 1}
        assert metrics.step_success_rates["gather_evidence"].total == 2
        assert metrics.step_success_rates["gather_evidence"].success == 1
        assert metrics.tasks_last_24h == 2
