"""Pytest configuration and fixtures for agent-task-orchestrator tests."""

import asyncio

import pytest

from agent_task_orchestrator.config import get_settings
from agent_task_orchestrator.tasks.registry import ExecutorRegistry, StepContext
from agent_task_orchestrator.tasks.store import InMemoryTaskStore, SQLiteTaskStore

THESIS_ACTIONS = [
    "extract_thesis",
    "gather_evidence",
    "challenge_assumptions",
    "identify_weak_points",
    "generate_validation",
]


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: tests that exercise the SQLite store on disk")


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep settings and default databases inside the test's tmp dir."""
    monkeypatch.setenv("AGENT_CONFIG_DIR", str(tmp_path / "config"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def memory_store():
    return InMemoryTaskStore()


@pytest.fixture
async def sqlite_store(tmp_path):
    store = SQLiteTaskStore(db_path=tmp_path / "agent_tasks.db", retry_backoff_seconds=0)
    await store.initialize()
    return store


def ok_executor(action: str):
    async def execute(ctx: StepContext) -> dict:
        return {"action": action, "attempt": ctx.attempt}

    return execute


def ok_registry(actions=THESIS_ACTIONS) -> ExecutorRegistry:
    return ExecutorRegistry({action: ok_executor(action) for action in actions})


class Gate:
    """Executor that blocks until released, so tests can act while a step is in flight."""

    def __init__(self, result="gated"):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.result = result
        self.calls = 0

    async def __call__(self, ctx: StepContext):
        self.calls += 1
        self.entered.set()
        await self.release.wait()
        return self.result
