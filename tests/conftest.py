"""Shared fixtures: a controllable clock and in-memory orchestrator wiring."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from repflow.config import RepflowConfig
from repflow.db import Database
from repflow.flow import InMemoryFlowStore
from repflow.persistence import InMemoryWorkflowRepository, reset_repository
from repflow.runtime import Orchestrator, Services
from repflow.transports import InMemoryTransport


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


class RecordingSink:
    def __init__(self) -> None:
        self.captured = []

    def capture(self, error, context) -> None:
        self.captured.append((error, context))


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    for var in (
        "REPFLOW_DATABASE_URL",
        "DATABASE_URL",
        "REPFLOW_STORE_URL",
        "REPFLOW_TRANSPORT",
        "REPFLOW_FLOW_BACKEND",
        "REPFLOW_GENERATOR_MODEL",
        "REPFLOW_LOG_LEVEL",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("REPFLOW_CONFIG", str(tmp_path / "missing-config.yaml"))
    reset_repository()
    yield
    reset_repository()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def config():
    # No jitter so backoff timings are exact in assertions.
    return RepflowConfig.model_validate({"retry": {"base_seconds": 1.0, "max_seconds": 10.0, "jitter": 0.0}})


@pytest.fixture
def make_orchestrator(clock, sink, config):
    """Build an all-in-memory orchestrator around the given workflows."""

    def build(workflows, services=None, repository=None, **kwargs):
        return Orchestrator(
            workflows,
            config=config,
            repository=repository or InMemoryWorkflowRepository(),
            flow_store=InMemoryFlowStore(),
            transport=InMemoryTransport(),
            services=services or Services(clock=clock, config=config),
            clock=clock,
            error_sink=sink,
            **kwargs,
        )

    return build


@pytest_asyncio.fixture
async def store(tmp_path):
    """Row store on a throwaway SQLite file."""
    db = Database(f"sqlite:///{tmp_path / 'store.db'}")
    await db.init_db()
    yield db
    await db.close()
