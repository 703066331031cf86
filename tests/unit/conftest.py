"""
Shared fixtures for SQLGate unit tests.

Points DATABASE_URL at in-memory SQLite before any service module is
imported, so the gateway's own tables (tasks, audit) live in a StaticPool
connection that is rebuilt for every test. Agent-facing databases are
replaced by FakeBackend; nothing here needs docker or PostgreSQL.
"""

import os
from pathlib import Path

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault(
    "SQLGATE_POLICY_PATH",
    str(Path(__file__).resolve().parents[2] / "config" / "policy.json"),
)

import pytest  # noqa: E402

from sqlgate.services.gateway.components import build_components  # noqa: E402
from sqlgate.services.gateway.dispatcher import Dispatcher  # noqa: E402
from sqlgate.services.shared.backend import QueryResult  # noqa: E402
from sqlgate.services.shared.config import ResiliencePolicy, load_config  # noqa: E402
from sqlgate.services.shared.database import Base, SessionLocal, create_all_tables, engine  # noqa: E402
from sqlgate.services.shared.errors import TransientBackendFailure, ValidationFailure  # noqa: E402

POLICY_PATH = os.environ["SQLGATE_POLICY_PATH"]


# ── Fake backend ───────────────────────────────────────────────────────────────

class FakeBackend:
    """
    Records every statement. `failures` is a queue of exceptions raised by
    the next execute() calls before `result` is returned.
    """

    def __init__(self):
        self.calls: list[tuple[str, str, dict]] = []
        self.failures: list[BaseException] = []
        self.result = QueryResult(columns=["id", "name"], rows=[[1, "Ada"], [2, None]], execution_time_ms=1.5)
        self.procedures: dict[str, dict] = {}
        self.metadata_calls = 0

    async def execute(self, database, statement, parameters, timeout):
        self.calls.append((database, statement, dict(parameters)))
        if self.failures:
            raise self.failures.pop(0)
        return self.result

    async def get_procedure_metadata(self, database, qualified_name):
        self.metadata_calls += 1
        meta = self.procedures.get(qualified_name.lower())
        if meta is None:
            raise ValidationFailure(f"Unknown procedure '{qualified_name}'")
        return meta

    def is_transient(self, exc):
        return isinstance(exc, TransientBackendFailure)


async def no_sleep(_seconds):
    return None


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def fresh_tables():
    create_all_tables()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def config():
    loaded = load_config(POLICY_PATH)
    return loaded.model_copy(update={
        "databases": {"sales": "sqlite://"},
        "resilience": ResiliencePolicy(
            max_retry_attempts=3, base_delay=0.0, max_delay=0.0,
            failure_threshold=5, break_duration=60.0, timeout=5.0,
        ),
    })


@pytest.fixture
def backend():
    fake = FakeBackend()
    fake.procedures = {
        "sales.get_customer": {
            "parameters": [
                {"name": "@customer_id", "data_type": "int", "direction": "input", "required": True},
            ],
            "returns_result_set": False,
        },
        "sales.purge_orders": {
            "parameters": [
                {"name": "@before", "data_type": "date", "direction": "input", "required": True},
            ],
            "returns_result_set": False,
        },
    }
    return fake


@pytest.fixture
def components(config, backend):
    return build_components(config, backend=backend, sleep=no_sleep)


@pytest.fixture
def dispatcher(components):
    return Dispatcher(components)
