# tests/conftest.py
"""
Pytest configuration and fixtures for goalsync tests.

Every test runs against a real SQLiteGateway in a temporary directory.
FlakyGateway wraps it so individual calls can be made to fail once.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio

from goalsync.domain.models import Collection
from goalsync.remote.database import SQLiteGateway
from goalsync.sync.store import GoalStateStore

USER_ID = "user-1"
OBJECTIVE_ID = "obj-1"
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# =============================================================================
# CLOCK
# =============================================================================


class FakeClock:
    """Settable wall clock returning aware datetimes."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


# =============================================================================
# GATEWAYS
# =============================================================================


class FlakyGateway(SQLiteGateway):
    """SQLiteGateway that records calls and can fail the next call to a method."""

    def __init__(self, db_path: str):
        super().__init__(db_path)
        self.calls: list[tuple] = []
        self.failures: dict[str, Exception] = {}
        self.fetch_gate: Optional[asyncio.Event] = None

    def fail(self, method: str, error: Exception):
        """Make the next call to method raise error."""
        self.failures[method] = error

    def hold_next_fetch(self) -> asyncio.Event:
        """Park the next fetch_snapshot after it has read the database until the event is set."""
        self.fetch_gate = asyncio.Event()
        return self.fetch_gate

    def calls_to(self, method: str) -> list[tuple]:
        return [call[1:] for call in self.calls if call[0] == method]

    def _record(self, method: str, *args):
        self.calls.append((method, *args))
        error = self.failures.pop(method, None)
        if error is not None:
            raise error

    async def create(self, objective_id, collection, item):
        self._record("create", objective_id, collection, item)
        return await super().create(objective_id, collection, item)

    async def update(self, objective_id, collection, item_id, fields):
        self._record("update", objective_id, collection, item_id, fields)
        await super().update(objective_id, collection, item_id, fields)

    async def remove(self, objective_id, collection, item_id):
        self._record("remove", objective_id, collection, item_id)
        await super().remove(objective_id, collection, item_id)

    async def batch_update_order(self, objective_id, collection, updates):
        self._record("batch_update_order", objective_id, collection, list(updates))
        await super().batch_update_order(objective_id, collection, updates)

    async def fetch_snapshot(self, user_id):
        self._record("fetch_snapshot", user_id)
        snapshot = await super().fetch_snapshot(user_id)
        gate, self.fetch_gate = self.fetch_gate, None
        if gate is not None:
            await gate.wait()
        return snapshot

    async def create_objective(self, user_id, objective):
        self._record("create_objective", user_id, objective)
        return await super().create_objective(user_id, objective)

    async def update_objective(self, user_id, objective_id, fields):
        self._record("update_objective", user_id, objective_id, fields)
        await super().update_objective(user_id, objective_id, fields)

    async def set_active_objective(self, user_id, objective_id):
        self._record("set_active_objective", user_id, objective_id)
        await super().set_active_objective(user_id, objective_id)


# =============================================================================
# PAYLOAD BUILDERS
# =============================================================================


def make_objective(objective_id: str = OBJECTIVE_ID, **overrides) -> dict:
    data = {
        "id": objective_id,
        "name": "Run a half marathon",
        "description": None,
        "start_date": T0.isoformat(),
        "end_date": (T0 + timedelta(days=90)).isoformat(),
        "status": "active",
        "routines_reset_on": T0.date().isoformat(),
        "created_at": T0.isoformat(),
        "updated_at": T0.isoformat(),
    }
    data.update(overrides)
    return data


def make_task(task_id: str, order: int, text: Optional[str] = None, minutes: int = 0, **overrides) -> dict:
    created = (T0 + timedelta(minutes=minutes)).isoformat()
    data = {
        "id": task_id,
        "text": text or f"Task {task_id}",
        "completed": False,
        "order": order,
        "created_at": created,
        "updated_at": created,
    }
    data.update(overrides)
    return data


def make_avoid(item_id: str, count: int = 0) -> dict:
    return {
        "id": item_id,
        "title": "Late-night snacking",
        "trigger_patterns": ["after 22:00"],
        "count": count,
        "created_at": T0.isoformat(),
        "updated_at": T0.isoformat(),
    }


async def seed(
    gateway: SQLiteGateway,
    objective_id: str = OBJECTIVE_ID,
    tasks: tuple = (),
    avoid: tuple = (),
    routines: Optional[dict] = None,
    activate: bool = True,
    user_id: str = USER_ID,
    **objective_fields,
):
    """Write an objective and its items straight into the gateway."""
    await SQLiteGateway.create_objective(gateway, user_id, make_objective(objective_id, **objective_fields))
    for task in tasks:
        await SQLiteGateway.create(gateway, objective_id, Collection.TASKS, task)
    for item in avoid:
        await SQLiteGateway.create(gateway, objective_id, Collection.AVOID, item)
    for kind, settings in (routines or {}).items():
        await SQLiteGateway.update(gateway, objective_id, Collection.ROUTINES, kind, settings)
    if activate:
        await SQLiteGateway.set_active_objective(gateway, user_id, objective_id)


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway(tmp_path) -> FlakyGateway:
    return FlakyGateway(str(tmp_path / "goals.db"))


@pytest.fixture
def make_store(gateway, clock):
    """Build a store over the shared gateway; call after seeding."""

    def build(**kwargs) -> GoalStateStore:
        kwargs.setdefault("quiet_period", 0.01)
        kwargs.setdefault("clock", clock)
        return GoalStateStore(USER_ID, gateway, **kwargs)

    return build


@pytest_asyncio.fixture
async def store(gateway, make_store):
    """A loaded store over one seeded, active objective with three tasks."""
    await seed(
        gateway,
        tasks=(make_task("a", 0), make_task("b", 1), make_task("c", 2)),
        avoid=(make_avoid("snack"),),
    )
    store = make_store()
    await store.load()
    gateway.calls.clear()
    yield store
    await store.settle()
