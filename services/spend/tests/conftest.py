"""
Shared pytest fixtures for the Spend Service test suite.

Every test gets its own temporary SQLite database (aiosqlite) with the schema
created, so the raw SQL runs exactly as it does against PostgreSQL in production.

The FastAPI module reads its settings at import time, so the environment for the
HTTP tests is prepared here before anything imports ``app.main``.
"""

import os
import tempfile
from decimal import Decimal

_API_DB_DIR = tempfile.mkdtemp()
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_API_DB_DIR}/api.db"
os.environ["SPEND_BACKGROUND_TASKS"] = "false"
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from app import commands  # noqa: E402
from app.checker import ConsistencyChecker  # noqa: E402
from app.db import create_engine, make_session_factory  # noqa: E402
from app.maintainer import BatchMaintainer, EventMaintainer  # noqa: E402
from app.models import MutationEvent, MutationKind, OrderStatus  # noqa: E402
from app.policy import InclusionPolicy  # noqa: E402
from app.schema import create_schema  # noqa: E402
from app.store import AggregateStore  # noqa: E402

# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Temporary SQLite database with the full schema."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'spend.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


# ============================================================================
# SERVICE FIXTURES
# ============================================================================


@pytest.fixture
def policy() -> InclusionPolicy:
    """Non-cancelled orders count toward spend."""
    return InclusionPolicy([OrderStatus.PENDING, OrderStatus.SHIPPED, OrderStatus.DELIVERED])


@pytest.fixture
def store(session_factory) -> AggregateStore:
    return AggregateStore(session_factory)


@pytest.fixture
def event_maintainer(session_factory, store, policy) -> EventMaintainer:
    return EventMaintainer(
        session_factory, store, policy,
        retry_attempts=3, retry_base_delay=0.001, retry_max_delay=0.01,
    )


@pytest.fixture
def batch_maintainer(session_factory, store, policy) -> BatchMaintainer:
    return BatchMaintainer(session_factory, store, policy, batch_size=2)


@pytest.fixture
def checker(session_factory, store, batch_maintainer) -> ConsistencyChecker:
    return ConsistencyChecker(session_factory, store, batch_maintainer, batch_size=2)


class LedgerWriter:
    """Thin wrapper over the command handlers for arranging ledger state."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def place(self, order_id, customer_id, amount, status="Delivered"):
        async with self.session_factory() as session:
            return await commands.place_order(
                session, None, order_id, customer_id, Decimal(amount), status
            )

    async def change(self, order_id, amount=None, status=None):
        async with self.session_factory() as session:
            return await commands.change_order(
                session, None, order_id,
                amount=Decimal(amount) if amount is not None else None,
                status=status,
            )

    async def delete(self, order_id):
        async with self.session_factory() as session:
            return await commands.delete_order(session, None, order_id)


@pytest.fixture
def writer(session_factory) -> LedgerWriter:
    return LedgerWriter(session_factory)


def make_event(sequence, kind, customer_id="C1", order_id="O1", **fields) -> MutationEvent:
    """Build a MutationEvent; amounts may be given as strings."""
    for key in ("old_amount", "new_amount"):
        if fields.get(key) is not None:
            fields[key] = Decimal(fields[key])
    return MutationEvent(
        sequence=sequence,
        kind=MutationKind(kind),
        order_id=order_id,
        customer_id=customer_id,
        **fields,
    )
