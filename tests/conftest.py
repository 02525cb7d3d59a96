"""
Pytest configuration and fixtures for marketplace order tests.

Every test gets its own SQLite database file so concurrent sessions
contend on a real write lock.
"""
import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = (
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'marketplace_unused.db')}"
)
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["ORDER_SWEEP_ENABLED"] = "false"

from marketplace.core.database import build_engine, build_session_factory, init_models  # noqa: E402
from marketplace.core.monitoring import metrics  # noqa: E402
from marketplace.core.retry import RetryConfig  # noqa: E402
from marketplace.services.inventory_ledger import inventory_ledger  # noqa: E402
from marketplace.services.order_service import OrderService  # noqa: E402

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
WINDOW = timedelta(minutes=15)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def service(session_factory, clock) -> OrderService:
    return OrderService(
        session_factory=session_factory,
        clock=clock,
        reservation_window=WINDOW,
        retry_config=RetryConfig(max_retries=2, base_delay=0.0, max_delay=0.0),
    )


@pytest.fixture
def stock(session_factory, clock):
    """Seed the ledger: await stock("item-a", 5)."""

    async def _stock(item_id: str, quantity: int) -> int:
        async with session_factory() as db:
            async with db.begin():
                return await inventory_ledger.restock(db, item_id, quantity, clock.now())

    return _stock


@pytest.fixture
def available(session_factory):
    """Read the ledger: await available("item-a")."""

    async def _available(item_id: str):
        async with session_factory() as db:
            return await inventory_ledger.get_available(db, item_id)

    return _available
