import pytest
from datetime import timedelta
from httpx import ASGITransport, AsyncClient

from marketplace.api.deps import get_order_service
from marketplace.core.database import build_engine, build_session_factory, get_db, init_models
from marketplace.core.retry import RetryConfig
from marketplace.main import app
from marketplace.services.order_service import OrderService

from tests.conftest import ManualClock


@pytest.fixture
def api_clock():
    return ManualClock()


@pytest.fixture
async def api_service(tmp_path, api_clock, anyio_backend):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
    await init_models(engine)
    yield OrderService(
        session_factory=build_session_factory(engine),
        clock=api_clock,
        reservation_window=timedelta(minutes=15),
        retry_config=RetryConfig(max_retries=0),
    )
    await engine.dispose()


@pytest.fixture
async def client(api_service, anyio_backend):
    async def override_get_db():
        async with api_service.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_order_service] = lambda: api_service
    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture(scope="module")
def anyio_backend():
    return "asyncio"
