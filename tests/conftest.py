from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from unitpay.core.deps import get_db
from unitpay.core.rate_limit import limiter
from unitpay.db.base import Base
from unitpay.db.session import create_session_factory
from unitpay.main import app


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'unitpay.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def no_redis():
    """Poll locks and idempotency keys always succeed without a Redis server."""
    with (
        patch("unitpay.services.reconciliation.acquire_poll_lock", new=AsyncMock(return_value=True)),
        patch("unitpay.services.reconciliation.release_poll_lock", new=AsyncMock()),
        patch("unitpay.api.paypal.check_idempotency", new=AsyncMock(return_value=True)),
        patch("unitpay.api.paypal.clear_idempotency", new=AsyncMock()),
    ):
        yield


@pytest.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client wired to the FastAPI app (no real server)."""

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    limiter.enabled = False
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
    app.dependency_overrides.clear()
    limiter.enabled = True
