import os
import tempfile
from pathlib import Path

import pytest
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

_sqlite_path = Path(tempfile.gettempdir()) / f"team_api_test_{os.getpid()}.db"
_db_url = os.environ.get("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{_sqlite_path}"
os.environ["DATABASE_URL"] = _db_url

os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("SESSION_SECRET", "test-session-secret")
os.environ.setdefault("INVITE_TOKEN_SECRET", "test-invite-secret")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "test-payment-secret")
os.environ.setdefault("EMAIL_FROM", "no-reply@example.com")
os.environ.setdefault("APP_BASE_URL", "http://test")

from team_api import settings as settings_module

settings_module.get_settings.cache_clear()

from team_api import models  # noqa: F401,E402
from team_api.db.base import Base
from team_api.db.session import get_session
from team_api.main import app


def _enable_sqlite_foreign_keys(dbapi_connection, _record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@pytest.fixture(scope="session")
def db_url() -> str:
    return _db_url


@pytest.fixture()
async def engine(db_url: str):
    engine = create_async_engine(db_url)
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        await engine.dispose()
        pytest.skip("Database not available")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture()
async def db_session(engine) -> AsyncSession:
    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        yield session


@pytest.fixture()
async def async_client(engine):
    async def _override_get_session():
        async with AsyncSession(bind=engine, expire_on_commit=False) as session:
            yield session

    app.dependency_overrides[get_session] = _override_get_session
    try:
        import httpx

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        app.dependency_overrides.clear()
