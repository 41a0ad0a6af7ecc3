"""
Test configuration for FolioSync tests.

sys.path is configured so 'from foliosync...' resolves when pytest is run
from the project root or from foliosync/.

Database tests run against a throwaway SQLite file (aiosqlite) per test;
the schema comes from Base.metadata, not Alembic. API tests get an
in-process LocalBroadcaster and no Redis unless a test installs a mock.
"""
import sys
from pathlib import Path

_package_dir = Path(__file__).parent.parent        # .../foliosync/
_project_root = _package_dir.parent               # .../

if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from foliosync.database import Base, get_db
from foliosync.sync.broadcaster import LocalBroadcaster
from foliosync.sync.presence import LocalPresence
import foliosync.models  # noqa: F401  registers tables on Base.metadata


@pytest_asyncio.fixture
async def engine(tmp_path: Path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'foliosync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def broadcaster() -> LocalBroadcaster:
    return LocalBroadcaster()


@pytest.fixture
def app(session_factory, broadcaster):
    """The FastAPI app wired to the SQLite session factory and a local broadcaster."""
    from foliosync.main import app

    async def _override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _override_get_db
    app.state.broadcaster = broadcaster
    app.state.presence = LocalPresence()
    app.state.session_factory = session_factory
    app.state.redis = None
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app):
    """Async httpx client using ASGI transport: no live server needed."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
