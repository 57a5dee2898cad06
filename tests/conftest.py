import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from points_ledger.db.base import Base  # noqa: E402
from points_ledger.db.session import build_engine, build_session_factory, init_models  # noqa: E402
from points_ledger.observability.ledger import get_ledger_store  # noqa: E402
from points_ledger.observability.scheduler import get_scheduler_store  # noqa: E402
from points_ledger.services.notifications import (  # noqa: E402
    InMemoryEmailBackend,
    InMemoryUserDirectory,
    NotificationService,
)

import points_ledger.models  # noqa: E402,F401


@pytest.fixture(autouse=True)
def _reset_observability():
    get_ledger_store().reset()
    get_scheduler_store().reset()
    yield


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path: Path):
    """File-backed store where every session gets its own connection."""

    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", echo=False)
    await init_models(engine)

    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()


@pytest.fixture
def email_backend() -> InMemoryEmailBackend:
    return InMemoryEmailBackend()


@pytest.fixture
def user_directory() -> InMemoryUserDirectory:
    return InMemoryUserDirectory()


@pytest.fixture
def notifications(email_backend, user_directory) -> NotificationService:
    return NotificationService(directory=user_directory, backend=email_backend, enabled=True)
