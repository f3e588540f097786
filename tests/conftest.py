"""pytest fixtures for retouch backend tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- session_factory: Function-scoped session factory on a fresh SQLite database
- session: Function-scoped database session
- uow_factory: Function-scoped UnitOfWork factory
- settings: Test settings (no .env, test environment)
- object_store / dispatcher: In-memory fakes for R2 and the queue
"""

import io
import os
from typing import Any, AsyncGenerator, Optional

# Settings validation is skipped in the test environment
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./retouch-test.db")

import pytest
import pytest_asyncio
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

import retouch.models  # noqa: F401
from retouch.core.config import Settings
from retouch.services.exceptions import DispatchError, StorageError
from retouch.services.storage.object_store import build_public_url
from retouch.uow import create_uow_factory

PUBLIC_BASE_URL = "https://cdn.retouch.test"


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Provide a session factory bound to a fresh file-backed SQLite database.

    Tables are created from SQLModel metadata; the file is discarded with tmp_path.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'retouch.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'retouch.db'}",
        APP_ENV="test",
        PUBLIC_BASE_URL=PUBLIC_BASE_URL,
        CRON_SECRET="cron-secret",
        WORKER_SECRET="",
        VERTEX_PROJECT_ID="test-project",
        BACKUP_BUCKET="retouch-backup",
        EVENTS_POLL_INTERVAL=0.01,
        EVENTS_MAX_SECONDS=2,
    )  # type: ignore[call-arg]


class FakeObjectStore:
    """In-memory object store with the R2ObjectStore interface."""

    def __init__(self, public_base_url: str = PUBLIC_BASE_URL, fail_put: Optional[Exception] = None):
        self.public_base_url = public_base_url
        self.objects: dict[str, dict[str, Any]] = {}
        self.copies: list[tuple[str, str]] = []
        self.fail_put = fail_put

    async def put(self, key: str, data: bytes, content_type: str, cache_control: Optional[str] = None) -> None:
        if self.fail_put is not None:
            raise self.fail_put
        self.objects[key] = {"data": data, "content_type": content_type, "cache_control": cache_control}

    async def get(self, key: str) -> bytes:
        if key not in self.objects:
            raise StorageError(f"Download failed for {key}: NoSuchKey")
        return self.objects[key]["data"]

    def public_url(self, key: str) -> str:
        return build_public_url(self.public_base_url, key)

    async def signed_url(self, key: str, expires_in: int = 3600) -> str:
        return f"{self.public_base_url}/{key}?X-Amz-Expires={expires_in}"

    async def copy_to(self, key: str, target_bucket: str) -> None:
        self.copies.append((key, target_bucket))


class RecordingDispatcher:
    """Dispatcher that records publishes instead of delivering them."""

    name = "recording"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published: list[dict[str, Any]] = []

    async def publish(self, target_url: str, payload: dict[str, Any], concurrency: int = 1) -> None:
        if self.fail:
            raise DispatchError("QStash publish failed (500): upstream down")
        self.published.append({"url": target_url, "payload": payload, "concurrency": concurrency})

    async def aclose(self) -> None:
        return None


@pytest.fixture
def object_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


def make_image_bytes(width: int = 1200, height: int = 900, fmt: str = "PNG", orientation: Optional[int] = None) -> bytes:
    """Encode a solid test image, optionally tagged with an EXIF orientation."""
    image = Image.new("RGB", (width, height), (200, 120, 40))
    buffer = io.BytesIO()
    if orientation is not None:
        exif = Image.Exif()
        exif[0x0112] = orientation
        image.save(buffer, format="JPEG", exif=exif)
    else:
        image.save(buffer, format=fmt)
    return buffer.getvalue()
