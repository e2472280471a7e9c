# tests/conftest.py
import itertools

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from cardsync import models  # noqa: F401
from cardsync.core.config import Settings
from cardsync.core.enums import ItemType, SyncStatus
from cardsync.database import Base
from cardsync.dependencies import get_db, get_session_factory
from cardsync.main import app
from cardsync.models.inventory_item import InventoryItem
from cardsync.models.shopify_store import ShopifyStore
from cardsync.services.rate_governor import RateGovernor
from tests.mocks.mock_shopify import FakeShopifyClient

WEBHOOK_SECRET = "test_secret"
STORE_DOMAIN = "main-store.myshopify.com"
LOCATION_A = "gid://shopify/Location/1001"
LOCATION_B = "gid://shopify/Location/2002"

_remote_ids = itertools.count(700000, 10)


@pytest.fixture(scope="session")
def settings():
    """Provide test settings"""
    return Settings(
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        SHOPIFY_WEBHOOK_SECRET=WEBHOOK_SECRET,
        BASIC_AUTH_USERNAME="admin",
        BASIC_AUTH_PASSWORD="secret",
    )


@pytest.fixture(scope="function")
async def test_engine(tmp_path):
    """Per-test SQLite file; NullPool so every session opens a connection on the running loop."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'cardsync_test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    """Provide a database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def store(db_session):
    shop = ShopifyStore(
        key="main-store",
        domain=STORE_DOMAIN,
        access_token="shpat_test",
        webhook_secret=WEBHOOK_SECRET,
    )
    db_session.add(shop)
    await db_session.commit()
    return shop


@pytest.fixture
def make_item(db_session, store):
    """Factory for committed inventory items linked to the test store."""

    async def _make(sku="CARD-001", item_type=ItemType.RAW, quantity=1, linked=True, **overrides):
        values = dict(
            store_key=store.key,
            sku=sku,
            item_type=ItemType(item_type).value,
            title=f"Card {sku}",
            price=25.0,
            quantity=quantity,
            location_gid=LOCATION_A,
            sync_status=SyncStatus.SYNCED.value,
        )
        if linked:
            base = next(_remote_ids)
            values.update(
                remote_product_id=str(base),
                remote_variant_id=str(base + 1),
                remote_inventory_item_id=str(base + 2),
            )
        values.update(overrides)
        item = InventoryItem(**values)
        db_session.add(item)
        await db_session.commit()
        return item

    return _make


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def governor(fake_clock):
    return RateGovernor(
        capacity=10,
        refill_per_second=1.0,
        min_delay=2.0,
        max_delay=15.0,
        failure_threshold=3,
        cooldown_seconds=30.0,
        max_cooldown_seconds=600.0,
        clock=fake_clock,
    )


@pytest.fixture
def fake_shopify():
    return FakeShopifyClient()


@pytest.fixture
def no_sleep():
    """Replacement for asyncio.sleep that records requested pauses."""
    pauses = []

    async def _sleep(seconds):
        pauses.append(seconds)

    _sleep.pauses = pauses
    return _sleep


@pytest.fixture
def test_client(session_factory, governor, settings, mocker):
    """TestClient wired to the per-test database and governor (lifespan not started)."""
    mocker.patch("cardsync.core.security.get_settings", return_value=settings)
    mocker.patch("cardsync.services.webhook_processor.get_settings", return_value=settings)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.state.governor = governor
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
    app.state.governor = None
