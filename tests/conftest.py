from collections.abc import AsyncGenerator
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from marketplace.core.deps import get_db
from marketplace.core.rate_limit import limiter
from marketplace.core.rbac import Identity, Role
from marketplace.db.base import Base
from marketplace.main import app
from marketplace.models.campaign import Campaign
from marketplace.services.user import create_user, get_user_roles

import marketplace.models  # noqa: F401  registers every table

limiter.enabled = False


@pytest.fixture
async def engine():
    """In-memory SQLite so conditional updates and increments run as real SQL."""
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(db) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client wired to the FastAPI app, sharing the test session."""

    async def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()


async def make_identity(db: AsyncSession, email: str, *roles: Role) -> Identity:
    user = await create_user(db, email=email, roles=roles)
    return Identity(user=user, roles=await get_user_roles(db, user.id))


@pytest.fixture
async def advertiser(db) -> Identity:
    return await make_identity(db, "adv@example.com", Role.ADVERTISER)


@pytest.fixture
async def creator(db) -> Identity:
    return await make_identity(db, "creator@example.com", Role.CREATOR)


@pytest.fixture
async def admin(db) -> Identity:
    return await make_identity(db, "admin@example.com", Role.ADMIN)


@pytest.fixture
async def outsider(db) -> Identity:
    return await make_identity(db, "someone@example.com", Role.ADVERTISER)


@pytest.fixture
async def campaign(db, advertiser, creator) -> Campaign:
    c = Campaign(
        advertiser_id=advertiser.user_id,
        creator_id=creator.user_id,
        title="Status post",
        price=Decimal("200.00"),
    )
    db.add(c)
    await db.commit()
    await db.refresh(c)
    return c


def make_stripe_client(intent_id: str = "pi_123", amount_minor: int = 20000) -> MagicMock:
    """A StripeClient double with canned customer and intent responses."""
    client = MagicMock()
    client.configured = True
    client.get_or_create_customer = AsyncMock(return_value="cus_1")
    client.create_payment_intent = AsyncMock(return_value={
        "id": intent_id,
        "client_secret": f"{intent_id}_secret_abc",
        "amount": amount_minor,
        "status": "requires_payment_method",
    })
    client.retrieve_payment_intent = AsyncMock()
    client.search_payment_intents = AsyncMock(return_value=[])
    return client


def escrow_intent(
    campaign: Campaign,
    intent_id: str = "pi_123",
    status: str = "succeeded",
    amount_minor: int = 20000,
    platform_fee: str = "36.00",
    creator_payout: str = "164.00",
) -> dict:
    return {
        "id": intent_id,
        "object": "payment_intent",
        "amount": amount_minor,
        "status": status,
        "client_secret": f"{intent_id}_secret_abc",
        "metadata": {
            "campaign_id": str(campaign.id),
            "creator_id": str(campaign.creator_id),
            "advertiser_id": str(campaign.advertiser_id),
            "platform_fee": platform_fee,
            "creator_payout": creator_payout,
            "cpv_rate": "0.05",
            "expected_views": "1000",
            "type": "escrow",
        },
    }
