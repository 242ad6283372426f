from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from gigmarket.core.config import settings
from gigmarket.core.rate_limit import limiter
from gigmarket.main import app
from gigmarket.models.gig import Gig
from gigmarket.models.order import Order
from gigmarket.services.escrow_account import open_escrow
from gigmarket.services.ledger.memory import InMemoryLedgerGateway

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

BUYER = "buyer-wallet"
SELLER = "seller-wallet"
ARBITRATOR = "arbitrator-wallet"
OUTSIDER = "someone-else"

UNIT = 1_000_000_000  # lamports per unit


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


def make_gig(gig_id: int = 1, price: int = 5 * UNIT, max_revisions: int = 3) -> Gig:
    gig = Gig(
        seller=SELLER,
        title="Logo design",
        description="A vector logo in three concepts",
        price=price,
        delivery_days=7,
        max_revisions=max_revisions,
        is_active=True,
        rating_total=0,
        rating_count=0,
        completed_orders=0,
    )
    object.__setattr__(gig, "id", gig_id)
    return gig


def make_order(
    order_id: int = 42,
    *,
    status: str = "pending",
    price: int = 5 * UNIT,
    funded: bool = False,
    max_revisions: int = 3,
    now: datetime = T0,
    duration_days: int = 30,
) -> Order:
    """An order with its gig and escrow, built in memory like a loaded row."""
    gig = make_gig(price=price, max_revisions=max_revisions)
    escrow = open_escrow(
        base_amount=price,
        buyer=BUYER,
        seller=SELLER,
        gig_id=gig.id,
        reference=f"ORD-TEST{order_id}",
        now=now,
        duration_days=duration_days,
    )
    object.__setattr__(escrow, "id", order_id + 1000)
    if funded:
        escrow.status = "active"
        escrow.funded_at = now
        escrow.funding_tx = "ext-funding"

    order = Order(
        reference=f"ORD-TEST{order_id}",
        gig_id=gig.id,
        buyer=BUYER,
        seller=SELLER,
        price_base=price,
        status=status,
        requirements="Please make it blue and minimal",
        deadline=now + timedelta(days=7),
        revisions_used=0,
        max_revisions=max_revisions,
        last_activity_at=now,
    )
    object.__setattr__(order, "id", order_id)
    order.version_id = 1
    order.gig = gig
    order.escrow = escrow
    return order


def fake_db(*rows) -> AsyncMock:
    """AsyncSession stand-in whose every query returns ``rows``."""
    db = AsyncMock()
    db.add = MagicMock()
    result = MagicMock()
    result.scalar_one_or_none.return_value = rows[0] if rows else None
    result.scalars.return_value.all.return_value = list(rows)
    db.execute = AsyncMock(return_value=result)
    return db


def scripted_db(*results) -> AsyncMock:
    """AsyncSession stand-in whose n-th query returns the n-th of ``results``."""
    db = fake_db()
    replies = []
    for row in results:
        result = MagicMock()
        result.scalar_one_or_none.return_value = row
        replies.append(result)
    db.execute = AsyncMock(side_effect=replies)
    return db


def funded_ledger(order: Order) -> InMemoryLedgerGateway:
    """Sandbox ledger holding the order's escrow total at its address."""
    ledger = InMemoryLedgerGateway()
    ledger.credit(order.escrow.address, order.escrow.total_amount)
    return ledger


@pytest.fixture(autouse=True)
def _no_redis(monkeypatch):
    """Order claims succeed without a Redis server."""
    monkeypatch.setattr(
        "gigmarket.services.guards.check_idempotency", AsyncMock(return_value=True)
    )
    monkeypatch.setattr("gigmarket.services.guards.release_idempotency", AsyncMock())


@pytest.fixture(autouse=True)
def _arbitrators(monkeypatch):
    monkeypatch.setattr(settings, "arbitrator_accounts", [ARBITRATOR])


@pytest.fixture(autouse=True)
def _no_rate_limit():
    limiter.enabled = False
    yield
    limiter.enabled = settings.rate_limit_enabled


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client wired to the FastAPI app (no real server)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
