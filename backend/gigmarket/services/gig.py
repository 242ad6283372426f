import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.core.config import settings
from gigmarket.core.errors import InvalidDuration, InvalidGig, NotFoundError, Unauthorized
from gigmarket.models.gig import Gig
from gigmarket.services.fees import FeeSchedule

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 1000


async def create_gig(
    db: AsyncSession,
    seller: str,
    title: str,
    description: str,
    price: int,
    delivery_days: int,
    *,
    category: str | None = None,
    max_revisions: int | None = None,
) -> Gig:
    """Publish a gig listing; the price must be a valid escrow amount."""
    title = (title or "").strip()
    description = (description or "").strip()
    if not seller:
        raise InvalidGig("Seller account is required")
    if not 1 <= len(title) <= MAX_TITLE_LENGTH:
        raise InvalidGig(f"Title must be between 1 and {MAX_TITLE_LENGTH} characters")
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise InvalidGig(f"Description is limited to {MAX_DESCRIPTION_LENGTH} characters")
    FeeSchedule.from_settings().check_amount(price)
    if not 1 <= delivery_days <= settings.max_escrow_duration_days:
        raise InvalidDuration(
            f"Delivery time must be between 1 and {settings.max_escrow_duration_days} days"
        )
    if max_revisions is None:
        max_revisions = settings.default_max_revisions
    if max_revisions < 0:
        raise InvalidGig("Revision allowance cannot be negative")

    gig = Gig(
        seller=seller,
        title=title,
        description=description,
        category=category,
        price=price,
        delivery_days=delivery_days,
        max_revisions=max_revisions,
        is_active=True,
        rating_total=0,
        rating_count=0,
        completed_orders=0,
    )
    db.add(gig)
    await db.commit()
    logger.info("Seller %s published gig %s (price=%d)", seller, gig.id, price)
    return gig


async def get_gig(db: AsyncSession, gig_id: int) -> Gig:
    result = await db.execute(select(Gig).where(Gig.id == gig_id))
    gig = result.scalar_one_or_none()
    if gig is None:
        raise NotFoundError(f"Gig {gig_id} not found")
    return gig


async def list_gigs(
    db: AsyncSession,
    *,
    seller: str | None = None,
    active_only: bool = True,
    offset: int = 0,
    limit: int = 50,
) -> list[Gig]:
    stmt = select(Gig)
    if seller is not None:
        stmt = stmt.where(Gig.seller == seller)
    if active_only:
        stmt = stmt.where(Gig.is_active.is_(True))
    stmt = stmt.order_by(Gig.created_at.desc()).offset(offset).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def set_gig_active(db: AsyncSession, gig_id: int, account: str, active: bool) -> Gig:
    gig = await get_gig(db, gig_id)
    if gig.seller != account:
        raise Unauthorized("Only the seller can change this gig")
    gig.is_active = active
    await db.commit()
    logger.info("Gig %s %s by seller", gig.id, "activated" if active else "deactivated")
    return gig
