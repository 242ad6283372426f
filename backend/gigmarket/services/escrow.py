"""Escrow queries and the timeout-driven transitions run by the sweeps.

``mark_expired`` is idempotent: once an escrow has expired or been
auto-released, calling it again finds nothing to do and returns False.
"""

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.core.clock import Clock, system_clock
from gigmarket.core.config import settings
from gigmarket.core.errors import NotFoundError
from gigmarket.models.escrow import Escrow
from gigmarket.models.order import Order
from gigmarket.services import escrow_account
from gigmarket.services.audit import log_audit
from gigmarket.services.dispute import open_dispute_for
from gigmarket.services.escrow_account import EscrowStatus
from gigmarket.services.events import EscrowLapsed
from gigmarket.services.guards import commit_or_conflict, order_claim
from gigmarket.services.ledger import LedgerGateway
from gigmarket.services.ledger.settlement import settle
from gigmarket.services.order import (
    apply_transition,
    audit_payouts,
    complete_open_milestones,
    get_order,
    record_rating,
)
from gigmarket.services.order_state_machine import Actor, OrderAction, OrderStatus, validate_transition
from gigmarket.services.timeouts import TimeoutPolicy

logger = logging.getLogger(__name__)


async def get_escrow(db: AsyncSession, order_id: int) -> Escrow:
    result = await db.execute(select(Escrow).where(Escrow.order_id == order_id))
    escrow = result.scalar_one_or_none()
    if escrow is None:
        raise NotFoundError(f"No escrow for order {order_id}")
    return escrow


async def get_orders_for_expiry(db: AsyncSession, now: datetime, limit: int | None = None) -> list[Order]:
    """Orders whose escrow was never funded and has passed its expiry."""
    result = await db.execute(
        select(Order)
        .join(Escrow, Escrow.order_id == Order.id)
        .where(Escrow.status == EscrowStatus.PENDING.value, Escrow.expires_at < now)
        .order_by(Escrow.expires_at)
        .limit(limit or settings.sweep_batch_size)
    )
    return list(result.scalars().all())


async def get_orders_for_auto_release(
    db: AsyncSession, now: datetime, limit: int | None = None,
) -> list[Order]:
    """Delivered orders whose buyer stayed silent past the auto-release grace period."""
    cutoff = now - TimeoutPolicy.from_settings().auto_release_after
    result = await db.execute(
        select(Order)
        .join(Escrow, Escrow.order_id == Order.id)
        .where(
            Escrow.status == EscrowStatus.ACTIVE.value,
            Order.status == OrderStatus.DELIVERED.value,
            Escrow.expires_at <= cutoff,
        )
        .order_by(Escrow.expires_at)
        .limit(limit or settings.sweep_batch_size)
    )
    return list(result.scalars().all())


async def mark_expired(
    db: AsyncSession,
    ledger: LedgerGateway,
    order_id: int,
    *,
    clock: Clock = system_clock,
) -> bool:
    """Apply whichever timeout transition is due for the order, if any.

    * unfunded escrow past expiry: escrow expires, order is cancelled
    * delivered work, no open dispute, past expiry plus the grace period:
      funds are released to the seller as if the buyer had approved
    """
    order = await get_order(db, order_id)
    escrow = order.escrow
    now = clock.now()
    policy = TimeoutPolicy.from_settings()

    if escrow.status == EscrowStatus.PENDING:
        if not policy.is_expired(escrow.expires_at, now):
            return False
        new_status = validate_transition(order.status, OrderAction.EXPIRE, Actor.SYSTEM)
        async with order_claim(order):
            escrow_account.mark_expired(escrow, now)
            order.cancelled_at = now
            order.cancel_reason = "Escrow was not funded before it expired"
            apply_transition(
                db, order, OrderAction.EXPIRE, new_status, Actor.SYSTEM.value, Actor.SYSTEM, now,
                note="Escrow expired before funding; the order was cancelled.",
            )
            log_audit(db, EscrowLapsed(order_id=order.id, at=now, address=escrow.address))
            await commit_or_conflict(db, order)
        logger.info("Order %s expired unfunded", order.reference)
        return True

    delivered = order.status == OrderStatus.DELIVERED
    if open_dispute_for(order.disputes) is not None or not policy.can_auto_release(
        escrow, now, work_delivered=delivered,
    ):
        return False

    new_status = validate_transition(order.status, OrderAction.AUTO_RELEASE, Actor.SYSTEM)
    payouts = escrow_account.plan_release(escrow, settings.platform_account)
    async with order_claim(order):
        settled = await settle(ledger, escrow, payouts, "auto-release")
        now = clock.now()
        escrow_account.apply_payouts(escrow, settled, now)
        complete_open_milestones(order, now)
        order.completed_at = now
        record_rating(order, None)
        apply_transition(
            db, order, OrderAction.AUTO_RELEASE, new_status, Actor.SYSTEM.value, Actor.SYSTEM, now,
            note="No response from the buyer; funds were released to the seller automatically.",
        )
        audit_payouts(db, order, settled, "auto-release", now)
        await commit_or_conflict(db, order, settled=[s.tx_ref for s in settled])

    logger.info("Order %s auto-released (released=%d)", order.reference, escrow.released_amount)
    return True
