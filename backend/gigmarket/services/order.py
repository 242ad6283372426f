"""Order commands and queries.

Each command loads the order (escrow, milestones, messages and disputes come
along through selectin relationships), validates input, transition and actor
before touching anything, settles any ledger transfer, and only then records
the new state in a single commit.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.core.clock import Clock, system_clock
from gigmarket.core.config import settings
from gigmarket.core.errors import (
    DepositAlreadyUsed,
    GigNotActive,
    InvalidMessage,
    InvalidRating,
    InvalidRequirements,
    InvalidState,
    MaxRevisionsExceeded,
    NotFoundError,
    Unauthorized,
    ValidationError,
)
from gigmarket.models.escrow import Escrow
from gigmarket.models.gig import Gig
from gigmarket.models.order import Order, OrderMessage
from gigmarket.services.audit import log_audit
from gigmarket.services.escrow_account import (
    EscrowStatus,
    SettledPayout,
    apply_payouts,
    cancel_unfunded,
    check_fundable,
    mark_funded,
    open_escrow,
    plan_refund,
    plan_release,
    require_funded,
)
from gigmarket.services.events import EscrowFunded, FundsReleased, OrderCreated, OrderTransitioned
from gigmarket.services.guards import commit_or_conflict, order_claim
from gigmarket.services.ledger import LedgerGateway
from gigmarket.services.ledger.settlement import collect_deposit, settle
from gigmarket.services.order_state_machine import (
    MESSAGING_STATUSES,
    TERMINAL_STATUSES,
    Actor,
    InvalidTransitionError,
    OrderAction,
    OrderStatus,
    get_available_actions,
    validate_transition,
)
from gigmarket.services.timeouts import TimeoutPolicy, TimeRemaining

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderStats:
    total_orders: int
    active_orders: int
    completed_orders: int
    total_earnings: int
    total_spent: int
    average_rating: float | None
    completion_rate: float


# ---------------------------------------------------------------------------
# Helpers shared with the milestone and dispute services
# ---------------------------------------------------------------------------
def generate_order_reference() -> str:
    return f"ORD-{secrets.token_hex(6).upper()}"


def actor_for(order: Order, account: str) -> Actor:
    if account == order.buyer:
        return Actor.BUYER
    if account == order.seller:
        return Actor.SELLER
    return Actor.OUTSIDER


def is_arbitrator(account: str) -> bool:
    return account in settings.arbitrator_accounts


def ensure_can_view(order: Order, account: str) -> None:
    if actor_for(order, account) == Actor.OUTSIDER and not is_arbitrator(account):
        raise Unauthorized("Only the buyer, the seller or an arbitrator can view this order")


def append_message(
    order: Order,
    sender: str | None,
    kind: str,
    body: str,
    attachments: list[str] | None = None,
) -> OrderMessage:
    seq = max((m.seq for m in order.messages), default=0) + 1
    message = OrderMessage(
        seq=seq,
        sender=sender,
        kind=kind,
        body=body,
        attachments=attachments or None,
    )
    order.messages.append(message)
    return message


def apply_transition(
    db: AsyncSession,
    order: Order,
    action: OrderAction,
    new_status: OrderStatus,
    account: str,
    actor: Actor,
    now: datetime,
    note: str | None = None,
) -> None:
    """Record a validated transition with a system message and an audit entry."""
    old_status = order.status
    order.status = new_status.value
    order.last_activity_at = now
    append_message(
        order, None, "system",
        note or f"Status changed to {new_status.value} by {actor.value}",
    )
    log_audit(
        db,
        OrderTransitioned(
            order_id=order.id, at=now, action=action.value,
            from_status=old_status, to_status=new_status.value, actor=account,
        ),
        actor=account,
    )


def audit_payouts(
    db: AsyncSession, order: Order, settled: list[SettledPayout], purpose: str, now: datetime,
    actor: str | None = None,
) -> None:
    for item in settled:
        log_audit(
            db,
            FundsReleased(
                order_id=order.id, at=now, address=order.escrow.address, purpose=purpose,
                recipient=item.payout.recipient.value, amount=item.payout.amount, tx_ref=item.tx_ref,
            ),
            actor=actor,
        )


def _check_text(value: str | None, field: str, max_length: int, *, min_length: int = 1) -> str:
    text = (value or "").strip()
    if not min_length <= len(text) <= max_length:
        raise InvalidMessage(f"{field} must be between {min_length} and {max_length} characters")
    return text


def _check_attachments(attachments: list[str] | None) -> list[str]:
    items = [a.strip() for a in (attachments or []) if a and a.strip()]
    if len(items) > settings.max_attachments:
        raise InvalidMessage(f"At most {settings.max_attachments} attachments are allowed")
    return items


def _has_deliverable(order: Order) -> bool:
    return order.delivered_at is not None or any(m.kind == "deliverable" for m in order.messages)


async def _ensure_deposit_unused(db: AsyncSession, tx_ref: str) -> None:
    # The unique constraint on escrows.funding_tx backs this up at commit
    result = await db.execute(select(Escrow.id).where(Escrow.funding_tx == tx_ref))
    if result.scalar_one_or_none() is not None:
        raise DepositAlreadyUsed(f"Deposit {tx_ref} already funded another escrow", tx_ref=tx_ref)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------
async def get_order(db: AsyncSession, order_id: int) -> Order:
    result = await db.execute(select(Order).where(Order.id == order_id))
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


async def get_order_by_reference(db: AsyncSession, reference: str) -> Order:
    result = await db.execute(select(Order).where(Order.reference == reference))
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFoundError(f"Order {reference} not found")
    return order


async def list_orders_by_party(
    db: AsyncSession,
    party: str,
    role: str | None = None,
    status: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Order]:
    """Orders where ``party`` is the buyer, the seller, or either."""
    stmt = select(Order)
    if role == Actor.BUYER:
        stmt = stmt.where(Order.buyer == party)
    elif role == Actor.SELLER:
        stmt = stmt.where(Order.seller == party)
    elif role is None:
        stmt = stmt.where(or_(Order.buyer == party, Order.seller == party))
    else:
        raise ValidationError(f"Unknown role {role!r}; expected buyer or seller")

    if status is not None:
        try:
            stmt = stmt.where(Order.status == OrderStatus(status).value)
        except ValueError:
            raise ValidationError(f"Unknown order status {status!r}")

    stmt = stmt.order_by(Order.created_at.desc()).offset(offset).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_time_remaining(
    db: AsyncSession, order_id: int, *, clock: Clock = system_clock,
) -> TimeRemaining:
    order = await get_order(db, order_id)
    return TimeoutPolicy.from_settings().time_remaining(order.escrow.expires_at, clock.now())


async def get_order_stats(db: AsyncSession, party: str) -> OrderStats:
    result = await db.execute(
        select(Order).where(or_(Order.buyer == party, Order.seller == party))
    )
    orders = list(result.scalars().all())

    completed = [o for o in orders if o.status == OrderStatus.COMPLETED]
    active = [o for o in orders if o.status not in TERMINAL_STATUSES]
    earnings = sum(o.escrow.released_amount for o in orders if o.seller == party and o.escrow)
    spent = sum(
        o.escrow.total_amount - o.escrow.refunded_amount
        for o in orders
        if o.buyer == party and o.escrow and o.escrow.funded_at is not None
    )
    ratings = [o.rating for o in orders if o.seller == party and o.rating is not None]

    return OrderStats(
        total_orders=len(orders),
        active_orders=len(active),
        completed_orders=len(completed),
        total_earnings=earnings,
        total_spent=spent,
        average_rating=round(sum(ratings) / len(ratings), 2) if ratings else None,
        completion_rate=round(len(completed) / len(orders) * 100, 1) if orders else 0.0,
    )


def available_actions(order: Order, account: str) -> list[str]:
    return get_available_actions(order.status, actor_for(order, account))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
async def create_order(
    db: AsyncSession,
    buyer: str,
    gig_id: int,
    requirements: str,
    *,
    milestones: list | None = None,
    duration_days: int | None = None,
    clock: Clock = system_clock,
) -> Order:
    """Place an order for a gig and open its escrow in the pending state."""
    requirements = (requirements or "").strip()
    if not settings.min_requirements_length <= len(requirements) <= settings.max_requirements_length:
        raise InvalidRequirements(
            f"Requirements must be between {settings.min_requirements_length} and "
            f"{settings.max_requirements_length} characters"
        )

    result = await db.execute(select(Gig).where(Gig.id == gig_id))
    gig = result.scalar_one_or_none()
    if gig is None:
        raise NotFoundError(f"Gig {gig_id} not found")
    if not gig.is_active:
        raise GigNotActive(f"Gig {gig_id} is not accepting orders")

    now = clock.now()
    reference = generate_order_reference()
    escrow = open_escrow(
        base_amount=gig.price,
        buyer=buyer,
        seller=gig.seller,
        gig_id=gig.id,
        reference=reference,
        now=now,
        duration_days=duration_days,
    )

    planned = []
    if milestones:
        from gigmarket.services.milestones import build_milestones

        planned = build_milestones(gig.price, milestones, now)

    order = Order(
        reference=reference,
        gig_id=gig.id,
        buyer=buyer,
        seller=gig.seller,
        price_base=gig.price,
        status=OrderStatus.PENDING.value,
        requirements=requirements,
        deadline=now + timedelta(days=gig.delivery_days),
        revisions_used=0,
        max_revisions=gig.max_revisions,
        last_activity_at=now,
    )
    order.gig = gig
    order.escrow = escrow
    order.milestones = planned
    append_message(
        order, None, "system",
        f"Order placed. Fund {escrow.total_amount} lamports into escrow {escrow.address} "
        f"before {escrow.expires_at.isoformat()}.",
    )
    db.add(order)
    await db.flush()

    log_audit(
        db,
        OrderCreated(
            order_id=order.id, at=now, reference=reference, buyer=buyer, seller=gig.seller,
            price_base=gig.price, total_amount=escrow.total_amount,
        ),
        actor=buyer,
    )
    await db.commit()

    logger.info(
        "Created order %s for gig %s: base=%d total=%d escrow=%s",
        reference, gig.id, escrow.base_amount, escrow.total_amount, escrow.address,
    )
    return order


async def fund_order(
    db: AsyncSession,
    ledger: LedgerGateway,
    order_id: int,
    account: str,
    *,
    tx_ref: str | None = None,
    clock: Clock = system_clock,
) -> Order:
    """Deposit the escrow total and activate the escrow once the ledger confirms."""
    order = await get_order(db, order_id)
    actor = actor_for(order, account)
    validate_transition(order.status, OrderAction.FUND, actor)
    escrow = order.escrow
    now = clock.now()
    check_fundable(escrow, now)
    if tx_ref:
        await _ensure_deposit_unused(db, tx_ref)

    async with order_claim(order):
        funding_ref = await collect_deposit(ledger, escrow, tx_ref=tx_ref)
        mark_funded(escrow, funding_ref, now)
        order.last_activity_at = now
        append_message(order, None, "system", f"Escrow funded with {escrow.total_amount} lamports.")
        log_audit(
            db,
            EscrowFunded(
                order_id=order.id, at=now, address=escrow.address,
                amount=escrow.total_amount, tx_ref=funding_ref,
            ),
            actor=account,
        )
        await commit_or_conflict(db, order, settled=[funding_ref])

    logger.info("Order %s escrow funded (tx=%s)", order.reference, funding_ref)
    return order


async def accept_order(
    db: AsyncSession, order_id: int, account: str, *, clock: Clock = system_clock,
) -> Order:
    order = await get_order(db, order_id)
    actor = actor_for(order, account)
    new_status = validate_transition(order.status, OrderAction.ACCEPT, actor)
    require_funded(order.escrow)

    now = clock.now()
    async with order_claim(order):
        order.accepted_at = now
        apply_transition(db, order, OrderAction.ACCEPT, new_status, account, actor, now,
                         note="Seller accepted the order. Work is in progress.")
        await commit_or_conflict(db, order)

    logger.info("Order %s accepted by seller", order.reference)
    return order


async def submit_deliverable(
    db: AsyncSession,
    order_id: int,
    account: str,
    deliverable: str,
    attachments: list[str] | None = None,
    *,
    clock: Clock = system_clock,
) -> Order:
    body = _check_text(deliverable, "Deliverable", settings.max_message_length)
    files = _check_attachments(attachments)

    order = await get_order(db, order_id)
    actor = actor_for(order, account)
    new_status = validate_transition(order.status, OrderAction.DELIVER, actor)

    now = clock.now()
    async with order_claim(order):
        append_message(order, account, "deliverable", body, files)
        order.delivered_at = now
        apply_transition(db, order, OrderAction.DELIVER, new_status, account, actor, now)
        await commit_or_conflict(db, order)

    logger.info("Order %s delivered", order.reference)
    return order


async def request_revision(
    db: AsyncSession,
    order_id: int,
    account: str,
    notes: str,
    *,
    clock: Clock = system_clock,
) -> Order:
    body = _check_text(notes, "Revision notes", settings.max_message_length)

    order = await get_order(db, order_id)
    actor = actor_for(order, account)
    new_status = validate_transition(order.status, OrderAction.REQUEST_REVISION, actor)
    if order.revisions_used >= order.max_revisions:
        raise MaxRevisionsExceeded(
            f"All {order.max_revisions} revisions have been used",
            revisions_used=order.revisions_used,
        )

    now = clock.now()
    async with order_claim(order):
        order.revisions_used += 1
        append_message(order, account, "revision", body)
        apply_transition(
            db, order, OrderAction.REQUEST_REVISION, new_status, account, actor, now,
            note=f"Revision {order.revisions_used} of {order.max_revisions} requested.",
        )
        await commit_or_conflict(db, order)

    logger.info("Order %s revision %d requested", order.reference, order.revisions_used)
    return order


def complete_open_milestones(order: Order, now: datetime) -> None:
    for milestone in order.milestones:
        if milestone.status != "completed":
            milestone.status = "completed"
            milestone.completed_at = now


def record_rating(order: Order, rating: int | None) -> None:
    gig = order.gig
    if gig is None:
        return
    gig.completed_orders += 1
    if rating is not None:
        gig.rating_total += rating
        gig.rating_count += 1


async def approve_work(
    db: AsyncSession,
    ledger: LedgerGateway,
    order_id: int,
    account: str,
    rating: int,
    review: str | None = None,
    *,
    clock: Clock = system_clock,
) -> Order:
    """Buyer accepts the delivery: seller is paid the base, platform the fees."""
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise InvalidRating(f"Rating must be between 1 and 5, got {rating!r}")
    if review is not None:
        review = _check_text(review, "Review", settings.max_review_length, min_length=0) or None

    order = await get_order(db, order_id)
    actor = actor_for(order, account)
    new_status = validate_transition(order.status, OrderAction.APPROVE, actor)
    escrow = order.escrow
    payouts = plan_release(escrow, settings.platform_account)

    async with order_claim(order):
        settled = await settle(ledger, escrow, payouts, "release")
        now = clock.now()
        apply_payouts(escrow, settled, now)
        complete_open_milestones(order, now)
        order.rating = rating
        order.review = review
        order.completed_at = now
        record_rating(order, rating)
        apply_transition(db, order, OrderAction.APPROVE, new_status, account, actor, now,
                         note=f"Buyer approved the work. {escrow.released_amount} lamports released to the seller.")
        audit_payouts(db, order, settled, "release", now, actor=account)
        await commit_or_conflict(db, order, settled=[s.tx_ref for s in settled])

    logger.info(
        "Order %s completed: released=%d fees=%d",
        order.reference, escrow.released_amount, escrow.fee_collected,
    )
    return order


async def cancel_order(
    db: AsyncSession,
    ledger: LedgerGateway,
    order_id: int,
    account: str,
    reason: str,
    *,
    clock: Clock = system_clock,
) -> Order:
    """Cancel before delivery; a funded escrow is refunded to the buyer in full."""
    reason_text = _check_text(reason, "Cancellation reason", settings.max_requirements_length)

    order = await get_order(db, order_id)
    actor = actor_for(order, account)
    if _has_deliverable(order):
        raise InvalidTransitionError(order.status, OrderAction.CANCEL, actor)
    new_status = validate_transition(order.status, OrderAction.CANCEL, actor)
    escrow = order.escrow

    settled: list[SettledPayout] = []
    async with order_claim(order):
        if escrow.status == EscrowStatus.PENDING:
            now = clock.now()
            cancel_unfunded(escrow)
        elif escrow.status == EscrowStatus.ACTIVE:
            settled = await settle(ledger, escrow, plan_refund(escrow), "refund")
            now = clock.now()
            apply_payouts(escrow, settled, now)
            audit_payouts(db, order, settled, "refund", now, actor=account)
        else:
            raise InvalidState(f"Escrow is {escrow.status}; the order cannot be cancelled")

        order.cancelled_at = now
        order.cancel_reason = reason_text
        apply_transition(db, order, OrderAction.CANCEL, new_status, account, actor, now,
                         note=f"Order cancelled by {actor.value}: {reason_text}")
        await commit_or_conflict(db, order, settled=[s.tx_ref for s in settled])

    logger.info(
        "Order %s cancelled by %s (refunded=%d)",
        order.reference, actor.value, escrow.refunded_amount,
    )
    return order


async def add_message(
    db: AsyncSession,
    order_id: int,
    account: str,
    body: str,
    attachments: list[str] | None = None,
) -> OrderMessage:
    text = _check_text(body, "Message", settings.max_message_length)
    files = _check_attachments(attachments)

    order = await get_order(db, order_id)
    if actor_for(order, account) == Actor.OUTSIDER:
        raise Unauthorized("Only the buyer and the seller can post messages")
    if order.status not in MESSAGING_STATUSES:
        raise InvalidState(f"Messages are closed for {order.status} orders")

    message = append_message(order, account, "text", text, files)
    await commit_or_conflict(db, order)
    return message

