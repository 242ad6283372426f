"""Dispute lifecycle: open, gather evidence, review, resolve or escalate.

Resolution splits whatever base amount is still in escrow between buyer and
seller by the arbitrated percentage; the platform keeps its fees in every
outcome.  Escalation freezes the escrow in the disputed state for a process
outside the marketplace.
"""

import logging
from enum import StrEnum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.core.clock import Clock, system_clock
from gigmarket.core.config import settings
from gigmarket.core.errors import (
    DisputeAlreadyExists,
    InvalidMessage,
    InvalidPercentage,
    InvalidState,
    NotFoundError,
    Unauthorized,
    ValidationError,
)
from gigmarket.models.dispute import Dispute, DisputeEvidence
from gigmarket.services import escrow_account
from gigmarket.services.audit import log_audit
from gigmarket.services.events import DisputeEscalated, DisputeOpened, DisputeResolved
from gigmarket.services.guards import commit_or_conflict, order_claim
from gigmarket.services.ledger import LedgerGateway
from gigmarket.services.ledger.settlement import settle
from gigmarket.services.milestones import MilestoneStatus
from gigmarket.services.order import (
    actor_for,
    append_message,
    apply_transition,
    audit_payouts,
    get_order,
    is_arbitrator,
)
from gigmarket.services.order_state_machine import Actor, OrderAction, validate_transition
from gigmarket.services.timeouts import TimeoutPolicy

logger = logging.getLogger(__name__)


class DisputeStatus(StrEnum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


UNSETTLED_DISPUTE_STATUSES: frozenset[DisputeStatus] = frozenset({
    DisputeStatus.OPEN,
    DisputeStatus.UNDER_REVIEW,
    DisputeStatus.ESCALATED,
})

# Statuses in which evidence may still be added and a ruling made
ACTIONABLE_DISPUTE_STATUSES: frozenset[DisputeStatus] = frozenset({
    DisputeStatus.OPEN,
    DisputeStatus.UNDER_REVIEW,
})


def _require_arbitrator(dispute: Dispute, account: str) -> None:
    if not is_arbitrator(account):
        raise Unauthorized("Only a marketplace arbitrator can do this")
    if account in (dispute.order.buyer, dispute.order.seller):
        raise Unauthorized("An arbitrator cannot rule on their own order")


async def get_dispute(db: AsyncSession, dispute_id: int) -> Dispute:
    result = await db.execute(select(Dispute).where(Dispute.id == dispute_id))
    dispute = result.scalar_one_or_none()
    if dispute is None:
        raise NotFoundError(f"Dispute {dispute_id} not found")
    return dispute


def open_dispute_for(order_disputes: list[Dispute]) -> Dispute | None:
    for dispute in order_disputes:
        if dispute.status in UNSETTLED_DISPUTE_STATUSES:
            return dispute
    return None


async def open_dispute(
    db: AsyncSession,
    order_id: int,
    account: str,
    reason: str,
    *,
    clock: Clock = system_clock,
) -> Dispute:
    """Contest an order: freezes its escrow and moves the order to disputed."""
    reason_text = (reason or "").strip()
    if not settings.min_dispute_reason_length <= len(reason_text) <= settings.max_dispute_reason_length:
        raise ValidationError(
            f"Dispute reason must be between {settings.min_dispute_reason_length} and "
            f"{settings.max_dispute_reason_length} characters"
        )

    order = await get_order(db, order_id)
    escrow = order.escrow
    now = clock.now()
    policy = TimeoutPolicy.from_settings()

    # Window first: a late dispute is rejected the same way whatever the order status
    escrow_account.check_dispute_window(escrow, now, policy)
    if open_dispute_for(order.disputes) is not None:
        raise DisputeAlreadyExists(f"Order {order.id} already has an open dispute")
    actor = actor_for(order, account)
    new_status = validate_transition(order.status, OrderAction.DISPUTE, actor)

    async with order_claim(order):
        escrow_account.open_dispute(escrow, now, policy)
        dispute = Dispute(
            escrow_id=escrow.id,
            initiator=account,
            reason=reason_text,
            status=DisputeStatus.OPEN.value,
        )
        dispute.escrow = escrow
        order.disputes.append(dispute)
        for milestone in order.milestones:
            if milestone.status != MilestoneStatus.COMPLETED:
                milestone.status = MilestoneStatus.DISPUTED.value
        apply_transition(db, order, OrderAction.DISPUTE, new_status, account, actor, now,
                         note=f"Dispute opened by {actor.value}: {reason_text}")
        log_audit(
            db,
            DisputeOpened(
                order_id=order.id, at=now, dispute_id=dispute.id,
                initiator=account, reason=reason_text,
            ),
            actor=account,
        )
        await commit_or_conflict(db, order)

    logger.info("Dispute opened on order %s by %s", order.reference, actor.value)
    return dispute


async def submit_evidence(
    db: AsyncSession,
    dispute_id: int,
    account: str,
    content: str,
) -> DisputeEvidence:
    text = (content or "").strip()
    if not 1 <= len(text) <= settings.max_dispute_reason_length:
        raise InvalidMessage(
            f"Evidence must be between 1 and {settings.max_dispute_reason_length} characters"
        )

    dispute = await get_dispute(db, dispute_id)
    order = dispute.order
    if actor_for(order, account) == Actor.OUTSIDER and not is_arbitrator(account):
        raise Unauthorized("Only the parties or an arbitrator can submit evidence")
    if dispute.status not in ACTIONABLE_DISPUTE_STATUSES:
        raise InvalidState(f"Dispute is {dispute.status}; evidence is closed")
    if len(dispute.evidence) >= settings.max_evidence_items:
        raise ValidationError(f"A dispute holds at most {settings.max_evidence_items} evidence items")

    seq = max((e.seq for e in dispute.evidence), default=0) + 1
    item = DisputeEvidence(seq=seq, submitter=account, content=text)
    dispute.evidence.append(item)
    await commit_or_conflict(db, order)
    return item


async def start_review(
    db: AsyncSession, dispute_id: int, account: str, *, clock: Clock = system_clock,
) -> Dispute:
    dispute = await get_dispute(db, dispute_id)
    _require_arbitrator(dispute, account)
    if dispute.status != DisputeStatus.OPEN:
        raise InvalidState(f"Dispute is {dispute.status}, not open")

    order = dispute.order
    async with order_claim(order):
        dispute.status = DisputeStatus.UNDER_REVIEW.value
        dispute.arbitrator = account
        order.last_activity_at = clock.now()
        append_message(order, None, "system", "An arbitrator is reviewing the dispute.")
        await commit_or_conflict(db, order)
    return dispute


async def resolve_dispute(
    db: AsyncSession,
    ledger: LedgerGateway,
    dispute_id: int,
    account: str,
    buyer_refund_percent: int,
    reasoning: str,
    *,
    clock: Clock = system_clock,
) -> Dispute:
    """Split the escrow by ``buyer_refund_percent`` and close the dispute."""
    pct = buyer_refund_percent
    if isinstance(pct, bool) or not isinstance(pct, int) or not 0 <= pct <= 100:
        raise InvalidPercentage(f"Refund percentage must be between 0 and 100, got {pct!r}")
    reasoning_text = (reasoning or "").strip()
    if not reasoning_text:
        raise ValidationError("A resolution needs reasoning")

    dispute = await get_dispute(db, dispute_id)
    _require_arbitrator(dispute, account)
    if dispute.status not in ACTIONABLE_DISPUTE_STATUSES:
        raise InvalidState(f"Dispute is {dispute.status} and cannot be resolved")

    order = dispute.order
    escrow = order.escrow
    action = OrderAction.REFUND if pct == 100 else OrderAction.RESOLVE
    new_status = validate_transition(order.status, action, Actor.ARBITRATOR)
    split = escrow_account.plan_dispute_split(escrow, pct, settings.platform_account)

    async with order_claim(order):
        settled = await settle(ledger, escrow, split.payouts, "dispute")
        now = clock.now()
        escrow_account.resolve_dispute(escrow, settled, now)
        dispute.status = DisputeStatus.RESOLVED.value
        dispute.arbitrator = account
        dispute.buyer_refund_percent = pct
        dispute.resolution_reasoning = reasoning_text
        dispute.buyer_amount = split.buyer_amount
        dispute.seller_amount = split.seller_amount
        dispute.resolved_at = now
        order.completed_at = now
        apply_transition(
            db, order, action, new_status, account, Actor.ARBITRATOR, now,
            note=(
                f"Dispute resolved: {split.buyer_amount} lamports refunded to the buyer, "
                f"{split.seller_amount} released to the seller."
            ),
        )
        audit_payouts(db, order, settled, "dispute", now, actor=account)
        log_audit(
            db,
            DisputeResolved(
                order_id=order.id, at=now, dispute_id=dispute.id, arbitrator=account,
                buyer_refund_percent=pct, buyer_amount=split.buyer_amount,
                seller_amount=split.seller_amount,
            ),
            actor=account,
        )
        await commit_or_conflict(db, order, settled=[s.tx_ref for s in settled])

    logger.info(
        "Dispute %s on order %s resolved: buyer=%d seller=%d (%d%%)",
        dispute.id, order.reference, split.buyer_amount, split.seller_amount, pct,
    )
    return dispute


async def escalate_dispute(
    db: AsyncSession, dispute_id: int, account: str, *, clock: Clock = system_clock,
) -> Dispute:
    """Hand the dispute to an outside process; the escrow stays frozen."""
    dispute = await get_dispute(db, dispute_id)
    _require_arbitrator(dispute, account)
    if dispute.status != DisputeStatus.UNDER_REVIEW:
        raise InvalidState(f"Only disputes under review can be escalated, this one is {dispute.status}")

    order = dispute.order
    now = clock.now()
    async with order_claim(order):
        dispute.status = DisputeStatus.ESCALATED.value
        dispute.arbitrator = account
        order.last_activity_at = now
        append_message(order, None, "system", "The dispute was escalated for manual resolution.")
        log_audit(
            db,
            DisputeEscalated(order_id=order.id, at=now, dispute_id=dispute.id, arbitrator=account),
            actor=account,
        )
        await commit_or_conflict(db, order)

    logger.warning("Dispute %s on order %s escalated", dispute.id, order.reference)
    return dispute
