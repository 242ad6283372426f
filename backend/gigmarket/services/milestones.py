"""Milestone planning and sequential milestone payouts."""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.core.clock import Clock, system_clock
from gigmarket.core.config import settings
from gigmarket.core.errors import InvalidMilestones, InvalidState, MilestoneOutOfOrder, NotFoundError, Unauthorized
from gigmarket.models.milestone import Milestone
from gigmarket.models.order import Order
from gigmarket.services.escrow_account import apply_payouts, plan_milestone_release, remaining_balance
from gigmarket.services.fees import split_milestones
from gigmarket.services.guards import commit_or_conflict, order_claim
from gigmarket.services.ledger import LedgerGateway
from gigmarket.services.ledger.settlement import settle
from gigmarket.services.order import (
    actor_for,
    append_message,
    apply_transition,
    audit_payouts,
    get_order,
    record_rating,
)
from gigmarket.services.order_state_machine import Actor, OrderAction, OrderStatus, validate_transition

logger = logging.getLogger(__name__)


class MilestoneStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DISPUTED = "disputed"


@dataclass(frozen=True)
class MilestonePlan:
    description: str
    percentage: int
    due_date: datetime


def build_milestones(base_amount: int, plans: list[MilestonePlan], now: datetime) -> list[Milestone]:
    """Validate milestone plans and split ``base_amount`` across them."""
    if not 1 <= len(plans) <= settings.max_milestones:
        raise InvalidMilestones(f"An order takes between 1 and {settings.max_milestones} milestones")
    for plan in plans:
        if not plan.description or not plan.description.strip():
            raise InvalidMilestones("Every milestone needs a description")
        if len(plan.description.strip()) > 200:
            raise InvalidMilestones("Milestone descriptions are limited to 200 characters")
        if plan.due_date <= now:
            raise InvalidMilestones("Milestone due dates must be in the future")

    amounts = split_milestones(base_amount, [plan.percentage for plan in plans])
    return [
        Milestone(
            position=position,
            description=plan.description.strip(),
            percentage=plan.percentage,
            amount=amount,
            status=MilestoneStatus.PENDING.value,
            due_date=plan.due_date,
        )
        for position, (plan, amount) in enumerate(zip(plans, amounts), start=1)
    ]


def _find_milestone(order: Order, position: int) -> Milestone:
    for milestone in order.milestones:
        if milestone.position == position:
            return milestone
    raise NotFoundError(f"Order {order.id} has no milestone {position}")


def _check_sequence(order: Order, milestone: Milestone) -> None:
    for earlier in order.milestones:
        if earlier.position < milestone.position and earlier.status != MilestoneStatus.COMPLETED:
            raise MilestoneOutOfOrder(
                f"Milestone {earlier.position} must be completed before milestone {milestone.position}"
            )


async def start_milestone(
    db: AsyncSession, order_id: int, position: int, account: str, *, clock: Clock = system_clock,
) -> Milestone:
    order = await get_order(db, order_id)
    if actor_for(order, account) != Actor.SELLER:
        raise Unauthorized("Only the seller can start a milestone")
    if order.status not in (OrderStatus.IN_PROGRESS, OrderStatus.REVISION_REQUESTED):
        raise InvalidState(f"Milestones cannot start while the order is {order.status}")
    milestone = _find_milestone(order, position)
    if milestone.status != MilestoneStatus.PENDING:
        raise InvalidState(f"Milestone {position} is {milestone.status}")
    _check_sequence(order, milestone)

    now = clock.now()
    async with order_claim(order):
        milestone.status = MilestoneStatus.IN_PROGRESS.value
        order.last_activity_at = now
        append_message(order, None, "system", f"Milestone {position} started: {milestone.description}")
        await commit_or_conflict(db, order)
    return milestone


async def approve_milestone(
    db: AsyncSession,
    ledger: LedgerGateway,
    order_id: int,
    position: int,
    account: str,
    *,
    clock: Clock = system_clock,
) -> Milestone:
    """Release one milestone's share to the seller.

    The final milestone also settles the fees and completes the order.
    """
    order = await get_order(db, order_id)
    actor = actor_for(order, account)
    validate_transition(order.status, OrderAction.APPROVE_MILESTONE, actor)
    milestone = _find_milestone(order, position)
    if milestone.status not in (MilestoneStatus.PENDING, MilestoneStatus.IN_PROGRESS):
        raise InvalidState(f"Milestone {position} is {milestone.status}")
    _check_sequence(order, milestone)

    final = all(
        m.status == MilestoneStatus.COMPLETED for m in order.milestones if m.position != position
    )
    escrow = order.escrow
    payouts = plan_milestone_release(
        escrow, milestone.amount, final=final, platform_account=settings.platform_account,
    )

    async with order_claim(order):
        settled = await settle(ledger, escrow, payouts, f"milestone-{position}")
        now = clock.now()
        apply_payouts(escrow, settled, now)
        milestone.status = MilestoneStatus.COMPLETED.value
        milestone.completed_at = now
        milestone.release_tx = settled[0].tx_ref
        audit_payouts(db, order, settled, f"milestone-{position}", now, actor=account)
        if final:
            order.completed_at = now
            record_rating(order, None)
            apply_transition(
                db, order, OrderAction.APPROVE_MILESTONE, OrderStatus.COMPLETED, account, actor, now,
                note="Final milestone approved. Order completed.",
            )
        else:
            order.last_activity_at = now
            append_message(
                order, None, "system",
                f"Milestone {position} approved; {settled[0].payout.amount} lamports released.",
            )
        await commit_or_conflict(db, order, settled=[s.tx_ref for s in settled])

    logger.info(
        "Order %s milestone %d released (final=%s, remaining escrow=%d)",
        order.reference, position, final, remaining_balance(escrow),
    )
    return milestone
