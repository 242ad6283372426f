"""Tests for milestone planning and sequential milestone payouts."""

from datetime import timedelta

import pytest

from conftest import BUYER, SELLER, T0, UNIT, fake_db, funded_ledger, make_order

from gigmarket.core.errors import (
    InvalidMilestones,
    InvalidMilestoneSplit,
    InvalidState,
    MilestoneOutOfOrder,
    NotFoundError,
    Unauthorized,
)
from gigmarket.services.escrow_account import EscrowStatus, is_conserved
from gigmarket.services.milestones import (
    MilestonePlan,
    MilestoneStatus,
    approve_milestone,
    build_milestones,
    start_milestone,
)
from gigmarket.services.order_state_machine import OrderStatus


def _plans(*percentages: int) -> list[MilestonePlan]:
    return [
        MilestonePlan(f"Stage {i}", pct, T0 + timedelta(days=7 * i))
        for i, pct in enumerate(percentages, start=1)
    ]


def _order_with_milestones(*percentages: int, status: str = "in_progress"):
    order = make_order(status=status, funded=True, price=10 * UNIT)
    order.milestones = build_milestones(order.price_base, _plans(*percentages), T0)
    return order


class TestBuildMilestones:
    def test_amounts_follow_percentages(self):
        milestones = build_milestones(10 * UNIT, _plans(30, 70), T0)
        assert [m.position for m in milestones] == [1, 2]
        assert [m.amount for m in milestones] == [3 * UNIT, 7 * UNIT]
        assert all(m.status == MilestoneStatus.PENDING for m in milestones)

    def test_rounding_remainder_on_last(self):
        milestones = build_milestones(1001, _plans(33, 33, 34), T0)
        assert sum(m.amount for m in milestones) == 1001
        assert milestones[-1].amount == 341

    def test_percentages_must_sum_to_100(self):
        with pytest.raises(InvalidMilestoneSplit):
            build_milestones(10 * UNIT, _plans(30, 60), T0)

    def test_past_due_date_rejected(self):
        plans = [MilestonePlan("Late", 100, T0 - timedelta(days=1))]
        with pytest.raises(InvalidMilestones):
            build_milestones(10 * UNIT, plans, T0)

    def test_blank_description_rejected(self):
        plans = [MilestonePlan("   ", 100, T0 + timedelta(days=1))]
        with pytest.raises(InvalidMilestones):
            build_milestones(10 * UNIT, plans, T0)

    def test_too_many_rejected(self):
        with pytest.raises(InvalidMilestones):
            build_milestones(10 * UNIT, _plans(*([10] * 9 + [5, 5])), T0)


class TestStartMilestone:
    @pytest.mark.asyncio
    async def test_seller_starts_first(self, clock):
        order = _order_with_milestones(50, 50)
        milestone = await start_milestone(fake_db(order), order.id, 1, SELLER, clock=clock)
        assert milestone.status == MilestoneStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_buyer_cannot_start(self, clock):
        order = _order_with_milestones(50, 50)
        with pytest.raises(Unauthorized):
            await start_milestone(fake_db(order), order.id, 1, BUYER, clock=clock)

    @pytest.mark.asyncio
    async def test_cannot_skip_ahead(self, clock):
        order = _order_with_milestones(50, 50)
        with pytest.raises(MilestoneOutOfOrder):
            await start_milestone(fake_db(order), order.id, 2, SELLER, clock=clock)

    @pytest.mark.asyncio
    async def test_not_before_acceptance(self, clock):
        order = _order_with_milestones(100, status="pending")
        with pytest.raises(InvalidState):
            await start_milestone(fake_db(order), order.id, 1, SELLER, clock=clock)


class TestApproveMilestone:
    @pytest.mark.asyncio
    async def test_sequential_release_completes_order(self, clock):
        order = _order_with_milestones(30, 70)
        escrow = order.escrow
        db = fake_db(order)
        ledger = funded_ledger(order)

        with pytest.raises(MilestoneOutOfOrder):
            await approve_milestone(db, ledger, order.id, 2, BUYER, clock=clock)

        first = await approve_milestone(db, ledger, order.id, 1, BUYER, clock=clock)
        assert first.status == MilestoneStatus.COMPLETED
        assert first.release_tx is not None
        assert order.status == OrderStatus.IN_PROGRESS
        assert escrow.status == EscrowStatus.ACTIVE
        assert ledger.balances[SELLER] == 3 * UNIT

        await approve_milestone(db, ledger, order.id, 2, BUYER, clock=clock)
        assert order.status == OrderStatus.COMPLETED
        assert escrow.status == EscrowStatus.COMPLETED
        assert ledger.balances[SELLER] == 10 * UNIT
        assert ledger.balances[escrow.address] == 0
        assert is_conserved(escrow)
        assert order.gig.completed_orders == 1

    @pytest.mark.asyncio
    async def test_seller_cannot_approve(self, clock):
        order = _order_with_milestones(100)
        with pytest.raises(Unauthorized):
            await approve_milestone(fake_db(order), funded_ledger(order), order.id, 1, SELLER, clock=clock)

    @pytest.mark.asyncio
    async def test_unknown_position(self, clock):
        order = _order_with_milestones(100)
        with pytest.raises(NotFoundError):
            await approve_milestone(fake_db(order), funded_ledger(order), order.id, 5, BUYER, clock=clock)

    @pytest.mark.asyncio
    async def test_already_completed(self, clock):
        order = _order_with_milestones(50, 50)
        db = fake_db(order)
        ledger = funded_ledger(order)
        await approve_milestone(db, ledger, order.id, 1, BUYER, clock=clock)
        with pytest.raises(InvalidState):
            await approve_milestone(db, ledger, order.id, 1, BUYER, clock=clock)
