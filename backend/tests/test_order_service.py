"""Tests for order commands, run against an in-memory order and sandbox ledger."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.orm.exc import StaleDataError

from conftest import (
    BUYER, OUTSIDER, SELLER, T0, UNIT, fake_db, funded_ledger, make_gig, make_order, scripted_db,
)

from gigmarket.core.config import settings
from gigmarket.core.errors import (
    AlreadyFunded,
    DepositAlreadyUsed,
    EscrowExpired,
    EscrowNotFunded,
    GigNotActive,
    InvalidDeposit,
    InvalidParties,
    InvalidRating,
    InvalidRequirements,
    InvalidState,
    MaxRevisionsExceeded,
    SettlementError,
    StaleState,
    StateConflictError,
    Unauthorized,
)
from gigmarket.models.audit_log import AuditLog
from gigmarket.services import escrow_account, guards
from gigmarket.services import order as order_svc
from gigmarket.services.escrow_account import EscrowStatus
from gigmarket.services.ledger.memory import InMemoryLedgerGateway
from gigmarket.services.order_state_machine import OrderStatus


def _audit_actions(db) -> list[str]:
    return [c.args[0].action for c in db.add.call_args_list if isinstance(c.args[0], AuditLog)]


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_creates_pending_order_with_escrow(self, clock):
        gig = make_gig(price=5_500_000_000)
        db = fake_db(gig)

        order = await order_svc.create_order(
            db, BUYER, gig.id, "Please make it blue and minimal", clock=clock,
        )

        assert order.status == OrderStatus.PENDING
        assert order.seller == SELLER
        assert order.reference.startswith("ORD-")
        assert order.deadline == T0 + timedelta(days=7)
        assert order.escrow.status == EscrowStatus.PENDING
        assert order.escrow.total_amount == 5_638_500_000
        assert order.escrow.expires_at == T0 + timedelta(days=30)
        assert order.messages[0].kind == "system"
        db.flush.assert_awaited_once()
        db.commit.assert_awaited_once()
        assert _audit_actions(db) == ["order_created"]

    @pytest.mark.asyncio
    async def test_inactive_gig_rejected(self, clock):
        gig = make_gig()
        gig.is_active = False
        db = fake_db(gig)
        with pytest.raises(GigNotActive):
            await order_svc.create_order(db, BUYER, gig.id, "Some requirements", clock=clock)
        db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_seller_cannot_order_own_gig(self, clock):
        gig = make_gig()
        with pytest.raises(InvalidParties):
            await order_svc.create_order(fake_db(gig), SELLER, gig.id, "Some requirements", clock=clock)

    @pytest.mark.asyncio
    async def test_short_requirements_rejected(self, clock):
        db = fake_db(make_gig())
        with pytest.raises(InvalidRequirements):
            await order_svc.create_order(db, BUYER, 1, "too short", clock=clock)
        db.execute.assert_not_awaited()


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_fund_accept_deliver_revise_approve(self, clock):
        order = make_order(price=5_500_000_000)
        escrow = order.escrow
        db = fake_db(order)
        ledger = InMemoryLedgerGateway()
        ledger.credit(BUYER, escrow.total_amount)

        await order_svc.fund_order(db, ledger, order.id, BUYER, clock=clock)
        assert escrow.status == EscrowStatus.ACTIVE
        assert order.status == OrderStatus.PENDING
        assert ledger.balances[escrow.address] == 5_638_500_000

        clock.advance(hours=1)
        await order_svc.accept_order(db, order.id, SELLER, clock=clock)
        assert order.status == OrderStatus.IN_PROGRESS

        await order_svc.submit_deliverable(db, order.id, SELLER, "Three concepts attached", ["a.png"], clock=clock)
        assert order.status == OrderStatus.DELIVERED

        await order_svc.request_revision(db, order.id, BUYER, "Make the second one darker", clock=clock)
        assert order.status == OrderStatus.REVISION_REQUESTED
        assert order.revisions_used == 1

        await order_svc.submit_deliverable(db, order.id, SELLER, "Darker version attached", clock=clock)
        assert order.status == OrderStatus.DELIVERED

        await order_svc.approve_work(db, ledger, order.id, BUYER, 5, "Great work", clock=clock)
        assert order.status == OrderStatus.COMPLETED
        assert order.rating == 5
        assert escrow.status == EscrowStatus.COMPLETED
        assert escrow.released_amount == 5_500_000_000
        assert ledger.balances[SELLER] == 5_500_000_000
        assert ledger.balances[settings.platform_account] == 138_500_000
        assert ledger.balances[escrow.address] == 0
        assert order.gig.completed_orders == 1
        assert order.gig.average_rating == 5.0

        with pytest.raises(StateConflictError):
            await order_svc.approve_work(db, ledger, order.id, BUYER, 5, clock=clock)

        seqs = [m.seq for m in order.messages]
        assert seqs == list(range(1, len(seqs) + 1))

    @pytest.mark.asyncio
    async def test_fund_with_external_deposit(self, clock):
        order = make_order()
        ledger = InMemoryLedgerGateway()
        ledger.credit(BUYER, order.escrow.total_amount)
        ref = ledger.record_external(BUYER, order.escrow.address, order.escrow.total_amount)

        db = scripted_db(order, None)
        await order_svc.fund_order(db, ledger, order.id, BUYER, tx_ref=ref.signature, clock=clock)
        assert order.escrow.funding_tx == ref.signature
        assert order.escrow.status == EscrowStatus.ACTIVE
        assert ledger.transfers == []


class TestExternalDeposits:
    @pytest.mark.asyncio
    async def test_underfunded_deposit_rejected(self, clock):
        order = make_order()
        ledger = InMemoryLedgerGateway()
        ledger.credit(BUYER, UNIT)
        ref = ledger.record_external(BUYER, order.escrow.address, 1)
        db = scripted_db(order, None)

        with pytest.raises(InvalidDeposit) as exc:
            await order_svc.fund_order(db, ledger, order.id, BUYER, tx_ref=ref.signature, clock=clock)
        assert exc.value.context["amount"] == 1
        assert exc.value.context["expected"] == order.escrow.total_amount
        assert order.escrow.status == EscrowStatus.PENDING
        assert order.escrow.funding_tx is None
        db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_deposit_to_other_address_rejected(self, clock):
        order = make_order()
        total = order.escrow.total_amount
        ledger = InMemoryLedgerGateway()
        ledger.credit(BUYER, total)
        ref = ledger.record_external(BUYER, "somewhere-else", total)

        with pytest.raises(InvalidDeposit):
            await order_svc.fund_order(
                scripted_db(order, None), ledger, order.id, BUYER, tx_ref=ref.signature, clock=clock,
            )
        assert order.escrow.status == EscrowStatus.PENDING

    @pytest.mark.asyncio
    async def test_deposit_from_other_wallet_rejected(self, clock):
        order = make_order()
        total = order.escrow.total_amount
        ledger = InMemoryLedgerGateway()
        ledger.credit(OUTSIDER, total)
        ref = ledger.record_external(OUTSIDER, order.escrow.address, total)

        with pytest.raises(InvalidDeposit):
            await order_svc.fund_order(
                scripted_db(order, None), ledger, order.id, BUYER, tx_ref=ref.signature, clock=clock,
            )
        assert order.escrow.status == EscrowStatus.PENDING

    @pytest.mark.asyncio
    async def test_reused_deposit_rejected(self, clock):
        first = make_order(1)
        second = make_order(2)
        total = first.escrow.total_amount
        ledger = InMemoryLedgerGateway()
        ledger.credit(BUYER, total)
        ref = ledger.record_external(BUYER, first.escrow.address, total)
        await order_svc.fund_order(
            scripted_db(first, None), ledger, first.id, BUYER, tx_ref=ref.signature, clock=clock,
        )
        assert first.escrow.status == EscrowStatus.ACTIVE

        db = scripted_db(second, first.escrow.id)
        with pytest.raises(DepositAlreadyUsed) as exc:
            await order_svc.fund_order(db, ledger, second.id, BUYER, tx_ref=ref.signature, clock=clock)
        assert exc.value.status_code == 409
        assert second.escrow.status == EscrowStatus.PENDING
        assert second.escrow.funding_tx is None
        db.commit.assert_not_awaited()


class TestFundingRules:
    @pytest.mark.asyncio
    async def test_only_buyer_funds(self, clock):
        order = make_order()
        with pytest.raises(Unauthorized):
            await order_svc.fund_order(fake_db(order), InMemoryLedgerGateway(), order.id, SELLER, clock=clock)

    @pytest.mark.asyncio
    async def test_fund_twice_rejected(self, clock):
        order = make_order(funded=True)
        with pytest.raises(AlreadyFunded):
            await order_svc.fund_order(fake_db(order), InMemoryLedgerGateway(), order.id, BUYER, clock=clock)

    @pytest.mark.asyncio
    async def test_fund_after_expiry_rejected(self, clock):
        order = make_order()
        clock.advance(days=31)
        with pytest.raises(EscrowExpired):
            await order_svc.fund_order(fake_db(order), InMemoryLedgerGateway(), order.id, BUYER, clock=clock)

    @pytest.mark.asyncio
    async def test_unconfirmed_deposit_leaves_escrow_pending(self, clock):
        order = make_order()
        db = fake_db(order)
        ledger = InMemoryLedgerGateway()  # buyer has no balance

        with pytest.raises(SettlementError):
            await order_svc.fund_order(db, ledger, order.id, BUYER, clock=clock)
        assert order.escrow.status == EscrowStatus.PENDING
        assert order.escrow.funded_at is None
        db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_accept_requires_funding(self, clock):
        order = make_order()
        with pytest.raises(EscrowNotFunded):
            await order_svc.accept_order(fake_db(order), order.id, SELLER, clock=clock)
        assert order.status == OrderStatus.PENDING


class TestRevisions:
    @pytest.mark.asyncio
    async def test_limit_enforced(self, clock):
        order = make_order(status="delivered", funded=True, max_revisions=1)
        db = fake_db(order)

        await order_svc.request_revision(db, order.id, BUYER, "Needs another pass", clock=clock)
        await order_svc.submit_deliverable(db, order.id, SELLER, "Another pass", clock=clock)

        with pytest.raises(MaxRevisionsExceeded):
            await order_svc.request_revision(db, order.id, BUYER, "And one more", clock=clock)
        assert order.status == OrderStatus.DELIVERED
        assert order.revisions_used == 1

    @pytest.mark.asyncio
    async def test_seller_cannot_request_revision(self, clock):
        order = make_order(status="delivered", funded=True)
        with pytest.raises(Unauthorized):
            await order_svc.request_revision(fake_db(order), order.id, SELLER, "Notes", clock=clock)


class TestApproveWork:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("rating", [0, 6, True, 4.5])
    async def test_invalid_rating(self, rating, clock):
        db = fake_db(make_order(status="delivered", funded=True))
        with pytest.raises(InvalidRating):
            await order_svc.approve_work(db, InMemoryLedgerGateway(), 42, BUYER, rating, clock=clock)
        db.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_settlement_failure_changes_nothing(self, clock):
        order = make_order(status="delivered", funded=True)
        escrow = order.escrow
        db = fake_db(order)
        ledger = funded_ledger(order)
        ledger.rejected_destinations.add(SELLER)

        with pytest.raises(SettlementError):
            await order_svc.approve_work(db, ledger, order.id, BUYER, 4, clock=clock)

        assert order.status == OrderStatus.DELIVERED
        assert escrow.status == EscrowStatus.ACTIVE
        assert escrow.released_amount == 0
        assert escrow.payouts == []
        assert order.rating is None
        db.commit.assert_not_awaited()
        guards.release_idempotency.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_partial_settlement_reports_confirmed_legs(self, clock):
        order = make_order(status="delivered", funded=True)
        ledger = funded_ledger(order)
        ledger.rejected_destinations.add(settings.platform_account)

        with pytest.raises(SettlementError) as exc_info:
            await order_svc.approve_work(fake_db(order), ledger, order.id, BUYER, 4, clock=clock)
        assert len(exc_info.value.settled) == 1
        assert order.status == OrderStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_unbalanced_settlement_is_not_committed(self, monkeypatch, clock):
        order = make_order(status="delivered", funded=True)
        db = fake_db(order)
        monkeypatch.setattr(escrow_account, "is_conserved", lambda _escrow: False)

        with pytest.raises(InvalidState):
            await order_svc.approve_work(db, funded_ledger(order), order.id, BUYER, 5, clock=clock)
        db.commit.assert_not_awaited()


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_unfunded(self, clock):
        order = make_order()
        ledger = InMemoryLedgerGateway()
        await order_svc.cancel_order(fake_db(order), ledger, order.id, SELLER, "Cannot take this on", clock=clock)
        assert order.status == OrderStatus.CANCELLED
        assert order.escrow.status == EscrowStatus.CANCELLED
        assert order.cancel_reason == "Cannot take this on"
        assert ledger.transfers == []

    @pytest.mark.asyncio
    async def test_cancel_in_progress_refunds_everything(self, clock):
        order = make_order(status="in_progress", funded=True)
        ledger = funded_ledger(order)
        total = order.escrow.total_amount

        await order_svc.cancel_order(fake_db(order), ledger, order.id, BUYER, "Changed my mind", clock=clock)
        assert order.status == OrderStatus.CANCELLED
        assert order.escrow.status == EscrowStatus.CANCELLED
        assert order.escrow.refunded_amount == total
        assert ledger.balances[BUYER] == total

    @pytest.mark.asyncio
    async def test_cancel_after_delivery_is_state_conflict(self, clock):
        order = make_order(status="delivered", funded=True)
        for account in (BUYER, SELLER, OUTSIDER):
            with pytest.raises(InvalidState):
                await order_svc.cancel_order(
                    fake_db(order), InMemoryLedgerGateway(), order.id, account, "No longer needed",
                    clock=clock,
                )
        assert order.status == OrderStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_outsider_cannot_cancel(self, clock):
        order = make_order()
        with pytest.raises(Unauthorized):
            await order_svc.cancel_order(
                fake_db(order), InMemoryLedgerGateway(), order.id, OUTSIDER, "Spam", clock=clock,
            )


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_stale_commit_becomes_stale_state(self, clock):
        order = make_order(funded=True)
        db = fake_db(order)
        db.commit = AsyncMock(side_effect=StaleDataError("version mismatch"))

        with pytest.raises(StaleState):
            await order_svc.accept_order(db, order.id, SELLER, clock=clock)
        db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_claim_in_flight_rejected(self, clock, monkeypatch):
        monkeypatch.setattr(guards, "check_idempotency", AsyncMock(return_value=False))
        order = make_order(status="delivered", funded=True)
        ledger = funded_ledger(order)

        with pytest.raises(StaleState):
            await order_svc.approve_work(fake_db(order), ledger, order.id, BUYER, 5, clock=clock)
        assert ledger.transfers == []
        assert order.status == OrderStatus.DELIVERED

    def test_claim_key_follows_version(self):
        order = make_order()
        assert guards.claim_key(order) == "order:42:v1"
        order.version_id = 2
        assert guards.claim_key(order) == "order:42:v2"


class TestMessagesAndQueries:
    @pytest.mark.asyncio
    async def test_party_posts_message(self):
        order = make_order()
        message = await order_svc.add_message(fake_db(order), order.id, BUYER, "Hello there")
        assert message.seq == 1
        assert message.sender == BUYER

    @pytest.mark.asyncio
    async def test_outsider_cannot_post(self):
        order = make_order()
        with pytest.raises(Unauthorized):
            await order_svc.add_message(fake_db(order), order.id, OUTSIDER, "Hello")

    @pytest.mark.asyncio
    async def test_closed_order_rejects_messages(self):
        order = make_order(status="completed")
        with pytest.raises(InvalidState):
            await order_svc.add_message(fake_db(order), order.id, BUYER, "Hello")

    @pytest.mark.asyncio
    async def test_time_remaining(self, clock):
        order = make_order()
        clock.advance(days=29, hours=12)
        left = await order_svc.get_time_remaining(fake_db(order), order.id, clock=clock)
        assert (left.days, left.hours, left.is_expired) == (0, 12, False)

    @pytest.mark.asyncio
    async def test_stats(self):
        done = make_order(1, status="completed", funded=True, price=2 * UNIT)
        done.escrow.released_amount = 2 * UNIT
        done.rating = 4
        active = make_order(2, status="in_progress", funded=True)
        stats = await order_svc.get_order_stats(fake_db(done, active), SELLER)
        assert stats.total_orders == 2
        assert stats.active_orders == 1
        assert stats.completed_orders == 1
        assert stats.total_earnings == 2 * UNIT
        assert stats.average_rating == 4.0
        assert stats.completion_rate == 50.0

    def test_available_actions(self):
        order = make_order(status="delivered", funded=True)
        assert "approve" in order_svc.available_actions(order, BUYER)
        assert order_svc.available_actions(order, OUTSIDER) == []
