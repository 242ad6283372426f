"""Tests for ledger transfers, confirmation polling and the sandbox ledger."""

import pytest

from conftest import BUYER, SELLER, UNIT, funded_ledger, make_order

from gigmarket.core.errors import InvalidDeposit, InvalidTransferIntent, SettlementError
from gigmarket.services.escrow_account import Payout, PayoutRecipient
from gigmarket.services.ledger import (
    ConfirmationStatus,
    InMemoryLedgerGateway,
    LedgerGateway,
    TransactionRef,
    TransferIntentBuilder,
    configure_gateway,
    get_gateway,
)
from gigmarket.services.ledger import settlement


def _intent(key: str = "k-1", amount: int = 100):
    return (
        TransferIntentBuilder()
        .source(BUYER)
        .destination(SELLER)
        .amount(amount)
        .memo("test")
        .idempotency_key(key)
        .build()
    )


class TestTransferIntentBuilder:
    def test_builds_frozen_intent(self):
        intent = _intent()
        assert intent.source == BUYER
        assert intent.amount == 100
        with pytest.raises(AttributeError):
            intent.amount = 5

    def test_missing_destination(self):
        with pytest.raises(InvalidTransferIntent):
            TransferIntentBuilder().source(BUYER).amount(1).idempotency_key("k").build()

    def test_same_source_and_destination(self):
        with pytest.raises(InvalidTransferIntent):
            TransferIntentBuilder().source(BUYER).destination(BUYER).amount(1).idempotency_key("k").build()

    @pytest.mark.parametrize("amount", [0, -1, 1.5, None])
    def test_bad_amount(self, amount):
        with pytest.raises(InvalidTransferIntent):
            TransferIntentBuilder().source(BUYER).destination(SELLER).amount(amount).idempotency_key("k").build()

    def test_missing_key(self):
        with pytest.raises(InvalidTransferIntent):
            TransferIntentBuilder().source(BUYER).destination(SELLER).amount(1).build()


class TestInMemoryLedger:
    def test_satisfies_protocol(self):
        assert isinstance(InMemoryLedgerGateway(), LedgerGateway)

    @pytest.mark.asyncio
    async def test_transfer_moves_balance(self):
        ledger = InMemoryLedgerGateway()
        ledger.credit(BUYER, 500)
        ref = await ledger.transfer(_intent(amount=200))
        assert await ledger.confirm(ref) == ConfirmationStatus.CONFIRMED
        assert ledger.balances[BUYER] == 300
        assert ledger.balances[SELLER] == 200

    @pytest.mark.asyncio
    async def test_same_key_not_applied_twice(self):
        ledger = InMemoryLedgerGateway()
        ledger.credit(BUYER, 500)
        first = await ledger.transfer(_intent(amount=200))
        second = await ledger.transfer(_intent(amount=200))
        assert first == second
        assert ledger.balances[SELLER] == 200

    @pytest.mark.asyncio
    async def test_failed_key_can_be_retried(self):
        ledger = InMemoryLedgerGateway()
        ledger.credit(BUYER, 500)
        ledger.fail_next = 1
        first = await ledger.transfer(_intent())
        assert await ledger.confirm(first) == ConfirmationStatus.FAILED
        second = await ledger.transfer(_intent())
        assert second != first
        assert await ledger.confirm(second) == ConfirmationStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_pending_before_confirmed(self):
        ledger = InMemoryLedgerGateway(confirm_after=2)
        ledger.credit(BUYER, 500)
        ref = await ledger.transfer(_intent())
        assert await ledger.confirm(ref) == ConfirmationStatus.PENDING
        assert await ledger.confirm(ref) == ConfirmationStatus.PENDING
        assert await ledger.confirm(ref) == ConfirmationStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_unknown_ref_fails(self):
        assert await InMemoryLedgerGateway().confirm(TransactionRef("nope")) == ConfirmationStatus.FAILED


class TestWaitForConfirmation:
    @pytest.mark.asyncio
    async def test_polls_until_confirmed(self):
        ledger = InMemoryLedgerGateway(confirm_after=3)
        ledger.credit(BUYER, 500)
        ref = await ledger.transfer(_intent())
        await settlement.wait_for_confirmation(ledger, ref, attempts=5, interval=0)

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        ledger = InMemoryLedgerGateway(confirm_after=10)
        ledger.credit(BUYER, 500)
        ref = await ledger.transfer(_intent())
        with pytest.raises(SettlementError):
            await settlement.wait_for_confirmation(ledger, ref, attempts=3, interval=0)

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self):
        class FlakyLedger(InMemoryLedgerGateway):
            calls = 0

            async def confirm(self, ref):
                self.calls += 1
                if self.calls < 3:
                    raise ConnectionError("node unreachable")
                return ConfirmationStatus.CONFIRMED

        ledger = FlakyLedger()
        await settlement.wait_for_confirmation(ledger, TransactionRef("x"), attempts=5, interval=0)
        assert ledger.calls == 3

    @pytest.mark.asyncio
    async def test_rejected_transfer(self):
        ledger = InMemoryLedgerGateway()
        ref = await ledger.transfer(_intent())  # buyer has no funds
        with pytest.raises(SettlementError):
            await settlement.wait_for_confirmation(ledger, ref, attempts=2, interval=0)


class TestSettle:
    @pytest.mark.asyncio
    async def test_legs_settle_in_order(self):
        order = make_order(funded=True)
        escrow = order.escrow
        ledger = funded_ledger(order)
        payouts = [
            Payout(PayoutRecipient.SELLER, SELLER, escrow.base_amount),
            Payout(PayoutRecipient.PLATFORM, "platform", escrow.platform_fee + escrow.service_fee),
        ]

        settled = await settlement.settle(ledger, escrow, payouts, "release")

        assert [s.payout for s in settled] == payouts
        keys = [t.idempotency_key for t in ledger.transfers]
        assert keys == [
            f"{escrow.address}:release:seller:1",
            f"{escrow.address}:release:platform:1",
        ]

    @pytest.mark.asyncio
    async def test_failure_reports_confirmed_legs(self):
        order = make_order(funded=True)
        escrow = order.escrow
        ledger = funded_ledger(order)
        ledger.rejected_destinations.add(BUYER)
        payouts = [
            Payout(PayoutRecipient.SELLER, SELLER, UNIT),
            Payout(PayoutRecipient.BUYER, BUYER, UNIT),
        ]
        with pytest.raises(SettlementError) as exc_info:
            await settlement.settle(ledger, escrow, payouts, "dispute", attempts=1, interval=0)
        assert len(exc_info.value.settled) == 1

    @pytest.mark.asyncio
    async def test_deposit_below_reserve_rejected(self):
        order = make_order()
        ledger = InMemoryLedgerGateway(minimum_reserve=order.escrow.total_amount + 1)
        ledger.credit(BUYER, order.escrow.total_amount)
        with pytest.raises(SettlementError):
            await settlement.collect_deposit(ledger, order.escrow)
        assert ledger.transfers == []

    @pytest.mark.asyncio
    async def test_deposit_transfers_total(self):
        order = make_order()
        ledger = InMemoryLedgerGateway()
        ledger.credit(BUYER, order.escrow.total_amount)
        ref = await settlement.collect_deposit(ledger, order.escrow)
        assert ref.startswith("mem-")
        assert ledger.balances[order.escrow.address] == order.escrow.total_amount
        assert ledger.transfers[0].idempotency_key == f"{order.escrow.address}:fund"

    @pytest.mark.asyncio
    async def test_external_deposit_checked_against_ledger_record(self):
        order = make_order()
        total = order.escrow.total_amount
        ledger = InMemoryLedgerGateway()
        ledger.credit(BUYER, total + 1)
        exact = ledger.record_external(BUYER, order.escrow.address, total)
        over = ledger.record_external(BUYER, order.escrow.address, 1)

        assert await settlement.collect_deposit(ledger, order.escrow, tx_ref=exact.signature) == exact.signature
        with pytest.raises(InvalidDeposit):
            await settlement.collect_deposit(ledger, order.escrow, tx_ref=over.signature)

    @pytest.mark.asyncio
    async def test_external_deposit_without_record_rejected(self):
        class NoHistoryLedger(InMemoryLedgerGateway):
            async def get_transfer(self, ref):
                return None

        order = make_order()
        ledger = NoHistoryLedger()
        ledger.credit(BUYER, order.escrow.total_amount)
        ref = ledger.record_external(BUYER, order.escrow.address, order.escrow.total_amount)
        with pytest.raises(InvalidDeposit):
            await settlement.collect_deposit(ledger, order.escrow, tx_ref=ref.signature)

    @pytest.mark.asyncio
    async def test_get_transfer_reports_what_moved(self):
        ledger = InMemoryLedgerGateway()
        ledger.credit(BUYER, 500)
        ref = ledger.record_external(BUYER, SELLER, 300)
        record = await ledger.get_transfer(ref)
        assert (record.source, record.destination, record.amount) == (BUYER, SELLER, 300)
        assert await ledger.get_transfer(TransactionRef("unknown")) is None


class TestGatewayRegistry:
    def test_configured_gateway_is_returned(self):
        ledger = InMemoryLedgerGateway()
        configure_gateway(ledger)
        assert get_gateway() is ledger
