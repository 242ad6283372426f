"""Escrow account domain logic: pure functions over the ``Escrow`` row.

Nothing here talks to the database or the ledger.  Order and dispute services
plan payouts with the ``plan_*`` helpers, settle them through the ledger
gateway, and only then record them with ``apply_payouts``.  Every status
change and counter update happens in this module so money conservation is
enforced in one place:

    released_amount + refunded_amount + fee_collected <= total_amount

with equality once a funded escrow reaches a terminal status.
"""

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING

from gigmarket.core.config import Settings, settings
from gigmarket.core.errors import (
    AlreadyFunded,
    DisputeWindowClosed,
    EscrowExpired,
    EscrowNotFunded,
    InvalidAmount,
    InvalidDuration,
    InvalidParties,
    InvalidState,
    ReleaseExceedsBalance,
)
from gigmarket.models.escrow import Escrow, EscrowPayout
from gigmarket.services.fees import FeeSchedule

if TYPE_CHECKING:
    from gigmarket.services.timeouts import TimeoutPolicy


class EscrowStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_ESCROW_STATUSES: frozenset[EscrowStatus] = frozenset({
    EscrowStatus.COMPLETED,
    EscrowStatus.CANCELLED,
    EscrowStatus.EXPIRED,
})


class PayoutRecipient(StrEnum):
    SELLER = "seller"
    BUYER = "buyer"
    PLATFORM = "platform"


@dataclass(frozen=True)
class Payout:
    recipient: PayoutRecipient
    destination: str
    amount: int


@dataclass(frozen=True)
class SettledPayout:
    payout: Payout
    tx_ref: str


@dataclass(frozen=True)
class DisputeSplit:
    buyer_amount: int
    seller_amount: int
    payouts: list[Payout]


# ---------------------------------------------------------------------------
# Opening
# ---------------------------------------------------------------------------
def derive_escrow_address(
    program_id: str, buyer: str, seller: str, gig_id: int, reference: str,
) -> str:
    """Deterministic escrow address from stable seeds.

    The same (program, buyer, seller, gig, order reference) always yields the
    same address, so a buyer's wallet can compute where to send funds.
    """
    digest = hashlib.sha256()
    for seed in ("escrow", program_id, buyer, seller, str(gig_id), reference):
        digest.update(seed.encode("utf-8"))
        digest.update(b"\x00")
    return f"esc_{digest.hexdigest()[:40]}"


def validate_parties(buyer: str, seller: str, gig_id: int | None) -> None:
    if not buyer or not buyer.strip() or not seller or not seller.strip():
        raise InvalidParties("Buyer and seller accounts are required")
    if buyer == seller:
        raise InvalidParties("Buyer and seller must be different accounts")
    if gig_id is None or str(gig_id).strip() == "":
        raise InvalidParties("Gig id is required")


def validate_duration(duration_days: int, cfg: Settings = settings) -> None:
    if isinstance(duration_days, bool) or not isinstance(duration_days, int):
        raise InvalidDuration("Duration must be a whole number of days")
    if not 1 <= duration_days <= cfg.max_escrow_duration_days:
        raise InvalidDuration(
            f"Duration must be between 1 and {cfg.max_escrow_duration_days} days",
            duration_days=duration_days,
        )


def open_escrow(
    *,
    base_amount: int,
    buyer: str,
    seller: str,
    gig_id: int,
    reference: str,
    now: datetime,
    duration_days: int | None = None,
    fees: FeeSchedule | None = None,
    cfg: Settings = settings,
) -> Escrow:
    """Build a pending escrow with its fee breakdown and expiry."""
    if duration_days is None:
        duration_days = cfg.escrow_duration_days
    breakdown = (fees or FeeSchedule.from_settings(cfg)).calculate(base_amount)
    validate_parties(buyer, seller, gig_id)
    validate_duration(duration_days, cfg)

    return Escrow(
        address=derive_escrow_address(cfg.program_id, buyer, seller, gig_id, reference),
        buyer=buyer,
        seller=seller,
        base_amount=breakdown.base_amount,
        platform_fee=breakdown.platform_fee,
        service_fee=breakdown.service_fee,
        total_amount=breakdown.total_amount,
        status=EscrowStatus.PENDING.value,
        expires_at=now + timedelta(days=duration_days),
        released_amount=0,
        refunded_amount=0,
        fee_collected=0,
    )


# ---------------------------------------------------------------------------
# Balances
# ---------------------------------------------------------------------------
def paid_out(escrow: Escrow) -> int:
    return escrow.released_amount + escrow.refunded_amount + escrow.fee_collected


def remaining_balance(escrow: Escrow) -> int:
    """Lamports still custodied (zero before funding)."""
    if escrow.funded_at is None:
        return 0
    return escrow.total_amount - paid_out(escrow)


def remaining_base(escrow: Escrow) -> int:
    """Part of the remaining balance owed to the seller or refundable to the buyer."""
    return max(0, escrow.base_amount - escrow.released_amount - escrow.refunded_amount)


def remaining_fees(escrow: Escrow) -> int:
    return max(0, escrow.platform_fee + escrow.service_fee - escrow.fee_collected)


def is_conserved(escrow: Escrow) -> bool:
    """Payouts never exceed the funded total and match it once settled."""
    if escrow.funded_at is None:
        return paid_out(escrow) == 0
    if escrow.status in TERMINAL_ESCROW_STATUSES:
        return paid_out(escrow) == escrow.total_amount
    return paid_out(escrow) <= escrow.total_amount


# ---------------------------------------------------------------------------
# Funding
# ---------------------------------------------------------------------------
def check_fundable(escrow: Escrow, now: datetime) -> None:
    if escrow.status == EscrowStatus.ACTIVE:
        raise AlreadyFunded(f"Escrow {escrow.address} is already funded")
    if escrow.status != EscrowStatus.PENDING:
        raise InvalidState(f"Escrow is {escrow.status} and cannot be funded")
    if now > escrow.expires_at:
        raise EscrowExpired(f"Escrow {escrow.address} expired at {escrow.expires_at.isoformat()}")


def mark_funded(escrow: Escrow, tx_ref: str, now: datetime) -> None:
    """Pending -> Active once the buyer's deposit is confirmed."""
    check_fundable(escrow, now)
    escrow.status = EscrowStatus.ACTIVE.value
    escrow.funding_tx = tx_ref
    escrow.funded_at = now


def require_funded(escrow: Escrow) -> None:
    if escrow.status == EscrowStatus.PENDING:
        raise EscrowNotFunded()
    if escrow.status != EscrowStatus.ACTIVE:
        raise InvalidState(f"Escrow is {escrow.status}")


# ---------------------------------------------------------------------------
# Releases
# ---------------------------------------------------------------------------
def release(
    escrow: Escrow,
    recipient: PayoutRecipient,
    amount: int,
    now: datetime,
    *,
    resolving: bool = False,
) -> None:
    """Record ``amount`` leaving custody for ``recipient``.

    Legal while active, or while disputed when a resolution is being applied.
    Reaching a zero balance closes the account.
    """
    allowed = {EscrowStatus.ACTIVE}
    if resolving:
        allowed.add(EscrowStatus.DISPUTED)
    if escrow.status not in allowed:
        raise InvalidState(f"Cannot release from an escrow that is {escrow.status}")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount("Release amount must be a positive integer")
    if amount > remaining_balance(escrow):
        raise ReleaseExceedsBalance(
            f"Release of {amount} exceeds remaining balance {remaining_balance(escrow)}",
            amount=amount,
        )

    if recipient == PayoutRecipient.SELLER:
        if amount > remaining_base(escrow):
            raise ReleaseExceedsBalance("Seller release exceeds the remaining base amount")
        escrow.released_amount += amount
    elif recipient == PayoutRecipient.BUYER:
        escrow.refunded_amount += amount
    else:
        if amount > remaining_fees(escrow):
            raise ReleaseExceedsBalance("Platform release exceeds the remaining fees")
        escrow.fee_collected += amount

    if remaining_balance(escrow) == 0:
        _close(escrow, now, resolving=resolving)


def _close(escrow: Escrow, now: datetime, *, resolving: bool) -> None:
    if escrow.refunded_amount:
        escrow.refunded_at = now
    if not resolving and escrow.released_amount == 0 and escrow.refunded_amount > 0:
        escrow.status = EscrowStatus.CANCELLED.value
    else:
        escrow.status = EscrowStatus.COMPLETED.value
        escrow.released_at = now


def apply_payouts(
    escrow: Escrow,
    settled: list[SettledPayout],
    now: datetime,
    *,
    resolving: bool = False,
) -> None:
    """Record confirmed ledger transfers against the escrow."""
    for item in settled:
        release(escrow, item.payout.recipient, item.payout.amount, now, resolving=resolving)
        escrow.payouts.append(
            EscrowPayout(
                recipient=item.payout.recipient.value,
                destination=item.payout.destination,
                amount=item.payout.amount,
                tx_ref=item.tx_ref,
            )
        )
    if not is_conserved(escrow):
        raise InvalidState(
            f"Escrow {escrow.address} out of balance: paid={paid_out(escrow)} total={escrow.total_amount}",
            paid=paid_out(escrow), total=escrow.total_amount,
        )


def _fee_payout(escrow: Escrow, platform_account: str) -> list[Payout]:
    fees_left = remaining_fees(escrow)
    if not fees_left:
        return []
    return [Payout(PayoutRecipient.PLATFORM, platform_account, fees_left)]


def plan_release(escrow: Escrow, platform_account: str) -> list[Payout]:
    """Full release: remaining base to the seller, remaining fees to the platform."""
    require_funded(escrow)
    payouts: list[Payout] = []
    base_left = remaining_base(escrow)
    if base_left:
        payouts.append(Payout(PayoutRecipient.SELLER, escrow.seller, base_left))
    return payouts + _fee_payout(escrow, platform_account)


def plan_refund(escrow: Escrow) -> list[Payout]:
    """Full refund: everything still custodied goes back to the buyer."""
    require_funded(escrow)
    return [Payout(PayoutRecipient.BUYER, escrow.buyer, remaining_balance(escrow))]


def plan_milestone_release(
    escrow: Escrow, amount: int, *, final: bool, platform_account: str,
) -> list[Payout]:
    """Partial release for one milestone; the final one also settles the fees."""
    require_funded(escrow)
    if amount > remaining_base(escrow):
        raise ReleaseExceedsBalance(
            f"Milestone amount {amount} exceeds remaining base {remaining_base(escrow)}"
        )
    if final:
        # Rounding leftovers from earlier milestones belong to the seller
        amount = remaining_base(escrow)
    payouts = [Payout(PayoutRecipient.SELLER, escrow.seller, amount)]
    if final:
        payouts += _fee_payout(escrow, platform_account)
    return payouts


def plan_dispute_split(
    escrow: Escrow, buyer_refund_percent: int, platform_account: str,
) -> DisputeSplit:
    """Split the remaining base; the platform keeps its fees either way."""
    if escrow.status != EscrowStatus.DISPUTED:
        raise InvalidState(f"Escrow is {escrow.status}, not disputed")
    pool = remaining_base(escrow)
    buyer_amount = pool * buyer_refund_percent // 100
    seller_amount = pool - buyer_amount

    payouts: list[Payout] = []
    if buyer_amount:
        payouts.append(Payout(PayoutRecipient.BUYER, escrow.buyer, buyer_amount))
    if seller_amount:
        payouts.append(Payout(PayoutRecipient.SELLER, escrow.seller, seller_amount))
    payouts += _fee_payout(escrow, platform_account)
    return DisputeSplit(buyer_amount=buyer_amount, seller_amount=seller_amount, payouts=payouts)


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------
def check_dispute_window(escrow: Escrow, now: datetime, policy: "TimeoutPolicy") -> None:
    if not policy.within_dispute_window(escrow.expires_at, now):
        raise DisputeWindowClosed(
            f"Disputes closed at {policy.dispute_deadline(escrow.expires_at).isoformat()}"
        )


def open_dispute(escrow: Escrow, now: datetime, policy: "TimeoutPolicy") -> None:
    """Active -> Disputed, inside the dispute window only."""
    check_dispute_window(escrow, now, policy)
    if escrow.status != EscrowStatus.ACTIVE:
        if escrow.status == EscrowStatus.PENDING:
            raise EscrowNotFunded("Cannot dispute an escrow that was never funded")
        raise InvalidState(f"Cannot dispute an escrow that is {escrow.status}")
    escrow.status = EscrowStatus.DISPUTED.value


def resolve_dispute(escrow: Escrow, settled: list[SettledPayout], now: datetime) -> None:
    """Apply a confirmed dispute split; the account ends Completed."""
    if escrow.status != EscrowStatus.DISPUTED:
        raise InvalidState(f"Escrow is {escrow.status}, not disputed")
    apply_payouts(escrow, settled, now, resolving=True)
    if escrow.status != EscrowStatus.COMPLETED:
        raise InvalidState("Dispute settlement did not exhaust the escrow balance")


# ---------------------------------------------------------------------------
# Cancellation and expiry
# ---------------------------------------------------------------------------
def cancel_unfunded(escrow: Escrow) -> None:
    """Pending -> Cancelled; nothing was ever custodied."""
    if escrow.status != EscrowStatus.PENDING:
        raise InvalidState(f"Escrow is {escrow.status}; only pending escrows cancel without refund")
    escrow.status = EscrowStatus.CANCELLED.value


def mark_expired(escrow: Escrow, now: datetime) -> bool:
    """Pending past its expiry -> Expired.  Returns False when nothing changed."""
    if escrow.status != EscrowStatus.PENDING or now <= escrow.expires_at:
        return False
    escrow.status = EscrowStatus.EXPIRED.value
    return True
