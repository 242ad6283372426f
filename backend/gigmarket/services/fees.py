"""Fee calculation and milestone splitting.

All amounts are integer lamports.  Fees are a surcharge paid by the buyer on
top of the base price; the seller receives the full base amount.
"""

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal

from gigmarket.core.config import Settings, settings
from gigmarket.core.errors import AmountTooLarge, AmountTooSmall, InvalidAmount, InvalidMilestoneSplit


@dataclass(frozen=True)
class FeeBreakdown:
    base_amount: int
    platform_fee: int
    service_fee: int
    total_amount: int
    seller_receives: int
    platform_fee_percentage: Decimal

    @property
    def fees(self) -> int:
        return self.platform_fee + self.service_fee


@dataclass(frozen=True)
class FeeSchedule:
    platform_fee_percentage: Decimal
    service_fee_flat: int
    min_amount: int
    max_amount: int

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "FeeSchedule":
        return cls(
            platform_fee_percentage=Decimal(cfg.platform_fee_percentage),
            service_fee_flat=cfg.service_fee_flat,
            min_amount=cfg.min_escrow_amount,
            max_amount=cfg.max_escrow_amount,
        )

    def check_amount(self, amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidAmount("Amount must be an integer number of lamports")
        if amount < self.min_amount:
            raise AmountTooSmall(
                f"Amount {amount} is below the minimum of {self.min_amount}",
                amount=amount, minimum=self.min_amount,
            )
        if amount > self.max_amount:
            raise AmountTooLarge(
                f"Amount {amount} is above the maximum of {self.max_amount}",
                amount=amount, maximum=self.max_amount,
            )

    def calculate(self, base_amount: int) -> FeeBreakdown:
        self.check_amount(base_amount)
        platform_fee = int(
            (Decimal(base_amount) * self.platform_fee_percentage).to_integral_value(rounding=ROUND_FLOOR)
        )
        service_fee = self.service_fee_flat
        return FeeBreakdown(
            base_amount=base_amount,
            platform_fee=platform_fee,
            service_fee=service_fee,
            total_amount=base_amount + platform_fee + service_fee,
            seller_receives=base_amount,
            platform_fee_percentage=self.platform_fee_percentage,
        )


def calculate_fees(base_amount: int, schedule: FeeSchedule | None = None) -> FeeBreakdown:
    """Fee breakdown for ``base_amount`` under the configured schedule."""
    return (schedule or FeeSchedule.from_settings()).calculate(base_amount)


def split_milestones(total: int, percentages: list[int]) -> list[int]:
    """Split ``total`` by integer percentages that sum to exactly 100.

    Each share is floored; the rounding remainder goes to the last milestone
    so the shares always add back up to ``total``.
    """
    if not percentages:
        raise InvalidMilestoneSplit("At least one milestone percentage is required")
    for pct in percentages:
        if isinstance(pct, bool) or not isinstance(pct, int) or pct <= 0:
            raise InvalidMilestoneSplit(f"Milestone percentage {pct!r} must be a positive integer")
    if sum(percentages) != 100:
        raise InvalidMilestoneSplit(
            f"Milestone percentages sum to {sum(percentages)}, expected 100"
        )

    amounts = [total * pct // 100 for pct in percentages]
    amounts[-1] += total - sum(amounts)
    return amounts
