"""Time-based escrow predicates.

Pure functions of ``now`` and the timestamps an escrow already stores; the
periodic sweep and the order commands both ask this module before acting.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from gigmarket.core.config import Settings, settings
from gigmarket.models.escrow import Escrow
from gigmarket.services.escrow_account import EscrowStatus


@dataclass(frozen=True)
class TimeRemaining:
    days: int
    hours: int
    minutes: int
    is_expired: bool


@dataclass(frozen=True)
class TimeoutPolicy:
    dispute_window: timedelta
    auto_release_after: timedelta

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "TimeoutPolicy":
        return cls(
            dispute_window=timedelta(days=cfg.dispute_window_days),
            auto_release_after=timedelta(days=cfg.auto_release_days),
        )

    def is_expired(self, expires_at: datetime, now: datetime) -> bool:
        return now > expires_at

    def dispute_deadline(self, expires_at: datetime) -> datetime:
        return expires_at + self.dispute_window

    def within_dispute_window(self, expires_at: datetime, now: datetime) -> bool:
        return now <= self.dispute_deadline(expires_at)

    def can_dispute(self, escrow: Escrow, now: datetime) -> bool:
        return escrow.status == EscrowStatus.ACTIVE and self.within_dispute_window(escrow.expires_at, now)

    def auto_release_at(self, expires_at: datetime) -> datetime:
        return expires_at + self.auto_release_after

    def can_auto_release(self, escrow: Escrow, now: datetime, *, work_delivered: bool) -> bool:
        """Buyer's silence counts as approval once the grace period has passed."""
        return (
            escrow.status == EscrowStatus.ACTIVE
            and work_delivered
            and now >= self.auto_release_at(escrow.expires_at)
        )

    def time_remaining(self, expires_at: datetime, now: datetime) -> TimeRemaining:
        left = expires_at - now
        if left <= timedelta(0):
            return TimeRemaining(days=0, hours=0, minutes=0, is_expired=True)
        total_minutes = int(left.total_seconds()) // 60
        days, rest = divmod(total_minutes, 24 * 60)
        hours, minutes = divmod(rest, 60)
        return TimeRemaining(days=days, hours=hours, minutes=minutes, is_expired=False)
