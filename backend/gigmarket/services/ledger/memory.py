"""In-process ledger used for local development and tests."""

import itertools
import logging
from collections import defaultdict
from dataclasses import dataclass

from gigmarket.services.ledger.gateway import (
    ConfirmationStatus,
    TransactionRef,
    TransferIntent,
    TransferRecord,
)

logger = logging.getLogger(__name__)


@dataclass
class _Transfer:
    record: TransferRecord
    intent: TransferIntent | None
    status: ConfirmationStatus
    pending_polls: int


class InMemoryLedgerGateway:
    """Balances in a dict; transfers settle instantly unless told otherwise.

    ``confirm_after`` makes every transfer report pending for that many polls
    first.  Destinations in ``rejected_destinations`` always fail, and
    ``fail_next`` fails the next N submissions.
    """

    def __init__(self, *, minimum_reserve: int = 0, confirm_after: int = 0) -> None:
        self.balances: dict[str, int] = defaultdict(int)
        self.minimum_reserve = minimum_reserve
        self.confirm_after = confirm_after
        self.rejected_destinations: set[str] = set()
        self.fail_next = 0
        self._transfers: dict[str, _Transfer] = {}
        self._by_key: dict[str, str] = {}
        self._counter = itertools.count(1)

    def credit(self, account: str, amount: int) -> None:
        self.balances[account] += amount

    def record_external(self, source: str, destination: str, amount: int) -> TransactionRef:
        """Register a transfer signed outside the marketplace (e.g. by a buyer wallet)."""
        ref = TransactionRef(f"ext-{next(self._counter)}")
        ok = self.balances[source] >= amount
        if ok:
            self.balances[source] -= amount
            self.balances[destination] += amount
        self._transfers[ref.signature] = _Transfer(
            record=TransferRecord(source, destination, amount),
            intent=None,
            status=ConfirmationStatus.CONFIRMED if ok else ConfirmationStatus.FAILED,
            pending_polls=self.confirm_after,
        )
        return ref

    @property
    def transfers(self) -> list[TransferIntent]:
        return [t.intent for t in self._transfers.values() if t.intent is not None]

    async def transfer(self, intent: TransferIntent) -> TransactionRef:
        existing = self._by_key.get(intent.idempotency_key)
        if existing and self._transfers[existing].status != ConfirmationStatus.FAILED:
            return TransactionRef(existing)

        ref = TransactionRef(f"mem-{next(self._counter)}")
        ok = (
            self.fail_next == 0
            and intent.destination not in self.rejected_destinations
            and self.balances[intent.source] >= intent.amount
        )
        if self.fail_next:
            self.fail_next -= 1
        if ok:
            self.balances[intent.source] -= intent.amount
            self.balances[intent.destination] += intent.amount
        else:
            logger.warning("Sandbox ledger rejected %s", intent.idempotency_key)

        self._transfers[ref.signature] = _Transfer(
            record=TransferRecord(intent.source, intent.destination, intent.amount),
            intent=intent,
            status=ConfirmationStatus.CONFIRMED if ok else ConfirmationStatus.FAILED,
            pending_polls=self.confirm_after,
        )
        self._by_key[intent.idempotency_key] = ref.signature
        return ref

    async def confirm(self, ref: TransactionRef) -> ConfirmationStatus:
        transfer = self._transfers.get(ref.signature)
        if transfer is None:
            return ConfirmationStatus.FAILED
        if transfer.pending_polls > 0:
            transfer.pending_polls -= 1
            return ConfirmationStatus.PENDING
        return transfer.status

    async def get_transfer(self, ref: TransactionRef) -> TransferRecord | None:
        transfer = self._transfers.get(ref.signature)
        return transfer.record if transfer else None

    async def get_minimum_reserve(self) -> int:
        return self.minimum_reserve
