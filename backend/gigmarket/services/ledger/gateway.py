"""Ledger gateway contract and transfer intents.

The marketplace never builds raw ledger transactions.  It describes each
movement of funds as an immutable ``TransferIntent`` and hands it to a
``LedgerGateway`` implementation, which submits it and later reports whether
it confirmed.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol, runtime_checkable

from gigmarket.core.errors import InvalidTransferIntent


class ConfirmationStatus(StrEnum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True)
class TransactionRef:
    signature: str

    def __str__(self) -> str:
        return self.signature


@dataclass(frozen=True)
class TransferRecord:
    """What the ledger says a submitted transfer moved."""

    source: str
    destination: str
    amount: int


@dataclass(frozen=True)
class TransferIntent:
    source: str
    destination: str
    amount: int
    memo: str
    idempotency_key: str


class TransferIntentBuilder:
    """Collects transfer fields step by step and validates them on ``build``."""

    def __init__(self) -> None:
        self._source: str | None = None
        self._destination: str | None = None
        self._amount: int | None = None
        self._memo = ""
        self._idempotency_key: str | None = None

    def source(self, account: str) -> "TransferIntentBuilder":
        self._source = account
        return self

    def destination(self, account: str) -> "TransferIntentBuilder":
        self._destination = account
        return self

    def amount(self, lamports: int) -> "TransferIntentBuilder":
        self._amount = lamports
        return self

    def memo(self, text: str) -> "TransferIntentBuilder":
        self._memo = text
        return self

    def idempotency_key(self, key: str) -> "TransferIntentBuilder":
        self._idempotency_key = key
        return self

    def build(self) -> TransferIntent:
        if not self._source or not self._destination:
            raise InvalidTransferIntent("Transfer needs both a source and a destination")
        if self._source == self._destination:
            raise InvalidTransferIntent("Transfer source and destination must differ")
        amount = self._amount
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidTransferIntent("Transfer amount must be a positive integer")
        if not self._idempotency_key:
            raise InvalidTransferIntent("Transfer needs an idempotency key")
        return TransferIntent(
            source=self._source,
            destination=self._destination,
            amount=amount,
            memo=self._memo,
            idempotency_key=self._idempotency_key,
        )


@runtime_checkable
class LedgerGateway(Protocol):
    async def transfer(self, intent: TransferIntent) -> TransactionRef:
        """Submit a transfer; returns before it is confirmed."""
        ...

    async def confirm(self, ref: TransactionRef) -> ConfirmationStatus:
        """Current confirmation status of a submitted transfer."""
        ...

    async def get_transfer(self, ref: TransactionRef) -> TransferRecord | None:
        """Source, destination and amount of a known transfer, or None."""
        ...

    async def get_minimum_reserve(self) -> int:
        """Smallest balance an escrow address must hold to exist on the ledger."""
        ...
