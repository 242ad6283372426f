import logging

from gigmarket.core.config import settings
from gigmarket.services.ledger.gateway import (
    ConfirmationStatus,
    LedgerGateway,
    TransactionRef,
    TransferIntent,
    TransferIntentBuilder,
    TransferRecord,
)
from gigmarket.services.ledger.memory import InMemoryLedgerGateway

logger = logging.getLogger(__name__)

_gateway: LedgerGateway | None = None


def configure_gateway(gateway: LedgerGateway) -> None:
    """Install the process-wide gateway (called once at startup)."""
    global _gateway
    _gateway = gateway


def get_gateway() -> LedgerGateway:
    global _gateway
    if _gateway is None:
        if settings.ledger_backend != "memory":
            raise RuntimeError(
                f"No ledger gateway configured for backend {settings.ledger_backend!r}"
            )
        logger.warning("Using the in-memory sandbox ledger; balances are not persisted")
        _gateway = InMemoryLedgerGateway()
    return _gateway


__all__ = [
    "ConfirmationStatus",
    "InMemoryLedgerGateway",
    "LedgerGateway",
    "TransactionRef",
    "TransferIntent",
    "TransferIntentBuilder",
    "TransferRecord",
    "configure_gateway",
    "get_gateway",
]
