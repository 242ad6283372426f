"""Submit transfers and wait for their confirmation.

This is the suspend point of every money-moving command: callers only record
a new order or escrow state after ``settle`` returns.  Any rejection,
failure or timeout surfaces as ``SettlementError``; nothing here retries a
failed transfer.
"""

import logging

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

from gigmarket.core.config import settings
from gigmarket.core.errors import InvalidDeposit, MarketplaceError, SettlementError
from gigmarket.models.escrow import Escrow
from gigmarket.services.escrow_account import Payout, SettledPayout
from gigmarket.services.ledger.gateway import (
    ConfirmationStatus,
    LedgerGateway,
    TransactionRef,
    TransferIntent,
    TransferIntentBuilder,
)

logger = logging.getLogger(__name__)

# Transient transport problems while polling; anything else is fatal
_TRANSIENT_ERRORS = (ConnectionError, TimeoutError)


def _is_pending(status: ConfirmationStatus) -> bool:
    return status == ConfirmationStatus.PENDING


async def wait_for_confirmation(
    ledger: LedgerGateway,
    ref: TransactionRef,
    *,
    attempts: int | None = None,
    interval: float | None = None,
) -> None:
    """Poll ``ledger.confirm`` until the transfer leaves the pending state."""
    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts or settings.ledger_confirm_attempts),
        wait=wait_fixed(settings.ledger_confirm_interval_seconds if interval is None else interval),
        retry=retry_if_result(_is_pending) | retry_if_exception_type(_TRANSIENT_ERRORS),
    )
    try:
        status = await retrying(ledger.confirm, ref)
    except RetryError as exc:
        raise SettlementError(f"Transfer {ref} was not confirmed in time", tx_ref=str(ref)) from exc
    except MarketplaceError:
        raise
    except Exception as exc:
        raise SettlementError(f"Confirmation of {ref} failed: {exc}", tx_ref=str(ref)) from exc

    if status != ConfirmationStatus.CONFIRMED:
        raise SettlementError(f"Transfer {ref} was rejected by the ledger", tx_ref=str(ref))


async def submit_and_confirm(
    ledger: LedgerGateway,
    intent: TransferIntent,
    *,
    attempts: int | None = None,
    interval: float | None = None,
) -> TransactionRef:
    try:
        ref = await ledger.transfer(intent)
    except MarketplaceError:
        raise
    except Exception as exc:
        raise SettlementError(
            f"Ledger refused transfer {intent.idempotency_key}: {exc}",
            idempotency_key=intent.idempotency_key,
        ) from exc
    await wait_for_confirmation(ledger, ref, attempts=attempts, interval=interval)
    return ref


def payout_intent(escrow: Escrow, payout: Payout, purpose: str) -> TransferIntent:
    leg = len(escrow.payouts) + 1
    return (
        TransferIntentBuilder()
        .source(escrow.address)
        .destination(payout.destination)
        .amount(payout.amount)
        .memo(f"{purpose}:{payout.recipient.value}")
        .idempotency_key(f"{escrow.address}:{purpose}:{payout.recipient.value}:{leg}")
        .build()
    )


async def settle(
    ledger: LedgerGateway,
    escrow: Escrow,
    payouts: list[Payout],
    purpose: str,
    *,
    attempts: int | None = None,
    interval: float | None = None,
) -> list[SettledPayout]:
    """Pay out every leg in order and return the confirmed transfers.

    Legs are settled one after another; if one fails, the error names the
    legs that already confirmed so they can be reconciled by hand.
    """
    settled: list[SettledPayout] = []
    for payout in payouts:
        intent = payout_intent(escrow, payout, purpose)
        try:
            ref = await submit_and_confirm(ledger, intent, attempts=attempts, interval=interval)
        except SettlementError as exc:
            if settled:
                logger.error(
                    "Partial settlement for escrow %s (%s): %d leg(s) confirmed before failure",
                    escrow.address, purpose, len(settled),
                )
            exc.settled = [item.tx_ref for item in settled]
            raise
        settled.append(SettledPayout(payout=payout, tx_ref=str(ref)))
        logger.info(
            "Settled %s leg for escrow %s: %d lamports to %s (tx=%s)",
            purpose, escrow.address, payout.amount, payout.recipient.value, ref,
        )
    return settled


async def collect_deposit(
    ledger: LedgerGateway,
    escrow: Escrow,
    *,
    tx_ref: str | None = None,
    attempts: int | None = None,
    interval: float | None = None,
) -> str:
    """Move the buyer's deposit into the escrow address and confirm it.

    With ``tx_ref`` the buyer already signed and submitted the deposit
    themselves.  Once it confirms, the ledger record must show exactly the
    escrow total moving from the buyer to the escrow address.
    """
    reserve = await ledger.get_minimum_reserve()
    if escrow.total_amount < reserve:
        raise SettlementError(
            f"Escrow total {escrow.total_amount} is below the ledger reserve {reserve}",
        )

    if tx_ref:
        ref = TransactionRef(tx_ref)
        await wait_for_confirmation(ledger, ref, attempts=attempts, interval=interval)
        record = await ledger.get_transfer(ref)
        if record is None:
            raise InvalidDeposit(f"Ledger has no record of transfer {tx_ref}", tx_ref=tx_ref)
        if record.destination != escrow.address or record.source != escrow.buyer:
            raise InvalidDeposit(
                f"Transfer {tx_ref} did not go from the buyer to escrow {escrow.address}",
                tx_ref=tx_ref,
            )
        if record.amount != escrow.total_amount:
            raise InvalidDeposit(
                f"Transfer {tx_ref} moved {record.amount} lamports, escrow needs {escrow.total_amount}",
                tx_ref=tx_ref, amount=record.amount, expected=escrow.total_amount,
            )
        logger.info("Escrow %s funded by buyer deposit %s", escrow.address, tx_ref)
        return tx_ref

    intent = (
        TransferIntentBuilder()
        .source(escrow.buyer)
        .destination(escrow.address)
        .amount(escrow.total_amount)
        .memo("fund")
        .idempotency_key(f"{escrow.address}:fund")
        .build()
    )
    ref = await submit_and_confirm(ledger, intent, attempts=attempts, interval=interval)
    logger.info("Escrow %s funded with %d lamports (tx=%s)", escrow.address, escrow.total_amount, ref)
    return str(ref)
