"""Celery tasks that drive escrow timeouts.

- expire_unfunded_escrows: cancels orders whose escrow was never funded in time
- auto_release_escrows: pays the seller when a buyer never reviews delivered work
"""

import logging

from gigmarket.core.clock import system_clock
from gigmarket.core.errors import StaleState
from gigmarket.db.session import async_session_factory
from gigmarket.services.ledger import get_gateway
from gigmarket.workers import celery_app, worker_loop

logger = logging.getLogger(__name__)


async def sweep(find_candidates, label: str, *, clock=system_clock) -> int:
    """Run ``mark_expired`` over every candidate order and return how many changed.

    One order failing does not stop the batch; a concurrent writer winning the
    race is expected and only logged at INFO.
    """
    from gigmarket.services.escrow import mark_expired

    count = 0
    ledger = get_gateway()
    async with async_session_factory() as db:
        try:
            orders = await find_candidates(db, clock.now())
            # A rollback expires every loaded row, so only plain ids cross iterations
            order_ids = [order.id for order in orders]
            for order_id in order_ids:
                try:
                    if await mark_expired(db, ledger, order_id, clock=clock):
                        count += 1
                except StaleState:
                    await db.rollback()
                    logger.info("Order %d changed concurrently, skipping %s", order_id, label)
                except Exception:
                    await db.rollback()
                    logger.exception("Failed to %s order %d", label, order_id)
            logger.info("Sweep %s processed %d of %d orders", label, count, len(order_ids))
        finally:
            await db.close()
    return count


@celery_app.task(
    name="expire_unfunded_escrows", bind=True, max_retries=3, default_retry_delay=60
)
def expire_unfunded_escrows(self) -> int:
    """Cancel orders whose escrow passed its expiry without being funded."""
    from gigmarket.services.escrow import get_orders_for_expiry

    try:
        return worker_loop().run_until_complete(sweep(get_orders_for_expiry, "expire"))
    except Exception as exc:
        logger.exception("expire_unfunded_escrows failed")
        raise self.retry(exc=exc)


@celery_app.task(
    name="auto_release_escrows", bind=True, max_retries=3, default_retry_delay=60
)
def auto_release_escrows(self) -> int:
    """Release funds for delivered orders the buyer left unanswered."""
    from gigmarket.services.escrow import get_orders_for_auto_release

    try:
        return worker_loop().run_until_complete(
            sweep(get_orders_for_auto_release, "auto-release")
        )
    except Exception as exc:
        logger.exception("auto_release_escrows failed")
        raise self.retry(exc=exc)
