"""Per-order exclusion for state-changing commands.

Two layers keep concurrent commands on one order from both succeeding:

* ``order_claim`` takes a Redis key scoped to the order's current version
  before any ledger transfer starts.  A second command that read the same
  version is rejected up front instead of moving money it cannot record.
* ``commit_or_conflict`` relies on the ``version_id`` columns: a commit
  against a row that changed underneath raises ``StaleState``.

Every successful command touches ``Order.last_activity_at`` so the order
version moves on and the old claim key is never reusable.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from gigmarket.core.config import settings
from gigmarket.core.errors import StaleState
from gigmarket.core.idempotency import check_idempotency, release_idempotency
from gigmarket.models.order import Order

logger = logging.getLogger(__name__)


def claim_key(order: Order) -> str:
    return f"order:{order.id}:v{order.version_id}"


@asynccontextmanager
async def order_claim(order: Order) -> AsyncIterator[None]:
    """Hold the claim for the duration of a command; dropped if the command fails."""
    key = claim_key(order)
    if not await check_idempotency(key, ttl=settings.order_claim_ttl_seconds):
        raise StaleState(f"Another action on order {order.id} is already in flight")
    try:
        yield
    except BaseException:
        await release_idempotency(key)
        raise


async def commit_or_conflict(
    db: AsyncSession, order: Order, *, settled: list[str] | None = None,
) -> None:
    """Commit, turning a lost optimistic-concurrency race into ``StaleState``."""
    try:
        await db.commit()
    except (StaleDataError, IntegrityError) as exc:
        await db.rollback()
        if settled:
            logger.error(
                "Order %s: ledger transfers %s confirmed but the state change was not "
                "recorded; reconcile manually",
                order.id, ", ".join(settled),
            )
        raise StaleState(f"Order {order.id} changed concurrently; reload and retry") from exc
