from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.db.session import async_session_factory
from gigmarket.services.ledger import LedgerGateway, get_gateway


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async database session.

    The session is automatically closed when the request finishes.
    """
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_ledger() -> LedgerGateway:
    """FastAPI dependency returning the process-wide ledger gateway."""
    return get_gateway()
