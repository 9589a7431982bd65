"""Atomic transaction utilities for settlement and other multi-row mutations"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from database import async_managed_session

logger = logging.getLogger(__name__)


@asynccontextmanager
async def async_atomic_transaction(
    session: Optional[AsyncSession] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for all-or-nothing database work.

    With no session a fresh one is opened and committed on exit. With a
    provided session, nesting depth is tracked so only the outermost block
    commits; any error rolls the whole transaction back and re-raises.
    """
    if session is None:
        async with async_managed_session() as new_session:
            async with async_atomic_transaction(new_session) as inner:
                yield inner
        return

    transaction_depth = getattr(session, "_atomic_transaction_depth", 0)
    try:
        setattr(session, "_atomic_transaction_depth", transaction_depth + 1)

        if transaction_depth > 0:
            logger.debug(f"Nested async transaction detected (depth: {transaction_depth + 1})")

        yield session

        if transaction_depth == 0:
            await session.commit()
            logger.debug("Outermost async transaction committed successfully")

    except Exception as e:
        await session.rollback()
        logger.error(f"Async transaction rolled back due to error (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, "_atomic_transaction_depth", 1)
        setattr(session, "_atomic_transaction_depth", max(0, current_depth - 1))
