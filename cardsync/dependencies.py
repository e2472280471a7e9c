from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from cardsync.database import async_session
from cardsync.services.rate_governor import RateGovernor


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database sessions."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


def get_governor(request: Request) -> RateGovernor:
    """The process-wide governor created in the application lifespan."""
    governor = getattr(request.app.state, "governor", None)
    if governor is None:
        governor = RateGovernor.from_settings()
        request.app.state.governor = governor
    return governor


def get_session_factory():
    """Session factory for work that opens its own short transactions (drain, run jobs)."""
    return async_session
