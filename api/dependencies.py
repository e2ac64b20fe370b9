"""FastAPI dependencies shared by the routers."""

from typing import AsyncGenerator

from fastapi import HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from api.middleware import get_current_user
from core.runtime import SyncRuntime


def get_runtime(request: Request) -> SyncRuntime:
    return request.app.state.runtime


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Session from the runtime's factory, committed when the route returns."""
    async with get_runtime(request).session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def require_user() -> str:
    user_id = get_current_user()
    if not user_id:
        raise HTTPException(status_code=401, detail="X-User-ID header required")
    return user_id
