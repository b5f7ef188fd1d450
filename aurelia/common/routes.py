from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from aurelia.common.utils import success_response
from aurelia.db.dependencies import get_session

home_router = APIRouter()


@home_router.get("/health")
async def health_check(request: Request, session: AsyncSession = Depends(get_session)):
    try:
        await session.execute(select(1))
    except SQLAlchemyError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database connection error") from None

    scheduler = getattr(request.app.state, "scheduler", None)
    return success_response({"status": "healthy", "scheduler_running": bool(scheduler and scheduler.running)})
