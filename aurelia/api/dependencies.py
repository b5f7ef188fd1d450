import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from aurelia.common.constants import ADMIN_ID_HEADER, ADMIN_SECRET_HEADER
from aurelia.config.admin_config import admin_config


def get_payment_service(request: Request):
    return request.app.state.payment_service


def get_order_service(request: Request):
    return request.app.state.order_service


def get_scheduler(request: Request):
    return request.app.state.scheduler


async def require_admin(request: Request,
                        admin_secret: Optional[str] = Header(default=None, alias=ADMIN_SECRET_HEADER)) -> None:
    expected = request.app.state.admin_config.ADMIN_SECRET
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Admin API is not configured")
    if not admin_secret or not hmac.compare_digest(admin_secret, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access denied")


def admin_actor(admin_id: Optional[str] = Header(default=None, alias=ADMIN_ID_HEADER)) -> str:
    return f"admin:{admin_id or admin_config.DEFAULT_ADMIN_ID}"
