from fastapi import Header, HTTPException
from .config import settings

async def require_token(x_api_token: str | None = Header(default=None)):
    if not x_api_token or x_api_token != settings.api_token:
        raise HTTPException(status_code=401, detail="Unauthorized")

async def current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    # Set by the upstream gateway after it has authenticated the user.
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user identity")
    return x_user_id.strip()

async def require_admin(x_admin_token: str | None = Header(default=None)):
    # Admin views span every user's orders; disabled until ADMIN_TOKEN is set.
    if not settings.admin_token or x_admin_token != settings.admin_token:
        raise HTTPException(status_code=403, detail="Admin access required")
