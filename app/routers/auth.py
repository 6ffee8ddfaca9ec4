from typing import Optional

from fastapi import Header, HTTPException

from app.config import settings


def require_internal_token(x_internal_token: Optional[str] = Header(default=None)) -> None:
    expected = settings.internal_token
    if not expected:
        raise HTTPException(status_code=500, detail="INTERNAL_TOKEN not configured")
    if not x_internal_token or x_internal_token != expected:
        raise HTTPException(status_code=401, detail="unauthorized")
