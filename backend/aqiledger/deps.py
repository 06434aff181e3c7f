from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException

from .config import Settings, load_settings
from .db import get_db

__all__ = ["get_db", "get_settings", "require_owner"]


@lru_cache
def get_settings() -> Settings:
    return load_settings()


async def require_owner(x_owner_id: Optional[str] = Header(default=None)) -> str:
    owner_id = (x_owner_id or "").strip()
    if not owner_id:
        raise HTTPException(status_code=401, detail="X-Owner-Id header is required")
    return owner_id
