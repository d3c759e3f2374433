"""
Admin bootstrap — issue service API keys.
Only reachable in debug mode and with the setup key.
"""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from clickmatch.config import get_settings
from clickmatch.middleware.auth import APIKey, generate_api_key
from clickmatch.models.database import get_db

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/admin", tags=["admin"])


class CreateKeyRequest(BaseModel):
    setup_key: str
    name: str = Field(default="default", max_length=255)
    rate_limit_per_minute: int | None = Field(default=None, ge=1)


@router.post("/api-keys")
async def create_api_key(
    body: CreateKeyRequest,
    db: AsyncSession = Depends(get_db),
):
    settings = get_settings()

    if not settings.debug:
        raise HTTPException(status_code=404, detail="Not found")

    if body.setup_key != settings.admin_setup_key:
        raise HTTPException(status_code=403, detail="Invalid setup key")

    raw_key, key_hash = generate_api_key()
    db.add(APIKey(
        key_hash=key_hash,
        key_prefix=raw_key[:12],
        name=body.name,
        rate_limit_per_minute=body.rate_limit_per_minute,
    ))
    await db.commit()

    logger.info("api_key_created", name=body.name, key_prefix=raw_key[:12])
    return {
        "message": "SAVE THIS KEY — it won't be shown again.",
        "name": body.name,
        "secret_key": raw_key,
    }
