"""
API key authentication.

Clickmatch is called by internal jobs and the purchase feed, never by
browsers, so there is a single key type:
  - Secret keys (cm_sec_...) sent in the X-API-Key header
  - Keys are hashed (SHA-256) in the database; plaintext is shown once
  - Rate limited per key (see rate_limit.py)
"""

import hashlib
import secrets
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Security
from fastapi.security import APIKeyHeader
from sqlalchemy import Boolean, Column, DateTime, Integer, String, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from clickmatch.config import get_settings
from clickmatch.middleware.rate_limit import rate_limit_api_key
from clickmatch.models.database import get_db
from clickmatch.models.tables import Base

import structlog

logger = structlog.get_logger()

KEY_PREFIX = "cm_sec_"


# ─── Database model ────────────────────────────────────────────────

class APIKey(Base):
    """Hashed service API keys."""
    __tablename__ = "api_keys"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key_hash = Column(String(64), nullable=False, unique=True, index=True)  # SHA-256 hex
    key_prefix = Column(String(12), nullable=False)  # e.g. "cm_sec_a3f8b" for identification
    name = Column(String(255), nullable=True)  # human label ("purchase-feed", "sync-cron")
    is_active = Column(Boolean, default=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    rate_limit_per_minute = Column(Integer, nullable=True)  # NULL → settings default


# ─── Key generation ────────────────────────────────────────────────

def hash_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode()).hexdigest()


def generate_api_key() -> tuple[str, str]:
    """Generate a new secret key.

    Returns (raw_key, key_hash). Only the hash is stored.
    """
    raw_key = f"{KEY_PREFIX}{secrets.token_urlsafe(32)}"
    return raw_key, hash_key(raw_key)


# ─── Auth dependency ───────────────────────────────────────────────

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


@dataclass
class AuthContext:
    key_id: int
    name: str | None = None


async def require_secret_key(
    api_key: str | None = Security(api_key_header),
    db: AsyncSession = Depends(get_db),
) -> AuthContext:
    """Require a valid, active secret key; applies the per-key rate limit."""
    if not api_key:
        raise HTTPException(
            status_code=401,
            detail="Missing API key. Include X-API-Key header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    stmt = select(APIKey).where(APIKey.key_hash == hash_key(api_key), APIKey.is_active.is_(True))
    record = (await db.execute(stmt)).scalar_one_or_none()
    if record is None:
        logger.info("api_key_rejected", key_prefix=api_key[:12])
        raise HTTPException(
            status_code=401,
            detail="Invalid API key.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    rate_limit_api_key(
        str(record.id),
        record.rate_limit_per_minute or get_settings().rate_limit_per_key_per_minute,
    )

    record.last_used_at = func.now()
    await db.commit()

    return AuthContext(key_id=record.id, name=record.name)
