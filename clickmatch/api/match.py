"""
Match API — purchases in, MatchResults out.

POST /v1/match          {purchase} → MatchResult, or {purchases: [...]} → [MatchResult]
POST /v1/match/pending  {limit?}   → re-run matching over stored purchases

Purchases are upserted first (the purchase feed may post the same order
again once more identity is known), then matched. Results come back in
input order; nothing is returned half-written.
"""

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from clickmatch.core.errors import InputInvalidError, StoreUnavailableError
from clickmatch.core.matching import AttributionEngine
from clickmatch.core.types import Purchase, utcnow
from clickmatch.middleware.auth import AuthContext, require_secret_key
from clickmatch.models.store import SqlAttributionStore, get_store

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/v1/match", tags=["match"])


# --- Request schemas ---

class PurchasePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1, max_length=255)
    click_id: str | None = Field(default=None, alias="clickId", max_length=255)
    email: str | None = Field(default=None, max_length=320)
    phone: str | None = Field(default=None, max_length=50)
    ip: str | None = Field(default=None, max_length=45)
    purchased_at: datetime | None = Field(default=None, alias="purchasedAt")
    value: Decimal = Decimal("0")
    currency: str = Field(default="USD", min_length=3, max_length=3)

    def to_purchase(self) -> Purchase:
        return Purchase(
            id=self.id.strip(),
            purchased_at=self.purchased_at or utcnow(),
            ad_click_id=self.click_id or None,
            email=self.email or None,
            phone=self.phone or None,
            ip_address=self.ip or None,
            value=self.value,
            currency=self.currency.upper(),
        )


class MatchRequest(BaseModel):
    purchase: PurchasePayload | None = None
    purchases: list[PurchasePayload] | None = Field(default=None, max_length=1000)


class PendingRequest(BaseModel):
    limit: int = Field(default=500, ge=1, le=5000)


# --- Dependencies ---

def get_engine(store: SqlAttributionStore = Depends(get_store)) -> AttributionEngine:
    return AttributionEngine(store)


# --- Routes ---

@router.post("")
async def match(
    body: MatchRequest,
    auth: AuthContext = Depends(require_secret_key),
    engine: AttributionEngine = Depends(get_engine),
):
    if body.purchase is not None and body.purchases is not None:
        raise HTTPException(status_code=400, detail="Send either 'purchase' or 'purchases', not both.")
    if body.purchase is None and body.purchases is None:
        raise HTTPException(status_code=400, detail="Missing 'purchase' or 'purchases'.")

    payloads = [body.purchase] if body.purchase is not None else body.purchases
    try:
        stored = await engine.store.save_purchases([p.to_purchase() for p in payloads])
        results = await engine.bulk_match(stored)
    except InputInvalidError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreUnavailableError as e:
        logger.warning("match_request_failed", key_id=auth.key_id, error=str(e))
        raise HTTPException(status_code=503, detail="Store unavailable, retry later.")

    logger.info("match_request", key_id=auth.key_id, purchases=len(payloads))
    if body.purchase is not None:
        return results[0].to_dict()
    return [r.to_dict() for r in results]


@router.post("/pending")
async def match_pending(
    body: PendingRequest | None = None,
    auth: AuthContext = Depends(require_secret_key),
    engine: AttributionEngine = Depends(get_engine),
):
    limit = body.limit if body else PendingRequest().limit
    try:
        _, summary = await engine.match_pending(limit)
    except StoreUnavailableError as e:
        logger.warning("match_pending_failed", key_id=auth.key_id, error=str(e))
        raise HTTPException(status_code=503, detail="Store unavailable, retry later.")
    return summary.to_dict()
