"""
Sync API — push matched purchases to the ad platform.

POST /v1/sync         {maxSize?} → {attempted, succeeded, failed, skipped}
GET  /v1/sync/status             → record counts per sync status
"""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from clickmatch.core.errors import InputInvalidError, PlatformError, StoreUnavailableError
from clickmatch.core.google_ads import GoogleAdsConversionClient
from clickmatch.core.platform import PlatformClient
from clickmatch.core.sync import ConversionSyncPipeline
from clickmatch.middleware.auth import AuthContext, require_secret_key
from clickmatch.models.store import SqlAttributionStore, get_store

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/v1/sync", tags=["sync"])


class SyncRequest(BaseModel):
    maxSize: int | None = Field(default=None, ge=1)


def get_platform_client() -> PlatformClient:
    return GoogleAdsConversionClient()


def get_pipeline(
    store: SqlAttributionStore = Depends(get_store),
    client: PlatformClient = Depends(get_platform_client),
) -> ConversionSyncPipeline:
    return ConversionSyncPipeline(store, client)


@router.post("")
async def sync(
    body: SyncRequest | None = None,
    auth: AuthContext = Depends(require_secret_key),
    pipeline: ConversionSyncPipeline = Depends(get_pipeline),
):
    max_size = body.maxSize if body else None
    try:
        report = await pipeline.sync_batch(max_size)
    except InputInvalidError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreUnavailableError as e:
        logger.warning("sync_request_failed", key_id=auth.key_id, error=str(e))
        raise HTTPException(status_code=503, detail="Store unavailable, retry later.")
    except PlatformError as e:
        logger.error("sync_request_failed", key_id=auth.key_id, error=str(e))
        raise HTTPException(status_code=502, detail="Ad platform call failed.")
    return report.to_dict()


@router.get("/status")
async def sync_status(
    auth: AuthContext = Depends(require_secret_key),
    store: SqlAttributionStore = Depends(get_store),
):
    try:
        counts = await store.sync_status_counts()
    except StoreUnavailableError:
        raise HTTPException(status_code=503, detail="Store unavailable, retry later.")
    return {"counts": counts, "total": sum(counts.values())}
