"""Advertising platform contract: what the sync pipeline sends and gets back."""

import hashlib
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Protocol, Sequence


class UploadOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    RETRYABLE_FAILURE = "RETRYABLE_FAILURE"
    PERMANENT_FAILURE = "PERMANENT_FAILURE"


@dataclass(frozen=True)
class ConversionPayload:
    """One enhanced conversion. Identity fields are SHA-256 hex, never raw."""
    record_ref: str               # purchase id
    idempotency_token: str
    ad_click_id: str
    conversion_time: datetime
    value: Decimal
    currency: str
    hashed_email: str | None = None
    hashed_phone: str | None = None


@dataclass(frozen=True)
class RecordResult:
    record_ref: str
    outcome: UploadOutcome
    detail: str | None = None


class PlatformClient(Protocol):
    async def upload_conversions(self, batch: Sequence[ConversionPayload]) -> list[RecordResult]:
        """Upload a batch; one RecordResult per record the platform reported on.

        Raises PlatformError when the call as a whole failed.
        """
        ...


def idempotency_token(purchase_id: str) -> str:
    """Stable per-purchase dedupe key, sent as the platform order id."""
    digest = hashlib.sha256(f"clickmatch:{purchase_id}".encode()).hexdigest()
    return f"cm-{digest[:32]}"
