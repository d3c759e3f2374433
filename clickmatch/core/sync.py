"""
Conversion sync pipeline — matched purchases → advertising platform, exactly once.

Cycle (one syncBatch call, at most one outstanding platform call):
  1. Expire FAILED_RETRYABLE rows that already used every attempt
  2. Select up to max_size eligible records (tier gate, PENDING or due retries)
  3. Records without a gclid → FAILED_PERMANENT / MISSING_CLICK_ID
  4. Write-ahead: attempt+1, FAILED_RETRYABLE / IN_FLIGHT, next retry time
  5. Upload hashed payloads, keyed by a token derived from the purchase id
  6. Persist per-record outcomes (SYNCED is terminal)

A crash or cancellation anywhere after step 4 leaves records FAILED_RETRYABLE,
so they are retried later; the idempotency token makes the replay safe.
"""

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Sequence

from clickmatch.config import Settings, get_settings
from clickmatch.core.errors import ErrorTag, InputInvalidError, PlatformError
from clickmatch.core.identity import email_hash, phone_hash
from clickmatch.core.platform import (
    ConversionPayload,
    PlatformClient,
    RecordResult,
    UploadOutcome,
    idempotency_token,
)
from clickmatch.core.store import SyncStore
from clickmatch.core.types import ConfidenceTier, SyncCandidate, SyncStatus, SyncTransition, utcnow

import structlog

logger = structlog.get_logger()


@dataclass
class SyncBatchReport:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def backoff_delay(attempt_count: int, base_seconds: int, max_seconds: int) -> timedelta:
    """Exponential: base, 2*base, 4*base ... capped."""
    exponent = max(attempt_count - 1, 0)
    return timedelta(seconds=min(base_seconds * (2 ** exponent), max_seconds))


def build_payload(candidate: SyncCandidate, default_country_code: str = "1") -> ConversionPayload:
    purchase = candidate.purchase
    return ConversionPayload(
        record_ref=purchase.id,
        idempotency_token=idempotency_token(purchase.id),
        ad_click_id=candidate.ad_click_id,
        conversion_time=purchase.purchased_at,
        value=purchase.value,
        currency=purchase.currency,
        hashed_email=email_hash(purchase.email) or None,
        hashed_phone=phone_hash(purchase.phone, default_country_code) or None,
    )


class ConversionSyncPipeline:
    def __init__(
        self,
        store: SyncStore,
        client: PlatformClient,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.client = client
        self.settings = settings or get_settings()
        self._clock = clock

    @property
    def min_tier(self) -> ConfidenceTier:
        return self.settings.sync_min_tier

    async def sync_batch(self, max_size: int | None = None) -> SyncBatchReport:
        settings = self.settings
        if max_size is None:
            max_size = settings.sync_default_batch_size
        if max_size < 1:
            raise InputInvalidError("maxSize must be a positive integer")
        limit = min(max_size, settings.platform_max_batch_size)

        started_at = self._clock()
        report = SyncBatchReport()

        expired = await self.store.expire_exhausted_syncs(settings.sync_max_attempts, started_at)
        if expired:
            logger.info("sync_attempts_exhausted", count=expired)

        candidates = await self.store.select_sync_candidates(
            limit,
            ConfidenceTier.at_least(self.min_tier),
            settings.sync_max_attempts,
            started_at,
        )
        if not candidates:
            logger.debug("sync_batch_empty")
            return report

        defects = [c for c in candidates if not c.ad_click_id]
        ready = [c for c in candidates if c.ad_click_id]

        if defects:
            applied = await self.store.record_sync_outcomes([
                SyncTransition(
                    purchase_id=c.purchase.id,
                    expected_status=c.record.status,
                    expected_attempts=c.record.attempt_count,
                    status=SyncStatus.FAILED_PERMANENT,
                    attempt_count=c.record.attempt_count,
                    error_tag=ErrorTag.MISSING_CLICK_ID.value,
                    detail="matched purchase has no advertising click id",
                )
                for c in defects
            ])
            report.attempted += applied
            report.failed += applied
            report.skipped += len(defects) - applied
            logger.error(
                "sync_missing_click_id",
                purchase_ids=[c.purchase.id for c in defects],
            )

        if ready:
            await self._upload(ready, started_at, report)

        await self.store.record_sync_batch(report.to_dict(), started_at, self._clock())
        logger.info("sync_batch_complete", selected=len(candidates), **report.to_dict())
        return report

    async def _upload(self, ready: Sequence[SyncCandidate], now: datetime, report: SyncBatchReport) -> None:
        settings = self.settings
        retry_at = {
            c.purchase.id: now + backoff_delay(
                c.record.attempt_count + 1,
                settings.sync_backoff_base_seconds,
                settings.sync_backoff_max_seconds,
            )
            for c in ready
        }
        started_ids = await self.store.begin_sync_attempts([c.record for c in ready], now, retry_at)
        started = [c for c in ready if c.purchase.id in started_ids]
        report.skipped += len(ready) - len(started)
        if not started:
            return
        report.attempted += len(started)

        payloads = [build_payload(c, settings.default_phone_country_code) for c in started]
        try:
            results = await asyncio.wait_for(
                self.client.upload_conversions(payloads),
                timeout=settings.platform_timeout_seconds,
            )
            batch_error = None
        except asyncio.TimeoutError:
            results = []
            batch_error = (ErrorTag.PLATFORM_TIMEOUT.value, "platform call timed out")
        except PlatformError as e:
            # Whole call failed; classification unknown → retryable up to the cap
            results = []
            batch_error = (ErrorTag.PLATFORM_TRANSIENT.value, str(e))

        if batch_error:
            logger.warning("sync_upload_failed", records=len(started), tag=batch_error[0], error=batch_error[1])

        by_ref: dict[str, RecordResult] = {r.record_ref: r for r in results}
        transitions = []
        for candidate in started:
            result = by_ref.get(candidate.purchase.id)
            transition = self._transition(candidate, result, batch_error, retry_at[candidate.purchase.id])
            transitions.append(transition)
            if transition.status == SyncStatus.SYNCED:
                report.succeeded += 1
            else:
                report.failed += 1
                if transition.status == SyncStatus.FAILED_PERMANENT:
                    logger.warning(
                        "sync_record_failed_permanently",
                        purchase_id=candidate.purchase.id,
                        tag=transition.error_tag,
                        detail=transition.detail,
                    )

        await self.store.record_sync_outcomes(transitions)

    def _transition(
        self,
        candidate: SyncCandidate,
        result: RecordResult | None,
        batch_error: tuple[str, str] | None,
        retry_at: datetime,
    ) -> SyncTransition:
        attempts = candidate.record.attempt_count + 1
        base = dict(
            purchase_id=candidate.purchase.id,
            expected_status=SyncStatus.FAILED_RETRYABLE,
            expected_attempts=attempts,
            attempt_count=attempts,
        )

        if result is not None and result.outcome == UploadOutcome.SUCCESS:
            return SyncTransition(
                status=SyncStatus.SYNCED,
                platform_response_ref=result.detail,
                **base,
            )
        if result is not None and result.outcome == UploadOutcome.PERMANENT_FAILURE:
            return SyncTransition(
                status=SyncStatus.FAILED_PERMANENT,
                error_tag=ErrorTag.PLATFORM_PERMANENT.value,
                detail=result.detail,
                **base,
            )

        if batch_error:
            tag, detail = batch_error
        elif result is None:
            tag, detail = ErrorTag.PLATFORM_TRANSIENT.value, "no outcome reported for record"
        else:
            tag, detail = ErrorTag.PLATFORM_TRANSIENT.value, result.detail

        if attempts >= self.settings.sync_max_attempts:
            return SyncTransition(
                status=SyncStatus.FAILED_PERMANENT,
                error_tag=ErrorTag.ATTEMPTS_EXHAUSTED.value,
                detail=f"{tag}: {detail}",
                **base,
            )
        return SyncTransition(
            status=SyncStatus.FAILED_RETRYABLE,
            next_attempt_at=retry_at,
            error_tag=tag,
            detail=detail,
            **base,
        )
