"""
SQLAlchemy implementation of the match & sync store contracts.

Every call opens its own session (AsyncSession isn't safe to share across
the engine's concurrent lookups) and runs under store_timeout_seconds.
Timeouts and connection-level failures surface as StoreUnavailableError;
everything else propagates untouched.

All state writes are conditional UPDATEs; rowcount tells us whether we won.
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Mapping, Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clickmatch.config import Settings, get_settings
from clickmatch.core.errors import ErrorTag, StoreUnavailableError
from clickmatch.core.store import ClaimOutcome
from clickmatch.core.types import (
    Click,
    ConfidenceTier,
    MatchResult,
    Purchase,
    SyncCandidate,
    SyncRecord,
    SyncStatus,
    SyncTransition,
    TimeWindow,
    as_utc,
    utcnow,
)
from clickmatch.models.tables import (
    ClickEvent,
    MatchResultLog,
    PurchaseRecord,
    SyncBatchLog,
    SyncRecord as SyncRecordRow,
)

import structlog

logger = structlog.get_logger()

UPGRADABLE_TIERS = (ConfidenceTier.NONE.value, ConfidenceTier.PROBABILISTIC.value)


# ---------------------------------------------------------------------------
# Row → domain conversion
# ---------------------------------------------------------------------------

def _opt_utc(value: datetime | None) -> datetime | None:
    return as_utc(value) if value is not None else None


def to_click(row: ClickEvent) -> Click:
    return Click(
        id=row.id,
        clicked_at=as_utc(row.clicked_at),
        ad_click_id=row.ad_click_id,
        email_hash=row.email_hash,
        phone_hash=row.phone_hash,
        ip_address=row.ip_address,
        matched_purchase_id=row.matched_purchase_id,
    )


def to_purchase(row: PurchaseRecord, sync_status: str | None = None) -> Purchase:
    match = None
    if row.match_tier:
        match = MatchResult(
            purchase_id=row.id,
            tier=ConfidenceTier(row.match_tier),
            click_id=row.matched_click_id,
            matched_at=_opt_utc(row.matched_at) or utcnow(),
        )
    return Purchase(
        id=row.id,
        purchased_at=as_utc(row.purchased_at),
        ad_click_id=row.ad_click_id,
        email=row.email,
        phone=row.phone,
        ip_address=row.ip_address,
        value=Decimal(row.value) if row.value is not None else Decimal("0"),
        currency=row.currency or "USD",
        match=match,
        sync_status=SyncStatus(sync_status) if sync_status else None,
    )


def to_sync_record(row: SyncRecordRow) -> SyncRecord:
    return SyncRecord(
        purchase_id=row.purchase_id,
        status=SyncStatus(row.status),
        attempt_count=row.attempt_count or 0,
        last_attempt_at=_opt_utc(row.last_attempt_at),
        next_attempt_at=_opt_utc(row.next_attempt_at),
        platform_response_ref=row.platform_response_ref,
        error_tag=row.error_tag,
    )


class SqlAttributionStore:
    """MatchStore + SyncStore over the relational schema in models/tables.py."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], settings: Settings | None = None):
        self._session_maker = session_maker
        self.settings = settings or get_settings()

    async def _run(self, op, *args):
        try:
            return await asyncio.wait_for(op(*args), timeout=self.settings.store_timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.warning("store_timeout", op=op.__name__)
            raise StoreUnavailableError(f"store call {op.__name__} timed out") from e
        except (OperationalError, InterfaceError, ConnectionError) as e:
            logger.warning("store_unavailable", op=op.__name__, error=str(e))
            raise StoreUnavailableError(f"store unavailable: {e}") from e

    def _uploadable(self, stmt):
        if self.settings.require_ad_click_id:
            return stmt.where(ClickEvent.ad_click_id.is_not(None))
        return stmt

    # ------------------------------------------------------------------
    # Candidate reads
    # ------------------------------------------------------------------

    async def candidate_clicks_for_identity(self, identity_hashes: set[str], window: TimeWindow) -> list[Click]:
        async def _identity_candidates():
            hashes = sorted(identity_hashes)
            if not hashes:
                return []
            stmt = self._uploadable(select(ClickEvent).where(
                or_(ClickEvent.email_hash.in_(hashes), ClickEvent.phone_hash.in_(hashes)),
                ClickEvent.clicked_at >= as_utc(window.start),
                ClickEvent.clicked_at <= as_utc(window.end),
            ))
            async with self._session_maker() as session:
                rows = (await session.execute(stmt)).scalars().all()
            return [to_click(r) for r in rows]

        return await self._run(_identity_candidates)

    async def candidate_clicks_for_ip_window(self, ip: str, window: TimeWindow) -> list[Click]:
        async def _ip_candidates():
            stmt = self._uploadable(select(ClickEvent).where(
                ClickEvent.ip_address == ip,
                ClickEvent.clicked_at >= as_utc(window.start),
                ClickEvent.clicked_at <= as_utc(window.end),
            ))
            async with self._session_maker() as session:
                rows = (await session.execute(stmt)).scalars().all()
            return [to_click(r) for r in rows]

        return await self._run(_ip_candidates)

    async def clicks_by_ids(self, click_refs: set[str]) -> list[Click]:
        async def _clicks_by_ids():
            refs = sorted(click_refs)
            if not refs:
                return []
            stmt = self._uploadable(select(ClickEvent).where(
                or_(ClickEvent.ad_click_id.in_(refs), ClickEvent.id.in_(refs)),
            ))
            async with self._session_maker() as session:
                rows = (await session.execute(stmt)).scalars().all()
            return [to_click(r) for r in rows]

        return await self._run(_clicks_by_ids)

    async def click_by_id(self, click_ref: str) -> Click | None:
        clicks = await self.clicks_by_ids({click_ref})
        # gclid hit first, then internal id
        clicks.sort(key=lambda c: (c.ad_click_id != click_ref, c.id))
        return clicks[0] if clicks else None

    # ------------------------------------------------------------------
    # Claims & match results
    # ------------------------------------------------------------------

    async def mark_click_matched(self, click_id: str, purchase_id: str) -> ClaimOutcome:
        async def _claim():
            stmt = (
                update(ClickEvent)
                .where(
                    ClickEvent.id == click_id,
                    or_(
                        ClickEvent.matched_purchase_id.is_(None),
                        ClickEvent.matched_purchase_id == purchase_id,
                    ),
                )
                .values(matched_purchase_id=purchase_id, matched_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            async with self._session_maker() as session, session.begin():
                result = await session.execute(stmt)
            return ClaimOutcome.CLAIMED if result.rowcount == 1 else ClaimOutcome.ALREADY_CLAIMED

        return await self._run(_claim)

    async def release_click(self, click_id: str, purchase_id: str) -> bool:
        async def _release():
            # A claim the purchase's recorded match points at is never released
            held = (
                select(PurchaseRecord.id)
                .where(PurchaseRecord.id == purchase_id, PurchaseRecord.matched_click_id == click_id)
                .exists()
            )
            stmt = (
                update(ClickEvent)
                .where(ClickEvent.id == click_id, ClickEvent.matched_purchase_id == purchase_id, ~held)
                .values(matched_purchase_id=None, matched_at=None)
                .execution_options(synchronize_session=False)
            )
            async with self._session_maker() as session, session.begin():
                result = await session.execute(stmt)
            return result.rowcount == 1

        return await self._run(_release)

    async def release_orphaned_claims(self, claimed_before: datetime, limit: int) -> int:
        async def _sweep():
            held = (
                select(PurchaseRecord.id)
                .where(
                    PurchaseRecord.id == ClickEvent.matched_purchase_id,
                    PurchaseRecord.matched_click_id == ClickEvent.id,
                )
                .correlate(ClickEvent)
                .exists()
            )
            orphaned = [
                ClickEvent.matched_purchase_id.is_not(None),
                or_(ClickEvent.matched_at.is_(None), ClickEvent.matched_at <= as_utc(claimed_before)),
                ~held,
            ]
            async with self._session_maker() as session, session.begin():
                ids = (await session.execute(
                    select(ClickEvent.id).where(*orphaned).order_by(ClickEvent.id).limit(limit)
                )).scalars().all()
                if not ids:
                    return 0
                result = await session.execute(
                    update(ClickEvent)
                    .where(ClickEvent.id.in_(ids), *orphaned)
                    .values(matched_purchase_id=None, matched_at=None)
                    .execution_options(synchronize_session=False)
                )
            return result.rowcount

        return await self._run(_sweep)

    async def record_match(self, result: MatchResult, previous: MatchResult | None) -> bool:
        async def _record():
            conditions = [PurchaseRecord.id == result.purchase_id]
            if previous is None:
                conditions.append(PurchaseRecord.match_tier.is_(None))
            else:
                conditions.append(PurchaseRecord.match_tier == previous.tier.value)
                if previous.click_id is None:
                    conditions.append(PurchaseRecord.matched_click_id.is_(None))
                else:
                    conditions.append(PurchaseRecord.matched_click_id == previous.click_id)

            stmt = (
                update(PurchaseRecord)
                .where(*conditions)
                .values(
                    matched_click_id=result.click_id,
                    match_tier=result.tier.value,
                    matched_at=as_utc(result.matched_at),
                )
                .execution_options(synchronize_session=False)
            )
            async with self._session_maker() as session, session.begin():
                updated = await session.execute(stmt)
                if updated.rowcount != 1:
                    return False
                session.add(MatchResultLog(
                    purchase_id=result.purchase_id,
                    click_id=result.click_id,
                    tier=result.tier.value,
                    superseded_tier=previous.tier.value if previous else None,
                    matched_at=as_utc(result.matched_at),
                ))
                if result.tier != ConfidenceTier.NONE:
                    existing = await session.get(SyncRecordRow, result.purchase_id)
                    if existing is None:
                        session.add(SyncRecordRow(
                            purchase_id=result.purchase_id,
                            status=SyncStatus.PENDING.value,
                            attempt_count=0,
                        ))
            return True

        return await self._run(_record)

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    async def _statuses(self, session: AsyncSession, ids: list[str]) -> dict[str, str]:
        if not ids:
            return {}
        stmt = select(SyncRecordRow.purchase_id, SyncRecordRow.status).where(SyncRecordRow.purchase_id.in_(ids))
        return {pid: status for pid, status in (await session.execute(stmt)).all()}

    async def load_purchases(self, purchase_ids: Sequence[str]) -> list[Purchase]:
        async def _load():
            ids = list(dict.fromkeys(purchase_ids))
            if not ids:
                return []
            async with self._session_maker() as session:
                rows = (await session.execute(
                    select(PurchaseRecord).where(PurchaseRecord.id.in_(ids))
                )).scalars().all()
                statuses = await self._statuses(session, ids)
            by_id = {r.id: r for r in rows}
            return [to_purchase(by_id[i], statuses.get(i)) for i in purchase_ids if i in by_id]

        return await self._run(_load)

    async def save_purchases(self, purchases: Sequence[Purchase]) -> list[Purchase]:
        async def _save():
            ids = list(dict.fromkeys(p.id for p in purchases))
            if not ids:
                return []
            async with self._session_maker() as session, session.begin():
                rows = {
                    r.id: r for r in (await session.execute(
                        select(PurchaseRecord).where(PurchaseRecord.id.in_(ids))
                    )).scalars().all()
                }
                for p in purchases:
                    row = rows.get(p.id)
                    if row is None:
                        row = PurchaseRecord(
                            id=p.id,
                            ad_click_id=p.ad_click_id,
                            email=p.email,
                            phone=p.phone,
                            ip_address=p.ip_address,
                            purchased_at=as_utc(p.purchased_at),
                            value=p.value,
                            currency=p.currency,
                            matched_click_id=None,
                            match_tier=None,
                            matched_at=None,
                        )
                        session.add(row)
                        rows[p.id] = row
                        continue
                    # Identity captured after the fact fills gaps, never overwrites
                    for attr in ("ad_click_id", "email", "phone", "ip_address"):
                        if getattr(row, attr) is None and getattr(p, attr):
                            setattr(row, attr, getattr(p, attr))
                await session.flush()
                statuses = await self._statuses(session, ids)
                saved = [to_purchase(rows[p.id], statuses.get(p.id)) for p in purchases]
            return saved

        return await self._run(_save)

    async def purchases_needing_match(self, limit: int) -> list[Purchase]:
        async def _needing_match():
            stmt = (
                select(PurchaseRecord, SyncRecordRow.status)
                .outerjoin(SyncRecordRow, SyncRecordRow.purchase_id == PurchaseRecord.id)
                .where(
                    or_(PurchaseRecord.match_tier.is_(None), PurchaseRecord.match_tier.in_(UPGRADABLE_TIERS)),
                    or_(SyncRecordRow.status.is_(None), SyncRecordRow.status != SyncStatus.SYNCED.value),
                )
                .order_by(
                    PurchaseRecord.matched_at.is_not(None),
                    PurchaseRecord.matched_at,
                    PurchaseRecord.purchased_at,
                    PurchaseRecord.id,
                )
                .limit(limit)
            )
            async with self._session_maker() as session:
                rows = (await session.execute(stmt)).all()
            return [to_purchase(row, status) for row, status in rows]

        return await self._run(_needing_match)

    # ------------------------------------------------------------------
    # Sync state
    # ------------------------------------------------------------------

    async def select_sync_candidates(
        self,
        limit: int,
        tiers: Iterable[ConfidenceTier],
        max_attempts: int,
        now: datetime,
    ) -> list[SyncCandidate]:
        async def _select():
            now_utc = as_utc(now)
            stmt = (
                select(PurchaseRecord, SyncRecordRow, ClickEvent.ad_click_id)
                .join(SyncRecordRow, SyncRecordRow.purchase_id == PurchaseRecord.id)
                .outerjoin(ClickEvent, ClickEvent.id == PurchaseRecord.matched_click_id)
                .where(
                    PurchaseRecord.match_tier.in_([t.value for t in tiers]),
                    or_(
                        SyncRecordRow.status == SyncStatus.PENDING.value,
                        (SyncRecordRow.status == SyncStatus.FAILED_RETRYABLE.value)
                        & (SyncRecordRow.attempt_count < max_attempts)
                        & or_(SyncRecordRow.next_attempt_at.is_(None), SyncRecordRow.next_attempt_at <= now_utc),
                    ),
                )
                .order_by(PurchaseRecord.purchased_at, PurchaseRecord.id)
                .limit(limit)
            )
            async with self._session_maker() as session:
                rows = (await session.execute(stmt)).all()
            return [
                SyncCandidate(
                    purchase=to_purchase(purchase, record.status),
                    record=to_sync_record(record),
                    ad_click_id=ad_click_id,
                )
                for purchase, record, ad_click_id in rows
            ]

        return await self._run(_select)

    async def begin_sync_attempts(
        self,
        records: Sequence[SyncRecord],
        now: datetime,
        retry_at: Mapping[str, datetime],
    ) -> set[str]:
        async def _begin():
            started: set[str] = set()
            async with self._session_maker() as session, session.begin():
                for record in records:
                    result = await session.execute(
                        update(SyncRecordRow)
                        .where(
                            SyncRecordRow.purchase_id == record.purchase_id,
                            SyncRecordRow.status == record.status.value,
                            SyncRecordRow.attempt_count == record.attempt_count,
                        )
                        .values(
                            status=SyncStatus.FAILED_RETRYABLE.value,
                            attempt_count=record.attempt_count + 1,
                            last_attempt_at=as_utc(now),
                            next_attempt_at=as_utc(retry_at[record.purchase_id]),
                            error_tag=ErrorTag.IN_FLIGHT.value,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        started.add(record.purchase_id)
            return started

        return await self._run(_begin)

    async def record_sync_outcomes(self, transitions: Sequence[SyncTransition]) -> int:
        async def _record_outcomes():
            applied = 0
            now = utcnow()
            async with self._session_maker() as session, session.begin():
                for t in transitions:
                    values = dict(
                        status=t.status.value,
                        attempt_count=t.attempt_count,
                        next_attempt_at=_opt_utc(t.next_attempt_at),
                        error_tag=t.error_tag,
                        last_error=t.detail,
                    )
                    if t.status == SyncStatus.SYNCED:
                        values.update(synced_at=now, platform_response_ref=t.platform_response_ref)
                    result = await session.execute(
                        update(SyncRecordRow)
                        .where(
                            SyncRecordRow.purchase_id == t.purchase_id,
                            SyncRecordRow.status == t.expected_status.value,
                            SyncRecordRow.attempt_count == t.expected_attempts,
                        )
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    applied += result.rowcount
            if applied != len(transitions):
                logger.warning("sync_transitions_stale", expected=len(transitions), applied=applied)
            return applied

        return await self._run(_record_outcomes)

    async def expire_exhausted_syncs(self, max_attempts: int, now: datetime) -> int:
        async def _expire():
            stmt = (
                update(SyncRecordRow)
                .where(
                    SyncRecordRow.status == SyncStatus.FAILED_RETRYABLE.value,
                    SyncRecordRow.attempt_count >= max_attempts,
                    or_(SyncRecordRow.next_attempt_at.is_(None), SyncRecordRow.next_attempt_at <= as_utc(now)),
                )
                .values(status=SyncStatus.FAILED_PERMANENT.value, error_tag=ErrorTag.ATTEMPTS_EXHAUSTED.value)
                .execution_options(synchronize_session=False)
            )
            async with self._session_maker() as session, session.begin():
                result = await session.execute(stmt)
            return result.rowcount

        return await self._run(_expire)

    async def sync_status_counts(self) -> dict[str, int]:
        async def _counts():
            stmt = select(SyncRecordRow.status, func.count()).group_by(SyncRecordRow.status)
            async with self._session_maker() as session:
                rows = (await session.execute(stmt)).all()
            counts = {s.value: 0 for s in SyncStatus}
            counts.update({status: count for status, count in rows})
            return counts

        return await self._run(_counts)

    async def record_sync_batch(self, report: Mapping[str, int], started_at: datetime, finished_at: datetime) -> None:
        async def _log_batch():
            async with self._session_maker() as session, session.begin():
                session.add(SyncBatchLog(
                    attempted=report.get("attempted", 0),
                    succeeded=report.get("succeeded", 0),
                    failed=report.get("failed", 0),
                    skipped=report.get("skipped", 0),
                    started_at=as_utc(started_at),
                    completed_at=as_utc(finished_at),
                ))

        await self._run(_log_batch)


def get_store() -> SqlAttributionStore:
    """FastAPI dependency — the store shares the process-wide session maker."""
    from clickmatch.models.database import get_session_maker
    return SqlAttributionStore(get_session_maker())
