"""
Store contracts consumed by the matching engine and the sync pipeline.

Pure data access, no matching logic. Implementations must raise
StoreUnavailableError on timeouts / connection loss and must make every
state write conditional (compare-and-swap): claims, match results and sync
transitions are applied only against the state the caller last observed,
because several worker processes may run the same batch jobs concurrently.
"""

from datetime import datetime
from enum import Enum
from typing import Iterable, Mapping, Protocol, Sequence

from clickmatch.core.types import (
    Click,
    ConfidenceTier,
    MatchResult,
    Purchase,
    SyncCandidate,
    SyncRecord,
    SyncTransition,
    TimeWindow,
)


class ClaimOutcome(str, Enum):
    CLAIMED = "CLAIMED"
    ALREADY_CLAIMED = "ALREADY_CLAIMED"


class MatchStore(Protocol):
    async def candidate_clicks_for_identity(
        self, identity_hashes: set[str], window: TimeWindow
    ) -> Sequence[Click]:
        """Clicks whose email or phone hash is in identity_hashes, clicked within window."""
        ...

    async def candidate_clicks_for_ip_window(self, ip: str, window: TimeWindow) -> Sequence[Click]:
        ...

    async def click_by_id(self, click_ref: str) -> Click | None:
        """Look up a click by advertising click id or internal id."""
        ...

    async def clicks_by_ids(self, click_refs: set[str]) -> Sequence[Click]:
        """Batched click_by_id."""
        ...

    async def mark_click_matched(self, click_id: str, purchase_id: str) -> ClaimOutcome:
        """Claim a click for a purchase iff it is unclaimed (or already ours)."""
        ...

    async def release_click(self, click_id: str, purchase_id: str) -> bool:
        """Undo a claim, only if purchase_id still holds it and its recorded match doesn't point at it."""
        ...

    async def release_orphaned_claims(self, claimed_before: datetime, limit: int) -> int:
        """Free claims older than claimed_before that no purchase's recorded match points at."""
        ...

    async def record_match(self, result: MatchResult, previous: MatchResult | None) -> bool:
        """Make result the purchase's active match iff its active match is still previous.

        Appends the result to the match history and opens a PENDING sync
        record for matched tiers, all in one transaction.
        """
        ...

    async def load_purchases(self, purchase_ids: Sequence[str]) -> list[Purchase]:
        ...

    async def save_purchases(self, purchases: Sequence[Purchase]) -> list[Purchase]:
        """Upsert from the purchase feed, returning stored state in input order."""
        ...

    async def purchases_needing_match(self, limit: int) -> list[Purchase]:
        """Unmatched or upgradable (NONE / PROBABILISTIC, not synced) purchases."""
        ...


class SyncStore(Protocol):
    async def select_sync_candidates(
        self,
        limit: int,
        tiers: Iterable[ConfidenceTier],
        max_attempts: int,
        now: datetime,
    ) -> list[SyncCandidate]:
        ...

    async def begin_sync_attempts(
        self,
        records: Sequence[SyncRecord],
        now: datetime,
        retry_at: Mapping[str, datetime],
    ) -> set[str]:
        """Persist attempt+1 / FAILED_RETRYABLE / IN_FLIGHT before upload.

        Returns the purchase ids actually started; rows changed by another
        worker since selection are left alone.
        """
        ...

    async def record_sync_outcomes(self, transitions: Sequence[SyncTransition]) -> int:
        ...

    async def expire_exhausted_syncs(self, max_attempts: int, now: datetime) -> int:
        ...

    async def sync_status_counts(self) -> dict[str, int]:
        ...

    async def record_sync_batch(self, report: Mapping[str, int], started_at: datetime, finished_at: datetime) -> None:
        ...
