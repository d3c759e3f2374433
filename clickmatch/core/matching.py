"""
Attribution matching engine.

Precedence (first success wins):
  1. EXACT_ID       purchase names a click id we captured
  2. IDENTITY       hashed email/phone seen on a click within the identity window
  3. PROBABILISTIC  same IP within the short window, only for purchases with no identity
  4. NONE

Concurrency model:
  - Candidate reads are prefetched per distinct key (click ref chunk,
    identity-hash chunk, IP) with bounded parallelism, never per purchase.
  - Claims are compare-and-swap writes in the store (mark_click_matched), so
    several engine processes can run over overlapping purchases without ever
    attributing one click twice. No in-process locks.
  - A claim is either recorded on the purchase or released again; a
    cancelled/failed batch leaves no half-written MatchResult. Releases are
    conditional on the purchase's stored match not pointing at the click, so
    an ambiguous record_match failure can't free a click that was attributed.
    Releases that fail are retried by the orphan sweep in match_pending.

Re-matching:
  - EXACT_ID and IDENTITY are final; so is anything already synced.
  - NONE / PROBABILISTIC may be upgraded when a better signal shows up later.
"""

import asyncio
import dataclasses
from datetime import datetime, timedelta
from functools import reduce
from typing import Callable, Sequence

from clickmatch.config import Settings, get_settings
from clickmatch.core.errors import InputInvalidError, StoreUnavailableError
from clickmatch.core.identity import identity_hashes
from clickmatch.core.store import ClaimOutcome, MatchStore
from clickmatch.core.strategies import MatchStrategy, default_strategies
from clickmatch.core.types import (
    FINAL_TIERS,
    Click,
    ConfidenceTier,
    MatchResult,
    MatchSummary,
    Purchase,
    SyncStatus,
    TimeWindow,
    as_utc,
    utcnow,
)

import structlog

logger = structlog.get_logger()


def _chunks(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class CandidatePool:
    """Clicks prefetched for one engine call, plus the claims made during it."""

    def __init__(self, default_country_code: str = "1"):
        self._country = default_country_code
        self._clicks: dict[str, Click] = {}
        self._by_ref: dict[str, set[str]] = {}
        self._by_hash: dict[str, set[str]] = {}
        self._by_ip: dict[str, set[str]] = {}
        self.claimed: dict[str, str] = {}  # click id -> purchase id

    def add(self, clicks: Sequence[Click]) -> None:
        for click in clicks:
            self._clicks[click.id] = click
            self._by_ref.setdefault(click.id, set()).add(click.id)
            if click.ad_click_id:
                self._by_ref.setdefault(click.ad_click_id, set()).add(click.id)
            for h in (click.email_hash, click.phone_hash):
                if h:
                    self._by_hash.setdefault(h, set()).add(click.id)
            if click.ip_address:
                self._by_ip.setdefault(click.ip_address, set()).add(click.id)

    def candidates_for(self, purchase: Purchase, tier: ConfidenceTier) -> list[Click]:
        ids: set[str] = set()
        if tier == ConfidenceTier.EXACT_ID and purchase.ad_click_id:
            ids = self._by_ref.get(purchase.ad_click_id, set())
        elif tier == ConfidenceTier.IDENTITY:
            for h in identity_hashes(purchase.email, purchase.phone, self._country):
                ids = ids | self._by_hash.get(h, set())
        elif tier == ConfidenceTier.PROBABILISTIC and purchase.ip_address:
            ids = self._by_ip.get(purchase.ip_address, set())
        return [self._clicks[i] for i in sorted(ids)]

    def claimed_by_others(self, purchase_id: str) -> set[str]:
        return {cid for cid, pid in self.claimed.items() if pid != purchase_id}


class AttributionEngine:
    def __init__(
        self,
        store: MatchStore,
        settings: Settings | None = None,
        strategies: list[MatchStrategy] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.strategies = strategies if strategies is not None else default_strategies(self.settings)
        self._clock = clock

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def match_purchase(self, purchase: Purchase) -> MatchResult:
        results = await self.bulk_match([purchase])
        return results[0]

    async def bulk_match(
        self,
        purchases: Sequence[Purchase],
        skip_failures: bool = False,
    ) -> list[MatchResult]:
        """Match purchases in input order, one result per input position.

        Store failures while prefetching abort the call. Failures while
        claiming/recording one purchase abort too, unless skip_failures is
        set, in which case that position gets an unrecorded result tagged
        STORE_UNAVAILABLE and the batch carries on.
        """
        if not purchases:
            return []
        purchases = [self._validate(p) for p in purchases]
        pool = await self._prefetch([p for p in purchases if not self._is_settled(p)])

        results: list[MatchResult] = []
        done: dict[str, MatchResult] = {}
        for purchase in purchases:
            if purchase.id in done:
                results.append(done[purchase.id])
                continue
            try:
                result = await self._match_one(purchase, pool)
            except StoreUnavailableError as e:
                if not skip_failures:
                    raise
                logger.warning("match_purchase_skipped", purchase_id=purchase.id, error=str(e))
                previous = purchase.match
                result = MatchResult(
                    purchase_id=purchase.id,
                    tier=previous.tier if previous else ConfidenceTier.NONE,
                    click_id=previous.click_id if previous else None,
                    matched_at=self._clock(),
                    error=e.tag.value,
                )
            done[purchase.id] = result
            results.append(result)
        return results

    async def match_pending(self, limit: int) -> tuple[list[MatchResult], MatchSummary]:
        """Scheduled job: (re-)match stored purchases that are unmatched or upgradable."""
        await self.release_orphaned_claims()
        purchases = await self.store.purchases_needing_match(limit)
        results = await self.bulk_match(purchases, skip_failures=True)
        summary = MatchSummary()
        for purchase, result in zip(purchases, results):
            summary.add(purchase, result)
        logger.info("match_pending_complete", **summary.to_dict())
        return results, summary

    async def release_orphaned_claims(self) -> int:
        """Free claims left behind by failed releases (upgrades, superseded or aborted matches).

        Claims younger than orphan_claim_grace_seconds are skipped: they may
        belong to a match another worker hasn't recorded yet.
        """
        cutoff = self._clock() - timedelta(seconds=self.settings.orphan_claim_grace_seconds)
        released = await self.store.release_orphaned_claims(cutoff, self.settings.orphan_sweep_limit)
        if released:
            logger.info("match_orphaned_claims_released", released=released)
        return released

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(purchase: Purchase) -> Purchase:
        if not purchase.id or not str(purchase.id).strip():
            raise InputInvalidError("purchase id is required")
        if not isinstance(purchase.purchased_at, datetime):
            raise InputInvalidError(f"purchase {purchase.id}: purchased_at must be a datetime")
        return dataclasses.replace(purchase, purchased_at=as_utc(purchase.purchased_at))

    @staticmethod
    def _is_settled(purchase: Purchase) -> bool:
        if purchase.sync_status == SyncStatus.SYNCED and purchase.match is not None:
            return True
        return purchase.match is not None and purchase.match.tier in FINAL_TIERS

    async def _prefetch(self, purchases: Sequence[Purchase]) -> CandidatePool:
        settings = self.settings
        country = settings.default_phone_country_code
        pool = CandidatePool(country)
        if not purchases:
            return pool

        identity_span = timedelta(days=settings.identity_window_days)
        ip_span = timedelta(hours=settings.probabilistic_window_hours)
        refs: set[str] = set()
        hash_windows: dict[str, TimeWindow] = {}
        ip_windows: dict[str, TimeWindow] = {}

        for p in purchases:
            if p.ad_click_id:
                refs.add(p.ad_click_id)
            hashes = identity_hashes(p.email, p.phone, country)
            for h in hashes:
                window = TimeWindow.ending_at(p.purchased_at, identity_span)
                hash_windows[h] = hash_windows[h].union(window) if h in hash_windows else window
            if not hashes and p.ip_address:
                window = TimeWindow.ending_at(p.purchased_at, ip_span)
                ip = p.ip_address
                ip_windows[ip] = ip_windows[ip].union(window) if ip in ip_windows else window

        semaphore = asyncio.Semaphore(max(1, settings.match_lookup_concurrency))

        async def bounded(fn, *args):
            async with semaphore:
                return await fn(*args)

        size = max(1, settings.match_lookup_chunk_size)
        lookups = []
        if len(refs) == 1:
            lookups.append(bounded(self._click_by_id, next(iter(refs))))
        else:
            for chunk in _chunks(sorted(refs), size):
                lookups.append(bounded(self.store.clicks_by_ids, set(chunk)))
        for chunk in _chunks(sorted(hash_windows), size):
            window = reduce(TimeWindow.union, (hash_windows[h] for h in chunk))
            lookups.append(bounded(self.store.candidate_clicks_for_identity, set(chunk), window))
        for ip, window in sorted(ip_windows.items()):
            lookups.append(bounded(self.store.candidate_clicks_for_ip_window, ip, window))

        tasks = [asyncio.ensure_future(lookup) for lookup in lookups]
        try:
            batches = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise
        for clicks in batches:
            pool.add(clicks)

        logger.debug(
            "match_candidates_prefetched",
            purchases=len(purchases),
            lookups=len(lookups),
            refs=len(refs),
            identity_keys=len(hash_windows),
            ips=len(ip_windows),
        )
        return pool

    async def _click_by_id(self, ref: str) -> list[Click]:
        click = await self.store.click_by_id(ref)
        return [click] if click else []

    async def _match_one(self, purchase: Purchase, pool: CandidatePool) -> MatchResult:
        previous = purchase.match
        if previous is not None and self._is_settled(purchase):
            return previous

        floor = previous.tier if previous is not None else None
        conflicts: set[str] = set()
        for strategy in self.strategies:
            if floor is not None and strategy.tier <= floor:
                continue
            click = await self._claim_best(purchase, strategy, pool, conflicts)
            if click is not None:
                result = MatchResult(
                    purchase_id=purchase.id,
                    tier=strategy.tier,
                    click_id=click.id,
                    matched_at=self._clock(),
                )
                return await self._commit(purchase, result, previous)

        if previous is not None:
            return previous
        result = MatchResult(purchase_id=purchase.id, tier=ConfidenceTier.NONE, matched_at=self._clock())
        return await self._commit(purchase, result, None)

    async def _claim_best(
        self,
        purchase: Purchase,
        strategy: MatchStrategy,
        pool: CandidatePool,
        conflicts: set[str],
    ) -> Click | None:
        candidates = pool.candidates_for(purchase, strategy.tier)
        if not candidates:
            return None
        for _ in range(1 + self.settings.claim_retry_limit):
            excluded = conflicts | pool.claimed_by_others(purchase.id)
            click = strategy.select(purchase, candidates, excluded)
            if click is None:
                return None
            outcome = await self.store.mark_click_matched(click.id, purchase.id)
            if outcome == ClaimOutcome.CLAIMED:
                pool.claimed[click.id] = purchase.id
                return click
            conflicts.add(click.id)
            logger.info(
                "match_claim_conflict",
                purchase_id=purchase.id,
                click_id=click.id,
                tier=strategy.tier.value,
            )
        logger.warning("match_claim_retries_exhausted", purchase_id=purchase.id, tier=strategy.tier.value)
        return None

    async def _commit(
        self,
        purchase: Purchase,
        result: MatchResult,
        previous: MatchResult | None,
    ) -> MatchResult:
        fresh_claim = result.click_id is not None and (
            previous is None or previous.click_id != result.click_id
        )
        try:
            recorded = await self.store.record_match(result, previous)
        except BaseException:
            # The write may still have landed; release_click keeps a claim the stored match points at
            if fresh_claim:
                await asyncio.shield(self._release_quietly(result.click_id, purchase.id))
            raise

        if not recorded:
            # Another worker re-matched this purchase first
            if fresh_claim:
                await self._release_quietly(result.click_id, purchase.id)
            current = await self.store.load_purchases([purchase.id])
            winner = current[0].match if current else None
            logger.info("match_superseded", purchase_id=purchase.id)
            return winner or previous or result

        if previous is not None and previous.click_id and previous.click_id != result.click_id:
            await self._release_quietly(previous.click_id, purchase.id)

        logger.info(
            "match_recorded",
            purchase_id=purchase.id,
            click_id=result.click_id,
            tier=result.tier.value,
            previous_tier=previous.tier.value if previous else None,
        )
        return result

    async def _release_quietly(self, click_id: str, purchase_id: str) -> None:
        try:
            await self.store.release_click(click_id, purchase_id)
        except StoreUnavailableError as e:
            # Left for release_orphaned_claims on a later run
            logger.warning("match_claim_release_failed", click_id=click_id, purchase_id=purchase_id, error=str(e))
