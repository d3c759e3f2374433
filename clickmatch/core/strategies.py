"""
Attribution strategies — one per confidence tier, evaluated in precedence order.

Each strategy is a pure selector:

    (purchase, candidates, excluded_click_ids) -> Click | None

It never touches the store. The engine feeds it prefetched candidates, claims
whatever it returns, and on a claim conflict calls it again with the
conflicting click excluded.

Selection rule everywhere: last-touch. Most recent eligible click wins; ties
on timestamp go to the smaller click id so results are deterministic.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import AbstractSet, Callable, Sequence

from clickmatch.config import Settings
from clickmatch.core.identity import identity_hashes
from clickmatch.core.types import Click, ConfidenceTier, Purchase, TimeWindow

Selector = Callable[[Purchase, Sequence[Click], AbstractSet[str]], Click | None]


@dataclass(frozen=True)
class MatchStrategy:
    tier: ConfidenceTier
    select: Selector


def last_touch(clicks: Sequence[Click]) -> Click | None:
    if not clicks:
        return None
    latest = max(c.clicked_at for c in clicks)
    return min((c for c in clicks if c.clicked_at == latest), key=lambda c: c.id)


def _eligible(purchase: Purchase, clicks: Sequence[Click], excluded: AbstractSet[str]) -> list[Click]:
    return [
        c for c in clicks
        if c.id not in excluded and c.is_available_to(purchase.id)
    ]


def select_exact_id(
    purchase: Purchase,
    candidates: Sequence[Click],
    excluded: AbstractSet[str],
) -> Click | None:
    """The click the purchase names, if it exists and is unclaimed."""
    ref = purchase.ad_click_id
    if not ref:
        return None
    named = [c for c in candidates if c.ad_click_id == ref or c.id == ref]
    # A gclid hit beats an internal-id hit
    named.sort(key=lambda c: (c.ad_click_id != ref, c.id))
    for click in _eligible(purchase, named, excluded):
        return click
    return None


def identity_selector(window: timedelta, default_country_code: str = "1") -> Selector:
    def select_identity(
        purchase: Purchase,
        candidates: Sequence[Click],
        excluded: AbstractSet[str],
    ) -> Click | None:
        hashes = identity_hashes(purchase.email, purchase.phone, default_country_code)
        if not hashes:
            return None
        span = TimeWindow.ending_at(purchase.purchased_at, window)
        matching = [
            c for c in _eligible(purchase, candidates, excluded)
            if span.contains(c.clicked_at)
            and (c.email_hash in hashes or c.phone_hash in hashes)
        ]
        return last_touch(matching)

    return select_identity


def probabilistic_selector(window: timedelta, default_country_code: str = "1") -> Selector:
    def select_probabilistic(
        purchase: Purchase,
        candidates: Sequence[Click],
        excluded: AbstractSet[str],
    ) -> Click | None:
        # Only a fallback for purchases that carry no identity at all
        if identity_hashes(purchase.email, purchase.phone, default_country_code):
            return None
        if not purchase.ip_address:
            return None
        span = TimeWindow.ending_at(purchase.purchased_at, window)
        matching = [
            c for c in _eligible(purchase, candidates, excluded)
            if c.ip_address == purchase.ip_address and span.contains(c.clicked_at)
        ]
        return last_touch(matching)

    return select_probabilistic


def default_strategies(settings: Settings) -> list[MatchStrategy]:
    country = settings.default_phone_country_code
    return [
        MatchStrategy(ConfidenceTier.EXACT_ID, select_exact_id),
        MatchStrategy(
            ConfidenceTier.IDENTITY,
            identity_selector(timedelta(days=settings.identity_window_days), country),
        ),
        MatchStrategy(
            ConfidenceTier.PROBABILISTIC,
            probabilistic_selector(timedelta(hours=settings.probabilistic_window_hours), country),
        ),
    ]
