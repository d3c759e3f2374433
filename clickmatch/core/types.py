"""
Domain types shared by the matching engine, the sync pipeline and the store.

These are plain frozen dataclasses; the SQLAlchemy rows in models/tables.py
are converted to and from them at the store boundary.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are treated as UTC (sqlite drops tzinfo)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ConfidenceTier(str, Enum):
    """Match confidence, totally ordered: EXACT_ID > IDENTITY > PROBABILISTIC > NONE."""

    NONE = "NONE"
    PROBABILISTIC = "PROBABILISTIC"
    IDENTITY = "IDENTITY"
    EXACT_ID = "EXACT_ID"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    def __lt__(self, other):
        if not isinstance(other, ConfidenceTier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, ConfidenceTier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, ConfidenceTier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, ConfidenceTier):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def at_least(cls, minimum: "ConfidenceTier") -> list["ConfidenceTier"]:
        return [tier for tier in cls if tier >= minimum]


_TIER_RANK = {
    ConfidenceTier.NONE: 0,
    ConfidenceTier.PROBABILISTIC: 1,
    ConfidenceTier.IDENTITY: 2,
    ConfidenceTier.EXACT_ID: 3,
}

# Results at these tiers are never re-evaluated
FINAL_TIERS = frozenset({ConfidenceTier.EXACT_ID, ConfidenceTier.IDENTITY})


class SyncStatus(str, Enum):
    PENDING = "PENDING"
    SYNCED = "SYNCED"
    FAILED_RETRYABLE = "FAILED_RETRYABLE"
    FAILED_PERMANENT = "FAILED_PERMANENT"


@dataclass(frozen=True)
class TimeWindow:
    start: datetime
    end: datetime

    @classmethod
    def ending_at(cls, end: datetime, length: timedelta) -> "TimeWindow":
        return cls(start=end - length, end=end)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end

    def union(self, other: "TimeWindow") -> "TimeWindow":
        return TimeWindow(start=min(self.start, other.start), end=max(self.end, other.end))


@dataclass(frozen=True)
class Click:
    """A captured ad click. Read-only here apart from the matched-state fields."""
    id: str
    clicked_at: datetime
    ad_click_id: str | None = None
    email_hash: str | None = None
    phone_hash: str | None = None
    ip_address: str | None = None
    matched_purchase_id: str | None = None

    def is_available_to(self, purchase_id: str) -> bool:
        return self.matched_purchase_id is None or self.matched_purchase_id == purchase_id


@dataclass(frozen=True)
class MatchResult:
    """Outcome of matching one purchase. Never mutated; a re-match supersedes it."""
    purchase_id: str
    tier: ConfidenceTier
    matched_at: datetime
    click_id: str | None = None
    error: str | None = None  # set when the purchase couldn't be evaluated

    def to_dict(self) -> dict:
        body = {"matchedClickId": self.click_id, "confidence": self.tier.value}
        if self.error:
            body["error"] = self.error
        return body


@dataclass(frozen=True)
class Purchase:
    id: str
    purchased_at: datetime
    ad_click_id: str | None = None
    email: str | None = None
    phone: str | None = None
    ip_address: str | None = None
    value: Decimal = Decimal("0")
    currency: str = "USD"
    match: MatchResult | None = None
    sync_status: SyncStatus | None = None


@dataclass(frozen=True)
class SyncRecord:
    purchase_id: str
    status: SyncStatus = SyncStatus.PENDING
    attempt_count: int = 0
    last_attempt_at: datetime | None = None
    next_attempt_at: datetime | None = None
    platform_response_ref: str | None = None
    error_tag: str | None = None


@dataclass(frozen=True)
class SyncCandidate:
    """A matched purchase selected for upload, joined with its click's gclid."""
    purchase: Purchase
    record: SyncRecord
    ad_click_id: str | None


@dataclass(frozen=True)
class SyncTransition:
    """Conditional SyncRecord update: applied only if the row still has the expected state."""
    purchase_id: str
    expected_status: SyncStatus
    expected_attempts: int
    status: SyncStatus
    attempt_count: int
    next_attempt_at: datetime | None = None
    error_tag: str | None = None
    detail: str | None = None
    platform_response_ref: str | None = None


@dataclass
class MatchSummary:
    """Per-call accumulator over a batch of match results."""
    total: int = 0
    by_tier: dict[str, int] = field(default_factory=lambda: {t.value: 0 for t in ConfidenceTier})
    errors: int = 0
    attributed_value: Decimal = Decimal("0")

    def add(self, purchase: Purchase, result: MatchResult) -> None:
        self.total += 1
        self.by_tier[result.tier.value] += 1
        if result.error:
            self.errors += 1
        elif result.tier != ConfidenceTier.NONE:
            self.attributed_value += purchase.value

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "byTier": dict(self.by_tier),
            "errors": self.errors,
            "attributedValue": str(self.attributed_value),
        }
