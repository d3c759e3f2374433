"""
Database models.

Design principles:
  - click_events are written by ingestion; this service only writes the
    matched_* columns, and only through conditional updates
  - purchase_records come from the purchase feed; match_* columns belong to
    the matching engine, sync state lives in sync_records
  - match_results_log and sync_batches_log are append-only
  - Portable column types (no JSONB/UUID) so the store runs on sqlite in tests
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class ClickEvent(Base):
    """One row per captured ad click (pixel / ingestion endpoint)."""
    __tablename__ = "click_events"

    id = Column(String(100), primary_key=True)
    ad_click_id = Column(String(255), nullable=True, unique=True, index=True)   # gclid

    # --- Identity (hashed at capture, see core/identity.py) ---
    email_hash = Column(String(64), nullable=True, index=True)
    phone_hash = Column(String(64), nullable=True, index=True)

    # --- Networking / geo ---
    ip_address = Column(String(45), nullable=True)
    geo_processed = Column(Boolean, default=False)
    country_code = Column(String(2), nullable=True)
    region = Column(String(100), nullable=True)
    city = Column(String(100), nullable=True)

    # --- Campaign ---
    utm = Column(JSON, nullable=True)

    clicked_at = Column(DateTime(timezone=True), nullable=False)

    # --- Attribution (written by the matching engine) ---
    matched_purchase_id = Column(String(255), nullable=True, index=True)
    matched_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_click_events_ip_clicked", "ip_address", "clicked_at"),
        Index("ix_click_events_clicked", "clicked_at"),
    )


class PurchaseRecord(Base):
    __tablename__ = "purchase_records"

    id = Column(String(255), primary_key=True)                 # source-system id
    ad_click_id = Column(String(255), nullable=True)           # pass-through gclid, if any

    # --- Identity, raw as delivered by the feed ---
    email = Column(String(320), nullable=True)
    phone = Column(String(50), nullable=True)
    ip_address = Column(String(45), nullable=True)

    purchased_at = Column(DateTime(timezone=True), nullable=False)
    value = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")

    # --- Active match ---
    matched_click_id = Column(String(100), nullable=True)
    match_tier = Column(String(20), nullable=True, index=True)
    matched_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_purchase_records_purchased", "purchased_at"),
    )


class SyncRecord(Base):
    __tablename__ = "sync_records"

    purchase_id = Column(String(255), ForeignKey("purchase_records.id"), primary_key=True)
    status = Column(String(20), nullable=False, default="PENDING", index=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=True)
    platform_response_ref = Column(String(255), nullable=True)
    error_tag = Column(String(40), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_sync_records_retry", "status", "next_attempt_at"),
    )


class MatchResultLog(Base):
    """Append-only: every MatchResult that became active, in order."""
    __tablename__ = "match_results_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    purchase_id = Column(String(255), nullable=False, index=True)
    click_id = Column(String(100), nullable=True)
    tier = Column(String(20), nullable=False)
    superseded_tier = Column(String(20), nullable=True)
    matched_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class SyncBatchLog(Base):
    """Append-only: one row per syncBatch run that selected anything."""
    __tablename__ = "sync_batches_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    attempted = Column(Integer, nullable=False, default=0)
    succeeded = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=False)
