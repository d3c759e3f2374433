"""Attribution schema: clicks, purchases, sync state, audit logs, api keys

Revision ID: attribution_schema_001
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa

revision = "attribution_schema_001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "click_events",
        sa.Column("id", sa.String(100), primary_key=True),
        sa.Column("ad_click_id", sa.String(255), nullable=True, unique=True),
        sa.Column("email_hash", sa.String(64), nullable=True),
        sa.Column("phone_hash", sa.String(64), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("geo_processed", sa.Boolean, server_default=sa.text("false")),
        sa.Column("country_code", sa.String(2), nullable=True),
        sa.Column("region", sa.String(100), nullable=True),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("utm", sa.JSON, nullable=True),
        sa.Column("clicked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("matched_purchase_id", sa.String(255), nullable=True),
        sa.Column("matched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_click_events_ad_click_id", "click_events", ["ad_click_id"])
    op.create_index("ix_click_events_email_hash", "click_events", ["email_hash"])
    op.create_index("ix_click_events_phone_hash", "click_events", ["phone_hash"])
    op.create_index("ix_click_events_matched_purchase_id", "click_events", ["matched_purchase_id"])
    op.create_index("ix_click_events_ip_clicked", "click_events", ["ip_address", "clicked_at"])
    op.create_index("ix_click_events_clicked", "click_events", ["clicked_at"])

    op.create_table(
        "purchase_records",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("ad_click_id", sa.String(255), nullable=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("purchased_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("value", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("matched_click_id", sa.String(100), nullable=True),
        sa.Column("match_tier", sa.String(20), nullable=True),
        sa.Column("matched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_purchase_records_match_tier", "purchase_records", ["match_tier"])
    op.create_index("ix_purchase_records_purchased", "purchase_records", ["purchased_at"])

    op.create_table(
        "sync_records",
        sa.Column("purchase_id", sa.String(255), sa.ForeignKey("purchase_records.id"), primary_key=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("platform_response_ref", sa.String(255), nullable=True),
        sa.Column("error_tag", sa.String(40), nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_sync_records_status", "sync_records", ["status"])
    op.create_index("ix_sync_records_retry", "sync_records", ["status", "next_attempt_at"])

    op.create_table(
        "match_results_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("purchase_id", sa.String(255), nullable=False),
        sa.Column("click_id", sa.String(100), nullable=True),
        sa.Column("tier", sa.String(20), nullable=False),
        sa.Column("superseded_tier", sa.String(20), nullable=True),
        sa.Column("matched_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_match_results_log_purchase_id", "match_results_log", ["purchase_id"])

    op.create_table(
        "sync_batches_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("attempted", sa.Integer, nullable=False, server_default="0"),
        sa.Column("succeeded", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("skipped", sa.Integer, nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "api_keys",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("key_hash", sa.String(64), nullable=False, unique=True),
        sa.Column("key_prefix", sa.String(12), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean, server_default=sa.text("true")),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("rate_limit_per_minute", sa.Integer, nullable=True),
    )
    op.create_index("ix_api_keys_key_hash", "api_keys", ["key_hash"])


def downgrade() -> None:
    op.drop_table("api_keys")
    op.drop_table("sync_batches_log")
    op.drop_table("match_results_log")
    op.drop_table("sync_records")
    op.drop_table("purchase_records")
    op.drop_table("click_events")
