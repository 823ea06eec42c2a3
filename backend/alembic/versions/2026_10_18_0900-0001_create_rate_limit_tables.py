"""create rate limit tables

Revision ID: 0001
Revises:
Create Date: 2026-10-18

Counters, rules, allow/deny list and request log.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── Counters ────────────────────────────────────────────
    op.create_table(
        "rate_limit_counters",
        sa.Column("identifier", sa.String(255), nullable=False),
        sa.Column("endpoint", sa.String(255), nullable=False),
        sa.Column("granularity", sa.String(10), nullable=False),
        sa.Column("window_start", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("identifier", "endpoint", "granularity", "window_start"),
    )
    # Sweeper deletes by (granularity, window_start < cutoff)
    op.create_index(
        "ix_rate_limit_counters_sweep",
        "rate_limit_counters",
        ["granularity", "window_start"],
    )

    # ── Rules ───────────────────────────────────────────────
    op.create_table(
        "rate_rules",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("endpoint_pattern", sa.String(255), nullable=False, server_default="*"),
        sa.Column("identifier_type", sa.String(20), nullable=False, server_default="ip"),
        sa.Column("role", sa.String(100), nullable=True),
        sa.Column("requests_per_minute", sa.Integer(), nullable=True),
        sa.Column("requests_per_hour", sa.Integer(), nullable=True),
        sa.Column("requests_per_day", sa.Integer(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_rate_rules_active_priority",
        "rate_rules",
        ["is_active", "priority"],
    )

    # ── Allow / deny list ───────────────────────────────────
    op.create_table(
        "rate_list_entries",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("identifier", sa.String(255), nullable=False),
        sa.Column("identifier_type", sa.String(20), nullable=False),
        sa.Column("list_kind", sa.String(10), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(100), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "identifier", "identifier_type", "list_kind",
            name="uq_rate_list_entries_identifier_type_kind",
        ),
    )
    op.create_index(
        "ix_rate_list_entries_expires_at",
        "rate_list_entries",
        ["expires_at"],
    )

    # ── Request log ─────────────────────────────────────────
    op.create_table(
        "api_request_logs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(100), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=False),
        sa.Column("api_key_prefix", sa.String(12), nullable=True),
        sa.Column("endpoint", sa.String(255), nullable=False),
        sa.Column("method", sa.String(10), nullable=False),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_api_request_logs_created_at", "api_request_logs", ["created_at"])
    op.create_index("ix_api_request_logs_user_id", "api_request_logs", ["user_id"])
    op.create_index("ix_api_request_logs_endpoint", "api_request_logs", ["endpoint"])


def downgrade() -> None:
    op.drop_index("ix_api_request_logs_endpoint", table_name="api_request_logs")
    op.drop_index("ix_api_request_logs_user_id", table_name="api_request_logs")
    op.drop_index("ix_api_request_logs_created_at", table_name="api_request_logs")
    op.drop_table("api_request_logs")

    op.drop_index("ix_rate_list_entries_expires_at", table_name="rate_list_entries")
    op.drop_table("rate_list_entries")

    op.drop_index("ix_rate_rules_active_priority", table_name="rate_rules")
    op.drop_table("rate_rules")

    op.drop_index("ix_rate_limit_counters_sweep", table_name="rate_limit_counters")
    op.drop_table("rate_limit_counters")
