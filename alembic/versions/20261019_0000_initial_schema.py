"""Initial schema for analysis jobs, token aggregates and shared caches.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Analysis jobs table
    op.create_table(
        "analysis_jobs",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("wallet_address", sa.String(64), nullable=False),
        sa.Column("agent_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("scan_mode", sa.String(16), nullable=False, server_default="full"),
        sa.Column("total_signatures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_signatures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_batch", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_results", sa.JSON(), nullable=True),
        sa.Column("last_signature", sa.String(128), nullable=True),
        sa.Column("pagination_token", sa.String(256), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("wallet_address", name="uq_analysis_jobs_wallet"),
    )
    op.create_index("idx_analysis_jobs_status_created", "analysis_jobs", ["status", "created_at"])

    # Per-job token aggregates
    op.create_table(
        "token_aggregates",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_id", sa.String(36), nullable=False),
        sa.Column("mint", sa.String(64), nullable=False),
        sa.Column("total_volume_usd", sa.Double(), nullable=False, server_default="0"),
        sa.Column("total_volume_native", sa.Double(), nullable=False, server_default="0"),
        sa.Column("total_gain_loss_pct", sa.Double(), nullable=False, server_default="0"),
        sa.Column("total_pnl_usd", sa.Double(), nullable=False, server_default="0"),
        sa.Column("total_missed_usd", sa.Double(), nullable=False, server_default="0"),
        sa.Column("trade_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("priced_trades", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("trades_missing_price", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sum_purchase_value", sa.Double(), nullable=False, server_default="0"),
        sa.Column("sum_trade_value", sa.Double(), nullable=False, server_default="0"),
        sa.Column("sum_ath_price", sa.Double(), nullable=False, server_default="0"),
        sa.Column("sum_tokens_traded", sa.Double(), nullable=False, server_default="0"),
        sa.Column("average_purchase_price", sa.Double(), nullable=True),
        sa.Column("average_trade_price", sa.Double(), nullable=True),
        sa.Column("average_ath_price", sa.Double(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["job_id"], ["analysis_jobs.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("job_id", "mint", name="uq_token_aggregates_job_mint"),
    )
    op.create_index("idx_token_aggregates_job_missed", "token_aggregates", ["job_id", "total_missed_usd"])

    # Token metadata
    op.create_table(
        "tokens",
        sa.Column("mint", sa.String(64), nullable=False),
        sa.Column("symbol", sa.String(64), nullable=True),
        sa.Column("name", sa.String(256), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("mint"),
    )

    # Price cache
    op.create_table(
        "price_cache",
        sa.Column("mint", sa.String(64), nullable=False),
        sa.Column("purchase_price", sa.Double(), nullable=False),
        sa.Column("purchase_timestamp", sa.BigInteger(), nullable=False),
        sa.Column("current_price", sa.Double(), nullable=False),
        sa.Column("current_price_updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ath_price", sa.Double(), nullable=False),
        sa.Column("ath_timestamp", sa.BigInteger(), nullable=False),
        sa.Column("price_history", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("mint"),
    )
    op.create_index("idx_price_cache_created_at", "price_cache", ["created_at"])

    # Transaction cache
    op.create_table(
        "transaction_cache",
        sa.Column("signature", sa.String(128), nullable=False),
        sa.Column("block_time", sa.BigInteger(), nullable=True),
        sa.Column("native_change", sa.Double(), nullable=False, server_default="0"),
        sa.Column("trades", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("signature"),
    )
    op.create_index("idx_transaction_cache_created_at", "transaction_cache", ["created_at"])


def downgrade() -> None:
    op.drop_index("idx_transaction_cache_created_at", table_name="transaction_cache")
    op.drop_table("transaction_cache")
    op.drop_index("idx_price_cache_created_at", table_name="price_cache")
    op.drop_table("price_cache")
    op.drop_table("tokens")
    op.drop_index("idx_token_aggregates_job_missed", table_name="token_aggregates")
    op.drop_table("token_aggregates")
    op.drop_index("idx_analysis_jobs_status_created", table_name="analysis_jobs")
    op.drop_table("analysis_jobs")
