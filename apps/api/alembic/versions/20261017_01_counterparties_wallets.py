"""Counterparties, wallets and stock picks.

Revision ID: 20261017_01
Revises:
Create Date: 2026-10-17
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261017_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_NOW = sa.text("CURRENT_TIMESTAMP")


def upgrade() -> None:
    op.create_table(
        "merchants",
        sa.Column("merchant_id", sa.String(64), primary_key=True),
        sa.Column("merchant_name", sa.String(255), nullable=True),
        sa.Column("sweep_day", sa.Integer(), nullable=True),
        sa.Column("conversion_rate", sa.Numeric(12, 6), nullable=True),
        sa.Column("webhook_url", sa.String(512), nullable=True),
        sa.Column("webhook_secret", sa.String(255), nullable=True),
        sa.Column("api_key", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_NOW, nullable=False),
    )

    op.create_table(
        "brokers",
        sa.Column("broker_id", sa.String(64), primary_key=True),
        sa.Column("broker_name", sa.String(128), nullable=False, unique=True),
        sa.Column("webhook_url", sa.String(512), nullable=True),
        sa.Column("webhook_secret", sa.String(255), nullable=True),
        sa.Column("api_key", sa.String(255), nullable=True, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_NOW, nullable=False),
    )

    op.create_table(
        "wallets",
        sa.Column("member_id", sa.String(64), primary_key=True),
        sa.Column("merchant_id", sa.String(64), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cash_balance", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("sweep_enrolled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sweep_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("conversion_rate", sa.Numeric(12, 6), nullable=True),
        sa.Column("member_tier", sa.String(64), nullable=True),
        sa.Column("broker", sa.String(128), nullable=True),
        sa.Column(
            "status",
            sa.Enum("active", "suspended", "closed", name="wallet_status_enum"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=_NOW, nullable=False),
    )
    op.create_index("ix_wallets_merchant_id", "wallets", ["merchant_id"])

    op.create_table(
        "member_stock_picks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("member_id", sa.String(64), nullable=False),
        sa.Column("symbol", sa.String(16), nullable=False),
        sa.Column("allocation_pct", sa.Numeric(7, 4), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_NOW, nullable=False),
        sa.UniqueConstraint("member_id", "symbol", name="uq_member_stock_pick_symbol"),
    )
    op.create_index("ix_member_stock_picks_member_id", "member_stock_picks", ["member_id"])


def downgrade() -> None:
    op.drop_index("ix_member_stock_picks_member_id", table_name="member_stock_picks")
    op.drop_table("member_stock_picks")
    op.drop_index("ix_wallets_merchant_id", table_name="wallets")
    op.drop_table("wallets")
    sa.Enum(name="wallet_status_enum").drop(op.get_bind(), checkfirst=True)
    op.drop_table("brokers")
    op.drop_table("merchants")
