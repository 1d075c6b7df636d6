"""Prepare batches, sweep runs, orders and order history.

Revision ID: 20261017_02
Revises: 20261017_01
Create Date: 2026-10-17
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261017_02"
down_revision: Union[str, None] = "20261017_01"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_NOW = sa.text("CURRENT_TIMESTAMP")

ORDER_STATUSES = (
    "pending",
    "queued",
    "placed",
    "confirmed",
    "executed",
    "settled",
    "sell",
    "sold",
    "cancelled",
    "failed",
)


def upgrade() -> None:
    op.create_table(
        "prepare_batches",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "status",
            sa.Enum("draft", "approved", "discarded", "submitted", name="prepare_batch_status_enum"),
            nullable=False,
            server_default="draft",
        ),
        sa.Column("filter_merchant", sa.String(64), nullable=True),
        sa.Column("filter_member", sa.String(64), nullable=True),
        sa.Column("total_members", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_orders", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("total_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("members_skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("sweep_claim", sa.String(64), nullable=True),
        sa.Column("sweep_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_NOW, nullable=False),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("discarded_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "prepared_orders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("batch_id", sa.String(64), nullable=False),
        sa.Column("basket_id", sa.String(128), nullable=False),
        sa.Column("member_id", sa.String(64), nullable=False),
        sa.Column("merchant_id", sa.String(64), nullable=False),
        sa.Column("symbol", sa.String(16), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("price", sa.Numeric(18, 6), nullable=True),
        sa.Column("shares", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("points_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("broker", sa.String(128), nullable=True),
        sa.Column("member_tier", sa.String(64), nullable=True),
        sa.Column("conversion_rate", sa.Numeric(12, 6), nullable=False),
        sa.Column("sweep_percentage", sa.Integer(), nullable=False),
        sa.Column("allocation_pct", sa.Numeric(7, 4), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_NOW, nullable=False),
        sa.ForeignKeyConstraint(["batch_id"], ["prepare_batches.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_prepared_orders_batch_id", "prepared_orders", ["batch_id"])
    op.create_index("ix_prepared_orders_basket_id", "prepared_orders", ["basket_id"])
    op.create_index("ix_prepared_orders_member_id", "prepared_orders", ["member_id"])

    op.create_table(
        "sweep_runs",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("batch_id", sa.String(64), nullable=True),
        sa.Column("merchant_filter", sa.String(64), nullable=True),
        sa.Column("triggered_by", sa.String(64), nullable=False, server_default="admin"),
        sa.Column(
            "status",
            sa.Enum("running", "completed", name="sweep_run_status_enum"),
            nullable=False,
            server_default="running",
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=_NOW, nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("merchants_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("orders_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("orders_confirmed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("orders_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("brokers_notified", sa.JSON(), nullable=False),
        sa.Column("errors", sa.JSON(), nullable=False),
        sa.ForeignKeyConstraint(["batch_id"], ["prepare_batches.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_sweep_runs_batch_id", "sweep_runs", ["batch_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("member_id", sa.String(64), nullable=False),
        sa.Column("merchant_id", sa.String(64), nullable=False),
        sa.Column("batch_id", sa.String(64), nullable=True),
        sa.Column("prepared_order_id", sa.Integer(), nullable=True, unique=True),
        sa.Column("basket_id", sa.String(128), nullable=False),
        sa.Column("symbol", sa.String(16), nullable=False),
        sa.Column("shares", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("points_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum(*ORDER_STATUSES, name="order_status_enum"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column(
            "order_type",
            sa.Enum("sweep", "market", name="order_type_enum"),
            nullable=False,
            server_default="sweep",
        ),
        sa.Column("broker", sa.String(128), nullable=True),
        sa.Column("broker_reference", sa.String(128), nullable=True),
        sa.Column("sweep_run_id", sa.String(64), nullable=True),
        sa.Column("executed_price", sa.Numeric(18, 6), nullable=True),
        sa.Column("executed_shares", sa.Numeric(18, 6), nullable=True),
        sa.Column("executed_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("confirmation_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("paid_flag", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("paid_batch_id", sa.String(128), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_NOW, nullable=False),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("placed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sold_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=_NOW, nullable=False),
        sa.ForeignKeyConstraint(["batch_id"], ["prepare_batches.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["prepared_order_id"], ["prepared_orders.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["sweep_run_id"], ["sweep_runs.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_orders_member_id", "orders", ["member_id"])
    op.create_index("ix_orders_merchant_id", "orders", ["merchant_id"])
    op.create_index("ix_orders_batch_id", "orders", ["batch_id"])
    op.create_index("ix_orders_basket_id", "orders", ["basket_id"])
    op.create_index("ix_orders_broker", "orders", ["broker"])
    op.create_index("ix_orders_broker_reference", "orders", ["broker_reference"])
    op.create_index("ix_orders_paid_batch_id", "orders", ["paid_batch_id"])
    op.create_index("ix_orders_merchant_status_paid", "orders", ["merchant_id", "status", "paid_flag"])
    op.create_index("ix_orders_member_status", "orders", ["member_id", "status"])

    op.create_table(
        "order_state_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("from_status", sa.String(32), nullable=True),
        sa.Column("to_status", sa.String(32), nullable=False),
        sa.Column(
            "actor_type",
            sa.Enum("system", "admin", "member", "broker", "sweep", "settlement", name="order_state_actor_type_enum"),
            nullable=False,
            server_default="system",
        ),
        sa.Column("actor_label", sa.String(255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_NOW, nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_order_state_events_order_id", "order_state_events", ["order_id"])


def downgrade() -> None:
    op.drop_index("ix_order_state_events_order_id", table_name="order_state_events")
    op.drop_table("order_state_events")
    for index in (
        "ix_orders_member_status",
        "ix_orders_merchant_status_paid",
        "ix_orders_paid_batch_id",
        "ix_orders_broker_reference",
        "ix_orders_broker",
        "ix_orders_basket_id",
        "ix_orders_batch_id",
        "ix_orders_merchant_id",
        "ix_orders_member_id",
    ):
        op.drop_index(index, table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_sweep_runs_batch_id", table_name="sweep_runs")
    op.drop_table("sweep_runs")
    op.drop_index("ix_prepared_orders_member_id", table_name="prepared_orders")
    op.drop_index("ix_prepared_orders_basket_id", table_name="prepared_orders")
    op.drop_index("ix_prepared_orders_batch_id", table_name="prepared_orders")
    op.drop_table("prepared_orders")
    op.drop_table("prepare_batches")

    bind = op.get_bind()
    for enum_name in (
        "order_state_actor_type_enum",
        "order_type_enum",
        "order_status_enum",
        "sweep_run_status_enum",
        "prepare_batch_status_enum",
    ):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
