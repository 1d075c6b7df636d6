"""Notification ledger, broker receipts and bank transfers.

Revision ID: 20261017_03
Revises: 20261017_02
Create Date: 2026-10-17
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261017_03"
down_revision: Union[str, None] = "20261017_02"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_NOW = sa.text("CURRENT_TIMESTAMP")


def upgrade() -> None:
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "target_type",
            sa.Enum("broker", "merchant", name="notification_target_type_enum"),
            nullable=False,
        ),
        sa.Column("target_id", sa.String(64), nullable=True),
        sa.Column("target_name", sa.String(128), nullable=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "sent", "failed", name="notification_status_enum"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("response_code", sa.Integer(), nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("member_id", sa.String(64), nullable=True),
        sa.Column("merchant_id", sa.String(64), nullable=True),
        sa.Column("basket_id", sa.String(128), nullable=True),
        sa.Column("correlation_id", sa.String(128), nullable=True),
        sa.Column("external_reference", sa.String(128), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_NOW, nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=_NOW, nullable=False),
    )
    op.create_index("ix_notifications_merchant_id", "notifications", ["merchant_id"])
    op.create_index("ix_notifications_correlation_id", "notifications", ["correlation_id"])
    op.create_index("ix_notifications_external_reference", "notifications", ["external_reference"])
    op.create_index("ix_notifications_status_created", "notifications", ["status", "created_at"])

    op.create_table(
        "broker_event_receipts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("broker", sa.String(128), nullable=True),
        sa.Column("request_id", sa.String(128), nullable=True),
        sa.Column("broker_reference", sa.String(128), nullable=True),
        sa.Column("exec_reference", sa.String(128), nullable=True),
        sa.Column("outcome", sa.String(32), nullable=False),
        sa.Column("payload_excerpt", sa.JSON(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=_NOW, nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("order_id", "event_type", name="uq_broker_event_receipt_order_event"),
    )
    op.create_index("ix_broker_event_receipts_order_id", "broker_event_receipts", ["order_id"])
    op.create_index("ix_broker_event_receipts_broker_reference", "broker_event_receipts", ["broker_reference"])
    op.create_index("ix_broker_event_receipts_exec_reference", "broker_event_receipts", ["exec_reference"])

    op.create_table(
        "bank_transfers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("idempotency_key", sa.String(128), nullable=False, unique=True),
        sa.Column("merchant_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("order_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum("pending", "posted", "settled", "failed", "returned", name="bank_transfer_status_enum"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("external_id", sa.String(128), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_NOW, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=_NOW, nullable=False),
    )
    op.create_index("ix_bank_transfers_merchant_id", "bank_transfers", ["merchant_id"])


def downgrade() -> None:
    op.drop_index("ix_bank_transfers_merchant_id", table_name="bank_transfers")
    op.drop_table("bank_transfers")
    op.drop_index("ix_broker_event_receipts_exec_reference", table_name="broker_event_receipts")
    op.drop_index("ix_broker_event_receipts_broker_reference", table_name="broker_event_receipts")
    op.drop_index("ix_broker_event_receipts_order_id", table_name="broker_event_receipts")
    op.drop_table("broker_event_receipts")
    for index in (
        "ix_notifications_status_created",
        "ix_notifications_external_reference",
        "ix_notifications_correlation_id",
        "ix_notifications_merchant_id",
    ):
        op.drop_index(index, table_name="notifications")
    op.drop_table("notifications")

    bind = op.get_bind()
    for enum_name in ("bank_transfer_status_enum", "notification_status_enum", "notification_target_type_enum"):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
