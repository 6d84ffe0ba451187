"""bookings, transitions and outbox

Revision ID: 0001_bookings
Revises:
Create Date: 2026-10-19 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_bookings"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "bookings",
        sa.Column("booking_id", sa.String(length=36), primary_key=True),
        sa.Column("status", sa.String(length=24), nullable=False),
        sa.Column("owner_ref", sa.String(length=320), nullable=False),
        sa.Column("customer_id", sa.String(length=128), nullable=True),
        sa.Column("guest_name", sa.String(length=120), nullable=True),
        sa.Column("guest_email", sa.String(length=320), nullable=True),
        sa.Column("guest_phone", sa.String(length=32), nullable=True),
        sa.Column("service_type", sa.String(length=64), nullable=False),
        sa.Column("vehicle_make", sa.String(length=80), nullable=False),
        sa.Column("vehicle_model", sa.String(length=120), nullable=False),
        sa.Column("vehicle_year", sa.Integer(), nullable=True),
        sa.Column("inferred_vehicle_size", sa.String(length=16), nullable=False),
        sa.Column("vehicle_size", sa.String(length=16), nullable=False),
        sa.Column("add_ons", sa.JSON(), nullable=False),
        sa.Column("condition", sa.String(length=32), nullable=False),
        sa.Column("service_address", sa.JSON(), nullable=True),
        sa.Column("service_zip", sa.String(length=12), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False),
        sa.Column("tax_cents", sa.Integer(), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("original_total_cents", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("pricing_catalog_id", sa.String(length=64), nullable=False),
        sa.Column("pricing_catalog_version", sa.String(length=32), nullable=False),
        sa.Column("pricing_catalog_hash", sa.String(length=80), nullable=False),
        sa.Column("payment_reference", sa.String(length=255), nullable=True),
        sa.Column("assigned_worker_id", sa.String(length=128), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("adjustment_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("adjustment_total_cents", sa.Integer(), nullable=True),
        sa.Column("adjustment_reason", sa.String(length=500), nullable=True),
        sa.Column("captured_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cancellation_fee_cents", sa.Integer(), nullable=True),
        sa.Column("cancel_reason", sa.String(length=500), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("payment_reference", name="uq_bookings_payment_reference"),
    )
    op.create_index("ix_bookings_status_zip", "bookings", ["status", "service_zip"])
    op.create_index("ix_bookings_owner_ref", "bookings", ["owner_ref", "created_at"])
    op.create_index("ix_bookings_assigned_worker", "bookings", ["assigned_worker_id", "status"])
    op.create_index(
        "ix_bookings_owner_idempotency",
        "bookings",
        ["owner_ref", "idempotency_key"],
        unique=True,
    )

    op.create_table(
        "booking_transitions",
        sa.Column("transition_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.String(length=36), nullable=False),
        sa.Column("from_status", sa.String(length=24), nullable=True),
        sa.Column("to_status", sa.String(length=24), nullable=False),
        sa.Column("actor_role", sa.String(length=16), nullable=False),
        sa.Column("actor_id", sa.String(length=320), nullable=True),
        sa.Column("reason", sa.String(length=500), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=True),
        sa.Column("payment_reference", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(
            ["booking_id"],
            ["bookings.booking_id"],
            name="fk_booking_transitions_booking",
            ondelete="RESTRICT",
        ),
    )
    op.create_index("ix_booking_transitions_booking_id", "booking_transitions", ["booking_id"])

    op.create_table(
        "outbox_events",
        sa.Column("event_id", sa.String(length=36), primary_key=True),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("booking_id", sa.String(length=36), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("dedupe_key", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_outbox_status_created", "outbox_events", ["status", "created_at"])
    op.create_index("ix_outbox_dedupe", "outbox_events", ["dedupe_key"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_outbox_dedupe", table_name="outbox_events")
    op.drop_index("ix_outbox_status_created", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("ix_booking_transitions_booking_id", table_name="booking_transitions")
    op.drop_table("booking_transitions")
    op.drop_index("ix_bookings_owner_idempotency", table_name="bookings")
    op.drop_index("ix_bookings_assigned_worker", table_name="bookings")
    op.drop_index("ix_bookings_owner_ref", table_name="bookings")
    op.drop_index("ix_bookings_status_zip", table_name="bookings")
    op.drop_table("bookings")
