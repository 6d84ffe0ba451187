"""booking coupon code and discount

Revision ID: 0002_booking_coupons
Revises: 0001_bookings
Create Date: 2026-10-19 00:00:00
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_booking_coupons"
down_revision = "0001_bookings"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("bookings", sa.Column("coupon_code", sa.String(length=64), nullable=True))
    op.add_column(
        "bookings",
        sa.Column("discount_cents", sa.Integer(), nullable=False, server_default="0"),
    )


def downgrade() -> None:
    op.drop_column("bookings", "discount_cents")
    op.drop_column("bookings", "coupon_code")
