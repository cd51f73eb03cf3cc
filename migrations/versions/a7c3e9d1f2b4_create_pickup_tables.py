"""Create operators and pickup module tables.

Revision ID: a7c3e9d1f2b4
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a7c3e9d1f2b4"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_TRACKING_WHERE = "status IN ('in_corso', 'in_giacenza')"


def upgrade() -> None:
    op.create_table(
        "operators",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("name", sa.String(150), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "pickup_locations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(150), nullable=False),
        sa.Column("address", sa.String(255), nullable=True),
        sa.Column("contact_phone", sa.String(50), nullable=True),
        sa.Column("contact_email", sa.String(160), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "pickup_couriers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("support_email", sa.String(160), nullable=True),
        sa.Column("support_phone", sa.String(40), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "pickup_packages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tracking", sa.String(100), nullable=False),
        sa.Column("customer_name", sa.String(150), nullable=False),
        sa.Column("customer_phone", sa.String(50), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="in_giacenza"),
        sa.Column("customer_email", sa.String(160), nullable=True),
        sa.Column("courier_id", sa.Integer(), nullable=True),
        sa.Column("pickup_location_id", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("status_changed_at", sa.DateTime(), nullable=False),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.Column("updated_by_user_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["courier_id"], ["pickup_couriers.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["pickup_location_id"], ["pickup_locations.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["operators.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["updated_by_user_id"], ["operators.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_pickup_packages_tracking", "pickup_packages", ["tracking"])
    op.create_index(
        "uq_pickup_packages_active_tracking",
        "pickup_packages",
        ["tracking"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_TRACKING_WHERE),
        sqlite_where=sa.text(ACTIVE_TRACKING_WHERE),
    )
    op.create_index("idx_pickup_packages_status", "pickup_packages", ["status"])
    op.create_index("idx_pickup_packages_status_changed", "pickup_packages", ["status", "status_changed_at"])
    op.create_index("idx_pickup_packages_location", "pickup_packages", ["pickup_location_id"])

    op.create_table(
        "pickup_otps",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("package_id", sa.Integer(), nullable=False),
        sa.Column("code_hash", sa.String(255), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("consumed_at", sa.DateTime(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("channel", sa.String(20), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["package_id"], ["pickup_packages.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["operators.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_pickup_otps_package", "pickup_otps", ["package_id"])
    op.create_index("idx_pickup_otps_expires", "pickup_otps", ["expires_at"])

    op.create_table(
        "pickup_package_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("package_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("previous_status", sa.String(32), nullable=True),
        sa.Column("new_status", sa.String(32), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["package_id"], ["pickup_packages.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["actor_user_id"], ["operators.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_pickup_history_package", "pickup_package_history", ["package_id", "created_at", "id"])
    op.create_index("idx_pickup_history_event", "pickup_package_history", ["event_type"])

    op.create_table(
        "pickup_customers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(160), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("name", sa.String(150), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "pickup_customer_reports",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("tracking_code", sa.String(100), nullable=False),
        sa.Column("courier_name", sa.String(100), nullable=True),
        sa.Column("expected_delivery_date", sa.Date(), nullable=True),
        sa.Column("delivery_location", sa.String(150), nullable=True),
        sa.Column("recipient_name", sa.String(150), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="reported"),
        sa.Column("pickup_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["pickup_customers.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["pickup_id"], ["pickup_packages.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_pickup_customer_reports_customer", "pickup_customer_reports", ["customer_id"])
    op.create_index("idx_pickup_customer_reports_tracking", "pickup_customer_reports", ["tracking_code"])
    op.create_index("idx_pickup_customer_reports_status", "pickup_customer_reports", ["status"])
    op.create_index("idx_pickup_customer_reports_pickup", "pickup_customer_reports", ["pickup_id"])


def downgrade() -> None:
    op.drop_index("idx_pickup_customer_reports_pickup", table_name="pickup_customer_reports")
    op.drop_index("idx_pickup_customer_reports_status", table_name="pickup_customer_reports")
    op.drop_index("idx_pickup_customer_reports_tracking", table_name="pickup_customer_reports")
    op.drop_index("idx_pickup_customer_reports_customer", table_name="pickup_customer_reports")
    op.drop_table("pickup_customer_reports")
    op.drop_table("pickup_customers")

    op.drop_index("idx_pickup_history_event", table_name="pickup_package_history")
    op.drop_index("idx_pickup_history_package", table_name="pickup_package_history")
    op.drop_table("pickup_package_history")

    op.drop_index("idx_pickup_otps_expires", table_name="pickup_otps")
    op.drop_index("idx_pickup_otps_package", table_name="pickup_otps")
    op.drop_table("pickup_otps")

    op.drop_index("idx_pickup_packages_location", table_name="pickup_packages")
    op.drop_index("idx_pickup_packages_status_changed", table_name="pickup_packages")
    op.drop_index("idx_pickup_packages_status", table_name="pickup_packages")
    op.drop_index("uq_pickup_packages_active_tracking", table_name="pickup_packages")
    op.drop_index("idx_pickup_packages_tracking", table_name="pickup_packages")
    op.drop_table("pickup_packages")

    op.drop_table("pickup_couriers")
    op.drop_table("pickup_locations")
    op.drop_table("operators")
