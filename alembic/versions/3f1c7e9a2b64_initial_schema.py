"""initial_schema

Revision ID: 3f1c7e9a2b64
Revises: 
Create Date: 2026-10-19 09:12:31.504118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c7e9a2b64'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _criteria_columns():
    return [
        sa.Column("origin", sa.String(), nullable=False),
        sa.Column("origin_lat", sa.Float(), nullable=True),
        sa.Column("origin_lng", sa.Float(), nullable=True),
        sa.Column("destination", sa.String(), nullable=False),
        sa.Column("dest_lat", sa.Float(), nullable=True),
        sa.Column("dest_lng", sa.Float(), nullable=True),
        sa.Column("date_type", sa.String(), nullable=False),
        sa.Column("specific_date", sa.Date(), nullable=True),
        sa.Column("multiple_dates", sa.JSON(), nullable=True),
        sa.Column("month", sa.String(), nullable=True),
        sa.Column("search_radius", sa.Float(), nullable=False, server_default="25.0"),
        sa.Column("radius_unit", sa.String(), nullable=False, server_default="mi"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
    ]


def upgrade() -> None:
    """Create listing, standingrequest, notificationsubscription, confirmation, notificationrecord."""
    op.create_table(
        "listing",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("origin", sa.String(), nullable=False),
        sa.Column("origin_lat", sa.Float(), nullable=True),
        sa.Column("origin_lng", sa.Float(), nullable=True),
        sa.Column("destination", sa.String(), nullable=False),
        sa.Column("dest_lat", sa.Float(), nullable=True),
        sa.Column("dest_lng", sa.Float(), nullable=True),
        sa.Column("stops", sa.JSON(), nullable=True),
        sa.Column("departure_at", sa.DateTime(), nullable=False),
        sa.Column("departure_timezone", sa.String(), nullable=True),
        sa.Column("price", sa.Float(), nullable=True),
        sa.Column("currency", sa.String(), nullable=False, server_default="USD"),
        sa.Column("negotiable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("total_seats", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("seats_available", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(), nullable=False, server_default="open"),
        sa.Column("closed_at", sa.DateTime(), nullable=True),
        sa.Column("closed_reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("seats_available >= 0 AND seats_available <= total_seats",
                           name="ck_listing_seats"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_listing_owner_id", "listing", ["owner_id"])
    op.create_index("ix_listing_kind", "listing", ["kind"])
    op.create_index("ix_listing_departure_at", "listing", ["departure_at"])
    op.create_index("ix_listing_status", "listing", ["status"])

    op.create_table(
        "standingrequest",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        *_criteria_columns(),
        sa.Column("time_preference", sa.String(), nullable=True),
        sa.Column("notes", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_standingrequest_owner_id", "standingrequest", ["owner_id"])
    op.create_index("ix_standingrequest_kind", "standingrequest", ["kind"])
    op.create_index("ix_standingrequest_is_active", "standingrequest", ["is_active"])

    op.create_table(
        "notificationsubscription",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False, server_default="passenger"),
        *_criteria_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notificationsubscription_owner_id", "notificationsubscription", ["owner_id"])
    op.create_index("ix_notificationsubscription_kind", "notificationsubscription", ["kind"])
    op.create_index("ix_notificationsubscription_role", "notificationsubscription", ["role"])
    op.create_index("ix_notificationsubscription_is_active", "notificationsubscription", ["is_active"])

    op.create_table(
        "confirmation",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("listing_id", sa.Integer(), nullable=False),
        sa.Column("listing_kind", sa.String(), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("requester_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("seats_requested", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_by", sa.Integer(), nullable=True),
        sa.Column("status_before_cancel", sa.String(), nullable=True),
        sa.Column("reversed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["listing_id"], ["listing.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_confirmation_listing_id", "confirmation", ["listing_id"])
    op.create_index("ix_confirmation_owner_id", "confirmation", ["owner_id"])
    op.create_index("ix_confirmation_requester_id", "confirmation", ["requester_id"])
    op.create_index("ix_confirmation_status", "confirmation", ["status"])
    op.create_index("ix_confirmation_created_at", "confirmation", ["created_at"])

    op.create_table(
        "notificationrecord",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("recipient_id", sa.Integer(), nullable=False),
        sa.Column("notification_type", sa.String(), nullable=False),
        sa.Column("priority", sa.String(), nullable=False, server_default="medium"),
        sa.Column("title", sa.String(), nullable=False, server_default=""),
        sa.Column("message", sa.String(), nullable=False, server_default=""),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("related_user_id", sa.Integer(), nullable=True),
        sa.Column("related_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("recipient_id", "related_id", "notification_type", name="uq_notification_dedup"),
    )
    op.create_index("ix_notificationrecord_recipient_id", "notificationrecord", ["recipient_id"])
    op.create_index("ix_notificationrecord_is_read", "notificationrecord", ["is_read"])


def downgrade() -> None:
    """Drop all initial tables."""
    op.drop_index("ix_notificationrecord_is_read", table_name="notificationrecord")
    op.drop_index("ix_notificationrecord_recipient_id", table_name="notificationrecord")
    op.drop_table("notificationrecord")
    for name in ("created_at", "status", "requester_id", "owner_id", "listing_id"):
        op.drop_index(f"ix_confirmation_{name}", table_name="confirmation")
    op.drop_table("confirmation")
    for name in ("is_active", "role", "kind", "owner_id"):
        op.drop_index(f"ix_notificationsubscription_{name}", table_name="notificationsubscription")
    op.drop_table("notificationsubscription")
    for name in ("is_active", "kind", "owner_id"):
        op.drop_index(f"ix_standingrequest_{name}", table_name="standingrequest")
    op.drop_table("standingrequest")
    for name in ("status", "departure_at", "kind", "owner_id"):
        op.drop_index(f"ix_listing_{name}", table_name="listing")
    op.drop_table("listing")
