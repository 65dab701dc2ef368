"""listing departure_date

Revision ID: a1d4e2c9f705
Revises: 3f1c7e9a2b64
Create Date: 2026-10-19 15:40:07.221904

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a1d4e2c9f705'
down_revision: Union[str, Sequence[str], None] = '3f1c7e9a2b64'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Store the departure's local calendar day next to the UTC instant."""
    op.add_column("listing", sa.Column("departure_date", sa.Date(), nullable=True))
    # rows written before this revision have no zone information; their UTC day stands in
    op.execute("UPDATE listing SET departure_date = DATE(departure_at)")
    op.create_index("ix_listing_departure_date", "listing", ["departure_date"])


def downgrade() -> None:
    op.drop_index("ix_listing_departure_date", table_name="listing")
    op.drop_column("listing", "departure_date")
