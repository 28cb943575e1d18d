"""Add extra JSON column for fields without a dedicated column"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0002_record_extra"
down_revision = "0001_initial_schema"
branch_labels = None
depends_on = None

TABLES = ("generation_jobs", "documents", "page_events")


def upgrade() -> None:
    json_type = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
    for table in TABLES:
        op.add_column(table, sa.Column("extra", json_type, nullable=True))


def downgrade() -> None:
    for table in TABLES:
        op.drop_column(table, "extra")
