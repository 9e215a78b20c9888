"""initial schema

Revision ID: a1c3e5f70001
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""
from alembic import op
from sqlalchemy import inspect

from truck_command.db import Base

# revision identifiers, used by Alembic.
revision = 'a1c3e5f70001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Baseline: create every model table that is not already present
    conn = op.get_bind()
    existing = set(inspect(conn).get_table_names())

    for table in Base.metadata.sorted_tables:
        if table.name not in existing:
            table.create(bind=conn)


def downgrade():
    conn = op.get_bind()
    existing = set(inspect(conn).get_table_names())

    for table in reversed(Base.metadata.sorted_tables):
        if table.name in existing:
            table.drop(bind=conn)
