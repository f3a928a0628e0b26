"""Store the private evidence path of ban appeals.

Revision ID: d4f8a61c2e75
Revises: c7e1a2b9d3f0
Create Date: 2026-10-19 11:05:00.000000
"""

from alembic import op
import sqlalchemy as sa


revision = 'd4f8a61c2e75'
down_revision = 'c7e1a2b9d3f0'
branch_labels = None
depends_on = None


def upgrade():
    op.add_column('ban_appeals', sa.Column('evidence_path', sa.String(length=255), nullable=True))


def downgrade():
    op.drop_column('ban_appeals', 'evidence_path')
