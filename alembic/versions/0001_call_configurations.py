"""call configurations

Revision ID: 0001_call_configurations
Revises: 
Create Date: 2026-10-19

"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_call_configurations"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "call_configurations",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("phone_number", sa.String(length=32), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("welcome_message", sa.Text(), nullable=True),
        sa.Column("voice_model", sa.String(length=64), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_call_configurations_phone_number",
        "call_configurations",
        ["phone_number"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_call_configurations_phone_number", table_name="call_configurations")
    op.drop_table("call_configurations")
