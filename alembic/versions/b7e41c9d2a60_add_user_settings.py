"""add user_settings

Revision ID: b7e41c9d2a60
Revises: a1f0c2d3e4b5
Create Date: 2026-10-19 15:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = 'b7e41c9d2a60'
down_revision: Union[str, None] = 'a1f0c2d3e4b5'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

def upgrade() -> None:
    op.create_table(
        'user_settings',
        sa.Column('user_id', sa.String(128), primary_key=True),
        sa.Column('questions_per_quiz', sa.Integer(), server_default='5', nullable=False),
        sa.Column('difficulty', sa.String(16), server_default='medium', nullable=False),
        sa.Column('review_mistakes', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )

def downgrade() -> None:
    op.drop_table('user_settings')
