"""create quizzes and quiz_results

Revision ID: a1f0c2d3e4b5
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = 'a1f0c2d3e4b5'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

def upgrade() -> None:
    op.create_table(
        'quizzes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('questions_json', sa.JSON(), nullable=False),
        sa.Column('difficulty', sa.String(16), nullable=True),
        sa.Column('source_quiz_id', sa.String(36), nullable=True),
        sa.Column('in_progress', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('completed', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('results', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_quizzes_user_id', 'quizzes', ['user_id'])
    op.create_index('idx_quizzes_user_created', 'quizzes', ['user_id', 'created_at'])

    # Results are append-only: no updated_at
    op.create_table(
        'quiz_results',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('quiz_id', sa.String(36), nullable=False),
        sa.Column('title', sa.String(255), nullable=False, server_default=''),
        sa.Column('score', sa.Integer(), nullable=False),
        sa.Column('total_questions', sa.Integer(), nullable=False),
        sa.Column('time_spent', sa.Integer(), nullable=False),
        sa.Column('answers', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_quiz_results_user_id', 'quiz_results', ['user_id'])
    op.create_index('ix_quiz_results_quiz_id', 'quiz_results', ['quiz_id'])
    op.create_index('ix_quiz_results_created_at', 'quiz_results', ['created_at'])
    op.create_index('idx_results_user_created', 'quiz_results', ['user_id', 'created_at'])

def downgrade() -> None:
    op.drop_table('quiz_results')
    op.drop_table('quizzes')
