"""Create writing_desk_jobs and user_credits tables

Revision ID: 4e1f7a9c2b30
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '4e1f7a9c2b30'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'writing_desk_jobs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('job_id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('phase', sa.String(16), nullable=False, server_default='initial'),
        sa.Column('step_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('follow_up_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('form_ciphertext', sa.JSON(), nullable=False),
        sa.Column('follow_up_questions', sa.JSON(), nullable=False),
        sa.Column('follow_up_answers_ciphertext', sa.JSON(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('response_id', sa.String(255), nullable=True),
        sa.Column('research', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('job_id'),
    )
    op.create_index(op.f('ix_writing_desk_jobs_user_id'), 'writing_desk_jobs', ['user_id'], unique=True)

    op.create_table(
        'user_credits',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('credits', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_user_credits_user_id'), 'user_credits', ['user_id'], unique=True)


def downgrade() -> None:
    op.drop_index(op.f('ix_user_credits_user_id'), table_name='user_credits')
    op.drop_table('user_credits')
    op.drop_index(op.f('ix_writing_desk_jobs_user_id'), table_name='writing_desk_jobs')
    op.drop_table('writing_desk_jobs')
