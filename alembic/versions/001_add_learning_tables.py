"""Add learning tables for patterns, feedback, metrics and event log

Revision ID: 001
Revises:
Create Date: 2026-01-12

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Learned patterns, one row per (bank, type, original value)
    op.create_table(
        'learned_patterns',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('bank_id', sa.String(50), nullable=False),
        sa.Column('pattern_type', sa.String(50), nullable=False),
        sa.Column('original_value', sa.Text(), nullable=False),
        sa.Column('corrected_value', sa.Text(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False, server_default='0.5'),
        sa.Column('occurrences', sa.Integer(), nullable=False, server_default='1'),

        # Timestamps
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),

        # Constraints
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'bank_id', 'pattern_type', 'original_value',
            name='uq_learned_pattern_natural_key',
        ),
    )
    op.create_index('ix_learned_patterns_bank_id', 'learned_patterns', ['bank_id'])
    op.create_index('idx_learned_patterns_bank_type', 'learned_patterns', ['bank_id', 'pattern_type'])

    # Reviewer corrections (append-only)
    op.create_table(
        'correction_feedback',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(100), nullable=True),
        sa.Column('transaction_id', sa.String(100), nullable=True),
        sa.Column('bank_id', sa.String(50), nullable=False),
        sa.Column('field', sa.String(20), nullable=False),
        sa.Column('original_value', sa.Text(), nullable=True),
        sa.Column('corrected_value', sa.Text(), nullable=True),
        sa.Column('statement_id', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_correction_feedback_bank_created', 'correction_feedback', ['bank_id', 'created_at'])

    # Per-bank accuracy metrics
    op.create_table(
        'learning_metrics',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('bank_id', sa.String(50), nullable=False),
        sa.Column('total_transactions_parsed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_corrections', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('accuracy_rate', sa.Float(), nullable=False, server_default='0.0'),
        sa.Column('confidence_score', sa.Float(), nullable=False, server_default='0.5'),
        sa.Column('improvement_trend', sa.Float(), nullable=False, server_default='0.0'),
        sa.Column('last_updated', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('bank_id'),
    )

    # Learning event log
    op.create_table(
        'learning_log',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('bank_id', sa.String(50), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_learning_log_created', 'learning_log', ['created_at'])
    op.create_index('idx_learning_log_bank_event', 'learning_log', ['bank_id', 'event_type'])


def downgrade() -> None:
    op.drop_index('idx_learning_log_bank_event', 'learning_log')
    op.drop_index('idx_learning_log_created', 'learning_log')
    op.drop_table('learning_log')

    op.drop_table('learning_metrics')

    op.drop_index('idx_correction_feedback_bank_created', 'correction_feedback')
    op.drop_table('correction_feedback')

    op.drop_index('idx_learned_patterns_bank_type', 'learned_patterns')
    op.drop_index('ix_learned_patterns_bank_id', 'learned_patterns')
    op.drop_table('learned_patterns')
