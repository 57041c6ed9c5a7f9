"""create repositories and analyses tables

Revision ID: 3f1c9a7d2b10
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f1c9a7d2b10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table('repositories',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('owner', sa.String(length=100), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('full_name', sa.String(length=201), nullable=False),
        sa.Column('github_id', sa.BigInteger(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('url', sa.String(length=512), nullable=False),
        sa.Column('clone_url', sa.String(length=512), nullable=False),
        sa.Column('language', sa.String(length=64), nullable=True),
        sa.Column('stars', sa.Integer(), nullable=False),
        sa.Column('forks', sa.Integer(), nullable=False),
        sa.Column('open_issues', sa.Integer(), nullable=False),
        sa.Column('size', sa.Integer(), nullable=False),
        sa.Column('is_private', sa.Boolean(), nullable=False),
        sa.Column('default_branch', sa.String(length=255), nullable=False),
        sa.Column('github_created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('github_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('latest_analysis_id', sa.Uuid(), nullable=True),
        sa.Column('last_quality_score', sa.Float(), nullable=True),
        sa.Column('analysis_count', sa.Integer(), nullable=False),
        sa.Column('last_analyzed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('added_by', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('tags', sa.JSON(), nullable=False),
        sa.Column('auto_analyze', sa.Boolean(), nullable=False),
        sa.Column('analysis_frequency', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "analysis_frequency IN ('manual', 'daily', 'weekly', 'monthly')",
            name='ck_repositories_analysis_frequency',
        ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('owner', 'name', name='uq_repositories_owner_name'),
    )
    with op.batch_alter_table('repositories', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_repositories_owner'), ['owner'], unique=False)
        batch_op.create_index(batch_op.f('ix_repositories_name'), ['name'], unique=False)
        batch_op.create_index(batch_op.f('ix_repositories_full_name'), ['full_name'], unique=True)
        batch_op.create_index(batch_op.f('ix_repositories_github_id'), ['github_id'], unique=True)
        batch_op.create_index(batch_op.f('ix_repositories_language'), ['language'], unique=False)
        batch_op.create_index(batch_op.f('ix_repositories_last_quality_score'), ['last_quality_score'], unique=False)
        batch_op.create_index(batch_op.f('ix_repositories_last_analyzed_at'), ['last_analyzed_at'], unique=False)
        batch_op.create_index(batch_op.f('ix_repositories_is_active'), ['is_active'], unique=False)
        batch_op.create_index(batch_op.f('ix_repositories_created_at'), ['created_at'], unique=False)
        batch_op.create_index('ix_repositories_score_analyzed', ['last_quality_score', 'last_analyzed_at'], unique=False)
        batch_op.create_index('ix_repositories_language_score', ['language', 'last_quality_score'], unique=False)

    op.create_table('analyses',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('repository_id', sa.Uuid(), nullable=False),
        sa.Column('quality_score', sa.Integer(), nullable=True),
        sa.Column('code_metrics', sa.JSON(), nullable=False),
        sa.Column('security', sa.JSON(), nullable=False),
        sa.Column('complexity', sa.JSON(), nullable=False),
        sa.Column('issues', sa.JSON(), nullable=False),
        sa.Column('recommendations', sa.JSON(), nullable=False),
        sa.Column('language_breakdown', sa.JSON(), nullable=False),
        sa.Column('trends', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('triggered_by', sa.String(length=16), nullable=False),
        sa.Column('triggered_by_user', sa.String(length=255), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', 'cancelled')",
            name='ck_analyses_status',
        ),
        sa.CheckConstraint(
            'quality_score IS NULL OR (quality_score >= 0 AND quality_score <= 100)',
            name='ck_analyses_quality_score_range',
        ),
        sa.ForeignKeyConstraint(['repository_id'], ['repositories.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('analyses', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_analyses_repository_id'), ['repository_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_analyses_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_analyses_created_at'), ['created_at'], unique=False)
        batch_op.create_index('ix_analyses_repository_created', ['repository_id', 'created_at'], unique=False)
        batch_op.create_index('ix_analyses_repository_status', ['repository_id', 'status'], unique=False)


def downgrade() -> None:
    op.drop_table('analyses')
    op.drop_table('repositories')
