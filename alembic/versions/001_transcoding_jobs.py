"""Transcoding jobs and renditions.

Revision ID: 001
Revises:
Create Date: 2026-10-16 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create transcode_jobs table
    op.create_table(
        'transcode_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', sa.String(100), nullable=False),
        sa.Column('video_id', sa.String(100), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='received'),
        sa.Column('input_location', sa.String(1024), nullable=False),
        sa.Column('output_manifest_location', sa.String(1024), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('notification_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    # Create transcode_renditions table
    op.create_table(
        'transcode_renditions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('job_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('profile_name', sa.String(20), nullable=False),
        sa.Column('resolution', sa.String(20), nullable=False),
        sa.Column('bitrate', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('output_path', sa.String(1024), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['job_id'], ['transcode_jobs.id'], ondelete='CASCADE'),
    )

    # Create indexes
    op.create_index('ix_transcode_jobs_status', 'transcode_jobs', ['status'])
    op.create_index('ix_transcode_jobs_tenant_video', 'transcode_jobs', ['tenant_id', 'video_id'])
    op.create_index('ix_transcode_jobs_status_created', 'transcode_jobs', ['status', 'created_at'])
    op.create_index('ix_transcode_jobs_status_updated', 'transcode_jobs', ['status', 'updated_at'])
    # At most one received/processing job per video
    op.create_index(
        'uq_transcode_jobs_active_video',
        'transcode_jobs',
        ['tenant_id', 'video_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('received', 'processing')"),
    )
    op.create_index('ix_transcode_renditions_job_id', 'transcode_renditions', ['job_id'])
    op.create_index(
        'uq_transcode_renditions_job_profile',
        'transcode_renditions',
        ['job_id', 'profile_name'],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index('uq_transcode_renditions_job_profile')
    op.drop_index('ix_transcode_renditions_job_id')
    op.drop_index('uq_transcode_jobs_active_video')
    op.drop_index('ix_transcode_jobs_status_updated')
    op.drop_index('ix_transcode_jobs_status_created')
    op.drop_index('ix_transcode_jobs_tenant_video')
    op.drop_index('ix_transcode_jobs_status')
    op.drop_table('transcode_renditions')
    op.drop_table('transcode_jobs')
