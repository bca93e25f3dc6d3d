"""Initial schema: profiles, jobs, matches, applications, notifications

Revision ID: d1e2f3a4b5c6
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from schoolmatch.models.views import CANDIDATE_MATCHES_VIEW_SQL, DROP_CANDIDATE_MATCHES_VIEW_SQL

revision: str = 'd1e2f3a4b5c6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

EVENT_FEED_TABLES = ('job_candidates', 'teacher_job_matches', 'applications')

EVENT_FEED_FUNCTION_SQL = """
CREATE OR REPLACE FUNCTION notify_match_event() RETURNS trigger AS $$
BEGIN
    PERFORM pg_notify(
        'match_events',
        json_build_object('table', TG_TABLE_NAME, 'type', TG_OP, 'record', row_to_json(NEW))::text
    );
    RETURN NEW;
END;
$$ LANGUAGE plpgsql
"""


def upgrade() -> None:
    # --- users ---
    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('full_name', sa.String(255), nullable=False, server_default=''),
        sa.Column('role', sa.String(50), nullable=False, server_default='teacher'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # --- schools ---
    op.create_table(
        'schools',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('school_name', sa.String(255), nullable=False),
        sa.Column('location', sa.String(255), nullable=False, server_default=''),
        sa.Column('website', sa.String(255), nullable=True),
        sa.Column('logo_url', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # --- teachers ---
    op.create_table(
        'teachers',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('full_name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=False, server_default=''),
        sa.Column('location', sa.String(255), nullable=False, server_default=''),
        sa.Column('years_experience', sa.String(50), nullable=False, server_default=''),
        sa.Column('subjects', postgresql.JSONB, nullable=False, server_default='[]'),
        sa.Column('grade_levels', postgresql.JSONB, nullable=False, server_default='[]'),
        sa.Column('archetype', sa.String(100), nullable=True),
        sa.Column('profile_complete', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('profile_photo_url', sa.String(500), nullable=True),
        sa.Column('resume_url', sa.String(500), nullable=True),
        sa.Column('portfolio_url', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_teachers_profile_complete', 'teachers', ['profile_complete'])

    # --- jobs ---
    op.create_table(
        'jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('school_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('schools.id', ondelete='CASCADE'), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('department', sa.String(255), nullable=False, server_default=''),
        sa.Column('subject', sa.String(255), nullable=False, server_default=''),
        sa.Column('grade_level', sa.String(100), nullable=False, server_default=''),
        sa.Column('job_type', sa.String(50), nullable=False, server_default='Full-time'),
        sa.Column('location', sa.String(255), nullable=False, server_default=''),
        sa.Column('salary', sa.String(100), nullable=False, server_default=''),
        sa.Column('description', sa.Text, nullable=False, server_default=''),
        sa.Column('requirements', sa.Text, nullable=False, server_default=''),
        sa.Column('benefits', sa.Text, nullable=False, server_default=''),
        sa.Column('school_name', sa.String(255), nullable=False, server_default=''),
        sa.Column('school_logo', sa.String(500), nullable=True),
        sa.Column('archetype_tags', postgresql.JSONB, nullable=False, server_default='[]'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('posted_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_jobs_school_id', 'jobs', ['school_id'])

    # --- job_candidates ---
    op.create_table(
        'job_candidates',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('job_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('jobs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('teacher_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('teachers.id', ondelete='CASCADE'), nullable=False),
        sa.Column('match_score', sa.Integer, nullable=False, server_default='0'),
        sa.Column('match_reason', sa.Text, nullable=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='new'),
        sa.Column('school_notes', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('job_id', 'teacher_id', name='uq_job_candidates_job_teacher'),
    )
    op.create_index('ix_job_candidates_job_status', 'job_candidates', ['job_id', 'status'])

    # --- teacher_job_matches ---
    op.create_table(
        'teacher_job_matches',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('teacher_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('teachers.id', ondelete='CASCADE'), nullable=False),
        sa.Column('job_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('jobs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('match_score', sa.Integer, nullable=False, server_default='0'),
        sa.Column('match_reason', sa.Text, nullable=True),
        sa.Column('is_favorited', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('is_hidden', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('teacher_id', 'job_id', name='uq_teacher_job_matches_teacher_job'),
    )
    op.create_index('ix_teacher_job_matches_teacher_created', 'teacher_job_matches', ['teacher_id', 'created_at'])

    # --- applications ---
    op.create_table(
        'applications',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('job_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('jobs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('teacher_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('teachers.id', ondelete='CASCADE'), nullable=False),
        sa.Column('cover_letter', sa.Text, nullable=False, server_default=''),
        sa.Column('status', sa.String(50), nullable=False, server_default='pending'),
        sa.Column('applied_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_applications_job_teacher', 'applications', ['job_id', 'teacher_id'])

    # --- notifications (in-app) ---
    op.create_table(
        'notifications',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.String(50), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('message', sa.Text, nullable=False),
        sa.Column('link_url', sa.String(500), nullable=True),
        sa.Column('data', postgresql.JSONB, nullable=True),
        sa.Column('read', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_notifications_user_read', 'notifications', ['user_id', 'read'])

    # --- email_notifications (queue) ---
    op.create_table(
        'email_notifications',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('type', sa.String(50), nullable=False),
        sa.Column('recipient_user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('recipient_email', sa.String(255), nullable=False),
        sa.Column('recipient_name', sa.String(255), nullable=True),
        sa.Column('subject', sa.String(500), nullable=False, server_default=''),
        sa.Column('template_data', postgresql.JSONB, nullable=False, server_default='{}'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_email_notifications_status_created', 'email_notifications', ['status', 'created_at'])

    # --- notification_preferences ---
    op.create_table(
        'notification_preferences',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('notification_type', sa.String(50), nullable=False),
        sa.Column('email_enabled', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('in_app_enabled', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.UniqueConstraint('user_id', 'notification_type', name='uq_notification_preferences_user_type'),
    )

    # --- candidate_matches view ---
    op.execute(CANDIDATE_MATCHES_VIEW_SQL)

    # --- change feed ---
    op.execute(EVENT_FEED_FUNCTION_SQL)
    for table in EVENT_FEED_TABLES:
        op.execute(
            f"CREATE TRIGGER {table}_match_event AFTER INSERT OR UPDATE ON {table} "
            f"FOR EACH ROW EXECUTE FUNCTION notify_match_event()"
        )


def downgrade() -> None:
    for table in EVENT_FEED_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS {table}_match_event ON {table}")
    op.execute("DROP FUNCTION IF EXISTS notify_match_event()")
    op.execute(DROP_CANDIDATE_MATCHES_VIEW_SQL)

    op.drop_table('notification_preferences')
    op.drop_index('ix_email_notifications_status_created', table_name='email_notifications')
    op.drop_table('email_notifications')
    op.drop_index('ix_notifications_user_read', table_name='notifications')
    op.drop_table('notifications')
    op.drop_index('ix_applications_job_teacher', table_name='applications')
    op.drop_table('applications')
    op.drop_index('ix_teacher_job_matches_teacher_created', table_name='teacher_job_matches')
    op.drop_table('teacher_job_matches')
    op.drop_index('ix_job_candidates_job_status', table_name='job_candidates')
    op.drop_table('job_candidates')
    op.drop_index('ix_jobs_school_id', table_name='jobs')
    op.drop_table('jobs')
    op.drop_index('ix_teachers_profile_complete', table_name='teachers')
    op.drop_table('teachers')
    op.drop_table('schools')
    op.drop_table('users')
