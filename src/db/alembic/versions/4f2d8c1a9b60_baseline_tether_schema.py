"""baseline_tether_schema

Revision ID: 4f2d8c1a9b60
Revises:
Create Date: 2026-10-19 09:12:44.318207

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4f2d8c1a9b60'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create users, quizzes, profiles, appointments, assignments, chat and audit tables."""
    op.create_table('users',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('role', sa.Enum('USER', 'THERAPIST', 'ADMIN', name='userrole'), nullable=False),
        sa.Column('has_onboarded', sa.Boolean(), nullable=False),
        sa.Column('assigned_therapist_id', sa.UUID(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['assigned_therapist_id'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('users', schema=None) as batch_op:
        batch_op.create_index('ix_users_email', ['email'], unique=True)
        batch_op.create_index('ix_users_role', ['role'], unique=False)
        batch_op.create_index('ix_users_assigned_therapist_id', ['assigned_therapist_id'], unique=False)

    op.create_table('quizzes',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('type', sa.Enum(
            'MCQ', 'WRITTEN', 'MIXED', 'POLL', 'PERSONALITY_TEST',
            name='quiztype'
        ), nullable=False),
        sa.Column('estimated_minutes', sa.Integer(), nullable=True),
        sa.Column('question_count', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    for table in ('user_accessible_quizzes', 'user_attempted_quizzes'):
        op.create_table(table,
            sa.Column('user_id', sa.UUID(), nullable=False),
            sa.Column('quiz_id', sa.UUID(), nullable=False),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.ForeignKeyConstraint(['quiz_id'], ['quizzes.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('user_id', 'quiz_id')
        )

    op.create_table('therapist_profiles',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=True),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('bio', sa.String(length=800), nullable=True),
        sa.Column('calendly_url', sa.String(length=2048), nullable=True),
        sa.Column('calendly_connected', sa.Boolean(), nullable=False),
        sa.Column('calendly_user_uri', sa.String(length=2048), nullable=True),
        sa.Column('calendly_organization_uri', sa.String(length=2048), nullable=True),
        sa.Column('calendly_connected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('calendly_access_token', sa.Text(), nullable=True),
        sa.Column('calendly_refresh_token', sa.Text(), nullable=True),
        sa.Column('calendly_token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('therapist_profiles', schema=None) as batch_op:
        batch_op.create_index('ix_therapist_profiles_user_id', ['user_id'], unique=True)
        batch_op.create_index('ix_therapist_profiles_calendly_user_uri', ['calendly_user_uri'], unique=False)

    op.create_table('appointments',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=True),
        sa.Column('therapist_id', sa.UUID(), nullable=True),
        sa.Column('user_name', sa.String(length=255), nullable=True),
        sa.Column('user_email', sa.String(length=320), nullable=True),
        sa.Column('therapist_name', sa.String(length=255), nullable=True),
        sa.Column('therapist_email', sa.String(length=320), nullable=True),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('timezone', sa.String(length=100), nullable=True),
        sa.Column('session_type', sa.String(length=255), nullable=True),
        sa.Column('status', sa.Enum('SCHEDULED', 'CANCELED', 'RESCHEDULED', name='appointmentstatus'), nullable=False),
        sa.Column('calendly_event_uri', sa.String(length=2048), nullable=True),
        sa.Column('calendly_invitee_uri', sa.String(length=2048), nullable=True),
        sa.Column('tracking', sa.JSON(), nullable=True),
        sa.Column('raw_payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['therapist_id'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('calendly_event_uri')
    )
    with op.batch_alter_table('appointments', schema=None) as batch_op:
        batch_op.create_index('ix_appointments_user_email', ['user_email'], unique=False)
        batch_op.create_index('ix_appointments_scheduled_at', ['scheduled_at'], unique=False)
        batch_op.create_index('ix_appointments_status', ['status'], unique=False)
        batch_op.create_index('ix_appointments_calendly_invitee_uri', ['calendly_invitee_uri'], unique=False)
        batch_op.create_index('ix_appointments_therapist_user', ['therapist_id', 'user_id'], unique=False)

    op.create_table('therapist_quiz_assignments',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('therapist_id', sa.UUID(), nullable=False),
        sa.Column('quiz_id', sa.UUID(), nullable=False),
        sa.Column('status', sa.Enum(
            'ASSIGNED', 'IN_PROGRESS', 'COMPLETED', 'REVOKED',
            name='assignmentstatus'
        ), nullable=False),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('due_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('note', sa.String(length=1200), nullable=False),
        sa.Column('source', sa.String(length=50), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['therapist_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['quiz_id'], ['quizzes.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('therapist_quiz_assignments', schema=None) as batch_op:
        batch_op.create_index('ix_therapist_quiz_assignments_user_id', ['user_id'], unique=False)
        batch_op.create_index('ix_therapist_quiz_assignments_therapist_id', ['therapist_id'], unique=False)
        batch_op.create_index('ix_therapist_quiz_assignments_quiz_id', ['quiz_id'], unique=False)
        batch_op.create_index('ix_therapist_quiz_assignments_status', ['status'], unique=False)
        batch_op.create_index('ix_therapist_quiz_assignments_due_at', ['due_at'], unique=False)
        batch_op.create_index(
            'ix_quiz_assignments_therapist_user_assigned',
            ['therapist_id', 'user_id', 'assigned_at'],
            unique=False,
        )
        batch_op.create_index(
            'ix_quiz_assignments_therapist_user_quiz_status',
            ['therapist_id', 'user_id', 'quiz_id', 'status'],
            unique=False,
        )

    op.create_table('therapy_conversations',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('therapist_id', sa.UUID(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['therapist_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'therapist_id', name='uq_therapy_conversations_user_therapist')
    )
    with op.batch_alter_table('therapy_conversations', schema=None) as batch_op:
        batch_op.create_index('ix_therapy_conversations_user_id', ['user_id'], unique=False)
        batch_op.create_index('ix_therapy_conversations_therapist_id', ['therapist_id'], unique=False)

    op.create_table('therapy_messages',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('conversation_id', sa.UUID(), nullable=False),
        sa.Column('seq', sa.Integer(), nullable=False),
        sa.Column('sender_id', sa.UUID(), nullable=True),
        sa.Column('text_cipher', sa.Text(), nullable=False),
        sa.Column('text_iv', sa.String(length=64), nullable=False),
        sa.Column('text_auth_tag', sa.String(length=64), nullable=False),
        sa.Column('key_version', sa.Integer(), nullable=False),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['conversation_id'], ['therapy_conversations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['sender_id'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('conversation_id', 'seq', name='uq_therapy_messages_conversation_seq')
    )
    with op.batch_alter_table('therapy_messages', schema=None) as batch_op:
        batch_op.create_index('ix_therapy_messages_sender_id', ['sender_id'], unique=False)
        batch_op.create_index('ix_therapy_messages_conversation_sent', ['conversation_id', 'sent_at'], unique=False)

    op.create_table('audit_logs',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=True),
        sa.Column('resource_type', sa.String(length=100), nullable=False),
        sa.Column('resource_id', sa.UUID(), nullable=True),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('audit_logs', schema=None) as batch_op:
        batch_op.create_index('ix_audit_logs_event_type', ['event_type'], unique=False)
        batch_op.create_index('ix_audit_logs_user_id', ['user_id'], unique=False)
        batch_op.create_index('ix_audit_logs_resource_type', ['resource_type'], unique=False)
        batch_op.create_index('ix_audit_logs_action', ['action'], unique=False)
        batch_op.create_index('ix_audit_logs_created_at', ['created_at'], unique=False)


def downgrade() -> None:
    """Drop every Tether table."""
    op.drop_table('audit_logs')
    op.drop_table('therapy_messages')
    op.drop_table('therapy_conversations')
    op.drop_table('therapist_quiz_assignments')
    op.drop_table('appointments')
    op.drop_table('therapist_profiles')
    op.drop_table('user_attempted_quizzes')
    op.drop_table('user_accessible_quizzes')
    op.drop_table('quizzes')
    op.drop_table('users')
