"""
Initial support desk schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000

Changes:
- Profiles, customers, end customers and their contacts
- Use cases
- Tasks with status check constraint
- Task sessions with a partial unique index (one active session per task and user)
- Task messages, activities (append-only), comments, attachments, notifications
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import text
import logging

# Revision identifiers
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger(__name__)

TASK_STATUSES = (
    'new', 'in_progress', 'followup', 'waiting_for_customer',
    'completed', 'cancelled', 'forwarded',
)


def _id_column() -> sa.Column:
    return sa.Column('id', sa.String(36), primary_key=True)


def _created_at() -> sa.Column:
    return sa.Column('created_at', sa.DateTime(), nullable=False)


def upgrade():
    """Create all tables, indexes and the audit log guard."""
    logger.info("Starting migration: initial support desk schema")

    connection = op.get_bind()
    is_postgresql = connection.dialect.name == 'postgresql'

    # ===========================
    # Reference data
    # ===========================

    op.create_table(
        'profiles',
        _id_column(),
        sa.Column('full_name', sa.String(255), nullable=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('password_hash', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )

    op.create_table(
        'customers',
        _id_column(),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('industry', sa.String(100), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )

    op.create_table(
        'endkunden',
        _id_column(),
        sa.Column('customer_id', sa.String(36), sa.ForeignKey('customers.id'), nullable=True),
        sa.Column('external_id', sa.String(100), nullable=True),
        sa.Column('first_name', sa.String(100), nullable=True),
        sa.Column('last_name', sa.String(100), nullable=False),
        sa.Column('address', sa.String(255), nullable=True),
        sa.Column('postal_code', sa.String(20), nullable=True),
        sa.Column('city', sa.String(100), nullable=True),
        sa.Column('building', sa.String(100), nullable=True),
        sa.Column('apartment', sa.String(100), nullable=True),
        sa.Column('location', sa.String(100), nullable=True),
        _created_at(),
    )
    op.create_index('ix_endkunden_customer_id', 'endkunden', ['customer_id'])

    op.create_table(
        'endkunden_contacts',
        _id_column(),
        sa.Column('customer_id', sa.String(36), sa.ForeignKey('customers.id'), nullable=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('role', sa.String(100), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(50), nullable=True),
        _created_at(),
    )
    op.create_index('ix_endkunden_contacts_customer_id', 'endkunden_contacts', ['customer_id'])

    op.create_table(
        'use_cases',
        _id_column(),
        sa.Column('customer_id', sa.String(36), sa.ForeignKey('customers.id'), nullable=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('type', sa.String(50), nullable=True),
        sa.Column('information_needed', sa.Text(), nullable=True),
        sa.Column('steps', sa.Text(), nullable=True),
        sa.Column('expected_result', sa.Text(), nullable=True),
        sa.Column('next_question', sa.Text(), nullable=True),
        sa.Column('process_map', sa.JSON(), nullable=True),
        sa.Column('decision_logic', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_use_cases_customer_id', 'use_cases', ['customer_id'])

    logger.info("✓ Reference tables created")

    # ===========================
    # Tasks
    # ===========================

    allowed = ", ".join(f"'{value}'" for value in TASK_STATUSES)

    op.create_table(
        'tasks',
        _id_column(),
        sa.Column('readable_id', sa.String(32), nullable=False, unique=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='new'),
        sa.Column('source', sa.String(32), nullable=False, server_default='manual'),
        sa.Column('customer_id', sa.String(36), sa.ForeignKey('customers.id'), nullable=True),
        sa.Column('endkunde_id', sa.String(36), sa.ForeignKey('endkunden.id'), nullable=True),
        sa.Column('endkunde_email', sa.String(255), nullable=True),
        sa.Column('matched_use_case_id', sa.String(36), sa.ForeignKey('use_cases.id'), nullable=True),
        sa.Column('match_confidence', sa.Float(), nullable=True),
        sa.Column('assigned_to', sa.String(36), sa.ForeignKey('profiles.id'), nullable=True),
        sa.Column('created_by', sa.String(36), sa.ForeignKey('profiles.id'), nullable=True),
        sa.Column('forwarded_to', sa.Text(), nullable=True),
        sa.Column('follow_up_date', sa.DateTime(), nullable=True),
        sa.Column('closing_comment', sa.Text(), nullable=True),
        sa.Column('total_duration_seconds', sa.Integer(), nullable=True),
        sa.Column('last_message_id', sa.String(36), nullable=True),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint(f"status IN ({allowed})", name='ck_tasks_status'),
        sa.CheckConstraint(
            'total_duration_seconds IS NULL OR total_duration_seconds >= 0',
            name='ck_tasks_total_duration_non_negative'
        ),
    )
    op.create_index('ix_tasks_status', 'tasks', ['status'])
    op.create_index('ix_tasks_customer_id', 'tasks', ['customer_id'])
    op.create_index('ix_tasks_assigned_to', 'tasks', ['assigned_to'])
    op.create_index('ix_tasks_assignee_status_created', 'tasks', ['assigned_to', 'status', 'created_at'])

    logger.info("✓ Tasks table created")

    # ===========================
    # Time segments
    # ===========================

    op.create_table(
        'task_sessions',
        _id_column(),
        sa.Column('task_id', sa.String(36), sa.ForeignKey('tasks.id'), nullable=False),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=True),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        _created_at(),
        sa.CheckConstraint(
            'duration_seconds IS NULL OR duration_seconds >= 0',
            name='ck_task_sessions_duration_non_negative'
        ),
    )
    op.create_index('ix_task_sessions_task_id', 'task_sessions', ['task_id'])
    op.create_index('ix_task_sessions_user_id', 'task_sessions', ['user_id'])
    op.create_index(
        'uq_task_sessions_active',
        'task_sessions',
        ['task_id', 'user_id'],
        unique=True,
        sqlite_where=text('end_time IS NULL'),
        postgresql_where=text('end_time IS NULL'),
    )

    logger.info("✓ Task sessions table created with active-session index")

    # ===========================
    # Conversation and audit
    # ===========================

    op.create_table(
        'task_messages',
        _id_column(),
        sa.Column('task_id', sa.String(36), sa.ForeignKey('tasks.id'), nullable=False),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('created_by', sa.String(36), sa.ForeignKey('profiles.id'), nullable=True),
        sa.Column('previous_message_id', sa.String(36), sa.ForeignKey('task_messages.id'), nullable=True),
        _created_at(),
        sa.CheckConstraint(
            "role IN ('user', 'assistant', 'agent', 'system')",
            name='ck_task_messages_role'
        ),
    )
    op.create_index('ix_task_messages_task_created', 'task_messages', ['task_id', 'created_at'])

    op.create_table(
        'task_activities',
        _id_column(),
        sa.Column('task_id', sa.String(36), sa.ForeignKey('tasks.id'), nullable=False),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('profiles.id'), nullable=True),
        sa.Column('action', sa.String(32), nullable=False),
        sa.Column('status_from', sa.String(32), nullable=True),
        sa.Column('status_to', sa.String(32), nullable=True),
        sa.Column('previous_value', sa.JSON(), nullable=True),
        sa.Column('new_value', sa.JSON(), nullable=True),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_task_activities_task_timestamp', 'task_activities', ['task_id', 'timestamp'])

    # Audit rows are append-only at the database level too
    if is_postgresql:
        op.execute(text("""
            CREATE OR REPLACE FUNCTION reject_task_activity_change() RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION 'task_activities rows are immutable';
            END;
            $$ LANGUAGE plpgsql
        """))
        op.execute(text("""
            CREATE TRIGGER task_activities_immutable
            BEFORE UPDATE OR DELETE ON task_activities
            FOR EACH ROW EXECUTE FUNCTION reject_task_activity_change()
        """))
    else:
        for operation in ('UPDATE', 'DELETE'):
            op.execute(text(f"""
                CREATE TRIGGER task_activities_no_{operation.lower()}
                BEFORE {operation} ON task_activities
                BEGIN
                    SELECT RAISE(ABORT, 'task_activities rows are immutable');
                END
            """))

    logger.info("✓ Messages and audit tables created")

    # ===========================
    # Comments, attachments, notifications
    # ===========================

    op.create_table(
        'task_comments',
        _id_column(),
        sa.Column('task_id', sa.String(36), sa.ForeignKey('tasks.id'), nullable=False),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('profiles.id'), nullable=True),
        sa.Column('content', sa.Text(), nullable=False),
        _created_at(),
    )
    op.create_index('ix_task_comments_task_id', 'task_comments', ['task_id'])

    op.create_table(
        'task_attachments',
        _id_column(),
        sa.Column('task_id', sa.String(36), sa.ForeignKey('tasks.id'), nullable=False),
        sa.Column('uploaded_by', sa.String(36), sa.ForeignKey('profiles.id'), nullable=True),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('storage_path', sa.String(512), nullable=False, unique=True),
        sa.Column('content_type', sa.String(100), nullable=True),
        sa.Column('size_bytes', sa.Integer(), nullable=False, server_default='0'),
        _created_at(),
    )
    op.create_index('ix_task_attachments_task_id', 'task_attachments', ['task_id'])

    op.create_table(
        'notifications',
        _id_column(),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('task_id', sa.String(36), sa.ForeignKey('tasks.id'), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        _created_at(),
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])

    logger.info("✅ Migration completed successfully")


def downgrade():
    """Drop every table of the initial schema."""
    logger.info("Starting downgrade: drop support desk schema")

    connection = op.get_bind()
    if connection.dialect.name == 'postgresql':
        op.execute(text("DROP TRIGGER IF EXISTS task_activities_immutable ON task_activities"))
        op.execute(text("DROP FUNCTION IF EXISTS reject_task_activity_change()"))
    else:
        op.execute(text("DROP TRIGGER IF EXISTS task_activities_no_update"))
        op.execute(text("DROP TRIGGER IF EXISTS task_activities_no_delete"))

    for table in (
        'notifications',
        'task_attachments',
        'task_comments',
        'task_activities',
        'task_messages',
        'task_sessions',
        'tasks',
        'use_cases',
        'endkunden_contacts',
        'endkunden',
        'customers',
        'profiles',
    ):
        op.drop_table(table)

    logger.info("✅ Downgrade completed")
