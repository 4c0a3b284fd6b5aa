"""discussion_schema

Revision ID: 3b9e4c2a7f10
Revises:
Create Date: 2026-10-19 10:12:41.220517

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3b9e4c2a7f10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # chats
    op.create_table(
        'chats',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )

    # chat_settings
    op.create_table(
        'chat_settings',
        sa.Column('chat_id', sa.BigInteger(), sa.ForeignKey('chats.id'), primary_key=True),
        sa.Column('todoist_project_id', sa.String(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )

    # sessions
    op.create_table(
        'sessions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('chat_id', sa.BigInteger(), sa.ForeignKey('chats.id'), nullable=False),
        sa.Column('owner_id', sa.BigInteger(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='open'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('idx_sessions_chat_status', 'sessions', ['chat_id', 'status'])
    # At most one open session per chat.
    op.create_index(
        'uq_sessions_chat_open',
        'sessions',
        ['chat_id'],
        unique=True,
        postgresql_where=sa.text("status = 'open'"),
    )

    # messages
    op.create_table(
        'messages',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('chat_id', sa.BigInteger(), sa.ForeignKey('chats.id'), nullable=False),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('sessions.id'), nullable=True),
        sa.Column('message_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=True),
        sa.Column('username', sa.String(), nullable=True),
        sa.Column('text', sa.Text(), nullable=False, server_default=''),
        sa.Column('ts', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_messages_chat', 'messages', ['chat_id'])
    op.create_index('idx_messages_session_ts', 'messages', ['session_id', 'ts'])

    # draft_tasks
    op.create_table(
        'draft_tasks',
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('sessions.id'), primary_key=True),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('due_iso', sa.String(), nullable=True),
        sa.Column('priority', sa.SmallInteger(), nullable=True),
        sa.Column('assignee_note', sa.String(), nullable=True),
        sa.Column('labels', postgresql.JSONB(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('priority BETWEEN 1 AND 4', name='ck_draft_tasks_priority'),
    )

    # created_tasks
    op.create_table(
        'created_tasks',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('sessions.id'), nullable=False),
        sa.Column('todoist_task_id', sa.String(), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_created_tasks_session', 'created_tasks', ['session_id'])

    # audit_edits
    op.create_table(
        'audit_edits',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('sessions.id'), nullable=False),
        sa.Column('instruction_text', sa.Text(), nullable=False),
        sa.Column('diff_json', postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_audit_edits_session', 'audit_edits', ['session_id'])


def downgrade() -> None:
    op.drop_index('idx_audit_edits_session', table_name='audit_edits')
    op.drop_table('audit_edits')
    op.drop_index('idx_created_tasks_session', table_name='created_tasks')
    op.drop_table('created_tasks')
    op.drop_table('draft_tasks')
    op.drop_index('idx_messages_session_ts', table_name='messages')
    op.drop_index('idx_messages_chat', table_name='messages')
    op.drop_table('messages')
    op.drop_index('uq_sessions_chat_open', table_name='sessions')
    op.drop_index('idx_sessions_chat_status', table_name='sessions')
    op.drop_table('sessions')
    op.drop_table('chat_settings')
    op.drop_table('chats')
