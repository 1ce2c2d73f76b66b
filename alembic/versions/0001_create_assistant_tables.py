"""create assistant tables

Revision ID: 0001_create_assistant_tables
Revises:
Create Date: 2026-10-17 00:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = '0001_create_assistant_tables'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    # Message queue
    op.create_table(
        'message_queue',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('tenant_id', sa.Text, nullable=False),
        sa.Column('phone_number', sa.Text, nullable=False),
        sa.Column('message_content', sa.Text, nullable=False),
        sa.Column('conversation', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('respond_with_audio', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('connection_id', sa.Text, nullable=True),
        sa.Column('dataset_id', sa.Text, nullable=True),
        sa.Column('system_prompt', sa.Text, nullable=True),
        sa.Column('status', sa.Text, nullable=False, server_default='pending'),
        sa.Column('attempt_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer, nullable=False, server_default='3'),
        sa.Column('next_retry_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.CheckConstraint("status IN ('pending', 'processing', 'completed', 'failed')", name='ck_message_queue_status'),
        sa.CheckConstraint('attempt_count <= max_attempts', name='ck_message_queue_attempts'),
    )
    op.create_index('ix_message_queue_drain', 'message_queue', ['status', 'next_retry_at', 'created_at'])

    # Alerts and their history
    op.create_table(
        'alerts',
        sa.Column('id', sa.Text, primary_key=True),
        sa.Column('tenant_id', sa.Text, nullable=False),
        sa.Column('name', sa.Text, nullable=False),
        sa.Column('connection_id', sa.Text, nullable=True),
        sa.Column('dataset_id', sa.Text, nullable=True),
        sa.Column('dax_query', sa.Text, nullable=True),
        sa.Column('message_template', sa.Text, nullable=True),
        sa.Column('condition', sa.Text, nullable=True),
        sa.Column('threshold', sa.Float, nullable=True),
        sa.Column('check_times', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('check_days_of_week', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('check_days_of_month', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('phone_numbers', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('group_ids', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('is_enabled', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('last_triggered_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('last_checked_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_alerts_tenant_enabled', 'alerts', ['tenant_id', 'is_enabled'])

    op.create_table(
        'alert_history',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('alert_id', sa.Text, nullable=False),
        sa.Column('triggered_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('trigger_type', sa.Text, nullable=False),
        sa.Column('alert_value', sa.Text, nullable=True),
        sa.Column('alert_message', sa.Text, nullable=True),
        sa.Column('notification_sent', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('recipients_reached', sa.Integer, nullable=False, server_default='0'),
        sa.CheckConstraint("trigger_type IN ('manual', 'scheduled')", name='ck_alert_history_trigger_type'),
    )
    op.create_index('ix_alert_history_alert_id', 'alert_history', ['alert_id'])

    # Learning store
    op.create_table(
        'query_learning',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('dataset_id', sa.Text, nullable=False),
        sa.Column('tenant_id', sa.Text, nullable=False),
        sa.Column('user_question', sa.Text, nullable=False),
        sa.Column('question_intent', sa.Text, nullable=False),
        sa.Column('dax_query', sa.Text, nullable=False),
        sa.Column('success', sa.Boolean, nullable=False),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('execution_time_ms', sa.Integer, nullable=True),
        sa.Column('result_rows', sa.Integer, nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_query_learning_lookup', 'query_learning', ['dataset_id', 'question_intent', 'success'])

    # Admin-owned tables read by the pipeline
    op.create_table(
        'powerbi_connections',
        sa.Column('id', sa.Text, primary_key=True),
        sa.Column('tenant_id', sa.Text, nullable=False),
        sa.Column('directory_tenant_id', sa.Text, nullable=False),
        sa.Column('client_id', sa.Text, nullable=False),
        sa.Column('client_secret', sa.Text, nullable=False),
        sa.Column('workspace_id', sa.Text, nullable=False),
    )

    op.create_table(
        'whatsapp_instances',
        sa.Column('id', sa.Text, primary_key=True),
        sa.Column('tenant_id', sa.Text, nullable=True),
        sa.Column('instance_name', sa.Text, nullable=False),
        sa.Column('api_url', sa.Text, nullable=False),
        sa.Column('api_key', sa.Text, nullable=False),
        sa.Column('is_connected', sa.Boolean, nullable=False, server_default=sa.true()),
    )

    op.create_table(
        'authorized_numbers',
        sa.Column('id', sa.Text, primary_key=True),
        sa.Column('tenant_id', sa.Text, nullable=False),
        sa.Column('phone_number', sa.Text, nullable=False),
        sa.Column('name', sa.Text, nullable=True),
        sa.Column('instance_id', sa.Text, nullable=True),
        sa.Column('connection_id', sa.Text, nullable=True),
        sa.Column('dataset_id', sa.Text, nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_index('ix_authorized_numbers_phone_number', 'authorized_numbers', ['phone_number'])

    op.create_table(
        'model_contexts',
        sa.Column('id', sa.Text, primary_key=True),
        sa.Column('tenant_id', sa.Text, nullable=False),
        sa.Column('connection_id', sa.Text, nullable=True),
        sa.Column('dataset_id', sa.Text, nullable=True),
        sa.Column('context_content', sa.Text, nullable=False),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
    )

    op.create_table(
        'whatsapp_messages',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('tenant_id', sa.Text, nullable=False),
        sa.Column('phone_number', sa.Text, nullable=False),
        sa.Column('direction', sa.Text, nullable=False),
        sa.Column('message_content', sa.Text, nullable=False),
        sa.Column('sender_name', sa.Text, nullable=True),
        sa.Column('instance_id', sa.Text, nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_whatsapp_messages_thread', 'whatsapp_messages', ['tenant_id', 'phone_number', 'created_at'])

def downgrade():
    op.drop_index('ix_whatsapp_messages_thread', table_name='whatsapp_messages')
    op.drop_table('whatsapp_messages')
    op.drop_table('model_contexts')
    op.drop_index('ix_authorized_numbers_phone_number', table_name='authorized_numbers')
    op.drop_table('authorized_numbers')
    op.drop_table('whatsapp_instances')
    op.drop_table('powerbi_connections')
    op.drop_index('ix_query_learning_lookup', table_name='query_learning')
    op.drop_table('query_learning')
    op.drop_index('ix_alert_history_alert_id', table_name='alert_history')
    op.drop_table('alert_history')
    op.drop_index('ix_alerts_tenant_enabled', table_name='alerts')
    op.drop_table('alerts')
    op.drop_index('ix_message_queue_drain', table_name='message_queue')
    op.drop_table('message_queue')
