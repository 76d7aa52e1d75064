"""initial ledger schema

Revision ID: 7c2e91d4a0b3
Revises:
Create Date: 2026-10-18 09:12:44.218310

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '7c2e91d4a0b3'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('users',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('email', sa.String(length=255), nullable=False),
    sa.Column('password_hash', sa.String(length=255), nullable=False),
    sa.Column('full_name', sa.String(length=255), nullable=True),
    sa.Column('is_admin', sa.Boolean(), nullable=True),
    sa.Column('is_active', sa.Boolean(), nullable=True),
    sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('email')
    )

    op.create_table('audit_events',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('actor_id', sa.String(length=64), nullable=True),
    sa.Column('action', sa.String(length=255), nullable=False),
    sa.Column('entity_type', sa.String(length=64), nullable=True),
    sa.Column('entity_id', sa.String(length=64), nullable=True),
    sa.Column('metadata', sa.JSON(), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('audit_events', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_audit_events_action'), ['action'], unique=False)
        batch_op.create_index(batch_op.f('ix_audit_events_entity_id'), ['entity_id'], unique=False)

    op.create_table('webhook_events',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('event_type', sa.String(length=50), nullable=False),
    sa.Column('external_task_id', sa.String(length=64), nullable=False),
    sa.Column('payload', sa.JSON(), nullable=False),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('retry_count', sa.Integer(), nullable=False),
    sa.Column('last_retry_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('processing_started_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('error_message', sa.Text(), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('webhook_events', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_webhook_events_external_task_id'), ['external_task_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_webhook_events_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_webhook_events_created_at'), ['created_at'], unique=False)

    op.create_table('cached_tasks',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('external_id', sa.String(length=64), nullable=False),
    sa.Column('status', sa.Integer(), nullable=True),
    sa.Column('cod_amount', sa.Numeric(precision=10, scale=2), nullable=True),
    sa.Column('fee_amount', sa.Numeric(precision=10, scale=2), nullable=True),
    sa.Column('driver_id', sa.String(length=64), nullable=True),
    sa.Column('merchant_id', sa.String(length=64), nullable=True),
    sa.Column('notes', sa.Text(), nullable=True),
    sa.Column('raw_snapshot', sa.JSON(), nullable=True),
    sa.Column('last_external_update_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('last_payload_hash', sa.String(length=64), nullable=True),
    sa.Column('last_event_type', sa.String(length=50), nullable=True),
    sa.Column('last_local_edit_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('local_edit_fields', sa.JSON(), nullable=True),
    sa.Column('last_local_edit_by', sa.String(length=64), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('external_id')
    )
    with op.batch_alter_table('cached_tasks', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_cached_tasks_driver_id'), ['driver_id'], unique=False)

    op.create_table('task_history',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('task_id', sa.String(length=36), nullable=False),
    sa.Column('field', sa.String(length=64), nullable=False),
    sa.Column('old_value', sa.JSON(), nullable=True),
    sa.Column('new_value', sa.JSON(), nullable=True),
    sa.Column('source', sa.String(length=20), nullable=False),
    sa.Column('event_id', sa.String(length=36), nullable=True),
    sa.Column('actor_id', sa.String(length=64), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    sa.ForeignKeyConstraint(['task_id'], ['cached_tasks.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('task_history', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_task_history_task_id'), ['task_id'], unique=False)

    op.create_table('task_conflicts',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('task_id', sa.String(length=36), nullable=False),
    sa.Column('event_id', sa.String(length=36), nullable=True),
    sa.Column('fields', sa.JSON(), nullable=False),
    sa.Column('local_values', sa.JSON(), nullable=False),
    sa.Column('external_values', sa.JSON(), nullable=False),
    sa.Column('external_updated_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('resolution', sa.String(length=20), nullable=True),
    sa.Column('resolved_by', sa.String(length=64), nullable=True),
    sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    sa.ForeignKeyConstraint(['task_id'], ['cached_tasks.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('task_conflicts', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_task_conflicts_task_id'), ['task_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_task_conflicts_status'), ['status'], unique=False)

    op.create_table('cod_queue',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('driver_id', sa.String(length=64), nullable=False),
    sa.Column('external_task_id', sa.String(length=64), nullable=True),
    sa.Column('merchant_id', sa.String(length=64), nullable=True),
    sa.Column('amount', sa.Numeric(precision=10, scale=2), nullable=False),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('note', sa.Text(), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('settled_by', sa.String(length=64), nullable=True),
    sa.Column('payment_method', sa.String(length=50), nullable=True),
    sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    sa.CheckConstraint('amount > 0', name='ck_cod_queue_amount_positive'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('external_task_id')
    )
    with op.batch_alter_table('cod_queue', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_cod_queue_driver_id'), ['driver_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_cod_queue_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_cod_queue_created_at'), ['created_at'], unique=False)
        batch_op.create_index('ix_cod_queue_driver_status_created', ['driver_id', 'status', 'created_at'], unique=False)

    op.create_table('settlement_attempts',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('entry_id', sa.String(length=36), nullable=False),
    sa.Column('driver_id', sa.String(length=64), nullable=False),
    sa.Column('merchant_id', sa.String(length=64), nullable=True),
    sa.Column('amount', sa.Numeric(precision=10, scale=2), nullable=False),
    sa.Column('state', sa.String(length=30), nullable=False),
    sa.Column('payment_method', sa.String(length=50), nullable=True),
    sa.Column('operator_id', sa.String(length=64), nullable=True),
    sa.Column('out_of_order', sa.Boolean(), nullable=True),
    sa.Column('override_reason', sa.Text(), nullable=True),
    sa.Column('error_message', sa.Text(), nullable=True),
    sa.Column('driver_credited_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('merchant_credited_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('resolved_by', sa.String(length=64), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    sa.ForeignKeyConstraint(['entry_id'], ['cod_queue.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('settlement_attempts', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_settlement_attempts_entry_id'), ['entry_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_settlement_attempts_state'), ['state'], unique=False)


def downgrade():
    with op.batch_alter_table('settlement_attempts', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_settlement_attempts_state'))
        batch_op.drop_index(batch_op.f('ix_settlement_attempts_entry_id'))
    op.drop_table('settlement_attempts')

    with op.batch_alter_table('cod_queue', schema=None) as batch_op:
        batch_op.drop_index('ix_cod_queue_driver_status_created')
        batch_op.drop_index(batch_op.f('ix_cod_queue_created_at'))
        batch_op.drop_index(batch_op.f('ix_cod_queue_status'))
        batch_op.drop_index(batch_op.f('ix_cod_queue_driver_id'))
    op.drop_table('cod_queue')

    with op.batch_alter_table('task_conflicts', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_task_conflicts_status'))
        batch_op.drop_index(batch_op.f('ix_task_conflicts_task_id'))
    op.drop_table('task_conflicts')

    with op.batch_alter_table('task_history', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_task_history_task_id'))
    op.drop_table('task_history')

    with op.batch_alter_table('cached_tasks', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_cached_tasks_driver_id'))
    op.drop_table('cached_tasks')

    with op.batch_alter_table('webhook_events', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_webhook_events_created_at'))
        batch_op.drop_index(batch_op.f('ix_webhook_events_status'))
        batch_op.drop_index(batch_op.f('ix_webhook_events_external_task_id'))
    op.drop_table('webhook_events')

    with op.batch_alter_table('audit_events', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_audit_events_entity_id'))
        batch_op.drop_index(batch_op.f('ix_audit_events_action'))
    op.drop_table('audit_events')

    op.drop_table('users')
