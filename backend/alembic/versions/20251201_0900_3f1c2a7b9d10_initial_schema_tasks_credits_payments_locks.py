"""Initial schema: generation tasks, credit accounts and log, payment orders, locks

Revision ID: 3f1c2a7b9d10
Revises: 
Create Date: 2025-12-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c2a7b9d10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


task_status = sa.Enum('pending', 'processing', 'completed', 'failed', 'cancelled', name='task_status')
credit_operation = sa.Enum('deduct', 'refund', 'recharge', 'grant', name='credit_operation')
payment_order_status = sa.Enum('pending', 'success', name='payment_order_status')


def upgrade() -> None:
    """Create all tables for tasks, the credit ledger, payment orders and locks."""
    # 1. Generation tasks
    op.create_table(
        'generation_tasks',
        sa.Column('task_id', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('status', task_status, nullable=False, server_default='pending'),
        sa.Column('prompt', sa.Text(), nullable=False, server_default=''),
        sa.Column('input_image_ref', sa.Text(), nullable=True),
        sa.Column('style', sa.String(length=64), nullable=True),
        sa.Column('result_ref', sa.Text(), nullable=True),
        sa.Column('credits_cost', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('credits_deducted', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('credits_refunded', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('task_id'),
        sa.CheckConstraint('NOT credits_refunded OR credits_deducted', name='ck_generation_tasks_refund_requires_deduct'),
    )
    op.create_index(op.f('ix_generation_tasks_created_at'), 'generation_tasks', ['created_at'])
    op.create_index(op.f('ix_generation_tasks_user_id'), 'generation_tasks', ['user_id'])
    op.create_index(op.f('ix_generation_tasks_status'), 'generation_tasks', ['status'])
    op.create_index('ix_generation_tasks_user_created', 'generation_tasks', ['user_id', 'created_at'])

    # 2. Credit accounts
    op.create_table(
        'credit_accounts',
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('balance', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('user_id'),
        sa.CheckConstraint('balance >= 0', name='ck_credit_accounts_balance_non_negative'),
    )
    op.create_index(op.f('ix_credit_accounts_created_at'), 'credit_accounts', ['created_at'])

    # 3. Credit log entries (append-only)
    op.create_table(
        'credit_log_entries',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('reference', sa.String(length=255), nullable=False),
        sa.Column('operation', credit_operation, nullable=False),
        sa.Column('old_value', sa.Integer(), nullable=False),
        sa.Column('delta', sa.Integer(), nullable=False),
        sa.Column('new_value', sa.Integer(), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_credit_log_entries_created_at'), 'credit_log_entries', ['created_at'])
    op.create_index(op.f('ix_credit_log_entries_user_id'), 'credit_log_entries', ['user_id'])
    op.create_index(op.f('ix_credit_log_entries_reference'), 'credit_log_entries', ['reference'])
    op.create_index('ix_credit_log_user_created', 'credit_log_entries', ['user_id', 'created_at'])
    # One recharge per order and one refund per task, enforced by the database
    op.create_index(
        'uq_credit_log_recharge_reference',
        'credit_log_entries',
        ['reference'],
        unique=True,
        postgresql_where=sa.text("operation = 'recharge'"),
    )
    op.create_index(
        'uq_credit_log_refund_reference',
        'credit_log_entries',
        ['reference'],
        unique=True,
        postgresql_where=sa.text("operation = 'refund'"),
    )

    # 4. Payment orders
    op.create_table(
        'payment_orders',
        sa.Column('order_no', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('credits', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('status', payment_order_status, nullable=False, server_default='pending'),
        sa.Column('trade_no', sa.String(length=128), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('raw_callback_data', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('order_no'),
    )
    op.create_index(op.f('ix_payment_orders_created_at'), 'payment_orders', ['created_at'])
    op.create_index(op.f('ix_payment_orders_user_id'), 'payment_orders', ['user_id'])
    op.create_index(op.f('ix_payment_orders_status'), 'payment_orders', ['status'])

    # 5. Locks
    op.create_table(
        'locks',
        sa.Column('key', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('owner', sa.String(length=64), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('key'),
    )
    op.create_index(op.f('ix_locks_created_at'), 'locks', ['created_at'])
    op.create_index(op.f('ix_locks_expires_at'), 'locks', ['expires_at'])


def downgrade() -> None:
    """Drop all tables and enum types."""
    op.drop_table('locks')
    op.drop_table('payment_orders')
    op.drop_table('credit_log_entries')
    op.drop_table('credit_accounts')
    op.drop_table('generation_tasks')

    payment_order_status.drop(op.get_bind(), checkfirst=True)
    credit_operation.drop(op.get_bind(), checkfirst=True)
    task_status.drop(op.get_bind(), checkfirst=True)
