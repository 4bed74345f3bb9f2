"""subscription and payment lifecycle tables

Revision ID: a1c2e3f4b501
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a1c2e3f4b501'
down_revision = None
branch_labels = None
depends_on = None

PERIODS = ('1_month', '3_months', '6_months', '12_months')
CURRENCIES = ('UAH', 'USD', 'EUR')


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('second_name', sa.String(100), nullable=True),
        sa.Column('role', sa.Enum('student', 'teacher', 'admin', name='user_role'), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('email_notifications', sa.Boolean(), nullable=False, comment='subscription emails opt-in'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'courses',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('is_published', sa.Boolean(), nullable=False),
        sa.Column('max_students', sa.Integer(), nullable=True, comment='NULL or 0 = unlimited'),
        sa.Column('current_students_count', sa.Integer(), server_default='0', nullable=False,
                  comment='PENDING + ACTIVE subscriptions holding a slot'),
        sa.Column('start_date', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint('current_students_count >= 0', name='ck_courses_students_non_negative'),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('course_id', sa.Integer(), nullable=True),
        sa.Column('kind', sa.Enum('course', 'period', name='subscription_kind'), nullable=False),
        sa.Column('status', sa.Enum('pending', 'active', 'cancelled', 'expired', 'completed',
                                    name='subscription_status'), nullable=False),
        sa.Column('period', sa.Enum(*PERIODS, name='subscription_period'), nullable=False),
        sa.Column('active_key', sa.String(64), nullable=True, comment='user_id:course_id while pending/active'),
        sa.Column('price', sa.Integer(), nullable=False),
        sa.Column('currency', sa.Enum(*CURRENCIES, name='subscription_currency'), nullable=False),
        sa.Column('paid_amount', sa.Integer(), nullable=False),
        sa.Column('start_date', sa.DateTime(), nullable=True),
        sa.Column('end_date', sa.DateTime(), nullable=True),
        sa.Column('auto_renewal', sa.Boolean(), nullable=False),
        sa.Column('next_billing_date', sa.DateTime(), nullable=True),
        sa.Column('activated_by_payment_id', sa.Integer(), nullable=True,
                  comment='payment whose success activated this row'),
        sa.Column('payment_date', sa.DateTime(), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_by', sa.Integer(), nullable=True),
        sa.Column('expiry_notification_sent', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['course_id'], ['courses.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['cancelled_by'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('active_key'),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_course_id', 'subscriptions', ['course_id'])
    op.create_index('ix_subscriptions_activated_by_payment_id', 'subscriptions', ['activated_by_payment_id'])
    op.create_index('ix_subscriptions_status_end_date', 'subscriptions', ['status', 'end_date'])
    op.create_index('ix_subscriptions_user_status', 'subscriptions', ['user_id', 'status'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('reference', sa.String(64), nullable=False, comment='merchantPaymInfo.reference sent to the gateway'),
        sa.Column('gateway_invoice_id', sa.String(128), nullable=True, comment='idempotency key for webhooks'),
        sa.Column('checkout_url', sa.String(1024), nullable=True),
        sa.Column('subscription_id', sa.Integer(), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False, comment='minor units'),
        sa.Column('currency', sa.Enum(*CURRENCIES, name='payment_currency'), nullable=False),
        sa.Column('description', sa.String(255), nullable=True),
        sa.Column('status', sa.Enum('created', 'pending', 'processing', 'success', 'failed', 'cancelled', 'refunded',
                                    name='payment_status'), nullable=False),
        sa.Column('attempt_number', sa.Integer(), nullable=False),
        sa.Column('attempt_history', sa.JSON(), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.Column('gateway_reference', sa.String(255), nullable=True),
        sa.Column('approval_code', sa.String(64), nullable=True),
        sa.Column('rrn', sa.String(64), nullable=True),
        sa.Column('gateway_response', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('reference'),
        sa.UniqueConstraint('gateway_invoice_id'),
    )
    op.create_index('ix_payments_subscription_id', 'payments', ['subscription_id'])
    op.create_index('ix_payments_user_id', 'payments', ['user_id'])
    op.create_index('ix_payments_status_created_at', 'payments', ['status', 'created_at'])

    op.create_table(
        'system_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('level', sa.String(20), nullable=False, comment='INFO/WARNING/ERROR/CRITICAL'),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('subscription_id', sa.Integer(), nullable=True),
        sa.Column('payment_id', sa.Integer(), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    for column in ('level', 'event_type', 'user_id', 'subscription_id', 'payment_id', 'created_at'):
        op.create_index(f'ix_system_logs_{column}', 'system_logs', [column])


def downgrade() -> None:
    op.drop_table('system_logs')
    op.drop_table('payments')
    op.drop_table('subscriptions')
    op.drop_table('courses')
    op.drop_table('users')
