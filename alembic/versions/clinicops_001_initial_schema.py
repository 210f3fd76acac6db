"""initial clinic operations schema

Revision ID: clinicops_001
Revises:
Create Date: 2025-06-01

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'clinicops_001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('role', sa.String(), nullable=False),
        sa.Column('first_name', sa.String(), nullable=True),
        sa.Column('last_name', sa.String(), nullable=True),
        sa.Column('phone_number', sa.String(), nullable=True),
        sa.Column('push_token', sa.String(), nullable=True),
        sa.Column('timezone', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_users_id'), 'users', ['id'], unique=False)
    op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)

    op.create_table(
        'doctor_profiles',
        sa.Column('doctor_id', sa.String(), nullable=False),
        sa.Column('specialty', sa.String(), nullable=True),
        sa.Column('working_hours', sa.JSON(), nullable=True),
        sa.Column('max_patient_appointments', sa.Integer(), nullable=True),
        sa.Column('default_slot_minutes', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['doctor_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('doctor_id')
    )

    op.create_table(
        'appointments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('patient_id', sa.String(), nullable=False),
        sa.Column('doctor_id', sa.String(), nullable=False),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('appointment_type', sa.String(length=50), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('patient_notes', sa.Text(), nullable=True),
        sa.Column('doctor_notes', sa.Text(), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_by', sa.String(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('reschedule_count', sa.Integer(), nullable=False),
        sa.Column('rescheduled_at', sa.DateTime(), nullable=True),
        sa.Column('series_id', sa.String(), nullable=True),
        sa.Column('reminder_preferences', sa.JSON(), nullable=True),
        sa.Column('booked_by', sa.String(), nullable=True),
        sa.Column('last_updated_by', sa.String(), nullable=True),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['patient_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['doctor_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_appointments_patient_id'), 'appointments', ['patient_id'], unique=False)
    op.create_index(op.f('ix_appointments_doctor_id'), 'appointments', ['doctor_id'], unique=False)
    op.create_index(op.f('ix_appointments_series_id'), 'appointments', ['series_id'], unique=False)
    op.create_index('ix_appointments_doctor_start', 'appointments', ['doctor_id', 'start_time'], unique=False)
    op.create_index('ix_appointments_patient_start', 'appointments', ['patient_id', 'start_time'], unique=False)

    op.create_table(
        'time_blocks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('doctor_id', sa.String(), nullable=False),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=False),
        sa.Column('block_type', sa.String(length=32), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('is_recurring', sa.Boolean(), nullable=False),
        sa.Column('recurring_pattern', sa.String(length=16), nullable=False),
        sa.Column('recurring_end_date', sa.Date(), nullable=True),
        sa.Column('recurrence_id', sa.String(), nullable=True),
        sa.Column('created_by', sa.String(), nullable=True),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['doctor_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_time_blocks_doctor_id'), 'time_blocks', ['doctor_id'], unique=False)
    op.create_index(op.f('ix_time_blocks_recurrence_id'), 'time_blocks', ['recurrence_id'], unique=False)
    op.create_index('ix_time_blocks_doctor_start', 'time_blocks', ['doctor_id', 'start_time'], unique=False)

    op.create_table(
        'reminder_jobs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('appointment_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('channel', sa.String(length=16), nullable=False),
        sa.Column('reminder_kind', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('scheduled_for', sa.DateTime(), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('last_attempted_at', sa.DateTime(), nullable=True),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('is_cancelled', sa.Boolean(), nullable=False),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancellation_reason', sa.String(length=255), nullable=True),
        sa.Column('job_payload', sa.JSON(), nullable=True),
        sa.Column('active_key', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['appointment_id'], ['appointments.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('active_key')
    )
    op.create_index(op.f('ix_reminder_jobs_appointment_id'), 'reminder_jobs', ['appointment_id'], unique=False)
    op.create_index(op.f('ix_reminder_jobs_user_id'), 'reminder_jobs', ['user_id'], unique=False)
    op.create_index('ix_reminder_jobs_status_scheduled', 'reminder_jobs', ['status', 'scheduled_for'], unique=False)

    op.create_table(
        'reminder_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('job_id', sa.String(), nullable=True),
        sa.Column('appointment_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('doctor_id', sa.String(), nullable=True),
        sa.Column('channel', sa.String(length=16), nullable=False),
        sa.Column('reminder_kind', sa.String(length=16), nullable=False),
        sa.Column('trigger_type', sa.String(length=16), nullable=False),
        sa.Column('delivery_status', sa.String(length=16), nullable=False),
        sa.Column('dispatch_key', sa.String(length=255), nullable=True),
        sa.Column('tracking_token', sa.String(length=64), nullable=False),
        sa.Column('scheduled_at', sa.DateTime(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.Column('opened_at', sa.DateTime(), nullable=True),
        sa.Column('clicked_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('acknowledged_at', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('content', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['job_id'], ['reminder_jobs.id'], ),
        sa.ForeignKeyConstraint(['appointment_id'], ['appointments.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('dispatch_key'),
        sa.UniqueConstraint('tracking_token')
    )
    op.create_index(op.f('ix_reminder_logs_job_id'), 'reminder_logs', ['job_id'], unique=False)
    op.create_index('ix_reminder_logs_appointment', 'reminder_logs', ['appointment_id'], unique=False)
    op.create_index('ix_reminder_logs_user_sent', 'reminder_logs', ['user_id', 'sent_at'], unique=False)

    op.create_table(
        'reminder_settings',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('user_type', sa.String(length=16), nullable=False),
        sa.Column('email_enabled', sa.Boolean(), nullable=False),
        sa.Column('sms_enabled', sa.Boolean(), nullable=False),
        sa.Column('push_enabled', sa.Boolean(), nullable=False),
        sa.Column('in_app_enabled', sa.Boolean(), nullable=False),
        sa.Column('first_reminder_hours', sa.Integer(), nullable=False),
        sa.Column('second_reminder_hours', sa.Integer(), nullable=False),
        sa.Column('reminder_24h_enabled', sa.Boolean(), nullable=False),
        sa.Column('reminder_2h_enabled', sa.Boolean(), nullable=False),
        sa.Column('preferred_channels', sa.JSON(), nullable=True),
        sa.Column('timezone', sa.String(length=64), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('opted_out_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'user_type', name='uq_reminder_settings_user')
    )

    op.create_table(
        'reminder_analytics',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('doctor_id', sa.String(), nullable=False),
        sa.Column('reminders_sent', sa.Integer(), nullable=False),
        sa.Column('reminders_delivered', sa.Integer(), nullable=False),
        sa.Column('reminders_failed', sa.Integer(), nullable=False),
        sa.Column('reminders_opened', sa.Integer(), nullable=False),
        sa.Column('reminders_clicked', sa.Integer(), nullable=False),
        sa.Column('email_sent', sa.Integer(), nullable=False),
        sa.Column('sms_sent', sa.Integer(), nullable=False),
        sa.Column('push_sent', sa.Integer(), nullable=False),
        sa.Column('in_app_sent', sa.Integer(), nullable=False),
        sa.Column('appointments_kept', sa.Integer(), nullable=False),
        sa.Column('appointments_cancelled', sa.Integer(), nullable=False),
        sa.Column('appointments_no_show', sa.Integer(), nullable=False),
        sa.Column('appointments_rescheduled', sa.Integer(), nullable=False),
        sa.Column('delivery_rate', sa.Float(), nullable=False),
        sa.Column('open_rate', sa.Float(), nullable=False),
        sa.Column('click_rate', sa.Float(), nullable=False),
        sa.Column('attendance_rate', sa.Float(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['doctor_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('date', 'doctor_id', name='uq_reminder_analytics_day_doctor')
    )

    op.create_table(
        'in_app_notifications',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('priority', sa.String(length=16), nullable=False),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_in_app_notifications_user_id'), 'in_app_notifications', ['user_id'], unique=False)


def downgrade():
    op.drop_index(op.f('ix_in_app_notifications_user_id'), table_name='in_app_notifications')
    op.drop_table('in_app_notifications')
    op.drop_table('reminder_analytics')
    op.drop_table('reminder_settings')
    op.drop_index('ix_reminder_logs_user_sent', table_name='reminder_logs')
    op.drop_index('ix_reminder_logs_appointment', table_name='reminder_logs')
    op.drop_index(op.f('ix_reminder_logs_job_id'), table_name='reminder_logs')
    op.drop_table('reminder_logs')
    op.drop_index('ix_reminder_jobs_status_scheduled', table_name='reminder_jobs')
    op.drop_index(op.f('ix_reminder_jobs_user_id'), table_name='reminder_jobs')
    op.drop_index(op.f('ix_reminder_jobs_appointment_id'), table_name='reminder_jobs')
    op.drop_table('reminder_jobs')
    op.drop_index('ix_time_blocks_doctor_start', table_name='time_blocks')
    op.drop_index(op.f('ix_time_blocks_recurrence_id'), table_name='time_blocks')
    op.drop_index(op.f('ix_time_blocks_doctor_id'), table_name='time_blocks')
    op.drop_table('time_blocks')
    op.drop_index('ix_appointments_patient_start', table_name='appointments')
    op.drop_index('ix_appointments_doctor_start', table_name='appointments')
    op.drop_index(op.f('ix_appointments_series_id'), table_name='appointments')
    op.drop_index(op.f('ix_appointments_doctor_id'), table_name='appointments')
    op.drop_index(op.f('ix_appointments_patient_id'), table_name='appointments')
    op.drop_table('appointments')
    op.drop_table('doctor_profiles')
    op.drop_index(op.f('ix_users_email'), table_name='users')
    op.drop_index(op.f('ix_users_id'), table_name='users')
    op.drop_table('users')
