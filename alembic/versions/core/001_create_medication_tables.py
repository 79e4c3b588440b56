"""create_medication_tables

Revision ID: core_001
Revises:
Create Date: 2026-10-16 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS medications (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            profile_id TEXT NOT NULL,
            name TEXT NOT NULL,
            notes TEXT,
            medication_url TEXT,
            is_deleted BOOLEAN NOT NULL DEFAULT false,
            created_at BIGINT NOT NULL,
            updated_at BIGINT NOT NULL
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_medications_owner
        ON medications (user_id, profile_id)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS medication_schedules (
            id TEXT PRIMARY KEY,
            medication_id TEXT NOT NULL REFERENCES medications (id),
            schedule TEXT NOT NULL DEFAULT 'daily',
            frequency_per_day INTEGER,
            is_forever BOOLEAN NOT NULL DEFAULT true,
            start_date BIGINT,
            end_date BIGINT,
            days_of_week TEXT,
            timezone TEXT,
            reminder_enabled BOOLEAN NOT NULL DEFAULT true,
            CONSTRAINT medication_schedules_bounds_check
                CHECK (start_date IS NULL OR end_date IS NULL OR start_date <= end_date)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_medication_schedules_medication
        ON medication_schedules (medication_id)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS medication_schedule_times (
            id TEXT PRIMARY KEY,
            schedule_id TEXT NOT NULL REFERENCES medication_schedules (id),
            time_local TEXT NOT NULL,
            dosage TEXT,
            dose_amount DOUBLE PRECISION,
            dose_unit TEXT,
            instructions TEXT,
            prn BOOLEAN NOT NULL DEFAULT false,
            sort_order INTEGER,
            next_trigger_ts BIGINT
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_medication_schedule_times_schedule
        ON medication_schedule_times (schedule_id)
    """)

    # Intake history outlives the schedule times it refers to: no foreign key.
    op.execute("""
        CREATE TABLE IF NOT EXISTS medication_intake_logs (
            id TEXT PRIMARY KEY,
            schedule_time_id TEXT NOT NULL,
            medication_id TEXT,
            taken_ts BIGINT NOT NULL,
            status TEXT NOT NULL DEFAULT 'taken',
            actual_dose_amount DOUBLE PRECISION,
            actual_dose_unit TEXT,
            notes TEXT
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_medication_intake_logs_time_ts
        ON medication_intake_logs (schedule_time_id, taken_ts)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_medication_intake_logs_medication_ts
        ON medication_intake_logs (medication_id, taken_ts DESC)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS reminders (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            medication_id TEXT NOT NULL REFERENCES medications (id),
            title TEXT NOT NULL,
            time TEXT NOT NULL,
            message TEXT,
            repeat TEXT NOT NULL DEFAULT 'daily',
            days TEXT,
            active BOOLEAN NOT NULL DEFAULT true
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_reminders_medication
        ON reminders (medication_id)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS reminders")
    op.execute("DROP TABLE IF EXISTS medication_intake_logs")
    op.execute("DROP TABLE IF EXISTS medication_schedule_times")
    op.execute("DROP TABLE IF EXISTS medication_schedules")
    op.execute("DROP TABLE IF EXISTS medications")
