"""Persistence gateway: CRUD over medications, schedules, schedule times,
intake logs and reminders backed by PostgreSQL via asyncpg.

Every query is scoped to the gateway's
:class:`~dosekeeper.models.SessionContext`: child rows (schedules, times,
logs) are reached by joining their medication on user and profile.
Intake history by medication id is the exception, since a log outlives
its medication.

Any database or connection failure surfaces as :class:`StorageError`.
Multi-statement operations (cascading deletes, full schedule replacement)
run in one transaction; every step tolerates already-missing rows, so a
failed cascade can simply be retried.

Intake logs are history: no delete path here touches
``medication_intake_logs``, and the table carries no foreign key to
schedule times.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Protocol

import asyncpg

from dosekeeper.models import (
    IntakeLog,
    Medication,
    Reminder,
    Schedule,
    ScheduleTime,
    SessionContext,
)

logger = logging.getLogger(__name__)

DEFAULT_UPCOMING_HORIZON_MS = 86_400_000
DEFAULT_UPCOMING_LIMIT = 10

_MEDICATION_COLUMNS = (
    "id, user_id, profile_id, name, notes, medication_url, is_deleted, created_at, updated_at"
)
_SCHEDULE_COLUMNS = (
    "id, medication_id, schedule, frequency_per_day, is_forever, start_date, end_date,"
    " days_of_week, timezone, reminder_enabled"
)
_TIME_COLUMNS = (
    "id, schedule_id, time_local, dosage, dose_amount, dose_unit, instructions, prn,"
    " sort_order, next_trigger_ts"
)
_LOG_COLUMNS = (
    "id, schedule_time_id, medication_id, taken_ts, status, actual_dose_amount,"
    " actual_dose_unit, notes"
)
_REMINDER_COLUMNS = "id, user_id, medication_id, title, time, message, repeat, days, active"

# Schedules of this session's medications; binds $2 = user_id, $3 = profile_id.
_OWNED_SCHEDULES = (
    "medication_schedules s JOIN medications m"
    " ON m.id = s.medication_id AND m.user_id = $2 AND m.profile_id = $3"
)


def _prefixed(alias: str, columns: str) -> str:
    return ", ".join(f"{alias}.{column.strip()}" for column in columns.split(","))


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class StorageError(Exception):
    """Raised when a gateway operation fails on I/O or a constraint.

    Attributes:
        operation: Name of the gateway method that failed.
        cause: The underlying driver exception, if any.
    """

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Storage operation {operation!r} failed{detail}")


class NotFoundError(StorageError):
    """Raised when an update targets a row that does not exist for this session."""

    def __init__(self, operation: str, entity: str, entity_id: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(operation)

    def __str__(self) -> str:
        return f"{self.entity} {self.entity_id!r} not found during {self.operation!r}"


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
        logger.warning("Storage operation %s failed: %s", operation, exc)
        raise StorageError(operation, exc) from exc


# ---------------------------------------------------------------------------
# Read contract used by the caches and the intake recorder
# ---------------------------------------------------------------------------


class DoseStore(Protocol):
    """The subset of the gateway the timeline caches depend on."""

    async def list_medications(self, *, include_deleted: bool = False) -> list[Medication]: ...

    async def list_schedules_for_medication(self, medication_id: str) -> list[Schedule]: ...

    async def list_times_for_schedule(self, schedule_id: str) -> list[ScheduleTime]: ...

    async def list_intake_logs(
        self, medication_id: str, from_ts: int, to_ts: int
    ) -> list[IntakeLog]: ...

    async def record_intake(self, log: IntakeLog) -> bool: ...


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class MedicationGateway:
    """asyncpg-backed implementation of all medication persistence operations."""

    def __init__(self, pool: asyncpg.Pool, session: SessionContext) -> None:
        self._pool = pool
        self.session = session

    # -- medications ---------------------------------------------------------

    async def list_medications(self, *, include_deleted: bool = False) -> list[Medication]:
        """Return the session's medications ordered by name."""
        sql = (
            f"SELECT {_MEDICATION_COLUMNS} FROM medications"
            " WHERE user_id = $1 AND profile_id = $2"
        )
        if not include_deleted:
            sql += " AND NOT is_deleted"
        sql += " ORDER BY name, id"
        with _storage_errors("list_medications"):
            rows = await self._pool.fetch(sql, self.session.user_id, self.session.profile_id)
        return [Medication.from_row(dict(r)) for r in rows]

    async def get_medication(self, medication_id: str) -> Medication | None:
        with _storage_errors("get_medication"):
            row = await self._pool.fetchrow(
                f"SELECT {_MEDICATION_COLUMNS} FROM medications"
                " WHERE id = $1 AND user_id = $2 AND profile_id = $3",
                medication_id,
                self.session.user_id,
                self.session.profile_id,
            )
        return Medication.from_row(dict(row)) if row is not None else None

    async def find_medications_by_name(self, fragment: str) -> list[Medication]:
        """Case-insensitive substring search over non-deleted medication names."""
        escaped = fragment.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        with _storage_errors("find_medications_by_name"):
            rows = await self._pool.fetch(
                f"SELECT {_MEDICATION_COLUMNS} FROM medications"
                " WHERE user_id = $1 AND profile_id = $2 AND NOT is_deleted"
                " AND name ILIKE $3"
                " ORDER BY name, id",
                self.session.user_id,
                self.session.profile_id,
                pattern,
            )
        return [Medication.from_row(dict(r)) for r in rows]

    async def create_medication(self, medication: Medication) -> Medication:
        with _storage_errors("create_medication"):
            await self._pool.execute(
                "INSERT INTO medications"
                " (id, user_id, profile_id, name, notes, medication_url, is_deleted,"
                "  created_at, updated_at)"
                " VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)",
                medication.id,
                self.session.user_id,
                self.session.profile_id,
                medication.name,
                medication.notes,
                medication.medication_url,
                medication.is_deleted,
                medication.created_at,
                medication.updated_at,
            )
        logger.info("Created medication %s (%s)", medication.id, medication.name)
        return medication

    async def update_medication(self, medication: Medication) -> Medication:
        """Update name, notes and URL in place.

        Raises:
            NotFoundError: no such medication for this session.
        """
        with _storage_errors("update_medication"):
            status = await self._pool.execute(
                "UPDATE medications"
                " SET name = $4, notes = $5, medication_url = $6, updated_at = $7"
                " WHERE id = $1 AND user_id = $2 AND profile_id = $3",
                medication.id,
                self.session.user_id,
                self.session.profile_id,
                medication.name,
                medication.notes,
                medication.medication_url,
                medication.updated_at,
            )
        if status == "UPDATE 0":
            raise NotFoundError("update_medication", "medication", medication.id)
        return medication

    async def soft_delete_medication(self, medication_id: str, *, updated_at: int) -> None:
        with _storage_errors("soft_delete_medication"):
            status = await self._pool.execute(
                "UPDATE medications SET is_deleted = true, updated_at = $4"
                " WHERE id = $1 AND user_id = $2 AND profile_id = $3",
                medication_id,
                self.session.user_id,
                self.session.profile_id,
                updated_at,
            )
        if status == "UPDATE 0":
            raise NotFoundError("soft_delete_medication", "medication", medication_id)
        logger.info("Soft-deleted medication %s", medication_id)

    async def delete_medication(self, medication_id: str) -> None:
        """Delete a medication with its reminders, schedules and schedule times.

        Runs in one transaction.  Deleting an id that is already gone, or that
        belongs to another session, is a no-op.
        """
        with _storage_errors("delete_medication"):
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    if not await self._owns_medication(conn, medication_id):
                        logger.debug("delete_medication: %s already gone", medication_id)
                        return
                    await self._delete_children(conn, medication_id)
                    await conn.execute("DELETE FROM medications WHERE id = $1", medication_id)
        logger.info("Deleted medication %s", medication_id)

    async def _owns_medication(
        self, executor: asyncpg.Connection | asyncpg.Pool, medication_id: str
    ) -> bool:
        owned = await executor.fetchval(
            "SELECT 1 FROM medications WHERE id = $1 AND user_id = $2 AND profile_id = $3",
            medication_id,
            self.session.user_id,
            self.session.profile_id,
        )
        return bool(owned)

    async def _delete_children(self, conn: asyncpg.Connection, medication_id: str) -> None:
        # Callers check ownership of the medication first.
        await conn.execute(
            "DELETE FROM reminders WHERE medication_id = $1 AND user_id = $2",
            medication_id,
            self.session.user_id,
        )
        await conn.execute(
            "DELETE FROM medication_schedule_times WHERE schedule_id IN"
            " (SELECT id FROM medication_schedules WHERE medication_id = $1)",
            medication_id,
        )
        await conn.execute(
            "DELETE FROM medication_schedules WHERE medication_id = $1", medication_id
        )

    # -- schedules -----------------------------------------------------------

    async def create_schedule(
        self, schedule: Schedule, *, conn: asyncpg.Connection | None = None
    ) -> Schedule:
        """Insert *schedule* under one of this session's medications.

        With *conn* the caller has already checked ownership in its transaction.
        """
        executor = conn if conn is not None else self._pool
        with _storage_errors("create_schedule"):
            if conn is None and not await self._owns_medication(
                self._pool, schedule.medication_id
            ):
                raise NotFoundError("create_schedule", "medication", schedule.medication_id)
            await executor.execute(
                "INSERT INTO medication_schedules"
                " (id, medication_id, schedule, frequency_per_day, is_forever, start_date,"
                "  end_date, days_of_week, timezone, reminder_enabled)"
                " VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)",
                schedule.id,
                schedule.medication_id,
                schedule.schedule,
                schedule.frequency_per_day,
                schedule.is_forever,
                schedule.start_date,
                schedule.end_date,
                schedule.days_of_week_csv,
                schedule.timezone,
                schedule.reminder_enabled,
            )
        return schedule

    async def delete_schedule(self, schedule_id: str) -> None:
        """Delete a schedule and its times in one transaction."""
        with _storage_errors("delete_schedule"):
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        "DELETE FROM medication_schedule_times t"
                        f" USING {_OWNED_SCHEDULES}"
                        " WHERE t.schedule_id = $1 AND s.id = t.schedule_id",
                        schedule_id,
                        self.session.user_id,
                        self.session.profile_id,
                    )
                    await conn.execute(
                        "DELETE FROM medication_schedules s USING medications m"
                        " WHERE s.id = $1 AND m.id = s.medication_id"
                        " AND m.user_id = $2 AND m.profile_id = $3",
                        schedule_id,
                        self.session.user_id,
                        self.session.profile_id,
                    )

    async def replace_schedule(
        self,
        medication_id: str,
        schedule: Schedule,
        times: Sequence[ScheduleTime],
        reminders: Sequence[Reminder] = (),
    ) -> Schedule:
        """Replace every schedule, time and reminder of a medication.

        Runs in one transaction; on failure the previous schedule stays intact.
        Raises :class:`NotFoundError` when the medication is not this session's.
        """
        with _storage_errors("replace_schedule"):
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    if not await self._owns_medication(conn, medication_id):
                        raise NotFoundError("replace_schedule", "medication", medication_id)
                    await self._delete_children(conn, medication_id)
                    await self.create_schedule(schedule, conn=conn)
                    for schedule_time in times:
                        await self.create_schedule_time(schedule_time, conn=conn)
                    for reminder in reminders:
                        await self.create_reminder(reminder, conn=conn)
        logger.info(
            "Replaced schedule of medication %s: schedule=%s times=%d reminders=%d",
            medication_id,
            schedule.id,
            len(times),
            len(reminders),
        )
        return schedule

    async def list_schedules_for_medication(self, medication_id: str) -> list[Schedule]:
        """Schedules of a medication ordered by start date (open start first)."""
        with _storage_errors("list_schedules_for_medication"):
            rows = await self._pool.fetch(
                f"SELECT {_prefixed('s', _SCHEDULE_COLUMNS)} FROM {_OWNED_SCHEDULES}"
                " WHERE s.medication_id = $1"
                " ORDER BY s.start_date ASC NULLS FIRST, s.id",
                medication_id,
                self.session.user_id,
                self.session.profile_id,
            )
        return [Schedule.from_row(dict(r)) for r in rows]

    # -- schedule times ------------------------------------------------------

    async def create_schedule_time(
        self, schedule_time: ScheduleTime, *, conn: asyncpg.Connection | None = None
    ) -> ScheduleTime:
        """Insert *schedule_time* under one of this session's schedules."""
        executor = conn if conn is not None else self._pool
        with _storage_errors("create_schedule_time"):
            if conn is None:
                owned = await self._pool.fetchval(
                    f"SELECT 1 FROM {_OWNED_SCHEDULES} WHERE s.id = $1",
                    schedule_time.schedule_id,
                    self.session.user_id,
                    self.session.profile_id,
                )
                if not owned:
                    raise NotFoundError(
                        "create_schedule_time", "schedule", schedule_time.schedule_id
                    )
            await executor.execute(
                "INSERT INTO medication_schedule_times"
                " (id, schedule_id, time_local, dosage, dose_amount, dose_unit, instructions,"
                "  prn, sort_order, next_trigger_ts)"
                " VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)",
                schedule_time.id,
                schedule_time.schedule_id,
                schedule_time.time_local,
                schedule_time.dosage,
                schedule_time.dose_amount,
                schedule_time.dose_unit,
                schedule_time.instructions,
                schedule_time.prn,
                schedule_time.sort_order,
                schedule_time.next_trigger_ts,
            )
        return schedule_time

    async def delete_schedule_time(self, schedule_time_id: str) -> None:
        with _storage_errors("delete_schedule_time"):
            await self._pool.execute(
                f"DELETE FROM medication_schedule_times t USING {_OWNED_SCHEDULES}"
                " WHERE t.id = $1 AND s.id = t.schedule_id",
                schedule_time_id,
                self.session.user_id,
                self.session.profile_id,
            )

    async def list_times_for_schedule(self, schedule_id: str) -> list[ScheduleTime]:
        """Times of a schedule ordered by sort_order (unset last), then time_local."""
        with _storage_errors("list_times_for_schedule"):
            rows = await self._pool.fetch(
                f"SELECT {_prefixed('t', _TIME_COLUMNS)}"
                f" FROM medication_schedule_times t JOIN {_OWNED_SCHEDULES}"
                " ON s.id = t.schedule_id"
                " WHERE t.schedule_id = $1"
                " ORDER BY t.sort_order ASC NULLS LAST, t.time_local ASC",
                schedule_id,
                self.session.user_id,
                self.session.profile_id,
            )
        return [ScheduleTime.from_row(dict(r)) for r in rows]

    async def set_next_trigger(self, schedule_time_id: str, next_trigger_ts: int | None) -> None:
        with _storage_errors("set_next_trigger"):
            await self._pool.execute(
                "UPDATE medication_schedule_times t SET next_trigger_ts = $4"
                f" FROM {_OWNED_SCHEDULES}"
                " WHERE t.id = $1 AND s.id = t.schedule_id",
                schedule_time_id,
                self.session.user_id,
                self.session.profile_id,
                next_trigger_ts,
            )

    async def list_upcoming_times(
        self,
        medication_id: str,
        now_ms: int,
        horizon_ms: int = DEFAULT_UPCOMING_HORIZON_MS,
        limit: int = DEFAULT_UPCOMING_LIMIT,
    ) -> list[ScheduleTime]:
        """Times of a medication whose stored next trigger falls in ``[now, now + horizon]``."""
        with _storage_errors("list_upcoming_times"):
            rows = await self._pool.fetch(
                f"SELECT {_prefixed('t', _TIME_COLUMNS)}"
                f" FROM medication_schedule_times t JOIN {_OWNED_SCHEDULES}"
                " ON s.id = t.schedule_id"
                " WHERE s.medication_id = $1"
                " AND t.next_trigger_ts IS NOT NULL"
                " AND t.next_trigger_ts >= $4 AND t.next_trigger_ts <= $5"
                " ORDER BY t.next_trigger_ts ASC"
                " LIMIT $6",
                medication_id,
                self.session.user_id,
                self.session.profile_id,
                now_ms,
                now_ms + horizon_ms,
                limit,
            )
        return [ScheduleTime.from_row(dict(r)) for r in rows]

    # -- intake logs ---------------------------------------------------------

    async def list_intake_logs(
        self, medication_id: str, from_ts: int, to_ts: int
    ) -> list[IntakeLog]:
        """Intake logs of a medication's current schedule times in ``[from_ts, to_ts)``."""
        with _storage_errors("list_intake_logs"):
            rows = await self._pool.fetch(
                f"SELECT {_prefixed('l', _LOG_COLUMNS)}"
                f" FROM {_OWNED_SCHEDULES}"
                " JOIN medication_schedule_times t ON t.schedule_id = s.id"
                " JOIN medication_intake_logs l ON l.schedule_time_id = t.id"
                " WHERE s.medication_id = $1 AND l.taken_ts >= $4 AND l.taken_ts < $5"
                " ORDER BY l.taken_ts ASC, l.id",
                medication_id,
                self.session.user_id,
                self.session.profile_id,
                from_ts,
                to_ts,
            )
        return [IntakeLog.from_row(dict(r)) for r in rows]

    async def list_intake_history(self, medication_id: str, limit: int = 100) -> list[IntakeLog]:
        """Most recent intake logs of a medication, including orphaned ones."""
        with _storage_errors("list_intake_history"):
            rows = await self._pool.fetch(
                f"SELECT {_LOG_COLUMNS} FROM medication_intake_logs"
                " WHERE medication_id = $1"
                " ORDER BY taken_ts DESC"
                " LIMIT $2",
                medication_id,
                limit,
            )
        return [IntakeLog.from_row(dict(r)) for r in rows]

    async def record_intake(self, log: IntakeLog) -> bool:
        """Append an intake log.

        Idempotent on ``log.id``: returns False when a row with that id
        already exists (an earlier attempt landed).
        """
        with _storage_errors("record_intake"):
            status = await self._pool.execute(
                "INSERT INTO medication_intake_logs"
                " (id, schedule_time_id, medication_id, taken_ts, status,"
                "  actual_dose_amount, actual_dose_unit, notes)"
                " VALUES ($1, $2, $3, $4, $5, $6, $7, $8)"
                " ON CONFLICT (id) DO NOTHING",
                log.id,
                log.schedule_time_id,
                log.medication_id,
                log.taken_ts,
                log.status,
                log.actual_dose_amount,
                log.actual_dose_unit,
                log.notes,
            )
        return status == "INSERT 0 1"

    # -- reminders -----------------------------------------------------------

    async def create_reminder(
        self, reminder: Reminder, *, conn: asyncpg.Connection | None = None
    ) -> Reminder:
        executor = conn if conn is not None else self._pool
        with _storage_errors("create_reminder"):
            await executor.execute(
                f"INSERT INTO reminders ({_REMINDER_COLUMNS})"
                " VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)",
                reminder.id,
                self.session.user_id,
                reminder.medication_id,
                reminder.title,
                reminder.time,
                reminder.message,
                reminder.repeat,
                reminder.days,
                reminder.active,
            )
        return reminder

    async def list_reminders(self, medication_id: str) -> list[Reminder]:
        with _storage_errors("list_reminders"):
            rows = await self._pool.fetch(
                f"SELECT {_REMINDER_COLUMNS} FROM reminders"
                " WHERE medication_id = $1 AND user_id = $2"
                " ORDER BY time, id",
                medication_id,
                self.session.user_id,
            )
        return [Reminder.from_row(dict(r)) for r in rows]

    async def list_active_reminders(self) -> list[Reminder]:
        with _storage_errors("list_active_reminders"):
            rows = await self._pool.fetch(
                f"SELECT {_REMINDER_COLUMNS} FROM reminders"
                " WHERE user_id = $1 AND active"
                " ORDER BY time, id",
                self.session.user_id,
            )
        return [Reminder.from_row(dict(r)) for r in rows]

    async def delete_reminders_for_medication(self, medication_id: str) -> None:
        with _storage_errors("delete_reminders_for_medication"):
            await self._pool.execute(
                "DELETE FROM reminders WHERE medication_id = $1 AND user_id = $2",
                medication_id,
                self.session.user_id,
            )
