"""Shared fixtures: an in-memory medication store and a Postgres testcontainer.

The in-memory store implements the parts of ``MedicationGateway`` that the
timeline, the caches and the intake recorder call, with knobs for blocking
and failing reads and writes.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from collections.abc import AsyncIterator, Callable, Iterable, Iterator, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import replace
from typing import TYPE_CHECKING

import pytest

from dosekeeper.gateway import NotFoundError, StorageError
from dosekeeper.models import (
    IntakeLog,
    Medication,
    Reminder,
    Schedule,
    ScheduleTime,
    SessionContext,
)

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

SESSION = SessionContext(user_id="user-1", profile_id="profile-1")


class InMemoryGateway:
    """Dict-backed stand-in for ``MedicationGateway``.

    ``read_gate`` / ``write_gate`` (asyncio events) hold month fetches and
    intake writes until set.  ``fail_reads`` / ``fail_writes`` make the next N
    calls raise :class:`StorageError`; ``lose_acks`` stores the row and then
    raises, like a commit whose acknowledgement was lost.
    """

    def __init__(self, session: SessionContext = SESSION) -> None:
        self.session = session
        self.medications: dict[str, Medication] = {}
        self.schedules: dict[str, Schedule] = {}
        self.times: dict[str, ScheduleTime] = {}
        self.logs: dict[str, IntakeLog] = {}
        self.reminders: dict[str, Reminder] = {}
        self.calls: Counter[str] = Counter()

        self.read_gate: asyncio.Event | None = None
        self.write_gate: asyncio.Event | None = None
        self.fail_reads = 0
        self.fail_writes = 0
        self.lose_acks = 0

    # -- seeding helpers ------------------------------------------------------

    def add_medication(self, name: str, **kwargs) -> Medication:
        medication = Medication.create(self.session, name, created_at=0, **kwargs)
        self.medications[medication.id] = medication
        return medication

    def add_schedule(
        self,
        medication: Medication,
        times: Sequence[str] = ("08:00",),
        *,
        start_date: int | None = None,
        end_date: int | None = None,
        days_of_week: Iterable[str] | None = None,
        prn: bool = False,
        reminder_enabled: bool = True,
    ) -> tuple[Schedule, list[ScheduleTime]]:
        schedule = Schedule.create(
            medication.id,
            start_date=start_date,
            end_date=end_date,
            days_of_week=days_of_week,
            frequency_per_day=len(times),
            reminder_enabled=reminder_enabled,
        )
        self.schedules[schedule.id] = schedule
        created = []
        for index, time_local in enumerate(times):
            schedule_time = ScheduleTime.create(
                schedule.id, time_local, dosage="1 tablet", prn=prn, sort_order=index
            )
            self.times[schedule_time.id] = schedule_time
            created.append(schedule_time)
        return schedule, created

    def add_raw_time(self, schedule: Schedule, time_local: str) -> ScheduleTime:
        """Store a time row as-is, bypassing validation."""
        schedule_time = ScheduleTime(
            id=str(uuid.uuid4()), schedule_id=schedule.id, time_local=time_local
        )
        self.times[schedule_time.id] = schedule_time
        return schedule_time

    def add_log(
        self, schedule_time: ScheduleTime, taken_ts: int, *, status: str = "taken"
    ) -> IntakeLog:
        schedule = self.schedules[schedule_time.schedule_id]
        log = IntakeLog.create(
            schedule_time.id,
            taken_ts=taken_ts,
            status=status,
            medication_id=schedule.medication_id,
        )
        self.logs[log.id] = log
        return log

    # -- failure injection ---------------------------------------------------

    async def _read(self, operation: str) -> None:
        self.calls[operation] += 1
        if self.read_gate is not None:
            await self.read_gate.wait()
        if self.fail_reads > 0:
            self.fail_reads -= 1
            raise StorageError(operation, ConnectionResetError("connection reset by peer"))

    # -- medications ---------------------------------------------------------

    async def list_medications(self, *, include_deleted: bool = False) -> list[Medication]:
        self.calls["list_medications"] += 1
        meds = [m for m in self.medications.values() if include_deleted or not m.is_deleted]
        return sorted(meds, key=lambda m: (m.name, m.id))

    async def get_medication(self, medication_id: str) -> Medication | None:
        return self.medications.get(medication_id)

    async def create_medication(self, medication: Medication) -> Medication:
        self.medications[medication.id] = medication
        return medication

    async def update_medication(self, medication: Medication) -> Medication:
        if medication.id not in self.medications:
            raise NotFoundError("update_medication", "medication", medication.id)
        self.medications[medication.id] = medication
        return medication

    async def soft_delete_medication(self, medication_id: str, *, updated_at: int) -> None:
        current = self.medications.get(medication_id)
        if current is None:
            raise NotFoundError("soft_delete_medication", "medication", medication_id)
        self.medications[medication_id] = replace(current, is_deleted=True, updated_at=updated_at)

    async def delete_medication(self, medication_id: str) -> None:
        if medication_id not in self.medications:
            return
        self._delete_children(medication_id)
        del self.medications[medication_id]

    def _delete_children(self, medication_id: str) -> None:
        self.reminders = {
            k: r for k, r in self.reminders.items() if r.medication_id != medication_id
        }
        schedule_ids = {s.id for s in self.schedules.values() if s.medication_id == medication_id}
        self.times = {k: t for k, t in self.times.items() if t.schedule_id not in schedule_ids}
        for schedule_id in schedule_ids:
            del self.schedules[schedule_id]

    # -- schedules -----------------------------------------------------------

    async def replace_schedule(
        self,
        medication_id: str,
        schedule: Schedule,
        times: Sequence[ScheduleTime],
        reminders: Sequence[Reminder] = (),
    ) -> Schedule:
        if medication_id not in self.medications:
            raise NotFoundError("replace_schedule", "medication", medication_id)
        self._delete_children(medication_id)
        self.schedules[schedule.id] = schedule
        for schedule_time in times:
            self.times[schedule_time.id] = schedule_time
        for reminder in reminders:
            self.reminders[reminder.id] = reminder
        return schedule

    async def list_schedules_for_medication(self, medication_id: str) -> list[Schedule]:
        await self._read("list_schedules_for_medication")
        schedules = [s for s in self.schedules.values() if s.medication_id == medication_id]
        return sorted(schedules, key=lambda s: (s.start_date is not None, s.start_date or 0))

    async def list_times_for_schedule(self, schedule_id: str) -> list[ScheduleTime]:
        times = [t for t in self.times.values() if t.schedule_id == schedule_id]
        return sorted(times, key=lambda t: t.sort_key)

    async def set_next_trigger(self, schedule_time_id: str, next_trigger_ts: int | None) -> None:
        current = self.times[schedule_time_id]
        self.times[schedule_time_id] = replace(current, next_trigger_ts=next_trigger_ts)

    # -- intake logs ---------------------------------------------------------

    async def list_intake_logs(
        self, medication_id: str, from_ts: int, to_ts: int
    ) -> list[IntakeLog]:
        self.calls["list_intake_logs"] += 1
        schedule_ids = {s.id for s in self.schedules.values() if s.medication_id == medication_id}
        time_ids = {t.id for t in self.times.values() if t.schedule_id in schedule_ids}
        logs = [
            log
            for log in self.logs.values()
            if log.schedule_time_id in time_ids and from_ts <= log.taken_ts < to_ts
        ]
        return sorted(logs, key=lambda log: (log.taken_ts, log.id))

    async def record_intake(self, log: IntakeLog) -> bool:
        self.calls["record_intake"] += 1
        if self.write_gate is not None:
            await self.write_gate.wait()
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise StorageError("record_intake", ConnectionResetError("connection reset by peer"))
        inserted = log.id not in self.logs
        self.logs.setdefault(log.id, log)
        if self.lose_acks > 0:
            self.lose_acks -= 1
            raise StorageError("record_intake", TimeoutError("commit acknowledgement lost"))
        return inserted


@pytest.fixture
def gateway() -> InMemoryGateway:
    return InMemoryGateway()


@pytest.fixture
def wait_until() -> Callable[..., object]:
    """Return a coroutine function that yields to the loop until *predicate* holds."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        async with asyncio.timeout(timeout):
            while not predicate():
                await asyncio.sleep(0.001)

    return _wait


# ---------------------------------------------------------------------------
# Postgres testcontainer
# ---------------------------------------------------------------------------


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer; each pool fixture provisions its own database."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh database and asyncpg pool for a single test usage.

    Tests should use this as:
        async with provisioned_postgres_pool() as pool:
            ...
    """
    from dosekeeper.db import Database

    @asynccontextmanager
    async def _provision(
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 3,
    ) -> AsyncIterator[Pool]:
        db = Database(
            db_name=_unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        pool = await db.connect()
        try:
            yield pool
        finally:
            await db.close()

    return _provision
