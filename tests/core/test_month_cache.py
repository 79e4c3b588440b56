"""Unit tests for MonthCache.

Covers:
- Memoization: one fetch per month until invalidated
- Single flight: concurrent callers share one fetch, cancelled callers do not cancel it
- Generation guard: a fetch overtaken by invalidate() is discarded and redone
- Request sequence: only the latest request moves current_key
- Failures propagate and leave the month uncached
- LRU retention of recent months and optimistic log appends
"""

from __future__ import annotations

import asyncio
from datetime import date

import pytest

from dosekeeper.core.month_cache import MonthCache, MonthSnapshot
from dosekeeper.gateway import StorageError
from dosekeeper.models import IntakeLog
from dosekeeper.recurrence import start_of_day_ms, timestamp_for

pytestmark = pytest.mark.unit

JAN_1 = date(2024, 1, 1)
JAN_20 = date(2024, 1, 20)
FEB_3 = date(2024, 2, 3)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def seeded(gateway):
    """One medication with a twice-daily schedule starting Jan 1."""
    med = gateway.add_medication("Metformin")
    schedule, times = gateway.add_schedule(
        med, ("08:00", "20:00"), start_date=start_of_day_ms(JAN_1)
    )
    return med, schedule, times


@pytest.fixture
def cache(gateway, seeded):
    medications = [seeded[0]]
    return MonthCache(gateway, lambda: medications, max_months=3)


# ---------------------------------------------------------------------------
# Memoization
# ---------------------------------------------------------------------------


class TestMemoization:
    async def test_fetches_rows_for_month(self, cache, seeded):
        med, schedule, times = seeded
        snapshot = await cache.ensure_month(JAN_20)

        assert snapshot.key == "2024-1"
        assert snapshot.schedules[med.id] == [schedule]
        assert snapshot.times[schedule.id] == times
        assert snapshot.intake_logs[med.id] == []
        assert cache.current_key == "2024-1"

    async def test_same_month_fetched_once(self, cache, gateway):
        first = await cache.ensure_month(JAN_1)
        second = await cache.ensure_month(JAN_20)

        assert first is second
        assert cache.fetch_count == 1
        assert gateway.calls["list_schedules_for_medication"] == 1

    async def test_invalidate_forces_refetch(self, cache):
        await cache.ensure_month(JAN_1)
        cache.invalidate()
        assert cache.peek(JAN_1) is None
        assert cache.current_key is None

        snapshot = await cache.ensure_month(JAN_1)
        assert cache.fetch_count == 2
        assert snapshot.generation == cache.generation == 1

    async def test_logs_restricted_to_month(self, cache, gateway, seeded):
        med, _, (morning, _) = seeded
        inside = gateway.add_log(morning, timestamp_for(JAN_20, 8, 5))
        gateway.add_log(morning, timestamp_for(FEB_3, 8, 5))

        snapshot = await cache.ensure_month(JAN_1)
        assert snapshot.intake_logs[med.id] == [inside]

    async def test_entries_for_day(self, cache, gateway, seeded):
        _, _, (morning, _) = seeded
        gateway.add_log(morning, timestamp_for(JAN_20, 8, 5))

        entries = await cache.entries_for_day(JAN_20)
        assert [(e.time_label, e.taken) for e in entries] == [("08:00", True), ("20:00", False)]

    def test_rejects_empty_capacity(self, gateway):
        with pytest.raises(ValueError, match="max_months"):
            MonthCache(gateway, list, max_months=0)


# ---------------------------------------------------------------------------
# Single flight
# ---------------------------------------------------------------------------


class TestSingleFlight:
    async def test_concurrent_callers_share_one_fetch(self, cache, gateway, wait_until):
        gateway.read_gate = asyncio.Event()
        first = asyncio.create_task(cache.ensure_month(JAN_1))
        second = asyncio.create_task(cache.ensure_month(JAN_20))
        await wait_until(lambda: gateway.calls["list_schedules_for_medication"] == 1)

        gateway.read_gate.set()
        a, b = await asyncio.gather(first, second)

        assert a is b
        assert cache.fetch_count == 1
        assert gateway.calls["list_schedules_for_medication"] == 1

    async def test_cancelled_caller_does_not_cancel_fetch(self, cache, gateway, wait_until):
        gateway.read_gate = asyncio.Event()
        abandoned = asyncio.create_task(cache.ensure_month(JAN_1))
        await wait_until(lambda: gateway.calls["list_schedules_for_medication"] == 1)

        abandoned.cancel()
        with pytest.raises(asyncio.CancelledError):
            await abandoned

        gateway.read_gate.set()
        snapshot = await cache.ensure_month(JAN_1)
        assert snapshot.key == "2024-1"
        assert cache.fetch_count == 1

    async def test_invalidate_during_fetch_discards_result(self, cache, gateway, wait_until):
        gateway.read_gate = asyncio.Event()
        pending = asyncio.create_task(cache.ensure_month(JAN_1))
        await wait_until(lambda: gateway.calls["list_schedules_for_medication"] == 1)

        cache.invalidate()
        gateway.read_gate.set()
        snapshot = await pending

        assert snapshot.generation == cache.generation == 1
        assert cache.fetch_count == 2
        assert [s.generation for s in cache.snapshots] == [1]

    async def test_latest_request_owns_current_key(self, cache, gateway, wait_until):
        gateway.read_gate = asyncio.Event()
        january = asyncio.create_task(cache.ensure_month(JAN_1))
        await wait_until(lambda: gateway.calls["list_schedules_for_medication"] == 1)
        february = asyncio.create_task(cache.ensure_month(FEB_3))
        await wait_until(lambda: gateway.calls["list_schedules_for_medication"] == 2)

        gateway.read_gate.set()
        await asyncio.gather(february, january)

        assert cache.current_key == "2024-2"
        assert {s.key for s in cache.snapshots} == {"2024-1", "2024-2"}


# ---------------------------------------------------------------------------
# Failure
# ---------------------------------------------------------------------------


class TestFailure:
    async def test_failed_fetch_propagates_and_leaves_key_unset(self, cache, gateway):
        await cache.ensure_month(FEB_3)
        assert cache.current_key == "2024-2"

        gateway.fail_reads = 1
        with pytest.raises(StorageError):
            await cache.ensure_month(JAN_1)

        assert cache.current_key is None
        assert cache.peek(JAN_1) is None

        snapshot = await cache.ensure_month(JAN_1)
        assert snapshot.key == "2024-1"
        assert cache.current_key == "2024-1"

    async def test_all_waiters_see_the_failure(self, cache, gateway, wait_until):
        gateway.read_gate = asyncio.Event()
        gateway.fail_reads = 1
        tasks = [asyncio.create_task(cache.ensure_month(JAN_1)) for _ in range(3)]
        await wait_until(lambda: gateway.calls["list_schedules_for_medication"] == 1)

        gateway.read_gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, StorageError) for r in results)
        assert gateway.calls["list_schedules_for_medication"] == 1


# ---------------------------------------------------------------------------
# Retention and optimistic updates
# ---------------------------------------------------------------------------


class TestRetention:
    async def test_least_recently_used_month_evicted(self, gateway, seeded):
        medications = [seeded[0]]
        cache = MonthCache(gateway, lambda: medications, max_months=2)

        await cache.ensure_month(date(2024, 1, 5))
        await cache.ensure_month(date(2024, 2, 5))
        await cache.ensure_month(date(2024, 1, 6))  # touch January
        await cache.ensure_month(date(2024, 3, 5))

        assert [s.key for s in cache.snapshots] == ["2024-1", "2024-3"]
        assert cache.fetch_count == 3

    async def test_on_commit_sees_snapshot_first(self, gateway, seeded):
        medications = [seeded[0]]
        committed: list[MonthSnapshot] = []
        cache = MonthCache(gateway, lambda: medications, on_commit=committed.append)

        snapshot = await cache.ensure_month(JAN_1)
        assert committed == [snapshot]
        await cache.ensure_month(JAN_20)
        assert len(committed) == 1

    async def test_append_intake_log(self, cache, seeded):
        med, _, (morning, _) = seeded
        await cache.ensure_month(JAN_1)
        await cache.ensure_month(FEB_3)
        log = IntakeLog.create(morning.id, taken_ts=timestamp_for(JAN_20, 8, 0))

        assert cache.append_intake_log(med.id, log) == 1
        assert cache.append_intake_log(med.id, log) == 0
        assert cache.peek(JAN_1).intake_logs[med.id] == [log]
        assert cache.peek(FEB_3).intake_logs[med.id] == []

    async def test_new_medication_appears_after_invalidate(self, gateway, seeded):
        medications = [seeded[0]]
        cache = MonthCache(gateway, lambda: medications)
        await cache.ensure_month(JAN_1)

        other = gateway.add_medication("Aspirin")
        gateway.add_schedule(other, ("07:00",), start_date=start_of_day_ms(JAN_1))
        medications.append(other)
        cache.invalidate()

        entries = await cache.entries_for_day(JAN_20)
        assert [e.medication.name for e in entries] == ["Aspirin", "Metformin", "Metformin"]
