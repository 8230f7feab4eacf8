"""Tests for scheduled imports and next-run computation."""

from datetime import datetime, timedelta

import pytest

from flowsentry.contracts import ImportResult
from flowsentry.monitoring import ScheduledImportCheck, next_run_time
from flowsentry.persistence import ExecutionStatus, ImportSchedule, InMemoryWorkflowRepository

NOW = datetime(2026, 5, 4, 12, 0)


@pytest.mark.parametrize(
    "fields,expected",
    [
        ({"schedule_type": "interval", "interval_minutes": 15}, NOW + timedelta(minutes=15)),
        ({"schedule_type": "Daily"}, NOW + timedelta(days=1)),
        ({"schedule_type": "weekly"}, NOW + timedelta(days=7)),
        ({"schedule_type": "cron", "cron_expression": "30 13 * * *"}, datetime(2026, 5, 4, 13, 30)),
        ({"schedule_type": "cron", "cron_expression": "0 9 * * 1"}, datetime(2026, 5, 11, 9, 0)),
        ({"schedule_type": "cron", "cron_expression": "not a cron"}, None),
        ({"schedule_type": "interval"}, None),
        ({"schedule_type": "monthly"}, None),
    ],
)
def test_next_run_time(fields, expected):
    assert next_run_time(ImportSchedule(**fields), NOW) == expected


async def _schedule(repo, **fields):
    schedule = ImportSchedule(
        name=fields.pop("name", "contacts"),
        import_type=fields.pop("import_type", "csv"),
        schedule_type="interval",
        interval_minutes=15,
        **fields,
    )
    await repo.save_import_schedule(schedule)
    return schedule


@pytest.mark.asyncio
async def test_due_import_runs_and_advances(repo):
    imported = []

    async def csv_importer(schedule):
        imported.append(schedule.id)
        return ImportResult(total_records=5, success_count=5)

    schedule = await _schedule(repo, next_run_at=NOW - timedelta(minutes=1))
    check = ScheduledImportCheck(repo, {"csv": csv_importer})

    tally = await check.run(NOW)
    assert tally.success_count == 1
    assert imported == [schedule.id]
    stored = await repo.get_import_schedule(schedule.id)
    assert stored.last_run_at == NOW
    assert stored.next_run_at == NOW + timedelta(minutes=15)
    executions = await repo.list_import_executions(schedule.id)
    assert [e.status for e in executions] == [ExecutionStatus.SUCCESS]
    assert executions[0].total_records == 5

    # not due again until the next slot
    tally = await check.run(NOW + timedelta(minutes=14))
    assert tally.total_items == 0
    tally = await check.run(NOW + timedelta(minutes=15))
    assert tally.success_count == 1
    assert len(imported) == 2


@pytest.mark.asyncio
async def test_failed_import_still_advances(repo):
    async def broken(schedule):
        raise ValueError("bad header row")

    schedule = await _schedule(repo, next_run_at=NOW)
    tally = await ScheduledImportCheck(repo, {"csv": broken}).run(NOW)

    assert tally.failed_count == 1
    stored = await repo.get_import_schedule(schedule.id)
    assert stored.next_run_at == NOW + timedelta(minutes=15)
    execution = (await repo.list_import_executions(schedule.id))[0]
    assert execution.status == ExecutionStatus.FAILED
    assert execution.error_message == "bad header row"
    assert execution.completed_at == NOW


@pytest.mark.asyncio
async def test_inactive_or_unscheduled_imports_are_skipped(repo):
    async def importer(schedule):
        raise AssertionError("should not run")

    await _schedule(repo, next_run_at=NOW, is_active=False)
    await _schedule(repo, next_run_at=NOW, status="Paused")
    await _schedule(repo, next_run_at=None)
    await _schedule(repo, next_run_at=NOW + timedelta(minutes=1))
    tally = await ScheduledImportCheck(repo, {"csv": importer}).run(NOW)
    assert tally.total_items == 0


@pytest.mark.asyncio
async def test_importer_reported_error_marks_failure(repo):
    async def partial(schedule):
        return ImportResult(total_records=3, success_count=2, failed_count=1, error_message="row 3 invalid")

    schedule = await _schedule(repo, next_run_at=NOW, import_type="xlsx")
    tally = await ScheduledImportCheck(repo, {"xlsx": partial}).run(NOW)

    assert tally.failed_count == 1
    execution = (await repo.list_import_executions(schedule.id))[0]
    assert execution.status == ExecutionStatus.FAILED
    assert execution.success_count == 2


class _BrokenExecutionLog(InMemoryWorkflowRepository):
    """Fails to record executions of the schedule named ``broken``."""

    async def save_import_execution(self, execution):
        schedule = await self.get_import_schedule(execution.schedule_id)
        if schedule.name == "broken":
            raise ConnectionError("database went away")
        await super().save_import_execution(execution)


@pytest.mark.asyncio
async def test_failed_bookkeeping_does_not_stop_other_schedules():
    repo = _BrokenExecutionLog()
    imported = []

    async def importer(schedule):
        imported.append(schedule.name)
        return ImportResult(total_records=1, success_count=1)

    broken = await _schedule(repo, name="broken", next_run_at=NOW - timedelta(minutes=2))
    healthy = await _schedule(repo, name="healthy", next_run_at=NOW - timedelta(minutes=1))
    tally = await ScheduledImportCheck(repo, {"csv": importer}).run(NOW)

    assert tally.total_items == 2
    assert tally.success_count == 1
    assert tally.failed_count == 1
    assert "database went away" in tally.errors[0]
    assert imported == ["healthy"]
    assert (await repo.get_import_schedule(healthy.id)).next_run_at == NOW + timedelta(minutes=15)
    # left due, so the next tick tries again
    assert (await repo.get_import_schedule(broken.id)).next_run_at == NOW - timedelta(minutes=2)
