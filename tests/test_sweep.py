# tests/test_sweep.py

from __future__ import annotations

import asyncio

import pytest

from taskcore.data.models import TaskDraft
from taskcore.tasks.sweep import (
    OverdueSweep,
    build_summary,
    load_average_gate,
    run_overdue_scheduler,
)

from .conftest import NOW_MS
from .fakes import FakeNotifier


@pytest.fixture()
def sweep(repo, db, notifier, clock) -> OverdueSweep:
    return OverdueSweep(repo, db, notifier, clock=clock)


@pytest.mark.asyncio
async def test_overdue_task_is_notified_once(sweep, repo, make_task, notifier: FakeNotifier) -> None:
    late = make_task("late report", due="2024-06-14")
    make_task("not yet", due="2024-06-16")

    result = await sweep.run_once()

    assert result.notified_ids == (late.id,)
    assert len(notifier.sent) == 1
    assert notifier.sent[0].title == "Overdue tasks: 1"
    assert "late report" in notifier.sent[0].body
    assert repo.get(late.id).overdue_notified_at == NOW_MS

    again = await sweep.run_once()
    assert again.notified_ids == ()
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_done_tasks_are_never_notified(sweep, make_task, notifier: FakeNotifier) -> None:
    make_task("finished", due="2024-06-01", status="DONE")

    result = await sweep.run_once()

    assert result.notified_ids == ()
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_empty_run_writes_nothing(sweep, db, make_task, notifier: FakeNotifier) -> None:
    task = make_task(due="2024-06-30")

    await sweep.run_once()

    assert notifier.sent == []
    assert db.get_task(task.id).version == 1
    assert db.list_open_batches() == []


@pytest.mark.asyncio
async def test_failed_delivery_marks_nothing(sweep, repo, db, make_task, notifier: FakeNotifier) -> None:
    late = make_task(due="2024-06-14")
    notifier.fail = True

    with pytest.raises(RuntimeError):
        await sweep.run_once()

    assert repo.get(late.id).overdue_notified_at is None
    assert db.list_open_batches() == []

    # Next period delivers it.
    notifier.fail = False
    result = await sweep.run_once()
    assert result.notified_ids == (late.id,)
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_delivered_batch_is_committed_without_redelivery(
    sweep, repo, db, make_task, notifier: FakeNotifier
) -> None:
    late = make_task(due="2024-06-14")
    # A previous process delivered this batch and crashed before the commit.
    staged_at = NOW_MS - 1_000
    batch_id = db.stage_batch(task_ids=[late.id], title="Overdue tasks: 1", body="- x", staged_at=staged_at)
    db.mark_batch_delivered(batch_id, at=staged_at)

    result = await sweep.run_once()

    assert result.recovered_ids == (late.id,)
    assert result.notified_ids == ()
    assert notifier.sent == []
    assert repo.get(late.id).overdue_notified_at == staged_at
    assert db.list_open_batches() == []


@pytest.mark.asyncio
async def test_undelivered_batch_is_discarded_and_retried(
    sweep, repo, db, make_task, notifier: FakeNotifier
) -> None:
    late = make_task(due="2024-06-14")
    db.stage_batch(task_ids=[late.id], title="Overdue tasks: 1", body="- x", staged_at=NOW_MS - 1_000)

    result = await sweep.run_once()

    assert result.recovered_ids == ()
    assert result.notified_ids == (late.id,)
    assert len(notifier.sent) == 1
    assert db.list_open_batches() == []


@pytest.mark.asyncio
async def test_overlapping_runs_are_coalesced(sweep, make_task, notifier: FakeNotifier) -> None:
    make_task(due="2024-06-14")
    notifier.gate = asyncio.Event()

    first = asyncio.create_task(sweep.run_once())
    await asyncio.sleep(0)
    assert sweep.is_running

    second = await sweep.run_once()
    assert second.skipped

    notifier.gate.set()
    result = await first
    assert len(result.notified_ids) == 1
    assert len(notifier.sent) == 1
    assert not sweep.is_running


@pytest.mark.asyncio
async def test_edit_racing_the_sweep_keeps_the_mark(
    sweep, repo, db, make_task, notifier: FakeNotifier
) -> None:
    late = make_task("late", due="2024-06-14")
    notifier.gate = asyncio.Event()

    run = asyncio.create_task(sweep.run_once())
    for _ in range(200):
        if await asyncio.to_thread(db.list_open_batches):
            break
        await asyncio.sleep(0.01)

    # The user renames the task while the notification is in flight.
    await asyncio.to_thread(repo.update, late.id, TaskDraft(title="renamed", due_date="2024-06-14"))

    notifier.gate.set()
    await run

    stored = repo.get(late.id)
    assert stored.title == "renamed"
    assert stored.overdue_notified_at == NOW_MS


def test_summary_lists_titles_and_truncates() -> None:
    class T:
        def __init__(self, title: str) -> None:
            self.title = title

    title, body = build_summary([T(f"t{i}") for i in range(25)], max_titles=20)

    assert title == "Overdue tasks: 25"
    lines = body.splitlines()
    assert lines[0] == "- t0"
    assert len(lines) == 21
    assert lines[-1] == "... and 5 more"


def test_load_average_gate() -> None:
    assert load_average_gate(0)() is True
    assert load_average_gate(1e9)() is True


@pytest.mark.asyncio
async def test_scheduler_runs_sweep_and_housekeeping(sweep, make_task, notifier: FakeNotifier) -> None:
    make_task(due="2024-06-14")
    housekeeping_calls: list[int] = []

    runner = asyncio.create_task(
        run_overdue_scheduler(
            sweep,
            interval_seconds=0.01,
            housekeeping=[lambda: housekeeping_calls.append(1)],
        )
    )

    await asyncio.sleep(0.2)
    runner.cancel()
    with pytest.raises(asyncio.CancelledError):
        await runner

    assert len(notifier.sent) == 1, "Overdue tasks are notified once across periods"
    assert housekeeping_calls


@pytest.mark.asyncio
async def test_scheduler_skips_periods_when_gated(sweep, make_task, notifier: FakeNotifier) -> None:
    make_task(due="2024-06-14")

    runner = asyncio.create_task(
        run_overdue_scheduler(sweep, interval_seconds=0.01, can_run=lambda: False)
    )

    await asyncio.sleep(0.05)
    runner.cancel()
    with pytest.raises(asyncio.CancelledError):
        await runner

    assert notifier.sent == []


@pytest.mark.asyncio
async def test_scheduler_survives_failed_periods(sweep, make_task, notifier: FakeNotifier) -> None:
    make_task(due="2024-06-14")
    notifier.fail = True

    runner = asyncio.create_task(run_overdue_scheduler(sweep, interval_seconds=0.01))
    await asyncio.sleep(0.05)
    notifier.fail = False
    await asyncio.sleep(0.2)
    runner.cancel()
    with pytest.raises(asyncio.CancelledError):
        await runner

    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_recovered_and_fresh_tasks_keep_their_own_stamps(
    sweep, repo, db, make_task, notifier: FakeNotifier
) -> None:
    old = make_task("old", due="2024-06-12")
    staged_at = NOW_MS - 3_600_000
    batch_id = db.stage_batch(task_ids=[old.id], title="Overdue tasks: 1", body="- old", staged_at=staged_at)
    db.mark_batch_delivered(batch_id, at=staged_at)
    fresh = make_task("fresh", due="2024-06-14")

    result = await sweep.run_once()

    assert result.recovered_ids == (old.id,)
    assert result.notified_ids == (fresh.id,)
    assert repo.get(old.id).overdue_notified_at == staged_at
    assert repo.get(fresh.id).overdue_notified_at == NOW_MS
    assert [n.body for n in notifier.sent] == ["- fresh"]
