# src/taskcore/tasks/sweep.py

from __future__ import annotations

"""
Overdue sweep.

One run:
- recovers batches left open by a crash (delivered -> commit, undelivered -> discard),
- fetches overdue-and-unnotified tasks,
- stages a durable batch, sends one summary notification through the Notifier port,
- commits: marks every included task notified at the run's `now`.

Any failure before the commit leaves the tasks unmarked, so the next period
notifies them again (duplicates over silent loss).

The periodic loop and the background-thread runner live here too; delivery
formatting beyond title/body belongs to the notifier, not the sweep.
"""

import asyncio
import contextlib
import logging
import os
import threading
from collections.abc import Callable, Coroutine, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from ..core.ports import Notifier
from ..data.gateway import TaskCoreDB
from ..data.models import Task
from ..errors import PersistenceError
from .dates import now_ms
from .repository import TaskRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_INTERVAL_SECONDS = 3600.0
MAX_TITLES_IN_BODY = 20


@dataclass(slots=True, frozen=True)
class SweepResult:
    notified_ids: tuple[int, ...] = ()
    recovered_ids: tuple[int, ...] = ()
    skipped: bool = False


def build_summary(tasks: Sequence[Task], *, max_titles: int = MAX_TITLES_IN_BODY) -> tuple[str, str]:
    """Title with the count, body with one title per line (soonest overdue first)."""
    title = f"Overdue tasks: {len(tasks)}"
    lines = [f"- {t.title}" for t in tasks[:max_titles]]
    rest = len(tasks) - max_titles
    if rest > 0:
        lines.append(f"... and {rest} more")
    return title, "\n".join(lines)


class OverdueSweep:
    """
    Stateless, idempotent overdue job. Runs are serialized: a run requested while
    another is in progress is coalesced (returns a skipped result), not queued.
    """

    def __init__(
        self,
        repository: TaskRepository,
        db: TaskCoreDB,
        notifier: Notifier,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._repo = repository
        self._db = db
        self._notifier = notifier
        self._clock = clock
        # threading.Lock: console commands and the periodic loop may use different loops.
        self._running = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    async def run_once(self) -> SweepResult:
        if not self._running.acquire(blocking=False):
            logger.info("Overdue sweep already running; this run is coalesced")
            return SweepResult(skipped=True)
        try:
            return await self._run()
        finally:
            self._running.release()

    def _recover(self) -> tuple[int, ...]:
        recovered: list[int] = []
        for batch in self._db.list_open_batches():
            if batch.delivered_at is not None:
                # Delivered before a crash: commit without delivering again.
                self._repo.mark_notified(batch.task_ids, batch.staged_at, batch_id=batch.id)
                recovered.extend(batch.task_ids)
                logger.info("Recovered notification batch %s (tasks=%s)", batch.id, list(batch.task_ids))
            else:
                self._db.discard_batch(batch.id)
                logger.warning(
                    "Discarded unconfirmed notification batch %s; its tasks will be notified again",
                    batch.id,
                )
        return tuple(recovered)

    async def _run(self) -> SweepResult:
        now = self._clock()
        # Recovered batches keep their own staged_at stamp, not this run's now.
        recovered = await asyncio.to_thread(self._recover)

        overdue = await asyncio.to_thread(self._repo.find_overdue_unnotified, now)
        if not overdue:
            logger.debug("Overdue sweep: nothing to notify")
            return SweepResult(recovered_ids=recovered)

        ids = [t.id for t in overdue]
        title, body = build_summary(overdue)

        batch_id = await asyncio.to_thread(
            self._db.stage_batch, task_ids=ids, title=title, body=body, staged_at=now
        )

        try:
            await self._notifier.notify(title, body)
        except Exception:
            logger.exception("Overdue notification failed (batch=%s); nothing marked", batch_id)
            with contextlib.suppress(PersistenceError):
                await asyncio.to_thread(self._db.discard_batch, batch_id)
            raise

        await asyncio.to_thread(self._db.mark_batch_delivered, batch_id, at=now)
        marked = await asyncio.to_thread(self._repo.mark_notified, ids, now, batch_id=batch_id)

        logger.info("Overdue sweep notified %d task(s) (marked=%d batch=%s)", len(ids), marked, batch_id)
        return SweepResult(notified_ids=tuple(ids), recovered_ids=recovered)


def load_average_gate(max_load: float) -> Callable[[], bool]:
    """
    Resource gate for the periodic loop: run only while the 1-minute load average
    is at most `max_load`. A non-positive ceiling disables the gate.
    """

    def can_run() -> bool:
        if max_load <= 0:
            return True
        try:
            load1, _, _ = os.getloadavg()
        except (AttributeError, OSError):
            return True
        return load1 <= max_load

    return can_run


async def run_overdue_scheduler(
    sweep: OverdueSweep,
    *,
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    can_run: Callable[[], bool] | None = None,
    housekeeping: Sequence[Callable[[], object]] = (),
) -> None:
    """
    Periodic loop.

    Every interval_seconds:
    - skip the period if can_run() says resources are low,
    - run the sweep (failures are logged; the next period retries),
    - run housekeeping jobs (e.g. attachment orphan reconciliation) in a thread.

    Never runs faster than the period. To stop, cancel the coroutine/task.
    """
    sleep_s = max(0.01, float(interval_seconds))

    while True:
        if can_run is not None and not can_run():
            logger.info("Overdue sweep skipped this period (resource gate)")
        else:
            try:
                await sweep.run_once()
            except Exception:
                logger.exception("Overdue sweep failed; will retry next period")

            for job in housekeeping:
                try:
                    await asyncio.to_thread(job)
                except Exception:
                    logger.exception("Housekeeping job failed")

        await asyncio.sleep(sleep_s)


@dataclass
class SchedulerBackgroundRunner:
    thread: threading.Thread
    loop: asyncio.AbstractEventLoop
    stop_event: asyncio.Event

    def run(self, coro: Coroutine[Any, Any, T], timeout: float | None = None) -> T:
        """Run a coroutine on the scheduler loop from another thread and wait for it."""
        fut = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return fut.result(timeout=timeout)

    def stop(self) -> None:
        try:
            self.loop.call_soon_threadsafe(self.stop_event.set)
        except RuntimeError:
            logger.debug("Failed to signal scheduler stop.", exc_info=True)

    def join(self, timeout: float | None = None) -> None:
        self.thread.join(timeout=timeout)


def start_scheduler_in_background(
    sweep: OverdueSweep,
    *,
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    can_run: Callable[[], bool] | None = None,
    housekeeping: Sequence[Callable[[], object]] = (),
) -> SchedulerBackgroundRunner | None:
    """
    Start the periodic sweep in a background thread with its own event loop,
    so the blocking console REPL can run in the main thread.
    """
    ready = threading.Event()
    holder: dict[str, object] = {}

    async def _main(stop_event: asyncio.Event) -> None:
        task = asyncio.create_task(
            run_overdue_scheduler(
                sweep,
                interval_seconds=interval_seconds,
                can_run=can_run,
                housekeeping=housekeeping,
            )
        )
        try:
            await stop_event.wait()
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            logger.info("Overdue scheduler stopped.")

    def runner() -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        stop_event = asyncio.Event()

        holder["loop"] = loop
        holder["stop_event"] = stop_event
        ready.set()

        try:
            loop.run_until_complete(_main(stop_event))
        finally:
            with contextlib.suppress(Exception):
                loop.close()

    t = threading.Thread(target=runner, name="overdue-scheduler", daemon=True)
    t.start()

    ready.wait(timeout=5.0)
    loop = holder.get("loop")
    stop_event = holder.get("stop_event")

    if not isinstance(loop, asyncio.AbstractEventLoop) or not isinstance(stop_event, asyncio.Event):
        logger.error("Scheduler thread did not initialize properly.")
        return None

    logger.info("Overdue scheduler started (interval=%ss).", interval_seconds)
    return SchedulerBackgroundRunner(thread=t, loop=loop, stop_event=stop_event)
