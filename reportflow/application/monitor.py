"""Progress monitoring for externally executed jobs.

Push events and periodic polls for a job feed one handler per observation
session. Each session owns its completion latch, so ``on_complete`` fires at
most once however many terminal signals race in, and a retry opens a fresh
session with a fresh latch.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable

from reportflow.core.config import Settings
from reportflow.core.errors import StaleJobError, SubscriptionError
from reportflow.domain import ProgressRecord, ProgressSnapshot, utcnow
from reportflow.infrastructure import ProgressStore, ProgressSubscription

from .dispatcher import build_seed_record

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[ProgressSnapshot], Any]
CompleteCallback = Callable[[bool], Any]
StaleCallback = Callable[[StaleJobError], Any]
ErrorCallback = Callable[[SubscriptionError], Any]


async def _invoke(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


def clamp_progress(value: object) -> int:
    try:
        number = int(float(value))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, number))


class ObservationSession:
    """One subscription to a job's progress; see :meth:`ProgressMonitor.observe`."""

    def __init__(
        self,
        job_id: str,
        store: ProgressStore,
        settings: Settings,
        clock: Callable[[], datetime],
        *,
        on_update: UpdateCallback | None,
        on_complete: CompleteCallback | None,
        on_stale: StaleCallback | None = None,
        on_slow: UpdateCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self.job_id = job_id
        self._store = store
        self._settings = settings
        self._clock = clock
        self._on_update = on_update
        self._on_complete = on_complete
        self._on_stale = on_stale
        self._on_slow = on_slow
        self._on_error = on_error

        self._completed = False
        self._closed = False
        self.outcome: str | None = None

        self._started_at = clock()
        self._last_activity: datetime | None = None
        self._newest_seen: datetime | None = None
        self._seen: set[str] = set()
        self._snapshot = ProgressSnapshot(job_id=job_id)

        self._subscription: ProgressSubscription | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._lock = asyncio.Lock()
        self._done = asyncio.Event()
        self._poll_count = 0
        self._resubscribe_attempts = 0
        self._slow_reported = False

    # ------------------------------------------------------------------
    # public surface
    # ------------------------------------------------------------------
    @property
    def snapshot(self) -> ProgressSnapshot:
        return self._snapshot

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def finished(self) -> bool:
        return self._completed or self._closed

    @property
    def poll_count(self) -> int:
        return self._poll_count

    @property
    def resubscribe_attempts(self) -> int:
        return self._resubscribe_attempts

    def unsubscribe(self) -> None:
        """Close the channel and cancel timers. Safe to call repeatedly."""

        if self._closed:
            return
        self._closed = True
        if self.outcome is None:
            self.outcome = "cancelled"
            logger.info(f"Stopped observing job {self.job_id}")
        self._teardown()
        self._done.set()

    async def wait(self) -> str | None:
        """Wait until the session completes, goes stale or is unsubscribed."""

        await self._done.wait()
        return self.outcome

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        # Subscribe before the point read so inserts landing in between are
        # delivered; duplicates are dropped by record id.
        self._subscription = await self._store.subscribe(self.job_id)

        latest = await self._store.latest(self.job_id)
        if latest is None:
            logger.info(f"No progress record for job {self.job_id}; writing seed record")
            latest = await self._store.append(build_seed_record(self.job_id, now=self._clock()))
        await self._handle(latest)
        if self.finished:
            return
        if await self._check_stale():
            return

        self._tasks.append(asyncio.create_task(self._push_loop(), name=f"progress-push-{self.job_id}"))
        self._tasks.append(asyncio.create_task(self._poll_loop(), name=f"progress-poll-{self.job_id}"))

    def _teardown(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        self._tasks.clear()

    # ------------------------------------------------------------------
    # event handling
    # ------------------------------------------------------------------
    def _normalise(self, record: ProgressRecord) -> ProgressSnapshot:
        status = record.status
        progress = clamp_progress(record.progress)
        if status == "completed":
            progress = 100
        elif status == "generating":
            if progress >= 100:
                status = "completed"
            elif self._snapshot.status == "generating":
                progress = max(progress, self._snapshot.progress)
        return ProgressSnapshot(
            job_id=self.job_id,
            status=status,
            message=record.message,
            progress=progress,
            slow=self._snapshot.slow,
        )

    async def _handle(self, record: ProgressRecord) -> None:
        async with self._lock:
            if self.finished:
                return
            if record.record_id is not None:
                if record.record_id in self._seen:
                    return
                self._seen.add(record.record_id)

            terminal = record.is_terminal
            if not terminal and self._newest_seen is not None and record.created_at < self._newest_seen:
                logger.debug(f"Dropping out-of-order record {record.record_id} for job {self.job_id}")
                return
            if self._newest_seen is None or record.created_at > self._newest_seen:
                self._newest_seen = record.created_at
                self._last_activity = record.created_at

            self._snapshot = self._normalise(record)
            await _invoke(self._on_update, self._snapshot)

            if terminal:
                await self._finish(success=record.status != "error")

    async def _finish(self, *, success: bool) -> None:
        if self._completed:
            return
        self._completed = True
        self.outcome = "completed" if success else "error"
        logger.info(f"Job {self.job_id} finished ({self.outcome})")
        self._teardown()
        try:
            await _invoke(self._on_complete, success)
        finally:
            self._done.set()

    async def _check_stale(self) -> bool:
        async with self._lock:
            if self.finished:
                return False
            reference = self._last_activity or self._started_at
            if self._clock() - reference <= self._settings.stale_after:
                return False

            self._completed = True
            self.outcome = "stale"
            error = StaleJobError(self.job_id)
            self._snapshot = replace(self._snapshot, status="error", message=str(error))
            logger.warning(f"Job {self.job_id} has had no progress since {reference.isoformat()}; treating as stale")
            self._teardown()
            try:
                if self._on_stale is not None:
                    await _invoke(self._on_stale, error)
                else:
                    await _invoke(self._on_complete, False)
            finally:
                self._done.set()
            return True

    # ------------------------------------------------------------------
    # background loops
    # ------------------------------------------------------------------
    async def _push_loop(self) -> None:
        try:
            while not self.finished:
                subscription = self._subscription
                if subscription is None:
                    subscription = await self._store.subscribe(self.job_id)
                    if self.finished:
                        subscription.close()
                        return
                    self._subscription = subscription
                try:
                    async for record in subscription:
                        await self._handle(record)
                        if self.finished:
                            return
                    return
                except SubscriptionError as exc:
                    self._subscription = None
                    if self.finished:
                        return
                    self._resubscribe_attempts += 1
                    if self._resubscribe_attempts > self._settings.max_resubscribe_attempts:
                        logger.error(
                            f"Progress channel for job {self.job_id} failed "
                            f"{self._resubscribe_attempts} times; relying on polling"
                        )
                        await _invoke(
                            self._on_error,
                            SubscriptionError(f"Live progress updates unavailable for job {self.job_id}: {exc}"),
                        )
                        return
                    logger.warning(
                        f"Progress channel for job {self.job_id} dropped ({exc}); "
                        f"resubscribing in {self._settings.resubscribe_delay}s "
                        f"(attempt {self._resubscribe_attempts}/{self._settings.max_resubscribe_attempts})"
                    )
                    await asyncio.sleep(self._settings.resubscribe_delay)
                    if self.finished:
                        return
                    latest = await self._store.latest(self.job_id)
                    if latest is not None:
                        await self._handle(latest)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Progress push loop for job {self.job_id} crashed")

    async def _poll_loop(self) -> None:
        try:
            while not self.finished:
                await asyncio.sleep(self._settings.poll_interval)
                if self.finished:
                    return
                self._poll_count += 1
                latest = await self._store.latest(self.job_id)
                if latest is not None:
                    await self._handle(latest)
                if self.finished or await self._check_stale():
                    return
                if not self._slow_reported and self._poll_count >= self._settings.poll_attempt_budget:
                    self._slow_reported = True
                    self._snapshot = replace(self._snapshot, slow=True)
                    logger.info(f"Job {self.job_id} still running after {self._poll_count} polls")
                    await _invoke(self._on_slow, self._snapshot)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Progress poll loop for job {self.job_id} crashed")


class ProgressMonitor:
    """Creates observation sessions over a progress store."""

    def __init__(
        self,
        store: ProgressStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock

    async def observe(
        self,
        job_id: str,
        on_update: UpdateCallback | None,
        on_complete: CompleteCallback | None,
        *,
        on_stale: StaleCallback | None = None,
        on_slow: UpdateCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> ObservationSession:
        """Start observing ``job_id``; call ``unsubscribe()`` on the result to stop.

        The latest record is read (or seeded) and delivered before this
        returns, so a job that already finished completes immediately.
        """

        session = ObservationSession(
            job_id,
            self._store,
            self._settings,
            self._clock,
            on_update=on_update,
            on_complete=on_complete,
            on_stale=on_stale,
            on_slow=on_slow,
            on_error=on_error,
        )
        await session.start()
        return session

    async def is_stale(self, job_id: str) -> bool:
        """True when the job has no record, or its newest record is non-terminal and too old."""

        latest = await self._store.latest(job_id)
        if latest is None:
            return True
        if latest.is_terminal:
            return False
        return self._clock() - latest.created_at > self._settings.stale_after
