import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable

import structlog

from .errors import FailureKind
from .models import ConversionJob, Failed, JobState, Outcome

log = structlog.get_logger(__name__)

JobHandler = Callable[[ConversionJob], Awaitable[Outcome]]


@dataclass
class QueueEntry:
    job: ConversionJob
    future: "asyncio.Future[Outcome]"


class ConversionQueue:
    """Serialises conversion jobs: FIFO, one in flight, cooldown in between.

    All state transitions happen between awaits on the event loop, so the
    pending deque and the busy flag are never observed half-updated.
    """

    def __init__(self, handler: JobHandler, *, cooldown: float = 1.0) -> None:
        self._handler = handler
        self._cooldown = cooldown
        self._pending: deque[QueueEntry] = deque()
        self._busy = False
        self._active: QueueEntry | None = None
        self._task: asyncio.Task | None = None
        self._closed = False

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def active_job_id(self) -> str | None:
        return self._active.job.id if self._active else None

    def position(self, job_id: str) -> int | None:
        """0 for the running job, 1.. for waiting jobs, None if unknown."""
        if self.active_job_id == job_id:
            return 0
        for index, entry in enumerate(self._pending, start=1):
            if entry.job.id == job_id:
                return index
        return None

    async def enqueue(self, job: ConversionJob) -> Outcome:
        future: asyncio.Future[Outcome] = asyncio.get_running_loop().create_future()
        entry = QueueEntry(job=job, future=future)
        if self._closed:
            log.warning("queue.rejected_closed", job_id=job.id)
            self._settle(entry, self._closed_failure())
            return entry.future.result()
        job.state = JobState.QUEUED
        self._pending.append(entry)
        log.info("queue.enqueued", job_id=job.id, pending=len(self._pending), busy=self._busy)
        self._drain()
        # the job keeps its slot even if this caller stops waiting
        return await asyncio.shield(future)

    def _drain(self) -> None:
        if self._closed or self._busy or not self._pending:
            return
        entry = self._pending.popleft()
        self._busy = True
        self._active = entry
        self._task = asyncio.create_task(self._run(entry), name=f"conversion-{entry.job.id}")

    async def _run(self, entry: QueueEntry) -> None:
        job = entry.job
        job.state = JobState.RUNNING
        started = asyncio.get_running_loop().time()
        log.info("queue.dispatched", job_id=job.id, pending=len(self._pending))
        try:
            try:
                outcome = await self._handler(job)
            except asyncio.CancelledError:
                self._settle(entry, self._internal_failure(job, "conversion cancelled during shutdown", started))
                raise
            except Exception as e:
                log.exception("queue.handler_crashed", job_id=job.id)
                outcome = self._internal_failure(job, f"{type(e).__name__}: {e}", started)

            self._settle(entry, outcome)
            # let the converter's OS resources settle before the next dispatch
            await asyncio.sleep(self._cooldown)
        finally:
            self._active = None
            self._busy = False
            self._drain()

    def _settle(self, entry: QueueEntry, outcome: Outcome) -> None:
        if entry.job.outcome is None:
            entry.job.resolve(outcome)
        if not entry.future.done():
            entry.future.set_result(outcome)
        log.info("queue.resolved", job_id=entry.job.id, state=entry.job.state)

    @staticmethod
    def _closed_failure() -> Failed:
        return Failed(kind=FailureKind.INTERNAL, message="queue closed", duration_ms=0)

    @staticmethod
    def _internal_failure(job: ConversionJob, message: str, started: float) -> Failed:
        duration_ms = int((asyncio.get_running_loop().time() - started) * 1000)
        return Failed(kind=FailureKind.INTERNAL, message=message, duration_ms=duration_ms)

    async def close(self) -> None:
        """Wait for the in-flight job; pending jobs resolve as InternalError."""
        self._closed = True
        while self._pending:
            entry = self._pending.popleft()
            self._settle(entry, self._closed_failure())
        if self._task is not None and not self._task.done():
            await asyncio.gather(self._task, return_exceptions=True)
