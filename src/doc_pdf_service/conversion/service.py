import asyncio
from typing import TYPE_CHECKING
from urllib.parse import urlparse

import structlog

from .adapters import HttpFetcher
from .errors import ConversionError, DownloadError
from .interfaces import InputFetcher, Notifier
from .models import Completed, ConversionJob, Failed, Outcome
from .notifier import CallbackNotifier
from .queue import ConversionQueue
from .staging import ArtifactStaging
from .supervisor import ProcessSupervisor

if TYPE_CHECKING:
    from ..config import ServiceConfig

log = structlog.get_logger(__name__)


class ConversionService:
    """Core domain service orchestrating conversion jobs.

    This service is framework-agnostic. Synchronous callers await `convert`;
    asynchronous callers `submit` a job with a callback URL and get the job
    back immediately. Either way the job goes through the single
    ConversionQueue: fetch input, stage it, supervise the converter, release
    the staging paths.
    """

    def __init__(
        self,
        fetcher: InputFetcher,
        staging: ArtifactStaging,
        supervisor: ProcessSupervisor,
        notifier: Notifier,
        *,
        default_deadline: float = 60.0,
        cooldown: float = 1.0,
    ) -> None:
        self._fetcher = fetcher
        self._staging = staging
        self._supervisor = supervisor
        self._notifier = notifier
        self._default_deadline = default_deadline
        self._queue = ConversionQueue(self._execute, cooldown=cooldown)
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config: "ServiceConfig") -> "ConversionService":
        return cls(
            fetcher=HttpFetcher(timeout=config.download_timeout_sec),
            staging=ArtifactStaging(config.staging_dir),
            supervisor=ProcessSupervisor(
                config.converter_command,
                convert_to=config.convert_to,
                output_extension=config.output_extension,
                grace_period=config.kill_grace_sec,
                buffer_limit=config.output_buffer_bytes,
            ),
            notifier=CallbackNotifier(
                secret=config.webhook_secret,
                secret_header=config.webhook_secret_header,
                timeout=config.callback_timeout_sec,
            ),
            default_deadline=config.job_timeout_sec,
            cooldown=config.queue_cooldown_sec,
        )

    @property
    def queue(self) -> ConversionQueue:
        return self._queue

    async def start(self) -> None:
        self._spawn(self._supervisor.probe())

    async def stop(self) -> None:
        await self._queue.close()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def new_job(
        self,
        input_ref: str,
        *,
        deadline_ms: int | None = None,
        order_id: str | None = None,
        callback_url: str | None = None,
    ) -> ConversionJob:
        if deadline_ms is not None and deadline_ms <= 0:
            raise ValueError("deadline_ms must be positive")
        deadline = deadline_ms / 1000 if deadline_ms is not None else self._default_deadline
        return ConversionJob(
            input_ref=input_ref,
            deadline=deadline,
            order_id=order_id,
            callback_url=callback_url,
        )

    async def convert(self, input_ref: str, *, deadline_ms: int | None = None) -> Outcome:
        job = self.new_job(input_ref, deadline_ms=deadline_ms)
        return await self._queue.enqueue(job)

    async def submit(
        self,
        input_ref: str,
        callback_url: str,
        *,
        deadline_ms: int | None = None,
        order_id: str | None = None,
    ) -> ConversionJob:
        job = self.new_job(input_ref, deadline_ms=deadline_ms, order_id=order_id, callback_url=callback_url)
        self._spawn(self._convert_and_notify(job, callback_url))
        log.info("job.submitted", job_id=job.id, order_id=order_id, callback_url=callback_url)
        return job

    def status(self, job_id: str) -> dict[str, object]:
        position = self._queue.position(job_id)
        if position is None:
            return {"status": "unknown"}
        if position == 0:
            return {"status": "running"}
        return {"status": "queued", "position": position}

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _convert_and_notify(self, job: ConversionJob, callback_url: str) -> None:
        outcome = await self._queue.enqueue(job)
        try:
            await self._notifier.deliver(job, outcome, callback_url)
        except Exception:
            log.exception("callback.unexpected_error", job_id=job.id, url=callback_url)

    async def _load_input(self, job: ConversionJob) -> bytes:
        if job.input_bytes is not None:
            return job.input_bytes
        ref = job.input_ref or ""
        parsed = urlparse(ref)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise DownloadError(f"invalid input reference {ref!r}: only absolute http(s) URLs are supported")
        return await asyncio.to_thread(self._fetcher.fetch, ref)

    async def _execute(self, job: ConversionJob) -> Outcome:
        loop = asyncio.get_running_loop()
        started = loop.time()
        with structlog.contextvars.bound_contextvars(job_id=job.id):
            try:
                data = await self._load_input(job)
            except ConversionError as e:
                log.warning("job.input_unavailable", error=str(e))
                return Failed.from_error(e, int((loop.time() - started) * 1000))

            async with self._staging.staged(data) as paths:
                outcome = await self._supervisor.supervise(paths.input_path, paths.output_dir, job.deadline)

            if isinstance(outcome, Completed):
                log.info("job.completed", size_bytes=outcome.size_bytes)
            else:
                log.warning("job.failed", kind=outcome.kind.value, message=outcome.message, duration_ms=outcome.duration_ms)
            return outcome
