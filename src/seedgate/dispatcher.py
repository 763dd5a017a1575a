from __future__ import annotations

import logging
from pathlib import Path

from .app_logging import log_with_fields
from .delivery import DeliveryFailed, DeliverySink
from .gate import Acquired, Gate
from .models import GenerationRequest, Job, JobKind, JobStatus
from .presets import PresetCatalog
from .runner import GenerationError, GenerationRunner
from .store import StateStore
from .utils import format_duration, now_ms


class QueueFull(RuntimeError):
    def __init__(self, capacity: int) -> None:
        super().__init__("Generation queue is full. Please wait and try again.")
        self.capacity = capacity


class DuplicateJob(ValueError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job id already used: {job_id}")
        self.job_id = job_id


class SpoilerNotFound(LookupError):
    pass


class Dispatcher:
    def __init__(
        self,
        store: StateStore,
        gate: Gate,
        runner: GenerationRunner,
        catalog: PresetCatalog,
        sink: DeliverySink,
        logger: logging.Logger,
    ) -> None:
        self.store = store
        self.gate = gate
        self.runner = runner
        self.catalog = catalog
        self.sink = sink
        self.logger = logger

    async def submit(self, request: GenerationRequest) -> Job:
        config_path = self.catalog.resolve_config_path(request.seed_type, request.preset)

        if request.kind is JobKind.GENERATE:
            prepared = self.store.pop_backlog(request.key)
            if prepared is not None:
                log_with_fields(
                    self.logger,
                    logging.INFO,
                    "backlog_hit",
                    job_id=prepared.id,
                    request_key=str(request.key),
                    requester=request.requester_id,
                )
                await self._notify(request.requester_id, request.channel_id, "Using a prepared seed…")
                await self.deliver(prepared, request.requester_id, request.channel_id)
                return prepared

        if self.store.has_job(request.job_id):
            raise DuplicateJob(request.job_id)

        slot = self.gate.try_acquire()
        if not isinstance(slot, Acquired):
            log_with_fields(
                self.logger,
                logging.WARNING,
                "queue_full",
                job_id=request.job_id,
                request_key=str(request.key),
                capacity=self.gate.capacity,
            )
            raise QueueFull(self.gate.capacity)

        try:
            return await self._run_admitted(request, config_path)
        finally:
            slot.release()

    async def _run_admitted(self, request: GenerationRequest, config_path: Path) -> Job:
        started = now_ms()
        job = Job(
            id=request.job_id,
            seed_type=request.seed_type,
            preset=request.preset,
            author_id=request.requester_id,
            channel_id=request.channel_id,
            source=request.kind,
            is_prepared=request.kind is JobKind.PREPARE,
            requested_at=started,
            started_at=started,
            completed_at=None,
            status=JobStatus.RUNNING,
            cli_command=self.runner.describe(config_path),
        )
        self.store.add_active(job)
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_started",
            job_id=job.id,
            kind=job.source.value,
            request_key=str(job.key),
            config_path=str(config_path),
        )

        verb = "Preparing" if job.is_prepared else "Generating"
        await self._notify(
            request.requester_id,
            request.channel_id,
            f"{verb} seed for preset “{request.preset}”… This can take several minutes.",
        )

        try:
            result = await self.runner.run(config_path)
        except Exception as exc:
            self._fail(job, exc)
            label = "Preparation" if job.is_prepared else "Generation"
            await self._notify(request.requester_id, request.channel_id, f"{label} failed: {job.error}")
            return job

        job.seed_hash = result.seed_hash
        job.out_dir = result.out_dir
        job.patch_files = list(result.patch_files)
        job.spoiler_file = result.spoiler_file
        job.duration_ms = result.duration_ms
        job.cli_exit_code = result.exit_code
        job.completed_at = now_ms()
        job.status = JobStatus.COMPLETED
        self.store.finish(job)
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_completed",
            job_id=job.id,
            seed_hash=job.seed_hash,
            duration_ms=job.duration_ms,
            patch_files=len(job.patch_files),
        )

        if job.is_prepared:
            await self._notify(
                request.requester_id,
                request.channel_id,
                f"Prepared seed {job.seed_hash} for preset “{job.preset}” "
                f"({self.store.backlog_size(job.key)} ready).",
            )
        else:
            await self.deliver(job, request.requester_id, request.channel_id)
        return job

    def _fail(self, job: Job, exc: Exception) -> None:
        job.completed_at = now_ms()
        job.status = JobStatus.FAILED
        job.error = str(exc) or exc.__class__.__name__
        if isinstance(exc, GenerationError) and exc.exit_code is not None:
            job.cli_exit_code = exc.exit_code
        job.seed_hash = None
        job.out_dir = None
        job.patch_files = []
        job.spoiler_file = None
        self.store.finish(job)
        log_with_fields(
            self.logger,
            logging.ERROR,
            "job_failed",
            job_id=job.id,
            error_type=exc.__class__.__name__,
            error=job.error,
            exit_code=job.cli_exit_code,
        )

    async def deliver(self, job: Job, requester_id: str, channel_id: str | None) -> str | None:
        self.store.record_delivery(requester_id, job.id)
        content = (
            f"<@{requester_id}> Seed ready for preset “{job.preset}”. "
            f"Seed: {job.seed_hash}. Took {format_duration(job.duration_ms)}."
        )
        try:
            message_id = await self.sink.deliver(requester_id, channel_id, content, list(job.patch_files))
        except DeliveryFailed as exc:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "delivery_failed",
                job_id=job.id,
                requester=requester_id,
                error=str(exc),
            )
            return None
        job.message_id = message_id
        self.store.record_delivery(requester_id, job.id, message_id)
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_delivered",
            job_id=job.id,
            requester=requester_id,
            message_id=message_id,
        )
        return message_id

    async def send_spoiler(self, requester_id: str, channel_id: str | None, public: bool = False) -> Job:
        job = self.store.last_job_for(requester_id)
        if job is None:
            raise SpoilerNotFound("No recent seed found for you.")
        if not job.spoiler_file or not Path(job.spoiler_file).is_file():
            raise SpoilerNotFound("Spoiler file not found for your recent seed.")

        target_channel = channel_id if public else None
        try:
            await self.sink.deliver(requester_id, target_channel, f"Spoiler for seed {job.seed_hash}", [job.spoiler_file])
        except DeliveryFailed as exc:
            if public:
                raise
            raise DeliveryFailed(
                "Could not DM you. Please enable direct messages or ask for a public spoiler."
            ) from exc
        return job

    def recover_interrupted(self) -> list[Job]:
        """Fail jobs left active by a previous process; their generator is gone."""
        recovered: list[Job] = []
        for job in list(self.store.active):
            job.completed_at = now_ms()
            job.status = JobStatus.FAILED
            job.error = "dispatcher restarted during generation"
            self.store.finish(job)
            recovered.append(job)
            log_with_fields(self.logger, logging.WARNING, "job_recovered_as_failed", job_id=job.id)
        return recovered

    async def _notify(self, requester_id: str, channel_id: str | None, message: str) -> None:
        try:
            await self.sink.notify(requester_id, channel_id, message)
        except DeliveryFailed as exc:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "notify_failed",
                requester=requester_id,
                error=str(exc),
            )
