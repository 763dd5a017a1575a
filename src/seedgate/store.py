from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .app_logging import log_with_fields
from .models import Job, JobKind, JobStatus, RequestKey

STATE_VERSION = 1


def _empty_state() -> dict[str, Any]:
    return {"version": STATE_VERSION, "active": [], "backlog": {}, "history": [], "lastPerUser": {}}


def atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class StateStore:
    """Process-wide job state persisted as one JSON document.

    Every mutating method writes the full document before returning.
    """

    def __init__(self, state_path: Path, logger: logging.Logger) -> None:
        self.state_path = state_path
        self.logger = logger
        self.active: list[Job] = []
        self.backlog: dict[str, list[Job]] = {}
        self.history: list[Job] = []
        self.last_per_user: dict[str, str] = {}

    def load(self) -> None:
        raw = _empty_state()
        if self.state_path.exists():
            try:
                raw = self._parse(self.state_path.read_text(encoding="utf-8"))
            except (OSError, ValueError, KeyError, TypeError) as exc:
                log_with_fields(
                    self.logger,
                    logging.ERROR,
                    "state_load_failed",
                    path=str(self.state_path),
                    error=str(exc),
                )
                raw = _empty_state()
        self._restore(raw)

    def _restore(self, raw: dict[str, Any]) -> None:
        self.active = [Job.from_dict(item) for item in raw["active"]]
        self.backlog = {key: [Job.from_dict(item) for item in items] for key, items in raw["backlog"].items()}
        self.history = [Job.from_dict(item) for item in raw["history"]]
        self.last_per_user = dict(raw["lastPerUser"])

    @staticmethod
    def _parse(text: str) -> dict[str, Any]:
        loaded = json.loads(text)
        if not isinstance(loaded, dict):
            raise ValueError("state root must be an object")
        state = _empty_state()
        if isinstance(loaded.get("active"), list):
            state["active"] = loaded["active"]
        if isinstance(loaded.get("backlog"), dict):
            state["backlog"] = {
                str(key): items for key, items in loaded["backlog"].items() if isinstance(items, list)
            }
        if isinstance(loaded.get("history"), list):
            state["history"] = loaded["history"]
        if isinstance(loaded.get("lastPerUser"), dict):
            state["lastPerUser"] = {str(key): str(value) for key, value in loaded["lastPerUser"].items()}
        # validate records up front so a bad entry resets the whole document
        for item in [*state["active"], *state["history"]]:
            Job.from_dict(item)
        for items in state["backlog"].values():
            for item in items:
                Job.from_dict(item)
        return state

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "active": [job.to_dict() for job in self.active],
            "backlog": {key: [job.to_dict() for job in jobs] for key, jobs in self.backlog.items()},
            "history": [job.to_dict() for job in self.history],
            "lastPerUser": dict(self.last_per_user),
        }

    def dumps(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False) + "\n"

    def save(self) -> None:
        atomic_write_text(self.state_path, self.dumps())

    @contextmanager
    def _persisted(self) -> Iterator[None]:
        """Apply a mutation and write it out; on a failed write memory is put back to match disk."""
        before = self.to_dict()
        try:
            yield
            self.save()
        except BaseException:
            self._restore(before)
            raise

    def save_on_shutdown(self) -> bool:
        try:
            self.save()
        except OSError as exc:
            log_with_fields(
                self.logger,
                logging.ERROR,
                "state_shutdown_save_failed",
                path=str(self.state_path),
                error=str(exc),
            )
            return False
        log_with_fields(self.logger, logging.INFO, "state_saved_on_shutdown", path=str(self.state_path))
        return True

    def has_job(self, job_id: str) -> bool:
        return self.find_job(job_id) is not None

    def find_job(self, job_id: str) -> Job | None:
        for job in self.history:
            if job.id == job_id:
                return job
        for job in self.active:
            if job.id == job_id:
                return job
        return None

    def add_active(self, job: Job) -> None:
        if job.status is not JobStatus.RUNNING:
            raise ValueError(f"job {job.id} must be running to become active, found {job.status.value}")
        if self.has_job(job.id):
            raise ValueError(f"duplicate job id: {job.id}")
        with self._persisted():
            self.active.append(job)

    def finish(self, job: Job) -> None:
        if not job.status.terminal:
            raise ValueError(f"job {job.id} is not in a terminal state")
        with self._persisted():
            self.active = [item for item in self.active if item.id != job.id]
            self.history.append(job.snapshot())
            if job.status is JobStatus.COMPLETED and job.source is JobKind.PREPARE:
                self.backlog.setdefault(str(job.key), []).append(job.snapshot())

    def backlog_size(self, key: RequestKey) -> int:
        return len(self.backlog.get(str(key), []))

    def pop_backlog(self, key: RequestKey) -> Job | None:
        entries = self.backlog.get(str(key))
        if not entries:
            return None
        with self._persisted():
            job = entries.pop(0)
        return job

    def record_delivery(self, requester_id: str, job_id: str, message_id: str | None = None) -> None:
        with self._persisted():
            self.last_per_user[requester_id] = job_id
            if message_id is not None:
                for job in self.history:
                    if job.id == job_id:
                        job.message_id = message_id

    def last_job_for(self, requester_id: str) -> Job | None:
        job_id = self.last_per_user.get(requester_id)
        if job_id is None:
            return None
        return self.find_job(job_id)

    def summary(self) -> dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        counts[JobStatus.RUNNING.value] = len(self.active)
        for job in self.history:
            if job.status is not JobStatus.RUNNING:
                counts[job.status.value] += 1
        counts["backlog"] = sum(len(jobs) for jobs in self.backlog.values())
        return counts
