from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class JobKind(str, Enum):
    PREPARE = "prepare"
    GENERATE = "generate"


class JobStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is not JobStatus.RUNNING


@dataclass(frozen=True, slots=True)
class RequestKey:
    seed_type: str
    preset: str

    def __str__(self) -> str:
        return f"{self.seed_type}/{self.preset}"


@dataclass(frozen=True, slots=True)
class GenerationRequest:
    job_id: str
    seed_type: str
    preset: str
    requester_id: str
    channel_id: str | None
    kind: JobKind

    @property
    def key(self) -> RequestKey:
        return RequestKey(self.seed_type, self.preset)


@dataclass(slots=True)
class GenerationResult:
    seed_hash: str
    out_dir: str
    patch_files: list[str]
    spoiler_file: str | None
    duration_ms: int
    exit_code: int
    stdout: str = ""
    stderr: str = ""


@dataclass(slots=True)
class Job:
    id: str
    seed_type: str
    preset: str
    author_id: str
    channel_id: str | None
    source: JobKind
    is_prepared: bool
    requested_at: int
    started_at: int | None
    completed_at: int | None
    status: JobStatus
    cli_command: str
    cli_exit_code: int | None = None
    error: str | None = None
    seed_hash: str | None = None
    out_dir: str | None = None
    patch_files: list[str] = field(default_factory=list)
    spoiler_file: str | None = None
    duration_ms: int | None = None
    message_id: str | None = None

    @property
    def key(self) -> RequestKey:
        return RequestKey(self.seed_type, self.preset)

    def snapshot(self) -> Job:
        return replace(self, patch_files=list(self.patch_files))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "seedType": self.seed_type,
            "preset": self.preset,
            "authorId": self.author_id,
            "channelId": self.channel_id,
            "source": self.source.value,
            "isPrepared": self.is_prepared,
            "requestedAt": self.requested_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "status": self.status.value,
            "cliCommand": self.cli_command,
            "cliExitCode": self.cli_exit_code,
            "error": self.error,
            "seedHash": self.seed_hash,
            "outDir": self.out_dir,
            "patchFiles": list(self.patch_files),
            "spoilerFile": self.spoiler_file,
            "durationMs": self.duration_ms,
            "messageId": self.message_id,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Job:
        return cls(
            id=str(raw["id"]),
            seed_type=str(raw["seedType"]),
            preset=str(raw["preset"]),
            author_id=str(raw["authorId"]),
            channel_id=raw.get("channelId"),
            source=JobKind(raw["source"]),
            is_prepared=bool(raw.get("isPrepared", False)),
            requested_at=int(raw["requestedAt"]),
            started_at=raw.get("startedAt"),
            completed_at=raw.get("completedAt"),
            status=JobStatus(raw["status"]),
            cli_command=str(raw.get("cliCommand", "")),
            cli_exit_code=raw.get("cliExitCode"),
            error=raw.get("error"),
            seed_hash=raw.get("seedHash"),
            out_dir=raw.get("outDir"),
            patch_files=[str(item) for item in raw.get("patchFiles") or []],
            spoiler_file=raw.get("spoilerFile"),
            duration_ms=raw.get("durationMs"),
            message_id=raw.get("messageId"),
        )
