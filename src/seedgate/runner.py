from __future__ import annotations

import asyncio
import codecs
import logging
import re
import shlex
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from .app_logging import log_with_fields
from .config import GeneratorConfig
from .models import GenerationResult

SEED_HASH_REGEX = re.compile(r"\bHash:\s*([^\r\n]+)", re.IGNORECASE)
SEED_TOKEN_REGEX = re.compile(r"\bHash:", re.IGNORECASE)
READ_CHUNK_BYTES = 64 * 1024


class GenerationError(RuntimeError):
    def __init__(self, message: str, *, exit_code: int | None = None, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class GenerationFailed(GenerationError):
    pass


class SeedNotDetected(GenerationError):
    pass


class GenerationTimeout(GenerationError):
    pass


@dataclass(slots=True)
class OutputScan:
    out_dir: Path
    patch_files: list[str]
    spoiler_file: str | None

    @property
    def ready(self) -> bool:
        return bool(self.patch_files) and self.spoiler_file is not None


def extract_seed_hash(text: str) -> str | None:
    match = SEED_HASH_REGEX.search(text or "")
    if not match:
        return None
    value = match.group(1).strip()
    return value or None


def find_newest_subdirectory(root: Path) -> str | None:
    try:
        entries = [(entry.stat().st_mtime, entry.name) for entry in root.iterdir() if entry.is_dir()]
    except OSError:
        return None
    if not entries:
        return None
    return max(entries)[1]


def scan_output_dir(target_dir: Path, patch_extension: str, spoiler_extension: str) -> OutputScan:
    if not target_dir.is_dir():
        return OutputScan(out_dir=target_dir, patch_files=[], spoiler_file=None)
    files = sorted(str(path) for path in target_dir.iterdir() if path.is_file())
    patch_files = [item for item in files if item.lower().endswith(patch_extension.lower())]
    text_files = [item for item in files if item.lower().endswith(spoiler_extension.lower())]
    spoiler = next((item for item in text_files if "spoiler" in Path(item).name.lower()), None)
    if spoiler is None and text_files:
        spoiler = text_files[0]
    return OutputScan(out_dir=target_dir, patch_files=patch_files, spoiler_file=spoiler)


@dataclass(slots=True)
class _Claim:
    stream: str
    value: str | None = None
    open: bool = True


class SeedSlot:
    """Single-assignment seed hash shared by the output readers.

    A stream claims its place in line as soon as a `Hash:` token shows up,
    even before the rest of that line has arrived. Claims are settled in the
    order they were made; a claim whose line carries no value is skipped.
    """

    def __init__(self) -> None:
        self.value: str | None = None
        self._claims: list[_Claim] = []

    def _open_claim(self, stream: str) -> _Claim | None:
        return next((claim for claim in self._claims if claim.stream == stream and claim.open), None)

    def claim(self, stream: str) -> None:
        if self.value is None and self._open_claim(stream) is None:
            self._claims.append(_Claim(stream))

    def settle(self, stream: str, candidate: str | None) -> None:
        if self.value is not None:
            return
        claim = self._open_claim(stream)
        if claim is None:
            if not candidate:
                return
            claim = _Claim(stream)
            self._claims.append(claim)
        claim.value = candidate
        claim.open = False
        while self.value is None and self._claims and not self._claims[0].open:
            self.value = self._claims.pop(0).value


class GenerationRunner:
    def __init__(
        self,
        config: GeneratorConfig,
        logger: logging.Logger,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.logger = logger
        self._sleep = sleep
        self._clock = clock

    def build_command(self, config_path: Path) -> list[str]:
        return [part.format(config_path=str(config_path)) for part in self.config.command]

    def describe(self, config_path: Path) -> str:
        return shlex.join(self.build_command(config_path))

    async def run(self, config_path: Path) -> GenerationResult:
        started = self._clock()
        seed = SeedSlot()
        exit_code, stdout, stderr = await self._execute(config_path, seed)

        seed_hash = seed.value
        if seed_hash is None:
            seed_hash = find_newest_subdirectory(self.config.out_path)
            if seed_hash is not None:
                log_with_fields(
                    self.logger,
                    logging.INFO,
                    "seed_inferred_from_output_dir",
                    seed_hash=seed_hash,
                    out_path=str(self.config.out_path),
                )

        if exit_code != 0 and seed_hash is None:
            raise GenerationFailed(
                f"Generator exited with code {exit_code}",
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
            )
        if seed_hash is None:
            raise SeedNotDetected(
                "Seed hash not detected from CLI output",
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
            )

        try:
            outputs = await self.wait_for_outputs(seed_hash)
        except GenerationTimeout as exc:
            exc.exit_code, exc.stdout, exc.stderr = exit_code, stdout, stderr
            raise
        return GenerationResult(
            seed_hash=seed_hash,
            out_dir=str(outputs.out_dir),
            patch_files=outputs.patch_files,
            spoiler_file=outputs.spoiler_file,
            duration_ms=int((self._clock() - started) * 1000),
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
        )

    async def wait_for_outputs(self, seed_hash: str) -> OutputScan:
        target_dir = self.config.out_path / seed_hash
        started = self._clock()
        while self._clock() - started < self.config.timeout_seconds:
            scan = scan_output_dir(target_dir, self.config.patch_extension, self.config.spoiler_extension)
            if scan.ready:
                return scan
            await self._sleep(self.config.poll_interval_seconds)
        raise GenerationTimeout(f"Timed out waiting for output files in {target_dir}")

    async def _execute(self, config_path: Path, seed: SeedSlot) -> tuple[int, str, str]:
        command = self.build_command(config_path)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.config.cli_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            log_with_fields(
                self.logger,
                logging.ERROR,
                "generator_spawn_failed",
                command=shlex.join(command),
                error=str(exc),
            )
            return 1, "", ""

        assert process.stdout is not None and process.stderr is not None
        stdout, stderr, exit_code = await asyncio.gather(
            _drain(process.stdout, "stdout", seed),
            _drain(process.stderr, "stderr", seed),
            process.wait(),
        )
        return exit_code, stdout, stderr


async def _drain(stream: asyncio.StreamReader, name: str, seed: SeedSlot) -> str:
    captured: list[str] = []
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    while True:
        chunk = await stream.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        text = decoder.decode(chunk)
        captured.append(text)
        lines = (pending + text).split("\n")
        pending = lines.pop()
        for line in lines:
            seed.settle(name, extract_seed_hash(line))
        if SEED_TOKEN_REGEX.search(pending):
            seed.claim(name)
    tail = decoder.decode(b"", final=True)
    captured.append(tail)
    pending += tail
    seed.settle(name, extract_seed_hash(pending))
    return "".join(captured)
