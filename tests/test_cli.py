from __future__ import annotations

import asyncio
import io
import logging
import signal
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from tempfile import TemporaryDirectory

from seedgate.app_logging import LOGGER_NAME
from seedgate.cli import (
    GENERIC_FAILURE,
    Runtime,
    _handle_request,
    _handle_spoiler,
    _requester_of,
    _serve,
    _serve_line,
    _shutdown_handler,
    build_parser,
    cmd_presets,
    cmd_status,
    parse_request_line,
)
from seedgate.config import ensure_local_paths, load_config
from seedgate.delivery import DeliveryFailed
from seedgate.dispatcher import Dispatcher
from seedgate.gate import Acquired, Gate
from seedgate.models import GenerationRequest, GenerationResult, JobKind, JobStatus
from seedgate.presets import PresetCatalog
from seedgate.store import StateStore


class CliTest(unittest.TestCase):
    def test_generate_arguments(self) -> None:
        parser = build_parser()
        args = parser.parse_args(
            ["--config", "seedgate.yaml", "generate", "--seed-type", "ootmm", "--preset", "random:league", "--user", "u1"]
        )
        self.assertEqual(args.command, "generate")
        self.assertEqual(args.preset, "random:league")
        self.assertIsNone(args.channel)
        self.assertIsNone(args.job_id)

    def test_spoiler_public_flag(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["--config", "seedgate.yaml", "spoiler", "--user", "u1", "--public"])
        self.assertTrue(args.public)

    def test_parse_request_line(self) -> None:
        self.assertEqual(
            parse_request_line('prepare ootmm "s6" user-1 chan\n'),
            ("prepare", ["ootmm", "s6", "user-1", "chan"]),
        )
        self.assertIsNone(parse_request_line("   \n"))
        self.assertEqual(parse_request_line('SPOILER u1 "open'), ("spoiler", ["u1", '"open']))

    def test_requester_of(self) -> None:
        self.assertEqual(_requester_of("generate", ["ootmm", "s6", "u1"]), "u1")
        self.assertEqual(_requester_of("spoiler", ["u2"]), "u2")
        self.assertEqual(_requester_of("bogus", []), "unknown")


def _quiet_logger() -> logging.Logger:
    logger = logging.getLogger("test_seedgate_cli")
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


class StubRunner:
    def __init__(self, out_root: Path) -> None:
        self.out_root = out_root
        self.calls = 0
        self.fail_with: Exception | None = None
        self.hold: asyncio.Event | None = None

    def describe(self, config_path: Path) -> str:
        return f"stub-generator --config {config_path}"

    async def run(self, config_path: Path) -> GenerationResult:
        self.calls += 1
        if self.hold is not None:
            await self.hold.wait()
        else:
            await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with
        seed = f"seed{self.calls}"
        out_dir = self.out_root / seed
        out_dir.mkdir(parents=True, exist_ok=True)
        patch = out_dir / f"{seed}.ootmm"
        patch.write_bytes(b"patch")
        spoiler = out_dir / "spoiler.txt"
        spoiler.write_text("spoiler", encoding="utf-8")
        return GenerationResult(
            seed_hash=seed,
            out_dir=str(out_dir),
            patch_files=[str(patch)],
            spoiler_file=str(spoiler),
            duration_ms=1_000,
            exit_code=0,
        )


class RecordingSink:
    def __init__(self) -> None:
        self.deliveries: list[tuple[str, str | None, list[str]]] = []
        self.notices: list[tuple[str, str | None, str]] = []
        self.fail_notify = False
        self.deliver_error: Exception | None = None

    async def deliver(self, requester_id: str, channel_id: str | None, message: str, attachments: list[str]) -> str:
        if self.deliver_error is not None:
            raise self.deliver_error
        self.deliveries.append((requester_id, channel_id, list(attachments)))
        return f"msg-{len(self.deliveries)}"

    async def notify(self, requester_id: str, channel_id: str | None, message: str) -> None:
        if self.fail_notify:
            raise DeliveryFailed("notices are down")
        self.notices.append((requester_id, channel_id, message))


class ServeTestBase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._temp = TemporaryDirectory()
        self.addCleanup(self._temp.cleanup)
        self.addCleanup(self._reset_app_logger)
        self.root = Path(self._temp.name)
        presets = self.root / "generator" / "presets" / "ootmm"
        presets.mkdir(parents=True)
        (presets / "s6.yml").write_text("mode: s6\n", encoding="utf-8")
        config_path = self.root / "seedgate.yaml"
        config_path.write_text(
            "paths:\n"
            "  cli: generator\n"
            "  presets: generator/presets\n"
            "  out: generator/out\n"
            "  state: var/state.json\n"
            "  log: var/seedgate.log\n"
            "  deliveries: var/deliveries\n"
            "dispatch:\n"
            "  max_parallel: 2\n",
            encoding="utf-8",
        )
        self.config = load_config(config_path)
        ensure_local_paths(self.config)
        logger = _quiet_logger()
        self.store = StateStore(self.config.paths.state, logger)
        self.store.load()
        self.runner = StubRunner(self.config.paths.out)
        self.sink = RecordingSink()
        catalog = PresetCatalog(self.config.paths.presets)
        self.dispatcher = Dispatcher(
            store=self.store,
            gate=Gate(self.config.dispatch.max_parallel),
            runner=self.runner,
            catalog=catalog,
            sink=self.sink,
            logger=logger,
        )
        self.runtime = Runtime(
            config=self.config,
            store=self.store,
            dispatcher=self.dispatcher,
            catalog=catalog,
            logger=logger,
        )

    @staticmethod
    def _reset_app_logger() -> None:
        logger = logging.getLogger(LOGGER_NAME)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

    def request(self, kind: JobKind, preset: str = "s6", user: str = "u1", job_id: str = "job-1") -> GenerationRequest:
        return GenerationRequest(
            job_id=job_id,
            seed_type="ootmm",
            preset=preset,
            requester_id=user,
            channel_id="chan-1",
            kind=kind,
        )


class HandleRequestTest(ServeTestBase):
    async def test_completed_job_exits_zero(self) -> None:
        self.assertEqual(await _handle_request(self.dispatcher, self.request(JobKind.GENERATE)), 0)
        self.assertEqual(len(self.sink.deliveries), 1)

    async def test_failed_job_exits_one(self) -> None:
        self.runner.fail_with = RuntimeError("generator crashed")
        self.assertEqual(await _handle_request(self.dispatcher, self.request(JobKind.GENERATE)), 1)
        self.assertIs(self.store.history[0].status, JobStatus.FAILED)

    async def test_unknown_preset_is_rejected_on_stderr(self) -> None:
        stderr = io.StringIO()
        with redirect_stderr(stderr):
            code = await _handle_request(self.dispatcher, self.request(JobKind.GENERATE, preset="nope"))
        self.assertEqual(code, 2)
        self.assertIn("[@u1] Preset not found: ootmm/nope", stderr.getvalue())
        self.assertEqual(self.sink.notices, [])

    async def test_full_queue_is_rejected_even_when_notices_fail(self) -> None:
        slots = [self.dispatcher.gate.try_acquire() for _ in range(2)]
        self.assertTrue(all(isinstance(slot, Acquired) for slot in slots))
        self.sink.fail_notify = True
        stderr = io.StringIO()
        with redirect_stderr(stderr):
            code = await _handle_request(self.dispatcher, self.request(JobKind.PREPARE))
        self.assertEqual(code, 2)
        self.assertIn("[@u1]", stderr.getvalue())
        self.assertEqual(self.runner.calls, 0)

    async def test_spoiler_acknowledgement_failure_is_not_fatal(self) -> None:
        await _handle_request(self.dispatcher, self.request(JobKind.GENERATE))
        self.sink.fail_notify = True
        self.assertEqual(await _handle_spoiler(self.dispatcher, "u1", "chan-1", False), 0)
        self.assertEqual(self.sink.deliveries[-1][1], None)

    async def test_missing_spoiler_is_rejected(self) -> None:
        stderr = io.StringIO()
        with redirect_stderr(stderr):
            self.assertEqual(await _handle_spoiler(self.dispatcher, "u9", None, False), 2)
        self.assertIn("[@u9] No recent seed found for you.", stderr.getvalue())


class ServeLineTest(ServeTestBase):
    async def test_prepare_and_generate_lines(self) -> None:
        await _serve_line(self.runtime, "prepare ootmm s6 u1 chan-1\n")
        await _serve_line(self.runtime, "generate ootmm s6 u2\n")
        self.assertEqual(self.runner.calls, 1)
        self.assertEqual(self.store.last_per_user, {"u2": self.store.history[0].id})
        self.assertEqual(self.sink.deliveries[0][:2], ("u2", None))

    async def test_unexpected_error_gets_generic_reply(self) -> None:
        self.sink.deliver_error = RuntimeError("sink exploded")
        stderr = io.StringIO()
        with redirect_stderr(stderr):
            await _serve_line(self.runtime, "generate ootmm s6 u1 chan-1\n")
        self.assertIn(f"[@u1] {GENERIC_FAILURE}", stderr.getvalue())
        self.assertEqual(self.dispatcher.gate.in_use, 0)

    async def test_unrecognised_line(self) -> None:
        stderr = io.StringIO()
        with redirect_stderr(stderr):
            await _serve_line(self.runtime, "generate ootmm\n")
        self.assertIn("unrecognised request: generate ootmm", stderr.getvalue())
        self.assertEqual(self.runner.calls, 0)


class ServeLoopTest(ServeTestBase):
    async def test_lines_run_concurrently_and_drain_at_eof(self) -> None:
        self.runner.hold = asyncio.Event()
        reader = asyncio.StreamReader()
        reader.feed_data(b"prepare ootmm s6 u1\nprepare ootmm s6 u2\n")
        serve = asyncio.create_task(_serve(self.runtime, reader))
        for _ in range(100):
            if self.runner.calls == 2:
                break
            await asyncio.sleep(0)
        self.assertEqual(self.runner.calls, 2)
        self.assertEqual(self.dispatcher.gate.in_use, 2)

        reader.feed_eof()
        await asyncio.sleep(0)
        self.assertFalse(serve.done())
        self.runner.hold.set()
        self.assertEqual(await asyncio.wait_for(serve, 5), 0)
        self.assertEqual(len(self.store.history), 2)
        self.assertEqual(self.store.backlog_size(self.request(JobKind.PREPARE).key), 2)

    async def test_stop_event_ends_the_loop(self) -> None:
        self.runner.hold = asyncio.Event()
        reader = asyncio.StreamReader()
        reader.feed_data(b"generate ootmm s6 u1\n")
        stop = asyncio.Event()
        serve = asyncio.create_task(_serve(self.runtime, reader, stop))
        for _ in range(100):
            if self.runner.calls == 1:
                break
            await asyncio.sleep(0)
        self.assertEqual(self.runner.calls, 1)

        stop.set()
        self.assertEqual(await asyncio.wait_for(serve, 5), 0)
        await asyncio.sleep(0)
        self.assertEqual([job.status for job in self.store.active], [JobStatus.RUNNING])
        self.assertEqual(self.dispatcher.gate.in_use, 0)

    async def test_interrupted_jobs_are_recovered_on_start(self) -> None:
        self.runner.hold = asyncio.Event()
        await asyncio.wait_for(self._start_and_abandon(), 5)
        reader = asyncio.StreamReader()
        reader.feed_eof()
        await _serve(self.runtime, reader)
        self.assertEqual(self.store.active, [])
        self.assertEqual(self.store.history[0].error, "dispatcher restarted during generation")

    async def _start_and_abandon(self) -> None:
        task = asyncio.create_task(_handle_request(self.dispatcher, self.request(JobKind.PREPARE)))
        while self.runner.calls == 0:
            await asyncio.sleep(0)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

    async def test_signal_handler_saves_state_and_stops(self) -> None:
        stop = asyncio.Event()
        on_signal = _shutdown_handler(self.runtime, stop)
        self.assertFalse(self.config.paths.state.exists())
        on_signal(signal.SIGTERM)
        self.assertTrue(stop.is_set())
        self.assertTrue(self.config.paths.state.exists())


class ReportCommandsTest(ServeTestBase):
    async def test_status_lists_counts_and_backlog(self) -> None:
        await _handle_request(self.dispatcher, self.request(JobKind.PREPARE))
        stdout = io.StringIO()
        with redirect_stdout(stdout):
            self.assertEqual(cmd_status(self.config), 0)
        output = stdout.getvalue()
        self.assertIn("  completed    1", output)
        self.assertIn("ootmm/s6: 1 ready (oldest seed1)", output)

    async def test_status_with_empty_backlog(self) -> None:
        stdout = io.StringIO()
        with redirect_stdout(stdout):
            cmd_status(self.config)
        self.assertIn("(empty)", stdout.getvalue())

    async def test_presets_listing(self) -> None:
        family = self.config.paths.presets / "ootmm" / "league"
        family.mkdir()
        (family / "a.yml").write_text("mode: a\n", encoding="utf-8")
        stdout = io.StringIO()
        with redirect_stdout(stdout):
            self.assertEqual(cmd_presets(self.config, None), 0)
        self.assertEqual(stdout.getvalue(), "ootmm:\n  s6\n  random:league\n")

    async def test_presets_without_catalog(self) -> None:
        self.config.paths.presets = self.root / "missing"
        stderr = io.StringIO()
        with redirect_stderr(stderr):
            self.assertEqual(cmd_presets(self.config, None), 2)
        self.assertIn("no seed types found", stderr.getvalue())


if __name__ == "__main__":
    unittest.main()
