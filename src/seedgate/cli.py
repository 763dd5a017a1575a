from __future__ import annotations

import argparse
import asyncio
import logging
import shlex
import signal
import sys
from collections.abc import Callable
from dataclasses import dataclass

from .app_logging import log_with_fields, setup_logger
from .config import AppConfig, ensure_local_paths, load_config
from .delivery import DeliveryFailed, LocalDeliverySink
from .dispatcher import Dispatcher, DuplicateJob, QueueFull, SpoilerNotFound
from .gate import Gate
from .models import GenerationRequest, JobKind, JobStatus
from .presets import PresetCatalog, PresetNotFound
from .runner import GenerationRunner
from .store import StateStore
from .utils import new_job_id

GENERIC_FAILURE = "An error occurred while handling your command."
REJECTIONS = (PresetNotFound, QueueFull, DuplicateJob, SpoilerNotFound, DeliveryFailed)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="seedgate", description="Bounded seed generation dispatcher")
    parser.add_argument("--config", required=True, help="Path to seedgate YAML config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in [
        ("prepare", "Prepare a seed for a preset without posting it"),
        ("generate", "Generate a seed for a preset or use a prepared one"),
    ]:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--seed-type", required=True, help="Seed type (preset directory)")
        sub.add_argument("--preset", required=True, help="Preset name or random:<family>")
        sub.add_argument("--user", required=True, help="Requester id")
        sub.add_argument("--channel", default=None, help="Channel id to post into")
        sub.add_argument("--job-id", default=None, help="Explicit job id (defaults to a random id)")

    spoiler = subparsers.add_parser("spoiler", help="Send the spoiler log of your most recent seed")
    spoiler.add_argument("--user", required=True, help="Requester id")
    spoiler.add_argument("--channel", default=None, help="Channel id for public posting")
    spoiler.add_argument("--public", action="store_true", help="Post publicly in the channel")

    subparsers.add_parser("status", help="Show job counts and backlog")
    presets = subparsers.add_parser("presets", help="List seed types and selectable presets")
    presets.add_argument("--seed-type", default=None, help="Only list choices for this seed type")
    subparsers.add_parser("serve", help="Read requests from stdin, one per line")
    return parser


@dataclass(slots=True)
class Runtime:
    config: AppConfig
    store: StateStore
    dispatcher: Dispatcher
    catalog: PresetCatalog
    logger: logging.Logger


def _open_runtime(config: AppConfig) -> Runtime:
    ensure_local_paths(config)
    logger = setup_logger(config.paths.log, config.dispatch.log_level)
    store = StateStore(config.paths.state, logger)
    store.load()
    catalog = PresetCatalog(config.paths.presets)
    dispatcher = Dispatcher(
        store=store,
        gate=Gate(config.dispatch.max_parallel),
        runner=GenerationRunner(config.generator, logger),
        catalog=catalog,
        sink=LocalDeliverySink(config.paths.deliveries),
        logger=logger,
    )
    return Runtime(config=config, store=store, dispatcher=dispatcher, catalog=catalog, logger=logger)


def _reject(requester_id: str, message: str) -> None:
    print(f"[@{requester_id}] {message}", file=sys.stderr, flush=True)


async def _reply(dispatcher: Dispatcher, requester_id: str, channel_id: str | None, message: str) -> None:
    try:
        await dispatcher.sink.notify(requester_id, channel_id, message)
    except DeliveryFailed as exc:
        log_with_fields(dispatcher.logger, logging.WARNING, "notify_failed", requester=requester_id, error=str(exc))


async def _handle_request(dispatcher: Dispatcher, request: GenerationRequest) -> int:
    try:
        job = await dispatcher.submit(request)
    except REJECTIONS as exc:
        _reject(request.requester_id, str(exc))
        return 2
    return 0 if job.status is JobStatus.COMPLETED else 1


async def _handle_spoiler(dispatcher: Dispatcher, user: str, channel: str | None, public: bool) -> int:
    try:
        job = await dispatcher.send_spoiler(user, channel, public)
    except REJECTIONS as exc:
        _reject(user, str(exc))
        return 2
    if not public:
        await _reply(dispatcher, user, channel, f"Sent you the spoiler for seed {job.seed_hash} via DM.")
    return 0


def cmd_request(config: AppConfig, args: argparse.Namespace) -> int:
    runtime = _open_runtime(config)
    request = GenerationRequest(
        job_id=args.job_id or new_job_id(),
        seed_type=args.seed_type,
        preset=args.preset,
        requester_id=args.user,
        channel_id=args.channel,
        kind=JobKind(args.command),
    )
    return asyncio.run(_handle_request(runtime.dispatcher, request))


def cmd_spoiler(config: AppConfig, args: argparse.Namespace) -> int:
    runtime = _open_runtime(config)
    return asyncio.run(_handle_spoiler(runtime.dispatcher, args.user, args.channel, bool(args.public)))


def cmd_status(config: AppConfig) -> int:
    ensure_local_paths(config)
    store = StateStore(config.paths.state, setup_logger(None, config.dispatch.log_level))
    store.load()
    counts = store.summary()
    print("Jobs:")
    for state in ["running", "completed", "failed"]:
        print(f"  {state:12} {counts.get(state, 0)}")

    print("\nBacklog:")
    if not any(store.backlog.values()):
        print("  (empty)")
    for key, jobs in sorted(store.backlog.items()):
        if jobs:
            print(f"  {key}: {len(jobs)} ready (oldest {jobs[0].seed_hash})")
    return 0


def cmd_presets(config: AppConfig, seed_type: str | None) -> int:
    catalog = PresetCatalog(config.paths.presets)
    seed_types = [seed_type] if seed_type else catalog.list_seed_types()
    if not seed_types:
        print(f"no seed types found under {config.paths.presets}", file=sys.stderr)
        return 2
    for name in seed_types:
        print(f"{name}:")
        choices = catalog.list_selectable_choices(name)
        if not choices:
            print("  (no presets)")
        for choice in choices:
            print(f"  {choice}")
    return 0


def parse_request_line(line: str) -> tuple[str, list[str]] | None:
    try:
        parts = shlex.split(line)
    except ValueError:
        parts = line.split()
    if not parts:
        return None
    return parts[0].lower(), parts[1:]


def _requester_of(command: str, params: list[str]) -> str:
    if command in {"prepare", "generate"} and len(params) > 2:
        return params[2]
    if command == "spoiler" and params:
        return params[0]
    return "unknown"


async def _serve_line(runtime: Runtime, line: str) -> None:
    parsed = parse_request_line(line)
    if parsed is None:
        return
    command, params = parsed
    try:
        if command in {"prepare", "generate"} and len(params) in {3, 4}:
            request = GenerationRequest(
                job_id=new_job_id(),
                seed_type=params[0],
                preset=params[1],
                requester_id=params[2],
                channel_id=params[3] if len(params) == 4 else None,
                kind=JobKind(command),
            )
            await _handle_request(runtime.dispatcher, request)
        elif command == "spoiler" and 1 <= len(params) <= 3:
            channel = params[1] if len(params) >= 2 else None
            public = len(params) == 3 and params[2].lower() in {"public", "true", "yes", "1"}
            await _handle_spoiler(runtime.dispatcher, params[0], channel, public)
        else:
            print(f"unrecognised request: {line.strip()}", file=sys.stderr)
    except Exception:
        runtime.logger.exception("command_handling_error")
        _reject(_requester_of(command, params), GENERIC_FAILURE)


def _shutdown_handler(runtime: Runtime, stop: asyncio.Event) -> Callable[[int], None]:
    def on_signal(signum: int) -> None:
        log_with_fields(runtime.logger, logging.INFO, "shutdown", signal=signal.Signals(signum).name)
        runtime.store.save_on_shutdown()
        stop.set()

    return on_signal


async def _stdin_reader() -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    loop = asyncio.get_running_loop()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def _serve(
    runtime: Runtime,
    reader: asyncio.StreamReader | None = None,
    stop: asyncio.Event | None = None,
) -> int:
    loop = asyncio.get_running_loop()
    stop = stop or asyncio.Event()
    on_signal = _shutdown_handler(runtime, stop)
    installed: list[int] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, on_signal, signum)
            installed.append(signum)
        except (NotImplementedError, RuntimeError, ValueError):
            pass

    recovered = runtime.dispatcher.recover_interrupted()
    log_with_fields(
        runtime.logger,
        logging.INFO,
        "serve_started",
        max_parallel=runtime.config.dispatch.max_parallel,
        recovered_jobs=len(recovered),
    )

    if reader is None:
        reader = await _stdin_reader()

    tasks: set[asyncio.Task[None]] = set()
    stop_wait = asyncio.ensure_future(stop.wait())
    try:
        while not stop.is_set():
            read = asyncio.ensure_future(reader.readline())
            done, _ = await asyncio.wait({read, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
            if read not in done:
                read.cancel()
                break
            line = read.result().decode("utf-8", errors="replace")
            if not line:
                break
            task = asyncio.create_task(_serve_line(runtime, line))
            tasks.add(task)
            task.add_done_callback(tasks.discard)
        if tasks and not stop.is_set():
            await asyncio.gather(*tasks)
    finally:
        stop_wait.cancel()
        for task in tasks:
            task.cancel()
        for signum in installed:
            loop.remove_signal_handler(signum)
    return 0


def cmd_serve(config: AppConfig) -> int:
    runtime = _open_runtime(config)
    try:
        return asyncio.run(_serve(runtime))
    except KeyboardInterrupt:
        log_with_fields(runtime.logger, logging.INFO, "shutdown", reason="keyboard_interrupt")
        return 0
    finally:
        runtime.store.save_on_shutdown()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)

    if args.command in {"prepare", "generate"}:
        return cmd_request(config, args)
    if args.command == "spoiler":
        return cmd_spoiler(config, args)
    if args.command == "status":
        return cmd_status(config)
    if args.command == "presets":
        return cmd_presets(config, args.seed_type)
    if args.command == "serve":
        return cmd_serve(config)
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
