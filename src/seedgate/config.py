from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

DEFAULT_COMMAND = ["pnpm", "run", "start:core", "--", "--config", "{config_path}"]


@dataclass(slots=True)
class PathsConfig:
    cli: Path
    presets: Path
    out: Path
    state: Path
    log: Path
    deliveries: Path


@dataclass(slots=True)
class GeneratorConfig:
    cli_path: Path
    out_path: Path
    command: list[str] = field(default_factory=lambda: list(DEFAULT_COMMAND))
    patch_extension: str = ".ootmm"
    spoiler_extension: str = ".txt"
    poll_interval_seconds: float = 5
    timeout_seconds: float = 2 * 60 * 60


@dataclass(slots=True)
class DispatchConfig:
    max_parallel: int = 2
    log_level: str = "INFO"


@dataclass(slots=True)
class AppConfig:
    paths: PathsConfig
    generator: GeneratorConfig
    dispatch: DispatchConfig


def _require(mapping: dict, key: str, section: str) -> object:
    if key not in mapping:
        raise ValueError(f"Missing `{section}.{key}` in config")
    return mapping[key]


def _mapping(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def _extension(value: object, key: str) -> str:
    text = str(value).strip()
    if not text:
        raise ValueError(f"`generator.{key}` must not be empty")
    return text if text.startswith(".") else f".{text}"


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    paths_raw = _require(raw, "paths", "root")
    if not isinstance(paths_raw, dict):
        raise ValueError("`paths` must be a mapping")
    generator_raw = _mapping(raw, "generator")
    dispatch_raw = _mapping(raw, "dispatch")

    def to_path(value: object) -> Path:
        output = Path(str(value)).expanduser()
        if not output.is_absolute():
            output = config_path.parent / output
        return output

    cli_path = to_path(_require(paths_raw, "cli", "paths"))
    paths = PathsConfig(
        cli=cli_path,
        presets=to_path(paths_raw.get("presets", cli_path / "packages" / "core" / "config")),
        out=to_path(paths_raw.get("out", cli_path / "packages" / "core" / "out")),
        state=to_path(paths_raw.get("state", "state.json")),
        log=to_path(paths_raw.get("log", "seedgate.log")),
        deliveries=to_path(paths_raw.get("deliveries", "deliveries")),
    )

    command_raw = generator_raw.get("command", DEFAULT_COMMAND)
    if isinstance(command_raw, str):
        command_raw = command_raw.split()
    if not isinstance(command_raw, list) or not command_raw:
        raise ValueError("`generator.command` must be a non-empty list")

    generator = GeneratorConfig(
        cli_path=paths.cli,
        out_path=paths.out,
        command=[str(part) for part in command_raw],
        patch_extension=_extension(generator_raw.get("patch_extension", ".ootmm"), "patch_extension"),
        spoiler_extension=_extension(generator_raw.get("spoiler_extension", ".txt"), "spoiler_extension"),
        poll_interval_seconds=float(generator_raw.get("poll_interval_seconds", 5)),
        timeout_seconds=float(generator_raw.get("timeout_seconds", 2 * 60 * 60)),
    )
    if generator.poll_interval_seconds <= 0:
        raise ValueError("`generator.poll_interval_seconds` must be > 0")
    if generator.timeout_seconds <= 0:
        raise ValueError("`generator.timeout_seconds` must be > 0")

    dispatch = DispatchConfig(
        max_parallel=int(dispatch_raw.get("max_parallel", 2)),
        log_level=str(dispatch_raw.get("log_level", "INFO")).upper(),
    )
    if dispatch.max_parallel < 1:
        raise ValueError("`dispatch.max_parallel` must be >= 1")
    if dispatch.log_level not in logging.getLevelNamesMapping():
        raise ValueError(f"`dispatch.log_level` is not a logging level: {dispatch.log_level}")

    return AppConfig(paths=paths, generator=generator, dispatch=dispatch)


def ensure_local_paths(config: AppConfig) -> None:
    config.paths.state.parent.mkdir(parents=True, exist_ok=True)
    config.paths.log.parent.mkdir(parents=True, exist_ok=True)
    config.paths.deliveries.mkdir(parents=True, exist_ok=True)
