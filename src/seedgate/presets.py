from __future__ import annotations

import random
from pathlib import Path

from .utils import is_plain_name

PRESET_SUFFIX = ".yml"
RANDOM_PREFIX = "random:"


class PresetNotFound(LookupError):
    def __init__(self, seed_type: str, selector: str) -> None:
        super().__init__(f"Preset not found: {seed_type}/{selector}")
        self.seed_type = seed_type
        self.selector = selector


def _preset_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(
        (path for path in directory.iterdir() if path.is_file() and path.suffix.lower() == PRESET_SUFFIX),
        key=lambda p: p.name.lower(),
    )


class PresetCatalog:
    """Maps a seed type and a preset selector to a generator config file.

    Layout: ``<root>/<seed_type>/<name>.yml`` for single presets and
    ``<root>/<seed_type>/<family>/*.yml`` for families, selected with
    ``random:<family>``.
    """

    def __init__(self, root: Path, rng: random.Random | None = None) -> None:
        self.root = root
        self.rng = rng or random.Random()

    def list_seed_types(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(path.name for path in self.root.iterdir() if path.is_dir())

    def list_selectable_choices(self, seed_type: str) -> list[str]:
        if not is_plain_name(seed_type):
            return []
        type_dir = self.root / seed_type
        if not type_dir.is_dir():
            return []
        names = [path.stem for path in _preset_files(type_dir)]
        families = [
            f"{RANDOM_PREFIX}{path.name}"
            for path in type_dir.iterdir()
            if path.is_dir() and _preset_files(path)
        ]
        return sorted(names, key=str.lower) + sorted(families, key=str.lower)

    def resolve_config_path(self, seed_type: str, selector: str) -> Path:
        if not is_plain_name(seed_type):
            raise PresetNotFound(seed_type, selector)
        type_dir = self.root / seed_type
        if selector.startswith(RANDOM_PREFIX):
            family = selector[len(RANDOM_PREFIX):]
            if not is_plain_name(family):
                raise PresetNotFound(seed_type, selector)
            candidates = _preset_files(type_dir / family)
            if not candidates:
                raise PresetNotFound(seed_type, selector)
            return self.rng.choice(candidates)

        if not is_plain_name(selector):
            raise PresetNotFound(seed_type, selector)
        path = type_dir / f"{selector}{PRESET_SUFFIX}"
        if not path.is_file():
            raise PresetNotFound(seed_type, selector)
        return path
