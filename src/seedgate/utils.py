from __future__ import annotations

import time
import uuid


def now_ms() -> int:
    return int(time.time() * 1000)


def format_duration(ms: int | None) -> str:
    total_seconds = max(0, int((ms or 0) // 1000))
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes}m {seconds:02d}s"


def new_job_id() -> str:
    return uuid.uuid4().hex


def is_plain_name(value: str | None) -> bool:
    """True for a single path component that cannot leave its parent directory."""
    return bool(value) and value not in {".", ".."} and "/" not in value and "\\" not in value
