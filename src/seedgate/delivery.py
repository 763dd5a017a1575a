from __future__ import annotations

import shutil
import sys
import uuid
from pathlib import Path
from typing import Protocol, TextIO

from .utils import is_plain_name


class DeliveryFailed(RuntimeError):
    pass


class DeliverySink(Protocol):
    async def deliver(
        self,
        requester_id: str,
        channel_id: str | None,
        message: str,
        attachments: list[str],
    ) -> str: ...

    async def notify(self, requester_id: str, channel_id: str | None, message: str) -> None: ...


class LocalDeliverySink:
    """Posts deliveries into a directory tree and echoes messages to a stream.

    A ``None`` channel means a direct message to the requester.
    """

    def __init__(self, root: Path, stream: TextIO | None = None) -> None:
        self.root = root
        self.stream = stream or sys.stdout

    def _target(self, requester_id: str, channel_id: str | None) -> Path:
        if channel_id:
            if not is_plain_name(channel_id):
                raise DeliveryFailed(f"invalid channel id: {channel_id!r}")
            return self.root / channel_id
        if not is_plain_name(requester_id):
            raise DeliveryFailed(f"invalid requester id: {requester_id!r}")
        return self.root / f"dm-{requester_id}"

    async def deliver(
        self,
        requester_id: str,
        channel_id: str | None,
        message: str,
        attachments: list[str],
    ) -> str:
        message_id = uuid.uuid4().hex
        destination = self._target(requester_id, channel_id) / message_id
        try:
            destination.mkdir(parents=True, exist_ok=True)
            for attachment in attachments:
                shutil.copy2(attachment, destination / Path(attachment).name)
            (destination / "message.txt").write_text(message + "\n", encoding="utf-8")
        except OSError as exc:
            raise DeliveryFailed(f"could not deliver to {destination}: {exc}") from exc
        self._echo(requester_id, channel_id, f"{message} [{len(attachments)} file(s) -> {destination}]")
        return message_id

    async def notify(self, requester_id: str, channel_id: str | None, message: str) -> None:
        self._echo(requester_id, channel_id, message)

    def _echo(self, requester_id: str, channel_id: str | None, message: str) -> None:
        where = f"#{channel_id}" if channel_id else f"@{requester_id}"
        try:
            print(f"[{where}] {message}", file=self.stream, flush=True)
        except (OSError, ValueError) as exc:
            raise DeliveryFailed(str(exc)) from exc
