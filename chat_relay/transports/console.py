"""ConsoleTransport: MessagingTransport over stdout and the local filesystem."""

from __future__ import annotations

import asyncio
import itertools
import mimetypes
import sys
from pathlib import Path
from typing import TextIO

from ..storage.helpers import extension_for_mime, identity_key
from ..types import AttachmentPayload, InboundMessage


class ConsoleTransport:
    """Prints replies and status changes; images go to ``output_dir``.

    Inbound attachments are read from a local path carried in
    ``InboundMessage.raw``.
    """

    def __init__(
        self,
        output_dir: str | Path = ".",
        stream: TextIO | None = None,
        show_status: bool = True,
    ) -> None:
        self.output_dir = Path(output_dir)
        self.stream = stream or sys.stdout
        self.show_status = show_status
        self.saved: list[Path] = []
        self._handles = itertools.count(1)

    def _print(self, text: str) -> None:
        print(text, file=self.stream, flush=True)

    async def send_text(self, chat_id: str, text: str) -> None:
        self._print(text)

    async def send_image(
        self, chat_id: str, data: bytes, mime_type: str, caption: str = "",
    ) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        stem = identity_key(chat_id)
        for n in itertools.count(len(self.saved) + 1):
            path = self.output_dir / f"{stem}_{n}.{extension_for_mime(mime_type)}"
            if not path.exists():
                break
        await asyncio.to_thread(path.write_bytes, data)
        self.saved.append(path)
        if caption:
            self._print(caption)
        self._print(f"[image saved to {path}]")

    async def send_status(self, chat_id: str, text: str) -> int:
        handle = next(self._handles)
        if self.show_status:
            self._print(f"... {text}")
        return handle

    async def edit_status(self, chat_id: str, handle: int, text: str) -> None:
        if self.show_status:
            self._print(f"... {text}")

    async def delete_status(self, chat_id: str, handle: int) -> None:
        pass

    async def download_attachment(self, message: InboundMessage) -> AttachmentPayload:
        if not message.raw:
            raise ValueError("Message has no attachment path")
        path = Path(message.raw)
        data = await asyncio.to_thread(path.read_bytes)
        mime_type, _ = mimetypes.guess_type(path.name)
        return AttachmentPayload(data=data, mime_type=mime_type or "image/jpeg")
