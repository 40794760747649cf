"""StatusMessage: the transient "Thinking..." message shown while a request runs."""

from __future__ import annotations

import logging
from typing import Any

from ..types import MessagingTransport

logger = logging.getLogger(__name__)


class StatusMessage:
    """Show, edit, and reliably remove one transient message in a chat.

    Transport failures are logged, never raised.
    """

    def __init__(self, transport: MessagingTransport, chat_id: str) -> None:
        self.transport = transport
        self.chat_id = chat_id
        self._handle: Any = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    async def show(self, text: str) -> None:
        if self._handle is not None:
            await self.update(text)
            return
        try:
            self._handle = await self.transport.send_status(self.chat_id, text)
        except Exception as e:
            logger.error("Error sending status message: %s", e)

    async def update(self, text: str) -> None:
        if self._handle is None:
            await self.show(text)
            return
        try:
            await self.transport.edit_status(self.chat_id, self._handle, text)
        except Exception as e:
            logger.error("Error updating status message: %s", e)

    async def clear(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            await self.transport.delete_status(self.chat_id, handle)
        except Exception as e:
            logger.error("Error deleting status message: %s", e)
