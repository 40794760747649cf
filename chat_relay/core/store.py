"""TurnStore and AttachmentStore abstract base classes."""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..types import LoadedAttachment, SavedAttachment, Turn


class TurnStore(ABC):
    """Append-only per-(identity, track) log of conversation turns."""

    @abstractmethod
    def append(
        self,
        identity: str,
        track: str,
        role: str,
        content: str,
        sender: str = "",
        create: bool = True,
    ) -> Turn | None:
        """Append a timestamped turn to the tail of the partition.

        Creates the partition when absent. With ``create=False`` a missing
        partition is left alone and None is returned.
        """

    @abstractmethod
    def tail(self, identity: str, track: str, max_count: int) -> list[Turn]:
        """Most recent ``max_count`` turns, oldest first. Empty if no partition."""

    @abstractmethod
    def clear(self, identity: str, track: str) -> bool:
        """Delete the whole partition. Returns True if anything was deleted."""

    @abstractmethod
    def exists(self, identity: str, track: str) -> bool:
        """True if the partition has been created and not cleared."""


class AttachmentStore(ABC):
    """Write-once binary blobs addressed by (identity, track, id)."""

    @abstractmethod
    def save(self, identity: str, track: str, data: bytes, mime_type: str) -> SavedAttachment:
        """Store a blob under a freshly generated id. Never overwrites."""

    @abstractmethod
    def load(self, identity: str, track: str, attachment_id: str) -> LoadedAttachment | None:
        """Blob as base64 plus its type tag. None if not found or unreadable."""

    @abstractmethod
    def clear(self, identity: str, track: str) -> int:
        """Remove every blob in the scope. Returns count removed."""
