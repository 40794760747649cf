"""In-memory stores for tests and ephemeral runs."""

from __future__ import annotations

import base64

from ..core.store import AttachmentStore, TurnStore
from ..types import LoadedAttachment, SavedAttachment, Turn
from .helpers import IdGenerator, PartitionLocks, identity_key


class MemoryTurnStore(TurnStore):

    def __init__(self) -> None:
        self._partitions: dict[tuple[str, str], list[Turn]] = {}
        self._locks = PartitionLocks()

    def append(
        self,
        identity: str,
        track: str,
        role: str,
        content: str,
        sender: str = "",
        create: bool = True,
    ) -> Turn | None:
        key = (identity_key(identity), track)
        with self._locks.hold(*key):
            turns = self._partitions.get(key)
            if turns is None:
                if not create:
                    return None
                turns = self._partitions[key] = []
            turn = Turn(role=role, content=content, sender=sender)
            turns.append(turn)
            return turn

    def tail(self, identity: str, track: str, max_count: int) -> list[Turn]:
        if max_count <= 0:
            return []
        key = (identity_key(identity), track)
        with self._locks.hold(*key):
            return list(self._partitions.get(key, [])[-max_count:])

    def clear(self, identity: str, track: str) -> bool:
        key = (identity_key(identity), track)
        with self._locks.hold(*key):
            return self._partitions.pop(key, None) is not None

    def exists(self, identity: str, track: str) -> bool:
        return (identity_key(identity), track) in self._partitions


class MemoryAttachmentStore(AttachmentStore):
    """Key-value blobs keyed by (identity, track, id), type tag stored alongside."""

    def __init__(self, id_generator: IdGenerator | None = None) -> None:
        self._blobs: dict[tuple[str, str, str], tuple[bytes, str]] = {}
        self._ids = id_generator or IdGenerator()
        self._locks = PartitionLocks()

    def save(self, identity: str, track: str, data: bytes, mime_type: str) -> SavedAttachment:
        ident = identity_key(identity)
        with self._locks.hold(ident, track):
            attachment_id = self._ids.next_id(
                ident, track, taken=lambda candidate: (ident, track, candidate) in self._blobs,
            )
            self._blobs[(ident, track, attachment_id)] = (bytes(data), mime_type)
        return SavedAttachment(
            id=attachment_id,
            path=f"memory://{ident}/{track}/{attachment_id}",
            mime_type=mime_type,
        )

    def load(self, identity: str, track: str, attachment_id: str) -> LoadedAttachment | None:
        blob = self._blobs.get((identity_key(identity), track, attachment_id))
        if blob is None:
            return None
        data, mime_type = blob
        return LoadedAttachment(
            id=attachment_id,
            data=base64.b64encode(data).decode("ascii"),
            mime_type=mime_type,
        )

    def delete(self, identity: str, track: str, attachment_id: str) -> bool:
        return self._blobs.pop((identity_key(identity), track, attachment_id), None) is not None

    def clear(self, identity: str, track: str) -> int:
        ident = identity_key(identity)
        with self._locks.hold(ident, track):
            keys = [k for k in self._blobs if k[0] == ident and k[1] == track]
            for key in keys:
                del self._blobs[key]
            self._ids.forget(ident, track)
        return len(keys)
