"""Filesystem stores: JSON turn logs and blob files with a JSON type index.

Layout under ``root``::

    <identity>/chat_history.json               default track
    <identity>/<track>/chat_history.json       other tracks
    <identity>[/<track>]/attachments/<id>.<ext>
    <identity>[/<track>]/attachments/_index.json
"""

from __future__ import annotations

import base64
import json
import logging
from pathlib import Path

from ..core.store import AttachmentStore, TurnStore
from ..types import (
    AttachmentStorageError,
    LoadedAttachment,
    SavedAttachment,
    Turn,
    TurnStoreError,
)
from .helpers import (
    IdGenerator,
    PartitionLocks,
    dt_to_str,
    extension_for_mime,
    identity_key,
    legacy_key,
    mime_for_extension,
    str_to_dt,
)

logger = logging.getLogger(__name__)

HISTORY_FILENAME = "chat_history.json"
ATTACHMENTS_DIRNAME = "attachments"
INDEX_FILENAME = "_index.json"


def _turn_to_record(turn: Turn) -> dict:
    return {
        "timestamp": dt_to_str(turn.timestamp),
        "role": turn.role,
        "content": turn.content,
        "sender": turn.sender,
    }


def _record_to_turn(record: dict) -> Turn:
    if not isinstance(record, dict):
        raise ValueError(f"expected an object, got {type(record).__name__}")
    timestamp = record.get("timestamp")
    content = record.get("content", "")
    if not isinstance(timestamp, str):
        raise ValueError(f"timestamp must be a string, got {type(timestamp).__name__}")
    if not isinstance(content, str):
        raise ValueError(f"content must be a string, got {type(content).__name__}")
    return Turn(
        role=str(record.get("role", "user")),
        content=content,
        timestamp=str_to_dt(timestamp),
        sender=str(record.get("sender") or ""),
    )


def _scope_dir(root: Path, identity: str, track: str, default_track: str) -> Path:
    user_dir = root / identity_key(identity)
    if track and track != default_track:
        return user_dir / track
    return user_dir


class FilesystemTurnStore(TurnStore):
    """One JSON document per (identity, track), rewritten on each append."""

    def __init__(
        self,
        root: str | Path,
        legacy_root: str | Path | None = None,
        default_track: str = "chat",
    ) -> None:
        self.root = Path(root)
        self.legacy_root = Path(legacy_root) if legacy_root else None
        self.default_track = default_track
        self._locks = PartitionLocks()
        self.root.mkdir(parents=True, exist_ok=True)

    def history_path(self, identity: str, track: str) -> Path:
        return _scope_dir(self.root, identity, track, self.default_track) / HISTORY_FILENAME

    def _legacy_path(self, identity: str) -> Path | None:
        if self.legacy_root is None:
            return None
        return self.legacy_root / f"{legacy_key(identity)}.json"

    def _migrate_legacy(self, identity: str, track: str) -> None:
        """Move a default-track history from the old flat layout, once.

        Only runs while the canonical file is absent, so it can never
        re-trigger after a successful copy.
        """
        if track != self.default_track:
            return
        path = self.history_path(identity, track)
        if path.is_file():
            return
        legacy = self._legacy_path(identity)
        if legacy is None or not legacy.is_file():
            return

        logger.info("Found history in legacy location %s, migrating", legacy)
        try:
            records = json.loads(legacy.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Cannot migrate legacy history %s: %s", legacy, e)
            return
        if not isinstance(records, list):
            logger.error("Legacy history %s is not a list, skipping migration", legacy)
            return

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(records, indent=2))
        except OSError as e:
            raise TurnStoreError(f"Cannot migrate legacy history {legacy} to {path}: {e}") from e
        try:
            legacy.unlink()
            logger.info("Migrated and deleted legacy history file %s", legacy)
        except OSError as e:
            logger.error("Failed to delete legacy history file %s: %s", legacy, e)

    def _read(self, identity: str, track: str) -> list[dict] | None:
        """Load the partition's records. None if absent; raises on corruption."""
        self._migrate_legacy(identity, track)
        path = self.history_path(identity, track)
        if not path.is_file():
            return None
        try:
            records = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise TurnStoreError(f"Unreadable history {path}: {e}") from e
        if not isinstance(records, list):
            raise TurnStoreError(f"History {path} is not a list")
        return records

    def append(
        self,
        identity: str,
        track: str,
        role: str,
        content: str,
        sender: str = "",
        create: bool = True,
    ) -> Turn | None:
        with self._locks.hold(identity_key(identity), track):
            records = self._read(identity, track)
            if records is None:
                if not create:
                    return None
                records = []

            turn = Turn(role=role, content=content, sender=sender)
            records.append(_turn_to_record(turn))

            path = self.history_path(identity, track)
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(json.dumps(records, indent=2))
            except OSError as e:
                raise TurnStoreError(f"Cannot write history {path}: {e}") from e
            return turn

    def tail(self, identity: str, track: str, max_count: int) -> list[Turn]:
        if max_count <= 0:
            return []
        with self._locks.hold(identity_key(identity), track):
            try:
                records = self._read(identity, track)
            except TurnStoreError as e:
                logger.error("Error retrieving history: %s", e)
                return []
        if not records:
            return []

        turns: list[Turn] = []
        for record in records[-max_count:]:
            try:
                turns.append(_record_to_turn(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed history record: %s", e)
        return turns

    def clear(self, identity: str, track: str) -> bool:
        with self._locks.hold(identity_key(identity), track):
            path = self.history_path(identity, track)
            if not path.is_file():
                return False
            try:
                path.unlink()
            except OSError as e:
                raise TurnStoreError(f"Cannot delete history {path}: {e}") from e
            return True

    def exists(self, identity: str, track: str) -> bool:
        return self.history_path(identity, track).is_file()


class FilesystemAttachmentStore(AttachmentStore):
    """Blob files named ``<id>.<ext>`` with the type tag kept in ``_index.json``."""

    def __init__(self, root: str | Path, default_track: str = "chat", id_generator: IdGenerator | None = None) -> None:
        self.root = Path(root)
        self.default_track = default_track
        self._ids = id_generator or IdGenerator()
        self._locks = PartitionLocks()
        self.root.mkdir(parents=True, exist_ok=True)

    def scope_dir(self, identity: str, track: str) -> Path:
        return _scope_dir(self.root, identity, track, self.default_track) / ATTACHMENTS_DIRNAME

    def _load_index(self, scope: Path) -> dict[str, dict]:
        index_path = scope / INDEX_FILENAME
        if not index_path.is_file():
            return {}
        try:
            data = json.loads(index_path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable attachment index %s: %s", index_path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _save_index(self, scope: Path, index: dict[str, dict]) -> None:
        (scope / INDEX_FILENAME).write_text(json.dumps(index, indent=2))

    @staticmethod
    def _find_by_prefix(scope: Path, attachment_id: str) -> Path | None:
        if not scope.is_dir():
            return None
        for path in sorted(scope.iterdir()):
            if path.name.startswith(f"{attachment_id}.") and path.name != INDEX_FILENAME:
                return path
        return None

    def save(self, identity: str, track: str, data: bytes, mime_type: str) -> SavedAttachment:
        scope = self.scope_dir(identity, track)
        ext = extension_for_mime(mime_type)
        with self._locks.hold(identity_key(identity), track):
            try:
                scope.mkdir(parents=True, exist_ok=True)
                index = self._load_index(scope)

                def taken(candidate: str) -> bool:
                    return candidate in index or self._find_by_prefix(scope, candidate) is not None

                attachment_id = self._ids.next_id(identity_key(identity), track, taken=taken)
                path = scope / f"{attachment_id}.{ext}"
                with open(path, "xb") as f:
                    f.write(data)
                index[attachment_id] = {"file": path.name, "mime_type": mime_type}
                self._save_index(scope, index)
            except OSError as e:
                raise AttachmentStorageError(f"Cannot save attachment in {scope}: {e}") from e

        logger.info("Saved attachment %s (%s, %d bytes) to %s", attachment_id, mime_type, len(data), path)
        return SavedAttachment(id=attachment_id, path=str(path), mime_type=mime_type)

    def load(self, identity: str, track: str, attachment_id: str) -> LoadedAttachment | None:
        scope = self.scope_dir(identity, track)
        entry = self._load_index(scope).get(attachment_id)

        path: Path | None = None
        mime_type = ""
        if entry:
            path = scope / entry.get("file", "")
            mime_type = entry.get("mime_type", "")
            if not path.is_file():
                path = None
        if path is None:
            # Blobs written before the index existed carry their type only in the extension
            path = self._find_by_prefix(scope, attachment_id)
            if path is None:
                logger.warning("Attachment %s not found in %s", attachment_id, scope)
                return None
            mime_type = mime_for_extension(path.suffix.lstrip("."))

        try:
            raw = path.read_bytes()
        except OSError as e:
            logger.error("Error loading attachment %s: %s", path, e)
            return None
        return LoadedAttachment(
            id=attachment_id,
            data=base64.b64encode(raw).decode("ascii"),
            mime_type=mime_type,
        )

    def clear(self, identity: str, track: str) -> int:
        scope = self.scope_dir(identity, track)
        removed = 0
        with self._locks.hold(identity_key(identity), track):
            if not scope.is_dir():
                return 0
            for path in scope.iterdir():
                if not path.is_file():
                    continue
                try:
                    path.unlink()
                except OSError as e:
                    logger.error("Failed to delete attachment %s: %s", path, e)
                    continue
                if path.name != INDEX_FILENAME:
                    removed += 1
            self._ids.forget(identity_key(identity), track)
        return removed
