"""CredentialPool: round-robin rotation over interchangeable API keys per service."""

from __future__ import annotations

import copy
import json
import logging
import threading
from pathlib import Path
from typing import Protocol

from ..types import CredentialStoreError

logger = logging.getLogger(__name__)


class CredentialBackend(Protocol):
    def read(self) -> dict | None:
        """Return the persisted document, or None if there is none."""

    def write(self, data: dict) -> None:
        """Persist the full pool state. Raises OSError on failure."""


class JsonFileCredentialBackend:
    """Pool state as a single pretty-printed JSON object on disk."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def read(self) -> dict | None:
        if not self.path.is_file():
            return None
        return json.loads(self.path.read_text())

    def write(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2))


class MemoryCredentialBackend:

    def __init__(self, data: dict | None = None) -> None:
        self.data = copy.deepcopy(data) if data is not None else None
        self.writes = 0

    def read(self) -> dict | None:
        return copy.deepcopy(self.data) if self.data is not None else None

    def write(self, data: dict) -> None:
        self.data = copy.deepcopy(data)
        self.writes += 1


def mask_credential(credential: str) -> str:
    if len(credential) <= 8:
        return "*" * len(credential)
    return f"{credential[:4]}...{credential[-4:]}"


class CredentialPool:
    """Ordered credentials per service with a rotation cursor.

    ``get`` hands out the key at the cursor and advances it (wrapping), so
    consecutive calls cycle through the pool in insertion order. Every
    mutation is written to the backend before it is reported successful.
    All access is serialized by one lock; ``get`` is an atomic
    fetch-and-advance.
    """

    def __init__(self, backend: CredentialBackend) -> None:
        self._backend = backend
        self._keys: dict[str, list[str]] = {}
        self._cursors: dict[str, int] = {}
        self._lock = threading.Lock()

    def load(self) -> None:
        """Read persisted keys. Fails soft: any problem leaves an empty pool."""
        with self._lock:
            self._keys = {}
            self._cursors = {}
            try:
                data = self._backend.read()
            except (OSError, ValueError) as e:
                logger.error("Error loading API keys: %s", e)
                return

            if data is None:
                logger.info("No persisted API keys found, starting with an empty pool")
                return
            if not isinstance(data, dict):
                logger.error("Error loading API keys: expected an object, got %s", type(data).__name__)
                return

            for service, value in data.items():
                if isinstance(value, str):
                    # legacy single-key entry
                    self._keys[service] = [value]
                elif isinstance(value, list):
                    keys = [k for k in value if isinstance(k, str)]
                    if len(keys) != len(value):
                        logger.warning("Dropped %d non-string key(s) for %s", len(value) - len(keys), service)
                    self._keys[service] = keys
                else:
                    logger.warning("Skipping %s: unsupported key value type %s", service, type(value).__name__)
                    continue
                self._cursors[service] = 0

            logger.info("Loaded API key pool with %d services", len(self._keys))
            for service, keys in self._keys.items():
                logger.info("  - %s: %d key(s)", service, len(keys))

    def get(self, service: str) -> str | None:
        """Key at the cursor, then advance the cursor. None if nothing is available."""
        with self._lock:
            keys = self._keys.get(service)
            if not keys:
                logger.warning("No API keys available for %s", service)
                return None
            index = self._cursors.get(service, 0)
            if index >= len(keys):
                index = 0
            self._cursors[service] = (index + 1) % len(keys)
            logger.debug("Using %s API key %d/%d", service, index + 1, len(keys))
            return keys[index]

    def add(self, service: str, credential: str) -> bool:
        """Append a key unless already present. Returns True if added."""
        with self._lock:
            keys = self._keys.get(service, [])
            if credential in keys:
                logger.info("API key already exists for %s", service)
                return False
            created = service not in self._keys
            self._keys[service] = keys + [credential]
            self._cursors.setdefault(service, 0)
            try:
                self._persist()
            except CredentialStoreError:
                if created:
                    del self._keys[service]
                    del self._cursors[service]
                else:
                    self._keys[service] = keys
                raise
            logger.info("Added new API key for %s", service)
            return True

    def remove(self, service: str, credential: str) -> bool:
        """Remove every exact match. Returns True if anything was removed."""
        with self._lock:
            keys = self._keys.get(service)
            if not keys:
                return False
            remaining = [k for k in keys if k != credential]
            if len(remaining) == len(keys):
                return False

            cursor = self._cursors.get(service, 0)
            self._keys[service] = remaining
            if cursor >= len(remaining):
                self._cursors[service] = 0
            try:
                self._persist()
            except CredentialStoreError:
                self._keys[service] = keys
                self._cursors[service] = cursor
                raise
            logger.info("Removed API key from %s", service)
            return True

    def count(self, service: str) -> int:
        with self._lock:
            return len(self._keys.get(service, []))

    def cursor(self, service: str) -> int:
        with self._lock:
            return self._cursors.get(service, 0)

    def services(self) -> dict[str, int]:
        with self._lock:
            return {service: len(keys) for service, keys in self._keys.items()}

    def snapshot(self) -> dict[str, list[str]]:
        with self._lock:
            return copy.deepcopy(self._keys)

    def _persist(self) -> None:
        try:
            self._backend.write(copy.deepcopy(self._keys))
        except (OSError, TypeError, ValueError) as e:
            logger.error("Error saving API keys: %s", e)
            raise CredentialStoreError(f"Cannot persist API keys: {e}") from e
