"""Durable account -> embedding store.

Readers work on an immutable snapshot that is swapped in only after the
backing medium accepted the write, so ``list()`` never observes a torn or
unpersisted ``put``.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Protocol

from facepay.domain import Registration
from facepay.errors import StorageIOError

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


class PersistenceBackend(Protocol):
    """Bulk load/save of the full registration set."""

    def load(self) -> list[Registration] | None:
        """Return the persisted registrations, or None when nothing was ever saved.

        Raises:
            StorageIOError: If the medium exists but cannot be read or parsed.
        """
        ...

    def save(self, registrations: Sequence[Registration]) -> None:
        """Overwrite the persisted set.

        Raises:
            StorageIOError: If the write fails.
        """
        ...


class JsonFileBackend:
    """Stores registrations in a single JSON document, written atomically."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> list[Registration] | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageIOError(f"Cannot read {self.path}: {exc}") from exc

        try:
            document = json.loads(raw)
            if document.get("version") != FORMAT_VERSION:
                raise ValueError(f"unsupported format version {document.get('version')!r}")
            return [Registration.from_dict(entry) for entry in document["registrations"]]
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise StorageIOError(f"Corrupt embeddings file {self.path}: {exc}") from exc

    def save(self, registrations: Sequence[Registration]) -> None:
        document = {
            "version": FORMAT_VERSION,
            "registrations": [r.to_dict() for r in registrations],
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(document, fh, indent=2)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StorageIOError(f"Cannot write {self.path}: {exc}") from exc

    def quarantine(self) -> Path | None:
        """Move an unreadable file aside so the next save cannot overwrite it."""
        if not self.path.exists():
            return None
        target = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time())}")
        try:
            os.replace(self.path, target)
        except OSError:
            logger.exception("Could not move corrupt embeddings file %s aside", self.path)
            return None
        return target

    def size_bytes(self) -> int:
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return 0


@dataclass(frozen=True)
class StoreStats:
    count: int
    size_bytes: int


class EmbeddingStore:
    """Thread-safe registration store keyed by account id."""

    def __init__(self, backend: PersistenceBackend) -> None:
        self._backend = backend
        self._write_lock = threading.Lock()
        self._snapshot: Mapping[str, Registration] = self._initial_load()

    def _initial_load(self) -> Mapping[str, Registration]:
        try:
            loaded = self._backend.load()
        except StorageIOError:
            logger.exception("Failed to load embeddings, starting with an empty store")
            quarantine = getattr(self._backend, "quarantine", None)
            if quarantine is not None:
                moved = quarantine()
                if moved is not None:
                    logger.error("Unreadable embeddings file preserved at %s", moved)
            return MappingProxyType({})

        if loaded is None:
            logger.info("No existing embeddings found, starting fresh")
            return MappingProxyType({})

        registrations: dict[str, Registration] = {}
        for registration in loaded:
            registrations[registration.account_id] = registration
        logger.info("Loaded %d face embeddings", len(registrations))
        return MappingProxyType(registrations)

    # -- Reads ---------------------------------------------------------------

    def get(self, account_id: str) -> Registration | None:
        return self._snapshot.get(account_id)

    def list(self) -> list[Registration]:
        """Return all registrations in stable, persisted order."""
        return list(self._snapshot.values())

    def __len__(self) -> int:
        return len(self._snapshot)

    def __contains__(self, account_id: object) -> bool:
        return account_id in self._snapshot

    def stats(self) -> StoreStats:
        size_bytes = getattr(self._backend, "size_bytes", None)
        return StoreStats(
            count=len(self._snapshot),
            size_bytes=size_bytes() if size_bytes is not None else 0,
        )

    # -- Writes --------------------------------------------------------------

    def put(self, registration: Registration) -> None:
        """Insert or wholesale-replace the registration for its account id."""
        with self._write_lock:
            updated = dict(self._snapshot)
            updated[registration.account_id] = registration
            self._commit(updated)
        logger.info("Stored face embedding for %s (%s)", registration.display_name, registration.account_id)

    def remove(self, account_id: str) -> bool:
        """Delete a registration. Returns False if the account was not registered."""
        with self._write_lock:
            if account_id not in self._snapshot:
                return False
            updated = dict(self._snapshot)
            del updated[account_id]
            self._commit(updated)
        logger.info("Removed face embedding for %s", account_id)
        return True

    def clear(self) -> None:
        with self._write_lock:
            self._commit({})
        logger.info("Cleared all face embeddings")

    def _commit(self, updated: dict[str, Registration]) -> None:
        # Caller holds the write lock.
        self._backend.save(list(updated.values()))
        self._snapshot = MappingProxyType(updated)
