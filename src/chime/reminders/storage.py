"""Durable store for the reminder collection.

Manifesto:
    A crash while saving must never leave the store worse than before the
    save began. New content is written in full to a temporary file in the
    same directory, fsynced, and swapped over the canonical file with a
    single ``os.replace``; readers see either the old file or the new one,
    never a torn write. Unreadable content on load is quarantined and
    treated as an empty collection, because refusing to start would stop
    every future reminder too.

Tags:
    chime, storage, persistence, atomic-write, json

Doc-Types:
    api-reference


    File Format::

        {
          "version": 1,
          "saved_at": "2025-01-01T00:00:00+00:00",
          "items": [ {ScheduledItem.to_dict()}, ... ]
        }
"""

from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from chime.core.errors import StorageCorruptionError, StorageError
from chime.core.logging import get_logger
from chime.reminders.models import ScheduledItem

logger = get_logger(__name__)

FORMAT_VERSION = 1


@runtime_checkable
class DurableStore(Protocol):
    """Whole-collection persistence.

    Implementations do no locking of their own; the repository serializes
    every call.
    """

    def load(self) -> list[ScheduledItem]:
        """Return the last persisted collection, or ``[]`` if none/corrupt."""
        ...

    def save(self, items: Iterable[ScheduledItem]) -> None:
        """Persist the full collection atomically.

        Raises:
            StorageError: The write failed; the previous state is intact.
        """
        ...


class JsonFileStore:
    """JSON file store with atomic replace.

    Example:
        >>> store = JsonFileStore("data/reminders.json")
        >>> store.save([item])
        >>> store.load()
        [ScheduledItem(...)]
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    @property
    def quarantine_path(self) -> Path:
        return self.path.with_name(self.path.name + ".corrupt")

    # === Load ===

    def load(self) -> list[ScheduledItem]:
        if not self.path.exists():
            logger.info("reminder_store_empty", path=str(self.path))
            return []

        try:
            items = self.peek()
        except StorageCorruptionError as e:
            self._report_corruption(e)
            return []

        logger.info("reminder_store_loaded", path=str(self.path), items=len(items))
        return items

    def peek(self) -> list[ScheduledItem]:
        """Read the stored collection without side effects.

        Unlike ``load`` this never quarantines the file, so read-only tools
        may use it while a leader owns the store.

        Raises:
            StorageCorruptionError: The file is unreadable or malformed
        """
        if not self.path.exists():
            return []
        try:
            raw = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise StorageCorruptionError(f"Unreadable store: {e}", cause=e).with_context(
                path=str(self.path)
            ) from e
        return self._decode(raw)

    def _decode(self, raw: str) -> list[ScheduledItem]:
        if not raw.strip():
            return []
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageCorruptionError(f"Invalid JSON: {e}", cause=e) from e

        if not isinstance(document, dict) or not isinstance(document.get("items"), list):
            raise StorageCorruptionError("Store document has no 'items' list")

        version = document.get("version", FORMAT_VERSION)
        if version != FORMAT_VERSION:
            raise StorageCorruptionError(f"Unsupported store version {version!r}")

        return [ScheduledItem.from_dict(record) for record in document["items"]]

    def _report_corruption(self, error: StorageCorruptionError) -> None:
        error.with_context(path=str(self.path))
        logger.error(
            "reminder_store_corrupt",
            detail="starting with an empty reminder collection; stored reminders are lost",
            quarantine=str(self.quarantine_path),
            **error.to_dict(),
        )
        try:
            os.replace(self.path, self.quarantine_path)
        except OSError as e:
            logger.error("reminder_store_quarantine_failed", path=str(self.path), error=str(e))

    # === Save ===

    def save(self, items: Iterable[ScheduledItem]) -> None:
        document = {
            "version": FORMAT_VERSION,
            "saved_at": datetime.now(UTC).isoformat(),
            "items": [item.to_dict() for item in items],
        }
        payload = json.dumps(document, indent=2, ensure_ascii=False)

        tmp_name: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
            self._fsync_directory()
        except OSError as e:
            raise StorageError(f"Failed to save reminders: {e}", cause=e).with_context(
                path=str(self.path)
            ) from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.warning("reminder_store_tmp_cleanup_failed", tmp=tmp_name)

        logger.debug("reminder_store_saved", path=str(self.path), items=len(document["items"]))

    def _fsync_directory(self) -> None:
        # Makes the rename itself durable; not supported on every platform.
        if not hasattr(os, "O_DIRECTORY"):
            return
        try:
            dir_fd = os.open(self.path.parent, os.O_RDONLY | os.O_DIRECTORY)
        except OSError as e:
            logger.debug("reminder_store_dir_fsync_skipped", error=str(e))
            return
        try:
            os.fsync(dir_fd)
        except OSError as e:
            logger.debug("reminder_store_dir_fsync_skipped", error=str(e))
        finally:
            os.close(dir_fd)


__all__ = ["DurableStore", "JsonFileStore", "FORMAT_VERSION"]
