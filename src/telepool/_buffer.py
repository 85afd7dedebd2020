"""
On-disk event buffer.

Every buffered event is its own JSON file named after a ULID, so listing the
directory in lexical order yields creation (FIFO) order, and each event can be
removed individually as soon as the server acknowledges it. Concurrent flush
processes may race on the same files; removing a file that is already gone is
not an error.

Example:
    >>> buffer = EventBuffer(Path("~/.claude/rulecatch/buffer").expanduser())
    >>> buffer.append(new_event("session_start", session_id="s-1"))
    >>> [e.event_id for e in buffer.read()]
    ['01HZY3...']
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ulid import ULID

from telepool._events import validate_event
from telepool._utils import load_json_file, save_json_file

logger = logging.getLogger(__name__)

EVENT_SUFFIX = ".json"
CORRUPT_SUFFIX = ".corrupt"


@dataclass(frozen=True)
class BufferedEvent:
    """
    An event stored in the buffer.

    Attributes:
        event_id: ULID of the event (the file stem).
        path: File holding the event.
        payload: The event record.
    """

    event_id: str
    path: Path
    payload: dict[str, Any]


class EventBuffer:
    """
    Directory of one-file-per-event records awaiting a drain.

    Args:
        directory: Buffer directory (created on first append).
    """

    def __init__(self, directory: Path):
        assert directory is not None, "Buffer directory cannot be None."
        self.directory = Path(directory)

    def append(self, event: Any) -> BufferedEvent:
        """
        Validate and store an event.

        Returns:
            The buffered event.

        Raises:
            InvalidEventError: If the event misses a required field.
            RuntimeError: If the file cannot be written.
        """
        payload = validate_event(event)
        event_id = str(ULID())
        path = self.directory / f"{event_id}{EVENT_SUFFIX}"
        save_json_file(payload, path)
        return BufferedEvent(event_id=event_id, path=path, payload=payload)

    def count(self) -> int:
        """Return the number of buffered events (corrupt files excluded)."""
        return len(self._event_files())

    def read(self, limit: int | None = None) -> list[BufferedEvent]:
        """
        Load buffered events, oldest first.

        Files that cannot be parsed or are not valid events are renamed with
        a `.corrupt` suffix and skipped. Files removed by a concurrent flush
        between listing and reading are skipped silently.

        Args:
            limit: Maximum number of events to return (None for all).

        Returns:
            The buffered events in FIFO order.
        """
        events: list[BufferedEvent] = []
        for path in self._event_files():
            if limit is not None and len(events) >= limit:
                break
            try:
                payload = validate_event(load_json_file(path))
            except FileNotFoundError:
                continue
            except (OSError, ValueError) as e:
                # InvalidEventError is a ValueError as well
                self._quarantine(path, e)
                continue
            events.append(BufferedEvent(event_id=path.stem, path=path, payload=payload))
        return events

    def remove(self, events: Iterable[BufferedEvent]) -> int:
        """
        Delete the files of acknowledged events.

        Returns:
            Number of files actually removed by this call.
        """
        removed = 0
        for event in events:
            try:
                event.path.unlink()
                removed += 1
            except FileNotFoundError:
                logger.debug(f"Buffered event {event.event_id} already removed by another flush")
        return removed

    def clear(self) -> int:
        """Delete every buffered event. Returns the number of files removed."""
        removed = 0
        for path in self._event_files():
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
        return removed

    def _event_files(self) -> list[Path]:
        if not self.directory.is_dir():
            return []
        return sorted(
            (p for p in self.directory.iterdir() if p.is_file() and p.suffix == EVENT_SUFFIX),
            key=lambda p: p.name,
        )

    def _quarantine(self, path: Path, error: Exception) -> None:
        target = path.with_name(path.name + CORRUPT_SUFFIX)
        try:
            path.replace(target)
            logger.warning(f"⚠️ Corrupt buffered event {path.name} moved to {target.name}: {error}")
        except OSError as e:
            logger.error(f"❌ Could not quarantine corrupt buffered event {path.name}: {e}")

