"""
Internal helpers shared across the telepool modules.

These functions are not part of the public API and may change without notice.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Return the current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


def sleep_ms(milliseconds: int) -> None:
    """Block for the given number of milliseconds (no-op for values <= 0)."""
    if milliseconds > 0:
        time.sleep(milliseconds / 1000.0)


def parse_retry_after(header: str | None) -> int | None:
    """
    Parse a Retry-After header value expressed in seconds.

    Supports integer and decimal seconds (decimals are truncated).
    HTTP-date values are not supported.

    Args:
        header: Raw header value, possibly None or empty.

    Returns:
        Whole seconds, or None if the header is absent, negative or unparseable.

    Example:
        >>> parse_retry_after("30")
        30
        >>> parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None
        True
    """
    if header is None:
        return None

    value = str(header).strip()
    if not value:
        return None

    try:
        seconds = int(value)
    except ValueError:
        try:
            seconds = int(float(value))
        except (TypeError, ValueError, OverflowError):
            return None

    if seconds < 0:
        return None
    return seconds


def save_json_file(data: dict[str, Any], file_path: Path) -> None:
    """
    Atomically save data as JSON to the specified file path.

    The document is written to a temporary file in the same directory and then
    moved over the destination with `os.replace`, so concurrent readers see
    either the previous document or the new one, never a partial write.

    Args:
        data: Dictionary to serialize as JSON.
        file_path: Destination path for the JSON file.

    Raises:
        RuntimeError: If the file cannot be written (wraps the original exception).

    Example:
        >>> save_json_file({"key": "value"}, Path("state/data.json"))
    """
    tmp_name: str | None = None
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{file_path.name}.", suffix=".tmp", dir=file_path.parent
        )
        with os.fdopen(fd, mode="w", encoding="utf-8") as file:
            json.dump(
                data, file,
                indent=2, ensure_ascii=False, default=str
            )
        os.replace(tmp_name, file_path)
        tmp_name = None
    except Exception as e:
        logger.error(
            f"❌ Error while writing JSON file to disk ({file_path.name}): {e}",
            exc_info=logger.isEnabledFor(logging.DEBUG)
        )
        raise RuntimeError(f"It's not possible to save JSON file in the disk ({file_path.name}): {e}") from e
    finally:
        if tmp_name is not None:
            Path(tmp_name).unlink(missing_ok=True)


def load_json_file(file_path: Path) -> Any:
    """
    Load a JSON document from disk.

    Args:
        file_path: Path of the JSON file.

    Returns:
        The decoded JSON value.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the content is not valid JSON (json.JSONDecodeError).
        OSError: If the file cannot be read.
    """
    with file_path.open(mode="r", encoding="utf-8") as file:
        return json.load(file)
