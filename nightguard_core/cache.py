"""
Local offline snapshot cache.

Mirrors the last successfully synced session per venue (and the last
loaded history list) on local disk so a device that loses its
connection can keep showing the current shift.

Files are written atomically using temp file + rename:
    {cache_dir}/{venue_id}_session.json
    {cache_dir}/{venue_id}_history.json
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from .exceptions import StorageIOError

logger = logging.getLogger(__name__)


async def ensure_directory(path: Path) -> None:
    """Ensure directory exists, creating if necessary."""
    try:
        await aiofiles.os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise StorageIOError("create_directory", str(path), e) from e


async def read_json(path: Path) -> Any | None:
    """Read a JSON file.

    Args:
        path: Path to JSON file

    Returns:
        Parsed JSON data or None if file doesn't exist
    """
    try:
        if not await aiofiles.os.path.exists(path):
            return None
        async with aiofiles.open(path, encoding="utf-8") as f:
            content = await f.read()
            return json.loads(content) if content.strip() else None
    except json.JSONDecodeError as e:
        raise StorageIOError("parse_json", str(path), e) from e
    except OSError as e:
        raise StorageIOError("read_json", str(path), e) from e


async def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON file atomically using temp file + rename.

    Args:
        path: Target path for JSON file
        data: Data to serialize as JSON
    """
    await ensure_directory(path.parent)

    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".tmp_", suffix=".json")
    try:
        os.close(fd)
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(data, indent=2, default=_json_serializer))
            await f.flush()
            os.fsync(f.fileno())

        await aiofiles.os.rename(temp_path, path)
    except Exception as e:
        try:
            await aiofiles.os.remove(temp_path)
        except OSError:
            pass
        raise StorageIOError("write_json", str(path), e) from e


async def remove_file(path: Path) -> bool:
    """Remove a file if it exists. Returns True if a file was removed."""
    try:
        if await aiofiles.os.path.exists(path):
            await aiofiles.os.remove(path)
            return True
        return False
    except OSError as e:
        raise StorageIOError("remove", str(path), e) from e


def _json_serializer(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class LocalSnapshotCache:
    """Per-venue local cache of the last synced session and history.

    Only used for offline fallback; nothing here is ever pushed back to
    the remote store.
    """

    def __init__(self, cache_dir: Path | str) -> None:
        self.cache_dir = Path(cache_dir)

    def _session_path(self, venue_id: str) -> Path:
        return self.cache_dir / f"{venue_id}_session.json"

    def _history_path(self, venue_id: str) -> Path:
        return self.cache_dir / f"{venue_id}_history.json"

    async def save_session(self, venue_id: str, document: dict[str, Any]) -> None:
        await write_json_atomic(self._session_path(venue_id), document)

    async def load_session(self, venue_id: str) -> dict[str, Any] | None:
        """Return the cached session document, or None if absent or unreadable."""
        try:
            data = await read_json(self._session_path(venue_id))
        except StorageIOError as e:
            logger.warning(f"Ignoring unreadable session cache for venue {venue_id}: {e}")
            return None
        return data if isinstance(data, dict) else None

    async def save_history(self, venue_id: str, documents: list[dict[str, Any]]) -> None:
        await write_json_atomic(self._history_path(venue_id), documents)

    async def load_history(self, venue_id: str) -> list[dict[str, Any]]:
        try:
            data = await read_json(self._history_path(venue_id))
        except StorageIOError as e:
            logger.warning(f"Ignoring unreadable history cache for venue {venue_id}: {e}")
            return []
        return data if isinstance(data, list) else []

    async def clear(self, venue_id: str) -> None:
        """Drop everything cached for a venue."""
        await remove_file(self._session_path(venue_id))
        await remove_file(self._history_path(venue_id))
