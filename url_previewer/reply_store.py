"""On-disk bookkeeping of which preview reply belongs to which message.

Lets a restarted bot edit or retract the reply it already posted instead of
posting a second one. One JSON file per room, read once on first use and
then served from memory. Writes go through a worker thread.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re

log = logging.getLogger(__name__)

_SAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9_.:!-]+")


class ReplyStore:
    def __init__(self, root: str) -> None:
        self.root = root
        self._rooms: dict[str, dict[str, str]] = {}
        self._write_lock = asyncio.Lock()

    def _path(self, room_id: str) -> str:
        return os.path.join(self.root, f"{_SAFE_FILENAME_RE.sub('_', room_id)}.json")

    def _load(self, room_id: str) -> dict[str, str]:
        path = self._path(room_id)
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            log.warning("[%s] Ignoring unreadable reply store %s: %s", room_id, path, exc)
            return {}
        replies = data.get("replies", {}) if isinstance(data, dict) else {}
        if not isinstance(replies, dict):
            return {}
        return {
            str(event_id): reply_id
            for event_id, reply_id in replies.items()
            if isinstance(reply_id, str) and reply_id
        }

    def _replies(self, room_id: str) -> dict[str, str]:
        replies = self._rooms.get(room_id)
        if replies is None:
            replies = self._rooms[room_id] = self._load(room_id)
        return replies

    def _save(self, room_id: str, replies: dict[str, str]) -> None:
        path = self._path(room_id)
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump({"replies": replies}, fh, indent=2)
        os.replace(tmp_path, path)

    async def _flush(self, room_id: str) -> None:
        # Snapshots are taken under the lock, so files are written in mutation order.
        async with self._write_lock:
            snapshot = dict(self._replies(room_id))
            await asyncio.to_thread(self._save, room_id, snapshot)

    def get(self, room_id: str, event_id: str) -> str | None:
        return self._replies(room_id).get(event_id)

    async def put(self, room_id: str, event_id: str, reply_id: str) -> None:
        replies = self._replies(room_id)
        if replies.get(event_id) == reply_id:
            return
        replies[event_id] = reply_id
        await self._flush(room_id)

    async def remove(self, room_id: str, event_id: str) -> None:
        if self._replies(room_id).pop(event_id, None) is not None:
            await self._flush(room_id)
