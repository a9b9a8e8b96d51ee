"""
Local persisted fallback store.

Used when no shared store is reachable. Holds the task collection and the
activity log as two whole JSON blobs under fixed keys in one directory.
Subscriptions only see changes made through this process.
"""
import asyncio
import copy
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .errors import RemoteReadError, RemoteWriteError
from .schema import ACTIVITY_LIMIT, strip_absent
from .store import DocumentStore, Unsubscribe, _deliver

logger = logging.getLogger(__name__)

TASKS_KEY = "kanban-tasks"
ACTIVITY_KEY = "kanban-activity"


class LocalFileStore(DocumentStore):
    """JSON-file store under fixed keys."""

    def __init__(self, directory: str, limit: int = ACTIVITY_LIMIT):
        self.directory = Path(directory).expanduser()
        self.directory.mkdir(parents=True, exist_ok=True)
        self.limit = limit
        self._board_listeners: List[Callable] = []
        self._activity_listeners: List[tuple] = []
        # Activity updates are read-modify-write across awaits
        self._activity_lock: Optional[asyncio.Lock] = None

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def _load(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise RemoteReadError(f"Failed to read {key}: {e}", cause=e) from e

    def _save(self, key: str, value: Any) -> None:
        # Atomic write: write to temp, then rename
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(value, f, ensure_ascii=False)
            tmp.replace(path)
        except OSError as e:
            raise RemoteWriteError(f"Failed to write {key}: {e}", cause=e) from e

    def _notify(self, listeners: List[Callable], payload: Any, what: str) -> None:
        # Deliver on the next loop iteration, like a real push would
        loop = asyncio.get_running_loop()
        for callback in list(listeners):
            loop.call_soon(_deliver, callback, copy.deepcopy(payload), what)

    # ── Board document ──

    async def read_board_snapshot(self) -> Optional[Dict[str, Any]]:
        data = await asyncio.to_thread(self._load, TASKS_KEY)
        if data is None:
            return None
        # Older blobs hold a bare task list
        if isinstance(data, list):
            return {"tasks": data}
        return data

    async def write_board_snapshot(self, document: Dict[str, Any]) -> None:
        payload = strip_absent(document)
        await asyncio.to_thread(self._save, TASKS_KEY, payload)
        self._notify(self._board_listeners, payload, "board")

    def subscribe_board_snapshot(self, on_change: Callable[[Dict[str, Any]], None]) -> Unsubscribe:
        self._board_listeners.append(on_change)

        def unsubscribe():
            if on_change in self._board_listeners:
                self._board_listeners.remove(on_change)

        return unsubscribe

    # ── Activity log ──

    async def _entries(self) -> List[Dict[str, Any]]:
        data = await asyncio.to_thread(self._load, ACTIVITY_KEY)
        return data if isinstance(data, list) else []

    def _lock(self) -> asyncio.Lock:
        if self._activity_lock is None:
            self._activity_lock = asyncio.Lock()
        return self._activity_lock

    def _notify_activity(self, entries: List[Dict[str, Any]]) -> None:
        loop = asyncio.get_running_loop()
        for callback, limit in list(self._activity_listeners):
            loop.call_soon(_deliver, callback, copy.deepcopy(entries[:limit]), "activity")

    async def append_activity(self, entry: Dict[str, Any]) -> None:
        payload = strip_absent(entry)
        async with self._lock():
            entries = [e for e in await self._entries() if e.get("id") != payload.get("id")]
            entries.insert(0, payload)
            entries = entries[:self.limit]
            await asyncio.to_thread(self._save, ACTIVITY_KEY, entries)
        self._notify_activity(entries)

    async def list_recent_activity(self, limit: int = ACTIVITY_LIMIT) -> List[Dict[str, Any]]:
        return (await self._entries())[:limit]

    def subscribe_activity(
        self,
        on_change: Callable[[List[Dict[str, Any]]], None],
        limit: int = ACTIVITY_LIMIT,
    ) -> Unsubscribe:
        listener = (on_change, limit)
        self._activity_listeners.append(listener)

        def unsubscribe():
            if listener in self._activity_listeners:
                self._activity_listeners.remove(listener)

        return unsubscribe

    async def clear_all_activity(self) -> int:
        async with self._lock():
            count = len(await self._entries())
            await asyncio.to_thread(self._save, ACTIVITY_KEY, [])
        self._notify_activity([])
        return count

    async def close(self) -> None:
        self._board_listeners.clear()
        self._activity_listeners.clear()
