"""
Remote store adapters.

The board is one document holding the full task collection; activity is an
append-only log collection. Both support live subscriptions that push every
change, including changes caused by this process's own writes.

Backends:
  SQLiteDocumentStore  - shared store, subscriptions poll a version counter
  LocalFileStore       - degraded fallback, see local_store.py
"""
import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import RemoteReadError, RemoteWriteError
from .schema import ACTIVITY_LIMIT, strip_absent

logger = logging.getLogger(__name__)

BOARD_KEY = "board"

Unsubscribe = Callable[[], None]


def _deliver(callback: Callable, payload: Any, what: str) -> None:
    """Invoke a subscriber, logging instead of propagating its errors."""
    try:
        callback(payload)
    except Exception as e:
        logger.error(f"Error in {what} subscriber: {e}", exc_info=True)


class DocumentStore:
    """Interface every store backend implements. All I/O is async."""

    async def read_board_snapshot(self) -> Optional[Dict[str, Any]]:
        """Point read of the board document. None means it does not exist."""
        raise NotImplementedError

    async def write_board_snapshot(self, document: Dict[str, Any]) -> None:
        """Overwrite the whole board document (last write wins)."""
        raise NotImplementedError

    def subscribe_board_snapshot(self, on_change: Callable[[Dict[str, Any]], None]) -> Unsubscribe:
        raise NotImplementedError

    async def append_activity(self, entry: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def list_recent_activity(self, limit: int = ACTIVITY_LIMIT) -> List[Dict[str, Any]]:
        """Most recent entries, newest first."""
        raise NotImplementedError

    def subscribe_activity(
        self,
        on_change: Callable[[List[Dict[str, Any]]], None],
        limit: int = ACTIVITY_LIMIT,
    ) -> Unsubscribe:
        raise NotImplementedError

    async def clear_all_activity(self) -> int:
        """Delete every stored activity entry. Returns the number deleted."""
        raise NotImplementedError

    async def close(self) -> None:
        pass


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# SQLite backend
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection in WAL mode so pollers never block writers."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


@contextmanager
def _session(db_path: str):
    """Connection that commits on success and is always closed."""
    conn = _connect(db_path)
    try:
        with conn:
            yield conn
    finally:
        conn.close()


class SQLiteDocumentStore(DocumentStore):
    """SQLite-backed document store shared by every process on the host."""

    def __init__(self, db_path: str = None, poll_interval: float = 1.0):
        """Initialize store and create tables if needed."""
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "taskboard" / "board.db")
        self.db_path = db_path
        self.poll_interval = poll_interval
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._watchers: set = set()
        self._init_schema()

    def _init_schema(self):
        with _session(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    key TEXT PRIMARY KEY,
                    body TEXT NOT NULL,       -- JSON document
                    version INTEGER NOT NULL DEFAULT 1,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS activity (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    body TEXT NOT NULL,      -- JSON entry
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
            """)

    # ── Blocking helpers (run in a worker thread) ──

    def _read_document(self, key: str) -> Optional[Tuple[int, Dict[str, Any]]]:
        with _session(self.db_path) as conn:
            row = conn.execute(
                "SELECT version, body FROM documents WHERE key = ?", (key,)
            ).fetchone()
        if not row:
            return None
        return row["version"], json.loads(row["body"])

    def _write_document(self, key: str, document: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with _session(self.db_path) as conn:
            conn.execute("""
                INSERT INTO documents (key, body, version, updated_at)
                VALUES (?, ?, 1, ?)
                ON CONFLICT(key) DO UPDATE SET
                    body = excluded.body,
                    version = documents.version + 1,
                    updated_at = excluded.updated_at
            """, (key, json.dumps(document, ensure_ascii=False), now))

    def _insert_activity(self, entry: Dict[str, Any]) -> None:
        # OR IGNORE: a retried append whose first attempt landed is a no-op
        with _session(self.db_path) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO activity (id, body) VALUES (?, ?)",
                (entry["id"], json.dumps(entry, ensure_ascii=False)),
            )

    def _select_activity(self, limit: int) -> List[Dict[str, Any]]:
        with _session(self.db_path) as conn:
            rows = conn.execute(
                "SELECT body FROM activity ORDER BY seq DESC LIMIT ?", (limit,)
            ).fetchall()
        return [json.loads(r["body"]) for r in rows]

    def _activity_marker(self) -> Tuple[int, int]:
        with _session(self.db_path) as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(seq), 0) AS top, COUNT(*) AS total FROM activity"
            ).fetchone()
        return row["top"], row["total"]

    def _activity_seqs(self) -> List[int]:
        with _session(self.db_path) as conn:
            return [r["seq"] for r in conn.execute("SELECT seq FROM activity ORDER BY seq")]

    def _delete_activity(self, seq: int) -> None:
        with _session(self.db_path) as conn:
            conn.execute("DELETE FROM activity WHERE seq = ?", (seq,))

    # ── Board document ──

    async def read_board_snapshot(self) -> Optional[Dict[str, Any]]:
        try:
            found = await asyncio.to_thread(self._read_document, BOARD_KEY)
        except (sqlite3.Error, ValueError) as e:
            raise RemoteReadError(f"Failed to read board: {e}", cause=e) from e
        return found[1] if found else None

    async def write_board_snapshot(self, document: Dict[str, Any]) -> None:
        payload = strip_absent(document)
        try:
            await asyncio.to_thread(self._write_document, BOARD_KEY, payload)
        except sqlite3.Error as e:
            raise RemoteWriteError(f"Failed to write board: {e}", cause=e) from e

    def subscribe_board_snapshot(self, on_change: Callable[[Dict[str, Any]], None]) -> Unsubscribe:
        def poll(last):
            found = self._read_document(BOARD_KEY)
            if found is None or found[0] == last:
                return last, None
            return found[0], found[1]

        return self._watch(poll, on_change, "board")

    # ── Activity log ──

    async def append_activity(self, entry: Dict[str, Any]) -> None:
        payload = strip_absent(entry)
        try:
            await asyncio.to_thread(self._insert_activity, payload)
        except sqlite3.Error as e:
            raise RemoteWriteError(f"Failed to append activity: {e}", cause=e) from e

    async def list_recent_activity(self, limit: int = ACTIVITY_LIMIT) -> List[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(self._select_activity, limit)
        except (sqlite3.Error, ValueError) as e:
            raise RemoteReadError(f"Failed to list activity: {e}", cause=e) from e

    def subscribe_activity(
        self,
        on_change: Callable[[List[Dict[str, Any]]], None],
        limit: int = ACTIVITY_LIMIT,
    ) -> Unsubscribe:
        def poll(last):
            marker = self._activity_marker()
            if marker == last:
                return last, None
            return marker, self._select_activity(limit)

        return self._watch(poll, on_change, "activity")

    async def clear_all_activity(self) -> int:
        """
        Delete entries one by one. A failure part-way leaves the already
        deleted entries gone; the rest are left for a future clear.
        """
        try:
            seqs = await asyncio.to_thread(self._activity_seqs)
        except sqlite3.Error as e:
            raise RemoteReadError(f"Failed to list activity for clear: {e}", cause=e) from e

        deleted = 0
        for seq in seqs:
            try:
                await asyncio.to_thread(self._delete_activity, seq)
            except sqlite3.Error as e:
                raise RemoteWriteError(
                    f"Cleared {deleted} of {len(seqs)} activity entries: {e}", cause=e
                ) from e
            deleted += 1
        logger.info(f"Cleared {deleted} activity entries")
        return deleted

    # ── Subscriptions ──

    def _watch(self, poll: Callable, on_change: Callable, what: str) -> Unsubscribe:
        """
        Start a polling task that delivers a payload whenever poll() reports a
        new marker. The current state is delivered once on subscribe.
        """
        async def run():
            last = None
            while True:
                try:
                    last, payload = await asyncio.to_thread(poll, last)
                    if payload is not None:
                        _deliver(on_change, payload, what)
                except (sqlite3.Error, ValueError) as e:
                    logger.warning(f"{what} subscription poll failed: {e}")
                await asyncio.sleep(self.poll_interval)

        task = asyncio.get_running_loop().create_task(run())
        self._watchers.add(task)

        def unsubscribe():
            task.cancel()
            self._watchers.discard(task)

        return unsubscribe

    async def close(self) -> None:
        watchers = list(self._watchers)
        for task in watchers:
            task.cancel()
        if watchers:
            await asyncio.gather(*watchers, return_exceptions=True)
        self._watchers.clear()
