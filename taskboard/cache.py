"""
Synchronization cache: the single in-process source of truth for tasks and
activity.

Local edits are applied to the mirror immediately (optimistic) and then
persisted by one writer coroutine that wraps each board write in the retry
policy. Remote pushes replace the task list wholesale (document-level
last-write-wins).

Save cycle:
  IDLE → DIRTY → SAVING → IDLE
                 SAVING → ERROR_SIGNALED → IDLE   (after retries run out)
                          ERROR_SIGNALED → DIRTY  (edited while the write was failing)

Self-echo suppression: every outgoing write carries a revision one higher
than any revision this client has written or seen. Incoming snapshots older
than the last locally written revision are ignored, as are our own echoes at
that revision, so they never clobber newer local edits or re-trigger a save.
Another client's snapshot at the same revision is settled by a point read.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .errors import RemoteReadError
from .retry import RetryPolicy
from .schema import (
    ACTIVITY_LIMIT,
    ActivityItem,
    Task,
    tasks_from_document,
    tasks_to_document,
)
from .store import DocumentStore

logger = logging.getLogger(__name__)


class SyncState(Enum):
    IDLE = "idle"
    DIRTY = "dirty"
    SAVING = "saving"
    ERROR_SIGNALED = "error"


@dataclass
class SyncError:
    """Error surfaced to the UI. kind is "connection" (blocking) or "save" (banner)."""
    kind: str
    message: str
    error: Optional[BaseException] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class Signal:
    """Observer list for one payload type. connect() returns an unsubscribe handle."""

    def __init__(self, name: str):
        self.name = name
        self._callbacks: List[Callable] = []

    def connect(self, callback: Callable) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe():
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def emit(self, payload: Any) -> None:
        for callback in list(self._callbacks):
            try:
                callback(payload)
            except Exception as e:
                logger.error(f"Error in {self.name} observer: {e}", exc_info=True)


def _revision_of(document: Dict[str, Any]) -> int:
    try:
        return int(document.get("revision") or 0)
    except (TypeError, ValueError):
        return 0


class SyncCache:
    """Mirror of the board and activity log, kept in step with a DocumentStore."""

    def __init__(
        self,
        store: DocumentStore,
        retry_policy: Optional[RetryPolicy] = None,
        client_id: Optional[str] = None,
        activity_limit: int = ACTIVITY_LIMIT,
        seed_tasks: Optional[List[Task]] = None,
    ):
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.client_id = client_id or uuid.uuid4().hex
        self.activity_limit = activity_limit
        self.seed_tasks = list(seed_tasks) if seed_tasks else None

        self._tasks: List[Task] = []
        self._activity: List[ActivityItem] = []
        self._pending_activity: set = set()
        self._activity_clears = 0

        self._state = SyncState.IDLE
        self._dirty = False
        self._writer: Optional[asyncio.Task] = None
        self._background: set = set()
        self._deferred: Optional[Dict[str, Any]] = None
        self._last_local_revision: Optional[int] = None
        self._last_seen_revision = 0
        self._unsubscribers: List[Callable[[], None]] = []

        self.connection_error: Optional[SyncError] = None
        self.save_error: Optional[SyncError] = None
        self.started = False

        self._tasks_signal = Signal("tasks")
        self._activity_signal = Signal("activity")
        self._error_signal = Signal("error")
        self._state_signal = Signal("sync_state")

    # ──────────────────────────────────────────
    # Observers
    # ──────────────────────────────────────────

    def on_tasks(self, callback: Callable[[List[Task]], None]) -> Callable[[], None]:
        return self._tasks_signal.connect(callback)

    def on_activity(self, callback: Callable[[List[ActivityItem]], None]) -> Callable[[], None]:
        return self._activity_signal.connect(callback)

    def on_error(self, callback: Callable[[SyncError], None]) -> Callable[[], None]:
        return self._error_signal.connect(callback)

    def on_sync_state(self, callback: Callable[[SyncState], None]) -> Callable[[], None]:
        return self._state_signal.connect(callback)

    # ──────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────

    def tasks(self) -> List[Task]:
        return list(self._tasks)

    def get_task(self, task_id: str) -> Optional[Task]:
        for task in self._tasks:
            if task.id == task_id:
                return task
        return None

    def activity(self) -> List[ActivityItem]:
        return list(self._activity)

    @property
    def sync_state(self) -> SyncState:
        return self._state

    @property
    def saving(self) -> bool:
        return self._state == SyncState.SAVING

    # ──────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────

    async def start(self) -> bool:
        """
        Load the board and recent activity, then subscribe to live updates.

        Returns False (and signals a "connection" error) when the store cannot
        be read at all.
        """
        self.connection_error = None
        try:
            document = await self.store.read_board_snapshot()
            entries = await self.store.list_recent_activity(self.activity_limit)
        except RemoteReadError as e:
            self.connection_error = SyncError("connection", f"Cannot connect to board store: {e}", e)
            logger.error(self.connection_error.message)
            self._error_signal.emit(self.connection_error)
            return False

        if document is None:
            if self.seed_tasks:
                logger.info(f"Board not found; seeding {len(self.seed_tasks)} tasks")
                self._commit(list(self.seed_tasks))
            else:
                logger.info("Board not found; starting empty")
                self._tasks = []
                self._tasks_signal.emit(self.tasks())
        else:
            self._last_seen_revision = max(self._last_seen_revision, _revision_of(document))
            self._tasks = tasks_from_document(document)
            self._tasks_signal.emit(self.tasks())

        self._activity = [ActivityItem.from_dict(e) for e in entries][:self.activity_limit]
        self._activity_signal.emit(self.activity())

        self._unsubscribers = [
            self.store.subscribe_board_snapshot(self._on_board_snapshot),
            self.store.subscribe_activity(self._on_activity_snapshot, self.activity_limit),
        ]
        self.started = True
        logger.info(f"Board loaded: {len(self._tasks)} tasks, {len(self._activity)} activity entries")
        return True

    async def reload(self) -> bool:
        """Manual retry after a connection error: tear down and start again."""
        await self.close()
        return await self.start()

    async def refresh(self) -> bool:
        """
        Point read after regaining visibility. Covers pushes missed while in
        the background. Returns True only if the mirror changed.
        """
        try:
            document = await self.store.read_board_snapshot()
        except RemoteReadError as e:
            logger.warning(f"Refresh failed: {e}")
            return False
        if document is None:
            return False
        return self._apply_remote_document(document, authoritative=True)

    async def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        await self.wait_idle()
        self.started = False

    async def wait_idle(self) -> None:
        """Wait for the writer and background activity tasks to finish."""
        while True:
            pending = [t for t in self._background if not t.done()]
            if self._writer is not None and not self._writer.done():
                pending.append(self._writer)
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def spawn(self, coro) -> asyncio.Task:
        """Run a background coroutine that wait_idle() will wait for."""
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ──────────────────────────────────────────
    # Local task mutations (optimistic)
    # ──────────────────────────────────────────

    def _index_of(self, task_id: str) -> int:
        for i, task in enumerate(self._tasks):
            if task.id == task_id:
                return i
        raise KeyError(f"Task not found: {task_id}")

    def add_task(self, task: Task, index: int = 0) -> None:
        if self.get_task(task.id) is not None:
            raise ValueError(f"Duplicate task id: {task.id}")
        tasks = self.tasks()
        tasks.insert(index, task)
        self._commit(tasks)

    def replace_task(self, task: Task) -> None:
        index = self._index_of(task.id)
        tasks = self.tasks()
        tasks[index] = task
        self._commit(tasks)

    def remove_task(self, task_id: str) -> Task:
        index = self._index_of(task_id)
        tasks = self.tasks()
        removed = tasks.pop(index)
        self._commit(tasks)
        return removed

    def move_task(self, task_id: str, index: int) -> None:
        """Move a task to `index` in the ordered collection."""
        current = self._index_of(task_id)
        tasks = self.tasks()
        task = tasks.pop(current)
        index = max(0, min(index, len(tasks)))
        tasks.insert(index, task)
        if tasks == self._tasks:
            return
        self._commit(tasks)

    def apply(self, mutator: Callable[[List[Task]], List[Task]]) -> None:
        """Replace the task list with mutator(copy_of_list)."""
        self._commit(list(mutator(self.tasks())))

    def _commit(self, tasks: List[Task]) -> None:
        self._tasks = tasks
        self._tasks_signal.emit(self.tasks())
        self._mark_dirty()

    # ──────────────────────────────────────────
    # Save cycle
    # ──────────────────────────────────────────

    def _set_state(self, state: SyncState) -> None:
        if state != self._state:
            self._state = state
            self._state_signal.emit(state)

    def _mark_dirty(self) -> None:
        self._dirty = True
        if self._state != SyncState.SAVING:
            self._set_state(SyncState.DIRTY)
        if self._writer is None or self._writer.done():
            self._writer = asyncio.get_running_loop().create_task(self._write_loop())

    async def _write_loop(self) -> None:
        """Persist the newest snapshot until no local change is outstanding."""
        while self._dirty:
            self._dirty = False
            self._set_state(SyncState.SAVING)

            previous_revision = self._last_local_revision
            revision = max(self._last_local_revision or 0, self._last_seen_revision) + 1
            self._last_local_revision = revision
            document = tasks_to_document(self._tasks, revision, self.client_id)

            try:
                await self.retry_policy.run(
                    lambda: self.store.write_board_snapshot(document),
                    on_failure=self._signal_save_failure,
                    label="Board save",
                )
            except asyncio.CancelledError:
                raise
            except Exception:
                # The failed snapshot is not replayed; local state is kept
                self._last_local_revision = previous_revision
                if self._dirty:
                    # Edited while the write was failing: that edit gets its own cycle
                    self._set_state(SyncState.DIRTY)
                    continue
                self._set_state(SyncState.IDLE)
                # Our write never landed, so the deferred snapshot is current
                deferred, self._deferred = self._deferred, None
                if deferred is not None:
                    self._apply_remote_document(deferred)
                return

            logger.debug(f"Board saved at revision {revision}")
            self.save_error = None

        self._set_state(SyncState.IDLE)
        if self._deferred is not None:
            # A push raced our write; only a fresh read tells which one the store kept
            self._deferred = None
            self.spawn(self.refresh())

    def _signal_save_failure(self, error: BaseException) -> None:
        self.save_error = SyncError("save", f"Could not save changes: {error}", error)
        self._set_state(SyncState.ERROR_SIGNALED)
        self._error_signal.emit(self.save_error)

    def dismiss_error(self) -> None:
        self.save_error = None

    # ──────────────────────────────────────────
    # Remote reconciliation
    # ──────────────────────────────────────────

    def _on_board_snapshot(self, document: Dict[str, Any]) -> None:
        self._apply_remote_document(document)

    def _apply_remote_document(self, document: Dict[str, Any], authoritative: bool = False) -> bool:
        """
        Adopt a remote snapshot unless it is older than our last write or is
        our own echo. `authoritative` marks a point read of the store.
        """
        revision = _revision_of(document)
        local = self._last_local_revision
        if local is not None:
            if revision < local or (revision == local and document.get("origin") == self.client_id):
                logger.debug(f"Ignoring snapshot at revision {revision} (local {local})")
                return False
            if revision == local and not authoritative:
                # Another client wrote the same revision; only a fresh read says which write the store kept
                self.spawn(self.refresh())
                return False

        self._last_seen_revision = max(self._last_seen_revision, revision)
        if self._dirty or self._state == SyncState.SAVING:
            # A local write is pending; decide once it lands
            self._deferred = document
            return False

        tasks = tasks_from_document(document)
        if tasks == self._tasks:
            return False
        self._tasks = tasks
        self._tasks_signal.emit(self.tasks())
        return True

    # ──────────────────────────────────────────
    # Activity mirror
    # ──────────────────────────────────────────

    def push_activity(self, item: ActivityItem, pending: bool = False) -> None:
        """Prepend an entry locally, keeping the newest `activity_limit`."""
        if pending:
            self._pending_activity.add(item.id)
        self._activity = ([item] + self._activity)[:self.activity_limit]
        self._activity_signal.emit(self.activity())

    def settle_activity(self, item_id: str) -> None:
        """Mark a locally pushed entry's remote append as finished."""
        self._pending_activity.discard(item_id)

    def replace_activity(self, items: List[ActivityItem]) -> bool:
        """Adopt a remote activity list, keeping local entries still being appended."""
        remote_ids = {i.id for i in items}
        local_only = [
            i for i in self._activity
            if i.id in self._pending_activity and i.id not in remote_ids
        ]
        merged = (local_only + list(items))[:self.activity_limit]
        if merged == self._activity:
            return False
        self._activity = merged
        self._activity_signal.emit(self.activity())
        return True

    def clear_activity(self) -> None:
        self._activity = []
        self._pending_activity.clear()
        self._activity_signal.emit([])

    def begin_activity_clear(self) -> None:
        self._activity_clears += 1

    def end_activity_clear(self) -> None:
        self._activity_clears = max(0, self._activity_clears - 1)

    def _on_activity_snapshot(self, entries: List[Dict[str, Any]]) -> None:
        if self._activity_clears:
            # Stale pushes from before the bulk delete would resurrect entries
            return
        self.replace_activity([ActivityItem.from_dict(e) for e in entries][:self.activity_limit])
