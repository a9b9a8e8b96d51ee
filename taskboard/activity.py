"""
Activity recorder: turns domain events into activity entries.

Entries land in the local mirror synchronously for immediate feedback; the
remote append runs in the background with retries. Activity is best-effort:
append failures are logged and never reach the caller.
"""
import logging
from typing import Iterable, Optional

from .cache import SyncCache
from .retry import RetryPolicy
from .schema import ActivityItem, Task, TaskStatus
from .store import DocumentStore

logger = logging.getLogger(__name__)


class ActivityRecorder:
    """Records board, PR and deployment events into the activity feed."""

    def __init__(
        self,
        cache: SyncCache,
        store: DocumentStore,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.cache = cache
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()

    def record(
        self,
        action: str,
        subject_title: str,
        details: Optional[str] = None,
        source: Optional[str] = "board",
    ) -> ActivityItem:
        """Fire-and-forget: update the mirror now, append remotely later."""
        item = ActivityItem(
            action=action,
            task_title=subject_title,
            details=details or None,
            source=source,
        )
        self.cache.push_activity(item, pending=True)
        self.cache.spawn(self._append(item))
        return item

    async def _append(self, item: ActivityItem) -> None:
        try:
            await self.retry_policy.run(
                lambda: self.store.append_activity(item.to_dict()),
                label="Activity append",
            )
            logger.info(f"Activity logged: {item.action} - {item.task_title}")
        except Exception as e:
            logger.error(f"Failed to log activity '{item.action}' for '{item.task_title}': {e}")
        finally:
            self.cache.settle_activity(item.id)

    def clear(self) -> None:
        """Empty the feed locally now and delete every stored entry in the background."""
        self.cache.clear_activity()
        self.cache.begin_activity_clear()
        self.cache.spawn(self._clear_remote())

    async def _clear_remote(self) -> None:
        try:
            deleted = await self.store.clear_all_activity()
            logger.info(f"Activity cleared ({deleted} entries deleted)")
        except Exception as e:
            # No rollback: entries already deleted stay deleted
            logger.error(f"Activity clear incomplete: {e}")
        finally:
            self.cache.end_activity_clear()

    # ── Domain events ──

    def task_created(self, task: Task) -> ActivityItem:
        return self.record("Created", task.title)

    def task_moved(self, task: Task, from_status: TaskStatus, to_status: TaskStatus) -> ActivityItem:
        return self.record("Moved", task.title, f"{from_status.title} -> {to_status.title}")

    def task_updated(self, task: Task, fields: Iterable[str]) -> ActivityItem:
        return self.record("Updated", task.title, ", ".join(fields))

    def task_deleted(self, task: Task) -> ActivityItem:
        return self.record("Deleted", task.title)
