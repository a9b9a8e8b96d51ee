"""
Board view model: turns UI intents into cache mutations.

The UI never touches the collections directly. It dispatches intents
(create, edit, delete, drag gestures) here, and holds only transient view
state. Drag state lives here too and is never persisted.
"""
import logging
from dataclasses import dataclass, replace
from typing import Any, List, Optional

from .activity import ActivityRecorder
from .cache import SyncCache
from .schema import (
    EDITABLE_FIELDS,
    ChangeRecord,
    Column,
    Task,
    TaskPriority,
    TaskStatus,
    normalize_tags,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass
class DragState:
    task_id: str
    origin: TaskStatus
    over_id: Optional[str] = None


def _coerce_status(value: Any) -> TaskStatus:
    if isinstance(value, TaskStatus):
        return value
    try:
        return TaskStatus(value)
    except ValueError:
        raise ValueError(
            f"Invalid status: '{value}'. Allowed: {', '.join(s.value for s in TaskStatus)}"
        )


def _coerce_priority(value: Any) -> TaskPriority:
    if isinstance(value, TaskPriority):
        return value
    try:
        return TaskPriority(value)
    except ValueError:
        raise ValueError(
            f"Invalid priority: '{value}'. Allowed: {', '.join(p.value for p in TaskPriority)}"
        )


def _coerce_text(name: str, value: Any) -> Optional[str]:
    """Trimmed text or None. JSON bodies can carry any type here."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string")
    return value.strip() or None


def _coerce_tags(value: Any) -> Optional[List[str]]:
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(tag, str) for tag in value):
        raise ValueError("tags must be a list of strings")
    return normalize_tags(value)


def _plain(value: Any) -> Any:
    """Value as it appears in a history record."""
    if isinstance(value, (TaskStatus, TaskPriority)):
        return value.value
    if isinstance(value, list):
        return list(value)
    return value


class BoardViewModel:
    """Reconciles board intents and drag gestures against the SyncCache."""

    def __init__(self, cache: SyncCache, recorder: ActivityRecorder):
        self.cache = cache
        self.recorder = recorder
        self._drag: Optional[DragState] = None

    # ──────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────

    def columns(self) -> List[Column]:
        """Tasks partitioned by status, in column order, keeping list order."""
        by_status = {status: Column(id=status.value, title=status.title) for status in TaskStatus}
        for task in self.cache.tasks():
            by_status[task.status].tasks.append(task)
        return list(by_status.values())

    def preview_columns(self) -> List[Column]:
        """Columns with the dragged task shown at the end of the hovered column."""
        columns = self.columns()
        if self._drag is None:
            return columns
        target = self._resolve_column(self._drag.over_id)
        task = self.cache.get_task(self._drag.task_id)
        if task is None or target is None or target == task.status:
            return columns
        for column in columns:
            column.tasks = [t for t in column.tasks if t.id != task.id]
            if column.id == target.value:
                column.tasks.append(task)
        return columns

    def _resolve_column(self, over_id: Optional[str]) -> Optional[TaskStatus]:
        """over_id may name a column or a task inside one."""
        if over_id is None:
            return None
        try:
            return TaskStatus(over_id)
        except ValueError:
            pass
        task = self.cache.get_task(over_id)
        return task.status if task else None

    def _require(self, task_id: str) -> Task:
        task = self.cache.get_task(task_id)
        if task is None:
            raise KeyError(f"Task not found: {task_id}")
        return task

    # ──────────────────────────────────────────
    # Task intents
    # ──────────────────────────────────────────

    def create_task(
        self,
        title: str,
        status: Any = TaskStatus.BACKLOG,
        description: Optional[str] = None,
        priority: Any = TaskPriority.MEDIUM,
        tags: Optional[List[str]] = None,
        link: Optional[str] = None,
    ) -> Task:
        """Create a task at the top of its column and record it."""
        task = Task.create(
            _coerce_text("title", title),
            status=_coerce_status(status),
            description=_coerce_text("description", description),
            priority=_coerce_priority(priority),
            tags=_coerce_tags(tags),
            link=_coerce_text("link", link),
        )
        self.cache.add_task(task, index=0)
        self.recorder.task_created(task)
        return task

    def update_task(self, task_id: str, **changes) -> Task:
        """
        Apply field edits. Every field whose value actually changes gets a
        history record; nothing is written when no field changes.
        """
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown fields: {', '.join(sorted(unknown))}")

        task = self._require(task_id)
        updates = {}
        for name, value in changes.items():
            if name == "title":
                value = _coerce_text(name, value)
                if not value:
                    raise ValueError("Task title must not be empty")
            elif name == "status":
                value = _coerce_status(value)
            elif name == "priority":
                value = _coerce_priority(value)
            elif name == "tags":
                value = _coerce_tags(value)
            else:
                value = _coerce_text(name, value)
            if value != getattr(task, name):
                updates[name] = value

        if not updates:
            return task

        now = utc_now()
        records = [
            ChangeRecord(
                field=name,
                old_value=_plain(getattr(task, name)),
                new_value=_plain(value),
                timestamp=now,
            )
            for name, value in updates.items()
        ]
        updated = replace(
            task,
            **updates,
            history=list(task.history or []) + records,
            updated_at=now,
        )
        self.cache.replace_task(updated)
        self.recorder.task_updated(updated, updates.keys())
        return updated

    def delete_task(self, task_id: str) -> Task:
        task = self._require(task_id)
        self.cache.remove_task(task_id)
        self.recorder.task_deleted(task)
        return task

    def move_task(self, task_id: str, status: Any, index: Optional[int] = None) -> Task:
        """Move a task to a column, optionally to a position within it."""
        target = _coerce_status(status)
        task = self._require(task_id)
        if target != task.status:
            self._change_column(task, target)
        if index is not None:
            self._place_in_column(task_id, index)
        return self._require(task_id)

    # ──────────────────────────────────────────
    # Drag gestures
    # ──────────────────────────────────────────

    def drag_start(self, task_id: str) -> Optional[Task]:
        task = self.cache.get_task(task_id)
        if task is None:
            self._drag = None
            return None
        self._drag = DragState(task_id=task_id, origin=task.status)
        return task

    def drag_over(self, over_id: Optional[str]) -> Optional[TaskStatus]:
        """Track the hovered target. Returns the column it resolves to."""
        if self._drag is None:
            return None
        self._drag.over_id = over_id
        return self._resolve_column(over_id)

    def drag_cancel(self) -> None:
        self._drag = None

    def drag_end(self, over_id: Optional[str]) -> bool:
        """
        Commit a drag. Produces at most one column change (recorded as
        "Moved") and at most one reorder within the target column (not
        recorded). Returns True if anything changed.
        """
        drag, self._drag = self._drag, None
        if drag is None or over_id is None:
            return False

        task = self.cache.get_task(drag.task_id)
        target = self._resolve_column(over_id)
        if task is None or target is None:
            return False

        changed = False
        if target != task.status:
            self._change_column(task, target)
            changed = True

        if over_id != task.id:
            over_task = self.cache.get_task(over_id)
            if over_task is not None and over_task.status == target:
                changed = self._reorder_within_column(task.id, over_id) or changed
        return changed

    # ──────────────────────────────────────────
    # Mutations
    # ──────────────────────────────────────────

    def _change_column(self, task: Task, target: TaskStatus) -> None:
        """Set status and append the task to the end of the target column."""
        moved = replace(task, status=target, updated_at=utc_now())

        def mutate(tasks: List[Task]) -> List[Task]:
            tasks = [t for t in tasks if t.id != task.id]
            last = max((i for i, t in enumerate(tasks) if t.status == target), default=len(tasks) - 1)
            tasks.insert(last + 1, moved)
            return tasks

        self.cache.apply(mutate)
        self.recorder.task_moved(moved, task.status, target)

    def _reorder_within_column(self, task_id: str, over_id: str) -> bool:
        column = [t.id for t in self.cache.tasks() if t.status == self._require(task_id).status]
        old_index, new_index = column.index(task_id), column.index(over_id)
        if old_index == new_index:
            return False
        self._place_in_column(task_id, new_index)
        return True

    def _place_in_column(self, task_id: str, index: int) -> None:
        status = self._require(task_id).status
        tasks = self.cache.tasks()
        slots = [i for i, t in enumerate(tasks) if t.status == status]
        column = [tasks[i] for i in slots]
        old_index = next(i for i, t in enumerate(column) if t.id == task_id)
        index = max(0, min(index, len(column) - 1))
        if old_index == index:
            return
        column.insert(index, column.pop(old_index))

        def mutate(current: List[Task]) -> List[Task]:
            for slot, t in zip(slots, column):
                current[slot] = t
            return current

        self.cache.apply(mutate)
