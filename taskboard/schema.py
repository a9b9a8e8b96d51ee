"""
Task board schema.

Task lifecycle:
  Backlog → In Progress → Revision → Review → Done

Stored documents use camelCase keys. Optional fields are encoded by omission:
a field with no value is never written, not even as null.
"""
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
import time
import uuid


ACTIVITY_LIMIT = 50


class TaskStatus(Enum):
    """Board columns, in display order."""
    BACKLOG = "backlog"
    IN_PROGRESS = "in-progress"
    REVISION = "revision"
    REVIEW = "review"
    DONE = "done"

    @classmethod
    def from_str(cls, value: str) -> "TaskStatus":
        try:
            return cls(value)
        except ValueError:
            return cls.BACKLOG

    @property
    def title(self) -> str:
        return COLUMN_TITLES[self]


class TaskPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def from_str(cls, value: str) -> "TaskPriority":
        try:
            return cls(value)
        except ValueError:
            return cls.MEDIUM


COLUMN_TITLES = {
    TaskStatus.BACKLOG: "Backlog",
    TaskStatus.IN_PROGRESS: "In Progress",
    TaskStatus.REVISION: "Revision",
    TaskStatus.REVIEW: "Review",
    TaskStatus.DONE: "Done",
}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Utilities
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def utc_now() -> str:
    """ISO-8601 UTC timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def generate_id() -> str:
    """Generate a sortable unique ID (base-36 ms timestamp + random hex)."""
    ms = int(time.time() * 1000)
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    stamp = ""
    while ms:
        ms, rem = divmod(ms, 36)
        stamp = digits[rem] + stamp
    return f"{stamp}{uuid.uuid4().hex[:10]}"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, accepting a trailing Z."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(iso: str, now: Optional[datetime] = None) -> str:
    """Relative label for the activity feed: 'just now', '5m ago', '3h ago', 'Oct 19'."""
    now = now or datetime.now(timezone.utc)
    date = parse_timestamp(iso)
    diff_secs = (now - date).total_seconds()
    diff_mins = int(diff_secs // 60)
    diff_hours = int(diff_secs // 3600)
    if diff_mins < 1:
        return "just now"
    if diff_mins < 60:
        return f"{diff_mins}m ago"
    if diff_hours < 24:
        return f"{diff_hours}h ago"
    return f"{date.strftime('%b')} {date.day}"


def strip_absent(value: Any) -> Any:
    """
    Recursively drop None-valued keys from a document.

    The document store rejects explicit null markers, so "no value" must
    always be encoded as "key not present".
    """
    if isinstance(value, dict):
        return {k: strip_absent(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [strip_absent(v) for v in value]
    return value


def normalize_tags(tags: Optional[List[str]]) -> Optional[List[str]]:
    """Trim, drop blanks and de-duplicate while keeping order. Empty → None."""
    if not tags:
        return None
    seen = []
    for tag in tags:
        tag = str(tag).strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen or None


def parse_tags(text: str) -> Optional[List[str]]:
    """Parse a comma-separated tag string ("ops, deploy ,,x")."""
    return normalize_tags((text or "").split(","))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Data model
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass
class ChangeRecord:
    """One field edit on a task."""
    field: str
    old_value: Any = None
    new_value: Any = None
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return strip_absent({
            "timestamp": self.timestamp,
            "field": self.field,
            "oldValue": self.old_value,
            "newValue": self.new_value,
        })

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeRecord":
        return cls(
            field=data.get("field", ""),
            old_value=data.get("oldValue"),
            new_value=data.get("newValue"),
            timestamp=data.get("timestamp") or utc_now(),
        )


# Fields a user may edit through update_task(); each edit is recorded in history.
EDITABLE_FIELDS = ("title", "description", "priority", "status", "tags", "link")


@dataclass
class Task:
    """A card on the board."""

    id: str
    title: str
    status: TaskStatus = TaskStatus.BACKLOG
    priority: TaskPriority = TaskPriority.MEDIUM
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    link: Optional[str] = None
    history: Optional[List[ChangeRecord]] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = ""

    def __post_init__(self):
        if not self.updated_at:
            self.updated_at = self.created_at

    @classmethod
    def create(
        cls,
        title: str,
        status: TaskStatus = TaskStatus.BACKLOG,
        description: Optional[str] = None,
        priority: TaskPriority = TaskPriority.MEDIUM,
        tags: Optional[List[str]] = None,
        link: Optional[str] = None,
    ) -> "Task":
        """Build a new task with a fresh ID and matching created/updated stamps."""
        title = (title or "").strip()
        if not title:
            raise ValueError("Task title must not be empty")
        now = utc_now()
        return cls(
            id=generate_id(),
            title=title,
            status=status,
            priority=priority,
            description=(description or "").strip() or None,
            tags=normalize_tags(tags),
            link=(link or "").strip() or None,
            created_at=now,
            updated_at=now,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a store document. Absent fields are omitted."""
        return strip_absent({
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "tags": list(self.tags) if self.tags else None,
            "link": self.link,
            "history": [h.to_dict() for h in self.history] if self.history else None,
        })

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Deserialize, normalizing unknown enum values to their defaults."""
        created_at = data.get("createdAt") or utc_now()
        updated_at = data.get("updatedAt") or created_at
        # Keep updatedAt >= createdAt even for hand-edited documents
        try:
            if parse_timestamp(updated_at) < parse_timestamp(created_at):
                updated_at = created_at
        except ValueError:
            updated_at = created_at
        history = data.get("history")
        return cls(
            id=str(data.get("id", "")),
            title=data.get("title", ""),
            status=TaskStatus.from_str(data.get("status", "backlog")),
            priority=TaskPriority.from_str(data.get("priority", "medium")),
            description=data.get("description"),
            tags=normalize_tags(data.get("tags")),
            link=data.get("link"),
            history=[ChangeRecord.from_dict(h) for h in history] if history else None,
            created_at=created_at,
            updated_at=updated_at,
        )


@dataclass
class ActivityItem:
    """One entry in the activity feed. taskTitle is a snapshot, not a reference."""

    action: str
    task_title: str
    details: Optional[str] = None
    source: Optional[str] = None
    id: str = field(default_factory=generate_id)
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return strip_absent({
            "id": self.id,
            "action": self.action,
            "taskTitle": self.task_title,
            "details": self.details,
            "source": self.source,
            "timestamp": self.timestamp,
        })

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActivityItem":
        return cls(
            id=str(data.get("id") or generate_id()),
            action=data.get("action", ""),
            task_title=data.get("taskTitle", ""),
            details=data.get("details"),
            source=data.get("source"),
            timestamp=data.get("timestamp") or utc_now(),
        )


@dataclass
class Column:
    """A status partition of the board, for rendering."""
    id: str
    title: str
    tasks: List[Task] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "tasks": [t.to_dict() for t in self.tasks],
        }


def tasks_to_document(tasks: List[Task], revision: int, origin: str) -> Dict[str, Any]:
    """Build the single board document holding the whole task collection."""
    return {
        "tasks": [t.to_dict() for t in tasks],
        "updatedAt": utc_now(),
        "revision": revision,
        "origin": origin,
    }


def tasks_from_document(document: Dict[str, Any]) -> List[Task]:
    return [Task.from_dict(t) for t in document.get("tasks") or []]
