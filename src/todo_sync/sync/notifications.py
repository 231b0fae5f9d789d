"""
Notification payloads carried by ``notification`` events.

Titles and messages are rendered once, when the notification is appended,
so every device shows the same text regardless of when it replays it.
"""

from enum import Enum
from typing import Any, Dict, Mapping, Optional


class NotificationPriority(Enum):
    """Notification priority levels."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class NotificationType(Enum):
    """Known notification types."""
    DUE_DATE_REMINDER = "due_date_reminder"
    TODO_CREATED_HIGH_PRIORITY = "todo_created_high_priority"
    TODO_STATE_CHANGED = "todo_state_changed"
    TODO_DUE_DATE_CHANGED = "todo_due_date_changed"
    TODO_DELETED = "todo_deleted"
    FILE_UPLOADED = "file_uploaded"
    FILE_DELETED = "file_deleted"
    BULK_UPDATE = "bulk_update"
    BULK_DELETE = "bulk_delete"
    SYSTEM = "system_notification"


_TITLES = {
    NotificationType.DUE_DATE_REMINDER: "Due Date Reminder: {todo_title}",
    NotificationType.TODO_CREATED_HIGH_PRIORITY: "High Priority Todo: {todo_title}",
    NotificationType.TODO_STATE_CHANGED: "Todo Status Updated: {todo_title}",
    NotificationType.TODO_DUE_DATE_CHANGED: "Due Date Updated: {todo_title}",
    NotificationType.TODO_DELETED: "Todo Deleted: {todo_title}",
    NotificationType.FILE_UPLOADED: "File Uploaded: {filename}",
    NotificationType.FILE_DELETED: "File Deleted: {filename}",
    NotificationType.BULK_UPDATE: "Bulk Update Completed",
    NotificationType.BULK_DELETE: "Bulk Delete Completed",
    NotificationType.SYSTEM: "{title}",
}

_MESSAGES = {
    NotificationType.DUE_DATE_REMINDER: 'Your todo "{todo_title}" is due soon!',
    NotificationType.TODO_CREATED_HIGH_PRIORITY: 'You created a high priority todo: "{todo_title}"',
    NotificationType.TODO_STATE_CHANGED: 'Todo "{todo_title}" moved from {from_state} to {to_state}',
    NotificationType.TODO_DUE_DATE_CHANGED: 'Due date updated for todo: "{todo_title}"',
    NotificationType.TODO_DELETED: 'Todo "{todo_title}" has been deleted',
    NotificationType.FILE_UPLOADED: 'File "{filename}" uploaded successfully ({file_size})',
    NotificationType.FILE_DELETED: 'File "{filename}" has been deleted',
    NotificationType.BULK_UPDATE: "Bulk update completed: {successful}/{total} items processed",
    NotificationType.BULK_DELETE: "Bulk delete completed: {successful}/{total} items processed",
    NotificationType.SYSTEM: "{message}",
}

_DEFAULTS = {
    "todo_title": "Untitled",
    "title": "System Notification",
    "message": "System notification",
    "filename": "file",
    "successful": 0,
    "total": 0,
}


class _Fields(dict):
    def __missing__(self, key):
        return _DEFAULTS.get(key, "")


def format_file_size(size: Any) -> str:
    try:
        size = float(size)
    except (TypeError, ValueError):
        return "unknown size"
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


def build_notification(
    notification_type: str,
    data: Optional[Mapping[str, Any]] = None,
    priority: NotificationPriority = NotificationPriority.NORMAL,
) -> Dict[str, Any]:
    """
    Render a notification payload.

    Unknown types are accepted and get generic text.
    """
    data = dict(data or {})
    fields = _Fields(data)
    if "file_size" in data:
        fields["file_size"] = format_file_size(data["file_size"])

    try:
        known = NotificationType(notification_type)
    except ValueError:
        known = None

    if known is None:
        title = "Notification"
        message = "You have a new notification"
    else:
        title = _TITLES[known].format_map(fields)
        message = _MESSAGES[known].format_map(fields)

    return {
        "type": notification_type,
        "title": title,
        "message": message,
        "priority": NotificationPriority(priority).value,
        "data": data,
    }


def state_change_notification(
    item_title: str,
    item_id: str,
    from_state: str,
    to_state: str,
) -> Dict[str, Any]:
    return build_notification(
        NotificationType.TODO_STATE_CHANGED.value,
        {
            "todo_id": item_id,
            "todo_title": item_title or _DEFAULTS["todo_title"],
            "from_state": from_state,
            "to_state": to_state,
        },
    )


__all__ = [
    'NotificationType',
    'NotificationPriority',
    'build_notification',
    'state_change_notification',
    'format_file_size',
]
