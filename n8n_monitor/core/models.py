from datetime import datetime, timezone
from enum import Enum


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    RUNNING = "running"
    WAITING = "waiting"
    CANCELED = "canceled"


class NotificationType(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    SUCCESS = "success"


class CounterState(str, Enum):
    HEALTHY = "healthy"
    FAILING = "failing"
    AUTO_DEACTIVATED = "auto_deactivated"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> datetime | None:
    """Parse an ISO-8601 timestamp from the remote API into aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
