"""Database utility functions."""
import time
import uuid


def uuid4() -> str:
    """Generate random UUID4."""
    return str(uuid.uuid4())


def now_ts() -> float:
    """Current wall-clock time as epoch seconds."""
    return time.time()


def as_uuid(value):
    """Coerce a string id to ``uuid.UUID``; returns None for malformed ids."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        return None
