"""
Intent lifecycle state machine.

Pure functions over intent documents. Every accepted transition appends a
``status_changed`` timeline entry; entering a terminal state stamps
``archived_at`` and ``completed_reason`` the first time only.
"""

from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

STATUS_EMERGING = "emerging"
STATUS_ACTIVE = "active"
STATUS_DORMANT = "dormant"
STATUS_COMPLETED = "completed"
STATUS_MERGED = "merged"
STATUS_DISCARDED = "discarded"
STATUS_EXPIRED = "expired"

VALID_TRANSITIONS: Dict[str, List[str]] = {
    STATUS_EMERGING: [STATUS_ACTIVE, STATUS_MERGED, STATUS_DISCARDED, STATUS_DORMANT],
    STATUS_ACTIVE: [STATUS_DORMANT, STATUS_COMPLETED, STATUS_MERGED, STATUS_DISCARDED],
    STATUS_DORMANT: [STATUS_ACTIVE, STATUS_COMPLETED, STATUS_EXPIRED, STATUS_MERGED, STATUS_DISCARDED],
    STATUS_COMPLETED: [],
    STATUS_MERGED: [],
    STATUS_DISCARDED: [],
    STATUS_EXPIRED: [],
}

OPEN_STATUSES = [STATUS_EMERGING, STATUS_ACTIVE, STATUS_DORMANT]

DORMANT_AFTER_SECONDS = 30 * 60
EXPIRE_AFTER_SECONDS = 7 * 24 * 60 * 60
MAX_MERGE_CHAIN = 20

_DEFAULT_COMPLETED_REASON = {
    STATUS_COMPLETED: "inferred",
    STATUS_MERGED: "merged",
    STATUS_DISCARDED: "explicit",
    STATUS_EXPIRED: "timeout",
}


class InvalidTransitionError(ValueError):
    """Raised for a status change outside the transition table."""

    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Invalid status transition: {from_status} -> {to_status}")
        self.from_status = from_status
        self.to_status = to_status


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def is_terminal(status: str) -> bool:
    return status in VALID_TRANSITIONS and not VALID_TRANSITIONS[status]


def is_open(intent: Dict) -> bool:
    return intent.get("status") in OPEN_STATUSES


def transition_intent(
    intent: Dict,
    new_status: str,
    reason: Optional[str] = None,
    metadata: Optional[Dict] = None,
    completed_reason: Optional[str] = None,
    now: Optional[float] = None,
) -> Dict:
    """Move ``intent`` to ``new_status`` in place.

    Args:
        intent: Intent document
        new_status: Target status
        reason: Human readable reason stored on the timeline
        metadata: Extra fields for the timeline entry
        completed_reason: Overrides the default terminal reason
        now: Epoch seconds, defaults to the current time

    Returns:
        The same intent document

    Raises:
        InvalidTransitionError: If the edge is not in the table.
    """
    old_status = intent.get("status")
    if not can_transition(old_status, new_status):
        raise InvalidTransitionError(old_status, new_status)

    ts = now if now is not None else datetime.now(timezone.utc).timestamp()
    intent["status"] = new_status

    if new_status == STATUS_ACTIVE and old_status == STATUS_DORMANT:
        intent["reactivated_at"] = ts

    if is_terminal(new_status):
        meta = intent.setdefault("metadata", {})
        if not meta.get("archived_at"):
            meta["archived_at"] = ts
            meta["completed_reason"] = completed_reason or _DEFAULT_COMPLETED_REASON[new_status]
        if not intent.get("completed_at"):
            intent["completed_at"] = ts

    entry = {
        "date": datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(),
        "event": "status_changed",
        "details": reason or f"Status changed from {old_status} to {new_status}",
        "from": old_status,
        "to": new_status,
    }
    if metadata:
        entry["metadata"] = dict(metadata)
    intent.setdefault("timeline", []).append(entry)
    return intent


def get_auto_transition(intent: Dict, now: float) -> Optional[tuple]:
    """Return ``(status, reason)`` the inactivity policy calls for, if any."""
    inactive = now - (intent.get("last_updated") or now)
    status = intent.get("status")
    if status in (STATUS_EMERGING, STATUS_ACTIVE) and inactive > DORMANT_AFTER_SECONDS:
        return STATUS_DORMANT, "Auto-transitioned: No activity for 30 minutes"
    if status == STATUS_DORMANT and inactive > DORMANT_AFTER_SECONDS + EXPIRE_AFTER_SECONDS:
        return STATUS_EXPIRED, "Auto-transitioned: Dormant for 7 days"
    return None


def auto_transition(intent: Dict, now: float) -> bool:
    change = get_auto_transition(intent, now)
    if not change:
        return False
    transition_intent(intent, change[0], reason=change[1], now=now)
    return True


def get_merge_chain(intent_id: str, get_intent: Callable[[str], Optional[Dict]]) -> List[Dict]:
    """Follow ``merged_into`` links starting at ``intent_id``."""
    chain: List[Dict] = []
    seen = set()
    current = intent_id
    while current and current not in seen:
        intent = get_intent(current)
        if not intent:
            break
        chain.append(intent)
        seen.add(current)
        if len(chain) > MAX_MERGE_CHAIN:
            break
        current = (intent.get("metadata") or {}).get("merged_into")
    return chain


def get_final_intent(intent_id: str, get_intent: Callable[[str], Optional[Dict]]) -> Optional[Dict]:
    chain = get_merge_chain(intent_id, get_intent)
    return chain[-1] if chain else None
