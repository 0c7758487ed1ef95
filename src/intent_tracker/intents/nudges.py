"""
Nudge suggestions: reminders for stalled intents and merge hints.

Nudges are computed on demand from the current intents and returned to
the caller; nothing is stored or delivered from here.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .state_machine import OPEN_STATUSES

MAX_NUDGES = 3
DORMANT_AFTER_DAYS = 7
URGENT_AFTER_DAYS = 14
MERGE_KEYWORD_OVERLAP = 0.3
SECONDS_PER_DAY = 24 * 60 * 60

PRIORITY_RANK = {"high": 3, "medium": 2, "low": 1}


@dataclass
class Nudge:
    intent_id: str
    type: str
    priority: str
    title: str
    body: str
    reason: str
    confidence: float
    evidence: List[str] = field(default_factory=list)
    actions: List[Dict] = field(default_factory=list)
    trigger_rule: str = ""
    created_at: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def key(self) -> str:
        return f"{self.intent_id}:{self.type}"

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "intent_id": self.intent_id,
            "type": self.type,
            "priority": self.priority,
            "status": "pending",
            "message": {
                "title": self.title,
                "body": self.body,
                "context": {"reason": self.reason, "evidence": list(self.evidence),
                            "confidence": self.confidence},
            },
            "suggested_actions": list(self.actions),
            "timing": {"created_at": self.created_at, "trigger_rule": self.trigger_rule},
        }


def _keywords(intent: Dict) -> set:
    return set(((intent.get("aggregated_signals") or {}).get("keywords") or {}).keys())


def dormant_nudge(intent: Dict, pages: List[Dict], now: float) -> Optional[Nudge]:
    """Remind about an intent untouched for a week or more."""
    days = (now - float(intent.get("last_updated") or now)) / SECONDS_PER_DAY
    if days < DORMANT_AFTER_DAYS:
        return None
    whole_days = int(days)
    label = intent.get("label") or "research"
    ranked = sorted(pages, key=lambda p: (p.get("interactions") or {}).get("engagement_score") or 0.0,
                    reverse=True)
    top_title = ranked[0].get("title") if ranked else None
    return Nudge(
        intent_id=intent["id"],
        type="reminder",
        priority="high" if days > URGENT_AFTER_DAYS else "medium",
        title=f"Remember your {label}?",
        body=(f"It's been {whole_days} days since you last explored this topic. "
              f"You had {len(pages)} pages and seemed engaged. Ready to continue?"),
        reason=f"No activity for {whole_days} days",
        confidence=0.8,
        evidence=[
            f"Last activity {whole_days} days ago",
            f"{len(pages)} pages explored",
            f"High engagement on: {top_title or 'various pages'}",
        ],
        actions=[{
            "label": f"Continue researching {label}",
            "action": "search",
            "payload": {"query": label},
            "confidence": 0.9,
        }],
        trigger_rule="dormant_intent",
        created_at=now,
    )


def merge_nudge(intent: Dict, others: List[Dict], now: float) -> Optional[Nudge]:
    """Suggest merging with the first open intent sharing enough keywords."""
    keywords = _keywords(intent)
    if not keywords:
        return None
    for other in others:
        if other["id"] == intent["id"]:
            continue
        other_keywords = _keywords(other)
        if not other_keywords:
            continue
        shared = keywords & other_keywords
        if len(shared) / max(len(keywords), len(other_keywords)) <= MERGE_KEYWORD_OVERLAP:
            continue
        return Nudge(
            intent_id=intent["id"],
            type="merge_suggestion",
            priority="low",
            title="Merge related research?",
            body=(f"\"{intent.get('label')}\" and \"{other.get('label')}\" seem related. "
                  "Would you like to merge them?"),
            reason="Similar topics detected",
            confidence=0.7,
            evidence=[
                f"Shared keywords: {', '.join(sorted(shared)[:6])}",
                f"{intent.get('page_count') or 0} + {other.get('page_count') or 0} pages total",
            ],
            actions=[{
                "label": "Merge these intents",
                "action": "merge_intents",
                "payload": {"source_id": intent["id"], "target_id": other["id"]},
                "confidence": 0.7,
            }],
            trigger_rule="merge_suggestion",
            created_at=now,
        )
    return None


def generate_nudges(intents: List[Dict], pages_for: Callable[[str], List[Dict]],
                    now: Optional[float] = None, limit: int = MAX_NUDGES) -> List[Dict]:
    """
    Build the most urgent nudges for the open intents.

    One nudge per (intent, type); a pair of related intents yields a
    single merge hint.

    Args:
        intents: Candidate intents; closed or discarded ones are skipped
        pages_for: Loads the pages of an intent by id
        now: Reference time, defaults to the current time
        limit: Maximum number of nudges returned

    Returns:
        Nudge dicts, highest priority first
    """
    now = now if now is not None else time.time()
    open_intents = [i for i in intents
                    if i.get("status") in OPEN_STATUSES
                    and not (i.get("user_feedback") or {}).get("discarded")]

    nudges: List[Nudge] = []
    seen = set()
    paired = set()
    for intent in open_intents:
        candidates = [dormant_nudge(intent, pages_for(intent["id"]), now),
                      merge_nudge(intent, open_intents, now)]
        for nudge in candidates:
            if nudge is None or nudge.key in seen:
                continue
            if nudge.type == "merge_suggestion":
                pair = frozenset((nudge.intent_id, nudge.actions[0]["payload"]["target_id"]))
                if pair in paired:
                    continue
                paired.add(pair)
            seen.add(nudge.key)
            nudges.append(nudge)

    nudges.sort(key=lambda n: PRIORITY_RANK[n.priority], reverse=True)
    return [n.to_dict() for n in nudges[:max(limit, 0)]]
