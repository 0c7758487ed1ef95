"""Completion detection: does the latest page finish the intent?"""

import re
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

CHECKOUT_PATTERNS = [
    re.compile(r"thank\s*you\s*for\s*(your\s*)?order", re.IGNORECASE),
    re.compile(r"order\s*confirmation", re.IGNORECASE),
    re.compile(r"purchase\s*complete", re.IGNORECASE),
    re.compile(r"payment\s*successful", re.IGNORECASE),
    re.compile(r"order\s*complete", re.IGNORECASE),
    re.compile(r"transaction\s*successful", re.IGNORECASE),
]

FORM_SUCCESS_WORDS = ("success", "submitted", "thank you", "confirmation")
COMPLETION_KEYWORDS = ("completed", "finished", "done", "purchased", "enrolled", "registered", "subscribed")

DORMANCY_DAYS = 14
DORMANCY_MIN_ENGAGEMENT = 0.7
KEYWORD_MIN_PAGES = 5


@dataclass
class CompletionResult:
    completed: bool
    reason: str
    confidence: float
    evidence: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "completed": self.completed,
            "reason": self.reason,
            "confidence": self.confidence,
            "evidence": list(self.evidence),
        }


def detect_completion(intent: Dict, page: Dict, now: Optional[float] = None) -> CompletionResult:
    """Evaluate the rules in order; the first match wins."""
    now = now if now is not None else time.time()
    title = page.get("title") or ""
    title_lower = title.lower()
    content = page.get("content") or ""

    if any(p.search(title) or p.search(content) for p in CHECKOUT_PATTERNS):
        return CompletionResult(
            True, "Order confirmation detected", 0.95,
            [f'Page title: "{title}"', "Shopping journey completed"],
        )

    behavior = (page.get("behavioral_class") or {}).get("primary_behavior")
    if behavior == "form_filling" and any(w in title_lower for w in FORM_SUCCESS_WORDS):
        return CompletionResult(
            True, "Form submission completed", 0.85,
            ["Form behavior + success page detected"],
        )

    days_idle = (now - (intent.get("last_updated") or now)) / 86400
    patterns = (intent.get("aggregated_signals") or {}).get("patterns") or {}
    avg_engagement = float(patterns.get("avg_engagement") or 0.0)
    if days_idle > DORMANCY_DAYS and avg_engagement > DORMANCY_MIN_ENGAGEMENT:
        return CompletionResult(
            True, "Extended dormancy after focused research", 0.7,
            [
                f"No activity for {round(days_idle)} days",
                f"High average engagement ({round(avg_engagement * 100)}%)",
                "Likely research goal achieved",
            ],
        )

    page_count = intent.get("page_count") or len(intent.get("page_ids") or [])
    if page_count >= KEYWORD_MIN_PAGES and any(k in title_lower for k in COMPLETION_KEYWORDS):
        return CompletionResult(
            True, "Completion keyword detected after substantial research", 0.75,
            [
                f'Page title contains completion signal: "{title}"',
                f"Intent has {page_count} pages, suggesting goal-oriented research",
            ],
        )

    return CompletionResult(False, "Intent still active", 1.0, [])
