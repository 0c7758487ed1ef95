"""Rolling per-type duration statistics used for queue ETAs."""

import logging
import threading
from typing import Dict, Iterable, Optional

logger = logging.getLogger(__name__)

DEFAULT_DURATIONS_MS = {
    "semantic_extraction": 12000,
    "summarization": 4000,
    "classify_behavior": 5000,
    "intent_matching": 500,
    "generate_intent_label": 6000,
    "generate_intent_goal": 5000,
    "generate_intent_summary": 8000,
    "generate_intent_insights": 10000,
    "generate_intent_next_steps": 8000,
    "ai_verify_intent_matching": 12000,
    "scan_intent_merge_opportunities": 15000,
    "merge_intents": 2000,
    "generate_activity_summary": 10000,
}

FALLBACK_DURATION_MS = 5000
MEAN_SAMPLE_LIMIT = 20
EMA_ALPHA = 0.1
CONFIDENCE_TYPES = ("semantic_extraction", "summarization", "intent_matching")
SETTINGS_KEY = "task_duration_stats"


class DurationStats:
    """Arithmetic mean for the first samples, exponential moving average after.

    State is a dict ``{task_type: {"avg_ms": float, "samples": int}}`` and is
    written through ``store.put_setting`` when a store is given.
    """

    def __init__(self, store=None):
        self.store = store
        self._lock = threading.Lock()
        self._stats: Dict[str, Dict[str, float]] = {}
        if store is not None:
            self._stats = dict(store.get_setting(SETTINGS_KEY, {}) or {})

    def record(self, task_type: str, duration_ms: float):
        with self._lock:
            entry = self._stats.get(task_type) or {"avg_ms": 0.0, "samples": 0}
            samples = int(entry["samples"])
            if samples < MEAN_SAMPLE_LIMIT:
                avg = (entry["avg_ms"] * samples + duration_ms) / (samples + 1)
            else:
                avg = EMA_ALPHA * duration_ms + (1 - EMA_ALPHA) * entry["avg_ms"]
            self._stats[task_type] = {"avg_ms": avg, "samples": samples + 1}
            snapshot = dict(self._stats)
        if self.store is not None:
            self.store.put_setting(SETTINGS_KEY, snapshot)

    def average(self, task_type: str) -> float:
        entry = self._stats.get(task_type)
        if entry and entry.get("samples"):
            return float(entry["avg_ms"])
        return float(DEFAULT_DURATIONS_MS.get(task_type, FALLBACK_DURATION_MS))

    def samples(self, task_type: str) -> int:
        return int((self._stats.get(task_type) or {}).get("samples") or 0)

    def confidence(self, types: Iterable[str] = CONFIDENCE_TYPES) -> str:
        minimum = min(self.samples(t) for t in types)
        if minimum == 0:
            return "low"
        if minimum < 5:
            return "medium"
        return "high"

    def to_dict(self) -> Dict:
        return {
            t: {"avg_ms": round(self.average(t), 1), "samples": self.samples(t)}
            for t in sorted(set(DEFAULT_DURATIONS_MS) | set(self._stats))
        }

    def estimate_ms(self, task_types: Iterable[str],
                    remaining_ms: Optional[float] = None) -> float:
        total = sum(self.average(t) for t in task_types)
        return total + (remaining_ms or 0.0)
