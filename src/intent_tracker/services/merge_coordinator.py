"""
Merge Coordinator - debounced, rate-limited discovery of merge candidates.

Intent changes are collected and a scan fires once no change has arrived for
the debounce window. A scan that fires too soon after the previous one is
rescheduled, so debounce and rate limit both apply. Candidate pairs are
pre-filtered with cheap heuristics and handed to a single batched scan task.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..config import Settings
from ..intents.state_machine import OPEN_STATUSES, STATUS_MERGED
from ..webapp.services.event_system import emit_event
from .task_kinds import ScanMergeOpportunities

logger = logging.getLogger(__name__)

SESSION_GAP_SECONDS = 60 * 60


def _signals(intent: Dict) -> Dict:
    return intent.get("aggregated_signals") or {}


def reject_pair(a: Dict, b: Dict) -> Optional[str]:
    """Return why the pair is not worth an oracle call, or None to keep it."""
    for intent in (a, b):
        if intent.get("status") == STATUS_MERGED or (intent.get("metadata") or {}).get("merged_into"):
            return "already merged"

    shared_domains = set(_signals(a).get("domains") or []) & set(_signals(b).get("domains") or [])
    shared_keywords = set((_signals(a).get("keywords") or {}).keys()) & set(
        (_signals(b).get("keywords") or {}).keys())

    if not shared_domains and len(shared_keywords) < 2:
        return "no shared domains and too few shared keywords"
    if abs((a.get("first_seen") or 0) - (b.get("first_seen") or 0)) > SESSION_GAP_SECONDS \
            and len(shared_keywords) < 5:
        return "different sessions"
    if (a.get("page_count") or 0) == 1 and (b.get("page_count") or 0) == 1:
        return "both single-page"
    return None


def prefilter_candidates(changed: List[Dict], all_intents: List[Dict]) -> List[Tuple[str, str]]:
    """Changed x all pairs that survive ``reject_pair``; each unordered pair once."""
    seen: Set[frozenset] = set()
    pairs: List[Tuple[str, str]] = []
    for a in changed:
        for b in all_intents:
            if a["id"] == b["id"]:
                continue
            key = frozenset((a["id"], b["id"]))
            if key in seen:
                continue
            seen.add(key)
            if reject_pair(a, b) is None:
                pairs.append((a["id"], b["id"]))
    return pairs


class MergeCoordinator:
    def __init__(
        self,
        store,
        scheduler,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.scheduler = scheduler
        self.settings = settings or Settings()
        self.logger = logging.getLogger(__name__)
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: Set[str] = set()
        self._timer: Optional[threading.Timer] = None
        self._forced = False
        self._scanning = False
        self._last_scan_at: Optional[float] = None

    def on_intent_changed(self, intent_id: str):
        """Record a change and (re)start the debounce timer."""
        with self._lock:
            self._pending.add(intent_id)
            self._schedule(self.settings.merge_debounce_seconds)
        self.logger.debug(
            f"Intent {intent_id} changed, merge scan in {self.settings.merge_debounce_seconds}s"
        )

    def force_scan(self):
        """Scan after the debounce window regardless of the rate limit."""
        with self._lock:
            self._forced = True
            self._schedule(self.settings.merge_debounce_seconds)

    def _schedule(self, delay: float):
        if self._timer is not None:
            self._timer.cancel()
        self._timer = threading.Timer(delay, self._on_timer)
        self._timer.daemon = True
        self._timer.start()

    def _on_timer(self):
        try:
            self.run_scan()
        except Exception as e:
            self.logger.error(f"Merge scan failed: {e}", exc_info=True)

    def run_scan(self) -> Optional[str]:
        """Run the scan now; returns the queued scan task id, if any."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            if self._scanning:
                return None
            forced = self._forced
            now = self._clock()
            if not forced and self._last_scan_at is not None:
                elapsed = now - self._last_scan_at
                if elapsed < self.settings.merge_min_interval_seconds:
                    wait = self.settings.merge_min_interval_seconds - elapsed
                    self.logger.debug(f"Merge scan too soon, rescheduling in {wait:.1f}s")
                    self._schedule(wait)
                    return None
            self._scanning = True
            self._forced = False
            self._last_scan_at = now
            pending = set(self._pending)

        task_id, keep_pending = None, False
        try:
            task_id, keep_pending = self._scan(pending, forced)
        finally:
            with self._lock:
                self._scanning = False
                if not keep_pending:
                    self._pending -= pending
        return task_id

    def _scan(self, pending: Set[str], forced: bool) -> Tuple[Optional[str], bool]:
        """Returns (task id, whether the pending ids must be kept for a later scan)."""
        active = self.store.list_intents(statuses=OPEN_STATUSES)
        if len(active) < self.settings.merge_min_active_intents:
            self.logger.debug(
                f"Only {len(active)} active intents, skipping merge scan "
                f"(need {self.settings.merge_min_active_intents})"
            )
            return None, False

        changed = active if forced and not pending else [i for i in active if i["id"] in pending]
        pairs = prefilter_candidates(changed, active)
        self.logger.info(
            f"Merge pre-filter: {len(pairs)} candidates from {len(changed)} changed "
            f"x {len(active)} active intents"
        )
        if not pairs:
            return None, False

        task_id = self.scheduler.enqueue(ScanMergeOpportunities(pairs=tuple(pairs), forced=forced))
        if task_id is None:
            # a scan is already queued; retry these ids on the next change
            return None, True
        emit_event("merge_scan_scheduled", f"Queued merge scan for {len(pairs)} candidate pairs",
                   payload={"task_id": task_id, "pairs": len(pairs)})
        return task_id, False

    def cancel(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None

    def status(self) -> Dict:
        with self._lock:
            return {
                "pending_intents": sorted(self._pending),
                "scan_scheduled": self._timer is not None,
                "scanning": self._scanning,
                "last_scan_at": self._last_scan_at,
            }
