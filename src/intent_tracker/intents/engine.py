"""
Intent Engine - page ingestion, intent matching and corrective operations.

Pages are stored as soon as they arrive and all AI work is handed to the
scheduler. Matching scores the page against recent open intents and either
assigns it, creates a new intent, or (for error pages) leaves it unassigned.
Merges move page pointers first and update intent aggregates second, so a
page always points at an existing intent document.
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
from urllib.parse import urlparse

from ..config import Settings
from ..services.errors import PermanentTaskError, SoftRequeue, TransientTaskError
from ..services.task_kinds import (
    ClassifyBehavior,
    GenerateIntentGoal,
    GenerateIntentInsights,
    GenerateIntentLabel,
    GenerateIntentNextSteps,
    GenerateIntentSummary,
    IntentMatching,
    SemanticExtraction,
    Summarization,
    VerifyIntentMatching,
)
from ..webapp.services.event_system import emit_event
from .completion import detect_completion
from .labels import PLACEHOLDER_CONFIDENCE, PLACEHOLDER_LABEL
from .merge_validation import validate_merge, validate_merged_intent
from .nudges import MAX_NUDGES, generate_nudges
from .scoring import ENTITY_CATEGORIES, create_embedding, score_breakdown
from .state_machine import (
    OPEN_STATUSES,
    STATUS_ACTIVE,
    STATUS_COMPLETED,
    STATUS_DISCARDED,
    STATUS_DORMANT,
    STATUS_EMERGING,
    STATUS_MERGED,
    auto_transition,
    get_final_intent,
    get_merge_chain,
    is_open,
    transition_intent,
)

logger = logging.getLogger(__name__)

SUMMARIZE_MIN_CONTENT = 5000
ACTIVE_PAGE_THRESHOLD = 3
FEATURE_REFRESH_EVERY = 3
NEW_INTENT_CONFIDENCE = 0.6
REASSIGN_CONFIDENCE = 0.75
MERGE_MIN_ASSIGNMENT_CONFIDENCE = 0.7
FOCUSED_ENGAGEMENT = 0.7

ACTIVITY_SETTING_KEY = "activity_summary"
ACTIVITY_WINDOW_HOURS = 8
ACTIVITY_MAX_WINDOW_HOURS = 72
ACTIVITY_MAX_THEMES = 4
GENERAL_THEME = "General exploring"


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _engagement(page: Dict) -> float:
    return float((page.get("interactions") or {}).get("engagement_score") or 0.0)


def _domain(page: Dict) -> Optional[str]:
    return (page.get("metadata") or {}).get("domain")


def _primary(page: Dict) -> Dict:
    return (page.get("intent_assignments") or {}).get("primary") or {}


def is_error_page(page: Dict) -> bool:
    meta = page.get("metadata") or {}
    return bool(meta.get("title_contains_404") or meta.get("title_contains_error"))


def keyword_stats(pages: List[Dict]) -> Dict[str, Dict]:
    stats: Dict[str, Dict] = {}
    for page in pages:
        engagement = _engagement(page)
        for concept in (page.get("semantic_features") or {}).get("concepts") or []:
            entry = stats.setdefault(concept, {"count": 0, "total_engagement": 0.0})
            entry["count"] += 1
            entry["total_engagement"] += engagement
    for entry in stats.values():
        entry["avg_engagement"] = entry["total_engagement"] / entry["count"]
        entry["recency"] = 1.0
    return stats


def behavior_patterns(pages: List[Dict]) -> Dict:
    if not pages:
        return {"avg_engagement": 0.0, "avg_dwell_time": 0.0, "avg_scroll_depth": 0.0,
                "browsing_style": "exploratory"}
    count = len(pages)
    avg_engagement = sum(_engagement(p) for p in pages) / count
    return {
        "avg_engagement": avg_engagement,
        "avg_dwell_time": sum(float((p.get("interactions") or {}).get("dwell_time") or 0)
                              for p in pages) / count,
        "avg_scroll_depth": sum(float((p.get("interactions") or {}).get("scroll_depth") or 0)
                                for p in pages) / count,
        "browsing_style": "focused" if avg_engagement > FOCUSED_ENGAGEMENT else "exploratory",
    }


def merge_entities(*groups: Optional[Dict]) -> Dict[str, List[str]]:
    merged: Dict[str, List[str]] = {cat: [] for cat in ENTITY_CATEGORIES}
    for group in groups:
        for cat in ENTITY_CATEGORIES:
            for name in (group or {}).get(cat) or []:
                if name not in merged[cat]:
                    merged[cat].append(name)
    return merged


def compute_signals(pages: List[Dict]) -> Dict:
    """Aggregate keywords, entities, domains and behaviour over ``pages``."""
    domains: List[str] = []
    for page in pages:
        domain = _domain(page)
        if domain and domain not in domains:
            domains.append(domain)
    return {
        "keywords": keyword_stats(pages),
        "entities": merge_entities(*((p.get("semantic_features") or {}).get("entities")
                                     for p in pages)),
        "domains": domains,
        "patterns": behavior_patterns(pages),
        "cached_for_page_count": len(pages),
    }


class IntentEngine:
    """
    Orchestrates ingestion, matching, merges and splits.

    Args:
        store: Document store
        scheduler: TaskScheduler used for every follow-up task
        pipeline: OraclePipeline (used for merge review and activity recaps)
        settings: Matching and verification knobs
        coordinator: MergeCoordinator notified whenever an intent changes
        clock: Wall-clock source in epoch seconds
    """

    def __init__(
        self,
        store,
        scheduler,
        pipeline=None,
        settings: Optional[Settings] = None,
        coordinator=None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.scheduler = scheduler
        self.pipeline = pipeline
        self.settings = settings or Settings()
        self.coordinator = coordinator
        self._clock = clock
        self.logger = logging.getLogger(__name__)

    # =========================================================================
    # INGESTION
    # =========================================================================

    def submit_page(self, page_data: Dict) -> Dict:
        """
        Store a captured page and queue its processing.

        Returns as soon as the page is durably stored; no oracle work happens
        here.

        Args:
            page_data: Raw page capture (url, title, content, interactions,
                metadata, optional id and timestamp)

        Returns:
            ``{"page_id": ..., "tasks": {task_type: task_id}}``

        Raises:
            ValueError: If the page has no URL.
        """
        url = (page_data.get("url") or "").strip()
        if not url:
            raise ValueError("Page url is required")

        now = self._clock()
        content = page_data.get("content")
        metadata = dict(page_data.get("metadata") or {})
        if not metadata.get("domain"):
            metadata["domain"] = urlparse(url).netloc or None

        page = {
            "id": page_data.get("id") or str(uuid.uuid4()),
            "url": url,
            "title": page_data.get("title") or "",
            "timestamp": float(page_data.get("timestamp") or now),
            "content": content,
            "content_summary": None,
            "content_size": len(content or ""),
            "metadata": metadata,
            "interactions": dict(page_data.get("interactions") or {}),
            "semantic_features": None,
            "embedding": None,
            "behavioral_class": None,
            "intent_assignments": {"primary": None, "secondary": []},
            "processed_at": None,
        }
        page_id = self.store.save_page(page)
        self.logger.info(f"Stored page {page_id}: {page['title'][:60]!r}")

        tasks = {}
        extraction_id = self.scheduler.enqueue(SemanticExtraction(page_id=page_id))
        tasks[SemanticExtraction.TYPE] = extraction_id
        tasks[IntentMatching.TYPE] = self.scheduler.enqueue(
            IntentMatching(page_id=page_id),
            dependencies=[extraction_id] if extraction_id else None,
        )
        tasks[ClassifyBehavior.TYPE] = self.scheduler.enqueue(ClassifyBehavior(page_id=page_id))
        if content and len(content) > SUMMARIZE_MIN_CONTENT:
            tasks[Summarization.TYPE] = self.scheduler.enqueue(Summarization(page_id=page_id))

        emit_event("page_submitted", f"Page stored: {page['title'][:60]}",
                   payload={"page_id": page_id, "tasks": tasks})
        return {"page_id": page_id, "tasks": tasks}

    # =========================================================================
    # MATCHING
    # =========================================================================

    def match_page(self, page_id: str) -> Dict:
        """
        Assign a page to its best intent, create a new one, or skip error pages.

        Raises:
            PermanentTaskError: If the page does not exist.
            SoftRequeue: If semantic extraction has not landed yet.
            TransientTaskError: If the assignment did not persist.
        """
        page = self.store.get_page(page_id)
        if page is None:
            raise PermanentTaskError(f"Page not found: {page_id}")
        if not page.get("semantic_features"):
            raise SoftRequeue(f"Semantic features not ready for page {page_id}")

        current_id = _primary(page).get("intent_id")
        if current_id:
            current = self.store.get_intent(current_id)
            listed = current is not None and page_id in (current.get("page_ids") or [])
            if listed or (current is not None and is_open(current)):
                # re-run after an interrupted attempt
                if not listed:
                    self.update_intent(current, page)
                self.logger.info(f"Page {page_id} already assigned to {current_id}")
                return {"intent_id": current_id, "created": False, "already_assigned": True}

        now = self._clock()
        page["embedding"] = create_embedding(page)
        page["processed_at"] = now

        best = None
        for intent in self.store.list_intents(statuses=OPEN_STATUSES,
                                              limit=self.settings.recent_intent_window):
            intent_pages = self.store.get_pages_by_intent(intent["id"])
            intent["aggregated_signals"] = self.get_aggregated_signals(intent, intent_pages)
            breakdown = score_breakdown(page, intent, intent_pages, now)
            confidence = round(breakdown.score * 100)
            if confidence < self.settings.match_accept_threshold:
                continue
            if best is None or breakdown.score > best[1].score:
                best = (intent, breakdown, confidence)

        if best is None:
            if is_error_page(page):
                page["intent_assignments"] = {"primary": None, "secondary": []}
                self.store.save_page(page)
                self.logger.info(f"Skipping intent creation for error page: {page.get('title')!r}")
                return {"intent_id": None, "created": False, "skipped": "error page"}
            intent = self._create_intent(page)
            self.scheduler.enqueue(VerifyIntentMatching(page_id=page_id))
            return {"intent_id": intent["id"], "created": True, "confidence": NEW_INTENT_CONFIDENCE}

        intent, breakdown, confidence = best
        auto_confirmed = confidence >= self.settings.match_auto_confirm_threshold
        page["intent_assignments"] = {
            "primary": {
                "intent_id": intent["id"],
                "confidence": confidence / 100,
                "role": "primary",
                "assigned_at": now,
                "auto_assigned": auto_confirmed,
                "needs_confirmation": not auto_confirmed,
            },
            "secondary": [],
        }
        self.logger.info(f"Assigning page {page_id} to intent {intent['id']} ({confidence}% confidence)")
        if not self._save_page_verified(page, intent["id"]):
            raise TransientTaskError(f"Page assignment verification failed for {page_id}")
        self.update_intent(intent, page)
        self.scheduler.enqueue(VerifyIntentMatching(page_id=page_id))
        return {
            "intent_id": intent["id"],
            "created": False,
            "confidence": confidence / 100,
            "needs_confirmation": not auto_confirmed,
            "scores": breakdown.to_dict(),
        }

    def _save_page_verified(self, page: Dict, intent_id: str) -> bool:
        """Save ``page`` and re-read it until its primary pointer is ``intent_id``."""
        self.store.save_page(page)
        retries = self.settings.verify_retry_count
        for attempt in range(1, retries + 1):
            reloaded = self.store.get_page(page["id"])
            if reloaded and _primary(reloaded).get("intent_id") == intent_id:
                return True
            self.logger.warning(
                f"Assignment verification failed for page {page['id']} "
                f"(attempt {attempt}/{retries}), saving again"
            )
            self.store.save_page(page)
            time.sleep(self.settings.verify_retry_delay)
        reloaded = self.store.get_page(page["id"])
        if reloaded and _primary(reloaded).get("intent_id") == intent_id:
            return True
        self.logger.error(f"Page {page['id']} assignment to {intent_id} did not persist after {retries} retries")
        return False

    def _create_intent(self, page: Dict) -> Dict:
        now = self._clock()
        ts = float(page.get("timestamp") or now)
        features = page.get("semantic_features") or {}
        domain = _domain(page)
        intent_id = str(uuid.uuid4())

        intent = {
            "id": intent_id,
            "label": PLACEHOLDER_LABEL,
            "label_confidence": PLACEHOLDER_CONFIDENCE,
            "label_updated_at": now,
            "confidence": NEW_INTENT_CONFIDENCE,
            "status": STATUS_EMERGING,
            "first_seen": ts,
            "last_updated": ts,
            "page_count": 1,
            "page_ids": [page["id"]],
            "aggregated_signals": {
                "keywords": keyword_stats([page]),
                "entities": merge_entities(features.get("entities")),
                "domains": [domain] if domain else [],
                "patterns": dict(behavior_patterns([page]), browsing_style="exploratory"),
                "cached_for_page_count": 1,
            },
            "related_intents": [],
            "user_feedback": {"discarded": False},
            "timeline": [{
                "date": _iso(ts),
                "event": "created",
                "details": f"Started with: {page.get('title') or ''}",
            }],
            "metadata": {},
        }
        page["intent_assignments"] = {
            "primary": {
                "intent_id": intent_id,
                "confidence": NEW_INTENT_CONFIDENCE,
                "role": "primary",
                "assigned_at": now,
                "auto_assigned": True,
            },
            "secondary": [],
        }

        self.store.save_intent(intent)
        if not self._save_page_verified(page, intent_id):
            self._detach_page(intent_id, page["id"])
            raise TransientTaskError(f"Page assignment verification failed for {page['id']}")
        self.logger.info(f"Created intent {intent_id} for page {page['id']}")

        self._queue_intent_features(intent_id)
        self._notify_changed(intent_id)
        emit_event("intent_created", f"New intent for: {page.get('title') or page.get('url')}",
                   payload={"intent_id": intent_id, "page_id": page["id"]})
        return intent

    def _queue_intent_features(self, intent_id: str, kinds=None):
        for kind in kinds or (GenerateIntentLabel, GenerateIntentGoal, GenerateIntentSummary,
                              GenerateIntentInsights, GenerateIntentNextSteps):
            self.scheduler.enqueue(kind(intent_id=intent_id))

    def _notify_changed(self, intent_id: str):
        if self.coordinator is not None:
            self.coordinator.on_intent_changed(intent_id)

    def update_intent(self, intent: Dict, page: Dict) -> Dict:
        """Add ``page`` to ``intent``, recompute its signals and apply lifecycle rules."""
        now = self._clock()
        page_ids = list(intent.get("page_ids") or [])
        if page["id"] not in page_ids:
            page_ids.append(page["id"])
        intent["page_ids"] = page_ids
        intent["page_count"] = len(page_ids)
        intent["last_updated"] = max(float(page.get("timestamp") or now),
                                     float(intent.get("last_updated") or 0))

        title = page.get("title") or ""
        intent.setdefault("timeline", []).append({
            "date": _iso(now),
            "event": "page_added",
            "details": f"Added: {title[:50]}",
            "page_id": page["id"],
            "page_title": title,
            "new_page_count": intent["page_count"],
        })

        if intent.get("status") == STATUS_DORMANT:
            transition_intent(intent, STATUS_ACTIVE, "Reactivated: new page added", now=now)
        if intent["page_count"] >= ACTIVE_PAGE_THRESHOLD and intent.get("status") == STATUS_EMERGING:
            transition_intent(
                intent, STATUS_ACTIVE, f"Auto-transitioned: Reached {ACTIVE_PAGE_THRESHOLD} pages",
                metadata={"triggered_by": "page_count", "threshold": ACTIVE_PAGE_THRESHOLD}, now=now,
            )

        pages = self.store.get_pages_by_intent(intent["id"])
        if page["id"] not in {p["id"] for p in pages}:
            pages.append(page)
        intent["aggregated_signals"] = compute_signals(pages)
        self.store.save_intent(intent)

        completion = detect_completion(intent, page, now)
        if completion.completed and intent.get("status") == STATUS_ACTIVE:
            transition_intent(
                intent, STATUS_COMPLETED, f"Auto-completed: {completion.reason}",
                metadata={"confidence": completion.confidence, "evidence": completion.evidence},
                now=now,
            )
            self.store.save_intent(intent)
            self.logger.info(f"Intent {intent['id']} auto-completed: {completion.reason}")

        self._notify_changed(intent["id"])
        if intent["page_count"] % FEATURE_REFRESH_EVERY == 0:
            self.logger.info(f"Refreshing features for intent {intent['id']} ({intent['page_count']} pages)")
            self._queue_intent_features(intent["id"])

        emit_event("intent_updated", f"Intent {intent.get('label')} now has {intent['page_count']} pages",
                   payload={"intent_id": intent["id"], "page_count": intent["page_count"],
                            "status": intent.get("status")})
        return intent

    def get_aggregated_signals(self, intent: Dict, pages: Optional[List[Dict]] = None) -> Dict:
        """Signals of ``intent``, recomputed and saved when the cache is stale."""
        signals = intent.get("aggregated_signals") or {}
        page_count = intent.get("page_count") or 0
        if signals.get("cached_for_page_count") == page_count:
            return signals
        if pages is None:
            pages = self.store.get_pages_by_intent(intent["id"])
        if not pages:
            return signals
        self.logger.debug(
            f"Signals for intent {intent['id']} cached for "
            f"{signals.get('cached_for_page_count')} pages, now {page_count}; recomputing"
        )
        intent["aggregated_signals"] = compute_signals(pages)
        intent["page_count"] = len(pages)
        intent["page_ids"] = [p["id"] for p in pages]
        self.store.save_intent(intent)
        return intent["aggregated_signals"]

    # =========================================================================
    # MERGE
    # =========================================================================

    def _load_source_pages(self, source: Dict, target_id: str) -> List[Dict]:
        """Pages of ``source``, including any already moved to the target by an
        earlier interrupted attempt."""
        pages = {p["id"]: p for p in self.store.get_pages_by_intent(source["id"])}
        missing = [pid for pid in source.get("page_ids") or [] if pid not in pages]
        if missing:
            self.logger.warning(f"Fetching {len(missing)} source pages individually")
            for page_id in missing:
                page = self.store.get_page(page_id)
                if page is None:
                    continue
                owner = _primary(page).get("intent_id")
                if owner in (source["id"], target_id):
                    pages[page_id] = page
        return list(pages.values())

    def merge_intents(self, source_id: str, target_id: str) -> Dict:
        """
        Move every page of ``source`` into ``target`` and retire ``source``.

        Page pointers are moved and verified before either intent changes. If
        any pointer fails verification the pages moved by this attempt are
        put back and the merge raises a transient error so it is retried as
        a whole; pages a previous attempt already moved are recognised and
        not moved twice.

        Returns:
            Merge outcome dict

        Raises:
            PermanentTaskError: Unknown intents or a failed validation.
            TransientTaskError: Page reassignment did not persist.
        """
        source = self.store.get_intent(source_id)
        target = self.store.get_intent(target_id)
        if not source or not target:
            raise PermanentTaskError("Intent not found for merge")
        if source_id == target_id:
            raise PermanentTaskError("Merge validation failed: cannot merge an intent into itself")
        if (source.get("status") == STATUS_MERGED
                and (source.get("metadata") or {}).get("merged_into") == target_id):
            self.logger.info(f"Intent {source_id} already merged into {target_id}")
            return {"success": True, "source_id": source_id, "target_id": target_id,
                    "already_merged": True, "page_count": target.get("page_count") or 0}
        for intent in (source, target):
            if not is_open(intent):
                raise PermanentTaskError(
                    f"Merge validation failed: intent {intent['id']} is {intent.get('status')}")

        source_pages = self._load_source_pages(source, target_id)
        source_page_ids = {p["id"] for p in source_pages}
        target_pages = [p for p in self.store.get_pages_by_intent(target_id)
                        if p["id"] not in source_page_ids]

        review = self.pipeline.review_merge if self.pipeline is not None else None
        validation = validate_merge(source, target, source_pages, target_pages, review=review)
        attempt_log = {
            "source": {"id": source_id, "label": source.get("label"), "page_count": len(source_pages)},
            "target": {"id": target_id, "label": target.get("label"), "page_count": len(target_pages)},
            "validation": validation.to_dict(),
        }
        if not validation.valid:
            self.logger.warning(f"Merge rejected: {attempt_log}")
            raise PermanentTaskError(f"Merge validation failed: {validation.reason}")
        self.logger.info(f"Merge approved: {attempt_log}")

        moved = self._move_pages(source_pages, source_id, target_id)

        now = self._clock()
        target_ids = list(target.get("page_ids") or [])
        for page_id in (p["id"] for p in source_pages):
            if page_id not in target_ids:
                target_ids.append(page_id)
        target["page_ids"] = target_ids
        target["page_count"] = len(target_ids)
        target["last_updated"] = now

        signals = target.setdefault("aggregated_signals", {})
        source_signals = source.get("aggregated_signals") or {}
        keywords = signals.setdefault("keywords", {})
        for keyword, stats in (source_signals.get("keywords") or {}).items():
            if keyword in keywords:
                existing = keywords[keyword]
                existing["count"] = (existing.get("count") or 0) + (stats.get("count") or 0)
                existing["total_engagement"] = ((existing.get("total_engagement") or 0.0)
                                                + (stats.get("total_engagement") or 0.0))
                if existing["count"]:
                    existing["avg_engagement"] = existing["total_engagement"] / existing["count"]
            else:
                keywords[keyword] = dict(stats)
        signals["domains"] = list(dict.fromkeys(
            list(signals.get("domains") or []) + list(source_signals.get("domains") or [])))
        signals["entities"] = merge_entities(signals.get("entities"), source_signals.get("entities"))

        all_pages = self.store.get_pages(target_ids)
        if len(all_pages) != len(target_ids):
            self.logger.warning(f"Only fetched {len(all_pages)}/{len(target_ids)} merged pages")
        signals["patterns"] = behavior_patterns(all_pages)
        signals["cached_for_page_count"] = len(all_pages)
        self.store.save_intent(target)

        post = validate_merged_intent(target, all_pages)
        if not post.valid:
            self.logger.error(f"Post-merge validation warning for {target_id}: {post.reason}")

        source.setdefault("metadata", {})
        source["metadata"]["merged_into"] = target_id
        source["metadata"]["merged_at"] = now
        transition_intent(source, STATUS_MERGED, f"Merged into: {target.get('label')}",
                          metadata={"to": target_id, "pages_merged": len(source_pages)}, now=now)
        self.store.save_intent(source)

        target.setdefault("metadata", {})
        merged_from = list(target["metadata"].get("merged_from") or [])
        if source_id not in merged_from:
            merged_from.append(source_id)
        target["metadata"]["merged_from"] = merged_from
        target.setdefault("timeline", []).append({
            "date": _iso(now),
            "event": "merged",
            "details": f"Merged with: {source.get('label')}",
            "source_intent_id": source_id,
            "pages_merged": len(source_pages),
            "new_page_count": target["page_count"],
        })
        self.store.save_intent(target)

        self._queue_intent_features(
            target_id, (GenerateIntentLabel, GenerateIntentGoal, GenerateIntentSummary))
        self.logger.info(f"Merged intent {source_id} into {target_id} ({len(source_pages)} pages)")
        emit_event("intents_merged", f"Merged \"{source.get('label')}\" into \"{target.get('label')}\"",
                   payload={"source_id": source_id, "target_id": target_id,
                            "pages_moved": len(moved), "page_count": target["page_count"]})
        return {
            "success": True,
            "source_id": source_id,
            "target_id": target_id,
            "pages_moved": len(moved),
            "page_count": target["page_count"],
            "validation": validation.to_dict(),
            "post_merge_warning": None if post.valid else post.reason,
        }

    def _move_pages(self, pages: List[Dict], source_id: str, target_id: str) -> List[Dict]:
        """Point ``pages`` at the target; restore them all if one does not stick."""
        now = self._clock()
        moved = []
        for page in pages:
            old = _primary(page)
            if old.get("intent_id") == target_id:
                continue
            before = dict(page.get("intent_assignments") or {"primary": None, "secondary": []})
            page["intent_assignments"] = {
                "primary": {
                    "intent_id": target_id,
                    "confidence": max(float(old.get("confidence") or NEW_INTENT_CONFIDENCE),
                                      MERGE_MIN_ASSIGNMENT_CONFIDENCE),
                    "role": "primary",
                    "assigned_at": now,
                    "auto_assigned": True,
                    "merged_from": source_id,
                },
                "secondary": list((page.get("intent_assignments") or {}).get("secondary") or []),
            }
            moved.append((page, before))
            if not self._save_page_verified(page, target_id):
                self.logger.error(f"Rolling back {len(moved)} page moves of merge {source_id} -> {target_id}")
                for moved_page, assignments in moved:
                    moved_page["intent_assignments"] = assignments
                    self.store.save_page(moved_page)
                raise TransientTaskError(
                    f"Page reassignment verification failed for {page['id']}, merge rolled back")
        return [p for p, _ in moved]

    # =========================================================================
    # CORRECTIONS
    # =========================================================================

    def _detach_page(self, intent_id: Optional[str], page_id: str):
        """Remove a page from an intent; an intent left empty is discarded."""
        if not intent_id:
            return
        intent = self.store.get_intent(intent_id)
        if intent is None:
            return
        intent["page_ids"] = [pid for pid in intent.get("page_ids") or [] if pid != page_id]
        intent["page_count"] = len(intent["page_ids"])
        if intent["page_count"] == 0:
            if is_open(intent):
                transition_intent(
                    intent, STATUS_DISCARDED, "Auto-discarded: No pages remaining after reassignment",
                    metadata={"triggered_by": "page_reassignment"}, now=self._clock(),
                )
        else:
            pages = [p for p in self.store.get_pages_by_intent(intent_id) if p["id"] != page_id]
            if pages:
                intent["aggregated_signals"] = compute_signals(pages)
        self.store.save_intent(intent)
        if is_open(intent):
            self._notify_changed(intent_id)

    def reassign_page(self, page_id: str, intent_id: str) -> Dict:
        """
        Move a page to another existing intent.

        A merged target is followed to the intent it was finally merged into.

        Raises:
            PermanentTaskError: Unknown page, unknown or closed intent.
        """
        page = self.store.get_page(page_id)
        if page is None:
            raise PermanentTaskError(f"Page not found: {page_id}")
        intent = get_final_intent(intent_id, self.store.get_intent)
        if intent is None:
            raise PermanentTaskError(f"Intent not found: {intent_id}")
        if not is_open(intent):
            raise PermanentTaskError(f"Intent {intent['id']} is {intent.get('status')}, cannot receive pages")

        old_id = _primary(page).get("intent_id")
        if old_id == intent["id"]:
            return {"success": True, "page_id": page_id, "intent_id": old_id, "previous_intent_id": old_id}

        page["intent_assignments"] = {
            "primary": {
                "intent_id": intent["id"],
                "confidence": REASSIGN_CONFIDENCE,
                "role": "primary",
                "assigned_at": self._clock(),
                "auto_assigned": False,
                "needs_confirmation": False,
            },
            "secondary": [],
        }
        if not self._save_page_verified(page, intent["id"]):
            raise TransientTaskError(f"Page reassignment verification failed for {page_id}")
        self.update_intent(intent, page)
        self._detach_page(old_id, page_id)

        self.logger.info(f"Reassigned page {page_id} from {old_id} to {intent['id']}")
        return {"success": True, "page_id": page_id, "intent_id": intent["id"], "previous_intent_id": old_id}

    def create_intent_from_page(self, page_id: str) -> Dict:
        """Split a page out of its intent into a brand new intent."""
        page = self.store.get_page(page_id)
        if page is None:
            raise PermanentTaskError(f"Page not found: {page_id}")
        old_id = _primary(page).get("intent_id")
        intent = self._create_intent(page)
        self._detach_page(old_id, page_id)
        self.logger.info(f"Split page {page_id} from {old_id} into new intent {intent['id']}")
        return {"success": True, "page_id": page_id, "intent_id": intent["id"], "previous_intent_id": old_id}

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def check_inactive_intents(self, now: Optional[float] = None) -> Dict:
        """Apply the inactivity policy to every open intent."""
        now = now if now is not None else self._clock()
        intents = self.store.list_intents(statuses=OPEN_STATUSES)
        transitioned = []
        for intent in intents:
            if auto_transition(intent, now):
                self.store.save_intent(intent)
                transitioned.append({"id": intent["id"], "status": intent["status"]})
        if transitioned:
            self.logger.info(f"Auto-transitioned {len(transitioned)} of {len(intents)} intents")
        return {"checked": len(intents), "transitioned": transitioned}

    def suggest_nudges(self, now: Optional[float] = None, limit: int = MAX_NUDGES) -> List[Dict]:
        """Reminders for stalled intents and merge hints, most urgent first."""
        intents = self.store.list_intents(statuses=OPEN_STATUSES)
        nudges = generate_nudges(intents, self.store.get_pages_by_intent,
                                 now=now if now is not None else self._clock(), limit=limit)
        if nudges:
            self.logger.info(f"Suggested {len(nudges)} nudge(s) across {len(intents)} open intents")
        return nudges

    def get_merge_chain(self, intent_id: str) -> List[Dict]:
        return get_merge_chain(intent_id, self.store.get_intent)

    def get_final_intent(self, intent_id: str) -> Optional[Dict]:
        return get_final_intent(intent_id, self.store.get_intent)

    # =========================================================================
    # ACTIVITY SUMMARY
    # =========================================================================

    def _recent_pages(self, now: float) -> tuple:
        cutoff = now - ACTIVITY_WINDOW_HOURS * 3600
        pages = self.store.query_pages(lambda p: (p.get("timestamp") or 0) >= cutoff)
        if pages:
            return pages, ACTIVITY_WINDOW_HOURS
        widest = now - ACTIVITY_MAX_WINDOW_HOURS * 3600
        pages = self.store.query_pages(lambda p: (p.get("timestamp") or 0) >= widest)
        if not pages:
            return [], ACTIVITY_WINDOW_HOURS
        oldest = min(p.get("timestamp") or now for p in pages)
        hours = min(ACTIVITY_MAX_WINDOW_HOURS, max(ACTIVITY_WINDOW_HOURS, int((now - oldest) // 3600) + 1))
        return pages, hours

    def _themes(self, pages: List[Dict]) -> List[Dict]:
        labels: Dict[str, str] = {}
        buckets: Dict[str, List[Dict]] = {}
        for page in pages:
            intent_id = _primary(page).get("intent_id")
            label = GENERAL_THEME
            if intent_id:
                if intent_id not in labels:
                    intent = self.store.get_intent(intent_id)
                    labels[intent_id] = (intent or {}).get("label") or GENERAL_THEME
                label = labels[intent_id]
            buckets.setdefault(label, []).append(page)
        ordered = sorted(buckets.items(), key=lambda kv: len(kv[1]), reverse=True)
        return [{"label": label, "pages": items} for label, items in ordered[:ACTIVITY_MAX_THEMES]]

    @staticmethod
    def _theme_line(theme: Dict) -> str:
        samples = []
        for page in theme["pages"][:3]:
            title = (page.get("title") or "").strip()
            samples.append(title[:80] if title else (_domain(page) or "unknown site"))
        return f"- {theme['label']} ({len(theme['pages'])} pages): {'; '.join(samples)}"

    @staticmethod
    def _fallback_line(theme: Dict) -> str:
        count = len(theme["pages"])
        if theme["label"] == GENERAL_THEME:
            if count <= 2:
                return "- You skimmed a couple quick reads"
            return "- You hopped between a few topics"
        line = f"- You spent time on {theme['label']}"
        if count > 2:
            domains = list(dict.fromkeys(d for d in (_domain(p) for p in theme["pages"]) if d))[:2]
            if domains:
                line += f", mostly around {' and '.join(domains)}"
        return line

    def generate_activity_summary(self, now: Optional[float] = None) -> Dict:
        """Recap recent browsing and store it under the ``activity_summary`` setting."""
        now = now if now is not None else self._clock()
        pages, hours = self._recent_pages(now)
        themes = self._themes(pages)

        text = None
        if themes and self.pipeline is not None:
            text = self.pipeline.generate_activity_recap(
                "\n".join(self._theme_line(t) for t in themes), len(themes), len(pages), hours)
        if not text:
            lines = [self._fallback_line(t) for t in themes] or [
                "- Start browsing and I'll nudge you with the highlights."]
            text = "\n".join(["Hey, a quick recap:"] + lines)

        summary = {
            "summary": text,
            "generated_at": now,
            "time_range_hours": hours,
            "page_count": len(pages),
        }
        self.store.put_setting(ACTIVITY_SETTING_KEY, summary)
        return summary
