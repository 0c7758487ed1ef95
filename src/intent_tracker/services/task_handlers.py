"""
Task handlers.

One method per task kind. ``TaskHandlers.table()`` returns the complete
kind -> handler mapping handed to ``TaskScheduler.register_handlers``. Each
handler returns a small output dict that is stored on the task row.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Type

from ..config import Settings
from ..intents.labels import (
    LABEL_SOURCE_HEURISTIC,
    LABEL_SOURCE_ORACLE,
    LABEL_SOURCE_ORACLE_FALLBACK,
    build_heuristic_label,
    is_valid_intent_label,
    keyword_candidates,
    normalize_label_confidence,
)
from ..intents.scoring import create_embedding
from ..intents.state_machine import is_open
from .errors import PermanentTaskError, SoftRequeue
from .merge_coordinator import reject_pair
from .task_kinds import (
    ClassifyBehavior,
    GenerateActivitySummary,
    GenerateIntentGoal,
    GenerateIntentInsights,
    GenerateIntentLabel,
    GenerateIntentNextSteps,
    GenerateIntentSummary,
    IntentMatching,
    MergeIntents,
    ScanMergeOpportunities,
    SemanticExtraction,
    Summarization,
    TaskKind,
    VerifyIntentMatching,
)

logger = logging.getLogger(__name__)

SUMMARIZE_MIN_CONTENT = 5000
LABEL_RESCAN_CONFIDENCE = 0.7
SUGGEST_MERGE_CONFIDENCE = 0.85
VERIFY_CONTEXT_INTENTS = 30


class TaskHandlers:
    """Task bodies bound to the store, engine and oracle pipeline."""

    def __init__(self, store, engine, pipeline, scheduler, settings: Optional[Settings] = None,
                 coordinator=None):
        self.store = store
        self.engine = engine
        self.pipeline = pipeline
        self.scheduler = scheduler
        self.settings = settings or Settings()
        self.coordinator = coordinator
        self.logger = logging.getLogger(__name__)

    def table(self) -> Dict[Type[TaskKind], Callable[[TaskKind], Optional[Dict]]]:
        return {
            SemanticExtraction: self.extract_features,
            IntentMatching: self.match_intent,
            ClassifyBehavior: self.classify_behavior,
            Summarization: self.summarize,
            GenerateIntentLabel: self.generate_label,
            GenerateIntentGoal: self.generate_goal,
            VerifyIntentMatching: self.verify_match,
            ScanMergeOpportunities: self.scan_merges,
            GenerateIntentSummary: self.generate_summary,
            GenerateIntentInsights: self.generate_insights,
            GenerateIntentNextSteps: self.generate_next_steps,
            MergeIntents: self.merge,
            GenerateActivitySummary: self.activity_summary,
        }

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _page(self, page_id: str) -> Dict:
        page = self.store.get_page(page_id)
        if page is None:
            raise PermanentTaskError(f"Page not found: {page_id}")
        return page

    def _intent(self, intent_id: str) -> Dict:
        intent = self.store.get_intent(intent_id)
        if intent is None:
            raise PermanentTaskError(f"Intent not found: {intent_id}")
        return intent

    def _intent_pages(self, intent: Dict) -> List[Dict]:
        pages = self.store.get_pages_by_intent(intent["id"])
        if not pages and intent.get("page_ids"):
            pages = self.store.get_pages(intent["page_ids"])
        if not pages:
            raise SoftRequeue(f"No pages found for intent {intent['id']}")
        return pages

    def _open_intent_with_pages(self, intent_id: str):
        """Returns ``(intent, pages)``, or ``(intent, None)`` for a closed intent."""
        intent = self._intent(intent_id)
        if not is_open(intent):
            self.logger.info(f"Intent {intent_id} is {intent.get('status')}, skipping")
            return intent, None
        return intent, self._intent_pages(intent)

    @staticmethod
    def _skipped(intent: Dict) -> Dict:
        return {"skipped": f"intent is {intent.get('status')}"}

    # =========================================================================
    # PAGE TASKS
    # =========================================================================

    def extract_features(self, kind: SemanticExtraction) -> Dict:
        page = self._page(kind.page_id)
        if page.get("semantic_features"):
            return {"skipped": "features already extracted"}
        features = self.pipeline.extract_semantic_features(page)
        page["semantic_features"] = features
        page["embedding"] = create_embedding(page)
        self.store.save_page(page)
        return {
            "concepts": features["concepts"][:10],
            "primary_action": features["intent_signals"]["primary_action"],
            "content_type": features["content_type"],
        }

    def match_intent(self, kind: IntentMatching) -> Dict:
        return self.engine.match_page(kind.page_id)

    def classify_behavior(self, kind: ClassifyBehavior) -> Dict:
        page = self._page(kind.page_id)
        if page.get("behavioral_class"):
            return {"skipped": "already classified"}
        behavior = self.pipeline.classify_behavior(page)
        page["behavioral_class"] = behavior
        self.store.save_page(page)
        return {k: behavior[k] for k in ("primary_behavior", "confidence", "source")}

    def summarize(self, kind: Summarization) -> Dict:
        page = self._page(kind.page_id)
        content = page.get("content") or ""
        if page.get("content_summary") or len(content) <= SUMMARIZE_MIN_CONTENT:
            return {"skipped": "no summary needed"}
        page["content_summary"] = self.pipeline.summarize_page(content)
        self.store.save_page(page)
        return {"summary_length": len(page["content_summary"])}

    # =========================================================================
    # INTENT ENRICHMENT
    # =========================================================================

    def _choose_label(self, intent: Dict, pages: List[Dict]) -> Dict:
        """Oracle label, then a stricter oracle retry, then the heuristic label."""
        proposed = self.pipeline.generate_intent_label(pages)
        oracle_confidence = normalize_label_confidence(proposed["confidence"], LABEL_SOURCE_ORACLE)
        if is_valid_intent_label(proposed["label"], pages):
            return dict(proposed, confidence=oracle_confidence, source=LABEL_SOURCE_ORACLE)

        self.logger.info(f"Rejected oracle label {proposed['label']!r} for intent {intent['id']}")
        fallback = self.pipeline.generate_fallback_label(intent, pages, keyword_candidates(intent, pages))
        if fallback and is_valid_intent_label(fallback["label"], pages):
            confidence = min(
                normalize_label_confidence(fallback["confidence"], LABEL_SOURCE_ORACLE_FALLBACK),
                oracle_confidence,
            )
            return dict(fallback, confidence=confidence, source=LABEL_SOURCE_ORACLE_FALLBACK)

        heuristic = build_heuristic_label(intent, pages)
        heuristic["confidence"] = normalize_label_confidence(heuristic["confidence"], LABEL_SOURCE_HEURISTIC)
        return heuristic

    def generate_label(self, kind: GenerateIntentLabel) -> Dict:
        intent, pages = self._open_intent_with_pages(kind.intent_id)
        if pages is None:
            return self._skipped(intent)

        chosen = self._choose_label(intent, pages)
        now = time.time()
        if chosen["label"] != intent.get("label"):
            intent.setdefault("timeline", []).append({
                "date": datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
                "event": "label_changed",
                "details": f"Label updated to \"{chosen['label']}\"",
                "from": intent.get("label"),
                "to": chosen["label"],
                "confidence": chosen["confidence"],
                "source": chosen["source"],
            })
            intent["previous_label"] = intent.get("label")
            intent["label"] = chosen["label"]
        intent["label_confidence"] = chosen["confidence"]
        intent["label_updated_at"] = now
        self.store.save_intent(intent)

        if (chosen["source"] == LABEL_SOURCE_ORACLE and chosen["confidence"] > LABEL_RESCAN_CONFIDENCE
                and self.coordinator is not None):
            self.coordinator.on_intent_changed(intent["id"])
        return {
            "label": chosen["label"],
            "confidence": chosen["confidence"],
            "source": chosen["source"],
            "reasoning": chosen.get("reasoning"),
        }

    def generate_goal(self, kind: GenerateIntentGoal) -> Dict:
        intent, pages = self._open_intent_with_pages(kind.intent_id)
        if pages is None:
            return self._skipped(intent)
        result = self.pipeline.generate_intent_goal(intent, pages)
        intent["goal"] = result["goal"]
        intent["goal_confidence"] = result["confidence"]
        intent["goal_updated_at"] = time.time()
        self.store.save_intent(intent)
        return result

    def generate_summary(self, kind: GenerateIntentSummary) -> Dict:
        intent, pages = self._open_intent_with_pages(kind.intent_id)
        if pages is None:
            return self._skipped(intent)
        intent["ai_summary"] = self.pipeline.generate_intent_summary(intent, pages)
        self.store.save_intent(intent)
        return {"summary": intent["ai_summary"]}

    def generate_insights(self, kind: GenerateIntentInsights) -> Dict:
        intent, pages = self._open_intent_with_pages(kind.intent_id)
        if pages is None:
            return self._skipped(intent)
        intent["insights"] = self.pipeline.generate_intent_insights(intent, pages)
        self.store.save_intent(intent)
        return {"insights": len(intent["insights"])}

    def generate_next_steps(self, kind: GenerateIntentNextSteps) -> Dict:
        intent, pages = self._open_intent_with_pages(kind.intent_id)
        if pages is None:
            return self._skipped(intent)
        intent["next_steps"] = self.pipeline.generate_next_steps(intent, pages)
        self.store.save_intent(intent)
        return {"next_steps": len(intent["next_steps"])}

    # =========================================================================
    # VERIFICATION AND MERGES
    # =========================================================================

    def verify_match(self, kind: VerifyIntentMatching) -> Dict:
        page = self._page(kind.page_id)
        primary = (page.get("intent_assignments") or {}).get("primary") or {}
        if not primary.get("intent_id"):
            raise SoftRequeue(f"Page has no intent assignment: {kind.page_id}")
        intent = self._intent(primary["intent_id"])
        if not is_open(intent):
            return self._skipped(intent)

        others = [
            i for i in self.store.list_intents(limit=VERIFY_CONTEXT_INTENTS)
            if i["id"] != intent["id"] and is_open(i)
        ]
        verdict = self.pipeline.verify_intent_match(page, intent, others)
        action = verdict["action"]
        known = {intent["id"]} | {i["id"] for i in others}
        outcome = "no change"

        if action == "merge":
            source_id, target_id = verdict.get("intent_to_merge"), verdict.get("merge_into")
            if source_id in known and target_id in known and source_id != target_id:
                task_id = self.scheduler.enqueue(MergeIntents(
                    source_id=source_id, target_id=target_id,
                    confidence=verdict["confidence"], reason=verdict["reasoning"],
                ))
                outcome = f"merge queued ({task_id})" if task_id else "merge already queued"
            else:
                outcome = "merge ignored: unknown intents"
        elif action == "reassign":
            suggested = verdict.get("suggested_intent_id")
            if suggested in known and suggested != intent["id"]:
                self.engine.reassign_page(page["id"], suggested)
                outcome = f"reassigned to {suggested}"
            else:
                outcome = "reassign ignored: unknown intent"
        elif action == "split":
            if (intent.get("page_count") or 0) > 1:
                created = self.engine.create_intent_from_page(page["id"])
                outcome = f"split into {created['intent_id']}"
            else:
                outcome = "split ignored: single-page intent"

        self.logger.info(f"Verification of page {page['id']}: {action} -> {outcome}")
        return {
            "action": action,
            "confidence": verdict["confidence"],
            "reasoning": verdict["reasoning"],
            "outcome": outcome,
        }

    def scan_merges(self, kind: ScanMergeOpportunities) -> Dict:
        """Evaluate every surviving candidate pair in one oracle call."""
        cache: Dict[str, Optional[Dict]] = {}

        def load(intent_id: str) -> Optional[Dict]:
            if intent_id not in cache:
                cache[intent_id] = self.store.get_intent(intent_id)
            return cache[intent_id]

        pairs = []
        for a_id, b_id in kind.pairs:
            a, b = load(a_id), load(b_id)
            if not a or not b or not is_open(a) or not is_open(b):
                continue
            if reject_pair(a, b) is None:
                pairs.append((a, b))
        if not pairs:
            return {"evaluated": 0, "suggestions": 0, "queued": []}

        merges = self.pipeline.evaluate_merge_pairs(pairs)
        queued = []
        for merge in merges:
            pct = round(merge["confidence"] * 100)
            if merge["confidence"] >= self.settings.auto_merge_confidence:
                self.logger.info(f"Queueing merge {merge['intent_a']} -> {merge['intent_b']} ({pct}%)")
                task_id = self.scheduler.enqueue(MergeIntents(
                    source_id=merge["intent_a"], target_id=merge["intent_b"],
                    confidence=merge["confidence"], reason=merge["reasoning"],
                ))
                if task_id:
                    queued.append(task_id)
            elif merge["confidence"] >= SUGGEST_MERGE_CONFIDENCE:
                self.logger.info(
                    f"Merge suggestion below auto-merge threshold: "
                    f"{merge['intent_a']} -> {merge['intent_b']} ({pct}%)"
                )
            else:
                self.logger.info(f"Merge suggestion below threshold: {merge['intent_a']} -> {merge['intent_b']} ({pct}%)")
        return {"evaluated": len(pairs), "suggestions": len(merges), "queued": queued}

    def merge(self, kind: MergeIntents) -> Dict:
        target = self.engine.get_final_intent(kind.target_id)
        if target is None:
            raise PermanentTaskError(f"Intent not found: {kind.target_id}")
        if target["id"] == kind.source_id:
            return {"skipped": "target already merged into source"}
        return self.engine.merge_intents(kind.source_id, target["id"])

    def activity_summary(self, kind: GenerateActivitySummary) -> Dict:
        summary = self.engine.generate_activity_summary()
        return {"page_count": summary["page_count"], "time_range_hours": summary["time_range_hours"]}
