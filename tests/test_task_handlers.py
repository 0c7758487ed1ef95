"""Tests for the individual task handlers."""

import time

import pytest

from intent_tracker.intents.labels import (
    HEURISTIC_CONFIDENCE,
    LABEL_SOURCE_HEURISTIC,
    LABEL_SOURCE_ORACLE,
    LABEL_SOURCE_ORACLE_FALLBACK,
)
from intent_tracker.services.errors import PermanentTaskError, SoftRequeue
from intent_tracker.services.task_kinds import (
    GenerateIntentGoal,
    GenerateIntentLabel,
    MergeIntents,
    ScanMergeOpportunities,
    SemanticExtraction,
    Summarization,
    VerifyIntentMatching,
)

from conftest import make_page, new_id


def _submit(engine, title, url):
    return engine.submit_page(make_page(title, url))["page_id"]


def _intent_of(store, page_id):
    return store.get_page(page_id)["intent_assignments"]["primary"]["intent_id"]


@pytest.fixture
def handlers(context):
    return context.handlers


@pytest.fixture
def react_intent(engine, store, context):
    """Drained two-page React intent; returns (intent_id, page_ids)."""
    pages = [
        _submit(engine, "React Hooks Guide", "https://react.dev/learn/hooks"),
        _submit(engine, "Using the Effect Hook", "https://react.dev/learn/effects"),
    ]
    context.scheduler.drain()
    return _intent_of(store, pages[0]), pages


def _saved_intent(store, label, keywords, domains, page_count=2, status="active"):
    now = time.time()
    intent = {
        "id": new_id(),
        "label": label,
        "status": status,
        "first_seen": now,
        "last_updated": now,
        "page_count": page_count,
        "page_ids": [],
        "aggregated_signals": {
            "keywords": {k: {"count": 1, "total_engagement": 0.8, "avg_engagement": 0.8} for k in keywords},
            "domains": list(domains),
        },
        "metadata": {},
    }
    store.save_intent(intent)
    return intent["id"]


class TestPageHandlers:
    def test_extraction_skips_when_done(self, handlers, react_intent, pipeline):
        _, pages = react_intent
        calls = pipeline.extract_semantic_features.call_count
        result = handlers.extract_features(SemanticExtraction(page_id=pages[0]))
        assert result == {"skipped": "features already extracted"}
        assert pipeline.extract_semantic_features.call_count == calls

    def test_missing_page_is_permanent(self, handlers):
        with pytest.raises(PermanentTaskError, match="Page not found"):
            handlers.extract_features(SemanticExtraction(page_id=new_id()))

    def test_short_content_is_not_summarized(self, handlers, react_intent, pipeline):
        _, pages = react_intent
        assert "skipped" in handlers.summarize(Summarization(page_id=pages[0]))
        pipeline.summarize_page.assert_not_called()


class TestLabelGeneration:
    def test_valid_oracle_label(self, handlers, react_intent, store):
        intent_id, _ = react_intent
        result = handlers.generate_label(GenerateIntentLabel(intent_id=intent_id))
        assert result["source"] == LABEL_SOURCE_ORACLE
        assert result["confidence"] == 0.8
        assert store.get_intent(intent_id)["label"] == "Learning React Hooks Patterns"

    def test_oracle_fallback_label(self, handlers, react_intent, pipeline, store):
        intent_id, _ = react_intent
        pipeline.generate_intent_label.return_value = {
            "label": "React Hooks Guide", "confidence": 0.8, "reasoning": "copied title"}
        pipeline.generate_fallback_label.return_value = {
            "label": "Exploring React State Hooks", "confidence": 0.9, "reasoning": "keywords"}

        result = handlers.generate_label(GenerateIntentLabel(intent_id=intent_id))
        assert result["source"] == LABEL_SOURCE_ORACLE_FALLBACK
        assert result["label"] == "Exploring React State Hooks"
        assert result["confidence"] == 0.8

        intent = store.get_intent(intent_id)
        assert intent["previous_label"] == "Learning React Hooks Patterns"
        assert intent["timeline"][-1]["event"] == "label_changed"

    def test_heuristic_label_when_oracle_labels_invalid(self, handlers, react_intent, pipeline):
        intent_id, _ = react_intent
        pipeline.generate_intent_label.return_value = {
            "label": "Best React Hooks", "confidence": 0.9, "reasoning": ""}
        pipeline.generate_fallback_label.return_value = None

        result = handlers.generate_label(GenerateIntentLabel(intent_id=intent_id))
        assert result["source"] == LABEL_SOURCE_HEURISTIC
        assert result["confidence"] == HEURISTIC_CONFIDENCE

    def test_closed_intent_is_skipped(self, handlers, store, pipeline):
        intent_id = _saved_intent(store, "Learning React Hooks Patterns", ["react"], ["react.dev"],
                                  status="merged")
        calls = pipeline.generate_intent_goal.call_count
        result = handlers.generate_goal(GenerateIntentGoal(intent_id=intent_id))
        assert result == {"skipped": "intent is merged"}
        assert pipeline.generate_intent_goal.call_count == calls

    def test_intent_without_pages_requeues(self, handlers, store):
        intent_id = _saved_intent(store, "Learning React Hooks Patterns", ["react"], ["react.dev"])
        with pytest.raises(SoftRequeue):
            handlers.generate_goal(GenerateIntentGoal(intent_id=intent_id))


class TestVerification:
    def test_unassigned_page_requeues(self, handlers, engine):
        page_id = _submit(engine, "React Hooks Guide", "https://react.dev/learn/hooks")
        with pytest.raises(SoftRequeue, match="no intent assignment"):
            handlers.verify_match(VerifyIntentMatching(page_id=page_id))

    def test_agree_changes_nothing(self, handlers, react_intent, store):
        intent_id, pages = react_intent
        result = handlers.verify_match(VerifyIntentMatching(page_id=pages[0]))
        assert result["outcome"] == "no change"
        assert _intent_of(store, pages[0]) == intent_id

    def test_merge_verdict_queues_merge(self, handlers, react_intent, store, pipeline, context):
        intent_id, pages = react_intent
        other = _saved_intent(store, "Learning React State Management", ["react", "state"], ["react.dev"])
        pipeline.verify_intent_match.return_value = {
            "action": "merge", "confidence": 0.9, "reasoning": "Same topic",
            "suggested_intent_id": None, "intent_to_merge": other, "merge_into": intent_id,
        }
        result = handlers.verify_match(VerifyIntentMatching(page_id=pages[0]))
        assert result["outcome"].startswith("merge queued")
        queued = context.scheduler.list_tasks(task_type="merge_intents")
        assert queued[0]["params"]["source_id"] == other
        assert queued[0]["params"]["target_id"] == intent_id

    def test_merge_verdict_with_unknown_intents_ignored(self, handlers, react_intent, pipeline):
        intent_id, pages = react_intent
        pipeline.verify_intent_match.return_value = {
            "action": "merge", "confidence": 0.9, "reasoning": "",
            "suggested_intent_id": None, "intent_to_merge": new_id(), "merge_into": intent_id,
        }
        result = handlers.verify_match(VerifyIntentMatching(page_id=pages[0]))
        assert result["outcome"] == "merge ignored: unknown intents"

    def test_split_verdict_creates_intent(self, handlers, react_intent, pipeline, store):
        intent_id, pages = react_intent
        pipeline.verify_intent_match.return_value = {
            "action": "split", "confidence": 0.8, "reasoning": "Different goal",
            "suggested_intent_id": None, "intent_to_merge": None, "merge_into": None,
        }
        result = handlers.verify_match(VerifyIntentMatching(page_id=pages[1]))
        assert result["outcome"].startswith("split into")
        assert _intent_of(store, pages[1]) != intent_id
        assert store.get_intent(intent_id)["page_count"] == 1

    def test_split_ignored_for_single_page_intent(self, handlers, engine, store, pipeline, context):
        page_id = _submit(engine, "React Hooks Guide", "https://react.dev/learn/hooks")
        context.scheduler.drain()
        pipeline.verify_intent_match.return_value = {
            "action": "split", "confidence": 0.8, "reasoning": "",
            "suggested_intent_id": None, "intent_to_merge": None, "merge_into": None,
        }
        result = handlers.verify_match(VerifyIntentMatching(page_id=page_id))
        assert result["outcome"] == "split ignored: single-page intent"

    def test_reassign_verdict(self, handlers, react_intent, store, pipeline):
        intent_id, pages = react_intent
        other = _saved_intent(store, "Learning React State Management", ["react", "state"], ["react.dev"])
        pipeline.verify_intent_match.return_value = {
            "action": "reassign", "confidence": 0.85, "reasoning": "Better fit",
            "suggested_intent_id": other, "intent_to_merge": None, "merge_into": None,
        }
        handlers.verify_match(VerifyIntentMatching(page_id=pages[1]))
        assert _intent_of(store, pages[1]) == other


class TestMergeScan:
    def test_high_confidence_pair_queues_merge(self, handlers, store, pipeline, context):
        a = _saved_intent(store, "Learning React Hooks Patterns", ["react", "hooks"], ["react.dev"])
        b = _saved_intent(store, "Learning React Effect Hooks", ["react", "hooks"], ["react.dev"])
        pipeline.evaluate_merge_pairs.return_value = [
            {"intent_a": a, "intent_b": b, "confidence": 0.95, "reasoning": "Same project"},
        ]
        result = handlers.scan_merges(ScanMergeOpportunities(pairs=((a, b),)))

        assert result["evaluated"] == 1
        assert len(result["queued"]) == 1
        task = context.scheduler.get_task(result["queued"][0])
        assert task["params"]["source_id"] == a
        assert task["params"]["target_id"] == b

    def test_low_confidence_pair_is_only_logged(self, handlers, store, pipeline):
        a = _saved_intent(store, "Learning React Hooks Patterns", ["react", "hooks"], ["react.dev"])
        b = _saved_intent(store, "Learning React Effect Hooks", ["react", "hooks"], ["react.dev"])
        pipeline.evaluate_merge_pairs.return_value = [
            {"intent_a": a, "intent_b": b, "confidence": 0.86, "reasoning": "Related"},
        ]
        result = handlers.scan_merges(ScanMergeOpportunities(pairs=((a, b),)))
        assert result["suggestions"] == 1
        assert result["queued"] == []

    def test_closed_or_rejected_pairs_skip_the_oracle(self, handlers, store, pipeline):
        a = _saved_intent(store, "Learning React Hooks Patterns", ["react", "hooks"], ["react.dev"])
        merged = _saved_intent(store, "Learning React Effect Hooks", ["react", "hooks"], ["react.dev"],
                               status="merged")
        single = _saved_intent(store, "Planning Tennis Lessons", ["tennis"], ["yelp.com"], page_count=1)
        result = handlers.scan_merges(ScanMergeOpportunities(pairs=((a, merged), (a, single))))
        assert result == {"evaluated": 0, "suggestions": 0, "queued": []}
        pipeline.evaluate_merge_pairs.assert_not_called()


class TestMergeHandler:
    def test_target_already_merged_into_source(self, handlers, store):
        source = _saved_intent(store, "Learning React Hooks Patterns", ["react"], ["react.dev"])
        target = _saved_intent(store, "Learning React Effect Hooks", ["react"], ["react.dev"],
                               status="merged")
        intent = store.get_intent(target)
        intent["metadata"] = {"merged_into": source}
        store.save_intent(intent)

        result = handlers.merge(MergeIntents(source_id=source, target_id=target))
        assert result == {"skipped": "target already merged into source"}

    def test_unknown_target(self, handlers):
        with pytest.raises(PermanentTaskError):
            handlers.merge(MergeIntents(source_id=new_id(), target_id=new_id()))

    def test_merge_through_handler(self, handlers, react_intent, engine, store):
        intent_id, pages = react_intent
        split = engine.create_intent_from_page(pages[1])
        result = handlers.merge(MergeIntents(source_id=split["intent_id"], target_id=intent_id))
        assert result["success"] is True
        assert store.get_intent(split["intent_id"])["status"] == "merged"
