"""
Tests for the persistent task scheduler.

Tests cover:
- Priority ordering and dependency gating
- Deduplication (queued, cooldown, re-run judgment)
- Retry with backoff, permanent failures and failure propagation
- Soft requeues and their budget
- Restart recovery
- Queue introspection and ETA
- Maintenance (retry, clear completed)
- Error classification
"""

import uuid

import pytest
import requests

from intent_tracker.database.models import Task
from intent_tracker.intents.state_machine import InvalidTransitionError
from intent_tracker.services.errors import (
    ErrorType,
    PermanentTaskError,
    SoftRequeue,
    TransientTaskError,
    classify_error,
    classify_message,
)
from intent_tracker.services.scheduler import TaskScheduler
from intent_tracker.services.task_kinds import (
    TASK_KINDS,
    ClassifyBehavior,
    GenerateActivitySummary,
    GenerateIntentLabel,
    IntentMatching,
    ScanMergeOpportunities,
    SemanticExtraction,
    kind_from_record,
)


@pytest.fixture
def scheduler(store, settings):
    sched = TaskScheduler(store, settings)
    yield sched
    sched.stop_worker()


def _recorder(log):
    def handler(kind):
        log.append((kind.TYPE, kind.target))
        return {"ok": True}
    return handler


class TestTaskKinds:
    def test_closed_set(self):
        assert len(TASK_KINDS) == 13

    def test_round_trip_through_record(self):
        kind = ScanMergeOpportunities(pairs=(("a", "b"), ("c", "d")), forced=True)
        rebuilt = kind_from_record(kind.TYPE, {"pairs": [["a", "b"], ["c", "d"]], "forced": True})
        assert rebuilt == kind
        assert kind.dedupe_key == "scan_intent_merge_opportunities::batch"

    def test_system_target(self):
        assert GenerateActivitySummary().dedupe_key == "generate_activity_summary::system"

    def test_unknown_type(self):
        with pytest.raises(KeyError):
            kind_from_record("no_such_task", {})


class TestRegistration:
    def test_incomplete_table_rejected(self, scheduler):
        with pytest.raises(ValueError, match="Missing handlers"):
            scheduler.register_handlers({SemanticExtraction: lambda k: None})

    def test_worker_refuses_to_start_without_all_handlers(self, scheduler):
        with pytest.raises(RuntimeError):
            scheduler.start_worker()


class TestOrdering:
    def test_lowest_priority_number_first(self, scheduler):
        log = []
        for kind in (ClassifyBehavior, SemanticExtraction, GenerateActivitySummary):
            scheduler.register_handler(kind, _recorder(log))
        scheduler.enqueue(GenerateActivitySummary())
        scheduler.enqueue(ClassifyBehavior(page_id="p1"))
        scheduler.enqueue(SemanticExtraction(page_id="p1"))

        assert scheduler.drain() == 3
        assert [t for t, _ in log] == ["semantic_extraction", "classify_behavior", "generate_activity_summary"]

    def test_fifo_within_priority(self, scheduler):
        log = []
        scheduler.register_handler(SemanticExtraction, _recorder(log))
        for pid in ("p1", "p2", "p3"):
            scheduler.enqueue(SemanticExtraction(page_id=pid))
        scheduler.drain()
        assert [target for _, target in log] == ["p1", "p2", "p3"]

    def test_dependency_holds_task_back(self, scheduler):
        log = []
        scheduler.register_handler(SemanticExtraction, _recorder(log))
        scheduler.register_handler(IntentMatching, _recorder(log))
        extraction = scheduler.enqueue(SemanticExtraction(page_id="p1"), priority=10)
        scheduler.enqueue(IntentMatching(page_id="p1"), dependencies=[extraction])

        scheduler.drain()
        assert [t for t, _ in log] == ["semantic_extraction", "intent_matching"]


class TestDeduplication:
    def test_equivalent_queued_task_is_refused(self, scheduler):
        assert scheduler.enqueue(GenerateIntentLabel(intent_id="i1")) is not None
        assert scheduler.enqueue(GenerateIntentLabel(intent_id="i1")) is None
        assert scheduler.enqueue(GenerateIntentLabel(intent_id="i2")) is not None

    def test_page_tasks_are_never_deduplicated(self, scheduler):
        assert scheduler.enqueue(SemanticExtraction(page_id="p1"))
        assert scheduler.enqueue(SemanticExtraction(page_id="p1"))

    def test_recent_completion_within_cooldown_is_refused(self, scheduler):
        scheduler.register_handler(GenerateIntentLabel, _recorder([]))
        scheduler.enqueue(GenerateIntentLabel(intent_id="i1"))
        scheduler.drain()
        assert scheduler.enqueue(GenerateIntentLabel(intent_id="i1")) is None

    def test_oracle_judgment_can_allow_rerun(self, store, settings):
        judged = []

        def should_run(kind, last):
            judged.append((kind.TYPE, last["status"]))
            return True

        sched = TaskScheduler(store, settings, should_run=should_run)
        sched.register_handler(GenerateIntentLabel, _recorder([]))
        sched.enqueue(GenerateIntentLabel(intent_id="i1"))
        sched.drain()
        assert sched.enqueue(GenerateIntentLabel(intent_id="i1")) is not None
        assert judged == [("generate_intent_label", "completed")]

    def test_outside_hard_window_always_allowed(self, store, settings):
        settings.dedupe_rerun_window_seconds = 0
        sched = TaskScheduler(store, settings, should_run=lambda kind, last: False)
        sched.register_handler(GenerateIntentLabel, _recorder([]))
        sched.enqueue(GenerateIntentLabel(intent_id="i1"))
        sched.drain()
        assert sched.enqueue(GenerateIntentLabel(intent_id="i1")) is not None


class TestFailures:
    def test_transient_error_retries_then_fails(self, scheduler, settings):
        calls = []

        def flaky(kind):
            calls.append(kind)
            raise TransientTaskError("Network timeout talking to oracle")

        scheduler.register_handler(SemanticExtraction, flaky)
        task_id = scheduler.enqueue(SemanticExtraction(page_id="p1"))

        scheduler.run_next()
        task = scheduler.get_task(task_id)
        assert task["status"] == "queued"
        assert task["retry_count"] == 1
        assert task["attempts"][0]["error_type"] == "TRANSIENT"
        assert task["next_attempt_at"] is not None

        scheduler.drain()
        task = scheduler.get_task(task_id)
        assert task["status"] == "failed"
        assert len(calls) == settings.max_retries + 1
        assert len(task["attempts"]) == settings.max_retries + 1

    def test_backoff_delays_retry(self, store, settings):
        settings.retry_backoff_seconds = [60.0]
        sched = TaskScheduler(store, settings)

        def boom(kind):
            raise RuntimeError("Service unavailable")

        sched.register_handler(SemanticExtraction, boom)
        task_id = sched.enqueue(SemanticExtraction(page_id="p1"))
        sched.run_next()
        assert sched.run_next() is None
        assert sched.get_task(task_id)["status"] == "queued"

    def test_permanent_error_propagates_to_dependents(self, scheduler):
        def missing(kind):
            raise PermanentTaskError(f"Page not found: {kind.page_id}")

        scheduler.register_handler(SemanticExtraction, missing)
        scheduler.register_handler(IntentMatching, _recorder([]))
        extraction = scheduler.enqueue(SemanticExtraction(page_id="p1"))
        matching = scheduler.enqueue(IntentMatching(page_id="p1"), dependencies=[extraction])
        verify = scheduler.enqueue(ClassifyBehavior(page_id="p1"), dependencies=[matching])

        scheduler.drain()
        assert scheduler.get_task(extraction)["status"] == "failed"
        assert scheduler.get_task(extraction)["error_type"] == "PERMANENT"
        for task_id in (matching, verify):
            task = scheduler.get_task(task_id)
            assert task["status"] == "failed"
            assert task["error_type"] == "DEPENDENCY"
            assert task["error"].startswith("Dependency failed: semantic_extraction")

    def test_missing_handler_is_permanent(self, scheduler):
        task_id = scheduler.enqueue(SemanticExtraction(page_id="p1"))
        scheduler.run_next()
        task = scheduler.get_task(task_id)
        assert task["status"] == "failed"
        assert "No handler" in task["error"]

    def test_listener_sees_final_state(self, scheduler):
        seen = []
        scheduler.add_listener(lambda task: seen.append(task["status"]))
        scheduler.register_handler(SemanticExtraction, _recorder([]))
        scheduler.enqueue(SemanticExtraction(page_id="p1"))
        scheduler.drain()
        assert seen == ["completed"]


class TestBlockedTasks:
    @pytest.fixture
    def failed_extraction(self, scheduler):
        def missing(kind):
            raise PermanentTaskError(f"Page not found: {kind.page_id}")

        scheduler.register_handler(SemanticExtraction, missing)
        scheduler.register_handler(IntentMatching, _recorder([]))
        scheduler.register_handler(ClassifyBehavior, _recorder([]))
        extraction = scheduler.enqueue(SemanticExtraction(page_id="p1"))
        scheduler.drain()
        assert scheduler.get_task(extraction)["status"] == "failed"
        return extraction

    def test_late_dependent_inherits_failure(self, scheduler, failed_extraction):
        matching = scheduler.enqueue(IntentMatching(page_id="p2"), dependencies=[failed_extraction])
        classify = scheduler.enqueue(ClassifyBehavior(page_id="p2"), dependencies=[matching])

        assert scheduler.run_next() is None
        for task_id in (matching, classify):
            task = scheduler.get_task(task_id)
            assert task["status"] == "failed"
            assert task["error_type"] == "DEPENDENCY"
        assert scheduler.get_task(matching)["error"] == "Dependency failed: semantic_extraction"

    def test_retried_dependent_fails_again(self, scheduler, failed_extraction):
        matching = scheduler.enqueue(IntentMatching(page_id="p2"), dependencies=[failed_extraction])
        scheduler.drain()
        assert scheduler.retry_task(matching)["success"] is True
        assert scheduler.get_task(matching)["status"] == "queued"

        scheduler.drain()
        task = scheduler.get_task(matching)
        assert task["status"] == "failed"
        assert task["error_type"] == "DEPENDENCY"
        assert scheduler.get_queue() == []

    def test_blocked_failure_notifies_listeners(self, scheduler, failed_extraction):
        seen = []
        scheduler.add_listener(lambda task: seen.append((task["id"], task["status"])))
        matching = scheduler.enqueue(IntentMatching(page_id="p2"), dependencies=[failed_extraction])
        scheduler.drain()
        assert seen == [(matching, "failed")]

    def test_malformed_dependency_rejected_at_enqueue(self, scheduler):
        with pytest.raises(ValueError, match="Malformed dependency id"):
            scheduler.enqueue(IntentMatching(page_id="p1"), dependencies=["not-a-task-id"])
        assert scheduler.list_tasks() == []

    def test_stored_malformed_dependency_fails_only_its_task(self, scheduler, store):
        log = []
        scheduler.register_handler(SemanticExtraction, _recorder(log))
        scheduler.register_handler(IntentMatching, _recorder(log))
        healthy = scheduler.enqueue(SemanticExtraction(page_id="p2"))
        broken = scheduler.enqueue(IntentMatching(page_id="p1"), dependencies=[healthy])
        with store.Session() as session:
            session.get(Task, uuid.UUID(broken)).dependencies_json = ["not-a-task-id"]
            session.commit()

        scheduler.drain()
        assert scheduler.get_task(healthy)["status"] == "completed"
        task = scheduler.get_task(broken)
        assert task["status"] == "failed"
        assert task["error_type"] == "PERMANENT"
        assert "Malformed dependency id" in task["error"]
        assert log == [("semantic_extraction", "p2")]

    def test_exclusive_lane_holds_oracle_slot(self, scheduler):
        with scheduler.exclusive(oracle_priority=GenerateActivitySummary.PRIORITY):
            assert scheduler.slots.snapshot()["by_class"]["background"] == 1
        assert scheduler.slots.snapshot()["active"] == 0


class TestSoftRequeue:
    def test_requeue_then_success(self, scheduler):
        attempts = []

        def not_ready_once(kind):
            attempts.append(kind)
            if len(attempts) == 1:
                raise SoftRequeue("Semantic features not ready")
            return {"matched": True}

        scheduler.register_handler(IntentMatching, not_ready_once)
        task_id = scheduler.enqueue(IntentMatching(page_id="p1"))

        scheduler.run_next()
        task = scheduler.get_task(task_id)
        assert task["status"] == "queued"
        assert task["requeue_count"] == 1
        assert task["retry_count"] == 0
        assert task["attempts"][0]["error_type"] == "REQUEUE"

        scheduler.drain()
        task = scheduler.get_task(task_id)
        assert task["status"] == "completed"
        assert task["result"] == {"matched": True}

    def test_requeued_task_moves_behind_peers(self, scheduler):
        log = []

        def first_not_ready(kind):
            log.append(kind.page_id)
            if kind.page_id == "p1" and log.count("p1") == 1:
                raise SoftRequeue("Semantic features not ready")
            return {}

        scheduler.register_handler(IntentMatching, first_not_ready)
        scheduler.enqueue(IntentMatching(page_id="p1"))
        scheduler.enqueue(IntentMatching(page_id="p2"))
        scheduler.drain()
        assert log == ["p1", "p2", "p1"]

    def test_budget_exhaustion_is_dependency_failure(self, scheduler, settings):
        def never_ready(kind):
            raise SoftRequeue("Page has no intent assignment")

        scheduler.register_handler(IntentMatching, never_ready)
        task_id = scheduler.enqueue(IntentMatching(page_id="p1"))
        scheduler.drain()

        task = scheduler.get_task(task_id)
        assert task["status"] == "failed"
        assert task["error_type"] == "DEPENDENCY"
        assert task["requeue_count"] == settings.max_soft_requeues


class TestRecovery:
    def test_processing_tasks_requeued_on_restart(self, store, settings):
        first = TaskScheduler(store, settings)
        task_id = first.enqueue(SemanticExtraction(page_id="p1"))
        with store.Session() as session:
            task = session.get(Task, uuid.UUID(task_id))
            task.status = "processing"
            session.commit()

        second = TaskScheduler(store, settings)
        assert second.get_task(task_id)["status"] == "queued"

    def test_queue_survives_restart(self, store, settings):
        TaskScheduler(store, settings).enqueue(SemanticExtraction(page_id="p1"))
        log = []
        restarted = TaskScheduler(store, settings)
        restarted.register_handler(SemanticExtraction, _recorder(log))
        restarted.drain()
        assert log == [("semantic_extraction", "p1")]


class TestIntrospection:
    def test_queue_with_cumulative_eta(self, scheduler):
        scheduler.enqueue(IntentMatching(page_id="p1"))
        scheduler.enqueue(SemanticExtraction(page_id="p1"))
        queue = scheduler.get_queue()
        assert [t["task_type"] for t in queue] == ["semantic_extraction", "intent_matching"]
        assert [t["eta_ms"] for t in queue] == [12000, 12500]

        eta = scheduler.get_total_eta()
        assert eta == {"total_ms": 12500, "task_count": 2, "confidence": "low"}

    def test_queue_status_counts(self, scheduler):
        scheduler.register_handler(SemanticExtraction, _recorder([]))
        scheduler.enqueue(SemanticExtraction(page_id="p1"))
        scheduler.drain()
        scheduler.enqueue(SemanticExtraction(page_id="p2"))

        status = scheduler.get_queue_status()
        assert status["total"] == 2
        assert status["queued"] == 1
        assert status["completed"] == 1
        assert status["worker_running"] is False
        assert status["slots"]["active"] == 0

    def test_get_task_with_bad_id(self, scheduler):
        assert scheduler.get_task("not-a-uuid") is None

    def test_list_tasks_filters(self, scheduler):
        scheduler.enqueue(SemanticExtraction(page_id="p1"))
        scheduler.enqueue(GenerateActivitySummary())
        assert len(scheduler.list_tasks()) == 2
        assert [t["task_type"] for t in scheduler.list_tasks(task_type="generate_activity_summary")] == [
            "generate_activity_summary"]
        assert scheduler.list_tasks(status="failed") == []


class TestMaintenance:
    def test_retry_failed_task(self, scheduler):
        def missing(kind):
            raise PermanentTaskError("Page not found")

        scheduler.register_handler(SemanticExtraction, missing)
        task_id = scheduler.enqueue(SemanticExtraction(page_id="p1"))
        scheduler.drain()

        result = scheduler.retry_task(task_id)
        assert result["success"] is True
        task = scheduler.get_task(task_id)
        assert task["status"] == "queued"
        assert task["retry_count"] == 0
        assert task["error"] is None

    def test_retry_rejects_non_failed(self, scheduler):
        task_id = scheduler.enqueue(SemanticExtraction(page_id="p1"))
        assert "error" in scheduler.retry_task(task_id)
        assert scheduler.retry_task(str(uuid.uuid4())) == {"error": "Task not found"}

    def test_clear_completed(self, scheduler):
        scheduler.register_handler(SemanticExtraction, _recorder([]))
        scheduler.enqueue(SemanticExtraction(page_id="p1"))
        scheduler.drain()
        pending = scheduler.enqueue(SemanticExtraction(page_id="p2"))

        assert scheduler.clear_completed() == {"success": True, "deleted": 1}
        assert [t["id"] for t in scheduler.list_tasks()] == [pending]


class TestErrorClassification:
    @pytest.mark.parametrize("message,expected", [
        ("API rate limit exceeded", ErrorType.TRANSIENT),
        ("Invalid JSON response: bad", ErrorType.TRANSIENT),
        ("Page has no intent assignment: p1", ErrorType.DEPENDENCY),
        ("Semantic features not ready for page p1", ErrorType.DEPENDENCY),
        ("Intent not found: i1", ErrorType.PERMANENT),
        ("Merge validation failed: overlap", ErrorType.PERMANENT),
        ("something odd", ErrorType.TRANSIENT),
    ])
    def test_message_patterns(self, message, expected):
        assert classify_message(message) == expected

    def test_typed_errors(self):
        assert classify_error(PermanentTaskError("x")) == ErrorType.PERMANENT
        assert classify_error(InvalidTransitionError("merged", "active")) == ErrorType.PERMANENT
        assert classify_error(requests.Timeout("slow")) == ErrorType.TRANSIENT
        assert classify_error(ValueError("Page not found: p")) == ErrorType.PERMANENT
