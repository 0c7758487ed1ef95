"""
Tests for the intent lifecycle state machine.

Tests cover:
- Transition table and terminal states
- Timeline and archive stamping
- Inactivity policy (dormant / expired)
- Merge chain traversal with loop guard
"""

import pytest

from intent_tracker.intents.state_machine import (
    DORMANT_AFTER_SECONDS,
    EXPIRE_AFTER_SECONDS,
    InvalidTransitionError,
    MAX_MERGE_CHAIN,
    auto_transition,
    can_transition,
    get_final_intent,
    get_merge_chain,
    is_open,
    is_terminal,
    transition_intent,
)

NOW = 1_700_000_000.0


def _intent(status="emerging", **extra):
    intent = {"id": "i1", "status": status, "timeline": [], "metadata": {}, "last_updated": NOW}
    intent.update(extra)
    return intent


class TestTransitionTable:
    @pytest.mark.parametrize("old,new", [
        ("emerging", "active"),
        ("emerging", "dormant"),
        ("active", "completed"),
        ("dormant", "active"),
        ("dormant", "expired"),
    ])
    def test_allowed(self, old, new):
        assert can_transition(old, new)

    @pytest.mark.parametrize("old,new", [
        ("emerging", "completed"),
        ("emerging", "expired"),
        ("active", "expired"),
        ("completed", "active"),
        ("merged", "active"),
        ("discarded", "emerging"),
    ])
    def test_rejected(self, old, new):
        assert not can_transition(old, new)

    def test_terminal_states(self):
        for status in ("completed", "merged", "discarded", "expired"):
            assert is_terminal(status)
        for status in ("emerging", "active", "dormant"):
            assert not is_terminal(status)

    def test_is_open(self):
        assert is_open({"status": "dormant"})
        assert not is_open({"status": "merged"})


class TestTransitionIntent:
    def test_invalid_transition_raises_and_leaves_intent(self):
        intent = _intent("completed")
        with pytest.raises(InvalidTransitionError):
            transition_intent(intent, "active", now=NOW)
        assert intent["status"] == "completed"
        assert intent["timeline"] == []

    def test_appends_status_changed_entry(self):
        intent = _intent("emerging")
        transition_intent(intent, "active", reason="Reached 3 pages", metadata={"threshold": 3}, now=NOW)
        entry = intent["timeline"][-1]
        assert entry["event"] == "status_changed"
        assert entry["from"] == "emerging"
        assert entry["to"] == "active"
        assert entry["details"] == "Reached 3 pages"
        assert entry["metadata"] == {"threshold": 3}

    def test_terminal_stamps_archive_once(self):
        intent = _intent("active")
        transition_intent(intent, "completed", now=NOW)
        assert intent["metadata"]["archived_at"] == NOW
        assert intent["metadata"]["completed_reason"] == "inferred"
        assert intent["completed_at"] == NOW

    def test_merged_reason(self):
        intent = _intent("dormant")
        transition_intent(intent, "merged", now=NOW)
        assert intent["metadata"]["completed_reason"] == "merged"

    def test_reactivation_sets_timestamp(self):
        intent = _intent("dormant")
        transition_intent(intent, "active", now=NOW)
        assert intent["reactivated_at"] == NOW


class TestInactivityPolicy:
    def test_active_goes_dormant_after_thirty_minutes(self):
        intent = _intent("active", last_updated=NOW - DORMANT_AFTER_SECONDS - 1)
        assert auto_transition(intent, NOW)
        assert intent["status"] == "dormant"

    def test_recent_intent_untouched(self):
        intent = _intent("emerging", last_updated=NOW - 60)
        assert not auto_transition(intent, NOW)
        assert intent["status"] == "emerging"

    def test_dormant_expires_after_seven_days(self):
        intent = _intent("dormant", last_updated=NOW - DORMANT_AFTER_SECONDS - EXPIRE_AFTER_SECONDS - 1)
        assert auto_transition(intent, NOW)
        assert intent["status"] == "expired"
        assert intent["metadata"]["completed_reason"] == "timeout"

    def test_terminal_never_auto_transitions(self):
        intent = _intent("completed", last_updated=NOW - 10 * EXPIRE_AFTER_SECONDS)
        assert not auto_transition(intent, NOW)


class TestMergeChain:
    def test_follows_merged_into(self):
        docs = {
            "a": {"id": "a", "metadata": {"merged_into": "b"}},
            "b": {"id": "b", "metadata": {"merged_into": "c"}},
            "c": {"id": "c", "metadata": {}},
        }
        chain = get_merge_chain("a", docs.get)
        assert [i["id"] for i in chain] == ["a", "b", "c"]
        assert get_final_intent("a", docs.get)["id"] == "c"

    def test_cycle_terminates(self):
        docs = {
            "a": {"id": "a", "metadata": {"merged_into": "b"}},
            "b": {"id": "b", "metadata": {"merged_into": "a"}},
        }
        assert [i["id"] for i in get_merge_chain("a", docs.get)] == ["a", "b"]

    def test_long_chain_is_capped(self):
        docs = {str(n): {"id": str(n), "metadata": {"merged_into": str(n + 1)}} for n in range(50)}
        assert len(get_merge_chain("0", docs.get)) == MAX_MERGE_CHAIN + 1

    def test_missing_intent(self):
        assert get_final_intent("missing", {}.get) is None
