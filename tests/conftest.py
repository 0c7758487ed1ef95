"""Shared fixtures: file-backed SQLite store, mocked oracle pipeline, wired context."""

import time
import uuid
from unittest.mock import MagicMock

import pytest

from intent_tracker.config import Settings
from intent_tracker.context import AppContext
from intent_tracker.database.engine import SQLAlchemyStore


def make_features(concepts, action="learning", topics=None, confidence=0.8, organizations=None):
    return {
        "concepts": list(concepts),
        "entities": {
            "people": [],
            "places": [],
            "organizations": list(organizations or []),
            "products": [],
            "topics": list(topics or []),
        },
        "intent_signals": {
            "primary_action": action,
            "confidence": confidence,
            "evidence": [],
            "goal": "",
        },
        "content_type": "article",
        "sentiment": "informational",
    }


def make_page(title, url, engagement=0.8, timestamp=None, content="", **extra):
    page = {
        "url": url,
        "title": title,
        "timestamp": timestamp if timestamp is not None else time.time(),
        "content": content,
        "interactions": {
            "dwell_time": 45000,
            "scroll_depth": 60,
            "text_selections": 1,
            "engagement_score": engagement,
        },
        "metadata": {},
    }
    page.update(extra)
    return page


# Concepts returned by the mocked extraction, keyed by page title.
FEATURES_BY_TITLE = {
    "React Hooks Guide": make_features(["react", "hooks", "useState"], topics=["React"]),
    "Using the Effect Hook": make_features(["react", "hooks", "useEffect"], topics=["React"]),
    "Custom React Hooks": make_features(["react", "hooks", "custom hooks"], topics=["React"]),
    "Tennis Courts in Fremont": make_features(
        ["tennis", "courts", "fremont"], action="planning", topics=["Tennis"]),
}


def _extract(page):
    return FEATURES_BY_TITLE.get(page.get("title"), make_features(["misc"]))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_url=f"sqlite:///{tmp_path / 'intents.db'}",
        oracle_enabled=False,
        poll_interval=0.05,
        min_oracle_gap_seconds=0.0,
        retry_backoff_seconds=[0.0, 0.0, 0.0],
        verify_retry_delay=0.0,
        merge_debounce_seconds=3600.0,
        merge_min_interval_seconds=0.0,
    )


@pytest.fixture
def store(settings):
    return SQLAlchemyStore(settings.db_url)


@pytest.fixture
def pipeline():
    """Oracle pipeline mock with well-formed answers for every step."""
    mock = MagicMock()
    mock.extract_semantic_features.side_effect = _extract
    mock.summarize_page.return_value = "A short summary of the page."
    mock.classify_behavior.return_value = {
        "primary_behavior": "skimming",
        "confidence": 0.7,
        "evidence": [],
        "classified_at": time.time(),
        "source": "oracle",
    }
    mock.generate_intent_label.return_value = {
        "label": "Learning React Hooks Patterns",
        "confidence": 0.8,
        "reasoning": "Pages cover React hooks",
    }
    mock.generate_fallback_label.return_value = None
    mock.generate_intent_goal.return_value = {"goal": "To build components with hooks", "confidence": 0.8}
    mock.generate_intent_summary.return_value = "The user is learning React hooks."
    mock.generate_intent_insights.return_value = [
        {"text": "Focus on hooks", "confidence": "high", "reasoning": "Concepts repeat", "source": "oracle"},
    ]
    mock.generate_next_steps.return_value = [
        {"action": "Read the rules of hooks", "description": "", "reasoning": "", "type": "visit",
         "url": "https://react.dev/reference/rules", "query": None},
    ]
    mock.verify_intent_match.return_value = {
        "action": "agree",
        "confidence": 0.9,
        "reasoning": "Consistent topic",
        "suggested_intent_id": None,
        "intent_to_merge": None,
        "merge_into": None,
    }
    mock.evaluate_merge_pairs.return_value = []
    mock.review_merge.return_value = None
    mock.should_run.return_value = None
    mock.generate_activity_recap.return_value = None
    return mock


@pytest.fixture
def context(settings, store, pipeline):
    ctx = AppContext(settings=settings, store=store, pipeline=pipeline)
    yield ctx
    ctx.coordinator.cancel()
    ctx.scheduler.stop_worker()


@pytest.fixture
def engine(context):
    return context.engine


def new_id():
    return str(uuid.uuid4())
