"""
Tests for the oracle client, JSON helpers and prompt pipeline.

HTTP is mocked at ``requests.Session``; the pipeline tests use a MagicMock
client so no network is touched.
"""

import json
import threading
from unittest.mock import MagicMock, patch

import pytest
import requests

from intent_tracker.oracle.client import (
    OracleClient,
    OracleConfig,
    OracleError,
    OracleResponseError,
    OracleUnavailableError,
)
from intent_tracker.oracle.json_utils import clean_json_response, parse_json_response, safe_json_loads
from intent_tracker.oracle.pipeline import (
    OraclePipeline,
    heuristic_behavior,
    normalize_semantic_features,
)


def _response(status=200, body=None):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body if body is not None else {"response": "  ok  "}
    return resp


class TestOracleClient:
    @patch("intent_tracker.oracle.client.requests.Session")
    def test_session_reused_for_same_config(self, mock_session_cls):
        mock_session_cls.return_value.post.return_value = _response()
        client = OracleClient(url="http://oracle:11434/api/generate", model="test-model")

        assert client.prompt("one") == "ok"
        assert client.prompt("two", OracleConfig()) == "ok"
        assert client.sessions_created == 1

        payload = mock_session_cls.return_value.post.call_args.kwargs["json"]
        assert payload["model"] == "test-model"
        assert payload["prompt"] == "two"
        assert payload["stream"] is False
        assert payload["options"] == {"temperature": 0.7, "top_k": 3}

    @patch("intent_tracker.oracle.client.requests.Session")
    def test_config_change_creates_new_session(self, mock_session_cls):
        mock_session_cls.return_value.post.return_value = _response()
        client = OracleClient()
        first = client.create_session(OracleConfig(temperature=0.2))
        second = client.create_session(OracleConfig(temperature=0.9))

        assert first is not second
        assert first.destroyed
        assert client.sessions_created == 2

    @patch("intent_tracker.oracle.client.requests.Session")
    def test_sessions_are_per_thread(self, mock_session_cls):
        client = OracleClient()
        other = {}

        def open_in_worker():
            other["session"] = client.create_session(OracleConfig(temperature=0.2))

        worker = threading.Thread(target=open_in_worker)
        worker.start()
        worker.join()

        mine = client.create_session(OracleConfig(temperature=0.2))
        assert mine is not other["session"]
        client.create_session(OracleConfig(temperature=0.9))
        assert mine.destroyed
        assert not other["session"].destroyed

        client.close()
        assert other["session"].destroyed

    @patch("intent_tracker.oracle.client.requests.Session")
    def test_json_mode_sets_format(self, mock_session_cls):
        mock_session_cls.return_value.post.return_value = _response(body={"response": "{}"})
        OracleClient().prompt("x", json_mode=True)
        payload = mock_session_cls.return_value.post.call_args.kwargs["json"]
        assert payload["format"] == "json"

    def test_disabled_client(self):
        client = OracleClient(enabled=False)
        with pytest.raises(OracleUnavailableError):
            client.prompt("hello")
        assert client.is_available() is False

    @pytest.mark.parametrize("status,error,message", [
        (429, OracleError, "API rate limit exceeded"),
        (503, OracleUnavailableError, "Service unavailable"),
        (400, OracleError, "rejected"),
    ])
    @patch("intent_tracker.oracle.client.requests.Session")
    def test_http_status_mapping(self, mock_session_cls, status, error, message):
        mock_session_cls.return_value.post.return_value = _response(status=status)
        client = OracleClient()
        with pytest.raises(error, match=message):
            client.prompt("x")
        assert client.sessions_created == 1

        # the failed session was reset, so the next call starts a new one
        mock_session_cls.return_value.post.return_value = _response()
        client.prompt("x")
        assert client.sessions_created == 2

    @patch("intent_tracker.oracle.client.requests.Session")
    def test_transport_errors(self, mock_session_cls):
        client = OracleClient()
        mock_session_cls.return_value.post.side_effect = requests.Timeout("slow")
        with pytest.raises(OracleError, match="Network timeout"):
            client.prompt("x")
        mock_session_cls.return_value.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(OracleUnavailableError, match="Service unavailable"):
            client.prompt("x")

    @patch("intent_tracker.oracle.client.requests.get")
    def test_health_check_is_cached(self, mock_get):
        mock_get.return_value = _response(status=200)
        client = OracleClient(url="http://oracle:11434/api/generate")
        assert client.is_available() is True
        assert client.is_available() is True
        mock_get.assert_called_once_with("http://oracle:11434/api/tags", timeout=5)

    @patch("intent_tracker.oracle.client.requests.get")
    def test_health_check_failure(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("down")
        assert OracleClient().is_available() is False


class TestJsonHelpers:
    def test_fenced_json(self):
        text = 'Sure!\n```json\n{"label": "Learning Go", "confidence": 0.8,}\n```'
        assert parse_json_response(text) == {"label": "Learning Go", "confidence": 0.8}

    def test_bare_keys_and_chatter(self):
        assert parse_json_response('Here you go: {action: "agree"} thanks') == {"action": "agree"}
        assert clean_json_response("") == ""

    def test_unparseable(self):
        with pytest.raises(OracleResponseError, match="Invalid JSON response"):
            parse_json_response("no json here")
        assert safe_json_loads("still nothing", {"fallback": True}) == {"fallback": True}


class TestNormalization:
    def test_camel_case_answer(self):
        features = normalize_semantic_features({
            "concepts": ["react", "", "hooks"],
            "entities": {"topics": ["React"], "unknown": ["x"]},
            "intentSignals": {"primaryAction": "learning", "confidence": "0.9"},
            "contentType": "documentation",
        })
        assert features["concepts"] == ["react", "hooks"]
        assert features["entities"]["topics"] == ["React"]
        assert "unknown" not in features["entities"]
        assert features["intent_signals"]["primary_action"] == "learning"
        assert features["intent_signals"]["confidence"] == 0.9
        assert features["content_type"] == "documentation"
        assert features["sentiment"] == "informational"

    def test_garbage_answer(self):
        features = normalize_semantic_features(["not", "a", "dict"])
        assert features["concepts"] == []
        assert features["intent_signals"]["primary_action"] == "browsing"


class TestHeuristicBehavior:
    @pytest.mark.parametrize("interactions,url,title,expected", [
        ({"dwell_time": 90000, "scroll_depth": 80, "text_selections": 2}, "https://a.dev", "Doc", "deep_reading"),
        ({"dwell_time": 90000, "scroll_depth": 10}, "https://youtube.com/watch", "Clip", "watching_video"),
        ({"dwell_time": 30000, "scroll_depth": 60}, "https://a.dev", "Doc", "skimming"),
        ({"dwell_time": 5000, "scroll_depth": 0}, "https://google.com/search?q=x", "x", "searching"),
        ({"dwell_time": 5000, "scroll_depth": 0}, "https://shop.com/cart", "Checkout", "form_filling"),
        ({"dwell_time": 5000, "scroll_depth": 0}, "https://a.dev", "Doc", "navigating"),
    ])
    def test_rules(self, interactions, url, title, expected):
        page = {"url": url, "title": title, "interactions": interactions}
        result = heuristic_behavior(page, now=1.0)
        assert result["primary_behavior"] == expected
        assert result["source"] == "heuristic"
        assert result["classified_at"] == 1.0

    def test_selection_list_counts(self):
        page = {"url": "https://a.dev", "title": "Doc",
                "interactions": {"dwell_time": 90000, "scroll_depth": 80, "text_selections": ["a", "b"]}}
        assert heuristic_behavior(page)["primary_behavior"] == "deep_reading"


class TestOraclePipeline:
    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.is_available.return_value = True
        return client

    @pytest.fixture
    def pipeline(self, client):
        return OraclePipeline(client)

    def test_extraction_prompt_and_parse(self, pipeline, client):
        client.prompt.return_value = json.dumps({
            "concepts": ["react", "hooks"],
            "entities": {"topics": ["React"]},
            "intent_signals": {"primary_action": "learning", "confidence": 0.8},
            "content_type": "documentation",
        })
        page = {"title": "React Hooks Guide", "url": "https://react.dev/learn",
                "metadata": {"domain": "react.dev"}, "content": "Hooks let you use state."}
        features = pipeline.extract_semantic_features(page)

        assert features["concepts"] == ["react", "hooks"]
        prompt, config = client.prompt.call_args.args
        assert "React Hooks Guide" in prompt
        assert "DOMAIN: react.dev" in prompt
        assert client.prompt.call_args.kwargs["json_mode"] is True
        assert isinstance(config, OracleConfig)

    def test_non_object_answer_is_invalid(self, pipeline, client):
        client.prompt.return_value = "[1, 2]"
        with pytest.raises(OracleResponseError):
            pipeline.extract_semantic_features({"title": "x"})

    def test_classify_falls_back_to_heuristics(self, pipeline, client):
        client.prompt.side_effect = OracleUnavailableError("Service unavailable")
        result = pipeline.classify_behavior({"url": "https://a.dev", "title": "Doc",
                                             "interactions": {"dwell_time": 30000, "scroll_depth": 60}})
        assert result["source"] == "heuristic"
        assert result["primary_behavior"] == "skimming"

    def test_label_requires_pages(self, pipeline):
        with pytest.raises(ValueError):
            pipeline.generate_intent_label([])

    def test_label_forbids_page_titles(self, pipeline, client):
        client.prompt.return_value = '{"label": "Learning React Hooks Patterns", "confidence": 85}'
        pages = [{"title": "React Hooks Guide", "interactions": {"engagement_score": 0.9},
                  "semantic_features": {"concepts": ["react"], "intent_signals": {"primary_action": "learning"}}}]
        result = pipeline.generate_intent_label(pages)
        assert result["label"] == "Learning React Hooks Patterns"
        assert result["confidence"] == 85
        assert '"React Hooks Guide"' in client.prompt.call_args.args[0].split("FORBIDDEN")[1]

    def test_optional_judgments_return_none_when_unavailable(self, pipeline, client):
        client.is_available.return_value = False
        assert pipeline.generate_fallback_label({}, [], []) is None
        assert pipeline.review_merge({"id": "a"}, {"id": "b"}) is None
        assert pipeline.should_run("generate_intent_label", "i1", 30, None) is None
        assert pipeline.generate_activity_recap("- x", 1, 1, 8) is None
        client.prompt.assert_not_called()

    def test_review_merge(self, pipeline, client):
        client.prompt.return_value = '{"should_merge": true, "confidence": 0.9, "reason": "Same", "conflicts": []}'
        assert pipeline.review_merge({"id": "a"}, {"id": "b"}) == {
            "approved": True, "confidence": 0.9, "reason": "Same", "conflicts": []}
        client.prompt.return_value = '{"confidence": 0.9}'
        assert pipeline.review_merge({"id": "a"}, {"id": "b"}) is None

    def test_should_run(self, pipeline, client):
        client.prompt.return_value = '{"should_run": false, "confidence": 0.8, "reason": "fresh"}'
        assert pipeline.should_run("generate_intent_label", "i1", 30, {"label": "x"}) is False

    def test_verify_unknown_action_means_agree(self, pipeline, client):
        client.prompt.return_value = '{"action": "delete", "confidence": 0.9}'
        verdict = pipeline.verify_intent_match({"title": "x"}, {"id": "i", "label": "L"}, [])
        assert verdict["action"] == "agree"

    def test_merge_pairs_limited_to_asked_pairs(self, pipeline, client):
        a, b, c = ({"id": x, "first_seen": 0} for x in ("a", "b", "c"))
        client.prompt.return_value = json.dumps({"merges": [
            {"intent_a": "a", "intent_b": "b", "confidence": 0.93, "reasoning": "Pair #1"},
            {"intent_a": "a", "intent_b": "c", "confidence": 0.99, "reasoning": "not asked"},
        ]})
        merges = pipeline.evaluate_merge_pairs([(a, b)])
        assert merges == [{"intent_a": "a", "intent_b": "b", "confidence": 0.93, "reasoning": "Pair #1"}]
        assert pipeline.evaluate_merge_pairs([]) == []

    def test_activity_recap_gets_prefix_and_bullet(self, pipeline, client):
        client.prompt.return_value = "You read about React hooks."
        text = pipeline.generate_activity_recap("- React (2 pages)", 1, 2, 8)
        assert text.startswith("Hey, a quick recap:")
        assert "- You dipped into a few quick reads." in text

    def test_insights_and_next_steps_filter_malformed_items(self, pipeline, client):
        client.prompt.return_value = json.dumps({"insights": [
            {"text": "Focus on hooks", "confidence": "high"}, {"confidence": "low"}, "junk"]})
        insights = pipeline.generate_intent_insights({"label": "L"}, [])
        assert [i["text"] for i in insights] == ["Focus on hooks"]

        client.prompt.return_value = json.dumps({"nextSteps": [
            {"action": "Read the rules of hooks", "url": "https://react.dev"}, {"url": "x"}]})
        steps = pipeline.generate_next_steps({"label": "L"}, [])
        assert [s["action"] for s in steps] == ["Read the rules of hooks"]
        assert steps[0]["type"] == "visit"
