import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from .client import OracleClient, OracleConfig, OracleError, OracleResponseError
from .json_utils import parse_json_response

ENTITY_CATEGORIES = ("people", "places", "organizations", "products", "topics")

EXTRACTION_CONFIG = OracleConfig(temperature=0.7, top_k=3)
CLASSIFY_CONFIG = OracleConfig(temperature=0.7, top_k=3)
SUMMARIZE_CONFIG = OracleConfig(
    temperature=0.3, top_k=3,
    system_prompt="You write short, factual summaries of web pages.",
)
LABEL_CONFIG = OracleConfig(temperature=0.7, top_k=3)
FALLBACK_LABEL_CONFIG = OracleConfig(
    temperature=0.4, top_k=2,
    system_prompt=(
        "You are an assistant that names browsing intents. Produce concise, "
        "user-friendly labels (3-6 words, action verb first) that capture the "
        "specific topic. Avoid copying page titles or generic phrases like "
        "'New Insights'. Always return valid JSON."
    ),
)
GOAL_CONFIG = OracleConfig(temperature=0.5, top_k=3)
SUMMARY_CONFIG = OracleConfig(temperature=0.6, top_k=3)
INSIGHTS_CONFIG = OracleConfig(temperature=0.4, top_k=3)
NEXT_STEPS_CONFIG = OracleConfig(temperature=0.5, top_k=4)
VERIFY_CONFIG = OracleConfig(temperature=0.3, top_k=2)
MERGE_SCAN_CONFIG = OracleConfig(temperature=0.1, top_k=1)
MERGE_REVIEW_CONFIG = OracleConfig(temperature=0.2, top_k=1)
SHOULD_RUN_CONFIG = OracleConfig(temperature=0.2, top_k=1)
ACTIVITY_CONFIG = OracleConfig(temperature=0.6, top_k=3)

EXTRACTION_CONTENT_CHARS = 2000
SUMMARIZE_CONTENT_CHARS = 4000
VERIFY_ACTIONS = ("agree", "merge", "reassign", "split")
RECAP_PREFIX = "Hey, a quick recap:"


def _interactions(page: Dict) -> Dict:
    return page.get("interactions") or {}


def _selection_count(page: Dict) -> int:
    selections = _interactions(page).get("text_selections")
    if isinstance(selections, list):
        return len(selections)
    return int(selections or 0)


def _keywords(intent: Dict, limit: int) -> List[str]:
    return list(((intent.get("aggregated_signals") or {}).get("keywords") or {}).keys())[:limit]


def _domains(intent: Dict) -> List[str]:
    return list((intent.get("aggregated_signals") or {}).get("domains") or [])


def _patterns(intent: Dict) -> Dict:
    return (intent.get("aggregated_signals") or {}).get("patterns") or {}


def normalize_semantic_features(parsed: Dict) -> Dict:
    """Coerce an extraction answer into the stored snake_case shape."""
    parsed = parsed if isinstance(parsed, dict) else {}
    entities = parsed.get("entities") or {}
    signals = parsed.get("intent_signals") or parsed.get("intentSignals") or {}
    return {
        "concepts": [str(c) for c in (parsed.get("concepts") or []) if c],
        "entities": {cat: [str(n) for n in (entities.get(cat) or []) if n] for cat in ENTITY_CATEGORIES},
        "intent_signals": {
            "primary_action": signals.get("primary_action") or signals.get("primaryAction") or "browsing",
            "confidence": float(signals.get("confidence") or 0.5),
            "evidence": list(signals.get("evidence") or []),
            "goal": signals.get("goal") or "",
        },
        "content_type": parsed.get("content_type") or parsed.get("contentType") or "article",
        "sentiment": parsed.get("sentiment") or "informational",
    }


def heuristic_behavior(page: Dict, now: Optional[float] = None) -> Dict:
    """Classify behaviour from interaction metrics alone."""
    interactions = _interactions(page)
    dwell = float(interactions.get("dwell_time") or 0) / 1000
    scroll = float(interactions.get("scroll_depth") or 0)
    selections = _selection_count(page)
    engagement = float(interactions.get("engagement_score") or 0)
    url = page.get("url") or ""
    title = (page.get("title") or "").lower()

    if dwell > 60 and scroll > 70 and selections > 0:
        behavior, confidence = "deep_reading", 0.8
        evidence = [f"High dwell time ({dwell:.0f}s)", f"Deep scroll ({scroll:.0f}%)",
                    f"{selections} text selections"]
    elif dwell > 60 and scroll < 30 and ("youtube" in url or "video" in url):
        behavior, confidence = "watching_video", 0.75
        evidence = ["Long dwell time on video site", f"Low scroll ({scroll:.0f}%)"]
    elif 20 <= dwell <= 60 and scroll > 50:
        behavior, confidence = "skimming", 0.7
        evidence = [f"Moderate dwell time ({dwell:.0f}s)", f"High scroll ({scroll:.0f}%)"]
    elif dwell < 20 and "search" in url:
        behavior, confidence = "searching", 0.85
        evidence = ["Search page with quick scan"]
    elif "checkout" in title or "form" in title or "/checkout" in url:
        behavior, confidence = "form_filling", 0.7
        evidence = ["Checkout or form page detected"]
    else:
        behavior, confidence = "navigating", 0.6
        evidence = [f"Brief visit ({dwell:.0f}s)", f"Low engagement ({round(engagement * 100)}%)"]

    return {
        "primary_behavior": behavior,
        "confidence": confidence,
        "evidence": evidence,
        "classified_at": now if now is not None else time.time(),
        "source": "heuristic",
    }


class OraclePipeline:
    """
    Prompt construction and answer parsing for every oracle-backed step.

    Extraction, labels, goals, summaries, insights, next steps, verification
    and merge scans raise ``OracleError`` so the scheduler can retry them.
    Judgment calls used as optional inputs (merge review, re-run decisions,
    fallback labels) return None when the oracle cannot answer.
    """

    def __init__(self, client: OracleClient):
        self.client = client
        self.logger = logging.getLogger(__name__)

    def is_available(self) -> bool:
        return self.client.is_available()

    def _prompt_json(self, prompt: str, config: OracleConfig) -> Dict[str, Any]:
        parsed = parse_json_response(self.client.prompt(prompt, config, json_mode=True))
        if not isinstance(parsed, dict):
            raise OracleResponseError("Invalid JSON response: expected an object")
        return parsed

    # --------- Page analysis ---------
    def extract_semantic_features(self, page: Dict) -> Dict:
        meta = page.get("metadata") or {}
        interactions = _interactions(page)
        content = (page.get("content_summary") or page.get("content") or "")[:EXTRACTION_CONTENT_CHARS]
        is_error = meta.get("title_contains_404") or meta.get("title_contains_error")

        prompt = f"""Analyze this web page and extract semantic features.

Pages vary in data quality. Error pages (404s) still carry intent signals:
infer intent from URL, domain and meta tags when content is missing.

PAGE DATA:
TITLE: {page.get('title') or ''}
URL: {page.get('url') or ''}
DOMAIN: {meta.get('domain') or ''}
IS_ERROR_PAGE: {"yes - but still analyze" if is_error else "no"}
CONTENT_LENGTH: {meta.get('body_text_length') or len(page.get('content') or '')} characters
CONTENT: {content}

METADATA:
- Description: {meta.get('description') or 'none'}
- Keywords: {meta.get('keywords') or 'none'}
- OG Title: {meta.get('og_title') or 'none'}

USER ENGAGEMENT:
- Engagement Score: {round(float(interactions.get('engagement_score') or 0) * 100)}%
- Scroll Depth: {interactions.get('scroll_depth') or 0}%
- Dwell Time: {round(float(interactions.get('dwell_time') or 0) / 1000)}s
- Text Selections: {_selection_count(page)}

Be specific in concepts (actual keywords from content/metadata) and explain
your reasoning in the evidence array. Lower the confidence for error pages.

Return ONLY valid JSON:
{{
  "concepts": ["specific keywords"],
  "entities": {{"people": [], "places": [], "organizations": [], "products": [], "topics": []}},
  "intent_signals": {{
    "primary_action": "researching|shopping|learning|comparing|planning|navigating",
    "confidence": 0.65,
    "evidence": ["why"],
    "goal": "specific user goal inferred from all signals"
  }},
  "content_type": "article|search|product|video|documentation|error|redirect",
  "sentiment": "informational|transactional|navigational"
}}"""
        return normalize_semantic_features(self._prompt_json(prompt, EXTRACTION_CONFIG))

    def summarize_page(self, content: str) -> str:
        truncated = (content or "")[:SUMMARIZE_CONTENT_CHARS]
        prompt = (
            "Summarize the following text in 3-5 sentences, focusing on key facts and entities:\n\n"
            f"{truncated}"
        )
        return self.client.prompt(prompt, SUMMARIZE_CONFIG).strip()

    def classify_behavior(self, page: Dict) -> Dict:
        """Oracle classification with the heuristic classifier as fallback."""
        interactions = _interactions(page)
        features = page.get("semantic_features") or {}
        prompt = f"""Classify the user's behavior on this web page based on interaction patterns.

PAGE INFO:
- Title: {page.get('title') or ''}
- URL: {page.get('url') or ''}
- Domain: {(page.get('metadata') or {}).get('domain') or ''}
- Content Type: {features.get('content_type') or 'unknown'}

INTERACTION SIGNALS:
- Dwell Time: {round(float(interactions.get('dwell_time') or 0) / 1000)}s
- Scroll Depth: {interactions.get('scroll_depth') or 0}%
- Total Scroll Distance: {interactions.get('total_scroll_distance') or 0}px
- Text Selections: {_selection_count(page)}
- Engagement Score: {round(float(interactions.get('engagement_score') or 0) * 100)}%

BEHAVIOR TYPES:
- deep_reading: dwell >60s, scroll >70%, text selections
- skimming: dwell 20-60s, fast scrolling, few selections
- watching_video: video URL or title, high dwell, low scroll
- form_filling: form or checkout page, moderate dwell, low scroll
- comparing_items: shopping context, similar pages, medium engagement
- searching: search results, dwell <20s
- navigating: dwell <10s, minimal scroll

Return ONLY valid JSON:
{{
  "primary_behavior": "deep_reading|skimming|watching_video|form_filling|comparing_items|searching|navigating",
  "confidence": 0.85,
  "evidence": ["signal-based reasons"]
}}"""
        try:
            parsed = self._prompt_json(prompt, CLASSIFY_CONFIG)
        except OracleError as e:
            self.logger.warning(f"Behavior classification failed, using heuristics: {e}")
            return heuristic_behavior(page)
        return {
            "primary_behavior": parsed.get("primary_behavior") or parsed.get("primaryBehavior") or "navigating",
            "confidence": float(parsed.get("confidence") or 0.5),
            "evidence": list(parsed.get("evidence") or []),
            "classified_at": time.time(),
            "source": "oracle",
        }

    # --------- Intent labels ---------
    def generate_intent_label(self, pages: List[Dict]) -> Dict:
        """Ask for a label; the caller validates it.

        Raises:
            ValueError: If ``pages`` is empty.
            OracleError: If the oracle call fails.
        """
        if not pages:
            raise ValueError("No pages provided for label generation")

        top_pages = sorted(pages, key=lambda p: float(_interactions(p).get("engagement_score") or 0),
                           reverse=True)[:5]
        pages_desc = "\n".join(
            f'{i + 1}. "{p.get("title") or ""}" | '
            f'{round(float(_interactions(p).get("engagement_score") or 0) * 100)}% engaged'
            for i, p in enumerate(top_pages)
        )
        concepts = [c for p in top_pages for c in ((p.get("semantic_features") or {}).get("concepts") or [])]
        top_keywords = ", ".join(concepts[:10])
        domains = ", ".join(sorted({(p.get("metadata") or {}).get("domain") or "" for p in top_pages} - {""}))
        actions = [((p.get("semantic_features") or {}).get("intent_signals") or {}).get("primary_action")
                   for p in top_pages]
        action = next((a for a in actions if a), "exploring")
        forbidden = ", ".join(f'"{p.get("title") or ""}"' for p in pages)

        prompt = f"""Create a concise, descriptive intent label for this browsing session:

PAGES ({len(pages)} total):
{pages_desc}

KEY TOPICS: {top_keywords}
DOMAINS: {domains}
PRIMARY ACTION: {action}

FORBIDDEN (these are page titles, never reuse them):
{forbidden}

RULES:
1. Start with an action verb: Learning, Exploring, Finding, Researching, Shopping, Comparing, Investigating
2. Include a SPECIFIC topic from the keywords, not a site name
3. 3-6 words
4. No dashes, pipes, "Best", "Top" or "Official"
5. Describe the intent behind the browsing, not the page titles

GOOD: "Learning React Hooks Patterns", "Finding Tennis Courts in Fremont"
BAD: "Quick Start - React", "React Documentation", "Exploring Information"

Return ONLY valid JSON:
{{"label": "Action Verb + Specific Topic", "confidence": 0.8, "reasoning": "why"}}"""
        parsed = self._prompt_json(prompt, LABEL_CONFIG)
        first_keyword = top_keywords.split(",")[0].strip() if top_keywords else "Topic"
        return {
            "label": (parsed.get("label") or f"Exploring {first_keyword}").strip(),
            "confidence": parsed.get("confidence") if parsed.get("confidence") is not None else 0.7,
            "reasoning": parsed.get("reasoning") or "Based on browsing pattern",
        }

    def generate_fallback_label(self, intent: Dict, pages: List[Dict],
                                keyword_candidates: List[str]) -> Optional[Dict]:
        """Second oracle attempt with a stricter preamble; None if unavailable."""
        if not self.is_available():
            return None
        samples = " | ".join((p.get("title") or "").replace('"', "").replace("'", "") for p in pages[:3])
        prompt = f"""Create a replacement intent label.

CURRENT LABEL: {intent.get('label') or ''}
INTENT STATUS: {intent.get('status') or ''}
TOP KEYWORDS: {", ".join(keyword_candidates[:8]) or "(none)"}
TOP DOMAINS: {", ".join(_domains(intent)[:4]) or "(none)"}
SAMPLE PAGES: {samples or "(unknown)"}

RULES:
1. Start with an action verb (Learning, Exploring, Researching, Comparing, Planning, Shopping, Investigating, Studying, Analyzing, Discovering).
2. Mention a concrete subject (technology, location, product, topic).
3. 3-6 words total. No punctuation beyond spaces.
4. Avoid vague terms like "New Insights" or "Browsing Pattern".

Return ONLY valid JSON:
{{"label": "Exploring Fremont Tennis Courts", "confidence": 0.72, "reasoning": "why"}}"""
        try:
            parsed = self._prompt_json(prompt, FALLBACK_LABEL_CONFIG)
        except OracleError as e:
            self.logger.warning(f"Fallback label generation failed: {e}")
            return None
        label = parsed.get("label") if isinstance(parsed, dict) else None
        if not isinstance(label, str) or not label.strip():
            return None
        return {
            "label": label.strip(),
            "confidence": parsed.get("confidence") if parsed.get("confidence") is not None else 0.55,
            "reasoning": parsed.get("reasoning") if isinstance(parsed.get("reasoning"), str)
            else "Fallback label based on keywords and domains",
        }

    # --------- Intent enrichment ---------
    def generate_intent_goal(self, intent: Dict, pages: List[Dict]) -> Dict:
        patterns = _patterns(intent)
        selections = sum(_selection_count(p) for p in pages)
        prompt = f"""Infer the user's research goal from this browsing intent:

INTENT: "{intent.get('label') or ''}"
PAGES: {len(pages)} pages
KEYWORDS: {", ".join(_keywords(intent, 12))}
DOMAINS: {", ".join(_domains(intent))}

USER ENGAGEMENT SIGNALS:
- Avg Engagement: {round(float(patterns.get('avg_engagement') or 0) * 100)}%
- Avg Dwell: {round(float(patterns.get('avg_dwell_time') or 0) / 1000)}s
- Text Selections: {selections}
- Browsing Style: {patterns.get('browsing_style') or 'exploratory'}

REQUIREMENTS:
1. One sentence, 10-20 words, starting with "To..."
2. Specific to the keywords and behaviour
3. High engagement (>70%) suggests an implementation goal, medium (40-70%)
   a learning goal, low (<40%) a quick lookup

Return ONLY valid JSON:
{{"goal": "To ...", "confidence": 0.85}}"""
        parsed = self._prompt_json(prompt, GOAL_CONFIG)
        return {
            "goal": parsed.get("goal") or "To explore this topic further",
            "confidence": float(parsed.get("confidence") or 0.5),
        }

    def generate_intent_summary(self, intent: Dict, pages: List[Dict]) -> str:
        patterns = _patterns(intent)
        titles = "; ".join((p.get("title") or "") for p in pages[:5])
        prompt = f"""Create a concise 3-4 sentence summary of this browsing intent:

INTENT: "{intent.get('label') or ''}"
PAGES: {len(pages)} pages
PAGE TITLES: {titles}
TOP KEYWORDS: {", ".join(_keywords(intent, 15))}
DOMAINS: {", ".join(_domains(intent))}
AVG ENGAGEMENT: {round(float(patterns.get('avg_engagement') or 0) * 100)}%
BROWSING STYLE: {patterns.get('browsing_style') or 'exploratory'}

Explain what the user is exploring and the key patterns observed, in 60-80
words of plain language.

Return ONLY the summary text (no JSON, no markdown):"""
        return self.client.prompt(prompt, SUMMARY_CONFIG).strip()

    def generate_intent_insights(self, intent: Dict, pages: List[Dict]) -> List[Dict]:
        patterns = _patterns(intent)
        goal = f"\nUSER GOAL: {intent['goal']}\n" if intent.get("goal") else ""
        prompt = f"""Analyze this browsing research intent and generate 2-3 concise, specific insights:

INTENT: "{intent.get('label') or ''}"
PAGES: {len(pages)} | DOMAINS: {", ".join(_domains(intent))}
TOP KEYWORDS: {", ".join(_keywords(intent, 10))}{goal}
METRICS:
- Engagement: {round(float(patterns.get('avg_engagement') or 0) * 100)}% | Dwell: {round(float(patterns.get('avg_dwell_time') or 0) / 1000)}s | Scroll: {round(float(patterns.get('avg_scroll_depth') or 0))}%
- Style: {patterns.get('browsing_style') or 'exploratory'}

Each insight: one sentence of 15-25 words naming specific keywords, plus
30-50 words of reasoning that uses the metrics as evidence.

Return ONLY valid JSON:
{{"insights": [{{"text": "...", "confidence": "high|medium|low", "reasoning": "..."}}]}}"""
        parsed = self._prompt_json(prompt, INSIGHTS_CONFIG)
        now = time.time()
        return [
            {
                "text": item.get("text") or "",
                "confidence": item.get("confidence") or "medium",
                "reasoning": item.get("reasoning") or "Based on browsing patterns",
                "source": "oracle",
                "created_at": now,
            }
            for item in (parsed.get("insights") or [])
            if isinstance(item, dict) and item.get("text")
        ]

    def generate_next_steps(self, intent: Dict, pages: List[Dict]) -> List[Dict]:
        patterns = _patterns(intent)
        goal = f"\nUSER GOAL: {intent['goal']}" if intent.get("goal") else ""
        insights = intent.get("insights") or []
        insight_lines = ""
        if insights:
            insight_lines = "\nKEY INSIGHTS:\n" + "\n".join(
                f"{i + 1}. {item.get('text')}" for i, item in enumerate(insights))
        prompt = f"""Suggest 2-3 SPECIFIC next steps for this research intent:

INTENT: "{intent.get('label') or ''}"
PAGES: {len(pages)} | DOMAINS: {", ".join(_domains(intent))}
KEYWORDS: {", ".join(_keywords(intent, 8))}{goal}{insight_lines}
DWELL: {round(float(patterns.get('avg_dwell_time') or 0) / 1000)}s | STYLE: {patterns.get('browsing_style') or 'exploratory'}

Each step: an action of 5-10 words, a one sentence description, short
reasoning based on gaps in the research, and a real URL or search query.

Return ONLY valid JSON:
{{"next_steps": [{{"action": "...", "description": "...", "reasoning": "...", "type": "visit|search", "url": "...", "query": "..."}}]}}"""
        parsed = self._prompt_json(prompt, NEXT_STEPS_CONFIG)
        steps = parsed.get("next_steps") or parsed.get("nextSteps") or []
        return [
            {
                "action": step.get("action"),
                "description": step.get("description") or "",
                "reasoning": step.get("reasoning") or "Based on research pattern",
                "type": step.get("type") or "visit",
                "url": step.get("url"),
                "query": step.get("query"),
            }
            for step in steps
            if isinstance(step, dict) and step.get("action")
        ]

    # --------- Judgments ---------
    def verify_intent_match(self, page: Dict, intent: Dict, others: List[Dict]) -> Dict:
        """Second opinion on an assignment: agree, merge, reassign or split."""
        features = page.get("semantic_features") or {}
        signals = features.get("intent_signals") or {}
        primary = (page.get("intent_assignments") or {}).get("primary") or {}
        context = "\n".join(
            f'{i + 1}. "{o.get("label")}" ({o.get("page_count") or 0} pages, {o.get("status")})\n'
            f'   Concepts: {", ".join(_keywords(o, 8))}\n'
            f'   Domains: {", ".join(_domains(o))}\n'
            f'   ID: {o["id"]}'
            for i, o in enumerate(others[:5])
        )
        prompt = f"""Verify if this page was correctly assigned to a browsing intent.

NEW PAGE:
Title: "{page.get('title') or ''}"
URL: {page.get('url') or ''}
Domain: {(page.get('metadata') or {}).get('domain') or ''}
Concepts: {", ".join((features.get('concepts') or [])[:12])}
Action: {signals.get('primary_action') or 'unknown'}
Goal: {signals.get('goal') or 'unknown'}

CURRENT ASSIGNMENT:
Intent: "{intent.get('label') or ''}" ({intent.get('page_count') or 0} pages)
Algorithm Confidence: {round(float(primary.get('confidence') or 0) * 100)}%
Intent Concepts: {", ".join(_keywords(intent, 10))}
Intent Domains: {", ".join(_domains(intent))}

OTHER RECENT INTENTS:
{context or "No other active intents"}

ACTIONS:
- "agree": assignment is correct
- "merge": the current intent should merge with another (give both ids)
- "reassign": the page belongs to a different existing intent
- "split": the current intent is too broad, start a new one for this page

Return ONLY valid JSON:
{{"action": "agree|merge|reassign|split", "confidence": 0.85, "reasoning": "one sentence",
  "suggested_intent_id": "only for reassign", "intent_to_merge": "only for merge",
  "merge_into": "only for merge"}}"""
        parsed = self._prompt_json(prompt, VERIFY_CONFIG)
        action = parsed.get("action") if parsed.get("action") in VERIFY_ACTIONS else "agree"
        return {
            "action": action,
            "confidence": float(parsed.get("confidence") or 0.5),
            "reasoning": parsed.get("reasoning") or "No reasoning provided",
            "suggested_intent_id": parsed.get("suggested_intent_id") or parsed.get("suggestedIntentId"),
            "intent_to_merge": parsed.get("intent_to_merge") or parsed.get("intentToMerge"),
            "merge_into": parsed.get("merge_into") or parsed.get("mergeInto"),
        }

    def evaluate_merge_pairs(self, pairs: List[Tuple[Dict, Dict]]) -> List[Dict]:
        """One batched call for every candidate pair.

        Returns:
            ``[{"intent_a", "intent_b", "confidence", "reasoning"}]`` limited
            to pairs that were actually asked about.
        """
        if not pairs:
            return []
        candidates = []
        for idx, (a, b) in enumerate(pairs):
            gap = abs((a.get("first_seen") or 0) - (b.get("first_seen") or 0))
            keys_a, keys_b = _keywords(a, 15), _keywords(b, 15)
            shared = [k for k in keys_a if k in set(keys_b)]
            smaller = min(len(keys_a), len(keys_b)) or 1
            candidates.append({
                "pair_id": idx + 1,
                "intent_a": self._merge_view(a),
                "intent_b": self._merge_view(b),
                "pre_computed_similarity": {
                    "shared_domains": sorted(set(_domains(a)) & set(_domains(b))),
                    "shared_concepts": shared,
                    "concept_overlap_percent": round(len(shared) / smaller * 100),
                },
                "temporal_context": {
                    "time_between_intents_seconds": round(gap),
                    "viewed_in_sequence": gap < 120,
                    "same_browsing_session": gap < 300,
                },
            })

        prompt = f"""Evaluate these PRE-FILTERED merge candidates for final approval.

CANDIDATE PAIRS:
{json.dumps(candidates, indent=2)}

For each pair decide whether both intents are about the SAME research topic.
- Same domain and viewed in sequence: high confidence (0.90-0.95)
- Same domain and same session: 0.85-0.90
- Different domains with >30% concept overlap: 0.85-0.89
- Different domains with <20% overlap: below 0.85
Justify any merge whose concept overlap is under 20%.

Return ONLY valid JSON:
{{"merges": [{{"intent_a": "id", "intent_b": "id", "confidence": 0.92, "reasoning": "Pair #1: ..."}}]}}"""
        parsed = self._prompt_json(prompt, MERGE_SCAN_CONFIG)
        asked = {frozenset((a["id"], b["id"])) for a, b in pairs}
        merges = []
        for item in parsed.get("merges") or []:
            if not isinstance(item, dict):
                continue
            a_id = item.get("intent_a") or item.get("intentA")
            b_id = item.get("intent_b") or item.get("intentB")
            if not a_id or not b_id or frozenset((a_id, b_id)) not in asked:
                self.logger.debug(f"Ignoring merge suggestion for unknown pair {a_id}/{b_id}")
                continue
            merges.append({
                "intent_a": a_id,
                "intent_b": b_id,
                "confidence": float(item.get("confidence") or 0.0),
                "reasoning": item.get("reasoning") or "",
            })
        return merges

    @staticmethod
    def _merge_view(intent: Dict) -> Dict:
        return {
            "id": intent["id"],
            "label": intent.get("label"),
            "domains": _domains(intent),
            "top_concepts": _keywords(intent, 8),
            "goal": intent.get("goal") or "Not set",
            "page_count": intent.get("page_count") or 0,
        }

    def review_merge(self, source: Dict, target: Dict) -> Optional[Dict]:
        """Final merge adjudication; None when the oracle cannot decide."""
        if not self.is_available():
            return None

        def summary(intent: Dict) -> str:
            if intent.get("ai_summary"):
                return intent["ai_summary"][:280]
            events = (intent.get("timeline") or [])[-2:]
            return " | ".join(f"{e.get('event')}: {e.get('details')}" for e in events) \
                or "Recent browsing without summary"

        def block(name: str, intent: Dict) -> str:
            return (f"INTENT {name}\n"
                    f"- Label: {intent.get('label')}\n"
                    f"- Status: {intent.get('status')}\n"
                    f"- Domains: {', '.join(_domains(intent)) or '(none)'}\n"
                    f"- Top Keywords: {', '.join(_keywords(intent, 10)) or '(none)'}\n"
                    f"- Summary: {summary(intent)}")

        prompt = f"""Decide if two browsing intents belong to the same underlying user goal.

{block("A", source)}

{block("B", target)}

RULES
- Approve only if both clearly refer to the same topic, location and objective.
- Reject merges mixing unrelated geographies, industries or activities.
- List any conflicting signals.

Return ONLY valid JSON:
{{"should_merge": false, "confidence": 0.2, "reason": "...", "conflicts": ["..."]}}"""
        try:
            parsed = self._prompt_json(prompt, MERGE_REVIEW_CONFIG)
        except OracleError as e:
            self.logger.warning(f"Merge review failed: {e}")
            return None
        approved = parsed.get("should_merge", parsed.get("shouldMerge"))
        if not isinstance(approved, bool):
            return None
        return {
            "approved": approved,
            "confidence": parsed.get("confidence"),
            "reason": parsed.get("reason") if isinstance(parsed.get("reason"), str)
            else ("Oracle approved merge" if approved else "Oracle rejected merge"),
            "conflicts": list(parsed.get("conflicts") or []),
        }

    def should_run(self, task_type: str, target: Optional[str], elapsed_seconds: float,
                   last_output: Optional[Dict]) -> Optional[bool]:
        """Whether a recently completed task is worth re-running; None when undecided."""
        if not self.is_available():
            return None
        output = json.dumps(last_output)[:400] if last_output else "(no structured output)"
        prompt = f"""Decide if we should rerun a background task.

TASK TYPE: {task_type}
TARGET: {target or "system"}
SECONDS SINCE LAST RUN: {max(round(elapsed_seconds), 1)}
LAST OUTPUT SUMMARY: {output}

Return ONLY valid JSON:
{{"should_run": true, "confidence": 0.0, "reason": "Concise explanation"}}"""
        try:
            parsed = self._prompt_json(prompt, SHOULD_RUN_CONFIG)
        except OracleError as e:
            self.logger.warning(f"Re-run judgment failed: {e}")
            return None
        verdict = parsed.get("should_run", parsed.get("shouldRun"))
        return verdict if isinstance(verdict, bool) else None

    def generate_activity_recap(self, themes: str, theme_count: int, total_pages: int,
                                hours: int) -> Optional[str]:
        """Friendly bullet recap; None when the oracle is unavailable or fails."""
        if not self.is_available():
            return None
        prompt = f"""Craft a short recap of the user's last {hours} hours of browsing.

THEMES (each bullet shows recent examples):
{themes}

SUMMARY CONTEXT:
- Themes detected: {theme_count}
- Total pages considered: {total_pages}

OUTPUT RULES:
- Start with "{RECAP_PREFIX}"
- Use a bullet list with one line per theme (each line starts with "-")
- Describe the purpose behind the browsing, not just the sites
- Keep the whole answer under 80 words
- With one theme or fewer than three pages, write a single bullet under 20 words

Write the recap now."""
        try:
            text = self.client.prompt(prompt, ACTIVITY_CONFIG)
        except OracleError as e:
            self.logger.warning(f"Activity recap generation failed: {e}")
            return None
        text = text.replace("```", "").strip()
        if not text:
            return None
        if not text.lower().startswith("hey"):
            text = f"{RECAP_PREFIX}\n{text}"
        if "-" not in text:
            text = f"{text}\n- You dipped into a few quick reads."
        return text
