"""Intent label validation, heuristic labels and confidence normalization."""

import logging
import re
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

PLACEHOLDER_LABEL = "Analyzing browsing pattern..."
PLACEHOLDER_CONFIDENCE = 0.1
HEURISTIC_CONFIDENCE = 0.45

LABEL_SOURCE_ORACLE = "oracle"
LABEL_SOURCE_ORACLE_FALLBACK = "oracle_fallback"
LABEL_SOURCE_HEURISTIC = "heuristic"

# Every label source reports confidence inside its own band on a 0..1 scale.
CONFIDENCE_BANDS = {
    LABEL_SOURCE_ORACLE: (0.3, 0.95),
    LABEL_SOURCE_ORACLE_FALLBACK: (0.3, 0.85),
    LABEL_SOURCE_HEURISTIC: (HEURISTIC_CONFIDENCE, HEURISTIC_CONFIDENCE),
}

ACTION_VERBS = [
    "learning", "exploring", "finding", "researching", "shopping", "comparing",
    "investigating", "understanding", "discovering", "planning", "evaluating",
    "studying", "analyzing",
]

FALLBACK_ACTION_VERBS = {
    "learning": "Learning",
    "explore": "Exploring",
    "exploring": "Exploring",
    "research": "Researching",
    "researching": "Researching",
    "finding": "Finding",
    "comparing": "Comparing",
    "shopping": "Shopping",
    "planning": "Planning",
    "investigating": "Investigating",
    "studying": "Studying",
    "analyzing": "Analyzing",
}

GENERIC_PATTERNS = [
    re.compile(r"researching new insights", re.IGNORECASE),
    re.compile(r"researching insights", re.IGNORECASE),
    re.compile(r"general research", re.IGNORECASE),
    re.compile(r"analyzing browsing pattern", re.IGNORECASE),
    re.compile(r"learning new insights", re.IGNORECASE),
    re.compile(r"^researching (a|the) topic", re.IGNORECASE),
    re.compile(r"^learning about (a|the) topic", re.IGNORECASE),
]

FORBIDDEN_PATTERNS = [
    re.compile("[–—]"),
    re.compile(r" - (Google|Yelp|Search|Updated)", re.IGNORECASE),
    re.compile(r"^TOP \d+", re.IGNORECASE),
    re.compile(r"Updated \d{4}", re.IGNORECASE),
    re.compile(r"\|"),
    re.compile(r"^\d+\."),
    re.compile(r"(Best|Top|Official|Home|Welcome)", re.IGNORECASE),
]

MAX_TITLE_OVERLAP = 0.7


def is_valid_intent_label(label: str, pages: List[Dict]) -> bool:
    """Reject title copies, generic phrases and malformed labels."""
    if not label or not label.strip():
        return False
    label_words = set(label.lower().split())
    for page in pages:
        title = page.get("title") or ""
        if label == title:
            logger.debug(f"Label exactly matches page title: {label!r}")
            return False
        title_words = set(title.lower().split())
        if not title_words:
            continue
        overlap = len(label_words & title_words) / min(len(label_words), len(title_words))
        if overlap > MAX_TITLE_OVERLAP:
            logger.debug(f"Label too similar to page title {title!r}: {overlap:.0%}")
            return False

    if any(p.search(label) for p in GENERIC_PATTERNS):
        return False
    if any(p.search(label) for p in FORBIDDEN_PATTERNS):
        return False

    words = label.strip().split()
    if len(words) < 3 or len(words) > 7:
        return False
    return words[0].lower() in ACTION_VERBS


def normalize_label_confidence(raw, source: str) -> float:
    """Map a source-reported confidence onto the shared 0..1 scale.

    Values above 1 are read as percentages. The result is clamped to the
    band of ``source`` so the sources stay comparable.
    """
    low, high = CONFIDENCE_BANDS[source]
    try:
        value = float(raw)
    except (TypeError, ValueError):
        value = low
    if value > 1.0:
        value = value / 100.0
    return round(min(max(value, low), high), 4)


def _normalize_keyword(keyword: str) -> Optional[str]:
    words = re.sub(r"[^a-zA-Z0-9\s]", " ", keyword or "").split()
    cleaned = " ".join(w.lower().capitalize() for w in words)
    return cleaned or None


def _pick_action_verb(intent: Dict, pages: List[Dict]) -> str:
    candidates = []
    for page in pages:
        action = ((page.get("semantic_features") or {}).get("intent_signals") or {}).get("primary_action")
        if action:
            candidates.append(action.lower())
    patterns = (intent.get("aggregated_signals") or {}).get("patterns") or {}
    if patterns.get("browsing_style") == "focused":
        candidates.append("studying")
    for candidate in candidates:
        if candidate in FALLBACK_ACTION_VERBS:
            return FALLBACK_ACTION_VERBS[candidate]
    return "Researching"


def keyword_candidates(intent: Dict, pages: List[Dict]) -> List[str]:
    scores: Dict[str, float] = {}

    def add(keyword: str, weight: float):
        normalized = _normalize_keyword(keyword)
        if normalized:
            key = normalized.lower()
            scores[key] = scores.get(key, 0.0) + weight

    for page in pages:
        weight = max((page.get("interactions") or {}).get("engagement_score") or 0.5, 0.1)
        features = page.get("semantic_features") or {}
        for concept in features.get("concepts") or []:
            add(concept, weight)
        for group in (features.get("entities") or {}).values():
            for name in group or []:
                add(name, weight * 0.75)

    for keyword, stats in ((intent.get("aggregated_signals") or {}).get("keywords") or {}).items():
        stats = stats or {}
        add(keyword, float(stats.get("total_engagement") or stats.get("count") or 1))

    ordered = sorted(scores.items(), key=lambda kv: kv[1], reverse=True)
    return [_normalize_keyword(k) for k, _ in ordered if _normalize_keyword(k)]


def build_heuristic_label(intent: Dict, pages: List[Dict]) -> Dict:
    """Action verb plus the strongest keywords; always 3-6 words."""
    verb = _pick_action_verb(intent, pages)
    candidates = keyword_candidates(intent, pages)
    words = [verb]
    used = {verb.lower()}

    for candidate in candidates:
        for word in candidate.split():
            if word.lower() not in used:
                words.append(word)
                used.add(word.lower())
            if len(words) >= 5:
                break
        if len(words) >= 5:
            break

    for filler in ("Insights", "Focus", "Exploration"):
        if len(words) >= 3:
            break
        if filler.lower() not in used:
            words.append(filler)
            used.add(filler.lower())

    top = ", ".join(candidates[:3])
    return {
        "label": " ".join(words[:6]),
        "confidence": HEURISTIC_CONFIDENCE,
        "reasoning": f"Fallback label generated from intent keywords: {top}"
        if top else "Fallback label generated from browsing intent heuristics",
        "source": LABEL_SOURCE_HEURISTIC,
    }
