"""
Page-to-intent match scoring.

The score is a weighted sum of six signals, each in [0, 1]:

- semantic similarity (0.30): engagement-weighted mean cosine similarity
  between the page embedding and the embeddings of the intent's pages
- keyword overlap (0.20): Jaccard of page concepts vs intent keywords
- entity continuity (0.15): Jaccard over entity names of all categories
- temporal proximity (0.15): exp(-days since intent update / 30)
- domain continuity (0.10): page domain already seen on the intent
- behavioral match (0.10): 1 - |page engagement - intent avg engagement|
"""

import math
import time
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import numpy as np

EMBEDDING_DIM = 256
ENTITY_CATEGORIES = ("people", "places", "organizations", "products", "topics")

WEIGHTS = {
    "semantic": 0.30,
    "keyword": 0.20,
    "entity": 0.15,
    "temporal": 0.15,
    "domain": 0.10,
    "behavioral": 0.10,
}

DEFAULT_INTENT_ENGAGEMENT = 0.5
SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class MatchBreakdown:
    semantic: float = 0.0
    keyword: float = 0.0
    entity: float = 0.0
    temporal: float = 0.0
    domain: float = 0.0
    behavioral: float = 0.0

    @property
    def score(self) -> float:
        return sum(getattr(self, name) * weight for name, weight in WEIGHTS.items())

    def to_dict(self) -> Dict[str, float]:
        data = {name: round(getattr(self, name), 4) for name in WEIGHTS}
        data["score"] = round(self.score, 4)
        return data


def _simple_hash(text: str) -> int:
    """31-multiplier string hash folded to a signed 32-bit value, then abs()."""
    h = 0
    for ch in text:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def _empty_entities() -> Dict[str, List[str]]:
    return {cat: [] for cat in ENTITY_CATEGORIES}


def create_embedding(page: Dict) -> List[float]:
    """Hash semantic features and content into a normalized 256-dim vector.

    Layout: concepts in [0, 101), entities in [101, 151), primary action in
    [151, 176), content term frequency in [176, 256).
    """
    vec = np.zeros(EMBEDDING_DIM, dtype=float)
    features = page.get("semantic_features")
    if not features:
        return vec.tolist()

    concepts = features.get("concepts") or []
    for concept in concepts[:20]:
        vec[_simple_hash(concept) % 101] += 0.4 / len(concepts)

    entities = features.get("entities") or {}
    names = [n for cat in ENTITY_CATEGORIES[:4] for n in (entities.get(cat) or [])]
    for name in names[:10]:
        vec[101 + _simple_hash(name) % 50] += 0.2 / max(len(names), 1)

    signals = features.get("intent_signals") or {}
    action = signals.get("primary_action") or ""
    vec[151 + _simple_hash(action) % 25] += 0.15 * float(signals.get("confidence") or 0.0)

    content = (page.get("content") or page.get("content_summary") or "").lower()
    words = [w for w in content.split() if len(w) > 3]
    if words:
        for word, freq in Counter(words).most_common(20):
            vec[176 + _simple_hash(word) % 80] += 0.25 * freq / len(words)

    norm = np.linalg.norm(vec)
    if norm > 0:
        vec = vec / norm
    return vec.tolist()


def cosine_similarity(vec_a: Optional[List[float]], vec_b: Optional[List[float]]) -> float:
    if not vec_a or not vec_b or len(vec_a) != len(vec_b):
        return 0.0
    a = np.asarray(vec_a, dtype=float)
    b = np.asarray(vec_b, dtype=float)
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    set_a = {x.lower() for x in a if x}
    set_b = {x.lower() for x in b if x}
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)


def flatten_entities(entities: Optional[Dict]) -> List[str]:
    entities = entities or {}
    return [n for cat in ENTITY_CATEGORIES for n in (entities.get(cat) or [])]


def semantic_signal(page: Dict, intent_pages: List[Dict]) -> float:
    total = 0.0
    total_weight = 0.0
    for other in intent_pages:
        if not other.get("embedding") or not page.get("embedding"):
            continue
        weight = float((other.get("interactions") or {}).get("engagement_score") or 0.0)
        total += cosine_similarity(page["embedding"], other["embedding"]) * weight
        total_weight += weight
    return total / total_weight if total_weight > 0 else 0.0


def score_breakdown(page: Dict, intent: Dict, intent_pages: List[Dict],
                    now: Optional[float] = None) -> MatchBreakdown:
    """Compute every signal; an intent without pages scores zero."""
    if not intent_pages:
        return MatchBreakdown()

    now = now if now is not None else time.time()
    features = page.get("semantic_features") or {}
    signals = intent.get("aggregated_signals") or {}

    days = max(0.0, now - (intent.get("last_updated") or now)) / SECONDS_PER_DAY
    page_engagement = float((page.get("interactions") or {}).get("engagement_score") or 0.0)
    intent_engagement = (signals.get("patterns") or {}).get("avg_engagement")
    if not intent_engagement:
        intent_engagement = DEFAULT_INTENT_ENGAGEMENT
    domain = (page.get("metadata") or {}).get("domain")

    return MatchBreakdown(
        semantic=semantic_signal(page, intent_pages),
        keyword=jaccard(features.get("concepts") or [], (signals.get("keywords") or {}).keys()),
        entity=jaccard(flatten_entities(features.get("entities")),
                       flatten_entities(signals.get("entities"))),
        temporal=math.exp(-days / 30),
        domain=1.0 if domain and domain in (signals.get("domains") or []) else 0.0,
        behavioral=1.0 - abs(page_engagement - float(intent_engagement)),
    )


def score_match(page: Dict, intent: Dict, intent_pages: List[Dict],
                now: Optional[float] = None) -> float:
    return score_breakdown(page, intent, intent_pages, now).score
