"""
Merge validation rules.

Validation results are returned as ``MergeValidation`` values, never raised,
so callers can log and fall back without exception handling.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

CONTRADICTION_GROUPS = {
    "programming_languages": ["React", "Python", "Vue", "Angular", "Java", "C++", "Ruby", "Go"],
    "sports": ["tennis", "basketball", "soccer", "swimming", "football", "baseball"],
}

BRIDGING_TERMS = [
    "compare", "comparison", "vs", "versus", "integration", "full stack",
    "stack", "architecture", "backend", "frontend", "overview",
]

TOP_KEYWORDS = 15
POST_MERGE_TOP_KEYWORDS = 20
MIN_SUPPORT_RATIO = 0.25
MAX_DOMAIN_CATEGORIES = 3

THRESHOLD_SAME_DOMAIN = 0.05
THRESHOLD_SAME_CATEGORY = 0.15
THRESHOLD_CROSS_CATEGORY = 0.30

ORACLE_FALLBACK_CONFIDENCE = 0.4
MIN_ORACLE_CONFIDENCE = 0.45


@dataclass
class MergeValidation:
    valid: bool
    reason: str = ""
    confidence: Optional[float] = None
    conflicts: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "valid": self.valid,
            "reason": self.reason,
            "confidence": self.confidence,
            "conflicts": list(self.conflicts),
        }


def domain_category(domain: str) -> str:
    """Coarse bucket used for pre-merge thresholds."""
    if re.search(r"\.(dev|org)$", domain):
        return "tech_docs"
    if re.search(r"(yelp|review|rating)", domain):
        return "reviews"
    if "google.com" in domain:
        return "search"
    return "general"


def extended_domain_category(domain: str) -> str:
    """Finer bucket used by the post-merge diversity check."""
    if re.search(r"\.(dev|org)$", domain):
        return "tech_docs"
    if re.search(r"(yelp|review|rating|tripadvisor)", domain):
        return "reviews"
    if "google.com" in domain:
        return "search"
    if re.search(r"(amazon|shop|store|buy)", domain):
        return "shopping"
    if re.search(r"(github|stackoverflow|dev\.to)", domain):
        return "dev_community"
    return "general"


def top_keywords(intent: Dict, limit: int = TOP_KEYWORDS) -> List[str]:
    return list(((intent.get("aggregated_signals") or {}).get("keywords") or {}).keys())[:limit]


def _contains_term(keyword: str, term: str) -> bool:
    """Case-insensitive containment; short terms like "go" need word boundaries."""
    keyword = keyword.lower()
    term = term.lower()
    if len(term) <= 3 and term.isalpha():
        return re.search(rf"\b{re.escape(term)}\b", keyword) is not None
    return term in keyword


def _page_text(page: Dict) -> str:
    return f"{page.get('title') or ''} {page.get('content_summary') or ''}".lower()


def has_bridge(keywords: Iterable[str], label: str, pages: List[Dict]) -> bool:
    if any(_contains_term(k, t) for k in keywords for t in BRIDGING_TERMS):
        return True
    if label and any(_contains_term(label, t) for t in BRIDGING_TERMS):
        return True
    return any(_contains_term(_page_text(p), t) for p in pages for t in BRIDGING_TERMS)


def _support(term: str, pages: List[Dict]) -> int:
    count = 0
    for page in pages:
        concepts = (page.get("semantic_features") or {}).get("concepts") or []
        if _contains_term(_page_text(page), term) or any(_contains_term(c, term) for c in concepts):
            count += 1
    return count


def supported_terms(terms: Iterable[str], pages: List[Dict]) -> List[str]:
    """Terms that appear in at least a quarter of ``pages`` (minimum one)."""
    minimum = max(1, round(len(pages) * MIN_SUPPORT_RATIO))
    return [t for t in terms if _support(t, pages) >= minimum]


def find_contradiction(
    keyword_sides: List[List[str]],
    pages: List[Dict],
    label: str = "",
) -> Optional[str]:
    """Return a description of the first unbridged contradiction, if any.

    ``keyword_sides`` holds one keyword list per side; a conflict needs at
    least two distinct supported terms of the same group spread across them.
    """
    all_keywords = [k for side in keyword_sides for k in side]
    for name, terms in CONTRADICTION_GROUPS.items():
        present = []
        for side in keyword_sides:
            present.append({t for t in terms if any(_contains_term(k, t) for k in side)})
        union = set().union(*present) if present else set()
        if len(union) < 2:
            continue
        if len(keyword_sides) > 1 and not all(present):
            continue
        supported = supported_terms(sorted(union), pages)
        if len(supported) < 2:
            continue
        if has_bridge(all_keywords, label, pages):
            continue
        return f"Contradictory {name} detected: {', '.join(supported)}"
    return None


def concept_overlap_ratio(source: Dict, target: Dict) -> float:
    a = set(top_keywords(source))
    b = set(top_keywords(target))
    if not a or not b:
        return 0.0
    return len(a & b) / min(len(a), len(b))


def overlap_threshold(source: Dict, target: Dict) -> tuple:
    """Pick the overlap threshold from how the two domain sets relate."""
    src_domains = set((source.get("aggregated_signals") or {}).get("domains") or [])
    tgt_domains = set((target.get("aggregated_signals") or {}).get("domains") or [])
    if src_domains & tgt_domains:
        return THRESHOLD_SAME_DOMAIN, "same domain"
    src_types = {domain_category(d) for d in src_domains}
    tgt_types = {domain_category(d) for d in tgt_domains}
    shared = src_types & tgt_types
    if shared and len(shared) == len(src_types) == len(tgt_types):
        return THRESHOLD_SAME_CATEGORY, "same category"
    return THRESHOLD_CROSS_CATEGORY, "cross category"


def validate_merge(
    source: Dict,
    target: Dict,
    source_pages: List[Dict],
    target_pages: List[Dict],
    review: Optional[Callable[[Dict, Dict], Optional[Dict]]] = None,
) -> MergeValidation:
    """Pre-merge checks: contradictions, concept overlap, then oracle review.

    Args:
        source: Intent being merged away
        target: Intent receiving the pages
        source_pages: Pages currently assigned to source
        target_pages: Pages currently assigned to target
        review: Oracle adjudicator returning ``{"approved", "confidence",
            "reason", "conflicts"}`` or None when the oracle is unavailable

    Returns:
        MergeValidation
    """
    pages = list(source_pages) + list(target_pages)
    label = f"{source.get('label') or ''} {target.get('label') or ''}"
    contradiction = find_contradiction([top_keywords(source), top_keywords(target)], pages, label)
    if contradiction:
        return MergeValidation(False, contradiction, conflicts=[contradiction])

    ratio = concept_overlap_ratio(source, target)
    threshold, relation = overlap_threshold(source, target)
    if ratio < threshold:
        return MergeValidation(
            False,
            f"Insufficient concept overlap for {relation} merge: "
            f"{round(ratio * 100)}% (minimum {round(threshold * 100)}%)",
        )
    logger.debug(f"Merge overlap ok ({relation}): {ratio:.2f} >= {threshold:.2f}")

    verdict = review(source, target) if review else None
    if not verdict:
        return MergeValidation(True, "Oracle unavailable, permissive approval",
                               confidence=ORACLE_FALLBACK_CONFIDENCE)

    confidence = min(max(float(verdict.get("confidence") or ORACLE_FALLBACK_CONFIDENCE), 0.0), 1.0)
    conflicts = list(verdict.get("conflicts") or [])
    if not verdict.get("approved"):
        return MergeValidation(False, verdict.get("reason") or "Oracle rejected merge",
                               confidence=confidence, conflicts=conflicts)
    if confidence < MIN_ORACLE_CONFIDENCE:
        return MergeValidation(False, verdict.get("reason") or "Low confidence in merge decision",
                               confidence=confidence, conflicts=conflicts)
    return MergeValidation(True, verdict.get("reason") or "Oracle approved merge",
                           confidence=confidence, conflicts=conflicts)


def validate_merged_intent(intent: Dict, pages: List[Dict]) -> MergeValidation:
    """Post-merge sanity check on the combined intent."""
    keywords = top_keywords(intent, POST_MERGE_TOP_KEYWORDS)
    contradiction = find_contradiction([keywords], pages, intent.get("label") or "")
    if contradiction:
        return MergeValidation(False, f"{contradiction}. This suggests an incorrect merge.")

    domains = (intent.get("aggregated_signals") or {}).get("domains") or []
    categories = sorted({extended_domain_category(d) for d in domains})
    if len(categories) > MAX_DOMAIN_CATEGORIES:
        return MergeValidation(
            False,
            f"High domain diversity ({len(categories)} categories: {', '.join(categories)}). "
            "Intent may be too broad.",
        )
    return MergeValidation(True)
