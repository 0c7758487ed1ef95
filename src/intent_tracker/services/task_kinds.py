"""
Task kinds.

Every unit of scheduled work is one of the frozen dataclasses below. The set
is closed: ``TASK_KINDS`` lists all of them and the scheduler refuses a
handler table that does not cover every kind.
"""

from dataclasses import asdict, dataclass
from typing import ClassVar, Dict, Optional, Tuple, Type

SYSTEM_TARGET = "system"
BATCH_TARGET = "batch"


@dataclass(frozen=True)
class TaskKind:
    TYPE: ClassVar[str] = ""
    PRIORITY: ClassVar[int] = 10
    ORACLE: ClassVar[bool] = True
    DEDUPE: ClassVar[bool] = False

    @property
    def target(self) -> Optional[str]:
        return None

    @property
    def dedupe_key(self) -> str:
        return f"{self.TYPE}::{self.target or SYSTEM_TARGET}"

    def to_params(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_params(cls, params: Dict) -> "TaskKind":
        return cls(**(params or {}))


@dataclass(frozen=True)
class _PageTask(TaskKind):
    page_id: str = ""

    @property
    def target(self) -> Optional[str]:
        return self.page_id


@dataclass(frozen=True)
class _IntentTask(TaskKind):
    intent_id: str = ""

    @property
    def target(self) -> Optional[str]:
        return self.intent_id


@dataclass(frozen=True)
class SemanticExtraction(_PageTask):
    TYPE: ClassVar[str] = "semantic_extraction"
    PRIORITY: ClassVar[int] = 1


@dataclass(frozen=True)
class IntentMatching(_PageTask):
    TYPE: ClassVar[str] = "intent_matching"
    PRIORITY: ClassVar[int] = 2
    ORACLE: ClassVar[bool] = False


@dataclass(frozen=True)
class ClassifyBehavior(_PageTask):
    TYPE: ClassVar[str] = "classify_behavior"
    PRIORITY: ClassVar[int] = 3


@dataclass(frozen=True)
class Summarization(_PageTask):
    TYPE: ClassVar[str] = "summarization"
    PRIORITY: ClassVar[int] = 4


@dataclass(frozen=True)
class GenerateIntentLabel(_IntentTask):
    TYPE: ClassVar[str] = "generate_intent_label"
    PRIORITY: ClassVar[int] = 5
    DEDUPE: ClassVar[bool] = True


@dataclass(frozen=True)
class GenerateIntentGoal(_IntentTask):
    TYPE: ClassVar[str] = "generate_intent_goal"
    PRIORITY: ClassVar[int] = 6
    DEDUPE: ClassVar[bool] = True


@dataclass(frozen=True)
class VerifyIntentMatching(_PageTask):
    TYPE: ClassVar[str] = "ai_verify_intent_matching"
    PRIORITY: ClassVar[int] = 15
    DEDUPE: ClassVar[bool] = True


@dataclass(frozen=True)
class ScanMergeOpportunities(TaskKind):
    TYPE: ClassVar[str] = "scan_intent_merge_opportunities"
    PRIORITY: ClassVar[int] = 17
    DEDUPE: ClassVar[bool] = True

    pairs: Tuple[Tuple[str, str], ...] = ()
    forced: bool = False

    @property
    def target(self) -> Optional[str]:
        return BATCH_TARGET

    @classmethod
    def from_params(cls, params: Dict) -> "ScanMergeOpportunities":
        params = params or {}
        pairs = tuple(tuple(p) for p in params.get("pairs") or ())
        return cls(pairs=pairs, forced=bool(params.get("forced")))


@dataclass(frozen=True)
class GenerateIntentSummary(_IntentTask):
    TYPE: ClassVar[str] = "generate_intent_summary"
    PRIORITY: ClassVar[int] = 20
    DEDUPE: ClassVar[bool] = True


@dataclass(frozen=True)
class GenerateIntentInsights(_IntentTask):
    TYPE: ClassVar[str] = "generate_intent_insights"
    PRIORITY: ClassVar[int] = 21
    DEDUPE: ClassVar[bool] = True


@dataclass(frozen=True)
class GenerateIntentNextSteps(_IntentTask):
    TYPE: ClassVar[str] = "generate_intent_next_steps"
    PRIORITY: ClassVar[int] = 22
    DEDUPE: ClassVar[bool] = True


@dataclass(frozen=True)
class MergeIntents(TaskKind):
    TYPE: ClassVar[str] = "merge_intents"
    PRIORITY: ClassVar[int] = 25
    ORACLE: ClassVar[bool] = False

    source_id: str = ""
    target_id: str = ""
    confidence: Optional[float] = None
    reason: str = ""

    @property
    def target(self) -> Optional[str]:
        return self.source_id


@dataclass(frozen=True)
class GenerateActivitySummary(TaskKind):
    TYPE: ClassVar[str] = "generate_activity_summary"
    PRIORITY: ClassVar[int] = 30
    DEDUPE: ClassVar[bool] = True


TASK_KINDS: Dict[str, Type[TaskKind]] = {
    cls.TYPE: cls
    for cls in (
        SemanticExtraction,
        IntentMatching,
        ClassifyBehavior,
        Summarization,
        GenerateIntentLabel,
        GenerateIntentGoal,
        VerifyIntentMatching,
        ScanMergeOpportunities,
        GenerateIntentSummary,
        GenerateIntentInsights,
        GenerateIntentNextSteps,
        MergeIntents,
        GenerateActivitySummary,
    )
}

DEDUPE_ELIGIBLE = frozenset(t for t, cls in TASK_KINDS.items() if cls.DEDUPE)


def kind_from_record(task_type: str, params: Optional[Dict]) -> TaskKind:
    """Rebuild the typed kind of a persisted task.

    Raises:
        KeyError: For a task type outside the closed set.
    """
    return TASK_KINDS[task_type].from_params(params or {})
