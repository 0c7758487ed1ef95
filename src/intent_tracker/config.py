import os
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


def _as_bool(val: Optional[str], default: bool = False) -> bool:
    if val is None:
        return default
    return str(val).lower() in {"1", "true", "yes", "y", "on"}


def _as_list(val: Optional[str]) -> List[str]:
    if not val:
        return []
    return [v.strip() for v in val.split(",") if v.strip()]


def _as_floats(val: Optional[str], default: List[float]) -> List[float]:
    items = _as_list(val)
    if not items:
        return list(default)
    return [float(v) for v in items]


@dataclass
class Settings:
    db_url: str = "sqlite:///intent_tracker.db"
    ollama_url: str = "http://localhost:11434/api/generate"
    ollama_model: str = "granite3.1-dense:8b"
    oracle_enabled: bool = True
    oracle_timeout: int = 120
    api_key: Optional[str] = None
    cors_origins: List[str] = None
    debug: bool = False

    # Scheduler
    poll_interval: float = 0.5
    max_concurrent_oracle: int = 2
    max_critical: int = 1
    max_important: int = 2
    max_background: int = 1
    min_oracle_gap_seconds: float = 2.0
    dedupe_cooldown_seconds: int = 120
    dedupe_rerun_window_seconds: int = 900
    max_retries: int = 3
    retry_backoff_seconds: List[float] = field(default_factory=lambda: [1.0, 5.0, 15.0])
    max_soft_requeues: int = 3
    should_run_slot_timeout: float = 5.0

    # Matching
    recent_intent_window: int = 30
    match_accept_threshold: float = 55.0
    match_auto_confirm_threshold: float = 70.0
    verify_retry_count: int = 3
    verify_retry_delay: float = 0.05

    # Merge coordination
    merge_debounce_seconds: float = 5.0
    merge_min_interval_seconds: float = 10.0
    merge_min_active_intents: int = 3
    auto_merge_confidence: float = 0.9

    @classmethod
    def from_env(cls) -> "Settings":
        cors_val = os.environ.get("INTENT_UI_CORS_ORIGINS", "*")
        cors_origins = ["*"] if cors_val.strip() == "*" else _as_list(cors_val)
        return cls(
            db_url=os.environ.get("INTENT_DB_URL") or "sqlite:///intent_tracker.db",
            ollama_url=os.environ.get("INTENT_OLLAMA_URL")
            or os.environ.get("OLLAMA_URL", "http://localhost:11434/api/generate"),
            ollama_model=os.environ.get("INTENT_OLLAMA_MODEL")
            or os.environ.get("OLLAMA_MODEL", "granite3.1-dense:8b"),
            oracle_enabled=_as_bool(os.environ.get("INTENT_ORACLE_ENABLED"), True),
            oracle_timeout=int(os.environ.get("INTENT_ORACLE_TIMEOUT", "120")),
            api_key=os.environ.get("INTENT_UI_API_KEY"),
            cors_origins=cors_origins,
            debug=_as_bool(os.environ.get("INTENT_UI_DEBUG"), False),
            poll_interval=float(os.environ.get("INTENT_POLL_INTERVAL", "0.5")),
            max_concurrent_oracle=int(os.environ.get("INTENT_MAX_CONCURRENT_ORACLE", "2")),
            max_critical=int(os.environ.get("INTENT_MAX_CRITICAL", "1")),
            max_important=int(os.environ.get("INTENT_MAX_IMPORTANT", "2")),
            max_background=int(os.environ.get("INTENT_MAX_BACKGROUND", "1")),
            min_oracle_gap_seconds=float(os.environ.get("INTENT_MIN_ORACLE_GAP", "2.0")),
            dedupe_cooldown_seconds=int(os.environ.get("INTENT_DEDUPE_COOLDOWN", "120")),
            dedupe_rerun_window_seconds=int(os.environ.get("INTENT_DEDUPE_RERUN_WINDOW", "900")),
            max_retries=int(os.environ.get("INTENT_MAX_RETRIES", "3")),
            retry_backoff_seconds=_as_floats(
                os.environ.get("INTENT_RETRY_BACKOFF"), [1.0, 5.0, 15.0]
            ),
            max_soft_requeues=int(os.environ.get("INTENT_MAX_SOFT_REQUEUES", "3")),
            recent_intent_window=int(os.environ.get("INTENT_RECENT_WINDOW", "30")),
            match_accept_threshold=float(os.environ.get("INTENT_MATCH_ACCEPT", "55")),
            match_auto_confirm_threshold=float(os.environ.get("INTENT_MATCH_AUTO_CONFIRM", "70")),
            verify_retry_count=int(os.environ.get("INTENT_VERIFY_RETRIES", "3")),
            verify_retry_delay=float(os.environ.get("INTENT_VERIFY_DELAY", "0.05")),
            merge_debounce_seconds=float(os.environ.get("INTENT_MERGE_DEBOUNCE", "5")),
            merge_min_interval_seconds=float(os.environ.get("INTENT_MERGE_MIN_INTERVAL", "10")),
            merge_min_active_intents=int(os.environ.get("INTENT_MERGE_MIN_ACTIVE", "3")),
            auto_merge_confidence=float(os.environ.get("INTENT_AUTO_MERGE_CONFIDENCE", "0.9")),
            should_run_slot_timeout=float(os.environ.get("INTENT_SHOULD_RUN_SLOT_TIMEOUT", "5")),
        )
