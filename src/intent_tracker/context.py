"""Application context: builds and owns every long-lived component."""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from .config import Settings
from .database.engine import SQLAlchemyStore
from .intents.engine import IntentEngine
from .oracle.client import OracleClient
from .oracle.pipeline import OraclePipeline
from .services.merge_coordinator import MergeCoordinator
from .services.scheduler import TaskScheduler
from .services.slots import OracleSlotManager
from .services.task_handlers import TaskHandlers
from .services.task_kinds import TaskKind

logger = logging.getLogger(__name__)


class AppContext:
    """
    Settings, store, oracle, scheduler, merge coordinator and intent engine
    wired together. Each instance is independent, so tests can build as
    many isolated contexts as they need.

    Args:
        settings: Defaults to ``Settings.from_env()``
        store: Pre-built store (defaults to ``SQLAlchemyStore(settings.db_url)``)
        oracle_client: Pre-built client
        pipeline: Pre-built pipeline (tests pass a mock)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store=None,
        oracle_client: Optional[OracleClient] = None,
        pipeline=None,
    ):
        self.settings = settings or Settings.from_env()
        self.store = store or SQLAlchemyStore(self.settings.db_url)
        self.oracle_client = oracle_client or OracleClient(
            url=self.settings.ollama_url,
            model=self.settings.ollama_model,
            timeout=self.settings.oracle_timeout,
            enabled=self.settings.oracle_enabled,
        )
        self.pipeline = pipeline or OraclePipeline(self.oracle_client)
        self.slots = OracleSlotManager(
            max_global=self.settings.max_concurrent_oracle,
            class_limits={
                "critical": self.settings.max_critical,
                "important": self.settings.max_important,
                "background": self.settings.max_background,
            },
            min_gap_seconds=self.settings.min_oracle_gap_seconds,
        )
        self.scheduler = TaskScheduler(
            self.store, self.settings, slots=self.slots, should_run=self._should_run,
        )
        self.coordinator = MergeCoordinator(self.store, self.scheduler, self.settings)
        self.engine = IntentEngine(
            self.store, self.scheduler, self.pipeline, self.settings, coordinator=self.coordinator,
        )
        self.handlers = TaskHandlers(
            self.store, self.engine, self.pipeline, self.scheduler, self.settings,
            coordinator=self.coordinator,
        )
        self.scheduler.register_handlers(self.handlers.table())

    def _should_run(self, kind: TaskKind, last: Dict[str, Any]) -> Optional[bool]:
        """Ask the oracle whether a recently completed task is worth re-running.

        The judgment takes an oracle slot like any oracle-backed task. When no
        slot frees up in time it stays undecided and the cooldown rule applies.
        """
        completed_at = last.get("completed_at")
        if not completed_at:
            return None
        elapsed = (datetime.utcnow() - datetime.fromisoformat(completed_at)).total_seconds()
        try:
            lease = self.slots.acquire(kind.PRIORITY, timeout=self.settings.should_run_slot_timeout)
        except TimeoutError:
            logger.info(f"No oracle slot for re-run judgment of {kind.TYPE}, using cooldown")
            return None
        try:
            return self.pipeline.should_run(kind.TYPE, kind.target, elapsed, last.get("result"))
        finally:
            self.slots.release(lease)

    def start(self):
        """Start the background scheduler worker."""
        self.scheduler.start_worker()
        logger.info(f"Intent tracker started (db={self.settings.db_url}, model={self.settings.ollama_model})")

    def stop(self):
        self.coordinator.cancel()
        self.scheduler.stop_worker()
        self.oracle_client.close()
        logger.info("Intent tracker stopped")
