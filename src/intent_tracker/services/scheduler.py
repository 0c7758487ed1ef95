"""
Persistent Task Scheduler.

Provides a database-backed priority queue that:
- Persists tasks across restarts (processing tasks are re-queued on startup)
- Runs exactly one task body at a time, lowest priority number first
- Holds back tasks until every declared dependency has completed
- Gates oracle-backed tasks through global and per-class slot ceilings
- Retries transient failures with backoff and propagates hard failures
  to every transitive dependent
- Emits events for UI observability
"""

import logging
import threading
import time
import uuid
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Type

from sqlalchemy import select, desc, and_, func, delete

from ..config import Settings
from ..database.helpers import as_uuid
from ..database.models import BasicDataEntry, Task
from ..webapp.services.event_system import emit_event
from .errors import ErrorType, PermanentTaskError, SoftRequeue, classify_error
from .eta import DurationStats
from .slots import OracleSlotManager
from .task_kinds import DEDUPE_ELIGIBLE, TASK_KINDS, TaskKind, kind_from_record

logger = logging.getLogger(__name__)

ShouldRunJudge = Callable[[TaskKind, Dict[str, Any]], Optional[bool]]


class TaskScheduler:
    """
    Dependency-aware priority scheduler with a single execution lane.

    Tasks are stored in the database so they survive restarts. A background
    worker thread selects the most urgent ready task, runs its handler, and
    records every attempt on the task row.
    """

    # Status constants
    STATUS_QUEUED = "queued"
    STATUS_PROCESSING = "processing"
    STATUS_COMPLETED = "completed"
    STATUS_FAILED = "failed"

    MAX_ERROR_LENGTH = 2000
    WORKER_STOP_TIMEOUT_SECONDS = 10

    def __init__(
        self,
        store,
        settings: Optional[Settings] = None,
        slots: Optional[OracleSlotManager] = None,
        should_run: Optional[ShouldRunJudge] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            store: SQLAlchemy store instance with Session() context
            settings: Scheduler knobs (ceilings, backoff, cooldowns)
            slots: Shared oracle slot manager
            should_run: Optional oracle judgment for re-running a recently
                completed dedupe-eligible task; returns None when undecided
        """
        self.store = store
        self.settings = settings or Settings()
        self.poll_interval = self.settings.poll_interval
        self.slots = slots or OracleSlotManager(
            max_global=self.settings.max_concurrent_oracle,
            class_limits={
                "critical": self.settings.max_critical,
                "important": self.settings.max_important,
                "background": self.settings.max_background,
            },
            min_gap_seconds=self.settings.min_oracle_gap_seconds,
        )
        self.should_run = should_run
        self.stats = DurationStats(store)
        self._handlers: Dict[Type[TaskKind], Callable[[TaskKind], Optional[Dict]]] = {}
        self._listeners: List[Callable[[Dict[str, Any]], None]] = []
        self._shutdown_event = threading.Event()
        self._wake_event = threading.Event()
        self._run_lock = threading.RLock()
        self._lock = threading.Lock()
        self._worker_thread: Optional[threading.Thread] = None
        self._current_task_id: Optional[str] = None
        self._current_started: Optional[float] = None

        self._recover_stale_tasks()

    def _recover_stale_tasks(self):
        """Re-queue tasks that were processing when the process stopped."""
        with self.store.Session() as session:
            stale = session.execute(
                select(Task).where(Task.status == self.STATUS_PROCESSING)
            ).scalars().all()
            for task in stale:
                task.status = self.STATUS_QUEUED
                task.started_at = None
            session.commit()
            if stale:
                logger.info(f"Re-queued {len(stale)} interrupted tasks after restart")

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register_handler(self, kind: Type[TaskKind], handler: Callable[[TaskKind], Optional[Dict]]):
        """
        Register the handler for a task kind.

        The handler receives the typed kind and returns an output dict (or
        None). It raises ``SoftRequeue`` when a dependency's output is not
        visible yet and any other exception to fail the attempt.
        """
        if kind not in TASK_KINDS.values():
            raise ValueError(f"Unknown task kind: {kind!r}")
        self._handlers[kind] = handler

    def register_handlers(self, handlers: Dict[Type[TaskKind], Callable[[TaskKind], Optional[Dict]]]):
        """Register a complete handler table; every task kind must be covered."""
        missing = sorted(k.TYPE for k in TASK_KINDS.values() if k not in handlers)
        if missing:
            raise ValueError(f"Missing handlers for task kinds: {', '.join(missing)}")
        for kind, handler in handlers.items():
            self.register_handler(kind, handler)
        logger.info(f"Registered {len(handlers)} task handlers")

    def add_listener(self, callback: Callable[[Dict[str, Any]], None]):
        """Call ``callback(task_dict)`` whenever a task completes or fails."""
        self._listeners.append(callback)

    # =========================================================================
    # ENQUEUE
    # =========================================================================

    def enqueue(
        self,
        kind: TaskKind,
        priority: Optional[int] = None,
        dependencies: Optional[List[str]] = None,
    ) -> Optional[str]:
        """
        Add a task to the queue.

        Args:
            kind: Typed task kind carrying its payload
            priority: Lower runs first; defaults to the kind's priority
            dependencies: Task ids that must complete first

        Returns:
            Task ID as string, or None if an equivalent task made this one
            redundant

        Raises:
            ValueError: If a dependency is not a well-formed task id
        """
        dependencies = list(dependencies or [])
        malformed = [d for d in dependencies if as_uuid(d) is None]
        if malformed:
            raise ValueError(f"Malformed dependency id: {malformed[0]!r}")
        dependencies = [str(as_uuid(d)) for d in dependencies]

        priority = kind.PRIORITY if priority is None else priority
        skip_reason = self._dedupe_reason(kind)
        if skip_reason:
            logger.debug(f"Skipping {kind.dedupe_key}: {skip_reason}")
            return None

        task_id = uuid.uuid4()
        now = datetime.utcnow()
        with self.store.Session() as session:
            session.add(Task(
                id=task_id,
                entry_type="task",
                task_type=kind.TYPE,
                target_id=kind.target,
                status=self.STATUS_QUEUED,
                priority=priority,
                dependencies_json=dependencies,
                params_json=kind.to_params(),
                attempts_json=[],
                retry_count=0,
                requeue_count=0,
                queued_at=now,
                created_at=now,
                updated_at=now,
            ))
            session.commit()

        task_id_str = str(task_id)
        logger.info(f"Task queued: {task_id_str} type={kind.TYPE} target={kind.target} priority={priority}")
        self._emit("task_queued", f"New {kind.TYPE} task queued", {
            "task_id": task_id_str,
            "task_type": kind.TYPE,
            "target_id": kind.target,
            "priority": priority,
        })
        self._wake_event.set()
        return task_id_str

    def _dedupe_reason(self, kind: TaskKind) -> Optional[str]:
        """Return why ``kind`` should not be queued, or None to queue it."""
        if kind.TYPE not in DEDUPE_ELIGIBLE:
            return None

        with self.store.Session() as session:
            conditions = [Task.task_type == kind.TYPE]
            if kind.target is None:
                conditions.append(Task.target_id.is_(None))
            else:
                conditions.append(Task.target_id == kind.target)

            active = session.execute(
                select(func.count()).select_from(Task).where(
                    and_(*conditions,
                         Task.status.in_([self.STATUS_QUEUED, self.STATUS_PROCESSING])))
            ).scalar()
            if active:
                return "equivalent task already queued or processing"

            last = session.execute(
                select(Task)
                .where(and_(*conditions, Task.status == self.STATUS_COMPLETED))
                .order_by(desc(Task.completed_at))
                .limit(1)
            ).scalar_one_or_none()
            if last is None or last.completed_at is None:
                return None
            last_dict = last.to_dict()
            completed_at = last.completed_at

        age = (datetime.utcnow() - completed_at).total_seconds()
        if age >= self.settings.dedupe_rerun_window_seconds:
            return None

        verdict = None
        if self.should_run is not None:
            verdict = self.should_run(kind, last_dict)
        if verdict is True:
            return None
        if verdict is False:
            return f"oracle judged re-run unnecessary ({age:.0f}s since last run)"
        if age < self.settings.dedupe_cooldown_seconds:
            return f"completed {age:.0f}s ago (cooldown {self.settings.dedupe_cooldown_seconds}s)"
        return None

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        """
        Get task details by ID.

        Args:
            task_id: Task ID

        Returns:
            Task dict or None
        """
        try:
            task_uuid = uuid.UUID(task_id)
        except ValueError:
            return None

        with self.store.Session() as session:
            task = session.get(Task, task_uuid)
            if task:
                return task.to_dict()
        return None

    def list_tasks(
        self,
        status: Optional[str] = None,
        task_type: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """
        List tasks with optional filtering, newest first.

        Args:
            status: Filter by status
            task_type: Filter by task type
            limit: Maximum number of tasks to return
        """
        with self.store.Session() as session:
            stmt = select(Task)
            conditions = []
            if status:
                conditions.append(Task.status == status)
            if task_type:
                conditions.append(Task.task_type == task_type)
            if conditions:
                stmt = stmt.where(and_(*conditions))
            stmt = stmt.order_by(desc(Task.created_at)).limit(limit)
            tasks = session.execute(stmt).scalars().all()
            return [t.to_dict() for t in tasks]

    def get_queue(self) -> List[Dict[str, Any]]:
        """Pending work in execution order, each with a cumulative ETA."""
        with self.store.Session() as session:
            rows = session.execute(
                select(Task)
                .where(Task.status.in_([self.STATUS_PROCESSING, self.STATUS_QUEUED]))
                .order_by(Task.priority, Task.queued_at)
            ).scalars().all()
            tasks = [t.to_dict() for t in rows]

        tasks.sort(key=lambda t: 0 if t["status"] == self.STATUS_PROCESSING else 1)
        cumulative = 0.0
        for task in tasks:
            avg = self.stats.average(task["task_type"])
            if task["status"] == self.STATUS_PROCESSING:
                avg = max(0.0, avg - self._elapsed_ms(task))
            cumulative += avg
            task["eta_ms"] = round(cumulative)
        return tasks

    def get_total_eta(self) -> Dict[str, Any]:
        queue = self.get_queue()
        return {
            "total_ms": queue[-1]["eta_ms"] if queue else 0,
            "task_count": len(queue),
            "confidence": self.stats.confidence(),
        }

    def get_queue_status(self) -> Dict[str, Any]:
        """Get queue statistics."""
        with self.store.Session() as session:
            counts = {}
            for status in [self.STATUS_QUEUED, self.STATUS_PROCESSING,
                           self.STATUS_COMPLETED, self.STATUS_FAILED]:
                counts[status] = session.execute(
                    select(func.count()).select_from(Task).where(Task.status == status)
                ).scalar()

        with self._lock:
            current_id = self._current_task_id

        return {
            "total": sum(counts.values()),
            **counts,
            "current_task_id": current_id,
            "worker_running": (self._worker_thread is not None
                               and self._worker_thread.is_alive()),
            "slots": self.slots.snapshot(),
            "eta": self.get_total_eta(),
        }

    def _elapsed_ms(self, task: Dict[str, Any]) -> float:
        if not task.get("started_at"):
            return 0.0
        started = datetime.fromisoformat(task["started_at"])
        return max(0.0, (datetime.utcnow() - started).total_seconds() * 1000)

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def retry_task(self, task_id: str) -> Dict[str, Any]:
        """Put a failed task back in the queue with a fresh retry budget."""
        try:
            task_uuid = uuid.UUID(task_id)
        except ValueError:
            return {"error": "Invalid task ID"}

        with self.store.Session() as session:
            task = session.get(Task, task_uuid)
            if not task:
                return {"error": "Task not found"}
            if task.status != self.STATUS_FAILED:
                return {"error": f"Task is {task.status}, only failed tasks can be retried"}
            task.status = self.STATUS_QUEUED
            task.retry_count = 0
            task.requeue_count = 0
            task.error = None
            task.error_type = None
            task.next_attempt_at = None
            task.queued_at = datetime.utcnow()
            session.commit()

        self._wake_event.set()
        logger.info(f"Task {task_id} manually re-queued")
        return {"success": True, "task_id": task_id, "status": self.STATUS_QUEUED}

    def clear_completed(self) -> Dict[str, Any]:
        """Delete completed tasks."""
        with self.store.Session() as session:
            ids = session.execute(
                select(Task.id).where(Task.status == self.STATUS_COMPLETED)
            ).scalars().all()
            if ids:
                session.execute(delete(Task).where(Task.id.in_(ids)))
                session.execute(delete(BasicDataEntry).where(BasicDataEntry.id.in_(ids)))
            session.commit()
        logger.info(f"Cleared {len(ids)} completed tasks")
        return {"success": True, "deleted": len(ids)}

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def run_next(self) -> Optional[Dict[str, Any]]:
        """Select and run one ready task; returns its final row or None."""
        with self._run_lock:
            task_dict = self._fetch_next_task()
            if task_dict is None:
                return None
            self._execute_task(task_dict)
            return self.get_task(task_dict["id"])

    def drain(self, max_tasks: int = 1000) -> int:
        """Run ready tasks until none is left; returns how many ran."""
        ran = 0
        while ran < max_tasks and self.run_next() is not None:
            ran += 1
        return ran

    @contextmanager
    def exclusive(self, oracle_priority: Optional[int] = None):
        """Run caller work in the single execution lane, between task bodies.

        Corrective operations invoked from outside the worker, such as web
        requests, wait here until no task body is running. Pass
        ``oracle_priority`` when the work calls the oracle to also hold a slot
        of that priority class.
        """
        with self._run_lock:
            lease = self.slots.acquire(oracle_priority) if oracle_priority is not None else None
            try:
                yield
            finally:
                if lease is not None:
                    self.slots.release(lease)

    def _fetch_next_task(self) -> Optional[Dict[str, Any]]:
        """Claim the most urgent queued task whose dependencies all completed.

        Queued tasks that can never become ready are failed on the way: a
        malformed dependency id is a PERMANENT failure, and a dependency that
        already failed is inherited as a DEPENDENCY failure and spread further.
        """
        now = datetime.utcnow()
        blocked: List[Dict[str, Any]] = []
        claimed = None
        with self.store.Session() as session:
            queued = session.execute(
                select(Task)
                .where(Task.status == self.STATUS_QUEUED)
                .order_by(Task.priority, Task.queued_at)
            ).scalars().all()
            if not queued:
                return None

            dep_uuids = {as_uuid(d) for t in queued for d in (t.dependencies_json or [])}
            dep_uuids.discard(None)
            deps_by_id = {}
            if dep_uuids:
                for dep_id, status, dep_type in session.execute(
                    select(Task.id, Task.status, Task.task_type).where(Task.id.in_(dep_uuids))
                ).all():
                    deps_by_id[dep_id] = (status, dep_type)

            for task in queued:
                deps = task.dependencies_json or []
                malformed = [d for d in deps if as_uuid(d) is None]
                if malformed:
                    blocked.append(self._fail_blocked(
                        task, f"Malformed dependency id: {malformed[0]}", ErrorType.PERMANENT, now))
                    continue
                # deleted dependencies were cleared after completing
                states = [deps_by_id.get(as_uuid(d), (self.STATUS_COMPLETED, None)) for d in deps]
                failed_types = [t for s, t in states if s == self.STATUS_FAILED]
                if failed_types:
                    blocked.append(self._fail_blocked(
                        task, f"Dependency failed: {failed_types[0]}", ErrorType.DEPENDENCY, now))
                    continue
                if task.next_attempt_at and task.next_attempt_at > now:
                    continue
                if any(s != self.STATUS_COMPLETED for s, _ in states):
                    continue
                task.status = self.STATUS_PROCESSING
                task.started_at = now
                claimed = task.to_dict()
                break
            session.commit()

        for final in blocked:
            logger.error(f"Task {final['id']} failed ({final['error_type']}): {final['error']}")
            self._emit("task_failed", f"Task {final['id']} failed: {final['error']}", {
                "task_id": final["id"], "error": final["error"], "error_type": final["error_type"],
            }, level="error")
            self._fail_dependents(final["id"], final["task_type"], final["error"])
            self._notify(final)
        return claimed

    def _fail_blocked(self, task: Task, reason: str, error_type: ErrorType,
                      now: datetime) -> Dict[str, Any]:
        """Fail a queued task that can never run; the caller commits."""
        attempts = list(task.attempts_json or [])
        attempts.append(self._attempt(len(attempts) + 1, reason, error_type.value, 0.0))
        task.attempts_json = attempts
        task.status = self.STATUS_FAILED
        task.error = reason[:self.MAX_ERROR_LENGTH]
        task.error_type = error_type.value
        task.completed_at = now
        return task.to_dict()

    def _execute_task(self, task_dict: Dict[str, Any]):
        """Execute a single claimed task using the registered handler."""
        task_id = task_dict["id"]
        task_type = task_dict["task_type"]
        started = time.monotonic()

        with self._lock:
            self._current_task_id = task_id
            self._current_started = started

        self._emit("task_started", f"Processing {task_type} task", {
            "task_id": task_id, "task_type": task_type, "target_id": task_dict.get("target_id"),
        })
        logger.info(f"Executing task {task_id} type={task_type}")

        lease = None
        try:
            kind = self._resolve_kind(task_dict)
            handler = self._handlers.get(type(kind))
            if handler is None:
                raise PermanentTaskError(f"No handler for task type: {task_type}")
            if kind.ORACLE:
                lease = self.slots.acquire(task_dict["priority"])
            result = handler(kind)
            self._complete_task(task_id, result or {}, self._duration_ms(started))
        except SoftRequeue as e:
            self._soft_requeue(task_dict, str(e), self._duration_ms(started))
        except Exception as e:
            logger.error(f"Task {task_id} failed: {e}", exc_info=True)
            self._record_failure(task_dict, e, self._duration_ms(started))
        finally:
            if lease is not None:
                self.slots.release(lease)
            with self._lock:
                self._current_task_id = None
                self._current_started = None

    def _resolve_kind(self, task_dict: Dict[str, Any]) -> TaskKind:
        try:
            return kind_from_record(task_dict["task_type"], task_dict.get("params"))
        except (KeyError, TypeError) as e:
            raise PermanentTaskError(f"Malformed task {task_dict['task_type']}: {e}") from e

    @staticmethod
    def _duration_ms(started: float) -> float:
        return (time.monotonic() - started) * 1000

    @staticmethod
    def _attempt(number: int, error: str, error_type: str, duration_ms: float) -> Dict[str, Any]:
        return {
            "attempt": number,
            "timestamp": datetime.utcnow().isoformat(),
            "error": error,
            "error_type": error_type,
            "duration_ms": round(duration_ms, 1),
        }

    def _complete_task(self, task_id: str, result: Dict[str, Any], duration_ms: float):
        with self.store.Session() as session:
            task = session.get(Task, uuid.UUID(task_id))
            task.status = self.STATUS_COMPLETED
            task.result_json = result
            task.error = None
            task.error_type = None
            task.duration_ms = duration_ms
            task.completed_at = datetime.utcnow()
            session.commit()
            task_dict = task.to_dict()

        self.stats.record(task_dict["task_type"], duration_ms)
        msg = f"Task {task_id} completed in {duration_ms:.0f}ms"
        logger.info(msg)
        self._emit("task_completed", msg, {"task_id": task_id, "task_type": task_dict["task_type"]})
        self._notify(task_dict)
        self._wake_event.set()

    def _soft_requeue(self, task_dict: Dict[str, Any], reason: str, duration_ms: float):
        """Move the task behind its peers; exhausting the budget is a hard failure."""
        task_id = task_dict["id"]
        if (task_dict.get("requeue_count") or 0) >= self.settings.max_soft_requeues:
            self._record_failure(
                task_dict,
                PermanentTaskError(
                    f"{reason} (gave up after {self.settings.max_soft_requeues} requeues)"),
                duration_ms,
                error_type=ErrorType.DEPENDENCY,
            )
            return

        with self.store.Session() as session:
            task = session.get(Task, uuid.UUID(task_id))
            attempts = list(task.attempts_json or [])
            attempts.append(self._attempt(len(attempts) + 1, reason, "REQUEUE", duration_ms))
            task.attempts_json = attempts
            task.requeue_count = (task.requeue_count or 0) + 1
            task.status = self.STATUS_QUEUED
            task.started_at = None
            task.queued_at = datetime.utcnow()
            session.commit()
            count = task.requeue_count

        logger.info(f"Task {task_id} requeued ({count}/{self.settings.max_soft_requeues}): {reason}")
        self._emit("task_requeued", f"{task_dict['task_type']} requeued: {reason}", {
            "task_id": task_id, "requeue_count": count,
        })

    def _record_failure(
        self,
        task_dict: Dict[str, Any],
        error: BaseException,
        duration_ms: float,
        error_type: Optional[ErrorType] = None,
    ):
        """Persist the attempt, then retry with backoff or fail for good."""
        task_id = task_dict["id"]
        error_type = error_type or classify_error(error)
        message = str(error)[:self.MAX_ERROR_LENGTH]
        backoff = self.settings.retry_backoff_seconds

        with self.store.Session() as session:
            task = session.get(Task, uuid.UUID(task_id))
            attempts = list(task.attempts_json or [])
            attempts.append(self._attempt(len(attempts) + 1, message, error_type.value, duration_ms))
            task.attempts_json = attempts
            task.error = message
            task.error_type = error_type.value
            task.duration_ms = duration_ms

            retry = (error_type == ErrorType.TRANSIENT
                     and (task.retry_count or 0) < self.settings.max_retries)
            if retry:
                delay = backoff[min(task.retry_count or 0, len(backoff) - 1)] if backoff else 0.0
                task.retry_count = (task.retry_count or 0) + 1
                task.status = self.STATUS_QUEUED
                task.started_at = None
                task.next_attempt_at = datetime.utcnow() + timedelta(seconds=delay)
            else:
                task.status = self.STATUS_FAILED
                task.completed_at = datetime.utcnow()
            session.commit()
            final = task.to_dict()

        if retry:
            logger.warning(
                f"Task {task_id} will retry ({final['retry_count']}/{self.settings.max_retries}) "
                f"in {delay:.0f}s: {message}"
            )
            self._emit("task_retry", f"{task_dict['task_type']} retry scheduled", {
                "task_id": task_id, "retry_count": final["retry_count"], "delay_seconds": delay,
            })
            return

        logger.error(f"Task {task_id} failed ({error_type.value}): {message}")
        self._emit("task_failed", f"Task {task_id} failed: {message}", {
            "task_id": task_id, "error": message, "error_type": error_type.value,
        }, level="error")
        self._fail_dependents(task_id, task_dict["task_type"], message)
        self._notify(final)

    def _fail_dependents(self, root_id: str, task_type: str, error: str):
        """Breadth-first failure of every queued task downstream of ``root_id``."""
        reason = f"Dependency failed: {task_type} - {error}"
        with self.store.Session() as session:
            pending = session.execute(
                select(Task).where(Task.status == self.STATUS_QUEUED)
            ).scalars().all()
            dependents: Dict[str, List[Task]] = {}
            for task in pending:
                for dep in task.dependencies_json or []:
                    dependents.setdefault(dep, []).append(task)

            failed = []
            visited = {root_id}
            frontier = deque([root_id])
            while frontier:
                current = frontier.popleft()
                for task in dependents.get(current, []):
                    tid = str(task.id)
                    if tid in visited:
                        continue
                    visited.add(tid)
                    task.status = self.STATUS_FAILED
                    task.error = reason[:self.MAX_ERROR_LENGTH]
                    task.error_type = ErrorType.DEPENDENCY.value
                    task.completed_at = datetime.utcnow()
                    failed.append(tid)
                    frontier.append(tid)
            session.commit()

        for tid in failed:
            logger.warning(f"Task {tid} failed: {reason}")
            self._emit("task_failed", f"Task {tid} failed: {reason}", {
                "task_id": tid, "error_type": ErrorType.DEPENDENCY.value,
            }, level="warning")

    def _notify(self, task_dict: Dict[str, Any]):
        for callback in list(self._listeners):
            try:
                callback(task_dict)
            except Exception as e:
                logger.error(f"Task listener failed: {e}", exc_info=True)

    # =========================================================================
    # BACKGROUND WORKER
    # =========================================================================

    def start_worker(self):
        """Start the background worker thread."""
        if self._worker_thread and self._worker_thread.is_alive():
            logger.warning("Worker thread already running")
            return
        missing = sorted(k.TYPE for k in TASK_KINDS.values() if k not in self._handlers)
        if missing:
            raise RuntimeError(f"Cannot start worker, missing handlers: {', '.join(missing)}")

        self._shutdown_event.clear()
        self._worker_thread = threading.Thread(
            target=self._worker_loop,
            name="task-scheduler-worker",
            daemon=True,
        )
        self._worker_thread.start()
        logger.info("Task scheduler worker started")

    def stop_worker(self):
        """Stop the background worker thread gracefully."""
        self._shutdown_event.set()
        self._wake_event.set()
        if self._worker_thread:
            self._worker_thread.join(timeout=self.WORKER_STOP_TIMEOUT_SECONDS)
            logger.info("Task scheduler worker stopped")

    def _worker_loop(self):
        """Main worker loop - runs one task at a time, sleeps until woken when idle."""
        logger.info("Task scheduler worker loop started")
        while not self._shutdown_event.is_set():
            try:
                if self.run_next() is None:
                    self._wake_event.wait(self.poll_interval)
                    self._wake_event.clear()
            except Exception as e:
                logger.error(f"Worker loop error: {e}", exc_info=True)
                self._shutdown_event.wait(self.poll_interval)
        logger.info("Task scheduler worker loop exiting")

    def _emit(self, step: str, message: str, payload: Optional[Dict] = None, level: str = "info"):
        """Emit event for UI observability."""
        emit_event(step, message, level=level, payload=payload)
