import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import create_engine, select, delete
from sqlalchemy.orm import sessionmaker

from .store import PersistenceStore
from .models import Base, BasicDataEntry, Page, Intent, Task, AppSetting
from .helpers import uuid4 as _uuid4, as_uuid as _as_uuid, now_ts as _now_ts


# document key -> model column
_PAGE_FIELDS = {
    "url": "url",
    "title": "title",
    "timestamp": "timestamp",
    "content": "content",
    "content_summary": "content_summary",
    "content_size": "content_size",
    "metadata": "metadata_json",
    "interactions": "interactions_json",
    "semantic_features": "semantic_features_json",
    "embedding": "embedding_json",
    "behavioral_class": "behavioral_class_json",
    "intent_assignments": "intent_assignments_json",
    "processed_at": "processed_at",
}

_INTENT_FIELDS = {
    "label": "label",
    "label_confidence": "label_confidence",
    "previous_label": "previous_label",
    "label_updated_at": "label_updated_at",
    "confidence": "confidence",
    "status": "status",
    "first_seen": "first_seen",
    "last_updated": "last_updated",
    "reactivated_at": "reactivated_at",
    "completed_at": "completed_at",
    "page_count": "page_count",
    "page_ids": "page_ids_json",
    "aggregated_signals": "aggregated_signals_json",
    "timeline": "timeline_json",
    "metadata": "metadata_json",
    "user_feedback": "user_feedback_json",
    "related_intents": "related_intents_json",
    "ai_summary": "ai_summary",
    "goal": "goal",
    "goal_confidence": "goal_confidence",
    "goal_updated_at": "goal_updated_at",
    "insights": "insights_json",
    "next_steps": "next_steps_json",
}


def _primary_intent_id(page: Dict) -> Optional[str]:
    primary = (page.get("intent_assignments") or {}).get("primary")
    if not primary:
        return None
    return primary.get("intent_id")


class SQLAlchemyStore(PersistenceStore):
    """SQLAlchemy-backed document store.

    Documents are plain dicts; each ``save_*`` commits exactly one document in
    its own session, so reads issued afterwards observe the committed value.
    """

    def __init__(self, url: str = "sqlite:///intent_tracker.db"):
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, future=True, connect_args=connect_args)
        self.logger = logging.getLogger(__name__)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(self.engine, expire_on_commit=False, future=True)

    def get_session(self):
        """
        Create and return a new database session.

        Note: Caller is responsible for closing the session.
        Consider using 'with self.Session() as session:' context manager instead.
        """
        return self.Session()

    # -------- Pages --------
    def get_page(self, page_id: str) -> Optional[Dict]:
        page_uuid = _as_uuid(page_id)
        if page_uuid is None:
            return None
        with self.Session() as s:
            page = s.get(Page, page_uuid)
            return page.to_dict() if page else None

    def save_page(self, page: Dict) -> str:
        page_id = page.get("id") or _uuid4()
        page["id"] = page_id
        with self.Session() as s:
            row = s.get(Page, _as_uuid(page_id))
            if row is None:
                row = Page(id=_as_uuid(page_id), entry_type="page")
                s.add(row)
            for key, column in _PAGE_FIELDS.items():
                if key in page:
                    setattr(row, column, page[key])
            row.domain = (page.get("metadata") or {}).get("domain")
            row.primary_intent_id = _primary_intent_id(page)
            s.commit()
        return page_id

    def get_pages(self, page_ids: List[str]) -> List[Dict]:
        uuids = [u for u in (_as_uuid(pid) for pid in page_ids) if u is not None]
        if not uuids:
            return []
        with self.Session() as s:
            rows = s.execute(select(Page).where(Page.id.in_(uuids))).scalars().all()
            return [r.to_dict() for r in rows]

    def get_pages_by_intent(self, intent_id: str) -> List[Dict]:
        with self.Session() as s:
            rows = s.execute(
                select(Page)
                .where(Page.primary_intent_id == str(intent_id))
                .order_by(Page.timestamp)
            ).scalars().all()
            return [r.to_dict() for r in rows]

    def query_pages(self, predicate: Optional[Callable[[Dict], bool]] = None,
                    limit: int = 500) -> List[Dict]:
        with self.Session() as s:
            rows = s.execute(
                select(Page).order_by(Page.timestamp.desc()).limit(limit)
            ).scalars().all()
            docs = [r.to_dict() for r in rows]
        if predicate is None:
            return docs
        return [d for d in docs if predicate(d)]

    # -------- Intents --------
    def get_intent(self, intent_id: str) -> Optional[Dict]:
        intent_uuid = _as_uuid(intent_id)
        if intent_uuid is None:
            return None
        with self.Session() as s:
            intent = s.get(Intent, intent_uuid)
            return intent.to_dict() if intent else None

    def save_intent(self, intent: Dict) -> str:
        intent_id = intent.get("id") or _uuid4()
        intent["id"] = intent_id
        with self.Session() as s:
            row = s.get(Intent, _as_uuid(intent_id))
            if row is None:
                row = Intent(id=_as_uuid(intent_id), entry_type="intent")
                s.add(row)
            for key, column in _INTENT_FIELDS.items():
                if key in intent:
                    setattr(row, column, intent[key])
            if row.first_seen is None:
                row.first_seen = _now_ts()
            if row.last_updated is None:
                row.last_updated = row.first_seen
            s.commit()
        return intent_id

    def list_intents(self, statuses: Optional[List[str]] = None,
                     limit: Optional[int] = None) -> List[Dict]:
        """List intents, most recently updated first."""
        with self.Session() as s:
            stmt = select(Intent)
            if statuses:
                stmt = stmt.where(Intent.status.in_(statuses))
            stmt = stmt.order_by(Intent.last_updated.desc())
            if limit:
                stmt = stmt.limit(limit)
            return [r.to_dict() for r in s.execute(stmt).scalars().all()]

    def query_intents(self, predicate: Callable[[Dict], bool]) -> List[Dict]:
        return [i for i in self.list_intents() if predicate(i)]

    # -------- Settings --------
    def get_setting(self, key: str, default: Any = None) -> Any:
        with self.Session() as s:
            row = s.get(AppSetting, key)
            return row.value_json if row is not None else default

    def put_setting(self, key: str, value: Any) -> None:
        with self.Session() as s:
            row = s.get(AppSetting, key)
            if row is None:
                s.add(AppSetting(key=key, value_json=value))
            else:
                row.value_json = value
            s.commit()

    def clear_all(self) -> None:
        """Bulk clear every document (pages, intents, tasks, settings)."""
        with self.Session() as s:
            for model in (Page, Intent, Task):
                s.execute(delete(model))
            s.execute(delete(BasicDataEntry))
            s.execute(delete(AppSetting))
            s.commit()
        self.logger.info("Store cleared")
