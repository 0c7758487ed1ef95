import abc
from typing import Any, Callable, Dict, List, Optional


class PersistenceStore(abc.ABC):
    """Document-style persistence for pages, intents and settings.

    Every ``save_*`` call is atomic for one document; callers must not assume
    transactions spanning several documents.
    """

    @abc.abstractmethod
    def get_page(self, page_id: str) -> Optional[Dict]: ...
    @abc.abstractmethod
    def save_page(self, page: Dict) -> str: ...
    @abc.abstractmethod
    def get_pages(self, page_ids: List[str]) -> List[Dict]: ...
    @abc.abstractmethod
    def get_pages_by_intent(self, intent_id: str) -> List[Dict]: ...
    @abc.abstractmethod
    def query_pages(self, predicate: Optional[Callable[[Dict], bool]] = None,
                    limit: int = 500) -> List[Dict]: ...
    @abc.abstractmethod
    def get_intent(self, intent_id: str) -> Optional[Dict]: ...
    @abc.abstractmethod
    def save_intent(self, intent: Dict) -> str: ...
    @abc.abstractmethod
    def list_intents(self, statuses: Optional[List[str]] = None,
                     limit: Optional[int] = None) -> List[Dict]: ...
    @abc.abstractmethod
    def query_intents(self, predicate: Callable[[Dict], bool]) -> List[Dict]: ...
    @abc.abstractmethod
    def get_setting(self, key: str, default: Any = None) -> Any: ...
    @abc.abstractmethod
    def put_setting(self, key: str, value: Any) -> None: ...
    @abc.abstractmethod
    def clear_all(self) -> None: ...
