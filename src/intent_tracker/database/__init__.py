"""
Database layer for the intent tracker.

Provides:
- SQLAlchemy models for pages, intents, tasks and settings
- Document-style storage abstraction and its SQLAlchemy implementation
"""

from .models import (
    Base,
    BasicDataEntry,
    Page,
    Intent,
    Task,
    AppSetting,
)
from .engine import SQLAlchemyStore
from .store import PersistenceStore

__all__ = [
    "Base",
    "BasicDataEntry",
    "Page",
    "Intent",
    "Task",
    "AppSetting",
    "SQLAlchemyStore",
    "PersistenceStore",
]
