"""
Scheduling services: task kinds, the persistent scheduler, oracle slots and
merge coordination.
"""

from .errors import (
    DependencyTaskError,
    ErrorType,
    PermanentTaskError,
    SoftRequeue,
    TaskError,
    TransientTaskError,
)
from .scheduler import TaskScheduler
from .slots import OracleSlotManager
from .merge_coordinator import MergeCoordinator

__all__ = [
    "DependencyTaskError",
    "ErrorType",
    "PermanentTaskError",
    "SoftRequeue",
    "TaskError",
    "TransientTaskError",
    "TaskScheduler",
    "OracleSlotManager",
    "MergeCoordinator",
]
