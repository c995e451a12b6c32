"""
Mirror synchronization: pull, push and status for one tenant at a time.
"""

from .engine import SyncEngine, build_client
from .models import ChangeStatus, EntityType, FileChange, SyncReport
from .plan import build_plan

__all__ = [
    "ChangeStatus",
    "EntityType",
    "FileChange",
    "SyncEngine",
    "SyncReport",
    "build_client",
    "build_plan",
]
