"""SQLAlchemy ORM models for objsync."""

from objsync.models.backend import Backend
from objsync.models.base import Base
from objsync.models.file import ChangeKind, File, FileChange
from objsync.models.filter import Filter
from objsync.models.migration import SchemaMigration
from objsync.models.sync import SyncConfig, SyncDirection, SyncManifest, SyncState, SyncStatus
from objsync.models.tag import Tag

__all__ = [
    "Backend",
    "Base",
    "ChangeKind",
    "File",
    "FileChange",
    "Filter",
    "SchemaMigration",
    "SyncConfig",
    "SyncDirection",
    "SyncManifest",
    "SyncState",
    "SyncStatus",
    "Tag",
]
