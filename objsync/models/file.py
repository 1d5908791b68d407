"""File metadata and change log models."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from sqlalchemy import (
    BigInteger,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from objsync.models.base import Base, UTCDateTime

if TYPE_CHECKING:
    from objsync.models.backend import Backend
    from objsync.models.tag import Tag


class ChangeKind(StrEnum):
    """Kind of entry in the file change log."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    RENAME = "rename"


class File(Base):
    """Metadata for an object (or directory prefix) stored in a backend."""

    __tablename__ = "files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    backend_id: Mapped[str] = mapped_column(String, ForeignKey("backends.id"), nullable=False)
    path: Mapped[str] = mapped_column(Text, nullable=False)

    size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    md5_hash: Mapped[str | None] = mapped_column(Text, nullable=True)
    sha256_hash: Mapped[str | None] = mapped_column(Text, nullable=True)
    etag: Mapped[str | None] = mapped_column(Text, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_dir: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    parent_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("files.id", ondelete="SET NULL"), nullable=True
    )

    modified_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    backend: Mapped[Backend] = relationship(back_populates="files")
    tags: Mapped[list[Tag]] = relationship(back_populates="file", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("backend_id", "path", name="uq_files_backend_path"),
        Index("idx_files_parent", "parent_id"),
        Index("idx_files_deleted_at", "deleted_at"),
        Index("idx_files_modified_at", "modified_at"),
    )

    @property
    def virtual_path(self) -> str:
        return f"{self.backend_id}/{self.path}"


class FileChange(Base):
    """Append-only change log entry used for incremental resynchronization."""

    __tablename__ = "file_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    file_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("files.id", ondelete="SET NULL"), nullable=True
    )
    backend_id: Mapped[str] = mapped_column(String, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    old_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    client_id: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (Index("idx_file_changes_backend", "backend_id", "id"),)
