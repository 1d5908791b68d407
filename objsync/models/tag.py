"""Tag model."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Index, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from objsync.models.base import Base, UTCDateTime

if TYPE_CHECKING:
    from objsync.models.file import File


class Tag(Base):
    """Key/value attribute attached to a file. Keys may repeat with different values."""

    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    file_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("files.id", ondelete="CASCADE"), nullable=False
    )
    key: Mapped[str] = mapped_column(Text, nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    file: Mapped[File] = relationship(back_populates="tags")

    __table_args__ = (
        UniqueConstraint("file_id", "key", "value", name="uq_tags_file_key_value"),
        Index("idx_tags_key_value", "key", "value"),
    )
