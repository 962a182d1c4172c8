"""Durable mirror of discovery progress counters."""

from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from site_discovery.models.base import Base

PROGRESS_SCHEMA_VERSION = 1


class ProgressRecord(Base):
    """Counters for the current or most recent run of one repository."""

    __tablename__ = "discovery_progress"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    version: Mapped[int] = mapped_column(Integer, default=PROGRESS_SCHEMA_VERSION)
    total_folders: Mapped[int] = mapped_column(Integer, default=0)
    completed_folders: Mapped[int] = mapped_column(Integer, default=0)
    total_documents: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String, default="idle")
    discovery_type: Mapped[str] = mapped_column(String, default="full")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return (
            f"ProgressRecord(key='{self.key}', completed={self.completed_folders}/"
            f"{self.total_folders}, status='{self.status}')"
        )
