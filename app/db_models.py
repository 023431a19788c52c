"""SQLAlchemy ORM models backing the persistent cache tier."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base
from .utils import utcnow


class CacheEntryRecord(Base):
    """One persisted cache envelope, scoped to an owner identity."""

    __tablename__ = "cache_entries"
    __table_args__ = (
        UniqueConstraint("cache_key", "owner_key", name="uq_cache_entry_owner"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cache_key: Mapped[str] = mapped_column(String(255))
    owner_key: Mapped[str] = mapped_column(String(128))
    payload: Mapped[Any] = mapped_column(JSON)
    item_count: Mapped[int] = mapped_column(Integer, default=0)
    ttl_seconds: Mapped[int] = mapped_column(Integer, default=86_400)
    stored_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
