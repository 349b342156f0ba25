"""Database models for persisted storage entries."""
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from levelup.models.base import Base, TimestampMixin


class StorageEntry(Base, TimestampMixin):
    """A JSON value stored under a namespaced key."""
    __tablename__ = "storage_entries"

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)
    size = Column(Integer, nullable=False, default=0)
    compressed = Column(Boolean, default=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<StorageEntry(key='{self.key}', size={self.size})>"
