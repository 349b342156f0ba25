"""Local storage tier backed by a SQLAlchemy key/value table."""
import json
import logging
import re
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from levelup import monitoring
from levelup.models.models import StorageEntry
from levelup.models.storage_models import (
    CompressedData,
    HealthStatus,
    StorageOptions,
    StorageResult,
)
from levelup.services.storage_provider import StorageProvider

logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on read, so naive values are treated as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class LocalStorageProvider(StorageProvider):
    """Persistent storage on the local database.

    Keys are stored as given. Language-scoped callers already embed the
    language code in the key, so ``language_code`` is accepted for interface
    compatibility only.
    """

    name = "local"

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        """Initialize the provider with a session factory."""
        self.session_factory = session_factory
        self.clock = clock

    async def get(self, key: str, language_code: Optional[str] = None) -> StorageResult:
        """Get a value from the local table."""
        try:
            with self.session_factory() as db:
                entry = db.get(StorageEntry, key)
                if entry is None:
                    return self._count("get", StorageResult.ok(None, found=False))

                if self._is_expired(entry):
                    db.delete(entry)
                    db.commit()
                    logger.debug("Local entry %s expired", key)
                    return self._count("get", StorageResult.ok(None, found=False, expired=True))

                value = json.loads(entry.value)
                return self._count(
                    "get",
                    StorageResult.ok(
                        value, found=True, size=entry.size, compressed=bool(entry.compressed)
                    ),
                )
        except (SQLAlchemyError, json.JSONDecodeError) as e:
            logger.error("Failed to read %s from local storage: %s", key, e)
            return self._count("get", StorageResult.fail(f"Local read failed: {e}"))

    async def set(
        self,
        key: str,
        value: Any,
        options: Optional[StorageOptions] = None,
        language_code: Optional[str] = None,
    ) -> StorageResult:
        """Store a value in the local table."""
        options = options or StorageOptions()
        try:
            serialized = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            logger.error("Value for %s is not JSON serializable: %s", key, e)
            return self._count("set", StorageResult.fail(f"Value is not serializable: {e}"))

        expires_at = self.clock() + timedelta(seconds=options.ttl) if options.ttl else None
        size = len(serialized.encode("utf-8"))
        try:
            with self.session_factory() as db:
                entry = db.get(StorageEntry, key)
                if entry is None:
                    entry = StorageEntry(key=key)
                    db.add(entry)
                entry.value = serialized
                entry.size = size
                entry.compressed = CompressedData.is_envelope(value)
                entry.expires_at = expires_at
                db.commit()
            return self._count("set", StorageResult.ok(None, size=size))
        except SQLAlchemyError as e:
            logger.error("Failed to write %s to local storage: %s", key, e)
            return self._count("set", StorageResult.fail(f"Local write failed: {e}"))

    async def delete(self, key: str, language_code: Optional[str] = None) -> StorageResult:
        """Delete a value from the local table."""
        try:
            with self.session_factory() as db:
                result = db.execute(delete(StorageEntry).where(StorageEntry.key == key))
                db.commit()
            return self._count("delete", StorageResult.ok(None, deleted=result.rowcount > 0))
        except SQLAlchemyError as e:
            logger.error("Failed to delete %s from local storage: %s", key, e)
            return self._count("delete", StorageResult.fail(f"Local delete failed: {e}"))

    async def get_keys(
        self, pattern: Optional[str] = None, language_code: Optional[str] = None
    ) -> StorageResult[List[str]]:
        """List live keys, optionally filtered by a regular expression."""
        try:
            with self.session_factory() as db:
                rows = db.execute(select(StorageEntry.key, StorageEntry.expires_at)).all()
        except SQLAlchemyError as e:
            logger.error("Failed to list local storage keys: %s", e)
            return StorageResult.fail(f"Local key listing failed: {e}")

        now = self.clock()
        regex = re.compile(pattern) if pattern else None
        keys = [
            key
            for key, expires_at in rows
            if (expires_at is None or _as_utc(expires_at) > now)
            and (regex is None or regex.search(key))
        ]
        return StorageResult.ok(sorted(keys))

    async def get_usage(self) -> StorageResult[Dict[str, Any]]:
        """Get item count and total stored bytes."""
        try:
            with self.session_factory() as db:
                rows = db.execute(select(StorageEntry.key, StorageEntry.size)).all()
        except SQLAlchemyError as e:
            return StorageResult.fail(f"Local usage query failed: {e}")
        return StorageResult.ok(
            {"items": len(rows), "total_size": sum(size or 0 for _, size in rows)}
        )

    async def health_check(self) -> StorageResult[Dict[str, Any]]:
        """Check that the database answers queries."""
        try:
            with self.session_factory() as db:
                db.execute(text("SELECT 1"))
            return self.health(HealthStatus.HEALTHY, tier=self.name)
        except SQLAlchemyError as e:
            logger.error("Local storage health check failed: %s", e)
            return self.health(HealthStatus.UNHEALTHY, tier=self.name, error=str(e))

    def _is_expired(self, entry: StorageEntry) -> bool:
        expires_at = _as_utc(entry.expires_at)
        return expires_at is not None and expires_at <= self.clock()

    def _count(self, operation: str, result: StorageResult) -> StorageResult:
        outcome = "success" if result.success else "failure"
        monitoring.storage_operations.labels(
            operation=operation, tier=self.name, outcome=outcome
        ).inc()
        return result
