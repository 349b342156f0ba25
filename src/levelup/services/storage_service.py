"""Service combining cache, tiered storage, compression and auto-save."""
import asyncio
import copy
import logging
import re
import time
from dataclasses import asdict
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from levelup import monitoring
from levelup.config import AutoSaveSettings, StorageSettings
from levelup.models.storage_models import (
    ChangeType,
    FlushReport,
    HealthStatus,
    Priority,
    StorageOptions,
    StorageResult,
)
from levelup.services.auto_save_service import AutoSaveService
from levelup.services.cache_service import CacheService
from levelup.services.compression_service import CompressionService, byte_size, serialize
from levelup.services.tiered_storage import TieredStorage

logger = logging.getLogger(__name__)

GAME_STATE_KEY = "game_state"
SESSION_STATE_KEY = "session_state"
USER_PREFERENCES_KEY = "user_preferences"
ACHIEVEMENTS_KEY = "achievements"
ANALYTICS_SNAPSHOT_KEY = "storage_analytics_snapshot"

# Tag carried by derived snapshots that every write invalidates
WRITE_TAG = "storage_write"

HOUR = 3600
DAY = 24 * HOUR

KEY_PREFIXES = [
    "word_progress_",
    "analytics_",
    "migration_backup_",
    GAME_STATE_KEY,
    SESSION_STATE_KEY,
    USER_PREFERENCES_KEY,
    ACHIEVEMENTS_KEY,
]
BACKUP_PATTERN = (
    r"^(word_progress_|analytics_|game_state|session_state|user_preferences|achievements)"
)

_MISSING = object()


def word_progress_key(language_code: str) -> str:
    return f"word_progress_{language_code}"


def summary_key(language_code: str) -> str:
    return f"summary_{language_code}"


def analytics_key(language_code: str) -> str:
    return f"analytics_{language_code}"


def invalid_progress_records(progress: Any) -> Optional[List[str]]:
    """Ids of records that are not objects, or None when progress itself is not a map."""
    if not isinstance(progress, dict):
        return None
    return [word_id for word_id, record in progress.items() if not isinstance(record, dict)]


def record_number(record: Any, field: str) -> float:
    """Numeric field of a progress record, 0 when missing or malformed."""
    value = record.get(field, 0) if isinstance(record, dict) else 0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return value


def summarize_progress(progress: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Summarize a language's word progress map."""
    return {
        "totalWords": len(progress),
        "practicedWords": sum(
            1 for record in progress.values() if record_number(record, "timesCorrect") > 0
        ),
        "totalXP": sum(record_number(record, "xp") for record in progress.values()),
        "lastUpdated": datetime.now(UTC).isoformat(),
    }


class StorageService:
    """Public storage API for word progress, game state and related records.

    Language-scoped records live under keys suffixed with the language code,
    so progress saved for one language is never visible from another. No
    method raises; failures come back as unsuccessful ``StorageResult``s.
    """

    def __init__(
        self,
        tiered: TieredStorage,
        cache: CacheService,
        compression: Optional[CompressionService] = None,
        storage_settings: Optional[StorageSettings] = None,
        auto_save_settings: Optional[AutoSaveSettings] = None,
    ):
        """Initialize the service with its collaborators."""
        self.tiered = tiered
        self.cache = cache
        self.compression = compression or tiered.compression
        self.settings = storage_settings or StorageSettings()
        self.auto_save = AutoSaveService(self, auto_save_settings)
        self.metrics = {"operations": 0, "errors": 0, "total_time": 0.0}

    # Word progress

    async def save_word_progress(
        self, language_code: str, progress: Dict[str, Dict[str, Any]]
    ) -> StorageResult:
        """Save the word progress map of one language."""
        if not language_code:
            return StorageResult.fail("Language code is required")
        invalid = invalid_progress_records(progress)
        if invalid is None:
            return StorageResult.fail("Word progress must be an object")
        if invalid:
            logger.error("Rejected word progress for %s: bad records %s", language_code, invalid)
            return StorageResult.fail(
                f"Word progress records must be objects: {', '.join(map(str, invalid[:5]))}"
            )

        key = word_progress_key(language_code)
        options = StorageOptions(
            compress=self._should_compress(progress), priority=Priority.HIGH
        )
        result = await self._save(key, progress, options, language_code=language_code)
        if result.success and self.settings.cache_summaries:
            self.cache.set(
                summary_key(language_code),
                summarize_progress(progress),
                ttl=HOUR,
                dependencies=[key],
            )
        return result

    async def load_word_progress(self, language_code: str) -> StorageResult[Dict[str, Any]]:
        """Load the word progress map of one language, empty when nothing is saved."""
        if not language_code:
            return StorageResult(success=False, data={}, error="Language code is required")
        return await self._load(word_progress_key(language_code), {}, language_code=language_code)

    async def save_multiple_language_progress(
        self, progress_by_language: Dict[str, Dict[str, Any]]
    ) -> StorageResult[Dict[str, bool]]:
        """Save several languages concurrently."""
        languages = list(progress_by_language)
        results = await asyncio.gather(
            *(self.save_word_progress(lang, progress_by_language[lang]) for lang in languages)
        )
        outcome = {lang: result.success for lang, result in zip(languages, results)}
        failed = [lang for lang, ok in outcome.items() if not ok]
        if failed:
            return StorageResult(
                success=False,
                data=outcome,
                error=f"Failed to save progress for: {', '.join(failed)}",
            )
        return StorageResult.ok(outcome)

    async def load_multiple_language_progress(
        self, language_codes: List[str]
    ) -> StorageResult[Dict[str, Dict[str, Any]]]:
        """Load several languages concurrently."""
        results = await asyncio.gather(
            *(self.load_word_progress(lang) for lang in language_codes)
        )
        data = {lang: result.data or {} for lang, result in zip(language_codes, results)}
        errors = {
            lang: result.error
            for lang, result in zip(language_codes, results)
            if not result.success
        }
        return StorageResult(
            success=not errors, data=data, error="; ".join(errors.values()) or None,
            metadata={"errors": errors},
        )

    async def clear_word_progress(self, language_code: str) -> StorageResult:
        """Delete the progress of one language."""
        result = await self.delete_data(word_progress_key(language_code), language_code)
        self.invalidate_language_cache(language_code)
        return result

    async def get_language_summary(self, language_code: str) -> StorageResult[Dict[str, Any]]:
        """Get the cached summary of a language, rebuilding it when stale."""
        cached = self.cache.get(summary_key(language_code), _MISSING)
        if cached is not _MISSING:
            return StorageResult.ok(copy.deepcopy(cached), found=True, source="cache")

        progress = await self.load_word_progress(language_code)
        if not progress.success:
            return StorageResult.fail(progress.error or "Could not load progress")
        if not isinstance(progress.data, dict):
            return StorageResult.fail("Stored word progress is not an object")
        summary = summarize_progress(progress.data)
        self.cache.set(
            summary_key(language_code),
            summary,
            ttl=HOUR,
            dependencies=[word_progress_key(language_code)],
        )
        return StorageResult.ok(summary, found=True, source="storage")

    def invalidate_language_cache(self, language_code: str) -> int:
        """Drop every cached entry belonging to a language."""
        key = word_progress_key(language_code)
        removed = self.cache.invalidate_by_dependency(key)
        removed += self.cache.invalidate_by_pattern(rf"_{re.escape(language_code)}$")
        logger.debug("Invalidated %d cache entries for %s", removed, language_code)
        return removed

    # Singleton records

    async def save_game_state(self, state: Any) -> StorageResult:
        """Save the game state."""
        options = StorageOptions(compress=False, priority=Priority.HIGH)
        return await self._save(GAME_STATE_KEY, state, options, cache_ttl=HOUR)

    async def load_game_state(self) -> StorageResult:
        """Load the game state."""
        return await self._load(GAME_STATE_KEY, None, cache_ttl=HOUR)

    async def save_session_state(self, state: Any) -> StorageResult:
        """Save the session state."""
        options = StorageOptions(compress=False, priority=Priority.HIGH)
        return await self._save(SESSION_STATE_KEY, state, options, cache_ttl=30 * 60)

    async def load_session_state(self) -> StorageResult:
        """Load the session state."""
        return await self._load(SESSION_STATE_KEY, None, cache_ttl=30 * 60)

    async def save_user_preferences(self, preferences: Dict[str, Any]) -> StorageResult:
        """Save the user preferences."""
        options = StorageOptions(compress=False, priority=Priority.LOW)
        return await self._save(USER_PREFERENCES_KEY, preferences, options, cache_ttl=7 * DAY)

    async def load_user_preferences(self) -> StorageResult:
        """Load the user preferences."""
        return await self._load(USER_PREFERENCES_KEY, None, cache_ttl=7 * DAY)

    async def save_achievements(self, achievements: Any) -> StorageResult:
        """Save unlocked achievements."""
        options = StorageOptions(compress=False, priority=Priority.MEDIUM)
        return await self._save(ACHIEVEMENTS_KEY, achievements, options, cache_ttl=DAY)

    async def load_achievements(self) -> StorageResult:
        """Load unlocked achievements."""
        return await self._load(ACHIEVEMENTS_KEY, None, cache_ttl=DAY)

    async def save_analytics(self, language_code: str, analytics: Any) -> StorageResult:
        """Save learning analytics of one language."""
        options = StorageOptions(
            compress=self._should_compress(analytics), priority=Priority.LOW
        )
        return await self._save(
            analytics_key(language_code),
            analytics,
            options,
            language_code=language_code,
            cache_ttl=30 * DAY,
        )

    async def load_analytics(self, language_code: str) -> StorageResult:
        """Load learning analytics of one language."""
        return await self._load(
            analytics_key(language_code), None, language_code=language_code, cache_ttl=30 * DAY
        )

    # Auto-save queue

    def queue_word_progress(self, language_code: str, progress: Dict[str, Any]) -> None:
        """Queue word progress for the next background flush."""
        self.auto_save.queue_change(
            ChangeType.WORD_PROGRESS, progress, language_code, Priority.HIGH
        )

    def queue_game_state(self, state: Any) -> None:
        """Queue the game state for the next background flush."""
        self.auto_save.queue_change(ChangeType.GAME_STATE, state, priority=Priority.MEDIUM)

    def queue_session_state(self, state: Any) -> None:
        """Queue the session state for the next background flush."""
        self.auto_save.queue_change(ChangeType.SESSION_STATE, state, priority=Priority.MEDIUM)

    def queue_achievements(self, achievements: Any) -> None:
        """Queue achievements for the next background flush."""
        self.auto_save.queue_change(ChangeType.ACHIEVEMENTS, achievements, priority=Priority.LOW)

    async def flush_pending(self) -> FlushReport:
        """Write all queued changes now."""
        return await self.auto_save.flush()

    async def start(self) -> None:
        """Start background cache cleanup and auto-save."""
        await self.cache.start()
        await self.auto_save.start()

    async def stop(self) -> None:
        """Flush pending changes and stop background tasks."""
        await self.auto_save.cleanup()
        await self.cache.stop()

    # Generic access

    async def set_data(
        self,
        key: str,
        data: Any,
        options: Optional[StorageOptions] = None,
        language_code: Optional[str] = None,
    ) -> StorageResult:
        """Store arbitrary data under key."""
        return await self._save(key, data, options or StorageOptions(), language_code=language_code)

    async def get_data(
        self, key: str, default: Any = None, language_code: Optional[str] = None
    ) -> StorageResult:
        """Load arbitrary data stored under key."""
        return await self._load(key, default, language_code=language_code)

    async def delete_data(self, key: str, language_code: Optional[str] = None) -> StorageResult:
        """Delete the data stored under key."""
        result = await self._timed("delete", self.tiered.delete(key, language_code=language_code))
        self.cache.invalidate(key)
        if result.success:
            self._invalidate_dependents(key)
        return result

    async def get_keys(self, pattern: Optional[str] = None) -> StorageResult[List[str]]:
        """List stored keys."""
        return await self._timed("get_keys", self.tiered.get_keys(pattern))

    async def get_batch(self, keys: List[str]) -> StorageResult[Dict[str, Any]]:
        """Load several keys at once."""
        return await self._timed("get_batch", self.tiered.get_batch(keys))

    # Health and analytics

    async def get_storage_health(self) -> StorageResult[Dict[str, Any]]:
        """Combine cache, queue and backend health into a single verdict."""
        stats = self.cache.get_stats()
        pending = len(self.auto_save.pending)
        backend = await self.tiered.health_check()
        backend_status = (
            HealthStatus(backend.data["status"]) if backend.success else HealthStatus.UNHEALTHY
        )

        issues: List[str] = []
        status = HealthStatus.HEALTHY
        if pending > 500 or backend_status == HealthStatus.UNHEALTHY:
            status = HealthStatus.UNHEALTHY
            if pending > 500:
                issues.append(f"{pending} changes waiting to be saved")
            if backend_status == HealthStatus.UNHEALTHY:
                issues.append("Storage backend is unhealthy")
        else:
            if pending > 100:
                issues.append(f"{pending} changes waiting to be saved")
            if stats.lookups and stats.hit_rate < 0.7:
                issues.append(f"Cache hit rate is {stats.hit_rate:.0%}")
            if backend_status == HealthStatus.DEGRADED:
                issues.append("Storage backend is degraded")
            if issues:
                status = HealthStatus.DEGRADED

        return StorageResult.ok(
            {
                "status": status.value,
                "cache_hit_rate": stats.hit_rate,
                "pending_changes": pending,
                "backend": backend.data,
                "issues": issues,
            }
        )

    async def get_storage_analytics(self) -> StorageResult[Dict[str, Any]]:
        """Get a short-lived snapshot of storage metrics and recommendations."""
        cached = self.cache.get(ANALYTICS_SNAPSHOT_KEY, _MISSING)
        if cached is not _MISSING:
            return StorageResult.ok(copy.deepcopy(cached), source="cache")

        stats = self.cache.get_stats()
        keys = await self.tiered.get_keys()
        usage = await self.tiered.local.get_usage()
        key_counts = self._count_keys_by_prefix(keys.data or [])
        item_count = usage.data["items"] if usage.success else sum(key_counts.values())

        average_ms = self._average_response_ms()
        hit_rate = stats.hit_rate if stats.lookups else 1.0
        health_score = round(min(100.0, hit_rate * 50 + max(0.0, 50 - average_ms / 10)), 1)

        snapshot = {
            "cache": {**asdict(stats), "hit_rate": stats.hit_rate},
            "compression": {
                **self.compression.get_compression_stats(),
                "effectiveness": 1 - self.compression.get_compression_stats()["average_ratio"],
            },
            "performance": {
                "operations": self.metrics["operations"],
                "errors": self.metrics["errors"],
                "average_response_time_ms": average_ms,
            },
            "storage": {
                "items": item_count,
                "total_size": usage.data["total_size"] if usage.success else None,
                "keys_by_prefix": key_counts,
            },
            "health_score": health_score,
            "recommendations": self._recommendations(hit_rate, average_ms, item_count),
            "alerts": self._alerts(stats, average_ms, item_count),
            "generated_at": datetime.now(UTC).isoformat(),
        }
        self.cache.set(
            ANALYTICS_SNAPSHOT_KEY,
            snapshot,
            ttl=self.settings.analytics_ttl,
            dependencies=[WRITE_TAG],
        )
        return StorageResult.ok(snapshot, source="computed")

    def get_storage_stats(self) -> Dict[str, Any]:
        """Get operation counters, cache statistics and queue status."""
        stats = self.cache.get_stats()
        return {
            "operations": self.metrics["operations"],
            "errors": self.metrics["errors"],
            "average_response_time_ms": self._average_response_ms(),
            "hit_rate": stats.hit_rate,
            "cache": asdict(stats),
            "compression": self.compression.get_compression_stats(),
            "auto_save": self.auto_save.get_status(),
        }

    async def create_migration_backup(self) -> StorageResult[str]:
        """Store a snapshot of all progress-related records under a timestamped key."""
        keys = await self.tiered.get_keys(BACKUP_PATTERN)
        if not keys.success:
            return StorageResult.fail(keys.error or "Could not list keys")
        batch = await self.tiered.get_batch(keys.data or [])
        if not batch.success:
            return StorageResult.fail(batch.error or "Could not read records")

        data = batch.data or {}
        now = datetime.now(UTC)
        backup = {
            "timestamp": now.isoformat(),
            "version": "1.0",
            "data": data,
            "metadata": {"itemCount": len(data), "totalSize": byte_size(serialize(data))},
        }
        key = f"migration_backup_{int(now.timestamp() * 1000)}"
        result = await self.set_data(key, backup, StorageOptions(priority=Priority.LOW))
        if not result.success:
            return StorageResult.fail(result.error or "Could not store backup")
        logger.info("Created migration backup %s with %d records", key, len(data))
        return StorageResult.ok(key, item_count=len(data))

    # Internals

    async def _save(
        self,
        key: str,
        data: Any,
        options: StorageOptions,
        language_code: Optional[str] = None,
        cache_ttl: Optional[float] = None,
    ) -> StorageResult:
        result = await self._timed(
            "set", self.tiered.set(key, data, options, language_code=language_code)
        )
        if result.success:
            self._invalidate_dependents(key)
            self.cache.set(key, copy.deepcopy(data), ttl=cache_ttl)
        else:
            self.cache.invalidate(key)
        return result

    async def _load(
        self,
        key: str,
        default: Any,
        language_code: Optional[str] = None,
        cache_ttl: Optional[float] = None,
    ) -> StorageResult:
        cached = self.cache.get(key, _MISSING)
        if cached is not _MISSING:
            return StorageResult.ok(copy.deepcopy(cached), found=True, source="cache")

        result = await self._timed("get", self.tiered.get(key, language_code=language_code))
        if not result.success:
            return StorageResult(
                success=False, data=default, error=result.error, metadata=result.metadata
            )
        if not result.found:
            return StorageResult.ok(default, found=False)

        self.cache.set(key, copy.deepcopy(result.data), ttl=cache_ttl)
        return StorageResult.ok(result.data, found=True, source=result.metadata.get("tier"))

    def _invalidate_dependents(self, key: str) -> None:
        self.cache.invalidate_by_dependency(key)
        self.cache.invalidate_by_dependency(WRITE_TAG)

    def _should_compress(self, data: Any) -> bool:
        try:
            size = byte_size(serialize(data))
        except (TypeError, ValueError):
            return False
        return (
            size > self.settings.compression_threshold
            and self.compression.is_compression_worthwhile(data)
        )

    async def _timed(self, operation: str, awaitable) -> StorageResult:
        started = time.perf_counter()
        try:
            result = await awaitable
        except Exception as e:
            logger.error("Storage %s raised: %s", operation, e)
            monitoring.error_count.labels(error_type=type(e).__name__).inc()
            result = StorageResult.fail(f"Storage {operation} failed: {e}")
        elapsed = time.perf_counter() - started

        self.metrics["operations"] += 1
        self.metrics["total_time"] += elapsed
        if not result.success:
            self.metrics["errors"] += 1
        monitoring.storage_operation_duration.labels(operation=operation).observe(elapsed)
        return result

    def _average_response_ms(self) -> float:
        operations = self.metrics["operations"]
        return self.metrics["total_time"] / operations * 1000 if operations else 0.0

    @staticmethod
    def _count_keys_by_prefix(keys: List[str]) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for key in keys:
            prefix = next((p.rstrip("_") for p in KEY_PREFIXES if key.startswith(p)), "other")
            counts[prefix] = counts.get(prefix, 0) + 1
        return counts

    def _recommendations(self, hit_rate: float, average_ms: float, item_count: int) -> List[str]:
        recommendations = []
        if hit_rate < 0.7:
            recommendations.append("Consider increasing cache size or adjusting cache TTL")
        if average_ms > 100:
            recommendations.append("Enable compression for large payloads to reduce latency")
        if self.metrics["operations"] > 1000:
            recommendations.append("Batch frequent small writes through the auto-save queue")
        if item_count > 10000:
            recommendations.append("Archive old records to keep storage lean")
        if not recommendations:
            recommendations.append("Storage system is performing optimally")
        return recommendations

    @staticmethod
    def _alerts(stats, average_ms: float, item_count: int) -> List[Dict[str, Any]]:
        alerts = []
        if stats.lookups and stats.hit_rate < 0.5:
            alerts.append(
                {"type": "LOW_CACHE_HIT_RATE", "severity": "warning", "value": stats.hit_rate}
            )
        if average_ms > 200:
            alerts.append({"type": "SLOW_OPERATIONS", "severity": "warning", "value": average_ms})
        if item_count > 50000:
            alerts.append({"type": "HIGH_ITEM_COUNT", "severity": "info", "value": item_count})
        return alerts
