"""Storage facade over the remote and local tiers."""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from levelup.config import RemoteSettings, StorageSettings
from levelup.models.errors import CompressionError
from levelup.models.storage_models import (
    CompressedData,
    HealthStatus,
    StorageOptions,
    StorageResult,
)
from levelup.services.compression_service import CompressionService, byte_size, serialize
from levelup.services.local_storage import LocalStorageProvider
from levelup.services.remote_storage import RemoteStorageProvider
from levelup.services.storage_provider import StorageProvider

logger = logging.getLogger(__name__)


class TieredStorage(StorageProvider):
    """Routes operations to the remote tier with the local tier as fallback.

    Reads consult tiers in priority order and return the first hit. Writes go
    to the first tier; successful remote writes are mirrored locally.
    Large payloads are stored as compression envelopes and restored on read.
    """

    name = "tiered"

    def __init__(
        self,
        local: LocalStorageProvider,
        remote: Optional[RemoteStorageProvider] = None,
        compression: Optional[CompressionService] = None,
        remote_settings: Optional[RemoteSettings] = None,
        storage_settings: Optional[StorageSettings] = None,
    ):
        """Initialize the store with its tiers."""
        self.local = local
        self.remote = remote
        self.compression = compression or CompressionService()
        self.remote_settings = remote_settings or RemoteSettings()
        self.storage_settings = storage_settings or StorageSettings()

    @property
    def allow_local_fallback(self) -> bool:
        return self.remote is None or self.remote_settings.allow_local_fallback

    @property
    def tiers(self) -> List[StorageProvider]:
        """Tiers consulted for reads, in priority order."""
        if self.remote is None:
            return [self.local]
        if self.allow_local_fallback:
            return [self.remote, self.local]
        return [self.remote]

    async def get(self, key: str, language_code: Optional[str] = None) -> StorageResult:
        """Get a value from the first tier that has it."""
        errors: Dict[str, str] = {}
        for tier in self.tiers:
            result = await tier.get(key, language_code=language_code)
            if not result.success:
                errors[tier.name] = result.error or "unknown error"
                logger.warning("Read of %s from %s tier failed: %s", key, tier.name, result.error)
                continue
            if not result.found:
                continue

            try:
                value = self._restore(result.data)
            except CompressionError as e:
                logger.error("Stored value for %s could not be decompressed: %s", key, e)
                return StorageResult.fail(f"Corrupt compressed data: {e}", tier=tier.name)

            metadata = {**result.metadata, "found": True, "tier": tier.name}
            if errors:
                metadata["fallback"] = True
                metadata["errors"] = errors
            return StorageResult(success=True, data=value, metadata=metadata)

        if len(errors) == len(self.tiers):
            return StorageResult.fail("; ".join(errors.values()), errors=errors)
        return StorageResult.ok(None, found=False, errors=errors)

    async def set(
        self,
        key: str,
        value: Any,
        options: Optional[StorageOptions] = None,
        language_code: Optional[str] = None,
    ) -> StorageResult:
        """Write a value to the primary tier, falling back to local storage."""
        options = options or StorageOptions()
        stored = self._prepare(key, value, options)
        compressed = CompressedData.is_envelope(stored)

        if self.remote is None:
            result = await self.local.set(key, stored, options, language_code=language_code)
            result.metadata.update(tier=self.local.name, compressed=compressed)
            return result

        result = await self.remote.set(key, stored, options, language_code=language_code)
        if result.success:
            mirror = await self.local.set(key, stored, options, language_code=language_code)
            if not mirror.success:
                logger.warning("Could not mirror %s to local storage: %s", key, mirror.error)
            result.metadata.update(tier=self.remote.name, compressed=compressed)
            return result

        if not self.allow_local_fallback:
            logger.error("Remote write of %s failed and local fallback is disabled", key)
            return result

        logger.warning("Remote write of %s failed, falling back to local: %s", key, result.error)
        fallback = await self.local.set(key, stored, options, language_code=language_code)
        fallback.metadata.update(
            tier=self.local.name,
            compressed=compressed,
            fallback=True,
            remote_error=result.error,
        )
        return fallback

    async def delete(self, key: str, language_code: Optional[str] = None) -> StorageResult:
        """Delete a key from every tier."""
        tiers = self._all_tiers()
        results = await asyncio.gather(
            *(tier.delete(key, language_code=language_code) for tier in tiers)
        )
        errors = {
            tier.name: result.error for tier, result in zip(tiers, results) if not result.success
        }
        if len(errors) == len(tiers):
            return StorageResult.fail("; ".join(str(e) for e in errors.values()), errors=errors)
        return StorageResult.ok(None, errors=errors)

    async def get_keys(
        self, pattern: Optional[str] = None, language_code: Optional[str] = None
    ) -> StorageResult[List[str]]:
        """List the union of keys across tiers."""
        keys: set = set()
        errors: Dict[str, str] = {}
        for tier in self.tiers:
            result = await tier.get_keys(pattern, language_code=language_code)
            if result.success:
                keys.update(result.data or [])
            else:
                errors[tier.name] = result.error or "unknown error"
        if len(errors) == len(self.tiers):
            return StorageResult.fail("; ".join(errors.values()), errors=errors)
        return StorageResult.ok(sorted(keys), errors=errors)

    async def clear(
        self, pattern: Optional[str] = None, language_code: Optional[str] = None
    ) -> StorageResult[int]:
        """Clear matching keys on every tier."""
        removed = 0
        errors: Dict[str, str] = {}
        for tier in self._all_tiers():
            result = await tier.clear(pattern, language_code=language_code)
            if result.success:
                removed += result.data or 0
            else:
                errors[tier.name] = result.error or "unknown error"
        return StorageResult(
            success=not errors or removed > 0, data=removed, metadata={"errors": errors}
        )

    async def health_check(self) -> StorageResult[Dict[str, Any]]:
        """Combine the health of all tiers."""
        local = await self.local.health_check()
        local_status = HealthStatus(local.data["status"])
        tiers = {self.local.name: local.data}

        status = local_status
        if self.remote is not None:
            remote = await self.remote.health_check()
            tiers[self.remote.name] = remote.data
            if HealthStatus(remote.data["status"]) != HealthStatus.HEALTHY:
                status = (
                    HealthStatus.DEGRADED
                    if self.allow_local_fallback and local_status == HealthStatus.HEALTHY
                    else HealthStatus.UNHEALTHY
                )
        if local_status == HealthStatus.UNHEALTHY:
            status = HealthStatus.UNHEALTHY

        return self.health(status, tiers=tiers)

    def _all_tiers(self) -> List[StorageProvider]:
        return [self.local] if self.remote is None else [self.remote, self.local]

    def _prepare(self, key: str, value: Any, options: StorageOptions) -> Any:
        if options.compress is False:
            return value
        try:
            size = byte_size(serialize(value))
            if not options.compress and size <= self.storage_settings.compression_threshold:
                return value
            envelope = self.compression.compress(value)
        except (TypeError, ValueError) as e:
            logger.warning("Skipping compression for %s: %s", key, e)
            return value

        if envelope.algorithm == "none":
            return value
        logger.debug(
            "Compressed %s with %s: %d -> %d bytes",
            key,
            envelope.algorithm,
            envelope.original_size,
            envelope.compressed_size,
        )
        return envelope.to_dict()

    def _restore(self, value: Any) -> Any:
        if CompressedData.is_envelope(value):
            return self.compression.decompress(CompressedData.from_dict(value))
        return value
