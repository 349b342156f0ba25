"""Common interface for storage backends."""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from levelup.models.storage_models import HealthStatus, StorageOptions, StorageResult

logger = logging.getLogger(__name__)


class StorageProvider(ABC):
    """Base class for all storage tiers.

    Every operation returns a ``StorageResult`` and never raises. A read of a
    missing key succeeds with ``data=None`` and ``metadata["found"] = False``.
    """

    name: str = "base"

    @abstractmethod
    async def get(self, key: str, language_code: Optional[str] = None) -> StorageResult:
        """Get the value stored under key."""
        raise NotImplementedError("Subclasses must implement this method")

    @abstractmethod
    async def set(
        self,
        key: str,
        value: Any,
        options: Optional[StorageOptions] = None,
        language_code: Optional[str] = None,
    ) -> StorageResult:
        """Store value under key."""
        raise NotImplementedError("Subclasses must implement this method")

    @abstractmethod
    async def delete(self, key: str, language_code: Optional[str] = None) -> StorageResult:
        """Delete the value stored under key."""
        raise NotImplementedError("Subclasses must implement this method")

    @abstractmethod
    async def get_keys(
        self, pattern: Optional[str] = None, language_code: Optional[str] = None
    ) -> StorageResult[List[str]]:
        """List stored keys, optionally filtered by a regular expression."""
        raise NotImplementedError("Subclasses must implement this method")

    @abstractmethod
    async def health_check(self) -> StorageResult[Dict[str, Any]]:
        """Report whether the backend is usable."""
        raise NotImplementedError("Subclasses must implement this method")

    async def exists(self, key: str, language_code: Optional[str] = None) -> StorageResult[bool]:
        """Check whether key holds a value."""
        result = await self.get(key, language_code=language_code)
        if not result.success:
            return StorageResult.fail(result.error or "Lookup failed", **result.metadata)
        return StorageResult.ok(result.found)

    async def get_batch(
        self, keys: List[str], language_code: Optional[str] = None
    ) -> StorageResult[Dict[str, Any]]:
        """Get several keys at once; missing keys are left out."""
        results = await asyncio.gather(
            *(self.get(key, language_code=language_code) for key in keys)
        )
        data: Dict[str, Any] = {}
        errors: Dict[str, str] = {}
        for key, result in zip(keys, results):
            if not result.success:
                errors[key] = result.error or "unknown error"
            elif result.found:
                data[key] = result.data
        if errors and not data:
            return StorageResult.fail("All batch reads failed", errors=errors)
        return StorageResult.ok(data, errors=errors)

    async def set_batch(
        self,
        items: Dict[str, Any],
        options: Optional[StorageOptions] = None,
        language_code: Optional[str] = None,
    ) -> StorageResult[List[str]]:
        """Store several values at once."""
        keys = list(items)
        results = await asyncio.gather(
            *(self.set(key, items[key], options, language_code=language_code) for key in keys)
        )
        failed = {key: result.error for key, result in zip(keys, results) if not result.success}
        written = [key for key in keys if key not in failed]
        if failed:
            logger.warning("%s: %d of %d batch writes failed", self.name, len(failed), len(keys))
            return StorageResult(
                success=False,
                data=written,
                error=f"{len(failed)} of {len(keys)} writes failed",
                metadata={"errors": failed},
            )
        return StorageResult.ok(written)

    async def clear(
        self, pattern: Optional[str] = None, language_code: Optional[str] = None
    ) -> StorageResult[int]:
        """Delete every key matching pattern, or every key when pattern is None."""
        keys = await self.get_keys(pattern, language_code=language_code)
        if not keys.success:
            return StorageResult.fail(keys.error or "Could not list keys")
        results = await asyncio.gather(
            *(self.delete(key, language_code=language_code) for key in keys.data or [])
        )
        removed = sum(1 for result in results if result.success)
        return StorageResult.ok(removed)

    @staticmethod
    def health(status: HealthStatus, **details: Any) -> StorageResult[Dict[str, Any]]:
        """Build a health check result."""
        return StorageResult.ok({"status": status.value, **details})
