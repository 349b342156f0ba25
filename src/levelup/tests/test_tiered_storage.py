"""Tests for tiered storage."""
import re
from typing import Any, Dict, List, Optional

import pytest
from faker import Faker

from levelup.config import RemoteSettings, StorageSettings
from levelup.models.storage_models import HealthStatus, StorageOptions, StorageResult
from levelup.services.storage_provider import StorageProvider
from levelup.services.tiered_storage import TieredStorage

fake = Faker()


class InMemoryProvider(StorageProvider):
    """Remote tier stand-in that can be switched offline."""

    name = "remote"

    def __init__(self):
        self.values: Dict[str, Any] = {}
        self.online = True

    async def get(self, key: str, language_code: Optional[str] = None) -> StorageResult:
        if not self.online:
            return StorageResult.fail("Remote storage unavailable: offline", offline=True)
        return StorageResult.ok(self.values.get(key), found=key in self.values)

    async def set(self, key, value, options=None, language_code=None) -> StorageResult:
        if not self.online:
            return StorageResult.fail("Remote storage unavailable: offline", offline=True)
        self.values[key] = value
        return StorageResult.ok(None)

    async def delete(self, key: str, language_code: Optional[str] = None) -> StorageResult:
        if not self.online:
            return StorageResult.fail("Remote storage unavailable: offline", offline=True)
        self.values.pop(key, None)
        return StorageResult.ok(None)

    async def get_keys(self, pattern=None, language_code=None) -> StorageResult[List[str]]:
        if not self.online:
            return StorageResult.fail("Remote storage unavailable: offline", offline=True)
        keys = [key for key in self.values if pattern is None or re.search(pattern, key)]
        return StorageResult.ok(sorted(keys))

    async def health_check(self) -> StorageResult[Dict[str, Any]]:
        status = HealthStatus.HEALTHY if self.online else HealthStatus.UNHEALTHY
        return self.health(status, tier=self.name)


@pytest.fixture
def remote():
    return InMemoryProvider()


@pytest.fixture
def two_tier(local_storage, remote, compression):
    """Create a store with a remote tier and local fallback."""
    return TieredStorage(local_storage, remote, compression)


def large_progress(count: int = 300) -> Dict[str, Dict]:
    return {
        f"word-{index}": {"xp": 10, "timesCorrect": 1, "timesIncorrect": 0}
        for index in range(count)
    }


@pytest.mark.asyncio
async def test_local_only_round_trip(tiered):
    """Test the local-only configuration reads its own writes."""
    value = {"theme": fake.color_name()}

    written = await tiered.set("user_preferences", value)
    result = await tiered.get("user_preferences")

    assert written.metadata["tier"] == "local"
    assert result.data == value
    assert result.metadata["tier"] == "local"


@pytest.mark.asyncio
async def test_large_payload_is_compressed_transparently(tiered, local_storage):
    """Test payloads over the threshold are stored as envelopes."""
    progress = large_progress()

    written = await tiered.set("word_progress_de", progress)
    raw = await local_storage.get("word_progress_de")
    result = await tiered.get("word_progress_de")

    assert written.metadata["compressed"] is True
    assert raw.data["__compressed__"] is True
    assert result.data == progress


@pytest.mark.asyncio
async def test_small_payload_is_stored_plain(tiered, local_storage):
    """Test payloads under the threshold are stored as is."""
    await tiered.set("game_state", {"score": 1})

    raw = await local_storage.get("game_state")
    assert raw.data == {"score": 1}


@pytest.mark.asyncio
async def test_compression_can_be_forced_or_disabled(local_storage, compression):
    """Test the compress option overrides the size threshold."""
    store = TieredStorage(
        local_storage,
        compression=compression,
        storage_settings=StorageSettings(compression_threshold=10**9),
    )
    progress = large_progress()

    await store.set("forced", progress, StorageOptions(compress=True))
    await store.set("plain", progress, StorageOptions(compress=False))

    assert (await local_storage.get("forced")).data["__compressed__"] is True
    assert (await local_storage.get("plain")).data == progress


@pytest.mark.asyncio
async def test_remote_write_is_mirrored_locally(two_tier, remote, local_storage):
    """Test successful remote writes are copied to the local tier."""
    result = await two_tier.set("game_state", {"score": 5})

    assert result.metadata["tier"] == "remote"
    assert remote.values["game_state"] == {"score": 5}
    assert (await local_storage.get("game_state")).data == {"score": 5}


@pytest.mark.asyncio
async def test_remote_failure_falls_back_to_local(two_tier, remote, local_storage):
    """Test writes and reads keep working while the remote tier is offline."""
    remote.online = False

    written = await two_tier.set("game_state", {"score": 7})
    result = await two_tier.get("game_state")

    assert written.success
    assert written.metadata["fallback"] is True
    assert written.metadata["tier"] == "local"
    assert result.data == {"score": 7}
    assert result.metadata["fallback"] is True


@pytest.mark.asyncio
async def test_remote_failure_without_fallback(local_storage, remote, compression):
    """Test writes fail when local fallback is disabled."""
    store = TieredStorage(
        local_storage, remote, compression, RemoteSettings(allow_local_fallback=False)
    )
    remote.online = False

    written = await store.set("game_state", {"score": 7})
    result = await store.get("game_state")

    assert not written.success
    assert not result.success
    assert not (await local_storage.get("game_state")).found


@pytest.mark.asyncio
async def test_read_prefers_remote(two_tier, remote, local_storage):
    """Test the remote tier wins when both tiers hold a value."""
    await local_storage.set("game_state", {"score": 1})
    remote.values["game_state"] = {"score": 2}

    result = await two_tier.get("game_state")

    assert result.data == {"score": 2}
    assert result.metadata["tier"] == "remote"


@pytest.mark.asyncio
async def test_missing_everywhere(two_tier):
    """Test a key missing from all tiers is not found."""
    result = await two_tier.get("absent")

    assert result.success
    assert not result.found


@pytest.mark.asyncio
async def test_corrupt_envelope_fails(tiered, local_storage):
    """Test undecodable envelopes are reported as errors."""
    await local_storage.set(
        "word_progress_de",
        {
            "__compressed__": True,
            "payload": "%%%",
            "algorithm": "zlib",
            "originalSize": 10,
            "compressedSize": 3,
        },
    )

    result = await tiered.get("word_progress_de")

    assert not result.success
    assert "Corrupt compressed data" in result.error


@pytest.mark.asyncio
async def test_delete_and_keys_span_tiers(two_tier, remote, local_storage):
    """Test deletes reach every tier and listings merge them."""
    remote.values["remote_only"] = 1
    await local_storage.set("local_only", 2)
    await two_tier.set("both", 3)

    keys = await two_tier.get_keys()
    assert keys.data == ["both", "local_only", "remote_only"]

    await two_tier.delete("both")
    assert "both" not in remote.values
    assert not (await local_storage.get("both")).found


@pytest.mark.asyncio
async def test_clear_by_pattern(two_tier, remote, local_storage):
    """Test clearing matching keys on every tier."""
    await two_tier.set("summary_de", 1)
    await two_tier.set("game_state", 2)

    result = await two_tier.clear(r"^summary_")

    assert result.success
    assert "summary_de" not in remote.values
    assert (await local_storage.get_keys()).data == ["game_state"]


@pytest.mark.asyncio
async def test_health_degraded_when_remote_down(two_tier, remote, tiered):
    """Test health reflects tier availability."""
    assert (await tiered.health_check()).data["status"] == "healthy"
    assert (await two_tier.health_check()).data["status"] == "healthy"

    remote.online = False
    health = await two_tier.health_check()
    assert health.data["status"] == "degraded"
    assert health.data["tiers"]["remote"]["status"] == "unhealthy"
