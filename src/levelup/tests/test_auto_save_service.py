"""Tests for auto-save service."""
import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from faker import Faker

from levelup.config import AutoSaveSettings
from levelup.models.storage_models import ChangeType, Priority, StorageResult
from levelup.services.auto_save_service import AutoSaveService

fake = Faker()


@pytest.fixture
def storage():
    """Create a mock storage facade."""
    storage = Mock()
    storage.save_word_progress = AsyncMock(return_value=StorageResult.ok())
    storage.save_game_state = AsyncMock(return_value=StorageResult.ok())
    storage.save_session_state = AsyncMock(return_value=StorageResult.ok())
    storage.save_achievements = AsyncMock(return_value=StorageResult.ok())
    return storage


@pytest.fixture
def auto_save(storage):
    """Create an auto-save queue without timers."""
    return AutoSaveService(storage, AutoSaveSettings(enabled=False))


@pytest.mark.asyncio
async def test_changes_coalesce_to_latest(auto_save, storage):
    """Test repeated changes of one kind produce a single write of the last value."""
    for score in (10, 20, 30):
        auto_save.queue_change(ChangeType.GAME_STATE, {"score": score})

    assert len(auto_save.pending) == 1
    report = await auto_save.flush()

    storage.save_game_state.assert_awaited_once_with({"score": 30})
    assert report.changes == 1
    assert report.operations == 1
    assert report.failed == 0
    assert auto_save.pending == {}


@pytest.mark.asyncio
async def test_word_progress_written_per_language(auto_save, storage):
    """Test word progress of each language is written separately."""
    auto_save.queue_change(ChangeType.WORD_PROGRESS, {"a": {"xp": 1}}, "de")
    auto_save.queue_change(ChangeType.WORD_PROGRESS, {"b": {"xp": 2}}, "es")
    auto_save.queue_change(ChangeType.WORD_PROGRESS, {"a": {"xp": 3}}, "de")

    report = await auto_save.flush()

    assert report.operations == 2
    calls = {call.args[0]: call.args[1] for call in storage.save_word_progress.await_args_list}
    assert calls == {"de": {"a": {"xp": 3}}, "es": {"b": {"xp": 2}}}


@pytest.mark.asyncio
async def test_word_progress_without_language_is_dropped(auto_save, storage):
    """Test word progress needs a language code."""
    auto_save.queue_change(ChangeType.WORD_PROGRESS, {"a": {}})

    report = await auto_save.flush()

    storage.save_word_progress.assert_not_awaited()
    assert report.operations == 0
    assert auto_save.pending == {}


@pytest.mark.asyncio
async def test_all_change_types_are_routed(auto_save, storage):
    """Test each change type reaches its save method."""
    auto_save.queue_change(ChangeType.SESSION_STATE, {"step": 2})
    auto_save.queue_change(ChangeType.ACHIEVEMENTS, ["first_word"])

    await auto_save.flush()

    storage.save_session_state.assert_awaited_once_with({"step": 2})
    storage.save_achievements.assert_awaited_once_with(["first_word"])


@pytest.mark.asyncio
async def test_failed_write_is_requeued_with_low_priority(auto_save, storage):
    """Test failed writes stay queued for the next flush."""
    storage.save_game_state.return_value = StorageResult.fail("disk full")
    auto_save.queue_change(ChangeType.GAME_STATE, {"score": 1}, priority=Priority.HIGH)

    report = await auto_save.flush()

    assert report.failed == 1
    change = auto_save.pending["gameState:global"]
    assert change.data == {"score": 1}
    assert change.priority == Priority.LOW


@pytest.mark.asyncio
async def test_requeued_change_is_written_after_higher_priority(auto_save, storage):
    """Test a low priority retry starts after newly queued high priority writes."""
    written = []

    async def record(language_code, progress):
        written.append(language_code)
        return StorageResult.ok()

    storage.save_word_progress.return_value = StorageResult.fail("offline")
    auto_save.queue_change(ChangeType.WORD_PROGRESS, {"a": {"xp": 1}}, "de", Priority.HIGH)
    await auto_save.flush()
    assert auto_save.pending["wordProgress:de"].priority == Priority.LOW

    storage.save_word_progress.side_effect = record
    auto_save.queue_change(ChangeType.WORD_PROGRESS, {"b": {"xp": 2}}, "es", Priority.HIGH)
    auto_save.queue_change(ChangeType.WORD_PROGRESS, {"c": {"xp": 3}}, "fr", Priority.MEDIUM)
    report = await auto_save.flush()

    assert report.failed == 0
    assert written == ["es", "fr", "de"]


@pytest.mark.asyncio
async def test_raised_error_is_requeued(auto_save, storage):
    """Test exceptions from a write are contained and requeued."""
    storage.save_achievements.side_effect = RuntimeError("boom")
    auto_save.queue_change(ChangeType.ACHIEVEMENTS, ["a"])
    auto_save.queue_change(ChangeType.GAME_STATE, {"score": 2})

    report = await auto_save.flush()

    assert report.failed == 1
    storage.save_game_state.assert_awaited_once()
    assert list(auto_save.pending) == ["achievements:global"]


@pytest.mark.asyncio
async def test_requeue_keeps_newer_change(auto_save, storage):
    """Test a change queued during a failed flush is not overwritten."""

    async def fail_after_new_change(state):
        auto_save.queue_change(ChangeType.GAME_STATE, {"score": 99})
        return StorageResult.fail("offline")

    storage.save_game_state.side_effect = fail_after_new_change
    auto_save.queue_change(ChangeType.GAME_STATE, {"score": 1})

    await auto_save.flush()

    change = auto_save.pending["gameState:global"]
    assert change.data == {"score": 99}
    assert change.priority == Priority.MEDIUM


@pytest.mark.asyncio
async def test_empty_flush(auto_save, storage):
    """Test flushing an empty queue writes nothing."""
    report = await auto_save.flush()

    assert report.changes == 0
    storage.save_game_state.assert_not_awaited()


@pytest.mark.asyncio
async def test_automatic_flush_skipped_while_flushing(auto_save, storage):
    """Test automatic triggers do not run concurrently with a flush."""
    auto_save.queue_change(ChangeType.GAME_STATE, {"score": 1})

    async with auto_save._lock:
        report = await auto_save.flush("interval")

    assert report.skipped
    storage.save_game_state.assert_not_awaited()
    assert len(auto_save.pending) == 1


@pytest.mark.asyncio
async def test_max_pending_forces_flush(storage):
    """Test reaching the queue cap starts a flush."""
    auto_save = AutoSaveService(storage, AutoSaveSettings(enabled=False, max_pending_actions=2))

    auto_save.queue_change(ChangeType.GAME_STATE, {"score": 1})
    auto_save.queue_change(ChangeType.SESSION_STATE, {"step": 1})
    await auto_save.stop()

    storage.save_game_state.assert_awaited_once()
    storage.save_session_state.assert_awaited_once()
    assert auto_save.pending == {}


@pytest.mark.asyncio
async def test_idle_timer_flushes(storage):
    """Test a quiet period after the last change triggers a flush."""
    auto_save = AutoSaveService(
        storage, AutoSaveSettings(enabled=True, idle_threshold=0.01, interval=60)
    )

    auto_save.queue_change(ChangeType.GAME_STATE, {"score": 5})
    await asyncio.sleep(0.05)
    await auto_save.stop()

    storage.save_game_state.assert_awaited_once_with({"score": 5})


@pytest.mark.asyncio
async def test_interval_task_flushes(storage):
    """Test the interval task writes pending changes."""
    auto_save = AutoSaveService(
        storage, AutoSaveSettings(enabled=True, idle_threshold=60, interval=0.01)
    )
    await auto_save.start()

    auto_save.queue_change(ChangeType.ACHIEVEMENTS, ["streak"])
    await asyncio.sleep(0.05)
    await auto_save.stop()

    storage.save_achievements.assert_awaited_once_with(["streak"])
    assert not auto_save.running


@pytest.mark.asyncio
async def test_cleanup_writes_remaining_changes(auto_save, storage):
    """Test cleanup stops timers and flushes."""
    await auto_save.start()
    auto_save.queue_change(ChangeType.GAME_STATE, {"score": 3})

    report = await auto_save.cleanup()

    assert report.trigger == "manual"
    storage.save_game_state.assert_awaited_once_with({"score": 3})
    assert not auto_save.running


@pytest.mark.asyncio
async def test_update_config_and_status(auto_save):
    """Test settings changes are reflected in the status."""
    auto_save.queue_change(ChangeType.GAME_STATE, {"score": fake.random_int()})

    await auto_save.update_config(interval=10, max_pending_actions=5)

    status = auto_save.get_status()
    assert status["pending_changes"] == 1
    assert status["config"]["interval"] == 10
    assert status["config"]["max_pending_actions"] == 5
    assert status["is_processing"] is False
    assert status["last_action_time"] is not None
