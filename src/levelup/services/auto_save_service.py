"""Background auto-save queue that batches frequent mutations."""
import asyncio
import logging
import time
from dataclasses import asdict, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from levelup import monitoring
from levelup.config import AutoSaveSettings
from levelup.models.storage_models import (
    ChangeType,
    FlushReport,
    PendingChange,
    Priority,
    StorageResult,
)

logger = logging.getLogger(__name__)

MANUAL = "manual"

PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}

Operation = Tuple[PendingChange, Callable[[], Awaitable[Any]]]


class AutoSaveService:
    """Coalesces queued changes and flushes them to storage.

    Changes are keyed by ``type:languageCode``; only the latest change per key
    is kept. A flush is triggered by the interval timer, by the idle timer,
    when the queue reaches its cap, or by an explicit call to ``flush``.
    """

    def __init__(
        self,
        storage: Any,
        auto_save_settings: Optional[AutoSaveSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the queue.

        Args:
            storage: Object providing ``save_word_progress``, ``save_game_state``,
                ``save_session_state`` and ``save_achievements`` coroutines.
            auto_save_settings: Timer and queue-size settings.
            clock: Time source for change timestamps.
        """
        self.storage = storage
        self.settings = auto_save_settings or AutoSaveSettings()
        self.clock = clock
        self.pending: Dict[str, PendingChange] = {}
        self.last_action_time: Optional[float] = None
        self.is_processing = False
        self.running = False
        self._lock = asyncio.Lock()
        self._idle_handle: Optional[asyncio.TimerHandle] = None
        self._interval_task: Optional[asyncio.Task] = None
        self._flush_tasks: Set[asyncio.Task] = set()

    def queue_change(
        self,
        change_type: ChangeType,
        data: Any,
        language_code: Optional[str] = None,
        priority: Priority = Priority.MEDIUM,
    ) -> PendingChange:
        """Queue a change, replacing any pending change for the same key."""
        change = PendingChange(
            type=change_type,
            data=data,
            timestamp=self.clock(),
            language_code=language_code,
            priority=priority,
        )
        self.pending[change.key] = change
        self.last_action_time = change.timestamp
        monitoring.pending_changes.set(len(self.pending))
        logger.debug("Queued %s (%d pending)", change.key, len(self.pending))

        if len(self.pending) >= self.settings.max_pending_actions:
            logger.info("Pending change limit reached, forcing a flush")
            self._spawn_flush("max_pending")
        else:
            self._schedule_idle_flush()
        return change

    async def flush(self, trigger: str = MANUAL) -> FlushReport:
        """Write all pending changes to storage.

        Automatic triggers are skipped while another flush is running. A
        manual flush waits for it and then writes whatever is left.
        """
        if trigger != MANUAL and self._lock.locked():
            logger.debug("Flush already in progress, skipping %s flush", trigger)
            return FlushReport(trigger=trigger, skipped=True)

        async with self._lock:
            if not self.pending:
                return FlushReport(trigger=trigger)

            started = time.perf_counter()
            self.is_processing = True
            snapshot, self.pending = self.pending, {}
            monitoring.pending_changes.set(0)

            try:
                operations = self._build_operations(list(snapshot.values()))
                results = await asyncio.gather(
                    *(run() for _, run in operations), return_exceptions=True
                )

                failed = 0
                for (change, _), result in zip(operations, results):
                    if isinstance(result, BaseException):
                        logger.error("Auto-save of %s raised: %s", change.key, result)
                    elif isinstance(result, StorageResult) and not result.success:
                        logger.error("Auto-save of %s failed: %s", change.key, result.error)
                    else:
                        continue
                    failed += 1
                    self._requeue(change)
            finally:
                self.is_processing = False
                monitoring.pending_changes.set(len(self.pending))

        monitoring.auto_save_flushes.labels(trigger=trigger).inc()
        report = FlushReport(
            trigger=trigger,
            changes=len(snapshot),
            operations=len(operations),
            failed=failed,
            duration=time.perf_counter() - started,
        )
        logger.info(
            "Auto-save (%s) wrote %d operations for %d changes, %d failed",
            trigger,
            report.operations,
            report.changes,
            report.failed,
        )
        return report

    async def start(self) -> None:
        """Start the interval flush task."""
        if self.running:
            return
        self.running = True
        if self.settings.enabled:
            self._interval_task = asyncio.create_task(self._run_interval_flush())
        logger.info("Auto-save started (interval %.1fs)", self.settings.interval)

    async def stop(self) -> None:
        """Stop timers and wait for flushes already in flight."""
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

        if self._interval_task is not None:
            self._interval_task.cancel()
            await asyncio.gather(self._interval_task, return_exceptions=True)
            self._interval_task = None

        if self._flush_tasks:
            await asyncio.gather(*self._flush_tasks, return_exceptions=True)
        self.running = False

    async def cleanup(self) -> FlushReport:
        """Stop the queue and write everything that is still pending."""
        await self.stop()
        return await self.flush(MANUAL)

    async def update_config(self, **changes: Any) -> None:
        """Change settings and restart the timers."""
        was_running = self.running
        await self.stop()
        self.settings = replace(self.settings, **changes)
        if was_running:
            await self.start()

    def get_status(self) -> Dict[str, Any]:
        """Get the queue status."""
        return {
            "enabled": self.settings.enabled,
            "pending_changes": len(self.pending),
            "is_processing": self.is_processing,
            "last_action_time": self.last_action_time,
            "config": asdict(self.settings),
        }

    def _build_operations(self, changes: List[PendingChange]) -> List[Operation]:
        by_type: Dict[ChangeType, List[PendingChange]] = {}
        for change in changes:
            by_type.setdefault(change.type, []).append(change)

        operations: List[Operation] = []
        for change in by_type.pop(ChangeType.WORD_PROGRESS, []):
            if not change.language_code:
                logger.error("Dropping word progress change without a language code")
                continue
            operations.append((change, self._writer(change)))

        # Singletons keep only the most recent change
        for type_changes in by_type.values():
            latest = sorted(type_changes, key=lambda c: c.timestamp)[-1]
            operations.append((latest, self._writer(latest)))

        # Writes start high priority first, oldest first within a priority
        operations.sort(key=lambda op: (PRIORITY_RANK[op[0].priority], op[0].timestamp))
        return operations

    def _writer(self, change: PendingChange) -> Callable[[], Awaitable[Any]]:
        if change.type == ChangeType.WORD_PROGRESS:
            return lambda: self.storage.save_word_progress(change.language_code, change.data)
        if change.type == ChangeType.GAME_STATE:
            return lambda: self.storage.save_game_state(change.data)
        if change.type == ChangeType.SESSION_STATE:
            return lambda: self.storage.save_session_state(change.data)
        return lambda: self.storage.save_achievements(change.data)

    def _requeue(self, change: PendingChange) -> None:
        if change.key in self.pending:
            logger.debug("Newer change for %s queued during flush, not re-queuing", change.key)
            return
        self.pending[change.key] = replace(change, priority=Priority.LOW)
        monitoring.requeued_changes.labels(change_type=change.type.value).inc()
        logger.warning("Re-queued %s with low priority", change.key)

    def _schedule_idle_flush(self) -> None:
        loop = self._running_loop()
        if loop is None or not self.settings.enabled:
            return
        if self._idle_handle is not None:
            self._idle_handle.cancel()
        self._idle_handle = loop.call_later(
            self.settings.idle_threshold, self._spawn_flush, "idle"
        )

    def _spawn_flush(self, trigger: str) -> None:
        loop = self._running_loop()
        if loop is None:
            return
        if trigger == "idle":
            self._idle_handle = None
        task = loop.create_task(self.flush(trigger))
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    @staticmethod
    def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None

    async def _run_interval_flush(self) -> None:
        """Run the interval flush task."""
        while self.running:
            try:
                await asyncio.sleep(self.settings.interval)
                if self.pending:
                    await self.flush("interval")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in auto-save interval task: %s", str(e))
