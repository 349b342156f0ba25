"""Application root wiring every service together."""
import logging
from typing import Optional

from levelup.config import Settings, settings as default_settings
from levelup.models.base import create_db_engine, create_session_factory, init_db
from levelup.monitoring import start_monitoring
from levelup.services.cache_service import CacheService
from levelup.services.compression_service import CompressionService
from levelup.services.data_transfer_service import DataTransferService
from levelup.services.language_data_service import LanguageDataService
from levelup.services.local_storage import LocalStorageProvider
from levelup.services.remote_storage import RemoteStorageProvider
from levelup.services.spaced_repetition_service import SpacedRepetitionService
from levelup.services.storage_service import StorageService
from levelup.services.tiered_storage import TieredStorage
from levelup.services.word_selection_service import WordSelectionService


class LevelUpApp:
    """Main application class.

    Builds one instance of each service from the settings so that callers
    and tests never share hidden module-level state.
    """

    def __init__(self, settings: Optional[Settings] = None):
        """Initialize the application."""
        self.settings = settings or default_settings
        self.logger = logging.getLogger(__name__)
        self.running = False

        self.engine = create_db_engine(self.settings.database)
        self.session_factory = create_session_factory(self.engine)

        self.cache = CacheService(self.settings.cache)
        self.compression = CompressionService(self.settings.compression)
        self.local = LocalStorageProvider(self.session_factory)
        self.remote: Optional[RemoteStorageProvider] = None
        if self.settings.remote.enabled:
            self.remote = RemoteStorageProvider(
                self.settings.remote,
                self.settings.account,
                session_store=self.local,
            )
        self.tiered = TieredStorage(
            self.local,
            self.remote,
            self.compression,
            self.settings.remote,
            self.settings.storage,
        )
        self.storage = StorageService(
            self.tiered,
            self.cache,
            self.compression,
            self.settings.storage,
            self.settings.auto_save,
        )
        self.data_transfer = DataTransferService(self.storage)
        self.language_data = LanguageDataService(self.cache, self.settings.paths.languages_dir)
        self.scheduler = SpacedRepetitionService(self.settings.learning)
        self.word_selection = WordSelectionService(self.scheduler, self.settings.learning)

    async def start(self) -> None:
        """Start the application."""
        if self.running:
            return

        try:
            init_db(self.engine)
            self.logger.info("Database initialized")

            if self.settings.monitoring.enabled:
                start_monitoring(self.settings.monitoring.port)
                self.logger.info("Metrics exposed on port %d", self.settings.monitoring.port)

            await self.storage.start()
            self.logger.info("Storage services started")
            self.running = True

        except Exception as e:
            self.logger.error("Failed to start application: %s", str(e))
            await self.stop()
            raise

    async def stop(self) -> None:
        """Flush pending writes and release resources."""
        try:
            await self.storage.stop()
            if self.remote is not None:
                await self.remote.close()
            self.engine.dispose()
            self.logger.info("Application stopped")
        finally:
            self.running = False
