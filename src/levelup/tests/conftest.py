"""Test configuration."""
import os
from pathlib import Path
from typing import Dict

import pytest
from dotenv import load_dotenv
from faker import Faker

# Set test environment before any imports
os.environ["ENV"] = "test"

# Load test environment variables
test_env_path = Path(__file__).parents[3] / ".env.test"
load_dotenv(test_env_path)

# Import after environment setup
from levelup.config import (  # noqa: E402
    AutoSaveSettings,
    CacheSettings,
    CompressionSettings,
    DatabaseSettings,
    StorageSettings,
    ensure_directories,
)
from levelup.models.base import create_db_engine, create_session_factory, init_db  # noqa: E402
from levelup.services.cache_service import CacheService  # noqa: E402
from levelup.services.compression_service import CompressionService  # noqa: E402
from levelup.services.local_storage import LocalStorageProvider  # noqa: E402
from levelup.services.storage_service import StorageService  # noqa: E402
from levelup.services.tiered_storage import TieredStorage  # noqa: E402

fake = Faker()


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def setup_test_environment():
    """Set up test environment before each test."""
    ensure_directories()
    yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_factory(tmp_path: Path):
    """Create a fresh SQLite database for each test."""
    engine = create_db_engine(DatabaseSettings(url=f"sqlite:///{tmp_path / 'levelup.db'}"))
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def local_storage(session_factory) -> LocalStorageProvider:
    return LocalStorageProvider(session_factory)


@pytest.fixture
def cache(clock: FakeClock) -> CacheService:
    return CacheService(CacheSettings(), clock=clock)


@pytest.fixture
def compression() -> CompressionService:
    return CompressionService(CompressionSettings())


@pytest.fixture
def tiered(local_storage: LocalStorageProvider, compression: CompressionService) -> TieredStorage:
    return TieredStorage(local_storage, compression=compression)


@pytest.fixture
def storage_service(tiered: TieredStorage, cache: CacheService) -> StorageService:
    """Create a storage facade over local storage with timers disabled."""
    return StorageService(
        tiered,
        cache,
        storage_settings=StorageSettings(),
        auto_save_settings=AutoSaveSettings(enabled=False),
    )


def make_progress(count: int = 3, xp: int = 15) -> Dict[str, Dict]:
    """Build a word progress map with random word ids."""
    return {
        f"{fake.word()}:{index}": {
            "wordId": f"word:{index}",
            "xp": xp,
            "lastPracticed": "2024-01-01T00:00:00+00:00",
            "timesCorrect": 1,
            "timesIncorrect": 0,
        }
        for index in range(count)
    }
