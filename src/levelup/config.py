"""Configuration settings for the storage and learning core."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Define base directory
BASE_DIR = Path(__file__).parent.parent.parent

# Load environment variables from .env file
env_file = ".env.test" if os.getenv("ENV") == "test" else ".env"
load_dotenv(env_file)


# Define data directories from environment variables
DATA_DIR = Path(os.getenv("DATA_DIR", "./data"))
LANGUAGES_DIR = Path(os.getenv("LANGUAGES_DIR", str(DATA_DIR / "languages")))
EXPORTS_DIR = DATA_DIR / "exports"

# Learning settings
REVIEW_INTERVALS_HOURS = [1, 4, 24, 72, 168, 720]  # 1h, 4h, 1d, 3d, 1w, 1 month
PHASE_MULTIPLIERS = {
    "struggling": 0.5,
    "learning": 1.0,
    "learned": 2.0,
    "mastered": 4.0,
}


def ensure_directories() -> None:
    """Ensure all required directories exist."""
    directories = [
        DATA_DIR,
        LANGUAGES_DIR,
        EXPORTS_DIR,
    ]

    for directory in directories:
        directory.mkdir(parents=True, exist_ok=True)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def get_compression_algorithms() -> list[str]:
    """Get compression algorithm preference order from environment variable."""
    raw = os.getenv("COMPRESSION_ALGORITHMS", "zlib,dictionary")
    return [name.strip() for name in raw.split(",") if name.strip()]


@dataclass
class PathSettings:
    """Path configuration settings."""
    base_dir: Path = BASE_DIR
    data_dir: Path = DATA_DIR
    languages_dir: Path = LANGUAGES_DIR
    exports_dir: Path = EXPORTS_DIR


@dataclass
class DatabaseSettings:
    """Database configuration settings."""
    url: str = os.getenv("DATABASE_URL", "sqlite:///levelup.db")
    echo: bool = _env_bool("DATABASE_ECHO", "false")


@dataclass
class LoggingSettings:
    """Logging configuration settings."""
    level: str = os.getenv("LOG_LEVEL", "INFO")
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    dir: Optional[str] = os.getenv("LOG_DIR", None)
    rotation: str = os.getenv("LOG_ROTATION", "midnight")
    interval: int = int(os.getenv("LOG_INTERVAL", "1"))
    backup_count: int = int(os.getenv("LOG_BACKUP_COUNT", "7"))


@dataclass
class CacheSettings:
    """In-memory cache settings."""
    max_size: int = int(os.getenv("CACHE_MAX_SIZE", str(50 * 1024 * 1024)))  # 50MB
    max_entries: int = int(os.getenv("CACHE_MAX_ENTRIES", "10000"))
    default_ttl: float = float(os.getenv("CACHE_DEFAULT_TTL", "3600"))  # 1 hour
    cleanup_interval: float = float(os.getenv("CACHE_CLEANUP_INTERVAL", "300"))  # 5 minutes


@dataclass
class CompressionSettings:
    """Payload compression settings."""
    min_size: int = int(os.getenv("COMPRESSION_MIN_SIZE", "1024"))
    target_ratio: float = float(os.getenv("COMPRESSION_TARGET_RATIO", "0.7"))
    max_time: float = float(os.getenv("COMPRESSION_MAX_TIME", "0.1"))  # seconds
    algorithms: list[str] = field(default_factory=get_compression_algorithms)


@dataclass
class RemoteSettings:
    """Remote storage API settings."""
    enabled: bool = _env_bool("REMOTE_ENABLED", "false")
    base_url: str = os.getenv("API_BASE_URL", "http://localhost:3000")
    api_key: Optional[str] = os.getenv("API_KEY")
    timeout: float = float(os.getenv("REMOTE_TIMEOUT", "10"))
    retries: int = int(os.getenv("REMOTE_RETRIES", "3"))
    retry_base_delay: float = float(os.getenv("REMOTE_RETRY_BASE_DELAY", "1"))
    allow_local_fallback: bool = _env_bool("ALLOW_LOCAL_FALLBACK", "true")
    shared_namespace: str = os.getenv("REMOTE_SHARED_NAMESPACE", "shared")


@dataclass
class AutoSaveSettings:
    """Background auto-save settings."""
    enabled: bool = _env_bool("AUTO_SAVE_ENABLED", "true")
    interval: float = float(os.getenv("AUTO_SAVE_INTERVAL", "30"))
    max_pending_actions: int = int(os.getenv("AUTO_SAVE_MAX_PENDING", "50"))
    idle_threshold: float = float(os.getenv("AUTO_SAVE_IDLE_THRESHOLD", "5"))


@dataclass
class StorageSettings:
    """Storage facade settings."""
    compression_threshold: int = int(os.getenv("STORAGE_COMPRESSION_THRESHOLD", str(5 * 1024)))
    cache_summaries: bool = _env_bool("STORAGE_CACHE_SUMMARIES", "true")
    analytics_ttl: float = float(os.getenv("STORAGE_ANALYTICS_TTL", "60"))


@dataclass
class LearningSettings:
    """Learning process settings."""
    min_group_size: int = int(os.getenv("MIN_GROUP_SIZE", "5"))
    ideal_group_size: int = int(os.getenv("IDEAL_GROUP_SIZE", "6"))
    max_group_size: int = int(os.getenv("MAX_GROUP_SIZE", "7"))
    review_intervals: list[int] = field(default_factory=lambda: list(REVIEW_INTERVALS_HOURS))
    phase_multipliers: dict[str, float] = field(default_factory=lambda: dict(PHASE_MULTIPLIERS))
    introduction_threshold: float = 20
    learning_threshold: float = 50
    consolidation_threshold: float = 80
    max_review_words: int = int(os.getenv("MAX_REVIEW_WORDS", "10"))
    recent_words_window: int = int(os.getenv("RECENT_WORDS_WINDOW", "8"))


@dataclass
class AccountSettings:
    """Cross-device account code settings."""
    code_length: int = 8
    code_expiry_seconds: int = int(os.getenv("ACCOUNT_CODE_EXPIRY_SECONDS", "3600"))


@dataclass
class MonitoringSettings:
    """Prometheus monitoring settings."""
    enabled: bool = _env_bool("METRICS_ENABLED", "false")
    port: int = int(os.getenv("METRICS_PORT", "9090"))


def get_path_settings() -> PathSettings:
    """Get path settings."""
    return PathSettings()


def get_database_settings() -> DatabaseSettings:
    """Get database settings."""
    return DatabaseSettings()


def get_logging_settings() -> LoggingSettings:
    """Get logging settings."""
    return LoggingSettings()


def get_cache_settings() -> CacheSettings:
    """Get cache settings."""
    return CacheSettings()


def get_compression_settings() -> CompressionSettings:
    """Get compression settings."""
    return CompressionSettings()


def get_remote_settings() -> RemoteSettings:
    """Get remote storage settings."""
    return RemoteSettings()


def get_auto_save_settings() -> AutoSaveSettings:
    """Get auto-save settings."""
    return AutoSaveSettings()


def get_storage_settings() -> StorageSettings:
    """Get storage facade settings."""
    return StorageSettings()


def get_learning_settings() -> LearningSettings:
    """Get learning settings."""
    return LearningSettings()


def get_account_settings() -> AccountSettings:
    """Get account settings."""
    return AccountSettings()


def get_monitoring_settings() -> MonitoringSettings:
    """Get monitoring settings."""
    return MonitoringSettings()


@dataclass
class Settings:
    """Main settings class that combines all configuration settings."""
    paths: PathSettings = field(default_factory=get_path_settings)
    database: DatabaseSettings = field(default_factory=get_database_settings)
    logging: LoggingSettings = field(default_factory=get_logging_settings)
    cache: CacheSettings = field(default_factory=get_cache_settings)
    compression: CompressionSettings = field(default_factory=get_compression_settings)
    remote: RemoteSettings = field(default_factory=get_remote_settings)
    auto_save: AutoSaveSettings = field(default_factory=get_auto_save_settings)
    storage: StorageSettings = field(default_factory=get_storage_settings)
    learning: LearningSettings = field(default_factory=get_learning_settings)
    account: AccountSettings = field(default_factory=get_account_settings)
    monitoring: MonitoringSettings = field(default_factory=get_monitoring_settings)

    def validate(self) -> None:
        """Validate settings and raise ValueError if invalid."""
        if self.cache.max_size <= 0 or self.cache.max_entries <= 0:
            raise ValueError("CACHE_MAX_SIZE and CACHE_MAX_ENTRIES must be positive")

        if self.cache.default_ttl <= 0 or self.cache.cleanup_interval <= 0:
            raise ValueError("CACHE_DEFAULT_TTL and CACHE_CLEANUP_INTERVAL must be positive")

        if self.compression.target_ratio <= 0 or self.compression.target_ratio > 1:
            raise ValueError("COMPRESSION_TARGET_RATIO must be between 0 and 1")

        if self.remote.retries < 1:
            raise ValueError("REMOTE_RETRIES must be positive")

        if self.remote.enabled and not self.remote.base_url:
            raise ValueError("API_BASE_URL is required when remote storage is enabled")

        if self.auto_save.interval <= 0 or self.auto_save.idle_threshold <= 0:
            raise ValueError("AUTO_SAVE_INTERVAL and AUTO_SAVE_IDLE_THRESHOLD must be positive")

        if self.auto_save.max_pending_actions < 1:
            raise ValueError("AUTO_SAVE_MAX_PENDING must be positive")

        if not (
            self.learning.min_group_size
            <= self.learning.ideal_group_size
            <= self.learning.max_group_size
        ):
            raise ValueError("Group sizes must satisfy MIN <= IDEAL <= MAX")

        if not self.learning.review_intervals or any(
            hours <= 0 for hours in self.learning.review_intervals
        ):
            raise ValueError("Review intervals must be positive")

        if self.account.code_expiry_seconds <= 0:
            raise ValueError("ACCOUNT_CODE_EXPIRY_SECONDS must be positive")


# Create global settings instance
settings = Settings()
settings.validate()
