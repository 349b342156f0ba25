"""Models for storage-related data structures."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")

ENVELOPE_MARKER = "__compressed__"


class Priority(Enum):
    """Write priority for storage operations and queued changes."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ChangeType(Enum):
    """Kinds of mutations accepted by the auto-save queue."""
    WORD_PROGRESS = "wordProgress"
    GAME_STATE = "gameState"
    SESSION_STATE = "sessionState"
    ACHIEVEMENTS = "achievements"


class HealthStatus(Enum):
    """Tri-state health verdict."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class StorageOptions:
    """Per-write storage policy.

    ``compress`` is tri-state: True forces an attempt, False disables it and
    None lets the store decide from the payload size.
    """
    compress: Optional[bool] = None
    priority: Priority = Priority.MEDIUM
    ttl: Optional[float] = None  # seconds

    def to_dict(self) -> Dict[str, Any]:
        """Convert options to the wire format."""
        return {
            "compress": self.compress,
            "priority": self.priority.value,
            "ttl": self.ttl,
        }


@dataclass
class StorageResult(Generic[T]):
    """Uniform result of every storage operation."""
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, data: Optional[T] = None, **metadata: Any) -> "StorageResult[T]":
        """Build a successful result."""
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def fail(cls, error: str, **metadata: Any) -> "StorageResult[T]":
        """Build a failed result."""
        return cls(success=False, error=error, metadata=metadata)

    @property
    def found(self) -> bool:
        """Whether a successful read actually located a value."""
        return self.success and self.metadata.get("found", self.data is not None)


@dataclass
class CompressedData:
    """A compression envelope."""
    payload: str
    algorithm: str
    original_size: int
    compressed_size: int

    @property
    def ratio(self) -> float:
        """Compressed size relative to the original size."""
        if self.original_size == 0:
            return 1.0
        return self.compressed_size / self.original_size

    def to_dict(self) -> Dict[str, Any]:
        """Convert the envelope to a JSON-compatible dict."""
        return {
            ENVELOPE_MARKER: True,
            "payload": self.payload,
            "algorithm": self.algorithm,
            "originalSize": self.original_size,
            "compressedSize": self.compressed_size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompressedData":
        """Create an envelope from its dict form."""
        return cls(
            payload=data["payload"],
            algorithm=data["algorithm"],
            original_size=data["originalSize"],
            compressed_size=data["compressedSize"],
        )

    @staticmethod
    def is_envelope(value: Any) -> bool:
        """Check whether a stored value is a compression envelope."""
        return isinstance(value, dict) and value.get(ENVELOPE_MARKER) is True


@dataclass
class CacheStats:
    """Snapshot of cache statistics."""
    hits: int = 0
    misses: int = 0
    size: int = 0
    entries: int = 0
    memory_usage: float = 0.0  # share of the byte budget in use
    oldest_entry: Optional[float] = None
    newest_entry: Optional[float] = None

    @property
    def hit_rate(self) -> float:
        """Hits divided by lookups, zero when nothing was looked up."""
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    @property
    def lookups(self) -> int:
        return self.hits + self.misses


@dataclass
class PendingChange:
    """A queued mutation waiting for the next flush."""
    type: ChangeType
    data: Any
    timestamp: float
    language_code: Optional[str] = None
    priority: Priority = Priority.MEDIUM

    @property
    def key(self) -> str:
        """Coalescing key, ``type:languageCode``."""
        return f"{self.type.value}:{self.language_code or 'global'}"


@dataclass
class FlushReport:
    """Outcome of one auto-save flush."""
    trigger: str
    changes: int = 0
    operations: int = 0
    failed: int = 0
    duration: float = 0.0
    skipped: bool = False


@dataclass
class UserSession:
    """Remote user session."""
    user_id: str
    session_token: str
    is_guest: bool = True
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "sessionToken": self.session_token,
            "isGuest": self.is_guest,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserSession":
        return cls(
            user_id=data["userId"],
            session_token=data["sessionToken"],
            is_guest=data.get("isGuest", True),
            created_at=data.get("createdAt"),
        )


@dataclass
class AccountCode:
    """A cross-device linking code."""
    code: str
    expires_at: datetime


@dataclass
class CacheEntry:
    """A cached value with its bookkeeping."""
    value: Any
    timestamp: float
    ttl: float
    size: int
    dependencies: frozenset = frozenset()
    access_count: int = 0
    last_access: float = 0.0

    @property
    def expires_at(self) -> float:
        return self.timestamp + self.ttl

    def is_expired(self, now: float) -> bool:
        """An entry is expired at or after ``timestamp + ttl``."""
        return now >= self.expires_at


@dataclass
class ImportResult:
    """Outcome of importing an export document."""
    success: bool
    message: str
    imported_languages: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
