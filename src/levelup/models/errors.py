"""Exception types raised inside the storage and learning core."""


class LevelUpError(Exception):
    """Base class for application errors."""


class StorageError(LevelUpError):
    """A storage backend could not complete an operation."""


class CompressionError(StorageError):
    """A payload could not be compressed or restored."""


class RemoteStorageUnavailable(StorageError):
    """The remote API did not answer after all retries."""


class InvalidData(LevelUpError):
    """Stored or imported data has an unexpected shape."""


class CalculationError(LevelUpError):
    """A derived metric could not be computed."""


class CollectionFailed(LevelUpError):
    """Analytics events could not be collected."""


class PatternDetectionFailed(LevelUpError):
    """Learning pattern detection failed."""


class PredictionError(LevelUpError):
    """A prediction model failed to produce a result."""
