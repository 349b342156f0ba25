"""Service for compressing serialized storage payloads."""
import base64
import json
import logging
import math
import time
import zlib
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Tuple

from levelup import monitoring
from levelup.config import CompressionSettings
from levelup.models.errors import CompressionError
from levelup.models.storage_models import CompressedData

logger = logging.getLogger(__name__)

NO_COMPRESSION = "none"

# Substitution tokens come from the Unicode private use area
TOKEN_RANGE = range(0xE000, 0xF900)
MAX_DICTIONARY_PATTERNS = 100
MIN_PATTERN_LENGTH = 3
MAX_PATTERN_LENGTH = 10
# Dictionary substitution is skipped above this many characters
MAX_DICTIONARY_INPUT = 64 * 1024
# Patterns are counted on a prefix of this many characters
PATTERN_SAMPLE_SIZE = 4096


def serialize(data: Any) -> str:
    """Serialize data to the canonical JSON text that gets compressed."""
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def byte_size(text: str) -> int:
    return len(text.encode("utf-8"))


class CompressionService:
    """Best-effort payload compressor with a latency ceiling."""

    def __init__(
        self,
        compression_settings: Optional[CompressionSettings] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        """Initialize the service with compression settings."""
        self.settings = compression_settings or CompressionSettings()
        self.clock = clock
        self._compressors: Dict[str, Callable[[str], str]] = {
            "zlib": self._compress_zlib,
            "dictionary": self._compress_dictionary,
        }
        self._decompressors: Dict[str, Callable[[str], str]] = {
            NO_COMPRESSION: lambda payload: payload,
            "zlib": self._decompress_zlib,
            "dictionary": self._decompress_dictionary,
        }
        self.stats = {
            "compressions": 0,
            "skipped": 0,
            "original_bytes": 0,
            "compressed_bytes": 0,
        }

    def compress(self, data: Any) -> CompressedData:
        """Compress data, falling back to the original text when it does not pay off."""
        serialized = serialize(data)
        original_size = byte_size(serialized)
        uncompressed = CompressedData(
            payload=serialized,
            algorithm=NO_COMPRESSION,
            original_size=original_size,
            compressed_size=original_size,
        )

        if original_size < self.settings.min_size:
            self.stats["skipped"] += 1
            return uncompressed

        started = self.clock()
        for algorithm in self.settings.algorithms:
            compressor = self._compressors.get(algorithm)
            if compressor is None:
                logger.warning("Unknown compression algorithm configured: %s", algorithm)
                continue

            if self.clock() - started > self.settings.max_time:
                logger.debug("Compression budget spent before trying %s", algorithm)
                break

            try:
                payload = compressor(serialized)
            except (ValueError, zlib.error, MemoryError) as e:
                logger.warning("Compression with %s failed: %s", algorithm, e)
                continue

            elapsed = self.clock() - started
            if elapsed > self.settings.max_time:
                logger.debug(
                    "Compression took %.3fs, over the %.3fs budget; storing uncompressed",
                    elapsed,
                    self.settings.max_time,
                )
                break

            result = CompressedData(
                payload=payload,
                algorithm=algorithm,
                original_size=original_size,
                compressed_size=byte_size(payload),
            )
            if result.ratio <= self.settings.target_ratio:
                self._record(result)
                return result

            logger.debug(
                "%s reached ratio %.2f, target is %.2f",
                algorithm,
                result.ratio,
                self.settings.target_ratio,
            )

        self.stats["skipped"] += 1
        return uncompressed

    def decompress_text(self, envelope: CompressedData) -> str:
        """Restore the exact serialized text of an envelope."""
        decompressor = self._decompressors.get(envelope.algorithm)
        if decompressor is None:
            raise CompressionError(f"Unsupported compression algorithm: {envelope.algorithm}")
        try:
            return decompressor(envelope.payload)
        except (ValueError, zlib.error, KeyError, TypeError) as e:
            raise CompressionError(f"Corrupt {envelope.algorithm} payload: {e}") from e

    def decompress(self, envelope: CompressedData) -> Any:
        """Restore the original data of an envelope."""
        text = self.decompress_text(envelope)
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise CompressionError(f"Decompressed payload is not valid JSON: {e}") from e

    def estimate_compression_ratio(self, text: str) -> float:
        """Estimate the achievable ratio from the character entropy."""
        if not text:
            return 1.0
        frequencies = Counter(text)
        length = len(text)
        entropy = -sum(
            (count / length) * math.log2(count / length) for count in frequencies.values()
        )
        return max(0.3, entropy / 8 * 1.2)

    def is_compression_worthwhile(self, data: Any) -> bool:
        """Quick check whether compressing data is likely to beat the target ratio."""
        serialized = serialize(data)
        if byte_size(serialized) < self.settings.min_size:
            return False
        return self.estimate_compression_ratio(serialized) <= self.settings.target_ratio

    def get_compression_stats(self) -> Dict[str, Any]:
        """Get aggregate compression statistics."""
        original = self.stats["original_bytes"]
        compressed = self.stats["compressed_bytes"]
        return {
            **self.stats,
            "bytes_saved": original - compressed,
            "average_ratio": compressed / original if original else 1.0,
        }

    def _record(self, result: CompressedData) -> None:
        self.stats["compressions"] += 1
        self.stats["original_bytes"] += result.original_size
        self.stats["compressed_bytes"] += result.compressed_size
        monitoring.compression_bytes_saved.labels(algorithm=result.algorithm).inc(
            max(0, result.original_size - result.compressed_size)
        )

    @staticmethod
    def _compress_zlib(text: str) -> str:
        return base64.b64encode(zlib.compress(text.encode("utf-8"), 9)).decode("ascii")

    @staticmethod
    def _decompress_zlib(payload: str) -> str:
        return zlib.decompress(base64.b64decode(payload)).decode("utf-8")

    def _compress_dictionary(self, text: str) -> str:
        if len(text) > MAX_DICTIONARY_INPUT:
            raise ValueError(f"{len(text)} characters exceeds the dictionary input limit")
        tokens = (chr(code) for code in TOKEN_RANGE if chr(code) not in text)
        dictionary: List[Tuple[str, str]] = []
        compressed = text

        for pattern in self._frequent_patterns(text[:PATTERN_SAMPLE_SIZE]):
            if pattern not in compressed:
                continue
            token = next(tokens, None)
            if token is None:
                break
            compressed = compressed.replace(pattern, token)
            dictionary.append((token, pattern))

        return serialize({"dict": dictionary, "data": compressed})

    @staticmethod
    def _decompress_dictionary(payload: str) -> str:
        document = json.loads(payload)
        text = document["data"]
        # Substitutions are undone in reverse order of application
        for token, pattern in reversed(document["dict"]):
            text = text.replace(token, pattern)
        return text

    @staticmethod
    def _frequent_patterns(text: str) -> List[str]:
        patterns: Counter = Counter()
        for length in range(MIN_PATTERN_LENGTH, MAX_PATTERN_LENGTH + 1):
            for i in range(len(text) - length + 1):
                patterns[text[i:i + length]] += 1

        candidates = [(pattern, count) for pattern, count in patterns.items() if count > 2]
        candidates.sort(key=lambda item: (-item[1] * (len(item[0]) - 1), -len(item[0])))
        return [pattern for pattern, _ in candidates[:MAX_DICTIONARY_PATTERNS]]
