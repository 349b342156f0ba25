"""Service for loading vocabulary lists per language."""
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from levelup.config import LANGUAGES_DIR
from levelup.models.learning_models import Word
from levelup.models.storage_models import StorageResult
from levelup.services.cache_service import CacheService

logger = logging.getLogger(__name__)

LANGUAGE_DATA_TTL = 24 * 3600

Loader = Callable[[str], Dict[str, Any]]


def language_data_key(language_code: str) -> str:
    return f"language_data_{language_code}"


class LanguageDataService:
    """Loads a language's word list on first use and keeps it cached."""

    def __init__(
        self,
        cache: CacheService,
        languages_dir: Path = LANGUAGES_DIR,
        loader: Optional[Loader] = None,
    ):
        """Initialize the service.

        Args:
            cache: Cache holding loaded word lists.
            languages_dir: Directory with ``{code}.json`` word lists.
            loader: Callable returning the raw document for a language code,
                replacing file loading.
        """
        self.cache = cache
        self.languages_dir = Path(languages_dir)
        self.loader = loader or self._load_file

    def get_or_load_language_data(self, language_code: str) -> StorageResult[List[Word]]:
        """Get the words of a language, loading them when not cached."""
        key = language_data_key(language_code)
        cached = self.cache.get(key)
        if cached is not None:
            return StorageResult.ok(cached, found=True, source="cache")

        try:
            document = self.loader(language_code)
            words = self._parse(language_code, document)
        except FileNotFoundError:
            logger.warning("No word list for language %s", language_code)
            return StorageResult.fail(f"Unknown language: {language_code}")
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error("Invalid word list for %s: %s", language_code, e)
            return StorageResult.fail(f"Invalid word list for {language_code}: {e}")

        self.cache.set(key, words, ttl=LANGUAGE_DATA_TTL, dependencies=[key])
        logger.info("Loaded %d words for %s", len(words), language_code)
        return StorageResult.ok(words, found=True, source="loader")

    def get_words_for_module(self, language_code: str, module_id: str) -> StorageResult[List[Word]]:
        """Get the words of one module, identified by the ``{module}:`` id prefix."""
        result = self.get_or_load_language_data(language_code)
        if not result.success:
            return result
        prefix = f"{module_id}:"
        return StorageResult.ok([word for word in result.data if word.id.startswith(prefix)])

    def get_available_languages(self) -> List[str]:
        """List language codes with a word list on disk."""
        if not self.languages_dir.exists():
            return []
        return sorted(path.stem for path in self.languages_dir.glob("*.json"))

    def invalidate(self, language_code: str) -> None:
        """Drop a cached word list so it is reloaded on next use."""
        self.cache.invalidate_by_dependency(language_data_key(language_code))

    def _load_file(self, language_code: str) -> Dict[str, Any]:
        path = self.languages_dir / f"{language_code}.json"
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    @staticmethod
    def _parse(language_code: str, document: Dict[str, Any]) -> List[Word]:
        raw_words = document["words"] if isinstance(document, dict) else document
        words = []
        for index, raw in enumerate(raw_words):
            data = dict(raw)
            data.setdefault("id", f"{language_code}-{index}")
            words.append(Word.from_dict(data))
        return words
