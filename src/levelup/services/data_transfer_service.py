"""Service for exporting and importing all user progress."""
import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from levelup.models.learning_models import WordProgress
from levelup.models.storage_models import ImportResult, StorageResult
from levelup.services.mastery_service import current_mastery
from levelup.services.storage_service import (
    StorageService,
    invalid_progress_records,
    record_number,
)

logger = logging.getLogger(__name__)

EXPORT_VERSION = "2.0.0"
WORD_PROGRESS_PATTERN = r"^word_progress_"


def _mastery(record: Any) -> Optional[float]:
    if not isinstance(record, dict):
        return None
    try:
        return current_mastery(WordProgress.from_dict(record))
    except (ValueError, TypeError, AttributeError) as e:
        logger.warning("Skipping unreadable progress record in stats: %s", e)
        return None


def _language_stats(progress: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    masteries = [m for m in map(_mastery, progress.values()) if m is not None]
    return {
        "totalWords": len(progress),
        "practicedWords": sum(
            1 for record in progress.values() if record_number(record, "timesCorrect") > 0
        ),
        "totalXP": sum(record_number(record, "xp") for record in progress.values()),
        "averageMastery": round(sum(masteries) / len(masteries), 1) if masteries else 0,
    }


def _validate(document: Any) -> Optional[str]:
    if not isinstance(document, dict):
        return "Export document must be a JSON object"
    if not document.get("version") or not isinstance(document.get("wordProgress"), dict):
        return "Invalid export file format"
    return None


def _progress_error(progress: Any) -> Optional[str]:
    invalid = invalid_progress_records(progress)
    if invalid is None:
        return "progress must be an object"
    if invalid:
        return f"records must be objects ({', '.join(map(str, invalid[:5]))})"
    return None


class DataTransferService:
    """Builds export documents and restores them into storage."""

    def __init__(self, storage: StorageService):
        """Initialize the service with the storage facade."""
        self.storage = storage

    async def get_stored_languages(self) -> List[str]:
        """List language codes that have saved word progress."""
        keys = await self.storage.get_keys(WORD_PROGRESS_PATTERN)
        prefix = len("word_progress_")
        return sorted(key[prefix:] for key in keys.data or [])

    async def export_all_data(self) -> StorageResult[Dict[str, Any]]:
        """Build an export document with progress for every language."""
        logger.info("Starting data export...")
        languages = await self.get_stored_languages()
        progress = await self.storage.load_multiple_language_progress(languages)
        if not progress.success:
            return StorageResult.fail(progress.error or "Could not load word progress")

        word_progress = progress.data or {}
        game_state = await self.storage.load_game_state()
        session_state = await self.storage.load_session_state()
        preferences = await self.storage.load_user_preferences()

        document = {
            "version": EXPORT_VERSION,
            "exportDate": datetime.now(UTC).isoformat(),
            "wordProgress": word_progress,
            "gameState": game_state.data,
            "sessionState": session_state.data,
            "userPreferences": preferences.data,
            "metadata": {
                "totalLanguages": len(word_progress),
                "languageStats": {
                    code: _language_stats(records)
                    for code, records in word_progress.items()
                    if isinstance(records, dict)
                },
            },
        }
        logger.info(
            "Export complete: %d languages, %d words",
            len(word_progress),
            sum(len(records) for records in word_progress.values()),
        )
        return StorageResult.ok(document)

    async def export_to_file(self, path: Path) -> StorageResult[Path]:
        """Write an export document to a JSON file."""
        result = await self.export_all_data()
        if not result.success:
            return StorageResult.fail(result.error or "Export failed")
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(result.data, ensure_ascii=False, indent=2), encoding="utf-8")
        except OSError as e:
            logger.error("Failed to write export to %s: %s", path, e)
            return StorageResult.fail(f"Could not write export file: {e}")
        return StorageResult.ok(path)

    async def import_data(
        self,
        document: Dict[str, Any],
        merge_with_existing: bool = False,
        selected_languages: Optional[List[str]] = None,
    ) -> ImportResult:
        """Save an export document's progress into storage."""
        logger.info("Starting data import...")
        error = _validate(document)
        if error:
            logger.error("Import failed: %s", error)
            return ImportResult(success=False, message=f"Import failed: {error}", errors=[error])

        if document["version"] != EXPORT_VERSION:
            logger.warning(
                "Version mismatch: importing %s into %s", document["version"], EXPORT_VERSION
            )

        imported: List[str] = []
        errors: List[str] = []
        for language_code, progress in document["wordProgress"].items():
            if selected_languages is not None and language_code not in selected_languages:
                continue
            problem = _progress_error(progress)
            if problem:
                errors.append(f"Failed to import {language_code}: {problem}")
                logger.error("Skipping %s on import: %s", language_code, problem)
                continue

            if merge_with_existing:
                existing = await self.storage.load_word_progress(language_code)
                progress = {**(existing.data or {}), **progress}

            result = await self.storage.save_word_progress(language_code, progress)
            if result.success:
                imported.append(language_code)
                logger.info("Imported %d words for %s", len(progress), language_code)
            else:
                message = f"Failed to import {language_code}: {result.error}"
                errors.append(message)
                logger.error(message)

        if selected_languages is None and isinstance(document.get("userPreferences"), dict):
            current = await self.storage.load_user_preferences()
            merged = {**(current.data or {}), **document["userPreferences"]}
            result = await self.storage.save_user_preferences(merged)
            if not result.success:
                errors.append("Failed to import user preferences")

        message = (
            f"Successfully imported {len(imported)} language(s): {', '.join(imported)}"
            if imported
            else "No data was imported"
        )
        logger.info("Import complete: %s", message)
        return ImportResult(
            success=bool(imported), message=message, imported_languages=imported, errors=errors
        )

    async def import_from_file(
        self,
        path: Path,
        merge_with_existing: bool = False,
        selected_languages: Optional[List[str]] = None,
    ) -> ImportResult:
        """Import an export document from a JSON file."""
        try:
            document = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Could not read import file %s: %s", path, e)
            return ImportResult(success=False, message=f"Import failed: {e}", errors=[str(e)])
        return await self.import_data(document, merge_with_existing, selected_languages)

    def preview_import(self, document: Dict[str, Any]) -> StorageResult[Dict[str, Any]]:
        """Summarize an export document without writing anything."""
        error = _validate(document)
        if error:
            return StorageResult.fail(error)

        languages = [
            {
                "code": code,
                "wordCount": len(progress),
                "totalXP": sum(record_number(record, "xp") for record in progress.values()),
            }
            for code, progress in document["wordProgress"].items()
            if _progress_error(progress) is None
        ]
        invalid = [
            code for code, progress in document["wordProgress"].items()
            if _progress_error(progress) is not None
        ]
        return StorageResult.ok(
            {
                "version": document["version"],
                "exportDate": document.get("exportDate"),
                "languages": languages,
                "invalidLanguages": invalid,
                "totalWords": sum(language["wordCount"] for language in languages),
            }
        )
