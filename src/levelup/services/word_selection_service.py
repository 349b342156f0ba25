"""Service for picking the next word to practice."""
import logging
import random
import time
from datetime import UTC, datetime
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from levelup.config import LearningSettings
from levelup.models.learning_models import (
    SelectionCriteria,
    SessionContext,
    SessionTracker,
    Word,
    WordProgress,
    WordSelection,
)
from levelup.services.mastery_service import current_mastery
from levelup.services.spaced_repetition_service import SpacedRepetitionService

logger = logging.getLogger(__name__)

MAX_USED_WORDS = 100
USED_WORDS_TRIM = 20
DEFAULT_SESSION_MAX_AGE = 24 * 3600

Candidate = Tuple[Word, float, Optional[WordProgress]]


class WordSelectionService:
    """Scores candidate words and picks one with a bias towards weak words."""

    def __init__(
        self,
        scheduler: SpacedRepetitionService,
        learning_settings: Optional[LearningSettings] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the service."""
        self.scheduler = scheduler
        self.settings = learning_settings or LearningSettings()
        self.rng = rng or random.Random()
        self.clock = clock
        self.sessions: Dict[str, SessionTracker] = {}

    def create_session(
        self, session_id: str, max_recent_tracking: Optional[int] = None
    ) -> SessionTracker:
        """Start tracking the words shown in a session."""
        tracker = SessionTracker(
            session_id=session_id,
            started_at=self.clock(),
            max_recent_tracking=max_recent_tracking or self.settings.recent_words_window,
        )
        self.sessions[session_id] = tracker
        return tracker

    def mark_word_as_used(self, session_id: str, word_id: str) -> None:
        """Record that a word was shown in a session."""
        tracker = self.sessions.get(session_id) or self.create_session(session_id)
        if word_id not in tracker.used_word_ids:
            tracker.used_word_ids.append(word_id)
        if len(tracker.used_word_ids) > MAX_USED_WORDS:
            del tracker.used_word_ids[:USED_WORDS_TRIM]

        if word_id in tracker.recently_used_words:
            tracker.recently_used_words.remove(word_id)
        tracker.recently_used_words.append(word_id)
        overflow = len(tracker.recently_used_words) - tracker.max_recent_tracking
        if overflow > 0:
            del tracker.recently_used_words[:overflow]

    def select_word(
        self,
        words: List[Word],
        progress: Dict[str, WordProgress],
        criteria: Optional[SelectionCriteria] = None,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[WordSelection]:
        """Pick the next word, or None when no word is available."""
        criteria = criteria or SelectionCriteria()
        now = now or datetime.now(UTC)
        if not words:
            logger.warning("No words available for selection")
            return None

        tracker = None
        if session_id:
            tracker = self.sessions.get(session_id) or self.create_session(
                session_id, criteria.max_recent_tracking
            )

        excluded: Set[str] = set(criteria.exclude_word_ids) | set(criteria.recently_used_words)
        if tracker:
            excluded |= set(tracker.recently_used_words) | set(tracker.used_word_ids)

        scored = [
            (word, current_mastery(progress.get(word.id), now), progress.get(word.id))
            for word in words
        ]
        candidates = self._filter(scored, criteria, excluded)
        if not candidates:
            logger.warning("No candidates after filtering, loosening restrictions")
            loosened = set(tracker.recently_used_words[-3:]) if tracker else set()
            candidates = self._filter(scored, criteria, loosened)
        if not candidates:
            logger.error("Still no candidates available for word selection")
            return None

        ranked = sorted(
            candidates, key=lambda candidate: self._score(candidate, criteria, now)
        )
        top_count = min(criteria.top_candidates_count, max(1, int(len(ranked) * 0.2)))
        top = ranked[:top_count]
        word, mastery, _ = top[self._weighted_index(len(top))]

        if session_id:
            self.mark_word_as_used(session_id, word.id)

        selection = WordSelection(
            word=word,
            quiz_mode=self.scheduler.select_quiz_mode(mastery, self._quiz_context(criteria), word),
            reason=self._reason(mastery),
            algorithm=self._algorithm(criteria),
            mastery=mastery,
            pool_size=len(candidates),
            alternatives=[candidate[0] for candidate in top[:5]],
        )
        logger.debug("Selected word %s (%s)", word.term, selection.reason)
        return selection

    def select_word_for_regular_session(
        self, words: List[Word], progress: Dict[str, WordProgress], session_id: str
    ) -> Optional[WordSelection]:
        """Pick a word for a regular practice session."""
        criteria = SelectionCriteria(
            prioritize_struggling=True, difficulty="adaptive", max_recent_tracking=8
        )
        return self.select_word(words, progress, criteria, session_id)

    def select_word_for_challenge(
        self,
        words: List[Word],
        progress: Dict[str, WordProgress],
        session_id: str,
        difficulty: str,
    ) -> Optional[WordSelection]:
        """Pick a word for a challenge at the given difficulty."""
        criteria = SelectionCriteria(
            difficulty=difficulty,
            prioritize_struggling=difficulty == "easy",
            max_recent_tracking=12,
        )
        return self.select_word(words, progress, criteria, session_id)

    def select_word_for_review(
        self, words: List[Word], progress: Dict[str, WordProgress], session_id: str
    ) -> Optional[WordSelection]:
        """Pick a partially learned word for review."""
        criteria = SelectionCriteria(
            learning_phase="review",
            min_mastery=30,
            prioritize_struggling=True,
            max_recent_tracking=15,
        )
        return self.select_word(words, progress, criteria, session_id)

    def cleanup_old_sessions(self, max_age: float = DEFAULT_SESSION_MAX_AGE) -> int:
        """Forget sessions older than max_age seconds."""
        now = self.clock()
        stale = [
            sid for sid, tracker in self.sessions.items() if now - tracker.started_at > max_age
        ]
        for session_id in stale:
            del self.sessions[session_id]
            logger.debug("Cleaned up word selection session %s", session_id)
        return len(stale)

    def get_session_stats(self, session_id: str) -> Optional[Dict[str, float]]:
        """Get statistics of a tracked session."""
        tracker = self.sessions.get(session_id)
        if tracker is None:
            return None
        return {
            "used_words": len(tracker.used_word_ids),
            "recent_words": len(tracker.recently_used_words),
            "age_minutes": (self.clock() - tracker.started_at) / 60,
            "max_recent_tracking": tracker.max_recent_tracking,
        }

    @staticmethod
    def _filter(
        scored: Iterable[Candidate], criteria: SelectionCriteria, excluded: Set[str]
    ) -> List[Candidate]:
        candidates = []
        for word, mastery, record in scored:
            if word.id in excluded:
                continue
            if criteria.min_mastery is not None and mastery < criteria.min_mastery:
                continue
            if criteria.max_mastery is not None and mastery > criteria.max_mastery:
                continue
            if criteria.learning_phase == "introduction" and mastery > 20:
                continue
            if criteria.learning_phase == "mastery" and mastery < 80:
                continue
            candidates.append((word, mastery, record))
        return candidates

    @staticmethod
    def _score(candidate: Candidate, criteria: SelectionCriteria, now: datetime) -> float:
        """Priority score of a candidate; lower is picked first."""
        _, mastery, record = candidate
        score = mastery

        if criteria.prioritize_struggling and mastery < 30:
            score *= 0.1

        if record is not None:
            if record.error_rate > 0.5:
                score *= 0.2
            if record.last_practiced is not None:
                last = record.last_practiced
                if last.tzinfo is None:
                    last = last.replace(tzinfo=UTC)
                if (now - last).total_seconds() > 24 * 3600:
                    score *= 0.5

        if criteria.cognitive_load == "high" and mastery > 70:
            score *= 2
        if criteria.difficulty == "hard" and mastery < 50:
            score *= 2
        progress = criteria.session_progress
        if progress is not None and progress < 0.3 and mastery > 80:
            score *= 1.5

        return max(0.0, score)

    def _weighted_index(self, count: int) -> int:
        if count == 1:
            return 0
        weights = [0.5 ** index for index in range(count)]
        return self.rng.choices(range(count), weights=weights)[0]

    @staticmethod
    def _quiz_context(criteria: SelectionCriteria) -> SessionContext:
        if criteria.learning_phase == "introduction":
            return SessionContext.INTRODUCTION
        if criteria.learning_phase == "review":
            return SessionContext.REVIEW
        return SessionContext.PRACTICE

    @staticmethod
    def _reason(mastery: float) -> str:
        if mastery < 30:
            return "Struggling word - needs attention"
        if mastery < 50:
            return "Learning word - building familiarity"
        if mastery < 80:
            return "Practicing word - reinforcing knowledge"
        return "Mastered word - maintenance review"

    @staticmethod
    def _algorithm(criteria: SelectionCriteria) -> str:
        if criteria.prioritize_struggling:
            return "struggle-priority"
        if criteria.difficulty == "hard":
            return "difficulty-adaptive"
        if criteria.learning_phase:
            return f"{criteria.learning_phase}-optimized"
        return "mastery-balanced"
