"""Spaced repetition engine: grouping, quiz modes, review scheduling and sessions."""
import logging
import random
from datetime import UTC, datetime, timedelta
from typing import Dict, List, Optional, Union

from levelup import monitoring
from levelup.config import LearningSettings
from levelup.models.learning_models import (
    AnswerResult,
    Direction,
    LearningPhase,
    LearningSession,
    QuizMode,
    SessionAnalysis,
    SessionContext,
    SessionItem,
    SessionType,
    Word,
    WordGroup,
    WordProgress,
)
from levelup.services.mastery_service import current_mastery

logger = logging.getLogger(__name__)

# Review multiplier used for each learning phase
PHASE_REVIEW_MULTIPLIER = {
    LearningPhase.INTRODUCTION: "struggling",
    LearningPhase.LEARNING: "learning",
    LearningPhase.CONSOLIDATION: "learned",
    LearningPhase.MASTERY: "mastered",
}

ProgressMap = Dict[str, WordProgress]


class SpacedRepetitionService:
    """Decides which words to practice, when, and with which quiz mode."""

    def __init__(
        self,
        learning_settings: Optional[LearningSettings] = None,
        rng: Optional[random.Random] = None,
    ):
        """Initialize the engine with learning settings and a random source."""
        self.settings = learning_settings or LearningSettings()
        self.rng = rng or random.Random()

    def get_word_learning_phase(self, mastery: float) -> LearningPhase:
        """Classify a mastery value into a learning phase."""
        if mastery < self.settings.introduction_threshold:
            return LearningPhase.INTRODUCTION
        if mastery < self.settings.learning_threshold:
            return LearningPhase.LEARNING
        if mastery < self.settings.consolidation_threshold:
            return LearningPhase.CONSOLIDATION
        return LearningPhase.MASTERY

    def select_quiz_mode(
        self,
        mastery: float,
        session_context: Union[SessionContext, str],
        word: Optional[Word] = None,
    ) -> QuizMode:
        """Pick a quiz mode whose difficulty tracks the word's mastery.

        New words and introduction sessions always get multiple choice.
        Fill-in-the-blank needs sentence context and very high mastery.
        """
        context = SessionContext(session_context)
        phase = self.get_word_learning_phase(mastery)
        if phase == LearningPhase.INTRODUCTION or context == SessionContext.INTRODUCTION:
            return QuizMode.MULTIPLE_CHOICE

        can_fill = word is not None and word.supports_fill_in_the_blank
        roll = self.rng.random()

        if context == SessionContext.REVIEW and mastery > self.settings.learning_threshold:
            if can_fill and mastery >= 85:
                if roll < 0.35:
                    return QuizMode.OPEN_ANSWER
                if roll < 0.55:
                    return QuizMode.FILL_IN_THE_BLANK
                return QuizMode.LETTER_SCRAMBLE
            return QuizMode.OPEN_ANSWER if roll < 0.7 else QuizMode.LETTER_SCRAMBLE

        if mastery < 30:
            return QuizMode.MULTIPLE_CHOICE
        if mastery < 60:
            return QuizMode.LETTER_SCRAMBLE if roll < 0.6 else QuizMode.MULTIPLE_CHOICE
        if mastery < 85:
            if 0.3 <= roll < 0.6:
                return QuizMode.OPEN_ANSWER
            return QuizMode.LETTER_SCRAMBLE

        if can_fill and mastery >= 90:
            if roll < 0.25:
                return QuizMode.FILL_IN_THE_BLANK
            if roll < 0.6:
                return QuizMode.OPEN_ANSWER
            return QuizMode.LETTER_SCRAMBLE
        return QuizMode.OPEN_ANSWER if roll < 0.7 else QuizMode.LETTER_SCRAMBLE

    def calculate_next_review_time(
        self, mastery: float, correct_streak: int, last_practiced: datetime
    ) -> datetime:
        """Compute when a word is next due for review."""
        intervals = self.settings.review_intervals
        index = min(max(0, correct_streak), len(intervals) - 1)
        phase = self.get_word_learning_phase(mastery)
        multiplier = self.settings.phase_multipliers[PHASE_REVIEW_MULTIPLIER[phase]]
        if last_practiced.tzinfo is None:
            last_practiced = last_practiced.replace(tzinfo=UTC)
        return last_practiced + timedelta(hours=intervals[index] * multiplier)

    def create_word_groups(
        self,
        words: List[Word],
        progress: ProgressMap,
        now: Optional[datetime] = None,
    ) -> List[WordGroup]:
        """Split words into phase groups of a working-memory friendly size.

        Each phase is sorted weakest first and split into evenly sized groups
        within the min..max band. Words are never dropped.
        """
        mastery = {word.id: current_mastery(progress.get(word.id), now) for word in words}

        by_phase: Dict[LearningPhase, List[Word]] = {}
        for word in words:
            by_phase.setdefault(self.get_word_learning_phase(mastery[word.id]), []).append(word)

        groups: List[WordGroup] = []
        for phase in LearningPhase:
            phase_words = sorted(by_phase.get(phase, []), key=lambda w: mastery[w.id])
            for chunk in self._chunk(phase_words):
                groups.append(
                    WordGroup(
                        id=f"{phase.value}-{len(groups)}",
                        words=chunk,
                        phase=phase,
                        average_mastery=sum(mastery[w.id] for w in chunk) / len(chunk),
                    )
                )

        logger.debug(
            "Created %d word groups: %s",
            len(groups),
            ", ".join(f"{g.phase.value}: {len(g.words)}" for g in groups),
        )
        return groups

    def select_words_for_review(
        self,
        words: List[Word],
        progress: ProgressMap,
        max_review_words: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[Word]:
        """Get practiced words that are overdue, most overdue first."""
        now = now or datetime.now(UTC)
        limit = self.settings.max_review_words if max_review_words is None else max_review_words

        overdue = []
        for word in words:
            record = progress.get(word.id)
            if record is None or record.last_practiced is None:
                continue
            due = self.calculate_next_review_time(
                current_mastery(record, now), record.correct_streak, record.last_practiced
            )
            if due <= now:
                overdue.append((due, word))

        overdue.sort(key=lambda item: item[0])
        selected = [word for _, word in overdue[:limit]]
        if selected:
            logger.debug("Selected %d words for review", len(selected))
        return selected

    def create_learning_session(
        self,
        group: Optional[WordGroup],
        review_words: List[Word],
        progress: ProgressMap,
        now: Optional[datetime] = None,
    ) -> LearningSession:
        """Combine a word group with due review words."""
        group_words = group.words if group else []
        introducing = group is not None and group.phase == LearningPhase.INTRODUCTION
        context = SessionContext.INTRODUCTION if introducing else SessionContext.PRACTICE

        items = []
        for word in group_words:
            mastery = current_mastery(progress.get(word.id), now)
            items.append(
                SessionItem(
                    word=word,
                    quiz_mode=self.select_quiz_mode(mastery, context, word),
                    source="group",
                    direction=word.direction,
                    difficulty=max(1, int(mastery // 20)),
                )
            )

        in_group = {word.id for word in group_words}
        reviews = []
        for word in review_words:
            if word.id in in_group:
                continue
            mastery = current_mastery(progress.get(word.id), now)
            reviews.append(
                SessionItem(
                    word=word,
                    quiz_mode=self.select_quiz_mode(mastery, SessionContext.REVIEW, word),
                    source="review",
                    direction=word.direction,
                    difficulty=max(1, int(mastery // 20)),
                )
            )

        if introducing:
            session_type = SessionType.INTRODUCTION
        elif reviews and not items:
            session_type = SessionType.REVIEW
        elif reviews:
            session_type = SessionType.MIXED
        else:
            session_type = SessionType.PRACTICE

        monitoring.sessions_created.labels(session_type=session_type.value).inc()
        logger.debug(
            "Created %s session with %d group words and %d review words",
            session_type.value,
            len(items),
            len(reviews),
        )
        return LearningSession(
            group_id=group.id if group else None,
            words=items,
            review_words=reviews,
            session_type=session_type,
        )

    def interleave_session_words(self, session: LearningSession) -> List[SessionItem]:
        """Shuffle group and review items together, giving each a direction."""
        items = [
            SessionItem(
                word=item.word,
                quiz_mode=item.quiz_mode,
                source=item.source,
                direction=item.direction or self.rng.choice(list(Direction)),
                difficulty=item.difficulty,
            )
            for item in session.all_items
        ]

        # Fisher-Yates
        for i in range(len(items) - 1, 0, -1):
            j = self.rng.randint(0, i)
            items[i], items[j] = items[j], items[i]
        return items

    def analyze_session_performance(
        self, session: LearningSession, results: List[AnswerResult]
    ) -> SessionAnalysis:
        """Summarize a finished session and suggest adjustments."""
        correct = sum(1 for result in results if result.correct)
        accuracy = correct / len(results) if results else 0.0

        struggling: List[str] = []
        for result in results:
            if not result.correct and result.word_id not in struggling:
                struggling.append(result.word_id)

        timings: Dict[QuizMode, List[float]] = {}
        for result in results:
            timings.setdefault(result.quiz_mode, []).append(result.response_time)
        fastest = min(
            timings,
            key=lambda mode: sum(timings[mode]) / len(timings[mode]),
            default=QuizMode.MULTIPLE_CHOICE,
        )

        recommendations = []
        if accuracy < 0.7:
            recommendations.append("Focus on easier quiz modes to build confidence")
            recommendations.append("Review word context and definitions more carefully")
        session_words = {item.word.id for item in session.all_items}
        if len(struggling) > len(session_words) * 0.3:
            recommendations.append("Consider smaller word groups for better focus")
            recommendations.append("Schedule more frequent review sessions")
        if accuracy > 0.9:
            recommendations.append("Ready for more challenging quiz modes")
            recommendations.append("Consider introducing new words to this group")

        return SessionAnalysis(
            accuracy=accuracy,
            struggling_words=struggling,
            fastest_mode=fastest,
            recommendations=recommendations,
        )

    def _chunk(self, words: List[Word]) -> List[List[Word]]:
        """Split words into evenly sized groups near the ideal size.

        The group count is the one closest to ``len / ideal`` that keeps every
        group inside the min..max band. Sizes differ by at most one. Counts
        just above the maximum (8 and 9 with the default band) have no split
        inside the band; they yield two halves, keeping the maximum.
        """
        if not words:
            return []
        total = len(words)
        fewest = -(-total // self.settings.max_group_size)
        most = total // self.settings.min_group_size
        count = max(fewest, round(total / self.settings.ideal_group_size))
        if most >= fewest:
            count = min(count, most)
        else:
            count = fewest
        size, extra = divmod(total, count)

        chunks = []
        start = 0
        for index in range(count):
            end = start + size + (1 if index < extra else 0)
            chunks.append(words[start:end])
            start = end
        return chunks
