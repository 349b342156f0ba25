"""Mastery calculations derived from word progress."""
import logging
from datetime import UTC, datetime
from typing import Optional

from levelup.models.learning_models import (
    Direction,
    DirectionalProgress,
    QuizMode,
    WordProgress,
)

logger = logging.getLogger(__name__)

# Mastery levels
BEGINNER = 0
FAMILIAR = 30
INTERMEDIATE = 60
ADVANCED = 80
MASTERED = 100

# Hours per decay interval at each level
DECAY_INTERVAL_HOURS = {
    MASTERED: 720,
    ADVANCED: 168,
    INTERMEDIATE: 72,
    FAMILIAR: 24,
    BEGINNER: 4,
}

LEARNED_THRESHOLD = 70
MASTERED_THRESHOLD = 90


def _clamp(value: float) -> float:
    return max(float(BEGINNER), min(float(MASTERED), value))


def decay_rate(mastery: float) -> float:
    """Share of mastery lost per interval at this level."""
    if mastery >= ADVANCED:
        return 0.1
    if mastery >= INTERMEDIATE:
        return 0.15
    return 0.2


def decay_interval_hours(mastery: float) -> int:
    """Length of one decay interval at this level."""
    for level in (MASTERED, ADVANCED, INTERMEDIATE, FAMILIAR):
        if mastery >= level:
            return DECAY_INTERVAL_HOURS[level]
    return DECAY_INTERVAL_HOURS[BEGINNER]


def calculate_mastery_decay(
    last_practiced: Optional[datetime],
    xp: float,
    now: Optional[datetime] = None,
) -> float:
    """Compute the current mastery of a word.

    The base mastery is the XP clamped to 0-100. Each full interval since the
    last practice multiplies it by ``1 - rate``, with rate and interval
    depending on the base level. The result never increases with elapsed
    time and never decreases with more XP.
    """
    base = _clamp(xp)
    if last_practiced is None:
        return base

    now = now or datetime.now(UTC)
    if last_practiced.tzinfo is None:
        last_practiced = last_practiced.replace(tzinfo=UTC)
    hours = max(0.0, (now - last_practiced).total_seconds() / 3600)

    intervals = int(hours // decay_interval_hours(base))
    return base * (1 - decay_rate(base)) ** intervals


def current_mastery(progress: Optional[WordProgress], now: Optional[datetime] = None) -> float:
    """Mastery of a progress record, zero when the word was never practiced."""
    if progress is None:
        return 0.0
    return calculate_mastery_decay(progress.last_practiced, progress.xp, now)


def mastery_factor(mastery: float) -> float:
    """Learning-curve factor: gains shrink as mastery grows."""
    if mastery < 50:
        return 1.2
    if mastery < 70:
        return 1.0
    if mastery < 90:
        return 0.7
    return 0.3


def calculate_mastery_gain(current: float, is_correct: bool, quiz_mode: QuizMode) -> float:
    """Mastery after one answer, bounded to 0-100."""
    open_answer = quiz_mode == QuizMode.OPEN_ANSWER
    factor = mastery_factor(current)
    if is_correct:
        return min(float(MASTERED), current + (15 if open_answer else 10) * factor)
    return max(float(BEGINNER), current - (8 if open_answer else 5) * (2 - factor * 0.5))


def should_switch_quiz_mode(current: float, quiz_mode: QuizMode) -> bool:
    """Whether a word should move off its current quiz mode."""
    if quiz_mode == QuizMode.MULTIPLE_CHOICE:
        return current >= 50
    return current < 40


def is_word_learned(current: float) -> bool:
    return current >= LEARNED_THRESHOLD


def is_word_mastered(current: float) -> bool:
    return current >= MASTERED_THRESHOLD


def record_answer(
    progress: WordProgress,
    is_correct: bool,
    quiz_mode: QuizMode,
    direction: Optional[Direction] = None,
    now: Optional[datetime] = None,
) -> WordProgress:
    """Return updated progress after an answer.

    XP only grows: a correct answer adds the mastery gain for the current
    level, an incorrect one leaves XP unchanged and resets the streak.
    """
    now = now or datetime.now(UTC)
    mastery = current_mastery(progress, now)
    gained = 0
    if is_correct:
        gained = max(1, round(calculate_mastery_gain(mastery, True, quiz_mode) - mastery))

    updated = progress.copy(
        xp=progress.xp + gained,
        last_practiced=now,
        times_correct=progress.times_correct + int(is_correct),
        times_incorrect=progress.times_incorrect + int(not is_correct),
    )

    if direction is not None:
        record = updated.directions.get(direction) or DirectionalProgress()
        if is_correct:
            record.times_correct += 1
            record.xp += gained
            record.consecutive_correct += 1
            record.longest_streak = max(record.longest_streak, record.consecutive_correct)
        else:
            record.times_incorrect += 1
            record.consecutive_correct = 0
        record.last_practiced = now
        updated.directions[direction] = record

    logger.debug(
        "Recorded %s answer for %s: xp %d -> %d",
        "correct" if is_correct else "incorrect",
        progress.word_id,
        progress.xp,
        updated.xp,
    )
    return updated
