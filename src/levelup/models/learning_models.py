"""Models for learning-related data structures."""
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class QuizMode(Enum):
    """Quiz modes ordered roughly by difficulty."""
    MULTIPLE_CHOICE = "multiple-choice"
    LETTER_SCRAMBLE = "letter-scramble"
    OPEN_ANSWER = "open-answer"
    FILL_IN_THE_BLANK = "fill-in-the-blank"


class Direction(Enum):
    """Practice direction."""
    TERM_TO_DEFINITION = "term-to-definition"
    DEFINITION_TO_TERM = "definition-to-term"


class LearningPhase(Enum):
    """Phase of a word, derived from its mastery."""
    INTRODUCTION = "introduction"
    LEARNING = "learning"
    CONSOLIDATION = "consolidation"
    MASTERY = "mastery"


class SessionContext(Enum):
    """Context a quiz mode is selected for."""
    INTRODUCTION = "introduction"
    PRACTICE = "practice"
    REVIEW = "review"


class SessionType(Enum):
    """Kind of assembled learning session."""
    INTRODUCTION = "introduction"
    REVIEW = "review"
    MIXED = "mixed"
    PRACTICE = "practice"


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Context:
    """Example sentence for a word."""
    sentence: str
    translation: str


@dataclass
class Word:
    """A vocabulary item."""
    id: str
    term: str
    definition: str
    context: Optional[Context] = None
    direction: Optional[Direction] = None

    @property
    def supports_fill_in_the_blank(self) -> bool:
        """Whether the word has sentence context usable for a cloze quiz."""
        return bool(self.context and self.context.sentence and self.context.translation)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Word":
        context = data.get("context")
        direction = data.get("direction")
        return cls(
            id=data["id"],
            term=data["term"],
            definition=data["definition"],
            context=Context(context.get("sentence", ""), context.get("translation", ""))
            if context else None,
            direction=Direction(direction) if direction else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "term": self.term, "definition": self.definition}
        if self.context:
            data["context"] = {
                "sentence": self.context.sentence,
                "translation": self.context.translation,
            }
        if self.direction:
            data["direction"] = self.direction.value
        return data


@dataclass
class DirectionalProgress:
    """Progress for a single practice direction."""
    times_correct: int = 0
    times_incorrect: int = 0
    xp: int = 0
    last_practiced: Optional[datetime] = None
    consecutive_correct: int = 0
    longest_streak: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DirectionalProgress":
        return cls(
            times_correct=data.get("timesCorrect", 0),
            times_incorrect=data.get("timesIncorrect", 0),
            xp=data.get("xp", 0),
            last_practiced=_parse_datetime(data.get("lastPracticed")),
            consecutive_correct=data.get("consecutiveCorrect", 0),
            longest_streak=data.get("longestStreak", 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timesCorrect": self.times_correct,
            "timesIncorrect": self.times_incorrect,
            "xp": self.xp,
            "lastPracticed": _format_datetime(self.last_practiced),
            "consecutiveCorrect": self.consecutive_correct,
            "longestStreak": self.longest_streak,
        }


@dataclass
class WordProgress:
    """Per-word learning record as persisted under ``word_progress_{lang}``."""
    word_id: str
    xp: int = 0
    last_practiced: Optional[datetime] = None
    times_correct: int = 0
    times_incorrect: int = 0
    directions: Dict[Direction, DirectionalProgress] = field(default_factory=dict)

    @property
    def correct_streak(self) -> int:
        """Net correct answers, never negative."""
        return max(0, self.times_correct - self.times_incorrect)

    @property
    def attempts(self) -> int:
        return self.times_correct + self.times_incorrect

    @property
    def error_rate(self) -> float:
        return self.times_incorrect / self.attempts if self.attempts else 0.0

    def copy(self, **changes: Any) -> "WordProgress":
        """Return a copy with the given fields replaced."""
        directions = {key: replace(value) for key, value in self.directions.items()}
        changes.setdefault("directions", directions)
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WordProgress":
        directions = {}
        for key, value in (data.get("directions") or {}).items():
            try:
                directions[Direction(key)] = DirectionalProgress.from_dict(value)
            except ValueError:
                continue
        return cls(
            word_id=data.get("wordId", ""),
            xp=max(0, int(data.get("xp", 0))),
            last_practiced=_parse_datetime(data.get("lastPracticed")),
            times_correct=data.get("timesCorrect", 0),
            times_incorrect=data.get("timesIncorrect", 0),
            directions=directions,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "wordId": self.word_id,
            "xp": self.xp,
            "lastPracticed": _format_datetime(self.last_practiced),
            "timesCorrect": self.times_correct,
            "timesIncorrect": self.times_incorrect,
        }
        if self.directions:
            data["directions"] = {
                key.value: value.to_dict() for key, value in self.directions.items()
            }
        return data


@dataclass
class WordGroup:
    """A batch of words sharing a learning phase."""
    id: str
    words: List[Word]
    phase: LearningPhase
    average_mastery: float
    session_count: int = 0


@dataclass
class SessionItem:
    """A word scheduled in a learning session."""
    word: Word
    quiz_mode: QuizMode
    source: str  # "group" or "review"
    direction: Optional[Direction] = None
    difficulty: int = 1  # 1-5 scale


@dataclass
class LearningSession:
    """Words and review words assembled for one practice session."""
    group_id: Optional[str]
    words: List[SessionItem]
    review_words: List[SessionItem]
    session_type: SessionType

    @property
    def all_items(self) -> List[SessionItem]:
        return self.words + self.review_words


@dataclass
class AnswerResult:
    """The outcome of one answered quiz question."""
    word_id: str
    correct: bool
    quiz_mode: QuizMode
    response_time: float  # seconds


@dataclass
class SessionAnalysis:
    """Post-session performance summary."""
    accuracy: float
    struggling_words: List[str]
    fastest_mode: QuizMode
    recommendations: List[str]


@dataclass
class SelectionCriteria:
    """Constraints and preferences for picking the next word."""
    exclude_word_ids: List[str] = field(default_factory=list)
    recently_used_words: List[str] = field(default_factory=list)
    max_recent_tracking: int = 8
    min_mastery: Optional[float] = None
    max_mastery: Optional[float] = None
    difficulty: str = "adaptive"  # easy, medium, hard or adaptive
    learning_phase: Optional[str] = None  # introduction, practice, review or mastery
    session_progress: Optional[float] = None  # 0-1
    cognitive_load: str = "medium"  # low, medium or high
    prioritize_struggling: bool = False
    top_candidates_count: int = 3


@dataclass
class SessionTracker:
    """Words already shown in a selection session."""
    session_id: str
    started_at: float
    max_recent_tracking: int = 8
    used_word_ids: List[str] = field(default_factory=list)
    recently_used_words: List[str] = field(default_factory=list)


@dataclass
class WordSelection:
    """A word picked for the next question, with the reason."""
    word: Word
    quiz_mode: QuizMode
    reason: str
    algorithm: str
    mastery: float
    pool_size: int
    alternatives: List[Word] = field(default_factory=list)
