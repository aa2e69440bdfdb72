"""Tagged source references for coin transactions.

``coin_transactions.source_type``/``source_id`` point at different tables
without a foreign key. ``SourceRef`` makes the valid combinations explicit:
content sources always carry an id, bonus/manual sources never do.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class SourceType(str, enum.Enum):
    TOPIC = "topic"
    LESSON = "lesson"
    MODULE = "module"
    QUIZ = "quiz"
    ASSIGNMENT = "assignment"
    LIVE_CLASS = "live_class"
    WEEK_COMPLETION = "week_completion"
    BONUS = "bonus"
    MANUAL = "manual"
    PURCHASE = "purchase"


# Sources that reference one concrete row.
_ID_REQUIRED = frozenset({
    SourceType.TOPIC,
    SourceType.LESSON,
    SourceType.MODULE,
    SourceType.QUIZ,
    SourceType.ASSIGNMENT,
    SourceType.LIVE_CLASS,
    SourceType.WEEK_COMPLETION,
})
_ID_FORBIDDEN = frozenset({SourceType.BONUS, SourceType.MANUAL})


class TransactionType(str, enum.Enum):
    EARNED = "earned"
    SPENT = "spent"
    BONUS = "bonus"
    PENALTY = "penalty"
    ADJUSTMENT = "adjustment"


@dataclass(frozen=True)
class SourceRef:
    """What a coin movement is about."""

    type: SourceType
    id: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.type, SourceType):
            object.__setattr__(self, "type", SourceType(self.type))
        if self.type in _ID_REQUIRED and self.id is None:
            msg = f"source type {self.type.value!r} requires an id"
            raise ValueError(msg)
        if self.type in _ID_FORBIDDEN and self.id is not None:
            msg = f"source type {self.type.value!r} does not take an id"
            raise ValueError(msg)

    @property
    def is_discrete(self) -> bool:
        """True when the source names one event that may be rewarded once."""
        return self.id is not None

    def idempotency_key(self, user_id: int, transaction_type: TransactionType) -> str | None:
        if not self.is_discrete:
            return None
        return f"{transaction_type.value}:{self.type.value}:{self.id}:{user_id}"

    @classmethod
    def topic(cls, topic_id: int) -> SourceRef:
        return cls(SourceType.TOPIC, topic_id)

    @classmethod
    def lesson(cls, lesson_id: int) -> SourceRef:
        return cls(SourceType.LESSON, lesson_id)

    @classmethod
    def module(cls, module_id: int) -> SourceRef:
        return cls(SourceType.MODULE, module_id)

    @classmethod
    def quiz(cls, quiz_id: int) -> SourceRef:
        return cls(SourceType.QUIZ, quiz_id)

    @classmethod
    def assignment(cls, assignment_id: int) -> SourceRef:
        return cls(SourceType.ASSIGNMENT, assignment_id)

    @classmethod
    def live_class(cls, live_class_id: int) -> SourceRef:
        return cls(SourceType.LIVE_CLASS, live_class_id)

    @classmethod
    def week_completion(cls, week_id: int) -> SourceRef:
        return cls(SourceType.WEEK_COMPLETION, week_id)

    @classmethod
    def bonus(cls) -> SourceRef:
        return cls(SourceType.BONUS)

    @classmethod
    def manual(cls) -> SourceRef:
        return cls(SourceType.MANUAL)

    @classmethod
    def purchase(cls, item_id: int | None = None) -> SourceRef:
        return cls(SourceType.PURCHASE, item_id)
