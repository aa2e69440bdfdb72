"""Week unlock rule documents.

Stored as JSON on ``weeks.unlock_rules``::

    {
        "min_coins": 100,
        "required_completions": [{"type": "quizzes", "count": 1, "week_number": 1}],
        "min_previous_week_progress": 80
    }

Unknown keys are kept (content editors may add criteria before the engine
knows them) and unknown requirement types evaluate as satisfied.
"""

from __future__ import annotations

import enum
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class RequirementType(str, enum.Enum):
    TOPICS = "topics"
    QUIZZES = "quizzes"
    ASSIGNMENTS = "assignments"
    LIVE_CLASSES = "live_classes"

    @classmethod
    def parse(cls, value: str) -> RequirementType | None:
        try:
            return cls(value)
        except ValueError:
            return None


_DESCRIPTIONS = {
    RequirementType.TOPICS: "Complete {count} topic(s){scope}",
    RequirementType.QUIZZES: "Pass {count} quiz(zes){scope}",
    RequirementType.ASSIGNMENTS: "Complete {count} assignment(s){scope}",
    RequirementType.LIVE_CLASSES: "Attend {count} live class(es){scope}",
}


class RequiredCompletion(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    count: int = Field(default=1, ge=0)
    week_number: int | None = Field(default=None, ge=1)

    @property
    def kind(self) -> RequirementType | None:
        return RequirementType.parse(self.type)

    def describe(self) -> str:
        scope = f" in Week {self.week_number}" if self.week_number else ""
        template = _DESCRIPTIONS.get(self.kind) if self.kind else None  # type: ignore[arg-type]
        if template is None:
            return f"Complete {self.count} {self.type}{scope}"
        return template.format(count=self.count, scope=scope)


class UnlockRules(BaseModel):
    model_config = ConfigDict(extra="allow")

    min_coins: int | None = Field(default=None, ge=0)
    required_completions: list[RequiredCompletion] = Field(default_factory=list)
    min_previous_week_progress: Decimal | None = Field(default=None, ge=0, le=100)

    @classmethod
    def from_document(cls, document: dict | None) -> UnlockRules:
        return cls.model_validate(document or {})

    @property
    def is_empty(self) -> bool:
        return (
            self.min_coins is None
            and not self.required_completions
            and self.min_previous_week_progress is None
        )
