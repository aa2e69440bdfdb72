"""Unlock rule document parsing."""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from learnpath.progress.rules import RequiredCompletion, RequirementType, UnlockRules


class TestUnlockRules:
    def test_empty_document(self):
        rules = UnlockRules.from_document(None)
        assert rules.is_empty
        assert rules.required_completions == []

    def test_full_document(self):
        rules = UnlockRules.from_document({
            "min_coins": 100,
            "required_completions": [{"type": "quizzes", "count": 2, "week_number": 1}],
            "min_previous_week_progress": 80,
        })
        assert rules.min_coins == 100
        assert rules.required_completions[0].kind is RequirementType.QUIZZES
        assert rules.required_completions[0].week_number == 1
        assert rules.min_previous_week_progress == Decimal("80")
        assert not rules.is_empty

    def test_unknown_keys_are_kept(self):
        rules = UnlockRules.from_document({"min_coins": 5, "streak_days": 3})
        assert rules.min_coins == 5

    def test_negative_threshold_rejected(self):
        with pytest.raises(ValidationError):
            UnlockRules.from_document({"min_coins": -1})


class TestRequiredCompletion:
    def test_unknown_type_has_no_kind(self):
        assert RequiredCompletion(type="badges", count=1).kind is None

    def test_describe(self):
        assert RequiredCompletion(type="topics", count=3).describe() == "Complete 3 topic(s)"
        assert RequiredCompletion(type="quizzes", count=1, week_number=2).describe() == "Pass 1 quiz(zes) in Week 2"
        assert RequiredCompletion(type="badges", count=2).describe() == "Complete 2 badges"
