"""SourceRef construction rules and idempotency keys."""

import pytest

from learnpath.coins.sources import SourceRef, SourceType, TransactionType


class TestSourceRef:
    def test_content_source_requires_id(self):
        with pytest.raises(ValueError, match="requires an id"):
            SourceRef(SourceType.TOPIC)

    def test_bonus_rejects_id(self):
        with pytest.raises(ValueError, match="does not take an id"):
            SourceRef(SourceType.BONUS, 5)

    def test_string_type_is_coerced(self):
        ref = SourceRef("quiz", 3)
        assert ref.type is SourceType.QUIZ
        assert ref == SourceRef.quiz(3)

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            SourceRef("lottery", 1)

    def test_purchase_id_is_optional(self):
        assert SourceRef.purchase().id is None
        assert SourceRef.purchase(42).id == 42


class TestIdempotencyKey:
    def test_discrete_source_has_key(self):
        key = SourceRef.topic(7).idempotency_key(12, TransactionType.EARNED)
        assert key == "earned:topic:7:12"

    def test_key_differs_per_user(self):
        ref = SourceRef.week_completion(2)
        assert ref.idempotency_key(1, TransactionType.EARNED) != ref.idempotency_key(2, TransactionType.EARNED)

    def test_non_discrete_source_has_no_key(self):
        assert SourceRef.bonus().idempotency_key(1, TransactionType.BONUS) is None
        assert not SourceRef.manual().is_discrete
