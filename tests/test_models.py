"""Tests for src.data.models — dataclass helpers and enums."""

import pytest

from src.data.models import (
    Judgment,
    LedgerEntry,
    LedgerKind,
    RewardOffer,
    Task,
    TaskStatus,
)


class TestTaskStatus:
    def test_order_is_forward(self):
        assert (
            TaskStatus.PENDING.rank
            < TaskStatus.IN_PROGRESS.rank
            < TaskStatus.COMPLETED.rank
            < TaskStatus.VERIFIED.rank
        )

    def test_only_pending_has_no_collector(self):
        assert TaskStatus.PENDING.has_collector is False
        assert TaskStatus.IN_PROGRESS.has_collector is True
        assert TaskStatus.VERIFIED.has_collector is True

    def test_values_match_storage(self):
        assert TaskStatus("in_progress") is TaskStatus.IN_PROGRESS

    def test_task_defaults(self):
        task = Task(id=1, reporter_id=1, location="Park", waste_type="plastic", amount="1 bag")
        assert task.status is TaskStatus.PENDING
        assert task.collector_id is None
        assert task.verification is None


class TestLedgerEntry:
    def test_earn_kinds_are_credits(self):
        assert LedgerKind.EARNED_REPORT.is_credit
        assert LedgerKind.EARNED_COLLECT.is_credit
        assert not LedgerKind.REDEEMED.is_credit

    @pytest.mark.parametrize("kind,expected", [
        (LedgerKind.EARNED_REPORT, 10),
        (LedgerKind.EARNED_COLLECT, 10),
        (LedgerKind.REDEEMED, -10),
    ])
    def test_signed_amount(self, kind, expected):
        entry = LedgerEntry(id=1, user_id=1, kind=kind, amount=10, description="")
        assert entry.signed_amount == expected

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            LedgerKind("earned_bonus")


class TestJudgment:
    def test_to_dict_uses_wire_names(self):
        j = Judgment(waste_type_match=True, quantity_match=False, confidence=0.8)
        assert j.to_dict() == {"wasteTypeMatch": True, "quantityMatch": False, "confidence": 0.8}

    def test_from_dict(self):
        j = Judgment.from_dict({"wasteTypeMatch": True, "quantityMatch": True, "confidence": 0.9})
        assert j == Judgment(True, True, 0.9)


class TestRewardOffer:
    def test_to_dict(self):
        offer = RewardOffer(id=3, name="Tote bag", cost=50)
        d = offer.to_dict()
        assert d["name"] == "Tote bag"
        assert d["is_available"] is True
