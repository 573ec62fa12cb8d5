"""
WasteWise — Data Models.

Plain dataclasses for every persisted entity. Tasks, ledger entries and
notifications all belong to exactly one user; balances are never stored,
they are derived from the ledger.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum


class TaskStatus(str, Enum):
    """Lifecycle of a collection task. Order matters: transitions only move forward."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    VERIFIED = "verified"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    @property
    def has_collector(self) -> bool:
        return self is not TaskStatus.PENDING


_STATUS_ORDER = [
    TaskStatus.PENDING,
    TaskStatus.IN_PROGRESS,
    TaskStatus.COMPLETED,
    TaskStatus.VERIFIED,
]


class LedgerKind(str, Enum):
    EARNED_REPORT = "earned_report"
    EARNED_COLLECT = "earned_collect"
    REDEEMED = "redeemed"

    @property
    def is_credit(self) -> bool:
        return self.value.startswith("earn")


@dataclass
class User:
    """A registered reporter and/or collector, identified by email."""

    id: int
    email: str
    name: str
    created_at: str = ""
    telegram_user_id: int | None = None


@dataclass
class Judgment:
    """The oracle's verdict on a collection photo.

    JSON example (as stored on the task):
    {"wasteTypeMatch": true, "quantityMatch": true, "confidence": 0.85}
    """

    waste_type_match: bool
    quantity_match: bool
    confidence: float

    def to_dict(self) -> dict:
        return {
            "wasteTypeMatch": self.waste_type_match,
            "quantityMatch": self.quantity_match,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Judgment:
        return cls(
            waste_type_match=bool(data["wasteTypeMatch"]),
            quantity_match=bool(data["quantityMatch"]),
            confidence=float(data["confidence"]),
        )


@dataclass
class Task:
    """One reported waste occurrence waiting to be collected.

    `collector_id` is None exactly while the task is pending.
    """

    id: int
    reporter_id: int
    location: str
    waste_type: str                     # e.g. "plastic"
    amount: str                         # free-form label, e.g. "2 bags"
    status: TaskStatus = TaskStatus.PENDING
    created_at: str = ""
    photo_ref: str | None = None
    verification: Judgment | None = None
    collector_id: int | None = None


@dataclass
class LedgerEntry:
    """Append-only point event. `amount` is always positive; `kind` carries the sign."""

    id: int
    user_id: int
    kind: LedgerKind
    amount: int
    description: str
    created_at: str = ""

    @property
    def signed_amount(self) -> int:
        return self.amount if self.kind.is_credit else -self.amount


@dataclass
class RewardOffer:
    """A catalog item. id 0 is reserved for the synthetic "Your points" row."""

    id: int
    name: str
    cost: int
    description: str = ""
    collection_info: str = ""
    is_available: bool = True

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Notification:
    id: int
    user_id: int
    message: str
    type: str                # category tag, e.g. "Reward"
    is_read: bool = False
    created_at: str = ""


@dataclass
class CollectionRecord:
    """Proof that a verified collection happened."""

    id: int
    task_id: int
    collector_id: int
    collected_at: str
    status: str = "verified"
