"""
WasteWise — UI-Agnostic Rewards Service.

The one entry point front-ends talk to: report waste, claim and verify
collection tasks, read balances, browse and redeem rewards, and read
notifications.

Every operation either succeeds completely or raises a RewardsError
subclass with no partial writes. Identity is the caller's job; the service
trusts the user ids it is given and only checks that they exist.
"""

from __future__ import annotations

import logging
import random
from typing import TYPE_CHECKING

from src.core.balance import BalanceCalculator
from src.core.catalog import RewardCatalog
from src.core.errors import NotFound
from src.core.notification_feed import NotificationFeed
from src.core.verification import VerificationGate, VerificationOutcome
from src.data.db import (
    CollectionDB,
    LedgerDB,
    NotificationDB,
    RewardDB,
    TaskDB,
    UserDB,
)
from src.data.models import LedgerKind

if TYPE_CHECKING:
    from src.data.models import (
        Judgment,
        LedgerEntry,
        Notification,
        RewardOffer,
        Task,
        User,
    )
    from src.ports.oracle_port import VerificationOracle

logger = logging.getLogger(__name__)


class RewardsService:
    """Stateless facade over the stores and the verification gate."""

    def __init__(
        self,
        db_path: str | None = None,
        oracle: VerificationOracle | None = None,
        rng: random.Random | None = None,
        balance_window: int | None = None,
    ) -> None:
        from src.config import settings

        self.users = UserDB(db_path)
        self.tasks = TaskDB(db_path)
        self.ledger = LedgerDB(db_path)
        self.rewards = RewardDB(db_path)
        self.notifications = NotificationDB(db_path)
        self.collections = CollectionDB(db_path)

        self._report_points = settings.REPORT_REWARD_POINTS
        self._balance = BalanceCalculator(self.ledger, window=balance_window)
        self._catalog = RewardCatalog(
            self.rewards, self._balance, self.ledger, self.notifications, self.users,
        )
        self._gate = VerificationGate(
            self.tasks, self.ledger, self.notifications, self.collections,
            oracle=oracle, rng=rng,
        )
        self.feed = NotificationFeed(self.notifications)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def register_user(
        self, email: str, name: str, telegram_user_id: int | None = None,
    ) -> User:
        return self.users.add_user(email, name, telegram_user_id=telegram_user_id)

    def get_user_by_email(self, email: str) -> User | None:
        return self.users.get_by_email(email)

    def get_user_by_telegram_id(self, telegram_user_id: int) -> User | None:
        return self.users.get_by_telegram_id(telegram_user_id)

    def _require_user(self, user_id: int, conn=None) -> User:
        user = self.users.get_user(user_id, conn=conn)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        return user

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(
        self,
        reporter_id: int,
        location: str,
        waste_type: str,
        amount: str,
        photo_ref: str | None = None,
    ) -> Task:
        """Report waste. The reporter earns a fixed reward in the same transaction."""
        points = self._report_points
        with self.tasks.transaction() as conn:
            self._require_user(reporter_id, conn=conn)
            task = self.tasks.add_task(
                reporter_id, location, waste_type, amount, photo_ref=photo_ref, conn=conn,
            )
            self.ledger.append(
                reporter_id,
                LedgerKind.EARNED_REPORT,
                points,
                "Points earned from reporting waste",
                conn=conn,
            )
            self.notifications.create(
                reporter_id,
                f"You've earned {points} points for reporting waste!",
                "Reward",
                conn=conn,
            )
        return task

    def get_task(self, task_id: int) -> Task:
        task = self.tasks.get_task(task_id)
        if task is None:
            raise NotFound(f"Task {task_id} not found")
        return task

    def list_tasks(self, limit: int = 10) -> list[Task]:
        return self.tasks.list_tasks(limit=limit)

    def list_recent_tasks(self, limit: int = 5) -> list[Task]:
        return self.tasks.list_recent(limit=limit)

    def claim_task(self, task_id: int, collector_id: int) -> Task:
        with self.tasks.transaction() as conn:
            self._require_user(collector_id, conn=conn)
            return self.tasks.claim(task_id, collector_id, conn=conn)

    def mark_task_completed(self, task_id: int, collector_id: int) -> Task:
        return self.tasks.mark_completed(task_id, collector_id)

    async def submit_verification(
        self,
        task_id: int,
        collector_id: int,
        photo: bytes | None,
        judgment: Judgment | dict | str | None = None,
        mime_type: str = "image/jpeg",
    ) -> VerificationOutcome:
        return await self._gate.submit(
            task_id, collector_id, photo, judgment=judgment, mime_type=mime_type,
        )

    # ------------------------------------------------------------------
    # Points and rewards
    # ------------------------------------------------------------------

    def get_balance(self, user_id: int) -> int:
        return self._balance.balance(user_id)

    def transaction_history(self, user_id: int, limit: int = 10) -> list[LedgerEntry]:
        return self.ledger.list_recent(user_id, limit=limit)

    def list_available_rewards(self, user_id: int) -> list[RewardOffer]:
        return self._catalog.list_available(user_id)

    def add_reward_offer(
        self,
        name: str,
        cost: int,
        description: str = "",
        collection_info: str = "",
        is_available: bool = True,
    ) -> RewardOffer:
        return self._catalog.add_offer(
            name, cost,
            description=description,
            collection_info=collection_info,
            is_available=is_available,
        )

    def redeem_reward(self, user_id: int, reward_id: int) -> LedgerEntry:
        return self._catalog.redeem(user_id, reward_id)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def list_unread_notifications(self, user_id: int) -> list[Notification]:
        return self.notifications.list_unread(user_id)

    def mark_notification_read(self, notification_id: int) -> None:
        self.notifications.mark_read(notification_id)
