"""
WasteWise — Reward Catalog.

Lists redeemable rewards and handles redemption. The listing is prefixed
with a synthetic "Your points" row so a front-end can compare the user's
balance against real reward costs; that row is never stored and can't be
redeemed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from src.core.errors import InsufficientBalance, NotFound
from src.data.models import LedgerEntry, LedgerKind, RewardOffer

if TYPE_CHECKING:
    from src.core.balance import BalanceCalculator
    from src.data.db import LedgerDB, NotificationDB, RewardDB, UserDB

logger = logging.getLogger(__name__)

POINTS_ENTRY_ID = 0


def points_entry(balance: int) -> RewardOffer:
    """The display-only row whose cost is the caller's current balance."""
    return RewardOffer(
        id=POINTS_ENTRY_ID,
        name="Your points",
        cost=balance,
        description="Redeem your earned points",
        collection_info="Points earned from reporting and collecting waste",
        is_available=True,
    )


class RewardCatalog:
    def __init__(
        self,
        rewards: RewardDB,
        balance: BalanceCalculator,
        ledger: LedgerDB,
        notifications: NotificationDB,
        users: UserDB,
    ) -> None:
        self._rewards = rewards
        self._balance = balance
        self._ledger = ledger
        self._notifications = notifications
        self._users = users

    def list_available(self, user_id: int) -> list[RewardOffer]:
        """Synthetic points row first, then every available catalog offer."""
        return [points_entry(self._balance.balance(user_id)), *self._rewards.list_available()]

    def add_offer(
        self,
        name: str,
        cost: int,
        description: str = "",
        collection_info: str = "",
        is_available: bool = True,
    ) -> RewardOffer:
        return self._rewards.add_offer(
            name=name,
            cost=cost,
            description=description,
            collection_info=collection_info,
            is_available=is_available,
        )

    def redeem(self, user_id: int, reward_id: int) -> LedgerEntry:
        """Spend points on a catalog offer.

        The balance check, the `redeemed` ledger entry and the confirmation
        notification happen in one transaction, so two concurrent
        redemptions can't both spend the same points.

        Raises:
            NotFound: unknown user, unknown/unavailable offer, or the synthetic points row.
            InsufficientBalance: the offer costs more than the current balance.
        """
        if reward_id == POINTS_ENTRY_ID:
            raise NotFound("The points summary is not a redeemable reward")

        with self._ledger.transaction() as conn:
            if self._users.get_user(user_id, conn=conn) is None:
                raise NotFound(f"User {user_id} not found")

            offer = self._rewards.get_offer(reward_id, conn=conn)
            if offer is None or not offer.is_available:
                raise NotFound(f"Reward {reward_id} is not available")

            balance = self._balance.balance(user_id, conn=conn)
            if offer.cost > balance:
                logger.warning(
                    "User #%d can't afford reward #%d (%d > %d)",
                    user_id, reward_id, offer.cost, balance,
                )
                raise InsufficientBalance(
                    f"'{offer.name}' costs {offer.cost} points, balance is {balance}"
                )

            entry = self._ledger.append(
                user_id, LedgerKind.REDEEMED, offer.cost, f"Redeemed {offer.name}", conn=conn,
            )
            self._notifications.create(
                user_id,
                f"You redeemed {offer.name} for {offer.cost} points!",
                "Redeem",
                conn=conn,
            )

        logger.info("User #%d redeemed reward #%d for %d points", user_id, reward_id, offer.cost)
        return entry
