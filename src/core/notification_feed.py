"""
WasteWise — Notification Feed.

Pull subscription over the notification table. Each poll returns unread
notifications the subscriber hasn't been handed yet; front-ends call it on a
fixed interval (30s by default) and push the results to the user.

This module is provider-agnostic: it depends on the NotificationPort
protocol, not on Telegram.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.data.db import NotificationDB, UserDB
    from src.data.models import Notification
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


class NotificationFeed:
    """Tracks which unread notifications were already delivered, per user.

    Delivery state lives in memory only: after a restart, every unread
    notification is delivered once more.
    """

    def __init__(self, notifications: NotificationDB) -> None:
        self._notifications = notifications
        self._delivered: dict[int, set[int]] = {}

    def poll(self, user_id: int) -> list[Notification]:
        """Return unread notifications not yet delivered to this user."""
        unread = self._notifications.list_unread(user_id)
        delivered = self._delivered.setdefault(user_id, set())
        # Forget ids that were read in the meantime
        delivered.intersection_update(n.id for n in unread)

        fresh = [n for n in unread if n.id not in delivered]
        delivered.update(n.id for n in fresh)
        return fresh

    def forget(self, user_id: int, notification_id: int) -> None:
        """Make a notification eligible for delivery again (e.g. after a failed push)."""
        self._delivered.get(user_id, set()).discard(notification_id)


async def push_new_notifications(
    notifier: NotificationPort,
    feed: NotificationFeed,
    user_db: UserDB,
) -> int:
    """Poll the feed for every chat-linked user and push what's new.

    A failure for one user is logged and doesn't stop the others; the failed
    notification is retried on the next tick.

    Returns the number of notifications pushed.
    """
    pushed = 0
    for user in user_db.list_users():
        if user.telegram_user_id is None:
            continue
        for notification in feed.poll(user.id):
            try:
                if await notifier.send_message(
                    user.telegram_user_id, f"\U0001f514 {notification.message}",
                ):
                    pushed += 1
            except Exception as exc:
                logger.error(
                    "Failed to push notification #%d to user #%d: %s",
                    notification.id, user.id, exc,
                )
                feed.forget(user.id, notification.id)

    if pushed:
        logger.info("Pushed %d notifications", pushed)
    return pushed
