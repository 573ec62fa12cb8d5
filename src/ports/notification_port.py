"""Notification port — abstract interface for pushing messages to users.

The notification feed depends on this protocol, never on a specific
messaging provider. `chat_id` is the provider-side address of the user.
"""

from __future__ import annotations

from typing import Protocol


class NotificationPort(Protocol):
    """Push interface used by the notification feed.

    `send_message` returns False when the user can never be reached on this
    channel (the push is dropped) and raises on transient failures (the push
    is retried).
    """

    async def send_message(self, chat_id: int, text: str) -> bool: ...
