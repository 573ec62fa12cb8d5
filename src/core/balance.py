"""
WasteWise — Balance Calculator.

A user's spendable balance is never stored. It is re-derived from the most
recent ledger entries every time it's asked for.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from src.data.db import LedgerDB
    from src.data.models import LedgerEntry

logger = logging.getLogger(__name__)


def compute_balance(entries: Iterable[LedgerEntry]) -> int:
    """Credits minus redemptions, clamped at zero."""
    total = sum(entry.signed_amount for entry in entries)
    return max(total, 0)


class BalanceCalculator:
    """Read-only view over the ledger.

    Only the newest `window` entries are summed (10 by default). A window
    of 0 sums the user's whole history.
    """

    def __init__(self, ledger: LedgerDB, window: int | None = None) -> None:
        if window is None:
            from src.config import settings
            window = settings.BALANCE_WINDOW
        self._ledger = ledger
        self._window = window

    def balance(self, user_id: int, conn: sqlite3.Connection | None = None) -> int:
        limit = self._window or None
        entries = self._ledger.list_recent(user_id, limit=limit, conn=conn)
        balance = compute_balance(entries)
        logger.debug("Balance for user #%d over %d entries: %d", user_id, len(entries), balance)
        return balance
