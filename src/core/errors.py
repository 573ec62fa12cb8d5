"""Typed errors raised by the rewards core.

Callers (bot handlers, other front-ends) catch `RewardsError` subclasses
and turn them into user-facing messages. Nothing in the core recovers from
these locally.
"""

from __future__ import annotations


class RewardsError(Exception):
    """Base class for every failure the rewards core reports."""


class InvalidTransition(RewardsError):
    """Task status precondition violated (e.g. claiming a task that isn't pending)."""


class Forbidden(RewardsError):
    """The acting collector is not the task's assigned collector."""


class OracleParseError(RewardsError):
    """The verification oracle failed or replied with a malformed judgment."""


class InvalidAmount(RewardsError):
    """A ledger amount or catalog cost was not a positive integer."""


class NotFound(RewardsError):
    """A referenced user, task, reward or notification does not exist."""


class StoreUnavailable(RewardsError):
    """Transient storage failure (lock timeout, I/O error). Retry with backoff."""


class InsufficientBalance(RewardsError):
    """The user's balance does not cover the reward's cost."""


class DuplicateUser(RewardsError):
    """A user with this email (or chat account) already exists."""
