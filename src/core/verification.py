"""
WasteWise — Verification Gate.

Turns an oracle judgment on a collection photo into a task transition and a
point reward. The decision rule is deliberately tiny:

    accept  iff  wasteTypeMatch and quantityMatch and confidence > 0.70

On accept, four writes happen in a single transaction: the task moves to
`verified`, an `earned_collect` ledger entry is appended, a collection row is
logged and the collector is notified. On reject nothing is written.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING

from src.core.errors import Forbidden, InvalidTransition, NotFound, OracleParseError
from src.core.oracle import parse_judgment
from src.data.models import Judgment, LedgerKind, TaskStatus

if TYPE_CHECKING:
    from src.data.db import CollectionDB, LedgerDB, NotificationDB, TaskDB
    from src.data.models import Task
    from src.ports.oracle_port import VerificationOracle

logger = logging.getLogger(__name__)

_VERIFIABLE = (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED)


@dataclass
class VerificationOutcome:
    """Result of a verification that actually ran.

    `accepted=False` means the oracle answered and the answer fell short.
    A verification that could not run raises OracleParseError instead.
    """

    accepted: bool
    judgment: Judgment
    reward: int | None = None


def decide(judgment: Judgment, threshold: float = 0.70) -> bool:
    """Accept only when both matches hold and confidence is strictly above threshold."""
    return (
        judgment.waste_type_match is True
        and judgment.quantity_match is True
        and judgment.confidence > threshold
    )


def draw_reward(rng: random.Random, low: int = 10, high: int = 59) -> int:
    """Uniform integer in [low, high], both ends inclusive."""
    return rng.randint(low, high)


class VerificationGate:
    def __init__(
        self,
        tasks: TaskDB,
        ledger: LedgerDB,
        notifications: NotificationDB,
        collections: CollectionDB,
        oracle: VerificationOracle | None = None,
        rng: random.Random | None = None,
        threshold: float | None = None,
        reward_range: tuple[int, int] | None = None,
    ) -> None:
        from src.config import settings

        self._tasks = tasks
        self._ledger = ledger
        self._notifications = notifications
        self._collections = collections
        self._oracle = oracle
        self._rng = rng or random.Random()
        self._threshold = (
            threshold if threshold is not None else settings.VERIFICATION_CONFIDENCE_THRESHOLD
        )
        self._reward_range = reward_range or (
            settings.COLLECT_REWARD_MIN, settings.COLLECT_REWARD_MAX,
        )

    async def submit(
        self,
        task_id: int,
        collector_id: int,
        photo: bytes | None,
        judgment: Judgment | dict | str | None = None,
        mime_type: str = "image/jpeg",
    ) -> VerificationOutcome:
        """Verify a collection and, on acceptance, pay the collector.

        Args:
            task_id: Task being verified.
            collector_id: Collector submitting the proof; must be the assignee.
            photo: Raw image bytes, forwarded to the oracle.
            judgment: A judgment obtained elsewhere (Judgment, decoded JSON or
                raw reply text). When None the configured oracle is asked.

        Raises:
            NotFound, Forbidden, InvalidTransition: task preconditions failed.
            OracleParseError: no usable judgment could be obtained.
        """
        task = self._tasks.get_task(task_id)
        self._check_preconditions(task, task_id, collector_id)

        judgment = await self._obtain_judgment(task, photo, judgment, mime_type)

        if not decide(judgment, self._threshold):
            logger.warning(
                "Verification rejected for task #%d by collector #%d: %s",
                task_id, collector_id, judgment.to_dict(),
            )
            return VerificationOutcome(accepted=False, judgment=judgment)

        reward = draw_reward(self._rng, *self._reward_range)

        # The compare-and-swap in mark_verified re-checks status and collector,
        # so a second concurrent submission fails here and rolls back.
        with self._tasks.transaction() as conn:
            self._tasks.mark_verified(task_id, collector_id, judgment, conn=conn)
            self._ledger.append(
                collector_id,
                LedgerKind.EARNED_COLLECT,
                reward,
                "Points earned from waste collection",
                conn=conn,
            )
            self._collections.record(task_id, collector_id, conn=conn)
            self._notifications.create(
                collector_id,
                f"You've earned {reward} points for collecting {task.waste_type} waste!",
                "Reward",
                conn=conn,
            )

        logger.info(
            "Task #%d verified, collector #%d rewarded %d points", task_id, collector_id, reward,
        )
        return VerificationOutcome(accepted=True, judgment=judgment, reward=reward)

    @staticmethod
    def _check_preconditions(task: Task | None, task_id: int, collector_id: int) -> None:
        if task is None:
            raise NotFound(f"Task {task_id} not found")
        if task.status is TaskStatus.PENDING:
            raise InvalidTransition(f"Task {task_id} has not been claimed yet")
        if task.collector_id != collector_id:
            logger.warning(
                "Collector #%d submitted verification for task #%d owned by #%s",
                collector_id, task_id, task.collector_id,
            )
            raise Forbidden(f"Task {task_id} is assigned to another collector")
        if task.status not in _VERIFIABLE:
            raise InvalidTransition(f"Task {task_id} is already {task.status.value}")

    async def _obtain_judgment(
        self,
        task: Task,
        photo: bytes | None,
        judgment: Judgment | dict | str | None,
        mime_type: str,
    ) -> Judgment:
        if judgment is None:
            judgment = await self._consult_oracle(task, photo, mime_type)

        # Every judgment, whatever its source, passes the same validation
        if isinstance(judgment, Judgment):
            return parse_judgment(judgment.to_dict())
        return parse_judgment(judgment)

    async def _consult_oracle(self, task: Task, photo: bytes | None, mime_type: str) -> Judgment:
        if self._oracle is None:
            raise OracleParseError("No verification oracle configured")
        if not photo:
            raise OracleParseError("No photo supplied for verification")

        try:
            judgment = await self._oracle.judge(photo, task.waste_type, task.amount, mime_type)
        except OracleParseError:
            raise
        except Exception as exc:
            logger.error("Oracle failed for task #%d: %s", task.id, exc)
            raise OracleParseError(f"Verification service failed: {exc}") from exc

        if not isinstance(judgment, Judgment):
            raise OracleParseError(
                f"Oracle returned {type(judgment).__name__}, expected a Judgment"
            )
        return judgment
