"""
Trade Desk - Pending Evaluation Gate.

============================================================
PURPOSE
============================================================
Tracks the ratings each party owes after a completed trade
and blocks new trade actions until they are given.

CONTRACT:
- create_mutual_obligations writes exactly two rows
- resolve is called only after the ledger recorded the rating
- discard_obligations removes every row of an operation,
  completed or not (used on revert)

============================================================
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from database import generate_uuid

from .repository import PendingEvaluationRepository
from .types import (
    EvaluationsPendingError,
    InvalidInputError,
    PendingEvaluationRecord,
    utcnow,
)


logger = logging.getLogger(__name__)


class PendingEvaluationGate:
    """Bookkeeping of mandatory post-trade evaluations."""

    def __init__(
        self,
        repository: PendingEvaluationRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repository = repository
        self._clock = clock

    async def create_mutual_obligations(
        self,
        operation_id: str,
        party_a: int,
        party_b: int,
        session: Optional[AsyncSession] = None,
    ) -> List[PendingEvaluationRecord]:
        """A owes a rating of B, B owes a rating of A."""
        if party_a == party_b:
            raise InvalidInputError(
                f"Operation {operation_id}: parties must differ",
            )

        now = self._clock()
        records = [
            PendingEvaluationRecord(
                evaluation_id=generate_uuid(),
                operation_id=operation_id,
                evaluator_id=evaluator,
                target_id=target,
                created_at=now,
            )
            for evaluator, target in ((party_a, party_b), (party_b, party_a))
        ]
        await self._repository.insert_many(records, session=session)

        logger.info(
            f"Operation {operation_id}: evaluations owed by {party_a} and {party_b}"
        )
        return records

    async def has_outstanding(self, user_id: int) -> bool:
        return await self._repository.count(user_id, completed=False) > 0

    async def count_outstanding(self, user_id: int) -> int:
        return await self._repository.count(user_id, completed=False)

    async def list_outstanding(self, user_id: int) -> List[PendingEvaluationRecord]:
        return await self._repository.find(evaluator_id=user_id, completed=False)

    async def list_for_operation(self, operation_id: str) -> List[PendingEvaluationRecord]:
        return await self._repository.find(operation_id=operation_id)

    async def get_obligation(
        self,
        operation_id: str,
        evaluator_id: int,
    ) -> Optional[PendingEvaluationRecord]:
        records = await self._repository.find(
            operation_id=operation_id,
            evaluator_id=evaluator_id,
        )
        return records[0] if records else None

    async def resolve(
        self,
        operation_id: str,
        evaluator_id: int,
        session: Optional[AsyncSession] = None,
    ) -> bool:
        """
        Mark the evaluator's obligation for operation_id completed.

        Returns:
            False when there was no open obligation to resolve
        """
        resolved = await self._repository.mark_completed(
            operation_id,
            evaluator_id,
            self._clock(),
            session=session,
        )
        if resolved:
            logger.info(f"Operation {operation_id}: evaluation by {evaluator_id} resolved")
        else:
            logger.warning(
                f"Operation {operation_id}: no open evaluation for {evaluator_id}"
            )
        return resolved

    async def discard_obligations(
        self,
        operation_id: str,
        session: Optional[AsyncSession] = None,
    ) -> int:
        deleted = await self._repository.delete_for_operation(operation_id, session=session)
        if deleted:
            logger.info(f"Operation {operation_id}: {deleted} evaluation(s) discarded")
        return deleted

    async def ensure_can_transact(self, user_id: int, action: str) -> None:
        """Raise EvaluationsPendingError if the user still owes ratings."""
        outstanding = await self.count_outstanding(user_id)
        if outstanding:
            logger.warning(
                f"User {user_id} blocked from {action}: {outstanding} evaluation(s) pending"
            )
            raise EvaluationsPendingError(
                f"User {user_id} must give {outstanding} pending evaluation(s) "
                f"before {action}",
                outstanding=outstanding,
            )
