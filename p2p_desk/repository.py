"""
Trade Desk - Repository.

============================================================
PURPOSE
============================================================
Database operations for the trade desk.

RESPONSIBILITIES:
- Save/load operations, conditional status updates
- Atomic karma increments plus history rows
- Pending evaluation bookkeeping

CRITICAL REQUIREMENTS:
- Status changes only through update_conditional
- Karma counters only through increments (no read-modify-write)
- Every write method accepts an optional session so callers can
  group several writes in one transaction

============================================================
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from database import (
    Database,
    KarmaHistoryModel,
    KarmaRecordModel,
    OperationModel,
    PendingEvaluationModel,
    generate_uuid,
)

from .types import (
    KarmaHistoryEntry,
    KarmaRecord,
    LeaderboardEntry,
    OperationKind,
    OperationRecord,
    OperationStatus,
    PendingEvaluationRecord,
    QuotationMode,
    utcnow,
)


logger = logging.getLogger(__name__)


STAR_COLUMNS: Dict[int, str] = {stars: f"stars_{stars}" for stars in range(1, 6)}

KARMA_COUNTERS: Tuple[str, ...] = (
    "score",
    "given_positive",
    "given_negative",
) + tuple(STAR_COLUMNS.values())


# ============================================================
# MAPPERS
# ============================================================

def _model_to_operation(model: OperationModel) -> OperationRecord:
    return OperationRecord(
        operation_id=model.id,
        creator_id=model.creator_id,
        acceptor_id=model.acceptor_id,
        scope_id=model.scope_id,
        kind=OperationKind(model.kind),
        assets=list(model.assets or []),
        networks=list(model.networks or []),
        amount=model.amount,
        unit_price=model.unit_price,
        quotation_mode=QuotationMode(model.quotation_mode),
        status=OperationStatus(model.status),
        description=model.description,
        message_ref=model.message_ref,
        completion_requested_by=model.completion_requested_by,
        completion_requested_at=model.completion_requested_at,
        completed_at=model.completed_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
        expires_at=model.expires_at,
    )


def _to_column_value(value: Any) -> Any:
    if isinstance(value, (OperationStatus, OperationKind, QuotationMode)):
        return value.value
    return value


def _model_to_history_entry(model: KarmaHistoryModel) -> KarmaHistoryEntry:
    return KarmaHistoryEntry(
        timestamp=model.timestamp,
        delta=model.delta,
        star_rating=model.star_rating,
        comment=model.comment,
        evaluator_id=model.evaluator_id,
        evaluator_name=model.evaluator_name,
    )


def _model_to_karma(
    model: KarmaRecordModel,
    history: Optional[List[KarmaHistoryEntry]] = None,
) -> KarmaRecord:
    return KarmaRecord(
        user_id=model.user_id,
        scope_id=model.scope_id,
        score=model.score,
        given_positive=model.given_positive,
        given_negative=model.given_negative,
        star_tally={
            stars: getattr(model, column) for stars, column in STAR_COLUMNS.items()
        },
        history=history or [],
    )


def _model_to_pending(model: PendingEvaluationModel) -> PendingEvaluationRecord:
    return PendingEvaluationRecord(
        evaluation_id=model.id,
        operation_id=model.operation_id,
        evaluator_id=model.evaluator_id,
        target_id=model.target_id,
        completed=model.completed,
        completed_at=model.completed_at,
        created_at=model.created_at,
    )


# ============================================================
# OPERATION REPOSITORY
# ============================================================

class OperationRepository:
    """Persistence of trade offers."""

    def __init__(self, db: Database):
        self._db = db

    async def insert(
        self,
        record: OperationRecord,
        session: Optional[AsyncSession] = None,
    ) -> OperationRecord:
        model = OperationModel(
            id=record.operation_id,
            creator_id=record.creator_id,
            acceptor_id=record.acceptor_id,
            scope_id=record.scope_id,
            kind=record.kind.value,
            assets=list(record.assets),
            networks=list(record.networks),
            amount=record.amount,
            unit_price=record.unit_price,
            quotation_mode=record.quotation_mode.value,
            description=record.description,
            status=record.status.value,
            message_ref=record.message_ref,
            created_at=record.created_at,
            updated_at=record.updated_at,
            expires_at=record.expires_at,
        )
        async with self._db.transaction(session) as s:
            s.add(model)
            await s.flush()
        logger.debug(f"Operation {record.operation_id} inserted ({record.status.value})")
        return record

    async def get(
        self,
        operation_id: str,
        session: Optional[AsyncSession] = None,
    ) -> Optional[OperationRecord]:
        """findById."""
        async with self._db.transaction(session) as s:
            model = await s.get(OperationModel, operation_id, populate_existing=True)
            return _model_to_operation(model) if model else None

    async def find_one(self, **filters: Any) -> Optional[OperationRecord]:
        """First operation matching column equality filters."""
        stmt = select(OperationModel).filter_by(
            **{key: _to_column_value(value) for key, value in filters.items()}
        ).limit(1)
        async with self._db.transaction() as s:
            model = (await s.execute(stmt)).scalars().first()
            return _model_to_operation(model) if model else None

    async def find(
        self,
        creator_id: Optional[int] = None,
        acceptor_id: Optional[int] = None,
        participant_id: Optional[int] = None,
        scope_id: Optional[int] = None,
        statuses: Optional[Iterable[OperationStatus]] = None,
        limit: Optional[int] = None,
    ) -> List[OperationRecord]:
        """Operations matching all given filters, newest first."""
        stmt = select(OperationModel)
        if creator_id is not None:
            stmt = stmt.where(OperationModel.creator_id == creator_id)
        if acceptor_id is not None:
            stmt = stmt.where(OperationModel.acceptor_id == acceptor_id)
        if participant_id is not None:
            stmt = stmt.where(
                (OperationModel.creator_id == participant_id)
                | (OperationModel.acceptor_id == participant_id)
            )
        if scope_id is not None:
            stmt = stmt.where(OperationModel.scope_id == scope_id)
        if statuses is not None:
            stmt = stmt.where(OperationModel.status.in_([s.value for s in statuses]))
        stmt = stmt.order_by(OperationModel.created_at.desc(), OperationModel.id)
        if limit:
            stmt = stmt.limit(limit)

        async with self._db.transaction() as s:
            result = await s.execute(stmt)
            return [_model_to_operation(m) for m in result.scalars().all()]

    async def find_expired(self, now: datetime) -> List[OperationRecord]:
        """Pending offers whose expiry is strictly before now."""
        stmt = (
            select(OperationModel)
            .where(
                OperationModel.status == OperationStatus.PENDING.value,
                OperationModel.expires_at < now,
            )
            .order_by(OperationModel.expires_at)
        )
        async with self._db.transaction() as s:
            result = await s.execute(stmt)
            return [_model_to_operation(m) for m in result.scalars().all()]

    async def update_conditional(
        self,
        operation_id: str,
        expected_states: Iterable[OperationStatus],
        patch: Dict[str, Any],
        session: Optional[AsyncSession] = None,
    ) -> Optional[OperationRecord]:
        """
        Apply patch only if the stored status is still one of expected_states.

        Single UPDATE ... WHERE id = ? AND status IN (...). Two
        concurrent callers with the same expectation cannot both
        match a row.

        Returns:
            The updated record, or None when no row matched
        """
        values = {key: _to_column_value(value) for key, value in patch.items()}
        values.setdefault("updated_at", utcnow())

        stmt = (
            update(OperationModel)
            .where(
                OperationModel.id == operation_id,
                OperationModel.status.in_([s.value for s in expected_states]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        async with self._db.transaction(session) as s:
            result = await s.execute(stmt)
            if result.rowcount != 1:
                return None
            model = await s.get(OperationModel, operation_id, populate_existing=True)
            return _model_to_operation(model)

    async def set_message_ref(self, operation_id: str, message_ref: Optional[str]) -> None:
        """Store the announcement handle; does not touch status."""
        stmt = (
            update(OperationModel)
            .where(OperationModel.id == operation_id)
            .values(message_ref=message_ref)
            .execution_options(synchronize_session=False)
        )
        async with self._db.transaction() as s:
            await s.execute(stmt)

    async def delete_conditional(
        self,
        operation_id: str,
        expected_states: Iterable[OperationStatus],
    ) -> bool:
        stmt = (
            delete(OperationModel)
            .where(
                OperationModel.id == operation_id,
                OperationModel.status.in_([s.value for s in expected_states]),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._db.transaction() as s:
            result = await s.execute(stmt)
            return result.rowcount == 1


# ============================================================
# KARMA REPOSITORY
# ============================================================

class KarmaRepository:
    """
    Persistence of reputation records.

    Counters are changed with INSERT ... ON CONFLICT DO UPDATE so
    concurrent evaluations of the same (user, scope) never lose an
    increment.
    """

    def __init__(self, db: Database):
        self._db = db

    # --------------------------------------------------------
    # WRITES
    # --------------------------------------------------------

    async def increment(
        self,
        session: AsyncSession,
        user_id: int,
        scope_id: int,
        increments: Dict[str, int],
    ) -> None:
        """Atomically add increments to the (user, scope) counters."""
        now = utcnow()
        row = {column: 0 for column in KARMA_COUNTERS}
        row.update(increments)
        row.update(user_id=user_id, scope_id=scope_id, created_at=now, updated_at=now)

        dialect = self._db.engine.dialect.name
        if dialect in ("postgresql", "sqlite"):
            insert = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert(KarmaRecordModel).values(**row)
            set_ = {
                column: getattr(KarmaRecordModel, column) + getattr(stmt.excluded, column)
                for column in increments
            }
            set_["updated_at"] = stmt.excluded.updated_at
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id", "scope_id"],
                set_=set_,
            )
            await session.execute(stmt)
            return

        # Generic dialects: write-first update, insert on miss
        values = {
            column: getattr(KarmaRecordModel, column) + amount
            for column, amount in increments.items()
        }
        values["updated_at"] = now
        result = await session.execute(
            update(KarmaRecordModel)
            .where(
                KarmaRecordModel.user_id == user_id,
                KarmaRecordModel.scope_id == scope_id,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.add(KarmaRecordModel(**row))
            await session.flush()

    async def add_history(
        self,
        session: AsyncSession,
        user_id: int,
        scope_id: int,
        entry: KarmaHistoryEntry,
    ) -> None:
        session.add(KarmaHistoryModel(
            user_id=user_id,
            scope_id=scope_id,
            timestamp=entry.timestamp,
            delta=entry.delta,
            star_rating=entry.star_rating,
            comment=entry.comment,
            evaluator_id=entry.evaluator_id,
            evaluator_name=entry.evaluator_name,
        ))
        await session.flush()

    # --------------------------------------------------------
    # READS
    # --------------------------------------------------------

    async def get(
        self,
        user_id: int,
        scope_id: int,
        with_history: bool = True,
    ) -> Optional[KarmaRecord]:
        async with self._db.transaction() as s:
            model = (await s.execute(
                select(KarmaRecordModel).where(
                    KarmaRecordModel.user_id == user_id,
                    KarmaRecordModel.scope_id == scope_id,
                )
            )).scalars().first()
            if model is None:
                return None

            history: List[KarmaHistoryEntry] = []
            if with_history:
                rows = (await s.execute(
                    select(KarmaHistoryModel)
                    .where(
                        KarmaHistoryModel.user_id == user_id,
                        KarmaHistoryModel.scope_id == scope_id,
                    )
                    .order_by(KarmaHistoryModel.timestamp, KarmaHistoryModel.id)
                )).scalars().all()
                history = [_model_to_history_entry(r) for r in rows]

            return _model_to_karma(model, history)

    async def list_for_user(self, user_id: int) -> List[KarmaRecord]:
        """Every scope record of a user, without history."""
        async with self._db.transaction() as s:
            rows = (await s.execute(
                select(KarmaRecordModel)
                .where(KarmaRecordModel.user_id == user_id)
                .order_by(KarmaRecordModel.scope_id)
            )).scalars().all()
            return [_model_to_karma(r) for r in rows]

    async def history_counts(self, user_id: int) -> Dict[int, int]:
        """Number of history entries per scope."""
        async with self._db.transaction() as s:
            rows = (await s.execute(
                select(KarmaHistoryModel.scope_id, func.count(KarmaHistoryModel.id))
                .where(KarmaHistoryModel.user_id == user_id)
                .group_by(KarmaHistoryModel.scope_id)
            )).all()
            return {scope_id: count for scope_id, count in rows}

    async def history(
        self,
        user_id: int,
        scope_id: int,
        limit: Optional[int] = None,
        sign: Optional[int] = None,
    ) -> List[KarmaHistoryEntry]:
        """Most recent first; sign > 0 keeps positives, sign < 0 negatives."""
        stmt = select(KarmaHistoryModel).where(
            KarmaHistoryModel.user_id == user_id,
            KarmaHistoryModel.scope_id == scope_id,
        )
        if sign is not None and sign > 0:
            stmt = stmt.where(KarmaHistoryModel.delta > 0)
        elif sign is not None and sign < 0:
            stmt = stmt.where(KarmaHistoryModel.delta < 0)
        stmt = stmt.order_by(KarmaHistoryModel.timestamp.desc(), KarmaHistoryModel.id.desc())
        if limit:
            stmt = stmt.limit(limit)

        async with self._db.transaction() as s:
            rows = (await s.execute(stmt)).scalars().all()
            return [_model_to_history_entry(r) for r in rows]

    async def history_sum(self, user_id: int, scope_id: int) -> Tuple[int, int]:
        """(sum of deltas, number of entries)."""
        async with self._db.transaction() as s:
            total, count = (await s.execute(
                select(
                    func.coalesce(func.sum(KarmaHistoryModel.delta), 0),
                    func.count(KarmaHistoryModel.id),
                ).where(
                    KarmaHistoryModel.user_id == user_id,
                    KarmaHistoryModel.scope_id == scope_id,
                )
            )).one()
            return int(total), int(count)

    async def ranking(
        self,
        scope_id: int,
        column: str,
        descending: bool = True,
        limit: int = 10,
        positive_only: bool = False,
    ) -> List[LeaderboardEntry]:
        attr = getattr(KarmaRecordModel, column)
        stmt = select(KarmaRecordModel.user_id, attr).where(
            KarmaRecordModel.scope_id == scope_id
        )
        if positive_only:
            stmt = stmt.where(attr > 0)
        stmt = stmt.order_by(
            attr.desc() if descending else attr.asc(),
            KarmaRecordModel.user_id,
        ).limit(limit)

        async with self._db.transaction() as s:
            rows = (await s.execute(stmt)).all()
            return [
                LeaderboardEntry(user_id=user_id, scope_id=scope_id, value=value)
                for user_id, value in rows
            ]

    async def received_since(
        self,
        scope_id: int,
        since: datetime,
        limit: int = 10,
    ) -> List[LeaderboardEntry]:
        """Users ranked by positive karma received at or after since."""
        total = func.sum(KarmaHistoryModel.delta).label("total")
        stmt = (
            select(KarmaHistoryModel.user_id, total)
            .where(
                KarmaHistoryModel.scope_id == scope_id,
                KarmaHistoryModel.timestamp >= since,
                KarmaHistoryModel.delta > 0,
            )
            .group_by(KarmaHistoryModel.user_id)
            .order_by(total.desc(), KarmaHistoryModel.user_id)
            .limit(limit)
        )
        async with self._db.transaction() as s:
            rows = (await s.execute(stmt)).all()
            return [
                LeaderboardEntry(user_id=user_id, scope_id=scope_id, value=int(value))
                for user_id, value in rows
            ]


# ============================================================
# PENDING EVALUATION REPOSITORY
# ============================================================

class PendingEvaluationRepository:
    """Persistence of post-trade obligations."""

    def __init__(self, db: Database):
        self._db = db

    async def insert_many(
        self,
        records: List[PendingEvaluationRecord],
        session: Optional[AsyncSession] = None,
    ) -> None:
        async with self._db.transaction(session) as s:
            for record in records:
                s.add(PendingEvaluationModel(
                    id=record.evaluation_id or generate_uuid(),
                    operation_id=record.operation_id,
                    evaluator_id=record.evaluator_id,
                    target_id=record.target_id,
                    completed=record.completed,
                    completed_at=record.completed_at,
                    created_at=record.created_at,
                ))
            await s.flush()

    async def find(
        self,
        evaluator_id: Optional[int] = None,
        operation_id: Optional[str] = None,
        completed: Optional[bool] = None,
    ) -> List[PendingEvaluationRecord]:
        stmt = select(PendingEvaluationModel)
        if evaluator_id is not None:
            stmt = stmt.where(PendingEvaluationModel.evaluator_id == evaluator_id)
        if operation_id is not None:
            stmt = stmt.where(PendingEvaluationModel.operation_id == operation_id)
        if completed is not None:
            stmt = stmt.where(PendingEvaluationModel.completed == completed)
        stmt = stmt.order_by(PendingEvaluationModel.created_at, PendingEvaluationModel.id)

        async with self._db.transaction() as s:
            rows = (await s.execute(stmt)).scalars().all()
            return [_model_to_pending(r) for r in rows]

    async def count(self, evaluator_id: int, completed: bool = False) -> int:
        async with self._db.transaction() as s:
            return (await s.execute(
                select(func.count(PendingEvaluationModel.id)).where(
                    PendingEvaluationModel.evaluator_id == evaluator_id,
                    PendingEvaluationModel.completed == completed,
                )
            )).scalar_one()

    async def mark_completed(
        self,
        operation_id: str,
        evaluator_id: int,
        completed_at: datetime,
        session: Optional[AsyncSession] = None,
    ) -> bool:
        """Resolve the open obligation; False when none was open."""
        stmt = (
            update(PendingEvaluationModel)
            .where(
                PendingEvaluationModel.operation_id == operation_id,
                PendingEvaluationModel.evaluator_id == evaluator_id,
                PendingEvaluationModel.completed == False,  # noqa: E712
            )
            .values(completed=True, completed_at=completed_at)
            .execution_options(synchronize_session=False)
        )
        async with self._db.transaction(session) as s:
            result = await s.execute(stmt)
            return result.rowcount == 1

    async def delete_for_operation(
        self,
        operation_id: str,
        session: Optional[AsyncSession] = None,
    ) -> int:
        stmt = (
            delete(PendingEvaluationModel)
            .where(PendingEvaluationModel.operation_id == operation_id)
            .execution_options(synchronize_session=False)
        )
        async with self._db.transaction(session) as s:
            result = await s.execute(stmt)
            return result.rowcount
