"""
Trade Desk - Operation Lifecycle.

============================================================
PURPOSE
============================================================
Moves trade offers through their states and wires the karma
ledger and the evaluation gate into the transitions.

FLOW:
1. create   -> PENDING (gate checked first, offer announced)
2. accept   -> ACCEPTED (gate checked first, exclusive)
3. request_completion -> PENDING_COMPLETION (optional)
4. complete -> COMPLETED + two obligations, one transaction
5. revert   -> PENDING, acceptor cleared, obligations discarded
6. cancel / close / expiration_sweep -> terminal side exits

CRITICAL REQUIREMENTS:
- Every status change is a conditional update on the pre-state
- Refused transitions leave the row untouched and are logged
  at the severity registered for their error code
- Participants may be named by id, digit string or handle
- Dispatcher calls happen after commit, are time-bounded and
  never undo or fail a committed transition

============================================================
"""

import asyncio
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError

from database import Database, generate_uuid

from .config import LifecycleConfig
from .dispatcher import NotificationDispatcher
from .errors import ErrorSeverity
from .identity import parse_user_id
from .karma_ledger import KarmaLedger
from .pending_evaluation import PendingEvaluationGate
from .repository import OperationRepository
from .schemas import OperationCreate, StarEvaluationCreate
from .state_machine import (
    OperationAction,
    StateTransitionEvent,
    TransitionGuard,
    expected_states,
    target_state,
)
from .types import (
    DeskError,
    ExpiredError,
    ForbiddenError,
    InvalidInputError,
    KarmaHistoryEntry,
    NotAvailableError,
    NotFoundError,
    NotParticipantError,
    OperationKind,
    OperationRecord,
    OperationStatus,
    QuotationMode,
    SelfAcceptForbiddenError,
    TransferOrder,
    WrongStateError,
    utcnow,
)


logger = logging.getLogger(__name__)


TransitionListener = Callable[[StateTransitionEvent], Union[None, Awaitable[None]]]

# A participant given by numeric id or by handle/name
UserRef = Union[int, str]

SEVERITY_LOG_LEVELS = {
    ErrorSeverity.WARNING: logging.WARNING,
    ErrorSeverity.ERROR: logging.ERROR,
    ErrorSeverity.FATAL: logging.CRITICAL,
}


def _rejected(operation_id: str, error: DeskError) -> DeskError:
    """Log a refused request at the severity registered for its code."""
    info = error.info
    level = SEVERITY_LOG_LEVELS[info.severity] if info else logging.ERROR
    logger.log(level, f"Operation {operation_id}: [{error.code}] {error}")
    return error


def _validation_message(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{location}: {item.get('msg')}" if location else item.get("msg", ""))
    return "; ".join(parts)


class OperationLifecycle:
    """
    Trade offer state machine service.

    All collaborators are passed in; nothing is looked up globally.
    """

    def __init__(
        self,
        db: Database,
        operations: OperationRepository,
        ledger: KarmaLedger,
        gate: PendingEvaluationGate,
        dispatcher: NotificationDispatcher,
        config: Optional[LifecycleConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._db = db
        self._operations = operations
        self._ledger = ledger
        self._gate = gate
        self._dispatcher = dispatcher
        self._config = config or LifecycleConfig()
        self._clock = clock
        self._listeners: List[TransitionListener] = []

    def add_listener(self, listener: TransitionListener) -> None:
        """Add a transition listener (sync or async)."""
        self._listeners.append(listener)

    # --------------------------------------------------------
    # CREATE
    # --------------------------------------------------------

    async def create(
        self,
        creator_id: int,
        kind: Union[OperationKind, str],
        assets: Sequence[str],
        networks: Sequence[str],
        amount: Union[Decimal, int, float, str],
        unit_price: Union[Decimal, int, float, str],
        quotation_mode: Union[QuotationMode, str] = QuotationMode.MANUAL,
        scope_id: Optional[int] = None,
        ttl: Optional[timedelta] = None,
        description: Optional[str] = None,
    ) -> OperationRecord:
        """
        Create a PENDING offer and announce it.

        Raises:
            EvaluationsPendingError: creator still owes ratings
            InvalidInputError: empty assets/networks, non-positive amounts
        """
        await self._gate.ensure_can_transact(creator_id, "creating an offer")

        try:
            params = OperationCreate(
                creator_id=creator_id,
                kind=kind,
                assets=list(assets or []),
                networks=list(networks or []),
                amount=amount,
                unit_price=unit_price,
                quotation_mode=quotation_mode,
                scope_id=scope_id,
                ttl_hours=ttl.total_seconds() / 3600 if ttl is not None else None,
                description=description,
            )
        except ValidationError as e:
            raise InvalidInputError(f"Invalid offer: {_validation_message(e)}") from e

        ttl_hours = params.ttl_hours or self._config.default_ttl_hours
        if ttl_hours > self._config.max_ttl_hours:
            raise InvalidInputError(
                f"Invalid offer: ttl {ttl_hours}h exceeds {self._config.max_ttl_hours}h"
            )

        now = self._clock()
        record = OperationRecord(
            operation_id=generate_uuid(),
            creator_id=params.creator_id,
            scope_id=params.scope_id,
            kind=params.kind,
            assets=params.assets,
            networks=params.networks,
            amount=params.amount,
            unit_price=params.unit_price,
            quotation_mode=params.quotation_mode,
            description=params.description,
            status=OperationStatus.PENDING,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(hours=ttl_hours),
        )
        await self._operations.insert(record)
        logger.info(
            f"Operation {record.operation_id} created by {creator_id} "
            f"({record.kind.value} {','.join(record.assets)}, expires {record.expires_at})"
        )

        ref = await self._notify("announce", self._dispatcher.announce(record))
        if isinstance(ref, str) and ref:
            await self._operations.set_message_ref(record.operation_id, ref)
            record.message_ref = ref

        return record

    # --------------------------------------------------------
    # TRANSITIONS
    # --------------------------------------------------------

    async def accept(self, operation_id: str, acceptor: UserRef) -> OperationRecord:
        """
        Accept a PENDING offer.

        Exactly one of several concurrent callers wins; the others
        get NotAvailableError.
        """
        acceptor_id = await self._user_id(acceptor)
        await self._gate.ensure_can_transact(acceptor_id, "accepting an offer")

        operation = await self._load(operation_id)
        if acceptor_id == operation.creator_id:
            raise _rejected(operation_id, SelfAcceptForbiddenError(
                f"User {acceptor_id} cannot accept own offer {operation_id}"
            ))
        if operation.status != OperationStatus.PENDING:
            raise _rejected(operation_id, NotAvailableError(
                f"Operation {operation_id} is not available ({operation.status.value})",
                current=operation.status,
            ))

        now = self._clock()
        if operation.is_expired(now):
            await self._expire(operation, reason="Expired on accept")
            raise _rejected(operation_id, ExpiredError(
                f"Operation {operation_id} expired at {operation.expires_at}"
            ))

        updated = await self._apply(
            operation, OperationAction.ACCEPT, {"acceptor_id": acceptor_id},
        )
        if updated is None:
            raise await self._refused(operation_id, OperationAction.ACCEPT)

        await self._committed(operation, updated, OperationAction.ACCEPT, acceptor_id)
        await self._notify(
            "notify_accepted", self._dispatcher.notify_accepted(updated, acceptor_id),
        )
        return updated

    async def request_completion(self, operation_id: str, requester: UserRef) -> OperationRecord:
        """ACCEPTED -> PENDING_COMPLETION; the other party is asked to confirm."""
        requester_id = await self._user_id(requester)
        operation = await self._load(operation_id)
        self._require_participant(operation, requester_id)
        self._require_state(operation, OperationAction.REQUEST_COMPLETION)

        updated = await self._apply(
            operation,
            OperationAction.REQUEST_COMPLETION,
            {
                "completion_requested_by": requester_id,
                "completion_requested_at": self._clock(),
            },
        )
        if updated is None:
            raise await self._refused(operation_id, OperationAction.REQUEST_COMPLETION)

        await self._committed(
            operation, updated, OperationAction.REQUEST_COMPLETION, requester_id,
        )
        await self._notify(
            "notify_completion_requested",
            self._dispatcher.notify_completion_requested(updated, requester_id),
        )
        return updated

    async def complete(self, operation_id: str, user: UserRef) -> OperationRecord:
        """
        Mark the trade done.

        The status change and both obligations commit in one
        transaction.
        """
        user_id = await self._user_id(user)
        operation = await self._load(operation_id)
        self._require_participant(operation, user_id)
        self._require_state(operation, OperationAction.COMPLETE)

        async with self._db.transaction() as session:
            updated = await self._apply(
                operation,
                OperationAction.COMPLETE,
                {"completed_at": self._clock()},
                session=session,
            )
            if updated is not None:
                await self._gate.create_mutual_obligations(
                    operation_id,
                    updated.creator_id,
                    updated.acceptor_id,
                    session=session,
                )
        if updated is None:
            raise await self._refused(operation_id, OperationAction.COMPLETE)

        await self._committed(operation, updated, OperationAction.COMPLETE, user_id)
        await self._notify("notify_completed", self._dispatcher.notify_completed(updated))
        return updated

    async def revert(self, operation_id: str, user: UserRef) -> OperationRecord:
        """ACCEPTED -> PENDING; the offer can be accepted again."""
        user_id = await self._user_id(user)
        operation = await self._load(operation_id)
        self._require_participant(operation, user_id)
        self._require_state(operation, OperationAction.REVERT)

        async with self._db.transaction() as session:
            updated = await self._apply(
                operation,
                OperationAction.REVERT,
                {
                    "acceptor_id": None,
                    "completion_requested_by": None,
                    "completion_requested_at": None,
                },
                session=session,
            )
            if updated is not None:
                await self._gate.discard_obligations(operation_id, session=session)
        if updated is None:
            raise await self._refused(operation_id, OperationAction.REVERT)

        await self._committed(operation, updated, OperationAction.REVERT, user_id)
        await self._notify("notify_reverted", self._dispatcher.notify_reverted(updated, user_id))
        return updated

    async def cancel(self, operation_id: str, user: UserRef) -> OperationRecord:
        """Hard exit by either participant from any non-terminal status."""
        user_id = await self._user_id(user)
        operation = await self._load(operation_id)
        self._require_participant(operation, user_id)
        self._require_state(operation, OperationAction.CANCEL)

        updated = await self._apply(
            operation, OperationAction.CANCEL, {"acceptor_id": None},
        )
        if updated is None:
            raise await self._refused(operation_id, OperationAction.CANCEL)

        await self._committed(operation, updated, OperationAction.CANCEL, user_id)
        await self._notify("retract", self._dispatcher.retract(updated))
        return updated

    async def close(self, operation_id: str, user: UserRef) -> OperationRecord:
        """Creator withdraws a PENDING offer."""
        user_id = await self._user_id(user)
        operation = await self._load(operation_id)
        if user_id != operation.creator_id:
            raise _rejected(operation_id, ForbiddenError(
                f"Only the creator can close operation {operation_id}"
            ))
        self._require_state(operation, OperationAction.CLOSE)

        updated = await self._apply(operation, OperationAction.CLOSE)
        if updated is None:
            raise await self._refused(operation_id, OperationAction.CLOSE)

        await self._committed(operation, updated, OperationAction.CLOSE, user_id)
        await self._notify("retract", self._dispatcher.retract(updated))
        return updated

    async def expiration_sweep(self, retract: bool = True) -> int:
        """
        Cancel every PENDING offer whose expiry has passed.

        Safe to run concurrently with itself and with accept().

        Returns:
            Number of offers this run cancelled
        """
        now = self._clock()
        expired = await self._operations.find_expired(now)

        count = 0
        for operation in expired:
            if await self._expire(operation, reason="Expired", retract=retract):
                count += 1

        if count:
            logger.info(f"Expiration sweep cancelled {count} offer(s)")
        else:
            logger.debug("Expiration sweep found nothing to cancel")
        return count

    # --------------------------------------------------------
    # EVALUATION
    # --------------------------------------------------------

    async def evaluate_counterparty(
        self,
        operation_id: str,
        evaluator: UserRef,
        star_rating: int,
        comment: Optional[str] = None,
        evaluator_name: Optional[str] = None,
    ) -> KarmaHistoryEntry:
        """
        Give the rating owed for a completed trade.

        The ledger records the rating and then the obligation is
        resolved, both in one transaction.
        """
        evaluator_id = await self._user_id(evaluator)
        operation = await self._load(operation_id)
        self._require_participant(operation, evaluator_id)
        if operation.status != OperationStatus.COMPLETED:
            raise _rejected(operation_id, WrongStateError(
                f"Operation {operation_id} is not completed ({operation.status.value})",
                current=operation.status,
            ))

        try:
            params = StarEvaluationCreate(star_rating=star_rating, comment=comment)
        except ValidationError as e:
            raise InvalidInputError(
                f"Invalid evaluation: {_validation_message(e)}",
                code="KARMA_INVALID_RATING",
            ) from e

        obligation = await self._gate.get_obligation(operation_id, evaluator_id)
        if obligation is None or obligation.completed:
            raise NotFoundError(
                f"No pending evaluation by {evaluator_id} for operation {operation_id}",
                code="GATE_OBLIGATION_NOT_FOUND",
            )

        scope_id = operation.scope_id
        if scope_id is None:
            scope_id = self._ledger.config.direct_scope_id

        async with self._db.transaction() as session:
            entry = await self._ledger.register_star_evaluation(
                evaluator_id,
                obligation.target_id,
                scope_id,
                params.star_rating,
                comment=params.comment,
                evaluator_name=evaluator_name,
                session=session,
            )
            if not await self._gate.resolve(operation_id, evaluator_id, session=session):
                raise NotFoundError(
                    f"Evaluation by {evaluator_id} for operation {operation_id} "
                    f"was already given",
                    code="GATE_OBLIGATION_NOT_FOUND",
                )

        return entry

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    async def get_operation(self, operation_id: str) -> OperationRecord:
        return await self._load(operation_id)

    async def list_user_operations(
        self,
        user_id: int,
        statuses: Optional[Sequence[OperationStatus]] = None,
    ) -> List[OperationRecord]:
        """Operations where the user is creator or acceptor."""
        return await self._operations.find(participant_id=user_id, statuses=statuses)

    async def list_available(self, scope_id: Optional[int] = None) -> List[OperationRecord]:
        """Pending, unexpired offers, newest first."""
        now = self._clock()
        pending = await self._operations.find(
            scope_id=scope_id,
            statuses=[OperationStatus.PENDING],
        )
        return [op for op in pending if not op.is_expired(now)]

    async def delete_pending_offers(self, creator_id: int) -> int:
        """Delete every PENDING offer of a creator; returns how many."""
        pending = await self._operations.find(
            creator_id=creator_id,
            statuses=[OperationStatus.PENDING],
        )
        deleted = 0
        for operation in pending:
            if await self._operations.delete_conditional(
                operation.operation_id, [OperationStatus.PENDING],
            ):
                deleted += 1
                await self._notify("retract", self._dispatcher.retract(operation))

        logger.info(f"Deleted {deleted} pending offer(s) of {creator_id}")
        return deleted

    async def transfer_order(self, operation: OperationRecord) -> TransferOrder:
        """
        Who should send value first: the party with the lower score.

        Ties go to the creator. Display only, never enforced.
        """
        if operation.acceptor_id is None:
            raise WrongStateError(
                f"Operation {operation.operation_id} has no acceptor",
                current=operation.status,
            )

        creator_score = await self._ledger.display_score(
            operation.creator_id, operation.scope_id,
        )
        acceptor_score = await self._ledger.display_score(
            operation.acceptor_id, operation.scope_id,
        )

        if acceptor_score < creator_score:
            return TransferOrder(
                first_user_id=operation.acceptor_id,
                second_user_id=operation.creator_id,
                first_score=acceptor_score,
                second_score=creator_score,
            )
        return TransferOrder(
            first_user_id=operation.creator_id,
            second_user_id=operation.acceptor_id,
            first_score=creator_score,
            second_score=acceptor_score,
        )

    # --------------------------------------------------------
    # INTERNALS
    # --------------------------------------------------------

    async def _load(self, operation_id: str) -> OperationRecord:
        operation = await self._operations.get(operation_id)
        if operation is None:
            raise NotFoundError(f"Operation {operation_id} not found")
        return operation

    async def _user_id(self, user: UserRef) -> int:
        """Numeric id for a participant given by id, digit string or handle."""
        user_id = parse_user_id(user)
        if user_id is not None:
            return user_id
        resolved = await self._ledger.resolve_user(user)
        if resolved is None:
            raise NotFoundError(f"User {user!r} not found", code="USER_NOT_FOUND")
        return resolved.user_id

    @staticmethod
    def _require_participant(operation: OperationRecord, user_id: int) -> None:
        if not operation.is_participant(user_id):
            raise _rejected(operation.operation_id, NotParticipantError(
                f"User {user_id} is not a participant of operation {operation.operation_id}"
            ))

    @staticmethod
    def _require_state(operation: OperationRecord, action: OperationAction) -> None:
        allowed, reason = TransitionGuard.can_apply(action, operation.status)
        if not allowed:
            raise _rejected(
                operation.operation_id, WrongStateError(reason, current=operation.status),
            )

    async def _apply(
        self,
        operation: OperationRecord,
        action: OperationAction,
        patch: Optional[Dict[str, Any]] = None,
        session=None,
    ) -> Optional[OperationRecord]:
        values: Dict[str, Any] = {"status": target_state(action)}
        if patch:
            values.update(patch)
        return await self._operations.update_conditional(
            operation.operation_id,
            expected_states(action),
            values,
            session=session,
        )

    async def _refused(
        self,
        operation_id: str,
        action: OperationAction,
    ) -> WrongStateError:
        """Error for a conditional update that matched no row."""
        current = await self._operations.get(operation_id)
        status = current.status if current else None
        label = status.value if status else "deleted"
        logger.debug(f"Operation {operation_id}: {action.value} lost race (now {label})")

        if action == OperationAction.ACCEPT:
            return _rejected(operation_id, NotAvailableError(
                f"Operation {operation_id} is not available ({label})",
                current=status,
            ))
        return _rejected(operation_id, WrongStateError(
            f"Cannot {action.value} operation {operation_id} ({label})",
            current=status,
        ))

    async def _expire(
        self,
        operation: OperationRecord,
        reason: str,
        retract: bool = True,
    ) -> bool:
        updated = await self._apply(operation, OperationAction.EXPIRE)
        if updated is None:
            return False
        await self._committed(operation, updated, OperationAction.EXPIRE, None, reason)
        if retract:
            await self._notify("retract", self._dispatcher.retract(updated))
        return True

    async def _committed(
        self,
        before: OperationRecord,
        after: OperationRecord,
        action: OperationAction,
        actor_id: Optional[int],
        reason: str = "",
    ) -> None:
        event = StateTransitionEvent(
            operation_id=after.operation_id,
            from_state=before.status,
            to_state=after.status,
            action=action,
            actor_id=actor_id,
            timestamp=self._clock(),
            reason=reason or action.value,
        )
        logger.info(
            f"Operation {event.operation_id}: {event.from_state.value} -> "
            f"{event.to_state.value} ({event.reason}, actor={actor_id})"
        )

        for listener in self._listeners:
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Transition listener failed for {event.operation_id}: {e}")

    async def _notify(self, name: str, call: Awaitable[Any]) -> Any:
        """Await a dispatcher call with a timeout; failures are logged only."""
        try:
            return await asyncio.wait_for(
                call, timeout=self._config.notification_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Dispatcher {name} timed out after "
                f"{self._config.notification_timeout_seconds}s"
            )
        except Exception as e:
            logger.error(f"Dispatcher {name} failed: {e}")
        return None
