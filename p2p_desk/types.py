"""
Trade Desk - Core Types.

============================================================
PURPOSE
============================================================
Plain records and enums shared by the lifecycle, the karma
ledger and the evaluation gate.

INVARIANTS:
- acceptor is set iff status in {ACCEPTED, PENDING_COMPLETION, COMPLETED}
- creator != acceptor
- KarmaRecord.score == sum(history.delta) for the same (user, scope)

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict, Tuple, FrozenSet

from .errors import ErrorCodeInfo, get_error_info, is_recoverable


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================
# ENUMS
# ============================================================

class OperationKind(Enum):
    """What the creator is offering."""

    BUY = "buy"
    SELL = "sell"
    ANNOUNCE = "announce"
    EXCHANGE = "exchange"


class QuotationMode(Enum):
    """How the unit price was quoted."""

    MANUAL = "manual"
    """Fixed price typed by the creator."""

    EXTERNAL_INDEX = "external_index"
    """Price pegged to an external index."""

    LIVE_RATE = "live_rate"
    """Price fetched at creation time."""


class OperationStatus(Enum):
    """Lifecycle status of a trade offer."""

    PENDING = "pending"
    """Announced, waiting for an acceptor."""

    ACCEPTED = "accepted"
    """A counterparty accepted the offer."""

    PENDING_COMPLETION = "pending_completion"
    """One party asked the other to confirm completion."""

    COMPLETED = "completed"
    """Trade done; both parties owe an evaluation."""

    CANCELLED = "cancelled"
    """Hard exit by a participant or by expiry."""

    CLOSED = "closed"
    """Withdrawn by the creator before acceptance."""

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def requires_acceptor(self) -> bool:
        return self in ACCEPTOR_STATUSES


TERMINAL_STATUSES: FrozenSet[OperationStatus] = frozenset({
    OperationStatus.COMPLETED,
    OperationStatus.CANCELLED,
    OperationStatus.CLOSED,
})

ACCEPTOR_STATUSES: FrozenSet[OperationStatus] = frozenset({
    OperationStatus.ACCEPTED,
    OperationStatus.PENDING_COMPLETION,
    OperationStatus.COMPLETED,
})


# ============================================================
# OPERATION
# ============================================================

@dataclass
class OperationRecord:
    """A trade offer as seen by callers."""

    operation_id: str
    creator_id: int
    kind: OperationKind
    assets: List[str]
    networks: List[str]
    amount: Decimal
    unit_price: Decimal
    quotation_mode: QuotationMode
    status: OperationStatus
    expires_at: datetime

    scope_id: Optional[int] = None
    acceptor_id: Optional[int] = None
    description: Optional[str] = None
    message_ref: Optional[str] = None
    """Opaque handle of the posted announcement."""

    completion_requested_by: Optional[int] = None
    completion_requested_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def participants(self) -> Tuple[int, ...]:
        if self.acceptor_id is None:
            return (self.creator_id,)
        return (self.creator_id, self.acceptor_id)

    @property
    def total(self) -> Decimal:
        return self.amount * self.unit_price

    def is_participant(self, user_id: int) -> bool:
        return user_id in self.participants

    def counterparty_of(self, user_id: int) -> Optional[int]:
        """The other side of the trade, or None if there is none yet."""
        if user_id == self.creator_id:
            return self.acceptor_id
        if user_id == self.acceptor_id:
            return self.creator_id
        return None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class TransferOrder:
    """Display-only recommendation of who sends value first."""

    first_user_id: int
    second_user_id: int
    first_score: int
    second_score: int


# ============================================================
# KARMA
# ============================================================

@dataclass
class KarmaHistoryEntry:
    """One evaluation received."""

    timestamp: datetime
    delta: int
    star_rating: Optional[int] = None
    comment: Optional[str] = None
    evaluator_id: Optional[int] = None
    evaluator_name: Optional[str] = None


@dataclass
class KarmaRecord:
    """Reputation of one user inside one scope."""

    user_id: int
    scope_id: int
    score: int = 0
    given_positive: int = 0
    given_negative: int = 0
    star_tally: Dict[int, int] = field(
        default_factory=lambda: {stars: 0 for stars in range(1, 6)}
    )
    history: List[KarmaHistoryEntry] = field(default_factory=list)

    @property
    def total_stars(self) -> int:
        return sum(self.star_tally.values())

    @property
    def average_stars(self) -> Optional[float]:
        if not self.total_stars:
            return None
        weighted = sum(stars * count for stars, count in self.star_tally.items())
        return weighted / self.total_stars


@dataclass
class AggregateKarma:
    """
    Reputation of one user summed over every scope.

    history and star_tally come from the single scope with the
    richest history.
    """

    user_id: int
    score: int
    given_positive: int
    given_negative: int
    scope_count: int
    richest_scope_id: Optional[int] = None
    history: List[KarmaHistoryEntry] = field(default_factory=list)
    star_tally: Dict[int, int] = field(
        default_factory=lambda: {stars: 0 for stars in range(1, 6)}
    )
    display_name: Optional[str] = None


@dataclass
class LeaderboardEntry:
    user_id: int
    scope_id: Optional[int]
    value: int


@dataclass
class TopGivers:
    positive: List[LeaderboardEntry] = field(default_factory=list)
    negative: List[LeaderboardEntry] = field(default_factory=list)


@dataclass
class KarmaAudit:
    """Stored score compared with the score rebuilt from history."""

    user_id: int
    scope_id: int
    stored_score: int
    history_score: int
    history_length: int

    @property
    def drift(self) -> int:
        return self.stored_score - self.history_score

    @property
    def consistent(self) -> bool:
        return self.drift == 0


# ============================================================
# PENDING EVALUATION
# ============================================================

@dataclass
class PendingEvaluationRecord:
    """Rating owed by evaluator to target for one operation."""

    evaluation_id: str
    operation_id: str
    evaluator_id: int
    target_id: int
    completed: bool = False
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


# ============================================================
# USERS
# ============================================================

@dataclass
class UserRecord:
    user_id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        if self.username:
            return f"@{self.username}"
        if self.first_name:
            return self.first_name
        return str(self.user_id)


# ============================================================
# EXCEPTIONS
# ============================================================

class DeskError(Exception):
    """Base error of the trade desk; carries a registry code."""

    code = "DESK_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    @property
    def info(self) -> Optional[ErrorCodeInfo]:
        return get_error_info(self.code)

    @property
    def recoverable(self) -> bool:
        """False for unknown codes and for store failures."""
        return is_recoverable(self.code)


class InvalidInputError(DeskError):
    """Malformed offer or evaluation parameters."""
    code = "OP_INVALID_INPUT"


class NotFoundError(DeskError):
    """Unknown operation, user or obligation."""
    code = "OP_NOT_FOUND"


class ForbiddenError(DeskError):
    """Actor may not perform the requested transition."""
    code = "OP_FORBIDDEN"


class NotParticipantError(ForbiddenError):
    """Actor is neither creator nor acceptor."""
    code = "OP_NOT_PARTICIPANT"


class WrongStateError(DeskError):
    """Transition attempted from an incompatible status."""
    code = "OP_WRONG_STATE"

    def __init__(
        self,
        message: str,
        current: Optional[OperationStatus] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message, code)
        self.current = current


class NotAvailableError(WrongStateError):
    """Offer is no longer pending (someone else got it first)."""
    code = "OP_NOT_AVAILABLE"


class SelfAcceptForbiddenError(DeskError):
    code = "OP_SELF_ACCEPT"


class ExpiredError(DeskError):
    """Offer passed its expiry before acceptance."""
    code = "OP_EXPIRED"


class EvaluationsPendingError(DeskError):
    """User still owes post-trade evaluations."""
    code = "GATE_EVALUATIONS_PENDING"

    def __init__(self, message: str, outstanding: int = 0):
        super().__init__(message)
        self.outstanding = outstanding
