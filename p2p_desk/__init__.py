"""
P2P Trade Desk.

============================================================
PURPOSE
============================================================
Trade offer lifecycle inside chat groups, a reputation ledger
per (user, scope) and a gate that forces both parties of a
completed trade to rate each other before trading again.

COMPONENTS (leaf first):
- reputation: score -> tier classifier
- karma_ledger: evaluations, aggregates, rankings
- pending_evaluation: mandatory post-trade ratings
- lifecycle: offer state machine
- dispatcher: chat delivery (external collaborator)
- scheduler: periodic expiration sweep

============================================================
"""

from .config import (
    DeskConfig,
    LifecycleConfig,
    KarmaConfig,
    SweepConfig,
    TelegramConfig,
    DatabaseConfig,
)
from .types import (
    OperationKind,
    OperationStatus,
    QuotationMode,
    OperationRecord,
    TransferOrder,
    KarmaHistoryEntry,
    KarmaRecord,
    AggregateKarma,
    KarmaAudit,
    LeaderboardEntry,
    TopGivers,
    PendingEvaluationRecord,
    UserRecord,
    DeskError,
    InvalidInputError,
    NotFoundError,
    ForbiddenError,
    NotParticipantError,
    WrongStateError,
    NotAvailableError,
    SelfAcceptForbiddenError,
    ExpiredError,
    EvaluationsPendingError,
    utcnow,
)
from .reputation import ReputationTier, ReputationLevel, classify
from .state_machine import (
    OperationAction,
    StateTransitionEvent,
    TransitionGuard,
    VALID_TRANSITIONS,
)
from .repository import (
    OperationRepository,
    KarmaRepository,
    PendingEvaluationRepository,
)
from .identity import IdentityLookup, SqlIdentityLookup
from .karma_ledger import KarmaLedger
from .pending_evaluation import PendingEvaluationGate
from .dispatcher import (
    NotificationDispatcher,
    LoggingDispatcher,
    TelegramDispatcher,
    TelegramRateLimiter,
    OperationFormatter,
    parse_message_refs,
)
from .lifecycle import OperationLifecycle
from .scheduler import ExpirationSweeper


__all__ = [
    # Config
    "DeskConfig",
    "LifecycleConfig",
    "KarmaConfig",
    "SweepConfig",
    "TelegramConfig",
    "DatabaseConfig",
    # Types
    "OperationKind",
    "OperationStatus",
    "QuotationMode",
    "OperationRecord",
    "TransferOrder",
    "KarmaHistoryEntry",
    "KarmaRecord",
    "AggregateKarma",
    "KarmaAudit",
    "LeaderboardEntry",
    "TopGivers",
    "PendingEvaluationRecord",
    "UserRecord",
    "utcnow",
    # Errors
    "DeskError",
    "InvalidInputError",
    "NotFoundError",
    "ForbiddenError",
    "NotParticipantError",
    "WrongStateError",
    "NotAvailableError",
    "SelfAcceptForbiddenError",
    "ExpiredError",
    "EvaluationsPendingError",
    # Reputation
    "ReputationTier",
    "ReputationLevel",
    "classify",
    # State machine
    "OperationAction",
    "StateTransitionEvent",
    "TransitionGuard",
    "VALID_TRANSITIONS",
    # Persistence
    "OperationRepository",
    "KarmaRepository",
    "PendingEvaluationRepository",
    # Services
    "IdentityLookup",
    "SqlIdentityLookup",
    "KarmaLedger",
    "PendingEvaluationGate",
    "NotificationDispatcher",
    "LoggingDispatcher",
    "TelegramDispatcher",
    "TelegramRateLimiter",
    "OperationFormatter",
    "parse_message_refs",
    "OperationLifecycle",
    "ExpirationSweeper",
]
