"""
Trade Desk - Error Taxonomy.

============================================================
PURPOSE
============================================================
Classification of every error the trade desk can report.

ERROR CATEGORIES:
1. Validation Errors - Malformed offer or evaluation input
2. Lookup Errors - Unknown operation / user / obligation
3. Authorization Errors - Actor not allowed to transition
4. State Errors - Transition from an incompatible status
5. Gate Errors - Outstanding post-trade evaluations
6. Persistence Errors - Store unreachable (the only fatal class)

RECOVERABLE vs FATAL:
- Recoverable: returned to the caller, system state intact
- Fatal: propagate unchanged, transition aborted

============================================================
"""

from enum import Enum
from typing import Optional, Dict, Set
from dataclasses import dataclass


# ============================================================
# ERROR CATEGORIES
# ============================================================

class ErrorCategory(Enum):
    """Error category classification."""

    VALIDATION = "VALIDATION"
    """Input validation failed."""

    LOOKUP = "LOOKUP"
    """Referenced entity does not exist."""

    AUTHORIZATION = "AUTHORIZATION"
    """Actor is not a legitimate participant."""

    STATE = "STATE"
    """Transition not allowed from current status."""

    GATE = "GATE"
    """Blocked by the evaluation gate."""

    PERSISTENCE = "PERSISTENCE"
    """Store failure."""

    NOTIFICATION = "NOTIFICATION"
    """Dispatcher failure (logged, never raised)."""


class ErrorSeverity(Enum):
    """Error severity levels."""

    WARNING = "WARNING"
    """Expected user mistake."""

    ERROR = "ERROR"
    """Needs attention."""

    FATAL = "FATAL"
    """Request aborted, store may be unreachable."""


# ============================================================
# ERROR CODE REGISTRY
# ============================================================

@dataclass
class ErrorCodeInfo:
    """Information about an error code."""

    code: str
    category: ErrorCategory
    severity: ErrorSeverity
    is_recoverable: bool
    description: str
    recommended_action: str


ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    # ========== VALIDATION ERRORS ==========
    "OP_INVALID_INPUT": ErrorCodeInfo(
        code="OP_INVALID_INPUT",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.WARNING,
        is_recoverable=True,
        description="Offer parameters are malformed",
        recommended_action="Provide assets, networks and positive amount/price",
    ),
    "KARMA_INVALID_RATING": ErrorCodeInfo(
        code="KARMA_INVALID_RATING",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.WARNING,
        is_recoverable=True,
        description="Star rating outside 1..5",
        recommended_action="Rate with 1 to 5 stars",
    ),
    "KARMA_SELF_EVALUATION": ErrorCodeInfo(
        code="KARMA_SELF_EVALUATION",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.WARNING,
        is_recoverable=True,
        description="User tried to evaluate themselves",
        recommended_action="Evaluate the counterparty instead",
    ),
    # ========== LOOKUP ERRORS ==========
    "OP_NOT_FOUND": ErrorCodeInfo(
        code="OP_NOT_FOUND",
        category=ErrorCategory.LOOKUP,
        severity=ErrorSeverity.WARNING,
        is_recoverable=True,
        description="Operation does not exist",
        recommended_action="Check the operation id",
    ),
    "USER_NOT_FOUND": ErrorCodeInfo(
        code="USER_NOT_FOUND",
        category=ErrorCategory.LOOKUP,
        severity=ErrorSeverity.WARNING,
        is_recoverable=True,
        description="User could not be resolved",
        recommended_action="Use a numeric id or an exact handle",
    ),
    "GATE_OBLIGATION_NOT_FOUND": ErrorCodeInfo(
        code="GATE_OBLIGATION_NOT_FOUND",
        category=ErrorCategory.LOOKUP,
        severity=ErrorSeverity.WARNING,
        is_recoverable=True,
        description="No outstanding evaluation for this operation",
        recommended_action="Evaluation already given or never owed",
    ),
    # ========== AUTHORIZATION ERRORS ==========
    "OP_FORBIDDEN": ErrorCodeInfo(
        code="OP_FORBIDDEN",
        category=ErrorCategory.AUTHORIZATION,
        severity=ErrorSeverity.WARNING,
        is_recoverable=True,
        description="Actor may not perform this transition",
        recommended_action="Only the creator may close an offer",
    ),
    "OP_NOT_PARTICIPANT": ErrorCodeInfo(
        code="OP_NOT_PARTICIPANT",
        category=ErrorCategory.AUTHORIZATION,
        severity=ErrorSeverity.WARNING,
        is_recoverable=True,
        description="Actor is neither creator nor acceptor",
        recommended_action="Only trade participants may act on it",
    ),
    "OP_SELF_ACCEPT": ErrorCodeInfo(
        code="OP_SELF_ACCEPT",
        category=ErrorCategory.AUTHORIZATION,
        severity=ErrorSeverity.WARNING,
        is_recoverable=True,
        description="Creator tried to accept own offer",
        recommended_action="Wait for a counterparty",
    ),
    # ========== STATE ERRORS ==========
    "OP_WRONG_STATE": ErrorCodeInfo(
        code="OP_WRONG_STATE",
        category=ErrorCategory.STATE,
        severity=ErrorSeverity.WARNING,
        is_recoverable=True,
        description="Transition not allowed from current status",
        recommended_action="Reload the operation and retry",
    ),
    "OP_NOT_AVAILABLE": ErrorCodeInfo(
        code="OP_NOT_AVAILABLE",
        category=ErrorCategory.STATE,
        severity=ErrorSeverity.WARNING,
        is_recoverable=True,
        description="Offer already taken or withdrawn",
        recommended_action="Pick another offer",
    ),
    "OP_EXPIRED": ErrorCodeInfo(
        code="OP_EXPIRED",
        category=ErrorCategory.STATE,
        severity=ErrorSeverity.WARNING,
        is_recoverable=True,
        description="Offer expired before acceptance",
        recommended_action="Ask the creator to post a new offer",
    ),
    # ========== GATE ERRORS ==========
    "GATE_EVALUATIONS_PENDING": ErrorCodeInfo(
        code="GATE_EVALUATIONS_PENDING",
        category=ErrorCategory.GATE,
        severity=ErrorSeverity.WARNING,
        is_recoverable=True,
        description="User owes post-trade evaluations",
        recommended_action="Evaluate past counterparties first",
    ),
    # ========== NOTIFICATION ERRORS ==========
    "NOTIFY_FAILED": ErrorCodeInfo(
        code="NOTIFY_FAILED",
        category=ErrorCategory.NOTIFICATION,
        severity=ErrorSeverity.ERROR,
        is_recoverable=True,
        description="Dispatcher call failed or timed out",
        recommended_action="Check bot token and chat permissions",
    ),
    # ========== PERSISTENCE ERRORS ==========
    "DB_UNREACHABLE": ErrorCodeInfo(
        code="DB_UNREACHABLE",
        category=ErrorCategory.PERSISTENCE,
        severity=ErrorSeverity.FATAL,
        is_recoverable=False,
        description="Store unreachable, transition aborted",
        recommended_action="Check DATABASE_URL and database health",
    ),
    "DB_WRITE_FAILED": ErrorCodeInfo(
        code="DB_WRITE_FAILED",
        category=ErrorCategory.PERSISTENCE,
        severity=ErrorSeverity.FATAL,
        is_recoverable=False,
        description="Write rejected by the store",
        recommended_action="Investigate database logs",
    ),
}


# ============================================================
# HELPER FUNCTIONS
# ============================================================

def get_error_info(code: str) -> Optional[ErrorCodeInfo]:
    """Get error info by code."""
    return ERROR_CODES.get(code)


def is_recoverable(code: str) -> bool:
    """Unknown codes are treated as fatal."""
    info = get_error_info(code)
    return info.is_recoverable if info else False


def get_codes_by_category(category: ErrorCategory) -> Set[str]:
    return {code for code, info in ERROR_CODES.items() if info.category == category}


RECOVERABLE_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items() if info.is_recoverable
}

FATAL_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items() if not info.is_recoverable
}
