"""
Database ORM Models - Trade Desk Tables.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for the trade desk.

TABLES:
- users: Chat users known to the identity lookup
- operations: Trade offers and their lifecycle status
- karma_records: One reputation record per (user, scope)
- karma_history: Append-only evaluation history
- pending_evaluations: Mandatory post-trade ratings

AUDIT REQUIREMENTS:
- karma_records.score equals the sum of karma_history.delta
  for the same (user, scope)
- Status changes go through conditional updates only

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, List
import uuid

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .engine import Base


# =============================================================
# HELPER FUNCTIONS
# =============================================================

def generate_uuid() -> str:
    """Generate a new UUID."""
    return str(uuid.uuid4())


# =============================================================
# USERS
# =============================================================

class UserModel(Base):
    """Chat user as last seen by the bot."""

    __tablename__ = "users"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    username: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(128), index=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "first_name": self.first_name,
            "last_name": self.last_name,
        }


# =============================================================
# OPERATIONS
# =============================================================

class OperationModel(Base):
    """
    Persisted trade offer.

    The row is only ever moved between statuses by a conditional
    UPDATE guarded on the expected pre-state.
    """

    __tablename__ = "operations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)

    # Participants
    creator_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    acceptor_id: Mapped[Optional[int]] = mapped_column(BigInteger, index=True)
    scope_id: Mapped[Optional[int]] = mapped_column(BigInteger)

    # Offer parameters
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    assets: Mapped[List[str]] = mapped_column(JSON, nullable=False)
    networks: Mapped[List[str]] = mapped_column(JSON, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    quotation_mode: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    # State
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    message_ref: Mapped[Optional[str]] = mapped_column(String(128))

    # Completion metadata
    completion_requested_by: Mapped[Optional[int]] = mapped_column(BigInteger)
    completion_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_operations_scope_status", "scope_id", "status"),
        Index("ix_operations_status_expires", "status", "expires_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "creator_id": self.creator_id,
            "acceptor_id": self.acceptor_id,
            "scope_id": self.scope_id,
            "kind": self.kind,
            "assets": list(self.assets or []),
            "networks": list(self.networks or []),
            "amount": str(self.amount),
            "unit_price": str(self.unit_price),
            "quotation_mode": self.quotation_mode,
            "status": self.status,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


# =============================================================
# KARMA
# =============================================================

class KarmaRecordModel(Base):
    """Reputation counters of one user inside one scope."""

    __tablename__ = "karma_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    scope_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    given_positive: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    given_negative: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Star ratings received
    stars_1: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stars_2: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stars_3: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stars_4: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stars_5: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "scope_id", name="uq_karma_records_user_scope"),
        Index("ix_karma_records_scope_score", "scope_id", "score"),
        Index("ix_karma_records_scope_given_positive", "scope_id", "given_positive"),
        Index("ix_karma_records_scope_given_negative", "scope_id", "given_negative"),
    )


class KarmaHistoryModel(Base):
    """One evaluation received by a user inside a scope."""

    __tablename__ = "karma_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    scope_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    star_rating: Mapped[Optional[int]] = mapped_column(Integer)
    comment: Mapped[Optional[str]] = mapped_column(Text)
    evaluator_id: Mapped[Optional[int]] = mapped_column(BigInteger)
    evaluator_name: Mapped[Optional[str]] = mapped_column(String(128))

    __table_args__ = (
        Index("ix_karma_history_user_scope_ts", "user_id", "scope_id", "timestamp"),
        Index("ix_karma_history_scope_ts", "scope_id", "timestamp"),
    )


# =============================================================
# PENDING EVALUATIONS
# =============================================================

class PendingEvaluationModel(Base):
    """Rating a trade participant owes the counterparty."""

    __tablename__ = "pending_evaluations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    operation_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    evaluator_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    target_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "operation_id", "evaluator_id", name="uq_pending_evaluations_operation_evaluator",
        ),
        Index("ix_pending_evaluations_evaluator_completed", "evaluator_id", "completed"),
    )


__all__ = [
    "generate_uuid",
    "UserModel",
    "OperationModel",
    "KarmaRecordModel",
    "KarmaHistoryModel",
    "PendingEvaluationModel",
]
