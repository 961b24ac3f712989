"""
Pydantic Schemas for Trade Desk Input.
"""

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from .types import OperationKind, QuotationMode


# =============================================================
# OFFER CREATION
# =============================================================

class OperationCreate(BaseModel):
    """Parameters of a new trade offer."""

    creator_id: int
    kind: OperationKind
    assets: List[str] = Field(..., min_length=1)
    networks: List[str] = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    unit_price: Decimal = Field(..., gt=0)
    quotation_mode: QuotationMode = QuotationMode.MANUAL
    scope_id: Optional[int] = None
    ttl_hours: Optional[float] = Field(None, gt=0)
    description: Optional[str] = Field(None, max_length=1000)

    @field_validator("assets", "networks")
    @classmethod
    def normalize_symbols(cls, values: List[str]) -> List[str]:
        """Strip and upper-case symbols, keeping order and dropping repeats."""
        normalized: List[str] = []
        for value in values:
            symbol = value.strip().upper()
            if not symbol:
                raise ValueError("empty symbol")
            if symbol not in normalized:
                normalized.append(symbol)
        return normalized


# =============================================================
# EVALUATION
# =============================================================

class StarEvaluationCreate(BaseModel):
    """Star rating given to a trade counterparty."""

    star_rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)

    @field_validator("comment")
    @classmethod
    def blank_comment_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None
