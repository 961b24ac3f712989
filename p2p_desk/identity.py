"""
Trade Desk - Identity Lookup.

Resolves a numeric id or a display name / handle to a UserRecord.

Resolution order for text queries (case-insensitive, leading "@"
stripped):
1. exact match on username, first name or last name
2. substring match on the same fields
3. prefix match on username or first name, only for queries longer
   than 4 characters, using the first min(len - 2, 6) characters
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional, Union

from sqlalchemy import func, or_, select

from database import Database, UserModel

from .types import UserRecord, utcnow


logger = logging.getLogger(__name__)


def parse_user_id(query: Union[int, str]) -> Optional[int]:
    """Numeric id carried by the query (int or digit string), else None."""
    if isinstance(query, int):
        return query
    text = query.strip()
    digits = text[1:] if text.startswith("-") else text
    if digits.isdecimal():
        return int(text)
    return None


def _model_to_user(model: UserModel) -> UserRecord:
    return UserRecord(
        user_id=model.user_id,
        username=model.username,
        first_name=model.first_name,
        last_name=model.last_name,
    )


class IdentityLookup(ABC):
    """Resolves users for the ledger and the lifecycle."""

    @abstractmethod
    async def resolve_user(self, query: Union[int, str]) -> Optional[UserRecord]:
        """Return the matching user or None."""
        pass


class SqlIdentityLookup(IdentityLookup):
    """Identity lookup backed by the users table."""

    PREFIX_MIN_QUERY_LENGTH = 4
    PREFIX_MAX_LENGTH = 6

    def __init__(self, db: Database):
        self._db = db

    async def register_user(
        self,
        user_id: int,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> UserRecord:
        """Insert or refresh a chat user."""
        now = utcnow()
        async with self._db.transaction() as session:
            model = await session.get(UserModel, user_id)
            if model is None:
                model = UserModel(user_id=user_id, created_at=now)
                session.add(model)
            model.username = username
            model.first_name = first_name
            model.last_name = last_name
            model.updated_at = now
            await session.flush()
            return _model_to_user(model)

    async def resolve_user(self, query: Union[int, str]) -> Optional[UserRecord]:
        user_id = parse_user_id(query)
        if user_id is not None:
            return await self._by_id(user_id)

        text = query.strip()
        if text.startswith("@"):
            text = text[1:]
        if not text:
            return None

        lowered = text.lower()
        username = func.lower(UserModel.username)
        first_name = func.lower(UserModel.first_name)
        last_name = func.lower(UserModel.last_name)

        user = await self._first(or_(
            username == lowered,
            first_name == lowered,
            last_name == lowered,
        ))
        if user:
            return user

        user = await self._first(or_(
            UserModel.username.icontains(text, autoescape=True),
            UserModel.first_name.icontains(text, autoescape=True),
            UserModel.last_name.icontains(text, autoescape=True),
        ))
        if user:
            return user

        if len(text) > self.PREFIX_MIN_QUERY_LENGTH:
            prefix = text[:min(len(text) - 2, self.PREFIX_MAX_LENGTH)]
            user = await self._first(or_(
                UserModel.username.istartswith(prefix, autoescape=True),
                UserModel.first_name.istartswith(prefix, autoescape=True),
            ))
            if user:
                logger.debug(f"Resolved '{query}' by prefix '{prefix}'")
            return user

        return None

    async def _by_id(self, user_id: int) -> Optional[UserRecord]:
        async with self._db.transaction() as session:
            model = await session.get(UserModel, user_id)
            return _model_to_user(model) if model else None

    async def _first(self, condition) -> Optional[UserRecord]:
        stmt = select(UserModel).where(condition).order_by(UserModel.user_id).limit(1)
        async with self._db.transaction() as session:
            model = (await session.execute(stmt)).scalars().first()
            return _model_to_user(model) if model else None
