"""
Trade Desk - Karma Ledger.

============================================================
PURPOSE
============================================================
Records evaluations and aggregates reputation per (user, scope)
and across all scopes.

RULES:
- Only the ledger changes score or appends history
- score == sum(history.delta) for every (user, scope)
- Evaluations are never deduplicated or throttled here
- Star ratings map to deltas through KarmaConfig.star_deltas

============================================================
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from database import Database

from .config import KarmaConfig
from .identity import IdentityLookup, parse_user_id
from .repository import KarmaRepository, STAR_COLUMNS
from .types import (
    AggregateKarma,
    InvalidInputError,
    KarmaAudit,
    KarmaHistoryEntry,
    KarmaRecord,
    LeaderboardEntry,
    TopGivers,
    UserRecord,
    utcnow,
)


logger = logging.getLogger(__name__)


class KarmaLedger:
    """
    Reputation ledger.

    Every evaluation is one transaction: the target's score (and
    star tally), the history row and the evaluator's given counter
    commit together.
    """

    def __init__(
        self,
        db: Database,
        repository: KarmaRepository,
        identity: IdentityLookup,
        config: Optional[KarmaConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        lookup_timeout_seconds: float = 5.0,
    ):
        self._db = db
        self._repository = repository
        self._identity = identity
        self._config = config or KarmaConfig()
        self._clock = clock
        self._lookup_timeout = lookup_timeout_seconds

    @property
    def config(self) -> KarmaConfig:
        return self._config

    # --------------------------------------------------------
    # EVALUATIONS
    # --------------------------------------------------------

    def star_delta(self, star_rating: int) -> int:
        """Karma delta of a star rating."""
        self._validate_stars(star_rating)
        return self._config.star_deltas[star_rating]

    async def register_evaluation(
        self,
        evaluator_id: int,
        target_id: int,
        scope_id: int,
        delta: int,
        comment: Optional[str] = None,
        evaluator_name: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> KarmaHistoryEntry:
        """Apply a raw delta to target's record in scope."""
        return await self._record(
            evaluator_id,
            target_id,
            scope_id,
            delta,
            star_rating=None,
            comment=comment,
            evaluator_name=evaluator_name,
            session=session,
        )

    async def register_star_evaluation(
        self,
        evaluator_id: int,
        target_id: int,
        scope_id: int,
        star_rating: int,
        comment: Optional[str] = None,
        evaluator_name: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> KarmaHistoryEntry:
        """Apply a 1..5 star rating; the delta comes from the star bands."""
        delta = self.star_delta(star_rating)
        return await self._record(
            evaluator_id,
            target_id,
            scope_id,
            delta,
            star_rating=star_rating,
            comment=comment,
            evaluator_name=evaluator_name,
            session=session,
        )

    async def register_vote(
        self,
        evaluator_id: int,
        target_id: int,
        scope_id: int,
        positive: bool,
        comment: Optional[str] = None,
        evaluator_name: Optional[str] = None,
    ) -> KarmaHistoryEntry:
        """Binary +/- evaluation (reactions and vote commands)."""
        delta = self._config.positive_delta if positive else self._config.negative_delta
        return await self.register_evaluation(
            evaluator_id,
            target_id,
            scope_id,
            delta,
            comment=comment,
            evaluator_name=evaluator_name,
        )

    async def _record(
        self,
        evaluator_id: int,
        target_id: int,
        scope_id: int,
        delta: int,
        star_rating: Optional[int],
        comment: Optional[str],
        evaluator_name: Optional[str],
        session: Optional[AsyncSession],
    ) -> KarmaHistoryEntry:
        if evaluator_id == target_id:
            raise InvalidInputError(
                f"User {evaluator_id} cannot evaluate themselves",
                code="KARMA_SELF_EVALUATION",
            )

        entry = KarmaHistoryEntry(
            timestamp=self._clock(),
            delta=delta,
            star_rating=star_rating,
            comment=comment,
            evaluator_id=evaluator_id,
            evaluator_name=evaluator_name,
        )

        target_increments: Dict[str, int] = {"score": delta}
        if star_rating is not None:
            target_increments[STAR_COLUMNS[star_rating]] = 1

        async with self._db.transaction(session) as s:
            await self._repository.increment(s, target_id, scope_id, target_increments)
            await self._repository.add_history(s, target_id, scope_id, entry)
            if delta > 0:
                await self._repository.increment(
                    s, evaluator_id, scope_id, {"given_positive": 1}
                )
            elif delta < 0:
                await self._repository.increment(
                    s, evaluator_id, scope_id, {"given_negative": 1}
                )

        logger.info(
            f"Karma {delta:+d} for {target_id} in scope {scope_id} "
            f"from {evaluator_id}"
            + (f" ({star_rating} stars)" if star_rating is not None else "")
        )
        return entry

    @staticmethod
    def _validate_stars(star_rating: int) -> None:
        if (
            isinstance(star_rating, bool)
            or not isinstance(star_rating, int)
            or not 1 <= star_rating <= 5
        ):
            raise InvalidInputError(
                f"Star rating must be an integer from 1 to 5, got {star_rating!r}",
                code="KARMA_INVALID_RATING",
            )

    # --------------------------------------------------------
    # LOOKUPS
    # --------------------------------------------------------

    async def get_score(self, user_id: int, scope_id: int) -> Optional[KarmaRecord]:
        """Record for that exact scope, or None."""
        return await self._repository.get(user_id, scope_id)

    async def get_aggregate_score(
        self,
        query: Union[int, str],
    ) -> Optional[AggregateKarma]:
        """
        Reputation of a user summed over every scope.

        The user is resolved through the identity lookup. A failing or
        slow lookup degrades to None instead of raising. Numeric queries
        (ints or digit strings) still aggregate when the user was never
        registered.
        """
        numeric_id = parse_user_id(query)
        user = await self.resolve_user(query)
        if user is None and numeric_id is None:
            return None
        user_id = user.user_id if user else numeric_id

        records = await self._repository.list_for_user(user_id)
        aggregate = AggregateKarma(
            user_id=user_id,
            score=sum(r.score for r in records),
            given_positive=sum(r.given_positive for r in records),
            given_negative=sum(r.given_negative for r in records),
            scope_count=len(records),
            display_name=user.display_name if user else None,
        )
        if not records:
            return aggregate

        counts = await self._repository.history_counts(user_id)
        richest_scope = min(
            (r.scope_id for r in records),
            key=lambda scope_id: (-counts.get(scope_id, 0), scope_id),
        )
        richest = await self._repository.get(user_id, richest_scope)
        if richest is not None:
            aggregate.richest_scope_id = richest_scope
            aggregate.history = richest.history
            aggregate.star_tally = dict(richest.star_tally)
        return aggregate

    async def get_score_with_fallback(
        self,
        user_id: int,
        scope_id: Optional[int],
    ) -> Union[KarmaRecord, AggregateKarma, None]:
        """Exact-scope record first, cross-scope aggregate otherwise."""
        if scope_id is not None:
            record = await self.get_score(user_id, scope_id)
            if record is not None:
                return record
        return await self.get_aggregate_score(user_id)

    async def display_score(self, user_id: int, scope_id: Optional[int]) -> int:
        """Score used for ordering and display; zero when unknown."""
        result = await self.get_score_with_fallback(user_id, scope_id)
        return result.score if result is not None else 0

    async def get_history(
        self,
        user_id: int,
        scope_id: int,
        limit: int = 10,
        sign: Optional[int] = None,
    ) -> List[KarmaHistoryEntry]:
        return await self._repository.history(user_id, scope_id, limit=limit, sign=sign)

    async def audit(self, user_id: int, scope_id: int) -> Optional[KarmaAudit]:
        """Compare stored score with the sum of history deltas."""
        record = await self._repository.get(user_id, scope_id, with_history=False)
        if record is None:
            return None
        total, count = await self._repository.history_sum(user_id, scope_id)
        result = KarmaAudit(
            user_id=user_id,
            scope_id=scope_id,
            stored_score=record.score,
            history_score=total,
            history_length=count,
        )
        if not result.consistent:
            logger.error(
                f"Karma drift for {user_id} in scope {scope_id}: "
                f"stored {result.stored_score}, history {result.history_score}"
            )
        return result

    async def resolve_user(self, query: Union[int, str]) -> Optional[UserRecord]:
        """Identity lookup bounded by a timeout; failures give None."""
        try:
            return await asyncio.wait_for(
                self._identity.resolve_user(query),
                timeout=self._lookup_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Identity lookup timed out for {query!r}")
        except Exception as e:
            logger.error(f"Identity lookup failed for {query!r}: {e}")
        return None

    # --------------------------------------------------------
    # RANKINGS
    # --------------------------------------------------------

    async def get_leaderboard(
        self,
        scope_id: int,
        worst_first: bool = False,
        limit: Optional[int] = None,
    ) -> List[LeaderboardEntry]:
        return await self._repository.ranking(
            scope_id,
            "score",
            descending=not worst_first,
            limit=limit or self._config.leaderboard_limit,
        )

    async def get_top_givers(
        self,
        scope_id: int,
        limit: Optional[int] = None,
    ) -> TopGivers:
        """Users who gave the most positive and the most negative evaluations."""
        limit = limit or self._config.leaderboard_limit
        return TopGivers(
            positive=await self._repository.ranking(
                scope_id, "given_positive", limit=limit, positive_only=True,
            ),
            negative=await self._repository.ranking(
                scope_id, "given_negative", limit=limit, positive_only=True,
            ),
        )

    async def get_top_received_since(
        self,
        scope_id: int,
        since: timedelta,
        limit: Optional[int] = None,
    ) -> List[LeaderboardEntry]:
        """Users ranked by positive karma received within the window."""
        return await self._repository.received_since(
            scope_id,
            self._clock() - since,
            limit=limit or self._config.leaderboard_limit,
        )
