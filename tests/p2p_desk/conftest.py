"""
Shared fixtures for the trade desk tests.

Every test gets its own sqlite database file (aiosqlite) so
concurrent transactions behave like they do on a real server.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from database import Database
from p2p_desk import (
    KarmaConfig,
    KarmaLedger,
    KarmaRepository,
    LifecycleConfig,
    NotificationDispatcher,
    OperationKind,
    OperationLifecycle,
    OperationRepository,
    PendingEvaluationGate,
    PendingEvaluationRepository,
    QuotationMode,
    SqlIdentityLookup,
)


T0 = datetime(2025, 1, 1, 12, 0, 0)


class FakeClock:
    """Controllable clock injected into every service."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def db(tmp_path):
    database = Database(url=f"sqlite+aiosqlite:///{tmp_path / 'desk.db'}")
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
def dispatcher():
    """Dispatcher double; announce returns a message ref."""
    mock = AsyncMock(spec=NotificationDispatcher)
    mock.announce.return_value = "-100:1"
    mock.announce_to_scope.return_value = "-100:1"
    return mock


@pytest.fixture
def identity(db):
    return SqlIdentityLookup(db)


@pytest.fixture
def karma_config():
    return KarmaConfig()


@pytest.fixture
def ledger(db, identity, karma_config, clock):
    return KarmaLedger(db, KarmaRepository(db), identity, karma_config, clock=clock)


@pytest.fixture
def gate(db, clock):
    return PendingEvaluationGate(PendingEvaluationRepository(db), clock=clock)


@pytest.fixture
def operations(db):
    return OperationRepository(db)


@pytest.fixture
def lifecycle(db, operations, ledger, gate, dispatcher, clock):
    return OperationLifecycle(
        db,
        operations,
        ledger,
        gate,
        dispatcher,
        LifecycleConfig(notification_timeout_seconds=0.5),
        clock=clock,
    )


@pytest.fixture
def make_offer(lifecycle):
    """Create an offer with sensible defaults."""

    async def _make(creator_id: int = 1, **overrides):
        params = dict(
            creator_id=creator_id,
            kind=OperationKind.SELL,
            assets=["USDT"],
            networks=["TRC20"],
            amount=Decimal("100"),
            unit_price=Decimal("5.40"),
            quotation_mode=QuotationMode.MANUAL,
            scope_id=-100,
        )
        params.update(overrides)
        return await lifecycle.create(**params)

    return _make
