"""
Tests for the operation lifecycle.

Covers:
- Offer creation and validation
- Exclusive acceptance and expiry
- Completion, revert, cancel and close
- The evaluation gate around create/accept
- Dispatcher failures never undoing committed transitions
- Participants given by handle instead of numeric id
- Store failures rolling back every write of a transition
- Refusals logged at the severity registered for their code
- Random action sequences only ever walking valid edges
"""

import asyncio
import logging
import random
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from p2p_desk.lifecycle import _rejected
from p2p_desk.state_machine import VALID_TRANSITIONS, OperationAction
from p2p_desk.types import (
    DeskError,
    EvaluationsPendingError,
    ExpiredError,
    ForbiddenError,
    InvalidInputError,
    NotAvailableError,
    NotFoundError,
    NotParticipantError,
    OperationKind,
    OperationStatus,
    SelfAcceptForbiddenError,
    WrongStateError,
)

from conftest import T0


CREATOR = 1
ACCEPTOR = 2
STRANGER = 3


async def _completed_offer(lifecycle, make_offer, creator=CREATOR, acceptor=ACCEPTOR):
    offer = await make_offer(creator_id=creator)
    await lifecycle.accept(offer.operation_id, acceptor)
    return await lifecycle.complete(offer.operation_id, creator)


# =============================================================
# TEST: Create
# =============================================================

class TestCreate:

    @pytest.mark.asyncio
    async def test_creates_pending_offer(self, lifecycle, make_offer, dispatcher):
        offer = await make_offer(assets=["usdt", " btc "], description="fast pay")

        assert offer.status == OperationStatus.PENDING
        assert offer.acceptor_id is None
        assert offer.assets == ["USDT", "BTC"]
        assert offer.expires_at == T0 + timedelta(hours=24)
        assert offer.total == Decimal("540.00")
        assert offer.message_ref == "-100:1"
        dispatcher.announce.assert_awaited_once()

        stored = await lifecycle.get_operation(offer.operation_id)
        assert stored.status == OperationStatus.PENDING
        assert stored.message_ref == "-100:1"
        assert stored.amount == Decimal("100")
        assert stored.kind == OperationKind.SELL

    @pytest.mark.asyncio
    async def test_custom_ttl(self, make_offer):
        offer = await make_offer(ttl=timedelta(hours=2))
        assert offer.expires_at == T0 + timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_string_enums_accepted(self, make_offer):
        offer = await make_offer(kind="buy", quotation_mode="live_rate")
        assert offer.kind == OperationKind.BUY

    @pytest.mark.parametrize("overrides", [
        {"assets": []},
        {"networks": []},
        {"assets": ["  "]},
        {"amount": Decimal("0")},
        {"amount": Decimal("-5")},
        {"unit_price": Decimal("0")},
        {"kind": "lend"},
        {"ttl": timedelta(hours=-1)},
        {"ttl": timedelta(days=30)},
    ])
    @pytest.mark.asyncio
    async def test_invalid_input(self, lifecycle, make_offer, dispatcher, overrides):
        with pytest.raises(InvalidInputError) as exc_info:
            await make_offer(**overrides)

        assert exc_info.value.code == "OP_INVALID_INPUT"
        assert await lifecycle.list_user_operations(CREATOR) == []
        dispatcher.announce.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_ref_when_dispatcher_returns_none(self, lifecycle, make_offer, dispatcher):
        dispatcher.announce.return_value = None
        offer = await make_offer()

        assert offer.message_ref is None
        assert (await lifecycle.get_operation(offer.operation_id)).message_ref is None


# =============================================================
# TEST: Accept
# =============================================================

class TestAccept:

    @pytest.mark.asyncio
    async def test_accept(self, lifecycle, make_offer, dispatcher):
        offer = await make_offer()

        accepted = await lifecycle.accept(offer.operation_id, ACCEPTOR)

        assert accepted.status == OperationStatus.ACCEPTED
        assert accepted.acceptor_id == ACCEPTOR
        dispatcher.notify_accepted.assert_awaited_once()
        stored = await lifecycle.get_operation(offer.operation_id)
        assert stored.acceptor_id == ACCEPTOR

    @pytest.mark.asyncio
    async def test_self_accept_forbidden(self, lifecycle, make_offer):
        offer = await make_offer()

        with pytest.raises(SelfAcceptForbiddenError):
            await lifecycle.accept(offer.operation_id, CREATOR)

        assert (await lifecycle.get_operation(offer.operation_id)).status == OperationStatus.PENDING

    @pytest.mark.asyncio
    async def test_not_found(self, lifecycle):
        with pytest.raises(NotFoundError):
            await lifecycle.accept("missing", ACCEPTOR)

    @pytest.mark.asyncio
    async def test_already_accepted(self, lifecycle, make_offer):
        offer = await make_offer()
        await lifecycle.accept(offer.operation_id, ACCEPTOR)

        with pytest.raises(NotAvailableError):
            await lifecycle.accept(offer.operation_id, STRANGER)

        assert (await lifecycle.get_operation(offer.operation_id)).acceptor_id == ACCEPTOR

    @pytest.mark.asyncio
    async def test_expired_offer_is_cancelled_on_accept(self, lifecycle, make_offer, clock):
        offer = await make_offer()
        clock.advance(hours=25)

        with pytest.raises(ExpiredError):
            await lifecycle.accept(offer.operation_id, ACCEPTOR)

        stored = await lifecycle.get_operation(offer.operation_id)
        assert stored.status == OperationStatus.CANCELLED
        assert stored.acceptor_id is None

    @pytest.mark.asyncio
    async def test_concurrent_accept_has_one_winner(self, lifecycle, make_offer):
        offer = await make_offer()

        results = await asyncio.gather(
            lifecycle.accept(offer.operation_id, ACCEPTOR),
            lifecycle.accept(offer.operation_id, STRANGER),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], NotAvailableError)

        stored = await lifecycle.get_operation(offer.operation_id)
        assert stored.acceptor_id == winners[0].acceptor_id


# =============================================================
# TEST: Completion
# =============================================================

class TestCompletion:

    @pytest.mark.asyncio
    async def test_request_completion(self, lifecycle, make_offer, dispatcher, clock):
        offer = await make_offer()
        await lifecycle.accept(offer.operation_id, ACCEPTOR)

        requested = await lifecycle.request_completion(offer.operation_id, ACCEPTOR)

        assert requested.status == OperationStatus.PENDING_COMPLETION
        assert requested.completion_requested_by == ACCEPTOR
        assert requested.completion_requested_at == clock()
        dispatcher.notify_completion_requested.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_request_completion_by_stranger(self, lifecycle, make_offer):
        offer = await make_offer()
        await lifecycle.accept(offer.operation_id, ACCEPTOR)

        with pytest.raises(NotParticipantError):
            await lifecycle.request_completion(offer.operation_id, STRANGER)

    @pytest.mark.asyncio
    async def test_request_completion_on_pending(self, lifecycle, make_offer):
        offer = await make_offer()

        with pytest.raises(WrongStateError) as exc_info:
            await lifecycle.request_completion(offer.operation_id, CREATOR)

        assert exc_info.value.current == OperationStatus.PENDING

    @pytest.mark.asyncio
    async def test_complete_creates_two_obligations(self, lifecycle, make_offer, gate, dispatcher):
        completed = await _completed_offer(lifecycle, make_offer)

        assert completed.status == OperationStatus.COMPLETED
        assert completed.completed_at is not None
        obligations = await gate.list_for_operation(completed.operation_id)
        assert {(o.evaluator_id, o.target_id) for o in obligations} == {
            (CREATOR, ACCEPTOR), (ACCEPTOR, CREATOR),
        }
        dispatcher.notify_completed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_complete_from_pending_completion(self, lifecycle, make_offer):
        offer = await make_offer()
        await lifecycle.accept(offer.operation_id, ACCEPTOR)
        await lifecycle.request_completion(offer.operation_id, CREATOR)

        completed = await lifecycle.complete(offer.operation_id, ACCEPTOR)

        assert completed.status == OperationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_complete_pending_refused(self, lifecycle, make_offer, gate):
        offer = await make_offer()

        with pytest.raises(WrongStateError):
            await lifecycle.complete(offer.operation_id, CREATOR)

        assert await gate.list_for_operation(offer.operation_id) == []

    @pytest.mark.asyncio
    async def test_complete_twice_refused(self, lifecycle, make_offer, gate):
        completed = await _completed_offer(lifecycle, make_offer)

        with pytest.raises(WrongStateError):
            await lifecycle.complete(completed.operation_id, ACCEPTOR)

        assert len(await gate.list_for_operation(completed.operation_id)) == 2


# =============================================================
# TEST: Revert / cancel / close
# =============================================================

class TestRevert:

    @pytest.mark.asyncio
    async def test_accept_revert_reaccept(self, lifecycle, make_offer, clock, dispatcher):
        offer = await make_offer()
        clock.advance(hours=1)
        await lifecycle.accept(offer.operation_id, ACCEPTOR)

        reverted = await lifecycle.revert(offer.operation_id, ACCEPTOR)

        assert reverted.status == OperationStatus.PENDING
        assert reverted.acceptor_id is None
        dispatcher.notify_reverted.assert_awaited_once()

        again = await lifecycle.accept(offer.operation_id, STRANGER)
        assert again.acceptor_id == STRANGER

    @pytest.mark.asyncio
    async def test_revert_from_pending_completion_refused(self, lifecycle, make_offer):
        offer = await make_offer()
        await lifecycle.accept(offer.operation_id, ACCEPTOR)
        await lifecycle.request_completion(offer.operation_id, ACCEPTOR)

        with pytest.raises(WrongStateError):
            await lifecycle.revert(offer.operation_id, CREATOR)

    @pytest.mark.asyncio
    async def test_revert_by_stranger(self, lifecycle, make_offer):
        offer = await make_offer()
        await lifecycle.accept(offer.operation_id, ACCEPTOR)

        with pytest.raises(NotParticipantError):
            await lifecycle.revert(offer.operation_id, STRANGER)


class TestCancelAndClose:

    @pytest.mark.asyncio
    async def test_creator_cancels_pending(self, lifecycle, make_offer, dispatcher):
        offer = await make_offer()

        cancelled = await lifecycle.cancel(offer.operation_id, CREATOR)

        assert cancelled.status == OperationStatus.CANCELLED
        dispatcher.retract.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_acceptor_cancels_accepted(self, lifecycle, make_offer):
        offer = await make_offer()
        await lifecycle.accept(offer.operation_id, ACCEPTOR)

        cancelled = await lifecycle.cancel(offer.operation_id, ACCEPTOR)

        assert cancelled.status == OperationStatus.CANCELLED
        assert cancelled.acceptor_id is None

    @pytest.mark.asyncio
    async def test_cancel_by_stranger(self, lifecycle, make_offer):
        offer = await make_offer()

        with pytest.raises(NotParticipantError):
            await lifecycle.cancel(offer.operation_id, STRANGER)

    @pytest.mark.asyncio
    async def test_cancel_terminal_refused(self, lifecycle, make_offer):
        completed = await _completed_offer(lifecycle, make_offer)

        with pytest.raises(WrongStateError):
            await lifecycle.cancel(completed.operation_id, CREATOR)

    @pytest.mark.asyncio
    async def test_close_by_creator(self, lifecycle, make_offer, dispatcher):
        offer = await make_offer()

        closed = await lifecycle.close(offer.operation_id, CREATOR)

        assert closed.status == OperationStatus.CLOSED
        dispatcher.retract.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_by_other_user(self, lifecycle, make_offer):
        offer = await make_offer()

        with pytest.raises(ForbiddenError):
            await lifecycle.close(offer.operation_id, STRANGER)

    @pytest.mark.asyncio
    async def test_close_accepted_refused(self, lifecycle, make_offer):
        offer = await make_offer()
        await lifecycle.accept(offer.operation_id, ACCEPTOR)

        with pytest.raises(WrongStateError):
            await lifecycle.close(offer.operation_id, CREATOR)


# =============================================================
# TEST: Expiration sweep
# =============================================================

class TestExpirationSweep:

    @pytest.mark.asyncio
    async def test_sweep_cancels_expired_once(self, lifecycle, make_offer, clock, dispatcher):
        offer = await make_offer()
        clock.now = offer.expires_at + timedelta(seconds=1)

        assert await lifecycle.expiration_sweep() == 1
        assert (await lifecycle.get_operation(offer.operation_id)).status == OperationStatus.CANCELLED
        dispatcher.retract.assert_awaited_once()

        assert await lifecycle.expiration_sweep() == 0

    @pytest.mark.asyncio
    async def test_sweep_leaves_live_and_accepted(self, lifecycle, make_offer, clock):
        accepted = await make_offer()
        await lifecycle.accept(accepted.operation_id, ACCEPTOR)
        live = await make_offer(ttl=timedelta(hours=48))
        clock.advance(hours=25)

        assert await lifecycle.expiration_sweep() == 0
        assert (await lifecycle.get_operation(accepted.operation_id)).status == OperationStatus.ACCEPTED
        assert (await lifecycle.get_operation(live.operation_id)).status == OperationStatus.PENDING

    @pytest.mark.asyncio
    async def test_sweep_without_retract(self, lifecycle, make_offer, clock, dispatcher):
        await make_offer()
        clock.advance(hours=25)

        assert await lifecycle.expiration_sweep(retract=False) == 1
        dispatcher.retract.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_sweeps_cancel_once(self, lifecycle, make_offer, clock):
        for _ in range(3):
            await make_offer()
        clock.advance(hours=25)

        counts = await asyncio.gather(
            lifecycle.expiration_sweep(),
            lifecycle.expiration_sweep(),
        )

        assert sum(counts) == 3


# =============================================================
# TEST: Evaluation gate
# =============================================================

class TestEvaluationGate:

    @pytest.mark.asyncio
    async def test_completed_parties_are_blocked(self, lifecycle, make_offer):
        await _completed_offer(lifecycle, make_offer)
        other = await make_offer(creator_id=STRANGER)

        with pytest.raises(EvaluationsPendingError):
            await make_offer(creator_id=CREATOR)
        with pytest.raises(EvaluationsPendingError):
            await lifecycle.accept(other.operation_id, ACCEPTOR)

    @pytest.mark.asyncio
    async def test_gate_checked_before_validation(self, lifecycle, make_offer):
        await _completed_offer(lifecycle, make_offer)

        with pytest.raises(EvaluationsPendingError):
            await make_offer(creator_id=CREATOR, assets=[])

    @pytest.mark.asyncio
    async def test_gate_checked_before_lookup(self, lifecycle, make_offer):
        await _completed_offer(lifecycle, make_offer)

        with pytest.raises(EvaluationsPendingError):
            await lifecycle.accept("missing", ACCEPTOR)

    @pytest.mark.asyncio
    async def test_evaluating_unblocks(self, lifecycle, make_offer, ledger, gate):
        completed = await _completed_offer(lifecycle, make_offer)

        entry = await lifecycle.evaluate_counterparty(
            completed.operation_id, CREATOR, 5, comment="smooth",
        )

        assert entry.delta == 2
        assert entry.star_rating == 5
        record = await ledger.get_score(ACCEPTOR, completed.scope_id)
        assert record.score == 2
        assert record.star_tally[5] == 1
        assert not await gate.has_outstanding(CREATOR)
        assert await gate.has_outstanding(ACCEPTOR)

        await make_offer(creator_id=CREATOR)

    @pytest.mark.asyncio
    async def test_evaluate_twice_refused(self, lifecycle, make_offer, ledger):
        completed = await _completed_offer(lifecycle, make_offer)
        await lifecycle.evaluate_counterparty(completed.operation_id, ACCEPTOR, 4)

        with pytest.raises(NotFoundError) as exc_info:
            await lifecycle.evaluate_counterparty(completed.operation_id, ACCEPTOR, 1)

        assert exc_info.value.code == "GATE_OBLIGATION_NOT_FOUND"
        assert (await ledger.get_score(CREATOR, completed.scope_id)).score == 1

    @pytest.mark.asyncio
    async def test_evaluate_before_completion(self, lifecycle, make_offer):
        offer = await make_offer()
        await lifecycle.accept(offer.operation_id, ACCEPTOR)

        with pytest.raises(WrongStateError):
            await lifecycle.evaluate_counterparty(offer.operation_id, CREATOR, 5)

    @pytest.mark.asyncio
    async def test_evaluate_invalid_rating(self, lifecycle, make_offer, gate):
        completed = await _completed_offer(lifecycle, make_offer)

        with pytest.raises(InvalidInputError):
            await lifecycle.evaluate_counterparty(completed.operation_id, CREATOR, 6)

        assert await gate.has_outstanding(CREATOR)

    @pytest.mark.asyncio
    async def test_evaluate_by_stranger(self, lifecycle, make_offer):
        completed = await _completed_offer(lifecycle, make_offer)

        with pytest.raises(NotParticipantError):
            await lifecycle.evaluate_counterparty(completed.operation_id, STRANGER, 5)

    @pytest.mark.asyncio
    async def test_unscoped_trade_rates_in_direct_scope(self, lifecycle, make_offer, ledger):
        offer = await make_offer(scope_id=None)
        await lifecycle.accept(offer.operation_id, ACCEPTOR)
        await lifecycle.complete(offer.operation_id, ACCEPTOR)

        await lifecycle.evaluate_counterparty(offer.operation_id, ACCEPTOR, 2)

        record = await ledger.get_score(CREATOR, ledger.config.direct_scope_id)
        assert record.score == -1


# =============================================================
# TEST: Notification failures
# =============================================================

class TestDispatcherFailures:

    @pytest.mark.asyncio
    async def test_failing_notification_keeps_transition(self, lifecycle, make_offer, dispatcher):
        dispatcher.notify_accepted.side_effect = RuntimeError("telegram down")
        offer = await make_offer()

        accepted = await lifecycle.accept(offer.operation_id, ACCEPTOR)

        assert accepted.status == OperationStatus.ACCEPTED
        stored = await lifecycle.get_operation(offer.operation_id)
        assert stored.status == OperationStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_slow_notification_is_bounded(self, lifecycle, make_offer, dispatcher):
        async def hang(*args):
            await asyncio.sleep(5)

        dispatcher.notify_completed.side_effect = hang

        completed = await _completed_offer(lifecycle, make_offer)

        assert completed.status == OperationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failing_announce_keeps_offer(self, lifecycle, make_offer, dispatcher):
        dispatcher.announce.side_effect = RuntimeError("telegram down")

        offer = await make_offer()

        stored = await lifecycle.get_operation(offer.operation_id)
        assert stored.status == OperationStatus.PENDING
        assert stored.message_ref is None


# =============================================================
# TEST: Listeners
# =============================================================

class TestListeners:

    @pytest.mark.asyncio
    async def test_sync_and_async_listeners(self, lifecycle, make_offer):
        seen = []

        async def async_listener(event):
            seen.append(("async", event.action))

        lifecycle.add_listener(lambda event: seen.append(("sync", event.action)))
        lifecycle.add_listener(async_listener)

        offer = await make_offer()
        await lifecycle.accept(offer.operation_id, ACCEPTOR)

        assert seen == [("sync", OperationAction.ACCEPT), ("async", OperationAction.ACCEPT)]

    @pytest.mark.asyncio
    async def test_failing_listener_is_contained(self, lifecycle, make_offer):
        listener = MagicMock(side_effect=RuntimeError("boom"))
        lifecycle.add_listener(listener)

        offer = await make_offer()
        closed = await lifecycle.close(offer.operation_id, CREATOR)

        assert closed.status == OperationStatus.CLOSED
        event = listener.call_args.args[0]
        assert event.from_state == OperationStatus.PENDING
        assert event.to_state == OperationStatus.CLOSED
        assert event.actor_id == CREATOR


# =============================================================
# TEST: Queries
# =============================================================

class TestQueries:

    @pytest.mark.asyncio
    async def test_list_available(self, lifecycle, make_offer, clock):
        short = await make_offer(ttl=timedelta(hours=1))
        clock.advance(minutes=1)
        taken = await make_offer()
        await lifecycle.accept(taken.operation_id, ACCEPTOR)
        clock.advance(minutes=1)
        other_scope = await make_offer(scope_id=-200)
        clock.advance(minutes=1)
        fresh = await make_offer()

        available = await lifecycle.list_available(scope_id=-100)
        assert [op.operation_id for op in available] == [fresh.operation_id, short.operation_id]

        clock.advance(hours=2)
        available = await lifecycle.list_available(scope_id=-100)
        assert [op.operation_id for op in available] == [fresh.operation_id]

        everywhere = await lifecycle.list_available()
        assert {op.operation_id for op in everywhere} == {
            fresh.operation_id, other_scope.operation_id,
        }

    @pytest.mark.asyncio
    async def test_list_user_operations(self, lifecycle, make_offer, clock):
        own = await make_offer()
        clock.advance(minutes=1)
        foreign = await make_offer(creator_id=STRANGER)
        await lifecycle.accept(foreign.operation_id, CREATOR)
        clock.advance(minutes=1)
        await make_offer(creator_id=STRANGER)

        ops = await lifecycle.list_user_operations(CREATOR)
        assert {op.operation_id for op in ops} == {own.operation_id, foreign.operation_id}

        accepted = await lifecycle.list_user_operations(
            CREATOR, statuses=[OperationStatus.ACCEPTED],
        )
        assert [op.operation_id for op in accepted] == [foreign.operation_id]

    @pytest.mark.asyncio
    async def test_delete_pending_offers(self, lifecycle, make_offer, dispatcher):
        first = await make_offer()
        await make_offer()
        taken = await make_offer()
        await lifecycle.accept(taken.operation_id, ACCEPTOR)

        assert await lifecycle.delete_pending_offers(CREATOR) == 2
        assert dispatcher.retract.await_count == 2

        with pytest.raises(NotFoundError):
            await lifecycle.get_operation(first.operation_id)
        assert (await lifecycle.get_operation(taken.operation_id)).status == OperationStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_transfer_order_lower_score_first(self, lifecycle, make_offer, ledger):
        await ledger.register_evaluation(99, CREATOR, -100, 50)
        await ledger.register_evaluation(99, ACCEPTOR, -100, 5)
        offer = await make_offer()
        accepted = await lifecycle.accept(offer.operation_id, ACCEPTOR)

        order = await lifecycle.transfer_order(accepted)

        assert order.first_user_id == ACCEPTOR
        assert order.second_user_id == CREATOR
        assert (order.first_score, order.second_score) == (5, 50)

    @pytest.mark.asyncio
    async def test_transfer_order_tie_goes_to_creator(self, lifecycle, make_offer):
        offer = await make_offer()
        accepted = await lifecycle.accept(offer.operation_id, ACCEPTOR)

        order = await lifecycle.transfer_order(accepted)

        assert order.first_user_id == CREATOR

    @pytest.mark.asyncio
    async def test_transfer_order_needs_acceptor(self, lifecycle, make_offer):
        offer = await make_offer()

        with pytest.raises(WrongStateError):
            await lifecycle.transfer_order(offer)


# =============================================================
# TEST: Random action sequences
# =============================================================

class TestRandomSequences:
    """Whatever users do, only valid edges are ever taken."""

    ACTIONS = ["accept", "request_completion", "complete", "revert", "cancel", "close"]

    @pytest.mark.asyncio
    async def test_random_walks_follow_valid_edges(self, lifecycle, make_offer):
        for seed in range(15):
            rng = random.Random(seed)
            creator, acceptor, stranger = 10 * seed + 1, 10 * seed + 2, 10 * seed + 3
            offer = await make_offer(creator_id=creator)

            for _ in range(10):
                before = await lifecycle.get_operation(offer.operation_id)
                action = rng.choice(self.ACTIONS)
                actor = rng.choice([creator, acceptor, stranger])

                try:
                    after = await getattr(lifecycle, action)(offer.operation_id, actor)
                except DeskError:
                    after = await lifecycle.get_operation(offer.operation_id)
                    assert after.status == before.status
                    assert after.acceptor_id == before.acceptor_id
                else:
                    assert after.status in VALID_TRANSITIONS[before.status]

                assert (after.acceptor_id is not None) == after.status.requires_acceptor


# =============================================================
# TEST: Participants by handle
# =============================================================

class TestParticipantHandles:

    @pytest.fixture
    async def bob(self, identity):
        return await identity.register_user(ACCEPTOR, username="bob", first_name="Bob")

    @pytest.mark.asyncio
    async def test_full_trade_by_handle(self, lifecycle, make_offer, ledger, bob):
        offer = await make_offer()

        accepted = await lifecycle.accept(offer.operation_id, "@bob")
        assert accepted.acceptor_id == ACCEPTOR

        completed = await lifecycle.complete(offer.operation_id, str(CREATOR))
        assert completed.status == OperationStatus.COMPLETED

        await lifecycle.evaluate_counterparty(offer.operation_id, "@Bob", 5)
        assert (await ledger.get_score(CREATOR, offer.scope_id)).score == 2

    @pytest.mark.asyncio
    async def test_digit_string_is_an_id(self, lifecycle, make_offer):
        offer = await make_offer()

        accepted = await lifecycle.accept(offer.operation_id, " 2 ")
        assert accepted.acceptor_id == ACCEPTOR

    @pytest.mark.asyncio
    async def test_unknown_handle(self, lifecycle, make_offer, bob):
        offer = await make_offer()

        with pytest.raises(NotFoundError) as exc_info:
            await lifecycle.accept(offer.operation_id, "@nobody")

        assert exc_info.value.code == "USER_NOT_FOUND"
        after = await lifecycle.get_operation(offer.operation_id)
        assert after.status == OperationStatus.PENDING

    @pytest.mark.asyncio
    async def test_handle_of_outsider_is_not_participant(self, lifecycle, make_offer, identity):
        await identity.register_user(STRANGER, username="eve")
        offer = await make_offer()
        await lifecycle.accept(offer.operation_id, ACCEPTOR)

        with pytest.raises(NotParticipantError):
            await lifecycle.cancel(offer.operation_id, "@eve")
        with pytest.raises(ForbiddenError):
            await lifecycle.close(offer.operation_id, "eve")


# =============================================================
# TEST: Store failures
# =============================================================

def _store_down():
    return OperationalError("INSERT", {}, Exception("disk I/O error"))


class TestStoreFailures:
    """A failing store aborts the whole transition, unwrapped."""

    @pytest.mark.asyncio
    async def test_complete_rolls_back_status(self, lifecycle, make_offer, gate, dispatcher):
        offer = await make_offer()
        await lifecycle.accept(offer.operation_id, ACCEPTOR)

        with patch.object(
            gate._repository, "insert_many", AsyncMock(side_effect=_store_down()),
        ):
            with pytest.raises(OperationalError):
                await lifecycle.complete(offer.operation_id, CREATOR)

        after = await lifecycle.get_operation(offer.operation_id)
        assert after.status == OperationStatus.ACCEPTED
        assert after.completed_at is None
        assert await gate.list_for_operation(offer.operation_id) == []
        assert not await gate.has_outstanding(CREATOR)
        dispatcher.notify_completed.assert_not_awaited()

        # the store recovers and the same transition goes through
        completed = await lifecycle.complete(offer.operation_id, CREATOR)
        assert completed.status == OperationStatus.COMPLETED
        assert len(await gate.list_for_operation(offer.operation_id)) == 2

    @pytest.mark.asyncio
    async def test_evaluation_rolls_back_score_and_obligation(
        self, lifecycle, make_offer, ledger, gate,
    ):
        completed = await _completed_offer(lifecycle, make_offer)
        scope_id = completed.scope_id

        with patch.object(
            ledger._repository, "add_history", AsyncMock(side_effect=_store_down()),
        ):
            with pytest.raises(OperationalError):
                await lifecycle.evaluate_counterparty(completed.operation_id, CREATOR, 5)

        assert await ledger.get_score(ACCEPTOR, scope_id) is None
        assert await ledger.get_score(CREATOR, scope_id) is None
        assert await ledger.get_history(ACCEPTOR, scope_id) == []
        obligation = await gate.get_obligation(completed.operation_id, CREATOR)
        assert not obligation.completed
        assert await gate.has_outstanding(CREATOR)


# =============================================================
# TEST: Refusal logging
# =============================================================

class TestRefusalLogging:

    @pytest.mark.asyncio
    async def test_wrong_state_logged_as_warning(self, lifecycle, make_offer, caplog):
        offer = await make_offer()
        caplog.set_level(logging.DEBUG, logger="p2p_desk.lifecycle")

        with pytest.raises(WrongStateError):
            await lifecycle.request_completion(offer.operation_id, CREATOR)

        refusals = [r for r in caplog.records if "[OP_WRONG_STATE]" in r.getMessage()]
        assert [r.levelno for r in refusals] == [logging.WARNING]

    @pytest.mark.asyncio
    async def test_forbidden_close_logged_with_code(self, lifecycle, make_offer, caplog):
        offer = await make_offer()
        caplog.set_level(logging.DEBUG, logger="p2p_desk.lifecycle")

        with pytest.raises(ForbiddenError):
            await lifecycle.close(offer.operation_id, ACCEPTOR)

        assert any(
            "[OP_FORBIDDEN]" in r.getMessage() and r.levelno == logging.WARNING
            for r in caplog.records
        )

    def test_level_follows_registered_severity(self, caplog):
        caplog.set_level(logging.DEBUG, logger="p2p_desk.lifecycle")

        fatal = _rejected("op-1", DeskError("store down", code="DB_UNREACHABLE"))
        unknown = _rejected("op-2", DeskError("mystery"))

        assert fatal.code == "DB_UNREACHABLE"
        assert unknown.code == "DESK_ERROR"
        levels = {r.getMessage().split(":")[0]: r.levelno for r in caplog.records}
        assert levels == {"Operation op-1": logging.CRITICAL, "Operation op-2": logging.ERROR}
