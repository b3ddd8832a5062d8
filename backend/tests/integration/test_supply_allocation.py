"""Integration tests for the supply ledger, allocation enforcer and claims"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from app.models.collection import Collection, LaunchStatus, SupplyItem
from app.models.credits import CreditBalance
from app.models.mint import MintAttempt, MintStatus
from app.services.actor import Actor
from app.services.allocation import AllocationEnforcer
from app.services.credit_ledger import CreditLedger, DebitResult
from app.services.errors import (
    AllocationExhaustedError,
    InsufficientCreditsError,
    NotAdminError,
    NotFoundError,
    NotWhitelistedError,
    PhaseAllocationExhaustedError,
    PhaseInactiveError,
    SupplyExhaustedError,
    SupplyLockedError,
)
from app.services.mint_state import MintStateMachine
from app.services.snapshots import PhaseState
from app.services.supply_ledger import SupplyLedger

from conftest import WALLET_A, WALLET_B


class TestSupplyGeneration:
    """Tests for supply generation and locking"""

    @pytest.mark.asyncio
    async def test_generate_appends_items(self, db_session, admin):
        collection = Collection(name="Fresh", launch_status=LaunchStatus.DRAFT.value)
        db_session.add(collection)
        await db_session.commit()

        ledger = SupplyLedger(db_session)
        assert await ledger.generate(admin, collection.id, 5) == 5
        assert await ledger.generate(admin, collection.id, 3) == 8
        await db_session.commit()

        numbers = (await db_session.execute(
            select(SupplyItem.item_number).where(SupplyItem.collection_id == collection.id).order_by(SupplyItem.item_number)
        )).scalars().all()
        assert numbers == list(range(1, 9))

    @pytest.mark.asyncio
    async def test_generate_requires_admin(self, db_session):
        collection = Collection(name="Fresh", launch_status=LaunchStatus.DRAFT.value)
        db_session.add(collection)
        await db_session.commit()

        with pytest.raises(NotAdminError):
            await SupplyLedger(db_session).generate(Actor.wallet(WALLET_A), collection.id, 5)

    @pytest.mark.asyncio
    async def test_generate_rejected_once_locked(self, db_session, admin, make_launch):
        """Supply is fixed after the first phase activation"""
        collection, _ = await make_launch(supply=3)
        with pytest.raises(SupplyLockedError):
            await SupplyLedger(db_session).generate(admin, collection.id, 1)

    @pytest.mark.asyncio
    async def test_generate_unknown_collection(self, db_session, admin):
        with pytest.raises(NotFoundError):
            await SupplyLedger(db_session).generate(admin, 9999, 1)


class TestSupplyCounts:
    """Tests for derived supply counters"""

    @pytest.mark.asyncio
    async def test_counts_track_reservations(self, db_session, settings, make_launch):
        collection, _ = await make_launch(supply=5)
        machine = MintStateMachine(db_session, settings)
        await machine.claim(Actor.wallet(WALLET_A), collection.id)
        await db_session.commit()

        counts = await SupplyLedger(db_session).counts(collection.id)
        assert counts.total == 5
        assert counts.minted == 0
        assert counts.held == 1
        assert counts.available == 4

    @pytest.mark.asyncio
    async def test_cap_supply_limits_claims(self, db_session, settings, make_launch):
        collection, _ = await make_launch(supply=5, cap_supply=2)
        machine = MintStateMachine(db_session, settings)
        await machine.claim(Actor.wallet(WALLET_A), collection.id)
        await machine.claim(Actor.wallet(WALLET_B), collection.id)
        await db_session.commit()

        with pytest.raises(SupplyExhaustedError):
            await machine.claim(Actor.wallet("bc1qthird"), collection.id)

    @pytest.mark.asyncio
    async def test_cancelled_reservation_frees_item(self, db_session, settings, make_launch):
        collection, _ = await make_launch(supply=1)
        machine = MintStateMachine(db_session, settings)
        attempt = await machine.claim(Actor.wallet(WALLET_A), collection.id)
        await db_session.commit()
        # rollback expires loaded objects
        collection_id, attempt_id, item_id = collection.id, attempt.id, attempt.supply_item_id

        with pytest.raises(SupplyExhaustedError):
            await machine.claim(Actor.wallet(WALLET_B), collection_id)
        await db_session.rollback()

        await machine.cancel(Actor.wallet(WALLET_A), attempt_id)
        await db_session.commit()

        second = await machine.claim(Actor.wallet(WALLET_B), collection_id)
        assert second.supply_item_id == item_id

    @pytest.mark.asyncio
    async def test_choose_specific_item(self, db_session, settings, make_launch):
        collection, _ = await make_launch(supply=3)
        item = (await db_session.execute(
            select(SupplyItem).where(SupplyItem.collection_id == collection.id, SupplyItem.item_number == 2)
        )).scalar_one()

        machine = MintStateMachine(db_session, settings)
        attempt = await machine.claim(Actor.wallet(WALLET_A), collection.id, supply_item_id=item.id)
        await db_session.commit()
        assert attempt.supply_item_id == item.id

        with pytest.raises(SupplyExhaustedError):
            await machine.claim(Actor.wallet(WALLET_B), collection.id, supply_item_id=item.id)

    @pytest.mark.asyncio
    async def test_test_mints_never_consume_supply(self, db_session, admin, settings, make_launch):
        collection, _ = await make_launch(supply=1)
        machine = MintStateMachine(db_session, settings)
        test_attempt = await machine.create_test_mint(admin, collection.id, WALLET_A)
        await db_session.commit()

        assert test_attempt.is_test_mint
        assert test_attempt.supply_item_id is None
        counts = await SupplyLedger(db_session).counts(collection.id)
        assert counts.available == 1


class TestAllocation:
    """Tests for per-wallet and per-phase allocation"""

    @pytest.mark.asyncio
    async def test_public_phase_cap(self, db_session, settings, make_launch):
        collection, _ = await make_launch(max_per_wallet=2)
        machine = MintStateMachine(db_session, settings)
        wallet = Actor.wallet(WALLET_A)
        await machine.claim(wallet, collection.id)
        await machine.claim(wallet, collection.id)
        await db_session.commit()

        with pytest.raises(AllocationExhaustedError):
            await machine.claim(wallet, collection.id)

    @pytest.mark.asyncio
    async def test_whitelist_only_rejects_unknown_wallet(self, db_session, settings, make_launch):
        collection, _ = await make_launch(whitelist={WALLET_A: 1}, whitelist_only=True)
        with pytest.raises(NotWhitelistedError):
            await MintStateMachine(db_session, settings).claim(Actor.wallet(WALLET_B), collection.id)

    @pytest.mark.asyncio
    async def test_whitelist_entry_allocation(self, db_session, settings, make_launch):
        """Without max_per_wallet the entry's own allocation applies"""
        collection, phase = await make_launch(whitelist={WALLET_A: 2}, whitelist_only=True)
        machine = MintStateMachine(db_session, settings)
        wallet = Actor.wallet(WALLET_A)
        await machine.claim(wallet, collection.id)
        await machine.claim(wallet, collection.id)
        await db_session.commit()

        with pytest.raises(AllocationExhaustedError):
            await machine.claim(wallet, collection.id)

        snapshot = await AllocationEnforcer(db_session).remaining(WALLET_A, PhaseState.from_row(phase))
        assert snapshot.is_whitelisted
        assert snapshot.allowed == 2
        assert snapshot.used == 0
        assert snapshot.reserved == 2

    @pytest.mark.asyncio
    async def test_phase_max_overrides_entry_allocation(self, db_session, make_launch):
        _, phase = await make_launch(whitelist={WALLET_A: 5}, whitelist_only=True, max_per_wallet=1)
        snapshot = await AllocationEnforcer(db_session).remaining(WALLET_A, PhaseState.from_row(phase))
        assert snapshot.allowed == 1

    @pytest.mark.asyncio
    async def test_public_phase_reports_whitelist_membership(self, db_session, make_launch):
        _, phase = await make_launch(whitelist={WALLET_A: 1}, whitelist_only=False)
        enforcer = AllocationEnforcer(db_session)
        state = PhaseState.from_row(phase)
        assert (await enforcer.remaining(WALLET_A, state)).is_whitelisted
        member_b = await enforcer.remaining(WALLET_B, state)
        assert not member_b.is_whitelisted
        assert member_b.unlimited

    @pytest.mark.asyncio
    async def test_phase_pool(self, db_session, settings, make_launch):
        collection, _ = await make_launch(phase_allocation=1)
        machine = MintStateMachine(db_session, settings)
        await machine.claim(Actor.wallet(WALLET_A), collection.id)
        await db_session.commit()

        with pytest.raises(PhaseAllocationExhaustedError):
            await machine.claim(Actor.wallet(WALLET_B), collection.id)

    @pytest.mark.asyncio
    async def test_closed_phase_rejects_claims(self, db_session, settings, make_launch):
        now = datetime.utcnow()
        collection, _ = await make_launch(start_time=now - timedelta(hours=2), end_time=now - timedelta(hours=1))
        with pytest.raises(PhaseInactiveError):
            await MintStateMachine(db_session, settings).claim(Actor.wallet(WALLET_A), collection.id)

    @pytest.mark.asyncio
    async def test_inactive_collection_rejects_claims(self, db_session, settings, make_launch):
        collection, _ = await make_launch(active=False)
        with pytest.raises(PhaseInactiveError):
            await MintStateMachine(db_session, settings).claim(Actor.wallet(WALLET_A), collection.id)

    @pytest.mark.asyncio
    async def test_released_attempts_do_not_count(self, db_session, admin, settings, make_launch):
        collection, _ = await make_launch(max_per_wallet=1)
        machine = MintStateMachine(db_session, settings)
        wallet = Actor.wallet(WALLET_A)
        attempt = await machine.claim(wallet, collection.id)
        await machine.mark_refunded(admin, attempt.id)
        await db_session.commit()

        again = await machine.claim(wallet, collection.id)
        assert again.status == MintStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_whitelist_cap_holds_through_commit(self, db_session, settings, make_launch):
        """Two whitelisted mints reach commit_broadcast, the third claim is turned away"""
        collection, _ = await make_launch(whitelist={WALLET_A: 2}, whitelist_only=True, max_per_wallet=2)
        collection_id = collection.id
        machine = MintStateMachine(db_session, settings)
        wallet = Actor.wallet(WALLET_A)
        for n in range(2):
            attempt = await machine.claim(wallet, collection_id)
            await machine.record_commit_broadcast(wallet, attempt.id, f"{n}" * 64)
        await db_session.commit()

        with pytest.raises(AllocationExhaustedError):
            await machine.claim(wallet, collection_id)
        await db_session.rollback()

        statuses = (await db_session.execute(
            select(MintAttempt.status).where(MintAttempt.collection_id == collection_id)
        )).scalars().all()
        assert sorted(statuses) == [MintStatus.COMMIT_BROADCAST.value] * 2

    @pytest.mark.asyncio
    async def test_failed_commit_still_counts(self, db_session, settings, make_launch):
        """A broadcast commit uses allocation even when the attempt later fails"""
        collection, _ = await make_launch(max_per_wallet=1)
        collection_id = collection.id
        machine = MintStateMachine(db_session, settings)
        wallet = Actor.wallet(WALLET_A)
        attempt = await machine.claim(wallet, collection_id)
        await machine.record_commit_broadcast(wallet, attempt.id, "c" * 64)
        await machine.fail(wallet, attempt.id, "reveal signing rejected")
        await db_session.commit()

        with pytest.raises(AllocationExhaustedError):
            await machine.claim(wallet, collection_id)

    @pytest.mark.asyncio
    async def test_claimable_subtracts_reservations(self, db_session, settings, make_launch):
        collection, phase = await make_launch(max_per_wallet=1)
        await MintStateMachine(db_session, settings).claim(Actor.wallet(WALLET_A), collection.id)
        await db_session.commit()

        snapshot = await AllocationEnforcer(db_session).remaining(WALLET_A, PhaseState.from_row(phase))
        assert snapshot.remaining == 1
        assert snapshot.claimable == 0
        assert not snapshot.can_claim()


class TestMultiItemClaims:
    """Tests for reserving several items in one request"""

    async def attempt_count(self, db_session, collection_id: int) -> int:
        return (await db_session.execute(
            select(func.count(MintAttempt.id)).where(MintAttempt.collection_id == collection_id)
        )).scalar_one()

    @pytest.mark.asyncio
    async def test_reserves_distinct_items(self, db_session, settings, make_launch):
        collection, phase = await make_launch(supply=5, max_per_wallet=3)
        attempts = await MintStateMachine(db_session, settings).claim_many(Actor.wallet(WALLET_A), collection.id, 3)
        await db_session.commit()

        assert len(attempts) == 3
        assert len({a.supply_item_id for a in attempts}) == 3
        assert all(a.status == MintStatus.PENDING.value and a.phase_id == phase.id for a in attempts)
        counts = await SupplyLedger(db_session).counts(collection.id)
        assert counts.held == 3

    @pytest.mark.asyncio
    async def test_over_wallet_cap_reserves_nothing(self, db_session, settings, make_launch):
        collection, _ = await make_launch(max_per_wallet=2)
        collection_id = collection.id
        machine = MintStateMachine(db_session, settings)
        await machine.claim(Actor.wallet(WALLET_A), collection_id)
        await db_session.commit()

        with pytest.raises(AllocationExhaustedError):
            await machine.claim_many(Actor.wallet(WALLET_A), collection_id, 2)
        await db_session.rollback()

        assert await self.attempt_count(db_session, collection_id) == 1

    @pytest.mark.asyncio
    async def test_over_phase_pool(self, db_session, settings, make_launch):
        collection, _ = await make_launch(phase_allocation=2)
        with pytest.raises(PhaseAllocationExhaustedError):
            await MintStateMachine(db_session, settings).claim_many(Actor.wallet(WALLET_A), collection.id, 3)

    @pytest.mark.asyncio
    async def test_over_remaining_supply(self, db_session, settings, make_launch):
        collection, _ = await make_launch(supply=2)
        with pytest.raises(SupplyExhaustedError):
            await MintStateMachine(db_session, settings).claim_many(Actor.wallet(WALLET_A), collection.id, 3)

    @pytest.mark.asyncio
    async def test_quantity_bounds(self, db_session, settings, make_launch):
        settings.max_per_transaction = 2
        collection, _ = await make_launch()
        machine = MintStateMachine(db_session, settings)
        with pytest.raises(ValueError):
            await machine.claim_many(Actor.wallet(WALLET_A), collection.id, 3)
        with pytest.raises(ValueError):
            await machine.claim_many(Actor.wallet(WALLET_A), collection.id, 0)

    @pytest.mark.asyncio
    async def test_credits_checked_for_whole_request(self, db_session, settings, make_launch):
        settings.mint_credit_cost = 2
        collection, _ = await make_launch()
        collection_id = collection.id
        await CreditLedger(db_session).credit(WALLET_A, 3)
        await db_session.commit()

        with pytest.raises(InsufficientCreditsError):
            await MintStateMachine(db_session, settings).claim_many(Actor.wallet(WALLET_A), collection_id, 2)
        await db_session.rollback()

        assert await self.attempt_count(db_session, collection_id) == 0
        assert await CreditLedger(db_session).balance(WALLET_A) == 3


class TestCredits:
    """Tests for the optional credit charge"""

    @pytest.mark.asyncio
    async def test_claim_debits_and_cancel_refunds(self, db_session, settings, make_launch):
        settings.mint_credit_cost = 3
        collection, _ = await make_launch()
        ledger = CreditLedger(db_session)
        await ledger.credit(WALLET_A, 5)
        await db_session.commit()

        machine = MintStateMachine(db_session, settings)
        attempt = await machine.claim(Actor.wallet(WALLET_A), collection.id)
        await db_session.commit()
        assert attempt.credits_charged == 3
        assert await ledger.balance(WALLET_A) == 2
        collection_id, attempt_id = collection.id, attempt.id

        with pytest.raises(InsufficientCreditsError):
            await machine.claim(Actor.wallet(WALLET_A), collection_id)
        await db_session.rollback()

        await machine.cancel(Actor.wallet(WALLET_A), attempt_id)
        await db_session.commit()
        assert await ledger.balance(WALLET_A) == 5

    @pytest.mark.asyncio
    async def test_debit_refuses_overdraft(self, db_session):
        ledger = CreditLedger(db_session)
        assert await ledger.debit(WALLET_B, 1) == DebitResult.INSUFFICIENT
        await ledger.credit(WALLET_B, 1)
        assert await ledger.debit(WALLET_B, 1) == DebitResult.OK
        await db_session.commit()

        balance = await db_session.get(CreditBalance, WALLET_B, populate_existing=True)
        assert balance.credits == 0
