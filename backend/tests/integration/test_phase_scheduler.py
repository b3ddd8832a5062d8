"""Integration tests for phase activation and closing"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select, update

from app.models.activity import MintActivity
from app.models.collection import Collection, LaunchStatus, SupplyItem
from app.models.phase import MintPhase
from app.services.actor import Actor
from app.services.errors import NotAdminError, NotFoundError, PhaseConflictError
from app.services.phase_scheduler import PhaseScheduler

from conftest import WALLET_A


async def add_phase(db_session, collection_id: int, order: int, start_time, end_time=None, name=None):
    phase = MintPhase(
        collection_id=collection_id,
        phase_name=name or f"Phase {order}",
        phase_order=order,
        start_time=start_time,
        end_time=end_time,
        is_active=False,
    )
    db_session.add(phase)
    await db_session.commit()
    return phase


async def reload(db_session, model, row_id):
    return await db_session.get(model, row_id, populate_existing=True)


class TestActivation:
    """Tests for activating due phases"""

    @pytest.mark.asyncio
    async def test_scheduled_collection_goes_live(self, db_session, make_launch):
        collection, phase = await make_launch(active=False)
        assert not collection.is_locked

        result = await PhaseScheduler(db_session).tick()
        await db_session.commit()

        assert result.activated == 1
        phase = await reload(db_session, MintPhase, phase.id)
        collection = await reload(db_session, Collection, collection.id)
        assert phase.is_active
        assert collection.launch_status == LaunchStatus.ACTIVE.value
        assert collection.is_locked

    @pytest.mark.asyncio
    async def test_lowest_order_wins(self, db_session, make_launch):
        now = datetime.utcnow()
        collection, first = await make_launch(active=False)
        second = await add_phase(db_session, collection.id, 1, now - timedelta(hours=2))

        await PhaseScheduler(db_session).tick(now)
        await db_session.commit()

        assert (await reload(db_session, MintPhase, first.id)).is_active
        assert not (await reload(db_session, MintPhase, second.id)).is_active

    @pytest.mark.asyncio
    async def test_future_phase_not_activated(self, db_session, make_launch):
        now = datetime.utcnow()
        collection, phase = await make_launch(active=False, start_time=now + timedelta(hours=1))

        result = await PhaseScheduler(db_session).tick(now)

        assert result.activated == 0
        assert not (await reload(db_session, MintPhase, phase.id)).is_active

    @pytest.mark.asyncio
    async def test_draft_collection_ignored(self, db_session, make_launch):
        collection, phase = await make_launch(active=False)
        await db_session.execute(
            update(Collection).where(Collection.id == collection.id).values(launch_status=LaunchStatus.DRAFT.value)
        )
        await db_session.commit()

        result = await PhaseScheduler(db_session).tick()
        assert result.activated == 0

    @pytest.mark.asyncio
    async def test_tick_is_idempotent(self, db_session, make_launch):
        await make_launch(active=False)
        scheduler = PhaseScheduler(db_session)
        now = datetime.utcnow()

        first = await scheduler.tick(now)
        await db_session.commit()
        second = await scheduler.tick(now)
        await db_session.commit()

        assert first.activated == 1
        assert second.to_dict() == {
            "deactivated": 0,
            "activated": 0,
            "phases_closed": 0,
            "collections_completed": 0,
        }


class TestDeactivation:
    """Tests for phases past their end time"""

    @pytest.mark.asyncio
    async def test_expired_phase_hands_over(self, db_session, make_launch):
        """The ended phase turns off and the next eligible phase starts in the same tick"""
        now = datetime.utcnow()
        collection, first = await make_launch(
            start_time=now - timedelta(hours=2), end_time=now - timedelta(minutes=1)
        )
        second = await add_phase(db_session, collection.id, 1, now - timedelta(minutes=1))

        result = await PhaseScheduler(db_session).tick(now)
        await db_session.commit()

        assert result.deactivated == 1
        assert result.activated == 1
        first = await reload(db_session, MintPhase, first.id)
        assert not first.is_active
        assert not first.is_completed
        assert (await reload(db_session, MintPhase, second.id)).is_active

    @pytest.mark.asyncio
    async def test_end_time_is_exclusive(self, db_session, make_launch):
        now = datetime.utcnow()
        _, phase = await make_launch(start_time=now - timedelta(hours=1), end_time=now)

        result = await PhaseScheduler(db_session).tick(now)

        assert result.deactivated == 1


class TestSoldOut:
    """Tests for closing sold-out collections"""

    @pytest.mark.asyncio
    async def test_sold_out_closes_every_phase(self, db_session, make_launch):
        now = datetime.utcnow()
        collection, phase = await make_launch(supply=2)
        later = await add_phase(db_session, collection.id, 1, now + timedelta(days=1))
        await db_session.execute(
            update(SupplyItem).where(SupplyItem.collection_id == collection.id).values(is_minted=True)
        )
        await db_session.commit()

        result = await PhaseScheduler(db_session).tick(now)
        await db_session.commit()

        assert result.phases_closed == 2
        assert result.collections_completed == 1
        assert result.activated == 0

        phase = await reload(db_session, MintPhase, phase.id)
        assert phase.is_completed and not phase.is_active
        assert phase.end_time == now
        later = await reload(db_session, MintPhase, later.id)
        assert later.is_completed
        # A phase that never started keeps its own end time
        assert later.end_time is None

        collection = await reload(db_session, Collection, collection.id)
        assert collection.launch_status == LaunchStatus.COMPLETED.value
        assert collection.mint_ended_at == now

    @pytest.mark.asyncio
    async def test_cap_supply_counts_as_sold_out(self, db_session, make_launch):
        collection, _ = await make_launch(supply=5, cap_supply=1)
        item_id = (await db_session.execute(
            select(SupplyItem.id).where(SupplyItem.collection_id == collection.id).limit(1)
        )).scalar_one()
        await db_session.execute(update(SupplyItem).where(SupplyItem.id == item_id).values(is_minted=True))
        await db_session.commit()

        result = await PhaseScheduler(db_session).tick()
        assert result.collections_completed == 1

    @pytest.mark.asyncio
    async def test_partial_mint_stays_open(self, db_session, make_launch):
        collection, phase = await make_launch(supply=2)
        item_id = (await db_session.execute(
            select(SupplyItem.id).where(SupplyItem.collection_id == collection.id).limit(1)
        )).scalar_one()
        await db_session.execute(update(SupplyItem).where(SupplyItem.id == item_id).values(is_minted=True))
        await db_session.commit()

        result = await PhaseScheduler(db_session).tick()

        assert result.collections_completed == 0
        assert (await reload(db_session, MintPhase, phase.id)).is_active


class TestManualPhaseActions:
    """Tests for completing and switching phases by hand"""

    @pytest.mark.asyncio
    async def test_complete_phase(self, db_session, admin, make_launch):
        collection, phase = await make_launch()
        scheduler = PhaseScheduler(db_session)

        await scheduler.complete_phase(admin, collection.id, phase.id)
        await db_session.commit()

        phase = await reload(db_session, MintPhase, phase.id)
        assert phase.is_completed
        assert not phase.is_active

        entry = (await db_session.execute(
            select(MintActivity).where(MintActivity.action_type == "phase_complete")
        )).scalar_one()
        assert entry.collection_id == collection.id
        assert entry.mint_attempt_id is None
        assert entry.action_data["phase_id"] == phase.id
        assert entry.action_data["previous"] == {"is_active": True, "is_completed": False}

        # A completed phase is never picked up again
        result = await scheduler.tick()
        assert result.activated == 0

    @pytest.mark.asyncio
    async def test_activation_conflicts_with_active_sibling(self, db_session, admin, make_launch):
        collection, _ = await make_launch()
        second = await add_phase(db_session, collection.id, 1, datetime.utcnow() - timedelta(hours=1))

        with pytest.raises(PhaseConflictError) as exc:
            await PhaseScheduler(db_session).set_active(admin, collection.id, second.id, True)
        assert exc.value.code == "phase_conflict"

    @pytest.mark.asyncio
    async def test_completed_phase_cannot_be_reactivated(self, db_session, admin, make_launch):
        collection, phase = await make_launch()
        collection_id, phase_id = collection.id, phase.id
        scheduler = PhaseScheduler(db_session)
        await scheduler.complete_phase(admin, collection_id, phase_id)
        await db_session.commit()

        with pytest.raises(PhaseConflictError) as exc:
            await scheduler.set_active(admin, collection_id, phase_id, True)
        assert exc.value.code == "phase_completed"

    @pytest.mark.asyncio
    async def test_manual_activation_opens_launch(self, db_session, admin, make_launch):
        collection, phase = await make_launch(active=False)
        scheduler = PhaseScheduler(db_session)

        await scheduler.set_active(admin, collection.id, phase.id, True)
        await db_session.commit()

        assert (await reload(db_session, MintPhase, phase.id)).is_active
        collection = await reload(db_session, Collection, collection.id)
        assert collection.launch_status == LaunchStatus.ACTIVE.value
        assert collection.is_locked

    @pytest.mark.asyncio
    async def test_switch_off(self, db_session, admin, make_launch):
        collection, phase = await make_launch()

        await PhaseScheduler(db_session).set_active(admin, collection.id, phase.id, False)
        await db_session.commit()

        phase = await reload(db_session, MintPhase, phase.id)
        assert not phase.is_active
        assert not phase.is_completed

    @pytest.mark.asyncio
    async def test_requires_admin(self, db_session, make_launch):
        collection, phase = await make_launch()
        with pytest.raises(NotAdminError):
            await PhaseScheduler(db_session).complete_phase(Actor.wallet(WALLET_A), collection.id, phase.id)

    @pytest.mark.asyncio
    async def test_phase_of_another_collection(self, db_session, admin, make_launch):
        collection, _ = await make_launch()
        _, other_phase = await make_launch()
        with pytest.raises(NotFoundError):
            await PhaseScheduler(db_session).complete_phase(admin, collection.id, other_phase.id)
