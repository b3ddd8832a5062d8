"""Phase scheduler: opens and closes mint phases by wall-clock time or by hand."""
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import select, update, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.collection import Collection, LaunchStatus
from app.models.phase import MintPhase
from app.services.activity_log import ActivityLog
from app.services.actor import Actor
from app.services.errors import NotAdminError, NotFoundError, PhaseConflictError
from app.services.supply_ledger import SupplyLedger, lock_collection

logger = structlog.get_logger()

LIVE_LAUNCH_STATUSES = [LaunchStatus.SCHEDULED.value, LaunchStatus.ACTIVE.value]


@dataclass
class TickResult:
    deactivated: int = 0
    activated: int = 0
    phases_closed: int = 0
    collections_completed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class PhaseScheduler:
    """
    Applies phase timing rules for every collection.

    A tick runs three steps in order: deactivate phases past their end time,
    close collections that sold out, then activate the earliest eligible
    phase of each live collection that has none active. Running the same
    tick twice changes nothing the second time.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.supply = SupplyLedger(db)
        self.activity = ActivityLog(db)

    async def tick(self, now: Optional[datetime] = None) -> TickResult:
        now = now or datetime.utcnow()
        result = TickResult()

        result.deactivated = await self.deactivate_expired(now)
        result.phases_closed, result.collections_completed = await self.close_sold_out(now)
        result.activated = await self.activate_due(now)

        if result.deactivated or result.activated or result.phases_closed:
            logger.info("Phase scheduler tick", **result.to_dict())
        return result

    async def deactivate_expired(self, now: datetime) -> int:
        """Turn off active phases whose end time has passed. They are not completed."""
        update_result = await self.db.execute(
            update(MintPhase)
            .where(
                MintPhase.is_active == True,  # noqa: E712
                MintPhase.is_completed == False,  # noqa: E712
                MintPhase.end_time.isnot(None),
                MintPhase.end_time <= now,
            )
            .values(is_active=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return update_result.rowcount

    async def close_sold_out(self, now: datetime) -> tuple:
        """Close every open phase of sold-out collections and complete the launch"""
        collections = (await self.db.execute(
            select(Collection).where(Collection.launch_status.in_(LIVE_LAUNCH_STATUSES))
        )).scalars().all()

        phases_closed = 0
        completed = 0
        for collection in collections:
            minted = await self.supply.minted_count(collection.id)
            max_supply = collection.max_supply
            if max_supply <= 0 or minted < max_supply:
                continue

            # Started phases that are open-ended or still running get end_time = now
            await self.db.execute(
                update(MintPhase)
                .where(
                    MintPhase.collection_id == collection.id,
                    MintPhase.is_completed == False,  # noqa: E712
                    MintPhase.start_time < now,
                    or_(MintPhase.end_time.is_(None), MintPhase.end_time > now),
                )
                .values(end_time=now)
                .execution_options(synchronize_session=False)
            )
            closed = await self.db.execute(
                update(MintPhase)
                .where(MintPhase.collection_id == collection.id, MintPhase.is_completed == False)  # noqa: E712
                .values(is_active=False, is_completed=True, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            phases_closed += closed.rowcount

            collection.launch_status = LaunchStatus.COMPLETED.value
            collection.mint_ended_at = now
            completed += 1
            logger.info(
                "Collection sold out",
                collection_id=collection.id,
                minted=minted,
                max_supply=max_supply,
                phases_closed=closed.rowcount,
            )

        await self.db.flush()
        return phases_closed, completed

    def _eligible(self, now: datetime):
        return and_(
            MintPhase.is_completed == False,  # noqa: E712
            MintPhase.is_active == False,  # noqa: E712
            MintPhase.start_time <= now,
            or_(MintPhase.end_time.is_(None), MintPhase.end_time > now),
        )

    async def activate_due(self, now: datetime) -> int:
        """Activate the lowest-order eligible phase per collection with no active phase"""
        candidate_ids = (await self.db.execute(
            select(MintPhase.collection_id)
            .join(Collection, Collection.id == MintPhase.collection_id)
            .where(Collection.launch_status.in_(LIVE_LAUNCH_STATUSES), self._eligible(now))
            .distinct()
        )).scalars().all()

        activated = 0
        for collection_id in sorted(candidate_ids):
            await lock_collection(self.db, collection_id)
            collection = await self.supply.get_collection(collection_id)
            if collection.launch_status not in LIVE_LAUNCH_STATUSES:
                continue

            already_active = (await self.db.execute(
                select(MintPhase.id).where(
                    MintPhase.collection_id == collection_id,
                    MintPhase.is_active == True,  # noqa: E712
                ).limit(1)
            )).scalar_one_or_none()
            if already_active is not None:
                continue

            phase = (await self.db.execute(
                select(MintPhase)
                .where(MintPhase.collection_id == collection_id, self._eligible(now))
                .order_by(MintPhase.phase_order, MintPhase.start_time, MintPhase.id)
                .limit(1)
                .execution_options(populate_existing=True)
            )).scalar_one_or_none()
            if phase is None:
                continue

            phase.is_active = True
            phase.updated_at = now
            # Supply is fixed once minting begins
            collection.is_locked = True
            if collection.launch_status == LaunchStatus.SCHEDULED.value:
                collection.launch_status = LaunchStatus.ACTIVE.value
            activated += 1
            logger.info(
                "Phase activated",
                collection_id=collection_id,
                phase_id=phase.id,
                phase_name=phase.phase_name,
            )

        await self.db.flush()
        return activated

    # ------------------------------------------------------------------
    # Manual admin actions
    # ------------------------------------------------------------------

    async def _locked_phase(self, actor: Actor, collection_id: int, phase_id: int, action: str) -> MintPhase:
        if not actor.is_admin:
            raise NotAdminError(f"Admin capability required for {action}")
        await lock_collection(self.db, collection_id)
        phase = await self.db.get(MintPhase, phase_id, populate_existing=True)
        if phase is None or phase.collection_id != collection_id:
            raise NotFoundError(f"Phase {phase_id} not found for collection {collection_id}")
        return phase

    async def _record_phase_action(self, actor: Actor, phase: MintPhase, action: str, previous: dict) -> None:
        await self.activity.record(
            None,
            actor,
            action,
            collection_id=phase.collection_id,
            data={
                "phase_id": phase.id,
                "phase_name": phase.phase_name,
                "previous": previous,
                "is_active": phase.is_active,
                "is_completed": phase.is_completed,
            },
        )
        logger.info(
            "Phase updated by admin",
            collection_id=phase.collection_id,
            phase_id=phase.id,
            action=action,
            actor=actor.wallet_address,
        )

    async def complete_phase(
        self,
        actor: Actor,
        collection_id: int,
        phase_id: int,
        now: Optional[datetime] = None,
    ) -> MintPhase:
        """Close a phase by hand. Completed phases never accept mints again."""
        now = now or datetime.utcnow()
        phase = await self._locked_phase(actor, collection_id, phase_id, "phase completion")
        if phase.is_completed:
            return phase

        previous = {"is_active": bool(phase.is_active), "is_completed": False}
        phase.is_active = False
        phase.is_completed = True
        phase.updated_at = now
        await self.db.flush()
        await self._record_phase_action(actor, phase, "phase_complete", previous)
        return phase

    async def set_active(
        self,
        actor: Actor,
        collection_id: int,
        phase_id: int,
        active: bool,
        now: Optional[datetime] = None,
    ) -> MintPhase:
        """
        Switch a phase on or off by hand.

        Activation is refused for a completed phase, for a completed launch
        and while a sibling phase is active. A phase switched off inside its
        window is picked up again by the next tick unless it is completed or
        the launch is paused.
        """
        now = now or datetime.utcnow()
        action = "phase_activate" if active else "phase_deactivate"
        phase = await self._locked_phase(actor, collection_id, phase_id, action)
        if bool(phase.is_active) == active:
            return phase

        collection = await self.supply.get_collection(collection_id)
        if active:
            if phase.is_completed:
                raise PhaseConflictError(f"Phase {phase.phase_name} is completed", code="phase_completed")
            if collection.launch_status == LaunchStatus.COMPLETED.value:
                raise PhaseConflictError(f"Collection {collection_id} is completed", code="collection_completed")
            sibling = (await self.db.execute(
                select(MintPhase.id).where(
                    MintPhase.collection_id == collection_id,
                    MintPhase.id != phase_id,
                    MintPhase.is_active == True,  # noqa: E712
                ).limit(1)
            )).scalar_one_or_none()
            if sibling is not None:
                raise PhaseConflictError(f"Phase {sibling} of collection {collection_id} is already active")

        previous = {"is_active": bool(phase.is_active), "is_completed": bool(phase.is_completed)}
        phase.is_active = active
        phase.updated_at = now
        if active:
            # Supply is fixed once minting begins
            collection.is_locked = True
            if collection.launch_status == LaunchStatus.SCHEDULED.value:
                collection.launch_status = LaunchStatus.ACTIVE.value
        await self.db.flush()
        await self._record_phase_action(actor, phase, action, previous)
        return phase
