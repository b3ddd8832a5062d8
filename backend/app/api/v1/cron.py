"""Scheduled job triggers, for deployments that drive jobs from an external cron"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_chain, require_admin
from app.config import Settings, get_settings
from app.models.database import get_db
from app.services.actor import Actor
from app.services.chain_client import MempoolClient
from app.services.mint_state import MintStateMachine
from app.services.phase_scheduler import PhaseScheduler
from app.services.reconciliation import BulkReconciler
from app.services.stuck_recovery import StuckTransactionRecovery

router = APIRouter()


@router.post("/update-phase-status")
async def update_phase_status(
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Open due phases, close expired ones and complete sold-out collections"""
    result = await PhaseScheduler(db).tick()
    await db.commit()
    return result.to_dict()


@router.post("/check-mint-transactions")
async def check_mint_transactions(
    actor: Actor = Depends(require_admin),
    settings: Settings = Depends(get_settings),
    chain: MempoolClient = Depends(get_chain),
    db: AsyncSession = Depends(get_db),
):
    """Expire stale reservations, poll the chain for in-flight mints, then flag stalled broadcasts"""
    expired = await MintStateMachine(db, settings).expire_stale_reservations(actor)
    await db.commit()

    poll = await BulkReconciler(db, chain, settings).poll_unconfirmed(actor)
    await db.commit()

    detection = await StuckTransactionRecovery(db, chain, settings).detect(actor)
    await db.commit()
    return {"expired": expired, "poll": poll.to_dict(), "stuck": detection.to_dict()}
