"""Admin endpoints for stuck transaction detection and resolution"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_chain, require_admin
from app.config import Settings, get_settings
from app.models.database import get_db
from app.schemas.mint import StuckActionRequest, StuckTransactionResponse
from app.services.actor import Actor
from app.services.chain_client import MempoolClient
from app.services.stuck_recovery import StuckTransactionRecovery

router = APIRouter()


@router.get("")
async def list_stuck_transactions(
    detect: bool = Query(False, description="Scan in-flight attempts before listing"),
    open_only: bool = Query(True),
    limit: int = Query(100, ge=1, le=1000),
    actor: Actor = Depends(require_admin),
    settings: Settings = Depends(get_settings),
    chain: MempoolClient = Depends(get_chain),
    db: AsyncSession = Depends(get_db),
):
    """List stuck transactions, optionally running detection first"""
    recovery = StuckTransactionRecovery(db, chain, settings)

    detection = None
    if detect:
        detection = (await recovery.detect(actor)).to_dict()
        await db.commit()

    records = await recovery.list_records(open_only=open_only, limit=limit)
    return {
        "detection": detection,
        "stuck_transactions": [StuckTransactionResponse.model_validate(r) for r in records],
    }


@router.post("", response_model=StuckTransactionResponse)
async def resolve_stuck_transaction(
    request: StuckActionRequest,
    actor: Actor = Depends(require_admin),
    settings: Settings = Depends(get_settings),
    chain: MempoolClient = Depends(get_chain),
    db: AsyncSession = Depends(get_db),
):
    """Record a resolution step for a stuck transaction"""
    recovery = StuckTransactionRecovery(db, chain, settings)

    if request.action == "request_rbf":
        record = await recovery.mark_rbf_sent(actor, request.stuck_transaction_id, request.tx_id, request.notes)
    elif request.action == "request_cpfp":
        record = await recovery.mark_cpfp_sent(actor, request.stuck_transaction_id, request.tx_id, request.notes)
    elif request.action == "mark_resolved":
        record = await recovery.resolve(actor, request.stuck_transaction_id, request.notes)
    elif request.action == "abandon":
        record = await recovery.abandon(actor, request.stuck_transaction_id, request.notes)
    else:
        raise HTTPException(status_code=400, detail=f"Unknown action: {request.action}")

    await db.commit()
    return record
