"""Admin endpoints for mint attempts"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import require_admin
from app.config import Settings, get_settings
from app.models.database import get_db
from app.models.mint import MintAttempt, MintStatus
from app.models.stuck_transaction import OPEN_RESOLUTIONS, StuckTransaction
from app.schemas.mint import (
    AdminMintActionRequest,
    AdminTestMintRequest,
    MintActivityResponse,
    MintAttemptDetailResponse,
    MintAttemptResponse,
    StuckTransactionResponse,
)
from app.services.activity_log import ActivityLog
from app.services.actor import Actor
from app.services.mint_state import MintStateMachine

router = APIRouter()


@router.get("")
async def list_mints(
    collection_id: Optional[int] = Query(None),
    status: Optional[str] = Query(None),
    flagged: Optional[bool] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Mint attempts with per-status counts for the admin dashboard"""
    filters = []
    if collection_id is not None:
        filters.append(MintAttempt.collection_id == collection_id)
    if status:
        try:
            filters.append(MintAttempt.status == MintStatus(status).value)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
    if flagged is not None:
        filters.append(MintAttempt.flagged_for_review == flagged)

    result = await db.execute(
        select(MintAttempt)
        .where(*filters)
        .order_by(MintAttempt.created_at.desc(), MintAttempt.id.desc())
        .offset(offset)
        .limit(limit)
    )
    attempts = result.scalars().all()

    stats_query = select(MintAttempt.status, func.count(MintAttempt.id)).group_by(MintAttempt.status)
    flagged_query = select(func.count(MintAttempt.id)).where(MintAttempt.flagged_for_review == True)  # noqa: E712
    stuck_query = (
        select(func.count(StuckTransaction.id))
        .join(MintAttempt, MintAttempt.id == StuckTransaction.mint_attempt_id)
        .where(StuckTransaction.resolution_status.in_([r.value for r in OPEN_RESOLUTIONS]))
    )
    if collection_id is not None:
        stats_query = stats_query.where(MintAttempt.collection_id == collection_id)
        flagged_query = flagged_query.where(MintAttempt.collection_id == collection_id)
        stuck_query = stuck_query.where(MintAttempt.collection_id == collection_id)

    by_status = {row[0]: row[1] for row in (await db.execute(stats_query)).all()}

    return {
        "attempts": [MintAttemptResponse.model_validate(a) for a in attempts],
        "stats": {
            "by_status": by_status,
            "total": sum(by_status.values()),
            "flagged": (await db.execute(flagged_query)).scalar() or 0,
            "open_stuck_transactions": (await db.execute(stuck_query)).scalar() or 0,
        },
    }


@router.post("/test-mint", response_model=MintAttemptResponse)
async def create_test_mint(
    request: AdminTestMintRequest,
    actor: Actor = Depends(require_admin),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
):
    """Create a test attempt that never consumes supply or allocation"""
    attempt = await MintStateMachine(db, settings).create_test_mint(
        actor, request.collection_id, request.wallet_address
    )
    await db.commit()
    return attempt


@router.get("/{attempt_id}", response_model=MintAttemptDetailResponse)
async def get_mint(
    attempt_id: int = Path(...),
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Attempt details with activity log and stuck transaction records"""
    attempt = await MintStateMachine(db).get_attempt(attempt_id)
    activity = await ActivityLog(db).for_attempt(attempt_id)
    stuck = await db.execute(
        select(StuckTransaction)
        .where(StuckTransaction.mint_attempt_id == attempt_id)
        .order_by(StuckTransaction.stuck_since)
    )
    return MintAttemptDetailResponse(
        attempt=MintAttemptResponse.model_validate(attempt),
        activity=[MintActivityResponse.model_validate(a) for a in activity],
        stuck_transactions=[StuckTransactionResponse.model_validate(s) for s in stuck.scalars().all()],
    )


@router.patch("/{attempt_id}", response_model=MintAttemptResponse)
async def update_mint(
    request: AdminMintActionRequest,
    attempt_id: int = Path(...),
    actor: Actor = Depends(require_admin),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
):
    """Apply an admin action to a single attempt"""
    machine = MintStateMachine(db, settings)

    if request.action == "flag_for_review":
        attempt = await machine.flag_for_review(actor, attempt_id, request.notes)
    elif request.action == "unflag":
        attempt = await machine.unflag(actor, attempt_id)
    elif request.action == "add_note":
        if not request.notes:
            raise HTTPException(status_code=400, detail="notes is required for add_note")
        attempt = await machine.add_note(actor, attempt_id, request.notes)
    elif request.action == "mark_stuck":
        attempt = await machine.mark_stuck(actor, attempt_id, request.notes)
    elif request.action == "retry":
        attempt = await machine.retry(actor, attempt_id)
    elif request.action == "cancel":
        attempt = await machine.cancel(actor, attempt_id, request.notes)
    elif request.action == "mark_refunded":
        attempt = await machine.mark_refunded(
            actor,
            attempt_id,
            refund_tx_id=request.refund_tx_id,
            refund_amount_sats=request.refund_amount_sats,
        )
    else:
        raise HTTPException(status_code=400, detail=f"Unknown action: {request.action}")

    await db.commit()
    return attempt
