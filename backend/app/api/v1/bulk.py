"""Admin bulk reconciliation endpoint"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_chain, require_admin
from app.config import Settings, get_settings
from app.models.database import get_db
from app.schemas.mint import BulkOperationRequest
from app.services.actor import Actor
from app.services.chain_client import MempoolClient
from app.services.reconciliation import BulkReconciler

import structlog

logger = structlog.get_logger()

router = APIRouter()

MAX_BATCH_SIZE = 500


@router.post("")
async def run_bulk_operation(
    request: BulkOperationRequest,
    actor: Actor = Depends(require_admin),
    settings: Settings = Depends(get_settings),
    chain: MempoolClient = Depends(get_chain),
    db: AsyncSession = Depends(get_db),
):
    """Run check, update_status or mark_completed over a list of attempts"""
    if not request.attempt_ids:
        raise HTTPException(status_code=400, detail="attempt_ids must not be empty")
    if len(request.attempt_ids) > MAX_BATCH_SIZE:
        raise HTTPException(status_code=400, detail=f"At most {MAX_BATCH_SIZE} attempts per batch")

    reconciler = BulkReconciler(db, chain, settings)
    # Duplicates would be processed twice
    attempt_ids = list(dict.fromkeys(request.attempt_ids))

    if request.operation == "check":
        result = await reconciler.check(actor, attempt_ids)
    elif request.operation == "update_status":
        if not request.status:
            raise HTTPException(status_code=400, detail="status is required for update_status")
        result = await reconciler.update_status(actor, attempt_ids, request.status, request.reason)
    elif request.operation == "mark_completed":
        result = await reconciler.mark_completed(actor, attempt_ids, request.reason)
    else:
        raise HTTPException(status_code=400, detail=f"Unknown operation: {request.operation}")

    await db.commit()
    logger.info(
        "Bulk operation applied",
        operation=request.operation,
        processed=result.processed,
        failed=result.failed,
        actor=actor.wallet_address,
    )
    return result.to_dict()
