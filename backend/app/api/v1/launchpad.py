"""Launchpad minting endpoints (wallet facing)"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import require_wallet
from app.config import Settings, get_settings
from app.models.database import get_db
from app.models.mint import MintAttempt
from app.schemas.launchpad import (
    ActivePhaseResponse,
    AllocationResponse,
    PollResponse,
    SupplyCountsResponse,
)
from app.schemas.mint import (
    AdvanceRequest,
    BatchClaimRequest,
    ClaimRequest,
    CommitBroadcastRequest,
    MintAttemptResponse,
    RevealBroadcastRequest,
)
from app.services.actor import Actor
from app.services.allocation import AllocationEnforcer
from app.services.errors import PhaseInactiveError
from app.services.mint_state import MintStateMachine
from app.services.snapshots import PhaseState
from app.services.supply_ledger import SupplyLedger

router = APIRouter()


async def _allocation_response(
    enforcer: AllocationEnforcer,
    wallet_address: str,
    phase: PhaseState,
) -> AllocationResponse:
    snapshot = await enforcer.remaining(wallet_address, phase)
    return AllocationResponse(wallet_address=wallet_address, phase_id=phase.id, **snapshot.to_dict())


async def _attempt_in_collection(machine: MintStateMachine, collection_id: int, attempt_id: int) -> MintAttempt:
    attempt = await machine.get_attempt(attempt_id)
    if attempt.collection_id != collection_id:
        raise HTTPException(status_code=404, detail="Mint attempt not found")
    return attempt


@router.get("/{collection_id}/poll", response_model=PollResponse)
async def poll_launch(
    response: Response,
    collection_id: int = Path(...),
    wallet_address: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Supply counts, active phase and (optionally) the wallet's allocation"""
    ledger = SupplyLedger(db)
    collection = await ledger.get_collection(collection_id)
    counts = await ledger.counts(collection_id)

    enforcer = AllocationEnforcer(db)
    active_phase = None
    allocation = None
    try:
        phase = PhaseState.from_row(await enforcer.resolve_phase(collection_id))
    except PhaseInactiveError:
        phase = None

    if phase is not None:
        active_phase = ActivePhaseResponse(
            id=phase.id,
            phase_name=phase.phase_name,
            phase_order=phase.phase_order,
            mint_price_sats=phase.mint_price_sats,
            max_per_wallet=phase.max_per_wallet,
            phase_allocation=phase.phase_allocation,
            phase_minted=await enforcer.phase_committed_count(phase.id),
            whitelist_only=phase.whitelist_only,
            start_time=phase.start_time,
            end_time=phase.end_time,
        )
        if wallet_address:
            allocation = await _allocation_response(enforcer, wallet_address, phase)

    # Counts change every few seconds during a launch
    response.headers["Cache-Control"] = "no-store, max-age=0"
    return PollResponse(
        collection_id=collection.id,
        launch_status=collection.launch_status,
        counts=SupplyCountsResponse(**counts.to_dict()),
        active_phase=active_phase,
        allocation=allocation,
        server_time=datetime.utcnow(),
    )


@router.get("/{collection_id}/allocation", response_model=AllocationResponse)
async def get_allocation(
    collection_id: int = Path(...),
    wallet_address: str = Query(...),
    phase_id: Optional[int] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """A wallet's allocation in the given (or active) phase"""
    enforcer = AllocationEnforcer(db)
    phase = PhaseState.from_row(await enforcer.resolve_phase(collection_id, phase_id))
    return await _allocation_response(enforcer, wallet_address, phase)


@router.post("/{collection_id}/claim", response_model=MintAttemptResponse)
async def claim(
    request: ClaimRequest,
    collection_id: int = Path(...),
    actor: Actor = Depends(require_wallet),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
):
    """Reserve a supply item for the calling wallet"""
    machine = MintStateMachine(db, settings)
    attempt = await machine.claim(
        actor,
        collection_id,
        phase_id=request.phase_id,
        supply_item_id=request.supply_item_id,
        receiving_wallet=request.receiving_wallet,
    )
    await db.commit()
    return attempt


@router.post("/{collection_id}/claims", response_model=List[MintAttemptResponse])
async def claim_many(
    request: BatchClaimRequest,
    collection_id: int = Path(...),
    actor: Actor = Depends(require_wallet),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
):
    """Reserve several supply items at once. All or nothing."""
    if request.quantity > settings.max_per_transaction:
        raise HTTPException(
            status_code=400,
            detail=f"Quantity must be between 1 and {settings.max_per_transaction}",
        )
    machine = MintStateMachine(db, settings)
    attempts = await machine.claim_many(
        actor,
        collection_id,
        request.quantity,
        phase_id=request.phase_id,
        receiving_wallet=request.receiving_wallet,
    )
    await db.commit()
    return attempts


@router.get("/{collection_id}/attempts", response_model=List[MintAttemptResponse])
async def list_my_attempts(
    collection_id: int = Path(...),
    actor: Actor = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
):
    """Mint attempts of the calling wallet in this collection"""
    return await MintStateMachine(db).list_for_wallet(actor.wallet_address, collection_id)


@router.post("/{collection_id}/attempts/{attempt_id}/commit", response_model=MintAttemptResponse)
async def record_commit(
    request: CommitBroadcastRequest,
    collection_id: int = Path(...),
    attempt_id: int = Path(...),
    actor: Actor = Depends(require_wallet),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
):
    """Record the commit broadcast (allocation is re-checked)"""
    machine = MintStateMachine(db, settings)
    await _attempt_in_collection(machine, collection_id, attempt_id)
    attempt = await machine.record_commit_broadcast(actor, attempt_id, request.commit_tx_id)
    await db.commit()
    return attempt


@router.post("/{collection_id}/attempts/{attempt_id}/reveal", response_model=MintAttemptResponse)
async def record_reveal(
    request: RevealBroadcastRequest,
    collection_id: int = Path(...),
    attempt_id: int = Path(...),
    actor: Actor = Depends(require_wallet),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
):
    """Record the reveal broadcast"""
    machine = MintStateMachine(db, settings)
    await _attempt_in_collection(machine, collection_id, attempt_id)
    attempt = await machine.record_reveal_broadcast(actor, attempt_id, request.reveal_tx_id)
    await db.commit()
    return attempt


@router.post("/{collection_id}/attempts/{attempt_id}/advance", response_model=MintAttemptResponse)
async def advance_attempt(
    request: AdvanceRequest,
    collection_id: int = Path(...),
    attempt_id: int = Path(...),
    actor: Actor = Depends(require_wallet),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
):
    """Move an attempt forward through the off-chain steps"""
    machine = MintStateMachine(db, settings)
    await _attempt_in_collection(machine, collection_id, attempt_id)
    attempt = await machine.advance(actor, attempt_id, request.status)
    await db.commit()
    return attempt


@router.post("/{collection_id}/attempts/{attempt_id}/cancel", response_model=MintAttemptResponse)
async def cancel_reservation(
    collection_id: int = Path(...),
    attempt_id: int = Path(...),
    actor: Actor = Depends(require_wallet),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
):
    """Give back a reservation before the commit is broadcast"""
    machine = MintStateMachine(db, settings)
    await _attempt_in_collection(machine, collection_id, attempt_id)
    attempt = await machine.cancel(actor, attempt_id, reason="cancelled by wallet")
    await db.commit()
    return attempt
