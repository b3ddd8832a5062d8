"""Admin endpoints for collections, supply, phases and whitelists"""
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import require_admin
from app.models.collection import Collection, LaunchStatus
from app.models.database import get_db
from app.models.phase import MintPhase, Whitelist, WhitelistEntry
from app.schemas.collection import (
    BulkWhitelistEntriesRequest,
    CollectionResponse,
    CreateCollectionRequest,
    CreatePhaseRequest,
    CreateWhitelistRequest,
    GenerateSupplyRequest,
    PhaseResponse,
    UpdateLaunchStatusRequest,
    UpdatePhaseRequest,
    WhitelistResponse,
)
from app.services.actor import Actor
from app.services.phase_scheduler import PhaseScheduler
from app.services.supply_ledger import SupplyLedger

import structlog

logger = structlog.get_logger()

router = APIRouter()


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are naive UTC"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _collection_response(collection: Collection) -> CollectionResponse:
    return CollectionResponse(
        id=collection.id,
        name=collection.name,
        creator_wallet=collection.creator_wallet,
        total_supply=collection.total_supply,
        cap_supply=collection.cap_supply,
        max_supply=collection.max_supply,
        is_locked=collection.is_locked,
        launch_status=collection.launch_status,
        mint_ended_at=collection.mint_ended_at,
        created_at=collection.created_at,
    )


@router.post("", response_model=CollectionResponse)
async def create_collection(
    request: CreateCollectionRequest,
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Create an empty collection in draft"""
    if request.cap_supply is not None and request.cap_supply < 0:
        raise HTTPException(status_code=400, detail="cap_supply must be >= 0")

    collection = Collection(
        name=request.name,
        creator_wallet=request.creator_wallet,
        cap_supply=request.cap_supply,
        total_supply=0,
        launch_status=LaunchStatus.DRAFT.value,
    )
    db.add(collection)
    await db.commit()
    await db.refresh(collection)
    logger.info("Collection created", collection_id=collection.id, actor=actor.wallet_address)
    return _collection_response(collection)


@router.get("/{collection_id}", response_model=CollectionResponse)
async def get_collection(
    collection_id: int = Path(...),
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Get collection details"""
    return _collection_response(await SupplyLedger(db).get_collection(collection_id))


@router.post("/{collection_id}/supply", response_model=CollectionResponse)
async def generate_supply(
    request: GenerateSupplyRequest,
    collection_id: int = Path(...),
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Append supply items. Rejected once minting has begun."""
    ledger = SupplyLedger(db)
    await ledger.generate(actor, collection_id, request.count)
    await db.commit()
    return _collection_response(await ledger.get_collection(collection_id))


@router.patch("/{collection_id}/status", response_model=CollectionResponse)
async def update_launch_status(
    request: UpdateLaunchStatusRequest,
    collection_id: int = Path(...),
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Set the launch status (e.g. draft -> scheduled, active -> paused)"""
    try:
        new_status = LaunchStatus(request.launch_status)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid launch status: {request.launch_status}")

    collection = await SupplyLedger(db).get_collection(collection_id)
    previous = collection.launch_status
    collection.launch_status = new_status.value
    await db.commit()
    logger.info(
        "Launch status updated",
        collection_id=collection_id,
        previous_status=previous,
        status=new_status.value,
        actor=actor.wallet_address,
    )
    return _collection_response(collection)


@router.post("/{collection_id}/phases", response_model=PhaseResponse)
async def create_phase(
    request: CreatePhaseRequest,
    collection_id: int = Path(...),
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Add a mint phase to a collection"""
    await SupplyLedger(db).get_collection(collection_id)

    start_time = _naive_utc(request.start_time)
    end_time = _naive_utc(request.end_time)
    if end_time is not None and end_time <= start_time:
        raise HTTPException(status_code=400, detail="end_time must be after start_time")
    for field_name in ("max_per_wallet", "phase_allocation", "mint_price_sats"):
        value = getattr(request, field_name)
        if value is not None and value < 0:
            raise HTTPException(status_code=400, detail=f"{field_name} must be >= 0")
    if request.whitelist_id is not None:
        whitelist = await db.get(Whitelist, request.whitelist_id)
        if whitelist is None or whitelist.collection_id != collection_id:
            raise HTTPException(status_code=404, detail="Whitelist not found")

    phase = MintPhase(
        collection_id=collection_id,
        phase_name=request.phase_name,
        phase_order=request.phase_order,
        start_time=start_time,
        end_time=end_time,
        mint_price_sats=request.mint_price_sats,
        max_per_wallet=request.max_per_wallet,
        phase_allocation=request.phase_allocation,
        whitelist_only=request.whitelist_only,
        whitelist_id=request.whitelist_id,
    )
    db.add(phase)
    await db.commit()
    await db.refresh(phase)
    return phase


@router.get("/{collection_id}/phases", response_model=List[PhaseResponse])
async def list_phases(
    collection_id: int = Path(...),
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """List phases in order"""
    result = await db.execute(
        select(MintPhase).where(MintPhase.collection_id == collection_id).order_by(MintPhase.phase_order)
    )
    return result.scalars().all()


@router.patch("/{collection_id}/phases/{phase_id}", response_model=PhaseResponse)
async def update_phase(
    request: UpdatePhaseRequest,
    collection_id: int = Path(...),
    phase_id: int = Path(...),
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Complete a phase, or switch it on or off, by hand"""
    if request.is_active is None and request.is_completed is None:
        raise HTTPException(status_code=400, detail="is_active or is_completed is required")
    if request.is_completed is False:
        raise HTTPException(status_code=400, detail="A completed phase cannot be reopened")
    if request.is_completed and request.is_active:
        raise HTTPException(status_code=400, detail="A completed phase cannot be active")

    scheduler = PhaseScheduler(db)
    if request.is_completed:
        phase = await scheduler.complete_phase(actor, collection_id, phase_id)
    else:
        phase = await scheduler.set_active(actor, collection_id, phase_id, request.is_active)
    await db.commit()
    return phase


@router.post("/{collection_id}/whitelists", response_model=WhitelistResponse)
async def create_whitelist(
    request: CreateWhitelistRequest,
    collection_id: int = Path(...),
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Create a whitelist for the collection's phases"""
    await SupplyLedger(db).get_collection(collection_id)
    whitelist = Whitelist(collection_id=collection_id, name=request.name)
    db.add(whitelist)
    await db.commit()
    await db.refresh(whitelist)
    return whitelist


@router.post("/{collection_id}/whitelists/{whitelist_id}/entries")
async def add_whitelist_entries(
    request: BulkWhitelistEntriesRequest,
    collection_id: int = Path(...),
    whitelist_id: int = Path(...),
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Add or update whitelist entries. Invalid rows are reported, the rest applied."""
    whitelist = await db.get(Whitelist, whitelist_id)
    if whitelist is None or whitelist.collection_id != collection_id:
        raise HTTPException(status_code=404, detail="Whitelist not found")

    added = []
    updated = []
    errors = []
    for entry in request.entries:
        address = entry.wallet_address.strip()
        if not address:
            errors.append({"wallet_address": entry.wallet_address, "error": "Empty wallet address"})
            continue

        result = await db.execute(
            select(WhitelistEntry).where(
                WhitelistEntry.whitelist_id == whitelist_id,
                WhitelistEntry.wallet_address == address,
            )
        )
        existing = result.scalar_one_or_none()
        if existing:
            existing.allocation = entry.allocation
            updated.append(address)
        else:
            db.add(WhitelistEntry(whitelist_id=whitelist_id, wallet_address=address, allocation=entry.allocation))
            added.append(address)

    await db.commit()
    return {
        "message": f"Added {len(added)} and updated {len(updated)} whitelist entries",
        "added": added,
        "updated": updated,
        "errors": errors if errors else None,
    }
