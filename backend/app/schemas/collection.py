"""Collection, phase and whitelist admin schemas"""
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List


class CreateCollectionRequest(BaseModel):
    """Request to create a collection (supply is generated separately)"""
    name: str
    creator_wallet: Optional[str] = None
    cap_supply: Optional[int] = None


class GenerateSupplyRequest(BaseModel):
    count: int = Field(..., gt=0, le=100000)


class UpdateLaunchStatusRequest(BaseModel):
    launch_status: str  # draft, scheduled, active, paused, completed


class CollectionResponse(BaseModel):
    id: int
    name: str
    creator_wallet: Optional[str] = None
    total_supply: int
    cap_supply: Optional[int] = None
    max_supply: int
    is_locked: bool
    launch_status: str
    mint_ended_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CreatePhaseRequest(BaseModel):
    """Request to add a mint phase to a collection"""
    phase_name: str
    phase_order: int = 0
    start_time: datetime
    end_time: Optional[datetime] = None  # None = open-ended
    mint_price_sats: int = 0
    max_per_wallet: Optional[int] = None
    phase_allocation: Optional[int] = None
    whitelist_only: bool = False
    whitelist_id: Optional[int] = None


class PhaseResponse(BaseModel):
    id: int
    collection_id: int
    phase_name: str
    phase_order: int
    start_time: datetime
    end_time: Optional[datetime] = None
    is_active: bool
    is_completed: bool
    mint_price_sats: int
    max_per_wallet: Optional[int] = None
    phase_allocation: Optional[int] = None
    whitelist_only: bool
    whitelist_id: Optional[int] = None

    class Config:
        from_attributes = True


class UpdatePhaseRequest(BaseModel):
    """Manual phase switch. Completion is final."""
    is_active: Optional[bool] = None
    is_completed: Optional[bool] = None


class CreateWhitelistRequest(BaseModel):
    name: str


class WhitelistEntryRequest(BaseModel):
    wallet_address: str
    allocation: int = Field(1, ge=0)


class BulkWhitelistEntriesRequest(BaseModel):
    """Request to add many wallets to a whitelist"""
    entries: List[WhitelistEntryRequest]


class WhitelistResponse(BaseModel):
    id: int
    collection_id: int
    name: str

    class Config:
        from_attributes = True
