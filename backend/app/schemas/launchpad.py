"""Launchpad read-surface schemas"""
from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class SupplyCountsResponse(BaseModel):
    total_supply: int
    max_supply: int
    minted: int
    reserved: int
    available: int
    sold_out: bool


class ActivePhaseResponse(BaseModel):
    """Summary of the currently active phase"""
    id: int
    phase_name: str
    phase_order: int
    mint_price_sats: int
    max_per_wallet: Optional[int] = None
    phase_allocation: Optional[int] = None
    phase_minted: int
    whitelist_only: bool
    start_time: datetime
    end_time: Optional[datetime] = None


class AllocationResponse(BaseModel):
    """
    `remaining` counts broadcast commits only. `claimable` also subtracts
    outstanding reservations and is what the next claim is checked against.
    """
    wallet_address: str
    phase_id: int
    allowed: Optional[int] = None
    used: int
    remaining: Optional[int] = None
    claimable: Optional[int] = None
    reserved: int
    is_whitelisted: bool
    unlimited: bool


class PollResponse(BaseModel):
    """Everything a mint page polls for"""
    collection_id: int
    launch_status: str
    counts: SupplyCountsResponse
    active_phase: Optional[ActivePhaseResponse] = None
    allocation: Optional[AllocationResponse] = None
    server_time: datetime
