"""Mint attempt, stuck transaction and bulk operation schemas"""
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List, Dict, Any


class ClaimRequest(BaseModel):
    """Request to reserve a supply item"""
    phase_id: Optional[int] = None
    supply_item_id: Optional[int] = None  # choices mint
    receiving_wallet: Optional[str] = None


class BatchClaimRequest(BaseModel):
    """Request to reserve several random supply items at once"""
    quantity: int = Field(..., ge=1)
    phase_id: Optional[int] = None
    receiving_wallet: Optional[str] = None


class CommitBroadcastRequest(BaseModel):
    commit_tx_id: str = Field(..., min_length=1, max_length=64)


class RevealBroadcastRequest(BaseModel):
    reveal_tx_id: str = Field(..., min_length=1, max_length=64)


class AdvanceRequest(BaseModel):
    status: str


class MintAttemptResponse(BaseModel):
    id: int
    collection_id: int
    phase_id: Optional[int] = None
    supply_item_id: Optional[int] = None
    minter_wallet: str
    receiving_wallet: Optional[str] = None
    status: str
    is_test_mint: bool
    mint_price_sats: int
    credits_charged: int
    commit_tx_id: Optional[str] = None
    reveal_tx_id: Optional[str] = None
    commit_confirmations: int
    reveal_confirmations: int
    inscription_id: Optional[str] = None
    retry_count: int
    flagged_for_review: bool
    admin_notes: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    refund_tx_id: Optional[str] = None
    refund_amount_sats: Optional[int] = None
    stuck_since: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MintActivityResponse(BaseModel):
    id: int
    actor_wallet: Optional[str] = None
    actor_type: str
    action_type: str
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    action_data: Optional[Dict[str, Any]] = None
    success: bool
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class StuckTransactionResponse(BaseModel):
    id: int
    mint_attempt_id: int
    tx_type: str
    tx_id: str
    stuck_since: datetime
    stuck_duration_minutes: int
    current_fee_rate: Optional[float] = None
    recommended_fee_rate: Optional[float] = None
    resolution_status: str
    resolution_action: Optional[str] = None
    resolution_tx_id: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MintAttemptDetailResponse(BaseModel):
    """Attempt with its audit trail and stuck records"""
    attempt: MintAttemptResponse
    activity: List[MintActivityResponse]
    stuck_transactions: List[StuckTransactionResponse]


class AdminMintActionRequest(BaseModel):
    """Admin action on a single mint attempt"""
    action: str  # flag_for_review, unflag, add_note, mark_stuck, retry, cancel, mark_refunded
    notes: Optional[str] = None
    refund_tx_id: Optional[str] = None
    refund_amount_sats: Optional[int] = None


class AdminTestMintRequest(BaseModel):
    collection_id: int
    wallet_address: str


class StuckActionRequest(BaseModel):
    """Resolution action on a stuck transaction"""
    stuck_transaction_id: int
    action: str  # request_rbf, request_cpfp, mark_resolved, abandon
    tx_id: Optional[str] = None  # replacement (RBF) or child (CPFP) txid
    notes: Optional[str] = None


class BulkOperationRequest(BaseModel):
    operation: str  # check, update_status, mark_completed
    attempt_ids: List[int]
    status: Optional[str] = None  # for update_status
    reason: Optional[str] = None
