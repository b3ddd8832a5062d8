"""Mint attempt model and status lifecycle"""
from datetime import datetime
import enum
from sqlalchemy import Column, Integer, String, BigInteger, Boolean, DateTime, ForeignKey, Text, Index

from app.models.database import Base


class MintStatus(str, enum.Enum):
    """Lifecycle states of a mint attempt (commit/reveal inscription flow)"""
    PENDING = "pending"
    COMPRESSING = "compressing"
    COMPRESSED = "compressed"
    COMMIT_CREATED = "commit_created"
    COMMIT_SIGNED = "commit_signed"
    COMMIT_BROADCAST = "commit_broadcast"
    COMMIT_CONFIRMING = "commit_confirming"
    COMMIT_CONFIRMED = "commit_confirmed"
    REVEAL_CREATED = "reveal_created"
    REVEAL_BROADCAST = "reveal_broadcast"
    REVEAL_CONFIRMING = "reveal_confirming"
    REVEAL_CONFIRMED = "reveal_confirmed"
    COMPLETED = "completed"
    # Side states
    FAILED = "failed"
    STUCK = "stuck"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# Ordered happy path
LINEAR_STATUSES = [
    MintStatus.PENDING,
    MintStatus.COMPRESSING,
    MintStatus.COMPRESSED,
    MintStatus.COMMIT_CREATED,
    MintStatus.COMMIT_SIGNED,
    MintStatus.COMMIT_BROADCAST,
    MintStatus.COMMIT_CONFIRMING,
    MintStatus.COMMIT_CONFIRMED,
    MintStatus.REVEAL_CREATED,
    MintStatus.REVEAL_BROADCAST,
    MintStatus.REVEAL_CONFIRMING,
    MintStatus.REVEAL_CONFIRMED,
    MintStatus.COMPLETED,
]

# Statuses that give the supply item (and allocation) back
RELEASED_STATUSES = frozenset({MintStatus.CANCELLED, MintStatus.REFUNDED, MintStatus.EXPIRED})

TERMINAL_STATUSES = frozenset({
    MintStatus.COMPLETED,
    MintStatus.CANCELLED,
    MintStatus.REFUNDED,
    MintStatus.EXPIRED,
})

# Broadcast but not yet final, watched by recovery and polling
IN_FLIGHT_STATUSES = frozenset({
    MintStatus.COMMIT_BROADCAST,
    MintStatus.COMMIT_CONFIRMING,
    MintStatus.REVEAL_BROADCAST,
    MintStatus.REVEAL_CONFIRMING,
})


def status_rank(status) -> int:
    """Position on the happy path, -1 for side states"""
    try:
        return LINEAR_STATUSES.index(MintStatus(status))
    except ValueError:
        return -1


def released_values() -> list[str]:
    return [s.value for s in RELEASED_STATUSES]


class MintAttempt(Base):
    """A single wallet's attempt to mint one supply item"""
    __tablename__ = "mint_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    collection_id = Column(Integer, ForeignKey("collections.id"), nullable=False, index=True)
    phase_id = Column(Integer, ForeignKey("mint_phases.id"), nullable=True, index=True)
    supply_item_id = Column(Integer, ForeignKey("supply_items.id"), nullable=True, index=True)
    minter_wallet = Column(String(100), nullable=False, index=True)
    receiving_wallet = Column(String(100), nullable=True)
    status = Column(String(30), nullable=False, default=MintStatus.PENDING.value, index=True)
    is_test_mint = Column(Boolean, nullable=False, default=False)
    mint_price_sats = Column(BigInteger, nullable=False, default=0)
    credits_charged = Column(Integer, nullable=False, default=0)

    # Commit / reveal transactions
    commit_tx_id = Column(String(64), nullable=True, index=True)
    reveal_tx_id = Column(String(64), nullable=True, index=True)
    commit_broadcast_at = Column(DateTime, nullable=True)
    reveal_broadcast_at = Column(DateTime, nullable=True)
    commit_confirmations = Column(Integer, nullable=False, default=0)
    reveal_confirmations = Column(Integer, nullable=False, default=0)
    commit_confirmed_at = Column(DateTime, nullable=True)
    reveal_confirmed_at = Column(DateTime, nullable=True)
    last_checked_at = Column(DateTime, nullable=True)
    inscription_id = Column(String(100), nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Recovery / admin
    stuck_since = Column(DateTime, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_retry_at = Column(DateTime, nullable=True)
    flagged_for_review = Column(Boolean, nullable=False, default=False)
    admin_notes = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    error_code = Column(String(50), nullable=True)
    refund_tx_id = Column(String(64), nullable=True)
    refund_amount_sats = Column(BigInteger, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_mint_attempts_wallet_phase", "minter_wallet", "collection_id", "phase_id"),
    )

    @property
    def is_live(self) -> bool:
        return MintStatus(self.status) not in RELEASED_STATUSES

    @property
    def broadcast_at(self):
        """Timestamp of the most recent broadcast"""
        return self.reveal_broadcast_at or self.commit_broadcast_at

    def __repr__(self):
        return f"<MintAttempt {self.id} {self.minter_wallet[:8]}... ({self.status})>"
