"""Stuck transaction tracking"""
from datetime import datetime
import enum
from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Text

from app.models.database import Base


class ResolutionStatus(str, enum.Enum):
    DETECTED = "detected"
    RBF_SENT = "rbf_sent"
    CPFP_SENT = "cpfp_sent"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"


OPEN_RESOLUTIONS = frozenset({
    ResolutionStatus.DETECTED,
    ResolutionStatus.RBF_SENT,
    ResolutionStatus.CPFP_SENT,
})


class StuckTransaction(Base):
    """A broadcast that stalled in the mempool past the stuck threshold"""
    __tablename__ = "stuck_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    mint_attempt_id = Column(Integer, ForeignKey("mint_attempts.id"), nullable=False, index=True)
    tx_type = Column(String(10), nullable=False)  # commit, reveal
    tx_id = Column(String(64), nullable=False)
    stuck_since = Column(DateTime, nullable=False)
    stuck_duration_minutes = Column(Integer, nullable=False, default=0)
    current_fee_rate = Column(Float, nullable=True)  # sat/vB
    recommended_fee_rate = Column(Float, nullable=True)
    resolution_status = Column(String(20), nullable=False, default=ResolutionStatus.DETECTED.value, index=True)
    resolution_action = Column(String(50), nullable=True)
    resolution_tx_id = Column(String(64), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    resolved_by = Column(String(100), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_open(self) -> bool:
        return ResolutionStatus(self.resolution_status) in OPEN_RESOLUTIONS

    def __repr__(self):
        return f"<StuckTransaction {self.tx_type} {self.tx_id[:8]}... ({self.resolution_status})>"
