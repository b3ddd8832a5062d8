"""Collection and supply item models"""
from datetime import datetime
import enum
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import relationship

from app.models.database import Base


class LaunchStatus(str, enum.Enum):
    """Launch lifecycle of a collection"""
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class Collection(Base):
    """A launchpad collection with a fixed, pre-generated supply"""
    __tablename__ = "collections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    creator_wallet = Column(String(100), nullable=True, index=True)
    total_supply = Column(Integer, nullable=False, default=0)
    cap_supply = Column(Integer, nullable=True)  # optional lower cap below total_supply
    is_locked = Column(Boolean, nullable=False, default=False)
    launch_status = Column(String(20), nullable=False, default=LaunchStatus.DRAFT.value, index=True)
    # Bumped as the first statement of every claim / activation transaction (row lock)
    claim_version = Column(Integer, nullable=False, default=0)
    mint_ended_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    phases = relationship("MintPhase", back_populates="collection", order_by="MintPhase.phase_order")

    @property
    def max_supply(self) -> int:
        if self.cap_supply is None:
            return self.total_supply or 0
        return min(self.cap_supply, self.total_supply or 0)

    def __repr__(self):
        return f"<Collection {self.id} {self.name} ({self.launch_status})>"


class SupplyItem(Base):
    """One mintable item of a collection. Rows are never deleted."""
    __tablename__ = "supply_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    collection_id = Column(Integer, ForeignKey("collections.id"), nullable=False, index=True)
    item_number = Column(Integer, nullable=False)
    is_minted = Column(Boolean, nullable=False, default=False)
    inscription_id = Column(String(100), nullable=True)
    minter_address = Column(String(100), nullable=True)
    mint_tx_id = Column(String(64), nullable=True)
    minted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("collection_id", "item_number", name="uq_supply_items_collection_number"),
        Index("ix_supply_items_collection_minted", "collection_id", "is_minted"),
    )

    def __repr__(self):
        return f"<SupplyItem {self.collection_id}#{self.item_number} minted={self.is_minted}>"
