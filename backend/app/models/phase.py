"""Mint phase and whitelist models"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, BigInteger, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from app.models.database import Base


class MintPhase(Base):
    """Time-boxed minting window of a collection"""
    __tablename__ = "mint_phases"

    id = Column(Integer, primary_key=True, autoincrement=True)
    collection_id = Column(Integer, ForeignKey("collections.id"), nullable=False, index=True)
    phase_name = Column(String(100), nullable=False)
    phase_order = Column(Integer, nullable=False, default=0)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=True)  # null = open-ended
    is_active = Column(Boolean, nullable=False, default=False, index=True)
    is_completed = Column(Boolean, nullable=False, default=False)
    mint_price_sats = Column(BigInteger, nullable=False, default=0)
    max_per_wallet = Column(Integer, nullable=True)  # null = unlimited
    phase_allocation = Column(Integer, nullable=True)  # phase-wide pool, null = unlimited
    whitelist_only = Column(Boolean, nullable=False, default=False)
    whitelist_id = Column(Integer, ForeignKey("mint_phase_whitelists.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    collection = relationship("Collection", back_populates="phases")

    def is_open_at(self, now: datetime) -> bool:
        """Whether `now` falls inside [start_time, end_time)"""
        if self.start_time > now:
            return False
        return self.end_time is None or now < self.end_time

    def __repr__(self):
        return f"<MintPhase {self.id} {self.phase_name} active={self.is_active}>"


class Whitelist(Base):
    """Named wallet list attached to whitelist phases"""
    __tablename__ = "mint_phase_whitelists"

    id = Column(Integer, primary_key=True, autoincrement=True)
    collection_id = Column(Integer, ForeignKey("collections.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    entries = relationship("WhitelistEntry", back_populates="whitelist")

    def __repr__(self):
        return f"<Whitelist {self.id} {self.name}>"


class WhitelistEntry(Base):
    """Wallet allocation on a whitelist"""
    __tablename__ = "whitelist_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    whitelist_id = Column(Integer, ForeignKey("mint_phase_whitelists.id"), nullable=False, index=True)
    wallet_address = Column(String(100), nullable=False, index=True)
    allocation = Column(Integer, nullable=False, default=1)
    # Cache only. Enforcement always recounts mint attempts.
    minted_count = Column(Integer, nullable=False, default=0)
    added_at = Column(DateTime, default=datetime.utcnow)

    whitelist = relationship("Whitelist", back_populates="entries")

    __table_args__ = (
        UniqueConstraint("whitelist_id", "wallet_address", name="uq_whitelist_entries_wallet"),
    )

    def __repr__(self):
        return f"<WhitelistEntry {self.wallet_address[:8]}... allocation={self.allocation}>"
