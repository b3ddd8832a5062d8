"""Credit balance models"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime

from app.models.database import Base


class CreditBalance(Base):
    """Current credit balance of a wallet"""
    __tablename__ = "credit_balances"

    wallet_address = Column(String(100), primary_key=True)
    credits = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<CreditBalance {self.wallet_address[:8]}... {self.credits}>"


class CreditTransaction(Base):
    """Ledger row for every debit or credit"""
    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(100), nullable=False, index=True)
    amount = Column(Integer, nullable=False)  # negative for debits
    transaction_type = Column(String(20), nullable=False)  # debit, credit, refund
    description = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
