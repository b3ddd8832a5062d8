"""Append-only audit trail for mint attempts"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text, JSON

from app.models.database import Base


class MintActivity(Base):
    """
    One row per transition or admin action on a mint attempt.

    Rows are only ever inserted. `action_data` carries the action payload and
    always includes the status the attempt had before the action.
    """
    __tablename__ = "mint_activity_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    mint_attempt_id = Column(Integer, ForeignKey("mint_attempts.id"), nullable=True, index=True)
    collection_id = Column(Integer, ForeignKey("collections.id"), nullable=True, index=True)
    actor_wallet = Column(String(100), nullable=True)
    actor_type = Column(String(20), nullable=False)  # system, admin, wallet
    action_type = Column(String(50), nullable=False, index=True)
    previous_status = Column(String(30), nullable=True)
    new_status = Column(String(30), nullable=True)
    action_data = Column(JSON, nullable=True)
    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f"<MintActivity {self.action_type} attempt={self.mint_attempt_id}>"
