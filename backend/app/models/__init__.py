"""Database models"""
from app.models.database import Base, get_db
from app.models.collection import Collection, SupplyItem, LaunchStatus
from app.models.phase import MintPhase, Whitelist, WhitelistEntry
from app.models.mint import MintAttempt, MintStatus

# Recovery and audit
from app.models.stuck_transaction import StuckTransaction, ResolutionStatus
from app.models.activity import MintActivity

# Credits
from app.models.credits import CreditBalance, CreditTransaction

__all__ = [
    "Base",
    "get_db",
    "Collection",
    "SupplyItem",
    "LaunchStatus",
    "MintPhase",
    "Whitelist",
    "WhitelistEntry",
    "MintAttempt",
    "MintStatus",
    # Recovery and audit
    "StuckTransaction",
    "ResolutionStatus",
    "MintActivity",
    # Credits
    "CreditBalance",
    "CreditTransaction",
]
