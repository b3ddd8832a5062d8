"""Explicit capability context passed into every mutating operation"""
from dataclasses import dataclass
import enum
from typing import Optional


class ActorType(str, enum.Enum):
    SYSTEM = "system"
    ADMIN = "admin"
    WALLET = "wallet"


@dataclass(frozen=True)
class Actor:
    """Who is performing an action, resolved once per request or job"""
    actor_type: ActorType
    wallet_address: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.actor_type in (ActorType.ADMIN, ActorType.SYSTEM)

    @classmethod
    def system(cls, name: str = "system") -> "Actor":
        return cls(ActorType.SYSTEM, name)

    @classmethod
    def admin(cls, wallet_address: str) -> "Actor":
        return cls(ActorType.ADMIN, wallet_address)

    @classmethod
    def wallet(cls, wallet_address: str) -> "Actor":
        return cls(ActorType.WALLET, wallet_address)

    @classmethod
    def resolve(cls, wallet_address: Optional[str], admin_wallets) -> Optional["Actor"]:
        """Build the actor for a caller-supplied wallet address"""
        if not wallet_address:
            return None
        if wallet_address in set(admin_wallets):
            return cls.admin(wallet_address)
        return cls.wallet(wallet_address)
