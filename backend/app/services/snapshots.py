"""Validated, immutable views of the rows the minting engine decides on."""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from app.models.collection import Collection, LaunchStatus
from app.models.phase import MintPhase, WhitelistEntry


@dataclass(frozen=True)
class CollectionState:
    """Collection fields relevant to claiming."""
    id: int
    total_supply: int
    cap_supply: Optional[int]
    launch_status: LaunchStatus
    is_locked: bool

    def __post_init__(self):
        if self.total_supply < 0:
            raise ValueError("total_supply must be >= 0")
        if self.cap_supply is not None and self.cap_supply < 0:
            raise ValueError("cap_supply must be >= 0")

    @property
    def max_supply(self) -> int:
        if self.cap_supply is None:
            return self.total_supply
        return min(self.cap_supply, self.total_supply)

    @classmethod
    def from_row(cls, row: Collection) -> "CollectionState":
        return cls(
            id=row.id,
            total_supply=row.total_supply or 0,
            cap_supply=row.cap_supply,
            launch_status=LaunchStatus(row.launch_status),
            is_locked=bool(row.is_locked),
        )


@dataclass(frozen=True)
class PhaseState:
    """Phase fields relevant to eligibility and allocation."""
    id: int
    collection_id: int
    phase_name: str
    phase_order: int
    start_time: datetime
    end_time: Optional[datetime]
    is_active: bool
    is_completed: bool
    mint_price_sats: int
    max_per_wallet: Optional[int]
    phase_allocation: Optional[int]
    whitelist_only: bool
    whitelist_id: Optional[int]

    def __post_init__(self):
        if self.end_time is not None and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        if self.max_per_wallet is not None and self.max_per_wallet < 0:
            raise ValueError("max_per_wallet must be >= 0")
        if self.phase_allocation is not None and self.phase_allocation < 0:
            raise ValueError("phase_allocation must be >= 0")
        if self.mint_price_sats < 0:
            raise ValueError("mint_price_sats must be >= 0")

    def is_open_at(self, now: datetime) -> bool:
        if self.start_time > now:
            return False
        return self.end_time is None or now < self.end_time

    def accepts_mints_at(self, now: datetime) -> bool:
        return self.is_active and not self.is_completed and self.is_open_at(now)

    @classmethod
    def from_row(cls, row: MintPhase) -> "PhaseState":
        return cls(
            id=row.id,
            collection_id=row.collection_id,
            phase_name=row.phase_name,
            phase_order=row.phase_order or 0,
            start_time=row.start_time,
            end_time=row.end_time,
            is_active=bool(row.is_active),
            is_completed=bool(row.is_completed),
            mint_price_sats=row.mint_price_sats or 0,
            max_per_wallet=row.max_per_wallet,
            phase_allocation=row.phase_allocation,
            whitelist_only=bool(row.whitelist_only),
            whitelist_id=row.whitelist_id,
        )


@dataclass(frozen=True)
class WhitelistEntryState:
    wallet_address: str
    allocation: int

    def __post_init__(self):
        if self.allocation < 0:
            raise ValueError("allocation must be >= 0")

    @classmethod
    def from_row(cls, row: WhitelistEntry) -> "WhitelistEntryState":
        return cls(wallet_address=row.wallet_address, allocation=row.allocation or 0)


@dataclass(frozen=True)
class AllocationSnapshot:
    """
    How many more mints a wallet may make in a phase.

    `allowed`, `remaining` and `claimable` are None when the phase has no
    per-wallet cap. `used` counts broadcast commits only; `reserved` counts
    claims that have not been broadcast yet. `remaining` is what commits may
    still use, `claimable` is what a new claim may still reserve.
    """
    allowed: Optional[int]
    used: int
    remaining: Optional[int]
    is_whitelisted: bool
    reserved: int = 0

    def __post_init__(self):
        if self.used < 0 or self.reserved < 0:
            raise ValueError("used and reserved must be >= 0")
        if (self.allowed is None) != (self.remaining is None):
            raise ValueError("allowed and remaining must both be set or both be unlimited")
        if self.remaining is not None and not 0 <= self.remaining <= self.allowed:
            raise ValueError("remaining must be between 0 and allowed")

    @classmethod
    def build(cls, allowed: Optional[int], used: int, is_whitelisted: bool, reserved: int = 0) -> "AllocationSnapshot":
        remaining = None if allowed is None else max(0, allowed - used)
        return cls(allowed=allowed, used=used, remaining=remaining, is_whitelisted=is_whitelisted, reserved=reserved)

    @property
    def unlimited(self) -> bool:
        return self.allowed is None

    def can_claim(self) -> bool:
        """Whether a new reservation fits next to the outstanding ones"""
        if self.allowed is None:
            return True
        return self.used + self.reserved < self.allowed

    @property
    def claimable(self) -> Optional[int]:
        if self.allowed is None:
            return None
        return max(0, self.allowed - self.used - self.reserved)

    def can_commit(self) -> bool:
        if self.allowed is None:
            return True
        return self.used < self.allowed

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "used": self.used,
            "remaining": self.remaining,
            "claimable": self.claimable,
            "reserved": self.reserved,
            "is_whitelisted": self.is_whitelisted,
            "unlimited": self.unlimited,
        }
