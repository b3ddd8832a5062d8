"""Allocation enforcer: how many more mints a wallet may make in a phase.

Every number here is recomputed from mint attempt rows. The cached
``WhitelistEntry.minted_count`` is refreshed for display but never read for
enforcement.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import select, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.mint import MintAttempt, released_values
from app.models.phase import MintPhase, WhitelistEntry
from app.services.errors import (
    AllocationExhaustedError,
    NotFoundError,
    NotWhitelistedError,
    PhaseAllocationExhaustedError,
    PhaseInactiveError,
)
from app.services.snapshots import AllocationSnapshot, PhaseState, WhitelistEntryState


def _has_commit():
    return and_(MintAttempt.commit_tx_id.isnot(None), MintAttempt.commit_tx_id != "")


def _no_commit():
    return or_(MintAttempt.commit_tx_id.is_(None), MintAttempt.commit_tx_id == "")


def _live_counted():
    return and_(
        MintAttempt.is_test_mint == False,  # noqa: E712
        MintAttempt.status.notin_(released_values()),
    )


class AllocationEnforcer:
    """Computes and enforces per-wallet and per-phase allocation"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve_phase(self, collection_id: int, phase_id: Optional[int] = None) -> MintPhase:
        """The requested phase, or the collection's active phase when none is given"""
        if phase_id is not None:
            phase = await self.db.get(MintPhase, phase_id, populate_existing=True)
            if phase is None or phase.collection_id != collection_id:
                raise NotFoundError(f"Phase {phase_id} not found for collection {collection_id}")
            return phase

        result = await self.db.execute(
            select(MintPhase)
            .where(MintPhase.collection_id == collection_id, MintPhase.is_active == True)  # noqa: E712
            .order_by(MintPhase.phase_order)
            .limit(1)
        )
        phase = result.scalar_one_or_none()
        if phase is None:
            raise PhaseInactiveError(f"Collection {collection_id} has no active phase")
        return phase

    async def get_entry(self, whitelist_id: Optional[int], wallet: str) -> Optional[WhitelistEntry]:
        if whitelist_id is None:
            return None
        result = await self.db.execute(
            select(WhitelistEntry).where(
                WhitelistEntry.whitelist_id == whitelist_id,
                WhitelistEntry.wallet_address == wallet,
            )
        )
        return result.scalar_one_or_none()

    async def _count(self, *conditions) -> int:
        result = await self.db.execute(
            select(func.count(MintAttempt.id)).where(_live_counted(), *conditions)
        )
        return result.scalar_one()

    async def committed_count(self, wallet: str, phase_id: int, exclude_attempt_id: Optional[int] = None) -> int:
        """Live, non-test attempts of the wallet in the phase with a broadcast commit"""
        conditions = [MintAttempt.minter_wallet == wallet, MintAttempt.phase_id == phase_id, _has_commit()]
        if exclude_attempt_id is not None:
            conditions.append(MintAttempt.id != exclude_attempt_id)
        return await self._count(*conditions)

    async def reserved_count(self, wallet: str, phase_id: int) -> int:
        """Live claims of the wallet that have not broadcast a commit yet"""
        return await self._count(
            MintAttempt.minter_wallet == wallet, MintAttempt.phase_id == phase_id, _no_commit()
        )

    async def phase_committed_count(self, phase_id: int, exclude_attempt_id: Optional[int] = None) -> int:
        conditions = [MintAttempt.phase_id == phase_id, _has_commit()]
        if exclude_attempt_id is not None:
            conditions.append(MintAttempt.id != exclude_attempt_id)
        return await self._count(*conditions)

    async def phase_reserved_count(self, phase_id: int) -> int:
        return await self._count(MintAttempt.phase_id == phase_id, _no_commit())

    async def remaining(
        self,
        wallet: str,
        phase: PhaseState,
        exclude_attempt_id: Optional[int] = None,
    ) -> AllocationSnapshot:
        """
        Allocation snapshot for a wallet in a phase.

        Whitelist phases allow `max_per_wallet` when set, otherwise the entry's
        own allocation. A wallet without an entry, or a whitelist-only phase
        without a whitelist, is not whitelisted and gets nothing. Public phases
        allow `max_per_wallet` (None = unlimited).
        """
        row = await self.get_entry(phase.whitelist_id, wallet)
        entry = WhitelistEntryState.from_row(row) if row is not None else None
        used = await self.committed_count(wallet, phase.id, exclude_attempt_id)
        reserved = await self.reserved_count(wallet, phase.id)

        if phase.whitelist_only:
            if entry is None:
                return AllocationSnapshot.build(allowed=0, used=used, is_whitelisted=False, reserved=reserved)
            allowed = phase.max_per_wallet if phase.max_per_wallet is not None else entry.allocation
            return AllocationSnapshot.build(allowed=allowed, used=used, is_whitelisted=True, reserved=reserved)

        return AllocationSnapshot.build(
            allowed=phase.max_per_wallet,
            used=used,
            is_whitelisted=entry is not None,
            reserved=reserved,
        )

    async def authorize_claim(self, wallet: str, phase: PhaseState, now: datetime) -> AllocationSnapshot:
        """
        Check a new claim. Caller must hold the collection lock.

        Order: phase window, whitelist membership, wallet cap (broadcast
        commits plus outstanding reservations), phase pool.
        """
        if not phase.accepts_mints_at(now):
            raise PhaseInactiveError(f"Phase {phase.phase_name} is not accepting mints")

        snapshot = await self.remaining(wallet, phase)
        if phase.whitelist_only and not snapshot.is_whitelisted:
            raise NotWhitelistedError(f"Wallet is not whitelisted for phase {phase.phase_name}")
        if not snapshot.can_claim():
            raise AllocationExhaustedError(
                f"Wallet allocation exhausted ({snapshot.used} minted, {snapshot.reserved} reserved "
                f"of {snapshot.allowed})"
            )

        if phase.phase_allocation is not None:
            phase_used = await self.phase_committed_count(phase.id) + await self.phase_reserved_count(phase.id)
            if phase_used >= phase.phase_allocation:
                raise PhaseAllocationExhaustedError(
                    f"Phase {phase.phase_name} allocation of {phase.phase_allocation} is exhausted"
                )
        return snapshot

    async def authorize_commit(self, attempt: MintAttempt, phase: PhaseState) -> AllocationSnapshot:
        """
        Re-check caps before a commit broadcast is recorded.

        Caller must hold the collection lock. The attempt itself is excluded
        so a retried attempt that already broadcast once is not counted twice.
        """
        snapshot = await self.remaining(attempt.minter_wallet, phase, exclude_attempt_id=attempt.id)
        if phase.whitelist_only and not snapshot.is_whitelisted:
            raise NotWhitelistedError(f"Wallet is not whitelisted for phase {phase.phase_name}")
        if not snapshot.can_commit():
            raise AllocationExhaustedError(
                f"Wallet allocation exhausted ({snapshot.used} of {snapshot.allowed} minted)"
            )

        if phase.phase_allocation is not None:
            phase_used = await self.phase_committed_count(phase.id, exclude_attempt_id=attempt.id)
            if phase_used >= phase.phase_allocation:
                raise PhaseAllocationExhaustedError(
                    f"Phase {phase.phase_name} allocation of {phase.phase_allocation} is exhausted"
                )
        return snapshot

    async def refresh_cached_count(self, wallet: str, phase: PhaseState) -> None:
        """Refresh the advisory minted_count on the wallet's whitelist entry"""
        entry = await self.get_entry(phase.whitelist_id, wallet)
        if entry is None:
            return
        entry.minted_count = await self.committed_count(wallet, phase.id)
        await self.db.flush()
