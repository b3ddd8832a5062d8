"""Mint state machine: the lifecycle of every mint attempt.

Normal path:

    pending -> compressing -> compressed -> commit_created -> commit_signed
    -> commit_broadcast -> commit_confirming -> commit_confirmed
    -> reveal_created -> reveal_broadcast -> reveal_confirming
    -> reveal_confirmed -> completed

Side states: failed, stuck, refunded, cancelled, expired.

Transitions only move forward. Broadcast states are entered through
``record_*_broadcast`` (which carry the txid and, for commits, re-check
allocation under the collection lock); confirmed states and ``completed``
only through ``confirm_*`` with a confirmed chain status. Every applied
transition is written to the activity log.
"""
from datetime import datetime, timedelta
from typing import List, Optional

import structlog
from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.models.collection import LaunchStatus, SupplyItem
from app.models.mint import (
    LINEAR_STATUSES,
    MintAttempt,
    MintStatus,
    TERMINAL_STATUSES,
    status_rank,
)
from app.models.phase import MintPhase
from app.models.stuck_transaction import OPEN_RESOLUTIONS, ResolutionStatus, StuckTransaction
from app.services.activity_log import ActivityLog
from app.services.actor import Actor, ActorType
from app.services.allocation import AllocationEnforcer
from app.services.chain_client import TxStatus
from app.services.credit_ledger import CreditLedger, DebitResult
from app.services.errors import (
    AllocationExhaustedError,
    CapacityError,
    InsufficientCreditsError,
    InvalidTransitionError,
    MintAuthorizationError,
    NotAdminError,
    NotFoundError,
    PhaseAllocationExhaustedError,
    PhaseInactiveError,
    RetryLimitExceeded,
    SupplyExhaustedError,
)
from app.services.snapshots import CollectionState, PhaseState
from app.services.supply_ledger import SupplyLedger, lock_collection

logger = structlog.get_logger()

# Targets reachable through advance()
ADVANCE_TARGETS = frozenset({
    MintStatus.COMPRESSING,
    MintStatus.COMPRESSED,
    MintStatus.COMMIT_CREATED,
    MintStatus.COMMIT_SIGNED,
    MintStatus.COMMIT_CONFIRMING,
    MintStatus.REVEAL_CREATED,
    MintStatus.REVEAL_CONFIRMING,
})

# advance() may skip intermediate states but never a broadcast
UNSKIPPABLE = frozenset({MintStatus.COMMIT_BROADCAST, MintStatus.REVEAL_BROADCAST})

RETRYABLE = frozenset({MintStatus.FAILED, MintStatus.STUCK})
CANCELLABLE = frozenset({MintStatus.PENDING, MintStatus.FAILED, MintStatus.STUCK})

COMMIT_BROADCAST_RANK = status_rank(MintStatus.COMMIT_BROADCAST)
COMMIT_CONFIRMED_RANK = status_rank(MintStatus.COMMIT_CONFIRMED)
REVEAL_CREATED_RANK = status_rank(MintStatus.REVEAL_CREATED)


class MintStateMachine:
    """Executes claims and status transitions of mint attempts"""

    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.supply = SupplyLedger(db)
        self.allocation = AllocationEnforcer(db)
        self.activity = ActivityLog(db)
        self.credits = CreditLedger(db)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def get_attempt(self, attempt_id: int) -> MintAttempt:
        attempt = await self.db.get(MintAttempt, attempt_id, populate_existing=True)
        if attempt is None:
            raise NotFoundError(f"Mint attempt {attempt_id} not found")
        return attempt

    async def _transition(
        self,
        attempt: MintAttempt,
        actor: Actor,
        action: str,
        new_status: MintStatus,
        data: Optional[dict] = None,
    ) -> None:
        previous = attempt.status
        attempt.status = new_status.value
        await self.db.flush()
        await self.activity.record(attempt, actor, action, previous, new_status.value, data)
        logger.info(
            "Mint status changed",
            attempt_id=attempt.id,
            action=action,
            previous_status=previous,
            status=new_status.value,
            actor=actor.wallet_address,
        )

    def _reject(self, attempt: MintAttempt, target, reason: str) -> InvalidTransitionError:
        target_value = target.value if isinstance(target, MintStatus) else str(target)
        logger.warning(
            "Rejected mint transition",
            attempt_id=attempt.id,
            status=attempt.status,
            target=target_value,
            reason=reason,
        )
        return InvalidTransitionError(attempt.status, target_value, reason)

    @staticmethod
    def _require_admin(actor: Actor, action: str) -> None:
        if not actor.is_admin:
            raise NotAdminError(f"Admin capability required for {action}")

    @staticmethod
    def _require_owner_or_admin(actor: Actor, attempt: MintAttempt) -> None:
        if actor.is_admin:
            return
        if actor.wallet_address is None or actor.wallet_address != attempt.minter_wallet:
            raise MintAuthorizationError("Mint attempt belongs to another wallet")

    async def _refund_credits(self, attempt: MintAttempt, reason: str) -> int:
        amount = attempt.credits_charged or 0
        if amount <= 0:
            return 0
        await self.credits.credit(
            attempt.minter_wallet,
            amount,
            description=f"{reason} for mint attempt {attempt.id}",
            transaction_type="refund",
        )
        attempt.credits_charged = 0
        return amount

    async def _resolve_open_stuck(
        self,
        attempt: MintAttempt,
        actor: Actor,
        now: datetime,
        tx_type: Optional[str] = None,
    ) -> int:
        """Resolve open stuck records after the chain confirmed the transaction"""
        conditions = [
            StuckTransaction.mint_attempt_id == attempt.id,
            StuckTransaction.resolution_status.in_([r.value for r in OPEN_RESOLUTIONS]),
        ]
        if tx_type is not None:
            conditions.append(StuckTransaction.tx_type == tx_type)
        result = await self.db.execute(
            update(StuckTransaction)
            .where(*conditions)
            .values(
                resolution_status=ResolutionStatus.RESOLVED.value,
                resolution_action="confirmed_on_chain",
                resolved_by=actor.wallet_address,
                resolved_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def mark_item_minted(self, attempt: MintAttempt, now: datetime) -> bool:
        """
        Flip the supply item to minted. The only normal-path writer of is_minted.

        The update is conditional so a repeated completion is a no-op.
        """
        if attempt.is_test_mint or attempt.supply_item_id is None:
            return False
        result = await self.db.execute(
            update(SupplyItem)
            .where(SupplyItem.id == attempt.supply_item_id, SupplyItem.is_minted == False)  # noqa: E712
            .values(
                is_minted=True,
                minted_at=now,
                inscription_id=attempt.inscription_id,
                minter_address=attempt.receiving_wallet or attempt.minter_wallet,
                mint_tx_id=attempt.reveal_tx_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.info("Supply item already minted", attempt_id=attempt.id, supply_item_id=attempt.supply_item_id)
            return False
        return True

    async def force_status(
        self,
        actor: Actor,
        attempt: MintAttempt,
        target: MintStatus,
        data: Optional[dict] = None,
    ) -> None:
        """Admin override: set any status without transition rules (still audited)"""
        self._require_admin(actor, "status override")
        await self._transition(attempt, actor, "admin_status_override", target, data)

    async def complete(
        self,
        attempt: MintAttempt,
        actor: Actor,
        now: datetime,
        action: str = "complete",
        data: Optional[dict] = None,
    ) -> None:
        """Move an attempt to completed and mark its supply item minted"""
        attempt.completed_at = attempt.completed_at or now
        if attempt.inscription_id is None and attempt.reveal_tx_id:
            attempt.inscription_id = f"{attempt.reveal_tx_id}i0"
        item_minted = await self.mark_item_minted(attempt, now)
        payload = dict(data or {})
        payload["supply_item_minted"] = item_minted
        await self._transition(attempt, actor, action, MintStatus.COMPLETED, payload)

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    async def claim(
        self,
        actor: Actor,
        collection_id: int,
        phase_id: Optional[int] = None,
        supply_item_id: Optional[int] = None,
        receiving_wallet: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MintAttempt:
        """
        Reserve one supply item for the actor's wallet.

        Everything runs under the collection lock: eligibility, allocation,
        supply selection and the insert of the pending attempt. Rejections
        raise before anything is written.
        """
        wallet = self._claiming_wallet(actor)
        now = now or datetime.utcnow()
        phase = await self._lock_for_claim(collection_id, phase_id)
        return await self._reserve(actor, wallet, collection_id, phase, now, supply_item_id, receiving_wallet)

    async def claim_many(
        self,
        actor: Actor,
        collection_id: int,
        quantity: int,
        phase_id: Optional[int] = None,
        receiving_wallet: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[MintAttempt]:
        """
        Reserve `quantity` random supply items in one transaction.

        The whole request is checked against the wallet cap, the phase pool
        and the available supply before the first insert, so a request that
        does not fit raises without reserving anything.
        """
        limit = self.settings.max_per_transaction
        if not 1 <= quantity <= limit:
            raise ValueError(f"quantity must be between 1 and {limit}")
        wallet = self._claiming_wallet(actor)
        now = now or datetime.utcnow()
        phase = await self._lock_for_claim(collection_id, phase_id)

        snapshot = await self.allocation.authorize_claim(wallet, phase, now)
        if snapshot.claimable is not None and quantity > snapshot.claimable:
            raise AllocationExhaustedError(
                f"Cannot reserve {quantity}: wallet may reserve {snapshot.claimable} more of {snapshot.allowed}"
            )
        if phase.phase_allocation is not None:
            phase_used = (
                await self.allocation.phase_committed_count(phase.id)
                + await self.allocation.phase_reserved_count(phase.id)
            )
            if phase_used + quantity > phase.phase_allocation:
                raise PhaseAllocationExhaustedError(
                    f"Cannot reserve {quantity}: phase {phase.phase_name} has "
                    f"{max(0, phase.phase_allocation - phase_used)} left"
                )
        available = (await self.supply.counts(collection_id)).available
        if quantity > available:
            raise SupplyExhaustedError(f"Cannot reserve {quantity}: only {available} remaining")
        cost = self.settings.mint_credit_cost * quantity
        if cost > 0 and await self.credits.balance(wallet) < cost:
            raise InsufficientCreditsError(f"Wallet needs {cost} credits to mint {quantity}")

        return [
            await self._reserve(actor, wallet, collection_id, phase, now, receiving_wallet=receiving_wallet)
            for _ in range(quantity)
        ]

    @staticmethod
    def _claiming_wallet(actor: Actor) -> str:
        wallet = actor.wallet_address
        if not wallet or actor.actor_type == ActorType.SYSTEM:
            raise MintAuthorizationError("A wallet address is required to claim")
        return wallet

    async def _lock_for_claim(self, collection_id: int, phase_id: Optional[int]) -> PhaseState:
        await lock_collection(self.db, collection_id)
        collection = CollectionState.from_row(await self.supply.get_collection(collection_id))
        if collection.launch_status != LaunchStatus.ACTIVE:
            raise PhaseInactiveError(f"Collection {collection_id} is not live ({collection.launch_status.value})")
        return PhaseState.from_row(await self.allocation.resolve_phase(collection_id, phase_id))

    async def _reserve(
        self,
        actor: Actor,
        wallet: str,
        collection_id: int,
        phase: PhaseState,
        now: datetime,
        supply_item_id: Optional[int] = None,
        receiving_wallet: Optional[str] = None,
    ) -> MintAttempt:
        """Authorize and insert one pending attempt. Caller must hold the collection lock."""
        snapshot = await self.allocation.authorize_claim(wallet, phase, now)
        item = await self.supply.select_available(collection_id, supply_item_id)

        credits_charged = 0
        cost = self.settings.mint_credit_cost
        if cost > 0:
            debit = await self.credits.debit(wallet, cost, f"Mint reservation in collection {collection_id}")
            if debit != DebitResult.OK:
                raise InsufficientCreditsError(f"Wallet needs {cost} credits to mint")
            credits_charged = cost

        attempt = MintAttempt(
            collection_id=collection_id,
            phase_id=phase.id,
            supply_item_id=item.id,
            minter_wallet=wallet,
            receiving_wallet=receiving_wallet or wallet,
            status=MintStatus.PENDING.value,
            mint_price_sats=phase.mint_price_sats,
            credits_charged=credits_charged,
            created_at=now,
        )
        self.db.add(attempt)
        await self.db.flush()

        await self.activity.record(
            attempt,
            actor,
            "claim",
            previous_status=None,
            new_status=MintStatus.PENDING.value,
            data={
                "phase_id": phase.id,
                "supply_item_id": item.id,
                "item_number": item.item_number,
                "allowed": snapshot.allowed,
                "used": snapshot.used,
            },
        )
        logger.info(
            "Supply item claimed",
            attempt_id=attempt.id,
            collection_id=collection_id,
            phase_id=phase.id,
            wallet=wallet,
            item_number=item.item_number,
        )
        return attempt

    async def create_test_mint(
        self,
        actor: Actor,
        collection_id: int,
        wallet: str,
        now: Optional[datetime] = None,
    ) -> MintAttempt:
        """Admin test mint: no supply item, excluded from every count"""
        self._require_admin(actor, "test mints")
        collection = await self.supply.get_collection(collection_id)
        attempt = MintAttempt(
            collection_id=collection.id,
            minter_wallet=wallet,
            receiving_wallet=wallet,
            status=MintStatus.PENDING.value,
            is_test_mint=True,
            created_at=now or datetime.utcnow(),
        )
        self.db.add(attempt)
        await self.db.flush()
        await self.activity.record(attempt, actor, "test_mint", None, MintStatus.PENDING.value)
        return attempt

    # ------------------------------------------------------------------
    # Normal path
    # ------------------------------------------------------------------

    async def advance(self, actor: Actor, attempt_id: int, to_status: str) -> MintAttempt:
        """Move forward along the normal path, possibly skipping off-chain steps"""
        attempt = await self.get_attempt(attempt_id)
        self._require_owner_or_admin(actor, attempt)

        try:
            target = MintStatus(to_status)
        except ValueError:
            raise self._reject(attempt, to_status, "unknown status")

        if target not in ADVANCE_TARGETS:
            raise self._reject(attempt, target, "status is set by a dedicated operation")

        current_rank = status_rank(attempt.status)
        target_rank = status_rank(target)
        if current_rank < 0:
            raise self._reject(attempt, target, f"attempt is {attempt.status}")
        if target_rank <= current_rank:
            raise self._reject(attempt, target, "transitions never move backward")
        skipped = set(LINEAR_STATUSES[current_rank + 1:target_rank])
        if skipped & UNSKIPPABLE:
            raise self._reject(attempt, target, "a broadcast cannot be skipped")

        await self._transition(attempt, actor, "advance", target)
        return attempt

    async def record_commit_broadcast(
        self,
        actor: Actor,
        attempt_id: int,
        commit_tx_id: str,
        now: Optional[datetime] = None,
    ) -> MintAttempt:
        """
        Record the commit broadcast after re-checking allocation.

        A concurrent burst of broadcasts from one wallet is serialized by the
        collection lock, so no more than the allowed number can pass. A
        rejected attempt stays where it was.
        """
        now = now or datetime.utcnow()
        if not commit_tx_id:
            raise ValueError("commit_tx_id is required")

        collection_id = (await self.get_attempt(attempt_id)).collection_id
        await lock_collection(self.db, collection_id)
        attempt = await self.get_attempt(attempt_id)
        self._require_owner_or_admin(actor, attempt)

        if attempt.status == MintStatus.COMMIT_BROADCAST.value and attempt.commit_tx_id == commit_tx_id:
            return attempt
        rank = status_rank(attempt.status)
        if rank < 0 or rank >= COMMIT_BROADCAST_RANK:
            raise self._reject(attempt, MintStatus.COMMIT_BROADCAST, f"attempt is {attempt.status}")

        if not attempt.is_test_mint and attempt.phase_id is not None:
            phase = PhaseState.from_row(await self.db.get(MintPhase, attempt.phase_id))
            try:
                await self.allocation.authorize_commit(attempt, phase)
            except CapacityError as e:
                logger.warning(
                    "Commit broadcast rejected",
                    attempt_id=attempt.id,
                    wallet=attempt.minter_wallet,
                    reason=e.code,
                )
                raise

        previous_tx = attempt.commit_tx_id
        attempt.commit_tx_id = commit_tx_id
        attempt.commit_broadcast_at = now
        await self._transition(
            attempt,
            actor,
            "commit_broadcast",
            MintStatus.COMMIT_BROADCAST,
            {"commit_tx_id": commit_tx_id, "previous_commit_tx_id": previous_tx},
        )

        if not attempt.is_test_mint and attempt.phase_id is not None:
            await self.allocation.refresh_cached_count(attempt.minter_wallet, phase)
        return attempt

    async def record_reveal_broadcast(
        self,
        actor: Actor,
        attempt_id: int,
        reveal_tx_id: str,
        now: Optional[datetime] = None,
    ) -> MintAttempt:
        now = now or datetime.utcnow()
        if not reveal_tx_id:
            raise ValueError("reveal_tx_id is required")

        attempt = await self.get_attempt(attempt_id)
        self._require_owner_or_admin(actor, attempt)

        if attempt.status == MintStatus.REVEAL_BROADCAST.value and attempt.reveal_tx_id == reveal_tx_id:
            return attempt
        if not attempt.commit_tx_id:
            raise self._reject(attempt, MintStatus.REVEAL_BROADCAST, "commit has not been broadcast")
        rank = status_rank(attempt.status)
        from_stuck = attempt.status == MintStatus.STUCK.value
        if not from_stuck and not COMMIT_BROADCAST_RANK <= rank <= REVEAL_CREATED_RANK:
            raise self._reject(attempt, MintStatus.REVEAL_BROADCAST, f"attempt is {attempt.status}")

        attempt.reveal_tx_id = reveal_tx_id
        attempt.reveal_broadcast_at = now
        attempt.stuck_since = None
        await self._transition(
            attempt, actor, "reveal_broadcast", MintStatus.REVEAL_BROADCAST, {"reveal_tx_id": reveal_tx_id}
        )
        return attempt

    async def confirm_commit(
        self,
        actor: Actor,
        attempt_id: int,
        tx_status: TxStatus,
        now: Optional[datetime] = None,
    ) -> MintAttempt:
        """Apply a confirmed commit transaction. Never moves the status backward."""
        now = now or datetime.utcnow()
        attempt = await self.get_attempt(attempt_id)

        if not attempt.commit_tx_id:
            raise self._reject(attempt, MintStatus.COMMIT_CONFIRMED, "no commit transaction")
        if not tx_status.confirmed or tx_status.confirmations < 1:
            raise self._reject(attempt, MintStatus.COMMIT_CONFIRMED, "commit is not confirmed on chain")

        current = MintStatus(attempt.status)
        rank = status_rank(current)
        if current != MintStatus.STUCK and rank < COMMIT_BROADCAST_RANK:
            raise self._reject(attempt, MintStatus.COMMIT_CONFIRMED, f"attempt is {attempt.status}")

        attempt.commit_confirmations = tx_status.confirmations
        attempt.commit_confirmed_at = attempt.commit_confirmed_at or now
        attempt.last_checked_at = now
        data = {"commit_tx_id": attempt.commit_tx_id, "confirmations": tx_status.confirmations}

        if current == MintStatus.STUCK:
            await self._resolve_open_stuck(attempt, actor, now, tx_type="commit")
            if attempt.reveal_tx_id:
                # The reveal is what is stuck; record the confirmation only
                await self.db.flush()
                return attempt
            attempt.stuck_since = None
            await self._transition(attempt, actor, "commit_confirmed", MintStatus.COMMIT_CONFIRMED, data)
        elif rank < COMMIT_CONFIRMED_RANK:
            await self._transition(attempt, actor, "commit_confirmed", MintStatus.COMMIT_CONFIRMED, data)
        else:
            await self.db.flush()
        return attempt

    async def confirm_reveal(
        self,
        actor: Actor,
        attempt_id: int,
        tx_status: TxStatus,
        now: Optional[datetime] = None,
    ) -> MintAttempt:
        """Apply a confirmed reveal: reveal_confirmed, then completed"""
        now = now or datetime.utcnow()
        attempt = await self.get_attempt(attempt_id)

        if not attempt.reveal_tx_id:
            raise self._reject(attempt, MintStatus.REVEAL_CONFIRMED, "no reveal transaction")
        if not tx_status.confirmed or tx_status.confirmations < 1:
            raise self._reject(attempt, MintStatus.REVEAL_CONFIRMED, "reveal is not confirmed on chain")

        current = MintStatus(attempt.status)
        if current == MintStatus.COMPLETED:
            attempt.reveal_confirmations = tx_status.confirmations
            attempt.last_checked_at = now
            await self.db.flush()
            return attempt
        if current != MintStatus.STUCK and status_rank(current) < COMMIT_BROADCAST_RANK:
            raise self._reject(attempt, MintStatus.REVEAL_CONFIRMED, f"attempt is {attempt.status}")

        attempt.reveal_confirmations = tx_status.confirmations
        attempt.reveal_confirmed_at = attempt.reveal_confirmed_at or now
        # The reveal spends the commit output, so the commit is confirmed too
        attempt.commit_confirmed_at = attempt.commit_confirmed_at or now
        attempt.commit_confirmations = max(attempt.commit_confirmations or 0, tx_status.confirmations)
        attempt.last_checked_at = now

        if current == MintStatus.STUCK:
            attempt.stuck_since = None
            await self._resolve_open_stuck(attempt, actor, now)

        data = {"reveal_tx_id": attempt.reveal_tx_id, "confirmations": tx_status.confirmations}
        if current != MintStatus.REVEAL_CONFIRMED:
            await self._transition(attempt, actor, "reveal_confirmed", MintStatus.REVEAL_CONFIRMED, data)
        await self.complete(attempt, actor, now, data=data)
        return attempt

    # ------------------------------------------------------------------
    # Side states
    # ------------------------------------------------------------------

    async def fail(
        self,
        actor: Actor,
        attempt_id: int,
        message: str,
        code: Optional[str] = None,
    ) -> MintAttempt:
        attempt = await self.get_attempt(attempt_id)
        self._require_owner_or_admin(actor, attempt)
        if MintStatus(attempt.status) in TERMINAL_STATUSES or attempt.status == MintStatus.FAILED.value:
            raise self._reject(attempt, MintStatus.FAILED, f"attempt is {attempt.status}")

        attempt.error_message = message
        attempt.error_code = code
        await self._transition(attempt, actor, "fail", MintStatus.FAILED, {"error": message, "code": code})
        return attempt

    async def mark_stuck(
        self,
        actor: Actor,
        attempt_id: int,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MintAttempt:
        self._require_admin(actor, "mark_stuck")
        attempt = await self.get_attempt(attempt_id)
        if MintStatus(attempt.status) in TERMINAL_STATUSES or attempt.status == MintStatus.STUCK.value:
            raise self._reject(attempt, MintStatus.STUCK, f"attempt is {attempt.status}")
        await self._enter_stuck(attempt, actor, now or datetime.utcnow(), reason)
        return attempt

    async def _enter_stuck(self, attempt: MintAttempt, actor: Actor, now: datetime, reason: Optional[str]) -> None:
        attempt.stuck_since = attempt.stuck_since or now
        await self._transition(attempt, actor, "mark_stuck", MintStatus.STUCK, {"reason": reason})

    async def retry(self, actor: Actor, attempt_id: int, now: Optional[datetime] = None) -> MintAttempt:
        """
        Send a failed or stuck attempt back to pending.

        Past the retry limit the attempt needs manual escalation and
        RetryLimitExceeded is raised.
        """
        self._require_admin(actor, "retry")
        now = now or datetime.utcnow()
        attempt = await self.get_attempt(attempt_id)

        if MintStatus(attempt.status) not in RETRYABLE:
            raise self._reject(attempt, MintStatus.PENDING, "only failed or stuck attempts can be retried")
        if (attempt.retry_count or 0) >= self.settings.max_retry_count:
            logger.error(
                "Mint retry limit exceeded",
                attempt_id=attempt.id,
                retry_count=attempt.retry_count,
            )
            raise RetryLimitExceeded(
                f"Attempt {attempt.id} reached the maximum of {self.settings.max_retry_count} retries"
            )

        attempt.retry_count = (attempt.retry_count or 0) + 1
        attempt.last_retry_at = now
        previous_error = attempt.error_message
        attempt.error_message = None
        attempt.error_code = None
        attempt.stuck_since = None
        await self._transition(
            attempt,
            actor,
            "retry",
            MintStatus.PENDING,
            {"retry_count": attempt.retry_count, "previous_error": previous_error},
        )
        return attempt

    async def cancel(self, actor: Actor, attempt_id: int, reason: Optional[str] = None) -> MintAttempt:
        """
        Cancel an attempt and release its supply item.

        Admins may cancel pending, failed or stuck attempts. A wallet may only
        cancel its own reservation before the commit is broadcast.
        """
        attempt = await self.get_attempt(attempt_id)
        self._require_owner_or_admin(actor, attempt)

        if MintStatus(attempt.status) not in CANCELLABLE:
            raise self._reject(attempt, MintStatus.CANCELLED, "only pending, failed or stuck attempts can be cancelled")
        if not actor.is_admin and (attempt.status != MintStatus.PENDING.value or attempt.commit_tx_id):
            raise MintAuthorizationError("Only admins can cancel an attempt after broadcast")

        refunded = await self._refund_credits(attempt, "Cancellation")
        await self._transition(
            attempt, actor, "cancel", MintStatus.CANCELLED, {"reason": reason, "credits_refunded": refunded}
        )
        return attempt

    async def mark_refunded(
        self,
        actor: Actor,
        attempt_id: int,
        refund_tx_id: Optional[str] = None,
        refund_amount_sats: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> MintAttempt:
        """Terminal admin action from any prior state"""
        self._require_admin(actor, "mark_refunded")
        now = now or datetime.utcnow()
        attempt = await self.get_attempt(attempt_id)
        if attempt.status == MintStatus.REFUNDED.value:
            raise self._reject(attempt, MintStatus.REFUNDED, "attempt is already refunded")

        attempt.refund_tx_id = refund_tx_id
        attempt.refund_amount_sats = refund_amount_sats
        attempt.refunded_at = now
        refunded = await self._refund_credits(attempt, "Refund")
        await self._transition(
            attempt,
            actor,
            "mark_refunded",
            MintStatus.REFUNDED,
            {
                "refund_tx_id": refund_tx_id,
                "refund_amount_sats": refund_amount_sats,
                "credits_refunded": refunded,
            },
        )
        return attempt

    async def expire_stale_reservations(
        self,
        actor: Actor,
        now: Optional[datetime] = None,
        ttl_seconds: Optional[int] = None,
    ) -> int:
        """Expire pending reservations whose commit was never broadcast"""
        now = now or datetime.utcnow()
        ttl = ttl_seconds if ttl_seconds is not None else self.settings.reservation_ttl_seconds
        cutoff = now - timedelta(seconds=ttl)

        def stale():
            return select(MintAttempt).where(
                MintAttempt.status == MintStatus.PENDING.value,
                or_(MintAttempt.commit_tx_id.is_(None), MintAttempt.commit_tx_id == ""),
                MintAttempt.created_at < cutoff,
            )

        collection_ids = sorted({
            a.collection_id for a in (await self.db.execute(stale())).scalars().all()
        })
        expired = 0
        for collection_id in collection_ids:
            await lock_collection(self.db, collection_id)
            result = await self.db.execute(
                stale().where(MintAttempt.collection_id == collection_id).execution_options(populate_existing=True)
            )
            for attempt in result.scalars().all():
                refunded = await self._refund_credits(attempt, "Reservation expiry")
                await self._transition(
                    attempt,
                    actor,
                    "expire",
                    MintStatus.EXPIRED,
                    {"ttl_seconds": ttl, "credits_refunded": refunded},
                )
                expired += 1

        if expired:
            logger.info("Expired stale reservations", count=expired, ttl_seconds=ttl)
        return expired

    # ------------------------------------------------------------------
    # Admin annotations (status unchanged)
    # ------------------------------------------------------------------

    async def flag_for_review(self, actor: Actor, attempt_id: int, reason: Optional[str] = None) -> MintAttempt:
        self._require_admin(actor, "flag_for_review")
        attempt = await self.get_attempt(attempt_id)
        attempt.flagged_for_review = True
        await self.db.flush()
        await self.activity.record(
            attempt, actor, "flag_for_review", attempt.status, attempt.status, {"reason": reason}
        )
        return attempt

    async def unflag(self, actor: Actor, attempt_id: int) -> MintAttempt:
        self._require_admin(actor, "unflag")
        attempt = await self.get_attempt(attempt_id)
        attempt.flagged_for_review = False
        await self.db.flush()
        await self.activity.record(attempt, actor, "unflag", attempt.status, attempt.status)
        return attempt

    async def add_note(
        self,
        actor: Actor,
        attempt_id: int,
        note: str,
        now: Optional[datetime] = None,
    ) -> MintAttempt:
        self._require_admin(actor, "add_note")
        if not note:
            raise ValueError("note is required")
        now = now or datetime.utcnow()
        attempt = await self.get_attempt(attempt_id)
        line = f"[{now.isoformat()}] {actor.wallet_address}: {note}"
        attempt.admin_notes = f"{attempt.admin_notes}\n{line}" if attempt.admin_notes else line
        await self.db.flush()
        await self.activity.record(attempt, actor, "add_note", attempt.status, attempt.status, {"note": note})
        return attempt

    async def list_for_wallet(self, wallet: str, collection_id: int) -> List[MintAttempt]:
        result = await self.db.execute(
            select(MintAttempt)
            .where(MintAttempt.minter_wallet == wallet, MintAttempt.collection_id == collection_id)
            .order_by(MintAttempt.created_at.desc())
        )
        return list(result.scalars().all())
