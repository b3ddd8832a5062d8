"""Stuck-transaction recovery.

Detects broadcasts that have sat unconfirmed past the threshold, records a
StuckTransaction with fee information for fee bumping, and tracks the
resolution (RBF, CPFP, resolved, abandoned). Deciding between refund and
retry is left to the admin actions on the mint attempt.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

import structlog
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.models.mint import IN_FLIGHT_STATUSES, MintAttempt, MintStatus, TERMINAL_STATUSES
from app.models.stuck_transaction import OPEN_RESOLUTIONS, ResolutionStatus, StuckTransaction
from app.services.actor import Actor
from app.services.errors import InvalidTransitionError, LaunchpadError, NotAdminError, NotFoundError
from app.services.mint_state import MintStateMachine

logger = structlog.get_logger()

REVEAL_STAGE = frozenset({MintStatus.REVEAL_BROADCAST, MintStatus.REVEAL_CONFIRMING})


@dataclass
class DetectionResult:
    scanned: int = 0
    detected: int = 0
    confirmed: int = 0
    skipped: int = 0
    errors: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "detected": self.detected,
            "confirmed": self.confirmed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


class StuckTransactionRecovery:
    """Detection and resolution bookkeeping for stalled broadcasts"""

    def __init__(self, db: AsyncSession, chain, settings: Optional[Settings] = None):
        self.db = db
        self.chain = chain
        self.settings = settings or get_settings()
        self.machine = MintStateMachine(db, self.settings)

    async def detect(
        self,
        actor: Actor,
        now: Optional[datetime] = None,
        threshold_minutes: Optional[int] = None,
    ) -> DetectionResult:
        """
        Scan in-flight attempts broadcast longer ago than the threshold.

        A confirmed transaction advances the attempt instead. A failed chain
        lookup skips the attempt until the next run.
        """
        if not actor.is_admin:
            raise NotAdminError("Admin capability required for stuck detection")
        now = now or datetime.utcnow()
        threshold = threshold_minutes if threshold_minutes is not None else self.settings.stuck_threshold_minutes
        cutoff = now - timedelta(minutes=threshold)

        attempts = (await self.db.execute(
            select(MintAttempt)
            .where(
                MintAttempt.status.in_([s.value for s in IN_FLIGHT_STATUSES]),
                MintAttempt.stuck_since.is_(None),
                func.coalesce(MintAttempt.reveal_broadcast_at, MintAttempt.commit_broadcast_at) < cutoff,
            )
            .order_by(MintAttempt.id)
        )).scalars().all()

        result = DetectionResult(scanned=len(attempts))
        recommended_fee: Optional[float] = None
        fee_fetched = False

        for attempt in attempts:
            is_reveal = MintStatus(attempt.status) in REVEAL_STAGE and bool(attempt.reveal_tx_id)
            tx_id = attempt.reveal_tx_id if is_reveal else attempt.commit_tx_id
            if not tx_id:
                result.skipped += 1
                continue

            try:
                status = await self.chain.check_transaction(tx_id)
                if status is None:
                    logger.warning("Chain lookup failed during stuck detection", attempt_id=attempt.id, tx_id=tx_id)
                    result.skipped += 1
                    continue

                if status.confirmed and status.confirmations >= 1:
                    if is_reveal:
                        await self.machine.confirm_reveal(actor, attempt.id, status, now)
                    else:
                        await self.machine.confirm_commit(actor, attempt.id, status, now)
                    result.confirmed += 1
                    continue

                if not fee_fetched:
                    recommended_fee = await self.chain.get_recommended_fee_rate()
                    fee_fetched = True

                broadcast_at = attempt.broadcast_at or now
                record = StuckTransaction(
                    mint_attempt_id=attempt.id,
                    tx_type="reveal" if is_reveal else "commit",
                    tx_id=tx_id,
                    stuck_since=broadcast_at,
                    stuck_duration_minutes=int((now - broadcast_at).total_seconds() // 60),
                    current_fee_rate=status.fee_rate if status.exists else None,
                    recommended_fee_rate=recommended_fee,
                    resolution_status=ResolutionStatus.DETECTED.value,
                )
                self.db.add(record)
                await self.db.flush()
                await self.machine.mark_stuck(
                    actor,
                    attempt.id,
                    reason="not_found" if not status.exists else "unconfirmed",
                    now=now,
                )
                result.detected += 1
                logger.warning(
                    "Stuck transaction detected",
                    attempt_id=attempt.id,
                    tx_id=tx_id,
                    tx_type=record.tx_type,
                    stuck_minutes=record.stuck_duration_minutes,
                    current_fee_rate=record.current_fee_rate,
                    recommended_fee_rate=recommended_fee,
                )
            except LaunchpadError as e:
                result.errors.append({"attempt_id": attempt.id, "error": e.message, "code": e.code})

        if result.detected or result.confirmed:
            logger.info("Stuck detection completed", **{k: v for k, v in result.to_dict().items() if k != "errors"})
        return result

    # ------------------------------------------------------------------
    # Resolution tracking
    # ------------------------------------------------------------------

    async def get(self, stuck_id: int) -> StuckTransaction:
        record = await self.db.get(StuckTransaction, stuck_id, populate_existing=True)
        if record is None:
            raise NotFoundError(f"Stuck transaction {stuck_id} not found")
        return record

    async def list_records(self, open_only: bool = True, limit: int = 100) -> List[StuckTransaction]:
        query = select(StuckTransaction).order_by(StuckTransaction.stuck_since).limit(limit)
        if open_only:
            query = query.where(StuckTransaction.resolution_status.in_([r.value for r in OPEN_RESOLUTIONS]))
        return list((await self.db.execute(query)).scalars().all())

    async def _move(
        self,
        actor: Actor,
        stuck_id: int,
        allowed_from: frozenset,
        to_status: ResolutionStatus,
        action: str,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StuckTransaction:
        if not actor.is_admin:
            raise NotAdminError(f"Admin capability required for {action}")
        now = now or datetime.utcnow()
        record = await self.get(stuck_id)
        current = ResolutionStatus(record.resolution_status)
        if current not in allowed_from:
            logger.warning("Rejected stuck resolution", stuck_id=stuck_id, status=current.value, target=to_status.value)
            raise InvalidTransitionError(current.value, to_status.value, f"{action} is not allowed from {current.value}")

        record.resolution_status = to_status.value
        record.resolution_action = action
        if notes:
            record.resolution_notes = notes
        if to_status in (ResolutionStatus.RESOLVED, ResolutionStatus.ABANDONED):
            record.resolved_at = now
            record.resolved_by = actor.wallet_address
        record.updated_at = now
        await self.db.flush()

        attempt = await self.machine.get_attempt(record.mint_attempt_id)
        await self.machine.activity.record(
            attempt,
            actor,
            action,
            previous_status=attempt.status,
            new_status=attempt.status,
            data={
                "stuck_transaction_id": record.id,
                "tx_id": record.tx_id,
                "previous_resolution": current.value,
                "resolution": to_status.value,
                "notes": notes,
            },
        )
        logger.info("Stuck transaction updated", stuck_id=stuck_id, action=action, resolution=to_status.value)
        return record

    async def mark_rbf_sent(
        self,
        actor: Actor,
        stuck_id: int,
        replacement_tx_id: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StuckTransaction:
        """Replace-by-fee requested. A replacement txid takes over the attempt's tx id."""
        record = await self._move(
            actor, stuck_id, frozenset({ResolutionStatus.DETECTED}), ResolutionStatus.RBF_SENT, "request_rbf", notes, now
        )
        if replacement_tx_id:
            record.resolution_tx_id = replacement_tx_id
            attempt = await self.machine.get_attempt(record.mint_attempt_id)
            if record.tx_type == "reveal":
                attempt.reveal_tx_id = replacement_tx_id
            else:
                attempt.commit_tx_id = replacement_tx_id
            await self.db.flush()
        return record

    async def mark_cpfp_sent(
        self,
        actor: Actor,
        stuck_id: int,
        child_tx_id: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StuckTransaction:
        """Child-pays-for-parent requested. The parent txid stays the same."""
        record = await self._move(
            actor,
            stuck_id,
            frozenset({ResolutionStatus.DETECTED, ResolutionStatus.RBF_SENT}),
            ResolutionStatus.CPFP_SENT,
            "request_cpfp",
            notes,
            now,
        )
        if child_tx_id:
            record.resolution_tx_id = child_tx_id
            await self.db.flush()
        return record

    async def resolve(
        self,
        actor: Actor,
        stuck_id: int,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StuckTransaction:
        """Close the record. The attempt itself moves on chain confirmation or retry."""
        return await self._move(actor, stuck_id, OPEN_RESOLUTIONS, ResolutionStatus.RESOLVED, "mark_resolved", notes, now)

    async def abandon(
        self,
        actor: Actor,
        stuck_id: int,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StuckTransaction:
        """Give up on the transaction. The attempt is failed but keeps its supply item."""
        record = await self._move(actor, stuck_id, OPEN_RESOLUTIONS, ResolutionStatus.ABANDONED, "abandon", notes, now)
        attempt = await self.machine.get_attempt(record.mint_attempt_id)
        status = MintStatus(attempt.status)
        if status not in TERMINAL_STATUSES and status != MintStatus.FAILED:
            await self.machine.fail(actor, attempt.id, notes or "Stuck transaction abandoned", code="stuck_abandoned")
        return record
