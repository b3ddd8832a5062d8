"""Bulk reconciliation of mint attempts against chain truth.

Every attempt in a batch is processed on its own: a failure is captured in
that attempt's result and the batch carries on. Running the same check twice
without any chain change applies no new transitions.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import select, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.models.collection import SupplyItem
from app.models.mint import IN_FLIGHT_STATUSES, MintAttempt, MintStatus
from app.services.actor import Actor
from app.services.errors import InvalidTransitionError, LaunchpadError, NotAdminError
from app.services.mint_state import MintStateMachine

logger = structlog.get_logger()

# Stuck attempts stay polled so a late confirmation of the original or its
# replacement still lands
POLLED_STATUSES = [s.value for s in IN_FLIGHT_STATUSES] + [MintStatus.STUCK.value]


@dataclass
class CheckOutcome:
    attempt_id: int
    result: str
    previous_status: Optional[str] = None
    status: Optional[str] = None
    commit: Optional[str] = None  # confirmed, pending, not_found, lookup_failed
    reveal: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class BulkResult:
    operation: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    results: List[dict] = field(default_factory=list)

    def add(self, outcome: Dict[str, Any], ok: bool) -> None:
        self.processed += 1
        if ok:
            self.succeeded += 1
        else:
            self.failed += 1
        self.results.append(outcome)

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "results": self.results,
        }


class BulkReconciler:
    """Admin batch re-check and forced overrides"""

    def __init__(
        self,
        db: AsyncSession,
        chain,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.chain = chain
        self.settings = settings or get_settings()
        self.machine = MintStateMachine(db, self.settings)
        self._sleep = sleep
        self._lookups = 0

    async def _lookup(self, tx_id: str):
        """Chain lookup with pacing between consecutive external calls"""
        delay = self.settings.reconciliation_delay_seconds
        if self._lookups and delay > 0:
            await self._sleep(delay)
        self._lookups += 1
        return await self.chain.check_transaction(tx_id)

    async def _check_one(self, actor: Actor, attempt_id: int, now: datetime) -> CheckOutcome:
        attempt = await self.machine.get_attempt(attempt_id)
        outcome = CheckOutcome(attempt_id=attempt.id, result="unchanged", previous_status=attempt.status)

        if attempt.status == MintStatus.COMPLETED.value:
            if await self._repair_item(attempt, actor, now):
                outcome.result = "repaired"
            outcome.status = attempt.status
            return outcome

        if attempt.commit_tx_id and attempt.commit_confirmed_at is None:
            status = await self._lookup(attempt.commit_tx_id)
            outcome.commit = self._describe(status)
            if status is not None and status.confirmed and status.confirmations >= 1:
                await self.machine.confirm_commit(actor, attempt.id, status, now)
                outcome.result = "updated"

        if attempt.reveal_tx_id and attempt.status != MintStatus.COMPLETED.value:
            status = await self._lookup(attempt.reveal_tx_id)
            outcome.reveal = self._describe(status)
            if status is not None and status.confirmed and status.confirmations >= 1:
                await self.machine.confirm_reveal(actor, attempt.id, status, now)
                outcome.result = "updated"

        if outcome.commit is not None or outcome.reveal is not None:
            attempt.last_checked_at = now
            await self.db.flush()
        outcome.status = attempt.status
        return outcome

    @staticmethod
    def _describe(status) -> str:
        if status is None:
            return "lookup_failed"
        if not status.exists:
            return "not_found"
        return "confirmed" if status.confirmed and status.confirmations >= 1 else "pending"

    async def _record_failure(self, actor: Actor, attempt_id: int, action: str, error: LaunchpadError) -> None:
        """Log a per-item rejection. Unknown ids are logged without an attempt link."""
        attempt = await self.db.get(MintAttempt, attempt_id)
        await self.machine.activity.record(
            attempt, actor, action, attempt.status if attempt is not None else None, None,
            data={"attempt_id": attempt_id, "code": error.code, "bulk": True},
            success=False, error=error.message,
        )

    async def _repair_item(self, attempt: MintAttempt, actor: Actor, now: datetime) -> bool:
        """Drift correction: a completed attempt whose supply item is not minted"""
        if attempt.is_test_mint or attempt.supply_item_id is None:
            return False
        item = await self.db.get(SupplyItem, attempt.supply_item_id, populate_existing=True)
        if item is None or item.is_minted:
            return False
        repaired = await self.machine.mark_item_minted(attempt, now)
        if repaired:
            logger.warning(
                "Repaired supply drift",
                attempt_id=attempt.id,
                supply_item_id=attempt.supply_item_id,
            )
            await self.machine.activity.record(
                attempt, actor, "repair_supply_drift", attempt.status, attempt.status,
                {"supply_item_id": attempt.supply_item_id},
            )
        return repaired

    async def check(self, actor: Actor, attempt_ids: List[int], now: Optional[datetime] = None) -> BulkResult:
        """Re-check each attempt's transactions and apply confirmations"""
        if not actor.is_admin:
            raise NotAdminError("Admin capability required for bulk check")
        now = now or datetime.utcnow()
        batch = BulkResult(operation="check")

        for attempt_id in attempt_ids:
            try:
                outcome = await self._check_one(actor, attempt_id, now)
                batch.add(outcome.to_dict(), ok=True)
            except LaunchpadError as e:
                logger.warning("Bulk check failed for attempt", attempt_id=attempt_id, error=e.message)
                await self._record_failure(actor, attempt_id, "bulk_check", e)
                batch.add({"attempt_id": attempt_id, "result": "error", "error": e.message, "code": e.code}, ok=False)

        logger.info("Bulk check completed", processed=batch.processed, failed=batch.failed)
        return batch

    async def update_status(
        self,
        actor: Actor,
        attempt_ids: List[int],
        status: str,
        reason: Optional[str] = None,
    ) -> BulkResult:
        """
        Admin escape hatch: overwrite the status without transition rules.

        Never called by automated code. Each row is logged like a transition.
        """
        if not actor.is_admin:
            raise NotAdminError("Admin capability required for bulk status update")
        try:
            target = MintStatus(status)
        except ValueError:
            raise InvalidTransitionError("*", status, "unknown status")

        batch = BulkResult(operation="update_status")
        for attempt_id in attempt_ids:
            try:
                attempt = await self.machine.get_attempt(attempt_id)
                previous = attempt.status
                await self.machine.force_status(actor, attempt, target, {"reason": reason, "bulk": True})
                batch.add({"attempt_id": attempt_id, "previous_status": previous, "status": target.value}, ok=True)
            except LaunchpadError as e:
                await self._record_failure(actor, attempt_id, "admin_status_override", e)
                batch.add({"attempt_id": attempt_id, "result": "error", "error": e.message, "code": e.code}, ok=False)
        return batch

    async def mark_completed(
        self,
        actor: Actor,
        attempt_ids: List[int],
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BulkResult:
        """Admin escape hatch: force completion and flip is_minted on the item"""
        if not actor.is_admin:
            raise NotAdminError("Admin capability required for bulk completion")
        now = now or datetime.utcnow()

        batch = BulkResult(operation="mark_completed")
        for attempt_id in attempt_ids:
            try:
                attempt = await self.machine.get_attempt(attempt_id)
                previous = attempt.status
                if previous == MintStatus.COMPLETED.value:
                    repaired = await self._repair_item(attempt, actor, now)
                    batch.add({"attempt_id": attempt_id, "previous_status": previous,
                               "status": previous, "repaired": repaired}, ok=True)
                    continue
                await self.machine.complete(
                    attempt, actor, now, action="admin_mark_completed", data={"reason": reason, "bulk": True}
                )
                batch.add({"attempt_id": attempt_id, "previous_status": previous, "status": attempt.status}, ok=True)
            except LaunchpadError as e:
                await self._record_failure(actor, attempt_id, "admin_mark_completed", e)
                batch.add({"attempt_id": attempt_id, "result": "error", "error": e.message, "code": e.code}, ok=False)
        return batch

    async def poll_unconfirmed(
        self,
        actor: Actor,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> BulkResult:
        """Scheduled confirmation poll over broadcast or stuck attempts not checked recently"""
        now = now or datetime.utcnow()
        limit = limit or self.settings.confirmation_poll_batch_size
        recheck_before = now - timedelta(seconds=self.settings.confirmation_poll_interval_seconds)

        attempt_ids = (await self.db.execute(
            select(MintAttempt.id)
            .where(
                MintAttempt.status.in_(POLLED_STATUSES),
                MintAttempt.is_test_mint == False,  # noqa: E712
                or_(MintAttempt.last_checked_at.is_(None), MintAttempt.last_checked_at < recheck_before),
            )
            .order_by(MintAttempt.last_checked_at.is_(None).desc(), MintAttempt.last_checked_at, MintAttempt.id)
            .limit(limit)
        )).scalars().all()

        if not attempt_ids:
            return BulkResult(operation="check")
        return await self.check(actor, list(attempt_ids), now)

    async def find_supply_drift(self, collection_id: Optional[int] = None) -> List[MintAttempt]:
        """Completed non-test attempts whose supply item is still unminted"""
        query = (
            select(MintAttempt)
            .join(SupplyItem, SupplyItem.id == MintAttempt.supply_item_id)
            .where(
                and_(
                    MintAttempt.status == MintStatus.COMPLETED.value,
                    MintAttempt.is_test_mint == False,  # noqa: E712
                    SupplyItem.is_minted == False,  # noqa: E712
                )
            )
            .order_by(MintAttempt.id)
        )
        if collection_id is not None:
            query = query.where(MintAttempt.collection_id == collection_id)
        return list((await self.db.execute(query)).scalars().all())

    async def repair_supply_drift(
        self,
        actor: Actor,
        collection_id: Optional[int] = None,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> List[int]:
        """Find (and unless dry_run, fix) drifted supply items. Returns attempt ids."""
        if not actor.is_admin:
            raise NotAdminError("Admin capability required for drift repair")
        now = now or datetime.utcnow()
        drifted = await self.find_supply_drift(collection_id)
        if not dry_run:
            for attempt in drifted:
                await self._repair_item(attempt, actor, now)
        return [a.id for a in drifted]
