"""Writes the mint activity audit trail"""
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.activity import MintActivity
from app.models.mint import MintAttempt
from app.services.actor import Actor

logger = structlog.get_logger()


class ActivityLog:
    """Append-only recorder for transitions and admin actions"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        attempt: Optional[MintAttempt],
        actor: Actor,
        action_type: str,
        previous_status: Optional[str] = None,
        new_status: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error: Optional[str] = None,
        collection_id: Optional[int] = None,
    ) -> MintActivity:
        action_data = dict(data or {})
        action_data.setdefault("previous_status", previous_status)

        entry = MintActivity(
            mint_attempt_id=attempt.id if attempt is not None else None,
            collection_id=attempt.collection_id if attempt is not None else collection_id,
            actor_wallet=actor.wallet_address,
            actor_type=actor.actor_type.value,
            action_type=action_type,
            previous_status=previous_status,
            new_status=new_status,
            action_data=action_data,
            success=success,
            error_message=error,
        )
        self.db.add(entry)
        await self.db.flush()
        logger.debug(
            "Recorded mint activity",
            attempt_id=entry.mint_attempt_id,
            action=action_type,
            previous_status=previous_status,
            new_status=new_status,
            success=success,
        )
        return entry

    async def for_attempt(self, attempt_id: int) -> List[MintActivity]:
        result = await self.db.execute(
            select(MintActivity)
            .where(MintActivity.mint_attempt_id == attempt_id)
            .order_by(MintActivity.id)
        )
        return list(result.scalars().all())
